"""
Access control decisions for todos and families.

Pure predicates with no side effects. Malformed input (missing actor, a
record of the wrong shape) yields False rather than an exception; callers
turn a False into AccessDenied.

Rules:
- read/write: the actor created the todo or is its assignee.
- delete: the actor created the todo or holds the admin role. An admin may
  not delete another family's todo when both carry a family_id.
- manage family: the actor is the family's admin user.
"""

from typing import Any, Optional

from family_organizer.models.user_models import Actor, UserRole


def _field(record: Any, name: str) -> Optional[Any]:
    if record is None:
        return None
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _actor_id(actor: Any) -> Optional[str]:
    actor_id = _field(actor, "id")
    return actor_id if isinstance(actor_id, str) and actor_id else None


def can_read(actor: Actor, todo: Any) -> bool:
    actor_id = _actor_id(actor)
    if actor_id is None:
        return False
    return actor_id in (_field(todo, "created_by"), _field(todo, "assigned_to"))


def can_write(actor: Actor, todo: Any) -> bool:
    # Assignees may change status and content, same as readers.
    return can_read(actor, todo)


def can_delete(actor: Actor, todo: Any) -> bool:
    actor_id = _actor_id(actor)
    if actor_id is None or todo is None:
        return False
    if actor_id == _field(todo, "created_by"):
        return True
    if _field(actor, "role") != UserRole.ADMIN:
        return False
    # An admin's reach stops at their own family when both sides record one
    actor_family, todo_family = _field(actor, "family_id"), _field(todo, "family_id")
    return not (actor_family and todo_family and actor_family != todo_family)


def can_manage_family(actor: Any, family: Any) -> bool:
    """Accepts an Actor or a bare actor id."""
    actor_id = actor if isinstance(actor, str) and actor else _actor_id(actor)
    if actor_id is None:
        return False
    return actor_id == _field(family, "admin_user_id")
