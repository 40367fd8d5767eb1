"""
Todo Manager for the task and meeting workflow.

This module provides the TodoManager class, which creates todos, applies
partial updates and status transitions, appends user and system comments,
manages tags, deletes todos and applies best-effort bulk updates. It also
exposes store-backed entry points for listing, search, statistics and the
upcoming window, delegating the computation to todo_query.

Mutation rules:
    - Every mutation is a single update expression that sets the changed
      fields, bumps `updated_at` and increments `version` by one.
      Comments are appended with $push so concurrent comments are never lost.
    - Field updates are last-write-wins unless the caller passes
      `expected_version`, in which case a stale version fails with Conflict.
    - Status changes stamp or clear `completed_at` and append a system comment.

Logging:
    - Uses the centralized logging manager with the "[TodoManager]" prefix
    - Access denials and validation failures are logged at WARNING by handle_errors
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from family_organizer.config import settings
from family_organizer.database.document_store import DocumentStoreProtocol, document_store
from family_organizer.managers import todo_query
from family_organizer.managers.access_policy import can_delete, can_read, can_write
from family_organizer.managers.logging_manager import get_logger
from family_organizer.models.todo_models import (
    BulkUpdateError,
    BulkUpdatePatch,
    BulkUpdateResult,
    BulkUpdateSummary,
    Comment,
    CommentType,
    CreateTodoRequest,
    PaginatedTodos,
    SearchResult,
    Todo,
    TodoFilters,
    TodoStatistics,
    TodoStatus,
    UpcomingTodos,
    UpdateTodoRequest,
    clean_tags,
    is_transition_allowed,
)
from family_organizer.models.user_models import Actor
from family_organizer.utils.datetime_utils import utc_now
from family_organizer.utils.error_handling import (
    AccessDenied,
    Conflict,
    NotFound,
    OrganizerError,
    ValidationError,
    handle_errors,
)

logger = get_logger(prefix="[TodoManager]")

TODO_UPDATED_COMMENT = "Todo updated"


def status_changed_comment(status: TodoStatus) -> str:
    return f"Status changed to {TodoStatus(status).value}"


class TodoNotFound(NotFound):
    """Todo does not exist."""

    def __init__(self, message: str = "Todo not found", todo_id: str = None):
        super().__init__(message, resource="todo", resource_id=todo_id, error_code="TODO_NOT_FOUND")


class BatchTooLarge(OrganizerError):
    """Bulk operation exceeds BULK_UPDATE_MAX_BATCH ids."""

    http_status = 413

    def __init__(self, message: str = None, size: int = None, max_size: int = None):
        max_size = max_size or settings.BULK_UPDATE_MAX_BATCH
        super().__init__(
            message or f"Cannot update more than {max_size} todos at once",
            "BATCH_TOO_LARGE",
            {"size": size, "max_size": max_size},
        )


def _completion_stamp(old_status: TodoStatus, new_status: TodoStatus, old_completed_at):
    """completed_at for a todo moving from old_status to new_status."""
    if new_status != TodoStatus.COMPLETED:
        return None
    if old_status == TodoStatus.COMPLETED and old_completed_at is not None:
        return old_completed_at
    return utc_now()


class TodoManager:
    """Task workflow service."""

    def __init__(self, store: DocumentStoreProtocol = None) -> None:
        self.store = store or document_store
        self.collection = settings.TODOS_COLLECTION
        logger.debug("TodoManager initialized with dependency injection")

    # --- Internal helpers ---

    async def _load(self, todo_id: str) -> Todo:
        document = await self.store.get(self.collection, todo_id)
        if document is None:
            raise TodoNotFound(todo_id=todo_id)
        return Todo.model_validate(document)

    @staticmethod
    def _require(allowed: bool, actor: Actor, action: str) -> None:
        if not allowed:
            raise AccessDenied(actor_id=getattr(actor, "id", None), action=action)

    @staticmethod
    def _system_comment(text: str, actor: Actor) -> Comment:
        return Comment(text=text, user_id=actor.id, type=CommentType.SYSTEM)

    async def _mutate(
        self,
        todo_id: str,
        set_fields: Dict[str, Any] = None,
        comments: List[Comment] = None,
        extra: Dict[str, Any] = None,
        condition: Dict[str, Any] = None,
    ) -> Optional[Todo]:
        """
        Apply one versioned mutation.

        Returns the updated todo, or None when the key plus condition matched nothing.
        """
        expression: Dict[str, Any] = {
            "$set": {**(set_fields or {}), "updated_at": utc_now()},
            "$inc": {"version": 1},
        }
        if comments:
            expression["$push"] = {"comments": {"$each": [c.model_dump(mode="python") for c in comments]}}
            for entry in expression["$push"]["comments"]["$each"]:
                entry["type"] = CommentType(entry["type"]).value
        for operator, fields in (extra or {}).items():
            expression.setdefault(operator, {}).update(fields)

        document = await self.store.update_by_expression(self.collection, todo_id, expression, condition)
        return Todo.model_validate(document) if document is not None else None

    @staticmethod
    def _stored_values(todo: Todo, field_names) -> Dict[str, Any]:
        document = todo.to_document()
        return {name: document[name] for name in field_names}

    # --- Single-todo operations ---

    @handle_errors("create_todo")
    async def create_todo(self, data: Union[CreateTodoRequest, Dict[str, Any]], actor: Actor) -> Todo:
        """
        Create a task or meeting at version 1.

        Args:
            data: Todo fields; `title` and `assigned_to` are required
            actor: The creating user; recorded as created_by, and their family
                   (if any) is stamped on the todo

        Raises:
            ValidationError: If the fields are invalid or mix task and meeting fields
        """
        try:
            request = data if isinstance(data, CreateTodoRequest) else CreateTodoRequest.model_validate(data or {})
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid todo data") from e

        now = utc_now()
        todo = Todo(
            **request.model_dump(),
            created_by=actor.id,
            family_id=actor.family_id,
            completed_at=now if request.status == TodoStatus.COMPLETED else None,
            created_at=now,
            updated_at=now,
            version=1,
        )
        await self.store.insert(self.collection, todo.to_document())
        logger.info("Todo created: %s (%s) by %s, assigned to %s", todo.id, todo.type.value, actor.id, todo.assigned_to)
        return todo

    @handle_errors("get_todo")
    async def get_todo(self, todo_id: str, actor: Actor) -> Todo:
        todo = await self._load(todo_id)
        self._require(can_read(actor, todo), actor, "read")
        return todo

    @handle_errors("update_todo")
    async def update_todo(
        self,
        todo_id: str,
        patch: Union[UpdateTodoRequest, Dict[str, Any]],
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Todo:
        """
        Apply a partial update and append a "Todo updated" system comment.

        Only fields present in the patch change; the merged record is
        re-validated as a whole.

        Args:
            todo_id: Todo to update
            patch: Fields to change
            actor: Must be the creator or assignee
            expected_version: When given, the update only applies to this version

        Raises:
            TodoNotFound: If the todo does not exist
            AccessDenied: If the actor may not write the todo
            ValidationError: If the patch is empty or the merged record is invalid
            Conflict: If expected_version does not match the stored version
        """
        try:
            request = patch if isinstance(patch, UpdateTodoRequest) else UpdateTodoRequest.model_validate(patch or {})
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid todo update") from e
        changes = request.changes()
        if not changes:
            raise ValidationError("No valid fields to update")

        todo = await self._load(todo_id)
        self._require(can_write(actor, todo), actor, "update")
        if expected_version is not None and expected_version != todo.version:
            raise Conflict(
                "Todo was modified by someone else",
                resource="todo",
                context={"todo_id": todo_id, "expected_version": expected_version, "current_version": todo.version},
            )

        new_status = changes.get("status", todo.status)
        merged_data = {
            **todo.model_dump(),
            **changes,
            "completed_at": _completion_stamp(todo.status, new_status, todo.completed_at),
        }
        try:
            merged = Todo.model_validate(merged_data)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid todo update") from e

        set_fields = self._stored_values(merged, [*changes, "completed_at"])
        condition = {"version": expected_version} if expected_version is not None else None
        updated = await self._mutate(
            todo_id,
            set_fields,
            comments=[self._system_comment(TODO_UPDATED_COMMENT, actor)],
            condition=condition,
        )
        if updated is None:
            if condition is not None and await self.store.get(self.collection, todo_id) is not None:
                raise Conflict("Todo was modified by someone else", resource="todo", context={"todo_id": todo_id})
            raise TodoNotFound(todo_id=todo_id)

        logger.info("Todo %s updated by %s: %s (v%d)", todo_id, actor.id, sorted(changes), updated.version)
        return updated

    @handle_errors("update_status")
    async def update_status(self, todo_id: str, new_status: Union[TodoStatus, str], actor: Actor) -> Todo:
        """
        Move a todo to `new_status` and append a system comment recording it.

        Setting the current status again still appends a comment.
        """
        try:
            new_status = TodoStatus(new_status)
        except ValueError as e:
            raise ValidationError("Invalid status", field="status", value=new_status) from e

        todo = await self._load(todo_id)
        self._require(can_write(actor, todo), actor, "update_status")
        if not is_transition_allowed(todo.status, new_status):
            raise ValidationError(
                f"Cannot change status from {todo.status.value} to {new_status.value}", field="status"
            )

        updated = await self._mutate(
            todo_id,
            {
                "status": new_status.value,
                "completed_at": _completion_stamp(todo.status, new_status, todo.completed_at),
            },
            comments=[self._system_comment(status_changed_comment(new_status), actor)],
        )
        if updated is None:
            raise TodoNotFound(todo_id=todo_id)
        logger.info("Todo %s status %s -> %s by %s", todo_id, todo.status.value, new_status.value, actor.id)
        return updated

    @handle_errors("delete_todo")
    async def delete_todo(self, todo_id: str, actor: Actor) -> None:
        """Hard-delete a todo. Only its creator or an admin may delete it."""
        todo = await self._load(todo_id)
        self._require(can_delete(actor, todo), actor, "delete")
        if not await self.store.delete(self.collection, todo_id):
            raise TodoNotFound(todo_id=todo_id)
        logger.info("Todo %s deleted by %s", todo_id, actor.id)

    @handle_errors("add_comment")
    async def add_comment(self, todo_id: str, text: str, actor: Actor) -> Todo:
        """Append a user comment (1-500 characters)."""
        try:
            comment = Comment(text=text, user_id=actor.id, type=CommentType.USER)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid comment") from e

        todo = await self._load(todo_id)
        self._require(can_read(actor, todo), actor, "comment")

        updated = await self._mutate(todo_id, comments=[comment])
        if updated is None:
            raise TodoNotFound(todo_id=todo_id)
        logger.info("Comment %s added to todo %s by %s", comment.id, todo_id, actor.id)
        return updated

    def _clean_tag(self, tag: str) -> str:
        try:
            cleaned = clean_tags([tag])
        except ValueError as e:
            raise ValidationError(str(e), field="tag", value=tag) from e
        if not cleaned:
            raise ValidationError("Tag must not be empty", field="tag", value=tag)
        return cleaned[0]

    @handle_errors("add_tag")
    async def add_tag(self, todo_id: str, tag: str, actor: Actor) -> Todo:
        """Add a tag. Adding a tag that is already present changes nothing."""
        tag = self._clean_tag(tag)
        todo = await self._load(todo_id)
        self._require(can_write(actor, todo), actor, "tag")
        if tag in todo.tags:
            return todo

        updated = await self._mutate(todo_id, extra={"$push": {"tags": tag}}, condition={"tags": {"$ne": tag}})
        if updated is None:
            # Added concurrently, or deleted in the meantime
            return await self._load(todo_id)
        logger.info("Tag '%s' added to todo %s by %s", tag, todo_id, actor.id)
        return updated

    @handle_errors("remove_tag")
    async def remove_tag(self, todo_id: str, tag: str, actor: Actor) -> Todo:
        """Remove a tag. Removing an absent tag changes nothing."""
        tag = self._clean_tag(tag)
        todo = await self._load(todo_id)
        self._require(can_write(actor, todo), actor, "tag")
        if tag not in todo.tags:
            return todo

        updated = await self._mutate(todo_id, extra={"$pull": {"tags": tag}}, condition={"tags": tag})
        if updated is None:
            return await self._load(todo_id)
        logger.info("Tag '%s' removed from todo %s by %s", tag, todo_id, actor.id)
        return updated

    # --- Bulk ---

    @handle_errors("bulk_update")
    async def bulk_update(
        self, ids: List[str], patch: Union[BulkUpdatePatch, Dict[str, Any]], actor: Actor
    ) -> BulkUpdateResult:
        """
        Apply the same status/priority/category/assignee patch to many todos.

        Each id is processed independently. Per-id failures (not found, access
        denied, nothing to update) are collected as {id, reason} and never
        abort the batch.

        Raises:
            ValidationError: If ids is empty or the patch values are invalid
            BatchTooLarge: If more than BULK_UPDATE_MAX_BATCH ids are given
        """
        if not isinstance(ids, (list, tuple)) or not ids:
            raise ValidationError("ids must be a non-empty list", field="ids")
        if len(ids) > settings.BULK_UPDATE_MAX_BATCH:
            raise BatchTooLarge(size=len(ids))
        try:
            patch = patch if isinstance(patch, BulkUpdatePatch) else BulkUpdatePatch.model_validate(patch or {})
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid bulk update") from e
        changes = patch.changes()

        updated: List[Dict[str, Any]] = []
        errors: List[BulkUpdateError] = []
        for todo_id in ids:
            try:
                todo = await self._apply_bulk_patch(todo_id, changes, actor)
            except TodoNotFound:
                errors.append(BulkUpdateError(id=todo_id, reason="Todo not found"))
            except AccessDenied:
                errors.append(BulkUpdateError(id=todo_id, reason="Access denied"))
            except OrganizerError as e:
                errors.append(BulkUpdateError(id=todo_id, reason=e.message))
            else:
                updated.append(todo.api_view())

        summary = BulkUpdateSummary(total=len(ids), successful=len(updated), failed=len(errors))
        logger.info(
            "Bulk update by %s: %d total, %d successful, %d failed",
            actor.id,
            summary.total,
            summary.successful,
            summary.failed,
        )
        return BulkUpdateResult(updated=updated, errors=errors, summary=summary)

    async def _apply_bulk_patch(self, todo_id: str, changes: Dict[str, Any], actor: Actor) -> Todo:
        document = await self.store.get(self.collection, todo_id)
        if document is None:
            raise TodoNotFound(todo_id=todo_id)
        todo = Todo.model_validate(document)
        self._require(can_write(actor, todo), actor, "bulk_update")
        if not changes:
            raise ValidationError("No valid fields to update")

        new_status = changes.get("status", todo.status)
        try:
            merged = Todo.model_validate(
                {
                    **todo.model_dump(),
                    **changes,
                    "completed_at": _completion_stamp(todo.status, new_status, todo.completed_at),
                }
            )
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid bulk update") from e

        comments = []
        if "status" in changes:
            comments.append(self._system_comment(status_changed_comment(new_status), actor))
        updated = await self._mutate(todo_id, self._stored_values(merged, [*changes, "completed_at"]), comments)
        if updated is None:
            raise TodoNotFound(todo_id=todo_id)
        return updated

    # --- Store-backed queries ---

    async def _load_visible(self, actor: Actor) -> List[Todo]:
        """Todos the actor may read: created by or assigned to them."""
        by_id: Dict[str, Dict[str, Any]] = {}
        for field in ("created_by", "assigned_to"):
            for document in await self.store.query_by_index(self.collection, field, actor.id):
                by_id[document["id"]] = document
        return [Todo.model_validate(doc) for doc in by_id.values()]

    @handle_errors("list_todos")
    async def list_todos(self, actor: Actor, filters: Union[TodoFilters, Dict[str, Any]] = None) -> PaginatedTodos:
        filters = todo_query.coerce_filters(filters)
        return todo_query.list_todos(await self._load_visible(actor), filters)

    @handle_errors("search_todos")
    async def search_todos(
        self, actor: Actor, query: str, filters: Union[TodoFilters, Dict[str, Any]] = None
    ) -> SearchResult:
        if len((query or "").strip()) < settings.MIN_SEARCH_QUERY_LENGTH:
            raise ValidationError(
                f"Search query must be at least {settings.MIN_SEARCH_QUERY_LENGTH} characters", field="query", value=query
            )
        return todo_query.search_todos(await self._load_visible(actor), query, filters)

    @handle_errors("get_statistics")
    async def get_statistics(
        self,
        actor: Actor,
        scope_user_id: Optional[str] = None,
        period_days: Optional[int] = None,
        family_id: Optional[str] = None,
    ) -> TodoStatistics:
        return todo_query.compute_statistics(
            await self._load_visible(actor), scope_user_id=scope_user_id, period_days=period_days, family_id=family_id
        )

    @handle_errors("get_upcoming")
    async def get_upcoming(
        self,
        actor: Actor,
        days: int = 7,
        assigned_to: Optional[str] = None,
        family_id: Optional[str] = None,
    ) -> UpcomingTodos:
        if assigned_to and assigned_to.strip().lower() == "all":
            assigned_to = None
        return todo_query.upcoming(
            await self._load_visible(actor), days=days, assigned_to=assigned_to, family_id=family_id
        )


todo_manager = TodoManager()
