"""
Pytest configuration for the family organizer tests.

Provides an in-memory document store that evaluates the subset of MongoDB
filter and update syntax the managers use, manager fixtures wired to it,
and seed family data.
"""

import asyncio
import copy
from datetime import datetime, timezone
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from family_organizer.config import settings  # noqa: E402
from family_organizer.managers.family_manager import FamilyManager  # noqa: E402
from family_organizer.managers.todo_manager import TodoManager  # noqa: E402
from family_organizer.managers.user_manager import BcryptPasswordHasher, UserManager  # noqa: E402
from family_organizer.models.family_models import Family, FamilySettings  # noqa: E402
from family_organizer.models.user_models import Actor, User, UserRole  # noqa: E402
from family_organizer.utils.error_handling import DuplicateDocument  # noqa: E402

SEED_CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)

# Static household used only as fixture data.
SEED_FAMILY_MEMBERS = [
    {"id": "happy", "unique_id": "usr-a1b2c3d4-e5f6-7890-abcd-ef1234567890", "name": "Happy",
     "email": "happy@example.com", "role": "admin", "avatar": "H"},
    {"id": "joel", "unique_id": "usr-b2c3d4e5-f6a7-8901-bcde-f23456789012", "name": "Joel",
     "email": "joel@example.com", "role": "member", "avatar": "J"},
    {"id": "monika", "unique_id": "usr-c3d4e5f6-a7b8-9012-cdef-345678901234", "name": "Monika",
     "email": "monika@example.com", "role": "member", "avatar": "M"},
    {"id": "kiaan", "unique_id": "usr-d4e5f6a7-b8c9-0123-defa-456789012345", "name": "Kiaan",
     "email": "kiaan@example.com", "role": "member", "avatar": "K"},
]
SEED_FAMILY_ID = "fam_seed000000000001"
SEED_FAMILY_CODE = "SEED01"


_MISSING = object()


def _compare(value: Any, operator: str, argument: Any) -> bool:
    if operator == "$ne":
        if isinstance(value, list):
            return argument not in value
        return value != argument
    if operator == "$in":
        if isinstance(value, list):
            return any(v in argument for v in value)
        return value in argument
    if operator == "$nin":
        return not _compare(value, "$in", argument)
    if operator == "$exists":
        return (value is not _MISSING) == bool(argument)
    if value is _MISSING or value is None:
        return False
    if operator == "$lt":
        return value < argument
    if operator == "$lte":
        return value <= argument
    if operator == "$gt":
        return value > argument
    if operator == "$gte":
        return value >= argument
    raise NotImplementedError(f"Unsupported filter operator {operator}")


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a MongoDB-style filter against a document."""
    for field, condition in (query or {}).items():
        if field == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
            continue
        value = document.get(field, _MISSING)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, arg) for op, arg in condition.items()):
                return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif isinstance(value, list) and not isinstance(condition, list):
            if condition not in value:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def apply_update(document: Dict[str, Any], expression: Dict[str, Any]) -> None:
    """Apply a MongoDB-style update expression in place."""
    for operator, fields in expression.items():
        for field, argument in fields.items():
            if operator == "$set":
                document[field] = copy.deepcopy(argument)
            elif operator == "$unset":
                document.pop(field, None)
            elif operator == "$inc":
                document[field] = document.get(field, 0) + argument
            elif operator == "$push":
                items = argument["$each"] if isinstance(argument, dict) and "$each" in argument else [argument]
                document.setdefault(field, []).extend(copy.deepcopy(items))
            elif operator == "$pull":
                document[field] = [item for item in document.get(field, []) if item != argument]
            else:
                raise NotImplementedError(f"Unsupported update operator {operator}")


class InMemoryDocumentStore:
    """In-process DocumentStoreProtocol double with unique-index checks.

    Each call yields to the event loop once before touching data, so
    asyncio.gather() interleaves concurrent manager calls the way a real
    store would, while every single call stays atomic.
    """

    KEY_FIELDS = {
        settings.USERS_COLLECTION: "id",
        settings.FAMILIES_COLLECTION: "family_id",
        settings.TODOS_COLLECTION: "id",
    }
    UNIQUE_FIELDS = {
        settings.USERS_COLLECTION: ("email",),
        settings.FAMILIES_COLLECTION: ("family_code",),
    }

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[str] = []

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    def _key_field(self, collection: str) -> str:
        return self.KEY_FIELDS.get(collection, "id")

    def _check_unique(self, collection: str, document: Dict[str, Any], own_key: Optional[str] = None) -> None:
        for field in self.UNIQUE_FIELDS.get(collection, ()):
            value = document.get(field)
            if value is None:
                continue
            for key, other in self._collection(collection).items():
                if key != own_key and other.get(field) == value:
                    raise DuplicateDocument(f"Duplicate {field} in {collection}", collection=collection)

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        self.calls.append("get")
        document = self._collection(collection).get(key)
        return copy.deepcopy(document)

    async def put(self, collection: str, item: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self.calls.append("put")
        key = item[self._key_field(collection)]
        self._check_unique(collection, item, own_key=key)
        self._collection(collection)[key] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def insert(self, collection: str, item: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self.calls.append("insert")
        key = item[self._key_field(collection)]
        if key in self._collection(collection):
            raise DuplicateDocument(f"Duplicate key in {collection}", collection=collection)
        self._check_unique(collection, item)
        self._collection(collection)[key] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def update_by_expression(self, collection, key, expression, condition=None):
        await asyncio.sleep(0)
        self.calls.append("update_by_expression")
        document = self._collection(collection).get(key)
        if document is None or not matches(document, condition):
            return None
        updated = copy.deepcopy(document)
        apply_update(updated, expression)
        self._check_unique(collection, updated, own_key=key)
        self._collection(collection)[key] = updated
        return copy.deepcopy(updated)

    async def query_by_index(self, collection, field, value, limit=None):
        await asyncio.sleep(0)
        self.calls.append("query_by_index")
        found = [copy.deepcopy(d) for d in self._collection(collection).values() if matches(d, {field: value})]
        return found[:limit] if limit else found

    async def scan(self, collection, filter=None):
        await asyncio.sleep(0)
        self.calls.append("scan")
        return [copy.deepcopy(d) for d in self._collection(collection).values() if matches(d, filter)]

    async def delete(self, collection, key):
        await asyncio.sleep(0)
        self.calls.append("delete")
        return self._collection(collection).pop(key, None) is not None


class PlainTextHasher:
    """Reversible hasher so tests do not pay for bcrypt rounds."""

    def hash(self, password: str) -> str:
        return f"plain${password}"

    def verify(self, password: str, password_hash: str) -> bool:
        return password_hash == f"plain${password}"


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def user_manager(store):
    return UserManager(store=store, password_hasher=PlainTextHasher())


@pytest.fixture
def bcrypt_hasher():
    # 4 is the lowest cost bcrypt accepts
    return BcryptPasswordHasher(rounds=4)


@pytest.fixture
def family_manager(store, user_manager):
    return FamilyManager(store=store, user_manager=user_manager)


@pytest.fixture
def todo_manager(store):
    return TodoManager(store=store)


@pytest.fixture
async def seed_family(store):
    """The fixture household: Happy administers a family of four."""
    family = Family(
        family_id=SEED_FAMILY_ID,
        family_name="Minocha Family",
        family_code=SEED_FAMILY_CODE,
        admin_user_id="happy",
        member_count=len(SEED_FAMILY_MEMBERS),
        settings=FamilySettings(),
        created_at=SEED_CREATED_AT,
        updated_at=SEED_CREATED_AT,
    )
    await store.insert(settings.FAMILIES_COLLECTION, family.to_document())

    users = {}
    for member in SEED_FAMILY_MEMBERS:
        user = User(
            **member,
            family_id=SEED_FAMILY_ID,
            joined_family_at=SEED_CREATED_AT,
            created_at=SEED_CREATED_AT,
            updated_at=SEED_CREATED_AT,
        )
        await store.insert(settings.USERS_COLLECTION, user.to_document())
        users[user.id] = user
    return {"family": family, "users": users}


@pytest.fixture
def actors():
    """Actors for the fixture household plus an outsider."""
    result = {
        member["id"]: Actor(id=member["id"], role=UserRole(member["role"]), family_id=SEED_FAMILY_ID)
        for member in SEED_FAMILY_MEMBERS
    }
    result["outsider"] = Actor(id="outsider", role=UserRole.MEMBER, family_id=None)
    return result
