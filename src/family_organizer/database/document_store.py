"""
Document store collaborator for the organizer managers.

Managers never touch Motor directly. They talk to a DocumentStoreProtocol,
a narrow key/value document interface with get/put/insert, conditional
update-by-expression, single-field index queries, filtered scans and delete.
Expressions and filters use MongoDB syntax ($set, $inc, $push, $pull, $lt, ...)
so the Mongo implementation forwards them unchanged.

Every record is keyed by a single field per collection (``id`` for users and
todos, ``family_id`` for families). Driver failures are wrapped into
StorageError so callers can tell infrastructure failures from domain errors;
unique-index violations surface as DuplicateDocument.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from family_organizer.config import settings
from family_organizer.database.manager import DatabaseManager, db_manager
from family_organizer.utils.error_handling import DuplicateDocument, StorageError

Document = Dict[str, Any]


def default_key_fields() -> Dict[str, str]:
    return {
        settings.USERS_COLLECTION: "id",
        settings.FAMILIES_COLLECTION: "family_id",
        settings.TODOS_COLLECTION: "id",
    }


@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """Persistence collaborator used by every manager."""

    async def get(self, collection: str, key: str) -> Optional[Document]: ...

    async def put(self, collection: str, item: Document) -> Document: ...

    async def insert(self, collection: str, item: Document) -> Document: ...

    async def update_by_expression(
        self,
        collection: str,
        key: str,
        expression: Document,
        condition: Optional[Document] = None,
    ) -> Optional[Document]: ...

    async def query_by_index(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[Document]: ...

    async def scan(self, collection: str, filter: Optional[Document] = None) -> List[Document]: ...

    async def delete(self, collection: str, key: str) -> bool: ...


class MongoDocumentStore:
    """DocumentStoreProtocol implementation backed by Motor collections."""

    def __init__(self, db_manager_instance: DatabaseManager = None, key_fields: Dict[str, str] = None):
        self.db_manager = db_manager_instance or db_manager
        self.key_fields = key_fields or default_key_fields()

    def key_field(self, collection: str) -> str:
        return self.key_fields.get(collection, "id")

    def _key_filter(self, collection: str, key: str) -> Document:
        return {self.key_field(collection): key}

    @staticmethod
    def _strip(document: Optional[Document]) -> Optional[Document]:
        if document is None:
            return None
        document = dict(document)
        document.pop("_id", None)
        return document

    def _wrap(self, collection: str, operation: str, start_time: float, error: PyMongoError, query=None):
        self.db_manager.log_query_error(collection, operation, start_time, error, query)
        if isinstance(error, DuplicateKeyError):
            return DuplicateDocument(f"Duplicate key in {collection}", operation=operation, collection=collection)
        return StorageError(f"{operation} on {collection} failed: {error}", operation=operation, collection=collection)

    async def get(self, collection: str, key: str) -> Optional[Document]:
        query = self._key_filter(collection, key)
        start_time = self.db_manager.log_query_start(collection, "find_one", query)
        try:
            document = await self.db_manager.get_collection(collection).find_one(query)
        except PyMongoError as e:
            raise self._wrap(collection, "find_one", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "find_one", start_time, 1 if document else 0)
        return self._strip(document)

    async def put(self, collection: str, item: Document) -> Document:
        query = self._key_filter(collection, item[self.key_field(collection)])
        start_time = self.db_manager.log_query_start(collection, "replace_one", query)
        try:
            await self.db_manager.get_collection(collection).replace_one(query, dict(item), upsert=True)
        except PyMongoError as e:
            raise self._wrap(collection, "replace_one", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "replace_one", start_time)
        return self._strip(item)

    async def insert(self, collection: str, item: Document) -> Document:
        start_time = self.db_manager.log_query_start(collection, "insert_one")
        try:
            # insert_one mutates its argument with _id, so hand it a copy
            await self.db_manager.get_collection(collection).insert_one(dict(item))
        except PyMongoError as e:
            raise self._wrap(collection, "insert_one", start_time, e) from e
        self.db_manager.log_query_success(collection, "insert_one", start_time)
        return self._strip(item)

    async def update_by_expression(
        self,
        collection: str,
        key: str,
        expression: Document,
        condition: Optional[Document] = None,
    ) -> Optional[Document]:
        query = {**(condition or {}), **self._key_filter(collection, key)}
        start_time = self.db_manager.log_query_start(collection, "find_one_and_update", query)
        try:
            document = await self.db_manager.get_collection(collection).find_one_and_update(
                query, expression, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise self._wrap(collection, "find_one_and_update", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "find_one_and_update", start_time, 1 if document else 0)
        return self._strip(document)

    async def query_by_index(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[Document]:
        query = {field: value}
        start_time = self.db_manager.log_query_start(collection, "find", query)
        try:
            cursor = self.db_manager.get_collection(collection).find(query)
            if limit:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise self._wrap(collection, "find", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "find", start_time, len(documents))
        return [self._strip(doc) for doc in documents]

    async def scan(self, collection: str, filter: Optional[Document] = None) -> List[Document]:
        query = filter or {}
        start_time = self.db_manager.log_query_start(collection, "scan", query)
        try:
            documents = await self.db_manager.get_collection(collection).find(query).to_list(length=None)
        except PyMongoError as e:
            raise self._wrap(collection, "scan", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "scan", start_time, len(documents))
        return [self._strip(doc) for doc in documents]

    async def delete(self, collection: str, key: str) -> bool:
        query = self._key_filter(collection, key)
        start_time = self.db_manager.log_query_start(collection, "delete_one", query)
        try:
            result = await self.db_manager.get_collection(collection).delete_one(query)
        except PyMongoError as e:
            raise self._wrap(collection, "delete_one", start_time, e, query) from e
        self.db_manager.log_query_success(collection, "delete_one", start_time, result.deleted_count)
        return result.deleted_count > 0


document_store = MongoDocumentStore()
