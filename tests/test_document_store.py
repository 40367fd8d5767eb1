"""
Tests for MongoDocumentStore against a mocked Motor collection.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from family_organizer.database.document_store import DocumentStoreProtocol, MongoDocumentStore
from family_organizer.utils.error_handling import DuplicateDocument, StorageError


@pytest.fixture
def collection():
    mock_collection = MagicMock()
    mock_collection.find_one = AsyncMock()
    mock_collection.replace_one = AsyncMock()
    mock_collection.insert_one = AsyncMock()
    mock_collection.find_one_and_update = AsyncMock()
    mock_collection.delete_one = AsyncMock()

    cursor = MagicMock()
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[])
    mock_collection.find.return_value = cursor
    return mock_collection


@pytest.fixture
def db_manager(collection):
    manager = MagicMock()
    manager.get_collection.return_value = collection
    manager.log_query_start.return_value = 0.0
    return manager


@pytest.fixture
def mongo_store(db_manager):
    return MongoDocumentStore(db_manager_instance=db_manager)


class TestMongoDocumentStore:
    """Key mapping, _id stripping and error wrapping."""

    def test_satisfies_protocol(self, mongo_store):
        assert isinstance(mongo_store, DocumentStoreProtocol)

    @pytest.mark.asyncio
    async def test_get_uses_collection_key_and_strips_object_id(self, mongo_store, collection):
        collection.find_one.return_value = {"_id": "abc", "family_id": "fam_1", "family_name": "Smiths"}

        document = await mongo_store.get("families", "fam_1")

        collection.find_one.assert_awaited_once_with({"family_id": "fam_1"})
        assert document == {"family_id": "fam_1", "family_name": "Smiths"}

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, mongo_store, collection):
        collection.find_one.return_value = None
        assert await mongo_store.get("todos", "nope") is None

    @pytest.mark.asyncio
    async def test_insert_does_not_leak_object_id_into_caller_dict(self, mongo_store, collection):
        def add_object_id(document):
            document["_id"] = "generated"

        collection.insert_one.side_effect = add_object_id
        item = {"id": "t1", "title": "Dishes"}

        result = await mongo_store.insert("todos", item)

        assert "_id" not in item
        assert result == item

    @pytest.mark.asyncio
    async def test_conditional_update_merges_condition_with_key(self, mongo_store, collection):
        collection.find_one_and_update.return_value = {"_id": 1, "family_id": "fam_1", "member_count": 3}

        document = await mongo_store.update_by_expression(
            "families", "fam_1", {"$inc": {"member_count": 1}}, condition={"member_count": {"$lt": 3}}
        )

        collection.find_one_and_update.assert_awaited_once_with(
            {"member_count": {"$lt": 3}, "family_id": "fam_1"},
            {"$inc": {"member_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        assert document == {"family_id": "fam_1", "member_count": 3}

    @pytest.mark.asyncio
    async def test_query_by_index_applies_limit(self, mongo_store, collection):
        cursor = collection.find.return_value
        cursor.to_list.return_value = [{"_id": 1, "id": "u1", "family_id": "fam_1"}]

        documents = await mongo_store.query_by_index("users", "family_id", "fam_1", limit=10)

        collection.find.assert_called_once_with({"family_id": "fam_1"})
        cursor.limit.assert_called_once_with(10)
        assert documents == [{"id": "u1", "family_id": "fam_1"}]

    @pytest.mark.asyncio
    async def test_delete_reports_whether_anything_was_removed(self, mongo_store, collection):
        collection.delete_one.return_value = MagicMock(deleted_count=0)
        assert await mongo_store.delete("todos", "t1") is False

        collection.delete_one.return_value = MagicMock(deleted_count=1)
        assert await mongo_store.delete("todos", "t1") is True

    @pytest.mark.asyncio
    async def test_duplicate_key_becomes_duplicate_document(self, mongo_store, collection, db_manager):
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key error")

        with pytest.raises(DuplicateDocument) as exc_info:
            await mongo_store.insert("families", {"family_id": "fam_1", "family_code": "ABC123"})

        assert exc_info.value.context["collection"] == "families"
        db_manager.log_query_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_driver_failure_becomes_storage_error(self, mongo_store, collection):
        collection.find_one.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(StorageError) as exc_info:
            await mongo_store.get("users", "happy")

        assert not isinstance(exc_info.value, DuplicateDocument)
        assert exc_info.value.http_status == 503
        assert exc_info.value.context["operation"] == "find_one"
