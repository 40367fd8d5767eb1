"""Database package for Family Organizer."""

from family_organizer.database.document_store import DocumentStoreProtocol, MongoDocumentStore, document_store
from family_organizer.database.manager import DatabaseManager, db_manager

__all__ = ["DatabaseManager", "DocumentStoreProtocol", "MongoDocumentStore", "db_manager", "document_store"]
