import logging
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bookstore.core.config import settings
from bookstore.core.store import MongoDocumentStore

logger = logging.getLogger(__name__)

# Global MongoDB client
_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None
_store: Optional[MongoDocumentStore] = None


async def connect_to_mongo():
    """Connect to MongoDB."""
    global _client, _database, _store
    _client = AsyncIOMotorClient(
        settings.MONGODB_URI,
        tz_aware=True,
        serverSelectionTimeoutMS=settings.MONGODB_TIMEOUT_MS
    )
    _database = _client[settings.MONGODB_DB_NAME]
    _store = MongoDocumentStore(_database)
    logger.info(f"Connected to MongoDB: {settings.MONGODB_DB_NAME}")


async def close_mongo_connection():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        logger.info("Closed MongoDB connection")


def get_store() -> MongoDocumentStore:
    """Get the document store wrapping the MongoDB database."""
    return _store
