"""
MongoDB connection

The client is created once per process. ``db`` is None when DATABASE_URL or
DATABASE_NAME is not set; request handlers report "Database not configured"
in that case.
"""

import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from exceptions import DatabaseNotConfiguredError
from repository import MongoRepository
from settings import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("status")
    database["product"].create_index("status")
    database["product"].create_index("category")
    database["product"].create_index("slug", unique=True, partialFilterExpression={"slug": {"$type": "string"}})
    database["category"].create_index("name", unique=True)
    database["category"].create_index("slug", unique=True, partialFilterExpression={"slug": {"$type": "string"}})
    database["address"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)


_repository = None


def get_repository():
    """FastAPI dependency returning the process-wide repository."""
    global _repository
    if db is None:
        raise DatabaseNotConfiguredError()
    if _repository is None:
        _repository = MongoRepository(client, db)
    return _repository
