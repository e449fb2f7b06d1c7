"""
Database access

A single pymongo database handle shared by every request. ``db`` is ``None``
when the server cannot be reached at import time; handlers go through
``get_db()`` so that case surfaces as a 500 instead of an AttributeError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

import config
from errors import ApiError, ValidationFailed

logger = logging.getLogger(__name__)

db = None

try:
    _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[config.DATABASE_NAME]
except PyMongoError as exc:
    logger.error("Unable to configure database client: %s", exc)


def get_db():
    if db is None:
        raise ApiError("Database not available", 500)
    return db


def now() -> datetime:
    return datetime.utcnow()


def to_object_id(value: Union[str, ObjectId], field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed.single(field, f"Invalid {field} format: {value}")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = get_db()[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = get_db()[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


UNIQUE_INDEXES = {
    "category": [("name", ASCENDING)],
    "subcategory": [("name", ASCENDING)],
    "brand": [("name", ASCENDING)],
    "coupon": [("name", ASCENDING)],
    "user": [("email", ASCENDING)],
    "review": [("user", ASCENDING), ("product", ASCENDING)],
}


def ensure_indexes(database=None) -> None:
    database = database if database is not None else db
    if database is None:
        return
    for collection_name, keys in UNIQUE_INDEXES.items():
        try:
            database[collection_name].create_index(keys, unique=True)
        except PyMongoError as exc:
            logger.warning("Unable to ensure unique index on %s: %s", collection_name, exc)
