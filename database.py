"""
MongoDB access for the waste ledger.

Every collection is named after the lowercase pydantic schema in schemas.py:
- User -> "user"
- Report -> "report"
- RewardAccount -> "rewardaccount"

Modules go through store() so that driver failures surface as
PersistenceError instead of raw pymongo exceptions.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

import config
from errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

db = None
if config.DATABASE_URL:
    try:
        _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
        db = _client[config.DATABASE_NAME]
    except PyMongoError as e:
        logger.error(f"Error connecting to MongoDB: {e}")


def get_db():
    if db is None:
        raise PersistenceError("Database not configured")
    return db


@contextmanager
def store(action: str = "database operation"):
    """Yield the database, turning driver errors into PersistenceError."""
    handle = get_db()
    try:
        yield handle
    except PyMongoError as e:
        logger.error(f"Database error during {action}: {e}")
        raise PersistenceError(f"{action} failed") from e


def undo(action: str, fn, *args) -> None:
    """Run one compensating step of a failed workflow; a failure here is logged, not raised."""
    try:
        fn(*args)
    except PersistenceError:
        logger.exception(f"Rollback step failed: {action}")


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, what: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {what}: {value!r}")


def doc_to_dict(doc: Optional[dict]) -> Optional[dict]:
    """Copy a stored document with its ObjectId exposed as a string "id"."""
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        payload = data.model_dump(exclude_none=True)
    else:
        payload = {k: v for k, v in data.items() if v is not None}
    stamp = now()
    payload.setdefault("created_at", stamp)
    payload.setdefault("updated_at", stamp)
    with store(f"insert into {collection_name}") as handle:
        result = handle[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None) -> list:
    with store(f"read from {collection_name}") as handle:
        cursor = handle[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)


def ensure_indexes() -> None:
    """Create the uniqueness constraints the workflows rely on. Safe to call repeatedly."""
    with store("index creation") as handle:
        handle["user"].create_index([("email", ASCENDING)], unique=True)
        handle["rewardaccount"].create_index([("user_id", ASCENDING)], unique=True)
        handle["collectedwaste"].create_index([("report_id", ASCENDING)], unique=True)
        handle["transaction"].create_index([("event_key", ASCENDING)], unique=True, sparse=True)
        handle["transaction"].create_index([("user_id", ASCENDING), ("date", ASCENDING)])
        handle["session"].create_index([("token", ASCENDING)], unique=True)
        handle["notification"].create_index([("user_id", ASCENDING), ("is_read", ASCENDING)])
    logger.info("Database indexes ready")
