"""
Database helpers

MongoDB connection and thin document helpers shared by the storage and
order modules. Configure with DATABASE_URL and DATABASE_NAME.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import TransientStoreError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "softshop")

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def get_db():
    if db is None:
        raise TransientStoreError("Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive UTC datetimes unless tz_aware is set
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    # stored and queried due times are naive UTC, which pymongo reads as UTC
    if value is None:
        return None
    return as_utc(value).astimezone(timezone.utc).replace(tzinfo=None)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now_utc()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = get_db()[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    newest_first: bool = True,
) -> List[Dict[str, Any]]:
    cursor = get_db()[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort([("created_at", DESCENDING), ("_id", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    database = get_db()
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["vendor_profile"].create_index([("user_id", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["rating"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["setting"].create_index([("key", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
    database["order"].create_index([("next_status", ASCENDING), ("status_due_at", ASCENDING)])
