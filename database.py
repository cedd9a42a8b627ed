"""
MongoDB connection and document helpers.

The client is created once at import from DATABASE_URL / DATABASE_NAME. Route
handlers receive the database through the ``get_db`` dependency and pass it on
to the domain modules, which never import the global handle themselves.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, GEOSPHERE, MongoClient
from pymongo.database import Database

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    return db


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back from stored dates.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Union[str, ObjectId], label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label} format")
    return ObjectId(value)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    return database[collection_name].insert_one(data_dict).inserted_id


def _encode(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {("id" if k == "_id" else k): _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-ready copy of a document: ``_id`` becomes ``id``, ObjectIds and dates become strings."""
    if doc is None:
        return None
    return _encode(doc)


def ensure_indexes(database: Database):
    database["darkstore"].create_index([("location", GEOSPHERE)])
    database["darkstore"].create_index([("pincode", ASCENDING)], unique=True)
    database["inventory"].create_index([("product", ASCENDING), ("store", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("current_location", GEOSPHERE)], sparse=True)
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["order"].create_index([("payment_result.order_id", ASCENDING)], sparse=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", -1)])
    database["settings"].create_index([("site_identifier", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured on %s", database.name)
