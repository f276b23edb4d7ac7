"""
Database helpers

MongoDB access shared by the API and the services. The connection is
configured from DATABASE_URL and DATABASE_NAME (a .env file is honoured).
Each schema class in schemas.py maps to the collection named after the
lowercased class name.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import RemoteStoreError, ValidationError

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Mongo hands datetimes back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid id")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if database is None:
        raise RemoteStoreError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    if database is None:
        raise RemoteStoreError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif hasattr(v, "isoformat"):
            out[k] = v.isoformat()
        elif isinstance(v, list):
            out[k] = [serialize_doc(i) if isinstance(i, dict) else i for i in v]
        else:
            out[k] = v
    return out


def ensure_indexes(database: Database) -> None:
    """Create the uniqueness constraints the services rely on."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["session"].create_index([("token", ASCENDING)], unique=True)
    database["profile"].create_index([("user_id", ASCENDING)], unique=True)
    database["profile"].create_index([("referral_code", ASCENDING)], unique=True)
    database["cartitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["wishlistitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
    database["referraltransaction"].create_index([("referrer_id", ASCENDING)])
