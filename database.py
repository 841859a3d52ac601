from __future__ import annotations
import os
import string
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_USER_URL = os.getenv("DATABASE_USER_URL") or DATABASE_URL
DATABASE_NAME = os.getenv("DATABASE_NAME", "restaurant")

_client: Optional[MongoClient] = None
_db = None
_user_client: Optional[MongoClient] = None
_user_db = None


def get_db():
    """Service-level database handle, used for every write and for private reads."""
    global _client, _db
    if _db is None:
        _client = MongoClient(DATABASE_URL)
        _db = _client[DATABASE_NAME]
    return _db


def get_user_db():
    """Restricted database handle for public, user-context reads (menu, announcements)."""
    global _user_client, _user_db
    if _user_db is None:
        if DATABASE_USER_URL == DATABASE_URL:
            _user_db = get_db()
        else:
            _user_client = MongoClient(DATABASE_USER_URL)
            _user_db = _user_client[DATABASE_NAME]
    return _user_db


def collection(name: str) -> Collection:
    return get_db()[name]


def user_collection(name: str) -> Collection:
    return get_user_db()[name]


def utcnow() -> datetime:
    # naive UTC, matching what pymongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_base36(value: int) -> str:
    digits = string.digits + string.ascii_lowercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def object_id(id_str: Any) -> Optional[ObjectId]:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    col = collection(collection_name)
    now = utcnow()
    data = {
        **data,
        "created_at": data.get("created_at") or now,
        "updated_at": now,
    }
    res = col.insert_one(data)
    return str(res.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: int = 100, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    col = collection(collection_name)
    cursor = col.find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def ensure_indexes() -> None:
    db = get_db()
    db["users"].create_index([("phone", ASCENDING)], unique=True, sparse=True)
    db["users"].create_index([("session_token", ASCENDING)], sparse=True)
    db["orders"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    db["orders"].create_index([("session_id", ASCENDING)])
    db["guest_sessions"].create_index([("guest_phone", ASCENDING), ("status", ASCENDING)])
    # one bill per scope key; the losing concurrent insert fails here
    db["bills"].create_index([("bill_number", ASCENDING)], unique=True)
    db["bills"].create_index([("session_id", ASCENDING)], unique=True, sparse=True)
    db["bills"].create_index([("order_id", ASCENDING)], unique=True, sparse=True)
    db["bill_items"].create_index([("bill_id", ASCENDING)])
    db["otp_codes"].create_index([("phone", ASCENDING), ("created_at", ASCENDING)])
