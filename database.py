"""
MongoDB access for the back-office.

Collections are named after the lowercased schema class (see schemas.py).
Datetimes are stored as naive UTC, which is also what pymongo hands back.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

import config
from errors import StoreError, ValidationError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise StoreError("Database is not configured")
    return db


def utcnow() -> datetime:
    # BSON keeps millisecond precision; match it so stored values compare equal
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an incoming datetime to the naive UTC form stored in Mongo."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str: Any, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(id_str)


def serialize(doc: Any) -> Any:
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize(x) for x in doc]
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize(v)
            elif k == "hashed_password":
                continue
            else:
                out[k] = serialize(v)
        return out
    return doc


def create_document(database, collection_name: str, data, session=None) -> ObjectId:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    return database[collection_name].insert_one(doc, session=session).inserted_id


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort=None, skip: int = 0) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(database, collection_name: str, filter_dict: Dict[str, Any], page: int, limit: int,
             sort=None, projection=None):
    total = database[collection_name].count_documents(filter_dict)
    cursor = database[collection_name].find(filter_dict, projection)
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    pages = (total + limit - 1) // limit
    return list(cursor), {"page": page, "pages": pages, "total": total}


def ensure_indexes(database) -> None:
    database["collection"].create_index("name", unique=True)
    database["user"].create_index("email", unique=True)
    database["user"].create_index("mobile", unique=True)
    database["coupon"].create_index("coupon_code", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("customer_id")
    database["package"].create_index("package_number", unique=True)
    # Unshipped packages hold a null tracking id, so only string ids are kept unique
    database["package"].create_index(
        "tracking_id", unique=True, partialFilterExpression={"tracking_id": {"$type": "string"}}
    )
    database["productquantity"].create_index(
        [("product_id", ASCENDING), ("size", ASCENDING), ("color", ASCENDING)], unique=True
    )
    database["product"].create_index("collection_id")


def next_sequence(database, name: str, session=None) -> int:
    """Atomically bump and return the named counter."""
    doc = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return doc["seq"]


@contextmanager
def transaction(database):
    """
    Yield a session bound to a multi-document transaction, or None when
    transactions are disabled. Callers pass the yielded value as `session=`
    and keep their own compensating steps for the non-transactional case.
    """
    if not config.USE_TRANSACTIONS:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def sequence_number(prefix: str, created_at: datetime, seq: int) -> str:
    """Human-readable number: prefix, creation epoch millis, then the counter value."""
    millis = int(created_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{prefix}{millis}{seq:03d}"
