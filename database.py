"""
MongoDB access

The durable store for users, products, carts and orders. Collection names are
the lowercase of the entity name: "user", "product", "cart", "order".
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import NotFoundError

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url and settings.database_name:
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
    db = client[settings.database_name]


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index("category")
    database["product"].create_index("owner_id")
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    stamp = now()
    document = {**data, "created_at": stamp, "updated_at": stamp}
    result = database[collection_name].insert_one(document)
    return str(result.inserted_id)


def to_object_id(id_str: str, label: str = "Resource") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return serialize_value(doc)
