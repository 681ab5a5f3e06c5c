"""
Database Helper Functions

MongoDB helpers shared by the cart, order and payment modules.
Every helper takes the database handle explicitly so request handlers can
receive it through the ``get_db`` dependency (and tests can swap it).
"""

from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
from typing import Union, Optional, List, Dict, Any
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

from config import Config
from errors import ConfigurationError

# Collection names
MENU_ITEMS = "menuitem"
CART_ITEMS = "cart_items"
SETTINGS = "restaurant_settings"
ORDERS = "orders"
ORDER_ITEMS = "order_items"

_client = None
db = None

_config = Config.from_env()
if _config.database_url and _config.database_name:
    _client = MongoClient(_config.database_url)
    db = _client[_config.database_name]

# ------------- Utilities -------------

def to_object_id(id_str: Union[str, ObjectId]) -> Optional[ObjectId]:
    """Parse an id from a URL or body; malformed ids are treated as unknown."""
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None

def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc

def now() -> datetime:
    return datetime.now(timezone.utc)


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise ConfigurationError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def ensure_indexes(database: Database) -> None:
    """One cart line per (user, menu item); order lookups by owner and order."""
    database[CART_ITEMS].create_index(
        [("user_id", ASCENDING), ("menu_item_id", ASCENDING)], unique=True
    )
    database[ORDERS].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database[ORDER_ITEMS].create_index([("order_id", ASCENDING)])

# Helper functions for common database operations

def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    data_dict['created_at'] = now()
    data_dict['updated_at'] = now()

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def create_documents(database: Database, collection_name: str, rows: List[dict]) -> List[str]:
    """Insert several documents in one round trip"""
    stamped = []
    for row in rows:
        data_dict = row.copy()
        data_dict['created_at'] = now()
        data_dict['updated_at'] = now()
        stamped.append(data_dict)
    result = database[collection_name].insert_many(stamped)
    return [str(i) for i in result.inserted_ids]


def get_documents(database: Database, collection_name: str, filter_dict: dict = None, limit: Optional[int] = None, sort: Optional[List[tuple]] = None):
    """Get documents from collection"""
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in list(cursor)]


def get_document_by_id(database: Database, collection_name: str, id_str: str, extra_filter: Optional[dict] = None):
    oid = to_object_id(id_str)
    if oid is None:
        return None
    query = {"_id": oid}
    if extra_filter:
        query.update(extra_filter)
    doc = database[collection_name].find_one(query)
    return serialize_doc(doc) if doc else None


def update_document(database: Database, collection_name: str, id_str: str, update_data: dict, extra_filter: Optional[dict] = None) -> bool:
    """Set fields on one document; ``extra_filter`` makes the update conditional."""
    oid = to_object_id(id_str)
    if oid is None:
        return False
    query = {"_id": oid}
    if extra_filter:
        query.update(extra_filter)
    update_data = dict(update_data, updated_at=now())
    result = database[collection_name].update_one(query, {"$set": update_data})
    return result.matched_count > 0


def delete_document(database: Database, collection_name: str, id_str: str, extra_filter: Optional[dict] = None) -> bool:
    oid = to_object_id(id_str)
    if oid is None:
        return False
    query = {"_id": oid}
    if extra_filter:
        query.update(extra_filter)
    result = database[collection_name].delete_one(query)
    return result.deleted_count > 0


def delete_documents(database: Database, collection_name: str, filter_dict: dict) -> int:
    result = database[collection_name].delete_many(filter_dict)
    return result.deleted_count
