"""
MongoDB access helpers.

The client is built once from Settings at start-up and handed to the
repositories; nothing in here reads the environment directly.

Collections:
- User -> "user"
- Product -> "product"
- Cart -> "cart"
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Database:
    client = MongoClient(
        settings.DATABASE_URL,
        serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
        connectTimeoutMS=settings.MONGO_TIMEOUT_MS,
        socketTimeoutMS=settings.MONGO_TIMEOUT_MS,
    )
    return client[settings.DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    try:
        db["user"].create_index([("email", ASCENDING)], unique=True)
        db["cart"].create_index([("user_id", ASCENDING)], unique=True)
        db["cart"].create_index([("items.product_id", ASCENDING)])
        db["product"].create_index([("is_active", ASCENDING), ("category", ASCENDING)])
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)


def utcnow() -> datetime:
    # BSON datetimes come back naive UTC, keep comparisons on the same footing
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude={"id"})
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = db[collection_name].insert_one(data_with_meta)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: int = 100,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {}).limit(limit)
    return [to_str_id(d) for d in cursor]
