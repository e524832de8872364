"""
MongoDB access layer

Holds the shared client and a few helpers the routes use to insert and read
documents. Routes receive the database through the get_db dependency so the
tests can point it at an in-memory store.
"""
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from settings import settings

logger = logging.getLogger(__name__)

BOOKS = "books"
BORROWED_BOOKS = "BorrowedBooksInfo"
USERS = "users"

# MongoClient connects lazily, so importing this module never blocks
client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
db: Database = client[settings.DATABASE_NAME]


def get_db() -> Database:
    return db


def ping() -> None:
    db.command("ping")


def create_document(collection_name: str, data: Union[BaseModel, dict], target: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json", exclude_none=True)
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = (db if target is None else target)[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  target: Optional[Database] = None) -> List[dict]:
    cursor = (db if target is None else target)[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def parse_object_id(value: Any) -> Optional[ObjectId]:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Any) -> Any:
    """Make a document JSON friendly: ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {k: serialize(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    return doc
