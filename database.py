"""
MongoDB connection and generic document helpers.

The connection is optional: when DATABASE_URL / DATABASE_NAME are not set,
`db` stays None and the API reports the database as unavailable.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
    except Exception as e:
        logger.error("Could not connect to MongoDB: %s", e)
        _client = None
        db = None


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]],
                    database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at / updated_at. Returns the new id."""
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None,
                  database: Optional[Database] = None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def database_status(database: Optional[Database]) -> Dict[str, Any]:
    """Connection report for the health endpoint."""
    status: Dict[str, Any] = {
        "database": "not configured",
        "database_url": bool(DATABASE_URL),
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database is None:
        return status
    status["database_name"] = getattr(database, "name", None)
    status["connection_status"] = "Connected"
    try:
        status["collections"] = database.list_collection_names()[:10]
        status["database"] = "ok"
    except PyMongoError as e:
        status["database"] = f"error: {str(e)[:50]}"
    return status
