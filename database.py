"""
Database helpers

Collections mirror the hospital's tables (profiles, doctors, patients,
appointments, medical_records, payments, departments, rooms, specialties...).
Documents keep their business id (patient_id, doctor_id, ...) as the lookup
key; Mongo's own ``_id`` never leaves this layer.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database.url:
    client = MongoClient(settings.database.url)
    db = client[settings.database.name]
    logger.info("Using MongoDB database %s", settings.database.name)
else:
    logger.warning("DATABASE_URL not set, database endpoints will return 503")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def get_optional_db() -> Optional[Database]:
    """Like get_db but hands back None instead of failing the request."""
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands datetimes back naive, in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip ``_id`` and turn datetimes into ISO strings for JSON responses."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            continue
        if isinstance(value, datetime):
            out[key] = as_utc(value).isoformat()
        elif isinstance(value, date):
            out[key] = value.isoformat()
        elif isinstance(value, dict):
            out[key] = serialize(value)
        elif isinstance(value, list):
            out[key] = [serialize(item) if isinstance(item, dict) else item for item in value]
        else:
            out[key] = value
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    """Insert a document stamped with created_at/updated_at and return it."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = data.copy()

    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp

    database[collection_name].insert_one(data_dict)
    return data_dict


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def update_document(database: Database, collection_name: str, filter_dict: dict, changes: dict) -> Optional[Dict[str, Any]]:
    """Apply ``$set`` with a fresh updated_at; returns the updated document or None."""
    payload = dict(changes)
    payload["updated_at"] = now_utc()
    return database[collection_name].find_one_and_update(
        filter_dict,
        {"$set": payload},
        return_document=ReturnDocument.AFTER,
    )


def paginate(
    database: Database,
    collection_name: str,
    filter_dict: dict,
    page: int,
    limit: int,
    sort: Optional[List[tuple]] = None,
) -> Dict[str, Any]:
    total = database[collection_name].count_documents(filter_dict)
    items = get_documents(
        database,
        collection_name,
        filter_dict,
        limit=limit,
        skip=(page - 1) * limit,
        sort=sort,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


PROFILE_FIELDS = ("full_name", "email", "phone_number", "date_of_birth")


def attach_profiles(database: Database, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge name/contact fields from ``profiles`` into serialized role records."""
    ids = [doc["profile_id"] for doc in docs if doc.get("profile_id")]
    profiles = {
        p["id"]: p
        for p in database["profiles"].find({"id": {"$in": ids}}, {field: 1 for field in PROFILE_FIELDS + ("id",)})
    }
    for doc in docs:
        profile = profiles.get(doc.get("profile_id"), {})
        for field in PROFILE_FIELDS:
            doc[field] = profile.get(field)
    return docs


def next_sequence(database: Database, name: str) -> int:
    """Atomically increment and return the counter called ``name``."""
    counter = database["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["value"]
