"""
MongoDB access for the marketplace.

`db` is the process-wide handle (None when DATABASE_URL/DATABASE_NAME are not
set). Documents keep the camelCase field names the mobile client reads and use
string `_id`s.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger("rent2reuse.database")

COL_USERS = "users"
COL_NOTIFICATIONS = "notifications"
COL_ITEMS = "items"
COL_RENT_REQUESTS = "rentRequests"
COL_CHAT = "chat"
COL_MESSAGES = "messages"
COL_SESSIONS = "userSessions"
COL_PLANS = "plans"
COL_SUBSCRIPTIONS = "subscription"
COL_TRANSACTIONS = "transactions"
COL_PAYMENTS = "payments"
COL_PASSWORD_RESETS = "passwordResets"
COL_OUTBOX = "outbox"
COL_RATINGS = "ratings"
COL_REPORTS = "reports"

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(collection_name: str, data, database: Optional[Database] = None) -> str:
    """Insert a document, stamping createdAt/updatedAt. Returns the new id."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        payload = data.model_dump(by_alias=True)
    else:
        payload = dict(data)
    now = utcnow()
    payload.setdefault("_id", new_id())
    payload.setdefault("createdAt", now)
    payload["updatedAt"] = now
    target[collection_name].insert_one(payload)
    return payload["_id"]


def ensure_indexes(database: Database) -> None:
    """Create the indexes the business rules rely on.

    The unique sparse indexes are what make "one active request per
    requester/item" and "one active session per user" hold under concurrent
    writers: the keyed field only exists while the document is active.
    """
    database[COL_RENT_REQUESTS].create_index("activeKey", unique=True, sparse=True)
    database[COL_RENT_REQUESTS].create_index([("ownerId", ASCENDING), ("createdAt", DESCENDING)])
    database[COL_RENT_REQUESTS].create_index([("requesterId", ASCENDING), ("createdAt", DESCENDING)])
    database[COL_SESSIONS].create_index("activeUserId", unique=True, sparse=True)
    database[COL_SESSIONS].create_index([("userId", ASCENDING), ("isActive", ASCENDING)])
    database[COL_MESSAGES].create_index(
        [("chatId", ASCENDING), ("createdAt", ASCENDING), ("seq", ASCENDING)]
    )
    database[COL_MESSAGES].create_index("assessmentKey", unique=True, sparse=True)
    database[COL_CHAT].create_index([("participants", ASCENDING), ("lastMessageTime", DESCENDING)])
    database[COL_ITEMS].create_index([("owner.id", ASCENDING), ("createdAt", DESCENDING)])
    database[COL_TRANSACTIONS].create_index("transactionId", unique=True)
    database[COL_PAYMENTS].create_index("paypalOrderId", unique=True)
    database[COL_NOTIFICATIONS].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database[COL_OUTBOX].create_index([("status", ASCENDING), ("createdAt", ASCENDING)])
    database[COL_RATINGS].create_index([("ratedUserId", ASCENDING), ("createdAt", DESCENDING)])
    database[COL_REPORTS].create_index([("reportedUserId", ASCENDING), ("status", ASCENDING)])
    logger.info("indexes ensured", extra={"database": database.name})
