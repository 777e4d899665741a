"""
Retryable outbox for non-critical side effects.

Primary writes (a listing, a rent request, a plan activation) never wait on
or roll back because of these. Entries are enqueued next to the primary write
and delivered afterwards; a failed delivery stays pending until it runs out
of attempts.
"""

import logging
from typing import Any, Callable, Dict, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from database import COL_NOTIFICATIONS, COL_OUTBOX, new_id, utcnow
from schemas import Notification

logger = logging.getLogger("rent2reuse.outbox")


def _deliver_notification(database: Database, payload: Dict[str, Any]) -> None:
    doc = Notification(**payload).model_dump(by_alias=True)
    doc["_id"] = payload.get("notificationId") or new_id()
    doc["createdAt"] = utcnow()
    database[COL_NOTIFICATIONS].replace_one({"_id": doc["_id"]}, doc, upsert=True)


HANDLERS: Dict[str, Callable[[Database, Dict[str, Any]], None]] = {
    "notification": _deliver_notification,
}


def enqueue(database: Database, kind: str, payload: Dict[str, Any]) -> Optional[str]:
    if kind not in HANDLERS:
        raise ValueError(f"Unknown outbox kind: {kind}")
    entry = {
        "_id": new_id(),
        "kind": kind,
        "payload": payload,
        "status": "pending",
        "attempts": 0,
        "lastError": None,
        "createdAt": utcnow(),
    }
    try:
        database[COL_OUTBOX].insert_one(entry)
    except PyMongoError as e:
        logger.error("outbox enqueue failed", extra={"kind": kind, "error": str(e)})
        return None
    return entry["_id"]


def notify(database: Database, user_id: str, type_: str, title: str, message: str,
           data: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Queue an in-app notification for a user."""
    payload = {
        "notificationId": new_id(),
        "userId": user_id,
        "type": type_,
        "title": title,
        "message": message,
        "data": data or {},
    }
    return enqueue(database, "notification", payload)


def flush(database: Database, max_attempts: Optional[int] = None,
          user_id: Optional[str] = None) -> Dict[str, int]:
    """Deliver pending entries, only those addressed to `user_id` when given.
    Returns counts of delivered/retrying/failed."""
    max_attempts = max_attempts or config.OUTBOX_MAX_ATTEMPTS
    counts = {"delivered": 0, "retrying": 0, "failed": 0}
    filter_: Dict[str, Any] = {"status": "pending"}
    if user_id is not None:
        filter_["payload.userId"] = user_id
    pending = list(database[COL_OUTBOX].find(filter_).sort("createdAt", 1))
    for entry in pending:
        # Claim the entry so concurrent flushes don't deliver it twice.
        claimed = database[COL_OUTBOX].find_one_and_update(
            {"_id": entry["_id"], "status": "pending", "attempts": entry["attempts"]},
            {"$set": {"status": "delivering"}, "$inc": {"attempts": 1}},
        )
        if claimed is None:
            continue
        attempts = entry["attempts"] + 1
        handler = HANDLERS[entry["kind"]]
        try:
            handler(database, entry["payload"])
        except Exception as e:
            status = "failed" if attempts >= max_attempts else "pending"
            database[COL_OUTBOX].update_one(
                {"_id": entry["_id"]}, {"$set": {"status": status, "lastError": str(e)[:200]}}
            )
            logger.warning(
                "outbox delivery failed",
                extra={"entryId": entry["_id"], "kind": entry["kind"], "attempts": attempts},
            )
            counts["failed" if status == "failed" else "retrying"] += 1
            continue
        database[COL_OUTBOX].update_one(
            {"_id": entry["_id"]}, {"$set": {"status": "delivered", "deliveredAt": utcnow()}}
        )
        counts["delivered"] += 1
    return counts
