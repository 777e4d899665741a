"""User reports and account suspension."""

import logging
from typing import Any, Dict

from pymongo.database import Database

import outbox
import sessions
from database import COL_REPORTS, COL_USERS, new_id, serialize_doc, utcnow
from errors import NotAuthorized, NotFound, ValidationFailed

logger = logging.getLogger("rent2reuse.moderation")

REPORT_REASONS = (
    "Inappropriate behavior",
    "Harassment or bullying",
    "Spam or scam",
    "Fake profile",
    "Item misrepresentation",
    "Other",
)


def account_status(database: Database, user_id: str) -> Dict[str, Any]:
    user = database[COL_USERS].find_one({"_id": user_id})
    if not user:
        raise NotFound("User not found")
    return {
        "accountStatus": "suspended" if sessions.is_suspended(user) else "active",
        "suspendedAt": user.get("suspendedAt"),
        "suspensionReason": user.get("suspensionReason"),
    }


def set_account_status(database: Database, user_id: str, status: str, reason: str = "") -> Dict[str, Any]:
    """Suspend or reinstate an account. Suspending logs every device out."""
    if status not in ("active", "suspended"):
        raise ValidationFailed(f"Unknown account status: {status}")
    now = utcnow()
    if status == "suspended":
        update = {"$set": {"accountStatus": status, "suspendedAt": now,
                           "suspensionReason": reason, "updatedAt": now}}
    else:
        update = {"$set": {"accountStatus": status, "updatedAt": now},
                  "$unset": {"suspendedAt": "", "suspensionReason": ""}}
    result = database[COL_USERS].update_one({"_id": user_id}, update)
    if result.matched_count == 0:
        raise NotFound("User not found")

    terminated = 0
    if status == "suspended":
        terminated = sessions.terminate_user_sessions(
            database, user_id, reason=sessions.REASON_SUSPENDED)["terminatedCount"]
    logger.warning("account status changed",
                   extra={"userId": user_id, "accountStatus": status, "terminatedSessions": terminated})
    return account_status(database, user_id)


def report_user(database: Database, reporter_id: str, reported_id: str, reason: str,
                description: str) -> Dict[str, Any]:
    if reason not in REPORT_REASONS:
        raise ValidationFailed("Please select a reason for reporting")
    description = (description or "").strip()
    if not description:
        raise ValidationFailed("Please provide details about the issue.")
    if reporter_id == reported_id:
        raise NotAuthorized("You cannot report yourself")
    if database[COL_USERS].find_one({"_id": reported_id}, {"_id": 1}) is None:
        raise NotFound("User not found")

    now = utcnow()
    doc = {
        "_id": new_id(),
        "reportedUserId": reported_id,
        "reporterId": reporter_id,
        "reason": reason,
        "description": description,
        "status": "pending",
        "createdAt": now,
        "updatedAt": now,
    }
    database[COL_REPORTS].insert_one(doc)
    logger.info("user reported", extra={"reportId": doc["_id"], "reportedUserId": reported_id, "reason": reason})

    outbox.notify(
        database, reporter_id, "REPORT_ISSUE", "Report Submitted",
        f"We've received your report regarding {reason.lower()}. "
        "Our team will review this matter and take appropriate action if needed.",
        {"reportReason": reason, "reportedUserId": reported_id, "reportDescription": description[:100]},
    )
    return serialize_doc(doc)
