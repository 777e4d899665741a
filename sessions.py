"""
Single active login session per user.

A session document carries `activeUserId` only while it is active. The unique
sparse index on that field (see database.ensure_indexes) makes the store
reject a second active session for the same user, whatever order concurrent
logins arrive in.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import COL_SESSIONS, COL_USERS, serialize_doc, utcnow
from errors import AccountSuspended, SessionConflict
from schemas import DeviceInfo, Session

logger = logging.getLogger("rent2reuse.sessions")

REASON_NEW_LOGIN = "forced_by_new_login"
REASON_LOGOUT = "logout"
REASON_SUSPENDED = "account_suspended"


def make_session_id(user_id: str) -> str:
    return f"{user_id}_{int(time.time() * 1000)}"


def create_user_session(database: Database, user_id: str,
                        device_info: Optional[Dict[str, Any]] = None) -> str:
    """Record a new active session and return its id.

    Raises SessionConflict when another session for the user is still active.
    """
    now = utcnow()
    session = Session(
        session_id=make_session_id(user_id),
        user_id=user_id,
        device_info=DeviceInfo(**(device_info or {})),
        is_active=True,
        created_at=now,
        last_active=now,
    )
    doc = session.model_dump(by_alias=True, exclude_none=True)
    doc["_id"] = session.session_id
    doc["activeUserId"] = user_id
    try:
        database[COL_SESSIONS].insert_one(doc)
    except DuplicateKeyError:
        raise SessionConflict()
    logger.info("session created", extra={"userId": user_id, "sessionId": session.session_id})
    return session.session_id


def check_active_session(database: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = database[COL_SESSIONS].find({"userId": user_id, "isActive": True}).sort("createdAt", -1)
    return [serialize_doc(doc) for doc in cursor]


def force_terminate_session(database: Database, session_id: str,
                            reason: str = REASON_NEW_LOGIN) -> Dict[str, Any]:
    """Mark one session inactive. Idempotent: an inactive or unknown session
    yields {"success": False} instead of an error."""
    result = database[COL_SESSIONS].update_one(
        {"_id": session_id, "isActive": True},
        {
            "$set": {"isActive": False, "terminatedAt": utcnow(), "terminationReason": reason},
            "$unset": {"activeUserId": ""},
        },
    )
    if result.modified_count == 0:
        return {"success": False, "error": "Session not found or already inactive"}
    logger.info("session terminated", extra={"sessionId": session_id, "reason": reason})
    return {"success": True}


def terminate_user_sessions(database: Database, user_id: str, except_session_id: Optional[str] = None,
                            reason: str = REASON_NEW_LOGIN) -> Dict[str, Any]:
    """Terminate every active session of a user, one document at a time."""
    terminated = 0
    for session in check_active_session(database, user_id):
        if except_session_id and session["id"] == except_session_id:
            continue
        if force_terminate_session(database, session["id"], reason=reason)["success"]:
            terminated += 1
    return {"success": True, "terminatedCount": terminated}


def is_suspended(user: Optional[Dict[str, Any]]) -> bool:
    return str((user or {}).get("accountStatus") or "active").lower() == "suspended"


def ensure_account_active(database: Database, user_id: str) -> None:
    """Raise AccountSuspended for a suspended account. Unknown users pass."""
    if is_suspended(database[COL_USERS].find_one({"_id": user_id}, {"accountStatus": 1})):
        logger.warning("login refused for suspended account", extra={"userId": user_id})
        raise AccountSuspended()


def update_session_activity(database: Database, session_id: str) -> bool:
    result = database[COL_SESSIONS].update_one(
        {"_id": session_id, "isActive": True}, {"$set": {"lastActive": utcnow()}}
    )
    return result.modified_count == 1


def terminate_current_session(database: Database, session_id: Optional[str]) -> Dict[str, Any]:
    """Logout. `session_id` is the id the device stored at login."""
    if not session_id:
        return {"success": True, "error": None}
    force_terminate_session(database, session_id, reason=REASON_LOGOUT)
    return {"success": True, "error": None}


def login(database: Database, user_id: str, on_conflict: str = "ask",
          device_info: Optional[Dict[str, Any]] = None,
          settle_seconds: Optional[float] = None,
          sleep: Callable[[float], None] = time.sleep) -> Dict[str, Any]:
    """Run the post-authentication session flow.

    on_conflict decides what happens when the user already has an active
    session elsewhere: "ask" reports the conflict, "abort" leaves everything
    untouched, "terminate" logs the other devices out and continues.
    """
    ensure_account_active(database, user_id)
    active = check_active_session(database, user_id)
    if active:
        if on_conflict == "abort":
            return {"status": "aborted", "sessionId": None, "activeSessions": active}
        if on_conflict != "terminate":
            raise SessionConflict(activeSessions=[_public(s) for s in active])

        terminate_user_sessions(database, user_id)
        settle = config.SESSION_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        if settle > 0:
            sleep(settle)
        remaining = check_active_session(database, user_id)
        if remaining:
            logger.warning("sessions still active after termination",
                           extra={"userId": user_id, "count": len(remaining)})
            terminate_user_sessions(database, user_id)

    try:
        session_id = create_user_session(database, user_id, device_info)
    except SessionConflict:
        # Another device logged in between the check and the insert.
        if on_conflict != "terminate":
            raise SessionConflict(activeSessions=[_public(s) for s in check_active_session(database, user_id)])
        terminate_user_sessions(database, user_id)
        session_id = create_user_session(database, user_id, device_info)
    return {"status": "created", "sessionId": session_id, "terminatedOthers": bool(active)}


def _public(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sessionId": session.get("id"),
        "deviceInfo": session.get("deviceInfo"),
        "createdAt": session.get("createdAt"),
        "lastActive": session.get("lastActive"),
    }
