"""
Conversations between renters and owners.

Messages are append-only and totally ordered per chat by the server-assigned
(createdAt, seq) pair; seq comes from an atomic counter on the chat document,
so the order never depends on when the client's write arrived.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import COL_CHAT, COL_MESSAGES, new_id, serialize_doc, utcnow
from errors import InvalidTransition, NotAuthorized, NotFound, ValidationFailed
from schemas import Assessment, Chat, Message

logger = logging.getLogger("rent2reuse.chat")

OWNER_GUIDANCE = "Please review the assessment and confirm receipt."
RENTER_GUIDANCE = "Awaiting the owner's acknowledgment."


def pair_chat_id(user_a: str, user_b: str) -> str:
    return "_".join(sorted((user_a, user_b)))


def get_chat(database: Database, chat_id: str, user_id: str) -> Dict[str, Any]:
    chat = database[COL_CHAT].find_one({"_id": chat_id})
    if not chat:
        raise NotFound("Chat not found")
    if user_id not in chat.get("participants", []):
        raise NotAuthorized("You are not part of this conversation")
    return chat


def list_chats(database: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = database[COL_CHAT].find({"participants": user_id}).sort("lastMessageTime", DESCENDING)
    return [serialize_doc(c) for c in cursor]


def open_direct_chat(database: Database, user_id: str, recipient_id: str) -> Dict[str, Any]:
    if user_id == recipient_id:
        raise ValidationFailed("You cannot message yourself")
    chat_id = pair_chat_id(user_id, recipient_id)
    doc = Chat(participants=[user_id, recipient_id],
               unread_counts={user_id: 0, recipient_id: 0}).model_dump(by_alias=True)
    doc["createdAt"] = utcnow()
    doc["messageSeq"] = 0
    database[COL_CHAT].update_one({"_id": chat_id}, {"$setOnInsert": doc}, upsert=True)
    return serialize_doc(database[COL_CHAT].find_one({"_id": chat_id}))


def create_request_chat(database: Database, requester_id: str, owner_id: str,
                        item_id: str, item_details: Dict[str, Any], first_message: str) -> str:
    """Create the conversation that carries one rent request."""
    now = utcnow()
    doc = Chat(
        participants=[requester_id, owner_id],
        item_id=item_id,
        requester_id=requester_id,
        owner_id=owner_id,
        status="pending",
        last_message=first_message,
        last_message_time=now,
        last_sender=requester_id,
        unread_counts={requester_id: 0, owner_id: 0},
    ).model_dump(by_alias=True)
    doc["_id"] = new_id()
    doc["itemDetails"] = item_details
    doc["createdAt"] = now
    doc["messageSeq"] = 0
    database[COL_CHAT].insert_one(doc)
    return doc["_id"]


def append_message(database: Database, chat_id: str, sender_id: str, text: str,
                   type_: str = "message", **fields: Any) -> Dict[str, Any]:
    """Append a message and update the chat summary and unread counters."""
    now = utcnow()
    chat = database[COL_CHAT].find_one_and_update(
        {"_id": chat_id},
        {"$inc": {"messageSeq": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if chat is None:
        raise NotFound("Chat not found")

    message = Message(chat_id=chat_id, sender_id=sender_id, text=text, type=type_, **fields)
    doc = message.model_dump(by_alias=True, exclude_none=True)
    doc["_id"] = new_id()
    doc["seq"] = chat["messageSeq"]
    doc["createdAt"] = now
    if fields.get("assessment_type"):
        doc["assessmentKey"] = f"{chat_id}:{fields['assessment_type']}"
    database[COL_MESSAGES].insert_one(doc)

    unread = {f"unreadCounts.{p}": 1 for p in chat.get("participants", []) if p != sender_id}
    update: Dict[str, Any] = {"$set": {"lastMessage": text, "lastMessageTime": now, "lastSender": sender_id}}
    if unread:
        update["$inc"] = unread
    database[COL_CHAT].update_one({"_id": chat_id}, update)
    return serialize_doc(doc)


def send_message(database: Database, chat_id: str, sender_id: str, text: str) -> Dict[str, Any]:
    get_chat(database, chat_id, sender_id)
    text = (text or "").strip()
    if not text:
        raise ValidationFailed("Message is too short")
    return append_message(database, chat_id, sender_id, text)


def post_status_notice(database: Database, chat_id: str, sender_id: str, text: str,
                       status: str) -> Dict[str, Any]:
    return append_message(database, chat_id, sender_id, text, type_="requestStatus", status=status)


def set_chat_status(database: Database, chat_id: str, status: str) -> None:
    database[COL_CHAT].update_one({"_id": chat_id}, {"$set": {"status": status, "updatedAt": utcnow()}})


def update_request_card(database: Database, chat_id: str, request_id: str, status: str) -> int:
    result = database[COL_MESSAGES].update_many(
        {"chatId": chat_id, "type": "rentRequest", "rentRequestId": request_id},
        {"$set": {"status": status, "updatedAt": utcnow()}},
    )
    return result.modified_count


def assessment_guidance(message: Dict[str, Any], chat: Dict[str, Any], viewer_id: str) -> str:
    if message.get("acknowledgedAt"):
        return "Acknowledged by the owner."
    return OWNER_GUIDANCE if viewer_id == chat.get("ownerId") else RENTER_GUIDANCE


def list_messages(database: Database, chat_id: str, user_id: str,
                  limit: Optional[int] = None) -> Dict[str, Any]:
    """Most recent `limit` messages in ascending order, with request cards pinned."""
    chat = get_chat(database, chat_id, user_id)
    limit = limit or config.MESSAGE_PAGE_SIZE
    cursor = (
        database[COL_MESSAGES]
        .find({"chatId": chat_id})
        .sort([("createdAt", DESCENDING), ("seq", DESCENDING)])
        .limit(limit)
    )
    messages = [serialize_doc(m) for m in cursor]
    messages.reverse()
    for m in messages:
        if m.get("type") == "conditionalAssessment":
            m["guidance"] = assessment_guidance(m, chat, user_id)
    pinned_cursor = database[COL_MESSAGES].find({"chatId": chat_id, "type": "rentRequest"}).sort(
        [("createdAt", ASCENDING), ("seq", ASCENDING)]
    )
    return {"messages": messages, "pinned": [serialize_doc(m) for m in pinned_cursor]}


def mark_as_read(database: Database, chat_id: str, user_id: str) -> int:
    """Mark everything the other side sent as read and reset the user's unread counter."""
    get_chat(database, chat_id, user_id)
    now = utcnow()
    result = database[COL_MESSAGES].update_many(
        {"chatId": chat_id, "senderId": {"$ne": user_id}, "read": False},
        {"$set": {"read": True, "readAt": now}},
    )
    database[COL_CHAT].update_one(
        {"_id": chat_id},
        {"$set": {f"unreadCounts.{user_id}": 0, f"lastReadTimestamps.{user_id}": now}},
    )
    return result.modified_count


def submit_assessment(database: Database, chat_id: str, user_id: str,
                      assessment_type: str, assessment: Assessment) -> Dict[str, Any]:
    """Attach a pickup or return condition assessment. Only the renter submits,
    only for an accepted rental, and only once per type."""
    chat = get_chat(database, chat_id, user_id)
    if chat.get("requesterId") != user_id:
        raise NotAuthorized("Only the renter can submit a condition assessment")
    if chat.get("status") != "accepted":
        raise InvalidTransition("Assessments can only be submitted for an accepted rental")
    if database[COL_MESSAGES].find_one({"assessmentKey": f"{chat_id}:{assessment_type}"}):
        raise InvalidTransition(f"A {assessment_type} assessment was already submitted")

    text = f"{assessment_type.capitalize()} condition assessment: {assessment.overall_condition}"
    try:
        message = append_message(
            database, chat_id, user_id, text,
            type_="conditionalAssessment",
            status="submitted",
            assessment_type=assessment_type,
            assessment=assessment,
        )
    except DuplicateKeyError:
        raise InvalidTransition(f"A {assessment_type} assessment was already submitted")
    logger.info("assessment submitted", extra={"chatId": chat_id, "assessmentType": assessment_type})
    message["guidance"] = RENTER_GUIDANCE
    return message


def acknowledge_assessment(database: Database, chat_id: str, message_id: str,
                           user_id: str) -> Dict[str, Any]:
    chat = get_chat(database, chat_id, user_id)
    if chat.get("ownerId") != user_id:
        raise NotAuthorized("Only the owner can acknowledge an assessment")
    updated = database[COL_MESSAGES].find_one_and_update(
        {"_id": message_id, "chatId": chat_id, "type": "conditionalAssessment", "status": "submitted"},
        {"$set": {"status": "acknowledged", "acknowledgedAt": utcnow(), "acknowledgedBy": user_id}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if database[COL_MESSAGES].find_one({"_id": message_id, "chatId": chat_id}) is None:
            raise NotFound("Assessment not found")
        raise InvalidTransition("This assessment was already acknowledged")
    return serialize_doc(updated)
