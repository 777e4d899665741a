"""
Rent request lifecycle.

    pending --accept--> accepted --complete--> completed
       |                   |
       +--reject--> rejected
       +--cancel--> (deleted)  <--cancel--+

Every transition is a conditional write on the current status, so a request
can only leave a state once. While a request is pending or accepted it holds
`activeKey = "{requesterId}:{itemId}"`; the unique index on that field is
what stops a requester from holding two active requests for the same item.
"""

import logging
from datetime import date, datetime, time as dtime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import chat
import outbox
import quota
from database import COL_CHAT, COL_ITEMS, COL_RENT_REQUESTS, COL_USERS, new_id, serialize_doc, utcnow
from errors import DuplicateRequestError, InvalidTransition, NotAuthorized, NotFound, ValidationFailed
from listings import check_deletable, delete_listing, get_item, owner_fullname
from schemas import ACTIVE_REQUEST_STATUSES, RentRequest

logger = logging.getLogger("rent2reuse.rentals")

ACCEPTED_STATUSES = ["accepted", "approved"]


def active_key(requester_id: str, item_id: str) -> str:
    return f"{requester_id}:{item_id}"


def parse_pickup_time(value) -> int:
    """Minutes after midnight from 'h:mm AM/PM', 'HH:MM' or an int."""
    if isinstance(value, int):
        minutes = value
    else:
        text = str(value).strip().upper()
        modifier = None
        if text.endswith(("AM", "PM")):
            modifier = text[-2:]
            text = text[:-2].strip()
        try:
            hours_str, minutes_str = text.split(":")
            hours, mins = int(hours_str), int(minutes_str)
        except ValueError:
            raise ValidationFailed("Pickup time must look like '9:30 AM'")
        if modifier == "PM" and hours < 12:
            hours += 12
        if modifier == "AM" and hours == 12:
            hours = 0
        minutes = hours * 60 + mins
    if not 0 <= minutes < 24 * 60:
        raise ValidationFailed("Pickup time must be within the day")
    return minutes


def rental_window(start: date, end: date, pickup_minutes: int):
    pickup = dtime(hour=pickup_minutes // 60, minute=pickup_minutes % 60)
    start_at = datetime.combine(start, pickup, tzinfo=timezone.utc)
    end_at = datetime.combine(end, pickup, tzinfo=timezone.utc)
    days = (end - start).days
    if days < 1:
        raise ValidationFailed("End date must be after the start date")
    return start_at, end_at, days


def _fmt_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def get_request(database: Database, request_id: str, user_id: str) -> Dict[str, Any]:
    req = database[COL_RENT_REQUESTS].find_one({"_id": request_id})
    if not req:
        raise NotFound("Request not found")
    if user_id not in (req.get("requesterId"), req.get("ownerId")):
        raise NotAuthorized("You are not part of this request")
    return req


def list_requests(database: Database, user_id: str, box: str = "outgoing",
                  status: Optional[str] = None) -> List[Dict[str, Any]]:
    field = "ownerId" if box == "incoming" else "requesterId"
    filter_: Dict[str, Any] = {field: user_id}
    if status:
        filter_["status"] = status
    cursor = database[COL_RENT_REQUESTS].find(filter_).sort("createdAt", -1)
    return [serialize_doc(doc) for doc in cursor]


def submit_request(database: Database, requester_id: str, item_id: str, start: date, end: date,
                   pickup_time, message: str = "") -> Dict[str, Any]:
    item = get_item(database, item_id)
    owner = item.get("owner", {})
    if owner.get("id") == requester_id:
        raise NotAuthorized("You cannot rent your own item")
    if str(item.get("itemStatus", "")).lower() != "available":
        raise InvalidTransition("This item is not available for rent right now")

    pickup_minutes = parse_pickup_time(pickup_time)
    start_at, end_at, days = rental_window(start, end, pickup_minutes)
    key = active_key(requester_id, item_id)

    existing = database[COL_RENT_REQUESTS].find_one({"activeKey": key})
    if existing:
        raise DuplicateRequestError(requestId=existing["_id"])

    requester = database[COL_USERS].find_one({"_id": requester_id}) or {}
    total_price = round(days * float(item.get("itemPrice", 0)), 2)
    request = RentRequest(
        item_id=item_id,
        item_name=item.get("itemName", ""),
        item_image=(item.get("images") or [""])[0],
        requester_id=requester_id,
        requester_name=owner_fullname(requester),
        owner_id=owner.get("id"),
        owner_name=owner.get("fullname", ""),
        status="pending",
        start_date=start_at,
        end_date=end_at,
        pickup_time=pickup_minutes,
        message=message,
        rental_days=days,
        total_price=total_price,
    )

    quota.check_and_update_limits(database, requester_id, "rent")

    try:
        chat_id = chat.create_request_chat(
            database, requester_id, owner.get("id"), item_id,
            {
                "name": request.item_name,
                "image": request.item_image,
                "price": item.get("itemPrice"),
                "totalPrice": total_price,
                "rentalDays": days,
                "startDate": start_at,
                "endDate": end_at,
                "pickupTime": pickup_minutes,
            },
            message or "New rent request",
        )
    except PyMongoError:
        quota.release_limit(database, requester_id, "rent")
        raise
    doc = request.model_dump(by_alias=True)
    doc["_id"] = new_id()
    doc["chatId"] = chat_id
    doc["activeKey"] = key
    doc["createdAt"] = doc["updatedAt"] = utcnow()
    try:
        database[COL_RENT_REQUESTS].insert_one(doc)
    except DuplicateKeyError:
        # Lost the race against a concurrent submission for the same item.
        _undo_submission(database, requester_id, chat_id)
        existing = database[COL_RENT_REQUESTS].find_one({"activeKey": key}) or {}
        raise DuplicateRequestError(requestId=existing.get("_id"))
    except PyMongoError:
        _undo_submission(database, requester_id, chat_id)
        raise

    database[COL_CHAT].update_one({"_id": chat_id}, {"$set": {"rentRequestId": doc["_id"]}})
    chat.append_message(
        database, chat_id, requester_id, message or "New rent request",
        type_="rentRequest", status="pending", rent_request_id=doc["_id"],
    )
    logger.info("rent request submitted",
                extra={"requestId": doc["_id"], "itemId": item_id, "requesterId": requester_id})

    outbox.notify(
        database, owner.get("id"), "RENT_REQUEST", "New Rental Request",
        f"{request.requester_name or 'Someone'} wants to rent your {request.item_name} "
        f"for {days} days on {_fmt_date(start_at)} to {_fmt_date(end_at)}.",
        {"itemId": item_id, "requestId": doc["_id"], "route": "/tools", "params": {"tab": "incoming"}},
    )
    outbox.notify(
        database, requester_id, "RENT_SENT", "Rental Request Submitted",
        f"Your rental request for {request.item_name} has been submitted to the owner. "
        "You'll be notified when they respond.",
        {"requestId": doc["_id"], "route": "/tools", "params": {"tab": "outgoing"}},
    )
    return serialize_doc(doc)


def _undo_submission(database: Database, requester_id: str, chat_id: str) -> None:
    quota.release_limit(database, requester_id, "rent")
    database[COL_CHAT].delete_one({"_id": chat_id})


def _release_item(database: Database, item_id: str, requester_id: str, request_id: str) -> bool:
    """Return a Reserved item to Available, only if this request holds the reservation."""
    result = database[COL_ITEMS].update_one(
        {
            "_id": item_id,
            "itemStatus": "Reserved",
            "reservedBy": requester_id,
            "reservedRequestId": {"$in": [request_id, None]},
        },
        {"$set": {"itemStatus": "Available", "updatedAt": utcnow()},
         "$unset": {"reservedBy": "", "reservedRequestId": "", "reservedAt": ""}},
    )
    return result.modified_count == 1


def edit_request(database: Database, request_id: str, requester_id: str, start: date, end: date,
                 pickup_time, message: str = "") -> Dict[str, Any]:
    req = get_request(database, request_id, requester_id)
    if req.get("requesterId") != requester_id:
        raise NotAuthorized("Only the requester can edit this request")
    item = get_item(database, req["itemId"])
    pickup_minutes = parse_pickup_time(pickup_time)
    start_at, end_at, days = rental_window(start, end, pickup_minutes)
    total_price = round(days * float(item.get("itemPrice", 0)), 2)
    changes = {
        "startDate": start_at,
        "endDate": end_at,
        "pickupTime": pickup_minutes,
        "message": message,
        "rentalDays": days,
        "totalPrice": total_price,
        "updatedAt": utcnow(),
    }
    updated = database[COL_RENT_REQUESTS].find_one_and_update(
        {"_id": request_id, "status": "pending"}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        raise InvalidTransition("Only pending requests can be edited")
    if req.get("chatId"):
        database[COL_CHAT].update_one({"_id": req["chatId"]}, {"$set": {
            "itemDetails.startDate": start_at,
            "itemDetails.endDate": end_at,
            "itemDetails.rentalDays": days,
            "itemDetails.pickupTime": pickup_minutes,
            "itemDetails.totalPrice": total_price,
        }})
    return serialize_doc(updated)


def _owner_request(database: Database, request_id: str, owner_id: str) -> Dict[str, Any]:
    req = database[COL_RENT_REQUESTS].find_one({"_id": request_id})
    if not req:
        raise NotFound("Request not found")
    if req.get("ownerId") != owner_id:
        raise NotAuthorized("Only the item owner can respond to this request")
    return req


def accept_request(database: Database, request_id: str, owner_id: str) -> Dict[str, Any]:
    req = _owner_request(database, request_id, owner_id)
    if req.get("status") != "pending":
        raise InvalidTransition("Only pending requests can be accepted")
    now = utcnow()
    # The item is reserved first so a request that disappears meanwhile
    # can only leave behind a reservation this call rolls back itself.
    reserved = database[COL_ITEMS].update_one(
        {"_id": req["itemId"], "itemStatus": "Available"},
        {"$set": {"itemStatus": "Reserved", "reservedBy": req["requesterId"], "reservedRequestId": request_id,
                  "reservedAt": now, "updatedAt": now}},
    )
    if reserved.modified_count == 0:
        raise InvalidTransition("This item is no longer available")

    accepted = database[COL_RENT_REQUESTS].find_one_and_update(
        {"_id": request_id, "status": "pending"},
        {"$set": {"status": "accepted", "acceptedAt": now, "updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if accepted is None:
        _release_item(database, req["itemId"], req["requesterId"], request_id)
        raise InvalidTransition("Only pending requests can be accepted")

    chat_id = req.get("chatId")
    if chat_id:
        chat.update_request_card(database, chat_id, request_id, "accepted")
        chat.set_chat_status(database, chat_id, "accepted")
        chat.post_status_notice(database, chat_id, owner_id, "Request accepted by owner", "accepted")

    others = list(database[COL_RENT_REQUESTS].find(
        {"itemId": req["itemId"], "status": "pending", "_id": {"$ne": request_id}}
    ))
    for other in others:
        _reject(database, other, owner_id, "This item has been rented to another user")

    logger.info("rent request accepted",
                extra={"requestId": request_id, "itemId": req["itemId"], "autoRejected": len(others)})
    outbox.notify(
        database, req["requesterId"], "RENT_REQUEST_ACCEPTED", "Request Accepted!",
        f"Your rental request for {req.get('itemName')} has been accepted",
        {"route": "/chat", "params": {"id": chat_id}},
    )
    return serialize_doc(accepted)


def _reject(database: Database, req: Dict[str, Any], actor_id: str, text: str) -> bool:
    now = utcnow()
    rejected = database[COL_RENT_REQUESTS].find_one_and_update(
        {"_id": req["_id"], "status": "pending"},
        {"$set": {"status": "rejected", "rejectedAt": now, "updatedAt": now}, "$unset": {"activeKey": ""}},
    )
    if rejected is None:
        return False
    quota.release_limit(database, req["requesterId"], "rent")

    chat_id = req.get("chatId")
    if chat_id:
        chat.update_request_card(database, chat_id, req["_id"], "rejected")
        chat.set_chat_status(database, chat_id, "rejected")
        chat.post_status_notice(database, chat_id, actor_id, text, "rejected")
    outbox.notify(
        database, req["requesterId"], "RENT_REQUEST_DECLINED", "Request Declined",
        f"Your rental request for {req.get('itemName')} has been declined. {text}",
        {"route": "/chat", "params": {"id": chat_id, "requestId": req["_id"]}},
    )
    logger.info("rent request rejected", extra={"requestId": req["_id"], "reason": text})
    return True


def reject_request(database: Database, request_id: str, owner_id: str) -> Dict[str, Any]:
    req = _owner_request(database, request_id, owner_id)
    if not _reject(database, req, owner_id, "Request declined by owner"):
        raise InvalidTransition("Only pending requests can be rejected")
    return serialize_doc(database[COL_RENT_REQUESTS].find_one({"_id": request_id}))


def reject_pending_for_item(database: Database, item_id: str, actor_id: str, text: str) -> int:
    pending = list(database[COL_RENT_REQUESTS].find({"itemId": item_id, "status": "pending"}))
    return sum(1 for req in pending if _reject(database, req, actor_id, text))


def remove_listing(database: Database, bucket, item_id: str, owner_id: str) -> Dict[str, Any]:
    """Delete an owner's Available listing after declining its pending requests."""
    check_deletable(database, item_id, owner_id)
    rejected = reject_pending_for_item(database, item_id, owner_id, "This listing was removed by the owner")
    result = delete_listing(database, bucket, item_id, owner_id)
    return {**result, "rejectedRequests": rejected}


def cancel_request(database: Database, request_id: str, requester_id: str) -> Dict[str, Any]:
    """Requester withdraws a pending or accepted request.

    The request document is removed; removal is the guarded step, so a second
    cancel finds nothing and never releases quota twice.
    """
    req = get_request(database, request_id, requester_id)
    if req.get("requesterId") != requester_id:
        raise NotAuthorized("Only the requester can cancel this request")
    removed = database[COL_RENT_REQUESTS].find_one_and_delete(
        {"_id": request_id, "requesterId": requester_id, "status": {"$in": list(ACTIVE_REQUEST_STATUSES)}}
    )
    if removed is None:
        raise InvalidTransition("This request can no longer be cancelled")
    quota.release_limit(database, requester_id, "rent")

    if removed.get("status") in ACCEPTED_STATUSES:
        _release_item(database, removed["itemId"], requester_id, request_id)

    chat_id = removed.get("chatId")
    if chat_id:
        chat.set_chat_status(database, chat_id, "cancelled")
        chat.update_request_card(database, chat_id, request_id, "cancelled")
        chat.post_status_notice(database, chat_id, requester_id, "Request cancelled by requester", "cancelled")

    logger.info("rent request cancelled", extra={"requestId": request_id, "previousStatus": removed.get("status")})
    outbox.notify(
        database, removed["ownerId"], "RENT_REQUEST_CANCELLED", "Request Cancelled",
        f"A rental request for {removed.get('itemName')} was cancelled by the requester",
        {"route": "/chat", "params": {"id": chat_id}},
    )
    return {"cancelled": True, "requestId": request_id}


def complete_request(database: Database, request_id: str, owner_id: str) -> Dict[str, Any]:
    """Owner closes an accepted rental once the item is back."""
    req = _owner_request(database, request_id, owner_id)
    now = utcnow()
    completed = database[COL_RENT_REQUESTS].find_one_and_update(
        {"_id": request_id, "status": {"$in": ACCEPTED_STATUSES}},
        {"$set": {"status": "completed", "completedAt": now, "updatedAt": now}, "$unset": {"activeKey": ""}},
        return_document=ReturnDocument.AFTER,
    )
    if completed is None:
        raise InvalidTransition("Only accepted requests can be completed")
    quota.release_limit(database, req["requesterId"], "rent")
    _release_item(database, req["itemId"], req["requesterId"], request_id)
    chat_id = req.get("chatId")
    if chat_id:
        chat.update_request_card(database, chat_id, request_id, "completed")
        chat.set_chat_status(database, chat_id, "completed")
        chat.post_status_notice(database, chat_id, owner_id, "Rental completed", "completed")
    logger.info("rent request completed", extra={"requestId": request_id})
    outbox.notify(
        database, req["requesterId"], "RENTAL_COMPLETED", "Rental Completed",
        f"Your rental of {req.get('itemName')} is complete. Thanks for returning it!",
        {"route": "/chat", "params": {"id": chat_id}},
    )
    return serialize_doc(completed)
