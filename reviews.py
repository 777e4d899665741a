"""
Ratings left by rental participants.

Each side of a completed rental may rate the other once; rating again
replaces the earlier score. The rated user's document carries the running
aggregate: `totalRatings`, `ratingSum`, a per-star `ratingCount` and the
derived `averageRating`.
"""

import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import outbox
from database import COL_RATINGS, COL_RENT_REQUESTS, COL_USERS, serialize_doc, utcnow
from errors import ConcurrentUpdate, InvalidTransition, NotAuthorized, NotFound, ValidationFailed

logger = logging.getLogger("rent2reuse.reviews")

STARS = ("1", "2", "3", "4", "5")


def rating_id(request_id: str, rater_id: str) -> str:
    return f"{request_id}:{rater_id}"


def _apply_to_aggregate(database: Database, user_id: str, inc: Dict[str, int]) -> None:
    user = database[COL_USERS].find_one_and_update(
        {"_id": user_id}, {"$inc": inc}, return_document=ReturnDocument.AFTER
    )
    if user is None:
        raise NotFound("User not found")
    total = user.get("totalRatings", 0)
    average = round(user.get("ratingSum", 0) / total, 2) if total else 0
    # Only the writer whose view is still current stores the average; a later
    # $inc makes this a no-op and that writer stores its own.
    database[COL_USERS].update_one(
        {"_id": user_id, "totalRatings": total, "ratingSum": user.get("ratingSum", 0)},
        {"$set": {"averageRating": average}},
    )


def rate_rental(database: Database, request_id: str, rater_id: str, rating: int,
                review: str = "") -> Dict[str, Any]:
    """Rate the other participant of a completed rental."""
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailed("Rating must be between 1 and 5")
    req = database[COL_RENT_REQUESTS].find_one({"_id": request_id})
    if not req:
        raise NotFound("Request not found")
    if rater_id not in (req.get("requesterId"), req.get("ownerId")):
        raise NotAuthorized("You are not part of this rental")
    if req.get("status") != "completed":
        raise InvalidTransition("You can rate only after the rental is completed")
    rated_id = req["ownerId"] if rater_id == req["requesterId"] else req["requesterId"]

    now = utcnow()
    key = rating_id(request_id, rater_id)
    doc = {
        "_id": key,
        "ratedUserId": rated_id,
        "raterUserId": rater_id,
        "rating": rating,
        "review": review.strip(),
        "itemId": req.get("itemId"),
        "rentRequestId": request_id,
        "transactionType": "rental",
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        database[COL_RATINGS].insert_one(doc)
        inc = {"totalRatings": 1, "ratingSum": rating, f"ratingCount.{rating}": 1}
        updated = False
    except DuplicateKeyError:
        previous = database[COL_RATINGS].find_one({"_id": key})
        old = previous["rating"]
        replaced = database[COL_RATINGS].update_one(
            {"_id": key, "rating": old},
            {"$set": {"rating": rating, "review": doc["review"], "updatedAt": now}},
        )
        if replaced.modified_count == 0:
            raise ConcurrentUpdate()
        inc = {}
        if old != rating:
            inc = {"ratingSum": rating - old, f"ratingCount.{old}": -1, f"ratingCount.{rating}": 1}
        updated = True

    if inc:
        _apply_to_aggregate(database, rated_id, inc)
    logger.info("rating saved", extra={"ratingId": key, "ratedUserId": rated_id, "updated": updated})
    if not updated:
        outbox.notify(
            database, rated_id, "NEW_RATING", "New Rating",
            f"You received a {rating}-star rating for {req.get('itemName')}.",
            {"route": f"/ratings/{rated_id}", "requestId": request_id},
        )
    saved = database[COL_RATINGS].find_one({"_id": key})
    return {**user_rating(database, rated_id), "rating": serialize_doc(saved), "updated": updated}


def user_rating(database: Database, user_id: str) -> Dict[str, Any]:
    user = database[COL_USERS].find_one({"_id": user_id})
    if not user:
        raise NotFound("User not found")
    counts = user.get("ratingCount") or {}
    return {
        "averageRating": user.get("averageRating", 0),
        "totalRatings": user.get("totalRatings", 0),
        "ratingCount": {star: counts.get(star, 0) for star in STARS},
    }


def list_ratings(database: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = database[COL_RATINGS].find({"ratedUserId": user_id}).sort("createdAt", -1)
    return [serialize_doc(doc) for doc in cursor]
