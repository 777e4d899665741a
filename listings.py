"""Item listings: creation against the list quota, search, edits and removal."""

import logging
import re
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import outbox
import quota
import storage
from database import COL_ITEMS, COL_USERS, new_id, serialize_doc, utcnow
from errors import InvalidTransition, NotAuthorized, NotFound, ValidationFailed
from schemas import Item, Owner

logger = logging.getLogger("rent2reuse.listings")

SORT_FIELDS = {"createdAt", "itemPrice", "itemName"}
EDITABLE_FIELDS = {"itemName", "itemDesc", "itemPrice", "itemCondition", "itemLocation", "category"}


def owner_fullname(user: Dict[str, Any]) -> str:
    parts = [user.get("firstname"), user.get("middlename"), user.get("lastname")]
    return " ".join(p.strip() for p in parts if p and p.strip())


def get_item(database: Database, item_id: str) -> Dict[str, Any]:
    item = database[COL_ITEMS].find_one({"_id": item_id})
    if not item:
        raise NotFound("Item not found")
    return item


def owned_item(database: Database, item_id: str, user_id: str) -> Dict[str, Any]:
    item = get_item(database, item_id)
    if item.get("owner", {}).get("id") != user_id:
        raise NotAuthorized("Only the owner can change this listing")
    return item


def create_listing(database: Database, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Create a listing, consuming one unit of the owner's list quota."""
    user = database[COL_USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")
    try:
        item = Item(owner=Owner(id=user_id, fullname=owner_fullname(user)), item_status="Available", **fields)
    except ValueError as e:
        raise ValidationFailed(str(e).splitlines()[0])

    quota.check_and_update_limits(database, user_id, "list")

    doc = item.model_dump(by_alias=True)
    doc["_id"] = new_id()
    doc["createdAt"] = doc["updatedAt"] = utcnow()
    try:
        database[COL_ITEMS].insert_one(doc)
    except PyMongoError:
        quota.release_limit(database, user_id, "list")
        raise
    logger.info("listing created", extra={"itemId": doc["_id"], "ownerId": user_id})

    outbox.notify(
        database, user_id, "LISTING_CREATED", "Listing Published",
        f"Your item {doc['itemName']} is now listed and visible to renters.",
        {"itemId": doc["_id"], "route": f"/items/{doc['_id']}"},
    )
    return serialize_doc(doc)


def search_listings(database: Database, q: Optional[str] = None, status: Optional[str] = None,
                    owner_id: Optional[str] = None, category: Optional[str] = None,
                    min_price: Optional[float] = None, max_price: Optional[float] = None,
                    sort_by: str = "createdAt", sort_dir: str = "desc",
                    page: int = 1, page_size: int = 20) -> Dict[str, Any]:
    filter_: Dict[str, Any] = {}
    if status:
        filter_["itemStatus"] = status
    if owner_id:
        filter_["owner.id"] = owner_id
    if category:
        filter_["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if min_price is not None or max_price is not None:
        price_cond: Dict[str, Any] = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        filter_["itemPrice"] = price_cond
    if q:
        pattern = re.escape(q)
        filter_["$or"] = [
            {"itemName": {"$regex": pattern, "$options": "i"}},
            {"itemDesc": {"$regex": pattern, "$options": "i"}},
            {"category": {"$regex": pattern, "$options": "i"}},
        ]
    if sort_by not in SORT_FIELDS:
        raise ValidationFailed(f"Cannot sort by {sort_by}")
    page = max(page, 1)
    total = database[COL_ITEMS].count_documents(filter_)
    cursor = (
        database[COL_ITEMS]
        .find(filter_)
        .sort(sort_by, -1 if sort_dir == "desc" else 1)
        .skip((page - 1) * page_size)
        .limit(page_size)
    )
    return {
        "items": [serialize_doc(doc) for doc in cursor],
        "total": total,
        "page": page,
        "pageSize": page_size,
    }


def update_listing(database: Database, item_id: str, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    item = owned_item(database, item_id, user_id)
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationFailed(f"Cannot edit {', '.join(sorted(unknown))}")
    merged = {**item, **changes}
    try:
        Item(**{k: v for k, v in merged.items() if k not in ("_id", "createdAt", "updatedAt")})
    except ValueError as e:
        raise ValidationFailed(str(e).splitlines()[0])
    changes = dict(changes, updatedAt=utcnow())
    updated = database[COL_ITEMS].find_one_and_update(
        {"_id": item_id, "itemStatus": "Available"}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        raise InvalidTransition("This item can only be edited when its status is 'Available'.")
    return serialize_doc(updated)


def add_image(database: Database, bucket, item_id: str, user_id: str,
              data: bytes, content_type: str) -> Dict[str, Any]:
    owned_item(database, item_id, user_id)
    if not data:
        raise ValidationFailed("Image is empty")
    url = storage.upload_bytes(bucket, storage.item_prefix(item_id), data, content_type)
    database[COL_ITEMS].update_one({"_id": item_id}, {"$push": {"images": url}, "$set": {"updatedAt": utcnow()}})
    return serialize_doc(get_item(database, item_id))


def check_deletable(database: Database, item_id: str, user_id: str) -> Dict[str, Any]:
    item = owned_item(database, item_id, user_id)
    if item.get("itemStatus") != "Available":
        raise InvalidTransition("This item can only be deleted when its status is 'Available'.")
    return item


def delete_listing(database: Database, bucket, item_id: str, user_id: str) -> Dict[str, Any]:
    """Delete an Available listing and its stored images, and give the list
    unit back. Pending requests are settled by rentals.remove_listing."""
    check_deletable(database, item_id, user_id)
    deleted = database[COL_ITEMS].delete_one({"_id": item_id, "itemStatus": "Available"})
    if deleted.deleted_count == 0:
        raise InvalidTransition("This item can only be deleted when its status is 'Available'.")
    quota.release_limit(database, user_id, "list")

    try:
        storage.delete_prefix(bucket, storage.item_prefix(item_id))
    except Exception as e:
        # The listing is gone either way; orphaned blobs are only logged.
        logger.error("image cleanup failed", extra={"itemId": item_id, "error": str(e)})
    logger.info("listing deleted", extra={"itemId": item_id})
    return {"deleted": True}
