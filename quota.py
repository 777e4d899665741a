"""
Plan entitlements and usage counters.

Usage lives on the user document as `currentPlan.{list,rent}{Used,Limit}`.
Every increment is a compare-and-swap on the counter value that was checked,
so two concurrent actions cannot both take the last unit.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import COL_ITEMS, COL_PLANS, COL_RENT_REQUESTS, COL_USERS, create_document, serialize_doc, utcnow
from errors import (
    ConcurrentUpdate,
    LimitReachedError,
    NoPlanError,
    NotFound,
    PlanAlreadyClaimed,
    PlanUnavailable,
    ProfileIncomplete,
)
from profile_completion import evaluate_profile_completion
from schemas import ACTIVE_REQUEST_STATUSES, CurrentPlan, Plan

logger = logging.getLogger("rent2reuse.quota")

COUNTERS = {
    "list": ("listUsed", "listLimit"),
    "rent": ("rentUsed", "rentLimit"),
}
CAS_ATTEMPTS = 5

DEFAULT_PLANS = [
    Plan(plan_type="free", price=0, duration="monthly", rent=5, list=10,
         description="Get started with a few listings and rentals."),
    Plan(plan_type="basic", price=149, duration="monthly", rent=10, list=10,
         description="For regular renters and casual owners."),
    Plan(plan_type="premium", price=299, duration="monthly", rent=30, list=30,
         description="For power users with many tools to share."),
]

ACTION_LABELS = {"list": "listing", "rent": "rental"}


def list_plans(database: Database) -> List[Dict[str, Any]]:
    """Return the plan catalogue, seeding the defaults on first use."""
    plans = list(database[COL_PLANS].find().sort("price", 1))
    if not plans:
        for plan in DEFAULT_PLANS:
            create_document(COL_PLANS, plan, database=database)
        plans = list(database[COL_PLANS].find().sort("price", 1))
    return [serialize_doc(p) for p in plans]


def get_plan(database: Database, plan_id: str) -> Dict[str, Any]:
    plan = database[COL_PLANS].find_one({"_id": plan_id})
    if not plan:
        raise PlanUnavailable()
    return plan


def _counter_keys(action: str):
    try:
        return COUNTERS[action]
    except KeyError:
        raise ValueError(f"Unknown quota action: {action}")


def _active_plan(database: Database, user_id: str) -> Dict[str, Any]:
    user = database[COL_USERS].find_one({"_id": user_id}, {"currentPlan": 1})
    if user is None:
        raise NotFound("User not found")
    plan = user.get("currentPlan")
    if not plan:
        raise NoPlanError()
    if str(plan.get("status", "")).lower() != "active":
        raise NoPlanError("Your subscription is not active. Please update your plan.")
    return plan


def check_and_update_limits(database: Database, user_id: str, action: str) -> Dict[str, Any]:
    """Consume one unit of the user's list or rent quota.

    Raises NoPlanError when no active plan exists and LimitReachedError when
    the counter already reached its limit; the counter is untouched then.
    """
    used_key, limit_key = _counter_keys(action)
    for _ in range(CAS_ATTEMPTS):
        plan = _active_plan(database, user_id)
        used = int(plan.get(used_key) or 0)
        limit = int(plan.get(limit_key) or 0)
        if used >= limit:
            raise LimitReachedError(
                f"You've reached your {ACTION_LABELS[action]} limit ({limit}). "
                f"Current usage: {used}. Please upgrade your plan.",
                used=used,
                limit=limit,
            )
        result = database[COL_USERS].update_one(
            {
                "_id": user_id,
                "currentPlan.planId": plan.get("planId"),
                f"currentPlan.{used_key}": plan.get(used_key),
            },
            {
                "$set": {f"currentPlan.{used_key}": used + 1, "currentPlan.updatedAt": utcnow()},
            },
        )
        if result.modified_count == 1:
            logger.info("quota consumed", extra={"userId": user_id, "action": action, "used": used + 1})
            return {"success": True, "used": used + 1, "limit": limit}
    raise ConcurrentUpdate()


def release_limit(database: Database, user_id: str, action: str) -> bool:
    """Give back one unit. Never takes a counter below zero."""
    used_key, _ = _counter_keys(action)
    result = database[COL_USERS].update_one(
        {"_id": user_id, f"currentPlan.{used_key}": {"$gt": 0}},
        {"$inc": {f"currentPlan.{used_key}": -1}, "$set": {"currentPlan.updatedAt": utcnow()}},
    )
    released = result.modified_count == 1
    if released:
        logger.info("quota released", extra={"userId": user_id, "action": action})
    return released


def get_usage(database: Database, user_id: str) -> Optional[Dict[str, Any]]:
    user = database[COL_USERS].find_one({"_id": user_id}, {"currentPlan": 1})
    if user is None:
        raise NotFound("User not found")
    return user.get("currentPlan")


def reconcile_usage(database: Database, user_id: str) -> Dict[str, int]:
    """Recompute the usage counters from live listings and active requests."""
    list_used = database[COL_ITEMS].count_documents({"owner.id": user_id})
    rent_used = database[COL_RENT_REQUESTS].count_documents(
        {"requesterId": user_id, "status": {"$in": list(ACTIVE_REQUEST_STATUSES)}}
    )
    result = database[COL_USERS].update_one(
        {"_id": user_id, "currentPlan": {"$ne": None}},
        {"$set": {
            "currentPlan.listUsed": list_used,
            "currentPlan.rentUsed": rent_used,
            "currentPlan.updatedAt": utcnow(),
        }},
    )
    if result.matched_count == 0:
        raise NoPlanError()
    logger.info("usage reconciled", extra={"userId": user_id, "listUsed": list_used, "rentUsed": rent_used})
    return {"listUsed": list_used, "rentUsed": rent_used}


def claim_free_plan(database: Database, user_id: str) -> Dict[str, Any]:
    user = database[COL_USERS].find_one({"_id": user_id})
    if user is None:
        raise NotFound("User not found")
    if user.get("currentPlan"):
        raise PlanAlreadyClaimed()
    if not evaluate_profile_completion(user)["isComplete"]:
        raise ProfileIncomplete()

    free_plan = database[COL_PLANS].find_one({"planType": {"$regex": "^free$", "$options": "i"}})
    if not free_plan:
        logger.error("free plan definition missing")
        raise PlanUnavailable("The free plan is not available right now. Please contact support.")

    current = CurrentPlan(
        plan_id=free_plan["_id"],
        plan_type=str(free_plan.get("planType", "free")).lower(),
        rent_limit=int(free_plan.get("rent", 0)),
        list_limit=int(free_plan.get("list", 0)),
        status="active",
        updated_at=utcnow(),
    ).model_dump(by_alias=True)

    # Conditional on "no plan yet" so two concurrent claims cannot both win.
    result = database[COL_USERS].update_one(
        {"_id": user_id, "currentPlan": None},
        {"$set": {"currentPlan": current}},
    )
    if result.modified_count == 0:
        raise PlanAlreadyClaimed()
    logger.info("free plan claimed", extra={"userId": user_id, "planId": free_plan["_id"]})
    return current
