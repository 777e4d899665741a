from datetime import timedelta

from pymongo.errors import PyMongoError

import pytest

import rentals
from database import COL_CHAT, COL_ITEMS, COL_MESSAGES, COL_OUTBOX, COL_RENT_REQUESTS, COL_USERS
from errors import (
    DuplicateRequestError,
    InvalidTransition,
    LimitReachedError,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)


@pytest.fixture
def owner(make_user):
    return make_user("owner")


@pytest.fixture
def renter(make_user):
    return make_user("renter")


@pytest.fixture
def item(owner, make_item):
    return make_item("owner", price=150.0)


def _rent_used(mongo, uid):
    return mongo[COL_USERS].find_one({"_id": uid})["currentPlan"]["rentUsed"]


def _submit(mongo, item, rental_dates, requester="renter"):
    start, end = rental_dates
    return rentals.submit_request(mongo, requester, item["_id"], start, end, "9:30 AM", "Is it free this weekend?")


def test_parse_pickup_time():
    assert rentals.parse_pickup_time("9:30 AM") == 570
    assert rentals.parse_pickup_time("12:05 AM") == 5
    assert rentals.parse_pickup_time("1:15 PM") == 795
    assert rentals.parse_pickup_time("18:45") == 1125
    assert rentals.parse_pickup_time(60) == 60
    with pytest.raises(ValidationFailed):
        rentals.parse_pickup_time("noon")


def test_submit_creates_request_chat_and_card(mongo, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    assert req["status"] == "pending"
    assert req["rentalDays"] == 2
    assert req["totalPrice"] == 300.0
    assert req["pickupTime"] == 570
    assert req["activeKey"] == f"renter:{item['_id']}"
    assert _rent_used(mongo, "renter") == 1

    chat = mongo[COL_CHAT].find_one({"_id": req["chatId"]})
    assert chat["participants"] == ["renter", "owner"]
    assert chat["rentRequestId"] == req["id"]
    card = mongo[COL_MESSAGES].find_one({"chatId": req["chatId"], "type": "rentRequest"})
    assert card["rentRequestId"] == req["id"]
    kinds = {e["payload"]["type"] for e in mongo[COL_OUTBOX].find()}
    assert kinds == {"RENT_REQUEST", "RENT_SENT"}


def test_duplicate_request_is_rejected(mongo, renter, item, rental_dates):
    first = _submit(mongo, item, rental_dates)
    with pytest.raises(DuplicateRequestError) as exc:
        _submit(mongo, item, rental_dates)
    assert exc.value.extra["requestId"] == first["id"]
    assert mongo[COL_RENT_REQUESTS].count_documents({"requesterId": "renter", "itemId": item["_id"]}) == 1
    assert _rent_used(mongo, "renter") == 1


def test_concurrent_duplicate_is_caught_by_the_store(mongo, renter, item, rental_dates):
    _submit(mongo, item, rental_dates)
    chats_before = mongo[COL_CHAT].count_documents({})
    # Both submissions passed the pre-check before either inserted.
    real_find_one = mongo[COL_RENT_REQUESTS].find_one
    calls = []

    class Collection:
        def __getattr__(self, name):
            return getattr(mongo[COL_RENT_REQUESTS], name)

        def find_one(self, filter_=None, *args, **kwargs):
            calls.append(filter_)
            if len(calls) == 1:
                return None
            return real_find_one(filter_, *args, **kwargs)

    class Database:
        def __getitem__(self, name):
            return Collection() if name == COL_RENT_REQUESTS else mongo[name]

    with pytest.raises(DuplicateRequestError):
        _submit(Database(), item, rental_dates)
    assert mongo[COL_RENT_REQUESTS].count_documents({"activeKey": f"renter:{item['_id']}"}) == 1
    assert _rent_used(mongo, "renter") == 1
    assert mongo[COL_CHAT].count_documents({}) == chats_before


def test_cannot_rent_own_or_unavailable_item(mongo, owner, renter, make_item, rental_dates):
    own = make_item("owner")
    with pytest.raises(NotAuthorized):
        _submit(mongo, own, rental_dates, requester="owner")
    reserved = make_item("owner", status="Reserved")
    with pytest.raises(InvalidTransition):
        _submit(mongo, reserved, rental_dates)


def test_end_date_must_follow_start(mongo, renter, item, rental_dates):
    start, _ = rental_dates
    with pytest.raises(ValidationFailed):
        rentals.submit_request(mongo, "renter", item["_id"], start, start, "9:00 AM")
    assert _rent_used(mongo, "renter") == 0


def test_rent_limit_blocks_submission(mongo, make_user, owner, item, rental_dates):
    make_user("busy", rent_used=5)
    with pytest.raises(LimitReachedError):
        _submit(mongo, item, rental_dates, requester="busy")
    assert mongo[COL_RENT_REQUESTS].count_documents({}) == 0


def test_reject_leaves_item_available_and_posts_notice(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    rejected = rentals.reject_request(mongo, req["id"], "owner")
    assert rejected["status"] == "rejected"
    assert "activeKey" not in rejected
    assert mongo[COL_ITEMS].find_one({"_id": item["_id"]})["itemStatus"] == "Available"
    notice = mongo[COL_MESSAGES].find_one({"chatId": req["chatId"], "type": "requestStatus"})
    assert notice["text"] == "Request declined by owner"
    card = mongo[COL_MESSAGES].find_one({"chatId": req["chatId"], "type": "rentRequest"})
    assert card["status"] == "rejected"
    assert _rent_used(mongo, "renter") == 0
    with pytest.raises(InvalidTransition):
        rentals.reject_request(mongo, req["id"], "owner")


def test_only_owner_responds(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    with pytest.raises(NotAuthorized):
        rentals.accept_request(mongo, req["id"], "renter")


def test_accept_reserves_item_and_rejects_others(mongo, make_user, owner, renter, item, rental_dates):
    make_user("second")
    req = _submit(mongo, item, rental_dates)
    other = _submit(mongo, item, rental_dates, requester="second")

    accepted = rentals.accept_request(mongo, req["id"], "owner")
    assert accepted["status"] == "accepted"
    stored_item = mongo[COL_ITEMS].find_one({"_id": item["_id"]})
    assert stored_item["itemStatus"] == "Reserved"
    assert stored_item["reservedBy"] == "renter"
    assert mongo[COL_CHAT].find_one({"_id": req["chatId"]})["status"] == "accepted"

    loser = mongo[COL_RENT_REQUESTS].find_one({"_id": other["id"]})
    assert loser["status"] == "rejected"
    notice = mongo[COL_MESSAGES].find_one({"chatId": other["chatId"], "type": "requestStatus"})
    assert notice["text"] == "This item has been rented to another user"
    assert _rent_used(mongo, "second") == 0


def test_cancel_twice_releases_once(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    rentals.accept_request(mongo, req["id"], "owner")
    assert rentals.cancel_request(mongo, req["id"], "renter") == {"cancelled": True, "requestId": req["id"]}

    assert mongo[COL_RENT_REQUESTS].find_one({"_id": req["id"]}) is None
    assert mongo[COL_ITEMS].find_one({"_id": item["_id"]})["itemStatus"] == "Available"
    assert mongo[COL_CHAT].find_one({"_id": req["chatId"]})["status"] == "cancelled"
    card = mongo[COL_MESSAGES].find_one({"chatId": req["chatId"], "type": "rentRequest"})
    assert card["status"] == "cancelled"
    assert _rent_used(mongo, "renter") == 0

    with pytest.raises(NotFound):
        rentals.cancel_request(mongo, req["id"], "renter")
    assert _rent_used(mongo, "renter") == 0


def test_cancelled_pair_can_request_again(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    rentals.cancel_request(mongo, req["id"], "renter")
    again = _submit(mongo, item, rental_dates)
    assert again["id"] != req["id"]


def test_edit_pending_request(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    start, end = rental_dates
    edited = rentals.edit_request(mongo, req["id"], "renter", start, end + timedelta(days=1), "10:00", "Longer")
    assert edited["rentalDays"] == 3
    assert edited["totalPrice"] == 450.0
    assert mongo[COL_CHAT].find_one({"_id": req["chatId"]})["itemDetails"]["rentalDays"] == 3
    rentals.accept_request(mongo, req["id"], "owner")
    with pytest.raises(InvalidTransition):
        rentals.edit_request(mongo, req["id"], "renter", start, end, "10:00")


def test_complete_returns_item(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    with pytest.raises(InvalidTransition):
        rentals.complete_request(mongo, req["id"], "owner")
    rentals.accept_request(mongo, req["id"], "owner")
    completed = rentals.complete_request(mongo, req["id"], "owner")
    assert completed["status"] == "completed"
    assert mongo[COL_ITEMS].find_one({"_id": item["_id"]})["itemStatus"] == "Available"
    assert _rent_used(mongo, "renter") == 0


def test_list_requests_by_box(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)
    assert [r["id"] for r in rentals.list_requests(mongo, "renter", box="outgoing")] == [req["id"]]
    assert [r["id"] for r in rentals.list_requests(mongo, "owner", box="incoming", status="pending")] == [req["id"]]
    assert rentals.list_requests(mongo, "owner", box="outgoing") == []


def test_cancel_during_accept_leaves_item_available(mongo, owner, renter, item, rental_dates):
    req = _submit(mongo, item, rental_dates)

    class Items:
        def __getattr__(self, name):
            return getattr(mongo[COL_ITEMS], name)

        def update_one(self, filter_, update, *args, **kwargs):
            result = mongo[COL_ITEMS].update_one(filter_, update, *args, **kwargs)
            if update.get("$set", {}).get("itemStatus") == "Reserved":
                # The requester withdraws between the reservation and the acceptance.
                rentals.cancel_request(mongo, req["id"], "renter")
            return result

    class Database:
        def __getitem__(self, name):
            return Items() if name == COL_ITEMS else mongo[name]

    with pytest.raises(InvalidTransition):
        rentals.accept_request(Database(), req["id"], "owner")
    assert mongo[COL_RENT_REQUESTS].find_one({"_id": req["id"]}) is None
    stored_item = mongo[COL_ITEMS].find_one({"_id": item["_id"]})
    assert stored_item["itemStatus"] == "Available"
    assert "reservedBy" not in stored_item
    assert _rent_used(mongo, "renter") == 0


def test_failed_chat_insert_gives_rent_unit_back(mongo, renter, item, rental_dates):
    class Chats:
        def __getattr__(self, name):
            return getattr(mongo[COL_CHAT], name)

        def insert_one(self, doc):
            raise PyMongoError("write failed")

    class Database:
        def __getitem__(self, name):
            return Chats() if name == COL_CHAT else mongo[name]

    with pytest.raises(PyMongoError):
        _submit(Database(), item, rental_dates)
    assert _rent_used(mongo, "renter") == 0
    assert mongo[COL_RENT_REQUESTS].count_documents({}) == 0
