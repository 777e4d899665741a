import itertools

import pytest

import classifier
import config
import outbox
import sessions
from conftest import auth
from database import COL_ITEMS, COL_NOTIFICATIONS, COL_SESSIONS, COL_USERS


@pytest.fixture(autouse=True)
def fast_sessions(monkeypatch):
    counter = itertools.count(1)
    monkeypatch.setattr(sessions, "make_session_id", lambda uid: f"{uid}_{next(counter)}")
    monkeypatch.setattr(config, "SESSION_SETTLE_SECONDS", 0)


def test_health(client):
    assert client.get("/").json()["status"] == "ok"
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"


def test_missing_token_is_rejected(client):
    assert client.get("/users/me").status_code == 401


def test_sign_up_creates_profile_and_welcome(client, mongo):
    res = client.post("/auth/sign-up", json={
        "email": "ana@example.com", "password": "secret1", "firstname": "Ana", "lastname": "Reyes",
    })
    assert res.status_code == 200
    assert res.json()["uid"] == "uid-ana"
    user = mongo[COL_USERS].find_one({"_id": "uid-ana"})
    assert user["currentPlan"] is None
    assert user["emailVerified"] is False
    # Background flush delivered the welcome notification.
    assert mongo[COL_NOTIFICATIONS].find_one({"userId": "uid-ana"})["title"] == "Welcome to Rent2Reuse"


def test_sign_up_rejects_bad_names(client):
    res = client.post("/auth/sign-up", json={
        "email": "ana@example.com", "password": "secret1", "firstname": "Ana2", "lastname": "Reyes",
    })
    assert res.status_code == 400
    assert res.json() == {"detail": "First name can only contain letters and spaces.", "code": "validation_failed"}


def test_second_device_conflict_then_terminate(client, mongo):
    creds = {"email": "ana@example.com", "password": "secret1"}
    first = client.post("/auth/sign-in", json=creds).json()
    assert first["status"] == "created"

    conflict = client.post("/auth/sign-in", json=creds)
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "session_conflict"
    assert [s["sessionId"] for s in conflict.json()["activeSessions"]] == [first["sessionId"]]

    aborted = client.post("/auth/sign-in", json={**creds, "onConflict": "abort"}).json()
    assert aborted["status"] == "aborted"

    second = client.post("/auth/sign-in", json={**creds, "onConflict": "terminate"}).json()
    assert second["status"] == "created"
    assert second["terminatedOthers"] is True
    active = client.get("/auth/sessions", headers=auth("uid-ana")).json()["items"]
    assert [s["id"] for s in active] == [second["sessionId"]]

    res = client.post("/auth/logout", headers={**auth("uid-ana"), "X-Session-Id": second["sessionId"]})
    assert res.json() == {"success": True, "error": None}
    assert client.get("/auth/sessions", headers=auth("uid-ana")).json()["items"] == []


def test_logout_of_someone_elses_session(client):
    session_id = client.post("/auth/sign-in", json={"email": "ana@example.com", "password": "secret1"}).json()[
        "sessionId"]
    res = client.post("/auth/logout", headers={**auth("uid-ben"), "X-Session-Id": session_id})
    assert res.status_code == 403


def test_heartbeat_only_for_own_session(client, mongo):
    session_id = client.post("/auth/sign-in", json={"email": "ana@example.com", "password": "secret1"}).json()[
        "sessionId"]
    before = mongo[COL_SESSIONS].find_one({"_id": session_id})["lastActive"]
    res = client.post("/auth/sessions/heartbeat", headers={**auth("uid-ben"), "X-Session-Id": session_id})
    assert res.status_code == 404
    assert mongo[COL_SESSIONS].find_one({"_id": session_id})["lastActive"] == before
    res = client.post("/auth/sessions/heartbeat", headers={**auth("uid-ana"), "X-Session-Id": session_id})
    assert res.json() == {"active": True}


def test_outbox_flush_is_scoped_to_caller(client, mongo):
    outbox.notify(mongo, "u1", "WELCOME", "Welcome", "Hello there")
    outbox.notify(mongo, "u2", "WELCOME", "Welcome", "Hello there")
    assert client.post("/outbox/flush", headers=auth("u1")).json()["delivered"] == 1
    assert mongo[COL_NOTIFICATIONS].count_documents({"userId": "u2"}) == 0


def test_password_reset_cooldown(client, identity_client):
    assert client.post("/auth/password-reset", json={"email": "ana@example.com"}).json()["sent"] is True
    res = client.post("/auth/password-reset", json={"email": "ana@example.com"})
    assert res.status_code == 429
    assert res.json()["code"] == "cooldown_active"
    assert 0 < res.json()["retryAfter"] <= 60
    assert identity_client.reset_emails == ["ana@example.com"]


def test_profile_completion_and_free_plan(client, mongo):
    headers = auth("u1")
    client.post("/users/me", json={"firstname": "Ana", "lastname": "Reyes"}, headers=headers)
    body = client.get("/users/me/profile-completion", headers=headers).json()
    assert body["isComplete"] is False
    assert client.post("/plans/free/claim", headers=headers).status_code == 403

    client.patch("/users/me", json={
        "contactNumber": "09171234567", "birthday": "1995-04-12",
        "location": {"latitude": 14.6, "longitude": 121.0, "address": "Quezon City"},
    }, headers=headers)
    client.post("/users/me/avatar", files={"file": ("me.jpg", b"jpeg", "image/jpeg")}, headers=headers)
    rejected = client.post("/users/me/id-document", files={"file": ("id.jpg", b"jpeg", "image/jpeg")},
                           data={"idNumber": "1234-5678", "idType": "passport"}, headers=headers)
    assert rejected.status_code == 400
    uploaded = client.post("/users/me/id-document", files={"file": ("id.jpg", b"jpeg", "image/jpeg")},
                           data={"idNumber": "1234-5678", "idType": "philsys"}, headers=headers)
    assert uploaded.json()["idVerified"]["idType"] == "philsys"
    stored = mongo[COL_USERS].find_one({"_id": "u1"})["idVerified"]
    assert (stored["idNumber"], stored["idImage"]) == ("1234-5678", uploaded.json()["idDocumentUrl"])
    assert client.get("/users/me/profile-completion", headers=headers).json()["completionPercentage"] == 100

    claimed = client.post("/plans/free/claim", headers=headers)
    assert claimed.status_code == 200
    assert claimed.json()["currentPlan"]["planType"] == "free"
    assert client.post("/plans/free/claim", headers=headers).status_code == 409
    usage = client.get("/users/me/usage", headers=headers).json()["currentPlan"]
    assert (usage["listUsed"], usage["rentUsed"]) == (0, 0)


def test_rental_flow_over_http(client, mongo, make_user, rental_dates):
    make_user("owner")
    make_user("renter")
    make_user("other")
    item = client.post("/items", json={"itemName": "Camping Tent", "itemPrice": 300, "category": "Outdoor"},
                       headers=auth("owner")).json()
    start, end = rental_dates
    form = {"startDate": start.isoformat(), "endDate": end.isoformat(), "pickupTime": "9:30 AM"}

    req = client.post(f"/items/{item['id']}/requests", json=form, headers=auth("renter")).json()
    assert req["status"] == "pending"
    assert req["totalPrice"] == 600
    dup = client.post(f"/items/{item['id']}/requests", json=form, headers=auth("renter"))
    assert dup.status_code == 409
    assert dup.json()["requestId"] == req["id"]
    other = client.post(f"/items/{item['id']}/requests", json=form, headers=auth("other")).json()

    assert client.post(f"/requests/{req['id']}/accept", headers=auth("renter")).status_code == 403
    accepted = client.post(f"/requests/{req['id']}/accept", headers=auth("owner")).json()
    assert accepted["status"] == "accepted"
    assert mongo[COL_ITEMS].find_one({"_id": item["id"]})["itemStatus"] == "Reserved"
    assert client.get(f"/requests/{other['id']}", headers=auth("other")).json()["status"] == "rejected"

    incoming = client.get("/requests", params={"box": "incoming"}, headers=auth("owner")).json()["items"]
    assert {r["status"] for r in incoming} == {"accepted", "rejected"}

    messages = client.get(f"/chats/{req['chatId']}/messages", headers=auth("owner")).json()
    assert messages["pinned"][0]["status"] == "accepted"
    assert client.get(f"/chats/{req['chatId']}/messages", headers=auth("other")).status_code == 403


def test_chat_messages_over_http(client, make_user, rental_dates, make_item):
    make_user("owner")
    make_user("renter")
    item = make_item("owner")
    start, end = rental_dates
    req = client.post(f"/items/{item['_id']}/requests", headers=auth("renter"), json={
        "startDate": start.isoformat(), "endDate": end.isoformat(), "pickupTime": 570,
    }).json()
    chat_id = req["chatId"]

    client.post(f"/chats/{chat_id}/messages", json={"text": "Hi! Still free?"}, headers=auth("renter"))
    chats = client.get("/chats", headers=auth("owner")).json()["items"]
    assert chats[0]["lastMessage"] == "Hi! Still free?"
    assert chats[0]["unreadCounts"]["owner"] >= 1

    assert client.post(f"/chats/{chat_id}/read", headers=auth("owner")).json()["marked"] >= 1
    chats = client.get("/chats", headers=auth("owner")).json()["items"]
    assert chats[0]["unreadCounts"]["owner"] == 0


def test_checkout_over_http(client, mongo, make_user, plans, paypal):
    make_user("u1", list_used=1)
    order = client.post("/payments/checkout", json={"planId": plans["basic"]["id"]}, headers=auth("u1")).json()
    assert order["approvalUrl"].startswith("https://paypal.example/")

    res = client.post(f"/payments/{order['orderId']}/redirect", headers=auth("u1"),
                      json={"url": f"https://www.paypal.com/checkoutnow/error?paymentId=success&token={order['orderId']}"})
    assert res.json()["state"] == "captured"
    receipts = client.get("/transactions", headers=auth("u1")).json()["items"]
    assert len(receipts) == 1
    assert client.get(f"/transactions/{receipts[0]['transactionId']}", headers=auth("u2")).status_code == 404
    current = mongo[COL_USERS].find_one({"_id": "u1"})["currentPlan"]
    assert (current["planType"], current["listUsed"]) == ("basic", 1)


def test_classify(client, monkeypatch):
    seen = {}

    def fake_classify(data, filename, content_type):
        seen["args"] = (data, filename, content_type)
        return [{"itemName": "Drill", "isHighConfidence": True}]

    monkeypatch.setattr(classifier, "classify_image", fake_classify)
    res = client.post("/classify", files={"image": ("drill.jpg", b"jpeg", "image/jpeg")}, headers=auth("u1"))
    assert res.json() == {"items": [{"itemName": "Drill", "isHighConfidence": True}]}
    assert seen["args"] == (b"jpeg", "drill.jpg", "image/jpeg")


def test_rating_and_report_over_http(client, mongo, make_user, make_item, rental_dates):
    make_user("owner")
    make_user("renter")
    item = make_item("owner")
    start, end = rental_dates
    req = client.post(f"/items/{item['_id']}/requests", headers=auth("renter"), json={
        "startDate": start.isoformat(), "endDate": end.isoformat(), "pickupTime": 570,
    }).json()
    assert client.post(f"/requests/{req['id']}/rating", json={"rating": 5}, headers=auth("renter")).status_code == 409
    client.post(f"/requests/{req['id']}/accept", headers=auth("owner"))
    client.post(f"/requests/{req['id']}/complete", headers=auth("owner"))
    assert client.post(f"/requests/{req['id']}/rating", json={"rating": 0}, headers=auth("renter")).status_code == 422
    rated = client.post(f"/requests/{req['id']}/rating", json={"rating": 5, "review": "Smooth pickup"},
                        headers=auth("renter"))
    assert rated.json()["averageRating"] == 5
    ratings = client.get("/users/owner/ratings").json()
    assert ratings["totalRatings"] == 1
    assert ratings["items"][0]["review"] == "Smooth pickup"

    report = client.post("/users/owner/reports", json={"reason": "Fake profile", "description": "Photos are stock"},
                         headers=auth("renter"))
    assert report.json()["status"] == "pending"
    assert mongo[COL_NOTIFICATIONS].find_one({"userId": "renter", "type": "REPORT_ISSUE"})["title"] == "Report Submitted"


def test_suspended_account_cannot_sign_in(client, mongo, make_user):
    make_user("uid-ana", accountStatus="suspended")
    res = client.post("/auth/sign-in", json={"email": "ana@example.com", "password": "secret1"})
    assert res.status_code == 403
    assert res.json()["code"] == "account_suspended"
    assert mongo[COL_SESSIONS].count_documents({"userId": "uid-ana"}) == 0
    assert client.get("/users/me/account-status", headers=auth("uid-ana")).json()["accountStatus"] == "suspended"
