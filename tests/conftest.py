from datetime import date, timedelta
from typing import Optional

import mongomock
import pytest
from fastapi import Header, HTTPException
from fastapi.testclient import TestClient

import main
import quota
import storage
from database import COL_ITEMS, COL_PLANS, COL_USERS, ensure_indexes, new_id, utcnow


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def upload_from_string(self, data, content_type=None):
        self.bucket.blobs[self.name] = (data, content_type)

    def make_public(self):
        pass

    @property
    def public_url(self):
        return f"https://storage.example.com/{self.name}"

    def delete(self):
        del self.bucket.blobs[self.name]


class FakeBucket:
    def __init__(self):
        self.blobs = {}

    def blob(self, name):
        return FakeBlob(self, name)

    def list_blobs(self, prefix=""):
        return [FakeBlob(self, name) for name in list(self.blobs) if name.startswith(prefix)]


class FakeIdentityClient:
    def __init__(self):
        self.reset_emails = []
        self.verification_tokens = []
        self.fail_reset = None

    def sign_up(self, email, password):
        return {"localId": f"uid-{email.split('@')[0]}", "idToken": "id-token", "refreshToken": "refresh"}

    def sign_in(self, email, password):
        return {"localId": f"uid-{email.split('@')[0]}", "idToken": "id-token",
                "refreshToken": "refresh", "expiresIn": "3600"}

    def send_password_reset(self, email):
        if self.fail_reset:
            raise self.fail_reset
        self.reset_emails.append(email)

    def send_verification_email(self, id_token):
        self.verification_tokens.append(id_token)


class FakePayPalClient:
    def __init__(self, capture_status="COMPLETED"):
        self.capture_status = capture_status
        self.orders = []
        self.captured = []

    def settlement_amount(self, amount):
        return f"{amount / 56.5:.2f}"

    def create_order(self, value, description, custom_id):
        order_id = f"ORDER-{len(self.orders) + 1}"
        self.orders.append({"id": order_id, "value": value, "customId": custom_id})
        return {
            "id": order_id,
            "status": "CREATED",
            "links": [{"rel": "approve", "href": f"https://paypal.example/checkoutnow?token={order_id}"}],
        }

    def capture_order(self, order_id):
        self.captured.append(order_id)
        return {
            "id": order_id,
            "status": self.capture_status,
            "purchase_units": [{"payments": {"captures": [{"id": f"CAP-{order_id}"}]}}],
        }


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()["rent2reuse_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def identity_client():
    return FakeIdentityClient()


@pytest.fixture
def paypal():
    return FakePayPalClient()


def fake_verify_token(authorization: Optional[str] = Header(None)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    uid = authorization.split(" ", 1)[1]
    return {"uid": uid, "email": f"{uid}@example.com", "email_verified": True}


@pytest.fixture
def client(mongo, bucket, identity_client, paypal, plans):
    main.app.dependency_overrides[main.get_db] = lambda: mongo
    main.app.dependency_overrides[main.verify_token] = fake_verify_token
    main.app.dependency_overrides[storage.get_bucket] = lambda: bucket
    main.app.dependency_overrides[main.get_identity_client] = lambda: identity_client
    main.app.dependency_overrides[main.get_paypal_client] = lambda: paypal
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(uid):
    return {"Authorization": f"Bearer {uid}"}


def complete_profile(**overrides):
    doc = {
        "email": "user@example.com",
        "firstname": "Ana",
        "lastname": "Reyes",
        "emailVerified": True,
        "location": {"latitude": 14.6, "longitude": 121.0, "address": "Quezon City"},
        "contactNumber": "09171234567",
        "profileImage": "https://storage.example.com/avatar.jpg",
        "birthday": "1995-04-12",
        "idVerified": {"idImage": "https://storage.example.com/id.jpg", "idNumber": "1234-5678", "idType": "philsys"},
        "currentPlan": None,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def plans(mongo):
    return {p["planType"]: p for p in quota.list_plans(mongo)}


@pytest.fixture
def make_user(mongo, plans):
    def _make(uid, plan="free", list_used=0, rent_used=0, **fields):
        doc = complete_profile(email=f"{uid}@example.com", **fields)
        doc["_id"] = uid
        if plan:
            p = plans[plan]
            doc["currentPlan"] = {
                "planId": p["id"],
                "planType": plan,
                "listLimit": p["list"],
                "rentLimit": p["rent"],
                "listUsed": list_used,
                "rentUsed": rent_used,
                "status": "active",
            }
        mongo[COL_USERS].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def make_item(mongo):
    def _make(owner_id, name="Cordless Drill", price=150.0, status="Available"):
        doc = {
            "_id": new_id(),
            "itemName": name,
            "itemDesc": "18V with two batteries",
            "itemPrice": price,
            "itemCondition": "Good",
            "category": "Tools",
            "images": [],
            "owner": {"id": owner_id, "fullname": "Ana Reyes"},
            "itemStatus": status,
            "createdAt": utcnow(),
        }
        mongo[COL_ITEMS].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def rental_dates():
    start = date.today() + timedelta(days=3)
    return start, start + timedelta(days=2)


def plan_id(mongo, plan_type):
    return mongo[COL_PLANS].find_one({"planType": plan_type})["_id"]
