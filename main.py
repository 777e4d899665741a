import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

# Firebase Admin for token verification and storage
import firebase_admin
from firebase_admin import credentials

import chat
import classifier
import config
import identity
import listings
import moderation
import outbox
import payments
import quota
import rentals
import reviews
import sessions
import storage
from database import COL_NOTIFICATIONS, COL_SESSIONS, COL_USERS, db, ensure_indexes, serialize_doc, utcnow
from errors import MarketplaceError, NotAuthorized, NotFound, ValidationFailed
from profile_completion import evaluate_profile_completion
from schemas import Assessment, AssessmentType, CamelModel, DeviceInfo, IdVerification, Location, User

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rent2reuse.api")

# Initialize Firebase Admin SDK once if not already
if not firebase_admin._apps:
    options = {"storageBucket": config.FIREBASE_STORAGE_BUCKET} if config.FIREBASE_STORAGE_BUCKET else None
    try:
        if config.FIREBASE_SERVICE_ACCOUNT_JSON:
            cred = credentials.Certificate(json.loads(config.FIREBASE_SERVICE_ACCOUNT_JSON))
            firebase_admin.initialize_app(cred, options)
        else:
            firebase_admin.initialize_app(options=options)  # default credentials
    except Exception as e:
        logger.warning("firebase admin not initialized: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        quota.list_plans(db)
    yield


app = FastAPI(title="Rent2Reuse Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, err: MarketplaceError):
    return JSONResponse(status_code=err.status_code, content=jsonable_encoder(err.to_dict()))


# ------------------------
# Dependencies
# ------------------------
def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ")
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")
    return token


def verify_token(token: str = Depends(bearer_token)) -> Dict[str, Any]:
    try:
        return identity.verify_id_token(token)  # contains uid, email, email_verified
    except Exception as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)[:100]}")


def get_current_user(decoded: Dict[str, Any] = Depends(verify_token)) -> Dict[str, Any]:
    return {
        "uid": decoded.get("uid"),
        "email": decoded.get("email"),
        "email_verified": bool(decoded.get("email_verified")),
    }


_identity_client = identity.IdentityClient()
_paypal_client = payments.PayPalClient()


def get_identity_client() -> identity.IdentityClient:
    return _identity_client


def get_paypal_client() -> payments.PayPalClient:
    return _paypal_client


def flush_outbox(background: BackgroundTasks, database: Database) -> None:
    background.add_task(outbox.flush, database)


# ------------------------
# Payloads
# ------------------------
NAME_PATTERN = re.compile(r"^[A-Za-z\s]+$")


class SignUpRequest(CamelModel):
    email: EmailStr
    password: str
    firstname: str
    lastname: str
    middlename: Optional[str] = None


class SignInRequest(CamelModel):
    email: EmailStr
    password: str
    device_info: Optional[DeviceInfo] = None
    on_conflict: Literal["ask", "abort", "terminate"] = "ask"


class LoginRequest(CamelModel):
    device_info: Optional[DeviceInfo] = None
    on_conflict: Literal["ask", "abort", "terminate"] = "ask"


class PasswordResetRequest(CamelModel):
    email: EmailStr


class ProfileUpdate(CamelModel):
    firstname: Optional[str] = None
    middlename: Optional[str] = None
    lastname: Optional[str] = None
    contact_number: Optional[str] = None
    birthday: Optional[str] = None
    location: Optional[Location] = None
    bio: Optional[str] = None


class PushTokenRequest(CamelModel):
    token: str
    platform: str = "unknown"


class ItemCreate(CamelModel):
    item_name: str
    item_desc: str = ""
    item_price: float
    item_condition: str = "Good"
    item_location: Optional[Location] = None
    category: Optional[str] = None


class ItemUpdate(CamelModel):
    item_name: Optional[str] = None
    item_desc: Optional[str] = None
    item_price: Optional[float] = None
    item_condition: Optional[str] = None
    item_location: Optional[Location] = None
    category: Optional[str] = None


class RentRequestForm(CamelModel):
    start_date: date
    end_date: date
    pickup_time: Union[int, str] = Field(..., description="'9:30 AM', '09:30' or minutes after midnight")
    message: str = ""


class DirectChatRequest(CamelModel):
    recipient_id: str


class MessageRequest(CamelModel):
    text: str


class AssessmentRequest(Assessment):
    assessment_type: AssessmentType


class RatingRequest(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    review: str = ""


class ReportRequest(CamelModel):
    reason: str
    description: str


class CheckoutRequest(CamelModel):
    plan_id: str


class RedirectRequest(CamelModel):
    url: str


# ------------------------
# Health
# ------------------------
@app.get("/")
def root():
    return {"name": "Rent2Reuse Marketplace API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except PyMongoError as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# ------------------------
# Auth & sessions
# ------------------------
def _check_name(label: str, value: Optional[str], required: bool = True) -> None:
    value = (value or "").strip()
    if not value:
        if required:
            raise ValidationFailed(f"{label} is required.")
        return
    if not NAME_PATTERN.match(value):
        raise ValidationFailed(f"{label} can only contain letters and spaces.")


def _start_session(database: Database, uid: str, on_conflict: str,
                   device_info: Optional[DeviceInfo]) -> Dict[str, Any]:
    try:
        return sessions.login(
            database, uid, on_conflict=on_conflict,
            device_info=device_info.model_dump(by_alias=True, exclude_none=True) if device_info else None,
        )
    except PyMongoError as e:
        # The identity token stays valid; only the session bookkeeping failed.
        logger.error("session bookkeeping failed", extra={"userId": uid, "error": str(e)})
        raise HTTPException(status_code=500, detail="Login Failed")


@app.post("/auth/sign-up")
def sign_up(payload: SignUpRequest, background: BackgroundTasks,
            database: Database = Depends(get_db),
            client: identity.IdentityClient = Depends(get_identity_client)):
    if len(payload.password) < 6:
        raise ValidationFailed("Password should be at least 6 characters.")
    _check_name("First name", payload.firstname)
    _check_name("Last name", payload.lastname)
    _check_name("Middle name", payload.middlename, required=False)

    account = client.sign_up(payload.email, payload.password)
    uid = account["localId"]
    user = User(
        email=payload.email,
        firstname=payload.firstname.strip(),
        middlename=(payload.middlename or "").strip() or None,
        lastname=payload.lastname.strip(),
    ).model_dump(by_alias=True)
    user["_id"] = uid
    user["createdAt"] = user["updatedAt"] = utcnow()
    try:
        database[COL_USERS].insert_one(user)
    except DuplicateKeyError:
        logger.warning("user document already existed", extra={"userId": uid})

    verification_sent = True
    try:
        client.send_verification_email(account["idToken"])
    except MarketplaceError as e:
        verification_sent = False
        logger.warning("verification email not sent", extra={"userId": uid, "error": e.message})

    outbox.notify(database, uid, "WELCOME", "Welcome to Rent2Reuse",
                  "Complete your profile to claim the free plan and start renting.",
                  {"route": "/profile"})
    flush_outbox(background, database)
    return {
        "uid": uid,
        "email": payload.email,
        "idToken": account.get("idToken"),
        "refreshToken": account.get("refreshToken"),
        "verificationEmailSent": verification_sent,
    }


@app.post("/auth/sign-in")
def sign_in(payload: SignInRequest, database: Database = Depends(get_db),
            client: identity.IdentityClient = Depends(get_identity_client)):
    account = client.sign_in(payload.email, payload.password)
    uid = account["localId"]
    result = _start_session(database, uid, payload.on_conflict, payload.device_info)
    return {
        **result,
        "uid": uid,
        "idToken": account.get("idToken"),
        "refreshToken": account.get("refreshToken"),
        "expiresIn": account.get("expiresIn"),
    }


@app.post("/auth/login")
def login(payload: LoginRequest, database: Database = Depends(get_db),
          current=Depends(get_current_user)):
    uid = current["uid"]
    database[COL_USERS].update_one({"_id": uid}, {"$set": {"emailVerified": current["email_verified"]}})
    return _start_session(database, uid, payload.on_conflict, payload.device_info)


@app.post("/auth/logout")
def logout(x_session_id: Optional[str] = Header(None), database: Database = Depends(get_db),
           current=Depends(get_current_user)):
    if x_session_id and database[COL_SESSIONS].find_one({"_id": x_session_id, "userId": current["uid"]}) is None:
        raise NotAuthorized("This session does not belong to you")
    return sessions.terminate_current_session(database, x_session_id)


@app.post("/auth/password-reset")
def password_reset(payload: PasswordResetRequest, database: Database = Depends(get_db),
                   client: identity.IdentityClient = Depends(get_identity_client)):
    return identity.request_password_reset(database, client, payload.email)


@app.get("/auth/verify-email")
def email_verification_status(database: Database = Depends(get_db), current=Depends(get_current_user)):
    database[COL_USERS].update_one({"_id": current["uid"]}, {"$set": {"emailVerified": current["email_verified"]}})
    return {"emailVerified": current["email_verified"]}


@app.post("/auth/verify-email")
def resend_verification_email(token: str = Depends(bearer_token), current=Depends(get_current_user),
                              client: identity.IdentityClient = Depends(get_identity_client)):
    if current["email_verified"]:
        return {"sent": False, "emailVerified": True}
    client.send_verification_email(token)
    return {"sent": True, "emailVerified": False}


@app.get("/auth/sessions")
def my_sessions(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"items": sessions.check_active_session(database, current["uid"])}


@app.post("/auth/sessions/{session_id}/terminate")
def terminate_session(session_id: str, database: Database = Depends(get_db),
                      current=Depends(get_current_user)):
    if database[COL_SESSIONS].find_one({"_id": session_id, "userId": current["uid"]}) is None:
        raise NotFound("Session not found")
    return sessions.force_terminate_session(database, session_id, reason="terminated_by_user")


@app.post("/auth/sessions/heartbeat")
def session_heartbeat(x_session_id: Optional[str] = Header(None), database: Database = Depends(get_db),
                      current=Depends(get_current_user)):
    if not x_session_id:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header")
    if database[COL_SESSIONS].find_one({"_id": x_session_id, "userId": current["uid"]}) is None:
        raise NotFound("Session not found")
    return {"active": sessions.update_session_activity(database, x_session_id)}


# ------------------------
# Users
# ------------------------
def _user_doc(database: Database, uid: str) -> Dict[str, Any]:
    doc = database[COL_USERS].find_one({"_id": uid})
    if not doc:
        raise NotFound("User not found")
    return doc


@app.get("/users/me")
def get_me(database: Database = Depends(get_db), current=Depends(get_current_user)):
    doc = database[COL_USERS].find_one({"_id": current["uid"]})
    if not doc:
        return {"exists": False, "user": None}
    return {"exists": True, "user": serialize_doc(doc)}


@app.post("/users/me")
def upsert_me(payload: ProfileUpdate, database: Database = Depends(get_db), current=Depends(get_current_user)):
    now = utcnow()
    data = payload.model_dump(by_alias=True, exclude_none=True)
    data["updatedAt"] = now
    database[COL_USERS].update_one(
        {"_id": current["uid"]},
        {
            "$set": data,
            "$setOnInsert": {
                "email": current["email"],
                "emailVerified": current["email_verified"],
                "idVerified": False,
                "createdAt": now,
            },
        },
        upsert=True,
    )
    return serialize_doc(_user_doc(database, current["uid"]))


@app.patch("/users/me")
def update_me(payload: ProfileUpdate, database: Database = Depends(get_db), current=Depends(get_current_user)):
    _user_doc(database, current["uid"])
    data = payload.model_dump(by_alias=True, exclude_unset=True)
    if not data:
        raise ValidationFailed("Nothing to update")
    data["updatedAt"] = utcnow()
    database[COL_USERS].update_one({"_id": current["uid"]}, {"$set": data})
    return serialize_doc(_user_doc(database, current["uid"]))


def _upload_user_file(database: Database, bucket, uid: str, kind: str, file: UploadFile) -> str:
    _user_doc(database, uid)
    data = file.file.read()
    if not data:
        raise ValidationFailed("Image is empty")
    return storage.upload_bytes(bucket, storage.user_prefix(uid, kind), data, file.content_type or "image/jpeg")


@app.post("/users/me/avatar")
def upload_avatar(file: UploadFile = File(...), database: Database = Depends(get_db),
                  bucket=Depends(storage.get_bucket), current=Depends(get_current_user)):
    url = _upload_user_file(database, bucket, current["uid"], "avatar", file)
    database[COL_USERS].update_one({"_id": current["uid"]}, {"$set": {"profileImage": url, "updatedAt": utcnow()}})
    return {"profileImage": url}


@app.post("/users/me/id-document")
def upload_id_document(file: UploadFile = File(...), id_number: str = Form(..., alias="idNumber"),
                       id_type: str = Form(..., alias="idType"), database: Database = Depends(get_db),
                       bucket=Depends(storage.get_bucket), current=Depends(get_current_user)):
    try:
        record = IdVerification(id_image="", id_number=id_number.strip(), id_type=id_type)
    except ValueError as e:
        raise ValidationFailed(str(e).splitlines()[0])
    url = _upload_user_file(database, bucket, current["uid"], "id", file)
    record.id_image = url
    record.updated_at = utcnow()
    id_verified = record.model_dump(by_alias=True)
    database[COL_USERS].update_one(
        {"_id": current["uid"]},
        {"$set": {"idDocumentUrl": url, "idVerified": id_verified, "updatedAt": record.updated_at}},
    )
    return {"idDocumentUrl": url, "idVerified": id_verified}


@app.get("/users/me/profile-completion")
def profile_completion(database: Database = Depends(get_db), current=Depends(get_current_user)):
    doc = database[COL_USERS].find_one({"_id": current["uid"]}) or {}
    return evaluate_profile_completion(doc)


@app.put("/users/me/push-token")
def register_push_token(payload: PushTokenRequest, database: Database = Depends(get_db),
                        current=Depends(get_current_user)):
    _user_doc(database, current["uid"])
    token = {"token": payload.token, "platform": payload.platform, "lastUpdate": utcnow()}
    database[COL_USERS].update_one({"_id": current["uid"]}, {"$set": {"pushTokens": token}})
    return {"registered": True}


@app.delete("/users/me/push-token")
def remove_push_token(database: Database = Depends(get_db), current=Depends(get_current_user)):
    database[COL_USERS].update_one({"_id": current["uid"]}, {"$unset": {"pushTokens": ""}})
    return {"registered": False}


@app.get("/users/me/notifications")
def my_notifications(limit: int = Query(50, ge=1, le=200), database: Database = Depends(get_db),
                     current=Depends(get_current_user)):
    cursor = database[COL_NOTIFICATIONS].find({"userId": current["uid"]}).sort("createdAt", -1).limit(limit)
    return {"items": [serialize_doc(n) for n in cursor]}


@app.post("/users/me/notifications/{notification_id}/read")
def read_notification(notification_id: str, database: Database = Depends(get_db),
                      current=Depends(get_current_user)):
    result = database[COL_NOTIFICATIONS].update_one(
        {"_id": notification_id, "userId": current["uid"]},
        {"$set": {"isRead": True, "readAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFound("Notification not found")
    return {"isRead": True}


@app.get("/users/me/account-status")
def my_account_status(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return moderation.account_status(database, current["uid"])


@app.get("/users/me/usage")
def my_usage(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"currentPlan": quota.get_usage(database, current["uid"])}


@app.post("/users/me/usage/reconcile")
def reconcile_usage(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return quota.reconcile_usage(database, current["uid"])


# ------------------------
# Plans
# ------------------------
@app.get("/plans")
def list_plans(database: Database = Depends(get_db)):
    return {"items": quota.list_plans(database)}


@app.post("/plans/free/claim")
def claim_free_plan(background: BackgroundTasks, database: Database = Depends(get_db),
                    current=Depends(get_current_user)):
    plan = quota.claim_free_plan(database, current["uid"])
    outbox.notify(database, current["uid"], "PLAN_ACTIVATED", "Free Plan Activated",
                  "Your free plan is now active. Start listing and renting!", {"route": "/plans"})
    flush_outbox(background, database)
    return {"currentPlan": plan}


# ------------------------
# Listings
# ------------------------
@app.post("/items")
def create_item(payload: ItemCreate, background: BackgroundTasks, database: Database = Depends(get_db),
                current=Depends(get_current_user)):
    item = listings.create_listing(database, current["uid"], payload.model_dump(exclude_none=True))
    flush_outbox(background, database)
    return item


@app.get("/items")
def search_items(
    q: Optional[str] = Query(None, description="Search across name, description and category"),
    status: Optional[Literal["Available", "Reserved", "Rented"]] = None,
    owner_id: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: str = Query("createdAt", pattern="^(createdAt|itemPrice|itemName)$"),
    sort_dir: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    database: Database = Depends(get_db),
):
    return listings.search_listings(
        database, q=q, status=status, owner_id=owner_id, category=category,
        min_price=min_price, max_price=max_price, sort_by=sort_by, sort_dir=sort_dir,
        page=page, page_size=page_size,
    )


@app.get("/items/{item_id}")
def get_item(item_id: str, database: Database = Depends(get_db)):
    return serialize_doc(listings.get_item(database, item_id))


@app.put("/items/{item_id}")
def update_item(item_id: str, payload: ItemUpdate, database: Database = Depends(get_db),
                current=Depends(get_current_user)):
    changes = payload.model_dump(by_alias=True, exclude_unset=True)
    if not changes:
        raise ValidationFailed("Nothing to update")
    return listings.update_listing(database, item_id, current["uid"], changes)


@app.delete("/items/{item_id}")
def delete_item(item_id: str, background: BackgroundTasks, database: Database = Depends(get_db),
                bucket=Depends(storage.get_bucket), current=Depends(get_current_user)):
    result = rentals.remove_listing(database, bucket, item_id, current["uid"])
    flush_outbox(background, database)
    return result


@app.post("/items/{item_id}/images")
def upload_item_image(item_id: str, file: UploadFile = File(...), database: Database = Depends(get_db),
                      bucket=Depends(storage.get_bucket), current=Depends(get_current_user)):
    return listings.add_image(database, bucket, item_id, current["uid"], file.file.read(),
                              file.content_type or "image/jpeg")


# ------------------------
# Rental Requests
# ------------------------
@app.post("/items/{item_id}/requests")
def submit_request(item_id: str, payload: RentRequestForm, background: BackgroundTasks,
                   database: Database = Depends(get_db), current=Depends(get_current_user)):
    req = rentals.submit_request(database, current["uid"], item_id, payload.start_date, payload.end_date,
                                 payload.pickup_time, payload.message)
    flush_outbox(background, database)
    return req


@app.get("/requests")
def get_requests(box: str = Query("outgoing", pattern="^(incoming|outgoing)$"), status: Optional[str] = None,
                 database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"items": rentals.list_requests(database, current["uid"], box=box, status=status)}


@app.get("/requests/{request_id}")
def get_request(request_id: str, database: Database = Depends(get_db), current=Depends(get_current_user)):
    return serialize_doc(rentals.get_request(database, request_id, current["uid"]))


@app.patch("/requests/{request_id}")
def edit_request(request_id: str, payload: RentRequestForm, database: Database = Depends(get_db),
                 current=Depends(get_current_user)):
    return rentals.edit_request(database, request_id, current["uid"], payload.start_date, payload.end_date,
                                payload.pickup_time, payload.message)


@app.post("/requests/{request_id}/accept")
def accept_request(request_id: str, background: BackgroundTasks, database: Database = Depends(get_db),
                   current=Depends(get_current_user)):
    result = rentals.accept_request(database, request_id, current["uid"])
    flush_outbox(background, database)
    return result


@app.post("/requests/{request_id}/reject")
def reject_request(request_id: str, background: BackgroundTasks, database: Database = Depends(get_db),
                   current=Depends(get_current_user)):
    result = rentals.reject_request(database, request_id, current["uid"])
    flush_outbox(background, database)
    return result


@app.post("/requests/{request_id}/cancel")
def cancel_request(request_id: str, background: BackgroundTasks, database: Database = Depends(get_db),
                   current=Depends(get_current_user)):
    result = rentals.cancel_request(database, request_id, current["uid"])
    flush_outbox(background, database)
    return result


@app.post("/requests/{request_id}/complete")
def complete_request(request_id: str, background: BackgroundTasks, database: Database = Depends(get_db),
                     current=Depends(get_current_user)):
    result = rentals.complete_request(database, request_id, current["uid"])
    flush_outbox(background, database)
    return result


@app.post("/requests/{request_id}/rating")
def rate_rental(request_id: str, payload: RatingRequest, background: BackgroundTasks,
                database: Database = Depends(get_db), current=Depends(get_current_user)):
    result = reviews.rate_rental(database, request_id, current["uid"], payload.rating, payload.review)
    flush_outbox(background, database)
    return result


@app.get("/users/{user_id}/ratings")
def user_ratings(user_id: str, database: Database = Depends(get_db)):
    return {**reviews.user_rating(database, user_id), "items": reviews.list_ratings(database, user_id)}


@app.post("/users/{user_id}/reports")
def report_user(user_id: str, payload: ReportRequest, background: BackgroundTasks,
                database: Database = Depends(get_db), current=Depends(get_current_user)):
    report = moderation.report_user(database, current["uid"], user_id, payload.reason, payload.description)
    flush_outbox(background, database)
    return report

# ------------------------
# Chat
# ------------------------
@app.get("/chats")
def my_chats(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"items": chat.list_chats(database, current["uid"])}


@app.post("/chats/direct")
def open_direct_chat(payload: DirectChatRequest, database: Database = Depends(get_db),
                     current=Depends(get_current_user)):
    return chat.open_direct_chat(database, current["uid"], payload.recipient_id)


@app.get("/chats/{chat_id}/messages")
def chat_messages(chat_id: str, limit: Optional[int] = Query(None, ge=1, le=500),
                  database: Database = Depends(get_db), current=Depends(get_current_user)):
    return chat.list_messages(database, chat_id, current["uid"], limit=limit)


@app.post("/chats/{chat_id}/messages")
def send_message(chat_id: str, payload: MessageRequest, database: Database = Depends(get_db),
                 current=Depends(get_current_user)):
    return chat.send_message(database, chat_id, current["uid"], payload.text)


@app.post("/chats/{chat_id}/read")
def mark_chat_read(chat_id: str, database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"marked": chat.mark_as_read(database, chat_id, current["uid"])}


@app.post("/chats/{chat_id}/assessments")
def submit_assessment(chat_id: str, payload: AssessmentRequest, database: Database = Depends(get_db),
                      current=Depends(get_current_user)):
    assessment = Assessment(**payload.model_dump(exclude={"assessment_type"}))
    return chat.submit_assessment(database, chat_id, current["uid"], payload.assessment_type, assessment)


@app.post("/chats/{chat_id}/assessments/{message_id}/acknowledge")
def acknowledge_assessment(chat_id: str, message_id: str, database: Database = Depends(get_db),
                           current=Depends(get_current_user)):
    return chat.acknowledge_assessment(database, chat_id, message_id, current["uid"])


# ------------------------
# Payments
# ------------------------
@app.post("/payments/checkout")
def start_checkout(payload: CheckoutRequest, database: Database = Depends(get_db),
                   client: payments.PayPalClient = Depends(get_paypal_client),
                   current=Depends(get_current_user)):
    return payments.start_checkout(database, client, current["uid"], payload.plan_id)


@app.post("/payments/{order_id}/redirect")
def payment_redirect(order_id: str, payload: RedirectRequest, background: BackgroundTasks,
                     database: Database = Depends(get_db),
                     client: payments.PayPalClient = Depends(get_paypal_client),
                     current=Depends(get_current_user)):
    result = payments.handle_redirect(database, client, current["uid"], order_id, payload.url)
    flush_outbox(background, database)
    return result


@app.post("/payments/{order_id}/cancel")
def cancel_checkout(order_id: str, database: Database = Depends(get_db), current=Depends(get_current_user)):
    return payments.cancel_checkout(database, current["uid"], order_id)


@app.get("/transactions")
def my_transactions(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return {"items": payments.list_transactions(database, current["uid"])}


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str, database: Database = Depends(get_db),
                    current=Depends(get_current_user)):
    return payments.get_transaction(database, current["uid"], transaction_id)


# ------------------------
# Classification & maintenance
# ------------------------
@app.post("/classify")
def classify(image: UploadFile = File(...), current=Depends(get_current_user)):
    results: List[Dict[str, Any]] = classifier.classify_image(
        image.file.read(), image.filename or "image.jpg", image.content_type or "image/jpeg"
    )
    return {"items": results}


@app.post("/outbox/flush")
def flush_pending(database: Database = Depends(get_db), current=Depends(get_current_user)):
    return outbox.flush(database, user_id=current["uid"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
