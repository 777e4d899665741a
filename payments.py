"""
PayPal checkout for subscription plans.

The mobile app opens PayPal's hosted approval page in an embedded browser and
reports each URL it navigates to. Approval or cancellation is recognised from
the sentinel `paymentId=success|cancel` marker on the configured return and
cancel URLs (there is no webhook receiver), which drives this state machine
stored in the `payments` collection:

    created --redirect(success)--> approved --COMPLETED--> captured
       |                              |
       |                              +--other status--> failed
       +--redirect(cancel) / close--> (removed, nothing recorded)

Capture confirmation still comes from the client's redirect; moving it to a
server-side PayPal webhook is the production-grade replacement.
"""

import logging
import random
import threading
import time
import uuid
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import outbox
import quota
from database import (
    COL_PAYMENTS,
    COL_SUBSCRIPTIONS,
    COL_TRANSACTIONS,
    COL_USERS,
    create_document,
    new_id,
    serialize_doc,
    utcnow,
)
from errors import InvalidTransition, NotFound, PaymentError, ValidationFailed
from schemas import Subscription, Transaction

logger = logging.getLogger("rent2reuse.payments")

DURATION_DAYS = {"monthly": 30, "quarterly": 90, "semi-annual": 180, "annual": 365}


class ExchangeRateCache:
    """Display-currency units per settlement unit (PHP per USD), refreshed
    lazily every `ttl` seconds. A failed refresh keeps the last good rate."""

    def __init__(self, url: str = config.EXCHANGE_RATE_URL,
                 default_rate: float = config.DEFAULT_EXCHANGE_RATE,
                 ttl: int = config.EXCHANGE_RATE_TTL_SECONDS,
                 currency: str = config.DISPLAY_CURRENCY,
                 clock: Callable[[], float] = time.monotonic):
        self.url = url
        self.rate = default_rate
        self.ttl = ttl
        self.currency = currency
        self._clock = clock
        self._fetched_at: Optional[float] = None
        self._lock = threading.Lock()

    def refresh(self) -> float:
        try:
            response = requests.get(self.url, timeout=config.HTTP_TIMEOUT_SECONDS)
            response.raise_for_status()
            rate = response.json().get("rates", {}).get(self.currency)
            if rate:
                self.rate = float(rate)
            else:
                logger.warning("exchange rate response invalid, keeping %s", self.rate)
        except (requests.RequestException, ValueError) as e:
            logger.warning("exchange rate fetch failed, keeping %s: %s", self.rate, e)
        self._fetched_at = self._clock()
        return self.rate

    def get_rate(self) -> float:
        with self._lock:
            if self._fetched_at is None or self._clock() - self._fetched_at >= self.ttl:
                self.refresh()
            return self.rate

    def to_settlement(self, amount: float) -> str:
        value = Decimal(str(amount)) / Decimal(str(self.get_rate()))
        return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class PayPalClient:
    def __init__(self, base_url: str = config.PAYPAL_BASE_URL,
                 client_id: str = config.PAYPAL_CLIENT_ID,
                 client_secret: str = config.PAYPAL_CLIENT_SECRET,
                 rates: Optional[ExchangeRateCache] = None):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.rates = rates or ExchangeRateCache()
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = requests.request(method, f"{self.base_url}{path}",
                                        timeout=config.HTTP_TIMEOUT_SECONDS, **kwargs)
        except requests.RequestException as e:
            logger.error("paypal request failed", extra={"path": path, "error": str(e)})
            raise PaymentError()
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            logger.error("paypal rejected request",
                         extra={"path": path, "status": response.status_code, "paypalError": data.get("name")})
            raise PaymentError()
        return data

    def access_token(self) -> str:
        if self._token and time.time() < self._token_expires:
            return self._token
        data = self._request(
            "POST", "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json", "Accept-Language": "en_US"},
            data={"grant_type": "client_credentials"},
        )
        self._token = data["access_token"]
        self._token_expires = time.time() + int(data.get("expires_in", 300)) - 60
        return self._token

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.access_token()}",
            "PayPal-Request-Id": uuid.uuid4().hex,
        }

    def settlement_amount(self, amount: float) -> str:
        return self.rates.to_settlement(amount)

    def create_order(self, value: str, description: str, custom_id: str) -> Dict[str, Any]:
        """Create an order charging `value` in the settlement currency."""
        order = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "currency_code": config.SETTLEMENT_CURRENCY,
                    "value": value,
                },
                "description": description,
                "custom_id": custom_id,
                "invoice_id": custom_id,
            }],
            "application_context": {
                "return_url": config.PAYPAL_RETURN_URL,
                "cancel_url": config.PAYPAL_CANCEL_URL,
                "user_action": "PAY_NOW",
                "brand_name": config.PAYPAL_BRAND_NAME,
                "landing_page": "BILLING",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        return self._request("POST", "/v2/checkout/orders", headers=self._auth_headers(), json=order)

    def capture_order(self, order_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v2/checkout/orders/{order_id}/capture", headers=self._auth_headers())

    def order_details(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v2/checkout/orders/{order_id}", headers=self._auth_headers())


def generate_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{random.randint(0, 9999):04d}"


def approval_link(order: Dict[str, Any]) -> Optional[str]:
    for link in order.get("links", []):
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def redirect_outcome(url: str) -> Optional[str]:
    """'approved', 'cancelled', or None while the payer is still on PayPal."""
    marker = parse_qs(urlparse(url).query).get("paymentId", [None])[0]
    if marker == "success":
        return "approved"
    if marker == "cancel":
        return "cancelled"
    return None


def start_checkout(database: Database, client: PayPalClient, user_id: str, plan_id: str) -> Dict[str, Any]:
    plan = quota.get_plan(database, plan_id)
    price = float(plan.get("price", 0))
    if price <= 0:
        raise ValidationFailed("The free plan is claimed, not purchased")

    transaction_id = generate_transaction_id()
    settlement_amount = client.settlement_amount(price)
    order = client.create_order(settlement_amount, f"{str(plan.get('planType', '')).title()} plan subscription",
                                transaction_id)
    approval_url = approval_link(order)
    if not order.get("id") or not approval_url:
        logger.error("paypal order missing id or approval link", extra={"planId": plan_id})
        raise PaymentError()

    payment = {
        "_id": new_id(),
        "paypalOrderId": order["id"],
        "userId": user_id,
        "planId": plan_id,
        "transactionId": transaction_id,
        "amount": price,
        "currency": config.DISPLAY_CURRENCY,
        "settlementAmount": settlement_amount,
        "settlementCurrency": config.SETTLEMENT_CURRENCY,
        "approvalUrl": approval_url,
        "status": "created",
        "createdAt": utcnow(),
    }
    database[COL_PAYMENTS].insert_one(payment)
    logger.info("checkout started", extra={"orderId": order["id"], "userId": user_id, "planId": plan_id})
    return {"orderId": order["id"], "approvalUrl": approval_url, "state": "created",
            "amount": price, "currency": payment["currency"],
            "settlementAmount": payment["settlementAmount"], "settlementCurrency": payment["settlementCurrency"]}


def cancel_checkout(database: Database, user_id: str, order_id: str) -> Dict[str, Any]:
    removed = database[COL_PAYMENTS].find_one_and_delete(
        {"paypalOrderId": order_id, "userId": user_id, "status": "created"}
    )
    if removed is None:
        _raise_for_missing(database, user_id, order_id)
    logger.info("checkout cancelled", extra={"orderId": order_id, "userId": user_id})
    return {"orderId": order_id, "state": "cancelled"}


def _raise_for_missing(database: Database, user_id: str, order_id: str) -> None:
    payment = database[COL_PAYMENTS].find_one({"paypalOrderId": order_id, "userId": user_id})
    if payment is None:
        raise NotFound("Checkout not found")
    raise InvalidTransition(f"This checkout is already {payment['status']}")


def handle_redirect(database: Database, client: PayPalClient, user_id: str, order_id: str,
                    url: str) -> Dict[str, Any]:
    outcome = redirect_outcome(url)
    if outcome == "cancelled":
        return cancel_checkout(database, user_id, order_id)
    if outcome == "approved":
        return capture_checkout(database, client, user_id, order_id)
    return {"orderId": order_id, "state": "awaiting_approval"}


def capture_checkout(database: Database, client: PayPalClient, user_id: str, order_id: str) -> Dict[str, Any]:
    payment = database[COL_PAYMENTS].find_one_and_update(
        {"paypalOrderId": order_id, "userId": user_id, "status": "created"},
        {"$set": {"status": "approved", "approvedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if payment is None:
        existing = database[COL_PAYMENTS].find_one({"paypalOrderId": order_id, "userId": user_id})
        if existing and existing.get("status") == "captured":
            receipt = database[COL_TRANSACTIONS].find_one({"transactionId": existing["transactionId"]})
            return {"orderId": order_id, "state": "captured", "receipt": serialize_doc(receipt)}
        _raise_for_missing(database, user_id, order_id)

    try:
        capture = client.capture_order(order_id)
    except PaymentError:
        # Capture may be retried by the payer.
        database[COL_PAYMENTS].update_one({"_id": payment["_id"], "status": "approved"},
                                          {"$set": {"status": "created"}})
        raise

    if capture.get("status") != "COMPLETED":
        database[COL_PAYMENTS].update_one(
            {"_id": payment["_id"]},
            {"$set": {"status": "failed", "captureStatus": capture.get("status"), "failedAt": utcnow()}},
        )
        logger.warning("capture not completed", extra={"orderId": order_id, "captureStatus": capture.get("status")})
        raise PaymentError("Your payment was not completed. No charge was recorded.")

    receipt = activate_plan(database, payment, capture)
    database[COL_PAYMENTS].update_one(
        {"_id": payment["_id"]},
        {"$set": {"status": "captured", "capturedAt": utcnow(), "captureId": _capture_id(capture)}},
    )
    return {"orderId": order_id, "state": "captured", "receipt": receipt}


def _capture_id(capture: Dict[str, Any]) -> Optional[str]:
    units: List[Dict[str, Any]] = capture.get("purchase_units") or []
    for unit in units:
        for cap in unit.get("payments", {}).get("captures", []):
            return cap.get("id")
    return None


def activate_plan(database: Database, payment: Dict[str, Any], capture: Dict[str, Any]) -> Dict[str, Any]:
    """Record the subscription and receipt and switch the user's plan.

    Usage counters already on the user's plan carry over; only limits, type
    and status change.
    """
    plan = quota.get_plan(database, payment["planId"])
    user_id = payment["userId"]
    plan_type = str(plan.get("planType", "")).lower()
    now = utcnow()
    days = DURATION_DAYS.get(plan.get("duration", "monthly"), 30)

    subscription = Subscription(
        user_id=user_id,
        plan_id=payment["planId"],
        plan_type=plan_type,
        start_date=now,
        end_date=now + timedelta(days=days),
        status="active",
        transaction_id=payment["transactionId"],
    ).model_dump(by_alias=True)
    subscription["_id"] = new_id()
    subscription["createdAt"] = now

    transaction = Transaction(
        transaction_id=payment["transactionId"],
        user_id=user_id,
        subscription_id=subscription["_id"],
        plan_id=payment["planId"],
        paypal_order_id=payment["paypalOrderId"],
        amount=payment["amount"],
        currency=payment["currency"],
        settlement_amount=payment.get("settlementAmount"),
        settlement_currency=payment.get("settlementCurrency"),
        status="success",
        plan_details={
            "planType": plan_type,
            "duration": plan.get("duration"),
            "listLimit": plan.get("list"),
            "rentLimit": plan.get("rent"),
        },
    ).model_dump(by_alias=True)
    transaction["_id"] = new_id()
    transaction["captureId"] = _capture_id(capture)
    transaction["createdAt"] = now

    try:
        database[COL_TRANSACTIONS].insert_one(transaction)
    except DuplicateKeyError:
        logger.warning("transaction already recorded", extra={"transactionId": payment["transactionId"]})
        return serialize_doc(database[COL_TRANSACTIONS].find_one({"transactionId": payment["transactionId"]}))
    create_document(COL_SUBSCRIPTIONS, subscription, database=database)

    # Dotted updates below need an embedded document to write into.
    database[COL_USERS].update_one({"_id": user_id, "currentPlan": None}, {"$set": {"currentPlan": {}}})

    database[COL_USERS].update_one({"_id": user_id}, {"$set": {
        "currentPlan.planId": payment["planId"],
        "currentPlan.planType": plan_type,
        "currentPlan.listLimit": int(plan.get("list", 0)),
        "currentPlan.rentLimit": int(plan.get("rent", 0)),
        "currentPlan.status": "active",
        "currentPlan.subscriptionId": subscription["_id"],
        "currentPlan.updatedAt": now,
    }})
    for counter in ("listUsed", "rentUsed"):
        database[COL_USERS].update_one(
            {"_id": user_id, f"currentPlan.{counter}": {"$exists": False}},
            {"$set": {f"currentPlan.{counter}": 0}},
        )

    logger.info("plan activated", extra={"userId": user_id, "planType": plan_type,
                                         "transactionId": payment["transactionId"]})
    outbox.notify(
        database, user_id, "PLAN_ACTIVATED", "Plan Activated",
        f"Your {plan_type.title()} plan is now active.",
        {"route": "/transactions", "transactionId": payment["transactionId"]},
    )
    return serialize_doc(transaction)


def list_transactions(database: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = database[COL_TRANSACTIONS].find({"userId": user_id}).sort("createdAt", -1)
    return [serialize_doc(t) for t in cursor]


def get_transaction(database: Database, user_id: str, transaction_id: str) -> Dict[str, Any]:
    receipt = database[COL_TRANSACTIONS].find_one({"transactionId": transaction_id, "userId": user_id})
    if receipt is None:
        raise NotFound("Receipt not found")
    return serialize_doc(receipt)
