"""
Firebase identity: ID-token verification through firebase_admin, password
sign-in/sign-up and account emails through the Auth REST API.

Provider error codes only pick the message shown to the user; they are never
passed through verbatim.
"""

import logging
import math
import time
from typing import Any, Callable, Dict

import requests
from firebase_admin import auth as fb_auth
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import COL_PASSWORD_RESETS
from errors import AuthenticationFailed, CooldownActive, RemoteServiceError, ValidationFailed

logger = logging.getLogger("rent2reuse.identity")

PROVIDER_MESSAGES = {
    "EMAIL_NOT_FOUND": (AuthenticationFailed, "No account found with this email."),
    "INVALID_PASSWORD": (AuthenticationFailed, "Incorrect password. Please try again."),
    "INVALID_LOGIN_CREDENTIALS": (AuthenticationFailed, "Invalid email or password."),
    "USER_DISABLED": (AuthenticationFailed, "This account has been disabled."),
    "TOO_MANY_ATTEMPTS_TRY_LATER": (AuthenticationFailed, "Too many attempts. Please try again later."),
    "EMAIL_EXISTS": (ValidationFailed, "An account with this email already exists."),
    "INVALID_EMAIL": (ValidationFailed, "Please enter a valid email address."),
    "INVALID_ID_TOKEN": (AuthenticationFailed, "Your session has expired. Please log in again."),
}


def _provider_error(code: str) -> Exception:
    # Codes can carry a suffix, e.g. "WEAK_PASSWORD : Password should be at least 6 characters".
    key = code.split(":")[0].strip()
    if key == "WEAK_PASSWORD":
        return ValidationFailed("Password should be at least 6 characters.")
    cls, message = PROVIDER_MESSAGES.get(key, (RemoteServiceError, None))
    return cls(message)


class IdentityClient:
    def __init__(self, api_key: str = config.FIREBASE_API_KEY,
                 base_url: str = config.IDENTITY_TOOLKIT_URL,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = requests.post(
                f"{self.base_url}/accounts:{endpoint}",
                params={"key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("identity request failed", extra={"endpoint": endpoint, "error": str(e)})
            raise RemoteServiceError()
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            code = str(data.get("error", {}).get("message", ""))
            logger.info("identity provider rejected request", extra={"endpoint": endpoint, "providerCode": code})
            raise _provider_error(code)
        return data

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        return self._post("signInWithPassword", {"email": email, "password": password, "returnSecureToken": True})

    def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        return self._post("signUp", {"email": email, "password": password, "returnSecureToken": True})

    def send_password_reset(self, email: str) -> None:
        self._post("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})

    def send_verification_email(self, id_token: str) -> None:
        self._post("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": id_token})


def verify_id_token(token: str) -> Dict[str, Any]:
    return fb_auth.verify_id_token(token)


def request_password_reset(database: Database, client: IdentityClient, email: str,
                           cooldown_seconds: int = config.PASSWORD_RESET_COOLDOWN_SECONDS,
                           clock: Callable[[], float] = time.time) -> Dict[str, Any]:
    """Send a reset email at most once per cooldown window per address.

    The cooldown is stored with the email as key: set when an email goes out,
    ignored once `expiresAt` (epoch seconds) has passed, and removed if
    sending fails.
    """
    email = email.strip().lower()
    now = clock()
    expires_at = now + cooldown_seconds
    result = database[COL_PASSWORD_RESETS].update_one(
        {"_id": email, "expiresAt": {"$lte": now}},
        {"$set": {"sentAt": now, "expiresAt": expires_at}},
    )
    if result.matched_count == 0:
        try:
            database[COL_PASSWORD_RESETS].insert_one({"_id": email, "sentAt": now, "expiresAt": expires_at})
        except DuplicateKeyError:
            current = database[COL_PASSWORD_RESETS].find_one({"_id": email}) or {}
            remaining = max(1, math.ceil(float(current.get("expiresAt", now)) - now))
            raise CooldownActive(
                f"Please wait {remaining} seconds before requesting another reset email.",
                retryAfter=remaining,
            )
    try:
        client.send_password_reset(email)
    except Exception:
        database[COL_PASSWORD_RESETS].delete_one({"_id": email, "sentAt": now})
        raise
    logger.info("password reset email sent", extra={"email": email})
    return {"sent": True, "cooldownSeconds": cooldown_seconds}
