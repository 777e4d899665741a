"""
Environment configuration for the Rent2Reuse marketplace API.

Every setting is read once at import time from the environment, with a
development-friendly default.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))

# Firebase
FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")
FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY", "")
FIREBASE_STORAGE_BUCKET = os.getenv("FIREBASE_STORAGE_BUCKET")
IDENTITY_TOOLKIT_URL = os.getenv(
    "IDENTITY_TOOLKIT_URL", "https://identitytoolkit.googleapis.com/v1"
)

# PayPal
PAYPAL_BASE_URL = os.getenv("PAYPAL_BASE_URL", "https://api-m.sandbox.paypal.com")
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_BRAND_NAME = os.getenv("PAYPAL_BRAND_NAME", "Rent2Reuse")
PAYPAL_RETURN_URL = os.getenv(
    "PAYPAL_RETURN_URL", "https://www.paypal.com/checkoutnow/error?paymentId=success"
)
PAYPAL_CANCEL_URL = os.getenv(
    "PAYPAL_CANCEL_URL", "https://www.paypal.com/checkoutnow/error?paymentId=cancel"
)
DISPLAY_CURRENCY = os.getenv("DISPLAY_CURRENCY", "PHP")
SETTLEMENT_CURRENCY = os.getenv("SETTLEMENT_CURRENCY", "USD")

# Exchange rate (display currency units per settlement currency unit)
EXCHANGE_RATE_URL = os.getenv(
    "EXCHANGE_RATE_URL", "https://api.frankfurter.app/latest?amount=1&from=USD&to=PHP"
)
DEFAULT_EXCHANGE_RATE = float(os.getenv("DEFAULT_EXCHANGE_RATE", "56.5"))
EXCHANGE_RATE_TTL_SECONDS = int(os.getenv("EXCHANGE_RATE_TTL_SECONDS", str(30 * 60)))

# AI item classifier
AI_MODEL_URL = os.getenv("AI_MODEL_URL", "http://localhost:5000/predict")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

PASSWORD_RESET_COOLDOWN_SECONDS = int(os.getenv("PASSWORD_RESET_COOLDOWN_SECONDS", "60"))
SESSION_SETTLE_SECONDS = float(os.getenv("SESSION_SETTLE_SECONDS", "0.5"))
MESSAGE_PAGE_SIZE = int(os.getenv("MESSAGE_PAGE_SIZE", "100"))
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
