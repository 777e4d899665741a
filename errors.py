"""Domain errors raised by the marketplace services.

Each error carries the HTTP status and the message shown to the user. The
message is always safe to display; provider error codes never leak through it.
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationFailed(MarketplaceError):
    status_code = 400
    code = "validation_failed"
    default_message = "Please check the highlighted fields."


class NotAuthorized(MarketplaceError):
    status_code = 403
    code = "not_authorized"
    default_message = "You are not allowed to do that."


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class NoPlanError(MarketplaceError):
    status_code = 403
    code = "no_plan"
    default_message = "You don't have an active plan. Claim the free plan or subscribe to continue."


class LimitReachedError(MarketplaceError):
    status_code = 403
    code = "limit_reached"
    default_message = "You've reached your plan limit. Please upgrade your plan."


class ProfileIncomplete(MarketplaceError):
    status_code = 403
    code = "profile_incomplete"
    default_message = "Complete your profile before claiming the free plan."


class PlanUnavailable(MarketplaceError):
    status_code = 404
    code = "plan_unavailable"
    default_message = "This plan is not available right now."


class PlanAlreadyClaimed(MarketplaceError):
    status_code = 409
    code = "plan_already_claimed"
    default_message = "You already have a plan."


class DuplicateRequestError(MarketplaceError):
    status_code = 409
    code = "duplicate_request"
    default_message = "You have a pending request for this item. Please wait for the owner's response."


class InvalidTransition(MarketplaceError):
    status_code = 409
    code = "invalid_transition"
    default_message = "This request can no longer be changed."


class ConcurrentUpdate(MarketplaceError):
    status_code = 409
    code = "concurrent_update"
    default_message = "This was changed somewhere else. Please refresh and try again."


class SessionConflict(MarketplaceError):
    status_code = 409
    code = "session_conflict"
    default_message = "You are already logged in on another device."


class CooldownActive(MarketplaceError):
    status_code = 429
    code = "cooldown_active"
    default_message = "Please wait before requesting another email."


class AuthenticationFailed(MarketplaceError):
    status_code = 401
    code = "authentication_failed"
    default_message = "Invalid email or password."


class RemoteServiceError(MarketplaceError):
    status_code = 502
    code = "remote_service_error"
    default_message = "The service is unavailable right now. Please try again later."


class PaymentError(MarketplaceError):
    status_code = 502
    code = "payment_error"
    default_message = "Payment could not be completed. Please try again."


class AccountSuspended(MarketplaceError):
    status_code = 403
    code = "account_suspended"
    default_message = ("Your account has been suspended due to a violation of our terms of service. "
                       "If you believe this is an error, please contact our support team for assistance.")
