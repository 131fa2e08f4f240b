"""error_classifier.py

Turns raw Meta Graph API errors into user-actionable StructuredError values.

This is the only place that pattern-matches on Meta error codes and message
text. Everything else consumes the classified StructuredError.

Matching is first-match-wins in this order:
  PAYMENT_REQUIRED -> ACCOUNT_DISABLED -> RATE_LIMIT -> AD_DISAPPROVED
  -> PERMISSION_DENIED -> GENERIC
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    RATE_LIMIT = "RATE_LIMIT"
    AD_DISAPPROVED = "AD_DISAPPROVED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    GENERIC = "GENERIC"


@dataclass(frozen=True)
class RawPlatformError:
    """A Graph API error body, flattened.

    Meta returns errors as {"error": {"code": .., "error_subcode": .., "message": ..}}
    with a handful of optional user-facing fields.
    """

    code: Optional[int] = None
    subcode: Optional[int] = None
    message: str = ""
    user_title: Optional[str] = None
    user_message: Optional[str] = None
    http_status: Optional[int] = None

    @staticmethod
    def from_error_body(error: Optional[Dict[str, Any]], *, http_status: int | None = None, fallback_message: str = "") -> "RawPlatformError":
        error = error or {}
        return RawPlatformError(
            code=_as_int(error.get("code")),
            subcode=_as_int(error.get("error_subcode")),
            message=str(error.get("message") or fallback_message or ""),
            user_title=(str(error["error_user_title"]) if error.get("error_user_title") else None),
            user_message=(str(error["error_user_msg"]) if error.get("error_user_msg") else None),
            http_status=http_status,
        )


@dataclass(frozen=True)
class StructuredError:
    kind: ErrorKind
    user_message: str
    remediation: str
    retryable: bool
    help_url: Optional[str] = None

    def render(self) -> str:
        """Single-line form stored in CampaignTask.last_error."""
        return f"{self.user_message} {self.remediation}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_message": self.user_message,
            "remediation": self.remediation,
            "help_url": self.help_url,
            "retryable": self.retryable,
        }


def _as_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _contains(message: str, *needles: str) -> bool:
    return any(n in message for n in needles)


PAYMENT_CODES = {1815107}
PAYMENT_SUBCODES = {1885259, 1885466}
ACCOUNT_DISABLED_CODES = {368, 2635}
RATE_LIMIT_CODES = {4, 17, 32, 613, 80004}
AD_DISAPPROVED_CODES = {1487124, 1487553, 1487390}
PERMISSION_CODES = {190, 200, 2500, 10}


def classify(raw: RawPlatformError) -> StructuredError:
    """Classify a raw platform error. Never raises."""
    msg = (raw.message or "").lower()
    code = raw.code
    subcode = raw.subcode

    if code in PAYMENT_CODES or subcode in PAYMENT_SUBCODES or _contains(msg, "payment", "billing"):
        return StructuredError(
            kind=ErrorKind.PAYMENT_REQUIRED,
            user_message="Your Facebook ad account needs a valid payment method.",
            remediation="Add a credit/debit card in Facebook Billing settings, then try again.",
            help_url="https://business.facebook.com/billing_hub/payment_settings",
            retryable=True,
        )

    # 190/463 is checked here so it doesn't fall through to PERMISSION_DENIED (190).
    if (code == 190 and subcode == 463) or code in ACCOUNT_DISABLED_CODES or _contains(msg, "disabled", "restricted"):
        return StructuredError(
            kind=ErrorKind.ACCOUNT_DISABLED,
            user_message="Your Facebook ad account is disabled or restricted.",
            remediation="Resolve the policy violation or restriction in Facebook Account Quality.",
            help_url="https://business.facebook.com/accountquality",
            retryable=False,
        )

    if code in RATE_LIMIT_CODES or _contains(msg, "rate limit", "too many calls"):
        return StructuredError(
            kind=ErrorKind.RATE_LIMIT,
            user_message="Too many requests to Facebook.",
            remediation="Wait 5-10 minutes before trying again.",
            retryable=True,
        )

    if code in AD_DISAPPROVED_CODES or _contains(msg, "disapproved", "violates", "policy"):
        return StructuredError(
            kind=ErrorKind.AD_DISAPPROVED,
            user_message="Facebook rejected the ad content due to a policy violation.",
            remediation="Review Meta's advertising policies, edit the ad copy, image or targeting, then try again.",
            help_url="https://www.facebook.com/policies/ads",
            retryable=True,
        )

    if code in PERMISSION_CODES or _contains(msg, "permission", "access token", "oauth"):
        return StructuredError(
            kind=ErrorKind.PERMISSION_DENIED,
            user_message="The Facebook access token expired or lacks permissions.",
            remediation="Reconnect your Facebook account with the ads_management permission, then try again.",
            help_url="/settings",
            retryable=True,
        )

    return _generic(raw, msg)


def _generic(raw: RawPlatformError, msg: str) -> StructuredError:
    if raw.subcode == 2603 or _contains(msg, "budget", "spend limit"):
        return StructuredError(
            kind=ErrorKind.GENERIC,
            user_message="Budget or spending limit issue.",
            remediation="Check the ad account spending limits in Facebook Billing settings.",
            help_url="https://business.facebook.com/billing_hub/payment_settings",
            retryable=False,
        )

    if raw.code == 100 or "invalid parameter" in msg:
        return StructuredError(
            kind=ErrorKind.GENERIC,
            user_message="Invalid data was sent to Facebook.",
            remediation=f"Facebook says: {raw.message}. Contact support if this persists.",
            retryable=False,
        )

    return StructuredError(
        kind=ErrorKind.GENERIC,
        user_message=raw.user_message or raw.message or "Unknown Facebook API error.",
        remediation=raw.user_title or "Check Facebook Ads Manager for more details.",
        help_url="https://business.facebook.com/adsmanager",
        retryable=False,
    )


def classify_exception(exc: BaseException) -> StructuredError:
    """Classify anything raised during a launch.

    MetaAPIError instances carry the raw error body; anything else is treated
    as an unexpected internal failure without platform remediation.
    """
    raw = getattr(exc, "raw", None)
    if isinstance(raw, RawPlatformError):
        return classify(raw)
    return internal_error()


def internal_error(user_message: str = "Internal error while creating the campaign.") -> StructuredError:
    return StructuredError(
        kind=ErrorKind.GENERIC,
        user_message=user_message,
        remediation="Please try again later or contact support.",
        retryable=False,
    )
