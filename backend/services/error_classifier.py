"""Error Classifier - turns billing backend failures into user-facing messages.

Input is whatever the billing call produced: a structured error body, an
exception carrying one, a bare string, or something unrecognisable. Output is
a kind from SubscriptionErrorType and a title/description pair resolved through
the localization layer. Classification never raises.

Classification order (first match wins):
1. structured ``error.type`` that is recognized -> canned message for that kind;
   present but unrecognized -> the structured ``error.message`` under UNKNOWN
2. top-level ``message`` -> verbatim under UNKNOWN
3. a string input -> verbatim under UNKNOWN
4. anything else -> generic message under UNKNOWN
"""
from dataclasses import dataclass
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from models import SubscriptionErrorType

logger = logging.getLogger(__name__)

Translator = Callable[[str], str]

GENERIC_TITLE = "Subscription Error"
GENERIC_DESCRIPTION = "An error occurred while processing your subscription. Please try again later."

# Wire strings accepted in addition to the enum values.
ERROR_TYPE_ALIASES: Dict[str, SubscriptionErrorType] = {
    "stripe_error": SubscriptionErrorType.PROVIDER_ERROR,
}

# Canned (title, description) for every error kind.
ERROR_MESSAGES: Dict[SubscriptionErrorType, Tuple[str, str]] = {
    SubscriptionErrorType.PAYMENT_FAILED: (
        "Payment Failed",
        "Your payment could not be processed. Please check your payment details and try again.",
    ),
    SubscriptionErrorType.CARD_DECLINED: (
        "Card Declined",
        "Your card was declined. Please use a different payment method or contact your bank.",
    ),
    SubscriptionErrorType.ALREADY_SUBSCRIBED: (
        "Already Subscribed",
        "You already have an active subscription to this plan.",
    ),
    SubscriptionErrorType.TRIAL_ENDED: (
        "Trial Ended",
        "Your free trial has ended. Please choose a subscription plan to continue.",
    ),
    SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND: (
        "Subscription Not Found",
        "We couldn't find your subscription. Please contact support if you believe this is an error.",
    ),
    SubscriptionErrorType.PROVIDER_ERROR: (
        "Payment Processing Error",
        "There was an error processing your payment. Please try again or use a different payment method.",
    ),
    SubscriptionErrorType.INVALID_PLAN: (
        "Invalid Plan",
        "The selected subscription plan is not valid. Please choose a different plan.",
    ),
    SubscriptionErrorType.SERVICE_UNAVAILABLE: (
        "Service Unavailable",
        "The subscription service is temporarily unavailable. Please try again later.",
    ),
    SubscriptionErrorType.UNKNOWN: (GENERIC_TITLE, GENERIC_DESCRIPTION),
}

_missing_kinds = set(SubscriptionErrorType) - set(ERROR_MESSAGES)
if _missing_kinds:
    raise RuntimeError(f"ERROR_MESSAGES has no entry for: {sorted(k.value for k in _missing_kinds)}")


@dataclass(frozen=True)
class ClassifiedError:
    kind: SubscriptionErrorType
    title_key: str
    description_key: str
    title: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
        }


def _field(source: Any, name: str) -> Any:
    """Read a field from a mapping or an attribute from an object."""
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def resolve_error_type(value: Any) -> Optional[SubscriptionErrorType]:
    """Map a wire ``type`` string to its kind, or None when unrecognized."""
    if not isinstance(value, str):
        return None
    if value in ERROR_TYPE_ALIASES:
        return ERROR_TYPE_ALIASES[value]
    try:
        return SubscriptionErrorType(value)
    except ValueError:
        return None


def _identity(key: str) -> str:
    return key


def _result(kind: SubscriptionErrorType, title_key: str, description_key: str, translate: Translator) -> ClassifiedError:
    return ClassifiedError(
        kind=kind,
        title_key=title_key,
        description_key=description_key,
        title=translate(title_key),
        description=translate(description_key),
    )


def _classify(error: Any) -> Tuple[SubscriptionErrorType, str, str]:
    structured = _field(error, "error") if error is not None else None

    if structured is not None and _field(structured, "type") is not None:
        kind = resolve_error_type(_field(structured, "type"))
        if kind is not None and kind != SubscriptionErrorType.UNKNOWN:
            title, description = ERROR_MESSAGES[kind]
            return kind, title, description
        message = _field(structured, "message")
        if isinstance(message, str) and message:
            return SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, message
        return SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, GENERIC_DESCRIPTION

    if error is not None and not isinstance(error, str):
        message = _field(error, "message")
        if isinstance(message, str) and message:
            return SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, message

    if isinstance(error, str) and error:
        return SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, error

    return SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, GENERIC_DESCRIPTION


def classify_subscription_error(error: Any, translate: Optional[Translator] = None) -> ClassifiedError:
    """Classify a billing failure into a kind and a displayable message."""
    translate = translate or _identity
    try:
        kind, title_key, description_key = _classify(error)
    except Exception as e:
        logger.warning(f"Could not inspect subscription error ({type(e).__name__}); using generic message")
        kind, title_key, description_key = SubscriptionErrorType.UNKNOWN, GENERIC_TITLE, GENERIC_DESCRIPTION

    try:
        return _result(kind, title_key, description_key, translate)
    except Exception as e:
        logger.warning(f"Translation failed for subscription error: {e}")
        return _result(kind, title_key, description_key, _identity)


def get_subscription_error_code(error: Any) -> Optional[int]:
    """Numeric ``error.code`` for correlation, or None when absent."""
    try:
        structured = _field(error, "error") if error is not None else None
        if structured is None:
            return None
        code = _field(structured, "code")
        if isinstance(code, bool):
            return None
        if isinstance(code, int):
            return code
        if isinstance(code, str) and code.strip().isdigit():
            return int(code.strip())
    except Exception:
        return None
    return None
