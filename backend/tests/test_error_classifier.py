"""
Error classifier tests.
- Recognized structured error types map to their canned message, never the raw text
- Unrecognized types fall back to the structured message, then the generic one
- Bare strings, empty objects and hostile inputs never raise
- Numeric error code extraction
- Every error kind has a message (table is exhaustive)
"""
import pytest
import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import SubscriptionErrorType
from services.billing_client import BillingBackendError
from services.error_classifier import (
    ERROR_MESSAGES,
    GENERIC_DESCRIPTION,
    GENERIC_TITLE,
    classify_subscription_error,
    get_subscription_error_code,
)
from utils.i18n import get_translator


class TestClassification:
    def test_card_declined_uses_canned_message(self):
        result = classify_subscription_error({"error": {"type": "card_declined", "message": "x"}})
        assert result.kind == SubscriptionErrorType.CARD_DECLINED
        assert result.title == "Card Declined"
        assert result.description == ERROR_MESSAGES[SubscriptionErrorType.CARD_DECLINED][1]
        assert result.description != "x"

    @pytest.mark.parametrize("kind", [k for k in SubscriptionErrorType if k != SubscriptionErrorType.UNKNOWN])
    def test_every_recognized_type(self, kind):
        result = classify_subscription_error({"error": {"type": kind.value, "message": "raw backend text"}})
        assert result.kind == kind
        assert (result.title, result.description) == ERROR_MESSAGES[kind]

    def test_stripe_error_alias(self):
        result = classify_subscription_error({"error": {"type": "stripe_error"}})
        assert result.kind == SubscriptionErrorType.PROVIDER_ERROR
        assert result.title == "Payment Processing Error"

    def test_unrecognized_type_uses_structured_message(self):
        result = classify_subscription_error({"error": {"type": "quota_exceeded", "message": "Too many plans"}})
        assert result.kind == SubscriptionErrorType.UNKNOWN
        assert result.title == GENERIC_TITLE
        assert result.description == "Too many plans"

    def test_unrecognized_type_without_message_is_generic(self):
        result = classify_subscription_error({"error": {"type": "quota_exceeded"}})
        assert (result.title, result.description) == (GENERIC_TITLE, GENERIC_DESCRIPTION)

    def test_top_level_message(self):
        result = classify_subscription_error({"message": "Billing is down for maintenance"})
        assert result.kind == SubscriptionErrorType.UNKNOWN
        assert result.description == "Billing is down for maintenance"

    def test_bare_string(self):
        result = classify_subscription_error("boom")
        assert result.kind == SubscriptionErrorType.UNKNOWN
        assert result.title == GENERIC_TITLE
        assert result.description == "boom"

    @pytest.mark.parametrize("error", [{}, None, "", 42, [], {"error": None}])
    def test_unrecognizable_input_is_generic(self, error):
        result = classify_subscription_error(error)
        assert result.kind == SubscriptionErrorType.UNKNOWN
        assert (result.title, result.description) == (GENERIC_TITLE, GENERIC_DESCRIPTION)

    def test_hostile_object_never_raises(self):
        class Hostile:
            def __getattr__(self, name):
                raise RuntimeError("no attributes here")

        result = classify_subscription_error(Hostile())
        assert (result.title, result.description) == (GENERIC_TITLE, GENERIC_DESCRIPTION)

    def test_billing_backend_error_is_read_through_properties(self):
        error = BillingBackendError(409, {"error": {"type": "already_subscribed", "message": "dup", "code": 409}})
        assert classify_subscription_error(error).kind == SubscriptionErrorType.ALREADY_SUBSCRIBED

    def test_billing_backend_error_without_body_is_generic(self):
        result = classify_subscription_error(BillingBackendError(500, None))
        assert result.description == GENERIC_DESCRIPTION

    def test_translated_output(self):
        result = classify_subscription_error({"error": {"type": "card_declined"}}, get_translator("fr"))
        assert result.title == "Carte refusée"
        assert result.title_key == "Card Declined"

    def test_to_dict(self):
        assert classify_subscription_error("boom").to_dict() == {
            "kind": "unknown",
            "title": GENERIC_TITLE,
            "description": "boom",
        }


class TestErrorCode:
    def test_integer_code(self):
        assert get_subscription_error_code({"error": {"type": "payment_failed", "code": 402}}) == 402

    def test_digit_string_code(self):
        assert get_subscription_error_code({"error": {"code": "409"}}) == 409

    @pytest.mark.parametrize("error", [
        None,
        {},
        "boom",
        {"error": {"type": "payment_failed"}},
        {"error": {"code": "card_declined"}},
        {"error": {"code": True}},
    ])
    def test_absent_code(self, error):
        assert get_subscription_error_code(error) is None


def test_every_kind_has_a_message():
    assert set(ERROR_MESSAGES) == set(SubscriptionErrorType)
