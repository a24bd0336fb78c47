"""
Localization and audit helper tests.
- Accept-Language negotiation by q-weight, fallback to English, placeholder filling
- Every lifecycle and guard message has a French translation
- calculate_diff; create_audit_log never raises
"""
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction, UserRole
from services import entitlement_guard, lifecycle_controller
from services.error_classifier import ERROR_MESSAGES
from utils.audit import calculate_diff, create_audit_log
from utils.i18n import TRANSLATIONS, UserMessage, get_translator, language_from_header, normalize_language


class TestLanguage:
    @pytest.mark.parametrize("header, language", [
        (None, "en"),
        ("", "en"),
        ("fr", "fr"),
        ("fr-FR,fr;q=0.9", "fr"),
        ("de-DE,fr;q=0.5", "fr"),
        ("de-DE,es", "en"),
        ("fr;q=0.1, en;q=0.9", "en"),
        ("en;q=0.5, fr", "fr"),
        ("fr;q=0, en;q=0.2", "en"),
        ("en, fr", "en"),
        ("fr;q=abc", "en"),
    ])
    def test_language_from_header(self, header, language):
        assert language_from_header(header) == language

    def test_normalize_language(self):
        assert normalize_language("FR_ca") == "fr"
        assert normalize_language("pt") == "en"

    def test_untranslated_key_renders_as_is(self):
        assert get_translator("fr")("Some new message") == "Some new message"

    def test_placeholders_filled_after_translation(self):
        message = lifecycle_controller.TRIAL_STARTED.with_params(days="7", plan="Basic Plan")
        assert message.render(get_translator("fr"))["description"] == "Votre essai gratuit de 7 jours du forfait Basic Plan a commencé."

    def test_text_with_braces_is_left_alone_without_params(self):
        assert UserMessage("Title", "Use {curly} braces").render()["description"] == "Use {curly} braces"


def _messages(module):
    return [value for value in vars(module).values() if isinstance(value, UserMessage)]


def test_every_message_has_french_translation():
    keys = set()
    for message in _messages(lifecycle_controller) + _messages(entitlement_guard):
        keys.update((message.title, message.description))
    for decision in (entitlement_guard.PENDING, entitlement_guard.UNAUTHENTICATED, entitlement_guard.NO_SUBSCRIPTION,
                     entitlement_guard.EXPIRED, entitlement_guard.PAST_DUE):
        keys.update((decision.message.title, decision.message.description))
    keys.add(lifecycle_controller.ALREADY_EXISTS_TITLE)
    keys.add(lifecycle_controller.ALREADY_EXISTS_DEFAULT)
    keys.update(lifecycle_controller.ALREADY_EXISTS_BY_STATUS.values())
    for title, description in ERROR_MESSAGES.values():
        keys.update((title, description))

    missing = sorted(keys - set(TRANSLATIONS["fr"]))
    assert missing == []


class TestAudit:
    def test_calculate_diff(self):
        diff = calculate_diff({"status": "trial", "plan_id": "basic"}, {"status": "trial", "plan_id": "enterprise"})
        assert diff == {"changed": {"plan_id": {"from": "basic", "to": "enterprise"}}}

    @pytest.mark.asyncio
    async def test_create_audit_log_inserts(self):
        db = MagicMock()
        db.audit_logs.insert_one = AsyncMock()
        with patch("utils.audit.database.get_db", return_value=db):
            audit_id = await create_audit_log(
                action=AuditAction.SUBSCRIPTION_CANCELED,
                actor_role=UserRole.ROLE_USER,
                actor_id="user-1",
                user_id="user-1",
                before_state={"status": "active"},
                after_state={"status": "canceled"},
            )

        doc = db.audit_logs.insert_one.call_args[0][0]
        assert audit_id
        assert doc["action"] == "SUBSCRIPTION_CANCELED"
        assert doc["metadata"]["diff"]["changed"]["status"] == {"from": "active", "to": "canceled"}

    @pytest.mark.asyncio
    async def test_create_audit_log_never_raises(self):
        db = MagicMock()
        db.audit_logs.insert_one = AsyncMock(side_effect=RuntimeError("mongo down"))
        with patch("utils.audit.database.get_db", return_value=db):
            assert await create_audit_log(action=AuditAction.ENTITLEMENT_DENIED) == ""
