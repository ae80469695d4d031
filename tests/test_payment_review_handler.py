import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
from handlers.admin.payment_review_handler import (
    DASHBOARD_KEY,
    ENGINE_KEY,
    approve_command,
    approve_payment_callback,
    reject_payment_callback,
    verification_stats_command,
)
from services.errors import ExpiredPayment, InvalidTransition
from services.payment_models import (
    AdminDecision,
    Chain,
    ManualPayment,
    VerificationResult,
    VerificationStatus,
    utc_now,
)
from tasks.review_notifications import build_review_keyboard, format_review_message, notify_reviewers

REVIEWER = 555


@pytest.fixture(autouse=True)
def reviewers(monkeypatch):
    monkeypatch.setattr(config, "PAYMENT_REVIEWER_IDS", [REVIEWER])
    monkeypatch.setattr(config, "MANAGER_BOT_ADMINS_DICT", {})


def _context(engine=None, dashboard=None, args=None):
    context = MagicMock()
    context.application.bot_data = {ENGINE_KEY: engine, DASHBOARD_KEY: dashboard}
    context.args = args or []
    return context


def _callback_update(data, user_id=REVIEWER):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message = None
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    return update


def _command_update(user_id=REVIEWER):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    return update


def _payment():
    created_at = utc_now()
    return ManualPayment(
        payment_id="MP_ABC", user_id=7, amount_usd=Decimal("1500"), chain=Chain.BSC, sender_name="Alice <A>",
        created_at=created_at, expires_at=created_at + timedelta(hours=72),
        sender_wallet_address="0x" + "12" * 20, transaction_hash="0x" + "ef" * 32,
    )


def test_approve_button_applies_decision():
    engine = MagicMock()
    engine.decide = AsyncMock(return_value=VerificationResult(verification_status=VerificationStatus.APPROVED))
    update = _callback_update("approve_payment:MP_ABC")

    asyncio.run(approve_payment_callback(update, _context(engine)))

    engine.decide.assert_awaited_once_with("MP_ABC", AdminDecision.APPROVE, REVIEWER, "via inline button")
    update.callback_query.edit_message_text.assert_awaited_once_with("✅ Payment MP_ABC is approved.")


def test_reject_button_on_expired_payment():
    engine = MagicMock()
    engine.decide = AsyncMock(side_effect=ExpiredPayment("MP_ABC"))
    update = _callback_update("reject_payment:MP_ABC")

    asyncio.run(reject_payment_callback(update, _context(engine)))

    text = update.callback_query.edit_message_text.await_args.args[0]
    assert "expired" in text


def test_conflicting_command_reports_transition_error():
    engine = MagicMock()
    engine.decide = AsyncMock(side_effect=InvalidTransition(
        "MP_ABC", VerificationStatus.REJECTED, VerificationStatus.APPROVED))
    update = _command_update()

    asyncio.run(approve_command(update, _context(engine, args=["MP_ABC", "paid", "twice"])))

    engine.decide.assert_awaited_once_with("MP_ABC", AdminDecision.APPROVE, REVIEWER, "paid twice")
    update.message.reply_text.assert_awaited_once_with("⚠️ Payment MP_ABC cannot move from rejected to approved")


def test_command_without_arguments_shows_usage():
    update = _command_update()
    asyncio.run(approve_command(update, _context(MagicMock())))
    update.message.reply_text.assert_awaited_once_with("Usage: /approve <payment_id> [notes]")


def test_non_reviewer_is_refused():
    engine = MagicMock()
    engine.decide = AsyncMock()
    update = _callback_update("approve_payment:MP_ABC", user_id=1)

    asyncio.run(approve_payment_callback(update, _context(engine)))

    engine.decide.assert_not_awaited()
    update.callback_query.answer.assert_awaited_once_with("❌ You are not allowed to review payments.", show_alert=True)


def test_stats_command():
    dashboard = MagicMock()
    dashboard.stats.return_value = {
        "total_payments": 4, "auto_approved": 1, "auto_approval_rate": 25.0, "manual_review": 2,
        "blockchain_failed": 1, "expired": 0, "avg_confidence": 61.5,
    }
    update = _command_update()

    asyncio.run(verification_stats_command(update, _context(dashboard=dashboard)))

    text = update.message.reply_text.await_args.args[0]
    assert "Auto-approved: 1 (25.0%)" in text


def test_review_message_and_keyboard():
    result = VerificationResult(
        verification_status=VerificationStatus.BLOCKCHAIN_FAILED,
        verification_errors=["Amount mismatch: actual $10, claimed $1500"],
        score=100,
    )
    text = format_review_message(_payment(), result)
    assert "Blockchain check failed" in text
    assert "Alice &lt;A&gt;" in text
    assert "Amount mismatch" in text

    buttons = build_review_keyboard("MP_ABC").inline_keyboard[0]
    assert [b.callback_data for b in buttons] == ["approve_payment:MP_ABC", "reject_payment:MP_ABC"]


def test_notify_reviewers_counts_deliveries():
    app = MagicMock()
    app.bot.send_message = AsyncMock(side_effect=[None, Exception("bot was blocked by the user")])
    result = VerificationResult(verification_status=VerificationStatus.MANUAL_REVIEW_REQUIRED)

    delivered = asyncio.run(notify_reviewers(app, _payment(), result, reviewer_ids=[1, 2]))

    assert delivered == 1
    assert app.bot.send_message.await_count == 2


def test_notify_without_reviewers():
    app = MagicMock()
    app.bot.send_message = AsyncMock()
    result = VerificationResult(verification_status=VerificationStatus.MANUAL_REVIEW_REQUIRED)
    assert asyncio.run(notify_reviewers(app, _payment(), result, reviewer_ids=[])) == 0
    app.bot.send_message.assert_not_awaited()


def test_handlers_and_expiry_sweep_share_engine_key():
    from handlers.admin import payment_review_handler
    from tasks import expiry_monitor

    assert payment_review_handler.ENGINE_KEY is expiry_monitor.ENGINE_KEY
