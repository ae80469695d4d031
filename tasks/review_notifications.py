"""Telegram alerts for payments that need a human decision.

Sent when a payment lands in ``manual_review_required`` or ``blockchain_failed``;
each message carries inline Approve / Reject buttons handled by
``handlers.admin.payment_review_handler``.
"""

from __future__ import annotations

import html
import logging
from typing import Iterable, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.ext import Application

from services.payment_models import ManualPayment, VerificationResult
from utils.validators import mask_wallet_address
import config

logger = logging.getLogger(__name__)

APPROVE_CALLBACK_PREFIX = "approve_payment"
REJECT_CALLBACK_PREFIX = "reject_payment"


def build_review_keyboard(payment_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton("✅ Approve", callback_data=f"{APPROVE_CALLBACK_PREFIX}:{payment_id}"),
            InlineKeyboardButton("❌ Reject", callback_data=f"{REJECT_CALLBACK_PREFIX}:{payment_id}"),
        ]
    ])


def format_review_message(payment: ManualPayment, result: VerificationResult) -> str:
    checks = "\n".join(
        f"{'✅' if passed else '❌'} {name}" for name, passed in result.verification_checks.items()
    )
    reasons = "\n".join(f"• {html.escape(reason)}" for reason in result.verification_errors) or "• none"
    title = "🚫 Blockchain check failed" if result.verification_status.value == "blockchain_failed" \
        else "⚠️ Manual review required"
    return (
        f"<b>{title}</b>\n\n"
        f"Payment: <code>{payment.payment_id}</code>\n"
        f"User ID: {payment.user_id}\n"
        f"Sender: {html.escape(payment.sender_name)}\n"
        f"Amount: ${payment.amount_usd:,.2f} on {payment.chain.value}\n"
        f"Wallet: <code>{html.escape(mask_wallet_address(payment.sender_wallet_address or ''))}</code>\n"
        f"TX Hash: <code>{html.escape(payment.transaction_hash or '-')}</code>\n"
        f"Score: {result.score} | Confidence: {result.verification_confidence}\n\n"
        f"<b>Checks</b>\n{checks}\n\n"
        f"<b>Reasons</b>\n{reasons}\n\n"
        f"Review before {payment.expires_at.strftime('%Y-%m-%d %H:%M UTC')}."
    )


async def notify_reviewers(app: Application, payment: ManualPayment, result: VerificationResult,
                           reviewer_ids: Optional[Iterable[int]] = None) -> int:
    """Send the review message to every reviewer; return how many were delivered."""
    reviewer_ids = list(reviewer_ids if reviewer_ids is not None else config.PAYMENT_REVIEWER_IDS)
    if not reviewer_ids:
        logger.warning(f"No payment reviewers configured; payment {payment.payment_id} awaits review silently")
        return 0

    text = format_review_message(payment, result)
    keyboard = build_review_keyboard(payment.payment_id)
    delivered = 0
    for admin_id in reviewer_ids:
        try:
            await app.bot.send_message(chat_id=admin_id, text=text, reply_markup=keyboard, parse_mode=ParseMode.HTML)
            delivered += 1
        except Exception as e:
            logger.error(f"Failed to notify admin {admin_id} about payment {payment.payment_id}: {e}")
    return delivered


def make_review_notifier(app: Application):
    """Adapter from the orchestrator's notifier hook to ``notify_reviewers``."""
    async def _notifier(payment: ManualPayment, result: VerificationResult) -> None:
        await notify_reviewers(app, payment, result)
    return _notifier
