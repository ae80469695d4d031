"""Handlers for admin review of manual crypto payments."""

from __future__ import annotations

import html
import logging

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes

from services.errors import ExpiredPayment, InvalidTransition, PaymentNotFound
from services.payment_models import AdminDecision
from tasks.expiry_monitor import ENGINE_KEY
from tasks.review_notifications import APPROVE_CALLBACK_PREFIX, REJECT_CALLBACK_PREFIX
from utils.admin_utils import admin_required

logger = logging.getLogger(__name__)

DASHBOARD_KEY = "dashboard"


async def _apply_decision(context: ContextTypes.DEFAULT_TYPE, payment_id: str, decision: AdminDecision,
                          admin_id: int, notes: str) -> str:
    """Run the decision and return the text to show the admin."""
    engine = context.application.bot_data[ENGINE_KEY]
    try:
        result = await engine.decide(payment_id, decision, admin_id, notes)
    except PaymentNotFound:
        return f"Payment {payment_id} not found."
    except ExpiredPayment:
        return f"⌛ Payment {payment_id} has expired and can no longer be reviewed."
    except InvalidTransition as e:
        return f"⚠️ {e}"
    icon = "✅" if result.verification_status.value == "approved" else "❌"
    return f"{icon} Payment {payment_id} is {result.verification_status.value}."


@admin_required
async def approve_payment_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _decision_callback(update, context, AdminDecision.APPROVE)


@admin_required
async def reject_payment_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _decision_callback(update, context, AdminDecision.REJECT)


async def _decision_callback(update: Update, context: ContextTypes.DEFAULT_TYPE, decision: AdminDecision):
    query = update.callback_query
    await query.answer()
    payment_id = query.data.split(":", 1)[1]
    admin_id = update.effective_user.id
    text = await _apply_decision(context, payment_id, decision, admin_id, notes="via inline button")
    logger.info(f"Admin {admin_id} pressed {decision.value} for {payment_id}: {text}")
    await query.edit_message_text(text)


@admin_required
async def approve_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/approve <payment_id> [notes]"""
    await _decision_command(update, context, AdminDecision.APPROVE)


@admin_required
async def reject_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/reject <payment_id> [notes]"""
    await _decision_command(update, context, AdminDecision.REJECT)


async def _decision_command(update: Update, context: ContextTypes.DEFAULT_TYPE, decision: AdminDecision):
    if not context.args:
        await update.message.reply_text(f"Usage: /{decision.value} <payment_id> [notes]")
        return
    payment_id = context.args[0]
    notes = " ".join(context.args[1:])
    text = await _apply_decision(context, payment_id, decision, update.effective_user.id, notes)
    await update.message.reply_text(text)


@admin_required
async def payment_detail_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/payment <payment_id>: status, checks and reasons of one payment."""
    if not context.args:
        await update.message.reply_text("Usage: /payment <payment_id>")
        return
    dashboard = context.application.bot_data[DASHBOARD_KEY]
    try:
        detail = dashboard.get_payment(context.args[0], include_history=False)
    except PaymentNotFound as e:
        await update.message.reply_text(str(e))
        return

    verification = detail["verification"]
    checks = "\n".join(f"{'✅' if ok else '❌'} {name}" for name, ok in verification["verification_checks"].items())
    errors = "\n".join(f"• {html.escape(e)}" for e in verification["verification_errors"]) or "• none"
    text = (
        f"<b>Payment</b> <code>{detail['payment_id']}</code>\n"
        f"Status: <b>{verification['verification_status']}</b>\n"
        f"Amount: ${detail['amount_usd']:,.2f} on {detail['chain']}\n"
        f"Confidence: {verification['verification_confidence']} (score {verification['score']})\n"
        f"Blockchain verified: {'yes' if verification['blockchain_verified'] else 'no'}\n\n"
        f"{checks}\n\n{errors}"
    )
    await update.message.reply_text(text, parse_mode=ParseMode.HTML)


@admin_required
async def verification_stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    dashboard = context.application.bot_data[DASHBOARD_KEY]
    stats = dashboard.stats()
    text = (
        "📊 <b>Auto-verification statistics</b>\n\n"
        f"Total payments: {stats['total_payments']}\n"
        f"Auto-approved: {stats['auto_approved']} ({stats['auto_approval_rate']}%)\n"
        f"Manual review: {stats['manual_review']}\n"
        f"Blockchain failed: {stats['blockchain_failed']}\n"
        f"Expired: {stats['expired']}\n"
        f"Average confidence: {stats['avg_confidence']}"
    )
    await update.message.reply_text(text, parse_mode=ParseMode.HTML)


def get_payment_review_handlers():
    return [
        CommandHandler("approve", approve_command),
        CommandHandler("reject", reject_command),
        CommandHandler("payment", payment_detail_command),
        CommandHandler("verification_stats", verification_stats_command),
        CallbackQueryHandler(approve_payment_callback, pattern=rf"^{APPROVE_CALLBACK_PREFIX}:"),
        CallbackQueryHandler(reject_payment_callback, pattern=rf"^{REJECT_CALLBACK_PREFIX}:"),
    ]
