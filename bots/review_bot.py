"""
Payment review Telegram bot
"""

import html
import logging

from telegram.constants import ParseMode
from telegram.ext import Application, ContextTypes

import config
from handlers.admin.payment_review_handler import DASHBOARD_KEY, ENGINE_KEY, get_payment_review_handlers
from services.verification_dashboard import VerificationDashboard
from services.verification_orchestrator import VerificationOrchestrator
from tasks.expiry_monitor import schedule_expiry_sweep
from tasks.review_notifications import make_review_notifier

logger = logging.getLogger(__name__)


async def review_bot_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Log errors and send a message to admins with role 'manager_bot_error_contact'."""
    logger.error(f"Exception while handling an update in ReviewBot: {context.error}", exc_info=context.error)

    user_info = ""
    if update and hasattr(update, 'effective_user') and update.effective_user:
        user_info = f"User: {update.effective_user.id} ({update.effective_user.username or update.effective_user.first_name})"

    error_message = (
        f"An error occurred in the payment review bot:\n\n"
        f"<pre>{html.escape(str(context.error))}</pre>\n\n"
        f"See the server log for details.\n"
        f"{user_info}"
    )

    if config.MANAGER_BOT_ERROR_CONTACT_IDS:
        for chat_id in config.MANAGER_BOT_ERROR_CONTACT_IDS:
            try:
                await context.bot.send_message(chat_id=chat_id, text=error_message, parse_mode=ParseMode.HTML)
            except Exception as e:
                logger.error(f"Failed to send error message to admin {chat_id}: {e}")
    else:
        logger.warning("MANAGER_BOT_ERROR_CONTACT_IDS is not set in config. Cannot send error notifications for ReviewBot.")


class ReviewBot:
    """Telegram front-end for reviewers: alerts, approve/reject, detail and stats"""

    def __init__(self, token: str, engine: VerificationOrchestrator, dashboard: VerificationDashboard):
        self.logger = logging.getLogger(__name__)
        self.engine = engine
        self.application = Application.builder().token(token).build()
        self.application.bot_data[ENGINE_KEY] = engine
        self.application.bot_data[DASHBOARD_KEY] = dashboard

        for handler in get_payment_review_handlers():
            self.application.add_handler(handler)
        self.application.add_error_handler(review_bot_error_handler)

        engine.notifier = make_review_notifier(self.application)
        self.setup_tasks()

    def setup_tasks(self):
        """Setup background tasks"""
        self.logger.info("Scheduling periodic payment expiry sweep.")
        schedule_expiry_sweep(self.application)

    async def start(self):
        """Start the bot"""
        self.logger.info("Starting Review Bot")
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(allowed_updates=self.application.allowed_updates)
        self.logger.info("Review Bot started")

    async def stop(self):
        """Stop the bot"""
        self.logger.info("Stopping Review Bot")
        if self.application.updater and self.application.updater.running:
            await self.application.updater.stop()
        await self.application.stop()
        await self.application.shutdown()
        self.logger.info("Review Bot stopped")
