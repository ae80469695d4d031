"""
Admin utility functions and decorators
"""

import config
from functools import wraps


def is_admin_user(user_id: int) -> bool:
    """Check if user is admin"""
    return user_id in config.ADMIN_USER_IDS


def is_payment_reviewer(user_id: int) -> bool:
    """Reviewers may approve or reject manual payments"""
    return user_id in config.PAYMENT_REVIEWER_IDS or user_id in config.MANAGER_BOT_ADMINS_DICT


def admin_required(func):
    """Decorator to check if user is a payment reviewer"""
    @wraps(func)
    async def wrapper(update, context):
        user_id = update.effective_user.id if update.effective_user else None
        if user_id is not None and is_payment_reviewer(user_id):
            return await func(update, context)
        else:
            if update.message:
                await update.message.reply_text("❌ You are not allowed to review payments.")
            elif update.callback_query:
                await update.callback_query.answer("❌ You are not allowed to review payments.", show_alert=True)
            return
    return wrapper
