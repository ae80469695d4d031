"""Periodic sweep moving payments past their review window to ``expired``."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from telegram.ext import Application, CallbackContext

from services.payment_models import utc_now
from services.verification_orchestrator import VerificationOrchestrator
import config

logger = logging.getLogger(__name__)

ENGINE_KEY = "engine"  # bot_data key shared with the payment review handlers


def reap_expired(engine: VerificationOrchestrator, now: Optional[datetime] = None) -> int:
    """Expire every due record once; a second run in the same window returns 0."""
    now = now or utc_now()
    count = engine.expire_due(now)
    if count:
        logger.info(f"Expiry sweep at {now.isoformat()}: {count} payment(s) expired")
    else:
        logger.debug(f"Expiry sweep at {now.isoformat()}: nothing to expire")
    return count


async def expiry_sweep_job(context: CallbackContext) -> None:
    """JobQueue callback wrapping :func:`reap_expired`."""
    engine = context.application.bot_data.get(ENGINE_KEY)
    if engine is None:
        logger.error("Expiry sweep skipped: verification engine missing from bot_data")
        return
    try:
        reap_expired(engine)
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)


def schedule_expiry_sweep(app: Application, interval: Optional[int] = None) -> None:
    """Attach the repeating expiry sweep to the application's job_queue."""
    interval = interval or config.EXPIRY_SWEEP_INTERVAL_SECONDS
    app.job_queue.run_repeating(
        expiry_sweep_job,
        interval=interval,
        first=10,
        name="payment_expiry_sweep",
    )
    logger.info(f"Scheduled payment expiry sweep every {interval} seconds")


async def run_expiry_loop(engine: VerificationOrchestrator, interval: Optional[int] = None) -> None:
    """Standalone sweep loop for deployments running without the review bot."""
    interval = interval or config.EXPIRY_SWEEP_INTERVAL_SECONDS
    logger.info(f"Running payment expiry sweep every {interval} seconds without JobQueue")
    while True:
        try:
            reap_expired(engine)
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        await asyncio.sleep(interval)
