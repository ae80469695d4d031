"""
Main entry point for the manual payment verification engine.
Starts the verification workers, the dashboard API and, when configured, the review bot.
"""

import asyncio
import logging
import sys
import os

import uvicorn

import config
from api.dashboard_routes import create_app
from bots import ReviewBot
from database.models import Database
from database.verification_store import VerificationStore
from services.chain_adapter import build_default_registry
from services.verification_dashboard import VerificationDashboard
from services.verification_orchestrator import VerificationOrchestrator
from services.verification_queue import VerificationQueue
from tasks.expiry_monitor import run_expiry_loop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler("payment_verification.log"),
        logging.StreamHandler(sys.stdout)
    ]
)
# httpx logs every Telegram poll at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def main():
    """Start the engine and its front-ends"""
    logger.info("Starting manual payment verification engine")

    # Ensure database directory exists
    os.makedirs(os.path.dirname(config.DATABASE_NAME), exist_ok=True)

    db_instance = Database()
    store = VerificationStore(db_instance)
    logger.info("Database initialized")

    registry = build_default_registry(store=store)
    engine = VerificationOrchestrator(store, registry)
    queue = VerificationQueue(engine)
    dashboard = VerificationDashboard(store)

    server = uvicorn.Server(uvicorn.Config(
        app=create_app(dashboard, queue),
        host=config.DASHBOARD_HOST,
        port=config.DASHBOARD_PORT,
        log_level="info",
    ))

    review_bot = ReviewBot(config.MANAGER_BOT_TOKEN, engine, dashboard) if config.MANAGER_BOT_TOKEN else None
    expiry_task = None

    try:
        queue.start()
        if review_bot:
            await review_bot.start()
        else:
            expiry_task = asyncio.create_task(run_expiry_loop(engine))

        logger.info(f"Dashboard API listening on http://{config.DASHBOARD_HOST}:{config.DASHBOARD_PORT}")
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error(f"Error in main: {e}", exc_info=True)
    finally:
        if expiry_task:
            expiry_task.cancel()
        if review_bot:
            await review_bot.stop()
        await queue.stop()
        db_instance.close()
        logger.info("Payment verification engine stopped")


if __name__ == "__main__":
    asyncio.run(main())
