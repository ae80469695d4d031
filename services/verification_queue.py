# services/verification_queue.py

"""Worker pool for background (re-)verification.

Triggers from the dashboard, the bot or a low-score submission land here
instead of being fired and forgotten. A payment that is already queued or
being verified is not queued again.
"""

import asyncio
import logging
from typing import List, Optional, Set

import config
from services.errors import ExpiredPayment, PaymentNotFound, PaymentVerificationError
from services.verification_orchestrator import VerificationOrchestrator

logger = logging.getLogger(__name__)


class VerificationQueue:
    def __init__(self, orchestrator: VerificationOrchestrator, workers: Optional[int] = None):
        self.orchestrator = orchestrator
        self.worker_count = workers or config.VERIFICATION_WORKERS
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._active: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        orchestrator.background_submit = self.submit

    def submit(self, payment_id: str) -> bool:
        """Queue *payment_id*; False when it is already queued or in flight."""
        if payment_id in self._active:
            logger.info(f"Verification for {payment_id} already queued or running; trigger coalesced")
            return False
        self._active.add(payment_id)
        self._queue.put_nowait(payment_id)
        return True

    def is_active(self, payment_id: str) -> bool:
        return payment_id in self._active

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        for i in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(i), name=f"verification-worker-{i}"))
        logger.info(f"Started {self.worker_count} verification workers")

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Verification workers stopped")

    async def _worker(self, index: int) -> None:
        while True:
            payment_id = await self._queue.get()
            try:
                await self._process(payment_id)
            finally:
                self._active.discard(payment_id)
                self._queue.task_done()

    async def _process(self, payment_id: str) -> None:
        try:
            result = await self.orchestrator.verify_payment(payment_id)
            logger.info(f"Background verification of {payment_id} finished: {result.verification_status.value}")
        except (ExpiredPayment, PaymentNotFound) as e:
            logger.info(f"Skipping background verification: {e}")
        except PaymentVerificationError as e:
            logger.error(f"Background verification of {payment_id} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error verifying payment {payment_id}")
