"""
Verification Dashboard API - read-only endpoints plus the re-verify trigger

Consumed by the statistics view and the verification detail view.
Engine errors are mapped to JSON error bodies; tracebacks never leave the process.
"""

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel

from services.errors import PaymentNotFound
from services.payment_models import VerificationStatus
from services.verification_dashboard import VerificationDashboard
from services.verification_queue import VerificationQueue

logger = logging.getLogger(__name__)


class ReverifyResponse(BaseModel):
    payment_id: str
    queued: bool
    status: str


def build_router(dashboard: VerificationDashboard, queue: Optional[VerificationQueue] = None) -> APIRouter:
    router = APIRouter(prefix="/api/verification", tags=["verification"])

    @router.get("/payments")
    def list_payments(
        status: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        status_filter = None
        if status:
            try:
                status_filter = VerificationStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown verification status: {status}")
        payments = dashboard.list_payments(status=status_filter, limit=limit, offset=offset)
        return {"payments": payments, "limit": limit, "offset": offset, "count": len(payments)}

    @router.get("/payments/{payment_id}")
    def get_payment(payment_id: str):
        try:
            return dashboard.get_payment(payment_id)
        except PaymentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.get("/stats")
    def stats():
        return dashboard.stats()

    @router.post("/payments/{payment_id}/reverify", status_code=202, response_model=ReverifyResponse)
    async def reverify(payment_id: str):
        # Runs on the event loop that owns the worker queue, never in the threadpool.
        if queue is None:
            raise HTTPException(status_code=503, detail="Verification workers are not running")
        try:
            _, result = dashboard.store.get(payment_id)
        except PaymentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        status = result.verification_status if result else VerificationStatus.PENDING
        if status is VerificationStatus.EXPIRED:
            raise HTTPException(status_code=409, detail=f"Payment {payment_id} has expired")
        queued = False
        if not status.is_terminal:
            queued = queue.submit(payment_id)
            logger.info(f"Re-verification requested from dashboard for {payment_id} (queued={queued})")
        return ReverifyResponse(payment_id=payment_id, queued=queued, status=status.value)

    return router


def create_app(dashboard: VerificationDashboard, queue: Optional[VerificationQueue] = None) -> FastAPI:
    app = FastAPI(title="Manual Payment Verification Dashboard API")
    app.include_router(build_router(dashboard, queue))

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
