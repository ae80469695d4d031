import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from services.chain_adapter import AdapterRegistry
from services.payment_models import Chain, ManualPayment, VerificationResult, VerificationStatus, utc_now
from services.verification_orchestrator import EngineSettings, VerificationOrchestrator
from tasks.expiry_monitor import ENGINE_KEY, expiry_sweep_job, reap_expired, schedule_expiry_sweep


def _engine(store, **settings):
    return VerificationOrchestrator(store, AdapterRegistry(), settings=EngineSettings(**settings))


def _seed(store, payment_id, status, hours_ago):
    created_at = utc_now() - timedelta(hours=hours_ago)
    payment = ManualPayment(
        payment_id=payment_id, user_id=1, amount_usd=Decimal("40"), chain=Chain.TRON,
        sender_name="Dana", created_at=created_at, expires_at=created_at + timedelta(hours=72),
    )
    store.create_payment(payment, VerificationResult(verification_status=status))


def test_sweep_expires_only_due_records_once(store):
    _seed(store, "MP_DUE_PENDING", VerificationStatus.PENDING, 100)
    _seed(store, "MP_DUE_REVIEW", VerificationStatus.MANUAL_REVIEW_REQUIRED, 80)
    _seed(store, "MP_FRESH", VerificationStatus.MANUAL_REVIEW_REQUIRED, 1)
    _seed(store, "MP_DONE", VerificationStatus.APPROVED, 100)
    engine = _engine(store)

    assert reap_expired(engine) == 2
    assert reap_expired(engine) == 0

    for payment_id in ("MP_DUE_PENDING", "MP_DUE_REVIEW"):
        _, result = store.get(payment_id)
        assert result.verification_status is VerificationStatus.EXPIRED
        assert result.verification_errors[-1] == "Review window elapsed before a decision"
        event = store.get_history(payment_id)[-1]
        assert (event["event_type"], event["changed_by"]) == ("expired", "expiry_monitor")
    assert store.get("MP_FRESH")[1].verification_status is VerificationStatus.MANUAL_REVIEW_REQUIRED
    assert store.get("MP_DONE")[1].verification_status is VerificationStatus.APPROVED


def test_blockchain_failed_expiry_follows_policy(store):
    _seed(store, "MP_FAILED", VerificationStatus.BLOCKCHAIN_FAILED, 100)

    assert reap_expired(_engine(store)) == 0
    assert reap_expired(_engine(store, expire_blockchain_failed=True)) == 1
    assert store.get("MP_FAILED")[1].verification_status is VerificationStatus.EXPIRED


def test_sweep_job_reads_engine_from_bot_data(store):
    _seed(store, "MP_DUE", VerificationStatus.PENDING, 100)
    context = MagicMock()
    context.application.bot_data = {ENGINE_KEY: _engine(store)}

    asyncio.run(expiry_sweep_job(context))

    assert store.get("MP_DUE")[1].verification_status is VerificationStatus.EXPIRED


def test_sweep_job_without_engine_does_nothing():
    context = MagicMock()
    context.application.bot_data = {}
    asyncio.run(expiry_sweep_job(context))


def test_schedule_registers_repeating_job():
    app = MagicMock()
    schedule_expiry_sweep(app, interval=60)
    app.job_queue.run_repeating.assert_called_once_with(
        expiry_sweep_job, interval=60, first=10, name="payment_expiry_sweep",
    )
