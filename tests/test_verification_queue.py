import asyncio

from services.errors import ExpiredPayment
from services.payment_models import VerificationResult
from services.verification_queue import VerificationQueue


class RecordingEngine:
    def __init__(self, failures=None):
        self.background_submit = None
        self.calls = []
        self.failures = failures or {}

    async def verify_payment(self, payment_id, now=None):
        self.calls.append(payment_id)
        await asyncio.sleep(0.01)
        if payment_id in self.failures:
            raise self.failures[payment_id]
        return VerificationResult()


def test_queue_registers_itself_for_background_checks():
    engine = RecordingEngine()

    async def scenario():
        queue = VerificationQueue(engine, workers=1)
        assert engine.background_submit == queue.submit

    asyncio.run(scenario())


def test_duplicate_triggers_are_coalesced():
    engine = RecordingEngine()

    async def scenario():
        queue = VerificationQueue(engine, workers=2)
        assert queue.submit("MP_1") is True
        assert queue.submit("MP_1") is False
        assert queue.submit("MP_2") is True
        assert queue.pending == 2
        queue.start()
        await queue.join()
        assert not queue.is_active("MP_1")
        # Finished work can be requested again
        assert queue.submit("MP_1") is True
        await queue.join()
        await queue.stop()

    asyncio.run(scenario())
    assert sorted(engine.calls) == ["MP_1", "MP_1", "MP_2"]


def test_trigger_while_running_is_coalesced():
    engine = RecordingEngine()

    async def scenario():
        queue = VerificationQueue(engine, workers=1)
        queue.start()
        queue.submit("MP_1")
        await asyncio.sleep(0)
        assert queue.is_active("MP_1")
        assert queue.submit("MP_1") is False
        await queue.join()
        await queue.stop()

    asyncio.run(scenario())
    assert engine.calls == ["MP_1"]


def test_worker_survives_failures():
    engine = RecordingEngine(failures={"MP_OLD": ExpiredPayment("MP_OLD"), "MP_BUG": RuntimeError("boom")})

    async def scenario():
        queue = VerificationQueue(engine, workers=1)
        for payment_id in ("MP_OLD", "MP_BUG", "MP_OK"):
            queue.submit(payment_id)
        queue.start()
        await queue.join()
        await queue.stop()

    asyncio.run(scenario())
    assert engine.calls == ["MP_OLD", "MP_BUG", "MP_OK"]
