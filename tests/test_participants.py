from datetime import datetime, timedelta

import pytest
from pymongo.errors import AutoReconnect, OperationFailure

from livequiz.eligibility import PaymentEligibilityGate
from livequiz.models import RejectReason
from livequiz.participants import ParticipantService


class FailingPayments:
    """Payments collection that raises the queued errors before answering"""

    def __init__(self, errors, real=None):
        self.errors = list(errors)
        self.real = real
        self.calls = 0

    async def find_one(self, *args, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return await self.real.find_one(*args, **kwargs)


@pytest.fixture
def gated(svc, db, cfg, clock):
    """Join service behind the payment gate"""
    gate = PaymentEligibilityGate(db, cfg)
    return gate, ParticipantService(svc.repo, gate, clock, cfg)


async def pay_for(db, user_id, quiz, paid_before_sec=3600):
    scheduled = datetime.fromisoformat(quiz["scheduledAt"])
    await db.payments.insert_one({
        "user": user_id,
        "forDate": scheduled.isoformat(),
        "status": "completed",
        "verified": True,
        "createdAt": (scheduled - timedelta(seconds=paid_before_sec)).isoformat(),
    })


# ============================================================================
# PAYMENT GATE
# ============================================================================


@pytest.mark.asyncio
async def test_paid_user_joins(gated, db, make_quiz):
    _, service = gated
    quiz = await make_quiz()
    await pay_for(db, "u1", quiz)

    result = await service.join(quiz["id"], "u1")

    assert result.accepted


@pytest.mark.asyncio
async def test_unpaid_or_late_payment_is_refused(gated, db, make_quiz, cfg):
    _, service = gated
    quiz = await make_quiz()
    await pay_for(db, "late", quiz, paid_before_sec=cfg.PAYMENT_CUTOFF_SEC - 10)

    assert (await service.join(quiz["id"], "nobody")).reason == RejectReason.NOT_ELIGIBLE
    assert (await service.join(quiz["id"], "late")).reason == RejectReason.NOT_ELIGIBLE


@pytest.mark.asyncio
async def test_paid_for_dates_on_profile(gated, svc, make_quiz):
    gate, _ = gated
    quiz = await make_quiz()
    scheduled = datetime.fromisoformat(quiz["scheduledAt"])
    day = scheduled.astimezone(gate.tz).date().isoformat()
    await svc.repo.users.insert_one({"id": "u9", "paidForDates": [day]})

    assert await gate.is_eligible("u9", scheduled)


# ============================================================================
# STORE FAILURES
# ============================================================================


@pytest.mark.asyncio
async def test_gate_store_outage_is_try_again(gated, make_quiz, monkeypatch):
    gate, service = gated
    quiz = await make_quiz()
    payments = FailingPayments([AutoReconnect("connection reset")] * 10)
    monkeypatch.setattr(gate, "payments", payments)

    result = await service.join(quiz["id"], "u1")

    assert not result.accepted
    assert result.reason == RejectReason.TRY_AGAIN
    assert "connection" not in result.message
    # retried before giving up
    assert payments.calls > 1


@pytest.mark.asyncio
async def test_gate_recovers_from_transient_error(gated, db, make_quiz, monkeypatch):
    gate, service = gated
    quiz = await make_quiz()
    await pay_for(db, "u1", quiz)
    monkeypatch.setattr(gate, "payments", FailingPayments([AutoReconnect("blip")], real=gate.payments))

    assert (await service.join(quiz["id"], "u1")).accepted


@pytest.mark.asyncio
async def test_driver_error_in_gate_is_try_again(gated, make_quiz, monkeypatch):
    gate, service = gated
    quiz = await make_quiz()
    monkeypatch.setattr(gate, "payments", FailingPayments([OperationFailure("not authorized")]))

    result = await service.join(quiz["id"], "u1")

    assert result.reason == RejectReason.TRY_AGAIN
