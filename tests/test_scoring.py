import asyncio
import random

import pytest

from conftest import settle
from livequiz.errors import StoreUnavailable
from livequiz.models import RejectReason
from livequiz.repository import reconcile
from livequiz.scoring import score_answer
from livequiz.session import AdvanceOutcome


@pytest.fixture
async def live_quiz(svc, make_quiz):
    """A started 3-question quiz (10s each) with u1 joined"""
    quiz = await make_quiz(questions=3, time_per_question=10)
    await svc.participants.join(quiz["id"], "u1")
    await svc.sessions.start(quiz["id"])
    return quiz


def correct_option(quiz, index):
    return quiz["questions"][index]["correctIndex"]


# ============================================================================
# SCORER
# ============================================================================


def test_score_answer():
    question = {"options": ["a", "b", "c"], "correctIndex": 2, "points": 3}
    assert score_answer(question, 2) == (True, 3)
    assert score_answer(question, 0) == (False, 0)
    assert score_answer({"options": ["a", "b"], "correctIndex": 0}, 0) == (True, 1)


# ============================================================================
# ACCEPTED ANSWERS
# ============================================================================


@pytest.mark.asyncio
async def test_correct_answer_is_scored_with_server_time(svc, live_quiz, clock):
    clock.advance(2.5)

    result = await svc.intake.submit_answer(
        live_quiz["id"], "u1", 0, correct_option(live_quiz, 0), client_timestamp=clock.now_ms() - 400
    )

    assert result.accepted
    assert result.correct is True
    assert result.pointsAwarded == 1
    assert result.cumulativeScore == 1
    assert result.timeTaken == 2.5

    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert p["score"] == 1
    assert p["correctAnswers"] == 1
    assert p["questionsAnswered"] == 1
    assert p["timeSpent"] == 2.5
    assert len(p["answers"]) == 1
    assert reconcile(p)


@pytest.mark.asyncio
async def test_wrong_answer_counts_time_but_no_points(svc, live_quiz, clock):
    clock.advance(4)
    wrong = (correct_option(live_quiz, 0) + 1) % 4

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, wrong)

    assert result.accepted
    assert result.correct is False
    assert result.pointsAwarded == 0
    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert p["score"] == 0
    assert p["timeSpent"] == 4.0


@pytest.mark.asyncio
async def test_answer_within_grace_is_accepted(svc, live_quiz, clock):
    clock.advance(10.5)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert result.accepted


@pytest.mark.asyncio
async def test_room_sees_only_that_someone_answered(svc, live_quiz, room, clock):
    ws = await room(live_quiz["id"])
    clock.advance(1)

    await svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))

    events = ws.of_type("participant-answered")
    assert len(events) == 1
    assert events[0]["userId"] == "u1"
    assert "score" not in events[0]
    assert "correct" not in events[0]


# ============================================================================
# REJECTIONS (in check order)
# ============================================================================


@pytest.mark.asyncio
async def test_quiz_not_live(svc, make_quiz):
    quiz = await make_quiz()
    await svc.participants.join(quiz["id"], "u1")

    result = await svc.intake.submit_answer(quiz["id"], "u1", 0, 0)

    assert result.reason == RejectReason.QUIZ_NOT_LIVE


@pytest.mark.asyncio
async def test_wrong_question(svc, live_quiz):
    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 1, 0)

    assert not result.accepted
    assert result.reason == RejectReason.WRONG_QUESTION


@pytest.mark.asyncio
async def test_not_eligible_when_not_joined(svc, live_quiz):
    result = await svc.intake.submit_answer(live_quiz["id"], "stranger", 0, 0)

    assert result.reason == RejectReason.NOT_ELIGIBLE


@pytest.mark.asyncio
async def test_already_answered(svc, live_quiz, clock):
    clock.advance(1)
    first = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))
    second = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert first.accepted
    assert second.reason == RejectReason.ALREADY_ANSWERED
    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert p["score"] == 1
    assert len(p["answers"]) == 1


@pytest.mark.asyncio
async def test_time_exceeded_after_grace(svc, live_quiz, clock):
    clock.advance(11.1)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert result.reason == RejectReason.TIME_EXCEEDED


@pytest.mark.asyncio
async def test_too_fast_when_floor_enabled(svc, live_quiz, clock, cfg):
    cfg.MIN_ANSWER_SEC = 0.5
    clock.advance(0.2)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert result.reason == RejectReason.TOO_FAST


@pytest.mark.asyncio
async def test_invalid_option(svc, live_quiz, clock):
    clock.advance(1)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 7)

    assert result.reason == RejectReason.INVALID_OPTION


@pytest.mark.asyncio
async def test_sealed_ledger_rejects_late_writes(svc, live_quiz, clock):
    clock.advance(1)
    await svc.repo.seal_participants(live_quiz["id"])

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert result.reason == RejectReason.QUIZ_NOT_LIVE


@pytest.mark.asyncio
async def test_store_failure_is_generic_try_again(svc, live_quiz, clock, monkeypatch):
    async def broken(*args, **kwargs):
        raise StoreUnavailable("record_answer failed: connection reset")

    monkeypatch.setattr(svc.repo, "record_answer", broken)
    clock.advance(1)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, 0)

    assert not result.accepted
    assert result.reason == RejectReason.TRY_AGAIN
    assert "connection" not in result.message


@pytest.mark.asyncio
async def test_write_that_landed_before_failure_report_is_accepted(svc, live_quiz, clock, monkeypatch):
    real_record = svc.repo.record_answer

    async def lands_then_misses(quiz_id, user_id, entry, now_ms):
        await real_record(quiz_id, user_id, entry, now_ms)
        return None

    monkeypatch.setattr(svc.repo, "record_answer", lands_then_misses)
    clock.advance(1)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))

    assert result.accepted
    assert result.cumulativeScore == 1


# ============================================================================
# LEDGER CONSISTENCY
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_duplicate_submissions_record_once(svc, live_quiz, clock):
    clock.advance(3)

    results = await asyncio.gather(
        *(svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0)) for _ in range(8))
    )

    accepted = [r for r in results if r.accepted]
    assert len(accepted) == 1
    assert all(r.reason == RejectReason.ALREADY_ANSWERED for r in results if not r.accepted)
    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert len(p["answers"]) == 1
    assert p["score"] == 1
    assert reconcile(p)


@pytest.mark.asyncio
async def test_aggregates_match_ledger_after_full_quiz(svc, live_quiz, clock):
    rng = random.Random(11)
    users = ["u1", "u2", "u3", "u4"]
    for user in users[1:]:
        await svc.participants.join(live_quiz["id"], user)

    for index in range(3):
        for user in users:
            if rng.random() < 0.8:
                clock.advance(rng.uniform(0.1, 1.5))
                await svc.intake.submit_answer(live_quiz["id"], user, index, rng.randrange(4))
                # duplicate attempts never count
                await svc.intake.submit_answer(live_quiz["id"], user, index, rng.randrange(4))
        clock.advance(10)
        await svc.sessions.advance(live_quiz["id"], index)

    assert await svc.repo.reconcile_quiz(live_quiz["id"]) == []
    for user in users:
        p = await svc.repo.get_participant(live_quiz["id"], user)
        indices = [a["questionIndex"] for a in p["answers"]]
        assert len(indices) == len(set(indices))


# ============================================================================
# QUESTION CLOSE vs IN-FLIGHT ANSWERS
# ============================================================================


@pytest.mark.asyncio
async def test_close_waits_for_admitted_answer(svc, live_quiz, room, clock, monkeypatch):
    ws = await room(live_quiz["id"])
    await svc.participants.join(live_quiz["id"], "u2")
    real_record = svc.repo.record_answer
    stored = asyncio.Event()

    async def slow_record(*args):
        await stored.wait()
        return await real_record(*args)

    monkeypatch.setattr(svc.repo, "record_answer", slow_record)
    clock.advance(9.9)

    answer = asyncio.create_task(
        svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))
    )
    await settle()
    advance = asyncio.create_task(svc.sessions.advance(live_quiz["id"], 0))
    await settle()

    # closing: nothing revealed yet and nobody new gets in
    assert not ws.of_type("question-closed")
    late = await svc.intake.submit_answer(live_quiz["id"], "u2", 0, correct_option(live_quiz, 0))
    assert late.reason == RejectReason.WRONG_QUESTION

    stored.set()
    result = await answer
    assert await advance == AdvanceOutcome.ADVANCED

    assert result.accepted
    assert len(ws.of_type("question-closed")) == 1
    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert p["score"] == 1
    u2 = await svc.repo.get_participant(live_quiz["id"], "u2")
    assert u2["answers"] == []


@pytest.mark.asyncio
async def test_answer_on_quiz_driven_elsewhere(svc, live_quiz, clock):
    await svc.registry.release(live_quiz["id"])
    clock.advance(2)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))

    assert result.accepted
    assert result.pointsAwarded == 1


@pytest.mark.asyncio
async def test_answer_landing_after_remote_close_is_taken_back(svc, live_quiz, clock, monkeypatch):
    await svc.registry.release(live_quiz["id"])
    real_record = svc.repo.record_answer

    async def closed_meanwhile(quiz_id, user_id, entry, now_ms):
        # the driving process advances between our checks and our write
        await svc.repo.quizzes.update_one(
            {"id": quiz_id}, {"$set": {"currentQuestionIndex": 1, "questionStartTime": now_ms}}
        )
        return await real_record(quiz_id, user_id, entry, now_ms)

    monkeypatch.setattr(svc.repo, "record_answer", closed_meanwhile)
    clock.advance(9.9)

    result = await svc.intake.submit_answer(live_quiz["id"], "u1", 0, correct_option(live_quiz, 0))

    assert not result.accepted
    assert result.reason == RejectReason.WRONG_QUESTION
    p = await svc.repo.get_participant(live_quiz["id"], "u1")
    assert p["answers"] == []
    assert p["score"] == 0
    assert p["questionsAnswered"] == 0
    assert reconcile(p)
