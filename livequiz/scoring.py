"""
Answer Intake & Scorer.

Checks run in a fixed order and the first failure is the reason the
client gets back. The ledger write itself is one conditional update, so
two submissions for the same question can both pass the checks but only
one of them lands.

A question never closes under an answer: when this process drives the
quiz, the close waits for admitted answers; otherwise an answer that
landed after the close is taken back.
"""

import logging
import uuid
from typing import Dict, Optional, Tuple

from . import fanout
from .clock import Clock, system_clock
from .config import Config, config as default_config
from .errors import StoreUnavailable
from .models import AnswerResult, QuizStatus, RejectReason
from .repository import iso_from_ms

logger = logging.getLogger(__name__)


def score_answer(question: Dict, selected: int) -> Tuple[bool, int]:
    correct = selected == question["correctIndex"]
    return correct, (question.get("points", 1) if correct else 0)


def _find_entry(participant: Dict, question_index: int) -> Optional[Dict]:
    for entry in participant.get("answers", []):
        if entry.get("questionIndex") == question_index:
            return entry
    return None


class AnswerIntake:
    def __init__(self, repo, sessions, broadcaster, clock: Clock = system_clock, config: Config = default_config):
        self.repo = repo
        self.sessions = sessions
        self.broadcaster = broadcaster
        self.clock = clock
        self.config = config

    async def submit_answer(
        self,
        quiz_id: str,
        user_id: str,
        question_index: int,
        selected_option: int,
        client_timestamp: Optional[int] = None,
    ) -> AnswerResult:
        try:
            result = await self._submit(quiz_id, user_id, question_index, selected_option)
        except StoreUnavailable as e:
            logger.error(f"✗ Answer from {user_id} on {quiz_id} not stored: {e}")
            return AnswerResult.rejected(RejectReason.TRY_AGAIN, question_index)

        if not result.accepted:
            logger.info(f"Answer rejected: {user_id} Q{question_index} on {quiz_id}: {result.reason}")
        elif client_timestamp is not None:
            logger.debug(
                f"Answer {user_id} Q{question_index}: server {result.timeTaken}s, "
                f"client clock offset {self.clock.now_ms() - client_timestamp}ms"
            )
        return result

    async def _submit(self, quiz_id: str, user_id: str, question_index: int, selected_option: int) -> AnswerResult:
        runtime = await self.sessions.snapshot(quiz_id)
        if runtime is None:
            return AnswerResult.rejected(RejectReason.QUIZ_NOT_LIVE, question_index)

        if question_index != runtime.index:
            return AnswerResult.rejected(RejectReason.WRONG_QUESTION, question_index)

        if not runtime.driven:
            return await self._submit_remote(runtime, user_id, question_index, selected_option)
        if not runtime.begin_answer(question_index):
            # closing: the reveal goes out as soon as admitted answers are stored
            return AnswerResult.rejected(RejectReason.WRONG_QUESTION, question_index)
        try:
            result, entry = await self._check_and_record(runtime, user_id, question_index, selected_option)
        finally:
            runtime.finish_answer()
        if entry is not None:
            await self._announce(quiz_id, user_id, entry)
        return result

    async def _submit_remote(self, runtime, user_id: str, question_index: int, selected_option: int) -> AnswerResult:
        """
        Another process drives this quiz, so its close cannot wait for us.
        Re-read the quiz after the write and take the answer back if the
        question closed meanwhile.
        """
        quiz_id = runtime.quiz_id
        result, entry = await self._check_and_record(runtime, user_id, question_index, selected_option)
        if entry is None:
            return result
        quiz = await self.repo.get_quiz(quiz_id)
        if (
            quiz is not None
            and quiz.get("status") == QuizStatus.LIVE
            and quiz.get("currentQuestionIndex") == question_index
        ):
            await self._announce(quiz_id, user_id, entry)
            return result
        if await self.repo.revoke_answer(quiz_id, user_id, entry):
            logger.info(f"Answer revoked: {user_id} Q{question_index} on {quiz_id} landed after close")
            return AnswerResult.rejected(RejectReason.WRONG_QUESTION, question_index)
        logger.error(f"✗ Late answer {user_id} Q{question_index} on {quiz_id} already sealed into results")
        return result

    async def _check_and_record(
        self, runtime, user_id: str, question_index: int, selected_option: int
    ) -> Tuple[AnswerResult, Optional[Dict]]:
        """Ordered checks, then the ledger write. The entry comes back only when it was stored."""
        quiz_id = runtime.quiz_id
        participant = await self.repo.get_participant(quiz_id, user_id)
        now = self.clock.now_ms()
        elapsed = (now - runtime.question_start_ms) / 1000

        reason = self._rejection(runtime, participant, question_index, selected_option, elapsed)
        if reason is not None:
            return AnswerResult.rejected(reason, question_index), None

        correct, points = score_answer(runtime.questions[question_index], selected_option)
        entry = {
            "submissionId": uuid.uuid4().hex,
            "questionIndex": question_index,
            "selectedOption": selected_option,
            "correct": correct,
            "points": points,
            "timeTaken": round(max(0.0, elapsed), 2),
            "answeredAt": iso_from_ms(now),
        }

        updated = await self.repo.record_answer(quiz_id, user_id, entry, now)
        if updated is None:
            result = await self._explain_miss(quiz_id, user_id, entry)
            return result, (entry if result.accepted else None)
        return self._accepted(entry, updated), entry

    def _rejection(
        self, runtime, participant: Optional[Dict], question_index: int, selected_option: int, elapsed: float
    ) -> Optional[str]:
        if not participant or not participant.get("eligible"):
            return RejectReason.NOT_ELIGIBLE
        if participant.get("sealed"):
            return RejectReason.QUIZ_NOT_LIVE
        if _find_entry(participant, question_index) is not None:
            return RejectReason.ALREADY_ANSWERED
        if elapsed > runtime.duration + self.config.ANSWER_GRACE_SEC:
            return RejectReason.TIME_EXCEEDED
        if self.config.MIN_ANSWER_SEC > 0 and elapsed < self.config.MIN_ANSWER_SEC:
            return RejectReason.TOO_FAST
        if not 0 <= selected_option < len(runtime.questions[question_index]["options"]):
            return RejectReason.INVALID_OPTION
        return None

    async def _announce(self, quiz_id: str, user_id: str, entry: Dict):
        """Room learns that someone answered, never how well"""
        await self.broadcaster.publish(
            quiz_id, fanout.participant_answered(quiz_id, user_id, entry["questionIndex"])
        )
        logger.info(
            f"✓ Answer: {user_id} Q{entry['questionIndex']} on {quiz_id} "
            f"{'correct' if entry['correct'] else 'wrong'} in {entry['timeTaken']}s"
        )

    async def _explain_miss(self, quiz_id: str, user_id: str, entry: Dict) -> AnswerResult:
        """The conditional write matched nothing; find out which condition failed"""
        index = entry["questionIndex"]
        participant = await self.repo.get_participant(quiz_id, user_id)
        if participant is None:
            return AnswerResult.rejected(RejectReason.NOT_ELIGIBLE, index)
        stored = _find_entry(participant, index)
        if stored is not None and stored.get("submissionId") == entry["submissionId"]:
            # Our own write landed before a retried attempt reported failure
            return self._accepted(stored, participant)
        if participant.get("sealed"):
            return AnswerResult.rejected(RejectReason.QUIZ_NOT_LIVE, index)
        if stored is not None:
            return AnswerResult.rejected(RejectReason.ALREADY_ANSWERED, index)
        if not participant.get("eligible"):
            return AnswerResult.rejected(RejectReason.NOT_ELIGIBLE, index)
        return AnswerResult.rejected(RejectReason.TRY_AGAIN, index)

    def _accepted(self, entry: Dict, participant: Dict) -> AnswerResult:
        return AnswerResult(
            accepted=True,
            questionIndex=entry["questionIndex"],
            correct=entry["correct"],
            pointsAwarded=entry["points"],
            cumulativeScore=participant.get("score", 0),
            timeTaken=entry["timeTaken"],
            message="Answer recorded",
        )
