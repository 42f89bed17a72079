import logging
from datetime import datetime

from pymongo.errors import PyMongoError

from .clock import Clock, system_clock
from .config import Config, config as default_config
from .errors import StoreUnavailable
from .models import JoinResult, QuizStatus, RejectReason

logger = logging.getLogger(__name__)


class ParticipantService:
    """Registers users into a quiz after asking the eligibility gate"""

    def __init__(self, repo, eligibility, clock: Clock = system_clock, config: Config = default_config):
        self.repo = repo
        self.eligibility = eligibility
        self.clock = clock
        self.config = config

    async def join(self, quiz_id: str, user_id: str) -> JoinResult:
        try:
            return await self._join(quiz_id, user_id)
        except (StoreUnavailable, PyMongoError) as e:
            logger.error(f"✗ Join of {user_id} to {quiz_id} failed: {e}")
            return JoinResult.rejected(RejectReason.TRY_AGAIN)

    async def _join(self, quiz_id: str, user_id: str) -> JoinResult:
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None:
            return JoinResult.rejected(RejectReason.QUIZ_NOT_FOUND)
        if quiz.get("status") not in (QuizStatus.SCHEDULED, QuizStatus.LIVE):
            return JoinResult.rejected(RejectReason.QUIZ_ENDED)

        quiz_date = datetime.fromisoformat(quiz["scheduledAt"])
        if not await self.eligibility.is_eligible(user_id, quiz_date):
            logger.info(f"Join refused: {user_id} not eligible for {quiz_id}")
            return JoinResult.rejected(RejectReason.NOT_ELIGIBLE)

        user = await self.repo.get_user(user_id) or {}
        name = user.get("fullName") or user.get("username") or "Unknown"
        participant, created = await self.repo.add_participant(
            quiz, user_id, name, True, self.clock.now_ms()
        )
        if participant is None:
            logger.info(f"Join refused: {quiz_id} is full")
            return JoinResult.rejected(RejectReason.QUIZ_FULL)

        if created:
            logger.info(f"✓ Participant joined: {user_id} -> {quiz_id}")
        return JoinResult(accepted=True, quizId=quiz_id, status=quiz.get("status"), message="Joined")
