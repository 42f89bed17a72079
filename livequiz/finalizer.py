"""
Leaderboard Finalizer: turns a live quiz into ranked, immutable results.

    claim (live -> finalizing) -> stop timers -> seal ledgers -> rank
        -> write ranks + user history -> complete (finalizing -> ended)
        -> broadcast quiz-ended

Every step is safe to repeat, so a crash anywhere leaves the quiz in
`finalizing` and recovery simply runs the remaining steps again.
quiz-ended goes out only from the caller whose complete step flipped the
status, hence at most once.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from . import fanout
from .clock import Clock, system_clock
from .config import Config, config as default_config
from .errors import QuizNotFound
from .models import LeaderboardEntry, QuizStatus, RankPolicy
from .repository import iso_from_ms

logger = logging.getLogger(__name__)


def rank_participants(participants: Iterable[Dict], policy: str = RankPolicy.ELIGIBLE) -> List[Dict]:
    """
    Order by score desc, then total time asc. Input must be in join order;
    the sort is stable so remaining ties keep it. Ranks are 1..n, distinct.
    """
    pool = [p for p in participants if p.get("eligible")]
    if policy == RankPolicy.ANSWERED:
        pool = [p for p in pool if p.get("questionsAnswered", 0) > 0]
    ordered = sorted(pool, key=lambda p: (-p.get("score", 0), p.get("timeSpent", 0.0)))
    return [dict(p, rank=i) for i, p in enumerate(ordered, start=1)]


def leaderboard_entries(ranked: List[Dict], limit: int) -> List[Dict]:
    return [LeaderboardEntry(**p).model_dump() for p in ranked[:limit]]


class LeaderboardFinalizer:
    def __init__(self, repo, registry, broadcaster, clock: Clock = system_clock, config: Config = default_config):
        self.repo = repo
        self.registry = registry
        self.broadcaster = broadcaster
        self.clock = clock
        self.config = config
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def finalize(self, quiz_id: str) -> Optional[List[Dict]]:
        """Returns the stored leaderboard, or None if the quiz never went live"""
        async with self._locks[quiz_id]:
            return await self._finalize(quiz_id)

    async def _finalize(self, quiz_id: str) -> Optional[List[Dict]]:
        now = self.clock.now_ms()
        quiz = await self.repo.claim_finalize(quiz_id, now)
        if quiz is None:
            quiz = await self.repo.get_quiz(quiz_id)
            if quiz is None:
                raise QuizNotFound(quiz_id)
            status = quiz.get("status")
            if status == QuizStatus.ENDED:
                logger.debug(f"Finalize ignored for {quiz_id}: already ended")
                return quiz.get("leaderboard", [])
            if status != QuizStatus.FINALIZING:
                logger.debug(f"Finalize ignored for {quiz_id}: status {status}")
                return None
            logger.info(f"Resuming interrupted finalization of {quiz_id}")
        else:
            logger.info(f"🏁 Finalizing quiz {quiz_id}")

        await self.registry.release(quiz_id)
        await self.repo.seal_participants(quiz_id)

        participants = await self.repo.list_participants(quiz_id)
        ranked = rank_participants(participants, self.config.RANK_POLICY)
        end_iso = quiz.get("endTime") or iso_from_ms(now)

        for p in ranked:
            await self.repo.set_rank(quiz_id, p["userId"], p["rank"], end_iso)
            await self.repo.append_history(
                p["userId"],
                {
                    "quizId": quiz_id,
                    "title": quiz.get("title"),
                    "date": quiz.get("scheduledAt"),
                    "score": p.get("score", 0),
                    "rank": p["rank"],
                    "correctAnswers": p.get("correctAnswers", 0),
                    "totalQuestions": quiz.get("totalQuestions", len(quiz.get("questions", []))),
                    "timeSpent": p.get("timeSpent", 0.0),
                },
            )

        leaderboard = leaderboard_entries(ranked, self.config.LEADERBOARD_TOP_N)
        if await self.repo.complete_finalize(quiz_id, leaderboard, len(ranked), self.clock.now_ms()):
            await self.broadcaster.publish(
                quiz_id,
                fanout.quiz_ended(
                    quiz_id, leaderboard[: self.config.RESULTS_BROADCAST_TOP_N], len(ranked), end_iso
                ),
            )
            logger.info(f"✓ Quiz {quiz_id} ended, {len(ranked)} ranked of {len(participants)} joined")
        return leaderboard

    async def announce_results(self, quiz_id: str) -> bool:
        """Lobby-wide results notice, once per quiz"""
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None or quiz.get("status") != QuizStatus.ENDED:
            logger.debug(f"Results announce skipped for {quiz_id}: not ended")
            return False
        if not await self.repo.mark_notified(quiz_id, "results"):
            return False
        leaderboard = quiz.get("leaderboard", [])
        await self.broadcaster.publish_lobby(
            fanout.lifecycle_notice(
                fanout.EventType.QUIZ_RESULTS_READY,
                quiz_id,
                "🏆 Quiz results are out! Check the leaderboard.",
                leaderboard=leaderboard[: self.config.RESULTS_BROADCAST_TOP_N],
                totalParticipants=quiz.get("totalRanked", len(leaderboard)),
            )
        )
        logger.info(f"📢 Results announced for {quiz_id}")
        return True

    async def leaderboard(self, quiz_id: str) -> Dict:
        """Final leaderboard once ended, provisional standings before that"""
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFound(quiz_id)
        if quiz.get("status") == QuizStatus.ENDED:
            return {
                "quizId": quiz_id,
                "final": True,
                "leaderboard": quiz.get("leaderboard", []),
                "totalParticipants": quiz.get("totalRanked", 0),
            }
        ranked = rank_participants(await self.repo.list_participants(quiz_id), self.config.RANK_POLICY)
        return {
            "quizId": quiz_id,
            "final": False,
            "leaderboard": leaderboard_entries(ranked, self.config.LEADERBOARD_TOP_N),
            "totalParticipants": len(ranked),
        }

    async def history(self, user_id: str) -> List[Dict]:
        return await self.repo.get_history(user_id)
