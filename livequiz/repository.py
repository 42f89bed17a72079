"""
Quiz Repository: the durable owner of quiz, participant and user-history
documents.

Every write here is a single conditional MongoDB update (claim, CAS,
push-if-absent, $inc). Nothing does read-modify-write-save, so concurrent
writers (many participants answering, the driver advancing, a second
process restarting) cannot lose each other's updates.
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    AutoReconnect,
    ExecutionTimeout,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)

from .config import Config, config as default_config
from .errors import StoreUnavailable
from .models import QuizStatus

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError, ExecutionTimeout)

NO_ID = {"_id": 0}


async def with_retries(label: str, op: Callable[[], Awaitable[Any]], config: Config = default_config) -> Any:
    """Run one store call, retrying transient driver errors with backoff"""
    attempt = 0
    while True:
        try:
            return await op()
        except TRANSIENT_ERRORS as e:
            attempt += 1
            if attempt > config.STORE_RETRIES:
                logger.error(f"✗ Store {label} failed after {attempt} attempts: {e}")
                raise StoreUnavailable(f"{label} failed: {e}") from e
            delay = config.STORE_RETRY_BASE_SEC * (2 ** (attempt - 1))
            logger.warning(f"Store {label} transient error ({e}), retry {attempt} in {delay:.2f}s")
            await asyncio.sleep(delay)


def iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def reconcile(participant: Dict) -> bool:
    """True when the denormalized aggregates equal the sums over the ledger"""
    answers = participant.get("answers", [])
    score = sum(a.get("points", 0) for a in answers)
    correct = sum(1 for a in answers if a.get("correct"))
    time_spent = sum(a.get("timeTaken", 0) for a in answers)
    return (
        participant.get("score", 0) == score
        and participant.get("correctAnswers", 0) == correct
        and participant.get("questionsAnswered", 0) == len(answers)
        and math.isclose(participant.get("timeSpent", 0.0), time_spent, abs_tol=1e-6)
    )


class QuizRepository:
    def __init__(self, db, config: Config = default_config):
        self.db = db
        self.config = config
        self.quizzes = db.quizzes
        self.participants = db.participants
        self.users = db.users
        self.payments = db.payments

    async def _retrying(self, label: str, op: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retries(label, op, self.config)

    async def ensure_indexes(self):
        await self.quizzes.create_index("id", unique=True)
        await self.quizzes.create_index([("status", ASCENDING), ("scheduledAtMs", ASCENDING)])
        await self.participants.create_index(
            [("quizId", ASCENDING), ("userId", ASCENDING)], unique=True
        )
        await self.participants.create_index(
            [("quizId", ASCENDING), ("score", DESCENDING), ("timeSpent", ASCENDING)]
        )
        await self.users.create_index("id", unique=True)
        await self.payments.create_index([("user", ASCENDING), ("forDate", ASCENDING)])
        logger.info("✓ Database indexes created")

    # ------------------------------------------------------------------
    # Quiz reads
    # ------------------------------------------------------------------

    async def create_quiz(self, doc: Dict) -> Dict:
        await self._retrying("create_quiz", lambda: self.quizzes.insert_one(dict(doc)))
        return doc

    async def get_quiz(self, quiz_id: str) -> Optional[Dict]:
        return await self._retrying(
            "get_quiz", lambda: self.quizzes.find_one({"id": quiz_id}, NO_ID)
        )

    async def find_quiz_between(
        self, start_ms: int, end_ms: int, statuses: Iterable[str]
    ) -> Optional[Dict]:
        query = {
            "scheduledAtMs": {"$gte": start_ms, "$lt": end_ms},
            "status": {"$in": list(statuses)},
        }
        docs = await self._retrying(
            "find_quiz_between",
            lambda: self.quizzes.find(query, NO_ID, sort=[("scheduledAtMs", ASCENDING)]).to_list(1),
        )
        return docs[0] if docs else None

    async def list_quizzes(
        self, statuses: Iterable[str], scheduled_after_ms: Optional[int] = None, limit: int = 500
    ) -> List[Dict]:
        query: Dict[str, Any] = {"status": {"$in": list(statuses)}}
        if scheduled_after_ms is not None:
            query["scheduledAtMs"] = {"$gte": scheduled_after_ms}
        return await self._retrying(
            "list_quizzes",
            lambda: self.quizzes.find(query, NO_ID, sort=[("scheduledAtMs", ASCENDING)]).to_list(limit),
        )

    # ------------------------------------------------------------------
    # Quiz lifecycle transitions (all conditional)
    # ------------------------------------------------------------------

    async def claim_start(
        self, quiz_id: str, questions: List[Dict], now_ms: int, owner: str
    ) -> Optional[Dict]:
        """scheduled -> live. Only one caller across all processes gets a document back."""
        update = {
            "$set": {
                "status": QuizStatus.LIVE,
                "isLive": True,
                "questions": questions,
                "totalQuestions": len(questions),
                "currentQuestionIndex": 0,
                "questionStartTime": now_ms,
                "startTime": iso_from_ms(now_ms),
                "ownerId": owner,
                "leaseExpiresAt": now_ms + int(self.config.LEASE_TTL_SEC * 1000),
            }
        }
        return await self._retrying(
            "claim_start",
            lambda: self.quizzes.find_one_and_update(
                {"id": quiz_id, "status": QuizStatus.SCHEDULED},
                update,
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            ),
        )

    async def claim_lease(self, quiz_id: str, owner: str, now_ms: int) -> Optional[Dict]:
        """Take over driving a live quiz if nobody holds a fresh lease on it"""
        query = {
            "id": quiz_id,
            "status": QuizStatus.LIVE,
            "$or": [{"ownerId": owner}, {"leaseExpiresAt": {"$lt": now_ms}}],
        }
        update = {
            "$set": {
                "ownerId": owner,
                "leaseExpiresAt": now_ms + int(self.config.LEASE_TTL_SEC * 1000),
            }
        }
        return await self._retrying(
            "claim_lease",
            lambda: self.quizzes.find_one_and_update(
                query, update, projection=NO_ID, return_document=ReturnDocument.AFTER
            ),
        )

    async def renew_lease(self, quiz_id: str, owner: str, now_ms: int) -> bool:
        result = await self._retrying(
            "renew_lease",
            lambda: self.quizzes.update_one(
                {"id": quiz_id, "status": QuizStatus.LIVE, "ownerId": owner},
                {"$set": {"leaseExpiresAt": now_ms + int(self.config.LEASE_TTL_SEC * 1000)}},
            ),
        )
        return result.matched_count > 0

    async def advance_question(
        self, quiz_id: str, from_index: int, owner: str, now_ms: int
    ) -> Optional[Dict]:
        """Compare-and-set currentQuestionIndex from_index -> from_index + 1"""
        query = {
            "id": quiz_id,
            "status": QuizStatus.LIVE,
            "ownerId": owner,
            "currentQuestionIndex": from_index,
        }
        update = {
            "$set": {
                "currentQuestionIndex": from_index + 1,
                "questionStartTime": now_ms,
                "leaseExpiresAt": now_ms + int(self.config.LEASE_TTL_SEC * 1000),
            }
        }
        return await self._retrying(
            "advance_question",
            lambda: self.quizzes.find_one_and_update(
                query, update, projection=NO_ID, return_document=ReturnDocument.AFTER
            ),
        )

    async def claim_finalize(self, quiz_id: str, now_ms: int) -> Optional[Dict]:
        """live -> finalizing. The winner of this claim computes the results."""
        return await self._retrying(
            "claim_finalize",
            lambda: self.quizzes.find_one_and_update(
                {"id": quiz_id, "status": QuizStatus.LIVE},
                {
                    "$set": {
                        "status": QuizStatus.FINALIZING,
                        "isLive": False,
                        "endTime": iso_from_ms(now_ms),
                    }
                },
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            ),
        )

    async def complete_finalize(
        self, quiz_id: str, leaderboard: List[Dict], total_ranked: int, now_ms: int
    ) -> bool:
        """finalizing -> ended. Results become visible in this single update."""
        result = await self._retrying(
            "complete_finalize",
            lambda: self.quizzes.update_one(
                {"id": quiz_id, "status": QuizStatus.FINALIZING},
                {
                    "$set": {
                        "status": QuizStatus.ENDED,
                        "isCompleted": True,
                        "leaderboard": leaderboard,
                        "totalRanked": total_ranked,
                        "resultsAt": iso_from_ms(now_ms),
                    }
                },
            ),
        )
        return result.modified_count > 0

    async def mark_failed(self, quiz_id: str, reason: str) -> bool:
        result = await self._retrying(
            "mark_failed",
            lambda: self.quizzes.update_one(
                {
                    "id": quiz_id,
                    "status": {"$in": [QuizStatus.SCHEDULED, QuizStatus.LIVE]},
                },
                {"$set": {"status": QuizStatus.FAILED, "isLive": False, "failureReason": reason}},
            ),
        )
        return result.modified_count > 0

    async def mark_notified(self, quiz_id: str, kind: str) -> bool:
        """Push-if-absent guard so each lifecycle notification goes out once"""
        result = await self._retrying(
            "mark_notified",
            lambda: self.quizzes.update_one(
                {"id": quiz_id, "notificationsSent": {"$ne": kind}},
                {"$push": {"notificationsSent": kind}},
            ),
        )
        return result.modified_count > 0

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    async def get_participant(self, quiz_id: str, user_id: str) -> Optional[Dict]:
        return await self._retrying(
            "get_participant",
            lambda: self.participants.find_one({"quizId": quiz_id, "userId": user_id}, NO_ID),
        )

    async def list_participants(self, quiz_id: str, limit: Optional[int] = None) -> List[Dict]:
        limit = limit or self.config.MAX_PARTICIPANTS
        return await self._retrying(
            "list_participants",
            lambda: self.participants.find(
                {"quizId": quiz_id}, NO_ID, sort=[("joinedAtMs", ASCENDING), ("userId", ASCENDING)]
            ).to_list(limit),
        )

    async def add_participant(
        self, quiz: Dict, user_id: str, name: str, eligible: bool, now_ms: int
    ) -> Tuple[Optional[Dict], bool]:
        """
        Register (quiz, user). Returns (participant, created); (None, False)
        means the quiz has no free seat.
        """
        quiz_id = quiz["id"]
        existing = await self.get_participant(quiz_id, user_id)
        if existing:
            if eligible and not existing.get("eligible"):
                # Eligibility only ever goes false -> true
                await self._retrying(
                    "raise_eligibility",
                    lambda: self.participants.update_one(
                        {"quizId": quiz_id, "userId": user_id, "eligible": False},
                        {"$set": {"eligible": True}},
                    ),
                )
                existing["eligible"] = True
            return existing, False

        seat = await self._retrying(
            "reserve_seat",
            lambda: self.quizzes.update_one(
                {"id": quiz_id, "currentParticipants": {"$lt": quiz.get("maxParticipants", self.config.MAX_PARTICIPANTS)}},
                {"$inc": {"currentParticipants": 1}},
            ),
        )
        if seat.modified_count == 0:
            return None, False

        doc = {
            "quizId": quiz_id,
            "userId": user_id,
            "name": name,
            "eligible": eligible,
            "joinedAt": iso_from_ms(now_ms),
            "joinedAtMs": now_ms,
            "score": 0,
            "correctAnswers": 0,
            "questionsAnswered": 0,
            "timeSpent": 0.0,
            "answers": [],
            "sealed": False,
            "isCompleted": False,
            "rank": None,
            "socketId": None,
            "lastSubmissionAt": None,
        }
        on_insert = {k: v for k, v in doc.items() if k not in ("quizId", "userId")}
        result = await self._retrying(
            "add_participant",
            lambda: self.participants.update_one(
                {"quizId": quiz_id, "userId": user_id}, {"$setOnInsert": on_insert}, upsert=True
            ),
        )
        if result.upserted_id is None:
            # Lost an insert race with a concurrent join for the same user
            await self._retrying(
                "release_seat",
                lambda: self.quizzes.update_one({"id": quiz_id}, {"$inc": {"currentParticipants": -1}}),
            )
            return await self.get_participant(quiz_id, user_id), False
        return doc, True

    async def set_connection(self, quiz_id: str, user_id: str, connection_id: Optional[str]):
        await self._retrying(
            "set_connection",
            lambda: self.participants.update_one(
                {"quizId": quiz_id, "userId": user_id}, {"$set": {"socketId": connection_id}}
            ),
        )

    async def record_answer(self, quiz_id: str, user_id: str, entry: Dict, now_ms: int) -> Optional[Dict]:
        """
        Append one ledger entry and bump the aggregates by exactly its
        contribution, only if no entry exists for this question index.
        Returns the updated participant, or None when the condition failed.
        """
        query = {
            "quizId": quiz_id,
            "userId": user_id,
            "eligible": True,
            "sealed": False,
            "answers.questionIndex": {"$ne": entry["questionIndex"]},
        }
        update = {
            "$push": {"answers": entry},
            "$inc": {
                "score": entry["points"],
                "correctAnswers": 1 if entry["correct"] else 0,
                "questionsAnswered": 1,
                "timeSpent": entry["timeTaken"],
            },
            "$set": {"lastSubmissionAt": iso_from_ms(now_ms)},
        }
        return await self._retrying(
            "record_answer",
            lambda: self.participants.find_one_and_update(
                query, update, projection=NO_ID, return_document=ReturnDocument.AFTER
            ),
        )

    async def revoke_answer(self, quiz_id: str, user_id: str, entry: Dict) -> bool:
        """
        Take back a ledger entry that landed after its question closed,
        subtracting exactly what record_answer added. Sealed ledgers are
        left alone.
        """
        query = {
            "quizId": quiz_id,
            "userId": user_id,
            "sealed": False,
            "answers.submissionId": entry["submissionId"],
        }
        update = {
            "$pull": {"answers": {"submissionId": entry["submissionId"]}},
            "$inc": {
                "score": -entry["points"],
                "correctAnswers": -1 if entry["correct"] else 0,
                "questionsAnswered": -1,
                "timeSpent": -entry["timeTaken"],
            },
        }
        result = await self._retrying(
            "revoke_answer", lambda: self.participants.update_one(query, update)
        )
        return result.modified_count > 0

    async def seal_participants(self, quiz_id: str) -> int:
        """Close every ledger of the quiz; later record_answer calls match nothing"""
        result = await self._retrying(
            "seal_participants",
            lambda: self.participants.update_many({"quizId": quiz_id}, {"$set": {"sealed": True}}),
        )
        return result.modified_count

    async def set_rank(self, quiz_id: str, user_id: str, rank: Optional[int], end_iso: str):
        fields: Dict[str, Any] = {"rank": rank, "isCompleted": rank is not None}
        if rank is not None:
            fields["endTime"] = end_iso
        await self._retrying(
            "set_rank",
            lambda: self.participants.update_one(
                {"quizId": quiz_id, "userId": user_id}, {"$set": fields}
            ),
        )

    async def reconcile_quiz(self, quiz_id: str) -> List[str]:
        """User ids whose aggregates disagree with their ledger"""
        parts = await self.list_participants(quiz_id)
        return [p["userId"] for p in parts if not reconcile(p)]

    # ------------------------------------------------------------------
    # Users (external profile + history)
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[Dict]:
        return await self._retrying(
            "get_user", lambda: self.users.find_one({"id": user_id}, NO_ID)
        )

    async def get_display_names(self, user_ids: List[str]) -> Dict[str, str]:
        if not user_ids:
            return {}
        docs = await self._retrying(
            "get_display_names",
            lambda: self.users.find(
                {"id": {"$in": user_ids}}, {"_id": 0, "id": 1, "fullName": 1, "username": 1}
            ).to_list(len(user_ids)),
        )
        return {d["id"]: d.get("fullName") or d.get("username") or "Unknown" for d in docs}

    async def append_history(self, user_id: str, entry: Dict) -> bool:
        result = await self._retrying(
            "append_history",
            lambda: self.users.update_one(
                {"id": user_id, "quizHistory.quizId": {"$ne": entry["quizId"]}},
                {"$push": {"quizHistory": entry}},
            ),
        )
        return result.modified_count > 0

    async def get_history(self, user_id: str) -> List[Dict]:
        user = await self.get_user(user_id)
        if not user:
            return []
        return sorted(user.get("quizHistory", []), key=lambda h: h.get("date", ""), reverse=True)

    async def ping(self):
        await self.db.command("ping")
