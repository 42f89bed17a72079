"""
Session State Machine for one live quiz.

    scheduled --start()--> live(0) --advance()--> live(1) ... live(N-1)
        --advance()/end()--> finalizing --> ended

The durable quiz document is the source of truth. A SessionRuntime is
this process's cached, lock-guarded view of a quiz it currently drives;
it is rebuilt from the document after a restart instead of starting over
at question 0.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import fanout
from .clock import Clock, seconds_left, system_clock
from .config import Config, config as default_config
from .errors import MalformedQuiz, QuizNotFound
from .models import QuizStatus

logger = logging.getLogger(__name__)


class AdvanceOutcome:
    ADVANCED = "advanced"
    FINALIZED = "finalized"
    STALE = "stale"
    NOT_LIVE = "not_live"


def public_question(question: Dict) -> Dict:
    """Question as clients may see it while it is open"""
    return {k: v for k, v in question.items() if k != "correctIndex"}


def validate_questions(quiz_id: str, questions) -> None:
    if not questions:
        raise MalformedQuiz(quiz_id, "no questions")
    for i, q in enumerate(questions):
        options = q.get("options")
        if not q.get("text") or not isinstance(options, list) or len(options) < 2:
            raise MalformedQuiz(quiz_id, f"question {i} has no text or options")
        correct = q.get("correctIndex")
        if not isinstance(correct, int) or not 0 <= correct < len(options):
            raise MalformedQuiz(quiz_id, f"question {i} has an invalid correct index")


def _open_gate() -> asyncio.Event:
    gate = asyncio.Event()
    gate.set()
    return gate


def shuffle_questions(questions: List[Dict], rng: random.Random, shuffle_options: bool = True) -> List[Dict]:
    """
    Shuffle question order and, optionally, each question's options,
    remapping correctIndex. Runs once, before the quiz goes live.
    """
    shuffled = [dict(q) for q in questions]
    rng.shuffle(shuffled)
    if shuffle_options:
        for q in shuffled:
            order = list(range(len(q["options"])))
            rng.shuffle(order)
            q["options"] = [q["options"][i] for i in order]
            q["correctIndex"] = order.index(q["correctIndex"])
    return shuffled


@dataclass
class SessionRuntime:
    quiz_id: str
    questions: List[Dict]
    index: int
    question_start_ms: int
    duration: float
    owner: Optional[str]
    driven: bool = True
    advance_task: Optional[asyncio.Task] = None
    tick_task: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closing: bool = False
    answers_in_flight: int = 0
    answers_drained: asyncio.Event = field(default_factory=_open_gate)

    @classmethod
    def from_doc(cls, doc: Dict, owner: Optional[str], driven: bool = True) -> "SessionRuntime":
        quiz_id = doc["id"]
        questions = doc.get("questions") or []
        validate_questions(quiz_id, questions)
        index = doc.get("currentQuestionIndex", -1)
        if not 0 <= index < len(questions):
            raise MalformedQuiz(quiz_id, f"current index {index} out of range")
        start_ms = doc.get("questionStartTime")
        if not isinstance(start_ms, int):
            raise MalformedQuiz(quiz_id, "missing question start time")
        return cls(
            quiz_id=quiz_id,
            questions=questions,
            index=index,
            question_start_ms=start_ms,
            duration=float(doc.get("timePerQuestion") or 15),
            owner=owner,
            driven=driven,
        )

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def current(self) -> Dict:
        return self.questions[self.index]

    @property
    def deadline_ms(self) -> int:
        return self.question_start_ms + int(self.duration * 1000)

    def seconds_left(self, now_ms: int) -> float:
        return seconds_left(self.question_start_ms, self.duration, now_ms)

    def begin_answer(self, index: int) -> bool:
        """Admit an answer to the open question; refused once it starts closing"""
        if self.closing or index != self.index:
            return False
        self.answers_in_flight += 1
        self.answers_drained.clear()
        return True

    def finish_answer(self):
        self.answers_in_flight -= 1
        if self.answers_in_flight <= 0:
            self.answers_in_flight = 0
            self.answers_drained.set()

    async def close_question(self):
        """Stop admitting answers and wait for admitted ones to be stored"""
        self.closing = True
        await self.answers_drained.wait()


class SessionRegistry:
    """quiz_id -> SessionRuntime for the quizzes this process drives"""

    def __init__(self):
        self._sessions: Dict[str, SessionRuntime] = {}
        self._lock = asyncio.Lock()

    def get(self, quiz_id: str) -> Optional[SessionRuntime]:
        return self._sessions.get(quiz_id)

    def live_ids(self) -> List[str]:
        return list(self._sessions)

    async def register(self, runtime: SessionRuntime) -> bool:
        async with self._lock:
            if runtime.quiz_id in self._sessions:
                return False
            self._sessions[runtime.quiz_id] = runtime
            return True

    async def release(self, quiz_id: str) -> Optional[SessionRuntime]:
        """Drop the runtime and cancel its timers. Only the first call does anything."""
        async with self._lock:
            runtime = self._sessions.pop(quiz_id, None)
        if runtime is None:
            return None
        current = asyncio.current_task()
        for task in (runtime.advance_task, runtime.tick_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        runtime.advance_task = None
        runtime.tick_task = None
        logger.info(f"Session released: {quiz_id}")
        return runtime

    async def release_all(self):
        for quiz_id in self.live_ids():
            await self.release(quiz_id)


class SessionStateMachine:
    def __init__(
        self,
        repo,
        registry: SessionRegistry,
        broadcaster,
        finalizer,
        instance_id: str,
        clock: Clock = system_clock,
        config: Config = default_config,
        rng: Optional[random.Random] = None,
    ):
        self.repo = repo
        self.registry = registry
        self.broadcaster = broadcaster
        self.finalizer = finalizer
        self.instance_id = instance_id
        self.clock = clock
        self.config = config
        self.rng = rng or random.SystemRandom()

    async def start(self, quiz_id: str) -> Optional[SessionRuntime]:
        """
        scheduled -> live. Returns the new runtime, or None when the quiz
        was already started (duplicate trigger, other instance).
        """
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFound(quiz_id)
        if quiz.get("status") != QuizStatus.SCHEDULED:
            logger.debug(f"Start ignored for {quiz_id}: status {quiz.get('status')}")
            return None

        questions = quiz.get("questions") or []
        validate_questions(quiz_id, questions)
        settings = quiz.get("settings") or {}
        if settings.get("shuffleQuestions"):
            questions = shuffle_questions(questions, self.rng, settings.get("shuffleOptions", True))
            logger.info(f"🔀 Shuffled {len(questions)} questions for {quiz_id}")

        now = self.clock.now_ms()
        doc = await self.repo.claim_start(quiz_id, questions, now, self.instance_id)
        if doc is None:
            logger.info(f"Quiz {quiz_id} already started elsewhere")
            return None

        runtime = SessionRuntime.from_doc(doc, owner=self.instance_id)
        await self.registry.register(runtime)
        logger.info(f"🚀 Quiz started: {quiz_id} ({runtime.total} questions, {runtime.duration}s each)")

        await self.broadcaster.publish(
            quiz_id, fanout.quiz_started(quiz_id, runtime.total, runtime.duration, now)
        )
        await self._emit_open(runtime)
        return runtime

    async def restore(self, doc: Dict) -> Optional[SessionRuntime]:
        """Resume driving a live quiz after a restart, from its stored index and start instant"""
        quiz_id = doc["id"]
        existing = self.registry.get(quiz_id)
        if existing is not None:
            return existing
        claimed = await self.repo.claim_lease(quiz_id, self.instance_id, self.clock.now_ms())
        if claimed is None:
            logger.info(f"Quiz {quiz_id} is driven by another instance")
            return None
        runtime = SessionRuntime.from_doc(claimed, owner=self.instance_id)
        if not await self.registry.register(runtime):
            return self.registry.get(quiz_id)
        logger.info(f"♻️ Restored {quiz_id} at Q{runtime.index} started @ {runtime.question_start_ms}")
        return runtime

    async def advance(self, quiz_id: str, expected_index: int) -> str:
        """
        Close question `expected_index` and open the next one, or finalize
        when it was the last. Anything but the current index is a no-op.
        """
        runtime = self.registry.get(quiz_id)
        if runtime is None:
            return AdvanceOutcome.NOT_LIVE

        async with runtime.lock:
            if runtime.index != expected_index:
                logger.debug(f"Stale advance for {quiz_id}: expected {expected_index}, at {runtime.index}")
                return AdvanceOutcome.STALE

            await runtime.close_question()
            closing = runtime.index
            closing_correct = runtime.current["correctIndex"]

            if closing + 1 >= runtime.total:
                await self.broadcaster.publish(
                    quiz_id, fanout.question_closed(quiz_id, closing, closing_correct)
                )
                await self.finalizer.finalize(quiz_id)
                return AdvanceOutcome.FINALIZED

            now = self.clock.now_ms()
            doc = await self.repo.advance_question(quiz_id, closing, self.instance_id, now)
            if doc is None:
                # Ended by someone else, or our lease was taken over
                logger.info(f"Advance of {quiz_id} from Q{closing} refused by store, stopping driver")
                await self.registry.release(quiz_id)
                return AdvanceOutcome.NOT_LIVE

            runtime.index = closing + 1
            runtime.question_start_ms = now
            runtime.closing = False

        await self.broadcaster.publish(quiz_id, fanout.question_closed(quiz_id, closing, closing_correct))
        await self._emit_open(runtime)
        return AdvanceOutcome.ADVANCED

    async def end(self, quiz_id: str) -> Optional[List[Dict]]:
        """Early end: stop timers now, close the open question, finalize"""
        runtime = await self.registry.release(quiz_id)
        if runtime is not None:
            await runtime.close_question()
            await self.broadcaster.publish(
                quiz_id, fanout.question_closed(quiz_id, runtime.index, runtime.current["correctIndex"])
            )
        return await self.finalizer.finalize(quiz_id)

    async def snapshot(self, quiz_id: str) -> Optional[SessionRuntime]:
        """Driven runtime if we own the quiz, else a read-only view of the durable record"""
        runtime = self.registry.get(quiz_id)
        if runtime is not None:
            return runtime
        doc = await self.repo.get_quiz(quiz_id)
        if doc is None or doc.get("status") != QuizStatus.LIVE:
            return None
        try:
            return SessionRuntime.from_doc(doc, owner=doc.get("ownerId"), driven=False)
        except MalformedQuiz as e:
            logger.error(f"Cannot read live state: {e}")
            return None

    async def current_question(self, quiz_id: str) -> Optional[Dict]:
        """Open question without its answer, with the time left right now"""
        runtime = await self.snapshot(quiz_id)
        if runtime is None:
            return None
        return self._open_payload(runtime, self.clock.now_ms())

    def _open_payload(self, runtime: SessionRuntime, now_ms: int) -> Dict:
        return fanout.question_open(
            runtime.quiz_id,
            runtime.index,
            public_question(runtime.current),
            runtime.total,
            runtime.duration,
            runtime.question_start_ms,
            runtime.seconds_left(now_ms),
            now_ms,
        )

    async def _emit_open(self, runtime: SessionRuntime):
        payload = self._open_payload(runtime, self.clock.now_ms())
        await self.broadcaster.publish(runtime.quiz_id, payload)
        logger.info(
            f"📝 Q{runtime.index + 1}/{runtime.total} open for {runtime.quiz_id} @ {runtime.question_start_ms}"
        )
