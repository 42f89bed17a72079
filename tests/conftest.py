import asyncio
import random
import uuid
from typing import Dict, List

import orjson
import pytest
from mongomock_motor import AsyncMongoMockClient

from livequiz.clock import Clock
from livequiz.config import Config
from livequiz.eligibility import OpenEligibilityGate
from livequiz.repository import iso_from_ms
from livequiz.services import build_services

START_MS = 1_767_200_000_000


class ManualClock(Clock):
    """Time moves only when a test calls advance(); sleepers wake accordingly"""

    def __init__(self, start_ms: int = START_MS):
        self._now = start_ms
        self._waiters = []

    def now_ms(self) -> int:
        return self._now

    def advance(self, seconds: float):
        self._now += int(round(seconds * 1000))
        for target, fut in self._waiters:
            if target <= self._now and not fut.done():
                fut.set_result(None)
        self._waiters = [(t, f) for t, f in self._waiters if not f.done()]

    async def sleep(self, seconds: float):
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        target = self._now + int(round(seconds * 1000))
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((target, fut))
        await fut


class FakeWebSocket:
    def __init__(self):
        self.sent: List[Dict] = []
        self.closed = None

    async def send_text(self, data: str):
        if self.closed is not None:
            raise RuntimeError("socket closed")
        self.sent.append(orjson.loads(data))

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    def of_type(self, kind: str) -> List[Dict]:
        return [m for m in self.sent if m.get("type") == kind]


def make_config(**overrides) -> Config:
    cfg = Config()
    cfg.STORE_RETRY_BASE_SEC = 0
    cfg.JOB_RETRY_BASE_SEC = 1
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


async def settle(rounds: int = 10):
    """Let background tasks run to their next wait"""
    for _ in range(rounds):
        await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cfg():
    return make_config()


@pytest.fixture
def db():
    return AsyncMongoMockClient()["livequiz_test"]


@pytest.fixture
async def svc(db, cfg, clock):
    services = build_services(
        db, None, cfg, clock, OpenEligibilityGate(), instance_id="test-instance", rng=random.Random(7)
    )
    yield services
    await services.registry.release_all()
    await services.scheduler.stop()
    await services.manager.close_all()


def build_questions(count: int) -> List[Dict]:
    return [
        {
            "text": f"Question {i + 1}",
            "options": [f"q{i}-a", f"q{i}-b", f"q{i}-c", f"q{i}-d"],
            "correctIndex": i % 4,
            "points": 1,
            "category": "general",
        }
        for i in range(count)
    ]


@pytest.fixture
def make_quiz(svc):
    async def _make(
        questions: int = 3,
        time_per_question: float = 10,
        starts_in_sec: float = 600,
        shuffle: bool = False,
        max_participants: int = 2000,
        **extra,
    ) -> Dict:
        now = svc.clock.now_ms()
        scheduled_ms = now + int(starts_in_sec * 1000)
        doc = {
            "id": str(uuid.uuid4()),
            "title": "Daily Quiz",
            "description": "",
            "status": "scheduled",
            "isLive": False,
            "scheduledAt": iso_from_ms(scheduled_ms),
            "scheduledAtMs": scheduled_ms,
            "timePerQuestion": time_per_question,
            "maxParticipants": max_participants,
            "currentParticipants": 0,
            "questions": build_questions(questions),
            "totalQuestions": questions,
            "currentQuestionIndex": -1,
            "questionStartTime": None,
            "settings": {"shuffleQuestions": shuffle, "shuffleOptions": shuffle, "showCorrectAnswers": True},
            "notificationsSent": [],
            "createdAt": iso_from_ms(now),
        }
        doc.update(extra)
        await svc.repo.create_quiz(doc)
        return doc

    return _make


@pytest.fixture
def room(svc):
    """Attach a listening socket to a quiz room"""

    async def _room(quiz_id: str, user_id: str = "observer") -> FakeWebSocket:
        ws = FakeWebSocket()
        await svc.manager.attach(quiz_id, user_id, ws)
        return ws

    return _room
