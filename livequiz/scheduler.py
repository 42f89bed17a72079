"""
Scheduler / Lifecycle Driver.

Each quiz has five lifecycle events at fixed offsets from its scheduled
start (alert, ready, start, end, results). Exactly one scheduling backend
fires them per deployment:

- QueueScheduler: durable delayed jobs in Redis, survive restarts and are
  claimed by exactly one worker process.
- TimerScheduler: in-process asyncio timers, for single-process setups
  without Redis.

Once a quiz is live, LifecycleDriver runs two tasks for it: the advance
task, which sleeps until the open question's own deadline and advances,
and the tick task, which sends advisory time-remaining events and keeps
the driver lease fresh.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timedelta
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import orjson
from redis.exceptions import RedisError

from . import fanout
from .clock import Clock, system_clock
from .config import Config, config as default_config
from .errors import LiveQuizError, MalformedQuiz, QuizNotFound, StoreUnavailable
from .models import QuizStatus
from .session import AdvanceOutcome, SessionRuntime

logger = logging.getLogger(__name__)


class LifecycleKind:
    ALERT = "alert"
    READY = "ready"
    START = "start"
    END = "end"
    RESULTS = "results"

    ALL = (ALERT, READY, START, END, RESULTS)


NOTICES = {
    LifecycleKind.ALERT: (fanout.EventType.QUIZ_ALERT, "Quiz starting in 5 minutes! Make sure you are ready!"),
    LifecycleKind.READY: (fanout.EventType.QUIZ_READY, "Quiz starting in 1 minute! Join now!"),
    LifecycleKind.START: (fanout.EventType.QUIZ_STARTED, "Quiz is now live! Join now!"),
}


def lifecycle_times(quiz: Dict, config: Config = default_config) -> List[Tuple[str, int]]:
    """(kind, due epoch ms) for each lifecycle event of a quiz"""
    start_ms = quiz["scheduledAtMs"]
    offsets = {
        LifecycleKind.ALERT: config.ALERT_OFFSET_SEC,
        LifecycleKind.READY: config.READY_OFFSET_SEC,
        LifecycleKind.START: config.START_OFFSET_SEC,
        LifecycleKind.END: config.END_OFFSET_SEC,
        LifecycleKind.RESULTS: config.RESULTS_OFFSET_SEC,
    }
    return [(kind, start_ms + offsets[kind] * 1000) for kind in LifecycleKind.ALL]


def next_daily_start(now: datetime, config: Config = default_config) -> datetime:
    """Next DAILY_START_TIME in the quiz timezone, strictly after `now`"""
    tz = ZoneInfo(config.QUIZ_TIMEZONE)
    hour, minute = (int(part) for part in config.DAILY_START_TIME.split(":"))
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), dt_time(hour, minute), tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), dt_time(hour, minute), tzinfo=tz)
    return candidate


# ============================================================================
# LIFECYCLE DRIVER
# ============================================================================


class LifecycleDriver:
    def __init__(
        self,
        repo,
        sessions,
        registry,
        finalizer,
        broadcaster,
        clock: Clock = system_clock,
        config: Config = default_config,
    ):
        self.repo = repo
        self.sessions = sessions
        self.registry = registry
        self.finalizer = finalizer
        self.broadcaster = broadcaster
        self.clock = clock
        self.config = config
        self._sweep_task: Optional[asyncio.Task] = None

    async def handle(self, kind: str, quiz_id: str):
        """
        Run one lifecycle event. Safe to call any number of times.
        StoreUnavailable propagates so a job queue can retry it.
        """
        try:
            if kind in (LifecycleKind.ALERT, LifecycleKind.READY):
                await self.notify(kind, quiz_id)
            elif kind == LifecycleKind.START:
                await self.start(quiz_id)
            elif kind == LifecycleKind.END:
                await self.end(quiz_id)
            elif kind == LifecycleKind.RESULTS:
                await self.end(quiz_id)
                await self.finalizer.announce_results(quiz_id)
            else:
                logger.error(f"Unknown lifecycle event {kind} for {quiz_id}")
        except QuizNotFound:
            logger.error(f"✗ Lifecycle {kind}: quiz {quiz_id} not found")
        except MalformedQuiz as e:
            logger.error(f"✗ Lifecycle {kind} aborted: {e}")
            await self._abort(quiz_id, str(e))

    async def start(self, quiz_id: str) -> Optional[SessionRuntime]:
        runtime = await self.sessions.start(quiz_id)
        if runtime is None:
            return None
        self.drive(runtime)
        await self.notify(LifecycleKind.START, quiz_id)
        return runtime

    async def end(self, quiz_id: str) -> Optional[List[Dict]]:
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFound(quiz_id)
        if quiz.get("status") in (QuizStatus.LIVE, QuizStatus.FINALIZING):
            return await self.sessions.end(quiz_id)
        logger.debug(f"End ignored for {quiz_id}: status {quiz.get('status')}")
        return quiz.get("leaderboard")

    async def notify(self, kind: str, quiz_id: str) -> bool:
        quiz = await self.repo.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFound(quiz_id)
        expected = QuizStatus.LIVE if kind == LifecycleKind.START else QuizStatus.SCHEDULED
        if quiz.get("status") != expected:
            logger.debug(f"Notice {kind} skipped for {quiz_id}: status {quiz.get('status')}")
            return False
        if not await self.repo.mark_notified(quiz_id, kind):
            return False
        event_type, message = NOTICES[kind]
        await self.broadcaster.publish_lobby(
            fanout.lifecycle_notice(
                event_type, quiz_id, message, title=quiz.get("title"), scheduledAt=quiz.get("scheduledAt")
            )
        )
        logger.info(f"📢 {kind} notice sent for {quiz_id}")
        return True

    def drive(self, runtime: SessionRuntime):
        """Start the advance and tick tasks of a runtime this process owns"""
        if runtime.advance_task is None or runtime.advance_task.done():
            runtime.advance_task = asyncio.create_task(self._advance_loop(runtime.quiz_id))
        if runtime.tick_task is None or runtime.tick_task.done():
            runtime.tick_task = asyncio.create_task(self._tick_loop(runtime.quiz_id))

    async def _advance_loop(self, quiz_id: str):
        try:
            while True:
                runtime = self.registry.get(quiz_id)
                if runtime is None:
                    return
                await self.clock.sleep_until_ms(runtime.deadline_ms)
                outcome = await self._advance_with_retry(quiz_id, runtime.index)
                if outcome in (AdvanceOutcome.FINALIZED, AdvanceOutcome.NOT_LIVE):
                    return
        except asyncio.CancelledError:
            raise
        except QuizNotFound:
            logger.info(f"Quiz {quiz_id} disappeared, stopping driver")
            await self.registry.release(quiz_id)
        except Exception as e:
            logger.error(f"✗ Driver for {quiz_id} failed: {e}", exc_info=True)
            await self._abort(quiz_id, str(e))

    async def _advance_with_retry(self, quiz_id: str, index: int) -> str:
        attempt = 0
        while True:
            try:
                if attempt and self.registry.get(quiz_id) is None:
                    # A failed attempt may have got as far as finalization
                    quiz = await self.repo.get_quiz(quiz_id)
                    if quiz is not None and quiz.get("status") == QuizStatus.FINALIZING:
                        await self.finalizer.finalize(quiz_id)
                        return AdvanceOutcome.FINALIZED
                    return AdvanceOutcome.NOT_LIVE
                return await self.sessions.advance(quiz_id, index)
            except StoreUnavailable as e:
                attempt += 1
                if attempt > self.config.STORE_RETRIES:
                    raise
                delay = self.config.STORE_RETRY_BASE_SEC * (2 ** attempt)
                logger.warning(f"Advance of {quiz_id} from Q{index} failed ({e}), retry in {delay:.2f}s")
                await self.clock.sleep(delay)

    async def _tick_loop(self, quiz_id: str):
        renew_every_ms = int(self.config.LEASE_TTL_SEC * 1000 / 3)
        last_renewed = self.clock.now_ms()
        async for now in self.clock.ticks(self.config.TICK_INTERVAL_SEC):
            runtime = self.registry.get(quiz_id)
            if runtime is None:
                return
            try:
                await self.broadcaster.publish(
                    quiz_id,
                    fanout.time_remaining(quiz_id, runtime.index, runtime.seconds_left(now), now),
                )
                if now - last_renewed >= renew_every_ms:
                    if not await self.repo.renew_lease(quiz_id, self.sessions.instance_id, now):
                        logger.warning(f"Lost driver lease on {quiz_id}")
                        await self.registry.release(quiz_id)
                        return
                    last_renewed = now
            except LiveQuizError as e:
                # Advisory only; the advance task keeps its own deadlines
                logger.warning(f"Tick for {quiz_id} failed: {e}")

    async def _abort(self, quiz_id: str, reason: str):
        await self.registry.release(quiz_id)
        try:
            if await self.repo.mark_failed(quiz_id, reason):
                logger.error(f"✗ Quiz {quiz_id} marked failed: {reason}")
        except StoreUnavailable as e:
            logger.error(f"✗ Could not mark {quiz_id} failed: {e}")

    async def recover(self) -> Dict[str, int]:
        """Startup: finish interrupted finalizations, resume live quizzes where they were"""
        finished = 0
        for doc in await self.repo.list_quizzes([QuizStatus.FINALIZING]):
            try:
                await self.finalizer.finalize(doc["id"])
                finished += 1
            except LiveQuizError as e:
                logger.error(f"✗ Could not finish finalizing {doc['id']}: {e}")

        resumed = await self.resume_live()
        logger.info(f"✓ Recovery: {resumed} live quizzes resumed, {finished} finalizations completed")
        return {"resumed": resumed, "finalized": finished}

    async def resume_live(self) -> int:
        """Drive every live quiz nobody holds a fresh lease on"""
        resumed = 0
        for doc in await self.repo.list_quizzes([QuizStatus.LIVE]):
            if self.registry.get(doc["id"]) is not None:
                continue
            try:
                runtime = await self.sessions.restore(doc)
            except MalformedQuiz as e:
                logger.error(f"✗ Cannot resume {doc['id']}: {e}")
                await self._abort(doc["id"], str(e))
                continue
            if runtime is not None:
                self.drive(runtime)
                resumed += 1
        return resumed

    def start_lease_sweep(self):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_leases())

    async def stop_lease_sweep(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_leases(self):
        """
        Take over live quizzes whose driver stopped renewing its lease:
        a crashed peer, or this deployment's previous process when it
        restarted inside the lease TTL.
        """
        interval = self.config.LEASE_TTL_SEC / 2
        while True:
            await self.clock.sleep(interval)
            try:
                resumed = await self.resume_live()
            except LiveQuizError as e:
                logger.warning(f"Lease sweep failed: {e}")
                continue
            if resumed:
                logger.info(f"♻️ Lease sweep took over {resumed} live quizzes")


# ============================================================================
# DURABLE JOB QUEUE (Redis)
# ============================================================================


@dataclass
class Job:
    job_id: str
    kind: str
    quiz_id: str
    due_ms: int


class JobQueue:
    """
    Delayed jobs in Redis.

    - delayed:    sorted set job_id -> due ms
    - processing: sorted set job_id -> visibility deadline ms; ZADD NX on
                  it is the claim, so one worker wins each job
    - payload / attempts: hashes keyed by job_id

    A claim whose worker died is put back once its visibility deadline
    passes.
    """

    def __init__(self, redis, config: Config = default_config):
        self.redis = redis
        self.config = config
        prefix = config.JOB_QUEUE_PREFIX
        self.delayed_key = f"{prefix}:delayed"
        self.processing_key = f"{prefix}:processing"
        self.payload_key = f"{prefix}:payload"
        self.attempts_key = f"{prefix}:attempts"

    @staticmethod
    def job_id(quiz_id: str, kind: str) -> str:
        return f"{quiz_id}:{kind}"

    async def add(self, kind: str, quiz_id: str, due_ms: int) -> str:
        """Same (quiz, kind) twice just moves the due time"""
        job_id = self.job_id(quiz_id, kind)
        payload = orjson.dumps({"kind": kind, "quizId": quiz_id, "dueMs": due_ms})
        await self.redis.hset(self.payload_key, job_id, payload)
        await self.redis.zadd(self.delayed_key, {job_id: due_ms})
        return job_id

    async def remove(self, quiz_id: str):
        for kind in LifecycleKind.ALL:
            job_id = self.job_id(quiz_id, kind)
            await self.redis.zrem(self.delayed_key, job_id)
            await self.redis.zrem(self.processing_key, job_id)
            await self.redis.hdel(self.payload_key, job_id)
            await self.redis.hdel(self.attempts_key, job_id)

    async def claim_due(self, now_ms: int, limit: int = 10) -> List[Job]:
        ids = await self.redis.zrangebyscore(self.delayed_key, "-inf", now_ms, start=0, num=limit)
        jobs = []
        deadline = now_ms + int(self.config.JOB_VISIBILITY_SEC * 1000)
        for job_id in ids:
            if not await self.redis.zadd(self.processing_key, {job_id: deadline}, nx=True):
                continue
            await self.redis.zrem(self.delayed_key, job_id)
            raw = await self.redis.hget(self.payload_key, job_id)
            if raw is None:
                await self.redis.zrem(self.processing_key, job_id)
                continue
            data = orjson.loads(raw)
            jobs.append(Job(job_id=job_id, kind=data["kind"], quiz_id=data["quizId"], due_ms=data["dueMs"]))
        return jobs

    async def ack(self, job: Job):
        await self.redis.zrem(self.processing_key, job.job_id)
        await self.redis.hdel(self.payload_key, job.job_id)
        await self.redis.hdel(self.attempts_key, job.job_id)

    async def fail(self, job: Job, now_ms: int) -> bool:
        """Schedule a retry with backoff. False when the job was dropped."""
        attempts = await self.redis.hincrby(self.attempts_key, job.job_id, 1)
        if attempts >= self.config.JOB_MAX_ATTEMPTS:
            logger.error(f"✗ Job {job.job_id} dropped after {attempts} attempts")
            await self.ack(job)
            return False
        retry_at = now_ms + int(self.config.JOB_RETRY_BASE_SEC * (2 ** (attempts - 1)) * 1000)
        await self.redis.zadd(self.delayed_key, {job.job_id: retry_at})
        await self.redis.zrem(self.processing_key, job.job_id)
        return True

    async def requeue_expired(self, now_ms: int) -> int:
        ids = await self.redis.zrangebyscore(self.processing_key, "-inf", now_ms)
        count = 0
        for job_id in ids:
            if await self.redis.zrem(self.processing_key, job_id):
                await self.redis.zadd(self.delayed_key, {job_id: now_ms})
                count += 1
        if count:
            logger.warning(f"Requeued {count} jobs whose worker went away")
        return count

    async def stats(self) -> Dict[str, int]:
        return {
            "delayed": await self.redis.zcard(self.delayed_key),
            "processing": await self.redis.zcard(self.processing_key),
        }


# ============================================================================
# SCHEDULING BACKENDS
# ============================================================================


class QueueScheduler:
    name = "queue"

    def __init__(self, queue: JobQueue, driver: LifecycleDriver, repo, clock: Clock = system_clock, config: Config = default_config):
        self.queue = queue
        self.driver = driver
        self.repo = repo
        self.clock = clock
        self.config = config
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def schedule_quiz(self, quiz: Dict):
        now = self.clock.now_ms()
        for kind, due_ms in lifecycle_times(quiz, self.config):
            if kind in (LifecycleKind.ALERT, LifecycleKind.READY) and due_ms < now:
                continue
            await self.queue.add(kind, quiz["id"], due_ms)
        logger.info(f"📅 Scheduled lifecycle jobs for quiz {quiz['id']}")

    async def unschedule_quiz(self, quiz_id: str):
        await self.queue.remove(quiz_id)

    async def start(self):
        for quiz in await self.repo.list_quizzes([QuizStatus.SCHEDULED, QuizStatus.LIVE]):
            await self.schedule_quiz(quiz)
        self._running = True
        self._task = asyncio.create_task(self._poll())
        logger.info("✓ Job queue scheduler started")

    async def stop(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_due(self) -> int:
        """Claim and run every due job once; returns how many ran"""
        now = self.clock.now_ms()
        await self.queue.requeue_expired(now)
        jobs = await self.queue.claim_due(now)
        for job in jobs:
            await self._run(job)
        return len(jobs)

    async def _run(self, job: Job):
        try:
            await self.driver.handle(job.kind, job.quiz_id)
        except Exception as e:
            logger.error(f"✗ Job {job.job_id} failed: {e}", exc_info=True)
            await self.queue.fail(job, self.clock.now_ms())
            return
        await self.queue.ack(job)
        logger.info(f"[jobs] Job {job.job_id} completed")

    async def _poll(self):
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                logger.warning(f"Job queue unavailable ({e}), polling again shortly")
            await self.clock.sleep(self.config.JOB_POLL_SEC)


class TimerScheduler:
    name = "timer"

    def __init__(self, driver: LifecycleDriver, repo, clock: Clock = system_clock, config: Config = default_config):
        self.driver = driver
        self.repo = repo
        self.clock = clock
        self.config = config
        self.timers: Dict[Tuple[str, str], asyncio.Task] = {}

    async def schedule_quiz(self, quiz: Dict):
        now = self.clock.now_ms()
        for kind, due_ms in lifecycle_times(quiz, self.config):
            if kind in (LifecycleKind.ALERT, LifecycleKind.READY) and due_ms < now:
                continue
            key = (quiz["id"], kind)
            previous = self.timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self.timers[key] = asyncio.create_task(self._fire_at(key, due_ms))
        logger.info(f"📅 Scheduled lifecycle timers for quiz {quiz['id']}")

    async def unschedule_quiz(self, quiz_id: str):
        for key in [k for k in self.timers if k[0] == quiz_id]:
            self.timers.pop(key).cancel()

    async def _fire_at(self, key: Tuple[str, str], due_ms: int):
        quiz_id, kind = key
        try:
            await self.clock.sleep_until_ms(due_ms)
            await self.driver.handle(kind, quiz_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"✗ Lifecycle {kind} for {quiz_id} failed: {e}", exc_info=True)
        finally:
            if self.timers.get(key) is asyncio.current_task():
                self.timers.pop(key, None)

    async def start(self):
        for quiz in await self.repo.list_quizzes([QuizStatus.SCHEDULED, QuizStatus.LIVE]):
            await self.schedule_quiz(quiz)
        logger.info("✓ In-process timer scheduler started")

    async def stop(self):
        for task in self.timers.values():
            task.cancel()
        self.timers.clear()


def build_scheduler(driver: LifecycleDriver, repo, redis=None, clock: Clock = system_clock, config: Config = default_config):
    """Exactly one scheduling backend per deployment"""
    if config.use_job_queue and redis is not None:
        logger.info("Lifecycle scheduling: Redis job queue")
        return QueueScheduler(JobQueue(redis, config), driver, repo, clock, config)
    logger.info("Lifecycle scheduling: in-process timers")
    return TimerScheduler(driver, repo, clock, config)
