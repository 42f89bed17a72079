"""
Broadcast fan-out: question/timer/result events to every connection of a
quiz, across all server processes.

With Redis configured every event goes through pub/sub, including events
whose audience happens to be local, so each process delivers each event
exactly once to the sockets it holds. Without Redis delivery is local.
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import orjson
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import Config, config as default_config

logger = logging.getLogger(__name__)


def dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


# ============================================================================
# EVENT PAYLOADS
# ============================================================================


class EventType:
    QUESTION_OPEN = "question-open"
    TIME_REMAINING = "time-remaining"
    QUESTION_CLOSED = "question-closed"
    QUIZ_ENDED = "quiz-ended"
    QUIZ_STARTED = "quiz-started"
    PARTICIPANT_ANSWERED = "participant-answered"
    QUIZ_ALERT = "quiz-alert"
    QUIZ_READY = "quiz-ready"
    QUIZ_RESULTS_READY = "quiz-results-ready"
    FORCE_DISCONNECT = "force-disconnect"


def question_open(
    quiz_id: str,
    index: int,
    question: Dict,
    total: int,
    duration: float,
    start_ms: int,
    seconds_left: float,
    now_ms: int,
) -> Dict:
    """`question` must already be the public view (no correct index)"""
    return {
        "type": EventType.QUESTION_OPEN,
        "quizId": quiz_id,
        "index": index,
        "questionNumber": index + 1,
        "totalQuestions": total,
        "text": question["text"],
        "options": question["options"],
        "points": question.get("points", 1),
        "category": question.get("category"),
        "durationSeconds": duration,
        "secondsLeft": round(seconds_left, 3),
        "startTime": start_ms,
        "serverTime": now_ms,
    }


def time_remaining(quiz_id: str, index: int, seconds_left: float, now_ms: int) -> Dict:
    return {
        "type": EventType.TIME_REMAINING,
        "quizId": quiz_id,
        "index": index,
        "secondsLeft": int(seconds_left + 0.999),  # ceil for display
        "serverTime": now_ms,
    }


def question_closed(quiz_id: str, index: int, correct_index: int) -> Dict:
    return {
        "type": EventType.QUESTION_CLOSED,
        "quizId": quiz_id,
        "index": index,
        "correctOptionIndex": correct_index,
    }


def quiz_started(quiz_id: str, total: int, duration: float, start_ms: int) -> Dict:
    return {
        "type": EventType.QUIZ_STARTED,
        "quizId": quiz_id,
        "totalQuestions": total,
        "timePerQuestion": duration,
        "startTime": start_ms,
    }


def quiz_ended(quiz_id: str, leaderboard: List[Dict], total_ranked: int, ended_at: str) -> Dict:
    return {
        "type": EventType.QUIZ_ENDED,
        "quizId": quiz_id,
        "leaderboard": leaderboard,
        "totalParticipants": total_ranked,
        "endTime": ended_at,
    }


def participant_answered(quiz_id: str, user_id: str, index: int) -> Dict:
    # No score or correctness here: the whole room sees this
    return {
        "type": EventType.PARTICIPANT_ANSWERED,
        "quizId": quiz_id,
        "userId": user_id,
        "index": index,
    }


def lifecycle_notice(kind: str, quiz_id: str, message: str, **extra) -> Dict:
    return {"type": kind, "quizId": quiz_id, "message": message, **extra}


# ============================================================================
# LOCAL CONNECTION REGISTRY
# ============================================================================


@dataclass
class Connection:
    websocket: object
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: float = field(default_factory=time.time)


class ConnectionManager:
    """
    Sockets held by this process. A participant has at most one connection
    per quiz; attaching a new one closes the previous one.
    """

    def __init__(self, config: Config = default_config):
        self.config = config
        self.rooms: Dict[str, Dict[str, Connection]] = {}
        self.lobby: Set[object] = set()
        self.heartbeat_tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._message_count: Dict[str, int] = defaultdict(int)
        self._last_reset: float = time.time()

    async def attach(self, quiz_id: str, user_id: str, websocket, connection_id: Optional[str] = None) -> Connection:
        conn = Connection(websocket=websocket, connection_id=connection_id or uuid.uuid4().hex)
        async with self._lock:
            room = self.rooms.setdefault(quiz_id, {})
            previous = room.get(user_id)
            room[user_id] = conn

            key = f"{quiz_id}:{user_id}"
            if key in self.heartbeat_tasks:
                self.heartbeat_tasks[key].cancel()
            self.heartbeat_tasks[key] = asyncio.create_task(self._heartbeat(websocket))

        if previous is not None and previous.websocket is not websocket:
            await self._force_close(previous, "Connected elsewhere")

        logger.info(f"✓ Connected: {user_id} -> {quiz_id} ({len(self.rooms.get(quiz_id, {}))} total)")
        return conn

    def detach(self, quiz_id: str, user_id: str, websocket):
        room = self.rooms.get(quiz_id)
        if room is None:
            return
        conn = room.get(user_id)
        # A newer connection may already have replaced this one
        if conn is not None and conn.websocket is websocket:
            room.pop(user_id, None)
            self._stop_heartbeat(quiz_id, user_id)
        if not room:
            self.rooms.pop(quiz_id, None)
        logger.info(f"✗ Disconnected: {user_id} from {quiz_id}")

    async def evict(self, quiz_id: str, user_id: str, keep_connection_id: str):
        """Close this process's connection for the user unless it is `keep_connection_id`"""
        conn = self.rooms.get(quiz_id, {}).get(user_id)
        if conn is None or conn.connection_id == keep_connection_id:
            return
        self.rooms[quiz_id].pop(user_id, None)
        self._stop_heartbeat(quiz_id, user_id)
        await self._force_close(conn, "Connected elsewhere")

    def _stop_heartbeat(self, quiz_id: str, user_id: str):
        task = self.heartbeat_tasks.pop(f"{quiz_id}:{user_id}", None)
        if task:
            task.cancel()

    async def _force_close(self, conn: Connection, reason: str):
        try:
            await conn.websocket.send_text(dumps({"type": EventType.FORCE_DISCONNECT, "message": reason}))
            await conn.websocket.close(code=4000, reason=reason)
        except Exception:
            pass  # already gone

    def current_connection(self, quiz_id: str, user_id: str) -> Optional[Connection]:
        return self.rooms.get(quiz_id, {}).get(user_id)

    def add_lobby(self, websocket):
        self.lobby.add(websocket)

    def remove_lobby(self, websocket):
        self.lobby.discard(websocket)

    async def send_room(self, quiz_id: str, data: str):
        room = self.rooms.get(quiz_id)
        if not room:
            return
        items = list(room.items())
        dead: List[Tuple[str, Connection]] = []
        results = await asyncio.gather(
            *(conn.websocket.send_text(data) for _, conn in items), return_exceptions=True
        )
        for (user_id, conn), result in zip(items, results):
            if isinstance(result, Exception):
                dead.append((user_id, conn))
        for user_id, conn in dead:
            # A reconnect during the send keeps its new connection
            if room.get(user_id) is conn:
                room.pop(user_id)
                self._stop_heartbeat(quiz_id, user_id)
        self._message_count[quiz_id] += 1

    async def send_lobby(self, data: str):
        targets = set(self.lobby)
        for room in self.rooms.values():
            targets.update(conn.websocket for conn in room.values())
        results = await asyncio.gather(*(ws.send_text(data) for ws in targets), return_exceptions=True)
        for ws, result in zip(list(targets), results):
            if isinstance(result, Exception):
                self.lobby.discard(ws)

    async def send_to_user(self, quiz_id: str, user_id: str, message: Dict):
        conn = self.current_connection(quiz_id, user_id)
        if conn is None:
            return
        try:
            await conn.websocket.send_text(dumps(message))
        except Exception as e:
            logger.error(f"Failed to send to {user_id}: {e}")

    async def _heartbeat(self, ws):
        try:
            while True:
                await asyncio.sleep(self.config.WS_HEARTBEAT_SEC)
                try:
                    await ws.send_text(dumps({"type": "ping", "t": int(time.time() * 1000)}))
                except Exception:
                    break
        except asyncio.CancelledError:
            pass

    async def close_room(self, quiz_id: str):
        room = self.rooms.pop(quiz_id, {})
        for user_id, conn in room.items():
            task = self.heartbeat_tasks.pop(f"{quiz_id}:{user_id}", None)
            if task:
                task.cancel()
            try:
                await conn.websocket.close()
            except Exception:
                pass

    async def close_all(self):
        for quiz_id in list(self.rooms):
            await self.close_room(quiz_id)
        for task in self.heartbeat_tasks.values():
            task.cancel()
        self.heartbeat_tasks.clear()

    def room_size(self, quiz_id: str) -> int:
        return len(self.rooms.get(quiz_id, {}))

    def get_performance_stats(self) -> Dict:
        current_time = time.time()
        elapsed = current_time - self._last_reset
        stats = {
            "active_rooms": len(self.rooms),
            "total_connections": sum(len(r) for r in self.rooms.values()) + len(self.lobby),
            "messages_per_second": (
                sum(self._message_count.values()) / elapsed if elapsed > 0 else 0
            ),
            "room_details": {code: {"connections": len(r)} for code, r in self.rooms.items()},
        }
        if elapsed > 60:
            self._message_count.clear()
            self._last_reset = current_time
        return stats


# ============================================================================
# BROADCASTER (pub/sub backbone)
# ============================================================================


class Broadcaster:
    def __init__(self, manager: ConnectionManager, redis=None, config: Config = default_config):
        self.manager = manager
        self.redis = redis
        self.config = config
        self._listener: Optional[asyncio.Task] = None
        self._running = False

    @property
    def prefix(self) -> str:
        return self.config.PUBSUB_PREFIX

    def _room_channel(self, quiz_id: str) -> str:
        return f"{self.prefix}:quiz:{quiz_id}"

    async def publish(self, quiz_id: str, event: Dict):
        if self.redis is None:
            await self.manager.send_room(quiz_id, dumps(event))
            return
        if not await self._publish_remote(self._room_channel(quiz_id), event):
            await self.manager.send_room(quiz_id, dumps(event))

    async def publish_lobby(self, event: Dict):
        if self.redis is None:
            await self.manager.send_lobby(dumps(event))
            return
        if not await self._publish_remote(f"{self.prefix}:lobby", event):
            await self.manager.send_lobby(dumps(event))

    async def send_to_user(self, quiz_id: str, user_id: str, event: Dict):
        """Direct message; only reaches a connection held by this process"""
        await self.manager.send_to_user(quiz_id, user_id, event)

    async def evict_elsewhere(self, quiz_id: str, user_id: str, connection_id: str):
        """Close the user's other connections on every process"""
        if self.redis is None:
            await self.manager.evict(quiz_id, user_id, connection_id)
            return
        payload = {"action": "evict", "quizId": quiz_id, "userId": user_id, "keep": connection_id}
        if not await self._publish_remote(f"{self.prefix}:control", payload):
            await self.manager.evict(quiz_id, user_id, connection_id)

    async def _publish_remote(self, channel: str, payload: Dict) -> bool:
        data = dumps(payload)
        for attempt in range(1, self.config.STORE_RETRIES + 1):
            try:
                await self.redis.publish(channel, data)
                return True
            except (RedisConnectionError, RedisTimeoutError) as e:
                delay = self.config.STORE_RETRY_BASE_SEC * (2 ** (attempt - 1))
                logger.warning(f"Publish to {channel} failed ({e}), retry {attempt} in {delay:.2f}s")
                await asyncio.sleep(delay)
        logger.error(f"✗ Pub/sub unavailable, delivering {channel} to local sockets only")
        return False

    async def deliver(self, channel: str, data: str):
        """Hand one pub/sub message to the sockets this process holds"""
        suffix = channel[len(self.prefix) + 1:]
        if suffix == "lobby":
            await self.manager.send_lobby(data)
        elif suffix == "control":
            msg = orjson.loads(data)
            if msg.get("action") == "evict":
                await self.manager.evict(msg["quizId"], msg["userId"], msg["keep"])
        elif suffix.startswith("quiz:"):
            await self.manager.send_room(suffix[len("quiz:"):], data)

    async def start(self):
        if self.redis is None or self._listener is not None:
            return
        self._running = True
        self._listener = asyncio.create_task(self._listen())
        logger.info("✓ Pub/sub listener started")

    async def stop(self):
        self._running = False
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

    async def _listen(self):
        while self._running:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(f"{self.prefix}:*")
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    channel = message["channel"]
                    data = message["data"]
                    if isinstance(channel, bytes):
                        channel = channel.decode("utf-8")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    try:
                        await self.deliver(channel, data)
                    except Exception as e:
                        logger.error(f"Delivery error on {channel}: {e}", exc_info=True)
            except asyncio.CancelledError:
                raise
            except (RedisConnectionError, RedisTimeoutError) as e:
                logger.warning(f"Pub/sub connection lost ({e}), resubscribing")
                await asyncio.sleep(1)
            finally:
                try:
                    await pubsub.aclose()
                except Exception:
                    pass
