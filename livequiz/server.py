"""
livequiz API - scheduled, server-clocked live quiz
HTTP admin/participant routes, participant WebSocket rooms, lobby events
"""

import asyncio
import hashlib
import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import jwt as pyjwt
import orjson
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorClient
from redis.exceptions import RedisError

from . import __version__
from .config import config
from .errors import QuizNotFound
from .fanout import dumps
from .models import (
    AdminLogin,
    AnswerResult,
    AnswerSubmit,
    JoinRequest,
    JoinResult,
    QuizCreate,
    QuizOut,
    QuizStatus,
    RejectReason,
)
from .repository import iso_from_ms
from .scheduler import LifecycleKind, next_daily_start
from .services import Services, build_services

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

mongo_client: Optional[AsyncIOMotorClient] = None
redis_client = None
services: Optional[Services] = None


def get_services() -> Services:
    if services is None:
        raise HTTPException(503, "Service starting")
    return services


# ============================================================================
# LIFESPAN
# ============================================================================


async def seed_admin(db):
    hashed_pw = hashlib.sha256(config.ADMIN_PASSWORD.encode()).hexdigest()
    existing = await db.admins.find_one({"username": config.ADMIN_USERNAME})
    if not existing:
        await db.admins.insert_one({
            "username": config.ADMIN_USERNAME,
            "password": hashed_pw,
            "role": "admin",
            "createdAt": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"✓ Default admin user '{config.ADMIN_USERNAME}' created")
    elif existing.get("password") != hashed_pw:
        await db.admins.update_one(
            {"username": config.ADMIN_USERNAME}, {"$set": {"password": hashed_pw}}
        )
        logger.info(f"✓ Admin password updated for '{config.ADMIN_USERNAME}'")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global mongo_client, redis_client, services

    logger.info(f"🚀 Starting livequiz API v{__version__}")

    try:
        mongo_client = AsyncIOMotorClient(
            config.MONGO_URL,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            maxPoolSize=200,
            minPoolSize=20,
            retryWrites=True,
            retryReads=True,
        )
        db = mongo_client[config.DB_NAME]
        await db.command("ping")
        logger.info("✓ MongoDB connected")
    except Exception as e:
        logger.error(f"❌ MongoDB connection failed: {e}")
        raise

    if config.REDIS_URL:
        try:
            redis_client = aioredis.from_url(config.REDIS_URL, decode_responses=True)
            await redis_client.ping()
            logger.info("✓ Redis connected")
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️ Redis unavailable ({e}), using local broadcast and in-process timers")
            redis_client = None

    try:
        await seed_admin(db)
    except Exception as e:
        logger.error(f"Admin seeding error: {e}")

    services = build_services(db, redis_client, config)
    await services.start()
    logger.info("✓ livequiz API ready")

    yield

    logger.info("🛑 Shutting down")
    await services.stop()
    services = None
    if redis_client is not None:
        await redis_client.aclose()
    if mongo_client:
        mongo_client.close()
    logger.info("✓ Shutdown complete")


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="livequiz API",
    version=__version__,
    description="Daily live quiz with server-side timing and fair scoring",
    lifespan=lifespan,
)

_cors_env = os.getenv("CORS_ORIGINS", "")
if _cors_env == "*":
    _cors_origins = ["*"]
elif _cors_env:
    _cors_origins = [o.strip() for o in _cors_env.split(",") if o.strip()]
else:
    _cors_origins = config.ALLOWED_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=500)

# ============================================================================
# AUTHENTICATION
# ============================================================================

security = HTTPBearer(auto_error=False)


def create_admin_token(username: str) -> str:
    """Generate a JWT token for admin"""
    payload = {
        "sub": username,
        "role": "admin",
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=config.JWT_EXPIRATION_HOURS),
    }
    return pyjwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict]:
    try:
        return pyjwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except pyjwt.InvalidTokenError:
        return None


async def verify_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """FastAPI dependency to protect admin routes"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")

    return payload


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def parse_schedule(value: Optional[str]) -> datetime:
    if not value:
        return next_daily_start(datetime.now(timezone.utc), config)
    try:
        scheduled = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(400, "scheduledAt must be an ISO-8601 datetime")
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=ZoneInfo(config.QUIZ_TIMEZONE))
    return scheduled


async def load_quiz(svc: Services, quiz_id: str) -> Dict:
    quiz = await svc.repo.get_quiz(quiz_id)
    if not quiz:
        raise HTTPException(404, "Quiz not found")
    return quiz


async def quiz_state(svc: Services, quiz: Dict, user_id: Optional[str] = None) -> Dict:
    """Everything a (re)connecting client needs to render the current moment"""
    quiz_id = quiz["id"]
    state = {
        "quizId": quiz_id,
        "status": quiz.get("status"),
        "scheduledAt": quiz.get("scheduledAt"),
        "totalQuestions": quiz.get("totalQuestions", 0),
        "currentQuestionIndex": quiz.get("currentQuestionIndex", -1),
        "serverTime": svc.clock.now_ms(),
        "question": None,
    }
    if quiz.get("status") == QuizStatus.LIVE:
        question = await svc.sessions.current_question(quiz_id)
        if question is not None:
            state["question"] = question
            state["currentQuestionIndex"] = question["index"]
    if user_id:
        p = await svc.repo.get_participant(quiz_id, user_id)
        if p:
            state["participant"] = {
                "score": p.get("score", 0),
                "correctAnswers": p.get("correctAnswers", 0),
                "questionsAnswered": p.get("questionsAnswered", 0),
                "answeredQuestions": [a["questionIndex"] for a in p.get("answers", [])],
                "rank": p.get("rank"),
            }
    return state


# ============================================================================
# API ROUTES
# ============================================================================


@app.get("/")
async def root():
    return {
        "name": "livequiz API",
        "version": __version__,
        "status": "active",
        "features": ["time-sync", "state-recovery", "scheduled-lifecycle", "admin-auth"],
    }


@app.get("/health")
async def health():
    svc = get_services()
    status = {"status": "healthy", "services": {}}
    try:
        await svc.repo.ping()
        status["services"]["mongodb"] = "connected"
    except Exception as e:
        status["services"]["mongodb"] = f"error: {str(e)}"
        status["status"] = "degraded"

    if svc.broadcaster.redis is not None:
        try:
            await svc.broadcaster.redis.ping()
            status["services"]["redis"] = "connected"
        except RedisError as e:
            status["services"]["redis"] = f"error: {str(e)}"
            status["status"] = "degraded"

    status["scheduler"] = svc.scheduler.name
    status["liveSessions"] = svc.registry.live_ids()
    status["websocket"] = svc.manager.get_performance_stats()
    return status


@app.get("/api/time-sync")
async def time_sync():
    """Server clock for client offset estimation; display only"""
    svc = get_services()
    now = svc.clock.now_ms()
    return {"serverTime": now, "timestamp": iso_from_ms(now)}


@app.post("/api/admin/login")
async def admin_login(data: AdminLogin):
    svc = get_services()
    try:
        hashed_pw = hashlib.sha256(data.password.encode()).hexdigest()
        admin = await svc.repo.db.admins.find_one({
            "username": data.username,
            "password": hashed_pw,
        })

        if not admin:
            raise HTTPException(status_code=401, detail="Invalid username or password")

        token = create_admin_token(data.username)
        logger.info(f"✓ Admin login: {data.username}")
        return {"token": token, "username": data.username, "role": "admin"}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Login error: {e}")
        raise HTTPException(500, "Login failed")


@app.post("/api/admin/quiz", response_model=QuizOut)
async def create_quiz(data: QuizCreate, _admin: Dict = Depends(verify_admin_token)):
    svc = get_services()
    try:
        scheduled = parse_schedule(data.scheduledAt)
        scheduled_ms = int(scheduled.timestamp() * 1000)
        if scheduled_ms <= svc.clock.now_ms():
            raise HTTPException(400, "scheduledAt must be in the future")

        now = svc.clock.now_ms()
        quiz = {
            "id": str(uuid.uuid4()),
            "title": data.title,
            "description": data.description,
            "status": QuizStatus.SCHEDULED,
            "isLive": False,
            "scheduledAt": scheduled.isoformat(),
            "scheduledAtMs": scheduled_ms,
            "timePerQuestion": data.timePerQuestion,
            "maxParticipants": data.maxParticipants,
            "currentParticipants": 0,
            "questions": [q.model_dump() for q in data.questions],
            "totalQuestions": len(data.questions),
            "currentQuestionIndex": -1,
            "questionStartTime": None,
            "settings": data.settings.model_dump(),
            "notificationsSent": [],
            "createdAt": iso_from_ms(now),
        }
        await svc.repo.create_quiz(quiz)
        await svc.scheduler.schedule_quiz(quiz)
        logger.info(f"✓ Quiz created: {quiz['id']} for {quiz['scheduledAt']}")
        return QuizOut(**quiz)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create quiz error: {e}", exc_info=True)
        raise HTTPException(500, "Failed to create quiz")


@app.get("/api/admin/quiz/{quiz_id}")
async def get_quiz_admin(quiz_id: str, _admin: Dict = Depends(verify_admin_token)):
    svc = get_services()
    return await load_quiz(svc, quiz_id)


@app.post("/api/admin/quiz/{quiz_id}/start")
async def manual_start(quiz_id: str, _admin: Dict = Depends(verify_admin_token)):
    """Start a scheduled quiz now instead of at its scheduled time"""
    svc = get_services()
    try:
        quiz = await load_quiz(svc, quiz_id)
        if quiz.get("status") != QuizStatus.SCHEDULED:
            raise HTTPException(409, f"Quiz is {quiz.get('status')}")
        await svc.driver.handle(LifecycleKind.START, quiz_id)
        quiz = await load_quiz(svc, quiz_id)
        if quiz.get("status") != QuizStatus.LIVE:
            raise HTTPException(409, f"Quiz could not be started ({quiz.get('status')})")
        logger.info(f"✓ Manual start: {quiz_id}")
        return await quiz_state(svc, quiz)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Manual start error: {e}", exc_info=True)
        raise HTTPException(500, "Failed to start quiz")


@app.post("/api/admin/quiz/{quiz_id}/end")
async def manual_end(quiz_id: str, _admin: Dict = Depends(verify_admin_token)):
    svc = get_services()
    try:
        quiz = await load_quiz(svc, quiz_id)
        if quiz.get("status") not in (QuizStatus.LIVE, QuizStatus.FINALIZING):
            raise HTTPException(409, f"Quiz is {quiz.get('status')}")
        leaderboard = await svc.driver.end(quiz_id)
        logger.info(f"✓ Manual end: {quiz_id}")
        return {"quizId": quiz_id, "status": QuizStatus.ENDED, "leaderboard": leaderboard or []}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Manual end error: {e}", exc_info=True)
        raise HTTPException(500, "Failed to end quiz")


@app.get("/api/admin/quiz/{quiz_id}/participants")
async def get_quiz_participants(quiz_id: str, _admin: Dict = Depends(verify_admin_token)):
    svc = get_services()
    await load_quiz(svc, quiz_id)
    participants = await svc.repo.list_participants(quiz_id)
    return {"participants": participants, "count": len(participants)}


@app.get("/api/admin/quiz/{quiz_id}/reconcile")
async def reconcile_quiz(quiz_id: str, _admin: Dict = Depends(verify_admin_token)):
    """Participants whose score/time totals disagree with their answer ledger"""
    svc = get_services()
    await load_quiz(svc, quiz_id)
    mismatched = await svc.repo.reconcile_quiz(quiz_id)
    if mismatched:
        logger.error(f"✗ Ledger mismatch on {quiz_id}: {mismatched}")
    return {"quizId": quiz_id, "consistent": not mismatched, "mismatched": mismatched}


@app.get("/api/quiz/today", response_model=QuizOut)
async def get_today_quiz():
    svc = get_services()
    tz = ZoneInfo(config.QUIZ_TIMEZONE)
    local_now = svc.clock.now().astimezone(tz)
    day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_ms = int(day_start.timestamp() * 1000)
    end_ms = int((day_start + timedelta(days=1)).timestamp() * 1000)
    quiz = await svc.repo.find_quiz_between(
        start_ms,
        end_ms,
        [QuizStatus.SCHEDULED, QuizStatus.LIVE, QuizStatus.FINALIZING, QuizStatus.ENDED],
    )
    if not quiz:
        raise HTTPException(404, "No quiz scheduled today")
    return QuizOut(**quiz)


@app.post("/api/quiz/{quiz_id}/join", response_model=JoinResult)
async def join_quiz(quiz_id: str, data: JoinRequest):
    svc = get_services()
    return await svc.participants.join(quiz_id, data.userId)


@app.post("/api/quiz/{quiz_id}/answer", response_model=AnswerResult)
async def submit_answer(quiz_id: str, ans: AnswerSubmit):
    svc = get_services()
    try:
        return await svc.intake.submit_answer(
            quiz_id, ans.userId, ans.questionIndex, ans.selectedOption, ans.clientTimestamp
        )
    except Exception as e:
        logger.error(f"Submit answer error: {e}", exc_info=True)
        return AnswerResult.rejected(RejectReason.TRY_AGAIN, ans.questionIndex)


@app.get("/api/quiz/{quiz_id}/state")
async def get_quiz_state(quiz_id: str, userId: Optional[str] = Query(None)):
    """State recovery for clients returning mid-quiz"""
    svc = get_services()
    quiz = await load_quiz(svc, quiz_id)
    return await quiz_state(svc, quiz, userId)


@app.get("/api/quiz/{quiz_id}/leaderboard")
async def get_leaderboard(quiz_id: str):
    svc = get_services()
    try:
        return await svc.finalizer.leaderboard(quiz_id)
    except QuizNotFound:
        raise HTTPException(404, "Quiz not found")


@app.get("/api/users/{user_id}/history")
async def get_user_history(user_id: str) -> List[Dict]:
    svc = get_services()
    return await svc.finalizer.history(user_id)


# ============================================================================
# WEBSOCKETS
# ============================================================================


async def ws_join(svc: Services, websocket, quiz_id: str, user_id: str) -> Optional[str]:
    """
    Admit a socket into the quiz room after eligibility, evict the user's
    older connection anywhere, and resync the open question right away.
    Returns the connection id, or None if refused.
    """
    result = await svc.participants.join(quiz_id, user_id)
    if not result.accepted:
        await websocket.send_text(dumps({"type": "join-error", **result.model_dump()}))
        return None

    conn = await svc.manager.attach(quiz_id, user_id, websocket)
    await svc.broadcaster.evict_elsewhere(quiz_id, user_id, conn.connection_id)
    await svc.repo.set_connection(quiz_id, user_id, conn.connection_id)

    quiz = await load_quiz(svc, quiz_id)
    await websocket.send_text(dumps({"type": "joined", **(await quiz_state(svc, quiz, user_id))}))
    question = await svc.sessions.current_question(quiz_id)
    if question is not None:
        await websocket.send_text(dumps(question))
    return conn.connection_id


async def ws_answer(svc: Services, websocket, quiz_id: str, user_id: Optional[str], msg: Dict):
    index = msg.get("questionIndex")
    if user_id is None:
        result = AnswerResult.rejected(RejectReason.NOT_ELIGIBLE, index)
    elif not isinstance(index, int) or not isinstance(msg.get("selectedOption"), int):
        result = AnswerResult.rejected(RejectReason.INVALID_OPTION, index)
    else:
        result = await svc.intake.submit_answer(
            quiz_id, user_id, index, msg["selectedOption"], msg.get("clientTimestamp")
        )
    kind = "answer-result" if result.accepted else "answer-error"
    await websocket.send_text(dumps({"type": kind, **result.model_dump()}))


@app.websocket("/ws/{quiz_id}")
async def websocket_endpoint(websocket: WebSocket, quiz_id: str):
    svc = services
    if svc is None:
        await websocket.close(code=1013, reason="Service starting")
        return

    quiz = await svc.repo.get_quiz(quiz_id)
    if not quiz:
        await websocket.close(code=1008, reason="Quiz not found")
        return
    if quiz.get("status") in (QuizStatus.ENDED, QuizStatus.FAILED):
        await websocket.close(code=1008, reason="Quiz has ended")
        return

    user_id = None
    await websocket.accept()
    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=config.WS_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_text(dumps({"type": "ping", "t": svc.clock.now_ms()}))
                except Exception:
                    break
                continue

            try:
                msg = orjson.loads(data)
            except orjson.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue

            msg_type = msg.get("type")

            try:
                if msg_type == "join":
                    requested = msg.get("userId")
                    if requested and await ws_join(svc, websocket, quiz_id, requested):
                        user_id = requested

                elif msg_type == "submit_answer":
                    await ws_answer(svc, websocket, quiz_id, user_id, msg)

                elif msg_type == "request_state_sync":
                    quiz = await load_quiz(svc, quiz_id)
                    await websocket.send_text(
                        dumps({"type": "state-sync", **(await quiz_state(svc, quiz, user_id))})
                    )

                elif msg_type == "ping":
                    now = svc.clock.now_ms()
                    await websocket.send_text(dumps({
                        "type": "pong",
                        "t": now,
                        "clientTime": msg.get("clientTime") or msg.get("t"),
                        "serverTime": now,
                    }))
            except (WebSocketDisconnect, RuntimeError):
                raise
            except Exception as e:
                logger.error(f"WebSocket {msg_type} error on {quiz_id}: {e}", exc_info=True)
                error_type = "join-error" if msg_type == "join" else "answer-error"
                await websocket.send_text(dumps({
                    "type": error_type,
                    "reason": RejectReason.TRY_AGAIN,
                    "message": "Something went wrong, please try again",
                }))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {quiz_id}")
    except RuntimeError:
        logger.info(f"WebSocket runtime error (closed): {quiz_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        if user_id is not None:
            svc.manager.detach(quiz_id, user_id, websocket)


@app.websocket("/ws")
async def lobby_endpoint(websocket: WebSocket):
    """Quiz-independent events: alerts, ready, started, results"""
    svc = services
    if svc is None:
        await websocket.close(code=1013, reason="Service starting")
        return

    await websocket.accept()
    svc.manager.add_lobby(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = orjson.loads(data)
            except orjson.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await websocket.send_text(dumps({"type": "pong", "serverTime": svc.clock.now_ms()}))
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        svc.manager.remove_lobby(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "livequiz.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        log_level="info",
        loop="uvloop" if sys.platform != "win32" else "asyncio",
        ws_ping_interval=config.WS_HEARTBEAT_SEC,
        ws_ping_timeout=config.WS_TIMEOUT_SEC,
    )
