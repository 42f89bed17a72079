import os


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    DB_NAME = os.getenv("DB_NAME", "livequiz")
    REDIS_URL = os.getenv("REDIS_URL", "")

    # "queue" = Redis delayed jobs, "timer" = in-process asyncio timers.
    # Exactly one is active per deployment.
    SCHEDULER_BACKEND = os.getenv("SCHEDULER_BACKEND", "queue")
    QUIZ_TIMEZONE = os.getenv("QUIZ_TIMEZONE", "Asia/Kolkata")
    DAILY_START_TIME = os.getenv("DAILY_START_TIME", "20:00")

    # Lifecycle offsets relative to the scheduled start (seconds)
    ALERT_OFFSET_SEC = _env_int("ALERT_OFFSET_SEC", -300)
    READY_OFFSET_SEC = _env_int("READY_OFFSET_SEC", -60)
    START_OFFSET_SEC = _env_int("START_OFFSET_SEC", 0)
    END_OFFSET_SEC = _env_int("END_OFFSET_SEC", 1800)
    RESULTS_OFFSET_SEC = _env_int("RESULTS_OFFSET_SEC", 1860)
    PAYMENT_CUTOFF_SEC = _env_int("PAYMENT_CUTOFF_SEC", 300)

    # Answer window
    DEFAULT_QUESTION_SEC = _env_float("DEFAULT_QUESTION_SEC", 15)
    ANSWER_GRACE_SEC = _env_float("ANSWER_GRACE_SEC", 1.0)
    MIN_ANSWER_SEC = _env_float("MIN_ANSWER_SEC", 0)  # 0 disables the floor
    TICK_INTERVAL_SEC = _env_float("TICK_INTERVAL_SEC", 1.0)

    # Results
    RANK_POLICY = os.getenv("RANK_POLICY", "eligible")  # or "answered"
    LEADERBOARD_TOP_N = _env_int("LEADERBOARD_TOP_N", 20)
    RESULTS_BROADCAST_TOP_N = _env_int("RESULTS_BROADCAST_TOP_N", 10)
    MAX_PARTICIPANTS = _env_int("MAX_PARTICIPANTS", 2000)

    # Durable store retries
    STORE_RETRIES = _env_int("STORE_RETRIES", 3)
    STORE_RETRY_BASE_SEC = _env_float("STORE_RETRY_BASE_SEC", 0.2)

    # Single-driver lease on a live quiz
    LEASE_TTL_SEC = _env_float("LEASE_TTL_SEC", 15)

    # Durable job queue
    JOB_QUEUE_PREFIX = os.getenv("JOB_QUEUE_PREFIX", "livequiz:jobs")
    JOB_POLL_SEC = _env_float("JOB_POLL_SEC", 0.5)
    JOB_VISIBILITY_SEC = _env_float("JOB_VISIBILITY_SEC", 60)
    JOB_MAX_ATTEMPTS = _env_int("JOB_MAX_ATTEMPTS", 5)
    JOB_RETRY_BASE_SEC = _env_float("JOB_RETRY_BASE_SEC", 2)

    # Broadcast backbone
    PUBSUB_PREFIX = os.getenv("PUBSUB_PREFIX", "livequiz:events")

    WS_HEARTBEAT_SEC = 15
    WS_TIMEOUT_SEC = 25
    ALLOWED_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Admin authentication
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "change-me")
    JWT_SECRET = os.getenv("JWT_SECRET", "livequiz-secret-key-change-in-production")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRATION_HOURS = 24

    @property
    def use_job_queue(self) -> bool:
        return self.SCHEDULER_BACKEND == "queue" and bool(self.REDIS_URL)


config = Config()
