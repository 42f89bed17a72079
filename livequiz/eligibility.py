"""
Eligibility Gate. Payments and user accounts belong to the surrounding
application; the quiz core only asks "may this user play this quiz".
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from .config import Config, config as default_config
from .repository import with_retries

logger = logging.getLogger(__name__)


class EligibilityGate(Protocol):
    async def is_eligible(self, user_id: str, quiz_date: datetime) -> bool:
        ...


def _as_utc(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PaymentEligibilityGate:
    """
    A user is eligible when a completed, verified payment exists for the
    quiz day and was made before the payment cutoff (PAYMENT_CUTOFF_SEC
    before the scheduled start). Users carrying the day in `paidForDates`
    are eligible too.
    """

    def __init__(self, db, config: Config = default_config):
        self.payments = db.payments
        self.users = db.users
        self.config = config
        self.tz = ZoneInfo(config.QUIZ_TIMEZONE)

    def _day_bounds(self, quiz_date: datetime):
        local = quiz_date.astimezone(self.tz)
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)

    async def is_eligible(self, user_id: str, quiz_date: datetime) -> bool:
        quiz_date = _as_utc(quiz_date)
        day_start, day_end = self._day_bounds(quiz_date)
        cutoff = quiz_date - timedelta(seconds=self.config.PAYMENT_CUTOFF_SEC)

        query = {
            "user": user_id,
            "forDate": {"$gte": day_start.isoformat(), "$lt": day_end.isoformat()},
            "status": "completed",
            "verified": True,
        }
        payment = await with_retries(
            "eligibility_payment", lambda: self.payments.find_one(query, {"_id": 0}), self.config
        )
        if payment:
            paid_at = _as_utc(payment.get("createdAt"))
            if paid_at is not None and paid_at > cutoff:
                logger.info(f"Payment by {user_id} made after cutoff, not eligible")
                return False
            return True

        user = await with_retries(
            "eligibility_user",
            lambda: self.users.find_one({"id": user_id}, {"_id": 0, "paidForDates": 1}),
            self.config,
        )
        day_key = quiz_date.astimezone(self.tz).date().isoformat()
        return bool(user and day_key in (user.get("paidForDates") or []))


class OpenEligibilityGate:
    """Everyone may play; for free quizzes and local development"""

    async def is_eligible(self, user_id: str, quiz_date: datetime) -> bool:
        return True
