"""
Per-sender message rate limiting backed by the database.

Each sender gets one counter row per minute bucket. A message is admitted
when the sum of the current and the previous bucket stays within the
configured ceiling. Runs inside the caller's transaction, so it shares the
conversation turn's atomicity.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db import dialect_insert
from ..models import RateLimitWindow
from ..utils.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minute_bucket(moment: datetime) -> datetime:
    """Truncate a timestamp to the start of its minute."""
    return moment.replace(second=0, microsecond=0)


class RateLimiter:
    """
    Sliding-window limiter over one-minute buckets.

    Args:
        max_per_minute: Ceiling for the trailing window; defaults to
            ``settings.rate_limit_wa_messages_per_min``.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, max_per_minute: Optional[int] = None, clock: Optional[Clock] = None) -> None:
        self.max_per_minute = (
            max_per_minute if max_per_minute is not None else settings.rate_limit_wa_messages_per_min
        )
        self.clock = clock or _utc_now

    async def admit(self, session: AsyncSession, phone: str) -> bool:
        """
        Record one message for ``phone`` and report whether it is allowed.

        The message is counted even when it is rejected.
        """
        now = self.clock()
        window_start = minute_bucket(now)

        upsert = dialect_insert(session, RateLimitWindow).values(
            whatsapp_phone=phone,
            window_start=window_start,
            message_count=1,
            updated_at=now,
        )
        upsert = upsert.on_conflict_do_update(
            index_elements=[RateLimitWindow.whatsapp_phone, RateLimitWindow.window_start],
            set_={
                "message_count": RateLimitWindow.message_count + 1,
                "updated_at": now,
            },
        )
        await session.execute(upsert)

        total = await session.scalar(
            select(func.coalesce(func.sum(RateLimitWindow.message_count), 0)).where(
                RateLimitWindow.whatsapp_phone == phone,
                RateLimitWindow.window_start >= window_start - timedelta(minutes=1),
            )
        )
        allowed = int(total or 0) <= self.max_per_minute

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"messages_in_window": int(total or 0), "limit": self.max_per_minute},
            )
        return allowed
