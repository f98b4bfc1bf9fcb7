from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from zentik_auth.logging import get_logger

logger = get_logger(__name__)


def seconds_until_next_run(
    now: datetime,
    *,
    hour: int,
    offset_minutes: int,
    jitter_seconds: float = 0.0,
) -> float:
    """Seconds from ``now`` until the next daily ``hour:offset`` slot, plus jitter."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0) + timedelta(
        minutes=offset_minutes
    )
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds() + max(jitter_seconds, 0.0)


class SessionSweeper:
    """Daily purge of sessions inactive for longer than the retention period."""

    def __init__(
        self,
        sessions,
        *,
        retention_days: int = 14,
        hour: int = 3,
        offset_minutes: int = 15,
        jitter_seconds: int = 300,
    ) -> None:
        self.sessions = sessions
        self.retention = timedelta(days=retention_days)
        self.hour = hour
        self.offset_minutes = offset_minutes
        self.jitter_seconds = jitter_seconds

    def run_once(self) -> int:
        deleted = self.sessions.delete_inactive_sessions(self.retention)
        logger.info(
            "inactive_sessions_swept",
            deleted=deleted,
            retention_days=self.retention.days,
        )
        return deleted

    def next_delay(self, now: Optional[datetime] = None) -> float:
        jitter = random.uniform(0, self.jitter_seconds) if self.jitter_seconds else 0.0
        return seconds_until_next_run(
            now or datetime.now(timezone.utc),
            hour=self.hour,
            offset_minutes=self.offset_minutes,
            jitter_seconds=jitter,
        )

    async def run_forever(self) -> None:
        """Background loop; cancellation ends it cleanly."""
        try:
            while True:
                delay = self.next_delay()
                logger.debug("session_sweep_scheduled", in_seconds=int(delay))
                await asyncio.sleep(delay)
                try:
                    await asyncio.to_thread(self.run_once)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("session_sweep_failed", error=str(exc))
        except asyncio.CancelledError:
            logger.info("session_sweep_task_cancelled")


__all__ = ["SessionSweeper", "seconds_until_next_run"]
