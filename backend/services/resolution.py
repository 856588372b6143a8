"""
Resolution Scheduler - closes positions once their markets settle

Generic over a ``ResolutionTarget``: anything that can list its open
items (each with an ``end_date``) and check them against the exchange.
The scheduler sleeps until the earliest end date plus a buffer instead
of polling, retries past-due items that are not settled yet, and stops
itself when nothing is left open.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence

from config import settings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("resolution")


class ResolutionTarget(Protocol):
    name: str

    async def list_open(self) -> Sequence[Any]:
        """Open items; each exposes ``end_date`` (naive UTC or None)."""
        ...

    async def check(self, force_all: bool = False) -> dict:
        """Check open items; returns ``{checked, closed, skipped}``."""
        ...


def empty_check_result() -> dict:
    return {"checked": 0, "closed": 0, "skipped": 0}


def is_past_due(end_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Dateless items are treated as due so they are never stranded."""
    if end_date is None:
        return True
    return end_date <= (now or utcnow())


class ResolutionScheduler:
    def __init__(
        self,
        target: ResolutionTarget,
        end_buffer_seconds: Optional[float] = None,
        min_delay_seconds: Optional[float] = None,
        retry_seconds: Optional[float] = None,
    ):
        self.target = target
        self.end_buffer_seconds = (
            settings.RESOLVER_END_BUFFER_SECONDS if end_buffer_seconds is None else end_buffer_seconds
        )
        self.min_delay_seconds = (
            settings.RESOLVER_MIN_DELAY_SECONDS if min_delay_seconds is None else min_delay_seconds
        )
        self.retry_seconds = (
            settings.RESOLVER_RETRY_SECONDS if retry_seconds is None else retry_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self._check_lock = asyncio.Lock()
        self._next_check_at: Optional[datetime] = None
        self._last_result: Optional[dict] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_status(self) -> dict:
        return {
            "target": self.target.name,
            "is_running": self.is_running,
            "next_check_at": self._next_check_at.isoformat() if self._next_check_at else None,
            "last_result": self._last_result,
        }

    async def start(self) -> None:
        """Begin scheduling. No-op when already running."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"resolver:{self.target.name}")
        logger.info("Resolution scheduler started", target=self.target.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._next_check_at = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Resolution scheduler stopped", target=self.target.name)

    async def check_now(self, force_all: bool = False) -> dict:
        """Run one check; concurrent callers are serialized."""
        async with self._check_lock:
            result = await self.target.check(force_all=force_all)
        self._last_result = result
        return result

    async def next_delay(self) -> Optional[float]:
        """Seconds until the next check, 0 for now, None when nothing is open."""
        items = await self.target.list_open()
        if not items:
            return None
        now = utcnow()
        if any(is_past_due(item.end_date, now) for item in items):
            return 0.0
        earliest = min(item.end_date for item in items)
        return max(
            (earliest - now).total_seconds() + self.end_buffer_seconds,
            self.min_delay_seconds,
        )

    async def _has_past_due(self) -> Optional[bool]:
        items = await self.target.list_open()
        if not items:
            return None
        now = utcnow()
        return any(is_past_due(item.end_date, now) for item in items)

    async def _run(self) -> None:
        name = self.target.name
        try:
            while True:
                try:
                    delay = await self.next_delay()
                    if delay is None:
                        logger.info("Nothing open to resolve, scheduler idle", target=name)
                        break

                    if delay > 0:
                        self._next_check_at = utcnow() + timedelta(seconds=delay)
                        logger.debug("Next resolution check scheduled", target=name, delay=delay)
                        await asyncio.sleep(delay)

                    self._next_check_at = None
                    result = await self.check_now()
                    logger.info("Resolution check complete", target=name, **result)

                    past_due = await self._has_past_due()
                    if past_due is None:
                        logger.info("All items resolved, scheduler idle", target=name)
                        break
                    if past_due:
                        await asyncio.sleep(self.retry_seconds)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Resolution scheduler error", target=name, error=str(e))
                    await asyncio.sleep(self.retry_seconds)
        finally:
            self._next_check_at = None
            if self._task is asyncio.current_task():
                self._task = None
