#!/usr/bin/env python3
"""
Ingestion scheduler.

Drives ingestion cycles on a fixed interval (once at startup, then every
SCHEDULER_INTERVAL_MINUTES) and daily maintenance at a configured local time.
A tick that arrives while the previous cycle is still running is skipped;
running cycles are never cancelled by the scheduler.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("scheduler")


class ScheduleEntry:
    """A daily wall-clock time such as "02:00"."""

    def __init__(self, time_str: str):
        """Raises ValueError if the time is not HH:MM."""
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    @staticmethod
    def _parse_time(time_str: str) -> time:
        parts = time_str.split(':')
        if len(parts) != 2:
            raise ValueError(f"Time must be in HH:MM format, got: {time_str!r}")
        try:
            hour, minute = int(parts[0]), int(parts[1])
        except ValueError as e:
            raise ValueError(f"Invalid time format {time_str!r}: {e}") from e
        if not (0 <= hour <= 23):
            raise ValueError(f"Hour must be 0-23, got: {hour}")
        if not (0 <= minute <= 59):
            raise ValueError(f"Minute must be 0-59, got: {minute}")
        return time(hour=hour, minute=minute)

    def next_occurrence(self, from_time: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> datetime:
        """Next occurrence strictly after ``from_time``, returned in UTC.

        The wall-clock time is interpreted in ``tz`` (UTC by default).
        """
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate <= ref_local:
            candidate = datetime.combine(ref_local.date() + timedelta(days=1), self.time, tzinfo=tz)
        return candidate.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{name}', falling back to UTC")
        return timezone.utc


class IngestionScheduler:
    def __init__(
        self,
        run_cycle: Callable[[], Awaitable[Any]],
        maintenance: Optional[Callable[[], Awaitable[Any]]] = None,
        interval_minutes: Optional[float] = None,
        maintenance_time: Optional[str] = None,
        timezone_name: Optional[str] = None,
        run_immediately: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.run_cycle = run_cycle
        self.maintenance = maintenance
        self.interval_seconds = (interval_minutes or config.SCHEDULER_INTERVAL_MINUTES) * 60
        self.run_immediately = config.SCHEDULER_RUN_IMMEDIATELY if run_immediately is None else run_immediately
        self.timezone_name = timezone_name or config.MAINTENANCE_TIMEZONE
        self.timezone = resolve_timezone(self.timezone_name)
        self.maintenance_entry = ScheduleEntry(maintenance_time or config.MAINTENANCE_TIME) if maintenance else None
        self.sleep = sleep
        self.ticks = 0
        self.skipped_ticks = 0
        self._current: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None

    @property
    def cycle_running(self) -> bool:
        return self._current is not None and not self._current.done()

    def tick(self) -> bool:
        """Start a cycle unless one is in flight. Returns True when a cycle was started."""
        self.ticks += 1
        if self.cycle_running:
            self.skipped_ticks += 1
            logger.info("⏭️ Previous ingestion cycle still running; skipping this tick")
            return False
        self._current = asyncio.create_task(self._run_cycle_logged())
        return True

    @trace_span("scheduler.cycle", tracer_name="scheduler")
    async def _run_cycle_logged(self) -> None:
        try:
            await self.run_cycle()
        except Exception:
            # the loop must survive a failing cycle
            logger.exception("💥 Ingestion cycle raised")

    async def run_forever(self, max_ticks: Optional[int] = None) -> None:
        """Tick every interval until cancelled (or after ``max_ticks`` ticks)."""
        logger.info(
            f"🕐 Scheduler started: every {self.interval_seconds / 60:g} minutes"
            + (f", maintenance daily at {self.maintenance_entry.time_str} ({self.timezone_name})"
               if self.maintenance_entry else "")
        )
        if self.maintenance_entry:
            self._maintenance_task = asyncio.create_task(self.run_maintenance_loop())
        try:
            if self.run_immediately:
                self.tick()
            while max_ticks is None or self.ticks < max_ticks:
                await self.sleep(self.interval_seconds)
                self.tick()
        finally:
            await self.stop()

    async def run_maintenance_loop(self) -> None:
        while True:
            next_time = self.maintenance_entry.next_occurrence(tz=self.timezone)
            wait = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds())
            logger.info(f"😴 Next maintenance at {next_time.isoformat()} ({wait / 3600:.1f}h)")
            await self.sleep(wait)
            await self.run_maintenance_once()

    @trace_span("scheduler.maintenance", tracer_name="scheduler")
    async def run_maintenance_once(self) -> None:
        try:
            await self.maintenance()
        except Exception:
            logger.exception("💥 Maintenance run failed")

    async def stop(self) -> None:
        """Stop maintenance and wait for an in-flight cycle to finish."""
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        if self.cycle_running:
            logger.info("Waiting for the running ingestion cycle to finish")
            await asyncio.shield(self._current)

    def get_schedule_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        next_maintenance = self.maintenance_entry.next_occurrence(now, self.timezone) if self.maintenance_entry else None
        return {
            'current_time': now.isoformat(),
            'interval_minutes': self.interval_seconds / 60,
            'cycle_running': self.cycle_running,
            'ticks': self.ticks,
            'skipped_ticks': self.skipped_ticks,
            'maintenance_time': self.maintenance_entry.time_str if self.maintenance_entry else None,
            'next_maintenance': next_maintenance.isoformat() if next_maintenance else None,
            'timezone': self.timezone_name,
        }
