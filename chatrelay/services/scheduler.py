"""
chatrelay: In-process janitor scheduler.

One asyncio task per job. Interval jobs sleep a fixed period between runs;
daily jobs sleep until the next ``hour:00`` UTC. A run never outlives its
time budget by more than one page, and a failed run is logged and retried
on the next tick.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from chatrelay.services.container import Services
from chatrelay.services.deadline import Deadline

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE

JanitorJob = Callable[[Deadline], Awaitable[dict]]


@dataclass
class Job:
    name: str
    run: JanitorJob
    every_secs: Optional[int] = None
    daily_at_hour: Optional[int] = None


def seconds_until_hour(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` to the next ``hour:00`` UTC (always > 0)."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def default_jobs(services: Services, stale_token_hour: int = 3) -> list[Job]:
    j = services.janitors
    return [
        Job("disappearing_messages", j.sweep_disappearing_messages, every_secs=5 * MINUTE),
        Job("expired_stories", j.sweep_expired_stories, every_secs=HOUR),
        Job("stale_calls", j.sweep_stale_calls, every_secs=15 * MINUTE),
        Job("stale_presence", j.sweep_stale_presence, every_secs=HOUR),
        Job("typing_indicators", j.sweep_typing_indicators, every_secs=MINUTE),
        Job("scheduled_notifications", services.scheduled.send_due, every_secs=MINUTE),
        Job("stale_tokens", j.sweep_stale_tokens, daily_at_hour=stale_token_hour),
        Job("notification_logs", j.sweep_notification_logs, daily_at_hour=(stale_token_hour + 1) % 24),
    ]


async def run_janitor(name: str, job: JanitorJob, budget_secs: float) -> dict:
    """Run one job under a fresh deadline and record it. Never raises."""
    from chatrelay.routes.activity import log_activity

    deadline = Deadline(budget_secs)
    started = time.monotonic()
    try:
        summary = await job(deadline)
    except Exception as e:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.error("Janitor %s failed after %dms: %s", name, elapsed_ms, e, exc_info=True)
        await log_activity(
            "janitor", name, "swept", str(e), outcome="failure",
            metadata={"durationMs": elapsed_ms},
        )
        return {"status": "error", "reason": str(e)}

    elapsed_ms = int((time.monotonic() - started) * 1000)
    outcome = "partial" if deadline.expired() else "success"
    logger.info("🧹 Janitor %s done in %dms: %s", name, elapsed_ms, summary)
    # Idle minute-level sweeps would flood the audit trail
    if any(v for v in summary.values() if isinstance(v, int)) or outcome != "success":
        await log_activity(
            "janitor", name, "swept", f"{name} finished in {elapsed_ms}ms",
            outcome=outcome, metadata={**summary, "durationMs": elapsed_ms},
        )
    return {"status": outcome, **summary}


class JanitorScheduler:
    def __init__(self, jobs: list[Job], budget_secs: float = 240.0):
        self.jobs = jobs
        self.budget_secs = budget_secs
        self._tasks: dict[str, asyncio.Task] = {}
        self._runs: dict[str, int] = {}
        self._running = False

    @property
    def stats(self) -> dict:
        return {"running": self._running, "runs": dict(self._runs)}

    def start(self) -> None:
        if self._running:
            logger.warning("Janitor scheduler already running")
            return
        self._running = True
        for job in self.jobs:
            self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"janitor:{job.name}")
        logger.info("🚀 Janitor scheduler started (%d jobs)", len(self.jobs))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Janitor scheduler stopped")

    def _delay(self, job: Job) -> float:
        if job.daily_at_hour is not None:
            return seconds_until_hour(job.daily_at_hour)
        return float(HOUR if job.every_secs is None else job.every_secs)

    async def _loop(self, job: Job) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._delay(job))
                await run_janitor(job.name, job.run, self.budget_secs)
                self._runs[job.name] = self._runs.get(job.name, 0) + 1
            except asyncio.CancelledError:
                break
