import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from redis.exceptions import RedisError

from bondmate.core.config import settings
from bondmate.db.session import SessionLocal
from bondmate.services import sweep
from bondmate.utils.concurrency import AdvisoryLock

log = logging.getLogger("scheduler")


@dataclass
class SweepJob:
    name: str
    func: Callable[..., Awaitable[Any]]
    interval_minutes: int


JOBS = [
    SweepJob("expire_stale_requests", sweep.expire_stale_requests, settings.SWEEP_EXPIRE_REQUESTS_INTERVAL_MINUTES),
    SweepJob("archive_ex_partners", sweep.archive_ex_partners, settings.SWEEP_ARCHIVE_INTERVAL_MINUTES),
    SweepJob("purge_audit_logs", sweep.purge_audit_logs, settings.SWEEP_AUDIT_PURGE_INTERVAL_MINUTES),
    SweepJob("health_heartbeat", sweep.health_heartbeat, settings.SWEEP_HEARTBEAT_INTERVAL_MINUTES),
]

_scheduler_tasks: list[asyncio.Task] = []


async def _execute(job: SweepJob, now: datetime | None):
    async with SessionLocal() as db:
        try:
            result = await job.func(db, now=now)
            log.info(f"[SCHEDULER] {job.name} complete: {result}")
            return result
        except Exception as e:
            log.exception(f"[SCHEDULER] {job.name} failed: {e}")
            return {"error": str(e)}


async def run_job_once(job: SweepJob, now: datetime | None = None):
    """Run ``job`` under its lease; returns ``None`` when another worker holds it."""
    lease = AdvisoryLock(f"sweep:{job.name}", timeout=settings.SWEEP_LEASE_SECONDS)
    try:
        acquired = await lease.acquire()
    except RedisError as e:
        # every job is idempotent, so running unguarded is safe
        log.warning(f"[SCHEDULER] Lease store unavailable ({e}), running {job.name} without a lease")
        return await _execute(job, now)

    if not acquired:
        log.info(f"[SCHEDULER] {job.name} skipped, lease held by another worker")
        return None

    try:
        return await _execute(job, now)
    finally:
        await lease.release()


async def _job_loop(job: SweepJob):
    interval_seconds = job.interval_minutes * 60
    log.info(f"[SCHEDULER] Starting {job.name}: interval={job.interval_minutes}m")

    await asyncio.sleep(settings.SWEEP_STARTUP_DELAY_SECONDS)

    while True:
        try:
            log.debug(f"[SCHEDULER] Running {job.name} at {datetime.now(timezone.utc).isoformat()}")
            await run_job_once(job)
        except asyncio.CancelledError:
            log.info(f"[SCHEDULER] {job.name} cancelled, shutting down")
            raise
        except Exception as e:
            log.exception(f"[SCHEDULER] Unexpected error in {job.name}: {e}")

        await asyncio.sleep(interval_seconds)


def start_scheduler():
    if not settings.SWEEP_ENABLED:
        log.info("[SCHEDULER] Sweeps are disabled (SWEEP_ENABLED=false)")
        return

    if _scheduler_tasks:
        log.warning("[SCHEDULER] Scheduler already running")
        return

    for job in JOBS:
        _scheduler_tasks.append(asyncio.create_task(_job_loop(job), name=f"sweep:{job.name}"))
    log.info(f"[SCHEDULER] Started {len(JOBS)} sweep jobs")


def stop_scheduler():
    if not _scheduler_tasks:
        return
    for task in _scheduler_tasks:
        task.cancel()
    _scheduler_tasks.clear()
    log.info("[SCHEDULER] Sweep jobs stopped")
