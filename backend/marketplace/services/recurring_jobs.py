from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.core.dependencies import SessionLocal
from marketplace.models.marketplace import RecurringJobRun
from marketplace.services.collaborators import EngineerCounters, HttpEngineerCounters
from marketplace.services.expiry_sweeper import run_expiry_sweep
from marketplace.services.notifications import OutboxNotificationPort, process_notification_outbox_once
from marketplace.utils.clock import now_utc

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB = "expiry_sweep"
COUNTER_RESET_JOB = "engineer_counter_reset"


def daily_period(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def monthly_period(now: datetime) -> str:
    return now.strftime("%Y-%m")


def claim_period(db: Session, job_key: str, period_key: str) -> bool:
    """
    Claim ``period_key`` for ``job_key`` exactly once across workers.
    Conditional update of the existing row; insert when the job has never run.
    The caller commits.
    """
    now = now_utc(db)
    result = db.execute(
        update(RecurringJobRun)
        .where(
            RecurringJobRun.job_key == job_key,
            RecurringJobRun.period_key != period_key,
        )
        .values(period_key=period_key, last_started_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True
    if db.get(RecurringJobRun, job_key) is not None:
        return False
    db.add(RecurringJobRun(job_key=job_key, period_key=period_key, last_started_at=now))
    try:
        db.flush()
    except IntegrityError:
        # Another worker inserted the row first and owns this period.
        db.rollback()
        return False
    return True


def release_period(db: Session, job_key: str, period_key: str) -> None:
    db.execute(
        update(RecurringJobRun)
        .where(RecurringJobRun.job_key == job_key, RecurringJobRun.period_key == period_key)
        .values(period_key="")
        .execution_options(synchronize_session=False)
    )


def record_run_result(db: Session, job_key: str, result: dict[str, Any]) -> None:
    db.execute(
        update(RecurringJobRun)
        .where(RecurringJobRun.job_key == job_key)
        .values(last_finished_at=now_utc(db), last_result=result)
        .execution_options(synchronize_session=False)
    )


def run_claimed_job(
    session_factory: Callable[[], Session],
    job_key: str,
    period_key: str,
    job: Callable[[], dict[str, Any]],
) -> Optional[dict[str, Any]]:
    """Run ``job`` if this worker wins the claim for ``period_key``; None when another worker already ran it."""
    db = session_factory()
    try:
        claimed = claim_period(db, job_key, period_key)
        db.commit()
        if not claimed:
            return None
        try:
            result = job()
        except Exception:
            db.rollback()
            release_period(db, job_key, period_key)
            db.commit()
            raise
        record_run_result(db, job_key, result)
        db.commit()
        return result
    finally:
        db.close()


def run_daily_expiry_sweep(session_factory: Callable[[], Session], *, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    period = daily_period(now or now_utc())
    notifier = OutboxNotificationPort(session_factory)
    return run_claimed_job(
        session_factory,
        EXPIRY_SWEEP_JOB,
        period,
        lambda: run_expiry_sweep(session_factory, notifier=notifier).as_dict(),
    )


def run_monthly_counter_reset(
    session_factory: Callable[[], Session],
    counters: EngineerCounters,
    *,
    now: Optional[datetime] = None,
) -> Optional[dict[str, Any]]:
    period = monthly_period(now or now_utc())
    return run_claimed_job(
        session_factory,
        COUNTER_RESET_JOB,
        period,
        lambda: {"reset": int(counters.reset_monthly_counters())},
    )


async def _expiry_sweep_loop(*, interval_seconds: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            result = await asyncio.to_thread(run_daily_expiry_sweep, SessionLocal)
            if result is not None:
                logger.info("Daily expiry sweep finished: %s", result)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Expiry sweep worker error")
            await asyncio.sleep(error_sleep)


def start_expiry_sweep_worker() -> asyncio.Task | None:
    """
    Starts the in-process sweep loop. The loop wakes at least hourly; the daily
    period claim makes extra wake-ups (and extra workers) no-ops.
    """
    settings = get_settings()
    interval = int(getattr(settings, "expiry_sweep_interval_seconds", 86400) or 86400)
    interval = int(max(60, min(3600, interval)))
    return asyncio.create_task(_expiry_sweep_loop(interval_seconds=interval))


async def _counter_reset_loop(*, interval_seconds: int, counters: EngineerCounters) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue
            if not settings.engineer_service_url:
                await asyncio.sleep(interval_seconds)
                continue

            result = await asyncio.to_thread(run_monthly_counter_reset, SessionLocal, counters)
            if result is not None:
                logger.info("Monthly engineer counter reset finished: %s", result)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Engineer counter reset worker error")
            await asyncio.sleep(error_sleep)


def start_counter_reset_worker(counters: Optional[EngineerCounters] = None) -> asyncio.Task | None:
    return asyncio.create_task(
        _counter_reset_loop(interval_seconds=3600, counters=counters or HttpEngineerCounters())
    )


def _process_outbox(session_factory: Callable[[], Session], *, batch_size: int, max_attempts: int) -> int:
    db = session_factory()
    try:
        sent = process_notification_outbox_once(db, batch_size=batch_size, max_attempts=max_attempts)
        db.commit()
        return sent
    finally:
        db.close()


async def _notification_outbox_loop(*, interval_seconds: int, batch_size: int, max_attempts: int) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs:
                await asyncio.sleep(interval_seconds)
                continue
            if not getattr(settings, "enable_notification_outbox", True):
                await asyncio.sleep(interval_seconds)
                continue
            if SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            await asyncio.to_thread(
                _process_outbox,
                SessionLocal,
                batch_size=batch_size,
                max_attempts=max_attempts,
            )
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Notification outbox worker error")
            await asyncio.sleep(error_sleep)


def start_notification_outbox_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(5, min(300, int(getattr(settings, "notification_worker_interval_seconds", 30) or 30))))
    batch_size = int(max(1, min(200, int(getattr(settings, "notification_worker_batch_size", 50) or 50))))
    max_attempts = int(max(1, min(20, int(getattr(settings, "notification_worker_max_attempts", 5) or 5))))
    return asyncio.create_task(
        _notification_outbox_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
    )
