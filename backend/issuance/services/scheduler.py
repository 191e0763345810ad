from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import text

from issuance.config import settings
from issuance.database import SessionLocal
from issuance.services.installment_scheduler import mark_overdue_installments
from issuance.services.proposal_transitions import expire_stale_proposals

logger = logging.getLogger("issuance.scheduler")

SWEEP_LOCK_KEY = 731001  # stable key for the daily sweep


@dataclass(frozen=True)
class SweepResult:
    as_of: date
    expired_proposals: int
    overdue_installments: int
    skipped: bool = False


def _try_pg_advisory_lock(db, key: int) -> bool:
    """
    Best-effort distributed lock for Postgres. On other DBs, returns True (no-op).
    """
    if db.get_bind().dialect.name != "postgresql":
        return True
    locked = db.execute(text("SELECT pg_try_advisory_lock(:k)"), {"k": int(key)}).scalar()
    return bool(locked)


def _unlock_pg_advisory_lock(db, key: int) -> None:
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": int(key)})


def run_daily_sweep(today: date | None = None, session_factory=SessionLocal) -> SweepResult:
    """Expire stale proposals and flag overdue installments in one transaction."""

    today = today or datetime.now(timezone.utc).date()
    db = session_factory()
    try:
        if not _try_pg_advisory_lock(db, SWEEP_LOCK_KEY):
            logger.info("daily_sweep_skipped_locked", extra={"as_of": today.isoformat()})
            return SweepResult(as_of=today, expired_proposals=0, overdue_installments=0, skipped=True)
        try:
            expired = expire_stale_proposals(db, today=today)
            overdue = mark_overdue_installments(db, today=today)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            _unlock_pg_advisory_lock(db, SWEEP_LOCK_KEY)
        return SweepResult(as_of=today, expired_proposals=expired, overdue_installments=overdue)
    finally:
        db.close()


class DailyJobRunner:
    """
    Minimal dependency-free daily scheduler.
    NOTE: In multi-worker setups, each worker will start this thread.
    We mitigate duplicates via a Postgres advisory lock.
    """

    def __init__(self, hour_utc: int | None = None) -> None:
        self.hour_utc = int(settings.scheduler_utc_hour if hour_utc is None else hour_utc)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="daily-job-runner", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def next_run(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour_utc, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate = candidate + timedelta(days=1)
        return candidate

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = datetime.now(timezone.utc)
            next_run = self.next_run(now)
            wait_s = max(0.0, (next_run - now).total_seconds())
            logger.info(
                "scheduler_wait",
                extra={"next_run_utc": next_run.isoformat(), "wait_seconds": int(wait_s)},
            )
            if self._stop.wait(wait_s):
                break

            try:
                res = run_daily_sweep()
                logger.info(
                    "daily_sweep_ok",
                    extra={
                        "as_of": res.as_of.isoformat(),
                        "expired_proposals": res.expired_proposals,
                        "overdue_installments": res.overdue_installments,
                        "skipped": res.skipped,
                    },
                )
            except Exception as exc:
                logger.exception("daily_sweep_failed", extra={"error": str(exc)})


# Singleton runner for FastAPI lifecycle
runner = DailyJobRunner()
