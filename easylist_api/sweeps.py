"""Scheduler integration for the trial expiration sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from .app.billing import TrialSweepResult
from .app.services.billing import get_recovery_service

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "expired_total": 0,
    "last_expired_count": 0,
    "last_review_count": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, result: TrialSweepResult) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["expired_total"] = int(_SWEEP_METRICS.get("expired_total", 0)) + result.expired_count
        _SWEEP_METRICS["last_expired_count"] = result.expired_count
        _SWEEP_METRICS["last_review_count"] = result.subscriptions_to_review
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_trial_sweep(*, now: Optional[datetime] = None) -> TrialSweepResult:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        result = get_recovery_service().expire_trials(now=current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Trial sweep failed")
        raise
    _record_run_success(current_time, result)
    logger.info(
        "Trial sweep completed",
        extra={
            "expired_count": result.expired_count,
            "subscriptions_to_review": result.subscriptions_to_review,
        },
    )
    return result


class _SweepWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="trial-sweep")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_trial_sweep()
            except Exception:
                # Already logged and counted; keep the schedule.
                logger.debug("Trial sweep run failed, waiting for the next interval")
            if self._stop_event.wait(self._interval):
                break


def start_trial_sweep_scheduler(*, interval_hours: int, initial_delay: float = 60.0) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        _worker = _SweepWorker(initial_delay=initial_delay, interval=interval_hours * 60 * 60)
        _worker.start()
        logger.info(
            "Trial sweep scheduler started",
            extra={"interval_hours": interval_hours, "initial_delay_seconds": initial_delay},
        )


def shutdown_trial_sweep_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Trial sweep scheduler stopped")


def get_trial_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "scheduler_running": _worker is not None,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": _SWEEP_METRICS["last_success_at"].isoformat()
            if _SWEEP_METRICS.get("last_success_at")
            else None,
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "expired_total": 0,
                "last_expired_count": 0,
                "last_review_count": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_trial_sweep_metrics",
    "run_trial_sweep",
    "shutdown_trial_sweep_scheduler",
    "start_trial_sweep_scheduler",
]
