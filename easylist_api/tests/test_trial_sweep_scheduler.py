from datetime import datetime, timezone

import pytest

from easylist_api import sweeps
from easylist_api.app.billing import TrialSweepResult


class _FakeRecoveryService:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def expire_trials(self, *, now=None):
        self.calls.append(now)
        if self.error:
            raise self.error
        return self.result


def test_run_trial_sweep_updates_metrics(monkeypatch):
    sweeps._reset_metrics_for_testing()
    run_time = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    result = TrialSweepResult(
        expired_count=3,
        expired_user_ids=["a", "b", "c"],
        subscriptions_to_review=1,
        review_user_ids=["d"],
        timestamp=run_time,
    )
    service = _FakeRecoveryService(result=result)
    monkeypatch.setattr(sweeps, "get_recovery_service", lambda: service)

    assert sweeps.run_trial_sweep(now=run_time) == result

    assert service.calls == [run_time]
    metrics = sweeps.get_trial_sweep_metrics()
    assert metrics["runs"] == 1
    assert metrics["expired_total"] == 3
    assert metrics["last_review_count"] == 1
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] is None
    assert metrics["scheduler_running"] is False


def test_failed_sweep_is_recorded_and_raised(monkeypatch):
    sweeps._reset_metrics_for_testing()
    service = _FakeRecoveryService(error=RuntimeError("database unavailable"))
    monkeypatch.setattr(sweeps, "get_recovery_service", lambda: service)

    with pytest.raises(RuntimeError):
        sweeps.run_trial_sweep(now=datetime(2025, 3, 1, tzinfo=timezone.utc))

    metrics = sweeps.get_trial_sweep_metrics()
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_success_at"] is None


def test_scheduler_start_and_shutdown():
    sweeps.start_trial_sweep_scheduler(interval_hours=24, initial_delay=3600)
    try:
        assert sweeps.get_trial_sweep_metrics()["scheduler_running"] is True
    finally:
        sweeps.shutdown_trial_sweep_scheduler()
    assert sweeps.get_trial_sweep_metrics()["scheduler_running"] is False
