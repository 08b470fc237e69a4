"""
Tests for resumable backfill runs.
"""

import json
import threading

import pytest

from leadenrich.backfill import COMPLETED, FAILED, PAUSED, BackfillRunner, BackfillRunStore
from leadenrich.errors import (
    ProviderAuthError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderTransientError,
    RunLockedError,
    RunNotFoundError,
)
from leadenrich.metrics import get_metrics
from leadenrich.retry import BackoffPolicy


def make_records(n=5):
    return [{"subject_id": f"lead-{i}", "street": f"{100 + i} Main St", "zip": "60601"} for i in range(n)]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_runner(make_orchestrator, session_factory, clock, sleeps, tmp_path):
    def _make(provider, **kwargs):
        kwargs.setdefault("concurrency", 1)
        kwargs.setdefault("retry_budget", 25)
        kwargs.setdefault("max_subject_attempts", 3)
        return BackfillRunner(
            make_orchestrator(provider),
            session_factory,
            backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0, jitter=False),
            sleep=sleeps.append,
            report_dir=tmp_path / "reports",
            clock=clock,
            **kwargs,
        )

    return _make


class TestRunCompletion:
    """Test a run from start to finish."""

    def test_run_completes_and_reports(self, make_runner, provider, session_factory, tmp_path):
        """Every subject is processed once and a report is written."""
        report = make_runner(provider, concurrency=2).run("run-1", make_records(5))

        assert report.status == COMPLETED
        assert report.processed == 5
        assert report.provider_calls == 5
        assert report.cache_hits == 0
        assert report.total_cost == "1.25"
        assert report.cost_by_provider == {"fake": "1.25"}
        assert provider.call_count == 5

        status = BackfillRunStore(session_factory).get_status("run-1")
        assert status["status"] == COMPLETED
        assert status["processedCount"] == 5
        assert status["cursor"] == 5

        written = json.loads((tmp_path / "reports" / "run-1.json").read_text())
        assert written["run_id"] == "run-1"
        assert written["processed"] == 5

    def test_completed_run_returns_stored_report(self, make_runner, provider):
        """Re-running a completed run does no provider calls."""
        records = make_records(3)
        first = make_runner(provider).run("run-1", records)
        again = make_runner(provider).run("run-1", records)
        assert provider.call_count == 3
        assert again.to_dict() == first.to_dict()

    def test_second_run_served_from_cache(self, make_runner, provider):
        """A new run over already-enriched subjects costs nothing."""
        records = make_records(4)
        make_runner(provider).run("run-1", records)
        report = make_runner(provider).run("run-2", records)

        assert provider.call_count == 4
        assert report.cache_hits == 4
        assert report.provider_calls == 0
        assert report.cache_hit_ratio == 1.0
        assert report.total_cost == "0.00"

    def test_not_found_counts_as_processed(self, make_runner, make_provider):
        """A provider no-match is a processed subject, not a failure."""
        provider = make_provider(script={"lead-1": [ProviderNotFoundError("no match")]})
        report = make_runner(provider).run("run-1", make_records(3))
        assert report.status == COMPLETED
        assert report.processed == 3
        assert report.not_found == 1
        assert report.given_up == []

    def test_run_metric_recorded(self, make_runner, provider):
        """Terminal statuses are counted."""
        make_runner(provider).run("run-1", make_records(2))
        assert get_metrics().value("backfill_runs_total", {"status": COMPLETED}) == 1


class TestStopAndResume:
    """Test cost-safe interruption."""

    def test_stop_pauses_after_in_flight_chunk(self, make_runner, make_provider, session_factory):
        """A stop signal lets the current subject finish, then pauses."""
        stop = threading.Event()
        provider = make_provider(on_call=lambda r: stop.set() if r.subject_id == "lead-1" else None)
        report = make_runner(provider).run("run-1", make_records(5), stop_event=stop)

        assert report.status == PAUSED
        assert report.processed == 2
        store = BackfillRunStore(session_factory)
        assert store.get_status("run-1")["status"] == PAUSED
        assert store.processed_ids("run-1") == {"lead-0", "lead-1"}

    def test_resume_processes_only_remaining(self, make_runner, make_provider, session_factory, clock):
        """Resuming never re-submits a processed subject, even once its cached result is stale."""
        stop = threading.Event()
        provider = make_provider(on_call=lambda r: stop.set() if r.subject_id == "lead-2" else None)
        records = make_records(6)
        make_runner(provider).run("run-1", records, stop_event=stop)
        store = BackfillRunStore(session_factory)
        before = store.processed_ids("run-1")
        assert before == {"lead-0", "lead-1", "lead-2"}

        # Past the one-hour cache TTL: only the processed log can prevent a second call
        clock.advance(hours=2)
        report = make_runner(provider).run("run-1", records)

        assert report.status == COMPLETED
        assert report.processed == 6
        after = store.processed_ids("run-1")
        assert before <= after
        for i in range(6):
            assert provider.calls_for(f"lead-{i}") == 1

    def test_runner_stop_method(self, make_runner, make_provider):
        """stop() on the runner works like an external event."""
        holder = {}
        provider = make_provider(on_call=lambda r: holder["runner"].stop() if r.subject_id == "lead-0" else None)
        runner = make_runner(provider)
        holder["runner"] = runner
        report = runner.run("run-1", make_records(3))
        assert report.status == PAUSED
        assert report.processed == 1


class TestRetryPolicy:
    """Test retry budget and per-subject attempts."""

    def test_transient_failure_retried_with_backoff(self, make_runner, make_provider, sleeps):
        """A subject that fails twice succeeds on its third attempt."""
        provider = make_provider(
            script={"lead-2": [ProviderTransientError("timeout"), ProviderTransientError("timeout")]}
        )
        report = make_runner(provider).run("run-1", make_records(4))

        assert report.status == COMPLETED
        assert report.processed == 4
        assert report.retry_budget_remaining == 23
        assert provider.calls_for("lead-2") == 3
        assert sleeps == [1.0, 2.0]
        assert report.top_error_classes == [{"error_class": "ProviderTransientError", "count": 2}]

    def test_rate_limit_honours_retry_after(self, make_runner, make_provider, sleeps):
        """Retry-After stretches the backoff delay."""
        provider = make_provider(script={"lead-0": [ProviderRateLimitError("slow down", retry_after=7.0)]})
        report = make_runner(provider).run("run-1", make_records(2))
        assert report.status == COMPLETED
        assert sleeps == [7.0]

    def test_subject_given_up_after_max_attempts(self, make_runner, make_provider):
        """A subject that keeps failing is recorded and the run still completes."""
        provider = make_provider(script={"lead-1": [ProviderTransientError("down")] * 3})
        report = make_runner(provider, max_subject_attempts=3).run("run-1", make_records(3))

        assert report.status == COMPLETED
        assert report.given_up == ["lead-1"]
        assert report.processed == 2
        assert provider.calls_for("lead-1") == 3

    def test_budget_exhaustion_fails_run(self, make_runner, make_provider, session_factory):
        """The run stops as soon as the retry budget reaches zero."""
        provider = make_provider(
            script={
                "lead-0": [ProviderTransientError("down")] * 5,
                "lead-1": [ProviderTransientError("down")] * 5,
            }
        )
        report = make_runner(provider, retry_budget=2).run("run-1", make_records(5))

        assert report.status == FAILED
        assert report.retry_budget_remaining == 0
        assert report.last_error_class == "ProviderTransientError"
        assert provider.call_count == 2
        status = BackfillRunStore(session_factory).get_status("run-1")
        assert status["status"] == FAILED
        assert status["lastErrorClass"] == "ProviderTransientError"

    def test_auth_error_fails_run_immediately(self, make_runner, make_provider, session_factory):
        """Credential errors stop the run without retrying."""
        provider = make_provider(script={"lead-1": [ProviderAuthError("bad key")]})
        report = make_runner(provider).run("run-1", make_records(5))

        assert report.status == FAILED
        assert report.last_error_class == "ProviderAuthError"
        assert provider.call_count == 2
        assert BackfillRunStore(session_factory).get_status("run-1")["lastErrorClass"] == "ProviderAuthError"

    def test_invalid_record_fails_run(self, make_runner, provider):
        """A record without an address stops the run."""
        records = make_records(2) + [{"subject_id": "lead-x", "first_name": "Ana"}]
        report = make_runner(provider).run("run-1", records)
        assert report.status == FAILED
        assert report.last_error_class == "InvalidInputError"
        assert report.processed == 2

    def test_failed_run_resumes_with_reset_budget(self, make_runner, make_provider):
        """An operator can resume a failed run with a fresh budget."""
        provider = make_provider(script={"lead-0": [ProviderTransientError("down")]})
        records = make_records(3)
        failed = make_runner(provider, retry_budget=1).run("run-1", records)
        assert failed.status == FAILED

        report = make_runner(provider, retry_budget=5).run("run-1", records, reset_budget=True)
        assert report.status == COMPLETED
        assert report.processed == 3
        assert provider.calls_for("lead-0") == 2

    def test_unexpected_error_marks_run_failed(self, make_runner, make_provider, session_factory):
        """Non-domain errors fail the run and propagate."""
        provider = make_provider(script={"lead-1": [RuntimeError("disk full")]})
        with pytest.raises(RuntimeError):
            make_runner(provider).run("run-1", make_records(3))
        status = BackfillRunStore(session_factory).get_status("run-1")
        assert status["status"] == FAILED
        assert status["lastErrorClass"] == "RuntimeError"
        assert status["processedCount"] == 1


class TestRunLock:
    """Test one-runner-per-run enforcement."""

    def test_live_lock_blocks_second_runner(self, make_runner, provider, session_factory, clock):
        """A run held by another owner cannot be started."""
        store = BackfillRunStore(session_factory, clock=clock)
        store.get_or_create("run-1", 3, 25)
        store.acquire_lock("run-1", "other-host", lease_seconds=60)

        with pytest.raises(RunLockedError):
            make_runner(provider).run("run-1", make_records(3))
        assert provider.call_count == 0
        assert store.get_status("run-1")["status"] == "created"

    def test_expired_lock_taken_over(self, make_runner, provider, session_factory, clock):
        """A lease left behind by a killed process expires."""
        store = BackfillRunStore(session_factory, clock=clock)
        store.get_or_create("run-1", 3, 25)
        store.acquire_lock("run-1", "dead-host", lease_seconds=60)
        clock.advance(seconds=61)

        report = make_runner(provider).run("run-1", make_records(3))
        assert report.status == COMPLETED

    def test_lock_released_after_run(self, make_runner, provider, session_factory, clock):
        """A finished run leaves no lock behind."""
        make_runner(provider).run("run-1", make_records(2))
        store = BackfillRunStore(session_factory, clock=clock)
        store.acquire_lock("run-1", "someone-else")

    def test_unknown_run_status(self, session_factory):
        """Querying an unknown run raises RunNotFoundError."""
        with pytest.raises(RunNotFoundError):
            BackfillRunStore(session_factory).get_status("nope")
