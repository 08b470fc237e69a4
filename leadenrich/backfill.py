"""
Resumable backfill runs.

A run drives the orchestrator over an ordered batch of subject records. Its
state (cursor, per-subject failure counts, retry budget, stats) lives in the
backfill_runs row and every processed subject is appended to
backfill_processed, so a killed process can resume the same run_id without
re-submitting anything already processed.

Only the thread that owns the run writes run state. Worker threads only call
the orchestrator and hand their outcomes back.
"""

import threading
import uuid
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import BackfillProcessed, BackfillRun, RunLock, session_scope
from .errors import (
    LeadEnrichError,
    ProviderRateLimitError,
    RunLockedError,
    RunNotFoundError,
    error_class_of,
)
from .logger import get_logger
from .metrics import get_metrics
from .orchestrator import SOURCE_CACHE, EnrichmentOrchestrator, EnrichmentResult
from .providers.base import EnrichmentRequest
from .retry import BackoffPolicy
from .storage import write_report

CREATED = "created"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"

LOCK_LEASE_SECONDS = 600
TOP_ERROR_CLASSES = 5


@dataclass
class BackfillReport:
    run_id: str
    status: str
    total_subjects: int = 0
    processed: int = 0
    given_up: List[str] = field(default_factory=list)
    provider_calls: int = 0
    cache_hits: int = 0
    not_found: int = 0
    cache_hit_ratio: float = 0.0
    cost_by_provider: Dict[str, str] = field(default_factory=dict)
    total_cost: str = "0.00"
    top_error_classes: List[Dict[str, Any]] = field(default_factory=list)
    retry_budget: int = 0
    retry_budget_remaining: int = 0
    last_error_class: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackfillReport":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _empty_stats() -> Dict[str, Any]:
    return {"provider_calls": 0, "cache_hits": 0, "not_found": 0, "cost_by_provider": {}, "error_classes": {}}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class BackfillRunStore:
    """Run-state persistence plus the per-run lock."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.clock = clock

    def get(self, run_id: str) -> Optional[BackfillRun]:
        with session_scope(self.session_factory) as session:
            return session.get(BackfillRun, run_id)

    def get_or_create(self, run_id: str, total_subjects: int, retry_budget: int) -> BackfillRun:
        now = self.clock()
        try:
            with session_scope(self.session_factory) as session:
                run = session.get(BackfillRun, run_id)
                if run is None:
                    run = BackfillRun(
                        run_id=run_id,
                        status=CREATED,
                        cursor=0,
                        total_subjects=total_subjects,
                        retry_budget=retry_budget,
                        retry_budget_remaining=retry_budget,
                        subject_failures={},
                        given_up=[],
                        stats=_empty_stats(),
                        started_at=now,
                        updated_at=now,
                    )
                    session.add(run)
                elif run.total_subjects != total_subjects:
                    run.total_subjects = total_subjects
                    run.updated_at = now
                return run
        except IntegrityError:
            # Created concurrently by another process
            return self.get(run_id)

    def update(self, run_id: str, **values) -> None:
        with session_scope(self.session_factory) as session:
            run = session.get(BackfillRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Backfill run {run_id} not found")
            for name, value in values.items():
                setattr(run, name, value)
            run.updated_at = self.clock()

    def checkpoint(self, run_id: str, processed: Sequence[Tuple[str, str, bool]], **values) -> None:
        """Append processed subjects and update run state in one transaction."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            for subject_id, source, found in processed:
                session.add(
                    BackfillProcessed(
                        run_id=run_id, subject_id=subject_id, source=source, found=found, processed_at=now
                    )
                )
            run = session.get(BackfillRun, run_id)
            for name, value in values.items():
                setattr(run, name, value)
            run.updated_at = now

    def processed_ids(self, run_id: str) -> Set[str]:
        with session_scope(self.session_factory) as session:
            rows = session.query(BackfillProcessed.subject_id).filter(BackfillProcessed.run_id == run_id).all()
            return {r[0] for r in rows}

    def processed_count(self, run_id: str) -> int:
        with session_scope(self.session_factory) as session:
            return (
                session.query(func.count(BackfillProcessed.subject_id))
                .filter(BackfillProcessed.run_id == run_id)
                .scalar()
            )

    def get_status(self, run_id: str) -> Dict[str, Any]:
        run = self.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Backfill run {run_id} not found")
        return {
            "runId": run.run_id,
            "status": run.status,
            "cursor": run.cursor,
            "totalSubjects": run.total_subjects,
            "processedCount": self.processed_count(run_id),
            "retryBudget": run.retry_budget,
            "retryBudgetRemaining": run.retry_budget_remaining,
            "givenUp": list(run.given_up or []),
            "lastErrorClass": run.last_error_class,
            "lastError": run.last_error,
            "startedAt": _iso(run.started_at),
            "updatedAt": _iso(run.updated_at),
            "completedAt": _iso(run.completed_at),
        }

    def get_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        run = self.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Backfill run {run_id} not found")
        return dict(run.report) if run.report else None

    def acquire_lock(self, run_id: str, owner: str, lease_seconds: int = LOCK_LEASE_SECONDS) -> None:
        """
        Take the run lock for owner.

        Raises:
            RunLockedError: another owner holds an unexpired lease
        """
        now = self.clock()
        try:
            with session_scope(self.session_factory) as session:
                lock = session.get(RunLock, run_id)
                if lock is not None and lock.owner != owner and lock.expires_at > now:
                    raise RunLockedError(
                        f"Run {run_id} is locked by {lock.owner} until {lock.expires_at.isoformat()}"
                    )
                if lock is None:
                    session.add(
                        RunLock(
                            run_id=run_id,
                            owner=owner,
                            acquired_at=now,
                            expires_at=now + timedelta(seconds=lease_seconds),
                        )
                    )
                else:
                    lock.owner = owner
                    lock.acquired_at = now
                    lock.expires_at = now + timedelta(seconds=lease_seconds)
        except IntegrityError as e:
            raise RunLockedError(f"Run {run_id} was locked concurrently") from e

    def renew_lock(self, run_id: str, owner: str, lease_seconds: int = LOCK_LEASE_SECONDS) -> None:
        with session_scope(self.session_factory) as session:
            lock = session.get(RunLock, run_id)
            if lock is None or lock.owner != owner:
                raise RunLockedError(f"Lost the lock on run {run_id}")
            lock.expires_at = self.clock() + timedelta(seconds=lease_seconds)

    def release_lock(self, run_id: str, owner: str) -> None:
        with session_scope(self.session_factory) as session:
            lock = session.get(RunLock, run_id)
            if lock is not None and lock.owner == owner:
                session.delete(lock)


@dataclass
class _Outcome:
    index: int
    subject_id: str
    result: Optional[EnrichmentResult] = None
    error: Optional[BaseException] = None


class _RunState:
    """In-memory mirror of the run row, owned by the driving thread."""

    def __init__(self, run: BackfillRun, processed: Set[str]):
        self.cursor = run.cursor
        self.processed = processed
        self.failures: Dict[str, int] = dict(run.subject_failures or {})
        self.given_up: List[str] = list(run.given_up or [])
        self.budget = run.retry_budget_remaining
        self.stats: Dict[str, Any] = _empty_stats()
        self.stats.update(run.stats or {})
        self.stats["cost_by_provider"] = dict(self.stats.get("cost_by_provider") or {})
        self.stats["error_classes"] = dict(self.stats.get("error_classes") or {})
        self.retry_after: Dict[str, float] = {}
        self.fatal: Optional[BaseException] = None
        self.last_retryable: Optional[BaseException] = None
        self.billed: Set[Tuple[str, Optional[datetime]]] = set()
        self.budget_exhausted = False

    def values(self) -> Dict[str, Any]:
        # JSON columns only see reassignment, so hand over fresh containers
        stats = dict(self.stats)
        stats["cost_by_provider"] = dict(self.stats["cost_by_provider"])
        stats["error_classes"] = dict(self.stats["error_classes"])
        return {
            "cursor": self.cursor,
            "subject_failures": dict(self.failures),
            "given_up": list(self.given_up),
            "retry_budget_remaining": self.budget,
            "stats": stats,
        }


class BackfillRunner:
    """
    Drives one backfill run at a time.

    run() starts a new run or resumes an existing one. A primary pass walks
    the records from the persisted cursor in chunks of ``concurrency``; a
    retry pass then re-submits subjects that failed with a retryable error,
    sleeping per the backoff policy, until each either succeeds or reaches
    ``max_subject_attempts``. Every retryable failure spends one unit of the
    run's retry budget; an empty budget fails the run.
    """

    def __init__(
        self,
        orchestrator: EnrichmentOrchestrator,
        session_factory: sessionmaker,
        retry_budget: int = 25,
        max_subject_attempts: int = 3,
        concurrency: int = 4,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        report_dir: Optional[Path] = None,
        metrics=None,
        logger=None,
        clock: Callable[[], datetime] = datetime.now,
        lease_seconds: int = LOCK_LEASE_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.store = BackfillRunStore(session_factory, clock=clock)
        self.retry_budget = retry_budget
        self.max_subject_attempts = max(1, max_subject_attempts)
        self.concurrency = max(1, concurrency)
        self.backoff = backoff or BackoffPolicy()
        self.report_dir = Path(report_dir) if report_dir is not None else None
        self.metrics = metrics or get_metrics()
        self.logger = logger or get_logger()
        self.clock = clock
        self.lease_seconds = lease_seconds
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._owner: Optional[str] = None

    def stop(self):
        """Ask the active run to pause once its in-flight chunk finishes."""
        self._stop_event.set()


    def run(
        self,
        run_id: str,
        records: Sequence[Dict[str, Any]],
        stop_event: Optional[threading.Event] = None,
        reset_budget: bool = False,
    ) -> BackfillReport:
        """
        Start or resume a run.

        Args:
            run_id: Durable run identifier
            records: Ordered subject records; pass the same order on resume
            stop_event: External stop signal, checked between chunks
            reset_budget: Restore the full retry budget, e.g. when resuming a failed run

        Returns:
            BackfillReport describing where the run stopped this session

        Raises:
            RunLockedError: another runner holds the run
        """
        self._stop_event = stop_event or threading.Event()
        requests = self._to_requests(records)
        run = self.store.get_or_create(run_id, len(requests), self.retry_budget)

        if run.status == COMPLETED and run.report:
            self.logger.info("Backfill run already completed, returning stored report", run_id=run_id)
            return BackfillReport.from_dict(run.report)

        owner = uuid.uuid4().hex
        self.store.acquire_lock(run_id, owner, self.lease_seconds)
        self._owner = owner
        try:
            if reset_budget:
                self.store.update(run_id, retry_budget=self.retry_budget, retry_budget_remaining=self.retry_budget)
            return self._drive(run_id, requests)
        except Exception as e:
            self.logger.error(
                "Backfill run aborted by unexpected error",
                run_id=run_id,
                error_class=error_class_of(e),
                error=str(e),
            )
            self.store.update(run_id, status=FAILED, last_error_class=error_class_of(e), last_error=str(e))
            self.metrics.inc("backfill_runs_total", labels={"status": FAILED})
            raise
        finally:
            self.store.release_lock(run_id, owner)
            self._owner = None

    def _to_requests(self, records: Sequence[Dict[str, Any]]) -> List[Tuple[str, EnrichmentRequest]]:
        provider = self.orchestrator.invoker.name
        out = []
        for index, record in enumerate(records):
            request = EnrichmentRequest.from_record(record, provider=provider)
            subject_id = request.subject_id or f"row-{index}"
            out.append((subject_id, request))
        return out

    def _drive(self, run_id: str, requests: List[Tuple[str, EnrichmentRequest]]) -> BackfillReport:
        run = self.store.get(run_id)
        state = _RunState(run, self.store.processed_ids(run_id))
        total = len(requests)
        self.store.update(run_id, status=RUNNING, last_error_class=None, last_error=None, completed_at=None)
        self.logger.info(
            "Backfill run resumed" if run.status != CREATED else "Backfill run started",
            run_id=run_id,
            cursor=state.cursor,
            total=total,
            processed=len(state.processed),
            retry_budget_remaining=state.budget,
        )

        # Subjects behind the cursor that are neither processed nor given up failed earlier
        given_up = set(state.given_up)
        retry_queue: Deque[int] = deque(
            i
            for i in range(min(state.cursor, total))
            if requests[i][0] not in state.processed and requests[i][0] not in given_up
        )

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="backfill") as pool:
            while state.cursor < total:
                if self._stop_event.is_set():
                    return self._pause(run_id, state, total)
                end = min(state.cursor + self.concurrency, total)
                chunk = [i for i in range(state.cursor, end) if requests[i][0] not in state.processed]
                outcomes = self._process_chunk(pool, requests, chunk)
                state.cursor = end
                self._apply(run_id, state, outcomes, retry_queue)
                report = self._check_halt(run_id, state, total)
                if report is not None:
                    return report

            while retry_queue:
                if self._stop_event.is_set():
                    return self._pause(run_id, state, total)
                chunk = self._next_retry_chunk(state, requests, retry_queue)
                if not chunk:
                    continue
                delay = max(self._retry_delay(state, requests[i][0]) for i in chunk)
                if delay > 0:
                    self.logger.debug("Backing off before retry", run_id=run_id, delay=round(delay, 3), subjects=len(chunk))
                    self._wait(delay)
                    if self._stop_event.is_set():
                        return self._pause(run_id, state, total)
                outcomes = self._process_chunk(pool, requests, chunk)
                self._apply(run_id, state, outcomes, retry_queue)
                report = self._check_halt(run_id, state, total)
                if report is not None:
                    return report

        return self._complete(run_id, state, total)

    def _next_retry_chunk(self, state: _RunState, requests, retry_queue: Deque[int]) -> List[int]:
        chunk: List[int] = []
        seen: Set[str] = set()
        while retry_queue and len(chunk) < self.concurrency:
            i = retry_queue.popleft()
            subject_id = requests[i][0]
            if subject_id in state.processed or subject_id in seen or subject_id in state.given_up:
                continue
            seen.add(subject_id)
            chunk.append(i)
        return chunk

    def _process_chunk(self, pool: ThreadPoolExecutor, requests, indices: List[int]) -> List[_Outcome]:
        futures = [(i, pool.submit(self.orchestrator.enrich, requests[i][1])) for i in indices]
        outcomes = []
        for i, future in futures:
            try:
                outcomes.append(_Outcome(index=i, subject_id=requests[i][0], result=future.result()))
            except Exception as e:
                outcomes.append(_Outcome(index=i, subject_id=requests[i][0], error=e))
        return outcomes

    def _apply(self, run_id: str, state: _RunState, outcomes: List[_Outcome], retry_queue: Deque[int]):
        """Fold one chunk's outcomes into the run state and checkpoint it."""
        processed_rows: List[Tuple[str, str, bool]] = []
        unexpected: Optional[BaseException] = None

        for outcome in outcomes:
            subject_id = outcome.subject_id
            if outcome.error is None:
                if subject_id in state.processed:
                    continue
                state.processed.add(subject_id)
                processed_rows.append((subject_id, outcome.result.source, outcome.result.found))
                self._count_result(state, outcome.result)
                continue

            err = outcome.error
            error_class = error_class_of(err)
            errors = state.stats["error_classes"]
            errors[error_class] = errors.get(error_class, 0) + 1

            if not isinstance(err, LeadEnrichError):
                unexpected = unexpected or err
                continue
            if not err.retryable:
                # Auth and input errors make further calls futile
                state.fatal = state.fatal or err
                continue

            state.budget = max(0, state.budget - 1)
            state.last_retryable = err
            failures = state.failures.get(subject_id, 0) + 1
            state.failures[subject_id] = failures
            if isinstance(err, ProviderRateLimitError) and err.retry_after:
                state.retry_after[subject_id] = err.retry_after
            if failures >= self.max_subject_attempts:
                state.given_up.append(subject_id)
                self.logger.warning(
                    "Giving up on subject",
                    run_id=run_id,
                    subject_id=subject_id,
                    attempts=failures,
                    error_class=error_class,
                )
            else:
                retry_queue.append(outcome.index)
                self.logger.info(
                    "Subject deferred for retry",
                    run_id=run_id,
                    subject_id=subject_id,
                    attempts=failures,
                    error_class=error_class,
                    retry_budget_remaining=state.budget,
                )
            if state.budget == 0:
                state.budget_exhausted = True

        self.store.checkpoint(run_id, processed_rows, **state.values())
        self.store.renew_lock(run_id, self._owner, self.lease_seconds)
        if unexpected is not None:
            raise unexpected

    def _count_result(self, state: _RunState, result: EnrichmentResult):
        stats = state.stats
        provider_key = (result.key, result.computed_at)
        if result.source == SOURCE_CACHE or provider_key in state.billed:
            # Cache hit, or a follower sharing a call another subject in this chunk paid for
            stats["cache_hits"] += 1
        else:
            state.billed.add(provider_key)
            stats["provider_calls"] += 1
            costs = stats["cost_by_provider"]
            costs[result.provider] = str(Decimal(costs.get(result.provider, "0")) + result.cost)
        if not result.found:
            stats["not_found"] += 1

    def _retry_delay(self, state: _RunState, subject_id: str) -> float:
        delay = self.backoff.delay(state.failures.get(subject_id, 1))
        retry_after = state.retry_after.pop(subject_id, None)
        if retry_after:
            delay = max(delay, min(retry_after, self.backoff.max_delay))
        return delay

    def _wait(self, delay: float):
        if self._sleep is not None:
            self._sleep(delay)
        else:
            self._stop_event.wait(delay)

    def _check_halt(self, run_id: str, state: _RunState, total: int) -> Optional[BackfillReport]:
        if state.fatal is not None:
            return self._fail(run_id, state, total, error_class_of(state.fatal), str(state.fatal))
        if state.budget_exhausted:
            last = state.last_retryable
            return self._fail(
                run_id,
                state,
                total,
                error_class_of(last) if last is not None else "RetryBudgetExhausted",
                f"Retry budget exhausted: {last}",
            )
        return None

    def _build_report(
        self, run_id: str, state: _RunState, status: str, total: int, error_class: Optional[str] = None
    ) -> BackfillReport:
        run = self.store.get(run_id)
        stats = state.stats
        calls = stats["provider_calls"]
        hits = stats["cache_hits"]
        costs = stats["cost_by_provider"]
        total_cost = sum((Decimal(v) for v in costs.values()), Decimal("0"))
        top = Counter(stats["error_classes"]).most_common(TOP_ERROR_CLASSES)
        return BackfillReport(
            run_id=run_id,
            status=status,
            total_subjects=total,
            processed=len(state.processed),
            given_up=list(state.given_up),
            provider_calls=calls,
            cache_hits=hits,
            not_found=stats["not_found"],
            cache_hit_ratio=round(hits / (calls + hits), 4) if calls + hits else 0.0,
            cost_by_provider=dict(costs),
            total_cost=str(total_cost.quantize(Decimal("0.01"))),
            top_error_classes=[{"error_class": c, "count": n} for c, n in top],
            retry_budget=run.retry_budget,
            retry_budget_remaining=state.budget,
            last_error_class=error_class,
            started_at=_iso(run.started_at),
            completed_at=_iso(self.clock()) if status in (COMPLETED, FAILED) else None,
        )

    def _finalize(self, run_id: str, report: BackfillReport, **values) -> BackfillReport:
        data = report.to_dict()
        if self.report_dir is not None:
            path = write_report(self.report_dir, run_id, data)
            self.logger.info("Run report written", run_id=run_id, path=str(path))
        self.store.update(run_id, status=report.status, report=data, **values)
        self.metrics.inc("backfill_runs_total", labels={"status": report.status})
        return report

    def _complete(self, run_id: str, state: _RunState, total: int) -> BackfillReport:
        report = self._build_report(run_id, state, COMPLETED, total)
        self._finalize(run_id, report, completed_at=self.clock())
        self.logger.info(
            "Backfill run completed",
            run_id=run_id,
            processed=report.processed,
            given_up=len(report.given_up),
            provider_calls=report.provider_calls,
            cache_hit_ratio=report.cache_hit_ratio,
            total_cost=report.total_cost,
        )
        self.logger.log_metrics_summary(self.metrics.snapshot())
        return report

    def _fail(self, run_id: str, state: _RunState, total: int, error_class: str, message: str) -> BackfillReport:
        report = self._build_report(run_id, state, FAILED, total, error_class=error_class)
        self._finalize(run_id, report, last_error_class=error_class, last_error=message)
        self.logger.error(
            "Backfill run failed",
            run_id=run_id,
            error_class=error_class,
            error=message,
            processed=report.processed,
            retry_budget_remaining=state.budget,
        )
        return report

    def _pause(self, run_id: str, state: _RunState, total: int) -> BackfillReport:
        self.store.update(run_id, status=PAUSED)
        self.metrics.inc("backfill_runs_total", labels={"status": PAUSED})
        self.logger.info("Backfill run paused", run_id=run_id, cursor=state.cursor, processed=len(state.processed))
        return self._build_report(run_id, state, PAUSED, total)
