"""
Webhook delivery.

publish() turns one event into one DeliveryAttempt per matching subscription
and queues them. A bounded pool of worker threads drains the queue; each task
performs a single signed POST and, on failure, re-queues itself with a due time
taken from the backoff policy. Attempt counts, timestamps and outcomes live on
the DeliveryAttempt row, so a restarted process resumes from storage.
"""

import hashlib
import heapq
import hmac
import itertools
import json
import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .database import DeliveryAttempt, WebhookSubscription, session_scope
from .errors import AttemptNotFoundError, DeliveryError, ReplayNotAllowedError, SubscriptionNotFoundError
from .events import TEST_EVENT, Event
from .logger import get_logger
from .metrics import get_metrics
from .retry import BackoffPolicy

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
WEBHOOK_ID_HEADER = "X-Webhook-Id"
EVENT_TYPE_HEADER = "X-Event-Type"

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
EXHAUSTED = "exhausted"
TERMINAL_STATUSES = frozenset({SUCCESS, EXHAUSTED})

WILDCARD = "*"


def encode_body(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Subscriber-side check of the X-Signature header."""
    if not signature_header:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature_header.strip())


class DeliveryQueue:
    """
    Due-time ordered task queue drained by a fixed pool of worker threads.

    ``put(task_id, delay)`` makes the task eligible ``delay`` seconds from now.
    A task id is held at most once: putting an id that is already queued or
    running is a no-op. The handler returns the delay before the task runs
    again, or None when it is done.
    """

    def __init__(
        self,
        handler: Callable[[str], Optional[float]],
        workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
        name: str = "webhook-worker",
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.handler = handler
        self.workers = workers
        self.clock = clock
        self.logger = logger or get_logger()
        self.name = name
        self._cond = threading.Condition()
        self._heap: List[tuple] = []
        self._seq = itertools.count()
        self._active = 0
        self._queued = set()
        self._running = set()
        self._stopping = False
        self._threads: List[threading.Thread] = []

    def start(self):
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for i in range(self.workers):
                t = threading.Thread(target=self._work, name=f"{self.name}-{i}", daemon=True)
                self._threads.append(t)
                t.start()

    def put(self, task_id: str, delay: float = 0.0) -> bool:
        """Queue a task. Returns False when the id is already queued or running."""
        with self._cond:
            if task_id in self._queued or task_id in self._running:
                return False
            self._push(task_id, delay)
            return True

    def _push(self, task_id: str, delay: float):
        heapq.heappush(self._heap, (self.clock() + max(0.0, delay), next(self._seq), task_id))
        self._queued.add(task_id)
        self._cond.notify()

    def size(self) -> int:
        with self._cond:
            return len(self._heap) + self._active

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no task is queued or running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._heap and self._active == 0, timeout=timeout)

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if wait:
            for t in self._threads:
                t.join(timeout)
        self._threads = []

    def _next_task(self) -> Optional[str]:
        with self._cond:
            while not self._stopping:
                if self._heap:
                    due = self._heap[0][0]
                    now = self.clock()
                    if due <= now:
                        _, _, task_id = heapq.heappop(self._heap)
                        self._queued.discard(task_id)
                        self._running.add(task_id)
                        self._active += 1
                        return task_id
                    self._cond.wait(timeout=due - now)
                else:
                    self._cond.wait()
            return None

    def _work(self):
        while True:
            task_id = self._next_task()
            if task_id is None:
                return
            delay = None
            try:
                delay = self.handler(task_id)
            except Exception as e:
                # The attempt row keeps its last durable status; resume_pending() picks it up
                self.logger.error("Delivery task crashed", task_id=task_id, error=f"{type(e).__name__}: {e}")
            finally:
                with self._cond:
                    self._active -= 1
                    self._running.discard(task_id)
                    if delay is not None and not self._stopping:
                        self._push(task_id, delay)
                    self._cond.notify_all()


class WebhookDeliveryService:
    def __init__(
        self,
        session_factory: sessionmaker,
        http: Optional[requests.Session] = None,
        max_attempts: int = 5,
        timeout: float = 10.0,
        backoff: Optional[BackoffPolicy] = None,
        workers: int = 4,
        metrics=None,
        logger=None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session_factory = session_factory
        self.http = http or requests.Session()
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self.metrics = metrics or get_metrics()
        self.logger = logger or get_logger()
        self.clock = clock
        self.queue = DeliveryQueue(self.deliver, workers=workers, logger=self.logger)
        self._inflight = set()
        self._inflight_lock = threading.Lock()

    # Lifecycle

    def start(self) -> int:
        """Start workers and re-queue attempts left pending/failed by a previous process."""
        self.queue.start()
        return self.resume_pending()

    def stop(self, wait: bool = True):
        self.queue.stop(wait=wait)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.wait_idle(timeout)

    def resume_pending(self) -> int:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(DeliveryAttempt.id, DeliveryAttempt.next_attempt_at)
                .filter(DeliveryAttempt.status.in_([PENDING, FAILED]))
                .all()
            )
        resumed = 0
        for attempt_id, next_at in rows:
            delay = max(0.0, (next_at - now).total_seconds()) if next_at else 0.0
            if self.queue.put(attempt_id, delay):
                resumed += 1
        if resumed:
            self.logger.info("Resumed undelivered webhook attempts", count=resumed)
        return resumed

    # Producer side

    def publish(self, event: Event) -> List[str]:
        """Create one pending DeliveryAttempt per matching active subscription and queue it."""
        body = encode_body(event.to_payload())
        now = self.clock()
        with session_scope(self.session_factory) as session:
            subs = (
                session.query(WebhookSubscription)
                .filter(
                    WebhookSubscription.active.is_(True),
                    WebhookSubscription.event_type.in_([event.type, WILDCARD]),
                )
                .order_by(WebhookSubscription.created_at)
                .all()
            )
            attempt_ids = [self._new_attempt(session, sub, event.id, event.type, body, event.created_at, now) for sub in subs]

        for attempt_id in attempt_ids:
            self.queue.put(attempt_id)
        if attempt_ids:
            self.logger.info(
                "Event queued for delivery",
                event_id=event.id,
                event_type=event.type,
                subscriptions=len(attempt_ids),
            )
        return attempt_ids

    def _new_attempt(self, session, sub, event_id, event_type, body, payload_ts, now, replay_of=None) -> str:
        attempt = DeliveryAttempt(
            id=uuid.uuid4().hex,
            subscription_id=sub.id,
            event_id=event_id,
            event_type=event_type,
            status=PENDING,
            attempts=0,
            max_attempts=self.max_attempts,
            target_url=sub.target_url,
            body=body,
            payload_timestamp=payload_ts,
            replay_of=replay_of,
            created_at=now,
            updated_at=now,
        )
        session.add(attempt)
        return attempt.id

    # Worker side

    def deliver(self, attempt_id: str) -> Optional[float]:
        """
        Perform one delivery attempt.

        Returns:
            Seconds to wait before the next attempt, or None once the attempt
            is terminal (success or exhausted)
        """
        with self._inflight_lock:
            if attempt_id in self._inflight:
                return None
            self._inflight.add(attempt_id)
        try:
            return self._deliver(attempt_id)
        finally:
            with self._inflight_lock:
                self._inflight.discard(attempt_id)

    def _deliver(self, attempt_id: str) -> Optional[float]:
        with session_scope(self.session_factory) as session:
            attempt = session.get(DeliveryAttempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(f"Delivery attempt {attempt_id} not found")
            if attempt.status in TERMINAL_STATUSES:
                return None
            if attempt.attempts >= attempt.max_attempts:
                self._mark(attempt, EXHAUSTED, attempt.last_error or "attempt cap reached")
                return None
            sub = session.get(WebhookSubscription, attempt.subscription_id)
            if sub is None or not sub.active:
                self._mark(attempt, EXHAUSTED, "subscription inactive or deleted")
                self.logger.error(
                    "Webhook subscription unavailable, attempt closed",
                    attempt_id=attempt_id,
                    subscription_id=attempt.subscription_id,
                )
                self.metrics.inc("webhook_deliveries_total", labels={"status": EXHAUSTED})
                return None
            secret = sub.secret
            target_url = attempt.target_url
            body = attempt.body
            event_type = attempt.event_type
            attempt_no = attempt.attempts + 1
            max_attempts = attempt.max_attempts

        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(secret, body.encode("utf-8")),
            TIMESTAMP_HEADER: str(int(time.time() * 1000)),
            WEBHOOK_ID_HEADER: attempt_id,
            EVENT_TYPE_HEADER: event_type,
        }
        started = time.monotonic()
        status_code = None
        error = None
        try:
            status_code = self._send(target_url, body, headers)
        except DeliveryError as e:
            status_code = e.status_code
            error = e.message
        duration = time.monotonic() - started
        self.metrics.observe("webhook_delivery_seconds", duration)

        now = self.clock()
        with session_scope(self.session_factory) as session:
            attempt = session.get(DeliveryAttempt, attempt_id)
            attempt.attempts = attempt_no
            attempt.job_id = f"{attempt_id}:{attempt_no}"
            attempt.headers = {k: v for k, v in headers.items() if k != SIGNATURE_HEADER}
            attempt.last_status_code = status_code
            attempt.last_attempt_at = now
            attempt.updated_at = now

            if error is None:
                attempt.status = SUCCESS
                attempt.last_error = None
                attempt.next_attempt_at = None
                next_delay = None
            elif attempt_no >= max_attempts:
                attempt.status = EXHAUSTED
                attempt.last_error = error
                attempt.next_attempt_at = None
                next_delay = None
            else:
                next_delay = self.backoff.delay(attempt_no)
                attempt.status = FAILED
                attempt.last_error = error
                attempt.next_attempt_at = now + timedelta(seconds=next_delay)
            final_status = attempt.status

        context = dict(
            attempt_id=attempt_id,
            target_url=target_url,
            event_type=event_type,
            attempt=attempt_no,
            max_attempts=max_attempts,
            status_code=status_code,
            duration_ms=round(duration * 1000, 1),
        )
        self.metrics.inc("webhook_deliveries_total", labels={"status": final_status})
        if final_status == SUCCESS:
            self.logger.info("Webhook delivered", **context)
        elif final_status == EXHAUSTED:
            self.logger.error("Webhook delivery exhausted", error=error, **context)
        else:
            self.logger.warning("Webhook delivery failed, retry scheduled", error=error, retry_in=round(next_delay, 3), **context)
        return next_delay

    def _send(self, url: str, body: str, headers: Dict[str, str]) -> int:
        """POST once. Returns the status code on 2xx, raises DeliveryError otherwise."""
        try:
            resp = self.http.post(url, data=body.encode("utf-8"), headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise DeliveryError("timeout")
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"{type(e).__name__}: {e}")
        if not 200 <= resp.status_code < 300:
            raise DeliveryError(f"status_{resp.status_code}", status_code=resp.status_code)
        return resp.status_code

    def _mark(self, attempt: DeliveryAttempt, status: str, error: Optional[str]):
        attempt.status = status
        attempt.last_error = error
        attempt.next_attempt_at = None
        attempt.updated_at = self.clock()

    # Operator actions

    def replay(self, attempt_id: str, force: bool = False) -> str:
        """
        Re-deliver a finished attempt as a fresh attempt linked by replay_of.

        Exhausted attempts can always be replayed; successful ones only with
        force. Attempts still pending or awaiting retry cannot be replayed.
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            original = session.get(DeliveryAttempt, attempt_id)
            if original is None:
                raise AttemptNotFoundError(f"Delivery attempt {attempt_id} not found")
            if original.status not in TERMINAL_STATUSES:
                raise ReplayNotAllowedError(f"Attempt {attempt_id} is still {original.status}")
            if original.status == SUCCESS and not force:
                raise ReplayNotAllowedError(f"Attempt {attempt_id} already succeeded; use force to resend")
            sub = session.get(WebhookSubscription, original.subscription_id)
            if sub is None or not sub.active:
                raise ReplayNotAllowedError(f"Subscription {original.subscription_id} is inactive")
            new_id = self._new_attempt(
                session,
                sub,
                original.event_id,
                original.event_type,
                original.body,
                original.payload_timestamp,
                now,
                replay_of=original.id,
            )
        self.queue.put(new_id)
        self.logger.info("Webhook attempt replayed", attempt_id=attempt_id, replay_attempt_id=new_id)
        return new_id

    def replay_exhausted(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 500,
    ) -> List[str]:
        """Replay every exhausted attempt (matching the filters) that has not been replayed yet."""
        with session_scope(self.session_factory) as session:
            replayed = select(DeliveryAttempt.replay_of).where(DeliveryAttempt.replay_of.isnot(None))
            q = session.query(DeliveryAttempt.id).filter(
                DeliveryAttempt.status == EXHAUSTED,
                DeliveryAttempt.id.notin_(replayed),
            )
            if subscription_id:
                q = q.filter(DeliveryAttempt.subscription_id == subscription_id)
            if event_type:
                q = q.filter(DeliveryAttempt.event_type == event_type)
            ids = [row[0] for row in q.order_by(DeliveryAttempt.created_at).limit(limit).all()]

        new_ids = []
        for attempt_id in ids:
            try:
                new_ids.append(self.replay(attempt_id))
            except ReplayNotAllowedError as e:
                self.logger.warning("Skipping replay", attempt_id=attempt_id, reason=str(e))
        return new_ids

    def send_test(self, subscription_id: str) -> str:
        """Queue a test.event delivery to a single subscription."""
        now = self.clock()
        event = Event(type=TEST_EVENT, metadata={"test": True}, created_at=now)
        with session_scope(self.session_factory) as session:
            sub = session.get(WebhookSubscription, subscription_id)
            if sub is None:
                raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
            attempt_id = self._new_attempt(
                session, sub, event.id, event.type, encode_body(event.to_payload()), event.created_at, now
            )
        self.queue.put(attempt_id)
        return attempt_id


class SubscriptionRegistry:
    """Operator-side management of webhook subscriptions."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.clock = clock

    def add(self, event_type: str, target_url: str, secret: Optional[str] = None) -> WebhookSubscription:
        if not event_type or not target_url:
            raise ValueError("event_type and target_url are required")
        sub = WebhookSubscription(
            id=uuid.uuid4().hex,
            event_type=event_type,
            target_url=target_url,
            secret=secret or secrets.token_hex(32),
            active=True,
            created_at=self.clock(),
        )
        with session_scope(self.session_factory) as session:
            session.add(sub)
        return sub

    def set_active(self, subscription_id: str, active: bool) -> bool:
        with session_scope(self.session_factory) as session:
            sub = session.get(WebhookSubscription, subscription_id)
            if sub is None:
                return False
            sub.active = active
            return True

    def list(self, active_only: bool = False) -> List[WebhookSubscription]:
        with session_scope(self.session_factory) as session:
            q = session.query(WebhookSubscription)
            if active_only:
                q = q.filter(WebhookSubscription.active.is_(True))
            return q.order_by(WebhookSubscription.created_at.desc()).all()
