"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for every durable record the subsystem owns:
idempotency keys, cached provider results, contact projections, backfill run
state, webhook subscriptions, delivery attempts and the activity log.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


class IdempotencyKeyRecord(Base):
    """One row per idempotency key, created on the first successful call."""

    __tablename__ = "idempotency_keys"

    key = Column(String(64), primary_key=True)  # sha256 hex
    subject_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.now)


class CachedResult(Base):
    """Provider result for a key. Newest row per key is the current one."""

    __tablename__ = "cached_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(64), nullable=False)
    subject_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    normalized_contacts = Column(JSON, nullable=False, default=list)
    cost = Column(String(32), nullable=False, default="0")  # Decimal as text
    found = Column(Boolean, nullable=False, default=True)
    computed_at = Column(DateTime, nullable=False, default=datetime.now)
    ttl_seconds = Column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_cached_results_key_computed", "key", "computed_at"),
    )


class ContactProjection(Base):
    """Latest normalized contacts for an enriched subject."""

    __tablename__ = "contact_projections"

    subject_id = Column(String, primary_key=True)
    key = Column(String(64), nullable=False)
    provider = Column(String, nullable=False)
    contacts = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class BackfillRun(Base):
    """Durable state of one backfill run, keyed by run_id."""

    __tablename__ = "backfill_runs"

    run_id = Column(String, primary_key=True)
    status = Column(String(16), nullable=False, default="created")  # created|running|paused|completed|failed
    cursor = Column(Integer, nullable=False, default=0)
    total_subjects = Column(Integer, nullable=False, default=0)
    retry_budget = Column(Integer, nullable=False)
    retry_budget_remaining = Column(Integer, nullable=False)
    subject_failures = Column(JSON, nullable=False, default=dict)  # subject_id -> failed attempts
    given_up = Column(JSON, nullable=False, default=list)
    stats = Column(JSON, nullable=False, default=dict)
    last_error_class = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    report = Column(JSON, nullable=True)
    started_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)
    completed_at = Column(DateTime, nullable=True)


class BackfillProcessed(Base):
    """Append-only log of subjects processed within a run."""

    __tablename__ = "backfill_processed"

    run_id = Column(String, primary_key=True)
    subject_id = Column(String, primary_key=True)
    source = Column(String(16), nullable=False)  # cache|provider
    found = Column(Boolean, nullable=False, default=True)
    processed_at = Column(DateTime, nullable=False, default=datetime.now)


class RunLock(Base):
    """Lease held by the runner currently driving a run."""

    __tablename__ = "run_locks"

    run_id = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=datetime.now)
    expires_at = Column(DateTime, nullable=False)


class WebhookSubscription(Base):
    """Subscriber endpoint for one event type ('*' matches every type)."""

    __tablename__ = "webhook_subscriptions"

    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False, index=True)
    target_url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class DeliveryAttempt(Base):
    """Delivery of one event to one subscription, mutated on every try."""

    __tablename__ = "delivery_attempts"

    id = Column(String, primary_key=True)
    subscription_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|success|failed|exhausted
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    job_id = Column(String, nullable=True)
    target_url = Column(String, nullable=False)
    headers = Column(JSON, nullable=True)
    body = Column(Text, nullable=False)  # raw JSON body, signed byte-for-byte
    payload_timestamp = Column(DateTime, nullable=False)
    last_status_code = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    replay_of = Column(String, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("ix_delivery_attempts_created", "created_at"),
        Index("ix_delivery_attempts_status", "status"),
        Index("ix_delivery_attempts_subscription", "subscription_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionId": self.subscription_id,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "status": self.status,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "jobId": self.job_id,
            "targetUrl": self.target_url,
            "headers": self.headers,
            "payloadTimestamp": _iso(self.payload_timestamp),
            "lastStatusCode": self.last_status_code,
            "lastError": self.last_error,
            "replayOf": self.replay_of,
            "lastAttemptAt": _iso(self.last_attempt_at),
            "nextAttemptAt": _iso(self.next_attempt_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Activity(Base):
    """
    Domain event log.

    emission_key carries the natural key of unforced emissions; the unique
    index on (type, emission_key) makes at-most-once emission atomic. Forced
    re-emissions leave it NULL.
    """

    __tablename__ = "activities"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    subject_id = Column(String, nullable=True)
    natural_key = Column(String, nullable=True)
    emission_key = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("ix_activities_type_natural_key", "type", "natural_key"),
        Index("ux_activities_type_emission_key", "type", "emission_key", unique=True),
    )


def _iso(value):
    return value.isoformat() if value is not None else None


_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()


def get_engine(db_path: Union[Path, str]) -> Engine:
    """Return the shared engine for a SQLite file, creating it once."""
    url = f"sqlite:///{db_path}"
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            _engines[url] = engine
        return engine


def dispose_engines() -> None:
    """Close every cached engine (tests and shutdown)."""
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(get_engine(db_path))


def get_session_factory(db_path: Path) -> sessionmaker:
    """
    Session factory shared by the stores. Objects stay readable after commit.

    Args:
        db_path: Path to SQLite database file
    """
    return sessionmaker(bind=get_engine(db_path), expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, rollback on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
