"""
Persistent result cache keyed by idempotency key.

Every store() writes a new row; the newest row for a key is the current entry
and older rows stay behind for audit. A lookup is a hit only while the current
entry is younger than its TTL.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from .database import CachedResult, ContactProjection, IdempotencyKeyRecord, session_scope
from .providers.base import Contact


@dataclass(frozen=True)
class CacheEntry:
    key: str
    subject_id: str
    provider: str
    contacts: List[Contact]
    cost: Decimal
    found: bool
    computed_at: datetime
    ttl_seconds: int

    def is_fresh(self, now: datetime) -> bool:
        return now - self.computed_at < timedelta(seconds=self.ttl_seconds)

    @classmethod
    def from_row(cls, row: CachedResult) -> "CacheEntry":
        return cls(
            key=row.key,
            subject_id=row.subject_id,
            provider=row.provider,
            contacts=[Contact.from_dict(c) for c in (row.normalized_contacts or [])],
            cost=Decimal(row.cost or "0"),
            found=bool(row.found),
            computed_at=row.computed_at,
            ttl_seconds=row.ttl_seconds,
        )


class ResultCache:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.clock = clock

    def current(self, key: str) -> Optional[CacheEntry]:
        """Newest entry for the key regardless of age."""
        with session_scope(self.session_factory) as session:
            row = self._current_row(session, key)
            return CacheEntry.from_row(row) if row is not None else None

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """
        Return the current entry if still within its TTL, else None (miss).

        Any existing row, fresh or stale, refreshes last_seen_at on the key record.
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            row = self._current_row(session, key)
            if row is None:
                return None
            record = session.get(IdempotencyKeyRecord, key)
            if record is not None:
                record.last_seen_at = now
            entry = CacheEntry.from_row(row)
        return entry if entry.is_fresh(now) else None

    def store(
        self,
        key: str,
        subject_id: str,
        provider: str,
        contacts: Iterable[Contact],
        cost: Decimal,
        ttl_seconds: int,
        found: bool = True,
    ) -> CacheEntry:
        """Write a new current entry for the key; earlier rows are superseded, not deleted."""
        now = self.clock()
        contacts = list(contacts)
        with session_scope(self.session_factory) as session:
            row = CachedResult(
                key=key,
                subject_id=subject_id,
                provider=provider,
                normalized_contacts=[c.to_dict() for c in contacts],
                cost=str(Decimal(cost)),
                found=found,
                computed_at=now,
                ttl_seconds=int(ttl_seconds),
            )
            session.add(row)
            record = session.get(IdempotencyKeyRecord, key)
            if record is None:
                session.add(
                    IdempotencyKeyRecord(
                        key=key,
                        subject_id=subject_id,
                        provider=provider,
                        created_at=now,
                        last_seen_at=now,
                    )
                )
            else:
                record.last_seen_at = now
        return CacheEntry(
            key=key,
            subject_id=subject_id,
            provider=provider,
            contacts=contacts,
            cost=Decimal(cost),
            found=found,
            computed_at=now,
            ttl_seconds=int(ttl_seconds),
        )

    def key_record(self, key: str) -> Optional[IdempotencyKeyRecord]:
        with session_scope(self.session_factory) as session:
            return session.get(IdempotencyKeyRecord, key)

    def history(self, key: str) -> List[CacheEntry]:
        """All entries for a key, newest first."""
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(CachedResult)
                .filter(CachedResult.key == key)
                .order_by(CachedResult.computed_at.desc(), CachedResult.id.desc())
                .all()
            )
            return [CacheEntry.from_row(r) for r in rows]

    @staticmethod
    def _current_row(session, key: str) -> Optional[CachedResult]:
        return (
            session.query(CachedResult)
            .filter(CachedResult.key == key)
            .order_by(CachedResult.computed_at.desc(), CachedResult.id.desc())
            .first()
        )


class ContactProjectionStore:
    """Latest normalized contacts per subject, fed by successful provider calls."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.clock = clock

    def upsert(self, subject_id: str, key: str, provider: str, contacts: Iterable[Contact]) -> None:
        data = [c.to_dict() for c in contacts]
        with session_scope(self.session_factory) as session:
            row = session.get(ContactProjection, subject_id)
            if row is None:
                session.add(
                    ContactProjection(
                        subject_id=subject_id,
                        key=key,
                        provider=provider,
                        contacts=data,
                        updated_at=self.clock(),
                    )
                )
            else:
                row.key = key
                row.provider = provider
                row.contacts = data
                row.updated_at = self.clock()

    def get(self, subject_id: str) -> List[Contact]:
        with session_scope(self.session_factory) as session:
            row = session.get(ContactProjection, subject_id)
            return [Contact.from_dict(c) for c in row.contacts] if row is not None else []
