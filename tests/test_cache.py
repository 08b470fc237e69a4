"""
Tests for the TTL result cache and the contact projection.
"""

from decimal import Decimal

import pytest

from leadenrich.cache import ContactProjectionStore, ResultCache
from leadenrich.database import CachedResult, session_scope
from leadenrich.providers.base import Contact

KEY = "a" * 64
CONTACTS = [Contact(kind="phone", value="+13125550100", type="mobile", confidence=0.9)]


@pytest.fixture
def cache(session_factory, clock):
    return ResultCache(session_factory, clock=clock)


class TestResultCache:
    """Test lookup/store semantics."""

    def test_miss_on_unknown_key(self, cache):
        """An unknown key is a miss."""
        assert cache.lookup(KEY) is None

    def test_hit_within_ttl(self, cache, clock):
        """A stored entry is returned until its TTL elapses."""
        cache.store(KEY, "lead-1", "fake", CONTACTS, Decimal("0.25"), ttl_seconds=60)
        clock.advance(seconds=59)

        entry = cache.lookup(KEY)
        assert entry is not None
        assert entry.contacts == CONTACTS
        assert entry.cost == Decimal("0.25")
        assert entry.found is True

    def test_stale_entry_is_miss(self, cache, clock):
        """Once now - computed_at reaches the TTL the lookup misses."""
        cache.store(KEY, "lead-1", "fake", CONTACTS, Decimal("0.25"), ttl_seconds=60)
        clock.advance(seconds=60)
        assert cache.lookup(KEY) is None
        # The row is still there for audit
        assert cache.current(KEY) is not None

    def test_store_supersedes_without_deleting(self, cache, clock, session_factory):
        """A refresh writes a new current row and keeps the old one."""
        cache.store(KEY, "lead-1", "fake", CONTACTS, Decimal("0.25"), ttl_seconds=60)
        clock.advance(seconds=120)
        newer = [Contact(kind="email", value="ana@example.com", confidence=0.6)]
        cache.store(KEY, "lead-1", "fake", newer, Decimal("0.30"), ttl_seconds=60)

        assert cache.lookup(KEY).contacts == newer
        history = cache.history(KEY)
        assert len(history) == 2
        assert history[0].cost == Decimal("0.30")
        with session_scope(session_factory) as session:
            assert session.query(CachedResult).filter_by(key=KEY).count() == 2

    def test_lookup_touches_last_seen_even_when_stale(self, cache, clock):
        """last_seen_at moves on every lookup that finds a row, fresh or not."""
        cache.store(KEY, "lead-1", "fake", CONTACTS, Decimal("0.25"), ttl_seconds=60)
        created = cache.key_record(KEY).created_at

        clock.advance(seconds=600)
        assert cache.lookup(KEY) is None

        record = cache.key_record(KEY)
        assert record.created_at == created
        assert record.last_seen_at == clock()

    def test_negative_result_round_trips(self, cache):
        """found=False entries are cached like any other."""
        cache.store(KEY, "lead-1", "fake", [], Decimal("0.25"), ttl_seconds=60, found=False)
        entry = cache.lookup(KEY)
        assert entry.found is False
        assert entry.contacts == []


class TestContactProjection:
    """Test the per-subject contact projection."""

    def test_upsert_replaces_contacts(self, session_factory, clock):
        """The projection holds only the latest contacts for a subject."""
        store = ContactProjectionStore(session_factory, clock=clock)
        store.upsert("lead-1", KEY, "fake", CONTACTS)
        newer = [Contact(kind="email", value="ana@example.com")]
        store.upsert("lead-1", KEY, "fake", newer)
        assert store.get("lead-1") == newer

    def test_unknown_subject_is_empty(self, session_factory):
        """No projection means no contacts."""
        assert ContactProjectionStore(session_factory).get("nobody") == []
