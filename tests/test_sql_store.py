"""Tests for the SQL claim and purge predicates of the cache store."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, insert, select

from portfolio_analytics.cache.entries import ArtifactKind, CacheEntry, CacheKey, CacheStatus
from portfolio_analytics.cache.sql_store import claimable_clause, purgeable_clause


NOW = datetime(2026, 3, 2, 12, 0)
PAST = NOW - timedelta(minutes=5)
FUTURE = NOW + timedelta(minutes=5)
KEY = CacheKey.build(ArtifactKind.RISK, "AAPL")

# (status, expires_at, lease_expires_at, retry_at)
CLAIM_CASES = [
    (CacheStatus.STALE, None, None, None),
    (CacheStatus.FRESH, FUTURE, None, None),
    (CacheStatus.FRESH, PAST, None, None),
    (CacheStatus.FRESH, None, None, None),
    (CacheStatus.CALCULATING, None, FUTURE, None),
    (CacheStatus.CALCULATING, None, PAST, None),
    (CacheStatus.CALCULATING, None, None, None),
    (CacheStatus.ERROR, None, None, FUTURE),
    (CacheStatus.ERROR, None, None, PAST),
    (CacheStatus.ERROR, None, None, None),
]


@pytest.fixture
def cache_table():
    """In-memory table with the cache entry columns the predicates read."""
    engine = create_engine("sqlite://")
    metadata = MetaData()
    table = Table(
        "cache_entries",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("status", String(20), nullable=False),
        Column("expires_at", DateTime),
        Column("last_attempt_at", DateTime),
        Column("retry_at", DateTime),
        Column("lease_expires_at", DateTime),
        Column("updated_at", DateTime),
    )
    metadata.create_all(engine)
    yield engine, table
    engine.dispose()


def _matching_ids(engine, table, clause) -> set[int]:
    with engine.connect() as conn:
        return set(conn.execute(select(table.c.id).where(clause)).scalars())


class TestClaimableClause:
    """Tests for the SQL claim predicate against CacheEntry.claimable."""

    def test_matches_entry_semantics(self, cache_table):
        engine, table = cache_table
        expected = set()
        with engine.begin() as conn:
            for row_id, (status, expires_at, lease_expires_at, retry_at) in enumerate(CLAIM_CASES):
                conn.execute(
                    insert(table).values(
                        id=row_id,
                        status=status.value,
                        expires_at=expires_at,
                        lease_expires_at=lease_expires_at,
                        retry_at=retry_at,
                        updated_at=NOW,
                    )
                )
                entry = CacheEntry(
                    key=KEY,
                    status=status,
                    expires_at=expires_at,
                    lease_expires_at=lease_expires_at,
                    retry_at=retry_at,
                )
                if entry.claimable(NOW):
                    expected.add(row_id)

        assert _matching_ids(engine, table, claimable_clause(table.c, NOW)) == expected

    def test_fresh_without_expiry_is_claimable(self, cache_table):
        engine, table = cache_table
        with engine.begin() as conn:
            conn.execute(insert(table).values(id=1, status=CacheStatus.FRESH.value))

        assert _matching_ids(engine, table, claimable_clause(table.c, NOW)) == {1}

    def test_active_lease_is_not_claimable(self, cache_table):
        engine, table = cache_table
        with engine.begin() as conn:
            conn.execute(
                insert(table).values(
                    id=1, status=CacheStatus.CALCULATING.value, lease_expires_at=FUTURE
                )
            )

        assert _matching_ids(engine, table, claimable_clause(table.c, NOW)) == set()


class TestPurgeableClause:
    """Tests for the SQL purge predicate."""

    def test_old_and_abandoned_rows_are_purged(self, cache_table):
        engine, table = cache_table
        old = NOW - timedelta(days=40)
        rows = [
            # expired long ago
            dict(id=1, status=CacheStatus.FRESH.value, expires_at=old, updated_at=NOW),
            # still fresh
            dict(id=2, status=CacheStatus.FRESH.value, expires_at=FUTURE, updated_at=old),
            # failed long ago, no expiry
            dict(id=3, status=CacheStatus.ERROR.value, last_attempt_at=old, updated_at=NOW),
            # stale with only an old update time
            dict(id=4, status=CacheStatus.STALE.value, updated_at=old),
            # lease lapsed long ago
            dict(id=5, status=CacheStatus.CALCULATING.value, lease_expires_at=old, updated_at=old),
            # lease still held
            dict(id=6, status=CacheStatus.CALCULATING.value, lease_expires_at=FUTURE, updated_at=old),
        ]
        with engine.begin() as conn:
            for row in rows:
                conn.execute(insert(table).values(**row))

        cutoff = NOW - timedelta(days=30)
        assert _matching_ids(engine, table, purgeable_clause(table.c, cutoff)) == {1, 3, 4, 5}
