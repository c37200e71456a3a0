"""Risk snapshots repository. Rows are immutable once written."""

from __future__ import annotations

import dataclasses
from datetime import date

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import RiskSnapshot

from .stores import RiskSnapshotRecord, SnapshotStore


async def insert_snapshot(snapshot: RiskSnapshotRecord) -> bool:
    """Insert a snapshot; an existing row for the same subject and date wins."""
    async with get_session() as session:
        stmt = (
            insert(RiskSnapshot)
            .values(**dataclasses.asdict(snapshot))
            .on_conflict_do_nothing(
                index_elements=["subject_type", "subject", "snapshot_date"]
            )
            .returning(RiskSnapshot.id)
        )
        result = await session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await session.commit()
        return inserted


async def get_snapshot(
    subject_type: str, subject: str, snapshot_date: date
) -> RiskSnapshotRecord | None:
    async with get_session() as session:
        result = await session.execute(
            select(RiskSnapshot).where(
                RiskSnapshot.subject_type == subject_type,
                RiskSnapshot.subject == subject,
                RiskSnapshot.snapshot_date == snapshot_date,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return RiskSnapshotRecord(
            **{f.name: getattr(row, f.name) for f in dataclasses.fields(RiskSnapshotRecord)}
        )


class SqlSnapshotStore(SnapshotStore):

    async def save(self, snapshot: RiskSnapshotRecord) -> bool:
        return await insert_snapshot(snapshot)

    async def get(self, subject_type, subject, snapshot_date):
        return await get_snapshot(subject_type, subject, snapshot_date)
