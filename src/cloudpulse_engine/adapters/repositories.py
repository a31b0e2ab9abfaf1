"""SQLAlchemy repositories for the CloudPulse cost engine.

Repositories implement the interfaces in core/interfaces.py on top of the
injected Database handle. Every public method runs in its own transaction,
so a batch upsert commits or rolls back as a whole.
"""

import uuid
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite

from cloudpulse_engine.core.domain import CostDataPoint
from cloudpulse_engine.core.models import AlertChannel, AlertSent, CostRecord, Granularity
from cloudpulse_engine.database import Database, utcnow

logger = structlog.get_logger(__name__)

_UNIQUE_KEY = ("cloud_account_id", "service_name", "period_start", "period_end")
# Rows per INSERT; 1000 rows x 11 columns stays under 32767 bind parameters.
_UPSERT_CHUNK_ROWS = 1000


def _to_decimal(value: Any) -> Decimal:
    """Normalize a driver aggregate (Decimal, float, int or None) to Decimal."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class CostRecordRepository:
    """Repository for cost_records: idempotent per-service daily cost storage."""

    def __init__(self, database: Database) -> None:
        """Initialize with the shared database handle."""
        self._database = database

    def _insert(self) -> Any:
        """Dialect-specific INSERT construct that supports ON CONFLICT."""
        if self._database.dialect_name == "postgresql":
            return postgresql.insert(CostRecord)
        if self._database.dialect_name == "sqlite":
            return sqlite.insert(CostRecord)
        raise NotImplementedError(
            f"Upsert is not supported for dialect {self._database.dialect_name!r}"
        )

    @staticmethod
    def _collapse(points: Sequence[CostDataPoint]) -> list[CostDataPoint]:
        """Drop duplicate uniqueness keys inside one batch, keeping the last occurrence.

        A single ON CONFLICT statement may not touch the same row twice.
        """
        latest: dict[tuple[str, date, date], CostDataPoint] = {}
        for point in points:
            latest[(point.service_name, point.period_start, point.period_end)] = point
        return list(latest.values())

    async def upsert_batch(
        self,
        cloud_account_id: str,
        project_id: str,
        points: Sequence[CostDataPoint],
        granularity: Granularity = Granularity.DAILY,
    ) -> int:
        """Upsert every data point of one fetch in a single transaction.

        Rows matching (account, service, period_start, period_end) have their
        amount and currency overwritten (last write wins); new keys are
        inserted with the project id stamped on. Large batches are sent in
        chunks of ``_UPSERT_CHUNK_ROWS`` to stay under driver bind-parameter
        limits; all chunks commit or roll back together.

        Args:
            cloud_account_id: Account the points were fetched for.
            project_id: Project owning the account, resolved once by the caller.
            points: Data points returned by the cost source.
            granularity: Granularity stamped on every row.

        Returns:
            Number of distinct records written.
        """
        rows = self._collapse(points)
        if not rows:
            return 0

        now = utcnow()
        values = [
            {
                "id": uuid.uuid4(),
                "cloud_account_id": cloud_account_id,
                "project_id": project_id,
                "service_name": point.service_name,
                "amount": point.amount,
                "currency": point.currency,
                "period_start": point.period_start,
                "period_end": point.period_end,
                "granularity": granularity,
                "created_at": now,
                "updated_at": now,
            }
            for point in rows
        ]

        async with self._database.session() as session:
            for offset in range(0, len(values), _UPSERT_CHUNK_ROWS):
                stmt = self._insert().values(values[offset : offset + _UPSERT_CHUNK_ROWS])
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(_UNIQUE_KEY),
                    set_={
                        "amount": stmt.excluded.amount,
                        "currency": stmt.excluded.currency,
                        "granularity": stmt.excluded.granularity,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)

        logger.debug(
            "cost_records_upserted",
            cloud_account_id=cloud_account_id,
            project_id=project_id,
            records=len(rows),
        )
        return len(rows)

    async def upsert(
        self,
        cloud_account_id: str,
        project_id: str,
        service_name: str,
        amount: Decimal,
        currency: str,
        period_start: date,
        period_end: date,
        granularity: Granularity = Granularity.DAILY,
    ) -> uuid.UUID:
        """Upsert a single data point and return the id of the stored row."""
        point = CostDataPoint(
            service_name=service_name,
            amount=amount,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
        )
        await self.upsert_batch(cloud_account_id, project_id, [point], granularity=granularity)

        query = select(CostRecord.id).where(
            CostRecord.cloud_account_id == cloud_account_id,
            CostRecord.service_name == service_name,
            CostRecord.period_start == period_start,
            CostRecord.period_end == period_end,
        )
        async with self._database.session() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def query(
        self,
        cloud_account_id: str,
        period_start: date | None = None,
        period_end: date | None = None,
        limit: int = 500,
    ) -> list[CostRecord]:
        """List cost records for an account.

        Args:
            cloud_account_id: Account filter.
            period_start: Only records starting on or after this date.
            period_end: Only records ending on or before this date.
            limit: Maximum rows returned (capped at 500).

        Returns:
            CostRecord objects ordered by period_start descending.
        """
        query = (
            select(CostRecord)
            .where(CostRecord.cloud_account_id == cloud_account_id)
            .order_by(CostRecord.period_start.desc(), CostRecord.service_name)
            .limit(min(limit, 500))
        )
        if period_start is not None:
            query = query.where(CostRecord.period_start >= period_start)
        if period_end is not None:
            query = query.where(CostRecord.period_end <= period_end)

        async with self._database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def sum_for_project(
        self,
        project_id: str,
        start: date,
        end: date | None = None,
    ) -> Decimal:
        """Sum amounts of a project's records whose period starts in [start, end).

        Args:
            project_id: Project filter (denormalized column, no join).
            start: Inclusive lower bound on period_start.
            end: Exclusive upper bound on period_start; open-ended when None.

        Returns:
            Total amount, Decimal("0") if no records match.
        """
        query = select(func.coalesce(func.sum(CostRecord.amount), 0)).where(
            CostRecord.project_id == project_id,
            CostRecord.period_start >= start,
        )
        if end is not None:
            query = query.where(CostRecord.period_start < end)

        async with self._database.session() as session:
            result = await session.execute(query)
            return _to_decimal(result.scalar())


class AlertSentRepository:
    """Repository for alerts_sent: append-only notification history."""

    def __init__(self, database: Database) -> None:
        """Initialize with the shared database handle."""
        self._database = database

    async def has_recent(
        self,
        alert_rule_id: str,
        since: datetime,
        reason: str | None = None,
        alert_type: str | None = None,
    ) -> bool:
        """Check whether a matching alert for a rule was sent at or after ``since``.

        Args:
            alert_rule_id: Rule the alert was raised by.
            since: Start of the dedup window.
            reason: Exact reason text to match, if given.
            alert_type: Payload kind tag to match, if given.

        Returns:
            True when at least one matching row exists.
        """
        query = (
            select(AlertSent.id)
            .where(
                AlertSent.alert_rule_id == alert_rule_id,
                AlertSent.sent_at >= since,
            )
            .limit(1)
        )
        if reason is not None:
            query = query.where(AlertSent.reason == reason)
        if alert_type is not None:
            query = query.where(AlertSent.alert_type == alert_type)

        async with self._database.session() as session:
            result = await session.execute(query)
            return result.first() is not None

    async def record(
        self,
        user_id: str,
        project_id: str,
        alert_rule_id: str,
        channel: AlertChannel,
        alert_type: str,
        reason: str,
        payload: dict[str, Any],
        sent_at: datetime,
    ) -> AlertSent:
        """Append one delivered-notification row.

        Returns:
            The persisted AlertSent.
        """
        row = AlertSent(
            id=uuid.uuid4(),
            user_id=user_id,
            project_id=project_id,
            alert_rule_id=alert_rule_id,
            channel=channel,
            alert_type=alert_type,
            reason=reason,
            payload=payload,
            sent_at=sent_at,
        )
        async with self._database.session() as session:
            session.add(row)
        return row

    async def list_history(
        self,
        user_id: str,
        project_id: str,
        limit: int = 50,
    ) -> list[AlertSent]:
        """List sent alerts for a user's project, newest first."""
        query = (
            select(AlertSent)
            .where(AlertSent.user_id == user_id, AlertSent.project_id == project_id)
            .order_by(AlertSent.sent_at.desc())
            .limit(limit)
        )
        async with self._database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
