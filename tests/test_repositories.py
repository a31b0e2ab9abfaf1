"""Store tests for the SQLAlchemy repositories (SQLite via aiosqlite).

Exercises the real upsert statement, uniqueness key and aggregate queries;
the PostgreSQL dialect uses the same ON CONFLICT construct.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from cloudpulse_engine.adapters.repositories import AlertSentRepository, CostRecordRepository
from cloudpulse_engine.core.models import AlertChannel, CostRecord, Granularity
from cloudpulse_engine.database import Database
from conftest import make_point


async def _count_records(database: Database) -> int:
    async with database.session() as session:
        result = await session.execute(select(func.count()).select_from(CostRecord))
        return result.scalar_one()


# ---------------------------------------------------------------------------
# CostRecordRepository
# ---------------------------------------------------------------------------


class TestCostRecordRepository:
    """Tests for CostRecordRepository."""

    @pytest.mark.asyncio
    async def test_upsert_batch_is_idempotent_and_last_write_wins(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
        today: date,
    ) -> None:
        """Re-fetching the same window overwrites amounts instead of duplicating rows."""
        first = [make_point("Amazon EC2", "10.25", today), make_point("Amazon S3", "2.5", today)]
        second = [make_point("Amazon EC2", "12.75", today), make_point("Amazon S3", "2.5", today)]

        assert await cost_repo.upsert_batch("acct-1", "proj-1", first) == 2
        assert await cost_repo.upsert_batch("acct-1", "proj-1", second) == 2

        assert await _count_records(database) == 2
        records = await cost_repo.query("acct-1")
        amounts = {record.service_name: record.amount for record in records}
        assert amounts["Amazon EC2"] == Decimal("12.75")
        assert amounts["Amazon S3"] == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_upsert_batch_collapses_duplicate_keys_keeping_last(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
        today: date,
    ) -> None:
        points = [
            make_point("AWS Lambda", "1.0", today),
            make_point("AWS Lambda", "4.0", today),
        ]

        written = await cost_repo.upsert_batch("acct-1", "proj-1", points)

        assert written == 1
        assert await _count_records(database) == 1
        [record] = await cost_repo.query("acct-1")
        assert record.amount == Decimal("4.0")

    @pytest.mark.asyncio
    async def test_upsert_batch_with_no_points_writes_nothing(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
    ) -> None:
        assert await cost_repo.upsert_batch("acct-1", "proj-1", []) == 0
        assert await _count_records(database) == 0

    @pytest.mark.asyncio
    async def test_same_service_on_different_accounts_are_distinct(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
        today: date,
    ) -> None:
        await cost_repo.upsert_batch("acct-1", "proj-1", [make_point("Amazon EC2", "5", today)])
        await cost_repo.upsert_batch("acct-2", "proj-1", [make_point("Amazon EC2", "7", today)])

        assert await _count_records(database) == 2

    @pytest.mark.asyncio
    async def test_single_upsert_returns_stable_id(
        self,
        cost_repo: CostRecordRepository,
        today: date,
    ) -> None:
        kwargs = {
            "cloud_account_id": "acct-1",
            "project_id": "proj-1",
            "service_name": "Amazon RDS",
            "currency": "USD",
            "period_start": today,
            "period_end": today + timedelta(days=1),
        }

        first_id = await cost_repo.upsert(amount=Decimal("3"), **kwargs)
        second_id = await cost_repo.upsert(amount=Decimal("8"), **kwargs)

        assert first_id == second_id
        [record] = await cost_repo.query("acct-1")
        assert record.amount == Decimal("8")
        assert record.project_id == "proj-1"
        assert record.granularity == Granularity.DAILY

    @pytest.mark.asyncio
    async def test_single_upsert_passes_granularity_to_batch(
        self,
        cost_repo: CostRecordRepository,
        today: date,
    ) -> None:
        with patch.object(cost_repo, "upsert_batch", wraps=cost_repo.upsert_batch) as batch:
            await cost_repo.upsert(
                cloud_account_id="acct-1",
                project_id="proj-1",
                service_name="Amazon RDS",
                amount=Decimal("3"),
                currency="USD",
                period_start=today,
                period_end=today + timedelta(days=1),
                granularity=Granularity.DAILY,
            )

        assert batch.await_args.kwargs["granularity"] is Granularity.DAILY

    @pytest.mark.asyncio
    async def test_large_batch_is_written_in_chunks(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
        today: date,
    ) -> None:
        points = [make_point(f"service-{index}", "1", today) for index in range(7)]

        with patch("cloudpulse_engine.adapters.repositories._UPSERT_CHUNK_ROWS", 3):
            with patch.object(cost_repo, "_insert", wraps=cost_repo._insert) as insert:
                written = await cost_repo.upsert_batch("acct-1", "proj-1", points)

        assert written == 7
        assert insert.call_count == 3
        assert await _count_records(database) == 7

    @pytest.mark.asyncio
    async def test_failed_chunk_rolls_back_the_whole_batch(
        self,
        cost_repo: CostRecordRepository,
        database: Database,
        today: date,
    ) -> None:
        points = [make_point(f"service-{index}", "1", today) for index in range(6)]
        real_insert = cost_repo._insert
        calls: list[int] = []

        def _insert_then_fail() -> Any:
            calls.append(1)
            if len(calls) > 1:
                raise RuntimeError("connection dropped")
            return real_insert()

        with patch("cloudpulse_engine.adapters.repositories._UPSERT_CHUNK_ROWS", 3):
            with patch.object(cost_repo, "_insert", side_effect=_insert_then_fail):
                with pytest.raises(RuntimeError):
                    await cost_repo.upsert_batch("acct-1", "proj-1", points)

        assert await _count_records(database) == 0

    @pytest.mark.asyncio
    async def test_query_orders_newest_period_first_and_applies_filters(
        self,
        cost_repo: CostRecordRepository,
        today: date,
    ) -> None:
        days = [today - timedelta(days=offset) for offset in range(4)]
        await cost_repo.upsert_batch(
            "acct-1",
            "proj-1",
            [make_point("Amazon EC2", "1", day) for day in days],
        )

        records = await cost_repo.query("acct-1")
        assert [record.period_start for record in records] == days

        window = await cost_repo.query("acct-1", period_start=days[2], period_end=today)
        assert [record.period_start for record in window] == [days[1], days[2]]

        limited = await cost_repo.query("acct-1", limit=2)
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_sum_for_project_uses_half_open_window(
        self,
        cost_repo: CostRecordRepository,
        today: date,
    ) -> None:
        yesterday = today - timedelta(days=1)
        await cost_repo.upsert_batch(
            "acct-1",
            "proj-1",
            [
                make_point("Amazon EC2", "40", today),
                make_point("Amazon S3", "10", today),
                make_point("Amazon EC2", "25", yesterday),
            ],
        )
        await cost_repo.upsert_batch("acct-9", "proj-other", [make_point("Amazon EC2", "999", today)])

        assert await cost_repo.sum_for_project("proj-1", today) == Decimal("50")
        assert await cost_repo.sum_for_project("proj-1", yesterday) == Decimal("75")
        assert await cost_repo.sum_for_project("proj-1", yesterday, today) == Decimal("25")
        assert await cost_repo.sum_for_project("proj-missing", yesterday) == Decimal("0")


# ---------------------------------------------------------------------------
# AlertSentRepository
# ---------------------------------------------------------------------------


class TestAlertSentRepository:
    """Tests for AlertSentRepository."""

    async def _record(
        self,
        repo: AlertSentRepository,
        sent_at: datetime,
        reason: str = "Daily budget exceeded: $150.00 > $100.00",
        alert_type: str = "daily_budget",
        channel: AlertChannel = AlertChannel.EMAIL,
    ) -> None:
        await repo.record(
            user_id="user-1",
            project_id="proj-1",
            alert_rule_id="rule-1",
            channel=channel,
            alert_type=alert_type,
            reason=reason,
            payload={"type": alert_type},
            sent_at=sent_at,
        )

    @pytest.mark.asyncio
    async def test_has_recent_respects_window_reason_and_type(
        self,
        alert_repo: AlertSentRepository,
        now: datetime,
    ) -> None:
        await self._record(alert_repo, now - timedelta(hours=1))

        window_start = now - timedelta(hours=6)
        assert await alert_repo.has_recent("rule-1", window_start)
        assert await alert_repo.has_recent(
            "rule-1", window_start, reason="Daily budget exceeded: $150.00 > $100.00"
        )
        assert not await alert_repo.has_recent("rule-1", window_start, reason="Daily budget exceeded: $160.00 > $100.00")
        assert await alert_repo.has_recent("rule-1", window_start, alert_type="daily_budget")
        assert not await alert_repo.has_recent("rule-1", window_start, alert_type="spike")
        assert not await alert_repo.has_recent("rule-2", window_start)
        assert not await alert_repo.has_recent("rule-1", now)

    @pytest.mark.asyncio
    async def test_list_history_newest_first_with_limit(
        self,
        alert_repo: AlertSentRepository,
        now: datetime,
    ) -> None:
        for hours_ago in (5, 1, 3):
            await self._record(alert_repo, now - timedelta(hours=hours_ago), reason=f"sent {hours_ago}h ago")

        history = await alert_repo.list_history("user-1", "proj-1")
        assert [row.reason for row in history] == ["sent 1h ago", "sent 3h ago", "sent 5h ago"]

        assert len(await alert_repo.list_history("user-1", "proj-1", limit=2)) == 2
        assert await alert_repo.list_history("user-2", "proj-1") == []

    @pytest.mark.asyncio
    async def test_record_persists_channel_and_payload(
        self,
        alert_repo: AlertSentRepository,
        now: datetime,
    ) -> None:
        await self._record(alert_repo, now, channel=AlertChannel.SLACK, alert_type="spike")

        [row] = await alert_repo.list_history("user-1", "proj-1")
        assert row.channel == AlertChannel.SLACK
        assert row.alert_type == "spike"
        assert row.payload == {"type": "spike"}
