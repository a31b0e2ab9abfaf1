"""Shared test fixtures for cloudpulse-engine tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

from collections.abc import AsyncGenerator
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from cloudpulse_engine.adapters.repositories import AlertSentRepository, CostRecordRepository
from cloudpulse_engine.core.domain import (
    AlertRule,
    CloudAccountRef,
    CloudCredentials,
    CostDataPoint,
    ProjectOwner,
)
from cloudpulse_engine.database import Database
from cloudpulse_engine.settings import Settings


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://redis-test:6379/0",
        scheduler_enabled=False,
        provider_timeout_seconds=2.0,
        shutdown_grace_seconds=1.0,
        smtp_host="smtp-test",
        log_json=False,
    )


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time (day 5 of a 31-day month)."""
    return datetime(2026, 3, 5, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def today(now: datetime) -> date:
    return now.date()


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database with both owned tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'cloudpulse-test.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def cost_repo(database: Database) -> CostRecordRepository:
    return CostRecordRepository(database)


@pytest.fixture
def alert_repo(database: Database) -> AlertSentRepository:
    return AlertSentRepository(database)


def make_point(service_name: str, amount: str, day: date, currency: str = "USD") -> CostDataPoint:
    """Build a one-day cost data point."""
    return CostDataPoint(
        service_name=service_name,
        amount=Decimal(amount),
        currency=currency,
        period_start=day,
        period_end=date.fromordinal(day.toordinal() + 1),
    )


def make_rule(rule_id: str = "rule-1", project_id: str = "proj-1", **overrides: object) -> AlertRule:
    """Build an alert rule with email enabled and no conditions unless overridden."""
    return AlertRule(id=rule_id, project_id=project_id, **overrides)  # type: ignore[arg-type]


@pytest.fixture
def account() -> CloudAccountRef:
    return CloudAccountRef(id="acct-1", project_id="proj-1", label="Production AWS")


@pytest.fixture
def aws_credentials() -> CloudCredentials:
    return CloudCredentials(
        provider="AWS",
        external_account_id="123456789012",
        role_arn="arn:aws:iam::123456789012:role/CloudPulseReadOnly",
    )


@pytest.fixture
def owner() -> ProjectOwner:
    return ProjectOwner(
        project_id="proj-1",
        project_name="Checkout",
        user_id="user-1",
        user_email="ops@example.com",
        user_name="Dana",
    )


@pytest.fixture
def account_directory(account: CloudAccountRef) -> AsyncMock:
    """Mock cloud account directory holding a single active account."""
    directory = AsyncMock()
    directory.get_account = AsyncMock(return_value=account)
    directory.list_active_accounts = AsyncMock(return_value=[account])
    return directory


@pytest.fixture
def credential_provider(aws_credentials: CloudCredentials) -> AsyncMock:
    provider = AsyncMock()
    provider.get_decrypted_credentials = AsyncMock(return_value=aws_credentials)
    return provider


@pytest.fixture
def project_directory(owner: ProjectOwner) -> AsyncMock:
    directory = AsyncMock()
    directory.get_project_owner = AsyncMock(return_value=owner)
    return directory


@pytest.fixture
def rule_repository() -> AsyncMock:
    repo = AsyncMock()
    repo.list_by_project = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def email_channel() -> AsyncMock:
    channel = AsyncMock()
    channel.send_alert_email = AsyncMock(return_value=None)
    return channel


@pytest.fixture
def webhook_channel() -> AsyncMock:
    channel = AsyncMock()
    channel.send_alert = AsyncMock(return_value=200)
    return channel
