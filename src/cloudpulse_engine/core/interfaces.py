"""Abstract interfaces (Protocol classes) for the CloudPulse cost engine.

Services depend on these interfaces, not on concrete implementations. The
collaborators that own projects, accounts, credentials and rules live
outside the engine and are reached only through the protocols below, which
also keeps SQLAlchemy, Redis, SMTP and boto3 out of the service layer.
"""

from collections.abc import Awaitable, Callable, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from cloudpulse_engine.core.domain import (
    AlertPayload,
    AlertRule,
    AlertRuleDraft,
    CloudAccountRef,
    CloudCredentials,
    CostDataPoint,
    CycleReport,
    ProjectOwner,
)
from cloudpulse_engine.core.models import AlertChannel, AlertSent, CostRecord, Granularity


# ---------------------------------------------------------------------------
# Owned persistence
# ---------------------------------------------------------------------------


@runtime_checkable
class ICostRecordRepository(Protocol):
    """Durable keyed storage for cost data points."""

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
    ) -> Any:
        """Insert or overwrite one record and return its id."""
        ...

    async def upsert_batch(
        self,
        cloud_account_id: str,
        project_id: str,
        points: Sequence[CostDataPoint],
        granularity: Granularity = Granularity.DAILY,
    ) -> int:
        """Atomically upsert every point of one fetch; returns rows written."""
        ...

    async def query(
        self,
        cloud_account_id: str,
        period_start: date | None = None,
        period_end: date | None = None,
        limit: int = 500,
    ) -> list[CostRecord]:
        """List an account's records, newest period first."""
        ...

    async def sum_for_project(
        self,
        project_id: str,
        start: date,
        end: date | None = None,
    ) -> Decimal:
        """Sum amounts for records with start <= period_start < end."""
        ...


@runtime_checkable
class IAlertSentRepository(Protocol):
    """Append-only history of delivered notifications."""

    async def has_recent(
        self,
        alert_rule_id: str,
        since: datetime,
        reason: str | None = None,
        alert_type: str | None = None,
    ) -> bool:
        """True if a matching row for the rule was sent at or after ``since``."""
        ...

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
        """Append one delivered-notification row."""
        ...

    async def list_history(
        self,
        user_id: str,
        project_id: str,
        limit: int = 50,
    ) -> list[AlertSent]:
        """List a user's sent alerts for a project, newest first."""
        ...


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


@runtime_checkable
class ICredentialProvider(Protocol):
    """Decrypts stored cloud account credentials on demand."""

    async def get_decrypted_credentials(self, account_id: str) -> CloudCredentials:
        """Return decrypted credentials. Raises NotFoundError for unknown accounts."""
        ...


@runtime_checkable
class ICloudAccountDirectory(Protocol):
    """Read access to cloud account records."""

    async def get_account(self, account_id: str) -> CloudAccountRef | None:
        """Return the account, or None if it does not exist."""
        ...

    async def list_active_accounts(self) -> list[CloudAccountRef]:
        """Return every account flagged active."""
        ...


@runtime_checkable
class IProjectDirectory(Protocol):
    """Read access to projects and their owning users."""

    async def get_project_owner(self, project_id: str) -> ProjectOwner | None:
        """Return the project with its owner, or None if it was deleted."""
        ...


@runtime_checkable
class IAlertRuleRepository(Protocol):
    """Alert rule storage owned by the external CRUD service."""

    async def list_by_project(self, project_id: str) -> list[AlertRule]:
        """Return every rule attached to a project."""
        ...

    async def create(self, draft: AlertRuleDraft) -> AlertRule:
        """Persist an already-validated rule."""
        ...


@runtime_checkable
class ICostDataSource(Protocol):
    """A provider billing API able to report per-service daily costs."""

    async def fetch_costs_by_service(
        self,
        credentials: CloudCredentials,
        start_date: date,
        end_date: date,
    ) -> list[CostDataPoint]:
        """Fetch non-zero per-service costs for [start_date, end_date)."""
        ...


# ---------------------------------------------------------------------------
# Notification channels
# ---------------------------------------------------------------------------


@runtime_checkable
class IEmailChannel(Protocol):
    """Outbound alert email transport."""

    async def send_alert_email(
        self,
        to: str,
        user_name: str | None,
        project_name: str,
        reason: str,
        payload: AlertPayload,
    ) -> None:
        """Send one alert email. Raises ChannelDeliveryError on failure."""
        ...


@runtime_checkable
class IWebhookChannel(Protocol):
    """Outbound chat-ops webhook transport."""

    async def send_alert(
        self,
        webhook_url: str,
        project_name: str,
        reason: str,
        payload: AlertPayload,
    ) -> int:
        """POST one alert and return the HTTP status code."""
        ...


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

CycleJob = Callable[[], Awaitable[CycleReport]]


@runtime_checkable
class ISchedulerBackend(Protocol):
    """Drives the cost cycle job on a fixed interval, one run at a time."""

    name: str

    async def start(self, job: CycleJob) -> None:
        """Begin scheduling ``job``. Returns once the schedule is running."""
        ...

    async def stop(self) -> None:
        """Stop accepting new runs and drain the in-flight one."""
        ...
