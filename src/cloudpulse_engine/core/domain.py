"""Plain domain types exchanged between the engine's services and collaborators.

None of these are persisted by the engine itself. Collaborator records
(credentials, accounts, projects, rules) are supplied by external services;
summaries, spike results and triggers are computed fresh on every pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal

from pydantic import AfterValidator, AnyHttpUrl, BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CloudCredentials:
    """Decrypted provider credentials for one cloud account.

    Held in memory for a single fetch and never persisted.
    """

    provider: str
    external_account_id: str
    role_arn: str | None = None
    access_key: str | None = None
    secret_key: str | None = None

    def __repr__(self) -> str:
        return (
            f"CloudCredentials(provider={self.provider!r}, "
            f"external_account_id={self.external_account_id!r}, "
            f"role_arn={self.role_arn!r}, access_key=***, secret_key=***)"
        )


@dataclass(frozen=True)
class CloudAccountRef:
    """A cloud account as seen by the engine."""

    id: str
    project_id: str
    label: str
    is_active: bool = True


@dataclass(frozen=True)
class ProjectOwner:
    """A project together with the user who owns it."""

    project_id: str
    project_name: str
    user_id: str
    user_email: str | None
    user_name: str | None = None


WebhookUrl = Annotated[AnyHttpUrl, AfterValidator(str)]


class AlertRuleDraft(BaseModel):
    """An alert rule a caller wants to create, validated on construction.

    A rule needs at least one condition. Budgets must be positive and the
    spike threshold is a whole percentage between 10 and 1000.
    """

    model_config = ConfigDict(frozen=True)

    project_id: str = Field(..., min_length=1)
    daily_budget: Decimal | None = Field(default=None, gt=0)
    monthly_budget: Decimal | None = Field(default=None, gt=0)
    spike_threshold_pct: int | None = Field(default=None, ge=10, le=1000, strict=True)
    email_enabled: bool = True
    slack_webhook_url: WebhookUrl | None = None

    @model_validator(mode="after")
    def _require_condition(self) -> AlertRuleDraft:
        if self.daily_budget is None and self.monthly_budget is None and self.spike_threshold_pct is None:
            raise ValueError(
                "At least one alert condition is required (daily_budget, monthly_budget, or spike_threshold_pct)"
            )
        return self


@dataclass(frozen=True)
class AlertRule:
    """A stored alert rule. Read-only to the evaluator and dispatcher."""

    id: str
    project_id: str
    daily_budget: Decimal | None = None
    monthly_budget: Decimal | None = None
    spike_threshold_pct: int | None = None
    email_enabled: bool = True
    slack_webhook_url: str | None = None


@dataclass(frozen=True)
class CostDataPoint:
    """One per-service cost amount returned by a cost data source."""

    service_name: str
    amount: Decimal
    currency: str
    period_start: date
    period_end: date


# ---------------------------------------------------------------------------
# Computed results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch-and-store run for one account."""

    records_upserted: int
    start_date: date
    end_date: date


@dataclass(frozen=True)
class CostSummary:
    """Today spend, month-to-date spend and naive month forecast for a project."""

    today_spend: Decimal
    month_spend: Decimal
    month_forecast: Decimal


@dataclass(frozen=True)
class SpikeResult:
    """Today's spend compared to the trailing daily average."""

    today_spend: Decimal
    daily_avg: Decimal
    pct_increase: int


# ---------------------------------------------------------------------------
# Trigger payloads (tagged union)
# ---------------------------------------------------------------------------

AlertKind = Literal["daily_budget", "monthly_budget", "forecast_warning", "spike"]


@dataclass(frozen=True)
class DailyBudgetExceeded:
    spend: Decimal
    budget: Decimal

    kind: ClassVar[AlertKind] = "daily_budget"

    def snapshot(self) -> dict[str, Any]:
        return {"type": self.kind, "todaySpend": float(self.spend), "budget": float(self.budget)}


@dataclass(frozen=True)
class MonthlyBudgetExceeded:
    spend: Decimal
    budget: Decimal

    kind: ClassVar[AlertKind] = "monthly_budget"

    def snapshot(self) -> dict[str, Any]:
        return {"type": self.kind, "monthSpend": float(self.spend), "budget": float(self.budget)}


@dataclass(frozen=True)
class ForecastWarning:
    forecast: Decimal
    budget: Decimal

    kind: ClassVar[AlertKind] = "forecast_warning"

    def snapshot(self) -> dict[str, Any]:
        return {"type": self.kind, "forecast": float(self.forecast), "budget": float(self.budget)}


@dataclass(frozen=True)
class SpikeDetected:
    today: Decimal
    avg: Decimal
    pct_increase: int

    kind: ClassVar[AlertKind] = "spike"

    def snapshot(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "todaySpend": float(self.today),
            "dailyAvg": float(self.avg),
            "pctIncrease": self.pct_increase,
        }


AlertPayload = DailyBudgetExceeded | MonthlyBudgetExceeded | ForecastWarning | SpikeDetected


@dataclass(frozen=True)
class AlertTrigger:
    """A rule condition met during one evaluation pass. Never persisted."""

    rule: AlertRule
    reason: str
    payload: AlertPayload

    @property
    def rule_id(self) -> str:
        return self.rule.id

    @property
    def kind(self) -> AlertKind:
        return self.payload.kind


# ---------------------------------------------------------------------------
# Cycle reporting
# ---------------------------------------------------------------------------


@dataclass
class AccountFetchOutcome:
    """Per-account result inside one scheduled cycle."""

    account_id: str
    label: str
    records_upserted: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class CycleReport:
    """Summary of one scheduled fetch + evaluate + dispatch cycle."""

    start_date: date
    end_date: date
    accounts: list[AccountFetchOutcome] = field(default_factory=list)
    projects_evaluated: list[str] = field(default_factory=list)
    project_failures: dict[str, str] = field(default_factory=dict)
    triggers_raised: int = 0

    @property
    def accounts_processed(self) -> int:
        return len(self.accounts)

    @property
    def accounts_failed(self) -> int:
        return sum(1 for outcome in self.accounts if not outcome.succeeded)

    def as_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "accounts_processed": self.accounts_processed,
            "accounts_failed": self.accounts_failed,
            "projects_evaluated": len(self.projects_evaluated),
            "project_failures": len(self.project_failures),
            "triggers_raised": self.triggers_raised,
        }
