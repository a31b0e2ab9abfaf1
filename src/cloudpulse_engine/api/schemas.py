"""Pydantic request and response schemas for the CloudPulse engine API.

All API inputs and outputs are typed Pydantic models, never raw dicts.
Alert rule constraints live on AlertRuleDraft and are applied by
AlertRuleService for every caller; these schemas only enforce shape.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from cloudpulse_engine.core.models import AlertChannel, Granularity


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


class FetchCostsRequest(BaseModel):
    """Request body for an on-demand cost fetch."""

    cloud_account_id: str = Field(..., min_length=1)
    start_date: date = Field(..., description="First day of the window (inclusive)")
    end_date: date = Field(..., description="Day after the last day of the window (exclusive)")


class FetchCostsResponse(BaseModel):
    """Result of an on-demand cost fetch."""

    records_upserted: int
    start_date: date
    end_date: date

    model_config = {"from_attributes": True}


class CostRecordResponse(BaseModel):
    """Response schema for a single cost record."""

    id: uuid.UUID
    cloud_account_id: str
    project_id: str
    service_name: str
    amount: Decimal
    currency: str
    period_start: date
    period_end: date
    granularity: Granularity
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CostSummaryResponse(BaseModel):
    """Today spend, month-to-date spend and linear month forecast."""

    project_id: str
    today_spend: Decimal
    month_spend: Decimal
    month_forecast: Decimal


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class CreateAlertRuleRequest(BaseModel):
    """Request body for creating an alert rule."""

    project_id: str = Field(..., min_length=1)
    daily_budget: Decimal | None = None
    monthly_budget: Decimal | None = None
    spike_threshold_pct: int | None = None
    email_enabled: bool = True
    slack_webhook_url: str | None = None


class AlertRuleResponse(BaseModel):
    """Response schema for a stored alert rule."""

    id: str
    project_id: str
    daily_budget: Decimal | None
    monthly_budget: Decimal | None
    spike_threshold_pct: int | None
    email_enabled: bool
    slack_webhook_url: str | None

    model_config = {"from_attributes": True}


class AlertSentResponse(BaseModel):
    """Response schema for one delivered notification."""

    id: uuid.UUID
    user_id: str
    project_id: str
    alert_rule_id: str
    channel: AlertChannel
    alert_type: str
    reason: str
    payload: dict[str, Any]
    sent_at: datetime

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    """Liveness probe body."""

    status: str = "ok"
    service: str
    scheduler_backend: str | None
