"""SQLAlchemy ORM models owned by the CloudPulse cost engine.

Only two tables belong to the engine:
  CostRecord: one provider cost data point per (account, service, period)
  AlertSent:  append-only history of delivered notifications, one row per channel

Projects, cloud accounts, users and alert rules live in external CRUD
services and are referenced here by id only (no foreign keys).
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from cloudpulse_engine.database import Base, TimestampedModel, utcnow


class Granularity(str, enum.Enum):
    """Time resolution of a cost record. Only daily records are ingested."""

    DAILY = "DAILY"


class AlertChannel(str, enum.Enum):
    """Notification delivery channels."""

    EMAIL = "EMAIL"
    SLACK = "SLACK"


class CostRecord(TimestampedModel):
    """Amount billed by one provider service over a half-open date period.

    Unique per (cloud_account_id, service_name, period_start, period_end);
    re-fetching the same window overwrites amount and currency.

    Table: cost_records
    """

    __tablename__ = "cost_records"

    cloud_account_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="External cloud account id",
    )
    project_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Owning project, denormalized from the account at fetch time",
    )
    service_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Provider service dimension, e.g. Amazon Elastic Compute Cloud - Compute",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 10),
        nullable=False,
        comment="Unblended cost for the period",
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )
    period_start: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Period start (inclusive, UTC calendar date)",
    )
    period_end: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Period end (exclusive, UTC calendar date)",
    )
    granularity: Mapped[Granularity] = mapped_column(
        Enum(Granularity, name="cost_granularity"),
        nullable=False,
        default=Granularity.DAILY,
    )

    __table_args__ = (
        UniqueConstraint(
            "cloud_account_id",
            "service_name",
            "period_start",
            "period_end",
            name="uq_cost_records_account_service_period",
        ),
        Index("ix_cost_records_project_period", "project_id", "period_start"),
        Index("ix_cost_records_account_period", "cloud_account_id", "period_start"),
    )


class AlertSent(Base):
    """One successfully delivered notification on one channel.

    Written only by the notification dispatcher after a confirmed send and
    read for deduplication and history display. Never updated.

    Table: alerts_sent
    """

    __tablename__ = "alerts_sent"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[AlertChannel] = mapped_column(
        Enum(AlertChannel, name="alert_channel"),
        nullable=False,
    )
    alert_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="daily_budget | monthly_budget | forecast_warning | spike",
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_alerts_sent_rule_sent_at", "alert_rule_id", "sent_at"),
        Index("ix_alerts_sent_user_project", "user_id", "project_id", "sent_at"),
    )
