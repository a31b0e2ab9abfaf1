"""FastAPI router for the CloudPulse engine API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here.

Endpoints:
  POST   /api/v1/costs/fetch                     Fetch and store costs for one account
  GET    /api/v1/costs                           Stored cost records for one account
  GET    /api/v1/costs/summary/{project_id}      Today / month-to-date / forecast
  GET    /api/v1/alerts/history                  Sent alerts for a user's project
  POST   /api/v1/alerts/rules                    Validate and create an alert rule
"""

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from cloudpulse_engine.api.schemas import (
    AlertRuleResponse,
    AlertSentResponse,
    CostRecordResponse,
    CostSummaryResponse,
    CreateAlertRuleRequest,
    FetchCostsRequest,
    FetchCostsResponse,
)
from cloudpulse_engine.core.services import (
    AlertRuleService,
    CostAggregationService,
    CostFetchService,
    NotificationDispatcher,
)
from cloudpulse_engine.runtime import CostEngineRuntime

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def _get_runtime(request: Request) -> CostEngineRuntime:
    return request.app.state.runtime


def _get_fetch_service(
    runtime: Annotated[CostEngineRuntime, Depends(_get_runtime)],
) -> CostFetchService:
    return runtime.fetch_service


def _get_aggregation_service(
    runtime: Annotated[CostEngineRuntime, Depends(_get_runtime)],
) -> CostAggregationService:
    return runtime.aggregation


def _get_dispatcher(
    runtime: Annotated[CostEngineRuntime, Depends(_get_runtime)],
) -> NotificationDispatcher:
    return runtime.dispatcher


def _get_rule_service(
    runtime: Annotated[CostEngineRuntime, Depends(_get_runtime)],
) -> AlertRuleService:
    return runtime.rules


# ---------------------------------------------------------------------------
# Cost endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/costs/fetch",
    response_model=FetchCostsResponse,
    summary="Fetch and store costs for one cloud account",
)
async def fetch_costs(
    request: FetchCostsRequest,
    service: Annotated[CostFetchService, Depends(_get_fetch_service)],
) -> FetchCostsResponse:
    """Pull per-service daily costs for [start_date, end_date) and upsert them."""
    result = await service.fetch_and_store(
        account_id=request.cloud_account_id,
        start_date=request.start_date,
        end_date=request.end_date,
    )
    return FetchCostsResponse.model_validate(result)


@router.get("/costs", response_model=list[CostRecordResponse], summary="List stored cost records")
async def list_costs(
    cloud_account_id: Annotated[str, Query(min_length=1)],
    service: Annotated[CostFetchService, Depends(_get_fetch_service)],
    start_date: Annotated[date | None, Query()] = None,
    end_date: Annotated[date | None, Query()] = None,
) -> list[CostRecordResponse]:
    """List an account's cost records, newest period first (at most 500)."""
    records = await service.get_cost_records(cloud_account_id, start_date, end_date)
    return [CostRecordResponse.model_validate(r) for r in records]


@router.get(
    "/costs/summary/{project_id}",
    response_model=CostSummaryResponse,
    summary="Project spend summary",
)
async def get_cost_summary(
    project_id: str,
    service: Annotated[CostAggregationService, Depends(_get_aggregation_service)],
) -> CostSummaryResponse:
    """Today spend, month-to-date spend and naive month forecast (UTC)."""
    summary = await service.summarize(project_id)
    return CostSummaryResponse(
        project_id=project_id,
        today_spend=summary.today_spend,
        month_spend=summary.month_spend,
        month_forecast=summary.month_forecast,
    )


# ---------------------------------------------------------------------------
# Alert endpoints
# ---------------------------------------------------------------------------


@router.get("/alerts/history", response_model=list[AlertSentResponse], summary="Sent alert history")
async def get_alert_history(
    user_id: Annotated[str, Query(min_length=1)],
    project_id: Annotated[str, Query(min_length=1)],
    dispatcher: Annotated[NotificationDispatcher, Depends(_get_dispatcher)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[AlertSentResponse]:
    """List delivered alerts for a user's project, newest first."""
    rows = await dispatcher.get_history(user_id=user_id, project_id=project_id, limit=limit)
    return [AlertSentResponse.model_validate(r) for r in rows]


@router.post(
    "/alerts/rules",
    response_model=AlertRuleResponse,
    status_code=201,
    summary="Create an alert rule",
)
async def create_alert_rule(
    request: CreateAlertRuleRequest,
    service: Annotated[AlertRuleService, Depends(_get_rule_service)],
) -> AlertRuleResponse:
    """Validate a rule and persist it through the rule store."""
    rule = await service.create_rule(request.model_dump())
    return AlertRuleResponse.model_validate(rule)
