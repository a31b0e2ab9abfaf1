"""Business logic services for the CloudPulse cost engine.

All services depend on repository, collaborator and channel interfaces (not
concrete implementations) and receive dependencies via constructor
injection. No framework code (FastAPI, SQLAlchemy, Redis) belongs here.

Key invariants:
- CostFetchService: one fetch is upserted as one atomic batch; the project id
  is resolved once per fetch and stamped on every record; no retries.
- CostAggregationService: today / month-to-date sums and a naive linear month
  forecast, all in UTC calendar days and Decimal arithmetic.
- AlertEvaluatorService: a pure function of the current rules and aggregates;
  a hard monthly-budget trigger suppresses the forecast warning.
- NotificationDispatcher: dedup gate first, channels isolated from each other,
  one AlertSent row per channel that confirmed delivery.
- CostCycleService: per-account and per-project failures never abort a cycle.
"""

import asyncio
import calendar
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from cloudpulse_engine.core.domain import (
    AccountFetchOutcome,
    AlertRule,
    AlertRuleDraft,
    AlertTrigger,
    CloudAccountRef,
    CloudCredentials,
    CostSummary,
    CycleReport,
    DailyBudgetExceeded,
    FetchResult,
    ForecastWarning,
    MonthlyBudgetExceeded,
    SpikeDetected,
    SpikeResult,
)
from cloudpulse_engine.core.interfaces import (
    IAlertRuleRepository,
    IAlertSentRepository,
    ICloudAccountDirectory,
    ICostDataSource,
    ICostRecordRepository,
    ICredentialProvider,
    IEmailChannel,
    IProjectDirectory,
    IWebhookChannel,
)
from cloudpulse_engine.core.models import AlertChannel, AlertSent, CostRecord
from cloudpulse_engine.errors import (
    AccountNotFoundError,
    ChannelDeliveryError,
    CloudPulseError,
    CredentialError,
    ErrorCode,
    NotFoundError,
    ProviderFetchError,
    UnsupportedProviderError,
    ValidationError,
)
from cloudpulse_engine.settings import Settings

logger = structlog.get_logger(__name__)

_CENT = Decimal("0.01")
_ZERO = Decimal("0")

T = TypeVar("T")


def _utc(at_time: datetime | None) -> datetime:
    """Normalize an optional reference time to an aware UTC datetime."""
    if at_time is None:
        return datetime.now(timezone.utc)
    if at_time.tzinfo is None:
        return at_time.replace(tzinfo=timezone.utc)
    return at_time.astimezone(timezone.utc)


def coerce_date(value: date | str, field_name: str) -> date:
    """Accept a ``date`` or a ``YYYY-MM-DD`` string.

    Raises:
        ValidationError: If the string is not an ISO calendar date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"{field_name} must be a YYYY-MM-DD date, got {value!r}",
            details={"field": field_name},
        ) from exc


def _money(value: Decimal) -> str:
    return f"${value:.2f}"


async def _bounded_gather(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[None]],
    limit: int,
) -> None:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> None:
        async with semaphore:
            await worker(item)

    await asyncio.gather(*(_run(item) for item in items))


class CostFetchService:
    """Resolve credentials, pull provider cost data and upsert it.

    Cost sources are bound per provider tag (e.g. ``{"AWS": source}``); an
    account whose provider has no binding cannot be fetched.
    """

    def __init__(
        self,
        cost_repo: ICostRecordRepository,
        account_directory: ICloudAccountDirectory,
        credential_provider: ICredentialProvider,
        cost_sources: Mapping[str, ICostDataSource],
        settings: Settings,
    ) -> None:
        """Initialize CostFetchService with required dependencies."""
        self._cost_repo = cost_repo
        self._accounts = account_directory
        self._credentials = credential_provider
        self._sources = dict(cost_sources)
        self._settings = settings

    @staticmethod
    def _check_credentials(account_id: str, credentials: CloudCredentials | None) -> CloudCredentials:
        if credentials is None:
            raise CredentialError(
                "No credentials stored for cloud account",
                details={"cloud_account_id": account_id},
            )
        has_key_pair = bool(credentials.access_key and credentials.secret_key)
        if not credentials.role_arn and not has_key_pair:
            raise CredentialError(
                "Cloud account has neither a role ARN nor a complete access key pair",
                details={"cloud_account_id": account_id},
            )
        return credentials

    async def fetch_and_store(
        self,
        account_id: str,
        start_date: date | str,
        end_date: date | str,
    ) -> FetchResult:
        """Fetch per-service costs for [start_date, end_date) and upsert them.

        Args:
            account_id: Cloud account to fetch for.
            start_date: First day of the window (inclusive, UTC).
            end_date: Day after the last day of the window (exclusive, UTC).

        Returns:
            FetchResult with the number of records upserted.

        Raises:
            ValidationError: If the dates are malformed or the window is empty.
            AccountNotFoundError: If the account record is missing.
            CredentialError: If decrypted credentials are absent or invalid.
            UnsupportedProviderError: If the provider has no cost source.
            ProviderFetchError: If the cost source fails or times out.
        """
        start = coerce_date(start_date, "start_date")
        end = coerce_date(end_date, "end_date")
        if start >= end:
            raise ValidationError(
                "start_date must be before end_date (end_date is exclusive)",
                details={"start_date": start.isoformat(), "end_date": end.isoformat()},
            )

        account = await self._accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(
                "Cloud account not found",
                details={"cloud_account_id": account_id},
            )

        try:
            credentials = await self._credentials.get_decrypted_credentials(account_id)
        except NotFoundError as exc:
            raise AccountNotFoundError(
                "Cloud account not found",
                details={"cloud_account_id": account_id},
            ) from exc
        credentials = self._check_credentials(account_id, credentials)

        source = self._sources.get(credentials.provider)
        if source is None:
            raise UnsupportedProviderError(
                f"Provider {credentials.provider} not yet supported",
                details={"cloud_account_id": account_id, "provider": credentials.provider},
            )

        try:
            points = await asyncio.wait_for(
                source.fetch_costs_by_service(credentials, start, end),
                timeout=self._settings.provider_timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderFetchError(
                "Cost data source timed out",
                code=ErrorCode.PROVIDER_TIMEOUT,
                details={
                    "cloud_account_id": account_id,
                    "timeout_seconds": self._settings.provider_timeout_seconds,
                },
            ) from exc
        except CloudPulseError:
            raise
        except Exception as exc:
            raise ProviderFetchError(
                f"Cost data source failed: {exc.__class__.__name__}",
                details={"cloud_account_id": account_id, "provider": credentials.provider},
            ) from exc

        upserted = await self._cost_repo.upsert_batch(
            cloud_account_id=account_id,
            project_id=account.project_id,
            points=points,
        )

        logger.info(
            "cost_fetch_completed",
            cloud_account_id=account_id,
            project_id=account.project_id,
            provider=credentials.provider,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            records_upserted=upserted,
        )
        return FetchResult(records_upserted=upserted, start_date=start, end_date=end)

    async def get_cost_records(
        self,
        account_id: str,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
    ) -> list[CostRecord]:
        """List stored cost records for an account, newest period first."""
        start = coerce_date(start_date, "start_date") if start_date is not None else None
        end = coerce_date(end_date, "end_date") if end_date is not None else None
        return await self._cost_repo.query(
            cloud_account_id=account_id,
            period_start=start,
            period_end=end,
            limit=self._settings.cost_query_limit,
        )


class CostAggregationService:
    """Derive spend aggregates, the month forecast and spike signals.

    The month forecast is a naive linear extrapolation,
        forecast = month_spend / day_of_month * days_in_month
    not a statistical model. It under-forecasts early in the month when few
    days have been billed and settles as the month progresses.
    """

    def __init__(self, cost_repo: ICostRecordRepository, settings: Settings) -> None:
        """Initialize CostAggregationService with required dependencies."""
        self._cost_repo = cost_repo
        self._settings = settings

    @staticmethod
    def linear_forecast(month_spend: Decimal, day_of_month: int, days_in_month: int) -> Decimal:
        """Extrapolate month-to-date spend to the whole month, rounded to cents.

        Returns 0 when ``day_of_month`` is 0.
        """
        if day_of_month <= 0:
            return _ZERO.quantize(_CENT)
        forecast = month_spend / Decimal(day_of_month) * Decimal(days_in_month)
        return forecast.quantize(_CENT, rounding=ROUND_HALF_UP)

    async def summarize(self, project_id: str, at_time: datetime | None = None) -> CostSummary:
        """Compute today spend, month-to-date spend and the month forecast.

        Args:
            project_id: Project to summarize.
            at_time: Reference time (defaults to now, UTC).

        Returns:
            CostSummary for the UTC day and month containing ``at_time``.
        """
        now = _utc(at_time)
        today = now.date()
        month_start = today.replace(day=1)

        today_spend, month_spend = await asyncio.gather(
            self._cost_repo.sum_for_project(project_id, today),
            self._cost_repo.sum_for_project(project_id, month_start),
        )

        days_in_month = calendar.monthrange(today.year, today.month)[1]
        forecast = self.linear_forecast(month_spend, today.day, days_in_month)

        return CostSummary(
            today_spend=today_spend,
            month_spend=month_spend,
            month_forecast=forecast,
        )

    async def detect_spike(
        self,
        project_id: str,
        threshold_pct: int,
        at_time: datetime | None = None,
    ) -> SpikeResult | None:
        """Compare today's spend with the trailing daily average.

        The baseline is the total over the ``spike_baseline_days`` (7) days
        strictly before today, divided by that day count. A zero baseline
        (e.g. a brand-new account) never reports a spike.

        Args:
            project_id: Project to check.
            threshold_pct: Minimum percentage increase that counts as a spike.
            at_time: Reference time (defaults to now, UTC).

        Returns:
            SpikeResult when the increase reaches the threshold, else None.
        """
        today = _utc(at_time).date()
        baseline_days = self._settings.spike_baseline_days
        baseline_start = today - timedelta(days=baseline_days)

        today_spend, baseline_total = await asyncio.gather(
            self._cost_repo.sum_for_project(project_id, today),
            self._cost_repo.sum_for_project(project_id, baseline_start, today),
        )

        daily_avg = baseline_total / Decimal(baseline_days)
        if daily_avg <= 0:
            return None

        pct_increase = (today_spend - daily_avg) / daily_avg * Decimal(100)
        if pct_increase < Decimal(threshold_pct):
            return None

        return SpikeResult(
            today_spend=today_spend,
            daily_avg=daily_avg,
            pct_increase=int(pct_increase.quantize(Decimal(1), rounding=ROUND_HALF_UP)),
        )


class AlertEvaluatorService:
    """Apply a project's alert rules to its current aggregates.

    Stateless per call: the result depends only on the stored rules and the
    cost records at evaluation time. One rule may raise several triggers.
    """

    def __init__(
        self,
        rule_repo: IAlertRuleRepository,
        aggregation: CostAggregationService,
        settings: Settings,
    ) -> None:
        """Initialize AlertEvaluatorService with required dependencies."""
        self._rule_repo = rule_repo
        self._aggregation = aggregation
        self._forecast_ratio = Decimal(str(settings.forecast_warning_ratio))

    async def evaluate(self, project_id: str, at_time: datetime | None = None) -> list[AlertTrigger]:
        """Evaluate every rule of a project.

        Args:
            project_id: Project to evaluate.
            at_time: Reference time (defaults to now, UTC).

        Returns:
            Triggers in rule order; empty when the project has no rules, in
            which case no aggregation is performed.
        """
        rules = await self._rule_repo.list_by_project(project_id)
        if not rules:
            return []

        now = _utc(at_time)
        summary = await self._aggregation.summarize(project_id, at_time=now)
        triggers: list[AlertTrigger] = []

        for rule in rules:
            triggers.extend(self._budget_triggers(rule, summary))

            if rule.spike_threshold_pct is not None:
                spike = await self._aggregation.detect_spike(
                    project_id,
                    rule.spike_threshold_pct,
                    at_time=now,
                )
                if spike is not None:
                    triggers.append(
                        AlertTrigger(
                            rule=rule,
                            reason=(
                                f"Spend spike detected: {spike.pct_increase}% above 7-day average "
                                f"({_money(spike.today_spend)} vs avg {_money(spike.daily_avg)})"
                            ),
                            payload=SpikeDetected(
                                today=spike.today_spend,
                                avg=spike.daily_avg,
                                pct_increase=spike.pct_increase,
                            ),
                        )
                    )

        if triggers:
            logger.info(
                "alert_rules_triggered",
                project_id=project_id,
                rules=len(rules),
                triggers=len(triggers),
                kinds=[trigger.kind for trigger in triggers],
            )
        return triggers

    def _budget_triggers(self, rule: AlertRule, summary: CostSummary) -> list[AlertTrigger]:
        triggers: list[AlertTrigger] = []

        if rule.daily_budget is not None and summary.today_spend > rule.daily_budget:
            triggers.append(
                AlertTrigger(
                    rule=rule,
                    reason=(
                        f"Daily budget exceeded: {_money(summary.today_spend)} > "
                        f"{_money(rule.daily_budget)}"
                    ),
                    payload=DailyBudgetExceeded(spend=summary.today_spend, budget=rule.daily_budget),
                )
            )

        if rule.monthly_budget is not None:
            budget = rule.monthly_budget
            if summary.month_spend > budget:
                triggers.append(
                    AlertTrigger(
                        rule=rule,
                        reason=f"Monthly budget exceeded: {_money(summary.month_spend)} > {_money(budget)}",
                        payload=MonthlyBudgetExceeded(spend=summary.month_spend, budget=budget),
                    )
                )
            # Suppressed once the hard monthly trigger has fired.
            elif summary.month_forecast > budget * self._forecast_ratio:
                triggers.append(
                    AlertTrigger(
                        rule=rule,
                        reason=(
                            f"Monthly forecast warning: {_money(summary.month_forecast)} projected "
                            f"vs {_money(budget)} budget"
                        ),
                        payload=ForecastWarning(forecast=summary.month_forecast, budget=budget),
                    )
                )

        return triggers


class NotificationDispatcher:
    """Deduplicate triggers and fan them out to the enabled channels.

    Delivery is at most once per dedup window: a trigger whose rule already
    produced a matching AlertSent row inside the window is skipped. Failed
    channels leave no row, so the same condition is re-sent on the next
    scheduled evaluation.
    """

    def __init__(
        self,
        alert_repo: IAlertSentRepository,
        project_directory: IProjectDirectory,
        email_channel: IEmailChannel,
        webhook_channel: IWebhookChannel,
        settings: Settings,
    ) -> None:
        """Initialize NotificationDispatcher with required dependencies."""
        self._alert_repo = alert_repo
        self._projects = project_directory
        self._email = email_channel
        self._webhook = webhook_channel
        self._settings = settings

    async def _recently_sent(self, trigger: AlertTrigger, now: datetime) -> bool:
        since = now - timedelta(hours=self._settings.alert_dedup_window_hours)
        if self._settings.alert_dedup_key == "kind":
            return await self._alert_repo.has_recent(trigger.rule_id, since, alert_type=trigger.kind)
        return await self._alert_repo.has_recent(trigger.rule_id, since, reason=trigger.reason)

    async def _deliver(
        self,
        channel: AlertChannel,
        project_id: str,
        trigger: AlertTrigger,
        send: Callable[[], Awaitable[None]],
    ) -> bool:
        """Run one channel send, isolating any failure to that channel."""
        try:
            await send()
        except ChannelDeliveryError as exc:
            logger.warning(
                "alert_channel_failed",
                channel=channel.value,
                project_id=project_id,
                alert_rule_id=trigger.rule_id,
                error=exc.message,
                details=exc.details,
            )
            return False
        except Exception:
            logger.exception(
                "alert_channel_error",
                channel=channel.value,
                project_id=project_id,
                alert_rule_id=trigger.rule_id,
            )
            return False
        return True

    async def dispatch(
        self,
        project_id: str,
        triggers: Sequence[AlertTrigger],
        at_time: datetime | None = None,
    ) -> list[AlertSent]:
        """Send every non-duplicate trigger on its rule's enabled channels.

        Args:
            project_id: Project the triggers were evaluated for.
            triggers: Output of AlertEvaluatorService.evaluate.
            at_time: Reference time for the dedup window and sent_at stamps.

        Returns:
            AlertSent rows written during this call.
        """
        now = _utc(at_time)
        written: list[AlertSent] = []

        for trigger in triggers:
            if await self._recently_sent(trigger, now):
                logger.debug(
                    "alert_deduplicated",
                    project_id=project_id,
                    alert_rule_id=trigger.rule_id,
                    reason=trigger.reason,
                )
                continue

            owner = await self._projects.get_project_owner(project_id)
            if owner is None:
                logger.warning("alert_project_missing", project_id=project_id, alert_rule_id=trigger.rule_id)
                continue

            rule = trigger.rule
            delivered: list[AlertChannel] = []

            if rule.email_enabled and owner.user_email:
                email_to = owner.user_email

                async def _send_email() -> None:
                    await self._email.send_alert_email(
                        to=email_to,
                        user_name=owner.user_name,
                        project_name=owner.project_name,
                        reason=trigger.reason,
                        payload=trigger.payload,
                    )

                if await self._deliver(AlertChannel.EMAIL, project_id, trigger, _send_email):
                    delivered.append(AlertChannel.EMAIL)

            if rule.slack_webhook_url:
                webhook_url = rule.slack_webhook_url

                async def _send_webhook() -> None:
                    status = await self._webhook.send_alert(
                        webhook_url=webhook_url,
                        project_name=owner.project_name,
                        reason=trigger.reason,
                        payload=trigger.payload,
                    )
                    if not 200 <= status < 300:
                        raise ChannelDeliveryError(
                            f"Webhook responded with HTTP {status}",
                            details={"status_code": status},
                        )

                if await self._deliver(AlertChannel.SLACK, project_id, trigger, _send_webhook):
                    delivered.append(AlertChannel.SLACK)

            snapshot = trigger.payload.snapshot()
            for channel in delivered:
                row = await self._alert_repo.record(
                    user_id=owner.user_id,
                    project_id=project_id,
                    alert_rule_id=trigger.rule_id,
                    channel=channel,
                    alert_type=trigger.kind,
                    reason=trigger.reason,
                    payload=snapshot,
                    sent_at=now,
                )
                written.append(row)

            logger.info(
                "alert_dispatched",
                project_id=project_id,
                alert_rule_id=trigger.rule_id,
                alert_type=trigger.kind,
                channels=[channel.value for channel in delivered],
            )

        return written

    async def get_history(self, user_id: str, project_id: str, limit: int = 50) -> list[AlertSent]:
        """List previously sent alerts for a user's project."""
        return await self._alert_repo.list_history(user_id=user_id, project_id=project_id, limit=limit)


class AlertRuleService:
    """Validate alert rules before they reach the external rule store."""

    def __init__(self, rule_repo: IAlertRuleRepository) -> None:
        """Initialize AlertRuleService with the rule repository."""
        self._rule_repo = rule_repo

    @staticmethod
    def validate(data: AlertRuleDraft | Mapping[str, Any]) -> AlertRuleDraft:
        """Build an AlertRuleDraft, translating pydantic errors into ours.

        Raises:
            ValidationError: If no condition is set, a budget is not positive,
                the spike threshold is outside 10..1000, or the webhook URL is
                not an http(s) URL.
        """
        try:
            return AlertRuleDraft.model_validate(data)
        except PydanticValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in error["loc"]) or None, "message": error["msg"]}
                for error in exc.errors()
            ]
            raise ValidationError(
                f"Invalid alert rule: {errors[0]['message']}",
                details={"errors": errors},
            ) from exc

    async def create_rule(self, data: AlertRuleDraft | Mapping[str, Any]) -> AlertRule:
        """Validate then persist a rule.

        Raises:
            ValidationError: If the draft is rejected; nothing is stored.
        """
        draft = self.validate(data)
        rule = await self._rule_repo.create(draft)
        logger.info("alert_rule_created", alert_rule_id=rule.id, project_id=rule.project_id)
        return rule


class CostCycleService:
    """One scheduled pass: fetch every active account, then evaluate and dispatch.

    Only projects with at least one successful account fetch are evaluated.
    Work inside a cycle runs with bounded concurrency (``cycle_concurrency``);
    accounts and projects are disjoint keys, so they never contend.
    """

    def __init__(
        self,
        account_directory: ICloudAccountDirectory,
        fetch_service: CostFetchService,
        evaluator: AlertEvaluatorService,
        dispatcher: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        """Initialize CostCycleService with required dependencies."""
        self._accounts = account_directory
        self._fetch = fetch_service
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._settings = settings

    @staticmethod
    def lookback_window(today: date, lookback_days: int) -> tuple[date, date]:
        """Half-open window covering today plus ``lookback_days`` prior days."""
        return today - timedelta(days=lookback_days), today + timedelta(days=1)

    async def run_cycle(self, today: date | None = None) -> CycleReport:
        """Run one full fetch + evaluate + dispatch cycle.

        Args:
            today: UTC calendar day the window is anchored on (defaults to today).

        Returns:
            CycleReport describing per-account and per-project outcomes.
        """
        anchor = today or datetime.now(timezone.utc).date()
        start, end = self.lookback_window(anchor, self._settings.fetch_lookback_days)
        report = CycleReport(start_date=start, end_date=end)

        accounts = await self._accounts.list_active_accounts()
        logger.info(
            "cost_cycle_started",
            accounts=len(accounts),
            start_date=start.isoformat(),
            end_date=end.isoformat(),
        )

        async def _fetch_one(account: CloudAccountRef) -> None:
            outcome = AccountFetchOutcome(account_id=account.id, label=account.label)
            report.accounts.append(outcome)
            try:
                result = await self._fetch.fetch_and_store(account.id, start, end)
            except CloudPulseError as exc:
                outcome.error = exc.message
                logger.warning(
                    "cost_cycle_account_failed",
                    cloud_account_id=account.id,
                    label=account.label,
                    error_code=exc.code.value,
                    error=exc.message,
                )
            except Exception as exc:
                outcome.error = str(exc) or exc.__class__.__name__
                logger.exception("cost_cycle_account_error", cloud_account_id=account.id, label=account.label)
            else:
                outcome.records_upserted = result.records_upserted

        await _bounded_gather(accounts, _fetch_one, self._settings.cycle_concurrency)

        succeeded = {outcome.account_id for outcome in report.accounts if outcome.succeeded}
        projects: list[str] = []
        for account in accounts:
            if account.id in succeeded and account.project_id not in projects:
                projects.append(account.project_id)

        async def _evaluate_one(project_id: str) -> None:
            try:
                triggers = await self._evaluator.evaluate(project_id)
                if triggers:
                    await self._dispatcher.dispatch(project_id, triggers)
            except Exception as exc:
                report.project_failures[project_id] = str(exc) or exc.__class__.__name__
                logger.exception("cost_cycle_project_failed", project_id=project_id)
                return
            report.projects_evaluated.append(project_id)
            report.triggers_raised += len(triggers)

        await _bounded_gather(projects, _evaluate_one, self._settings.cycle_concurrency)

        logger.info("cost_cycle_completed", **report.as_dict())
        return report
