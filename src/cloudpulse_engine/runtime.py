"""Composition root for the CloudPulse cost engine.

CostEngineRuntime wires repositories, channels and services around the
explicitly constructed resource handles (Database, Redis client) and the
external collaborators supplied by the embedding application. It owns the
scheduler lifecycle: start() selects and starts a backend, close() drains
it and releases the handles.
"""

from collections.abc import Mapping

import structlog
from redis.asyncio import Redis

from cloudpulse_engine.adapters.aws_cost_client import PROVIDER as AWS_PROVIDER
from cloudpulse_engine.adapters.aws_cost_client import AwsCostExplorerSource
from cloudpulse_engine.adapters.notifications import SlackWebhookChannel, SmtpEmailChannel
from cloudpulse_engine.adapters.repositories import AlertSentRepository, CostRecordRepository
from cloudpulse_engine.adapters.scheduling import select_scheduler_backend
from cloudpulse_engine.core.domain import CycleReport
from cloudpulse_engine.core.interfaces import (
    IAlertRuleRepository,
    ICloudAccountDirectory,
    ICostDataSource,
    ICredentialProvider,
    IEmailChannel,
    IProjectDirectory,
    ISchedulerBackend,
    IWebhookChannel,
)
from cloudpulse_engine.core.services import (
    AlertEvaluatorService,
    AlertRuleService,
    CostAggregationService,
    CostCycleService,
    CostFetchService,
    NotificationDispatcher,
)
from cloudpulse_engine.database import Database
from cloudpulse_engine.settings import Settings

logger = structlog.get_logger(__name__)


class CostEngineRuntime:
    """All engine services bound to one database and one set of collaborators.

    Args:
        settings: Engine configuration.
        database: Store handle shared by both owned repositories.
        credential_provider: Decrypts cloud account credentials.
        account_directory: Lists and resolves cloud accounts.
        project_directory: Resolves projects and their owners.
        rule_repository: External alert rule store.
        redis_client: Optional Redis handle; enables the durable scheduler.
        cost_sources: Provider tag to data source; defaults to AWS Cost Explorer.
        email_channel: Defaults to SMTP from settings.
        webhook_channel: Defaults to the Slack-compatible webhook poster.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        credential_provider: ICredentialProvider,
        account_directory: ICloudAccountDirectory,
        project_directory: IProjectDirectory,
        rule_repository: IAlertRuleRepository,
        redis_client: Redis | None = None,
        cost_sources: Mapping[str, ICostDataSource] | None = None,
        email_channel: IEmailChannel | None = None,
        webhook_channel: IWebhookChannel | None = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.redis = redis_client

        self.cost_repo = CostRecordRepository(database)
        self.alert_repo = AlertSentRepository(database)

        sources = cost_sources if cost_sources is not None else {AWS_PROVIDER: AwsCostExplorerSource(settings)}

        self.fetch_service = CostFetchService(
            cost_repo=self.cost_repo,
            account_directory=account_directory,
            credential_provider=credential_provider,
            cost_sources=sources,
            settings=settings,
        )
        self.aggregation = CostAggregationService(cost_repo=self.cost_repo, settings=settings)
        self.evaluator = AlertEvaluatorService(
            rule_repo=rule_repository,
            aggregation=self.aggregation,
            settings=settings,
        )
        self.dispatcher = NotificationDispatcher(
            alert_repo=self.alert_repo,
            project_directory=project_directory,
            email_channel=email_channel or SmtpEmailChannel(settings),
            webhook_channel=webhook_channel or SlackWebhookChannel(settings),
            settings=settings,
        )
        self.rules = AlertRuleService(rule_repo=rule_repository)
        self.cycle = CostCycleService(
            account_directory=account_directory,
            fetch_service=self.fetch_service,
            evaluator=self.evaluator,
            dispatcher=self.dispatcher,
            settings=settings,
        )
        self.scheduler: ISchedulerBackend | None = None

    async def run_cycle(self) -> CycleReport:
        """Scheduler job: one fetch + evaluate + dispatch pass."""
        return await self.cycle.run_cycle()

    async def start(self) -> None:
        """Select a scheduler backend and start the recurring cycle."""
        if not self.settings.scheduler_enabled:
            logger.info("scheduler_disabled")
            return
        self.scheduler = await select_scheduler_backend(self.settings, self.redis)
        await self.scheduler.start(self.run_cycle)

    async def stop(self) -> None:
        """Drain the scheduler; no new cycles start after this returns."""
        if self.scheduler is not None:
            await self.scheduler.stop()

    async def close(self) -> None:
        """Stop the scheduler and release the database and Redis handles."""
        await self.stop()
        if self.redis is not None:
            await self.redis.aclose()
        await self.database.close()
        logger.info("cost_engine_closed")
