"""AWS Cost Explorer cost data source.

Pulls per-service daily UnblendedCost for one AWS account. Credentials are
either an IAM role (assumed through STS for a short session) or a direct
access key pair. boto3 is blocking, so every call runs in a worker thread.

API docs: https://docs.aws.amazon.com/aws-cost-management/latest/APIReference/API_GetCostAndUsage.html
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cloudpulse_engine.core.domain import CloudCredentials, CostDataPoint
from cloudpulse_engine.errors import CredentialError, ProviderFetchError
from cloudpulse_engine.settings import Settings

logger = structlog.get_logger(__name__)

PROVIDER = "AWS"


def parse_cost_and_usage(
    pages: Iterable[dict[str, Any]],
    start_date: date,
    end_date: date,
) -> list[CostDataPoint]:
    """Flatten GetCostAndUsage responses into per-service data points.

    Groups with a non-positive amount are dropped. A missing time period
    falls back to the requested window.

    Raises:
        ValueError: If a period date or an amount is malformed.
    """
    points: list[CostDataPoint] = []
    for page in pages:
        for result in page.get("ResultsByTime", []):
            period = result.get("TimePeriod", {})
            period_start = date.fromisoformat(period["Start"]) if "Start" in period else start_date
            period_end = date.fromisoformat(period["End"]) if "End" in period else end_date

            for group in result.get("Groups", []):
                keys = group.get("Keys") or ["Unknown"]
                metric = group.get("Metrics", {}).get("UnblendedCost", {})
                raw_amount = metric.get("Amount", "0")
                try:
                    amount = Decimal(raw_amount)
                except (InvalidOperation, TypeError) as exc:
                    raise ValueError(f"Unparseable amount {raw_amount!r} for {keys[0]}") from exc
                if not amount.is_finite():
                    raise ValueError(f"Non-finite amount {raw_amount!r} for {keys[0]}")
                if amount <= 0:
                    continue
                points.append(
                    CostDataPoint(
                        service_name=keys[0],
                        amount=amount,
                        currency=metric.get("Unit", "USD"),
                        period_start=period_start,
                        period_end=period_end,
                    )
                )
    return points


class AwsCostExplorerSource:
    """ICostDataSource implementation backed by AWS Cost Explorer.

    ``client_factory`` builds a Cost Explorer client from credentials; the
    default assumes the role via STS or uses the access key pair.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[CloudCredentials], Any] | None = None,
    ) -> None:
        self._region = settings.aws_region
        self._session_seconds = settings.aws_role_session_seconds
        timeout = settings.provider_timeout_seconds
        self._config = Config(
            region_name=self._region,
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 2, "mode": "standard"},
        )
        self._client_factory = client_factory or self._build_client

    def _build_client(self, credentials: CloudCredentials) -> Any:
        key_pair: dict[str, str] = {}
        if credentials.access_key and credentials.secret_key:
            key_pair = {
                "aws_access_key_id": credentials.access_key,
                "aws_secret_access_key": credentials.secret_key,
            }

        if credentials.role_arn:
            sts = boto3.client("sts", config=self._config, **key_pair)
            assumed = sts.assume_role(
                RoleArn=credentials.role_arn,
                RoleSessionName=f"cloudpulse-{int(time.time() * 1000)}",
                DurationSeconds=self._session_seconds,
            )
            session_credentials = assumed.get("Credentials")
            if not session_credentials:
                raise CredentialError("Failed to assume IAM role", details={"role_arn": credentials.role_arn})
            return boto3.client(
                "ce",
                config=self._config,
                aws_access_key_id=session_credentials["AccessKeyId"],
                aws_secret_access_key=session_credentials["SecretAccessKey"],
                aws_session_token=session_credentials["SessionToken"],
            )

        if not key_pair:
            raise CredentialError("No valid AWS credentials provided")
        return boto3.client("ce", config=self._config, **key_pair)

    def _fetch_pages(self, credentials: CloudCredentials, start_date: date, end_date: date) -> list[dict[str, Any]]:
        client = self._client_factory(credentials)
        request: dict[str, Any] = {
            "TimePeriod": {"Start": start_date.isoformat(), "End": end_date.isoformat()},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }
        pages: list[dict[str, Any]] = []
        while True:
            response = client.get_cost_and_usage(**request)
            pages.append(response)
            token = response.get("NextPageToken")
            if not token:
                return pages
            request["NextPageToken"] = token

    async def fetch_costs_by_service(
        self,
        credentials: CloudCredentials,
        start_date: date,
        end_date: date,
    ) -> list[CostDataPoint]:
        """Fetch non-zero per-service daily costs for [start_date, end_date).

        Raises:
            CredentialError: If no usable credentials were supplied or role
                assumption returned nothing.
            ProviderFetchError: On any AWS API or transport error, or a
                malformed response.
        """
        try:
            pages = await asyncio.to_thread(self._fetch_pages, credentials, start_date, end_date)
            points = parse_cost_and_usage(pages, start_date, end_date)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise ProviderFetchError(
                f"AWS Cost Explorer request failed: {error.get('Code', 'Unknown')}",
                details={
                    "external_account_id": credentials.external_account_id,
                    "aws_error_code": error.get("Code"),
                    "aws_error_message": error.get("Message"),
                },
            ) from exc
        except BotoCoreError as exc:
            raise ProviderFetchError(
                f"AWS Cost Explorer request failed: {exc.__class__.__name__}",
                details={"external_account_id": credentials.external_account_id},
            ) from exc
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ProviderFetchError(
                f"Malformed AWS Cost Explorer response: {exc}",
                details={"external_account_id": credentials.external_account_id},
            ) from exc

        logger.info(
            "aws_costs_fetched",
            external_account_id=credentials.external_account_id,
            pages=len(pages),
            data_points=len(points),
        )
        return points
