"""Tests for the AWS Cost Explorer cost data source."""

from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from cloudpulse_engine.adapters.aws_cost_client import AwsCostExplorerSource, parse_cost_and_usage
from cloudpulse_engine.core.domain import CloudCredentials, CostDataPoint
from cloudpulse_engine.errors import CredentialError, ProviderFetchError
from cloudpulse_engine.settings import Settings

START = date(2026, 3, 3)
END = date(2026, 3, 6)


def _group(service: str, amount: str) -> dict[str, Any]:
    return {"Keys": [service], "Metrics": {"UnblendedCost": {"Amount": amount, "Unit": "USD"}}}


def _page(day: str, next_day: str, groups: list[dict[str, Any]], token: str | None = None) -> dict[str, Any]:
    page: dict[str, Any] = {
        "ResultsByTime": [{"TimePeriod": {"Start": day, "End": next_day}, "Groups": groups}],
    }
    if token:
        page["NextPageToken"] = token
    return page


def test_parse_drops_zero_amounts_and_keeps_periods() -> None:
    pages = [
        _page(
            "2026-03-03",
            "2026-03-04",
            [_group("Amazon EC2", "12.3456"), _group("AWS Cost Explorer", "0"), _group("Tax", "0.0000000001")],
        )
    ]

    points = parse_cost_and_usage(pages, START, END)

    assert points == [
        CostDataPoint("Amazon EC2", Decimal("12.3456"), "USD", date(2026, 3, 3), date(2026, 3, 4)),
        CostDataPoint("Tax", Decimal("0.0000000001"), "USD", date(2026, 3, 3), date(2026, 3, 4)),
    ]


def test_parse_falls_back_to_requested_window_and_unknown_service() -> None:
    pages = [{"ResultsByTime": [{"Groups": [{"Metrics": {"UnblendedCost": {"Amount": "5"}}}]}]}]

    [point] = parse_cost_and_usage(pages, START, END)

    assert point == CostDataPoint("Unknown", Decimal("5"), "USD", START, END)


class TestAwsCostExplorerSource:
    """Tests for AwsCostExplorerSource."""

    @pytest.fixture
    def ce_client(self) -> MagicMock:
        client = MagicMock()
        client.get_cost_and_usage.side_effect = [
            _page("2026-03-03", "2026-03-04", [_group("Amazon EC2", "10")], token="page-2"),
            _page("2026-03-04", "2026-03-05", [_group("Amazon EC2", "11")]),
        ]
        return client

    @pytest.mark.asyncio
    async def test_follows_pagination_with_daily_service_grouping(
        self,
        settings: Settings,
        aws_credentials: CloudCredentials,
        ce_client: MagicMock,
    ) -> None:
        source = AwsCostExplorerSource(settings, client_factory=lambda credentials: ce_client)

        points = await source.fetch_costs_by_service(aws_credentials, START, END)

        assert [point.amount for point in points] == [Decimal("10"), Decimal("11")]
        first_call, second_call = ce_client.get_cost_and_usage.call_args_list
        assert first_call.kwargs == {
            "TimePeriod": {"Start": "2026-03-03", "End": "2026-03-06"},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }
        assert second_call.kwargs["NextPageToken"] == "page-2"

    @pytest.mark.asyncio
    async def test_client_error_becomes_provider_fetch_error(
        self,
        settings: Settings,
        aws_credentials: CloudCredentials,
        ce_client: MagicMock,
    ) -> None:
        ce_client.get_cost_and_usage.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "not authorized"}},
            "GetCostAndUsage",
        )
        source = AwsCostExplorerSource(settings, client_factory=lambda credentials: ce_client)

        with pytest.raises(ProviderFetchError, match="AccessDeniedException") as exc_info:
            await source.fetch_costs_by_service(aws_credentials, START, END)
        assert exc_info.value.details["aws_error_code"] == "AccessDeniedException"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_provider_fetch_error(
        self,
        settings: Settings,
        aws_credentials: CloudCredentials,
        ce_client: MagicMock,
    ) -> None:
        ce_client.get_cost_and_usage.side_effect = EndpointConnectionError(endpoint_url="https://ce.us-east-1")
        source = AwsCostExplorerSource(settings, client_factory=lambda credentials: ce_client)

        with pytest.raises(ProviderFetchError):
            await source.fetch_costs_by_service(aws_credentials, START, END)

    def test_role_credentials_are_assumed_through_sts(
        self,
        settings: Settings,
        aws_credentials: CloudCredentials,
    ) -> None:
        sts = MagicMock()
        sts.assume_role.return_value = {
            "Credentials": {"AccessKeyId": "ASIA", "SecretAccessKey": "secret", "SessionToken": "token"}
        }
        ce = MagicMock()
        source = AwsCostExplorerSource(settings)

        with patch("cloudpulse_engine.adapters.aws_cost_client.boto3.client", side_effect=[sts, ce]) as factory:
            assert source._build_client(aws_credentials) is ce

        assert sts.assume_role.call_args.kwargs["RoleArn"] == aws_credentials.role_arn
        assert sts.assume_role.call_args.kwargs["DurationSeconds"] == 900
        ce_call = factory.call_args_list[1]
        assert ce_call.args == ("ce",)
        assert ce_call.kwargs["aws_session_token"] == "token"

    def test_access_keys_are_used_directly(self, settings: Settings) -> None:
        credentials = CloudCredentials(
            provider="AWS",
            external_account_id="123456789012",
            access_key="AKIA",
            secret_key="secret",
        )
        source = AwsCostExplorerSource(settings)

        with patch("cloudpulse_engine.adapters.aws_cost_client.boto3.client") as factory:
            source._build_client(credentials)

        factory.assert_called_once()
        assert factory.call_args.kwargs["aws_access_key_id"] == "AKIA"

    def test_missing_credentials_raise_credential_error(self, settings: Settings) -> None:
        source = AwsCostExplorerSource(settings)

        with pytest.raises(CredentialError):
            source._build_client(CloudCredentials(provider="AWS", external_account_id="123456789012"))


@pytest.mark.parametrize(
    "pages",
    [
        [_page("garbage", "2026-03-04", [_group("Amazon EC2", "10")])],
        [_page("2026-03-03", "2026-03-04", [_group("Amazon EC2", "NaN")])],
        [_page("2026-03-03", "2026-03-04", [_group("Amazon EC2", "ten dollars")])],
    ],
)
def test_parse_rejects_malformed_periods_and_amounts(pages: list[dict[str, Any]]) -> None:
    with pytest.raises(ValueError):
        parse_cost_and_usage(pages, START, END)


@pytest.mark.asyncio
async def test_malformed_response_becomes_provider_fetch_error(
    settings: Settings,
    aws_credentials: CloudCredentials,
) -> None:
    client = MagicMock()
    client.get_cost_and_usage.return_value = _page("garbage", "2026-03-04", [_group("Amazon EC2", "10")])
    source = AwsCostExplorerSource(settings, client_factory=lambda credentials: client)

    with pytest.raises(ProviderFetchError, match="Malformed"):
        await source.fetch_costs_by_service(aws_credentials, START, END)
