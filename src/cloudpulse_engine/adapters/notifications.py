"""Outbound notification channels: SMTP email and chat-ops webhooks.

Both channels implement the interfaces in core/interfaces.py and translate
transport failures into ChannelDeliveryError so the dispatcher can isolate
one channel from another.
"""

import asyncio
import html
import smtplib
from email.message import EmailMessage
from typing import Any, assert_never

import httpx
import structlog

from cloudpulse_engine.core.domain import (
    AlertPayload,
    DailyBudgetExceeded,
    ForecastWarning,
    MonthlyBudgetExceeded,
    SpikeDetected,
)
from cloudpulse_engine.errors import ChannelDeliveryError
from cloudpulse_engine.settings import Settings

logger = structlog.get_logger(__name__)

_TITLES = {
    "daily_budget": "Daily budget exceeded",
    "monthly_budget": "Monthly budget exceeded",
    "forecast_warning": "Monthly forecast warning",
    "spike": "Spend spike detected",
}


def describe_payload(payload: AlertPayload) -> str:
    """One-line human summary of the figures behind an alert."""
    match payload:
        case DailyBudgetExceeded(spend=spend, budget=budget):
            return f"Today's spend ${spend:.2f} against a daily budget of ${budget:.2f}"
        case MonthlyBudgetExceeded(spend=spend, budget=budget):
            return f"Month-to-date spend ${spend:.2f} against a monthly budget of ${budget:.2f}"
        case ForecastWarning(forecast=forecast, budget=budget):
            return f"Projected month spend ${forecast:.2f} against a monthly budget of ${budget:.2f}"
        case SpikeDetected(today=today, avg=avg, pct_increase=pct):
            return f"Today's spend ${today:.2f} is {pct}% above the 7-day average of ${avg:.2f}"
        case _:
            assert_never(payload)


class SmtpEmailChannel:
    """Send alert emails over SMTP.

    smtplib is blocking, so each send runs in a worker thread. A missing
    ``smtp_host`` disables the channel: every send fails with
    ChannelDeliveryError and the dispatcher records nothing.
    """

    def __init__(self, settings: Settings) -> None:
        self._host = settings.smtp_host
        self._port = settings.smtp_port
        self._username = settings.smtp_username
        self._password = settings.smtp_password
        self._sender = settings.smtp_from
        self._use_ssl = settings.smtp_use_ssl
        self._starttls = settings.smtp_starttls
        self._timeout = settings.smtp_timeout_seconds

    def build_message(
        self,
        to: str,
        user_name: str | None,
        project_name: str,
        reason: str,
        payload: AlertPayload,
    ) -> EmailMessage:
        """Build the multipart (plain + HTML) alert email."""
        title = _TITLES[payload.kind]
        greeting = f"Hi {user_name}," if user_name else "Hi,"
        detail = describe_payload(payload)

        message = EmailMessage()
        message["Subject"] = f"CloudPulse Alert: {project_name}"
        message["From"] = self._sender
        message["To"] = to
        message.set_content(
            f"{greeting}\n\n"
            f"An alert fired for project {project_name}.\n\n"
            f"{reason}\n"
            f"{detail}\n\n"
            "You are receiving this because email alerts are enabled for this rule.\n"
        )
        message.add_alternative(
            "<html><body>"
            f"<p>{html.escape(greeting)}</p>"
            f"<h2>{html.escape(title)}: {html.escape(project_name)}</h2>"
            f"<p><strong>{html.escape(reason)}</strong></p>"
            f"<p>{html.escape(detail)}</p>"
            "<p style=\"color:#888\">You are receiving this because email alerts are enabled for this rule.</p>"
            "</body></html>",
            subtype="html",
        )
        return message

    def _send_blocking(self, message: EmailMessage) -> None:
        smtp_class = smtplib.SMTP_SSL if self._use_ssl else smtplib.SMTP
        with smtp_class(self._host, self._port, timeout=self._timeout) as client:
            if self._starttls and not self._use_ssl:
                client.starttls()
            if self._username and self._password:
                client.login(self._username, self._password)
            client.send_message(message)

    async def send_alert_email(
        self,
        to: str,
        user_name: str | None,
        project_name: str,
        reason: str,
        payload: AlertPayload,
    ) -> None:
        """Send one alert email.

        Raises:
            ChannelDeliveryError: If SMTP is not configured or the send fails.
        """
        if not self._host:
            raise ChannelDeliveryError("SMTP is not configured", details={"channel": "EMAIL"})

        message = self.build_message(to, user_name, project_name, reason, payload)
        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(
                f"SMTP delivery failed: {exc}",
                details={"channel": "EMAIL", "smtp_host": self._host},
            ) from exc

        logger.info("alert_email_sent", to=to, project_name=project_name, alert_type=payload.kind)


class SlackWebhookChannel:
    """POST alerts to a Slack-compatible incoming webhook.

    The body carries a plain ``text`` fallback plus Block Kit ``blocks``;
    endpoints that ignore blocks still render the text.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = settings.webhook_timeout_seconds
        self._client = client

    @staticmethod
    def build_body(project_name: str, reason: str, payload: AlertPayload) -> dict[str, Any]:
        title = _TITLES[payload.kind]
        return {
            "text": f":rotating_light: *{title}* for *{project_name}*\n{reason}",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"{title}: {project_name}"},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*{reason}*\n{describe_payload(payload)}"},
                },
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": f"alert type: `{payload.kind}`"}],
                },
            ],
        }

    async def _post(self, client: httpx.AsyncClient, webhook_url: str, body: dict[str, Any]) -> int:
        response = await client.post(webhook_url, json=body, timeout=self._timeout)
        return response.status_code

    async def send_alert(
        self,
        webhook_url: str,
        project_name: str,
        reason: str,
        payload: AlertPayload,
    ) -> int:
        """POST one alert and return the HTTP status code.

        Non-2xx responses are returned, not raised; the dispatcher treats
        them as failed deliveries.

        Raises:
            ChannelDeliveryError: On connection errors or timeouts.
        """
        body = self.build_body(project_name, reason, payload)
        try:
            if self._client is not None:
                status = await self._post(self._client, webhook_url, body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    status = await self._post(client, webhook_url, body)
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(
                f"Webhook request failed: {exc.__class__.__name__}",
                details={"channel": "SLACK"},
            ) from exc

        logger.info("alert_webhook_posted", project_name=project_name, alert_type=payload.kind, status_code=status)
        return status
