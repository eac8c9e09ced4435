import logging
from typing import Any
from datetime import datetime, timezone

import httpx
from app.core.config import settings
from app.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class SlackService:
    """Critical alerts (result indicator tampering, amount mismatches)."""

    def __init__(self, slack_url: str | None = None, environment: str | None = None):
        self.slack_url = slack_url if slack_url is not None else settings.SLACK_ALERTS_URL
        self.environment = environment or settings.ENVIRONMENT

    async def _execute_query(
        self,
        endpoint: str,
        payload: dict[str, Any]
    ) -> dict[str, Any]:

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    endpoint,
                    json=payload,
                    timeout=30.0
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Slack alert failed: {e}")
            raise ExternalServiceError(
                f"Slack API error: {e}", error_code="SLACK_ERROR"
            ) from e

        # Slack webhooks answer with plain text "ok"
        return {"status": "ok", "message": response.text.strip() or "Message sent successfully"}

    async def send_critical_alert(
        self,
        title: str,
        alert: str,
        platform: str | None = None,
    ) -> dict[str, Any]:
        if not self.slack_url:
            logger.warning(f"SLACK_ALERTS_URL not set, alert not sent: {title}")
            return {"status": "skipped"}

        timestamp = datetime.now(timezone.utc).strftime("%b %d, %Y at %I:%M %p UTC")
        env = self.environment.title()

        fields = [
            {"type": "mrkdwn", "text": "*Severity*\n🔴 Critical"},
            {"type": "mrkdwn", "text": f"*Environment*\n{env}"},
        ]
        if platform:
            fields.append({"type": "mrkdwn", "text": f"*Platform*\n{platform}"})
        fields.append({"type": "mrkdwn", "text": f"*Timestamp*\n{timestamp}"})

        payload: dict[str, Any] = {
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"🚨  {title}", "emoji": True},
                },
            ],
            "attachments": [
                {
                    "color": "#E01E5A",
                    "blocks": [
                        {"type": "section", "text": {"type": "mrkdwn", "text": alert}},
                        {"type": "divider"},
                        {"type": "section", "fields": fields},
                    ],
                }
            ],
        }

        return await self._execute_query(endpoint=self.slack_url, payload=payload)


slack_service = SlackService()
