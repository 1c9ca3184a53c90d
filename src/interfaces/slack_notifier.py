"""
Alert Desk - Slack Notifier

Posts operator notifications for a feed snapshot:
  - one Block Kit message per new critical item (open, not yet notified)
  - one message when the set of degraded sources changes

Notifications are best-effort: a failed post is logged and skipped, and
the alert is retried on the next snapshot.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from src.config import Settings
from src.models.alert import AlertSource, Severity, parse_alert_id
from src.models.feed import FeedItem, FeedSnapshot, SourceStatus

logger = logging.getLogger(__name__)

_SEVERITY_MARKERS = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🟢",
    Severity.INFORMATIONAL: "⚪",
}


# ============================================================================
# Message Formatting
# ============================================================================

def format_alert_message(item: FeedItem) -> list[dict[str, Any]]:
    """Format a feed item as Slack blocks."""
    primary = item.group.primary
    severity = item.group.severity
    marker = _SEVERITY_MARKERS[severity]

    fields = [
        {"type": "mrkdwn", "text": f"*Severity*\n{marker} {severity.value.title()}"},
        {"type": "mrkdwn", "text": f"*Source*\n{primary.source_label}"},
        {"type": "mrkdwn", "text": f"*Host*\n{primary.device_hostname or 'Unknown'}"},
        {"type": "mrkdwn", "text": f"*Organization*\n{primary.organization_name or 'Unknown'}"},
    ]

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"🚨 Alert: {primary.title[:100]}", "emoji": True},
        },
        {"type": "section", "fields": fields},
    ]

    if primary.description:
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Details*\n{primary.description}"}}
        )

    if primary.merged_sources:
        also = ", ".join(f"{m.label} `{m.source_id}`" for m in primary.merged_sources)
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Also reported by*\n{also}"}})

    context = f"Alert ID `{primary.alert_id}` · detected {primary.detected_at:%Y-%m-%d %H:%M} UTC"
    if item.state.owner is not None:
        context += f" · owned by {item.state.owner.name or item.state.owner.id}"
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": context}]})

    return blocks


def format_degraded_message(statuses: list[SourceStatus]) -> list[dict[str, Any]]:
    """Format degraded sources as Slack blocks."""
    lines = "\n".join(f"• *{s.source.value}*: {s.message or 'no data'}" for s in statuses)
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"⚠️ *Some alert sources are degraded*\n{lines}"},
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": "The feed still shows alerts from every other source."}],
        },
    ]


# ============================================================================
# Notifier
# ============================================================================

class SlackNotifier:
    def __init__(self, client: AsyncWebClient, channel: str) -> None:
        self.client = client
        self.channel = channel
        self._notified: set[str] = set()
        self._last_degraded: frozenset[AlertSource] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlackNotifier":
        """Raises NotConfiguredError when SLACK_BOT_TOKEN is missing."""
        settings.validate_for_integration("slack")
        return cls(AsyncWebClient(token=settings.slack_bot_token), settings.slack_alert_channel)

    def _should_notify(self, item: FeedItem) -> bool:
        return (
            item.group.severity == Severity.CRITICAL
            and not item.state.closed
            and item.group.primary.alert_id not in self._notified
        )

    async def _post(self, text: str, blocks: list[dict[str, Any]]) -> Optional[str]:
        """Post one message; returns its ts, or None if Slack rejected it."""
        try:
            response = await self.client.chat_postMessage(channel=self.channel, text=text, blocks=blocks)
        except SlackApiError as e:
            logger.error("slack_notifier.post_failed", extra={"channel": self.channel, "error": str(e)})
            return None
        return response.get("ts")

    def _forget_gone(self, snapshot: FeedSnapshot) -> None:
        """Keep only ids still in the feed, or whose source had no data this time."""
        present = {item.group.primary.alert_id for item in snapshot.items}
        unknown = set(snapshot.degraded_sources)
        self._notified = {
            alert_id
            for alert_id in self._notified
            if alert_id in present or parse_alert_id(alert_id)[0] in unknown
        }

    async def notify(self, snapshot: FeedSnapshot) -> int:
        """Post notifications for *snapshot*. Returns the number of messages posted."""
        posted = 0

        for item in snapshot.items:
            if not self._should_notify(item):
                continue
            primary = item.group.primary
            ts = await self._post(f"Critical alert: {primary.title}", format_alert_message(item))
            if ts is None:
                continue
            self._notified.add(primary.alert_id)
            posted += 1

        degraded = [s for s in snapshot.sources if s.source in snapshot.degraded_sources]
        degraded_set = frozenset(s.source for s in degraded)
        if degraded_set and degraded_set != self._last_degraded:
            names = ", ".join(s.source.value for s in degraded)
            if await self._post(f"Degraded alert sources: {names}", format_degraded_message(degraded)):
                posted += 1
                self._last_degraded = degraded_set
        elif not degraded_set:
            self._last_degraded = frozenset()

        self._forget_gone(snapshot)
        logger.info("slack_notifier.complete", extra={"posted": posted})
        return posted
