"""Tests for src/interfaces/slack_notifier.py."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from slack_sdk.errors import SlackApiError

from src.config import Settings
from src.errors import NotConfiguredError
from src.interfaces.slack_notifier import SlackNotifier, format_alert_message, format_degraded_message
from src.models.alert import Alert, AlertSource, MergedSource, MergeGroup, Severity
from src.models.feed import FeedItem, FeedSnapshot, SourceHealth, SourceStatus
from src.models.state import Actor, AlertState

T0 = datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_item(
    source_id: str = "T1",
    severity: Severity = Severity.CRITICAL,
    closed: bool = False,
    owner: Actor | None = None,
    merged: bool = False,
) -> FeedItem:
    primary = Alert(
        source=AlertSource.SENTINELONE,
        source_id=source_id,
        title="Trojan.Generic",
        description="Malware - Static AI",
        severity=severity,
        detected_at=T0,
        device_hostname="WS-01",
        organization_name="Contoso",
        merged_sources=[MergedSource(source=AlertSource.BLACKPOINT, source_id="B1", label="Blackpoint")]
        if merged
        else None,
    )
    state = AlertState.default(primary.alert_id)
    if closed:
        state = AlertState.model_validate({**state.model_dump(), "closed": True, "close_note": "done", "closed_at": T0})
    if owner is not None:
        state = state.model_copy(update={"owner": owner})
    return FeedItem(group=MergeGroup(members=[primary]), state=state)


def make_snapshot(items=(), degraded=()) -> FeedSnapshot:
    sources = [
        SourceStatus(source=source, health=SourceHealth.DEGRADED, message=f"No data from {source.value}: timeout")
        for source in degraded
    ]
    return FeedSnapshot(items=list(items), sources=sources)


def make_client() -> AsyncMock:
    client = AsyncMock()
    client.chat_postMessage.return_value = {"ok": True, "ts": "1741078800.000100"}
    return client


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

class TestFormatting:
    def test_alert_blocks(self):
        blocks = format_alert_message(make_item(owner=Actor(id="u1", name="Dana"), merged=True))

        assert blocks[0]["type"] == "header"
        assert blocks[0]["text"]["text"] == "🚨 Alert: Trojan.Generic"
        field_text = [f["text"] for f in blocks[1]["fields"]]
        assert "*Host*\nWS-01" in field_text
        assert "*Organization*\nContoso" in field_text
        assert any("Blackpoint `B1`" in b.get("text", {}).get("text", "") for b in blocks)
        context = blocks[-1]["elements"][0]["text"]
        assert "`s1-T1`" in context
        assert "owned by Dana" in context

    def test_long_title_truncated(self):
        item = make_item()
        long = item.model_copy(
            update={"group": MergeGroup(members=[item.group.primary.model_copy(update={"title": "x" * 300})])}
        )
        header = format_alert_message(long)[0]["text"]["text"]
        assert header == "🚨 Alert: " + "x" * 100

    def test_degraded_blocks(self):
        statuses = [SourceStatus(source=AlertSource.BLACKPOINT, health=SourceHealth.DEGRADED, message="timed out")]
        text = format_degraded_message(statuses)[0]["text"]["text"]
        assert "*blackpoint*: timed out" in text


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

class TestSlackNotifier:
    @pytest.mark.asyncio
    async def test_posts_new_critical_once(self):
        client = make_client()
        notifier = SlackNotifier(client, "#soc-alerts")
        snapshot = make_snapshot([make_item("T1"), make_item("T2", severity=Severity.HIGH)])

        assert await notifier.notify(snapshot) == 1
        assert await notifier.notify(snapshot) == 0

        kwargs = client.chat_postMessage.await_args.kwargs
        assert kwargs["channel"] == "#soc-alerts"
        assert kwargs["text"] == "Critical alert: Trojan.Generic"

    @pytest.mark.asyncio
    async def test_closed_items_skipped(self):
        client = make_client()
        assert await SlackNotifier(client, "#soc").notify(make_snapshot([make_item(closed=True)])) == 0
        client.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_post_is_retried_next_time(self):
        client = make_client()
        client.chat_postMessage.side_effect = [
            SlackApiError("channel_not_found", {"ok": False, "error": "channel_not_found"}),
            {"ok": True, "ts": "1.0"},
        ]
        notifier = SlackNotifier(client, "#soc")
        snapshot = make_snapshot([make_item()])

        assert await notifier.notify(snapshot) == 0
        assert await notifier.notify(snapshot) == 1

    @pytest.mark.asyncio
    async def test_degraded_message_on_change_only(self):
        client = make_client()
        notifier = SlackNotifier(client, "#soc")

        assert await notifier.notify(make_snapshot(degraded=[AlertSource.BLACKPOINT])) == 1
        assert await notifier.notify(make_snapshot(degraded=[AlertSource.BLACKPOINT])) == 0
        assert await notifier.notify(make_snapshot()) == 0
        assert await notifier.notify(make_snapshot(degraded=[AlertSource.BLACKPOINT])) == 1
        assert "blackpoint" in client.chat_postMessage.await_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_alerts_gone_from_feed_are_forgotten(self):
        client = make_client()
        notifier = SlackNotifier(client, "#soc")

        assert await notifier.notify(make_snapshot([make_item("T1")])) == 1
        assert await notifier.notify(make_snapshot([make_item("T2")])) == 1
        assert notifier._notified == {"s1-T2"}
        assert await notifier.notify(make_snapshot([make_item("T1"), make_item("T2")])) == 1

    @pytest.mark.asyncio
    async def test_degraded_source_keeps_its_notified_alerts(self):
        client = make_client()
        notifier = SlackNotifier(client, "#soc")

        assert await notifier.notify(make_snapshot([make_item("T1")])) == 1
        await notifier.notify(make_snapshot(degraded=[AlertSource.SENTINELONE]))
        assert notifier._notified == {"s1-T1"}
        client.chat_postMessage.reset_mock()

        await notifier.notify(make_snapshot([make_item("T1")]))
        client.chat_postMessage.assert_not_awaited()

    def test_from_settings_requires_token(self):
        with pytest.raises(NotConfiguredError):
            SlackNotifier.from_settings(Settings(_env_file=None, slack_bot_token=None))

    def test_from_settings(self):
        notifier = SlackNotifier.from_settings(
            Settings(_env_file=None, slack_bot_token="xoxb-test", slack_alert_channel="#noc")
        )
        assert notifier.channel == "#noc"
