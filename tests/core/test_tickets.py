"""Tests for src/core/tickets.py — TicketCorrelator."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.core.tickets import (
    TicketCorrelator,
    build_bulk_summary,
    build_description,
    build_summary,
    priority_for,
)
from src.errors import NotConfiguredError, ValidationError, VendorUnavailableError
from src.models.alert import Alert, AlertSource, Severity
from src.models.ticket import Company, CompanyMatchMethod, TicketCandidate, TicketPriority

T0 = datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)
CONTOSO = Company(id="250", name="Contoso Ltd")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_alert(
    source: AlertSource = AlertSource.SENTINELONE,
    source_id: str = "T1",
    severity: Severity = Severity.CRITICAL,
    title: str = "Trojan.Generic",
    **kwargs,
) -> Alert:
    defaults = {
        "device_hostname": "WS-01",
        "organization_name": "Contoso",
        "organization_source_id": "site-1",
    }
    defaults.update(kwargs)
    return Alert(source=source, source_id=source_id, title=title, severity=severity, detected_at=T0, **defaults)


def make_client(**overrides) -> AsyncMock:
    client = AsyncMock()
    client.find_company_by_mapping.return_value = None
    client.find_company_by_hostname.return_value = None
    client.list_companies.return_value = []
    client.list_tickets.return_value = []
    client.create_ticket.return_value = TicketCandidate(source_id="9001", summary="[S1] Trojan.Generic", status="New")
    for name, value in overrides.items():
        getattr(client, name).return_value = value
    return client


def make_ticket(ticket_id: str, status: str = "New") -> TicketCandidate:
    return TicketCandidate(source_id=ticket_id, summary=f"Ticket {ticket_id}", status=status)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

class TestTicketText:
    def test_summary_uses_short_code(self):
        assert build_summary(make_alert()) == "[S1] Trojan.Generic"
        assert build_summary(make_alert(source=AlertSource.BLACKPOINT, source_id="B1")).startswith("[BP] ")

    def test_summary_truncated(self):
        summary = build_summary(make_alert(title="x" * 300), max_length=100)
        assert len(summary) == 100

    def test_bulk_summary(self):
        alerts = [make_alert(), make_alert(source=AlertSource.BLACKPOINT, source_id="B1"), make_alert(source_id="T2")]
        assert build_bulk_summary(alerts, "Contoso") == "[S1/BP] 3 alerts — Contoso"

    def test_description_fields(self):
        description = build_description(make_alert())
        assert description.splitlines()[0] == "Alert detected on WS-01"
        assert "Severity: critical" in description
        assert "Source: SentinelOne" in description
        assert "Detected: 2025-03-04 09:00 UTC" in description
        assert description.endswith("Original alert: Trojan.Generic")

    def test_description_without_hostname(self):
        assert build_description(make_alert(device_hostname=None)).startswith("Alert detected on unknown host")

    @pytest.mark.parametrize(
        "severity,priority",
        [
            (Severity.CRITICAL, TicketPriority.CRITICAL),
            (Severity.HIGH, TicketPriority.HIGH),
            (Severity.MEDIUM, TicketPriority.MEDIUM),
            (Severity.LOW, TicketPriority.LOW),
            (Severity.INFORMATIONAL, TicketPriority.LOW),
        ],
    )
    def test_priority_map(self, severity, priority):
        assert priority_for(severity) == priority


# ---------------------------------------------------------------------------
# find_related
# ---------------------------------------------------------------------------

class TestFindRelated:
    @pytest.mark.asyncio
    async def test_mapping_wins(self):
        client = make_client(
            find_company_by_mapping=CONTOSO,
            find_company_by_hostname=Company(id="999", name="Other"),
        )
        related = await TicketCorrelator(client).find_related_for(make_alert())

        assert related.matched_company_id == "250"
        assert related.match_method == CompanyMatchMethod.INTEGRATION_MAPPING
        client.find_company_by_mapping.assert_awaited_once_with("sentinelone", "site-1")
        client.find_company_by_hostname.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hostname_second(self):
        client = make_client(find_company_by_hostname=CONTOSO)
        related = await TicketCorrelator(client).find_related_for(make_alert())
        assert related.match_method == CompanyMatchMethod.HOSTNAME
        client.list_companies.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fuzzy_name_last(self):
        client = make_client(list_companies=[CONTOSO, Company(id="300", name="Fabrikam Inc")])
        related = await TicketCorrelator(client).find_related_for(make_alert(organization_name="Contoso, LLC"))
        assert related.matched_company_id == "250"
        assert related.match_method == CompanyMatchMethod.ORGANIZATION_NAME

    @pytest.mark.asyncio
    async def test_ambiguous_name_is_no_match(self):
        client = make_client(
            list_companies=[Company(id="1", name="Contoso East"), Company(id="2", name="Contoso West")]
        )
        related = await TicketCorrelator(client).find_related(organization_name="Contoso Eas")
        assert not related.matched

    @pytest.mark.asyncio
    async def test_no_match_is_empty_result(self):
        related = await TicketCorrelator(make_client()).find_related_for(make_alert())
        assert not related.matched
        assert related.tickets == []

    @pytest.mark.asyncio
    async def test_closed_tickets_filtered_and_capped(self):
        tickets = [make_ticket("1", "Closed"), make_ticket("2", ">Resolved"), make_ticket("3", "Completed")]
        tickets += [make_ticket(str(i), "In Progress") for i in range(10, 25)]
        client = make_client(find_company_by_hostname=CONTOSO, list_tickets=tickets)

        related = await TicketCorrelator(client, related_limit=10).find_related_for(make_alert())

        assert len(related.tickets) == 10
        assert all(t.status == "In Progress" for t in related.tickets)
        client.list_tickets.assert_awaited_once_with("250", "WS-01")

    @pytest.mark.asyncio
    async def test_psa_failure_is_vendor_unavailable(self):
        client = make_client()
        client.find_company_by_mapping.side_effect = ConnectionError("PSA down")
        with pytest.raises(VendorUnavailableError, match="PSA down"):
            await TicketCorrelator(client).find_related_for(make_alert())

    @pytest.mark.asyncio
    async def test_no_client_is_not_configured(self):
        with pytest.raises(NotConfiguredError):
            await TicketCorrelator(None).find_related_for(make_alert())


# ---------------------------------------------------------------------------
# create_ticket
# ---------------------------------------------------------------------------

class TestCreateTicket:
    @pytest.mark.asyncio
    async def test_requires_company(self):
        client = make_client()
        with pytest.raises(ValidationError):
            await TicketCorrelator(client).create_ticket([make_alert()], company_id=None)
        client.create_ticket.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blank_company_rejected(self):
        client = make_client()
        with pytest.raises(ValidationError):
            await TicketCorrelator(client).create_ticket([make_alert()], company_id="  ")
        client.create_ticket.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_alerts(self):
        with pytest.raises(ValidationError):
            await TicketCorrelator(make_client()).create_ticket([], company_id="250")

    @pytest.mark.asyncio
    async def test_single_alert_ticket(self):
        client = make_client()
        ticket = await TicketCorrelator(client).create_ticket([make_alert()], company_id="250")

        request = client.create_ticket.await_args.args[0]
        assert request.summary == "[S1] Trojan.Generic"
        assert request.company_id == "250"
        assert request.priority == TicketPriority.CRITICAL
        assert "Alert detected on WS-01" in request.description
        assert ticket.source_id == "9001"

    @pytest.mark.asyncio
    async def test_bulk_ticket_uses_highest_severity(self):
        client = make_client()
        alerts = [
            make_alert(severity=Severity.LOW),
            make_alert(source=AlertSource.BLACKPOINT, source_id="B1", severity=Severity.HIGH),
        ]
        await TicketCorrelator(client).create_ticket(alerts, company_id="250", company_name="Contoso Ltd")

        request = client.create_ticket.await_args.args[0]
        assert request.summary == "[S1/BP] 2 alerts — Contoso Ltd"
        assert request.priority == TicketPriority.HIGH
        assert "1. [S1] Trojan.Generic" in request.description
        assert "2. [BP] Trojan.Generic" in request.description
