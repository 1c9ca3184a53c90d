"""
Ticket correlator — alert context → related PSA tickets, or a new ticket.

Company resolution precedence (first hit wins):
  1. integration mapping: vendor org id → PSA company
  2. hostname: a PSA company that knows the device
  3. organization name: fuzzy match, confident matches only

"No match" is a normal RelatedTickets result, not an error.

Ticket creation never proceeds without a resolved company id, and never
deduplicates server-side: callers check AlertState.linked_ticket_id first.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timezone
from typing import Awaitable, Optional, TypeVar

from src.errors import AlertDeskError, NotConfiguredError, ValidationError, VendorUnavailableError
from src.integrations.base import TicketingClient
from src.models.alert import Alert, Severity
from src.models.ticket import (
    Company,
    CompanyMatchMethod,
    RelatedTickets,
    TicketCandidate,
    TicketCreate,
    TicketPriority,
)
from src.utils.fuzzy import find_best_match
from src.utils.templates import render_template

logger = logging.getLogger(__name__)

T = TypeVar("T")

PSA_INTEGRATION = "connectwise"

_PRIORITY_BY_SEVERITY: dict[Severity, TicketPriority] = {
    Severity.CRITICAL: TicketPriority.CRITICAL,
    Severity.HIGH: TicketPriority.HIGH,
    Severity.MEDIUM: TicketPriority.MEDIUM,
}

_CLOSED_STATUS_WORDS = ("closed", "resolved", "completed")


def priority_for(severity: Severity) -> TicketPriority:
    return _PRIORITY_BY_SEVERITY.get(severity, TicketPriority.LOW)


def is_open_ticket(ticket: TicketCandidate) -> bool:
    status = ticket.status.lower()
    return not any(word in status for word in _CLOSED_STATUS_WORDS)


# ---------------------------------------------------------------------------
# Ticket text
# ---------------------------------------------------------------------------

def _format_time(alert: Alert) -> str:
    return alert.detected_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def build_summary(alert: Alert, max_length: int = 100) -> str:
    return f"[{alert.short_code}] {alert.title}"[:max_length]


def build_bulk_summary(alerts: Sequence[Alert], company_name: str, max_length: int = 100) -> str:
    codes = "/".join(dict.fromkeys(a.short_code for a in alerts))
    return f"[{codes}] {len(alerts)} alerts — {company_name}"[:max_length]


def build_description(alert: Alert) -> str:
    return render_template(
        "ticket_description.jinja2",
        hostname=alert.device_hostname,
        severity=alert.severity.value,
        source_label=alert.source_label,
        detected_at=_format_time(alert),
        organization_name=alert.organization_name,
        merged_labels=[f"{m.label} ({m.source_id})" for m in alert.merged_sources or []],
        title=alert.title,
    )


def build_bulk_description(alerts: Sequence[Alert], company_name: str) -> str:
    return render_template(
        "ticket_description_bulk.jinja2",
        company_name=company_name,
        alerts=[
            {
                "short_code": a.short_code,
                "title": a.title,
                "severity": a.severity.value,
                "hostname": a.device_hostname,
                "detected_at": _format_time(a),
            }
            for a in alerts
        ],
    )


# ---------------------------------------------------------------------------
# Correlator
# ---------------------------------------------------------------------------

class TicketCorrelator:
    def __init__(
        self,
        client: Optional[TicketingClient],
        summary_max_length: int = 100,
        related_limit: int = 10,
    ) -> None:
        self._client = client
        self.summary_max_length = summary_max_length
        self.related_limit = related_limit

    @property
    def client(self) -> TicketingClient:
        if self._client is None:
            raise NotConfiguredError(PSA_INTEGRATION)
        return self._client

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a PSA call, classifying unexpected failures as the PSA being unavailable."""
        try:
            return await awaitable
        except AlertDeskError:
            raise
        except Exception as exc:
            logger.error("tickets.psa_error", extra={"operation": operation, "error": str(exc)})
            raise VendorUnavailableError(PSA_INTEGRATION, str(exc)) from exc

    async def resolve_company(
        self,
        hostname: Optional[str] = None,
        organization_name: Optional[str] = None,
        tool_id: Optional[str] = None,
        organization_source_id: Optional[str] = None,
    ) -> tuple[Optional[Company], Optional[CompanyMatchMethod]]:
        client = self.client

        if tool_id and organization_source_id:
            company = await self._call(
                "find_company_by_mapping",
                client.find_company_by_mapping(tool_id, organization_source_id),
            )
            if company is not None:
                return company, CompanyMatchMethod.INTEGRATION_MAPPING

        if hostname:
            company = await self._call("find_company_by_hostname", client.find_company_by_hostname(hostname))
            if company is not None:
                return company, CompanyMatchMethod.HOSTNAME

        if organization_name:
            companies = await self._call("list_companies", client.list_companies())
            match = find_best_match(organization_name, companies)
            if match is not None and match.confident:
                return match.company, CompanyMatchMethod.ORGANIZATION_NAME
            if match is not None:
                logger.info(
                    "tickets.company_match_ambiguous",
                    extra={"organization_name": organization_name, "best": match.company.name, "score": match.score},
                )

        return None, None

    async def find_related(
        self,
        hostname: Optional[str] = None,
        organization_name: Optional[str] = None,
        tool_id: Optional[str] = None,
        organization_source_id: Optional[str] = None,
    ) -> RelatedTickets:
        """Resolve the PSA company for an alert's context and list its open tickets.

        Tickets are searched by hostname when one is known, closed/resolved
        tickets are dropped and the list is capped at related_limit.
        """
        company, method = await self.resolve_company(hostname, organization_name, tool_id, organization_source_id)
        if company is None:
            logger.info(
                "tickets.no_company_match",
                extra={"hostname": hostname, "organization_name": organization_name, "tool_id": tool_id},
            )
            return RelatedTickets()

        tickets = await self._call("list_tickets", self.client.list_tickets(company.id, hostname))
        open_tickets = [t for t in tickets if is_open_ticket(t)][: self.related_limit]

        return RelatedTickets(
            matched_company_id=company.id,
            matched_company_name=company.name,
            match_method=method,
            tickets=open_tickets,
        )

    async def find_related_for(self, alert: Alert) -> RelatedTickets:
        return await self.find_related(
            hostname=alert.device_hostname,
            organization_name=alert.organization_name,
            tool_id=alert.source.value,
            organization_source_id=alert.organization_source_id,
        )

    async def create_ticket(
        self,
        alerts: Sequence[Alert],
        company_id: Optional[str],
        company_name: Optional[str] = None,
        board_id: Optional[str] = None,
        assign_to: Optional[str] = None,
    ) -> TicketCandidate:
        """Create one PSA ticket covering *alerts*.

        Raises:
            ValidationError: No alerts, or no resolved company. Nothing is written.
            NotConfiguredError: No PSA client.
            VendorUnavailableError: The PSA call failed.
        """
        if not alerts:
            raise ValidationError("At least one alert is required to create a ticket")
        if not company_id or not str(company_id).strip():
            raise ValidationError("Cannot create a ticket without a resolved company")

        if len(alerts) == 1:
            summary = build_summary(alerts[0], self.summary_max_length)
            description = build_description(alerts[0])
        else:
            label = company_name or str(company_id)
            summary = build_bulk_summary(alerts, label, self.summary_max_length)
            description = build_bulk_description(alerts, label)

        severity = max((a.severity for a in alerts), key=lambda s: s.rank)
        request = TicketCreate(
            summary=summary,
            description=description,
            company_id=str(company_id),
            priority=priority_for(severity),
            board_id=board_id,
            assign_to=assign_to,
        )
        ticket = await self._call("create_ticket", self.client.create_ticket(request))
        logger.info(
            "tickets.created",
            extra={"ticket_id": ticket.source_id, "company_id": company_id, "alert_ids": [a.alert_id for a in alerts]},
        )
        return ticket

