"""
Contracts for the external collaborators the core consumes.

Vendor API clients and the PSA client live outside this package; the core
only depends on these protocols. Implementations may raise
NotConfiguredError when they have no credentials (reported as "not
connected") and any other exception for a failed call (classified by the
caller as vendor unavailable or mitigation failure).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional, Protocol, runtime_checkable

from src.models.alert import AlertSource
from src.models.ticket import Company, TicketCandidate, TicketCreate

RawAlert = Mapping[str, Any]


@runtime_checkable
class VendorAdapter(Protocol):
    """One vendor backend. Ids are vendor-native (Alert.source_id / device_source_id)."""

    source: AlertSource

    async def list_alerts(self, source_filter: Optional[Mapping[str, Any]] = None) -> list[RawAlert]: ...

    async def get_alert_by_id(self, source_id: str) -> RawAlert: ...

    async def dispatch_mitigation(self, source_id: str, action: str) -> Any: ...

    async def isolate_device(self, device_id: str) -> Any: ...

    async def reconnect_device(self, device_id: str) -> Any: ...

    async def trigger_scan(self, device_id: str) -> Any: ...

    async def update_incident_status(self, source_ids: list[str], status: str) -> Any: ...

    async def update_verdict(self, source_ids: list[str], verdict: str) -> Any: ...


@runtime_checkable
class TicketingClient(Protocol):
    """PSA ticketing system. The core reads companies/tickets and creates tickets, nothing else."""

    async def find_company_by_mapping(self, tool_id: str, external_id: str) -> Optional[Company]: ...

    async def find_company_by_hostname(self, hostname: str) -> Optional[Company]: ...

    async def list_companies(self) -> list[Company]: ...

    async def list_tickets(self, company_id: str, search_term: Optional[str] = None) -> list[TicketCandidate]: ...

    async def create_ticket(self, ticket: TicketCreate) -> TicketCandidate: ...
