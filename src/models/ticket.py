"""
Ticket models — read-only projections from the PSA plus the create request.

The core never owns tickets; it only decides which ones relate to an alert
and builds the fields for a new one.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TicketPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CompanyMatchMethod(str, Enum):
    INTEGRATION_MAPPING = "integration_mapping"   # vendor org id → PSA company
    HOSTNAME = "hostname"                         # known device on a PSA company
    ORGANIZATION_NAME = "organization_name"       # fuzzy name match, last resort


class Company(BaseModel):
    id: str       # PSA company id
    name: str


class TicketCandidate(BaseModel):
    source_id: str
    summary: str
    status: str
    priority: Optional[str] = None


class RelatedTickets(BaseModel):
    """Result of ticket correlation. An empty result is a normal outcome, not an error."""

    matched_company_id: Optional[str] = None
    matched_company_name: Optional[str] = None
    match_method: Optional[CompanyMatchMethod] = None
    tickets: list[TicketCandidate] = Field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.matched_company_id is not None


class TicketCreate(BaseModel):
    summary: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    company_id: str = Field(min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    board_id: Optional[str] = None
    assign_to: Optional[str] = None
