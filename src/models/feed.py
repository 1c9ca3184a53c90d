"""
Feed models — what the facade returns to the presentation layer.

Internal model hierarchy:
  FeedItem       — a merge group joined with its primary's AlertState
  FeedSnapshot   — one poll: items + per-source health + severity counts
  CommandResult  — typed outcome of a write command (value or classified error)

External API model:
  FeedItemResponse — flat shape returned by GET /api/v1/alerts.
                     Produced by FeedItem.to_response().

Import hierarchy (no circular dependencies):
  alert.py     <- errors.py
  state.py     <- alert.py
  ticket.py    <- no internal imports
  feed.py      <- alert.py, state.py
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from src.errors import AlertDeskError
from src.models.alert import AlertSource, MergedSource, MergeGroup, Severity
from src.models.state import Actor, AlertState

T = TypeVar("T")


class SourceHealth(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"            # fetch failed or timed out this poll
    NOT_CONNECTED = "not_connected"  # no credentials; not an error state


class SourceStatus(BaseModel):
    source: AlertSource
    health: SourceHealth
    alert_count: int = 0
    message: Optional[str] = None


class FeedQuery(BaseModel):
    sources: Optional[list[AlertSource]] = None   # None = every configured source
    severity: Optional[Severity] = None
    search: Optional[str] = None
    show_closed: bool = False


class FeedItem(BaseModel):
    group: MergeGroup
    state: AlertState                                  # primary's state, authoritative for the group
    member_states: dict[str, AlertState] = Field(default_factory=dict)

    def to_response(self) -> FeedItemResponse:
        primary = self.group.primary
        return FeedItemResponse(
            alert_id=primary.alert_id,
            source=primary.source,
            source_label=primary.source_label,
            source_id=primary.source_id,
            title=primary.title,
            description=primary.description,
            severity=primary.severity,
            group_severity=self.group.severity,
            status=primary.status,
            detected_at=primary.detected_at,
            device_hostname=primary.device_hostname,
            organization_name=primary.organization_name,
            file_hash=primary.file_hash,
            merged_sources=primary.merged_sources,
            member_alert_ids=self.group.alert_ids,
            closed=self.state.closed,
            closed_at=self.state.closed_at,
            close_note=self.state.close_note,
            closed_by=self.state.closed_by,
            owner=self.state.owner,
            linked_ticket_id=self.state.linked_ticket_id,
            linked_ticket_summary=self.state.linked_ticket_summary,
            matched_company_id=self.state.matched_company_id,
            matched_company_name=self.state.matched_company_name,
        )


class FeedSnapshot(BaseModel):
    items: list[FeedItem] = Field(default_factory=list)
    sources: list[SourceStatus] = Field(default_factory=list)
    severity_counts: dict[Severity, int] = Field(default_factory=dict)
    polled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def degraded_sources(self) -> list[AlertSource]:
        return [s.source for s in self.sources if s.health == SourceHealth.DEGRADED]

    @property
    def not_connected_sources(self) -> list[AlertSource]:
        return [s.source for s in self.sources if s.health == SourceHealth.NOT_CONNECTED]


class CommandError(BaseModel):
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: AlertDeskError) -> CommandError:
        return cls(kind=exc.kind, message=exc.message)


class CommandResult(BaseModel, Generic[T]):
    """Outcome of a write command. Exactly one of value / error is meaningful."""

    ok: bool
    value: Optional[T] = None
    error: Optional[CommandError] = None

    @classmethod
    def success(cls, value: Any = None) -> CommandResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: AlertDeskError) -> CommandResult:
        return cls(ok=False, error=CommandError.from_exception(exc))


class FeedItemResponse(BaseModel):
    """Flat external API row returned by GET /api/v1/alerts."""

    alert_id: str
    source: AlertSource
    source_label: str
    source_id: str
    title: str
    description: Optional[str] = None
    severity: Severity
    group_severity: Severity
    status: Optional[str] = None
    detected_at: datetime
    device_hostname: Optional[str] = None
    organization_name: Optional[str] = None
    file_hash: Optional[str] = None
    merged_sources: Optional[list[MergedSource]] = None
    member_alert_ids: list[str] = Field(default_factory=list)
    closed: bool = False
    closed_at: Optional[datetime] = None
    close_note: Optional[str] = None
    closed_by: Optional[Actor] = None
    owner: Optional[Actor] = None
    linked_ticket_id: Optional[str] = None
    linked_ticket_summary: Optional[str] = None
    matched_company_id: Optional[str] = None
    matched_company_name: Optional[str] = None
