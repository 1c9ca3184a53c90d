"""
Alert state — the operator-authored overlay on read-only vendor alerts.

Rows are lightweight and never duplicate vendor data. No row means "open,
unowned, unlinked"; AlertState.default() makes that explicit on read.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator

from src.models.alert import AlertSource, alert_id_for, parse_alert_id


class Actor(BaseModel):
    """An operator reference. Identity management lives outside the core."""

    id: str
    name: Optional[str] = None


class MatchMethod(str, Enum):
    MANUAL_LINK = "manual_link"
    MANUAL_CREATE = "manual_create"


class AlertState(BaseModel):
    alert_id: str
    source: AlertSource
    source_id: str

    closed: bool = False
    closed_at: Optional[datetime] = None
    close_note: Optional[str] = None
    closed_by: Optional[Actor] = None

    owner: Optional[Actor] = None

    linked_ticket_id: Optional[str] = None
    linked_ticket_summary: Optional[str] = None
    match_method: Optional[MatchMethod] = None
    matched_at: Optional[datetime] = None

    matched_company_id: Optional[str] = None
    matched_company_name: Optional[str] = None

    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _open_rows_have_no_closure(self) -> "AlertState":
        if not self.closed and (self.closed_at is not None or self.close_note is not None):
            raise ValueError("an open alert cannot carry closed_at or close_note")
        if self.alert_id != alert_id_for(self.source, self.source_id):
            raise ValueError(
                f"alert_id '{self.alert_id}' does not match ({self.source.value}, {self.source_id})"
            )
        return self

    @classmethod
    def default(cls, alert_id: str) -> "AlertState":
        """The implicit state of an alert nobody has touched."""
        source, source_id = parse_alert_id(alert_id)
        return cls(alert_id=alert_id, source=source, source_id=source_id)

    @property
    def is_owned(self) -> bool:
        return self.owner is not None
