"""
Alert state store — operator-authored lifecycle per alert id.

Every transition is implemented once, in AlertStateStore, over two storage
primitives the backends provide:

  _load(alert_ids) -> {alert_id: AlertState}   rows that exist, nothing else
  _save(states)                                 persist a batch atomically

Transitions validate the whole batch (ids, note, preconditions) before
calling _save, so a batch either commits for every id or not at all.
Writes are serialized per store with an asyncio.Lock; across operators the
last accepted write wins.

Backends:
  InMemoryAlertStateStore — dict, for tests and single-node use
  SqlAlertStateStore      — SQLAlchemy async (src/store/sql.py)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from src.errors import ConflictError, ValidationError
from src.models.alert import AlertSource, alert_id_for, parse_alert_id
from src.models.state import Actor, AlertState, MatchMethod

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("src.audit")

_AUDIT_NOTE_MAX = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertStateStore(ABC):
    def __init__(
        self,
        max_batch_size: int = 100,
        close_note_max_length: int = 2000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_batch_size = max_batch_size
        self.close_note_max_length = close_note_max_length
        self._clock = clock
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _load(self, alert_ids: Sequence[str]) -> dict[str, AlertState]:
        """Return persisted rows for *alert_ids*; missing ids are omitted."""

    @abstractmethod
    async def _save(self, states: Sequence[AlertState]) -> None:
        """Persist every state in one atomic write."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, alert_id: str) -> AlertState:
        """State for one alert; the explicit default when no row exists."""
        parse_alert_id(alert_id)
        rows = await self._load([alert_id])
        return rows.get(alert_id) or AlertState.default(alert_id)

    async def get_many(self, alert_ids: Sequence[str]) -> dict[str, AlertState]:
        ids = list(dict.fromkeys(alert_ids))
        for alert_id in ids:
            parse_alert_id(alert_id)
        if not ids:
            return {}
        rows = await self._load(ids)
        return {alert_id: rows.get(alert_id) or AlertState.default(alert_id) for alert_id in ids}

    async def get_by_source_key(self, source: AlertSource, source_id: str) -> AlertState:
        return await self.get(alert_id_for(AlertSource(source), source_id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def take_ownership(self, alert_ids: Sequence[str], actor: Actor) -> list[AlertState]:
        ids = self.validate_batch(alert_ids)
        result = await self._transition(ids, lambda s: {"owner": actor})
        self._audit("alert.ownership.taken", ids, actor)
        return result

    async def release_ownership(self, alert_ids: Sequence[str], actor: Optional[Actor] = None) -> list[AlertState]:
        """Clear the owner. Unowned ids are left untouched and no row is created."""
        ids = self.validate_batch(alert_ids)
        result = await self._transition(ids, lambda s: {"owner": None} if s.owner is not None else None)
        self._audit("alert.ownership.released", ids, actor)
        return result

    async def close(self, alert_ids: Sequence[str], actor: Actor, note: str) -> list[AlertState]:
        ids = self.validate_batch(alert_ids)
        note = (note or "").strip()
        if not note:
            raise ValidationError("A close note is required")
        if len(note) > self.close_note_max_length:
            raise ValidationError(
                f"Close note is {len(note)} characters; the maximum is {self.close_note_max_length}"
            )

        now = self._clock()
        result = await self._transition(
            ids,
            lambda s: {"closed": True, "closed_at": now, "close_note": note, "closed_by": actor},
        )
        self._audit("alert.closed", ids, actor, detail=note[:_AUDIT_NOTE_MAX])
        return result

    async def reopen(self, alert_ids: Sequence[str], actor: Optional[Actor] = None) -> list[AlertState]:
        """Reopen closed alerts; owner and ticket link are kept.

        Raises:
            ConflictError: If any id has no closure record.
        """
        ids = self.validate_batch(alert_ids)

        def _reopen(state: AlertState) -> dict[str, Any]:
            if not state.closed:
                raise ConflictError(f"Alert '{state.alert_id}' is not closed")
            return {"closed": False, "closed_at": None, "close_note": None, "closed_by": None}

        result = await self._transition(ids, _reopen)
        self._audit("alert.reopened", ids, actor)
        return result

    async def link_ticket(
        self,
        alert_ids: Sequence[str],
        ticket_id: str,
        summary: Optional[str] = None,
        method: MatchMethod = MatchMethod.MANUAL_LINK,
        actor: Optional[Actor] = None,
    ) -> list[AlertState]:
        ids = self.validate_batch(alert_ids)
        ticket_id = str(ticket_id).strip() if ticket_id is not None else ""
        if not ticket_id:
            raise ValidationError("A ticket id is required")

        now = self._clock()
        result = await self._transition(
            ids,
            lambda s: {
                "linked_ticket_id": ticket_id,
                "linked_ticket_summary": summary,
                "match_method": MatchMethod(method),
                "matched_at": now,
            },
        )
        event = "alert.ticket.created" if method == MatchMethod.MANUAL_CREATE else "alert.ticket.linked"
        self._audit(event, ids, actor, detail=ticket_id)
        return result

    async def record_company_match(
        self, alert_ids: Sequence[str], company_id: str, company_name: Optional[str] = None
    ) -> list[AlertState]:
        """Cache a ticket-correlation company match on each alert's row."""
        ids = self.validate_batch(alert_ids)
        return await self._transition(
            ids,
            lambda s: {"matched_company_id": company_id, "matched_company_name": company_name},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def validate_batch(self, alert_ids: Sequence[str]) -> list[str]:
        if isinstance(alert_ids, str):
            raise ValidationError("alert_ids must be a list of alert ids, not a single string")
        ids = list(dict.fromkeys(alert_ids))
        if not ids:
            raise ValidationError("At least one alert id is required")
        if len(ids) > self.max_batch_size:
            raise ValidationError(
                f"Batch of {len(ids)} alert ids exceeds the maximum of {self.max_batch_size}"
            )
        for alert_id in ids:
            parse_alert_id(alert_id)
        return ids

    async def _transition(
        self,
        ids: list[str],
        change: Callable[[AlertState], Optional[dict[str, Any]]],
    ) -> list[AlertState]:
        """Apply *change* to every id, then save all changed rows at once.

        *change* returns the fields to update, or None to leave a row as is.
        Any exception raised while computing changes aborts the batch.
        """
        async with self._write_lock:
            existing = await self._load(ids)
            now = self._clock()
            updated: list[AlertState] = []
            to_save: list[AlertState] = []

            for alert_id in ids:
                state = existing.get(alert_id) or AlertState.default(alert_id)
                changes = change(state)
                if changes is None:
                    updated.append(state)
                    continue
                # model_copy skips validation; rebuild so the invariants are re-checked
                new_state = AlertState.model_validate(
                    {**state.model_dump(), **changes, "updated_at": now}
                )
                updated.append(new_state)
                to_save.append(new_state)

            if to_save:
                await self._save(to_save)
        return updated

    def _audit(self, event: str, ids: list[str], actor: Optional[Actor], detail: Optional[str] = None) -> None:
        audit_logger.info(
            event,
            extra={
                "actor_id": actor.id if actor else None,
                "alert_ids": ids,
                "detail": detail,
            },
        )


class InMemoryAlertStateStore(AlertStateStore):
    """Process-local store. State is lost on restart."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._rows: dict[str, AlertState] = {}

    async def _load(self, alert_ids: Sequence[str]) -> dict[str, AlertState]:
        return {alert_id: self._rows[alert_id] for alert_id in alert_ids if alert_id in self._rows}

    async def _save(self, states: Sequence[AlertState]) -> None:
        self._rows.update({state.alert_id: state for state in states})

    def __len__(self) -> int:
        return len(self._rows)
