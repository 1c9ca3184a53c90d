"""
SQLAlchemy-backed alert state store.

One row per alert that an operator has touched, in table ``alert_states``
keyed by the operator-facing alert id with a unique (source, source_id)
index. Each batch is written in a single transaction.

Works with any async driver; ``sqlite+aiosqlite://`` (in-memory) is used in
tests via a StaticPool so every session shares one connection.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from src.models.alert import AlertSource
from src.models.state import Actor, AlertState, MatchMethod
from src.store.alert_state import AlertStateStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class AlertStateRow(Base):
    __tablename__ = "alert_states"

    alert_id: Mapped[str] = mapped_column(String(300), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)

    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    close_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    closed_by_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    closed_by_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    owner_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    owner_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    linked_ticket_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    linked_ticket_summary: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    match_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # manual_link | manual_create
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    matched_company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    matched_company_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "source_id", name="uq_alert_states_source_key"),
    )


# ---------------------------------------------------------------------------
# Row <-> model mapping
# ---------------------------------------------------------------------------

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out; values are always written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _actor(actor_id: Optional[str], name: Optional[str]) -> Optional[Actor]:
    return Actor(id=actor_id, name=name) if actor_id is not None else None


def row_to_state(row: AlertStateRow) -> AlertState:
    return AlertState(
        alert_id=row.alert_id,
        source=AlertSource(row.source),
        source_id=row.source_id,
        closed=row.closed,
        closed_at=_aware(row.closed_at),
        close_note=row.close_note,
        closed_by=_actor(row.closed_by_id, row.closed_by_name),
        owner=_actor(row.owner_id, row.owner_name),
        linked_ticket_id=row.linked_ticket_id,
        linked_ticket_summary=row.linked_ticket_summary,
        match_method=MatchMethod(row.match_method) if row.match_method else None,
        matched_at=_aware(row.matched_at),
        matched_company_id=row.matched_company_id,
        matched_company_name=row.matched_company_name,
        updated_at=_aware(row.updated_at),
    )


def state_to_columns(state: AlertState) -> dict[str, Any]:
    return {
        "alert_id": state.alert_id,
        "source": state.source.value,
        "source_id": state.source_id,
        "closed": state.closed,
        "closed_at": state.closed_at,
        "close_note": state.close_note,
        "closed_by_id": state.closed_by.id if state.closed_by else None,
        "closed_by_name": state.closed_by.name if state.closed_by else None,
        "owner_id": state.owner.id if state.owner else None,
        "owner_name": state.owner.name if state.owner else None,
        "linked_ticket_id": state.linked_ticket_id,
        "linked_ticket_summary": state.linked_ticket_summary,
        "match_method": state.match_method.value if state.match_method else None,
        "matched_at": state.matched_at,
        "matched_company_id": state.matched_company_id,
        "matched_company_name": state.matched_company_name,
        "updated_at": state.updated_at,
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def make_engine(database_url: str) -> AsyncEngine:
    in_memory = ":memory:" in database_url or database_url.endswith("://")
    if database_url.startswith("sqlite") and in_memory:
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, pool_pre_ping=True)


class SqlAlertStateStore(AlertStateStore):
    def __init__(self, engine: AsyncEngine, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "SqlAlertStateStore":
        return cls(make_engine(database_url), **kwargs)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("store.schema.ready", extra={"url": self.engine.url.render_as_string(hide_password=True)})

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def _load(self, alert_ids: Sequence[str]) -> dict[str, AlertState]:
        async with self._sessions() as session:
            result = await session.execute(
                select(AlertStateRow).where(AlertStateRow.alert_id.in_(list(alert_ids)))
            )
            return {row.alert_id: row_to_state(row) for row in result.scalars()}

    async def _save(self, states: Sequence[AlertState]) -> None:
        async with self._sessions() as session:
            async with session.begin():
                for state in states:
                    await session.merge(AlertStateRow(**state_to_columns(state)))
