"""
AlertFeed — the read and write surface the presentation layer talks to.

Read path, one poll:
  1. fetch every source concurrently through the per-source cache, each
     with its own timeout
  2. classify failures per source (not connected / degraded); a failing
     source contributes zero alerts and never aborts the poll
  3. normalize → correlate → join AlertState → filter → sort

Write path: every command returns a CommandResult. Classified errors
(validation, conflict, not configured, vendor unavailable, mitigation
failure) come back as a failed result; nothing is partially committed.

Entry points: AlertFeed.poll(query) -> FeedSnapshot, plus the commands below.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Optional

from src.config import Settings, get_settings
from src.core import mitigation
from src.core.cache import SourceCache
from src.core.correlate import CorrelationPolicy, correlate
from src.core.normalize import normalize_many, severity_counts
from src.core.tickets import TicketCorrelator
from src.errors import (
    AlertDeskError,
    ConflictError,
    MitigationDispatchError,
    NotConfiguredError,
    ValidationError,
    VendorUnavailableError,
)
from src.integrations.base import TicketingClient, VendorAdapter
from src.models.alert import SOURCE_CATEGORIES, Alert, AlertSource, SourceCategory, parse_alert_id
from src.models.feed import (
    CommandResult,
    FeedItem,
    FeedQuery,
    FeedSnapshot,
    SourceHealth,
    SourceStatus,
)
from src.models.state import Actor, MatchMethod
from src.store.alert_state import AlertStateStore, InMemoryAlertStateStore
from src.store.sql import SqlAlertStateStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("src.audit")


class AlertFeed:
    def __init__(
        self,
        adapters: Mapping[AlertSource, VendorAdapter],
        store: AlertStateStore,
        tickets: TicketCorrelator,
        settings: Optional[Settings] = None,
        cache: Optional[SourceCache[list[Alert]]] = None,
        policy: Optional[CorrelationPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.adapters = dict(adapters)
        self.store = store
        self.tickets = tickets
        self.cache = cache or SourceCache.from_settings(self.settings)
        self.policy = policy or CorrelationPolicy.from_settings(self.settings)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        adapters: Mapping[AlertSource, VendorAdapter],
        ticketing_client: Optional[TicketingClient] = None,
    ) -> "AlertFeed":
        """Wire a feed from configuration: SQL store when DATABASE_URL is set, else in-memory."""
        store_options = {
            "max_batch_size": settings.max_batch_size,
            "close_note_max_length": settings.close_note_max_length,
        }
        if settings.database_url:
            store: AlertStateStore = SqlAlertStateStore.from_url(settings.database_url, **store_options)
        else:
            store = InMemoryAlertStateStore(**store_options)

        tickets = TicketCorrelator(
            ticketing_client,
            summary_max_length=settings.ticket_summary_max_length,
            related_limit=settings.related_ticket_limit,
        )
        return cls(adapters, store, tickets, settings=settings)

    # ------------------------------------------------------------------
    # Source fetch
    # ------------------------------------------------------------------

    def _adapter_for(self, source: AlertSource) -> VendorAdapter:
        adapter = self.adapters.get(source)
        if adapter is None:
            raise NotConfiguredError(source.value)
        return adapter

    async def _source_alerts(self, source: AlertSource) -> list[Alert]:
        """Normalized alerts for one source, from cache or a fresh timed fetch."""
        adapter = self._adapter_for(source)
        timeout = self.settings.vendor_timeout_seconds

        async def _fetch() -> list[Alert]:
            try:
                raws = await asyncio.wait_for(adapter.list_alerts(), timeout=timeout)
            except AlertDeskError:
                raise
            except asyncio.TimeoutError:
                raise VendorUnavailableError(source.value, f"timed out after {timeout:g}s") from None
            except Exception as exc:
                raise VendorUnavailableError(source.value, str(exc) or type(exc).__name__) from exc
            return normalize_many(source, raws)

        return await self.cache.get_or_fetch(source, _fetch)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def poll(self, query: Optional[FeedQuery] = None) -> FeedSnapshot:
        """Assemble the unified feed. Never raises for a single source's failure."""
        query = query or FeedQuery()
        sources = list(AlertSource)

        results = await asyncio.gather(
            *(self._source_alerts(source) for source in sources),
            return_exceptions=True,
        )

        alerts: list[Alert] = []
        statuses: list[SourceStatus] = []
        for source, result in zip(sources, results):
            if isinstance(result, NotConfiguredError):
                statuses.append(SourceStatus(source=source, health=SourceHealth.NOT_CONNECTED))
            elif isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = result.reason if isinstance(result, VendorUnavailableError) else str(result)
                logger.warning("feed.source_degraded", extra={"source": source.value, "error": message})
                statuses.append(
                    SourceStatus(source=source, health=SourceHealth.DEGRADED, message=f"No data from {source.value}: {message}")
                )
            else:
                alerts.extend(result)
                statuses.append(SourceStatus(source=source, health=SourceHealth.OK, alert_count=len(result)))

        groups = correlate(alerts, self.policy)
        states = await self.store.get_many([alert.alert_id for alert in alerts])

        items = [
            FeedItem(
                group=group,
                state=states[group.primary.alert_id],
                member_states={alert_id: states[alert_id] for alert_id in group.alert_ids},
            )
            for group in groups
        ]
        items = [item for item in items if _matches(item, query)]
        items.sort(key=lambda item: (-item.group.severity.rank, -item.group.primary.detected_at.timestamp()))

        snapshot = FeedSnapshot(
            items=items,
            sources=statuses,
            severity_counts=severity_counts(item.group for item in items),
        )
        logger.info(
            "feed.poll.complete",
            extra={
                "alerts": len(alerts),
                "items": len(items),
                "degraded": [s.value for s in snapshot.degraded_sources],
                "not_connected": [s.value for s in snapshot.not_connected_sources],
            },
        )
        return snapshot

    async def _resolve(self, alert_ids: Sequence[str]) -> list[Alert]:
        """Look up current alerts by operator id. Unknown ids are a ValidationError."""
        wanted = [parse_alert_id(alert_id) for alert_id in alert_ids]
        by_source: dict[AlertSource, dict[str, Alert]] = {}
        resolved: list[Alert] = []
        for (source, source_id), alert_id in zip(wanted, alert_ids):
            if source not in by_source:
                by_source[source] = {a.source_id: a for a in await self._source_alerts(source)}
            alert = by_source[source].get(source_id)
            if alert is None:
                raise ValidationError(f"Alert '{alert_id}' is not in the current {source.value} data")
            resolved.append(alert)
        return resolved

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _command(self, name: str, operation: Callable[[], Awaitable[Any]]) -> CommandResult:
        try:
            value = await operation()
        except AlertDeskError as exc:
            logger.info("feed.command.rejected", extra={"command": name, "kind": exc.kind, "error": exc.message})
            return CommandResult.failure(exc)
        return CommandResult.success(value)

    async def take_ownership(self, alert_ids: Sequence[str], actor: Actor) -> CommandResult:
        return await self._command("take_ownership", lambda: self.store.take_ownership(alert_ids, actor))

    async def release_ownership(self, alert_ids: Sequence[str], actor: Optional[Actor] = None) -> CommandResult:
        return await self._command("release_ownership", lambda: self.store.release_ownership(alert_ids, actor))

    async def close(self, alert_ids: Sequence[str], actor: Actor, note: str) -> CommandResult:
        return await self._command("close", lambda: self.store.close(alert_ids, actor, note))

    async def reopen(self, alert_ids: Sequence[str], actor: Optional[Actor] = None) -> CommandResult:
        return await self._command("reopen", lambda: self.store.reopen(alert_ids, actor))

    async def link_ticket(
        self,
        alert_ids: Sequence[str],
        ticket_id: str,
        summary: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> CommandResult:
        return await self._command(
            "link_ticket",
            lambda: self.store.link_ticket(alert_ids, ticket_id, summary, MatchMethod.MANUAL_LINK, actor),
        )

    async def find_related_tickets(self, alert_id: str) -> CommandResult:
        """Related open tickets for one alert; a company match is cached on its state row."""

        async def _run():
            (alert,) = await self._resolve([alert_id])
            related = await self.tickets.find_related_for(alert)
            if related.matched:
                await self.store.record_company_match(
                    [alert_id], related.matched_company_id, related.matched_company_name
                )
            return related

        return await self._command("find_related_tickets", _run)

    async def create_and_link_ticket(
        self,
        alert_ids: Sequence[str],
        actor: Optional[Actor] = None,
        company_id: Optional[str] = None,
        company_name: Optional[str] = None,
        board_id: Optional[str] = None,
        assign_to: Optional[str] = None,
    ) -> CommandResult:
        """Create one ticket for *alert_ids* and link every one of them to it.

        The ids are correlated first, so the members of one merge group make a
        single-incident ticket whose description lists the merged sources.
        The company comes from *company_id* or from a previously cached
        match on the alerts' state. Alerts that already carry a linked
        ticket are rejected with a conflict before anything is written.
        """

        async def _run():
            ids = self.store.validate_batch(alert_ids)
            states = await self.store.get_many(ids)

            already_linked = [s for s in states.values() if s.linked_ticket_id]
            if already_linked:
                first = already_linked[0]
                raise ConflictError(
                    f"Alert '{first.alert_id}' is already linked to ticket #{first.linked_ticket_id}"
                )

            resolved_id, resolved_name = company_id, company_name
            if not resolved_id:
                cached = next((s for s in states.values() if s.matched_company_id), None)
                if cached is not None:
                    resolved_id, resolved_name = cached.matched_company_id, cached.matched_company_name
            if not resolved_id:
                raise ValidationError("Cannot create a ticket without a resolved company")

            # one ticket entry per incident: merged members collapse into their primary
            incidents = [group.primary for group in correlate(await self._resolve(ids), self.policy)]
            ticket = await self.tickets.create_ticket(
                incidents, resolved_id, resolved_name, board_id=board_id, assign_to=assign_to
            )
            await self.store.link_ticket(ids, ticket.source_id, ticket.summary, MatchMethod.MANUAL_CREATE, actor)
            return ticket

        return await self._command("create_and_link_ticket", _run)

    async def dispatch_mitigation(
        self,
        alert_ids: Sequence[str],
        action: str,
        actor: Optional[Actor] = None,
    ) -> CommandResult:
        """Forward a mitigation to each alert's vendor.

        Duplicate ids are dispatched once and the batch is capped at
        max_batch_size. Every alert is validated before the first dispatch.
        Vendor commands cannot be rolled back, so a vendor failure stops the
        batch and earlier dispatches stand.
        """

        async def _run():
            alerts = await self._resolve(self.store.validate_batch(alert_ids))
            for alert in alerts:
                mitigation.validate_action(alert, action)

            results = []
            for alert in alerts:
                adapter = self._adapter_for(alert.source)
                results.append(await mitigation.dispatch(alert, action, adapter, self.cache, actor))
            return results

        return await self._command("dispatch_mitigation", _run)

    async def update_incident_status(
        self, alert_ids: Sequence[str], status: str, actor: Optional[Actor] = None
    ) -> CommandResult:
        if status not in mitigation.INCIDENT_STATUSES:
            return CommandResult.failure(
                ValidationError(
                    f"Unknown incident status '{status}'. "
                    f"Valid statuses: {', '.join(sorted(mitigation.INCIDENT_STATUSES))}"
                )
            )
        return await self._command(
            "update_incident_status",
            lambda: self._edr_update(alert_ids, "update_incident_status", status, actor),
        )

    async def update_verdict(self, alert_ids: Sequence[str], verdict: str, actor: Optional[Actor] = None) -> CommandResult:
        if verdict not in mitigation.VERDICTS:
            return CommandResult.failure(
                ValidationError(
                    f"Unknown verdict '{verdict}'. Valid verdicts: {', '.join(sorted(mitigation.VERDICTS))}"
                )
            )
        return await self._command(
            "update_verdict",
            lambda: self._edr_update(alert_ids, "update_verdict", verdict, actor),
        )

    async def _edr_update(self, alert_ids: Sequence[str], method: str, value: str, actor: Optional[Actor]) -> Any:
        """Pass a status/verdict change through to the EDR vendor and invalidate its cache."""
        ids = self.store.validate_batch(alert_ids)
        keys = [parse_alert_id(alert_id) for alert_id in ids]
        sources = {source for source, _ in keys}
        if len(sources) != 1:
            raise ValidationError("Incident status and verdict updates apply to one source at a time")
        (source,) = sources
        if SOURCE_CATEGORIES[source] != SourceCategory.EDR:
            raise ValidationError(f"{source.value} alerts do not support {method.replace('_', ' ')}")

        adapter = self._adapter_for(source)
        source_ids = [source_id for _, source_id in keys]
        try:
            result = await getattr(adapter, method)(source_ids, value)
        except AlertDeskError:
            raise
        except Exception as exc:
            raise MitigationDispatchError(source.value, method, str(exc)) from exc

        self.cache.invalidate(source)
        audit_logger.info(
            f"security.threat.{method}",
            extra={"actor_id": actor.id if actor else None, "alert_ids": ids, "detail": value},
        )
        return result


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def _matches(item: FeedItem, query: FeedQuery) -> bool:
    if not query.show_closed and item.state.closed:
        return False
    if query.severity is not None and item.group.severity != query.severity:
        return False
    if query.sources and not (item.group.sources & set(query.sources)):
        return False
    if query.search:
        needle = query.search.strip().casefold()
        haystack = [
            value
            for alert in item.group.members
            for value in (alert.title, alert.device_hostname, alert.organization_name)
            if value
        ]
        if needle and not any(needle in value.casefold() for value in haystack):
            return False
    return True
