"""
Correlation engine — canonical alerts → merge groups.

Decides which alerts from different vendors describe the same incident
(e.g. a SentinelOne threat and the Blackpoint SOC detection raised from it)
and groups them under one primary record. Pure and synchronous: runs over
one poll's already-normalized alert set.

Properties the output always has:
  - partition: every input alert is in exactly one group
  - determinism: input order never changes the result
  - idempotence: correlating the flattened members of the output again
    reproduces the same grouping

Merging is not transitive beyond the primary. A secondary joins at most one
group, a group holds at most one alert per vendor, and when an alert could
join two groups the smallest |Δt| wins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.models.alert import Alert, AlertSource, MergedSource, MergeGroup

if TYPE_CHECKING:
    from src.config import Settings

logger = logging.getLogger(__name__)

_AlertKey = tuple[str, str, int]


class CorrelationPolicy(BaseModel):
    """Stated correlation policy: window, correlatable pairs and primary precedence."""

    model_config = ConfigDict(frozen=True)

    window: timedelta = timedelta(hours=4)
    # (lead, secondary) vendors whose alerts may merge; precedence picks the primary
    pairs: tuple[tuple[AlertSource, AlertSource], ...] = (
        (AlertSource.SENTINELONE, AlertSource.BLACKPOINT),
    )
    precedence: tuple[AlertSource, ...] = Field(default_factory=lambda: tuple(AlertSource))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CorrelationPolicy":
        return cls(
            window=settings.correlation_window,
            pairs=tuple(tuple(pair) for pair in settings.correlatable_pairs),
            precedence=tuple(settings.source_precedence),
        )

    def rank(self, source: AlertSource) -> int:
        """Position in the precedence order; unlisted sources rank last."""
        try:
            return self.precedence.index(source)
        except ValueError:
            return len(self.precedence)


# ---------------------------------------------------------------------------
# Pair predicates
# ---------------------------------------------------------------------------

def _casefold(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().casefold()
    return value or None


def same_context(a: Alert, b: Alert) -> bool:
    """Same device, or same organization when either side lacks a hostname."""
    host_a, host_b = _casefold(a.device_hostname), _casefold(b.device_hostname)
    if host_a and host_b:
        return host_a == host_b

    org_a, org_b = _casefold(a.organization_name), _casefold(b.organization_name)
    return bool(org_a and org_b and org_a == org_b)


def conflicting(a: Alert, b: Alert) -> bool:
    """True when the alerts explicitly say they are different incidents."""
    hash_a, hash_b = _casefold(a.file_hash), _casefold(b.file_hash)
    if hash_a and hash_b and hash_a != hash_b:
        return True
    if a.origin_sources and b.source not in a.origin_sources:
        return True
    if b.origin_sources and a.source not in b.origin_sources:
        return True
    return False


def _delta(a: Alert, b: Alert) -> timedelta:
    return abs(a.detected_at - b.detected_at)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def _candidate_edges(
    indexed: Sequence[tuple[_AlertKey, Alert]], policy: CorrelationPolicy
) -> list[tuple[timedelta, _AlertKey, _AlertKey]]:
    by_source: dict[AlertSource, list[tuple[_AlertKey, Alert]]] = {}
    for key, alert in indexed:
        by_source.setdefault(alert.source, []).append((key, alert))

    edges: list[tuple[timedelta, _AlertKey, _AlertKey]] = []
    for lead_source, secondary_source in policy.pairs:
        if lead_source == secondary_source:
            continue
        for lead_key, lead in by_source.get(lead_source, []):
            for sec_key, secondary in by_source.get(secondary_source, []):
                delta = _delta(lead, secondary)
                if delta > policy.window:
                    continue
                if not same_context(lead, secondary) or conflicting(lead, secondary):
                    continue
                edges.append((delta, lead_key, sec_key))

    edges.sort()
    return edges


def _order_members(members: Iterable[Alert], policy: CorrelationPolicy) -> list[Alert]:
    """Primary first: lowest precedence rank, then earliest detection."""
    return sorted(
        members,
        key=lambda a: (policy.rank(a.source), a.detected_at, a.source.value, a.source_id),
    )


def _annotate(members: list[Alert]) -> list[Alert]:
    """Set merged_sources on the primary and clear any stale annotation elsewhere."""
    primary, secondaries = members[0], members[1:]
    merged = [
        MergedSource(source=m.source, source_id=m.source_id, label=m.source_label)
        for m in secondaries
    ] or None

    annotated = [primary.model_copy(update={"merged_sources": merged})]
    for member in secondaries:
        if member.merged_sources is not None:
            member = member.model_copy(update={"merged_sources": None})
        annotated.append(member)
    return annotated


def correlate(alerts: Iterable[Alert], policy: Optional[CorrelationPolicy] = None) -> list[MergeGroup]:
    """Group one poll's alerts into merge groups.

    Args:
        alerts: Canonical alerts from every source in this poll.
        policy: Correlation policy; defaults to CorrelationPolicy().

    Returns:
        Groups ordered by their earliest detection. Standalone alerts are
        groups of one. Member alerts are never modified except for the
        merged_sources annotation on each group's primary.
    """
    policy = policy or CorrelationPolicy()

    ordered = sorted(
        enumerate(alerts),
        key=lambda pair: (pair[1].detected_at, pair[1].source.value, pair[1].source_id, pair[0]),
    )
    indexed: list[tuple[_AlertKey, Alert]] = [
        ((alert.source.value, alert.source_id, position), alert)
        for position, (_, alert) in enumerate(ordered)
    ]
    by_key = dict(indexed)

    # anchor key -> keys of the alerts it has absorbed
    anchors: dict[_AlertKey, list[_AlertKey]] = {}
    absorbed: set[_AlertKey] = set()

    for _, lead_key, sec_key in _candidate_edges(indexed, policy):
        if sec_key in absorbed or sec_key in anchors or lead_key in absorbed:
            continue
        group_sources = {by_key[lead_key].source} | {by_key[k].source for k in anchors.get(lead_key, [])}
        if by_key[sec_key].source in group_sources:
            continue
        anchors.setdefault(lead_key, []).append(sec_key)
        absorbed.add(sec_key)

    groups: list[MergeGroup] = []
    for key, alert in indexed:
        if key in absorbed:
            continue
        members = [alert] + [by_key[k] for k in anchors.get(key, [])]
        groups.append(MergeGroup(members=_annotate(_order_members(members, policy))))

    groups.sort(key=lambda g: (g.detected_at, g.primary.source.value, g.primary.source_id))

    merged = sum(1 for g in groups if g.is_merged)
    if merged:
        logger.debug(
            "correlate.complete",
            extra={"alerts": len(indexed), "groups": len(groups), "merged_groups": merged},
        )
    return groups
