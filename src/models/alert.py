"""
Alert models — canonical, vendor-normalized representation of alerts.

Alert is the canonical internal format. The normalizer translates raw
SentinelOne / Blackpoint / NinjaOne / uptime / backup / DNS / email payloads
into this schema; nothing downstream reads vendor payloads directly.

Alerts are frozen: rebuilt every poll, grouped and annotated by the
correlation engine, never mutated in place.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from src.errors import ValidationError


class AlertSource(str, Enum):
    SENTINELONE = "sentinelone"
    BLACKPOINT = "blackpoint"
    NINJAONE = "ninjaone"
    UPTIME = "uptime"
    COVE = "cove"
    DROPSUITE = "dropsuite"
    DNSFILTER = "dnsfilter"
    AVANAN = "avanan"


class SourceCategory(str, Enum):
    EDR = "edr"
    MDR = "mdr"
    RMM = "rmm"
    UPTIME = "uptime"
    BACKUP = "backup"
    SAAS_BACKUP = "saas-backup"
    DNS = "dns"
    EMAIL = "email"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        """Canonical total order: critical (4) > ... > informational (0)."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFORMATIONAL: 0,
}

SOURCE_CATEGORIES: dict[AlertSource, SourceCategory] = {
    AlertSource.SENTINELONE: SourceCategory.EDR,
    AlertSource.BLACKPOINT: SourceCategory.MDR,
    AlertSource.NINJAONE: SourceCategory.RMM,
    AlertSource.UPTIME: SourceCategory.UPTIME,
    AlertSource.COVE: SourceCategory.BACKUP,
    AlertSource.DROPSUITE: SourceCategory.SAAS_BACKUP,
    AlertSource.DNSFILTER: SourceCategory.DNS,
    AlertSource.AVANAN: SourceCategory.EMAIL,
}

# Short codes go into ticket summaries: "[S1] Trojan.Generic"
SOURCE_SHORT_CODES: dict[AlertSource, str] = {
    AlertSource.SENTINELONE: "S1",
    AlertSource.BLACKPOINT: "BP",
    AlertSource.NINJAONE: "Ninja",
    AlertSource.UPTIME: "Uptime",
    AlertSource.COVE: "Cove",
    AlertSource.DROPSUITE: "DropSuite",
    AlertSource.DNSFILTER: "DNS",
    AlertSource.AVANAN: "Avanan",
}

SOURCE_LABELS: dict[AlertSource, str] = {
    AlertSource.SENTINELONE: "SentinelOne",
    AlertSource.BLACKPOINT: "Blackpoint",
    AlertSource.NINJAONE: "NinjaRMM",
    AlertSource.UPTIME: "Uptime",
    AlertSource.COVE: "Cove Backup",
    AlertSource.DROPSUITE: "DropSuite",
    AlertSource.DNSFILTER: "DNSFilter",
    AlertSource.AVANAN: "Avanan",
}

# Operator-facing alert id prefixes. Must not contain "-".
_ID_PREFIXES: dict[AlertSource, str] = {
    AlertSource.SENTINELONE: "s1",
    AlertSource.BLACKPOINT: "bp",
    AlertSource.NINJAONE: "ninja",
    AlertSource.UPTIME: "uptime",
    AlertSource.COVE: "cove",
    AlertSource.DROPSUITE: "ds",
    AlertSource.DNSFILTER: "dns",
    AlertSource.AVANAN: "avanan",
}
_PREFIX_SOURCES = {prefix: source for source, prefix in _ID_PREFIXES.items()}


def alert_id_for(source: AlertSource, source_id: str) -> str:
    """Deterministic operator-facing id for a (source, source_id) natural key."""
    return f"{_ID_PREFIXES[source]}-{source_id}"


def parse_alert_id(alert_id: str) -> tuple[AlertSource, str]:
    """Inverse of alert_id_for.

    Raises:
        ValidationError: If the prefix is unknown or the vendor id is empty.
    """
    if not isinstance(alert_id, str):
        raise ValidationError(f"Malformed alert id {alert_id!r}: expected a string")
    prefix, sep, source_id = alert_id.partition("-")
    source = _PREFIX_SOURCES.get(prefix)
    if not sep or source is None or not source_id.strip():
        raise ValidationError(
            f"Malformed alert id '{alert_id}': expected '<prefix>-<vendor id>' "
            f"with prefix one of {', '.join(sorted(_PREFIX_SOURCES))}"
        )
    return source, source_id


class MergedSource(BaseModel):
    """A non-primary member of a merge group, addressable for drill-down."""

    model_config = ConfigDict(frozen=True)

    source: AlertSource
    source_id: str
    label: str


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: AlertSource
    source_id: str                                   # vendor-native id, never reused across vendors
    title: str
    severity: Severity
    detected_at: datetime
    description: Optional[str] = None
    status: Optional[str] = None                     # vendor status, display only
    risk_score: Optional[int] = None                 # 0–100 where the vendor scores
    classification: Optional[str] = None
    device_hostname: Optional[str] = None
    device_source_id: Optional[str] = None           # target of device commands
    organization_name: Optional[str] = None
    organization_source_id: Optional[str] = None     # vendor-side org id, for company mapping
    file_hash: Optional[str] = None
    origin_sources: tuple[AlertSource, ...] = ()     # vendors this detection says it came from
    vendor_payload: dict[str, Any] = Field(default_factory=dict)  # opaque, never interpreted
    merged_sources: Optional[list[MergedSource]] = None           # set only on a merge group's primary

    @computed_field  # type: ignore[prop-decorator]
    @property
    def alert_id(self) -> str:
        return alert_id_for(self.source, self.source_id)

    @property
    def category(self) -> SourceCategory:
        return SOURCE_CATEGORIES[self.source]

    @property
    def source_label(self) -> str:
        return SOURCE_LABELS[self.source]

    @property
    def short_code(self) -> str:
        return SOURCE_SHORT_CODES[self.source]


class MergeGroup(BaseModel):
    """Alerts judged to describe one incident. Computed fresh on every read.

    ``members[0]`` is always the primary; standalone alerts form groups of one.
    """

    members: list[Alert] = Field(min_length=1)

    @property
    def primary(self) -> Alert:
        return self.members[0]

    @property
    def secondaries(self) -> list[Alert]:
        return self.members[1:]

    @property
    def is_merged(self) -> bool:
        return len(self.members) > 1

    @property
    def alert_ids(self) -> list[str]:
        return [m.alert_id for m in self.members]

    @property
    def sources(self) -> set[AlertSource]:
        return {m.source for m in self.members}

    @property
    def severity(self) -> Severity:
        """Highest member severity; members keep their own values."""
        return max((m.severity for m in self.members), key=lambda s: s.rank)

    @property
    def detected_at(self) -> datetime:
        return min(m.detected_at for m in self.members)
