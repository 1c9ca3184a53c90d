"""
Vendor normalizer — raw vendor record → canonical Alert.

Handles eight source formats:
  - SentinelOne  (EDR threat: threatInfo / agentRealtimeInfo / agentDetectionInfo)
  - Blackpoint   (MDR alert group: riskScore 0–100, alertTypes, nested alert)
  - NinjaOne     (RMM alert: CRITICAL / MAJOR / MODERATE / MINOR, epoch createTime)
  - Uptime       (monitor state — polling-derived, no vendor alert object)
  - Cove         (backup device status — polling-derived)
  - DropSuite    (SaaS backup alert)
  - DNSFilter    (blocked threat query, severity from category)
  - Avanan       (email security event)

Entry points: normalize(source, raw) -> Alert and normalize_many(source, raws).

Pure and total: unknown or missing optional fields become None, unknown
severities become MEDIUM, unparseable timestamps become the poll time. No
network I/O happens here; vendor adapters live behind src/integrations.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from src.models.alert import Alert, AlertSource, MergeGroup, Severity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Score thresholds: the one place a 0–100 vendor score becomes a severity.
# List, detail and chart aggregation must all go through this function.
# ---------------------------------------------------------------------------

def severity_from_score(score: float) -> Severity:
    if score >= 80:
        return Severity.CRITICAL
    if score >= 60:
        return Severity.HIGH
    if score >= 40:
        return Severity.MEDIUM
    if score >= 20:
        return Severity.LOW
    return Severity.INFORMATIONAL


# ---------------------------------------------------------------------------
# Severity tables: vendor-native value (lower-cased) → canonical severity
# ---------------------------------------------------------------------------

_NINJAONE_SEVERITY: dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "major": Severity.HIGH,
    "moderate": Severity.MEDIUM,
    "minor": Severity.LOW,
    "none": Severity.INFORMATIONAL,
}

_NAMED_SEVERITY: dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
    "informational": Severity.INFORMATIONAL,
    "info": Severity.INFORMATIONAL,
}

_DNSFILTER_CATEGORY_SEVERITY: dict[str, Severity] = {
    "malware": Severity.CRITICAL,
    "botnet": Severity.CRITICAL,
    "cryptomining": Severity.CRITICAL,
    "phishing & deception": Severity.HIGH,
    "spyware": Severity.HIGH,
    "compromised & links to malware": Severity.HIGH,
    "new domains": Severity.MEDIUM,
    "parked & for sale domains": Severity.LOW,
}

_UPTIME_SEVERITY: dict[str, Severity] = {
    "down": Severity.CRITICAL,
    "warning": Severity.MEDIUM,
    "pending": Severity.LOW,
    "up": Severity.INFORMATIONAL,
}

_COVE_SEVERITY: dict[str, Severity] = {
    "failed": Severity.CRITICAL,
    "overdue": Severity.HIGH,
    "warning": Severity.MEDIUM,
}

_COVE_TITLES: dict[str, str] = {
    "failed": "Backup failed",
    "overdue": "Backup overdue",
    "warning": "Backup completed with errors",
}

_BLACKPOINT_TICKET_STATUS: dict[str, str] = {
    "CLOSE": "resolved",
    "RESOLVE": "resolved",
    "INVESTIGATE": "in_progress",
    "CLAIM": "in_progress",
    "ESCALATE": "active",
}

# Blackpoint alertTypes that name the upstream product the SOC ingested from.
_BLACKPOINT_ORIGIN_MARKERS: dict[str, AlertSource] = {
    "SENTINELONE": AlertSource.SENTINELONE,
}


def _lookup_severity(
    table: Mapping[str, Severity], raw: Any, source: AlertSource, warnings: list[str]
) -> Severity:
    key = str(raw).strip().lower() if raw is not None else ""
    if key in table:
        return table[key]
    if key:
        warnings.append(f"{source.value}: unknown severity value '{raw}' — defaulting to MEDIUM")
    return Severity.MEDIUM


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, Mapping) else {}


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(*values: Any) -> Optional[str]:
    for value in values:
        text = _str(value)
        if text:
            return text
    return None


def _list(value: Any) -> list[Any]:
    if isinstance(value, str):
        return [value]
    return list(value) if isinstance(value, (list, tuple)) else []


def _int(value: Any) -> Optional[int]:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_timestamp(value: Any, source: AlertSource, warnings: list[str]) -> datetime:
    """Accept ISO-8601 strings, epoch seconds/millis or datetimes; fall back to now (UTC)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value, source, warnings)

    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            epoch = float(text)
        except ValueError:
            epoch = None
        if epoch is not None:
            return _from_epoch(epoch, source, warnings)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            warnings.append(f"{source.value}: couldn't parse timestamp '{value}' — using current UTC time")
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    warnings.append(f"{source.value}: no timestamp field found — using current UTC time")
    return datetime.now(timezone.utc)


def _from_epoch(value: float, source: AlertSource, warnings: list[str]) -> datetime:
    try:
        seconds = float(value)
        if seconds > 1e12:  # milliseconds
            seconds = seconds / 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        warnings.append(f"{source.value}: epoch timestamp {value} out of range — using current UTC time")
        return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# SentinelOne
# ---------------------------------------------------------------------------

def _sentinelone_severity(info: Mapping[str, Any]) -> Severity:
    confidence = (_str(info.get("confidenceLevel")) or "").lower()
    classification = (_str(info.get("classification")) or "").lower()

    if confidence == "malicious" or classification == "malware":
        return Severity.CRITICAL
    if classification in ("pup", "adware"):
        return Severity.MEDIUM
    if confidence == "suspicious":
        return Severity.HIGH
    return Severity.MEDIUM


def _sentinelone_status(info: Mapping[str, Any]) -> str:
    mitigation = (_str(info.get("mitigationStatus")) or "").lower()
    incident = (_str(info.get("incidentStatus")) or "").lower()

    if mitigation == "mitigated" or incident == "resolved":
        return "resolved"
    if mitigation in ("active", "not_mitigated"):
        return "active"
    if incident == "in_progress":
        return "in_progress"
    if mitigation in ("blocked", "marked_as_benign"):
        return "mitigated"
    return "active"


def _parse_sentinelone(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    info = _section(raw, "threatInfo")
    detection = _section(raw, "agentDetectionInfo")
    realtime = _section(raw, "agentRealtimeInfo")

    source_id = _first(raw.get("id"), info.get("threatId")) or "unknown"
    classification = _str(info.get("classification"))
    description = None
    if classification:
        description = f"{classification} - {_str(info.get('classificationSource')) or 'unknown source'}"

    return Alert(
        source=AlertSource.SENTINELONE,
        source_id=source_id,
        title=_first(info.get("threatName")) or f"Threat {source_id}",
        description=description,
        severity=_sentinelone_severity(info),
        status=_sentinelone_status(info),
        classification=classification,
        detected_at=_parse_timestamp(
            info.get("identifiedAt") or info.get("createdAt"), AlertSource.SENTINELONE, warnings
        ),
        device_hostname=_first(realtime.get("agentComputerName"), detection.get("agentDomain")),
        device_source_id=_first(raw.get("agentId"), realtime.get("agentId")),
        organization_name=_first(detection.get("siteName"), realtime.get("siteName")),
        organization_source_id=_first(detection.get("siteId"), realtime.get("siteId")),
        file_hash=_first(info.get("sha256"), info.get("sha1"), info.get("md5")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# Blackpoint
# ---------------------------------------------------------------------------

def _blackpoint_origins(alert_types: list[str]) -> tuple[AlertSource, ...]:
    """Which vendor raised the detection the SOC is reporting on.

    Types naming an upstream product map to it; any other type is
    Blackpoint's own detection. No types means no signal either way.
    """
    origins: list[AlertSource] = []
    for alert_type in alert_types:
        upper = alert_type.upper()
        origin = next(
            (src for marker, src in _BLACKPOINT_ORIGIN_MARKERS.items() if marker in upper),
            AlertSource.BLACKPOINT,
        )
        if origin not in origins:
            origins.append(origin)
    return tuple(origins)


def _parse_blackpoint(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    detail = _section(raw, "alert")
    ticket = _section(raw, "ticket")
    alert_types = [str(t) for t in _list(raw.get("alertTypes")) if t]

    risk_score = _int(raw.get("riskScore"))
    if risk_score is None:
        warnings.append("blackpoint: no riskScore — defaulting to MEDIUM")
        severity = Severity.MEDIUM
    else:
        severity = severity_from_score(risk_score)

    ticket_status = _str(ticket.get("status"))
    if ticket_status:
        status = _BLACKPOINT_TICKET_STATUS.get(ticket_status.upper(), "active")
    else:
        status = "resolved" if _str(raw.get("status")) == "RESOLVED" else "active"

    source_id = _first(raw.get("id")) or "unknown"
    hostname = _str(detail.get("hostname"))
    if detail:
        description = (
            f"{_str(detail.get('action')) or 'Detection'} on {hostname or 'unknown host'} "
            f"by {_str(detail.get('username')) or 'unknown user'}"
        )
    else:
        description = f"{_int(raw.get('alertCount')) or 0} alert(s) in group"

    return Alert(
        source=AlertSource.BLACKPOINT,
        source_id=source_id,
        title=", ".join(alert_types) if alert_types else f"Detection {_str(raw.get('groupKey')) or source_id}",
        description=description,
        severity=severity,
        risk_score=risk_score,
        status=status,
        classification=alert_types[0] if alert_types else None,
        detected_at=_parse_timestamp(raw.get("created"), AlertSource.BLACKPOINT, warnings),
        device_hostname=hostname,
        device_source_id=_str(detail.get("deviceId")),
        organization_name=_first(raw.get("customerName"), _section(raw, "customer").get("name")),
        organization_source_id=_str(raw.get("customerId")),
        origin_sources=_blackpoint_origins(alert_types),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# NinjaOne
# ---------------------------------------------------------------------------

def _parse_ninjaone(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    device = _section(raw, "device")
    organization = _section(raw, "organization")
    source_id = _first(raw.get("id"), raw.get("uid")) or "unknown"

    return Alert(
        source=AlertSource.NINJAONE,
        source_id=source_id,
        title=_first(raw.get("subject"), raw.get("message")) or f"Alert {source_id}",
        description=_str(raw.get("message")),
        severity=_lookup_severity(_NINJAONE_SEVERITY, raw.get("severity"), AlertSource.NINJAONE, warnings),
        status="new",
        classification=_str(raw.get("sourceType")),
        detected_at=_parse_timestamp(raw.get("createTime"), AlertSource.NINJAONE, warnings),
        device_hostname=_first(device.get("displayName"), device.get("systemName"), device.get("dnsName")),
        device_source_id=_str(raw.get("deviceId")),
        organization_name=_str(organization.get("name")),
        organization_source_id=_first(organization.get("id"), device.get("organizationId")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# Uptime monitors (polling-derived)
# ---------------------------------------------------------------------------

def _uptime_is_alerting(raw: Mapping[str, Any]) -> bool:
    status = (_str(raw.get("status")) or "").upper()
    return raw.get("active", True) is not False and status in ("DOWN", "WARNING")


def _parse_uptime(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    company = _section(raw, "company")
    status = (_str(raw.get("status")) or "UNKNOWN").upper()
    name = _str(raw.get("name")) or f"Monitor {raw.get('id')}"
    monitor_type = _str(raw.get("type")) or "uptime"
    company_name = _str(company.get("name"))

    description = _str(raw.get("description"))
    if description is None:
        description = f"{monitor_type} monitor" + (f" — {company_name}" if company_name else "")

    return Alert(
        source=AlertSource.UPTIME,
        source_id=_first(raw.get("id")) or "unknown",
        title=f"{name} is {status}",
        description=description,
        severity=_lookup_severity(_UPTIME_SEVERITY, status, AlertSource.UPTIME, warnings),
        status=status,
        detected_at=_parse_timestamp(
            raw.get("lastStatusChange") or raw.get("lastCheckedAt") or raw.get("updatedAt"),
            AlertSource.UPTIME,
            warnings,
        ),
        device_hostname=_str(raw.get("hostname")),
        organization_name=company_name,
        organization_source_id=_str(company.get("id")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# Cove backup devices (polling-derived)
# ---------------------------------------------------------------------------

def _cove_is_alerting(raw: Mapping[str, Any]) -> bool:
    return (_str(raw.get("overallStatus")) or "").lower() in _COVE_SEVERITY


def _parse_cove(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    status = (_str(raw.get("overallStatus")) or "unknown").lower()
    device_id = _first(raw.get("sourceId"), raw.get("id")) or "unknown"
    device_name = _first(raw.get("deviceName"), raw.get("computerName")) or f"Device {device_id}"
    customer = _str(raw.get("customerName"))

    return Alert(
        source=AlertSource.COVE,
        source_id=f"backup-{status}-{device_id}",
        title=f"{_COVE_TITLES.get(status, 'Backup status ' + status)}: {device_name}",
        description=f"Last backup session for {device_name} ({customer or 'unknown customer'}): {status}",
        severity=_lookup_severity(_COVE_SEVERITY, status, AlertSource.COVE, warnings),
        status=status,
        detected_at=_parse_timestamp(raw.get("lastSessionTimestamp"), AlertSource.COVE, warnings),
        device_hostname=_first(raw.get("computerName"), raw.get("deviceName")),
        device_source_id=device_id,
        organization_name=customer,
        organization_source_id=_str(raw.get("customerSourceId")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# DropSuite
# ---------------------------------------------------------------------------

def _parse_dropsuite(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    source_id = _first(raw.get("sourceId"), raw.get("id")) or "unknown"
    return Alert(
        source=AlertSource.DROPSUITE,
        source_id=source_id,
        title=_first(raw.get("title")) or f"Backup alert {source_id}",
        description=_str(raw.get("message")),
        severity=_lookup_severity(_NAMED_SEVERITY, raw.get("severity"), AlertSource.DROPSUITE, warnings),
        status=_str(raw.get("status")) or "new",
        detected_at=_parse_timestamp(raw.get("createdAt"), AlertSource.DROPSUITE, warnings),
        device_hostname=_first(raw.get("deviceHostname"), raw.get("userEmail")),
        organization_name=_str(raw.get("organizationName")),
        organization_source_id=_str(raw.get("organizationId")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# DNSFilter
# ---------------------------------------------------------------------------

def _parse_dnsfilter(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    category = _str(raw.get("categoryName"))
    domain = _str(raw.get("domain")) or "unknown domain"
    if category is None:
        severity = Severity.MEDIUM
    else:
        severity = _DNSFILTER_CATEGORY_SEVERITY.get(category.lower(), Severity.MEDIUM)

    return Alert(
        source=AlertSource.DNSFILTER,
        source_id=_first(raw.get("id")) or f"{domain}-{raw.get('time')}",
        title=f"{category or 'Threat'}: {domain}",
        description=_str(raw.get("networkName")),
        severity=severity,
        status="blocked" if raw.get("blocked", True) else "allowed",
        classification=category,
        detected_at=_parse_timestamp(raw.get("time"), AlertSource.DNSFILTER, warnings),
        device_hostname=_first(raw.get("agentHostname"), raw.get("hostname")),
        organization_name=_str(raw.get("organizationName")),
        organization_source_id=_str(raw.get("organizationId")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# Avanan
# ---------------------------------------------------------------------------

def _parse_avanan(raw: Mapping[str, Any], warnings: list[str]) -> Alert:
    source_id = _first(raw.get("eventId"), raw.get("id")) or "unknown"
    event_type = _str(raw.get("type"))
    return Alert(
        source=AlertSource.AVANAN,
        source_id=source_id,
        title=_first(raw.get("description"), event_type) or f"Email event {source_id}",
        description=_str(raw.get("description")),
        severity=_lookup_severity(_NAMED_SEVERITY, raw.get("severity"), AlertSource.AVANAN, warnings),
        status=_str(raw.get("state")) or "new",
        classification=event_type,
        detected_at=_parse_timestamp(raw.get("eventCreated"), AlertSource.AVANAN, warnings),
        organization_name=_str(raw.get("customerName")),
        organization_source_id=_str(raw.get("customerId")),
        vendor_payload=dict(raw),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

_PARSERS: dict[AlertSource, Callable[[Mapping[str, Any], list[str]], Alert]] = {
    AlertSource.SENTINELONE: _parse_sentinelone,
    AlertSource.BLACKPOINT: _parse_blackpoint,
    AlertSource.NINJAONE: _parse_ninjaone,
    AlertSource.UPTIME: _parse_uptime,
    AlertSource.COVE: _parse_cove,
    AlertSource.DROPSUITE: _parse_dropsuite,
    AlertSource.DNSFILTER: _parse_dnsfilter,
    AlertSource.AVANAN: _parse_avanan,
}

# Sources whose records are state, not alerts: only some records imply one.
_ALERTING_FILTERS: dict[AlertSource, Callable[[Mapping[str, Any]], bool]] = {
    AlertSource.UPTIME: _uptime_is_alerting,
    AlertSource.COVE: _cove_is_alerting,
}


def normalize(source: AlertSource | str, raw: Mapping[str, Any]) -> Alert:
    """Normalize one raw vendor record into a canonical Alert.

    Args:
        source: Vendor tag (AlertSource or its string value).
        raw: The vendor record as returned by the adapter.

    Raises:
        ValueError: If *source* is not a known vendor tag.
    """
    source = AlertSource(source)
    warnings: list[str] = []
    alert = _PARSERS[source](raw, warnings)

    if warnings:
        logger.warning(
            "normalizer.warnings",
            extra={"source": source.value, "source_id": alert.source_id, "warnings": warnings},
        )
    return alert


def is_alerting(source: AlertSource | str, raw: Mapping[str, Any]) -> bool:
    """False for monitor/device records whose current state implies no alert."""
    check = _ALERTING_FILTERS.get(AlertSource(source))
    return check(raw) if check else True


def normalize_many(source: AlertSource | str, raws: Iterable[Any]) -> list[Alert]:
    """Normalize a poll's worth of records, skipping non-alerting state and non-records.

    A record the parser cannot turn into an Alert is logged and skipped; the
    rest of the poll still comes through.
    """
    source = AlertSource(source)
    alerts: list[Alert] = []
    skipped = 0
    for raw in raws:
        if not isinstance(raw, Mapping):
            skipped += 1
            continue
        try:
            if not is_alerting(source, raw):
                continue
            alerts.append(normalize(source, raw))
        except Exception as exc:
            skipped += 1
            logger.warning(
                "normalizer.record_failed",
                extra={"source": source.value, "source_id": str(raw.get("id"))[:64], "error": repr(exc)[:200]},
            )

    if skipped:
        logger.warning("normalizer.skipped_records", extra={"source": source.value, "count": skipped})
    return alerts


def severity_counts(records: Iterable[Alert | MergeGroup]) -> dict[Severity, int]:
    """Per-severity totals over alerts or merge groups, every severity present.

    Pass the same records the list view shows so chart and list agree.
    """
    counts = {severity: 0 for severity in Severity}
    for record in records:
        counts[record.severity] += 1
    return counts
