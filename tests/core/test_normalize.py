"""Tests for src/core/normalize.py — vendor records → canonical Alert."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.core import normalize as normalize_module
from src.core.normalize import (
    is_alerting,
    normalize,
    normalize_many,
    severity_counts,
    severity_from_score,
)
from src.models.alert import AlertSource, Severity

CANONICAL = set(Severity)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_s1_threat(**threat_info) -> dict:
    info = {
        "threatName": "Trojan.Generic",
        "classification": "Malware",
        "classificationSource": "Engine",
        "confidenceLevel": "malicious",
        "sha256": "a" * 64,
        "sha1": "b" * 40,
        "mitigationStatus": "not_mitigated",
        "incidentStatus": "unresolved",
        "identifiedAt": "2025-03-04T09:00:00.000Z",
    }
    info.update(threat_info)
    return {
        "id": "T1",
        "agentId": "agent-9",
        "threatInfo": info,
        "agentRealtimeInfo": {"agentComputerName": "WS-01", "siteName": "Contoso", "siteId": "site-1"},
        "agentDetectionInfo": {"siteName": "Contoso", "siteId": "site-1"},
    }


def make_bp_group(risk_score=85, alert_types=None, **overrides) -> dict:
    record = {
        "id": "B1",
        "groupKey": "grp-1",
        "alertTypes": ["SENTINELONE_THREAT"] if alert_types is None else alert_types,
        "riskScore": risk_score,
        "alertCount": 2,
        "alert": {"hostname": "WS-01", "username": "jdoe", "action": "Process blocked", "deviceId": "dev-1"},
        "customerId": "cust-1",
        "customerName": "Contoso",
        "created": "2025-03-04T09:10:00Z",
        "status": "OPEN",
    }
    record.update(overrides)
    return record


# ---------------------------------------------------------------------------
# Score thresholds
# ---------------------------------------------------------------------------

class TestSeverityFromScore:
    @pytest.mark.parametrize(
        "score,expected",
        [
            (100, Severity.CRITICAL),
            (80, Severity.CRITICAL),
            (79, Severity.HIGH),
            (60, Severity.HIGH),
            (59.9, Severity.MEDIUM),
            (40, Severity.MEDIUM),
            (20, Severity.LOW),
            (19, Severity.INFORMATIONAL),
            (0, Severity.INFORMATIONAL),
        ],
    )
    def test_thresholds(self, score, expected):
        assert severity_from_score(score) == expected


# ---------------------------------------------------------------------------
# SentinelOne
# ---------------------------------------------------------------------------

class TestSentinelOne:
    def test_full_threat(self):
        alert = normalize(AlertSource.SENTINELONE, make_s1_threat())
        assert alert.alert_id == "s1-T1"
        assert alert.title == "Trojan.Generic"
        assert alert.severity == Severity.CRITICAL
        assert alert.device_hostname == "WS-01"
        assert alert.device_source_id == "agent-9"
        assert alert.organization_name == "Contoso"
        assert alert.file_hash == "a" * 64
        assert alert.detected_at == datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)
        assert alert.status == "active"
        assert alert.description == "Malware - Engine"

    def test_accepts_string_tag(self):
        assert normalize("sentinelone", make_s1_threat()).source == AlertSource.SENTINELONE

    def test_pup_is_medium(self):
        alert = normalize(AlertSource.SENTINELONE, make_s1_threat(classification="PUP", confidenceLevel="n/a"))
        assert alert.severity == Severity.MEDIUM

    def test_suspicious_is_high(self):
        alert = normalize(
            AlertSource.SENTINELONE, make_s1_threat(classification="Ransomware", confidenceLevel="suspicious")
        )
        assert alert.severity == Severity.HIGH

    def test_hash_falls_back_to_sha1(self):
        alert = normalize(AlertSource.SENTINELONE, make_s1_threat(sha256=None))
        assert alert.file_hash == "b" * 40

    def test_mitigated_is_resolved(self):
        alert = normalize(AlertSource.SENTINELONE, make_s1_threat(mitigationStatus="mitigated"))
        assert alert.status == "resolved"

    def test_vendor_payload_retained(self):
        raw = make_s1_threat()
        assert normalize(AlertSource.SENTINELONE, raw).vendor_payload == raw

    def test_empty_record_does_not_raise(self):
        alert = normalize(AlertSource.SENTINELONE, {})
        assert alert.severity == Severity.MEDIUM
        assert alert.device_hostname is None
        assert alert.detected_at.tzinfo is not None


# ---------------------------------------------------------------------------
# Blackpoint
# ---------------------------------------------------------------------------

class TestBlackpoint:
    def test_risk_score_drives_severity(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=85))
        assert alert.severity == Severity.CRITICAL
        assert alert.risk_score == 85

    def test_sentinelone_origin_detected(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group())
        assert alert.origin_sources == (AlertSource.SENTINELONE,)

    def test_own_detection_origin(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(alert_types=["MS365_SUSPICIOUS_LOGIN"]))
        assert alert.origin_sources == (AlertSource.BLACKPOINT,)

    def test_no_alert_types_no_origin(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(alert_types=[]))
        assert alert.origin_sources == ()
        assert alert.title == "Detection grp-1"

    def test_hostname_and_org(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group())
        assert alert.device_hostname == "WS-01"
        assert alert.organization_name == "Contoso"
        assert alert.organization_source_id == "cust-1"

    def test_missing_score_defaults_medium(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=None))
        assert alert.severity == Severity.MEDIUM
        assert alert.risk_score is None

    def test_ticket_status_mapped(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(ticket={"status": "CLOSE"}))
        assert alert.status == "resolved"


# ---------------------------------------------------------------------------
# NinjaOne, DNSFilter, Avanan, DropSuite
# ---------------------------------------------------------------------------

class TestTableVendors:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("CRITICAL", Severity.CRITICAL),
            ("MAJOR", Severity.HIGH),
            ("MODERATE", Severity.MEDIUM),
            ("MINOR", Severity.LOW),
            ("SOMETHING_NEW", Severity.MEDIUM),
            (None, Severity.MEDIUM),
        ],
    )
    def test_ninjaone_severity(self, raw, expected):
        alert = normalize(
            AlertSource.NINJAONE,
            {"id": 7, "subject": "Disk C: low", "severity": raw, "createTime": 1741078800.0},
        )
        assert alert.severity == expected
        assert alert.alert_id == "ninja-7"

    def test_ninjaone_epoch_time(self):
        alert = normalize(AlertSource.NINJAONE, {"id": 1, "createTime": 1741078800})
        assert alert.detected_at == datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)

    def test_epoch_millis(self):
        alert = normalize(AlertSource.NINJAONE, {"id": 1, "createTime": 1741078800000})
        assert alert.detected_at == datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "category,expected",
        [
            ("Malware", Severity.CRITICAL),
            ("Botnet", Severity.CRITICAL),
            ("Phishing & Deception", Severity.HIGH),
            ("Gambling", Severity.MEDIUM),
        ],
    )
    def test_dnsfilter_category(self, category, expected):
        alert = normalize(
            AlertSource.DNSFILTER,
            {"id": "q1", "domain": "bad.example", "categoryName": category, "time": "2025-03-04T09:00:00Z"},
        )
        assert alert.severity == expected
        assert alert.title == f"{category}: bad.example"

    @pytest.mark.parametrize("raw,expected", [("info", Severity.INFORMATIONAL), ("High", Severity.HIGH)])
    def test_avanan_named_severity(self, raw, expected):
        alert = normalize(AlertSource.AVANAN, {"eventId": "e1", "severity": raw, "type": "phishing"})
        assert alert.severity == expected

    def test_dropsuite(self):
        alert = normalize(
            AlertSource.DROPSUITE,
            {"id": "d1", "title": "Mailbox backup failed", "severity": "critical", "organizationName": "Contoso"},
        )
        assert alert.alert_id == "ds-d1"
        assert alert.severity == Severity.CRITICAL


# ---------------------------------------------------------------------------
# Polling-derived sources
# ---------------------------------------------------------------------------

class TestPollingDerived:
    def test_uptime_down_monitor(self):
        alert = normalize(
            AlertSource.UPTIME,
            {"id": "m1", "name": "Portal", "type": "http", "status": "DOWN", "company": {"name": "Contoso"}},
        )
        assert alert.title == "Portal is DOWN"
        assert alert.severity == Severity.CRITICAL
        assert alert.organization_name == "Contoso"

    def test_uptime_alerting_filter(self):
        assert is_alerting(AlertSource.UPTIME, {"status": "DOWN"})
        assert is_alerting(AlertSource.UPTIME, {"status": "WARNING"})
        assert not is_alerting(AlertSource.UPTIME, {"status": "UP"})
        assert not is_alerting(AlertSource.UPTIME, {"status": "DOWN", "active": False})

    def test_cove_synthesized_id(self):
        alert = normalize(
            AlertSource.COVE,
            {"id": 42, "deviceName": "FS-01", "customerName": "Contoso", "overallStatus": "failed"},
        )
        assert alert.source_id == "backup-failed-42"
        assert alert.alert_id == "cove-backup-failed-42"
        assert alert.severity == Severity.CRITICAL
        assert alert.title == "Backup failed: FS-01"

    def test_same_state_same_identity(self):
        raw = {"id": 42, "deviceName": "FS-01", "overallStatus": "overdue", "lastSessionTimestamp": 1741078800}
        assert normalize(AlertSource.COVE, raw) == normalize(AlertSource.COVE, raw)


# ---------------------------------------------------------------------------
# Totality and batches
# ---------------------------------------------------------------------------

class TestTotality:
    @pytest.mark.parametrize("source", list(AlertSource))
    def test_every_source_handles_empty_record(self, source):
        alert = normalize(source, {})
        assert alert.severity in CANONICAL

    @pytest.mark.parametrize("source", list(AlertSource))
    def test_every_source_handles_garbage_fields(self, source):
        raw = {
            "id": "x",
            "severity": 12345,
            "riskScore": "not-a-number",
            "createTime": "yesterday",
            "threatInfo": "oops",
            "alert": ["not", "a", "dict"],
            "overallStatus": "failed",
            "status": "DOWN",
        }
        assert normalize(source, raw).severity in CANONICAL

    def test_unparseable_timestamp_uses_now(self):
        before = datetime.now(timezone.utc)
        alert = normalize(AlertSource.DROPSUITE, {"id": "d1", "createdAt": "last tuesday"})
        assert alert.detected_at >= before

    def test_unknown_tag_raises(self):
        with pytest.raises(ValueError):
            normalize("crowdstrike", {})

    def test_scalar_alert_types(self):
        assert normalize(AlertSource.BLACKPOINT, make_bp_group(alert_types=5)).classification is None

        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(alert_types="SENTINELONE_THREAT"))
        assert alert.title == "SENTINELONE_THREAT"
        assert alert.origin_sources == (AlertSource.SENTINELONE,)

    def test_infinite_risk_score_defaults_to_medium(self):
        alert = normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=float("inf")))
        assert alert.risk_score is None
        assert alert.severity == Severity.MEDIUM

    @pytest.mark.parametrize("create_time", [10**400, float("nan"), "1e400"])
    def test_out_of_range_epoch_uses_now(self, create_time):
        before = datetime.now(timezone.utc)
        alert = normalize(AlertSource.NINJAONE, {"id": "n1", "severity": "MAJOR", "createTime": create_time})
        assert alert.detected_at >= before


class TestNormalizeMany:
    def test_skips_non_alerting_and_non_records(self):
        raws = [
            {"id": "m1", "name": "Portal", "status": "DOWN"},
            {"id": "m2", "name": "API", "status": "UP"},
            "garbage",
            None,
        ]
        alerts = normalize_many(AlertSource.UPTIME, raws)
        assert [a.source_id for a in alerts] == ["m1"]

    def test_empty(self):
        assert normalize_many(AlertSource.SENTINELONE, []) == []

    def test_malformed_record_does_not_drop_the_poll(self):
        raws = [make_bp_group(), make_bp_group(id="B2", alertTypes=5, riskScore=float("inf"))]
        alerts = normalize_many(AlertSource.BLACKPOINT, raws)
        assert [a.source_id for a in alerts] == ["B1", "B2"]

    def test_parser_failure_skips_only_that_record(self, monkeypatch, caplog):
        def parse(raw, warnings):
            if raw.get("id") == "bad":
                raise KeyError("threatInfo")
            return parse_sentinelone(raw, warnings)

        parse_sentinelone = normalize_module._PARSERS[AlertSource.SENTINELONE]
        monkeypatch.setitem(normalize_module._PARSERS, AlertSource.SENTINELONE, parse)

        alerts = normalize_many(AlertSource.SENTINELONE, [make_s1_threat(), {"id": "bad"}])

        assert [a.source_id for a in alerts] == ["T1"]
        assert any(r.getMessage() == "normalizer.record_failed" for r in caplog.records)


class TestSeverityCounts:
    def test_every_severity_present(self):
        alerts = [
            normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=90)),
            normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=85, id="B2")),
            normalize(AlertSource.BLACKPOINT, make_bp_group(risk_score=10, id="B3")),
        ]
        counts = severity_counts(alerts)
        assert counts[Severity.CRITICAL] == 2
        assert counts[Severity.INFORMATIONAL] == 1
        assert counts[Severity.HIGH] == 0
        assert set(counts) == CANONICAL
