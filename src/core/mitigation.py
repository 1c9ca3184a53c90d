"""
Mitigation dispatcher — a pass-through to the alert's vendor adapter.

The core only checks that the action is legal for the alert's source and
invalidates that source's cache after a successful dispatch. Vendor errors
are surfaced verbatim as MitigationDispatchError and never retried here.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from src.core.cache import SourceCache
from src.errors import AlertDeskError, MitigationDispatchError, NotConfiguredError, ValidationError
from src.integrations.base import VendorAdapter
from src.models.alert import Alert, AlertSource
from src.models.state import Actor

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("src.audit")


class MitigationAction(str, Enum):
    KILL = "kill"
    QUARANTINE = "quarantine"
    REMEDIATE = "remediate"
    ROLLBACK = "rollback"
    ISOLATE = "isolate"
    RECONNECT = "reconnect"
    SCAN = "scan"


THREAT_ACTIONS = frozenset(
    {MitigationAction.KILL, MitigationAction.QUARANTINE, MitigationAction.REMEDIATE, MitigationAction.ROLLBACK}
)
DEVICE_ACTIONS = frozenset({MitigationAction.ISOLATE, MitigationAction.RECONNECT, MitigationAction.SCAN})

# MDR, RMM, backup, DNS and email actions are driven by the vendor's SOC or console, not from here.
LEGAL_ACTIONS: dict[AlertSource, frozenset[MitigationAction]] = {
    AlertSource.SENTINELONE: THREAT_ACTIONS | DEVICE_ACTIONS,
}

# EDR incident workflow values accepted by update_incident_status / update_verdict
INCIDENT_STATUSES = frozenset({"resolved", "in_progress", "unresolved"})
VERDICTS = frozenset({"true_positive", "false_positive", "suspicious", "undefined"})


def legal_actions(source: AlertSource) -> frozenset[MitigationAction]:
    return LEGAL_ACTIONS.get(source, frozenset())


def validate_action(alert: Alert, action: MitigationAction | str) -> MitigationAction:
    """Resolve *action* and check it is legal for *alert*.

    Raises:
        ValidationError: Unknown action, action not offered by the alert's
            source, or a device action on an alert with no device id.
    """
    try:
        action = MitigationAction(action)
    except ValueError:
        raise ValidationError(
            f"Unknown mitigation action '{action}'. "
            f"Valid actions: {', '.join(a.value for a in MitigationAction)}"
        ) from None

    if action not in legal_actions(alert.source):
        raise ValidationError(f"Action '{action.value}' is not available for {alert.source_label} alerts")
    if action in DEVICE_ACTIONS and not alert.device_source_id:
        raise ValidationError(f"Alert '{alert.alert_id}' has no device to {action.value}")
    return action


async def dispatch(
    alert: Alert,
    action: MitigationAction | str,
    adapter: Optional[VendorAdapter],
    cache: Optional[SourceCache] = None,
    actor: Optional[Actor] = None,
) -> Any:
    """Validate and forward one mitigation command for *alert*.

    Returns:
        Whatever the adapter returned.

    Raises:
        ValidationError: Action not legal for this alert (nothing dispatched).
        NotConfiguredError: Adapter missing or without credentials.
        MitigationDispatchError: The vendor rejected or failed the command.
    """
    action = validate_action(alert, action)
    if adapter is None:
        raise NotConfiguredError(alert.source.value)

    try:
        if action == MitigationAction.ISOLATE:
            result = await adapter.isolate_device(alert.device_source_id)
        elif action == MitigationAction.RECONNECT:
            result = await adapter.reconnect_device(alert.device_source_id)
        elif action == MitigationAction.SCAN:
            result = await adapter.trigger_scan(alert.device_source_id)
        else:
            result = await adapter.dispatch_mitigation(alert.source_id, action.value)
    except AlertDeskError:
        raise
    except Exception as exc:
        logger.error(
            "mitigation.failed",
            extra={"alert_id": alert.alert_id, "action": action.value, "error": str(exc)},
        )
        raise MitigationDispatchError(alert.source.value, action.value, str(exc)) from exc

    if cache is not None:
        cache.invalidate(alert.source)

    audit_logger.info(
        f"security.threat.{action.value}",
        extra={
            "actor_id": actor.id if actor else None,
            "alert_ids": [alert.alert_id],
            "detail": alert.device_source_id if action in DEVICE_ACTIONS else alert.source_id,
        },
    )
    return result
