"""
Error taxonomy for the alert desk.

Vendor-side failures (VendorUnavailableError, NotConfiguredError) are scoped
to one source and never abort a unified read. Command-side failures
(ValidationError, ConflictError, MitigationDispatchError) are raised before
any mutation is committed and reach the caller as a classified result.
"""

from __future__ import annotations

from typing import Optional


class AlertDeskError(Exception):
    """Base class; ``kind`` is the stable tag surfaced to API clients."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class VendorUnavailableError(AlertDeskError):
    kind = "vendor_unavailable"

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"[{source}] {message}")
        self.source = source
        self.reason = message


class NotConfiguredError(AlertDeskError, RuntimeError):
    kind = "not_configured"

    def __init__(self, integration: str, missing: Optional[list[str]] = None) -> None:
        if missing:
            detail = f"missing required environment variables: {', '.join(missing)}"
        else:
            detail = "no credentials configured"
        super().__init__(f"Integration '{integration}' is not connected: {detail}.")
        self.integration = integration
        self.missing = missing or []


class ValidationError(AlertDeskError, ValueError):
    kind = "validation"


class ConflictError(AlertDeskError):
    kind = "conflict"


class MitigationDispatchError(AlertDeskError):
    """Vendor rejected a mitigation or device command. Message is the vendor's, unmodified."""

    kind = "mitigation_failed"

    def __init__(self, source: str, action: str, message: str) -> None:
        super().__init__(message)
        self.source = source
        self.action = action
