"""
Alert desk configuration.

Nothing is required at startup: the console renders with zero integrations
connected. Vendor and PSA credentials are validated lazily, per integration,
via validate_for_integration(); a missing credential surfaces as "not
connected" rather than as a startup failure.

Correlation policy (window, correlatable vendor pairs, precedence) and the
per-source cache TTLs live here so they are stated configuration, not
constants buried in the engine.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.errors import NotConfiguredError
from src.models.alert import AlertSource

# Maps each integration to the settings fields it requires.
_INTEGRATION_REQUIRED_FIELDS: dict[str, list[str]] = {
    "sentinelone": ["sentinelone_api_url", "sentinelone_api_token"],
    "blackpoint": ["blackpoint_api_url", "blackpoint_api_token"],
    "ninjaone": ["ninjaone_client_id", "ninjaone_client_secret"],
    "uptime": [],
    "cove": ["cove_username", "cove_password"],
    "dropsuite": ["dropsuite_api_token"],
    "dnsfilter": ["dnsfilter_api_token"],
    "avanan": ["avanan_client_id", "avanan_client_secret"],
    "connectwise": [
        "connectwise_site",
        "connectwise_company_id",
        "connectwise_public_key",
        "connectwise_private_key",
    ],
    "slack": ["slack_bot_token"],
}

_KNOWN_INTEGRATIONS = set(_INTEGRATION_REQUIRED_FIELDS.keys())

_DEFAULT_PRECEDENCE = [
    AlertSource.SENTINELONE,
    AlertSource.BLACKPOINT,
    AlertSource.NINJAONE,
    AlertSource.DNSFILTER,
    AlertSource.AVANAN,
    AlertSource.COVE,
    AlertSource.DROPSUITE,
    AlertSource.UPTIME,
]

# Live operational sources refresh fast; backup summaries change slowly.
_DEFAULT_CACHE_TTLS = {
    AlertSource.SENTINELONE: 30,
    AlertSource.BLACKPOINT: 60,
    AlertSource.NINJAONE: 60,
    AlertSource.UPTIME: 30,
    AlertSource.DNSFILTER: 120,
    AlertSource.AVANAN: 120,
    AlertSource.COVE: 300,
    AlertSource.DROPSUITE: 300,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Correlation policy
    # ------------------------------------------------------------------
    correlation_window_minutes: int = Field(default=240, gt=0)
    correlatable_pairs: list[tuple[AlertSource, AlertSource]] = Field(
        default_factory=lambda: [(AlertSource.SENTINELONE, AlertSource.BLACKPOINT)]
    )
    source_precedence: list[AlertSource] = Field(
        default_factory=lambda: list(_DEFAULT_PRECEDENCE)
    )

    # ------------------------------------------------------------------
    # Polling / cache
    # ------------------------------------------------------------------
    cache_ttl_seconds: dict[AlertSource, int] = Field(
        default_factory=lambda: dict(_DEFAULT_CACHE_TTLS)
    )
    default_cache_ttl_seconds: int = Field(default=60, gt=0)
    vendor_timeout_seconds: float = Field(default=20.0, gt=0)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    max_batch_size: int = Field(default=100, gt=0)
    close_note_max_length: int = Field(default=2000, gt=0)
    ticket_summary_max_length: int = Field(default=100, gt=0)
    related_ticket_limit: int = Field(default=10, gt=0)

    # State store: in-process when unset
    database_url: Optional[str] = None

    # ------------------------------------------------------------------
    # Optional integrations, validated lazily
    # ------------------------------------------------------------------

    # SentinelOne (EDR)
    sentinelone_api_url: Optional[str] = None
    sentinelone_api_token: Optional[str] = None

    # Blackpoint CompassOne (MDR)
    blackpoint_api_url: Optional[str] = None
    blackpoint_api_token: Optional[str] = None

    # NinjaOne (RMM)
    ninjaone_client_id: Optional[str] = None
    ninjaone_client_secret: Optional[str] = None

    # Cove Data Protection
    cove_username: Optional[str] = None
    cove_password: Optional[str] = None

    # DropSuite (SaaS backup)
    dropsuite_api_token: Optional[str] = None

    # DNSFilter
    dnsfilter_api_token: Optional[str] = None

    # Avanan (email security)
    avanan_client_id: Optional[str] = None
    avanan_client_secret: Optional[str] = None

    # ConnectWise Manage (PSA)
    connectwise_site: Optional[str] = None
    connectwise_company_id: Optional[str] = None
    connectwise_public_key: Optional[str] = None
    connectwise_private_key: Optional[str] = None

    # Slack
    slack_bot_token: Optional[str] = None
    slack_alert_channel: str = "#soc-alerts"

    @model_validator(mode="after")
    def check_pair_precedence(self) -> "Settings":
        """A correlatable pair is (primary, secondary); precedence must agree."""
        rank = {source: i for i, source in enumerate(self.source_precedence)}
        unranked = len(rank)
        for lead, secondary in self.correlatable_pairs:
            if rank.get(lead, unranked) > rank.get(secondary, unranked):
                raise ValueError(
                    f"correlatable pair ({lead.value}, {secondary.value}) lists {lead.value} first, "
                    f"but source_precedence ranks {secondary.value} above it"
                )
        return self

    @property
    def correlation_window(self) -> timedelta:
        return timedelta(minutes=self.correlation_window_minutes)

    def missing_for_integration(self, name: str) -> list[str]:
        if name not in _KNOWN_INTEGRATIONS:
            raise ValueError(
                f"Unknown integration '{name}'. "
                f"Known integrations: {', '.join(sorted(_KNOWN_INTEGRATIONS))}"
            )
        return [
            field
            for field in _INTEGRATION_REQUIRED_FIELDS[name]
            if getattr(self, field, None) is None
        ]

    def is_configured(self, name: str) -> bool:
        return not self.missing_for_integration(name)

    def validate_for_integration(self, name: str) -> None:
        """Assert that every setting *name* needs is present.

        Adapters call this before their first request.

        Raises:
            ValueError: If *name* is not a recognised integration.
            NotConfiguredError: If one or more required settings are absent.
        """
        missing = self.missing_for_integration(name)
        if missing:
            raise NotConfiguredError(name, [m.upper() for m in missing])


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    In tests, clear the cache with get_settings.cache_clear() after
    patching environment variables, or instantiate Settings() directly
    with _env_file=None to avoid reading the .env file.
    """
    return Settings()
