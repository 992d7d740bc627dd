"""
Configuration data models for tillsync.

These models define the structure of .tillsync.json and
~/.config/tillsync/config.json files, with validation and type safety via
Pydantic.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Entity types the point-of-sale frontend keeps in its local store
DEFAULT_ENTITY_TYPES = [
    "categories",
    "products",
    "productVariants",
    "paymentMethods",
    "customers",
    "suppliers",
    "sales",
    "stockMovements",
]


class RemoteConfig(BaseModel):
    """
    Remote authority connection settings.

    The remote authority is the backend REST API that owns the
    authoritative copy of every entity.
    """
    base_url: str = Field(
        default="http://localhost:3000/api",
        description="Base URL of the backend API"
    )
    token: Optional[str] = Field(
        default=None,
        description="Bearer token sent with every request (prefer TILLSYNC_API_TOKEN)"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout; a timeout counts as a transient failure"
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify TLS certificates of the backend"
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL so endpoint joins never double the slash."""
        return v.rstrip("/")


class SyncConfig(BaseModel):
    """
    Orchestrator behavior.

    Controls batch sizes, concurrency and automatic triggers.
    """
    batch_size: int = Field(
        default=50,
        ge=1,
        description="Queue entries fetched per FIFO batch"
    )
    concurrency: int = Field(
        default=4,
        ge=1,
        description="Remote calls in flight at once (different entities only)"
    )
    auto_sync_interval_seconds: int = Field(
        default=300,
        ge=0,
        description="Periodic sync interval; 0 disables the timer"
    )
    call_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Hard timeout for a single remote call"
    )
    pull_enabled: bool = Field(
        default=True,
        description="Pull remote changes after pushing local ones"
    )


class RetryConfig(BaseModel):
    """
    Backoff settings for transient failures.

    Delays grow exponentially from base_delay_seconds and never exceed
    max_delay_seconds.
    """
    base_delay_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Delay before the first retry"
    )
    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential growth factor per attempt"
    )
    max_delay_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Upper bound on the delay between attempts"
    )


class StorageConfig(BaseModel):
    """Local database location."""
    db_path: str = Field(
        default=".tillsync/sync.db",
        description="SQLite file holding entities, the queue and sync state"
    )


class ConnectivityConfig(BaseModel):
    """
    Reachability detection.

    The probe feeds the connectivity monitor; the monitor itself only
    reacts to transitions.
    """
    assume_online: bool = Field(
        default=True,
        description="Initial reachability before the first signal arrives"
    )
    probe_interval_seconds: int = Field(
        default=30,
        ge=0,
        description="Seconds between reachability probes; 0 disables probing"
    )
    probe_path: str = Field(
        default="/health",
        description="Path (relative to remote.base_url) used by the probe"
    )


class TillsyncConfig(BaseModel):
    """
    Main tillsync configuration.

    Merged from multiple sources with precedence:
    defaults < user config < project config < env vars
    """
    model_config = ConfigDict(extra="ignore")

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    entity_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENTITY_TYPES),
        description="Entity types accepted by the queue"
    )

    @field_validator("entity_types")
    @classmethod
    def require_entity_types(cls, v: list[str]) -> list[str]:
        """At least one entity type must be synchronizable."""
        if not v:
            raise ValueError("entity_types must not be empty")
        return v
