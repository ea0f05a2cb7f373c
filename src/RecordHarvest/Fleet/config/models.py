"""
Pydantic v2 configuration models for the harvest fleet.

Each policy section is strict (``extra="forbid"``) so typos in YAML files or
``RHV_*`` environment overrides fail validation instead of being ignored.
Times are expressed in seconds.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FleetPolicy(BaseModel):
    """Fleet size, id range, and start-up behaviour."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    worker_count: int = Field(default=2, ge=1, le=16, description="Number of concurrent workers")
    start_id: int = Field(default=1, ge=1, description="First record id to scan")
    max_id: Optional[int] = Field(default=None, description="Last record id to scan (inclusive)")
    resume: bool = Field(
        default=True, description="Seed the completed set from existing output at start"
    )
    stagger_seconds: float = Field(
        default=10.0, ge=0.0, description="Delay between consecutive worker starts"
    )
    probe_limit: int = Field(
        default=5000, ge=1, description="Maximum ids scanned by a single work request"
    )
    max_consecutive_not_found: int = Field(
        default=5,
        ge=1,
        description="Without max_id, stop assigning after this many missing ids in a row",
    )
    init_delivery_attempts: int = Field(default=30, ge=1, description="Attempts to deliver init")
    init_delivery_interval_s: float = Field(
        default=1.0, ge=0.0, description="Delay between init delivery attempts"
    )
    teardown_timeout_s: float = Field(
        default=5.0, ge=0.0, description="Time allowed for a worker context to exit on stop"
    )
    partial_max_age_s: float = Field(
        default=3600.0, ge=0.0, description="Age after which leftover .part files are removed"
    )

    @model_validator(mode="after")
    def validate_range(self) -> "FleetPolicy":
        if self.max_id is not None and self.max_id < self.start_id:
            raise ValueError("max_id must be >= start_id")
        return self


class WorkerPolicy(BaseModel):
    """Per-worker step bounds and retry ceilings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    auth_max_attempts: int = Field(default=5, ge=1, description="Authentication attempts")
    auth_retry_s: float = Field(default=1.0, ge=0.0, description="Delay between auth attempts")
    identify_timeout_s: float = Field(
        default=30.0, ge=0.0, description="Wait for the inspector to resolve record existence"
    )
    identify_poll_s: float = Field(default=0.5, gt=0.0, description="Existence poll interval")
    locate_max_retries: int = Field(default=3, ge=0, description="Locator retries per sub-item")
    locate_backoff_s: float = Field(default=5.0, ge=0.0, description="Pause between locator retries")
    fetch_poll_attempts: int = Field(default=60, ge=1, description="Download status polls")
    fetch_poll_interval_s: float = Field(default=0.5, gt=0.0, description="Download poll interval")
    fetch_max_failures: int = Field(
        default=3, ge=1, description="Fetch failures on one sub-item before a local freeze"
    )
    frozen_pause_s: float = Field(
        default=120.0, ge=0.0, description="Local pause when the retrieval view has no controls"
    )
    frozen_max_cycles: int = Field(
        default=3, ge=1, description="Local freezes on one sub-item before a fleet cooldown"
    )
    wait_slice_s: float = Field(
        default=0.25, gt=0.0, description="Granularity at which waits observe stop and pause"
    )


class CooldownPolicy(BaseModel):
    """Fleet-wide pause triggered by a throttle signal."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    pause_seconds: float = Field(default=100.0, description="Default fleet pause")
    min_pause_seconds: float = Field(default=1.0, ge=0.0, description="Lower clamp for pauses")
    max_pause_seconds: float = Field(default=100.0, description="Upper clamp for pauses")
    resume_delivery_attempts: int = Field(default=30, ge=1, description="Attempts to deliver resume")
    resume_delivery_interval_s: float = Field(
        default=1.0, ge=0.0, description="Delay between resume delivery attempts"
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> "CooldownPolicy":
        if self.max_pause_seconds < self.min_pause_seconds:
            raise ValueError("max_pause_seconds must be >= min_pause_seconds")
        if not self.min_pause_seconds <= self.pause_seconds <= self.max_pause_seconds:
            raise ValueError("pause_seconds must lie within [min_pause_seconds, max_pause_seconds]")
        return self

    def clamp(self, requested: Optional[float]) -> float:
        """Clamp a requested pause into the configured bounds."""
        if requested is None:
            return self.pause_seconds
        return min(max(float(requested), self.min_pause_seconds), self.max_pause_seconds)


class StoreConfig(BaseModel):
    """Where the shared registry lives."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    backend: Literal["sqlite", "memory"] = Field(default="sqlite", description="Store backend")
    path: Path = Field(default=Path("state/fleet.sqlite"), description="SQLite database path")
    lock_root: Optional[Path] = Field(default=None, description="Directory for lock files")


class OutputConfig(BaseModel):
    """Harvested artifact layout."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    root: Path = Field(default=Path("downloads/harvest"), description="Output root")
    artifact_suffix: str = Field(default=".pdf", description="Artifact file extension")
    status_log: Optional[Path] = Field(
        default=None, description="Optional JSONL file receiving status events"
    )

    @field_validator("artifact_suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        if not v or v == ".":
            raise ValueError("artifact_suffix must be non-empty")
        return v if v.startswith(".") else f".{v}"


class HttpClientConfig(BaseModel):
    """httpx client used by the retrieval service."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    user_agent: str = Field(default="RecordHarvest/Fleet", description="User-Agent string")
    timeout_connect_s: float = Field(default=10.0, gt=0.0, description="Connect timeout")
    timeout_read_s: float = Field(default=60.0, gt=0.0, description="Read timeout")
    max_attempts: int = Field(default=3, ge=1, description="Transport retry attempts")
    max_concurrent_downloads: int = Field(default=4, ge=1, description="Download pool size")
    verify_tls: bool = Field(default=True, description="Verify TLS certificates")


class LoggingConfig(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Root log level"
    )
    file: Optional[Path] = Field(default=None, description="Optional log file")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return str(v).upper()


class HarvestConfig(BaseModel):
    """Top-level configuration for a harvest run."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    fleet: FleetPolicy = Field(default_factory=FleetPolicy)
    worker: WorkerPolicy = Field(default_factory=WorkerPolicy)
    cooldown: CooldownPolicy = Field(default_factory=CooldownPolicy)
    store: StoreConfig = Field(default_factory=StoreConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    http: HttpClientConfig = Field(default_factory=HttpClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    inspector: Optional[str] = Field(
        default=None, description="Import path 'module:callable' building a page inspector"
    )
    authenticator: Optional[str] = Field(
        default=None, description="Import path 'module:callable' building an authenticator"
    )

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for reproducibility.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        normalized = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
