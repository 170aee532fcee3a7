"""Configuration schema and loading for testpulse.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Example YAML:
    enabled: true
    batching:
      size: 500
      interval_seconds: 1.5
    endpoint:
      url: https://collector-observability.browserstack.com
    enabled_events:
      - TestRunStarted
      - TestRunFinished
      - LogCreated
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from testpulse.contracts.enums import LOG_KIND_USAGE_MAP, EventType

DATA_ENDPOINT = "https://collector-observability.browserstack.com"
DATA_BATCH_ENDPOINT = "api/v1/batch"
DATA_SCREENSHOT_ENDPOINT = "api/v1/screenshots"

ENVVAR_PREFIX = "TESTPULSE"


class BatchSettings(BaseModel):
    """Queue flushing thresholds."""

    model_config = {"frozen": True}

    size: int = Field(default=1000, gt=0, description="Events per POST; reaching it triggers a flush")
    interval_seconds: float = Field(default=2.0, gt=0, description="Timer flush period")


class EndpointSettings(BaseModel):
    """Ingestion endpoint location."""

    model_config = {"frozen": True}

    url: str = Field(default=DATA_ENDPOINT, description="Base URL of the ingestion service")
    batch_path: str = Field(default=DATA_BATCH_ENDPOINT, description="Path for batched events")
    screenshot_path: str = Field(default=DATA_SCREENSHOT_ENDPOINT, description="Path for screenshot uploads")
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP request timeout")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"endpoint url must be http(s), got {v!r}")
        return v.rstrip("/")

    @field_validator("batch_path", "screenshot_path")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/")


class UploadSettings(BaseModel):
    """Waiting for in-flight uploads at worker end."""

    model_config = {"frozen": True}

    wait_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Longest a worker waits for pending uploads before tearing down",
    )


class WorkerStoreSettings(BaseModel):
    """Where each worker process writes its usage snapshot."""

    model_config = {"frozen": True}

    directory: str = Field(default=".testpulse/workers", description="Directory of per-worker JSON snapshots")


class PulseSettings(BaseModel):
    """Top-level settings."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Send events and report usage")
    manually_set: bool = Field(default=False, description="Whether 'enabled' was set explicitly by the user")
    batching: BatchSettings = Field(default_factory=BatchSettings)
    endpoint: EndpointSettings = Field(default_factory=EndpointSettings)
    uploads: UploadSettings = Field(default_factory=UploadSettings)
    workers: WorkerStoreSettings = Field(default_factory=WorkerStoreSettings)
    enabled_events: list[str] = Field(
        default_factory=lambda: [e.value for e in EventType],
        description="Event kinds the dispatcher processes; others are no-ops",
    )
    log_kind_map: dict[str, str] = Field(
        default_factory=lambda: dict(LOG_KIND_USAGE_MAP),
        description="Adapter log kind -> counter group name",
    )

    @field_validator("enabled_events")
    @classmethod
    def validate_enabled_events(cls, v: list[str]) -> list[str]:
        known = {e.value for e in EventType}
        unknown = [name for name in v if name not in known]
        if unknown:
            raise ValueError(f"Unknown event types {unknown}; use any of {sorted(known)}")
        return v


def load_settings(config_path: Path) -> PulseSettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (TESTPULSE_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: TESTPULSE_BATCHING__SIZE for nested keys.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix=ENVVAR_PREFIX,
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    return PulseSettings(**_lowercase_keys(dynaconf_settings.as_dict()))


def _lowercase_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Lowercase Dynaconf's uppercase top-level keys, dropping its internals.

    ``log_kind_map`` keys are user data (adapter kinds) and keep their case.
    """
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    config: dict[str, Any] = {}
    for key, value in raw.items():
        if key in internal_keys:
            continue
        lowered = key.lower()
        if isinstance(value, dict) and lowered != "log_kind_map":
            value = {k.lower(): v for k, v in value.items()}
        config[lowered] = value
    return config
