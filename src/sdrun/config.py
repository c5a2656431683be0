"""sdrun configuration settings."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdrun.domain.capability import CapabilityLevel
from sdrun.domain.errors import InvalidSpecError
from sdrun.domain.units import BusTarget
from sdrun.infrastructure.config.settings_utils import (
    env_bool,
    env_choice,
    env_float,
    env_int,
    env_optional,
    env_str,
)
from sdrun.infrastructure.logging_setup import configure_logging
from sdrun.kernel.units.naming import validate_unit_prefix

# Job modes StartTransientUnit accepts for a fresh unit.
START_MODES = ("fail", "replace", "isolate", "ignore-dependencies", "ignore-requirements")


class Settings(BaseSettings):
    """Orchestrator settings with env var support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Control bus
    bus: BusTarget = Field(
        default_factory=lambda: env_str("SDRUN_BUS", "system"),
        validate_default=True,
    )
    bus_address: Optional[str] = Field(
        default_factory=lambda: env_optional("SDRUN_BUS_ADDRESS")
    )
    start_mode: str = Field(
        default_factory=lambda: env_choice("SDRUN_START_MODE", "fail", START_MODES)
    )

    # Host capabilities
    capability_level: CapabilityLevel = Field(
        default_factory=lambda: env_str("SDRUN_CAPABILITY_LEVEL", "v252"),
        validate_default=True,
    )
    unified_cgroup: bool = Field(
        default_factory=lambda: env_bool("SDRUN_UNIFIED_CGROUP", True)
    )

    # Launches
    unit_prefix: str = Field(
        default_factory=lambda: env_str("SDRUN_UNIT_PREFIX", "sdrun"),
        validate_default=True,
    )
    cleanup_timeout_seconds: float = Field(
        default_factory=lambda: env_float(
            "SDRUN_CLEANUP_TIMEOUT", 5.0, minimum=0.1, maximum=300.0
        )
    )
    default_timeout_seconds: int = Field(
        default_factory=lambda: env_int(
            "SDRUN_DEFAULT_TIMEOUT", 60, minimum=1, maximum=86400
        )
    )

    # Observability
    log_level: str = Field(default_factory=lambda: env_str("SDRUN_LOG_LEVEL", "INFO"))
    log_json: bool = Field(default_factory=lambda: env_bool("SDRUN_LOG_JSON", False))

    @field_validator("bus", mode="before")
    @classmethod
    def _parse_bus(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("capability_level", mode="before")
    @classmethod
    def _parse_capability_level(cls, value):
        return CapabilityLevel.parse(value)

    @field_validator("unit_prefix")
    @classmethod
    def _check_unit_prefix(cls, value: str) -> str:
        try:
            return validate_unit_prefix(value)
        except InvalidSpecError as e:
            raise ValueError(str(e)) from e

    def setup_logging(self) -> None:
        configure_logging(self.log_level, self.log_json)


# Global settings instance
settings = Settings()
