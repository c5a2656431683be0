"""Settings: env-driven defaults and validation."""

import pytest
from pydantic import ValidationError

from sdrun.config import Settings
from sdrun.domain import BusTarget, CapabilityLevel


def test_defaults(monkeypatch):
    for name in ("SDRUN_BUS", "SDRUN_CAPABILITY_LEVEL", "SDRUN_UNIT_PREFIX", "SDRUN_BUS_ADDRESS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)

    assert settings.bus == BusTarget.SYSTEM
    assert settings.bus_address is None
    assert settings.capability_level == CapabilityLevel.V252
    assert settings.unit_prefix == "sdrun"
    assert settings.start_mode == "fail"
    assert settings.cleanup_timeout_seconds == 5.0


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SDRUN_BUS", "Session")
    monkeypatch.setenv("SDRUN_CAPABILITY_LEVEL", "systemd_231")
    monkeypatch.setenv("SDRUN_UNIFIED_CGROUP", "off")
    monkeypatch.setenv("SDRUN_UNIT_PREFIX", "judge")
    monkeypatch.setenv("SDRUN_CLEANUP_TIMEOUT", "0")
    settings = Settings(_env_file=None)

    assert settings.bus == BusTarget.SESSION
    assert settings.capability_level == CapabilityLevel.V231
    assert settings.unified_cgroup is False
    assert settings.unit_prefix == "judge"
    assert settings.cleanup_timeout_seconds == 0.1


def test_unknown_capability_level_fails_validation(monkeypatch):
    monkeypatch.setenv("SDRUN_CAPABILITY_LEVEL", "v999")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_invalid_unit_prefix_fails_validation(monkeypatch):
    monkeypatch.setenv("SDRUN_UNIT_PREFIX", "no spaces")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
