"""Unit Specification Builder.

Pure transform ``UnitSpec x overrides -> UnitSpec``. Everything that can be
checked locally is checked here, before any bus traffic. Normalization
(frozen collections, rlimit soft trimming, sorted environment) happens on
the returned copy; the input spec is never touched.
"""

from __future__ import annotations

import dataclasses
import re
from types import MappingProxyType
from typing import Any, Iterable, Optional

from sdrun.domain.errors import InvalidSpecError
from sdrun.domain.units import (
    CpuScheduling,
    CpuSchedulingPolicy,
    Identity,
    IdentityKind,
    InputSpec,
    Isolation,
    Mount,
    MountKind,
    OutputSpec,
    ResourceLimits,
    RLimit,
    StdioKind,
    UnitSpec,
)

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UNIT_NAME_CHARS = re.compile(r"^[A-Za-z0-9:_.\\-]+$")
# User= and Group= accept a numeric id or a relaxed POSIX name.
_USER_NAME = re.compile(r"^(?:[0-9]+|[A-Za-z_][A-Za-z0-9_.-]*\$?)$")
_REAL_TIME_POLICIES = frozenset(
    {CpuSchedulingPolicy.FIFO, CpuSchedulingPolicy.ROUND_ROBIN}
)
_RLIMIT_FIELDS = ("nofile", "nproc", "fsize", "stack", "core")
_FIELDS = frozenset(f.name for f in dataclasses.fields(UnitSpec))


def build_spec(spec: UnitSpec, **overrides: Any) -> UnitSpec:
    """Apply launch-time overrides and return a validated, normalized copy.

    Args:
        spec: base launch request
        **overrides: ``UnitSpec`` field replacements

    Returns:
        New ``UnitSpec``

    Raises:
        InvalidSpecError: unknown override or a locally checkable violation
    """
    unknown = sorted(set(overrides) - _FIELDS)
    if unknown:
        raise InvalidSpecError(f"unknown UnitSpec fields: {', '.join(unknown)}")

    merged = dataclasses.replace(spec, **overrides) if overrides else spec
    normalized = _normalize(merged)
    validate_spec(normalized)
    return normalized


def validate_spec(spec: UnitSpec) -> None:
    """Raise ``InvalidSpecError`` on the first locally detectable problem."""
    if not spec.executable:
        raise InvalidSpecError("executable must not be empty")
    _check_text("executable", spec.executable)
    if not spec.executable.startswith("/"):
        raise InvalidSpecError(
            f"executable must be an absolute path: {spec.executable!r}"
        )
    for index, arg in enumerate(spec.args):
        _check_text(f"args[{index}]", arg)

    if spec.working_directory is not None:
        _check_text("working_directory", spec.working_directory)
        wd = spec.working_directory
        if wd != "~" and not wd.startswith("/"):
            raise InvalidSpecError(
                f"working_directory must be absolute or '~': {wd!r}"
            )

    for key, value in spec.environment.items():
        if not _ENV_KEY.match(key):
            raise InvalidSpecError(f"invalid environment variable name: {key!r}")
        _check_text(f"environment[{key}]", value)

    _validate_limits(spec.limits)

    if spec.slice is not None:
        if not spec.slice.endswith(".slice") or not _UNIT_NAME_CHARS.match(spec.slice):
            raise InvalidSpecError(f"invalid slice name: {spec.slice!r}")

    for unit in spec.joins_namespace_of:
        if not _UNIT_NAME_CHARS.match(unit):
            raise InvalidSpecError(f"invalid unit name in joins_namespace_of: {unit!r}")

    for flag in spec.isolation:
        if not isinstance(flag, Isolation):
            raise InvalidSpecError(f"unknown isolation flag: {flag!r}")

    _validate_stdio("stdin", spec.stdin)
    _validate_stdio("stdout", spec.stdout)
    _validate_stdio("stderr", spec.stderr)
    if spec.stdin is not None and spec.stdin.kind not in (StdioKind.NULL, StdioKind.FILE):
        raise InvalidSpecError(f"stdin cannot be {spec.stdin.kind.value}")

    for mount in spec.mounts:
        _validate_mount(mount)

    _validate_cpu_scheduling(spec.cpu_scheduling)
    _validate_identity(spec.identity)

    if spec.timeout_stop_seconds is not None and spec.timeout_stop_seconds < 0:
        raise InvalidSpecError("timeout_stop_seconds must not be negative")


def _normalize(spec: UnitSpec) -> UnitSpec:
    limits = spec.limits
    trimmed = {}
    for name in _RLIMIT_FIELDS:
        rlim: Optional[RLimit] = getattr(limits, name)
        if rlim is not None and rlim.soft > rlim.hard:
            trimmed[name] = RLimit(soft=rlim.hard, hard=rlim.hard)
    if trimmed or not isinstance(limits.allowed_cpus, tuple):
        limits = dataclasses.replace(
            limits, allowed_cpus=tuple(limits.allowed_cpus), **trimmed
        )

    return dataclasses.replace(
        spec,
        args=tuple(spec.args),
        environment=MappingProxyType(dict(sorted(dict(spec.environment).items()))),
        limits=limits,
        isolation=frozenset(spec.isolation),
        mounts=tuple(spec.mounts),
        joins_namespace_of=tuple(spec.joins_namespace_of),
    )


def _check_text(label: str, value: str) -> None:
    if not isinstance(value, str):
        raise InvalidSpecError(f"{label} must be a string")
    if "\x00" in value:
        raise InvalidSpecError(f"{label} contains a NUL byte")


def _require_positive(label: str, value: Optional[float]) -> None:
    if value is not None and value <= 0:
        raise InvalidSpecError(f"{label} must be positive, got {value}")


def _validate_limits(limits: ResourceLimits) -> None:
    _require_positive("memory_max", limits.memory_max)
    if limits.memory_swap_max is not None and limits.memory_swap_max < 0:
        raise InvalidSpecError("memory_swap_max must not be negative")
    _require_positive("cpu_quota", limits.cpu_quota)
    _require_positive("tasks_max", limits.tasks_max)
    _require_positive("runtime_max_seconds", limits.runtime_max_seconds)
    _check_cpus(limits.allowed_cpus)

    for name in _RLIMIT_FIELDS:
        rlim: Optional[RLimit] = getattr(limits, name)
        if rlim is None:
            continue
        if rlim.soft < 0 or rlim.hard < 0:
            raise InvalidSpecError(f"{name} limits must not be negative")
        if name in ("nofile", "nproc") and (rlim.soft == 0 or rlim.hard == 0):
            raise InvalidSpecError(f"{name} limits must be at least 1")


def _check_cpus(cpus: Iterable[int]) -> None:
    for cpu in cpus:
        if not isinstance(cpu, int) or isinstance(cpu, bool) or cpu < 0:
            raise InvalidSpecError(f"invalid CPU index: {cpu!r}")


def _validate_stdio(label: str, spec: "InputSpec | OutputSpec | None") -> None:
    if spec is None:
        return
    if spec.kind in (StdioKind.FILE, StdioKind.TRUNCATE, StdioKind.APPEND):
        if not spec.path:
            raise InvalidSpecError(f"{label} {spec.kind.value} needs a path")
        _check_text(f"{label} path", spec.path)
        if not spec.path.startswith("/"):
            raise InvalidSpecError(f"{label} path must be absolute: {spec.path!r}")
    elif spec.path is not None:
        raise InvalidSpecError(f"{label} {spec.kind.value} takes no path")


def _validate_mount(mount: Mount) -> None:
    _check_text("mount destination", mount.destination)
    if not mount.destination.startswith("/"):
        raise InvalidSpecError(
            f"mount destination must be absolute: {mount.destination!r}"
        )
    if mount.kind != MountKind.TMPFS:
        if not mount.source:
            raise InvalidSpecError(f"{mount.kind.value} mount needs a source")
        _check_text("mount source", mount.source)
    if mount.kind == MountKind.BIND and mount.options:
        raise InvalidSpecError("bind mounts take no options")
    for option in mount.options:
        if option in ("", "ro", "rw") or "," in option:
            raise InvalidSpecError(f"invalid mount option: {option!r}")


def _validate_cpu_scheduling(sched: CpuScheduling) -> None:
    priority = sched.real_time_priority
    if sched.policy in _REAL_TIME_POLICIES:
        if priority is None or not 1 <= priority <= 99:
            raise InvalidSpecError(
                "real-time scheduling needs a priority in [1, 99]"
            )
    elif priority is not None:
        raise InvalidSpecError(
            f"{sched.policy.name} scheduling takes no real-time priority"
        )


def _validate_identity(identity: Optional[Identity]) -> None:
    if identity is None:
        return
    if not isinstance(identity.kind, IdentityKind):
        raise InvalidSpecError(f"unknown identity kind: {identity.kind!r}")
    if identity.kind == IdentityKind.DYNAMIC:
        if identity.user is not None or identity.group is not None:
            raise InvalidSpecError("dynamic identity takes no user or group")
        return
    if not identity.user:
        raise InvalidSpecError("user_group identity needs a user")
    _check_user_name("user", identity.user)
    if identity.group is not None:
        _check_user_name("group", identity.group)


def _check_user_name(label: str, value: str) -> None:
    _check_text(label, value)
    if len(value) > 256 or not _USER_NAME.match(value):
        raise InvalidSpecError(f"invalid {label} name: {value!r}")
