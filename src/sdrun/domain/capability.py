"""Host capability levels and the per-feature support table.

Support is not monotonic in the host version: a feature can ship, break,
and come back. Each feature therefore carries a minimum level plus the set
of levels at which it is known broken. Add a level to ``CapabilityLevel``
when a new step matters, then extend ``FEATURE_SUPPORT``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Dict, FrozenSet


@total_ordering
class CapabilityLevel(Enum):
    """Ordered chain of host feature steps, oldest first."""

    V188 = "v188"
    V208 = "v208"
    V213 = "v213"
    V226 = "v226"
    V227 = "v227"
    V229 = "v229"
    V230 = "v230"
    V231 = "v231"
    V232 = "v232"
    V233 = "v233"
    V236 = "v236"
    V238 = "v238"
    V240 = "v240"
    V244 = "v244"
    V247 = "v247"
    V248 = "v248"
    V249 = "v249"
    V251 = "v251"
    V252 = "v252"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, CapabilityLevel):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: "str | CapabilityLevel") -> "CapabilityLevel":
        """Accept ``v252``, ``252`` or ``systemd_252``."""
        if isinstance(value, cls):
            return value
        raw = str(value).strip().lower()
        for prefix in ("systemd_", "systemd-", "v"):
            if raw.startswith(prefix):
                raw = raw[len(prefix):]
                break
        try:
            return cls(f"v{raw}")
        except ValueError:
            known = ", ".join(level.value for level in cls)
            raise ValueError(
                f"unknown capability level {value!r} (known: {known})"
            ) from None

    @classmethod
    def latest(cls) -> "CapabilityLevel":
        return list(cls)[-1]


_RANK: Dict[CapabilityLevel, int] = {
    level: index for index, level in enumerate(CapabilityLevel)
}


class Feature(Enum):
    """Host features the translator can emit."""

    UNIFIED_CGROUP = "unified_cgroup"
    MEMORY_LIMIT = "MemoryLimit"
    MEMORY_MAX = "MemoryMax"
    MEMORY_SWAP_MAX = "MemorySwapMax"
    CPU_QUOTA = "CPUQuotaPerSecUSec"
    TASKS_MAX = "TasksMax"
    ALLOWED_CPUS = "AllowedCPUs"
    RUNTIME_MAX = "RuntimeMaxUSec"
    WORKING_DIRECTORY = "WorkingDirectory"
    PRIVATE_NETWORK = "PrivateNetwork"
    PRIVATE_DEVICES = "PrivateDevices"
    NO_NEW_PRIVILEGES = "NoNewPrivileges"
    JOINS_NAMESPACE_OF = "JoinsNamespaceOf"
    PRIVATE_USERS = "PrivateUsers"
    DYNAMIC_USER = "DynamicUser"
    BIND_PATHS = "BindPaths"
    MOUNT_API_VFS = "MountAPIVFS"
    COLLECT_MODE = "CollectMode"
    ADD_REF = "AddRef"
    STDIO_FILE = "StandardOutputFile"
    TEMPORARY_FILE_SYSTEM = "TemporaryFileSystem"
    STDIO_APPEND = "StandardOutputFileToAppend"
    EXEC_SERVICE_TYPE = "Type=exec"
    MOUNT_IMAGES = "MountImages"
    PROTECT_PROC = "ProtectProc"
    PRIVATE_IPC = "PrivateIPC"
    STDIO_TRUNCATE = "StandardOutputFileToTruncate"


@dataclass(frozen=True)
class FeatureSupport:
    minimum: CapabilityLevel
    broken_at: FrozenSet[CapabilityLevel] = frozenset()
    needs_unified_cgroup: bool = False

    def available_at(self, level: CapabilityLevel) -> bool:
        return level >= self.minimum and level not in self.broken_at


L = CapabilityLevel

FEATURE_SUPPORT: Dict[Feature, FeatureSupport] = {
    # Introduced at 226 but broken with newer kernels; reworked in 230.
    Feature.UNIFIED_CGROUP: FeatureSupport(
        L.V226, broken_at=frozenset({L.V226, L.V227, L.V229})
    ),
    Feature.MEMORY_LIMIT: FeatureSupport(L.V208),
    Feature.MEMORY_MAX: FeatureSupport(L.V231),
    Feature.MEMORY_SWAP_MAX: FeatureSupport(L.V232, needs_unified_cgroup=True),
    Feature.CPU_QUOTA: FeatureSupport(L.V213),
    Feature.TASKS_MAX: FeatureSupport(L.V227),
    Feature.ALLOWED_CPUS: FeatureSupport(L.V244, needs_unified_cgroup=True),
    Feature.RUNTIME_MAX: FeatureSupport(L.V229),
    Feature.WORKING_DIRECTORY: FeatureSupport(L.V227),
    Feature.PRIVATE_NETWORK: FeatureSupport(L.V227),
    Feature.PRIVATE_DEVICES: FeatureSupport(L.V227),
    Feature.NO_NEW_PRIVILEGES: FeatureSupport(L.V227),
    Feature.JOINS_NAMESPACE_OF: FeatureSupport(L.V227),
    Feature.PRIVATE_USERS: FeatureSupport(L.V232),
    Feature.DYNAMIC_USER: FeatureSupport(L.V232),
    Feature.BIND_PATHS: FeatureSupport(L.V233),
    Feature.MOUNT_API_VFS: FeatureSupport(L.V233),
    Feature.COLLECT_MODE: FeatureSupport(L.V236),
    Feature.ADD_REF: FeatureSupport(L.V236),
    Feature.STDIO_FILE: FeatureSupport(L.V236),
    Feature.TEMPORARY_FILE_SYSTEM: FeatureSupport(L.V238),
    Feature.STDIO_APPEND: FeatureSupport(L.V240),
    Feature.EXEC_SERVICE_TYPE: FeatureSupport(L.V240),
    Feature.MOUNT_IMAGES: FeatureSupport(L.V247),
    Feature.PROTECT_PROC: FeatureSupport(L.V247),
    Feature.PRIVATE_IPC: FeatureSupport(L.V248),
    Feature.STDIO_TRUNCATE: FeatureSupport(L.V248),
}

del L
