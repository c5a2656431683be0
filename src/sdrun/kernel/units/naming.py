"""Transient unit naming and systemd object-path escaping."""

from __future__ import annotations

import re
import uuid
from typing import Callable, Optional

from sdrun.domain.errors import InvalidSpecError, NameCollisionError

UNIT_PATH_PREFIX = "/org/freedesktop/systemd1/unit/"

_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9:_.-]+$")
_MAX_ATTEMPTS = 8


def validate_unit_prefix(prefix: str) -> str:
    if not prefix or not _PREFIX_PATTERN.match(prefix):
        raise InvalidSpecError(f"invalid unit name prefix: {prefix!r}")
    return prefix


class UnitNamer:
    """Generates ``<prefix>-<uuid4 hex>.service`` names.

    ``in_use`` lets the owner veto a name that is still pending or still
    alive on the host; the namer retries a few times before giving up with
    ``NameCollisionError`` rather than looping forever.
    """

    def __init__(
        self,
        prefix: str = "sdrun",
        in_use: Optional[Callable[[str], bool]] = None,
    ):
        self.prefix = validate_unit_prefix(prefix)
        self._in_use = in_use or (lambda name: False)

    def generate(self) -> str:
        for _ in range(_MAX_ATTEMPTS):
            name = f"{self.prefix}-{uuid.uuid4().hex}.service"
            if not self._in_use(name):
                return name
        raise NameCollisionError(
            f"could not generate a free unit name with prefix {self.prefix!r}"
        )


def _escape_byte(b: int) -> str:
    if (0x30 <= b <= 0x39) or (0x41 <= b <= 0x5A) or (0x61 <= b <= 0x7A):
        return chr(b)
    return f"_{b:02x}"


def unit_object_path(unit_name: str) -> str:
    """Object path systemd exposes a unit under (``-`` becomes ``_2d``)."""
    return UNIT_PATH_PREFIX + "".join(
        _escape_byte(b) for b in unit_name.encode("utf-8")
    )


def unit_name_from_path(path: str) -> Optional[str]:
    """Reverse of ``unit_object_path``; None for non-unit paths."""
    if not path.startswith(UNIT_PATH_PREFIX):
        return None
    escaped = path[len(UNIT_PATH_PREFIX):]
    out = bytearray()
    i = 0
    while i < len(escaped):
        ch = escaped[i]
        if ch == "_" and _is_hex(escaped[i + 1:i + 3]):
            out.append(int(escaped[i + 1:i + 3], 16))
            i += 3
        else:
            out.extend(ch.encode("utf-8"))
            i += 1
    return out.decode("utf-8", errors="replace")


def _is_hex(text: str) -> bool:
    return len(text) == 2 and all(c in "0123456789abcdefABCDEF" for c in text)
