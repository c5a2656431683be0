"""Unit naming and object-path escaping."""

import re

import pytest

from sdrun.domain import InvalidSpecError, NameCollisionError
from sdrun.kernel.units.naming import (
    UNIT_PATH_PREFIX,
    UnitNamer,
    unit_name_from_path,
    unit_object_path,
    validate_unit_prefix,
)

_NAME = re.compile(r"^judge-[0-9a-f]{32}\.service$")


def test_generated_names_have_expected_shape():
    name = UnitNamer("judge").generate()
    assert _NAME.match(name)


def test_ten_thousand_names_are_unique():
    namer = UnitNamer("judge")
    names = {namer.generate() for _ in range(10_000)}
    assert len(names) == 10_000


def test_name_in_use_is_regenerated():
    seen = []

    def in_use(name):
        seen.append(name)
        return len(seen) == 1

    name = UnitNamer("judge", in_use=in_use).generate()
    assert len(seen) == 2
    assert name == seen[1]
    assert name != seen[0]


def test_persistent_clash_surfaces_name_collision():
    with pytest.raises(NameCollisionError):
        UnitNamer("judge", in_use=lambda name: True).generate()


@pytest.mark.parametrize("prefix", ["", "has space", "slash/", "semi;colon"])
def test_invalid_prefix(prefix):
    with pytest.raises(InvalidSpecError):
        validate_unit_prefix(prefix)


def test_object_path_escaping():
    path = unit_object_path("sdrun-abc.service")
    assert path == UNIT_PATH_PREFIX + "sdrun_2dabc_2eservice"


def test_object_path_round_trip_for_generated_name():
    name = UnitNamer().generate()
    assert unit_name_from_path(unit_object_path(name)) == name


def test_name_from_foreign_path_is_none():
    assert unit_name_from_path("/org/freedesktop/systemd1/job/42") is None
