"""Unit specification building, naming and capability translation.

Pure, I/O-free layer: everything here runs before the control bus is
touched.
"""

from sdrun.kernel.units.capability_gate import CapabilityGate, UnitProperty, cpu_set_mask
from sdrun.kernel.units.naming import (
    UNIT_PATH_PREFIX,
    UnitNamer,
    unit_name_from_path,
    unit_object_path,
    validate_unit_prefix,
)
from sdrun.kernel.units.spec_builder import build_spec, validate_spec

__all__ = [
    "CapabilityGate",
    "UnitProperty",
    "cpu_set_mask",
    "UnitNamer",
    "UNIT_PATH_PREFIX",
    "unit_object_path",
    "unit_name_from_path",
    "validate_unit_prefix",
    "build_spec",
    "validate_spec",
]
