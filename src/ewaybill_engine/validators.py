"""Format-level validators for E-Way Bill inputs.

Every function here is total: it accepts any value, never raises, and returns
a :class:`ValidationResult` that is truthy on success and carries a
human-readable reason on failure. The rule engine decides which taxonomy tag
a failed validation maps to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from .constants import UNREGISTERED_PERSON, SupplyType, TransportMode, VehicleType


GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
VEHICLE_NUMBER_PATTERN = re.compile(r"^[A-Z]{2}[0-9]{1,2}[A-Z]{1,2}[0-9]{4}$")
POSTAL_CODE_PATTERN = re.compile(r"^[0-9]{6}$")
CLASSIFICATION_CODE_PATTERN = re.compile(r"^[0-9]{4,8}$")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a single validator call."""

    ok: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


PASSED = ValidationResult(True)


def _fail(reason: str) -> ValidationResult:
    return ValidationResult(False, reason)


def is_valid_tax_registration_number(value: Any) -> ValidationResult:
    """Validate a 15-character GSTIN.

    Args:
        value (Any): Candidate registration number. Anything that is not a
            string fails.

    Returns:
        ValidationResult: Passing result when ``value`` is exactly 15
            characters matching the GSTIN structure (2 digits, 5 letters,
            4 digits, 1 letter, 1 alphanumeric excluding ``0``, ``Z``,
            1 alphanumeric).
    """

    if not isinstance(value, str) or len(value) != 15:
        return _fail("GSTIN must be exactly 15 characters")
    if not GSTIN_PATTERN.match(value):
        return _fail(
            "Invalid GSTIN format. Must be 15 characters: 2 digits + 5 letters + "
            "4 digits + 1 letter + 1 alphanumeric + Z + 1 alphanumeric"
        )
    return PASSED


def normalize_vehicle_number(value: Any) -> str:
    """Uppercase a vehicle number and strip all whitespace; non-strings become ``""``."""

    if not isinstance(value, str):
        return ""
    return _WHITESPACE.sub("", value).upper()


def is_valid_vehicle_number(value: Any) -> ValidationResult:
    """Validate a vehicle registration number such as ``MH12AB1234``.

    The value is normalized with :func:`normalize_vehicle_number` first, so
    ``"mh 12 ab 1234"`` passes.
    """

    normalized = normalize_vehicle_number(value)
    if not normalized:
        return _fail("Vehicle number is required")
    if not VEHICLE_NUMBER_PATTERN.match(normalized):
        return _fail("Vehicle number must be in format: XX##XX#### (e.g., MH12AB1234)")
    return PASSED


def is_valid_postal_code(value: Any) -> ValidationResult:
    """Validate a 6-digit PIN code."""

    if not isinstance(value, str) or not POSTAL_CODE_PATTERN.match(value):
        return _fail("Pincode must be exactly 6 digits")
    return PASSED


def is_valid_classification_code(value: Any) -> ValidationResult:
    """Validate an HSN code of 4 to 8 digits."""

    if not isinstance(value, str) or not CLASSIFICATION_CODE_PATTERN.match(value):
        return _fail("HSN code must be 4 to 8 digits")
    return PASSED


def is_valid_party_registration(value: Any, supply_type: Any) -> ValidationResult:
    """Validate a consignor/consignee registration.

    A party is identified either by a GSTIN or by ``URP`` (unregistered
    person). ``URP`` is only allowed on outward (B2C) supplies.
    """

    if value == UNREGISTERED_PERSON:
        if _enum_value(supply_type) != SupplyType.OUTWARD.value:
            return _fail("URP is allowed only for Outward (B2C) supplies")
        return PASSED
    return is_valid_tax_registration_number(value)


def is_recognized_transport_mode(value: Any) -> ValidationResult:
    if _enum_value(value) not in {mode.value for mode in TransportMode}:
        return _fail("Invalid transport mode")
    return PASSED


def is_recognized_vehicle_type(value: Any) -> ValidationResult:
    if _enum_value(value) not in {kind.value for kind in VehicleType}:
        return _fail("Invalid vehicle type")
    return PASSED


def has_min_length(value: Any, minimum: int, *, label: str = "Value") -> ValidationResult:
    """Check that ``value`` has at least ``minimum`` characters once trimmed."""

    if not isinstance(value, str) or len(value.strip()) < minimum:
        return _fail(f"{label} is mandatory and must be at least {minimum} characters")
    return PASSED


def is_blank(value: Any) -> bool:
    """Return ``True`` for ``None`` and whitespace-only strings."""

    return value is None or (isinstance(value, str) and not value.strip())


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, (TransportMode, VehicleType, SupplyType)) else value
