"""Enumerations and rule constants shared across the E-Way Bill engine.

Centralises the government master codes and the statutory time windows so
that the validators, the temporal evaluator, the registry, and the rule
engine rely on a single source of truth.
"""

from __future__ import annotations

from datetime import time
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Statutory windows, in hours.
CANCELLATION_WINDOW_HOURS = 24
EXTENSION_CEILING_HOURS = 72
RECIPIENT_RESPONSE_HOURS = 72

# Date-only validity inputs are completed with this time of day.
DEFAULT_VALIDITY_TIME = time(23, 59)

# Minimum trimmed lengths for free-text inputs.
MIN_CANCEL_REMARKS_LENGTH = 10
MIN_EXTEND_REASON_LENGTH = 10
MIN_CURRENT_LOCATION_LENGTH = 3
MIN_REJECT_REASON_LENGTH = 10

# Distance covered per day of validity when the provider does not supply one.
KM_PER_VALIDITY_DAY = 200
KM_PER_VALIDITY_DAY_ODC = 20

UNREGISTERED_PERSON = "URP"
DEFAULT_UTC_OFFSET = "+05:30"


class EWayBillStatus(str, Enum):
    """Lifecycle states of an E-Way Bill record."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Operation(str, Enum):
    """Operations submitted to the compliance authority and logged in history."""

    GENERATE = "GENERATE"
    CANCEL = "CANCEL"
    CHANGE_TRANSPORTER = "CHANGE_TRANSPORTER"
    EXTEND_VALIDITY = "EXTEND_VALIDITY"
    PART_B = "PART_B"
    CONSOLIDATE = "CONSOLIDATE"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class HistoryEvent(str, Enum):
    """Entries that may appear in a document's append-only history."""

    GENERATED = "GENERATED"
    CANCELLED = "CANCELLED"
    TRANSPORTER_CHANGED = "TRANSPORTER_CHANGED"
    VALIDITY_EXTENDED = "VALIDITY_EXTENDED"
    PART_B = "PART_B"
    CONSOLIDATED = "CONSOLIDATED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class RecipientDecisionType(str, Enum):
    """Recipient's response to a bill generated against their GSTIN."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class TransportMode(str, Enum):
    """Transport modes as per the E-Way Bill master codes."""

    ROAD = "1"
    RAIL = "2"
    AIR = "3"
    SHIP = "4"


class VehicleType(str, Enum):
    """Vehicle types as per the E-Way Bill master codes."""

    REGULAR = "R"
    OVER_DIMENSIONAL_CARGO = "O"


class SupplyType(str, Enum):
    """Direction of supply."""

    OUTWARD = "O"
    INWARD = "I"


class CancelReason(str, Enum):
    """Cancellation reason codes offered by the government portal."""

    DUPLICATE = "1"
    DATA_ENTRY_MISTAKE = "2"
    ORDER_CANCELLED = "3"
    GOODS_NOT_MOVED = "4"
    OTHER = "5"


# Sub-supply type code for "Others", which requires a description.
SUB_SUPPLY_OTHERS = "8"

CANCEL_REASON_LABELS = {
    CancelReason.DUPLICATE: "Duplicate E-Way Bill",
    CancelReason.DATA_ENTRY_MISTAKE: "Data Entry Mistake",
    CancelReason.ORDER_CANCELLED: "Order Cancelled",
    CancelReason.GOODS_NOT_MOVED: "Goods Not Moved",
    CancelReason.OTHER: "Other",
}

TRANSPORT_MODE_LABELS = {
    TransportMode.ROAD: "Road",
    TransportMode.RAIL: "Rail",
    TransportMode.AIR: "Air",
    TransportMode.SHIP: "Ship or Ship Cum Road/Rail",
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the registry."""

    EWAY_BILLS = "EWayBills"
    HISTORY = "History"
    CONSOLIDATIONS = "Consolidations"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CANCELLATION_WINDOW_HOURS",
    "EXTENSION_CEILING_HOURS",
    "RECIPIENT_RESPONSE_HOURS",
    "DEFAULT_VALIDITY_TIME",
    "EWayBillStatus",
    "Operation",
    "HistoryEvent",
    "RecipientDecisionType",
    "TransportMode",
    "VehicleType",
    "SupplyType",
    "CancelReason",
    "SheetName",
]
