"""Data access layer for the E-Way Bill engine.

This module owns everything that touches storage. Rule evaluation belongs in
:mod:`ewaybill_engine.core_logic`.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record shapes: immutable dataclasses for bills, Part-B updates, history
   entries, and consolidated bills.
3. Workbook lifecycle: opening, validating, and persisting the Excel file.
4. The Document Registry contract with an in-memory and a workbook-backed
   implementation, both offering an atomic check-and-mutate primitive.
"""


from __future__ import annotations

import configparser
import json
import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    CANCELLATION_WINDOW_HOURS,
    DEFAULT_UTC_OFFSET,
    EXTENSION_CEILING_HOURS,
    RECIPIENT_RESPONSE_HOURS,
    EWayBillStatus,
    HistoryEvent,
    RecipientDecisionType,
    SheetName,
)
from .temporal import parse_utc_offset


CONFIG_FILE_NAME = "config.ini"
EWAY_BILLS_SHEET = SheetName.EWAY_BILLS.value
HISTORY_SHEET = SheetName.HISTORY.value
CONSOLIDATIONS_SHEET = SheetName.CONSOLIDATIONS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    EWAY_BILLS_SHEET: [
        "DocumentNumber",
        "Status",
        "CreatedAt",
        "ValidFrom",
        "ValidUntil",
        "VehicleNumber",
        "TransporterID",
        "TransporterName",
        "FromPlace",
        "ToPlace",
        "LastVehicleUpdate",
        "CancelReasonCode",
        "CancelRemarks",
        "CancelledAt",
        "RecipientDecision",
        "RecipientDecidedAt",
        "RecipientRemarks",
    ],
    HISTORY_SHEET: [
        "DocumentNumber",
        "Sequence",
        "Event",
        "RecordedAt",
        "Details",
    ],
    CONSOLIDATIONS_SHEET: [
        "ConsolidatedNumber",
        "CreatedAt",
        "Members",
    ],
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleSettings:
    """Statutory windows applied by the rule engine, in hours."""

    cancellation_window_hours: float = CANCELLATION_WINDOW_HOURS
    extension_ceiling_hours: float = EXTENSION_CEILING_HOURS
    recipient_response_hours: float = RECIPIENT_RESPONSE_HOURS


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    timezone: tzinfo
    gateway_mode: str = "sandbox"
    reference_prefix: str = "EWB"
    rules: RuleSettings = field(default_factory=RuleSettings)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path is returned as-is. Otherwise the search walks from the
    current working directory up to the filesystem root and returns the first
    ``CONFIG_FILE_NAME`` that exists.

    Raises:
        FileNotFoundError: If no configuration file is found.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are mandatory.
    ``Timezone``, the ``[Gateway]`` section, and the ``[Rules]`` overrides fall
    back to their defaults. Relative data file paths are anchored to
    ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric rule override or the timezone is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timezone = parse_utc_offset(parser.get("System", "Timezone", fallback=DEFAULT_UTC_OFFSET))

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    defaults = RuleSettings()
    rules = RuleSettings(
        cancellation_window_hours=parser.getfloat(
            "Rules", "CancellationWindowHours", fallback=defaults.cancellation_window_hours
        ),
        extension_ceiling_hours=parser.getfloat(
            "Rules", "ExtensionCeilingHours", fallback=defaults.extension_ceiling_hours
        ),
        recipient_response_hours=parser.getfloat(
            "Rules", "RecipientResponseHours", fallback=defaults.recipient_response_hours
        ),
    )

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        timezone=timezone,
        gateway_mode=parser.get("Gateway", "Mode", fallback="sandbox"),
        reference_prefix=parser.get("Gateway", "ReferencePrefix", fallback="EWB"),
        rules=rules,
    )


# ---------------------------------------------------------------------------
# Record shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartBUpdate:
    """One application of the transport-detail (Part-B) update."""

    trans_mode: str
    distance: Decimal
    updated_at: datetime
    vehicle_number: Optional[str] = None
    transporter_id: Optional[str] = None
    transporter_name: Optional[str] = None
    vehicle_type: Optional[str] = None
    trans_doc_no: Optional[str] = None
    trans_doc_date: Optional[str] = None

    def to_details(self) -> Dict[str, Any]:
        return {
            "trans_mode": self.trans_mode,
            "distance": str(self.distance),
            "updated_at": self.updated_at.isoformat(),
            "vehicle_number": self.vehicle_number,
            "transporter_id": self.transporter_id,
            "transporter_name": self.transporter_name,
            "vehicle_type": self.vehicle_type,
            "trans_doc_no": self.trans_doc_no,
            "trans_doc_date": self.trans_doc_date,
        }

    @classmethod
    def from_details(cls, details: Mapping[str, Any]) -> "PartBUpdate":
        return cls(
            trans_mode=str(details["trans_mode"]),
            distance=Decimal(str(details["distance"])),
            updated_at=datetime.fromisoformat(details["updated_at"]),
            vehicle_number=details.get("vehicle_number"),
            transporter_id=details.get("transporter_id"),
            transporter_name=details.get("transporter_name"),
            vehicle_type=details.get("vehicle_type"),
            trans_doc_no=details.get("trans_doc_no"),
            trans_doc_date=details.get("trans_doc_date"),
        )


@dataclass(frozen=True)
class Cancellation:
    """Details captured when a bill transitions to ``CANCELLED``."""

    reason_code: str
    remarks: str
    cancelled_at: datetime


@dataclass(frozen=True)
class RecipientDecision:
    """Acceptance or rejection recorded by the recipient of the goods."""

    decision: RecipientDecisionType
    decided_at: datetime
    remarks: Optional[str] = None


@dataclass(frozen=True)
class EWayBillRecord:
    """Aggregate root for one E-Way Bill.

    Instances are immutable; every accepted operation produces a new record
    via :func:`dataclasses.replace`. ``cancellation`` is present exactly when
    the status is ``CANCELLED``.
    """

    document_number: str
    status: EWayBillStatus
    created_at: datetime
    valid_from: datetime
    valid_until: datetime
    vehicle_number: Optional[str] = None
    transporter_id: Optional[str] = None
    transporter_name: Optional[str] = None
    from_place: Optional[str] = None
    to_place: Optional[str] = None
    last_vehicle_update: Optional[PartBUpdate] = None
    cancellation: Optional[Cancellation] = None
    recipient_decision: Optional[RecipientDecision] = None

    def __post_init__(self) -> None:
        if not self.document_number:
            raise ValueError("document_number is required")
        if (self.status == EWayBillStatus.CANCELLED) != (self.cancellation is not None):
            raise ValueError(
                f"Record '{self.document_number}': cancellation details must be present "
                "if and only if the status is CANCELLED"
            )


@dataclass(frozen=True)
class HistoryEntry:
    """Append-only audit entry for a single document."""

    document_number: str
    sequence: int
    event: HistoryEvent
    recorded_at: datetime
    details: Mapping[str, Any]


@dataclass(frozen=True)
class PendingHistory:
    """History entry produced by a mutation and numbered on write."""

    event: HistoryEvent
    recorded_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConsolidatedBill:
    """Reference grouping two or more active bills for one journey leg."""

    consolidated_number: str
    created_at: datetime
    members: Tuple[str, ...]


Mutation = Callable[[EWayBillRecord], Tuple[EWayBillRecord, Sequence[PendingHistory]]]
Check = Callable[[EWayBillRecord], None]


# ---------------------------------------------------------------------------
# Registry contract
# ---------------------------------------------------------------------------


class DocumentRegistry(ABC):
    """Keyed store of E-Way Bill records with append-only history.

    Operations on the same document number are serialized by a per-document
    lock; operations on different documents never wait on each other.
    """

    def __init__(self) -> None:
        # Entries drop out once no caller references the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, document_number: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(document_number)
            if lock is None:
                lock = threading.RLock()
                self._locks[document_number] = lock
            return lock

    @contextmanager
    def hold(self, document_numbers: Iterable[str]) -> Iterator[None]:
        """Hold the locks of several documents, acquired in sorted order."""

        with ExitStack() as stack:
            for number in sorted(set(document_numbers)):
                stack.enter_context(self._lock_for(number))
            yield

    @abstractmethod
    def find(self, document_number: str) -> Optional[EWayBillRecord]:
        """Return the record or ``None`` when it does not exist."""

    @abstractmethod
    def history(self, document_number: str) -> Tuple[HistoryEntry, ...]:
        """Return an immutable snapshot of the document's history."""

    @abstractmethod
    def list_records(self) -> List[EWayBillRecord]:
        """Return every record in insertion order."""

    @abstractmethod
    def list_consolidations(self) -> List[ConsolidatedBill]:
        """Return every consolidated bill in creation order."""

    @abstractmethod
    def record_consolidation(self, bill: ConsolidatedBill) -> None:
        """Persist a consolidated bill."""

    @abstractmethod
    def _store(self, record: EWayBillRecord) -> None:
        """Write ``record`` (insert or overwrite)."""

    @abstractmethod
    def _append(self, entry: HistoryEntry) -> None:
        """Append ``entry`` to the document's history."""

    def get(self, document_number: str) -> EWayBillRecord:
        """Return the record for ``document_number``.

        Raises:
            KeyError: If the registry holds no such document.
        """

        record = self.find(document_number)
        if record is None:
            raise KeyError(f"E-Way Bill not found: {document_number}")
        return record

    def insert(self, record: EWayBillRecord, *, history: Iterable[PendingHistory] = ()) -> EWayBillRecord:
        """Add a new record, optionally seeding its history.

        Raises:
            ValueError: If a record with the same number already exists.
        """

        with self._lock_for(record.document_number):
            if self.find(record.document_number) is not None:
                raise ValueError(f"E-Way Bill already registered: {record.document_number}")
            self._store(record)
            self._append_pending(record.document_number, history)
        log.debug("Inserted E-Way Bill '%s'", record.document_number)
        return record

    def apply_if_eligible(self, document_number: str, check: Check, mutate: Mutation) -> EWayBillRecord:
        """Atomically check a record and replace it with a mutated version.

        ``check`` raises to reject; ``mutate`` returns the new record and the
        history entries to append and may perform blocking work such as the
        remote submission. Both run while the document's lock is held, and
        nothing is written if either raises.

        Raises:
            KeyError: If the document does not exist.
            ValueError: If ``mutate`` changes the document number.
        """

        with self._lock_for(document_number):
            record = self.get(document_number)
            check(record)
            new_record, pending = mutate(record)
            if new_record.document_number != document_number:
                raise ValueError("A mutation must not change the document number")
            self._store(new_record)
            self._append_pending(document_number, pending)
            return new_record

    def append_history(
        self,
        document_number: str,
        event: HistoryEvent,
        details: Mapping[str, Any],
        recorded_at: datetime,
    ) -> HistoryEntry:
        """Append a single history entry outside of a mutation."""

        with self._lock_for(document_number):
            self.get(document_number)
            return self._append_one(document_number, PendingHistory(event, recorded_at, dict(details)))

    def _append_pending(self, document_number: str, pending: Iterable[PendingHistory]) -> None:
        for item in pending:
            self._append_one(document_number, item)

    def _append_one(self, document_number: str, pending: PendingHistory) -> HistoryEntry:
        entry = HistoryEntry(
            document_number=document_number,
            sequence=len(self.history(document_number)) + 1,
            event=pending.event,
            recorded_at=pending.recorded_at,
            details=dict(pending.details),
        )
        self._append(entry)
        return entry


class InMemoryRegistry(DocumentRegistry):
    """Process-local registry; history tuples are replaced, never edited in place."""

    def __init__(self, records: Iterable[EWayBillRecord] = ()) -> None:
        super().__init__()
        self._records: Dict[str, EWayBillRecord] = {}
        self._history: Dict[str, Tuple[HistoryEntry, ...]] = {}
        self._consolidations: Tuple[ConsolidatedBill, ...] = ()
        self._consolidations_guard = threading.Lock()
        for record in records:
            self.insert(record)

    def find(self, document_number: str) -> Optional[EWayBillRecord]:
        return self._records.get(document_number)

    def history(self, document_number: str) -> Tuple[HistoryEntry, ...]:
        return self._history.get(document_number, ())

    def list_records(self) -> List[EWayBillRecord]:
        return list(self._records.values())

    def list_consolidations(self) -> List[ConsolidatedBill]:
        return list(self._consolidations)

    def record_consolidation(self, bill: ConsolidatedBill) -> None:
        with self._consolidations_guard:
            self._consolidations = self._consolidations + (bill,)

    def _store(self, record: EWayBillRecord) -> None:
        self._records[record.document_number] = record

    def _append(self, entry: HistoryEntry) -> None:
        current = self._history.get(entry.document_number, ())
        self._history[entry.document_number] = current + (entry,)


class WorkbookRegistry(DocumentRegistry):
    """Registry persisted to the sheets of an ``openpyxl`` workbook.

    Sheet access is serialized by a workbook lock because ``openpyxl`` is not
    thread-safe; per-document locks still serialize rule evaluation. Changes
    stay in memory until :func:`save_workbook` is called.
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__()
        self.workbook = workbook
        self._workbook_lock = threading.RLock()

    def find(self, document_number: str) -> Optional[EWayBillRecord]:
        with self._workbook_lock:
            row_index = locate_row(self.workbook, EWAY_BILLS_SHEET, "DocumentNumber", document_number)
            if row_index is None:
                return None
            sheet = self.workbook[EWAY_BILLS_SHEET]
            raw = [cell.value for cell in sheet[row_index]]
        return deserialize_record(raw)

    def history(self, document_number: str) -> Tuple[HistoryEntry, ...]:
        with self._workbook_lock:
            rows = [raw for raw in _iter_sheet(self.workbook, HISTORY_SHEET) if str(raw[0]) == document_number]
        return tuple(deserialize_history(raw) for raw in rows)

    def list_records(self) -> List[EWayBillRecord]:
        with self._workbook_lock:
            rows = list(_iter_sheet(self.workbook, EWAY_BILLS_SHEET))
        return [deserialize_record(raw) for raw in rows]

    def list_consolidations(self) -> List[ConsolidatedBill]:
        with self._workbook_lock:
            rows = list(_iter_sheet(self.workbook, CONSOLIDATIONS_SHEET))
        return [deserialize_consolidation(raw) for raw in rows]

    def record_consolidation(self, bill: ConsolidatedBill) -> None:
        with self._workbook_lock:
            self.workbook[CONSOLIDATIONS_SHEET].append(serialize_consolidation(bill))

    def _store(self, record: EWayBillRecord) -> None:
        values = serialize_record(record)
        with self._workbook_lock:
            sheet = self.workbook[EWAY_BILLS_SHEET]
            row_index = locate_row(self.workbook, EWAY_BILLS_SHEET, "DocumentNumber", record.document_number)
            if row_index is None:
                sheet.append(values)
                return
            for column_index, value in enumerate(values, start=1):
                sheet.cell(row=row_index, column=column_index, value=value)

    def _append(self, entry: HistoryEntry) -> None:
        with self._workbook_lock:
            self.workbook[HISTORY_SHEET].append(serialize_history(entry))


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the registry workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If one of the registry sheets is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook '{data_file}' is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment is not None else None


def _parse_iso(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def serialize_record(record: EWayBillRecord) -> list[object]:
    """Convert a record into the ``EWayBills`` column order."""

    cancellation = record.cancellation
    decision = record.recipient_decision
    part_b = record.last_vehicle_update
    return [
        record.document_number,
        record.status.value,
        _iso(record.created_at),
        _iso(record.valid_from),
        _iso(record.valid_until),
        record.vehicle_number,
        record.transporter_id,
        record.transporter_name,
        record.from_place,
        record.to_place,
        json.dumps(part_b.to_details()) if part_b is not None else None,
        cancellation.reason_code if cancellation else None,
        cancellation.remarks if cancellation else None,
        _iso(cancellation.cancelled_at) if cancellation else None,
        decision.decision.value if decision else None,
        _iso(decision.decided_at) if decision else None,
        decision.remarks if decision else None,
    ]


def deserialize_record(raw_row: Sequence[object]) -> EWayBillRecord:
    """Convert a raw ``EWayBills`` row into an :class:`EWayBillRecord`."""

    (
        document_number,
        status,
        created_at,
        valid_from,
        valid_until,
        vehicle_number,
        transporter_id,
        transporter_name,
        from_place,
        to_place,
        last_vehicle_update,
        cancel_reason_code,
        cancel_remarks,
        cancelled_at,
        recipient_decision,
        recipient_decided_at,
        recipient_remarks,
    ) = tuple(raw_row)[: len(SHEET_COLUMNS[EWAY_BILLS_SHEET])]

    cancellation = None
    if cancelled_at is not None:
        cancellation = Cancellation(
            reason_code=str(cancel_reason_code),
            remarks=str(cancel_remarks),
            cancelled_at=_parse_iso(cancelled_at),
        )
    decision = None
    if recipient_decision is not None:
        decision = RecipientDecision(
            decision=RecipientDecisionType(str(recipient_decision)),
            decided_at=_parse_iso(recipient_decided_at),
            remarks=_text(recipient_remarks),
        )
    part_b = None
    if last_vehicle_update:
        part_b = PartBUpdate.from_details(json.loads(str(last_vehicle_update)))

    return EWayBillRecord(
        document_number=str(document_number),
        status=EWayBillStatus(str(status)),
        created_at=_parse_iso(created_at),
        valid_from=_parse_iso(valid_from),
        valid_until=_parse_iso(valid_until),
        vehicle_number=_text(vehicle_number),
        transporter_id=_text(transporter_id),
        transporter_name=_text(transporter_name),
        from_place=_text(from_place),
        to_place=_text(to_place),
        last_vehicle_update=part_b,
        cancellation=cancellation,
        recipient_decision=decision,
    )


def serialize_history(entry: HistoryEntry) -> list[object]:
    return [
        entry.document_number,
        entry.sequence,
        entry.event.value,
        _iso(entry.recorded_at),
        json.dumps(dict(entry.details), sort_keys=True),
    ]


def deserialize_history(raw_row: Sequence[object]) -> HistoryEntry:
    document_number, sequence, event, recorded_at, details = tuple(raw_row)[:5]
    return HistoryEntry(
        document_number=str(document_number),
        sequence=int(sequence),
        event=HistoryEvent(str(event)),
        recorded_at=_parse_iso(recorded_at),
        details=json.loads(str(details)) if details else {},
    )


def serialize_consolidation(bill: ConsolidatedBill) -> list[object]:
    return [bill.consolidated_number, _iso(bill.created_at), ",".join(bill.members)]


def deserialize_consolidation(raw_row: Sequence[object]) -> ConsolidatedBill:
    consolidated_number, created_at, members = tuple(raw_row)[:3]
    return ConsolidatedBill(
        consolidated_number=str(consolidated_number),
        created_at=_parse_iso(created_at),
        members=tuple(member for member in str(members or "").split(",") if member),
    )
