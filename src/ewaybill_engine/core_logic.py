"""Business logic layer for the E-Way Bill engine.

This module contains the lifecycle rule engine. Every public operation
follows the same pipeline: evaluate all local preconditions, submit to the
compliance authority through the :class:`~ewaybill_engine.gateway.SubmissionGateway`,
and only then write the new record and its history through the
:class:`~ewaybill_engine.data_manager.DocumentRegistry`. A failed
precondition or a failed submission leaves local state untouched.

The ``validate_*`` functions hold the rules themselves. Operations run them
inside the registry's atomic check-and-mutate, and the ``check_*_eligibility``
previews run the very same functions without submitting or writing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_VALIDITY_TIME,
    EXPECTED_SCHEMA_VERSION,
    KM_PER_VALIDITY_DAY,
    KM_PER_VALIDITY_DAY_ODC,
    MIN_CANCEL_REMARKS_LENGTH,
    MIN_CURRENT_LOCATION_LENGTH,
    MIN_EXTEND_REASON_LENGTH,
    MIN_REJECT_REASON_LENGTH,
    SUB_SUPPLY_OTHERS,
    EWayBillStatus,
    HistoryEvent,
    Operation,
    RecipientDecisionType,
    SupplyType,
    TransportMode,
    VehicleType,
)
from .data_manager import (
    Cancellation,
    ConsolidatedBill,
    EWayBillRecord,
    HistoryEntry,
    PartBUpdate,
    PendingHistory,
    RecipientDecision,
)
from .gateway import GatewayError, ProviderConfirmation, SubmissionGateway, build_gateway
from .temporal import (
    DEFAULT_TIMEZONE,
    Clock,
    SystemClock,
    UnparseableDate,
    display_hours_remaining,
    format_remaining,
    hours_elapsed,
    parse_flexible_date,
    parse_portal_date,
    window_is_open,
)
from .validators import (
    has_min_length,
    is_blank,
    is_recognized_transport_mode,
    is_recognized_vehicle_type,
    is_valid_classification_code,
    is_valid_party_registration,
    is_valid_postal_code,
    is_valid_tax_registration_number,
    is_valid_vehicle_number,
    normalize_vehicle_number,
)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class RejectionCategory(str, Enum):
    """Distinguishable failure categories surfaced to callers."""

    INVALID_FORMAT = "InvalidFormat"
    INELIGIBLE_STATE = "IneligibleState"
    WINDOW_EXPIRED = "WindowExpired"
    MISSING_REQUIRED_INPUT = "MissingRequiredInput"
    GOODS_MOVEMENT_STARTED = "GoodsMovementStarted"
    REMOTE_SUBMISSION_FAILED = "RemoteSubmissionFailed"


@dataclass(frozen=True)
class Rejection:
    """Structured refusal returned by the eligibility previews."""

    category: RejectionCategory
    code: str
    message: str


class OperationRejected(Exception):
    """Base class for every refusal raised by the rule engine."""

    category = RejectionCategory.INELIGIBLE_STATE
    default_code = "REJECTED"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_rejection(self) -> Rejection:
        return Rejection(category=self.category, code=self.code, message=self.message)


class BusinessRuleViolation(OperationRejected):
    """Raised when a local precondition fails; nothing was submitted or written."""


class InvalidFormatError(BusinessRuleViolation):
    """An input failed a domain validator or a value comparison."""

    category = RejectionCategory.INVALID_FORMAT
    default_code = "INVALID_FORMAT"


class IneligibleStateError(BusinessRuleViolation):
    """The document is not in a state that permits the operation."""

    category = RejectionCategory.INELIGIBLE_STATE
    default_code = "NOT_ACTIVE"


class DocumentNotFoundError(IneligibleStateError):
    default_code = "DOCUMENT_NOT_FOUND"


class WindowExpiredError(BusinessRuleViolation):
    """A statutory time window has closed or a time ceiling was exceeded."""

    category = RejectionCategory.WINDOW_EXPIRED
    default_code = "WINDOW_EXPIRED"


class MissingRequiredInputError(BusinessRuleViolation):
    """A mandatory input is absent or too short."""

    category = RejectionCategory.MISSING_REQUIRED_INPUT
    default_code = "MISSING_REQUIRED_INPUT"


class GoodsMovementStartedError(MissingRequiredInputError):
    """Vehicle details exist, so the goods are already moving."""

    category = RejectionCategory.GOODS_MOVEMENT_STARTED
    default_code = "GOODS_MOVEMENT_STARTED"


class RemoteSubmissionFailed(OperationRejected):
    """The compliance authority rejected the submission or could not be reached."""

    category = RejectionCategory.REMOTE_SUBMISSION_FAILED
    default_code = "REMOTE_SUBMISSION_FAILED"


# ---------------------------------------------------------------------------
# Runtime context and commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Collaborators shared by every rule engine call."""

    registry: data_manager.DocumentRegistry
    gateway: SubmissionGateway
    clock: Clock
    rules: data_manager.RuleSettings = field(default_factory=data_manager.RuleSettings)
    settings: Optional[data_manager.ConfigSettings] = None
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)

    @property
    def timezone(self) -> tzinfo:
        return self.settings.timezone if self.settings is not None else DEFAULT_TIMEZONE


@dataclass(frozen=True)
class ItemLine:
    """One goods line of a generation request."""

    product_name: str
    hsn_code: str
    quantity: Decimal
    taxable_amount: Decimal
    unit: str = "NOS"


@dataclass(frozen=True)
class GenerateCommand:
    """User intent for registering a newly generated E-Way Bill."""

    supply_type: Union[SupplyType, str]
    document_type: str
    document_number: str
    document_date: str
    from_gstin: str
    from_pincode: str
    to_gstin: str
    to_pincode: str
    items: Tuple[ItemLine, ...]
    trans_mode: Union[TransportMode, str]
    distance: Union[Decimal, int, str]
    sub_supply_type: Optional[str] = None
    sub_supply_desc: Optional[str] = None
    from_place: Optional[str] = None
    to_place: Optional[str] = None
    vehicle_number: Optional[str] = None
    vehicle_type: Optional[Union[VehicleType, str]] = None
    transporter_id: Optional[str] = None
    transporter_name: Optional[str] = None
    trans_doc_no: Optional[str] = None
    trans_doc_date: Optional[str] = None


@dataclass(frozen=True)
class CancelCommand:
    """User intent for cancelling an E-Way Bill."""

    document_number: str
    reason_code: str
    remarks: str


@dataclass(frozen=True)
class ChangeTransporterCommand:
    """User intent for reassigning the transporter."""

    document_number: str
    transporter_id: str
    transporter_name: Optional[str] = None


@dataclass(frozen=True)
class ExtendValidityCommand:
    """User intent for pushing ``valid_until`` further out.

    ``new_valid_until`` accepts an aware or naive datetime, or text in
    ``dd/MM/yyyy[ HH:mm]`` or ISO-8601 form. Date-only text ends at 23:59.
    """

    document_number: str
    new_valid_until: Union[datetime, str]
    reason: str
    current_location: str


@dataclass(frozen=True)
class UpdatePartBCommand:
    """User intent for recording transport details (Part-B)."""

    document_number: str
    trans_mode: Union[TransportMode, str]
    distance: Union[Decimal, int, str]
    vehicle_number: Optional[str] = None
    transporter_id: Optional[str] = None
    transporter_name: Optional[str] = None
    vehicle_type: Optional[Union[VehicleType, str]] = None
    trans_doc_no: Optional[str] = None
    trans_doc_date: Optional[str] = None


@dataclass(frozen=True)
class ConsolidateCommand:
    """User intent for grouping active bills under one consolidated bill."""

    document_numbers: Tuple[str, ...]


@dataclass(frozen=True)
class AcceptCommand:
    """Recipient's acceptance of a bill generated against their GSTIN."""

    document_number: str
    remarks: Optional[str] = None


@dataclass(frozen=True)
class RejectCommand:
    """Recipient's rejection of a bill generated against their GSTIN."""

    document_number: str
    reason: str


@dataclass(frozen=True)
class CancellationWindow:
    """Remaining time in a record's cancellation window."""

    hours_remaining: float
    is_open: bool

    @property
    def label(self) -> str:
        return format_remaining(self.hours_remaining)


Check = Callable[[EWayBillRecord], None]
Mutation = Callable[[EWayBillRecord], Tuple[EWayBillRecord, Sequence[PendingHistory]]]


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Clock] = None,
    gateway: Optional[SubmissionGateway] = None,
) -> RuntimeContext:
    """Load configuration and a workbook-backed registry for the engine.

    The helper resolves ``config.ini``, parses settings, opens the registry
    workbook and wires the gateway named by ``[Gateway] Mode``. The sandbox
    gateway continues numbering after the bills already stored so references
    stay unique across runs.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Clock | None): Clock override; defaults to a
            :class:`~ewaybill_engine.temporal.SystemClock` in the configured
            timezone.
        gateway (SubmissionGateway | None): Gateway override.

    Returns:
        RuntimeContext: Fully populated context ready for the operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
        ValueError: When the gateway mode is not supported.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    registry = data_manager.WorkbookRegistry(workbook)
    if gateway is None:
        issued = len(registry.list_records()) + len(registry.list_consolidations())
        gateway = build_gateway(
            settings.gateway_mode,
            reference_prefix=settings.reference_prefix,
            start=issued + 1,
        )
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        registry=registry,
        gateway=gateway,
        clock=clock or SystemClock(settings.timezone),
        rules=settings.rules,
        settings=settings,
        workbook=workbook,
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Contexts built without settings (in-memory registries) have no workbook
    schema and pass unconditionally.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings is None:
        return
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Raises:
        RuntimeError: If the context is not backed by a workbook.
    """
    if context.workbook is None or context.settings is None:
        raise RuntimeError("Runtime context is not backed by a workbook")
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and the
            same gateway, clock and rules.

    Raises:
        RuntimeError: If the context is not backed by a workbook.
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    if context.settings is None:
        raise RuntimeError("Runtime context is not backed by a workbook")
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return replace(context, registry=data_manager.WorkbookRegistry(workbook), workbook=workbook)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def effective_status(record: EWayBillRecord, now: datetime) -> EWayBillStatus:
    """Return the status the rules act on.

    An ``ACTIVE`` record whose ``valid_until`` has passed counts as
    ``EXPIRED`` even before :func:`expire_overdue` persists the transition.
    """
    if record.status == EWayBillStatus.ACTIVE and now > record.valid_until:
        return EWayBillStatus.EXPIRED
    return record.status


def _require_active(record: EWayBillRecord, now: datetime, action: str) -> None:
    status = effective_status(record, now)
    if status == EWayBillStatus.ACTIVE:
        return
    if status == EWayBillStatus.EXPIRED:
        raise IneligibleStateError(
            f"E-Way Bill {record.document_number} has expired. Only ACTIVE E-Way Bills can be {action}.",
            code="DOCUMENT_EXPIRED",
        )
    raise IneligibleStateError(
        f"E-Way Bill {record.document_number} is {status.value}. Only ACTIVE E-Way Bills can be {action}.",
        code="NOT_ACTIVE",
    )


def _require_generated_in_past(record: EWayBillRecord, now: datetime) -> float:
    elapsed = hours_elapsed(record.created_at, now)
    if elapsed < 0:
        raise IneligibleStateError(
            f"E-Way Bill {record.document_number} has a generation time in the future",
            code="GENERATION_TIME_IN_FUTURE",
        )
    return elapsed


def _coerce_distance(value: Any) -> Decimal:
    try:
        distance = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidFormatError(f"Invalid distance: {value!r}", code="INVALID_DISTANCE") from exc
    if not distance.is_finite():
        raise InvalidFormatError(f"Invalid distance: {value!r}", code="INVALID_DISTANCE")
    if distance < 0:
        raise InvalidFormatError(
            "Distance must be greater than or equal to 0", code="INVALID_DISTANCE"
        )
    return distance


def _require_transport_mode(value: Any) -> str:
    result = is_recognized_transport_mode(value)
    if not result:
        raise InvalidFormatError(result.reason, code="INVALID_TRANSPORT_MODE")
    return TransportMode(value).value


def _optional_text(value: Optional[str]) -> Optional[str]:
    return None if is_blank(value) else value.strip()


def _load_record(context: RuntimeContext, document_number: str) -> EWayBillRecord:
    record = context.registry.find(document_number)
    if record is None:
        raise DocumentNotFoundError(f"E-Way Bill not found: {document_number}")
    return record


def _submit(
    context: RuntimeContext,
    operation: Operation,
    document_number: Optional[str],
    payload: Mapping[str, Any],
) -> ProviderConfirmation:
    """Submit to the gateway, converting any transport failure into :class:`RemoteSubmissionFailed`."""
    try:
        confirmation = context.gateway.submit(operation, document_number, payload)
    except GatewayError as exc:
        log.error("%s rejected by provider for '%s': %s", operation.value, document_number, exc.message)
        raise RemoteSubmissionFailed(exc.message, code="PROVIDER_REJECTED") from exc
    except TimeoutError as exc:
        log.error("%s timed out for '%s'", operation.value, document_number)
        raise RemoteSubmissionFailed(
            f"{operation.value} submission timed out", code="PROVIDER_TIMEOUT"
        ) from exc
    except OSError as exc:
        log.error("%s could not reach the provider for '%s': %s", operation.value, document_number, exc)
        raise RemoteSubmissionFailed(
            f"{operation.value} submission failed: {exc}", code="PROVIDER_UNREACHABLE"
        ) from exc
    except Exception as exc:
        log.error("%s failed for '%s': %r", operation.value, document_number, exc)
        raise RemoteSubmissionFailed(
            f"{operation.value} submission failed: {exc}", code="PROVIDER_ERROR"
        ) from exc
    log.debug("Provider confirmed %s for '%s': %s", operation.value, document_number, confirmation.message)
    return confirmation


def _apply(
    context: RuntimeContext,
    operation: Operation,
    document_number: str,
    check: Check,
    mutate: Mutation,
) -> EWayBillRecord:
    try:
        _load_record(context, document_number)
        return context.registry.apply_if_eligible(document_number, check, mutate)
    except BusinessRuleViolation as exc:
        log.warning("%s rejected for '%s': %s [%s]", operation.value, document_number, exc.message, exc.code)
        raise


def _preview(
    context: RuntimeContext,
    document_number: str,
    validate: Callable[[EWayBillRecord, datetime], Any],
) -> Optional[Rejection]:
    now = context.clock.now()
    try:
        validate(_load_record(context, document_number), now)
    except BusinessRuleViolation as exc:
        return exc.to_rejection()
    return None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_record(context: RuntimeContext, document_number: str) -> EWayBillRecord:
    """Return a stored record.

    Raises:
        DocumentNotFoundError: If no such document exists.
    """
    return _load_record(context, document_number)


def list_records(
    context: RuntimeContext,
    *,
    status: Optional[EWayBillStatus] = None,
) -> List[EWayBillRecord]:
    """Return every record, optionally filtered by effective status."""
    records = context.registry.list_records()
    if status is None:
        return records
    now = context.clock.now()
    return [record for record in records if effective_status(record, now) == status]


def get_history(context: RuntimeContext, document_number: str) -> Tuple[HistoryEntry, ...]:
    _load_record(context, document_number)
    return context.registry.history(document_number)


def part_b_history(context: RuntimeContext, document_number: str) -> List[PartBUpdate]:
    """Return every Part-B update applied to the document, oldest first."""
    return [
        PartBUpdate.from_details(entry.details)
        for entry in get_history(context, document_number)
        if entry.event == HistoryEvent.PART_B
    ]


def list_consolidations(context: RuntimeContext) -> List[ConsolidatedBill]:
    return context.registry.list_consolidations()


def has_transporter_access(record: EWayBillRecord, transporter_id: str) -> bool:
    """Return ``True`` when ``transporter_id`` is the record's current transporter."""
    return not is_blank(transporter_id) and record.transporter_id == transporter_id.strip()


def cancellation_window(context: RuntimeContext, record: EWayBillRecord) -> CancellationWindow:
    """Report how much of the cancellation window is left for ``record``."""
    now = context.clock.now()
    bound = context.rules.cancellation_window_hours
    return CancellationWindow(
        hours_remaining=display_hours_remaining(record.created_at, bound, now),
        is_open=window_is_open(record.created_at, bound, now),
    )


def calculate_validity(valid_from: datetime, distance: Decimal, vehicle_type: Optional[str] = None) -> datetime:
    """Compute the statutory validity end for a journey of ``distance`` km.

    One day is granted for every 200 km or part thereof (20 km for
    over-dimensional cargo), with a minimum of one day. A day ends at 23:59 of
    the day following ``valid_from``.
    """
    per_day = KM_PER_VALIDITY_DAY_ODC if vehicle_type == VehicleType.OVER_DIMENSIONAL_CARGO.value else KM_PER_VALIDITY_DAY
    days = max(1, math.ceil(distance / per_day))
    last_day = valid_from.date() + timedelta(days=days)
    return datetime.combine(last_day, DEFAULT_VALIDITY_TIME, tzinfo=valid_from.tzinfo)


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------


def validate_generation(command: GenerateCommand, *, now: datetime) -> Decimal:
    """Validate a generation request the way the provider does.

    Returns:
        Decimal: The parsed journey distance.

    Raises:
        InvalidFormatError: If a registration, pincode, date, HSN code,
            transport code or vehicle number is malformed.
        MissingRequiredInputError: If the document number, the items, or the
            sub-supply description for sub-supply type "Others" is missing.
    """
    try:
        SupplyType(command.supply_type)
    except ValueError as exc:
        raise InvalidFormatError(
            "Supply type must be 'O' (Outward) or 'I' (Inward)", code="INVALID_SUPPLY_TYPE"
        ) from exc
    if is_blank(command.document_number):
        raise MissingRequiredInputError("Document number is required", code="DOCUMENT_NUMBER_REQUIRED")

    for label, gstin in (("fromGstin", command.from_gstin), ("toGstin", command.to_gstin)):
        result = is_valid_party_registration(gstin, command.supply_type)
        if not result:
            raise InvalidFormatError(f"Invalid {label}: {result.reason}", code="INVALID_GSTIN")

    for label, pincode in (("fromPincode", command.from_pincode), ("toPincode", command.to_pincode)):
        result = is_valid_postal_code(pincode)
        if not result:
            raise InvalidFormatError(f"Invalid {label}: {result.reason}", code="INVALID_PINCODE")

    try:
        document_date = parse_portal_date(command.document_date)
    except UnparseableDate as exc:
        raise InvalidFormatError(str(exc), code="INVALID_DATE") from exc
    if document_date > now.date():
        raise InvalidFormatError("Document date cannot be in the future", code="DOCUMENT_DATE_IN_FUTURE")

    distance = _coerce_distance(command.distance)
    _require_transport_mode(command.trans_mode)

    if not command.items:
        raise MissingRequiredInputError("At least one item is required", code="ITEMS_REQUIRED")
    for index, item in enumerate(command.items, start=1):
        if not is_valid_classification_code(item.hsn_code):
            raise InvalidFormatError(f"Invalid HSN code in item {index}", code="INVALID_HSN_CODE")

    if command.sub_supply_type == SUB_SUPPLY_OTHERS and is_blank(command.sub_supply_desc):
        raise MissingRequiredInputError(
            "Sub supply description is required when sub supply type is Others",
            code="SUB_SUPPLY_DESCRIPTION_REQUIRED",
        )

    _validate_optional_transport(
        vehicle_number=command.vehicle_number,
        vehicle_type=command.vehicle_type,
        transporter_id=command.transporter_id,
        trans_doc_date=command.trans_doc_date,
        today=now.date(),
    )
    return distance


def generate(context: RuntimeContext, command: GenerateCommand) -> EWayBillRecord:
    """Submit a generation request and register the resulting ``ACTIVE`` record.

    The provider's bill number becomes the document number. Validity comes
    from the provider when it reports one, otherwise from
    :func:`calculate_validity`. Supplying vehicle or transport-document
    details seeds the first Part-B entry.

    Raises:
        BusinessRuleViolation: If the request fails validation.
        RemoteSubmissionFailed: If the provider rejects the request or issues
            no bill number.
    """
    now = context.clock.now()
    try:
        distance = validate_generation(command, now=now)
    except BusinessRuleViolation as exc:
        log.warning("GENERATE rejected for document '%s': %s [%s]", command.document_number, exc.message, exc.code)
        raise

    payload = build_generation_payload(command, distance)
    confirmation = _submit(context, Operation.GENERATE, None, payload)
    if not confirmation.reference:
        log.error("Provider confirmed GENERATE without an E-Way Bill number")
        raise RemoteSubmissionFailed("Provider did not return an E-Way Bill number", code="MISSING_REFERENCE")

    vehicle_type = None if is_blank(command.vehicle_type) else VehicleType(command.vehicle_type).value
    valid_until = confirmation.valid_until or calculate_validity(now, distance, vehicle_type)
    vehicle_number = None if is_blank(command.vehicle_number) else normalize_vehicle_number(command.vehicle_number)

    part_b = None
    if vehicle_number or (not is_blank(command.trans_doc_no) and not is_blank(command.trans_doc_date)):
        part_b = PartBUpdate(
            trans_mode=TransportMode(command.trans_mode).value,
            distance=distance,
            updated_at=now,
            vehicle_number=vehicle_number,
            transporter_id=_optional_text(command.transporter_id),
            transporter_name=_optional_text(command.transporter_name),
            vehicle_type=vehicle_type,
            trans_doc_no=_optional_text(command.trans_doc_no),
            trans_doc_date=_optional_text(command.trans_doc_date),
        )

    record = EWayBillRecord(
        document_number=confirmation.reference,
        status=EWayBillStatus.ACTIVE,
        created_at=now,
        valid_from=now,
        valid_until=valid_until,
        vehicle_number=vehicle_number,
        transporter_id=_optional_text(command.transporter_id),
        transporter_name=_optional_text(command.transporter_name),
        from_place=_optional_text(command.from_place),
        to_place=_optional_text(command.to_place),
        last_vehicle_update=part_b,
    )
    history = [
        PendingHistory(
            HistoryEvent.GENERATED,
            now,
            {
                "document_type": command.document_type,
                "document_number": command.document_number,
                "document_date": command.document_date,
                "distance": str(distance),
                "valid_until": valid_until.isoformat(),
                "provider_message": confirmation.message,
            },
        )
    ]
    if part_b is not None:
        history.append(PendingHistory(HistoryEvent.PART_B, now, part_b.to_details()))

    context.registry.insert(record, history=history)
    log.info(
        "Generated E-Way Bill '%s' for document '%s' (valid until %s)",
        record.document_number,
        command.document_number,
        valid_until.isoformat(),
    )
    return record


def build_generation_payload(command: GenerateCommand, distance: Decimal) -> Dict[str, Any]:
    """Arrange a generation request in the provider's field names."""
    return {
        "supplyType": SupplyType(command.supply_type).value,
        "subSupplyType": command.sub_supply_type,
        "subSupplyDesc": command.sub_supply_desc,
        "docType": command.document_type,
        "docNo": command.document_number,
        "docDate": command.document_date,
        "fromGstin": command.from_gstin,
        "fromPlace": command.from_place,
        "fromPincode": command.from_pincode,
        "toGstin": command.to_gstin,
        "toPlace": command.to_place,
        "toPincode": command.to_pincode,
        "itemList": [
            {
                "productName": item.product_name,
                "hsnCode": item.hsn_code,
                "quantity": str(item.quantity),
                "qtyUnit": item.unit,
                "taxableAmount": str(item.taxable_amount),
            }
            for item in command.items
        ],
        "totalValue": str(sum((item.taxable_amount for item in command.items), Decimal("0"))),
        "transMode": TransportMode(command.trans_mode).value,
        "distance": str(distance),
        "transporterId": command.transporter_id,
        "transporterName": command.transporter_name,
        "vehicleNo": normalize_vehicle_number(command.vehicle_number) or None,
        "vehicleType": None if is_blank(command.vehicle_type) else VehicleType(command.vehicle_type).value,
        "transDocNo": command.trans_doc_no,
        "transDocDate": command.trans_doc_date,
    }


def check_generate_eligibility(context: RuntimeContext, command: GenerateCommand) -> Optional[Rejection]:
    try:
        validate_generation(command, now=context.clock.now())
    except BusinessRuleViolation as exc:
        return exc.to_rejection()
    return None


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


def validate_cancellation(
    record: EWayBillRecord,
    command: CancelCommand,
    *,
    now: datetime,
    rules: data_manager.RuleSettings,
) -> None:
    """Evaluate every cancellation precondition in order.

    Raises:
        IneligibleStateError: If the record is not ``ACTIVE`` or its
            generation time lies in the future.
        WindowExpiredError: If more than the cancellation window has elapsed
            since ``created_at``.
        GoodsMovementStartedError: If a vehicle number is already recorded.
        MissingRequiredInputError: If the reason code is missing or the
            remarks are shorter than 10 characters.
    """
    _require_active(record, now, "cancelled")
    elapsed = _require_generated_in_past(record, now)
    window = rules.cancellation_window_hours
    if elapsed > window:
        raise WindowExpiredError(
            f"E-Way Bill cancellation is allowed only within {window:g} hours of generation. "
            f"The {window:g}-hour period has expired.",
            code="CANCELLATION_WINDOW_EXPIRED",
        )
    if not is_blank(record.vehicle_number):
        raise GoodsMovementStartedError(
            "Goods movement has started. E-Way Bill cannot be cancelled once vehicle details are updated."
        )
    if is_blank(command.reason_code):
        raise MissingRequiredInputError("Cancellation reason is mandatory", code="CANCEL_REASON_REQUIRED")
    remarks = has_min_length(command.remarks, MIN_CANCEL_REMARKS_LENGTH, label="Cancellation remarks")
    if not remarks:
        raise MissingRequiredInputError(remarks.reason, code="CANCEL_REMARKS_TOO_SHORT")


def cancel(context: RuntimeContext, command: CancelCommand) -> EWayBillRecord:
    """Cancel an ``ACTIVE`` E-Way Bill within its cancellation window.

    Args:
        context (RuntimeContext): Registry, gateway, clock and rules.
        command (CancelCommand): Document number, reason code and remarks.

    Returns:
        EWayBillRecord: The ``CANCELLED`` record.

    Raises:
        BusinessRuleViolation: If a precondition fails (see
            :func:`validate_cancellation`); nothing is submitted.
        DocumentNotFoundError: If the document does not exist.
        RemoteSubmissionFailed: If the provider refuses; the record stays
            ``ACTIVE``.
    """
    now = context.clock.now()

    def check(record: EWayBillRecord) -> None:
        validate_cancellation(record, command, now=now, rules=context.rules)

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        remarks = command.remarks.strip()
        confirmation = _submit(
            context,
            Operation.CANCEL,
            record.document_number,
            {"ewayBillNo": record.document_number, "cancelReasonCode": command.reason_code, "cancelRemarks": remarks},
        )
        cancellation = Cancellation(reason_code=command.reason_code, remarks=remarks, cancelled_at=now)
        updated = replace(record, status=EWayBillStatus.CANCELLED, cancellation=cancellation)
        details = {"reason_code": command.reason_code, "remarks": remarks, "provider_message": confirmation.message}
        return updated, [PendingHistory(HistoryEvent.CANCELLED, now, details)]

    updated = _apply(context, Operation.CANCEL, command.document_number, check, mutate)
    log.info("Cancelled E-Way Bill '%s' (reason=%s)", updated.document_number, command.reason_code)
    return updated


def check_cancel_eligibility(context: RuntimeContext, command: CancelCommand) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_cancellation(record, command, now=now, rules=context.rules),
    )


# ---------------------------------------------------------------------------
# Change transporter
# ---------------------------------------------------------------------------


def validate_transporter_change(record: EWayBillRecord, command: ChangeTransporterCommand, *, now: datetime) -> str:
    """Return the normalized new transporter id once every precondition passes."""
    _require_active(record, now, "reassigned")
    if is_blank(command.transporter_id):
        raise MissingRequiredInputError("Transporter ID is mandatory", code="TRANSPORTER_ID_REQUIRED")
    transporter_id = command.transporter_id.strip()
    result = is_valid_tax_registration_number(transporter_id)
    if not result:
        raise InvalidFormatError(result.reason, code="INVALID_TRANSPORTER_ID")
    if record.transporter_id == transporter_id:
        raise InvalidFormatError(
            "New transporter must be different from the current transporter", code="SAME_TRANSPORTER"
        )
    return transporter_id


def change_transporter(context: RuntimeContext, command: ChangeTransporterCommand) -> EWayBillRecord:
    """Reassign the bill to a new transporter.

    The id and name are replaced together in one write, so the previous
    transporter loses access (:func:`has_transporter_access`) the moment the
    call returns.
    """
    now = context.clock.now()

    def check(record: EWayBillRecord) -> None:
        validate_transporter_change(record, command, now=now)

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        transporter_id = command.transporter_id.strip()
        transporter_name = _optional_text(command.transporter_name)
        _submit(
            context,
            Operation.CHANGE_TRANSPORTER,
            record.document_number,
            {"ewayBillNo": record.document_number, "transporterId": transporter_id, "transporterName": transporter_name},
        )
        updated = replace(record, transporter_id=transporter_id, transporter_name=transporter_name)
        details = {
            "previous_transporter_id": record.transporter_id,
            "previous_transporter_name": record.transporter_name,
            "transporter_id": transporter_id,
            "transporter_name": transporter_name,
        }
        return updated, [PendingHistory(HistoryEvent.TRANSPORTER_CHANGED, now, details)]

    updated = _apply(context, Operation.CHANGE_TRANSPORTER, command.document_number, check, mutate)
    log.info("Transporter of E-Way Bill '%s' changed to '%s'", updated.document_number, updated.transporter_id)
    return updated


def check_change_transporter_eligibility(
    context: RuntimeContext, command: ChangeTransporterCommand
) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_transporter_change(record, command, now=now),
    )


# ---------------------------------------------------------------------------
# Extend validity
# ---------------------------------------------------------------------------


def resolve_new_validity(value: Union[datetime, str], tz: tzinfo) -> datetime:
    """Turn the requested validity into an aware datetime.

    Raises:
        InvalidFormatError: If ``value`` cannot be parsed.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    try:
        return parse_flexible_date(value, default_time=DEFAULT_VALIDITY_TIME, tz=tz)
    except UnparseableDate as exc:
        raise InvalidFormatError(str(exc), code="INVALID_DATE") from exc


def validate_validity_extension(
    record: EWayBillRecord,
    command: ExtendValidityCommand,
    *,
    now: datetime,
    rules: data_manager.RuleSettings,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> datetime:
    """Evaluate every extension precondition and return the new validity.

    The ceiling is anchored to the request time: the new validity may not
    lie more than ``rules.extension_ceiling_hours`` after ``now``.

    Raises:
        IneligibleStateError: If the record is not ``ACTIVE``.
        MissingRequiredInputError: If the reason or location is too short.
        InvalidFormatError: If the date is unparseable, not in the future, or
            not after the current validity.
        WindowExpiredError: If the date exceeds the extension ceiling.
    """
    _require_active(record, now, "extended")
    reason = has_min_length(command.reason, MIN_EXTEND_REASON_LENGTH, label="Extension reason")
    if not reason:
        raise MissingRequiredInputError(reason.reason, code="EXTENSION_REASON_TOO_SHORT")
    location = has_min_length(command.current_location, MIN_CURRENT_LOCATION_LENGTH, label="Current location")
    if not location:
        raise MissingRequiredInputError(location.reason, code="CURRENT_LOCATION_TOO_SHORT")

    new_valid_until = resolve_new_validity(command.new_valid_until, tz)
    if new_valid_until <= now:
        raise InvalidFormatError("New validity date must be in the future", code="VALIDITY_NOT_IN_FUTURE")
    if new_valid_until <= record.valid_until:
        raise InvalidFormatError(
            "New validity date must be after current validity date", code="VALIDITY_NOT_EXTENDED"
        )
    ceiling = rules.extension_ceiling_hours
    if new_valid_until > now + timedelta(hours=ceiling):
        raise WindowExpiredError(
            f"E-Way Bill validity can be extended only up to {ceiling:g} hours from current time "
            "as per Government rules",
            code="EXTENSION_CEILING_EXCEEDED",
        )
    return new_valid_until


def extend_validity(context: RuntimeContext, command: ExtendValidityCommand) -> EWayBillRecord:
    """Push ``valid_until`` forward; successive extensions are strictly increasing."""
    now = context.clock.now()

    def check(record: EWayBillRecord) -> None:
        validate_validity_extension(record, command, now=now, rules=context.rules, tz=context.timezone)

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        new_valid_until = resolve_new_validity(command.new_valid_until, context.timezone)
        _submit(
            context,
            Operation.EXTEND_VALIDITY,
            record.document_number,
            {
                "ewayBillNo": record.document_number,
                "extendReason": command.reason.strip(),
                "currentLocation": command.current_location.strip(),
                "newValidUntil": new_valid_until.isoformat(),
            },
        )
        details = {
            "previous_valid_until": record.valid_until.isoformat(),
            "valid_until": new_valid_until.isoformat(),
            "reason": command.reason.strip(),
            "current_location": command.current_location.strip(),
        }
        updated = replace(record, valid_until=new_valid_until)
        return updated, [PendingHistory(HistoryEvent.VALIDITY_EXTENDED, now, details)]

    updated = _apply(context, Operation.EXTEND_VALIDITY, command.document_number, check, mutate)
    log.info("Extended E-Way Bill '%s' until %s", updated.document_number, updated.valid_until.isoformat())
    return updated


def check_extend_validity_eligibility(context: RuntimeContext, command: ExtendValidityCommand) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_validity_extension(
            record, command, now=now, rules=context.rules, tz=context.timezone
        ),
    )


# ---------------------------------------------------------------------------
# Part-B
# ---------------------------------------------------------------------------


def _validate_optional_transport(
    *,
    vehicle_number: Optional[str],
    vehicle_type: Optional[str],
    transporter_id: Optional[str],
    trans_doc_date: Optional[str],
    today: date,
) -> None:
    if not is_blank(vehicle_number):
        result = is_valid_vehicle_number(vehicle_number)
        if not result:
            raise InvalidFormatError(result.reason, code="INVALID_VEHICLE_NUMBER")
    if not is_blank(vehicle_type):
        result = is_recognized_vehicle_type(vehicle_type)
        if not result:
            raise InvalidFormatError(result.reason, code="INVALID_VEHICLE_TYPE")
    if not is_blank(transporter_id):
        result = is_valid_tax_registration_number(transporter_id.strip())
        if not result:
            raise InvalidFormatError(result.reason, code="INVALID_TRANSPORTER_ID")
    if not is_blank(trans_doc_date):
        try:
            doc_date = parse_portal_date(trans_doc_date)
        except UnparseableDate as exc:
            raise InvalidFormatError(str(exc), code="INVALID_DATE") from exc
        if doc_date > today:
            raise InvalidFormatError(
                "Transport document date cannot be in the future", code="TRANS_DOC_DATE_IN_FUTURE"
            )


def validate_part_b_update(record: EWayBillRecord, command: UpdatePartBCommand, *, now: datetime) -> PartBUpdate:
    """Evaluate every Part-B precondition and return the update to record.

    A vehicle number, a transport document number with its date, or both
    must be supplied.

    Raises:
        IneligibleStateError: If the record is not ``ACTIVE``.
        InvalidFormatError: If the distance, transport mode, vehicle number,
            vehicle type, transporter id or document date is malformed.
        MissingRequiredInputError: If neither a vehicle nor a transport
            document reference is supplied.
    """
    _require_active(record, now, "updated")
    distance = _coerce_distance(command.distance)
    trans_mode = _require_transport_mode(command.trans_mode)

    has_vehicle = not is_blank(command.vehicle_number)
    has_document = not is_blank(command.trans_doc_no) and not is_blank(command.trans_doc_date)
    if not has_vehicle and not has_document:
        raise MissingRequiredInputError(
            "Either Vehicle Number OR Transport Document No + Date must be provided",
            code="VEHICLE_OR_DOCUMENT_REQUIRED",
        )
    _validate_optional_transport(
        vehicle_number=command.vehicle_number,
        vehicle_type=command.vehicle_type,
        transporter_id=command.transporter_id,
        trans_doc_date=command.trans_doc_date,
        today=now.date(),
    )

    return PartBUpdate(
        trans_mode=trans_mode,
        distance=distance,
        updated_at=now,
        vehicle_number=normalize_vehicle_number(command.vehicle_number) if has_vehicle else None,
        transporter_id=_optional_text(command.transporter_id),
        transporter_name=_optional_text(command.transporter_name),
        vehicle_type=None if is_blank(command.vehicle_type) else VehicleType(command.vehicle_type).value,
        trans_doc_no=_optional_text(command.trans_doc_no),
        trans_doc_date=_optional_text(command.trans_doc_date),
    )


def update_part_b(context: RuntimeContext, command: UpdatePartBCommand) -> EWayBillRecord:
    """Record transport details; may be applied any number of times.

    Each application appends a ``PART_B`` history entry and becomes the
    record's ``last_vehicle_update``. ``vehicle_number`` tracks the latest
    vehicle supplied; an update carrying only a transport document keeps the
    previous vehicle. Transporter fields in the update are kept with the
    entry; the record's transporter changes only through
    :func:`change_transporter`.
    """
    now = context.clock.now()

    def check(record: EWayBillRecord) -> None:
        validate_part_b_update(record, command, now=now)

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        update = validate_part_b_update(record, command, now=now)
        payload = {
            "ewayBillNo": record.document_number,
            "vehicleNo": update.vehicle_number,
            "transMode": update.trans_mode,
            "distance": str(update.distance),
            "transporterId": update.transporter_id,
            "transporterName": update.transporter_name,
            "vehicleType": update.vehicle_type,
            "transDocNo": update.trans_doc_no,
            "transDocDate": update.trans_doc_date,
        }
        _submit(context, Operation.PART_B, record.document_number, payload)
        updated = replace(
            record,
            last_vehicle_update=update,
            vehicle_number=update.vehicle_number or record.vehicle_number,
        )
        return updated, [PendingHistory(HistoryEvent.PART_B, now, update.to_details())]

    updated = _apply(context, Operation.PART_B, command.document_number, check, mutate)
    log.info(
        "Updated Part-B of E-Way Bill '%s' (vehicle=%s)",
        updated.document_number,
        updated.vehicle_number or "-",
    )
    return updated


def check_update_part_b_eligibility(context: RuntimeContext, command: UpdatePartBCommand) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_part_b_update(record, command, now=now),
    )


# ---------------------------------------------------------------------------
# Consolidate
# ---------------------------------------------------------------------------


def _unique_numbers(document_numbers: Sequence[str]) -> Tuple[str, ...]:
    if any(is_blank(number) for number in document_numbers):
        raise MissingRequiredInputError(
            "E-Way Bill number is required for every consolidated member",
            code="BLANK_MEMBER",
        )
    return tuple(dict.fromkeys(number.strip() for number in document_numbers))


def validate_consolidation(
    document_numbers: Sequence[str],
    records: Mapping[str, Optional[EWayBillRecord]],
    *,
    now: datetime,
) -> None:
    """Check that at least two distinct, existing, ``ACTIVE`` bills are grouped.

    Member state is checked before the member count so a cancelled bill is
    always refused as ineligible, whatever it is grouped with.

    Raises:
        IneligibleStateError: Listing every member that is missing or not
            ``ACTIVE``.
        MissingRequiredInputError: If fewer than two distinct bills remain.
    """
    offenders = []
    for number in document_numbers:
        record = records.get(number)
        if record is None:
            offenders.append(f"{number} (not found)")
            continue
        status = effective_status(record, now)
        if status != EWayBillStatus.ACTIVE:
            offenders.append(f"{number} ({status.value})")
    if offenders:
        raise IneligibleStateError(
            f"Only Active E-Way Bills can be consolidated. Found inactive: {', '.join(offenders)}",
            code="INACTIVE_MEMBERS",
        )
    if len(document_numbers) < 2:
        raise MissingRequiredInputError(
            "At least 2 Active E-Way Bills are required to generate Consolidated E-Way Bill",
            code="INSUFFICIENT_MEMBERS",
        )


def consolidate(context: RuntimeContext, command: ConsolidateCommand) -> ConsolidatedBill:
    """Group active bills under a new consolidated bill.

    Member locks are held from the state check until the history is written,
    so no member can be cancelled in between. Members keep their own status
    and validity.

    Raises:
        IneligibleStateError: If a member is missing or not ``ACTIVE``.
        MissingRequiredInputError: If a member number is blank or fewer than
            two distinct bills are given.
        RemoteSubmissionFailed: If the provider refuses; nothing is recorded.
    """
    try:
        numbers = _unique_numbers(command.document_numbers)
    except MissingRequiredInputError as exc:
        log.warning("CONSOLIDATE rejected: %s [%s]", exc.message, exc.code)
        raise
    with context.registry.hold(numbers):
        now = context.clock.now()
        records = {number: context.registry.find(number) for number in numbers}
        try:
            validate_consolidation(numbers, records, now=now)
        except BusinessRuleViolation as exc:
            log.warning("CONSOLIDATE rejected for %s: %s [%s]", ", ".join(numbers) or "-", exc.message, exc.code)
            raise

        confirmation = _submit(context, Operation.CONSOLIDATE, None, {"ewayBillNumbers": list(numbers)})
        consolidated_number = confirmation.reference or f"CEWB-{int(now.timestamp() * 1000)}"
        bill = ConsolidatedBill(consolidated_number=consolidated_number, created_at=now, members=numbers)
        context.registry.record_consolidation(bill)
        for number in numbers:
            context.registry.append_history(
                number,
                HistoryEvent.CONSOLIDATED,
                {"consolidated_number": consolidated_number, "members": list(numbers)},
                now,
            )

    log.info("Consolidated %d E-Way Bills under '%s'", len(numbers), consolidated_number)
    return bill


def check_consolidate_eligibility(context: RuntimeContext, command: ConsolidateCommand) -> Optional[Rejection]:
    try:
        numbers = _unique_numbers(command.document_numbers)
        records = {number: context.registry.find(number) for number in numbers}
        validate_consolidation(numbers, records, now=context.clock.now())
    except BusinessRuleViolation as exc:
        return exc.to_rejection()
    return None


# ---------------------------------------------------------------------------
# Recipient response
# ---------------------------------------------------------------------------


def validate_recipient_response(
    record: EWayBillRecord,
    decision: RecipientDecisionType,
    *,
    now: datetime,
    rules: data_manager.RuleSettings,
    reason: Optional[str] = None,
) -> None:
    """Check that the recipient may still accept or reject ``record``.

    Raises:
        IneligibleStateError: If the record is not ``ACTIVE`` or already
            carries a decision.
        WindowExpiredError: If the response window has elapsed.
        MissingRequiredInputError: If a rejection reason is too short.
    """
    verb = "accepted" if decision == RecipientDecisionType.ACCEPTED else "rejected"
    _require_active(record, now, verb)
    if record.recipient_decision is not None:
        raise IneligibleStateError(
            f"E-Way Bill {record.document_number} was already "
            f"{record.recipient_decision.decision.value.lower()} by the recipient",
            code="ALREADY_RESPONDED",
        )
    elapsed = _require_generated_in_past(record, now)
    window = rules.recipient_response_hours
    if elapsed > window:
        label = "acceptance" if decision == RecipientDecisionType.ACCEPTED else "rejection"
        raise WindowExpiredError(
            f"E-Way Bill {label} is allowed only within {window:g} hours of receipt. "
            f"The {window:g}-hour period has expired.",
            code="RESPONSE_WINDOW_EXPIRED",
        )
    if decision == RecipientDecisionType.REJECTED:
        result = has_min_length(reason, MIN_REJECT_REASON_LENGTH, label="Reject reason")
        if not result:
            raise MissingRequiredInputError(result.reason, code="REJECT_REASON_TOO_SHORT")


def _respond(
    context: RuntimeContext,
    document_number: str,
    decision: RecipientDecisionType,
    remarks: Optional[str],
) -> EWayBillRecord:
    now = context.clock.now()
    if decision == RecipientDecisionType.ACCEPTED:
        operation, event = Operation.ACCEPT, HistoryEvent.ACCEPTED
    else:
        operation, event = Operation.REJECT, HistoryEvent.REJECTED

    def check(record: EWayBillRecord) -> None:
        validate_recipient_response(record, decision, now=now, rules=context.rules, reason=remarks)

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        text = _optional_text(remarks)
        payload: Dict[str, Any] = {"ewayBillNo": record.document_number}
        if decision == RecipientDecisionType.REJECTED:
            payload["rejectReason"] = text
        _submit(context, operation, record.document_number, payload)
        updated = replace(
            record,
            recipient_decision=RecipientDecision(decision=decision, decided_at=now, remarks=text),
        )
        return updated, [PendingHistory(event, now, {"remarks": text})]

    updated = _apply(context, operation, document_number, check, mutate)
    log.info("E-Way Bill '%s' %s by the recipient", updated.document_number, decision.value.lower())
    return updated


def accept(context: RuntimeContext, command: AcceptCommand) -> EWayBillRecord:
    """Record the recipient's acceptance; the bill stays ``ACTIVE``."""
    return _respond(context, command.document_number, RecipientDecisionType.ACCEPTED, command.remarks)


def reject(context: RuntimeContext, command: RejectCommand) -> EWayBillRecord:
    """Record the recipient's rejection; a reason of at least 10 characters is required."""
    return _respond(context, command.document_number, RecipientDecisionType.REJECTED, command.reason)


def check_accept_eligibility(context: RuntimeContext, command: AcceptCommand) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_recipient_response(
            record, RecipientDecisionType.ACCEPTED, now=now, rules=context.rules
        ),
    )


def check_reject_eligibility(context: RuntimeContext, command: RejectCommand) -> Optional[Rejection]:
    return _preview(
        context,
        command.document_number,
        lambda record, now: validate_recipient_response(
            record, RecipientDecisionType.REJECTED, now=now, rules=context.rules, reason=command.reason
        ),
    )


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------


def expire_overdue(context: RuntimeContext) -> List[EWayBillRecord]:
    """Persist ``ACTIVE -> EXPIRED`` for every record past its validity.

    Expiry is time-driven, so nothing is submitted to the provider. Records
    extended or cancelled concurrently are re-checked under their lock and
    skipped.

    Returns:
        list[EWayBillRecord]: The records transitioned by this sweep.
    """
    now = context.clock.now()
    expired: List[EWayBillRecord] = []

    def check(record: EWayBillRecord) -> None:
        if record.status != EWayBillStatus.ACTIVE or now <= record.valid_until:
            raise IneligibleStateError(f"E-Way Bill {record.document_number} is not overdue")

    def mutate(record: EWayBillRecord) -> Tuple[EWayBillRecord, Sequence[PendingHistory]]:
        details = {"valid_until": record.valid_until.isoformat()}
        return replace(record, status=EWayBillStatus.EXPIRED), [PendingHistory(HistoryEvent.EXPIRED, now, details)]

    for record in context.registry.list_records():
        if record.status != EWayBillStatus.ACTIVE or now <= record.valid_until:
            continue
        try:
            expired.append(context.registry.apply_if_eligible(record.document_number, check, mutate))
        except IneligibleStateError:
            log.debug("Skipped expiry of '%s'; state changed during the sweep", record.document_number)

    if expired:
        log.info("Expired %d overdue E-Way Bill(s)", len(expired))
    return expired
