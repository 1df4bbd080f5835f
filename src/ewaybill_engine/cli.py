"""Command-line entry points for the E-Way Bill engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the rule engine,
and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log, setup_workbook
from .constants import (
    CANCEL_REASON_LABELS,
    TRANSPORT_MODE_LABELS,
    CancelReason,
    EWayBillStatus,
    SupplyType,
    TransportMode,
    VehicleType,
)
from .temporal import format_portal_datetime


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    persist: bool = False
    requires_context: bool = True


Subparsers = argparse._SubParsersAction


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ewb-cli",
        description="Command-line tools for the E-Way Bill registry workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to an upward search from the working directory).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    setup_specs = register_setup_commands(subparsers)
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*setup_specs.values(), *write_specs.values(), *read_specs.values()])


def register_setup_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare commands that run before a registry workbook exists."""
    specs = {"init": register_init_command(subparsers)}
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_write_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare commands that change the registry."""
    specs = {
        "generate": register_generate_command(subparsers),
        "cancel": register_cancel_command(subparsers),
        "change-transporter": register_change_transporter_command(subparsers),
        "extend-validity": register_extend_validity_command(subparsers),
        "update-part-b": register_update_part_b_command(subparsers),
        "consolidate": register_consolidate_command(subparsers),
        "accept": register_accept_command(subparsers),
        "reject": register_reject_command(subparsers),
        "expire": register_expire_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "show": register_show_command(subparsers),
        "history": register_history_command(subparsers),
        "list": register_list_command(subparsers),
        "eligibility": register_eligibility_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_transport_arguments(parser: argparse.ArgumentParser, *, mode_required: bool) -> None:
    parser.add_argument(
        "--trans-mode",
        choices=[member.value for member in TransportMode],
        required=mode_required,
        default=None if mode_required else TransportMode.ROAD.value,
        help=", ".join(f"{mode.value} {label}" for mode, label in TRANSPORT_MODE_LABELS.items()),
    )
    parser.add_argument("--distance", required=True, help="Approximate distance in km.")
    parser.add_argument("--vehicle-number", default=None)
    parser.add_argument("--vehicle-type", choices=[member.value for member in VehicleType], default=None)
    parser.add_argument("--transporter-id", default=None)
    parser.add_argument("--transporter-name", default=None)
    parser.add_argument("--trans-doc-no", default=None)
    parser.add_argument("--trans-doc-date", default=None, help="dd/MM/yyyy")


def register_init_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty registry workbook at the configured DataFile."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, requires_context=False)


def register_generate_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``generate``."""
    name = "generate"
    help_text = "Generate a new E-Way Bill."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supply-type", choices=[member.value for member in SupplyType], required=True)
        parser.add_argument("--sub-supply-type", default=None)
        parser.add_argument("--sub-supply-desc", default=None)
        parser.add_argument("--doc-type", default="INV")
        parser.add_argument("--doc-no", required=True)
        parser.add_argument("--doc-date", required=True, help="dd/MM/yyyy")
        parser.add_argument("--from-gstin", required=True)
        parser.add_argument("--from-pincode", required=True)
        parser.add_argument("--from-place", default=None)
        parser.add_argument("--to-gstin", required=True)
        parser.add_argument("--to-pincode", required=True)
        parser.add_argument("--to-place", default=None)
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            metavar="NAME:HSN:QUANTITY:TAXABLE_AMOUNT",
            help="Goods line; repeat for several items.",
        )
        _add_transport_arguments(parser, mode_required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_generate, persist=True)


def register_cancel_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``cancel``."""
    name = "cancel"
    help_text = "Cancel an E-Way Bill within 24 hours of generation."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.add_argument(
            "--reason-code",
            choices=[member.value for member in CancelReason],
            required=True,
            help=", ".join(f"{reason.value} {label}" for reason, label in CANCEL_REASON_LABELS.items()),
        )
        parser.add_argument("--remarks", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel, persist=True)


def register_change_transporter_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``change-transporter``."""
    name = "change-transporter"
    help_text = "Assign the E-Way Bill to a different transporter."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.add_argument("--transporter-id", required=True)
        parser.add_argument("--transporter-name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_change_transporter, persist=True
    )


def register_extend_validity_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``extend-validity``."""
    name = "extend-validity"
    help_text = "Extend the validity of an active E-Way Bill."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.add_argument("--valid-until", required=True, help="dd/MM/yyyy [HH:mm] or ISO-8601")
        parser.add_argument("--reason", required=True)
        parser.add_argument("--current-location", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_extend_validity, persist=True)


def register_update_part_b_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``update-part-b``."""
    name = "update-part-b"
    help_text = "Record vehicle or transport document details (Part-B)."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        _add_transport_arguments(parser, mode_required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_part_b, persist=True)


def register_consolidate_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``consolidate``."""
    name = "consolidate"
    help_text = "Group two or more active E-Way Bills into a consolidated bill."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", nargs="+", required=True, dest="ewb_numbers")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_consolidate, persist=True)


def register_accept_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``accept``."""
    name = "accept"
    help_text = "Accept a received E-Way Bill within 72 hours."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.add_argument("--remarks", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_accept, persist=True)


def register_reject_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``reject``."""
    name = "reject"
    help_text = "Reject a received E-Way Bill within 72 hours."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reject, persist=True)


def register_expire_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``expire``."""
    name = "expire"
    help_text = "Mark every overdue active E-Way Bill as expired."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expire, persist=True)


def register_show_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display one E-Way Bill."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_history_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the audit history of one E-Way Bill."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_list_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "List E-Way Bills, optionally filtered by status."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in EWayBillStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list)


def register_eligibility_command(subparsers: Subparsers) -> CommandSpec:
    """Register the parser and executor for ``eligibility``."""
    name = "eligibility"
    help_text = "Show which operations the E-Way Bill's state and age currently allow."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--ewb-no", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_eligibility)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_item(raw: str) -> core_logic.ItemLine:
    """Parse ``NAME:HSN:QUANTITY:TAXABLE_AMOUNT`` into an item line.

    Raises:
        ValueError: If the value does not have four fields or the numbers are
            malformed.
    """
    parts = raw.rsplit(":", 3)
    if len(parts) != 4:
        raise ValueError(f"Item must be NAME:HSN:QUANTITY:TAXABLE_AMOUNT, got {raw!r}")
    product_name, hsn_code, quantity, amount = (part.strip() for part in parts)
    try:
        return core_logic.ItemLine(
            product_name=product_name,
            hsn_code=hsn_code,
            quantity=Decimal(quantity),
            taxable_amount=Decimal(amount),
        )
    except ArithmeticError as exc:
        raise ValueError(f"Invalid quantity or amount in item {raw!r}") from exc


def translate_generate(args: argparse.Namespace) -> core_logic.GenerateCommand:
    """Translate CLI args into a generate command object."""
    return core_logic.GenerateCommand(
        supply_type=args.supply_type,
        sub_supply_type=args.sub_supply_type,
        sub_supply_desc=args.sub_supply_desc,
        document_type=args.doc_type,
        document_number=args.doc_no,
        document_date=args.doc_date,
        from_gstin=args.from_gstin,
        from_pincode=args.from_pincode,
        from_place=args.from_place,
        to_gstin=args.to_gstin,
        to_pincode=args.to_pincode,
        to_place=args.to_place,
        items=tuple(parse_item(raw) for raw in args.item),
        trans_mode=args.trans_mode,
        distance=args.distance,
        vehicle_number=args.vehicle_number,
        vehicle_type=args.vehicle_type,
        transporter_id=args.transporter_id,
        transporter_name=args.transporter_name,
        trans_doc_no=args.trans_doc_no,
        trans_doc_date=args.trans_doc_date,
    )


def translate_cancel(args: argparse.Namespace) -> core_logic.CancelCommand:
    """Translate CLI args into a cancel command object."""
    return core_logic.CancelCommand(
        document_number=args.ewb_no,
        reason_code=args.reason_code,
        remarks=args.remarks,
    )


def translate_change_transporter(args: argparse.Namespace) -> core_logic.ChangeTransporterCommand:
    """Translate CLI args into a change-transporter command object."""
    return core_logic.ChangeTransporterCommand(
        document_number=args.ewb_no,
        transporter_id=args.transporter_id,
        transporter_name=args.transporter_name,
    )


def translate_extend_validity(args: argparse.Namespace) -> core_logic.ExtendValidityCommand:
    """Translate CLI args into an extend-validity command object."""
    return core_logic.ExtendValidityCommand(
        document_number=args.ewb_no,
        new_valid_until=args.valid_until,
        reason=args.reason,
        current_location=args.current_location,
    )


def translate_update_part_b(args: argparse.Namespace) -> core_logic.UpdatePartBCommand:
    """Translate CLI args into a Part-B command object."""
    return core_logic.UpdatePartBCommand(
        document_number=args.ewb_no,
        trans_mode=args.trans_mode,
        distance=args.distance,
        vehicle_number=args.vehicle_number,
        transporter_id=args.transporter_id,
        transporter_name=args.transporter_name,
        vehicle_type=args.vehicle_type,
        trans_doc_no=args.trans_doc_no,
        trans_doc_date=args.trans_doc_date,
    )


def translate_consolidate(args: argparse.Namespace) -> core_logic.ConsolidateCommand:
    """Translate CLI args into a consolidate command object."""
    return core_logic.ConsolidateCommand(document_numbers=tuple(args.ewb_numbers))


def describe_record(record: data_manager.EWayBillRecord, status: EWayBillStatus) -> List[str]:
    """Render a record as ``label: value`` lines."""
    lines = [
        f"E-Way Bill No : {record.document_number}",
        f"Status        : {status.value}",
        f"Generated     : {format_portal_datetime(record.created_at)}",
        f"Valid Until   : {format_portal_datetime(record.valid_until)}",
        f"Vehicle       : {record.vehicle_number or '-'}",
        f"Transporter   : {record.transporter_id or '-'} {record.transporter_name or ''}".rstrip(),
    ]
    if record.from_place or record.to_place:
        lines.append(f"Route         : {record.from_place or '-'} -> {record.to_place or '-'}")
    if record.cancellation is not None:
        lines.append(
            f"Cancelled     : {format_portal_datetime(record.cancellation.cancelled_at)} "
            f"(reason {record.cancellation.reason_code}: {record.cancellation.remarks})"
        )
    if record.recipient_decision is not None:
        lines.append(
            f"Recipient     : {record.recipient_decision.decision.value} "
            f"on {format_portal_datetime(record.recipient_decision.decided_at)}"
        )
    return lines


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the registry workbook named by the configuration."""
    config_path = data_manager.find_config_file(getattr(args, "config", None))
    output_path = setup_workbook.run_from_config(config_path, overwrite=args.force)
    print(f"Created registry workbook at '{output_path}'.")
    return 0


def run_generate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the generate workflow via the rule engine."""
    record = core_logic.generate(context, translate_generate(args))
    print(f"Generated E-Way Bill {record.document_number}, valid until {format_portal_datetime(record.valid_until)}")
    return 0


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancel workflow via the rule engine."""
    record = core_logic.cancel(context, translate_cancel(args))
    print(f"E-Way Bill {record.document_number} cancelled.")
    return 0


def run_change_transporter(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the change-transporter workflow via the rule engine."""
    record = core_logic.change_transporter(context, translate_change_transporter(args))
    print(f"E-Way Bill {record.document_number} assigned to transporter {record.transporter_id}.")
    return 0


def run_extend_validity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the extend-validity workflow via the rule engine."""
    record = core_logic.extend_validity(context, translate_extend_validity(args))
    print(f"E-Way Bill {record.document_number} valid until {format_portal_datetime(record.valid_until)}.")
    return 0


def run_update_part_b(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the Part-B workflow via the rule engine."""
    record = core_logic.update_part_b(context, translate_update_part_b(args))
    print(f"Part-B of E-Way Bill {record.document_number} updated (vehicle {record.vehicle_number or '-'}).")
    return 0


def run_consolidate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the consolidate workflow via the rule engine."""
    bill = core_logic.consolidate(context, translate_consolidate(args))
    print(f"Consolidated E-Way Bill {bill.consolidated_number}: {', '.join(bill.members)}")
    return 0


def run_accept(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recipient acceptance workflow."""
    record = core_logic.accept(context, core_logic.AcceptCommand(document_number=args.ewb_no, remarks=args.remarks))
    print(f"E-Way Bill {record.document_number} accepted.")
    return 0


def run_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recipient rejection workflow."""
    record = core_logic.reject(context, core_logic.RejectCommand(document_number=args.ewb_no, reason=args.reason))
    print(f"E-Way Bill {record.document_number} rejected.")
    return 0


def run_expire(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Persist expiry for every overdue active bill."""
    expired = core_logic.expire_overdue(context)
    print(f"Expired {len(expired)} E-Way Bill(s).")
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one record with its remaining cancellation window."""
    record = core_logic.get_record(context, args.ewb_no)
    status = core_logic.effective_status(record, context.clock.now())
    for line in describe_record(record, status):
        print(line)
    if status == EWayBillStatus.ACTIVE:
        window = core_logic.cancellation_window(context, record)
        print(f"Cancel Window : {window.label if window.is_open else 'closed'}")
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the audit history of one record."""
    for entry in core_logic.get_history(context, args.ewb_no):
        details = ", ".join(f"{key}={value}" for key, value in sorted(entry.details.items()) if value is not None)
        print(f"{entry.sequence:>3}  {format_portal_datetime(entry.recorded_at)}  {entry.event.value:<20} {details}")
    return 0


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per record."""
    status_filter = EWayBillStatus(args.status) if args.status else None
    now = context.clock.now()
    for record in core_logic.list_records(context, status=status_filter):
        status = core_logic.effective_status(record, now)
        print(
            f"{record.document_number:<16} {status.value:<10} "
            f"valid until {format_portal_datetime(record.valid_until)}  vehicle {record.vehicle_number or '-'}"
        )
    return 0


def collect_eligibility(
    context: core_logic.RuntimeContext, document_number: str
) -> List[Tuple[str, Optional[core_logic.Rejection]]]:
    """Preview every operation against the record's state and age.

    Operation inputs are left empty, so a missing-input rejection means the
    record itself allows the operation.
    """
    previews = [
        ("cancel", core_logic.check_cancel_eligibility(context, core_logic.CancelCommand(document_number, "", ""))),
        (
            "change-transporter",
            core_logic.check_change_transporter_eligibility(
                context, core_logic.ChangeTransporterCommand(document_number, "")
            ),
        ),
        (
            "extend-validity",
            core_logic.check_extend_validity_eligibility(
                context, core_logic.ExtendValidityCommand(document_number, "", "", "")
            ),
        ),
        (
            "update-part-b",
            core_logic.check_update_part_b_eligibility(
                context, core_logic.UpdatePartBCommand(document_number, TransportMode.ROAD.value, "0")
            ),
        ),
        ("accept", core_logic.check_accept_eligibility(context, core_logic.AcceptCommand(document_number))),
        ("reject", core_logic.check_reject_eligibility(context, core_logic.RejectCommand(document_number, ""))),
    ]
    return [
        (name, None if rejection and rejection.category == core_logic.RejectionCategory.MISSING_REQUIRED_INPUT else rejection)
        for name, rejection in previews
    ]


def run_eligibility(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print whether each operation is currently allowed."""
    record = core_logic.get_record(context, args.ewb_no)
    for name, rejection in collect_eligibility(context, record.document_number):
        verdict = "allowed" if rejection is None else f"{rejection.category.value}: {rejection.message}"
        print(f"{name:<20} {verdict}")
    window = core_logic.cancellation_window(context, record)
    print(f"{'cancel window':<20} {window.label if window.is_open else 'closed'}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.RemoteSubmissionFailed):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s [%s]", error, error.code)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    spec = command_table[args.command]
    try:
        context = load_runtime_context(getattr(args, "config", None)) if spec.requires_context else None
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and spec.persist and context is not None:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
