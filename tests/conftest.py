"""Shared pytest fixtures and utilities for the E-Way Bill engine tests."""

from __future__ import annotations

import argparse
import sys
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from ewaybill_engine import cli, constants, core_logic, data_manager, gateway, temporal  # noqa: E402
from ewaybill_engine.setup_workbook import create_registry_workbook  # noqa: E402

IST = temporal.DEFAULT_TIMEZONE
BASE_TIME = datetime(2024, 6, 1, 10, 0, tzinfo=IST)
DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
TRANSPORTER_A = "29ABCDE1234F1Z5"
TRANSPORTER_B = "27AAACR5055K1Z7"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n"
    "Timezone = +05:30\n\n"
    "[Gateway]\n"
    "Mode = sandbox\n"
    "ReferencePrefix = {reference_prefix}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


class RecordingGateway(gateway.SubmissionGateway):
    """Gateway double that records submissions and can be told to fail."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.failure: Optional[Exception] = None
        self.reference: Optional[str] = None
        self.valid_until: Optional[datetime] = None
        self.delay: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def submit(
        self,
        operation: constants.Operation,
        document_number: Optional[str],
        payload: Mapping[str, Any],
    ) -> gateway.ProviderConfirmation:
        with self._lock:
            self.calls.append({"operation": operation, "document_number": document_number, "payload": dict(payload)})
        if self.delay is not None:
            self.delay.wait(timeout=0.05)
        if self.failure is not None:
            raise self.failure
        return gateway.ProviderConfirmation(
            operation=operation,
            message="ok",
            reference=self.reference,
            valid_until=self.valid_until,
        )

    def operations(self) -> List[constants.Operation]:
        return [call["operation"] for call in self.calls]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Rule engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> temporal.FixedClock:
    """Deterministic clock pinned to ``BASE_TIME``."""

    return temporal.FixedClock(BASE_TIME)


@pytest.fixture
def registry() -> data_manager.InMemoryRegistry:
    return data_manager.InMemoryRegistry()


@pytest.fixture
def recording_gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def context(
    registry: data_manager.InMemoryRegistry,
    recording_gateway: RecordingGateway,
    clock: temporal.FixedClock,
) -> core_logic.RuntimeContext:
    """Assemble an in-memory runtime context."""

    return core_logic.RuntimeContext(registry=registry, gateway=recording_gateway, clock=clock)


@pytest.fixture
def make_record(
    registry: data_manager.InMemoryRegistry,
    clock: temporal.FixedClock,
) -> Callable[..., data_manager.EWayBillRecord]:
    """Factory inserting an ``ACTIVE`` record generated at the clock's current time."""

    def _make(document_number: str = "EWB0001", **overrides: Any) -> data_manager.EWayBillRecord:
        created_at = overrides.pop("created_at", clock.now())
        fields: Dict[str, Any] = {
            "document_number": document_number,
            "status": constants.EWayBillStatus.ACTIVE,
            "created_at": created_at,
            "valid_from": created_at,
            "valid_until": created_at + timedelta(days=2),
            "transporter_id": TRANSPORTER_A,
            "transporter_name": "Speedy Logistics",
        }
        fields.update(overrides)
        record = data_manager.EWayBillRecord(**fields)
        registry.insert(record)
        return record

    return _make


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized registry workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "registry.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_registry_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def registry_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh registry workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        reference_prefix: str = "EWB",
        create_workbook: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        else:
            workbook_path = bundle_dir / "registry.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                reference_prefix=reference_prefix,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def workbook_context(config_file: Path, clock: temporal.FixedClock) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ewb-cli", description="E-Way Bill CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
