"""Submission gateway contract for the external compliance authority.

The rule engine calls :meth:`SubmissionGateway.submit` only after every local
precondition has passed, and mutates local state only when it returns. A
network client for a real provider plugs in by implementing the contract and
feeding the provider's response body through
:func:`interpret_provider_response`.
"""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, Mapping, Optional

from . import log
from .constants import Operation
from .temporal import DEFAULT_TIMEZONE, UnparseableDate, parse_flexible_date


# The provider spells its success status both ways.
SUCCESS_STATUS_CODES = frozenset({"1", "Sucess"})


class GatewayError(Exception):
    """Raised when the provider rejects a submission or cannot be reached."""

    def __init__(self, operation: Operation, message: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.message = message


@dataclass(frozen=True)
class ProviderConfirmation:
    """Acknowledgement returned by the provider for an accepted submission."""

    operation: Operation
    message: str
    reference: Optional[str] = None
    valid_until: Optional[datetime] = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


class SubmissionGateway(ABC):
    """Performs the remote half of an operation."""

    @abstractmethod
    def submit(
        self,
        operation: Operation,
        document_number: Optional[str],
        payload: Mapping[str, Any],
    ) -> ProviderConfirmation:
        """Submit ``payload`` for ``operation`` and return the confirmation.

        Raises:
            GatewayError: If the provider rejects the request.
            TimeoutError: If the provider does not answer in time.
            OSError: If the provider cannot be reached.
        """


def interpret_provider_response(
    operation: Operation,
    body: Mapping[str, Any],
    *,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> ProviderConfirmation:
    """Map a provider response body to a confirmation.

    The body follows the provider's envelope: ``status_cd`` (``"1"`` or
    ``"Sucess"`` on success), ``status_desc`` (human-readable message) and an
    optional ``data`` object carrying ``ewayBillNo``/``consolidatedEWBNo`` and
    ``ewayBillValidUpto``/``ewayBillValidTill``.

    Raises:
        GatewayError: If the status code signals a failure.
    """

    status_code = str(body.get("status_cd", ""))
    message = str(body.get("status_desc") or "")
    if status_code not in SUCCESS_STATUS_CODES:
        raise GatewayError(operation, message or f"{operation.value} rejected by the provider")

    data = body.get("data") or {}
    reference = data.get("consolidatedEWBNo") or data.get("ewayBillNo")
    valid_raw = data.get("ewayBillValidUpto") or data.get("ewayBillValidTill")
    valid_until = None
    if valid_raw:
        try:
            valid_until = parse_flexible_date(str(valid_raw), tz=tz)
        except UnparseableDate:
            log.warning("Ignoring unparseable validity '%s' in %s response", valid_raw, operation.value)

    return ProviderConfirmation(
        operation=operation,
        message=message or f"{operation.value} accepted",
        reference=str(reference) if reference else None,
        valid_until=valid_until,
        raw=dict(body),
    )


class SandboxGateway(SubmissionGateway):
    """Offline gateway that accepts every submission.

    Generated and consolidated bills receive sequential references built from
    ``reference_prefix``. Validity is left to the engine's own calculation.
    """

    def __init__(self, reference_prefix: str = "EWB", start: int = 1) -> None:
        self.reference_prefix = reference_prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()
        self.submissions: list[Dict[str, Any]] = []

    def _next_reference(self, operation: Operation) -> Optional[str]:
        if operation == Operation.GENERATE:
            prefix = self.reference_prefix
        elif operation == Operation.CONSOLIDATE:
            prefix = f"C{self.reference_prefix}"
        else:
            return None
        with self._lock:
            return f"{prefix}{next(self._counter):010d}"

    def submit(
        self,
        operation: Operation,
        document_number: Optional[str],
        payload: Mapping[str, Any],
    ) -> ProviderConfirmation:
        reference = self._next_reference(operation)
        data: Dict[str, Any] = {}
        if reference is not None:
            key = "consolidatedEWBNo" if operation == Operation.CONSOLIDATE else "ewayBillNo"
            data[key] = reference
        body = {
            "status_cd": "1",
            "status_desc": f"{operation.value} accepted by sandbox",
            "data": data,
        }
        with self._lock:
            self.submissions.append(
                {"operation": operation, "document_number": document_number, "payload": dict(payload)}
            )
        log.debug("Sandbox accepted %s for '%s'", operation.value, document_number or reference)
        return interpret_provider_response(operation, body)


def build_gateway(mode: str, *, reference_prefix: str = "EWB", start: int = 1) -> SubmissionGateway:
    """Instantiate the gateway named by ``[Gateway] Mode``.

    Raises:
        ValueError: If ``mode`` is not supported.
    """

    if mode.strip().lower() == "sandbox":
        return SandboxGateway(reference_prefix=reference_prefix, start=start)
    raise ValueError(f"Unsupported gateway mode: {mode}")
