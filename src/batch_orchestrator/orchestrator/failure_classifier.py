"""Deterministic failure classification into dead-letter error records."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from batch_orchestrator.orchestrator.errors import (
    TASK_FAILURE_MARKER,
    TaskExecutionError,
)
from batch_orchestrator.orchestrator.evidence import EvidenceCollector, NullEvidenceCollector
from batch_orchestrator.orchestrator.models import (
    ErrorRecord,
    FailureKind,
    Provenance,
    RunContext,
)

logger = logging.getLogger(__name__)

FAILURE_CLASSIFIER_VERSION = 1

_SUBFLOW_LABEL = "subflow:"
_ACTION_LABEL = "action:"
_ACTION_NAME_LABEL = "action name:"
_MESSAGE_LABEL = "error message:"
_LABELS: tuple[str, ...] = (_SUBFLOW_LABEL, _ACTION_NAME_LABEL, _ACTION_LABEL, _MESSAGE_LABEL)

_PERMANENT_PATTERNS: tuple[str, ...] = (
    "invalid credential",
    "invalid password",
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication failed",
    "element not found",
    "no such element",
    "not found",
    "does not exist",
    "missing element",
    "missing file",
    "missing resource",
    "missing required",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "service unavailable",
    "database is locked",
    "lock contention",
    "connection reset",
    "connection refused",
    "too many requests",
    "rate limit",
    "try again",
)


@dataclass(slots=True, frozen=True)
class FailureSignal:
    """Raw failure as observed by the runner before classification."""

    message: str
    detail: str = ""
    location: str = ""
    transient_hint: bool | None = None
    exception_type: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException, *, location: str = "") -> FailureSignal:
        """Build a signal from an exception raised by a task or orchestrator call."""

        message = str(error) or type(error).__name__
        if isinstance(error, TaskExecutionError):
            return cls(
                message=message,
                detail=error.detail,
                location=location,
                transient_hint=error.transient,
                exception_type=type(error).__name__,
            )
        transient_hint: bool | None = None
        if isinstance(error, TimeoutError | ConnectionError):
            transient_hint = True
        elif isinstance(error, FileNotFoundError | PermissionError):
            transient_hint = False
        return cls(
            message=message,
            location=location,
            transient_hint=transient_hint,
            exception_type=type(error).__name__,
        )

    @property
    def is_task_level(self) -> bool:
        return TASK_FAILURE_MARKER.lower() in self.message.lower()


@dataclass(slots=True, frozen=True)
class ParsedFailure:
    """Four normalized fields extracted from a raw failure."""

    subflow: str
    action_index: str
    action_name: str
    message: str


@dataclass(slots=True, frozen=True)
class ParseError:
    """Raw failure text did not match the expected encoding."""

    reason: str
    raw: str


ParseResult = ParsedFailure | ParseError


def parse_task_detail(detail: str) -> ParseResult:
    """Parse the labelled multi-line detail blob of a task-level failure."""

    fields: dict[str, str] = {}
    current: str | None = None
    for raw_line in detail.splitlines():
        line = raw_line.strip()
        if not line or (current is None and TASK_FAILURE_MARKER.lower() in line.lower()):
            continue
        label = _match_label(line)
        if label is not None:
            current = label
            fields[label] = _normalize(line)
            continue
        if current == _MESSAGE_LABEL:
            fields[current] = f"{fields[current]}\n{line}".strip()

    missing = [label.rstrip(":") for label in _LABELS if label not in fields]
    if missing:
        return ParseError(reason=f"missing field(s): {', '.join(missing)}", raw=detail)
    return ParsedFailure(
        subflow=fields[_SUBFLOW_LABEL],
        action_index=fields[_ACTION_LABEL],
        action_name=fields[_ACTION_NAME_LABEL],
        message=fields[_MESSAGE_LABEL],
    )


def parse_location_message(line: str) -> ParseResult:
    """Parse ``Subflow: s; Action: n; Action name: a,message`` single-line encoding."""

    text = " ".join(line.split())
    location, separator, message = text.partition(",")
    if not separator:
        return ParseError(reason="missing ',' between location and message", raw=line)

    fields: dict[str, str] = {}
    for segment in location.split(";"):
        segment = segment.strip()
        label = _match_label(segment)
        if label is None or label == _MESSAGE_LABEL:
            continue
        fields[label] = _normalize(segment)

    missing = [
        label.rstrip(":")
        for label in (_SUBFLOW_LABEL, _ACTION_LABEL, _ACTION_NAME_LABEL)
        if label not in fields
    ]
    if missing:
        return ParseError(reason=f"missing location field(s): {', '.join(missing)}", raw=line)
    return ParsedFailure(
        subflow=fields[_SUBFLOW_LABEL],
        action_index=fields[_ACTION_LABEL],
        action_name=fields[_ACTION_NAME_LABEL],
        message=_normalize(message),
    )


def classify_failure_kind(signal: FailureSignal, *, message: str = "") -> FailureKind:
    """Map a signal to transient/permanent using hints first, then text patterns."""

    if signal.transient_hint is True:
        return FailureKind.TRANSIENT
    if signal.transient_hint is False:
        return FailureKind.PERMANENT

    haystack = f"{message}\n{signal.message}\n{signal.detail}".lower()
    if _first_match(haystack, _PERMANENT_PATTERNS) is not None:
        return FailureKind.PERMANENT
    if _first_match(haystack, _TRANSIENT_PATTERNS) is not None:
        return FailureKind.TRANSIENT
    return FailureKind.UNKNOWN


class ErrorClassifier:
    """Turn a raw failure signal into an immutable :class:`ErrorRecord`."""

    def __init__(
        self,
        *,
        evidence: EvidenceCollector | None = None,
        capture_attempts: int = 2,
    ) -> None:
        self.evidence = evidence or NullEvidenceCollector()
        self.capture_attempts = max(1, capture_attempts)

    def classify(self, signal: FailureSignal, context: RunContext) -> ErrorRecord:
        if signal.is_task_level:
            provenance = Provenance.TASK
            parsed = parse_task_detail(signal.detail)
        else:
            provenance = Provenance.ORCHESTRATOR
            parsed = parse_location_message(f"{signal.location},{signal.message}")

        if isinstance(parsed, ParseError):
            logger.debug("Failure detail not parseable (%s): %r", parsed.reason, parsed.raw)
            parsed = ParsedFailure(
                subflow=context.subflow,
                action_index=context.action_line,
                action_name=context.action_name or signal.exception_type or "",
                message=_normalize(signal.detail or signal.message),
            )

        return ErrorRecord(
            execution_id=context.execution_id,
            source_flow=context.flow_name,
            subflow=parsed.subflow,
            action_index=parsed.action_index,
            action_name=parsed.action_name,
            message=parsed.message,
            evidence_ref=self._capture_evidence(context, provenance, parsed.message),
            provenance=provenance,
            failure_kind=classify_failure_kind(signal, message=parsed.message),
            phase=context.current_phase,
            item_id=context.current_item_id,
        )

    def _capture_evidence(self, context: RunContext, provenance: Provenance, message: str) -> str:
        label = f"{provenance.value}_{context.current_phase or 'run'}"
        for attempt in range(1, self.capture_attempts + 1):
            try:
                return self.evidence.capture(context, label=label, message=message)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Evidence capture failed (attempt %d/%d): %s",
                    attempt,
                    self.capture_attempts,
                    error,
                )
        return ""


def _match_label(line: str) -> str | None:
    lowered = line.lower()
    for label in _LABELS:
        if lowered.startswith(label):
            return label
    return None


def _normalize(value: str) -> str:
    text = value.strip()
    label = _match_label(text)
    if label is not None:
        text = text[len(label) :]
    return text.strip()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
