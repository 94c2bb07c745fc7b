"""Pipe-delimited structured log lines bound to a run context."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

from batch_orchestrator.orchestrator.models import RunContext
from batch_orchestrator.storage.common import utc_now

LOG_FIELD_SEPARATOR = " || "
LOG_FIELD_COUNT = 8


def format_log_line(  # noqa: PLR0913
    *,
    execution_id: str,
    timestamp: str,
    host: str,
    agent: str,
    flow_name: str,
    subflow: str,
    action_line: str,
    message: str,
) -> str:
    """Render the 8-field line; embedded newlines and separators are flattened."""

    fields = (
        execution_id,
        timestamp,
        host,
        agent,
        flow_name,
        subflow,
        action_line,
        message,
    )
    return LOG_FIELD_SEPARATOR.join(_flatten(value) for value in fields)


def parse_log_line(line: str) -> list[str]:
    parts = line.split(LOG_FIELD_SEPARATOR, LOG_FIELD_COUNT - 1)
    if len(parts) != LOG_FIELD_COUNT:
        raise ValueError(f"Expected {LOG_FIELD_COUNT} fields, got {len(parts)}: {line!r}")
    return parts


class RunLogAdapter(logging.LoggerAdapter):
    """Logger adapter that renders every message as a structured run log line."""

    def __init__(self, logger: logging.Logger, context: RunContext) -> None:
        super().__init__(logger, {})
        self.context = context

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = self.context
        if context.action_line:
            action_line = f"{context.action_line} {context.action_name}".strip()
        else:
            action_line = context.action_name
        line = format_log_line(
            execution_id=context.execution_id,
            timestamp=utc_now().isoformat(timespec="milliseconds"),
            host=context.host,
            agent=context.agent,
            flow_name=context.flow_name,
            subflow=context.subflow,
            action_line=action_line,
            message=str(msg),
        )
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("execution_id", context.execution_id)
        kwargs["extra"] = extra
        return line, kwargs


def configure_logging(level: str = "INFO") -> None:
    """Install a stderr handler for CLI runs."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )


def _flatten(value: str) -> str:
    return " ".join(str(value).split()).replace("||", "|")
