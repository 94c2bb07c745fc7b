"""Subprocess-based task executor for pipeline phases."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

from batch_orchestrator.orchestrator.errors import ConfigurationError, TaskExecutionError
from batch_orchestrator.orchestrator.executors.base import CommandRunRequest, CommandRunResult
from batch_orchestrator.orchestrator.models import RunContext

_PLACEHOLDERS = ("payload_file", "item_id", "execution_id", "phase")
_POLL_INTERVAL_SECONDS = 0.1


class CommandTaskExecutor:
    """Run a phase command template once per item.

    The item payload is written to ``payload.json`` in a per-item work directory and
    the template may reference ``{payload_file}``, ``{item_id}``, ``{execution_id}``
    and ``{phase}``. Exit code 0 is success and stdout (parsed as JSON when
    possible) becomes the item result. A non-zero exit raises
    :class:`TaskExecutionError` carrying stderr as the failure detail; a timeout
    raises :class:`TimeoutError`.
    """

    def __init__(  # noqa: PLR0913
        self,
        command_template: str,
        *,
        workdir: Path,
        timeout_seconds: float = 600,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command_template.strip():
            raise ConfigurationError("Task command template is empty.")
        if timeout_seconds <= 0:
            raise ConfigurationError("Task timeout must be > 0.")
        self.command_template = command_template.strip()
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.env = dict(env or {})

    def __call__(self, payload: Any, context: RunContext) -> Any:
        item_id = context.current_item_id or "adhoc"
        item_dir = self.workdir / context.execution_id / (context.current_phase or "run") / item_id
        item_dir.mkdir(parents=True, exist_ok=True)
        payload_file = item_dir / "payload.json"
        payload_file.write_text(json.dumps(payload, ensure_ascii=False), "utf-8")

        argv = build_argv(
            self.command_template,
            values={
                "payload_file": str(payload_file),
                "item_id": item_id,
                "execution_id": context.execution_id,
                "phase": context.current_phase or "",
            },
        )
        env = os.environ.copy()
        env.update(self.env)
        env["BATCH_ORCH_EXECUTION_ID"] = context.execution_id
        env["BATCH_ORCH_PHASE"] = context.current_phase or ""
        env["BATCH_ORCH_ITEM_ID"] = item_id

        request = CommandRunRequest(
            argv=argv,
            env=env,
            timeout_seconds=self.timeout_seconds,
            stdout_path=item_dir / "stdout.txt",
            stderr_path=item_dir / "stderr.txt",
            shutdown_requested=self.shutdown_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        result = run_command(request)
        if result.timed_out:
            raise TimeoutError(
                f"Task command for item {item_id} timed out after {self.timeout_seconds:g}s",
            )
        if result.exit_code != 0:
            raise TaskExecutionError(
                f"Failed to run flow {context.flow_name}/{context.current_phase}: "
                f"exit code {result.exit_code}",
                detail=result.stderr_text(),
            )
        return _parse_stdout(result.stdout_text())


def build_argv(command_template: str, *, values: dict[str, str]) -> list[str]:
    """Render a POSIX command template with shell-quoted placeholder values."""

    try:
        rendered = command_template.format(
            **{key: shlex.quote(values.get(key, "")) for key in _PLACEHOLDERS},
        )
    except (KeyError, IndexError) as error:
        raise ConfigurationError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise ConfigurationError("Task command template rendered empty command.")
    return argv


def run_command(request: CommandRunRequest) -> CommandRunResult:
    """Run the subprocess, streaming output to files; start errors map to task errors."""

    request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
    request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with (
            request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
            request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            return _run_subprocess_with_shutdown(
                request,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
            )
    except FileNotFoundError as error:
        raise TaskExecutionError(
            f"Failed to run flow: command not found: {request.argv[0]}",
            transient=False,
        ) from error
    except OSError as error:
        raise TaskExecutionError(
            f"Failed to run flow: command failed to start: {error}",
            transient=True,
        ) from error


def _run_subprocess_with_shutdown(
    request: CommandRunRequest,
    *,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> CommandRunResult:
    process = subprocess.Popen(  # noqa: S603
        request.argv,
        env=request.env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, request.graceful_shutdown_seconds or 0.0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(request, exit_code=returncode, timed_out=False)

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            _terminate_process(process)
            return _result(request, exit_code=124, timed_out=True)

        if request.shutdown_requested is not None and request.shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return _result(request, exit_code=124, timed_out=True)

        time.sleep(_POLL_INTERVAL_SECONDS)


def _result(request: CommandRunRequest, *, exit_code: int, timed_out: bool) -> CommandRunResult:
    return CommandRunResult(
        exit_code=exit_code,
        timed_out=timed_out,
        stdout_path=request.stdout_path,
        stderr_path=request.stderr_path,
    )


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _parse_stdout(text: str) -> Any:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return stripped
