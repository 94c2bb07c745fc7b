"""Runtime configuration for the orchestrator engine and CLI."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from batch_orchestrator.orchestrator.models import DeadLetterPolicy

CIRCUIT_STORE_KINDS = ("sqlite", "file")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class QueueSettings:
    """Queue service retry and locking settings."""

    max_retries: int = 1
    queue_max_retries: dict[str, int] = field(default_factory=dict)
    lock_timeout_seconds: int = 1_800
    error_queue: str = "orchestrator_errors"
    dead_letter_policy: DeadLetterPolicy = DeadLetterPolicy.EVERY_FAILURE


@dataclass(slots=True)
class CircuitSettings:
    """Circuit breaker settings shared by all targets."""

    threshold: int = 3
    cooldown_seconds: float = 300.0
    store: str = "sqlite"
    state_path: Path = Path(".batch_orchestrator_circuits.json")


@dataclass(slots=True)
class RunnerSettings:
    """Phase runner and executor settings."""

    precondition_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    evidence_enabled: bool = True
    evidence_dir: Path = Path(".batch_orchestrator/evidence")
    workdir: Path = Path(".batch_orchestrator/work")
    task_timeout_seconds: float = 600.0
    graceful_shutdown_seconds: float = 10.0
    pipeline_path: Path = Path("pipeline.json")


@dataclass(slots=True)
class IdentitySettings:
    """Identity stamped on every run and log line."""

    flow_name: str = "batch"
    agent: str = "batch-orchestrator"
    host: str = field(default_factory=socket.gethostname)


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".batch_orchestrator.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    circuit: CircuitSettings = field(default_factory=CircuitSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("BATCH_ORCH_DB_PATH", ".batch_orchestrator.db")),
            queue=QueueSettings(
                max_retries=int(os.getenv("BATCH_ORCH_MAX_RETRIES", "1")),
                queue_max_retries=_collect_queue_retry_overrides(),
                lock_timeout_seconds=int(
                    os.getenv("BATCH_ORCH_LOCK_TIMEOUT_SECONDS", "1800"),
                ),
                error_queue=os.getenv("BATCH_ORCH_ERROR_QUEUE", "orchestrator_errors").strip(),
                dead_letter_policy=_dead_letter_policy(
                    os.getenv("BATCH_ORCH_DEAD_LETTER_POLICY", "every_failure"),
                ),
            ),
            circuit=CircuitSettings(
                threshold=int(os.getenv("BATCH_ORCH_CIRCUIT_THRESHOLD", "3")),
                cooldown_seconds=float(
                    os.getenv("BATCH_ORCH_CIRCUIT_COOLDOWN_SECONDS", "300"),
                ),
                store=os.getenv("BATCH_ORCH_CIRCUIT_STORE", "sqlite").strip().lower(),
                state_path=Path(
                    os.getenv(
                        "BATCH_ORCH_CIRCUIT_STATE_PATH",
                        ".batch_orchestrator_circuits.json",
                    ),
                ),
            ),
            runner=RunnerSettings(
                precondition_max_attempts=int(
                    os.getenv("BATCH_ORCH_PRECONDITION_MAX_ATTEMPTS", "3"),
                ),
                backoff_base_seconds=float(os.getenv("BATCH_ORCH_BACKOFF_BASE_SECONDS", "1.0")),
                evidence_enabled=_env_bool("BATCH_ORCH_EVIDENCE_ENABLED", default=True),
                evidence_dir=Path(
                    os.getenv("BATCH_ORCH_EVIDENCE_DIR", ".batch_orchestrator/evidence"),
                ),
                workdir=Path(os.getenv("BATCH_ORCH_WORKDIR", ".batch_orchestrator/work")),
                task_timeout_seconds=float(
                    os.getenv("BATCH_ORCH_TASK_TIMEOUT_SECONDS", "600"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("BATCH_ORCH_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                pipeline_path=Path(os.getenv("BATCH_ORCH_PIPELINE_PATH", "pipeline.json")),
            ),
            identity=IdentitySettings(
                flow_name=os.getenv("BATCH_ORCH_FLOW_NAME", "batch").strip(),
                agent=os.getenv("BATCH_ORCH_AGENT", "batch-orchestrator").strip(),
                host=os.getenv("BATCH_ORCH_HOST", "").strip() or socket.gethostname(),
            ),
            logging=LoggingSettings(
                level=os.getenv("BATCH_ORCH_LOG_LEVEL", "INFO").strip().upper(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.queue.max_retries < 0:
            raise ValueError("BATCH_ORCH_MAX_RETRIES must be >= 0.")
        if self.queue.lock_timeout_seconds <= 0:
            raise ValueError("BATCH_ORCH_LOCK_TIMEOUT_SECONDS must be > 0.")
        if not self.queue.error_queue:
            raise ValueError("BATCH_ORCH_ERROR_QUEUE must not be empty.")
        if self.circuit.threshold < 1:
            raise ValueError("BATCH_ORCH_CIRCUIT_THRESHOLD must be >= 1.")
        if self.circuit.cooldown_seconds < 0:
            raise ValueError("BATCH_ORCH_CIRCUIT_COOLDOWN_SECONDS must be >= 0.")
        if self.circuit.store not in CIRCUIT_STORE_KINDS:
            raise ValueError(
                f"BATCH_ORCH_CIRCUIT_STORE must be one of {', '.join(CIRCUIT_STORE_KINDS)}; "
                f"got {self.circuit.store!r}.",
            )
        if self.runner.precondition_max_attempts < 1:
            raise ValueError("BATCH_ORCH_PRECONDITION_MAX_ATTEMPTS must be >= 1.")
        if self.runner.backoff_base_seconds < 0:
            raise ValueError("BATCH_ORCH_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.runner.task_timeout_seconds <= 0:
            raise ValueError("BATCH_ORCH_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.runner.graceful_shutdown_seconds < 0:
            raise ValueError("BATCH_ORCH_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.identity.flow_name:
            raise ValueError("BATCH_ORCH_FLOW_NAME must not be empty.")
        if not self.identity.agent:
            raise ValueError("BATCH_ORCH_AGENT must not be empty.")
        if self.logging.level not in LOG_LEVELS:
            raise ValueError(
                f"BATCH_ORCH_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}; "
                f"got {self.logging.level!r}.",
            )


def _collect_queue_retry_overrides() -> dict[str, int]:
    raw = os.getenv("BATCH_ORCH_QUEUE_MAX_RETRIES", "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid BATCH_ORCH_QUEUE_MAX_RETRIES entry: "
                f"{token!r}. Expected format '<queue_name>|<max_retries>'.",
            )
        queue_name, retries_raw = token.rsplit("|", 1)
        queue_name = queue_name.strip()
        retries_raw = retries_raw.strip()
        try:
            retries = int(retries_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid BATCH_ORCH_QUEUE_MAX_RETRIES value for {queue_name!r}: {retries_raw!r}",
            ) from error
        if not queue_name or retries < 0:
            raise ValueError(
                "Invalid BATCH_ORCH_QUEUE_MAX_RETRIES entry: "
                f"{token!r} (queue name required, retries must be >= 0)",
            )
        overrides[queue_name] = retries
    return overrides


def _dead_letter_policy(value: str) -> DeadLetterPolicy:
    normalized = value.strip().lower()
    try:
        return DeadLetterPolicy(normalized)
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in DeadLetterPolicy)
        raise ValueError(
            f"Invalid BATCH_ORCH_DEAD_LETTER_POLICY: {value!r}. Expected one of: {allowed}.",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
