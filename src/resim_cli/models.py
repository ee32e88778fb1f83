from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


class ResimError(RuntimeError):
    """Base error for CLI failures."""


class ValidationError(ResimError):
    """Raised when user input is rejected before any remote call."""


class ResolutionError(ResimError):
    """Raised when a name or ID does not match a remote record."""


class ConflictError(ResimError):
    """Raised when a create or attach collides with an existing record."""


class AuthError(ResimError):
    """Raised when no usable bearer token can be obtained."""


class TransportError(ResimError):
    """Raised when the platform cannot be reached within the retry budget."""


class RemoteError(ResimError):
    """The platform answered with an unexpected status code."""

    def __init__(self, action: str, http_code: int, body: str):
        super().__init__(action)
        self.action = action
        self.http_code = http_code
        self.body = body

    def __str__(self) -> str:
        return f"{self.action}: unexpected response (HTTP {self.http_code}): {self.body}"


class ObserverTimeout(ResimError):
    """Raised when a work item is still running after the caller's deadline."""

    def __init__(self, message: str, last_status: str | None = None):
        super().__init__(message)
        self.last_status = last_status


# Work item statuses as reported by the platform.
SUBMITTED = "SUBMITTED"
RUNNING = "RUNNING"
EXPERIENCES_RUNNING = "EXPERIENCES_RUNNING"
BATCH_METRICS_QUEUED = "BATCH_METRICS_QUEUED"
BATCH_METRICS_RUNNING = "BATCH_METRICS_RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
ERROR = "ERROR"
CANCELLED = "CANCELLED"

TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED, ERROR, CANCELLED})
ACTIVE_STATUSES = frozenset(
    {
        SUBMITTED,
        RUNNING,
        EXPERIENCES_RUNNING,
        BATCH_METRICS_QUEUED,
        BATCH_METRICS_RUNNING,
    }
)

# Per-job outcome after metrics have been computed.
CONFLATED_JOB_STATUSES = (
    "QUEUED",
    "RUNNING",
    "PASSED",
    "FAILED",
    "ERROR",
    "WARNING",
    "BLOCKER",
    "CANCELLED",
)
RERUN_ELIGIBLE_JOB_STATUSES = frozenset(
    {"PASSED", "FAILED", "ERROR", "WARNING", "BLOCKER", "CANCELLED"}
)

BRANCH_TYPES = ("RELEASE", "MAIN", "CHANGE_REQUEST")

INGESTED_TAG = "ingested-via-resim"
LOG_INGEST_IMAGE_URI = "public.ecr.aws/resim/open-builds/log-ingest:latest"
METRICS_2_POOL_LABEL = "resim:metrics2"
DEBUG_POOL_LABEL = "resim:k8s"
RESERVED_POOL_LABEL = "resim"


@dataclass(frozen=True)
class WorkStatus:
    """One observation of a remote work item."""

    item_id: str
    status: str
    record: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class Observation:
    final: WorkStatus
    polls: int
    history: tuple[str, ...]
    elapsed_sec: float


@dataclass(frozen=True)
class SupervisePolicy:
    max_rerun_attempts: int = 1
    rerun_on_states: tuple[str, ...] = ("ERROR",)
    rerun_max_failure_percent: float = 100.0
    wait_timeout_sec: float | None = None
    poll_interval_sec: float = 10.0

    def to_json(self) -> dict[str, Any]:
        return {
            "max_rerun_attempts": self.max_rerun_attempts,
            "rerun_on_states": list(self.rerun_on_states),
            "rerun_max_failure_percent": self.rerun_max_failure_percent,
            "wait_timeout_sec": self.wait_timeout_sec,
            "poll_interval_sec": self.poll_interval_sec,
        }


@dataclass(frozen=True)
class SuperviseResult:
    batch_id: str
    final_status: str
    attempts: int
    reruns: tuple[tuple[str, ...], ...]
    stop_reason: str

    def to_json(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "final_status": self.final_status,
            "attempts": self.attempts,
            "reruns": [list(job_ids) for job_ids in self.reruns],
            "stop_reason": self.stop_reason,
        }


@dataclass(frozen=True)
class LogSource:
    """A log to ingest: experience name plus its storage location."""

    name: str
    location: str

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "LogSource":
        return cls(
            name=str(payload.get("name") or "").strip(),
            location=str(payload.get("location") or "").strip(),
        )


@dataclass(frozen=True)
class SuiteSelection:
    test_suite: str
    enabled: bool = True

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "SuiteSelection":
        return cls(
            test_suite=str(payload.get("testSuite") or "").strip(),
            enabled=bool(payload.get("enabled", True)),
        )


@dataclass(frozen=True)
class SweepParameter:
    name: str
    values: tuple[str, ...]

    def to_json(self) -> dict[str, Any]:
        return {"name": self.name, "values": list(self.values)}
