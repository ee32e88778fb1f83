"""Exit codes and CI output lines.

CI pipelines branch on these numbers; they must not change.
"""

from __future__ import annotations

from resim_cli.models import (
    ACTIVE_STATUSES,
    CANCELLED,
    ERROR,
    FAILED,
    SUCCEEDED,
    ValidationError,
)

EXIT_SUCCEEDED = 0
EXIT_INTERNAL = 1
EXIT_FAILED = 2
EXIT_ERROR = 3
EXIT_NOT_TERMINAL = 4
EXIT_CANCELLED = 5
EXIT_TIMEOUT = 6
EXIT_INTERRUPTED = 130

_TERMINAL_EXIT_CODES = {
    SUCCEEDED: EXIT_SUCCEEDED,
    FAILED: EXIT_FAILED,
    ERROR: EXIT_ERROR,
    CANCELLED: EXIT_CANCELLED,
}


def exit_code_for_status(status: str) -> int:
    if status in _TERMINAL_EXIT_CODES:
        return _TERMINAL_EXIT_CODES[status]
    if status in ACTIVE_STATUSES:
        return EXIT_NOT_TERMINAL
    raise ValidationError(f"unknown status: {status}")


def github_line(key: str, value: object) -> str:
    """``batch_id=<uuid>``; one line that CI steps can append to their outputs."""
    return f"{key}={value}"


def suite_revision_token(suite_id: str, revision: int) -> str:
    return f"{suite_id}/{revision}"
