from __future__ import annotations

import datetime as dt
import os
import re
import uuid
from pathlib import Path
from typing import Iterable

from resim_cli.models import ValidationError

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_rfc3339(value: str, *, field_name: str) -> dt.datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(
            f"invalid {field_name} '{value}': expected an RFC3339 timestamp"
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def format_rfc3339(value: dt.datetime) -> str:
    return (
        value.astimezone(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def parse_duration(value: str | float | int, *, field_name: str) -> float:
    """Parse ``1h30m``, ``45s``, ``250ms`` or a bare number of seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValidationError(f"empty {field_name}")
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ValidationError(
            f"invalid {field_name} '{value}': expected a duration like 30s, 10m or 1h"
        )
    return total


def format_duration(seconds: float) -> str:
    whole = int(seconds)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return out + f"{secs}s"


def split_csv(raw_items: Iterable[str] | str | None) -> list[str]:
    """Flatten repeated and comma-separated flag values, dropping blanks."""
    if raw_items is None:
        return []
    if isinstance(raw_items, str):
        raw_items = [raw_items]
    out: list[str] = []
    for item in raw_items:
        for token in str(item).split(","):
            value = token.strip()
            if value:
                out.append(value)
    return out


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value).strip())
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def parse_uuid(value: str | None, *, label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"empty {label}")
    try:
        parsed = uuid.UUID(text)
    except ValueError as exc:
        raise ValidationError(f"failed to parse {label}: {text}") from exc
    if parsed.int == 0:
        raise ValidationError(f"failed to parse {label}: nil UUID")
    return str(parsed)


def atomic_write_text(path: Path, content: str, *, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        if mode is None:
            tmp.write_text(content, encoding="utf-8")
        else:
            # Created with the final mode so the content is never readable by others.
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            os.fchmod(fd, mode)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
        tmp.replace(path)
    except Exception:
        # Clean up the temp file so we don't leave partial writes on disk.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def env_flag_name(flag: str) -> str:
    """``auth-url`` -> ``RESIM_AUTH_URL``."""
    return "RESIM_" + flag.strip("-").replace("-", "_").upper()
