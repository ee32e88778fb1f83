"""List, download and register batch or job logs."""

from __future__ import annotations

import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from resim_cli.models import ResimError, ResolutionError, ValidationError
from resim_cli.resolver import BATCH
from resim_cli.workitems import BatchItem

_log = logging.getLogger("resim.logs")

ARCHIVE_LOG = "ARCHIVE_LOG"
_ZIP_MAGIC = b"PK\x03\x04"


@dataclass(frozen=True)
class DownloadableLog:
    file_name: str
    location: str
    size: int
    log_type: str | None = None

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "DownloadableLog":
        file_name = str(payload.get("fileName") or "").strip()
        if not file_name:
            raise ValidationError("log record has no file name")
        return cls(
            file_name=file_name,
            location=str(payload.get("logOutputLocation") or ""),
            size=int(payload.get("fileSize") or 0),
            log_type=payload.get("logType"),
        )


def list_logs(item: BatchItem, *, job_id: str | None = None) -> list[dict[str, Any]]:
    if job_id:
        return item.list_job_logs(job_id)
    return item.list_logs()


def register_log(
    item: BatchItem,
    job_id: str,
    *,
    file_name: str,
    file_size: int | None,
    checksum: str = "",
) -> dict[str, Any]:
    """Register a log file a job produced; the reply names the upload location."""
    name = str(file_name or "").strip()
    if not name:
        raise ValidationError("Empty log filename")
    if file_size is None or file_size < 0:
        raise ValidationError("Empty file size")
    batch_path = BATCH.item_path(item.ctx.project_id, item.item_id)
    if item.ctx.transport.get_optional(batch_path, action="unable to retrieve batch") is None:
        raise ResolutionError(f"Unable to find batch with id {item.item_id}")
    if item.get_job(job_id) is None:
        raise ResolutionError(f"Unable to find job with id {job_id}")
    return item.create_job_log(
        job_id, {"fileName": name, "fileSize": int(file_size), "checksum": checksum}
    )


def filter_logs(logs: list[DownloadableLog], files: list[str]) -> list[DownloadableLog]:
    """Keep only *files*; every requested name must be present."""
    if not files:
        return logs
    wanted = set(files)
    selected = [entry for entry in logs if entry.file_name in wanted]
    if {entry.file_name for entry in selected} != wanted:
        missing = sorted(wanted - {entry.file_name for entry in selected})
        raise ValidationError(f"not all expected logs were found: missing {missing}")
    return selected


def _inside(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def is_zip_file(path: Path) -> bool:
    with path.open("rb") as handle:
        return handle.read(len(_ZIP_MAGIC)) == _ZIP_MAGIC


def extract_zip(archive: Path, destination: Path) -> list[Path]:
    """Extract *archive* into *destination*, refusing entries that escape it."""
    extracted: list[Path] = []
    with zipfile.ZipFile(archive) as bundle:
        for member in bundle.infolist():
            target = destination / member.filename
            if not _inside(destination, target):
                raise ResimError(f"illegal file path: {target}")
            if target.resolve() == destination.resolve():
                continue
            if member.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with bundle.open(member) as source, target.open("wb") as sink:
                shutil.copyfileobj(source, sink)
            extracted.append(target)
    return extracted


def download_logs(
    item: BatchItem,
    output_dir: Path,
    *,
    job_id: str | None = None,
    files: list[str] | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> list[Path]:
    """Download logs into *output_dir*; returns the paths left on disk.

    ``ARCHIVE_LOG`` entries that turn out to be zip files are expanded in
    place and the archive itself is removed.
    """
    output_dir = output_dir.expanduser().resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    entries = [DownloadableLog.from_json(raw) for raw in list_logs(item, job_id=job_id)]
    entries = filter_logs(entries, list(files or []))

    written: list[Path] = []
    for entry in entries:
        target = output_dir / entry.file_name
        if not _inside(output_dir, target):
            raise ResimError(f"illegal file path: {target}")
        if on_progress is not None:
            on_progress(f"Downloading {entry.file_name}...")
        size = item.ctx.transport.download(
            entry.location, target, action="unable to download log"
        )
        if size != entry.size:
            raise ResimError(
                f"unable to download log: wrote {size} bytes to {target} but expected {entry.size}"
            )
        if entry.log_type == ARCHIVE_LOG and is_zip_file(target):
            if on_progress is not None:
                on_progress(f"Unzipping {entry.file_name}...")
            written.extend(extract_zip(target, target.parent))
            target.unlink()
            continue
        written.append(target)
    _log.info(
        "logs_downloaded batch_id=%s job_id=%s count=%d output=%s",
        item.item_id,
        job_id,
        len(entries),
        output_dir,
    )
    return written
