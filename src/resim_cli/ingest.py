"""Log ingestion: turn externally recorded logs into experiences and run a batch over them.

The orchestrator is idempotent per ``(system, branch, version)`` for the
build and per log name for the experience, so re-running the same ingest
command reuses what the first run created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from resim_cli.context import ResimContext
from resim_cli.models import (
    INGESTED_TAG,
    LOG_INGEST_IMAGE_URI,
    ConflictError,
    LogSource,
    ResolutionError,
    ValidationError,
)
from resim_cli.resolver import BUILD, EXPERIENCE, SYSTEM
from resim_cli.resources import (
    create_experience,
    find_build,
    get_or_create_branch,
    get_or_create_experience_tag,
    tag_experience,
)
from resim_cli.submission import ci_account, triggered_via
from resim_cli.utils import parse_uuid, split_csv

_log = logging.getLogger("resim.ingest")

DEFAULT_BRANCH = "log-ingest-branch"
DEFAULT_VERSION = "latest"
INGEST_BUILD_DESCRIPTION = "A ReSim Log Ingest Build"
INGEST_EXPERIENCE_DESCRIPTION = "Ingested into ReSim via the CLI"


def parse_log_pairs(pairs: list[str] | None) -> list[LogSource]:
    sources: list[LogSource] = []
    for pair in pairs or []:
        if "=" not in pair:
            raise ValidationError(
                f"invalid log pair format: {pair} (expected 'name=location')"
            )
        name, location = pair.split("=", 1)
        source = LogSource(name=name.strip(), location=location.strip())
        if not source.name or not source.location:
            raise ValidationError(
                f"both name and location must be non-empty in pair: {pair}"
            )
        sources.append(source)
    return sources


def read_log_config(path: str) -> list[LogSource]:
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"failed to read config file: {exc}") from exc
    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"failed to parse config file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("failed to parse config file: expected a mapping with 'logs'")
    entries = payload.get("logs") or []
    if not isinstance(entries, list) or not entries:
        raise ValidationError("no logs defined in config file")
    sources: list[LogSource] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValidationError(f"log at index {index} must be a mapping")
        source = LogSource.from_json(entry)
        if not source.name:
            raise ValidationError(f"log at index {index} missing name")
        if not source.location:
            raise ValidationError(f"log at index {index} missing location")
        sources.append(source)
    return sources


def collect_log_sources(
    *,
    log_name: str | None = None,
    log_location: str | None = None,
    log_pairs: list[str] | None = None,
    log_config: str | None = None,
) -> list[LogSource]:
    forms = [
        label
        for label, present in (
            ("log-config", bool(log_config)),
            ("log", bool(log_pairs)),
            ("log-name/log-location", bool(log_name or log_location)),
        )
        if present
    ]
    if len(forms) > 1:
        raise ValidationError(
            f"failed to ingest: {', '.join(forms)} are mutually exclusive parameters"
        )
    if bool(log_name) != bool(log_location):
        raise ValidationError("failed to ingest: log-name and log-location must be set together")
    if log_config:
        sources = read_log_config(log_config)
    elif log_pairs:
        sources = parse_log_pairs(log_pairs)
    elif log_name:
        sources = parse_log_pairs([f"{log_name}={log_location}"])
    else:
        raise ValidationError(
            "No logs specified. Use --log flags or --log-config to specify logs to ingest"
        )
    seen: set[str] = set()
    for source in sources:
        if source.name in seen:
            raise ValidationError(f"Duplicate log name found: {source.name}")
        seen.add(source.name)
    return sources


@dataclass(frozen=True)
class IngestRequest:
    metrics_build_id: str
    logs: tuple[LogSource, ...]
    build_id: str | None = None
    system: str | None = None
    branch: str = DEFAULT_BRANCH
    version: str = DEFAULT_VERSION
    tags: tuple[str, ...] = ()
    reingest: bool = False
    batch_name: str | None = None
    account: str | None = None

    @classmethod
    def build(
        cls,
        *,
        metrics_build_id: str | None,
        logs: list[LogSource],
        build_id: str | None = None,
        system: str | None = None,
        branch: str | None = None,
        version: str | None = None,
        tags: list[str] | None = None,
        reingest: bool = False,
        batch_name: str | None = None,
        account: str | None = None,
    ) -> "IngestRequest":
        if build_id and (system or branch or version):
            raise ValidationError(
                "failed to ingest: build-id and system/branch/version are mutually exclusive parameters"
            )
        if not build_id and not system:
            raise ValidationError("failed to ingest: must specify either a build ID or a system")
        if not metrics_build_id:
            raise ValidationError("Metrics build ID is required")
        return cls(
            metrics_build_id=parse_uuid(metrics_build_id, label="metrics-build ID"),
            logs=tuple(logs),
            build_id=parse_uuid(build_id, label="build ID") if build_id else None,
            system=system,
            branch=(branch or DEFAULT_BRANCH).strip(),
            version=(version or DEFAULT_VERSION).strip(),
            tags=tuple(dict.fromkeys([*split_csv(tags), INGESTED_TAG])),
            reingest=reingest,
            batch_name=batch_name or None,
            account=account,
        )


@dataclass
class IngestResult:
    batch: dict[str, Any]
    build_id: str
    experience_ids: list[str] = field(default_factory=list)
    created_experiences: list[str] = field(default_factory=list)


def ensure_ingest_build(ctx: ResimContext, request: IngestRequest) -> str:
    if request.build_id:
        return ctx.resolver.resolve_id(BUILD, request.build_id, project_id=ctx.project_id)
    system_id = ctx.resolver.resolve_id(SYSTEM, request.system, project_id=ctx.project_id)
    branch = get_or_create_branch(ctx, request.branch, auto_create=True)
    existing = find_build(
        ctx,
        branch_id=branch["branchID"],
        system_id=system_id,
        image=LOG_INGEST_IMAGE_URI,
        version=request.version,
    )
    if existing is not None:
        _log.info("ingest_build_reused build_id=%s", existing["buildID"])
        return str(existing["buildID"])
    record = ctx.transport.post(
        f"projects/{ctx.project_id}/branches/{branch['branchID']}/builds",
        {
            "description": INGEST_BUILD_DESCRIPTION,
            "imageUri": LOG_INGEST_IMAGE_URI,
            "version": request.version,
            "systemID": system_id,
        },
        action="unable to create build",
    )
    _log.info("ingest_build_created build_id=%s", record["buildID"])
    return str(record["buildID"])


def _tag_quietly(ctx: ResimContext, tag: str, experience_id: str) -> None:
    get_or_create_experience_tag(ctx, tag)
    try:
        tag_experience(ctx, tag=tag, experience=experience_id)
    except ConflictError:
        _log.info("ingest_tag_exists tag=%s experience_id=%s", tag, experience_id)


def materialize_experience(
    ctx: ResimContext, source: LogSource, tags: tuple[str, ...]
) -> tuple[str, bool]:
    """Return the experience ID for *source* and whether it was newly created."""
    existing = ctx.resolver.lookup(EXPERIENCE, source.name, project_id=ctx.project_id)
    created = existing is None
    if existing is None:
        record = create_experience(
            ctx,
            name=source.name,
            description=INGEST_EXPERIENCE_DESCRIPTION,
            locations=[source.location],
        )
    else:
        record = existing
        if source.location not in (record.get("locations") or [record.get("location")]):
            _log.warning(
                "ingest_location_mismatch experience=%s location=%s",
                source.name,
                source.location,
            )
    experience_id = str(record["experienceID"])
    for tag in tags:
        _tag_quietly(ctx, tag, experience_id)
    return experience_id, created


def run_ingest(
    ctx: ResimContext,
    request: IngestRequest,
    *,
    emit: Callable[[str], None] | None = None,
) -> IngestResult:
    build_id = ensure_ingest_build(ctx, request)
    result = IngestResult(batch={}, build_id=build_id)
    for source in request.logs:
        if emit is not None:
            emit(f"Processing log: {source.name}")
        if request.reingest:
            record = ctx.resolver.lookup(EXPERIENCE, source.name, project_id=ctx.project_id)
            if record is None:
                raise ResolutionError(
                    f"failed to find experience with name or ID: {source.name} (required by --reingest)"
                )
            result.experience_ids.append(str(record["experienceID"]))
            continue
        experience_id, created = materialize_experience(ctx, source, request.tags)
        result.experience_ids.append(experience_id)
        if created:
            result.created_experiences.append(experience_id)

    body: dict[str, Any] = {
        "buildID": build_id,
        "experienceIDs": list(result.experience_ids),
        "metricsBuildID": request.metrics_build_id,
        "associatedAccount": request.account if request.account is not None else ci_account(),
    }
    via = triggered_via()
    if via is not None:
        body["triggeredVia"] = via
    if request.batch_name:
        body["batchName"] = request.batch_name
    result.batch = ctx.transport.post(
        f"projects/{ctx.project_id}/batches", body, action="unable to create batch"
    )
    _log.info(
        "ingest_batch_submitted batch_id=%s experiences=%d created=%d",
        result.batch.get("batchID"),
        len(result.experience_ids),
        len(result.created_experiences),
    )
    return result


def results_url(app_url: str | None, project_id: str, batch_id: str) -> str | None:
    if not app_url:
        return None
    return f"{app_url.rstrip('/')}/projects/{project_id}/batches/{batch_id}"
