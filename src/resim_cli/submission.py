"""Build and post work requests: batches, sweeps, suite runs, reports, workflow runs.

Request objects are validated entirely locally (``*.build`` classmethods) so
bad input fails before any network call; ``submit_*`` functions then resolve
names against the platform and post.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from resim_cli.context import ResimContext
from resim_cli.models import (
    METRICS_2_POOL_LABEL,
    RESERVED_POOL_LABEL,
    SweepParameter,
    ValidationError,
)
from resim_cli.resolver import BRANCH, BUILD, TEST_SUITE, WORKFLOW
from resim_cli.utils import format_rfc3339, is_uuid, parse_rfc3339, parse_uuid, split_csv

_log = logging.getLogger("resim.submission")


# Input parsing


def parse_parameter(item: str, *, separators: tuple[str, ...]) -> tuple[str, str]:
    """Split ``name=value`` (or ``name:value``) on the first usable separator."""
    for separator in separators:
        if separator in item:
            key, value = item.split(separator, 1)
            key = key.strip()
            if not key:
                raise ValidationError(f"empty parameter name in '{item}'")
            return key, value
    expected = " or ".join(f"<parameter-name>{sep}<parameter-value>" for sep in separators)
    raise ValidationError(f"failed to parse parameter: {item} - must be in the format {expected}")


def parse_parameters(
    raw_items: list[str] | None, *, separators: tuple[str, ...] = ("=", ":")
) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in raw_items or []:
        key, value = parse_parameter(item, separators=separators)
        if key in parsed:
            raise ValidationError(f"duplicate parameter '{key}'")
        parsed[key] = value
    return parsed


def validate_pool_labels(raw_items: list[str] | None) -> list[str]:
    labels = split_csv(raw_items)
    for label in labels:
        if label == RESERVED_POOL_LABEL:
            raise ValidationError(
                f"failed to run command: {RESERVED_POOL_LABEL} is a reserved pool label"
            )
    return list(dict.fromkeys(labels))


def apply_metrics_set(
    metrics_set: str | None, pool_labels: list[str]
) -> tuple[str | None, list[str]]:
    """Metrics 2.0 steps only run on the dedicated pool, so request it."""
    if metrics_set is None:
        return None, pool_labels
    labels = list(pool_labels)
    if METRICS_2_POOL_LABEL not in labels:
        labels.append(METRICS_2_POOL_LABEL)
    return metrics_set, labels


def validate_allowable_failure_percent(value: int | None) -> int | None:
    if value is None:
        return None
    if not 0 <= int(value) <= 100:
        raise ValidationError("allowable failure percent must be between 0 and 100")
    return int(value)


def ci_account(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    for key in ("GITHUB_ACTOR", "GITHUB_TRIGGERING_ACTOR", "GITLAB_USER_LOGIN"):
        value = env.get(key, "").strip()
        if value:
            return value
    return ""


def triggered_via(environ: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if environ is None else environ
    if env.get("GITHUB_ACTOR") or env.get("GITHUB_ACTIONS"):
        return "GITHUB"
    if env.get("GITLAB_USER_LOGIN") or env.get("GITLAB_CI"):
        return "GITLAB"
    if env.get("CI"):
        return None
    return "LOCAL"


def parse_uuid_list(raw: str | None, *, label: str) -> list[str]:
    return [parse_uuid(item, label=label) for item in split_csv(raw)]


def split_ids_and_names(raw: str | None) -> tuple[list[str], list[str]]:
    ids: list[str] = []
    names: list[str] = []
    for item in split_csv(raw):
        (ids if is_uuid(item) else names).append(item)
    return ids, names


@dataclass(frozen=True)
class ExperienceSelection:
    experience_ids: tuple[str, ...] = ()
    experience_names: tuple[str, ...] = ()
    tag_ids: tuple[str, ...] = ()
    tag_names: tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        *,
        action: str,
        experience_ids: str | None = None,
        experiences: str | None = None,
        tag_ids: str | None = None,
        tag_names: str | None = None,
        tags: str | None = None,
    ) -> "ExperienceSelection":
        if tag_ids and tag_names:
            raise ValidationError(
                f"{action}: experience-tag-names and experience-tag-ids are mutually exclusive parameters"
            )
        all_ids = parse_uuid_list(experience_ids, label="experience ID")
        mixed_ids, mixed_names = split_ids_and_names(experiences)
        all_tag_ids = parse_uuid_list(tag_ids, label="experience tag ID")
        all_tag_names = split_csv(tag_names)
        mixed_tag_ids, mixed_tag_names = split_ids_and_names(tags)
        selection = cls(
            experience_ids=tuple(dict.fromkeys(all_ids + mixed_ids)),
            experience_names=tuple(dict.fromkeys(mixed_names)),
            tag_ids=tuple(dict.fromkeys(all_tag_ids + mixed_tag_ids)),
            tag_names=tuple(dict.fromkeys(all_tag_names + mixed_tag_names)),
        )
        if selection.empty:
            raise ValidationError(f"{action}: must choose at least one experience or experience tag")
        return selection

    @property
    def empty(self) -> bool:
        return not (
            self.experience_ids or self.experience_names or self.tag_ids or self.tag_names
        )

    def to_json(self) -> dict[str, list[str]]:
        payload: dict[str, list[str]] = {}
        if self.experience_ids:
            payload["experienceIDs"] = list(self.experience_ids)
        if self.experience_names:
            payload["experienceNames"] = list(self.experience_names)
        if self.tag_ids:
            payload["experienceTagIDs"] = list(self.tag_ids)
        if self.tag_names:
            payload["experienceTagNames"] = list(self.tag_names)
        return payload


def _common_fields(
    *,
    account: str | None,
    metrics_set: str | None,
    pool_labels: list[str],
    environ: Mapping[str, str] | None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "associatedAccount": account if account is not None else ci_account(environ),
    }
    via = triggered_via(environ)
    if via is not None:
        body["triggeredVia"] = via
    if metrics_set is not None:
        body["metricsSetName"] = metrics_set
    if pool_labels:
        body["poolLabels"] = list(pool_labels)
    return body


# Batches


@dataclass(frozen=True)
class BatchRequest:
    build_id: str
    experiences: ExperienceSelection
    metrics_build_id: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    pool_labels: tuple[str, ...] = ()
    account: str | None = None
    batch_name: str | None = None
    allowable_failure_percent: int | None = None
    metrics_set: str | None = None

    @classmethod
    def build(
        cls,
        *,
        build_id: str | None,
        experiences: ExperienceSelection,
        metrics_build_id: str | None = None,
        parameters: list[str] | None = None,
        pool_labels: list[str] | None = None,
        account: str | None = None,
        batch_name: str | None = None,
        allowable_failure_percent: int | None = None,
        metrics_set: str | None = None,
    ) -> "BatchRequest":
        metrics_set, labels = apply_metrics_set(metrics_set, validate_pool_labels(pool_labels))
        return cls(
            build_id=parse_uuid(build_id, label="build ID"),
            experiences=experiences,
            metrics_build_id=(
                parse_uuid(metrics_build_id, label="metrics-build ID")
                if metrics_build_id
                else None
            ),
            parameters=parse_parameters(parameters),
            pool_labels=tuple(labels),
            account=account,
            batch_name=batch_name or None,
            allowable_failure_percent=validate_allowable_failure_percent(
                allowable_failure_percent
            ),
            metrics_set=metrics_set,
        )

    def to_json(self, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "buildID": self.build_id,
            "parameters": dict(self.parameters),
            **self.experiences.to_json(),
            **_common_fields(
                account=self.account,
                metrics_set=self.metrics_set,
                pool_labels=list(self.pool_labels),
                environ=environ,
            ),
        }
        if self.metrics_build_id:
            body["metricsBuildID"] = self.metrics_build_id
        if self.batch_name:
            body["batchName"] = self.batch_name
        if self.allowable_failure_percent is not None:
            body["allowableFailurePercent"] = self.allowable_failure_percent
        return body


def submit_batch(ctx: ResimContext, request: BatchRequest) -> dict[str, Any]:
    # Confirms the build exists in this project before submitting.
    ctx.resolver.resolve(BUILD, request.build_id, project_id=ctx.project_id)
    record = ctx.transport.post(
        f"projects/{ctx.project_id}/batches",
        request.to_json(),
        action="failed to create batch",
    )
    _log.info(
        "batch_submitted batch_id=%s build_id=%s",
        record.get("batchID"),
        request.build_id,
    )
    return record


# Sweeps


def load_grid_search_config(path: str) -> list[SweepParameter]:
    config_path = Path(path)
    if not config_path.exists():
        raise ValidationError(f"grid search config does not exist: {config_path}")
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid grid search config {config_path}: {exc}") from exc
    if not isinstance(payload, list) or not payload:
        raise ValidationError(
            "invalid grid search config: expected a non-empty list of {name, values}"
        )
    parameters: list[SweepParameter] = []
    seen: set[str] = set()
    for entry in payload:
        if not isinstance(entry, dict):
            raise ValidationError("invalid grid search config: entries must be objects")
        name = str(entry.get("name") or "").strip()
        values = entry.get("values")
        if not name:
            raise ValidationError("invalid grid search config: empty parameter name")
        if not isinstance(values, list) or not values:
            raise ValidationError(f"invalid grid search config: parameter '{name}' has no values")
        if name in seen:
            raise ValidationError(f"invalid grid search config: duplicate parameter '{name}'")
        seen.add(name)
        parameters.append(SweepParameter(name=name, values=tuple(str(v) for v in values)))
    return parameters


def sweep_cardinality(parameters: list[SweepParameter]) -> int:
    return math.prod(len(parameter.values) for parameter in parameters)


def _flag_group_error(group: list[str], set_flags: list[str]) -> ValidationError:
    return ValidationError(
        "failed to create sweep: you cannot specify both a grid search config and a "
        f"parameter name/values; if any flags in the group [{' '.join(group)}] are set "
        f"none of the others can be; [{' '.join(set_flags)}] were all set"
    )


@dataclass(frozen=True)
class SweepRequest:
    build_id: str
    parameters: tuple[SweepParameter, ...]
    experiences: ExperienceSelection
    metrics_build_id: str | None = None
    pool_labels: tuple[str, ...] = ()
    account: str | None = None
    metrics_set: str | None = None

    @classmethod
    def build(
        cls,
        *,
        build_id: str | None,
        experiences: ExperienceSelection,
        grid_search_config: str | None = None,
        parameter_name: str | None = None,
        parameter_values: str | None = None,
        metrics_build_id: str | None = None,
        pool_labels: list[str] | None = None,
        account: str | None = None,
        metrics_set: str | None = None,
    ) -> "SweepRequest":
        set_flags = [
            flag
            for flag, value in (
                ("grid-search-config", grid_search_config),
                ("parameter-name", parameter_name),
                ("parameter-values", parameter_values),
            )
            if value
        ]
        if grid_search_config and (parameter_name or parameter_values):
            raise _flag_group_error(
                ["grid-search-config", "parameter-name", "parameter-values"], set_flags
            )
        if grid_search_config:
            parameters = load_grid_search_config(grid_search_config)
        elif parameter_name and parameter_values:
            values = split_csv(parameter_values)
            if not values:
                raise ValidationError(f"parameter '{parameter_name}' has no values")
            parameters = [SweepParameter(name=parameter_name.strip(), values=tuple(values))]
        else:
            raise ValidationError(
                "failed to create sweep: must specify either a grid search config "
                "or a parameter name *and* values"
            )
        metrics_set, labels = apply_metrics_set(metrics_set, validate_pool_labels(pool_labels))
        return cls(
            build_id=parse_uuid(build_id, label="build ID"),
            parameters=tuple(parameters),
            experiences=experiences,
            metrics_build_id=(
                parse_uuid(metrics_build_id, label="metrics-build ID")
                if metrics_build_id
                else None
            ),
            pool_labels=tuple(labels),
            account=account,
            metrics_set=metrics_set,
        )

    @property
    def expected_batches(self) -> int:
        return sweep_cardinality(list(self.parameters))

    def to_json(self, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "buildID": self.build_id,
            "parameters": [parameter.to_json() for parameter in self.parameters],
            **self.experiences.to_json(),
            **_common_fields(
                account=self.account,
                metrics_set=self.metrics_set,
                pool_labels=list(self.pool_labels),
                environ=environ,
            ),
        }
        if self.metrics_build_id:
            body["metricsBuildID"] = self.metrics_build_id
        return body


def submit_sweep(ctx: ResimContext, request: SweepRequest) -> dict[str, Any]:
    record = ctx.transport.post(
        f"projects/{ctx.project_id}/sweeps",
        request.to_json(),
        action="failed to create sweep",
    )
    _log.info(
        "sweep_submitted sweep_id=%s expected_batches=%d",
        record.get("parameterSweepID"),
        request.expected_batches,
    )
    return record


# Test suite runs


@dataclass(frozen=True)
class SuiteRunRequest:
    test_suite: str
    revision: int | None
    build_id: str
    parameters: dict[str, str] = field(default_factory=dict)
    pool_labels: tuple[str, ...] = ()
    account: str | None = None
    batch_name: str | None = None
    allowable_failure_percent: int | None = None
    metrics_set: str | None = None

    @classmethod
    def build(
        cls,
        *,
        test_suite: str | None,
        build_id: str | None,
        revision: int | None = None,
        parameters: list[str] | None = None,
        pool_labels: list[str] | None = None,
        account: str | None = None,
        batch_name: str | None = None,
        allowable_failure_percent: int | None = None,
        metrics_set: str | None = None,
    ) -> "SuiteRunRequest":
        suite = str(test_suite or "").strip()
        if not suite:
            raise ValidationError("empty test suite name")
        metrics_set, labels = apply_metrics_set(metrics_set, validate_pool_labels(pool_labels))
        return cls(
            test_suite=suite,
            revision=revision,
            build_id=parse_uuid(build_id, label="build ID"),
            parameters=parse_parameters(parameters, separators=("=", ":")),
            pool_labels=tuple(labels),
            account=account,
            batch_name=batch_name or None,
            allowable_failure_percent=validate_allowable_failure_percent(
                allowable_failure_percent
            ),
            metrics_set=metrics_set,
        )


def run_test_suite(ctx: ResimContext, request: SuiteRunRequest) -> dict[str, Any]:
    suite = ctx.resolver.resolve_test_suite(
        ctx.project_id, request.test_suite, revision=request.revision
    )
    body: dict[str, Any] = {
        "buildID": request.build_id,
        "parameters": dict(request.parameters),
        **_common_fields(
            account=request.account,
            metrics_set=request.metrics_set,
            pool_labels=list(request.pool_labels),
            environ=None,
        ),
    }
    if request.batch_name:
        body["batchName"] = request.batch_name
    if request.allowable_failure_percent is not None:
        body["allowableFailurePercent"] = request.allowable_failure_percent
    path = (
        f"{TEST_SUITE.item_path(ctx.project_id, suite['testSuiteID'])}"
        f"/revisions/{suite.get('testSuiteRevision', 0)}/batches"
    )
    return ctx.transport.post(path, body, action="failed to run test suite")


# Reports


@dataclass(frozen=True)
class ReportRequest:
    test_suite: str
    revision: int | None
    branch: str
    metrics_build_id: str
    start: dt.datetime
    end: dt.datetime
    respect_revision_boundary: bool = False
    name: str | None = None
    account: str | None = None
    metrics_set: str | None = None

    @classmethod
    def build(
        cls,
        *,
        test_suite: str | None,
        branch: str | None,
        metrics_build_id: str | None,
        revision: int | None = None,
        length_days: int | None = None,
        start_timestamp: str | None = None,
        end_timestamp: str | None = None,
        respect_revision_boundary: bool = False,
        name: str | None = None,
        account: str | None = None,
        metrics_set: str | None = None,
        now: dt.datetime | None = None,
    ) -> "ReportRequest":
        suite = str(test_suite or "").strip()
        if not suite:
            raise ValidationError("empty test suite name")
        branch_name = str(branch or "").strip()
        if not branch_name:
            raise ValidationError("empty branch name")
        if length_days is not None and start_timestamp:
            raise ValidationError(
                "failed to create report: length and start-timestamp are mutually exclusive parameters"
            )
        if end_timestamp:
            end = parse_rfc3339(end_timestamp, field_name="end timestamp")
        else:
            end = now or dt.datetime.now(dt.timezone.utc)
        if start_timestamp:
            start = parse_rfc3339(start_timestamp, field_name="start timestamp")
        else:
            days = 28 if length_days is None else int(length_days)
            if days <= 0:
                raise ValidationError(f"invalid report length: {days} (must be positive)")
            start = end - dt.timedelta(days=days)
        if start >= end:
            raise ValidationError("invalid report window: start timestamp must be before end timestamp")
        return cls(
            test_suite=suite,
            revision=revision,
            branch=branch_name,
            metrics_build_id=parse_uuid(metrics_build_id, label="metrics-build ID"),
            start=start,
            end=end,
            respect_revision_boundary=respect_revision_boundary,
            name=name or None,
            account=account,
            metrics_set=metrics_set,
        )


def submit_report(ctx: ResimContext, request: ReportRequest) -> dict[str, Any]:
    suite = ctx.resolver.resolve_test_suite(
        ctx.project_id, request.test_suite, revision=request.revision
    )
    branch_id = ctx.resolver.resolve_id(BRANCH, request.branch, project_id=ctx.project_id)
    metrics_set, pool_labels = apply_metrics_set(request.metrics_set, [])
    body: dict[str, Any] = {
        "testSuiteID": suite["testSuiteID"],
        "branchID": branch_id,
        "metricsBuildID": request.metrics_build_id,
        "startTimestamp": format_rfc3339(request.start),
        "endTimestamp": format_rfc3339(request.end),
        "respectRevisionBoundary": request.respect_revision_boundary,
        **_common_fields(
            account=request.account,
            metrics_set=metrics_set,
            pool_labels=pool_labels,
            environ=None,
        ),
    }
    if request.revision is not None:
        body["testSuiteRevision"] = request.revision
    if request.name:
        body["name"] = request.name
    return ctx.transport.post(
        f"projects/{ctx.project_id}/reports", body, action="failed to create report"
    )


# Workflow runs


@dataclass(frozen=True)
class WorkflowRunRequest:
    workflow: str
    build_id: str
    parameters: dict[str, str] = field(default_factory=dict)
    pool_labels: tuple[str, ...] = ()
    account: str | None = None
    allowable_failure_percent: int | None = None

    @classmethod
    def build(
        cls,
        *,
        workflow: str | None,
        build_id: str | None,
        parameters: list[str] | None = None,
        pool_labels: list[str] | None = None,
        account: str | None = None,
        allowable_failure_percent: int | None = None,
    ) -> "WorkflowRunRequest":
        key = str(workflow or "").strip()
        if not key:
            raise ValidationError("empty workflow name")
        return cls(
            workflow=key,
            build_id=parse_uuid(build_id, label="build ID"),
            parameters=parse_parameters(parameters, separators=("=",)),
            pool_labels=tuple(validate_pool_labels(pool_labels)),
            account=account,
            allowable_failure_percent=validate_allowable_failure_percent(
                allowable_failure_percent
            ),
        )


def submit_workflow_run(ctx: ResimContext, request: WorkflowRunRequest) -> dict[str, Any]:
    workflow_id = ctx.resolver.resolve_id(WORKFLOW, request.workflow, project_id=ctx.project_id)
    body: dict[str, Any] = {
        "buildID": request.build_id,
        "associatedAccount": request.account if request.account is not None else ci_account(),
    }
    if request.parameters:
        body["parameters"] = dict(request.parameters)
    if request.pool_labels:
        body["poolLabels"] = list(request.pool_labels)
    if request.allowable_failure_percent is not None:
        body["allowableFailurePercent"] = request.allowable_failure_percent
    return ctx.transport.post(
        f"{WORKFLOW.item_path(ctx.project_id, workflow_id)}/runs",
        body,
        action="failed to create workflow run",
    )
