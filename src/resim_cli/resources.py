"""Thin CRUD wrappers over the platform's resource endpoints.

Every function takes a :class:`~resim_cli.context.ResimContext`, validates its
inputs locally, and returns decoded platform records. Printing is left to
:mod:`resim_cli.cli`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from resim_cli.context import ResimContext
from resim_cli.models import (
    BRANCH_TYPES,
    ConflictError,
    RemoteError,
    ResolutionError,
    SuiteSelection,
    ValidationError,
)
from resim_cli.resolver import (
    BRANCH,
    BUILD,
    EXPERIENCE,
    EXPERIENCE_TAG,
    METRICS_BUILD,
    PROJECT,
    REPORT,
    SYSTEM,
    TEST_SUITE,
    WORKFLOW,
)
from resim_cli.utils import is_uuid, parse_uuid

_log = logging.getLogger("resim.resources")

NIL_UUID = "00000000-0000-0000-0000-000000000000"
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _require(value: str | None, label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"empty {label}")
    return text


def validate_image_uri(uri: str | None) -> str:
    """Image URIs must carry an explicit ``:tag`` on the last path segment."""
    text = _require(uri, "image URI")
    last_segment = text.rsplit("/", 1)[-1]
    name, sep, tag = last_segment.partition(":")
    if not sep or not name or not tag:
        raise ValidationError(f"invalid image URI '{text}': the image must be tagged")
    return text


def _collection(ctx: ResimContext, kind: Any) -> str:
    return kind.collection_path(ctx.project_id)


def _item(ctx: ResimContext, kind: Any, item_id: str) -> str:
    return kind.item_path(ctx.project_id, item_id)


def _list(ctx: ResimContext, path: str, key: str, label: str, **params: Any) -> list[dict[str, Any]]:
    return list(
        ctx.transport.paginate(
            path,
            key,
            action=f"unable to list {label}",
            params={k: v for k, v in params.items() if v is not None},
        )
    )


def _membership_call(
    ctx: ResimContext,
    method: str,
    path: str,
    *,
    action: str,
    conflict_hint: str,
    conflict_codes: Iterable[int],
) -> None:
    try:
        ctx.transport.request(method, path, action=action)
    except RemoteError as exc:
        if exc.http_code in set(conflict_codes):
            raise ConflictError(f"{action}, {conflict_hint}: {exc.body}") from exc
        raise


# Projects


def create_project(ctx: ResimContext, *, name: str, description: str) -> dict[str, Any]:
    name = _require(name, "project name")
    description = _require(description, "project description")
    if ctx.resolver.lookup(PROJECT, name) is not None:
        raise ConflictError(
            f"failed to create project: project name matches an existing project name or ID: {name}"
        )
    return ctx.transport.post(
        "projects",
        {"name": name, "description": description},
        action="failed to create project",
    )


def list_projects(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, "projects", "projects", "projects", orderBy="timestamp")


def get_project(ctx: ResimContext, key: str) -> dict[str, Any]:
    return ctx.resolver.resolve(PROJECT, key)


def archive_project(ctx: ResimContext, key: str) -> dict[str, Any]:
    project = ctx.resolver.resolve(PROJECT, key)
    ctx.transport.delete(
        f"projects/{project['projectID']}", action="failed to archive project"
    )
    return project


# Branches


def create_branch(ctx: ResimContext, *, name: str, branch_type: str) -> dict[str, Any]:
    name = _require(name, "branch name")
    normalized = str(branch_type or "").strip().upper()
    if normalized not in BRANCH_TYPES:
        raise ValidationError(
            f"invalid branch type: {branch_type!r}; expected one of {list(BRANCH_TYPES)}"
        )
    return ctx.transport.post(
        _collection(ctx, BRANCH),
        {"name": name, "branchType": normalized},
        action="failed to create branch",
    )


def list_branches(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, BRANCH), "branches", "branches")


def infer_branch_type(name: str) -> str:
    return "MAIN" if name in ("main", "master") else "CHANGE_REQUEST"


def get_or_create_branch(
    ctx: ResimContext, name: str, *, auto_create: bool = True
) -> dict[str, Any]:
    name = _require(name, "branch name")
    existing = ctx.resolver.lookup(BRANCH, name, project_id=ctx.project_id)
    if existing is not None:
        return existing
    if not auto_create:
        raise ResolutionError(
            "Branch does not exist, and auto-create-branch is false, so not creating it"
        )
    _log.info("branch_auto_create name=%s", name)
    return create_branch(ctx, name=name, branch_type=infer_branch_type(name))


# Systems


@dataclass(frozen=True)
class SystemResources:
    build_vcpus: int = 4
    build_gpus: int = 0
    build_memory_mib: int = 16384
    build_shared_memory_mb: int = 64
    metrics_build_vcpus: int = 4
    metrics_build_gpus: int = 0
    metrics_build_memory_mib: int = 16384
    metrics_build_shared_memory_mb: int = 64

    def validate(self) -> None:
        for label, value in (
            ("build vCPUs", self.build_vcpus),
            ("metrics build vCPUs", self.metrics_build_vcpus),
        ):
            if value < 1:
                raise ValidationError(f"invalid {label}: {value} (must be at least 1)")
        for label, value in (
            ("build memory MiB", self.build_memory_mib),
            ("metrics build memory MiB", self.metrics_build_memory_mib),
        ):
            if value <= 0:
                raise ValidationError(f"invalid {label}: {value} (must be positive)")
        for label, value in (
            ("build GPUs", self.build_gpus),
            ("metrics build GPUs", self.metrics_build_gpus),
            ("build shared memory MB", self.build_shared_memory_mb),
            ("metrics build shared memory MB", self.metrics_build_shared_memory_mb),
        ):
            if value < 0:
                raise ValidationError(f"invalid {label}: {value} (must not be negative)")

    def to_json(self) -> dict[str, int]:
        return {
            "build_vcpus": self.build_vcpus,
            "build_gpus": self.build_gpus,
            "build_memory_mib": self.build_memory_mib,
            "build_shared_memory_mb": self.build_shared_memory_mb,
            "metrics_build_vcpus": self.metrics_build_vcpus,
            "metrics_build_gpus": self.metrics_build_gpus,
            "metrics_build_memory_mib": self.metrics_build_memory_mib,
            "metrics_build_shared_memory_mb": self.metrics_build_shared_memory_mb,
        }


def create_system(
    ctx: ResimContext,
    *,
    name: str,
    description: str,
    resources: SystemResources,
    architecture: str | None = None,
) -> dict[str, Any]:
    name = _require(name, "system name")
    description = _require(description, "system description")
    resources.validate()
    if ctx.resolver.lookup(SYSTEM, name, project_id=ctx.project_id) is not None:
        raise ConflictError(f"failed to create system: system name matches an existing system: {name}")
    body: dict[str, Any] = {"name": name, "description": description, **resources.to_json()}
    if architecture:
        body["architecture"] = architecture
    return ctx.transport.post(
        _collection(ctx, SYSTEM), body, action="failed to create system"
    )


def update_system(
    ctx: ResimContext, key: str, fields: Mapping[str, Any]
) -> dict[str, Any]:
    system = ctx.resolver.resolve(SYSTEM, key, project_id=ctx.project_id)
    updates = {k: v for k, v in fields.items() if v is not None}
    if not updates:
        raise ValidationError("nothing to update for system")
    merged = SystemResources(
        **{
            k: int(updates.get(k, system.get(k, default)))
            for k, default in SystemResources().to_json().items()
        }
    )
    merged.validate()
    return ctx.transport.patch(
        _item(ctx, SYSTEM, system["systemID"]),
        {"system": updates, "updateMask": sorted(updates)},
        action="failed to update system",
    )


def list_systems(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, SYSTEM), "systems", "systems")


def get_system(ctx: ResimContext, key: str) -> dict[str, Any]:
    return ctx.resolver.resolve(SYSTEM, key, project_id=ctx.project_id)


def archive_system(ctx: ResimContext, key: str) -> dict[str, Any]:
    system = get_system(ctx, key)
    ctx.transport.post(
        f"{_item(ctx, SYSTEM, system['systemID'])}/archive",
        action="failed to archive system",
    )
    return system


def list_system_members(ctx: ResimContext, key: str, member: str) -> list[dict[str, Any]]:
    """List ``builds``, ``experiences`` or ``metricsBuilds`` attached to a system."""
    system = get_system(ctx, key)
    return _list(
        ctx,
        f"{_item(ctx, SYSTEM, system['systemID'])}/{member}",
        member,
        f"{member} for system",
    )


# Builds


def read_build_spec(path: str) -> str:
    spec_path = Path(path)
    if not spec_path.exists():
        raise ValidationError(f"build spec file does not exist: {spec_path}")
    text = spec_path.read_text(encoding="utf-8")
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"invalid build spec {spec_path}: {exc}") from exc
    if not isinstance(parsed, dict) or not isinstance(parsed.get("services"), dict):
        raise ValidationError(
            f"invalid build spec {spec_path}: expected a compose file with services"
        )
    return text


def create_build(
    ctx: ResimContext,
    *,
    branch: str,
    system: str,
    version: str,
    description: str,
    image: str | None = None,
    build_spec: str | None = None,
    name: str | None = None,
    auto_create_branch: bool = False,
) -> dict[str, Any]:
    if image and build_spec:
        raise ValidationError(
            "failed to create build: image and build-spec are mutually exclusive parameters"
        )
    if not image and not build_spec:
        raise ValidationError("failed to create build: one of image or build-spec is required")
    version = _require(version, "build version")
    description = _require(description, "build description")
    body: dict[str, Any] = {"description": description, "version": version}
    if image:
        body["imageUri"] = validate_image_uri(image)
    else:
        body["buildSpecification"] = read_build_spec(str(build_spec))
    if name:
        body["name"] = name
    system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    body["systemID"] = system_id
    branch_record = get_or_create_branch(ctx, branch, auto_create=auto_create_branch)
    return ctx.transport.post(
        f"{_item(ctx, BRANCH, branch_record['branchID'])}/builds",
        body,
        action="failed to create build",
    )


def update_build(
    ctx: ResimContext,
    build_id: str,
    *,
    branch: str | None = None,
    description: str | None = None,
    name: str | None = None,
) -> dict[str, Any]:
    build_id = parse_uuid(build_id, label="build ID")
    fields: dict[str, Any] = {}
    if branch:
        fields["branchID"] = ctx.resolver.resolve_id(BRANCH, branch, project_id=ctx.project_id)
    if description is not None:
        fields["description"] = description
    if name is not None:
        fields["name"] = name
    if not fields:
        raise ValidationError("nothing to update; provide --branch, --description or --name")
    return ctx.transport.patch(
        _item(ctx, BUILD, build_id),
        {"build": fields, "updateMask": sorted(fields)},
        action="failed to update build",
    )


def list_builds(
    ctx: ResimContext, *, branch: str | None = None, system: str | None = None
) -> list[dict[str, Any]]:
    if branch and system:
        raise ValidationError("branch and system are mutually exclusive parameters")
    if branch:
        branch_id = ctx.resolver.resolve_id(BRANCH, branch, project_id=ctx.project_id)
        path = f"{_item(ctx, BRANCH, branch_id)}/builds"
    elif system:
        system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
        path = f"{_item(ctx, SYSTEM, system_id)}/builds"
    else:
        path = _collection(ctx, BUILD)
    return _list(ctx, path, "builds", "builds")


def get_build(ctx: ResimContext, build_id: str) -> dict[str, Any]:
    build_id = parse_uuid(build_id, label="build ID")
    return ctx.resolver.resolve(BUILD, build_id, project_id=ctx.project_id)


def find_build(
    ctx: ResimContext, *, branch_id: str, system_id: str, image: str, version: str
) -> dict[str, Any] | None:
    for build in _list(ctx, f"{_item(ctx, BRANCH, branch_id)}/builds", "builds", "builds"):
        if (
            build.get("systemID") == system_id
            and build.get("imageUri") == image
            and build.get("version") == version
        ):
            return build
    return None


# Metrics builds


def create_metrics_build(
    ctx: ResimContext,
    *,
    name: str,
    image: str,
    version: str,
    systems: list[str],
) -> dict[str, Any]:
    name = _require(name, "metrics build name")
    image = validate_image_uri(image)
    version = _require(version, "metrics build version")
    system_ids = ctx.resolver.resolve_many(SYSTEM, systems, project_id=ctx.project_id)
    record = ctx.transport.post(
        _collection(ctx, METRICS_BUILD),
        {"name": name, "imageUri": image, "version": version},
        action="failed to create metrics build",
    )
    for system_id in system_ids:
        attach_metrics_build(ctx, record["metricsBuildID"], system_id)
    return record


def list_metrics_builds(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, METRICS_BUILD), "metricsBuilds", "metrics builds")


def attach_metrics_build(ctx: ResimContext, metrics_build_id: str, system: str) -> None:
    metrics_build_id = parse_uuid(metrics_build_id, label="metrics build ID")
    system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "POST",
        f"{_item(ctx, SYSTEM, system_id)}/metricsBuilds/{metrics_build_id}",
        action="failed to register metrics build with system",
        conflict_hint="it may already be registered",
        conflict_codes=(409,),
    )


def detach_metrics_build(ctx: ResimContext, metrics_build_id: str, system: str) -> None:
    metrics_build_id = parse_uuid(metrics_build_id, label="metrics build ID")
    system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "DELETE",
        f"{_item(ctx, SYSTEM, system_id)}/metricsBuilds/{metrics_build_id}",
        action="failed to deregister metrics build from system",
        conflict_hint="it may not be registered",
        conflict_codes=(404, 409),
    )


# Experiences


def parse_environment_variables(raw_items: list[str] | None) -> list[dict[str, str]]:
    parsed: dict[str, str] = {}
    for item in raw_items or []:
        if "=" not in item:
            raise ValidationError(
                f"invalid environment variable '{item}': expected NAME=VALUE"
            )
        key, value = item.split("=", 1)
        key = key.strip()
        if not _ENV_NAME_RE.match(key):
            raise ValidationError(f"invalid environment variable name '{key}'")
        if key in parsed:
            raise ValidationError(f"duplicate environment variable '{key}'")
        parsed[key] = value
    return [{"name": key, "value": value} for key, value in parsed.items()]


def create_experience(
    ctx: ResimContext,
    *,
    name: str,
    description: str,
    locations: list[str],
    timeout_sec: int = 3600,
    profile: str | None = None,
    environment: list[str] | None = None,
    systems: list[str] | None = None,
) -> dict[str, Any]:
    name = _require(name, "experience name")
    description = _require(description, "experience description")
    if not locations:
        raise ValidationError("empty experience location")
    if timeout_sec <= 0:
        raise ValidationError(f"invalid experience timeout: {timeout_sec}")
    system_ids = ctx.resolver.resolve_many(SYSTEM, systems or [], project_id=ctx.project_id)
    body: dict[str, Any] = {
        "name": name,
        "description": description,
        "locations": list(locations),
        "containerTimeoutSeconds": int(timeout_sec),
    }
    if profile:
        body["profile"] = profile
    env_vars = parse_environment_variables(environment)
    if env_vars:
        body["environmentVariables"] = env_vars
    record = ctx.transport.post(
        _collection(ctx, EXPERIENCE), body, action="failed to create experience"
    )
    for system_id in system_ids:
        attach_experience_to_system(ctx, record["experienceID"], system_id)
    return record


def update_experience(
    ctx: ResimContext,
    key: str,
    *,
    name: str | None = None,
    description: str | None = None,
    locations: list[str] | None = None,
    timeout_sec: int | None = None,
    profile: str | None = None,
    environment: list[str] | None = None,
) -> dict[str, Any]:
    experience = get_experience(ctx, key)
    fields: dict[str, Any] = {}
    if name is not None:
        fields["name"] = _require(name, "experience name")
    if description is not None:
        fields["description"] = description
    if locations:
        fields["locations"] = list(locations)
    if timeout_sec is not None:
        if timeout_sec <= 0:
            raise ValidationError(f"invalid experience timeout: {timeout_sec}")
        fields["containerTimeoutSeconds"] = int(timeout_sec)
    if profile is not None:
        fields["profile"] = profile
    if environment is not None:
        fields["environmentVariables"] = parse_environment_variables(environment)
    if not fields:
        raise ValidationError("nothing to update for experience")
    return ctx.transport.patch(
        _item(ctx, EXPERIENCE, experience["experienceID"]),
        {"experience": fields, "updateMask": sorted(fields)},
        action="failed to update experience",
    )


def get_experience(ctx: ResimContext, key: str) -> dict[str, Any]:
    return ctx.resolver.resolve(EXPERIENCE, key, project_id=ctx.project_id)


def list_experiences(ctx: ResimContext, *, archived: bool = False) -> list[dict[str, Any]]:
    return _list(
        ctx,
        _collection(ctx, EXPERIENCE),
        "experiences",
        "experiences",
        archived="true" if archived else None,
    )


def set_experience_archived(ctx: ResimContext, key: str, *, archived: bool) -> dict[str, Any]:
    if archived or is_uuid(key):
        experience = get_experience(ctx, key)
    else:
        # Archived experiences are hidden from the default name listing.
        experience = _find_archived_experience(ctx, key)
    verb = "archive" if archived else "restore"
    ctx.transport.post(
        f"{_item(ctx, EXPERIENCE, experience['experienceID'])}/{verb}",
        action=f"failed to {verb} experience",
    )
    return experience


def _find_archived_experience(ctx: ResimContext, name: str) -> dict[str, Any]:
    for record in list_experiences(ctx, archived=True):
        if record.get("name") == name:
            return record
    raise ResolutionError(f"failed to find experience with name or ID: {name}")


def attach_experience_to_system(ctx: ResimContext, experience: str, system: str) -> None:
    experience_id = ctx.resolver.resolve_id(EXPERIENCE, experience, project_id=ctx.project_id)
    system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "POST",
        f"{_item(ctx, SYSTEM, system_id)}/experiences/{experience_id}",
        action="failed to register experience with system",
        conflict_hint="it may already be registered",
        conflict_codes=(409,),
    )


def detach_experience_from_system(ctx: ResimContext, experience: str, system: str) -> None:
    experience_id = ctx.resolver.resolve_id(EXPERIENCE, experience, project_id=ctx.project_id)
    system_id = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "DELETE",
        f"{_item(ctx, SYSTEM, system_id)}/experiences/{experience_id}",
        action="failed to deregister experience from system",
        conflict_hint="it may not be registered",
        conflict_codes=(404, 409),
    )


# Experience tags


def create_experience_tag(ctx: ResimContext, *, name: str, description: str) -> dict[str, Any]:
    name = _require(name, "experience tag name")
    description = _require(description, "experience tag description")
    if ctx.resolver.lookup(EXPERIENCE_TAG, name, project_id=ctx.project_id) is not None:
        raise ConflictError(
            f"failed to create experience tag: experience tag name matches an existing tag: {name}"
        )
    return ctx.transport.post(
        _collection(ctx, EXPERIENCE_TAG),
        {"name": name, "description": description},
        action="failed to create experience tag",
    )


def get_or_create_experience_tag(ctx: ResimContext, name: str) -> dict[str, Any]:
    existing = ctx.resolver.lookup(EXPERIENCE_TAG, name, project_id=ctx.project_id)
    if existing is not None:
        return existing
    _log.info("experience_tag_auto_create name=%s", name)
    return ctx.transport.post(
        _collection(ctx, EXPERIENCE_TAG),
        {"name": name, "description": name},
        action="failed to create experience tag",
    )


def list_experience_tags(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, EXPERIENCE_TAG), "experienceTags", "experience tags")


def list_tagged_experiences(ctx: ResimContext, tag: str) -> list[dict[str, Any]]:
    tag_id = ctx.resolver.resolve_id(EXPERIENCE_TAG, tag, project_id=ctx.project_id)
    return _list(
        ctx,
        f"{_item(ctx, EXPERIENCE_TAG, tag_id)}/experiences",
        "experiences",
        "experiences for tag",
    )


def tag_experience(ctx: ResimContext, *, tag: str, experience: str) -> None:
    tag_id = ctx.resolver.resolve_id(EXPERIENCE_TAG, tag, project_id=ctx.project_id)
    experience_id = ctx.resolver.resolve_id(EXPERIENCE, experience, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "POST",
        f"{_item(ctx, EXPERIENCE_TAG, tag_id)}/experiences/{experience_id}",
        action="failed to tag experience",
        conflict_hint="it may already be registered",
        conflict_codes=(409,),
    )


def untag_experience(ctx: ResimContext, *, tag: str, experience: str) -> None:
    tag_id = ctx.resolver.resolve_id(EXPERIENCE_TAG, tag, project_id=ctx.project_id)
    experience_id = ctx.resolver.resolve_id(EXPERIENCE, experience, project_id=ctx.project_id)
    _membership_call(
        ctx,
        "DELETE",
        f"{_item(ctx, EXPERIENCE_TAG, tag_id)}/experiences/{experience_id}",
        action="failed to untag experience",
        conflict_hint="it may not be registered",
        conflict_codes=(404, 409),
    )


# Test suites


def _metrics_build_field(value: str) -> str:
    return parse_uuid(value, label="metrics build ID") if value != NIL_UUID else NIL_UUID


def create_test_suite(
    ctx: ResimContext,
    *,
    name: str,
    description: str,
    system: str,
    experiences: list[str],
    metrics_build: str | None = None,
    show_on_summary: bool | None = None,
    metrics_set: str | None = None,
) -> dict[str, Any]:
    name = _require(name, "test suite name")
    description = _require(description, "test suite description")
    if not experiences:
        raise ValidationError("empty test suite experiences")
    if ctx.resolver.lookup(TEST_SUITE, name, project_id=ctx.project_id) is not None:
        raise ConflictError(
            f"failed to create test suite: test suite name matches an existing test suite: {name}"
        )
    body: dict[str, Any] = {
        "name": name,
        "description": description,
        "systemID": ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id),
        "experiences": ctx.resolver.resolve_many(
            EXPERIENCE, experiences, project_id=ctx.project_id
        ),
    }
    if metrics_build:
        body["metricsBuildID"] = parse_uuid(metrics_build, label="metrics build ID")
    if show_on_summary is not None:
        body["showOnSummary"] = bool(show_on_summary)
    if metrics_set:
        body["metricsSetName"] = metrics_set
    return ctx.transport.post(
        _collection(ctx, TEST_SUITE), body, action="failed to create test suite"
    )


def revise_test_suite(
    ctx: ResimContext,
    key: str,
    *,
    name: str | None = None,
    description: str | None = None,
    system: str | None = None,
    experiences: list[str] | None = None,
    metrics_build: str | None = None,
    show_on_summary: bool | None = None,
    metrics_set: str | None = None,
) -> dict[str, Any]:
    """Post a new revision; only the fields passed are changed.

    A nil UUID for *metrics_build* removes the metrics build. An empty string
    for *metrics_set* clears the metrics set.
    """
    suite = ctx.resolver.resolve_test_suite(ctx.project_id, key)
    body: dict[str, Any] = {}
    if name is not None:
        body["name"] = _require(name, "test suite name")
    if description is not None:
        body["description"] = description
    if system is not None:
        body["systemID"] = ctx.resolver.resolve_id(SYSTEM, system, project_id=ctx.project_id)
    if experiences is not None:
        body["experiences"] = ctx.resolver.resolve_many(
            EXPERIENCE, experiences, project_id=ctx.project_id
        )
    if metrics_build is not None:
        metrics_build_id = _metrics_build_field(metrics_build.strip())
        body["updateMetricsBuild"] = True
        if metrics_build_id != NIL_UUID:
            body["metricsBuildID"] = metrics_build_id
    if show_on_summary is not None:
        body["showOnSummary"] = bool(show_on_summary)
    if metrics_set is not None:
        body["metricsSetName"] = metrics_set
    if not body:
        raise ValidationError("nothing to revise for test suite")
    return ctx.transport.post(
        f"{_item(ctx, TEST_SUITE, suite['testSuiteID'])}/revisions",
        body,
        action="failed to revise test suite",
    )


def list_test_suites(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, TEST_SUITE), "testSuites", "test suites")


def list_test_suite_batches(
    ctx: ResimContext, key: str, *, revision: int | None = None
) -> list[dict[str, Any]]:
    suite = ctx.resolver.resolve_test_suite(ctx.project_id, key)
    path = _item(ctx, TEST_SUITE, suite["testSuiteID"])
    if revision is not None:
        path = f"{path}/revisions/{revision}"
    return _list(ctx, f"{path}/batches", "batches", "batches for test suite")


def set_test_suite_archived(ctx: ResimContext, key: str, *, archived: bool) -> dict[str, Any]:
    suite = ctx.resolver.resolve_test_suite(ctx.project_id, key)
    verb = "archive" if archived else "restore"
    ctx.transport.post(
        f"{_item(ctx, TEST_SUITE, suite['testSuiteID'])}/{verb}",
        action=f"failed to {verb} test suite",
    )
    return suite


# Reports


def get_report(ctx: ResimContext, key: str) -> dict[str, Any]:
    return ctx.resolver.resolve(REPORT, key, project_id=ctx.project_id)


def list_report_logs(ctx: ResimContext, key: str) -> list[dict[str, Any]]:
    report = get_report(ctx, key)
    return _list(
        ctx, f"{_item(ctx, REPORT, report['reportID'])}/logs", "logs", "report logs"
    )


# Workflows


def parse_suite_selections(raw: str | None, path: str | None) -> list[SuiteSelection]:
    if path:
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"failed to parse suites file as JSON: {exc}") from exc
    elif raw:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"failed to parse suites JSON: {exc}") from exc
    else:
        raise ValidationError("no suites specified; pass --suites or --suites-file")
    if not isinstance(payload, list):
        raise ValidationError("suites must be a JSON list of {testSuite, enabled}")
    selections = [SuiteSelection.from_json(item) for item in payload if isinstance(item, dict)]
    if len(selections) != len(payload):
        raise ValidationError("suites must be a JSON list of {testSuite, enabled}")
    for selection in selections:
        if not selection.test_suite:
            raise ValidationError("suite entry missing testSuite")
    if not selections:
        raise ValidationError("no suites specified")
    return selections


def _resolve_selections(
    ctx: ResimContext, selections: list[SuiteSelection]
) -> dict[str, bool]:
    desired: dict[str, bool] = {}
    for selection in selections:
        suite_id = ctx.resolver.resolve_id(
            TEST_SUITE, selection.test_suite, project_id=ctx.project_id
        )
        desired[suite_id] = selection.enabled
    return desired


def create_workflow(
    ctx: ResimContext,
    *,
    name: str,
    description: str,
    suites: list[SuiteSelection],
    ci_link: str | None = None,
) -> dict[str, Any]:
    name = _require(name, "workflow name")
    description = _require(description, "workflow description")
    desired = _resolve_selections(ctx, suites)
    body: dict[str, Any] = {
        "name": name,
        "description": description,
        "workflowSuites": [
            {"testSuiteID": suite_id, "enabled": enabled}
            for suite_id, enabled in desired.items()
        ],
    }
    if ci_link:
        body["ciWorkflowLink"] = ci_link
    return ctx.transport.post(
        _collection(ctx, WORKFLOW), body, action="failed to create workflow"
    )


def list_workflow_suites(ctx: ResimContext, workflow_id: str) -> list[dict[str, Any]]:
    payload = ctx.transport.get(
        f"{_item(ctx, WORKFLOW, workflow_id)}/suites",
        action="failed to list workflow suites",
    ) or {}
    return list(payload.get("workflowSuites") or [])


@dataclass(frozen=True)
class SuiteReconciliation:
    creates: dict[str, bool]
    updates: dict[str, bool]
    deletes: list[str]

    @property
    def empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


def plan_suite_reconciliation(
    current: Mapping[str, bool], desired: Mapping[str, bool]
) -> SuiteReconciliation:
    creates = {k: v for k, v in desired.items() if k not in current}
    updates = {k: v for k, v in desired.items() if k in current and current[k] != v}
    deletes = sorted(k for k in current if k not in desired)
    return SuiteReconciliation(creates=creates, updates=updates, deletes=deletes)


def update_workflow(
    ctx: ResimContext,
    key: str,
    *,
    name: str | None = None,
    description: str | None = None,
    ci_link: str | None = None,
    suites: list[SuiteSelection] | None = None,
) -> tuple[dict[str, Any], SuiteReconciliation | None]:
    workflow = ctx.resolver.resolve(WORKFLOW, key, project_id=ctx.project_id)
    workflow_id = workflow["workflowID"]
    fields: dict[str, Any] = {}
    if name is not None:
        fields["name"] = name
    if description is not None:
        fields["description"] = description
    if ci_link is not None:
        fields["ciWorkflowLink"] = ci_link
    if not fields and suites is None:
        raise ValidationError(
            "nothing to update; provide at least one of --name, --description, "
            "--ci-link, --suites/--suites-file"
        )
    if fields:
        workflow = ctx.transport.patch(
            _item(ctx, WORKFLOW, workflow_id), fields, action="failed to update workflow"
        )

    plan: SuiteReconciliation | None = None
    if suites is not None:
        desired = _resolve_selections(ctx, suites)
        current = {
            str((item.get("testSuite") or {}).get("testSuiteID") or item.get("testSuiteID")): bool(
                item.get("enabled")
            )
            for item in list_workflow_suites(ctx, workflow_id)
        }
        plan = plan_suite_reconciliation(current, desired)
        suites_path = f"{_item(ctx, WORKFLOW, workflow_id)}/suites"
        # Order matters: create, then update, then delete.
        if plan.creates:
            ctx.transport.post(
                suites_path,
                {"workflowSuites": [{"testSuiteID": k, "enabled": v} for k, v in plan.creates.items()]},
                action="failed to add workflow suites",
            )
        if plan.updates:
            ctx.transport.patch(
                suites_path,
                {"workflowSuites": [{"testSuiteID": k, "enabled": v} for k, v in plan.updates.items()]},
                action="failed to update workflow suites",
            )
        if plan.deletes:
            ctx.transport.delete(
                suites_path,
                {"testSuiteIDs": plan.deletes},
                action="failed to remove workflow suites",
            )
        _log.info(
            "workflow_suites_reconciled workflow=%s creates=%d updates=%d deletes=%d",
            workflow_id,
            len(plan.creates),
            len(plan.updates),
            len(plan.deletes),
        )
    return workflow, plan


def summarize_workflow(ctx: ResimContext, workflow: Mapping[str, Any]) -> dict[str, Any]:
    suites = []
    for item in list_workflow_suites(ctx, str(workflow["workflowID"])):
        suite = item.get("testSuite") or {}
        suites.append(
            {
                "testSuiteID": suite.get("testSuiteID") or item.get("testSuiteID"),
                "name": suite.get("name"),
                "enabled": bool(item.get("enabled")),
            }
        )
    return {
        "workflowID": workflow.get("workflowID"),
        "name": workflow.get("name"),
        "description": workflow.get("description"),
        "ciWorkflowLink": workflow.get("ciWorkflowLink"),
        "suites": suites,
    }


def list_workflows(ctx: ResimContext) -> list[dict[str, Any]]:
    return _list(ctx, _collection(ctx, WORKFLOW), "workflows", "workflows")


def get_workflow(ctx: ResimContext, key: str) -> dict[str, Any]:
    return ctx.resolver.resolve(WORKFLOW, key, project_id=ctx.project_id)


def list_workflow_runs(ctx: ResimContext, key: str) -> list[dict[str, Any]]:
    workflow = get_workflow(ctx, key)
    return _list(
        ctx,
        f"{_item(ctx, WORKFLOW, workflow['workflowID'])}/runs",
        "workflowRuns",
        "workflow runs",
    )