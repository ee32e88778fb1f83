"""Reconcile a project's experiences with a YAML description of them.

The config file looks like::

    experiences:
      - name: highway-merge
        description: Merge onto a busy highway
        locations: [s3://bucket/highway-merge/]
        tags: [regression]
        systems: [planner]
        experience_id: 9f2c...        # optional, pins a rename
        environment_variables:
          - {name: SEED, value: "3"}
        cache_exempt: false
        container_timeout_seconds: 3600
    managed_test_suites:
      - name: nightly
        experiences: [highway-merge]
    managed_experience_tags: [regression]

Each configured experience is matched to an existing one by name first and
then by ``experience_id``. Anything left unmatched is created, and existing
experiences that nothing matched are archived. Tags and systems are only ever
added, except that tags named in ``managed_experience_tags`` are also removed
from experiences whose config entry no longer lists them. Managed test suites
are revised to hold exactly the listed experiences.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from resim_cli.context import ResimContext
from resim_cli.models import ValidationError
from resim_cli.resolver import EXPERIENCE, EXPERIENCE_TAG, SYSTEM, TEST_SUITE
from resim_cli.resources import (
    list_experience_tags,
    list_experiences,
    list_systems,
    list_test_suites,
    parse_environment_variables,
)
from resim_cli.utils import atomic_write_text, parse_uuid

_log = logging.getLogger("resim.sync")


def _names(raw: Any, label: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"invalid {label}: expected a list")
    return [str(item).strip() for item in raw if str(item).strip()]


@dataclass
class ExperienceSpec:
    name: str
    description: str
    locations: list[str]
    tags: list[str] = field(default_factory=list)
    systems: list[str] = field(default_factory=list)
    profile: str | None = None
    experience_id: str | None = None
    environment_variables: list[dict[str, str]] | None = None
    cache_exempt: bool = False
    container_timeout_seconds: int | None = None

    @classmethod
    def from_config(cls, raw: Any) -> "ExperienceSpec":
        if not isinstance(raw, dict):
            raise ValidationError("invalid experience entry: expected a mapping")
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError("Empty experience name.")
        description = str(raw.get("description") or "").strip()
        if not description:
            raise ValidationError(f"Empty experience description for experience: {name}")
        locations = _names(raw.get("locations"), f"locations for experience {name}")
        if not locations:
            raise ValidationError(f"No locations provided for experience: {name}")

        experience_id = raw.get("experience_id") or None
        if experience_id is not None:
            experience_id = parse_uuid(str(experience_id), label="experience ID")

        env_vars = raw.get("environment_variables")
        if env_vars is not None:
            if not isinstance(env_vars, list) or not all(isinstance(v, dict) for v in env_vars):
                raise ValidationError(
                    f"invalid environment_variables for experience {name}: "
                    "expected a list of {name, value} mappings"
                )
            env_vars = parse_environment_variables(
                [f"{entry.get('name', '')}={entry.get('value', '')}" for entry in env_vars]
            )

        timeout = raw.get("container_timeout_seconds")
        if timeout is not None:
            try:
                timeout = int(timeout)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"invalid container_timeout_seconds for experience {name}: {timeout!r}"
                ) from exc
            if timeout <= 0:
                raise ValidationError(
                    f"invalid container_timeout_seconds for experience {name}: {timeout}"
                )

        profile = raw.get("profile")
        return cls(
            name=name,
            description=description,
            locations=locations,
            tags=_names(raw.get("tags"), f"tags for experience {name}"),
            systems=_names(raw.get("systems"), f"systems for experience {name}"),
            profile=str(profile) if profile is not None else None,
            experience_id=experience_id,
            environment_variables=env_vars,
            cache_exempt=bool(raw.get("cache_exempt", False)),
            container_timeout_seconds=timeout,
        )

    def api_fields(self) -> dict[str, Any]:
        """Fields sent on create and update; optional ones only when configured."""
        fields: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "locations": list(self.locations),
            "cacheExempt": self.cache_exempt,
        }
        if self.container_timeout_seconds is not None:
            fields["containerTimeoutSeconds"] = self.container_timeout_seconds
        if self.profile is not None:
            fields["profile"] = self.profile
        if self.environment_variables is not None:
            fields["environmentVariables"] = list(self.environment_variables)
        return fields

    def to_config(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "locations": list(self.locations),
        }
        if self.tags:
            entry["tags"] = list(self.tags)
        if self.systems:
            entry["systems"] = list(self.systems)
        if self.profile is not None:
            entry["profile"] = self.profile
        if self.experience_id:
            entry["experience_id"] = self.experience_id
        if self.environment_variables is not None:
            entry["environment_variables"] = list(self.environment_variables)
        if self.cache_exempt:
            entry["cache_exempt"] = True
        if self.container_timeout_seconds is not None:
            entry["container_timeout_seconds"] = self.container_timeout_seconds
        return entry


@dataclass
class ManagedSuite:
    name: str
    experiences: list[str]


@dataclass
class SyncConfig:
    experiences: list[ExperienceSpec] = field(default_factory=list)
    managed_test_suites: list[ManagedSuite] = field(default_factory=list)
    managed_experience_tags: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "SyncConfig":
        if not path.is_file():
            raise ValidationError(f"config file does not exist: {path}")
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"failed to parse experiences config {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValidationError(f"invalid experiences config {path}: expected a mapping")
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "SyncConfig":
        entries = raw.get("experiences") or []
        if not isinstance(entries, list):
            raise ValidationError("invalid experiences: expected a list")
        experiences = [ExperienceSpec.from_config(entry) for entry in entries]
        seen: set[str] = set()
        for spec in experiences:
            if spec.name in seen:
                raise ValidationError(f"Duplicate experience name in config: {spec.name}")
            seen.add(spec.name)

        suites = []
        for entry in raw.get("managed_test_suites") or []:
            if not isinstance(entry, dict) or not str(entry.get("name") or "").strip():
                raise ValidationError("invalid managed test suite: expected a mapping with a name")
            name = str(entry["name"]).strip()
            suites.append(
                ManagedSuite(name, _names(entry.get("experiences"), f"experiences for suite {name}"))
            )
        return cls(
            experiences=experiences,
            managed_test_suites=suites,
            managed_experience_tags=_names(
                raw.get("managed_experience_tags"), "managed_experience_tags"
            ),
        )

    def to_yaml(self) -> str:
        document: dict[str, Any] = {"experiences": [spec.to_config() for spec in self.experiences]}
        if self.managed_test_suites:
            document["managed_test_suites"] = [
                {"name": suite.name, "experiences": list(suite.experiences)}
                for suite in self.managed_test_suites
            ]
        if self.managed_experience_tags:
            document["managed_experience_tags"] = list(self.managed_experience_tags)
        return yaml.safe_dump(document, sort_keys=False)


@dataclass
class Membership:
    """A tag or system and the IDs of the experiences currently attached to it."""

    name: str
    target_id: str
    experience_ids: set[str]


@dataclass
class ProjectState:
    experiences_by_name: dict[str, dict[str, Any]]
    tags: dict[str, Membership]
    systems: dict[str, Membership]
    suites: dict[str, dict[str, Any]]


def _members(ctx: ResimContext, path: str) -> set[str]:
    return {
        str(record["experienceID"])
        for record in ctx.transport.paginate(
            f"{path}/experiences", "experiences", action="unable to list experiences"
        )
    }


def fetch_state(ctx: ResimContext, config: SyncConfig) -> ProjectState:
    """Read what the config can touch: every experience plus the referenced groups."""
    by_name: dict[str, dict[str, Any]] = {}
    # Active experiences win a name shared with an archived one.
    for record in list_experiences(ctx, archived=True) + list_experiences(ctx):
        by_name[str(record["name"])] = record

    wanted_tags = set(config.managed_experience_tags)
    wanted_systems: set[str] = set()
    for spec in config.experiences:
        wanted_tags.update(spec.tags)
        wanted_systems.update(spec.systems)

    tags = {
        record["name"]: Membership(
            record["name"],
            str(record["experienceTagID"]),
            _members(ctx, EXPERIENCE_TAG.item_path(ctx.project_id, record["experienceTagID"])),
        )
        for record in list_experience_tags(ctx)
        if record.get("name") in wanted_tags
    }
    systems = {
        record["name"]: Membership(
            record["name"],
            str(record["systemID"]),
            _members(ctx, SYSTEM.item_path(ctx.project_id, record["systemID"])),
        )
        for record in list_systems(ctx)
        if record.get("name") in wanted_systems
    }
    suites = {str(record["name"]): record for record in list_test_suites(ctx)}
    return ProjectState(by_name, tags, systems, suites)


@dataclass
class ExperienceMatch:
    desired: ExperienceSpec
    original: dict[str, Any] | None = None

    @property
    def original_id(self) -> str | None:
        return str(self.original["experienceID"]) if self.original is not None else None


@dataclass
class MembershipUpdate:
    name: str
    target_id: str
    additions: list[ExperienceSpec] = field(default_factory=list)
    removals: list[ExperienceSpec] = field(default_factory=list)


@dataclass
class SuiteUpdate:
    name: str
    suite_id: str
    current_ids: set[str]
    experiences: list[ExperienceSpec]


@dataclass
class SyncPlan:
    matches: list[ExperienceMatch]
    archives: list[dict[str, Any]]
    tag_updates: list[MembershipUpdate]
    system_updates: list[MembershipUpdate]
    suite_updates: list[SuiteUpdate]


def match_experiences(
    config: SyncConfig, current_by_name: dict[str, dict[str, Any]]
) -> tuple[list[ExperienceMatch], list[dict[str, Any]]]:
    """Pair configured experiences with existing ones; returns matches and archives.

    A name match wins. It fails when another entry already claimed that
    experience by ID, or when the entry pins a different ``experience_id``:
    renaming onto a name another experience still holds is refused rather
    than ordered. Without a name match a pinned ID must still be unclaimed.
    Existing experiences nobody matched are archived unless they already are.
    """
    remaining = {str(record["experienceID"]): record for record in current_by_name.values()}
    matches: list[ExperienceMatch] = []
    for spec in config.experiences:
        record = current_by_name.get(spec.name)
        if record is not None:
            record_id = str(record["experienceID"])
            if record_id not in remaining:
                raise ValidationError(f"Experience name collision: {spec.name}")
            if spec.experience_id is not None and spec.experience_id != record_id:
                raise ValidationError(f"Multiple experiences desire the same name: {spec.name}")
            spec.experience_id = record_id
            del remaining[record_id]
            matches.append(ExperienceMatch(spec, record))
            continue
        if spec.experience_id is not None:
            record = remaining.pop(spec.experience_id, None)
            if record is None:
                raise ValidationError(
                    "No existing experience available with ID. This could be due to multiple "
                    f"configured experiences requesting the same ID: {spec.experience_id}"
                )
            matches.append(ExperienceMatch(spec, record))
            continue
        matches.append(ExperienceMatch(spec))
    archives = [record for record in remaining.values() if not record.get("archived")]
    return matches, archives


def plan_tag_updates(
    matches: list[ExperienceMatch], tags: dict[str, Membership], managed: list[str]
) -> list[MembershipUpdate]:
    for tag in managed:
        if tag not in tags:
            raise ValidationError(f"Managed tag doesn't exist: {tag}")
    updates = {name: MembershipUpdate(name, group.target_id) for name, group in tags.items()}
    for match in matches:
        for tag in match.desired.tags:
            if tag not in tags:
                raise ValidationError(f"Non-existent tag: {tag}")
            if match.original_id not in tags[tag].experience_ids:
                updates[tag].additions.append(match.desired)
        if match.original_id is None:
            continue
        for tag in managed:
            if match.original_id in tags[tag].experience_ids and tag not in match.desired.tags:
                updates[tag].removals.append(match.desired)
    return [update for update in updates.values() if update.additions or update.removals]


def plan_system_updates(
    matches: list[ExperienceMatch], systems: dict[str, Membership]
) -> list[MembershipUpdate]:
    updates = {name: MembershipUpdate(name, group.target_id) for name, group in systems.items()}
    for match in matches:
        for system in match.desired.systems:
            if system not in systems:
                raise ValidationError(f"Non-existent system: {system}")
            if match.original_id not in systems[system].experience_ids:
                updates[system].additions.append(match.desired)
    return [update for update in updates.values() if update.additions]


def plan_suite_updates(
    matches: list[ExperienceMatch],
    suites: dict[str, dict[str, Any]],
    managed: list[ManagedSuite],
) -> list[SuiteUpdate]:
    by_name = {match.desired.name: match.desired for match in matches}
    updates = []
    for suite in managed:
        record = suites.get(suite.name)
        if record is None:
            raise ValidationError(f"Test suite not found: {suite.name}")
        members = []
        for name in suite.experiences:
            if name not in by_name:
                raise ValidationError(f"Experience in test suite not found: {name}")
            members.append(by_name[name])
        updates.append(
            SuiteUpdate(
                suite.name,
                str(record["testSuiteID"]),
                {str(value) for value in record.get("experiences") or []},
                members,
            )
        )
    return updates


def plan_sync(config: SyncConfig, state: ProjectState) -> SyncPlan:
    matches, archives = match_experiences(config, state.experiences_by_name)
    return SyncPlan(
        matches=matches,
        archives=archives,
        tag_updates=plan_tag_updates(matches, state.tags, config.managed_experience_tags),
        system_updates=plan_system_updates(matches, state.systems),
        suite_updates=plan_suite_updates(matches, state.suites, config.managed_test_suites),
    )


def _apply_experience(ctx: ResimContext, match: ExperienceMatch) -> str:
    spec = match.desired
    fields = spec.api_fields()
    if match.original is None:
        record = ctx.transport.post(
            EXPERIENCE.collection_path(ctx.project_id), fields, action="failed to create experience"
        )
        spec.experience_id = str(record["experienceID"])
        return "created"
    item_path = EXPERIENCE.item_path(ctx.project_id, match.original_id)
    spec.experience_id = match.original_id
    restored = bool(match.original.get("archived"))
    if restored:
        ctx.transport.post(f"{item_path}/restore", action="failed to restore experience")
    elif all(match.original.get(key) == value for key, value in fields.items()):
        return "unchanged"
    ctx.transport.patch(
        item_path,
        {"experience": fields, "updateMask": sorted(fields)},
        action="failed to update experience",
    )
    return "restored" if restored else "updated"


def _experience_id(spec: ExperienceSpec) -> str:
    if not spec.experience_id:
        raise ValidationError(f"Experience has no ID. Maybe we failed to create it? {spec.name}")
    return spec.experience_id


def apply_plan(
    ctx: ResimContext, plan: SyncPlan, *, emit: Callable[[str], None] = print
) -> dict[str, int]:
    """Create, restore and update experiences, then fix suites, tags and systems.

    Archiving runs last so suites are revised before their members disappear.
    """
    counts: dict[str, int] = {"created": 0, "restored": 0, "updated": 0, "unchanged": 0}
    if plan.matches:
        emit(f"Create/Update Experiences ({len(plan.matches)})...")
    for match in plan.matches:
        counts[_apply_experience(ctx, match)] += 1

    for suite in plan.suite_updates:
        desired_ids = [_experience_id(spec) for spec in suite.experiences]
        if set(desired_ids) == suite.current_ids:
            continue
        emit(f"Revising test suite {suite.name}")
        ctx.transport.post(
            f"{TEST_SUITE.item_path(ctx.project_id, suite.suite_id)}/revisions",
            {"experiences": desired_ids},
            action="failed to revise test suite",
        )

    for update in plan.tag_updates:
        tag_path = EXPERIENCE_TAG.item_path(ctx.project_id, update.target_id)
        emit(f"Updating tag {update.name}: +{len(update.additions)} -{len(update.removals)}")
        for spec in update.additions:
            ctx.transport.post(
                f"{tag_path}/experiences/{_experience_id(spec)}", action="failed to update tags"
            )
        for spec in update.removals:
            ctx.transport.delete(
                f"{tag_path}/experiences/{_experience_id(spec)}", action="failed to update tags"
            )

    for update in plan.system_updates:
        system_path = SYSTEM.item_path(ctx.project_id, update.target_id)
        emit(f"Updating system {update.name}: +{len(update.additions)}")
        for spec in update.additions:
            ctx.transport.post(
                f"{system_path}/experiences/{_experience_id(spec)}",
                action="failed to update systems",
            )

    for record in plan.archives:
        ctx.transport.post(
            f"{EXPERIENCE.item_path(ctx.project_id, record['experienceID'])}/archive",
            action="failed to archive experiences",
        )
    counts["archived"] = len(plan.archives)
    _log.info(
        "experiences_synced created=%d restored=%d updated=%d unchanged=%d archived=%d",
        counts["created"],
        counts["restored"],
        counts["updated"],
        counts["unchanged"],
        counts["archived"],
    )
    return counts


def sync_experiences(
    ctx: ResimContext,
    config_path: Path,
    *,
    update_config: bool = False,
    emit: Callable[[str], None] = print,
) -> dict[str, int]:
    config = SyncConfig.load(config_path)
    plan = plan_sync(config, fetch_state(ctx, config))
    counts = apply_plan(ctx, plan, emit=emit)
    emit(
        f"Synced experiences: {counts['created']} created, {counts['updated']} updated, "
        f"{counts['restored']} restored, {counts['archived']} archived"
    )
    if update_config:
        atomic_write_text(config_path, config.to_yaml())
        emit(f"Updated config written to {config_path}")
    return counts
