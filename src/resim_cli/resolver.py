"""Name-or-ID resolution shared by every resource kind."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from resim_cli.models import ResolutionError, ValidationError
from resim_cli.transport import Transport
from resim_cli.utils import is_uuid

_log = logging.getLogger("resim.resolver")


@dataclass(frozen=True)
class EntityKind:
    label: str
    id_field: str
    list_key: str
    collection: str
    name_field: str = "name"
    list_params: tuple[tuple[str, str], ...] = ()

    def collection_path(self, project_id: str | None) -> str:
        return self.collection.format(project_id=project_id)

    def item_path(self, project_id: str | None, item_id: str) -> str:
        return f"{self.collection_path(project_id)}/{item_id}"


PROJECT = EntityKind("project", "projectID", "projects", "projects")
BRANCH = EntityKind("branch", "branchID", "branches", "projects/{project_id}/branches")
SYSTEM = EntityKind("system", "systemID", "systems", "projects/{project_id}/systems")
BUILD = EntityKind("build", "buildID", "builds", "projects/{project_id}/builds")
METRICS_BUILD = EntityKind(
    "metrics build", "metricsBuildID", "metricsBuilds", "projects/{project_id}/metricsBuilds"
)
EXPERIENCE = EntityKind(
    "experience", "experienceID", "experiences", "projects/{project_id}/experiences"
)
EXPERIENCE_TAG = EntityKind(
    "experience tag", "experienceTagID", "experienceTags", "projects/{project_id}/experienceTags"
)
TEST_SUITE = EntityKind(
    "test suite", "testSuiteID", "testSuites", "projects/{project_id}/suites"
)
BATCH = EntityKind(
    "batch",
    "batchID",
    "batches",
    "projects/{project_id}/batches",
    name_field="friendlyName",
    list_params=(("orderBy", "timestamp"),),
)
SWEEP = EntityKind(
    "sweep", "parameterSweepID", "sweeps", "projects/{project_id}/sweeps"
)
REPORT = EntityKind("report", "reportID", "reports", "projects/{project_id}/reports")
WORKFLOW = EntityKind(
    "workflow", "workflowID", "workflows", "projects/{project_id}/workflows"
)

ALL_KINDS = (
    PROJECT,
    BRANCH,
    SYSTEM,
    BUILD,
    METRICS_BUILD,
    EXPERIENCE,
    EXPERIENCE_TAG,
    TEST_SUITE,
    BATCH,
    SWEEP,
    REPORT,
    WORKFLOW,
)


class Resolver:
    def __init__(self, transport: Transport):
        self.transport = transport

    def get_by_id(
        self, kind: EntityKind, item_id: str, *, project_id: str | None = None
    ) -> dict[str, Any] | None:
        return self.transport.get_optional(
            kind.item_path(project_id, item_id),
            action=f"unable to retrieve {kind.label}",
        )

    def find_by_name(
        self, kind: EntityKind, name: str, *, project_id: str | None = None
    ) -> dict[str, Any] | None:
        """Page through the list endpoint; first exact name match wins."""
        for record in self.transport.paginate(
            kind.collection_path(project_id),
            kind.list_key,
            action=f"unable to list {kind.list_key}",
            params=dict(kind.list_params),
        ):
            if record.get(kind.name_field) == name:
                return record
        return None

    def lookup(
        self, kind: EntityKind, key: str | None, *, project_id: str | None = None
    ) -> dict[str, Any] | None:
        text = str(key or "").strip()
        if not text:
            raise ValidationError(f"empty {kind.label} name")
        if is_uuid(text):
            record = self.get_by_id(kind, text, project_id=project_id)
            if record is not None:
                return record
            _log.info("resolver_id_miss kind=%s key=%s", kind.label, text)
            return None
        return self.find_by_name(kind, text, project_id=project_id)

    def resolve(
        self, kind: EntityKind, key: str | None, *, project_id: str | None = None
    ) -> dict[str, Any]:
        record = self.lookup(kind, key, project_id=project_id)
        if record is None:
            raise ResolutionError(
                f"failed to find {kind.label} with name or ID: {str(key).strip()}"
            )
        return record

    def resolve_id(
        self, kind: EntityKind, key: str | None, *, project_id: str | None = None
    ) -> str:
        return str(self.resolve(kind, key, project_id=project_id)[kind.id_field])

    def resolve_many(
        self, kind: EntityKind, keys: list[str], *, project_id: str | None = None
    ) -> list[str]:
        return [self.resolve_id(kind, key, project_id=project_id) for key in keys]

    def resolve_test_suite(
        self,
        project_id: str,
        key: str | None,
        *,
        revision: int | None = None,
    ) -> dict[str, Any]:
        """Resolve a suite; the latest revision unless *revision* is given."""
        suite = self.resolve(TEST_SUITE, key, project_id=project_id)
        if revision is None:
            return suite
        if revision < 0:
            raise ValidationError(f"invalid test suite revision: {revision}")
        suite_id = suite[TEST_SUITE.id_field]
        record = self.transport.get_optional(
            f"{TEST_SUITE.item_path(project_id, suite_id)}/revisions/{revision}",
            action="unable to retrieve test suite revision",
        )
        if record is None:
            raise ResolutionError(
                f"failed to find test suite {key} at revision {revision}"
            )
        return record

    def list_test_suite_revisions(self, project_id: str, suite_id: str) -> list[dict[str, Any]]:
        return list(
            self.transport.paginate(
                f"{TEST_SUITE.item_path(project_id, suite_id)}/revisions",
                TEST_SUITE.list_key,
                action="unable to list test suite revisions",
            )
        )
