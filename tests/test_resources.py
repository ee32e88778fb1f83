from __future__ import annotations

from pathlib import Path

import pytest

from resim_cli import resources
from resim_cli.models import ConflictError, ResolutionError, ValidationError
from resim_cli.resolver import SYSTEM, TEST_SUITE

from conftest import FakePlatform, make_context


@pytest.fixture
def ctx(platform: FakePlatform, tmp_path: Path):
    platform.add_project("P1")
    return make_context(platform, tmp_path)


def _collection(ctx, kind) -> str:
    return kind.collection_path(ctx.project_id)


def test_name_and_id_resolve_to_the_same_record(ctx, platform: FakePlatform) -> None:
    created = resources.create_system(
        ctx, name="S1", description="sim", resources=resources.SystemResources()
    )

    by_name = ctx.resolver.resolve(SYSTEM, "S1", project_id=ctx.project_id)
    by_id = ctx.resolver.resolve(SYSTEM, created["systemID"], project_id=ctx.project_id)

    assert by_name == by_id
    assert by_name["build_vcpus"] == 4


def test_unknown_name_is_a_resolution_error(ctx) -> None:
    with pytest.raises(ResolutionError, match="failed to find system with name or ID: nope"):
        resources.get_system(ctx, "nope")


def test_duplicate_names_conflict(ctx) -> None:
    resources.create_system(ctx, name="S1", description="d", resources=resources.SystemResources())

    with pytest.raises(ConflictError, match="system name matches an existing system"):
        resources.create_system(
            ctx, name="S1", description="d", resources=resources.SystemResources()
        )


def test_system_resources_are_validated_locally(ctx, platform: FakePlatform) -> None:
    with pytest.raises(ValidationError, match="build vCPUs"):
        resources.create_system(
            ctx, name="S1", description="d", resources=resources.SystemResources(build_vcpus=0)
        )
    assert not platform.calls_to("POST", r"/systems$")


def test_build_requires_a_tagged_image(ctx) -> None:
    with pytest.raises(ValidationError, match="must be tagged"):
        resources.create_build(
            ctx,
            branch="main",
            system="S1",
            version="1.0",
            description="d",
            image="public.ecr.aws/resim/untagged",
        )


def test_build_on_missing_branch_without_auto_create(ctx) -> None:
    resources.create_system(ctx, name="S1", description="d", resources=resources.SystemResources())

    with pytest.raises(ResolutionError, match="Branch does not exist"):
        resources.create_build(
            ctx,
            branch="feature",
            system="S1",
            version="1.0",
            description="d",
            image="public.ecr.aws/x:latest",
        )


def test_build_auto_creates_branch_with_inferred_type(ctx, platform: FakePlatform) -> None:
    resources.create_system(ctx, name="S1", description="d", resources=resources.SystemResources())

    build = resources.create_build(
        ctx,
        branch="main",
        system="S1",
        version="1.0",
        description="d",
        image="public.ecr.aws/x:latest",
        auto_create_branch=True,
    )

    branch = platform.records(f"projects/{ctx.project_id}/branches")[0]
    assert branch["branchType"] == "MAIN"
    assert build["branchID"] == branch["branchID"]
    assert resources.get_build(ctx, build["buildID"])["imageUri"] == "public.ecr.aws/x:latest"


def test_tagging_twice_reports_already_registered(ctx) -> None:
    experience = resources.create_experience(
        ctx, name="E1", description="d", locations=["s3://bucket/e1/"]
    )
    resources.create_experience_tag(ctx, name="nightly", description="d")

    resources.tag_experience(ctx, tag="nightly", experience=experience["experienceID"])
    with pytest.raises(ConflictError, match="it may already be registered"):
        resources.tag_experience(ctx, tag="nightly", experience="E1")


def test_experience_environment_variables_are_parsed(ctx, platform: FakePlatform) -> None:
    resources.create_experience(
        ctx,
        name="E1",
        description="d",
        locations=["s3://bucket/e1/"],
        environment=["SEED=1", "MODE=fast"],
    )

    body = platform.calls_to("POST", r"/experiences$")[-1][2]
    assert body["environmentVariables"] == [
        {"name": "SEED", "value": "1"},
        {"name": "MODE", "value": "fast"},
    ]
    assert body["containerTimeoutSeconds"] == 3600


def test_suite_revisions_increment_and_remain_addressable(ctx) -> None:
    resources.create_experience(ctx, name="E1", description="d", locations=["s3://b/1/"])
    resources.create_experience(ctx, name="E2", description="d", locations=["s3://b/2/"])
    resources.create_system(ctx, name="S1", description="d", resources=resources.SystemResources())
    original = resources.create_test_suite(
        ctx, name="nightly", description="d", system="S1", experiences=["E1"]
    )

    first = resources.revise_test_suite(ctx, "nightly", experiences=["E1", "E2"])
    second = resources.revise_test_suite(ctx, "nightly", description="newer")

    assert (original["testSuiteRevision"], first["testSuiteRevision"], second["testSuiteRevision"]) == (0, 1, 2)
    latest = ctx.resolver.resolve_test_suite(ctx.project_id, "nightly")
    pinned = ctx.resolver.resolve_test_suite(ctx.project_id, "nightly", revision=2)
    assert latest == pinned
    assert ctx.resolver.resolve_test_suite(ctx.project_id, "nightly", revision=0)[
        "experiences"
    ] == original["experiences"]


def test_revise_without_changes_is_rejected(ctx) -> None:
    resources.create_system(ctx, name="S1", description="d", resources=resources.SystemResources())
    resources.create_experience(ctx, name="E1", description="d", locations=["s3://b/1/"])
    resources.create_test_suite(ctx, name="nightly", description="d", system="S1", experiences=["E1"])

    with pytest.raises(ValidationError, match="nothing to revise"):
        resources.revise_test_suite(ctx, "nightly")


def test_workflow_suite_reconciliation_plan() -> None:
    plan = resources.plan_suite_reconciliation(
        {"a": True, "b": True, "c": False},
        {"a": True, "b": False, "d": True},
    )

    assert plan.creates == {"d": True}
    assert plan.updates == {"b": False}
    assert plan.deletes == ["c"]


def test_suite_selections_reject_bad_json() -> None:
    with pytest.raises(ValidationError, match="failed to parse suites JSON"):
        resources.parse_suite_selections("[{", None)


def test_list_builds_rejects_branch_and_system_together(ctx) -> None:
    with pytest.raises(ValidationError, match="mutually exclusive"):
        resources.list_builds(ctx, branch="main", system="S1")


def test_test_suite_collection_path(ctx) -> None:
    assert _collection(ctx, TEST_SUITE) == f"projects/{ctx.project_id}/suites"
