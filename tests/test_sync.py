from __future__ import annotations

import uuid
from pathlib import Path

import pytest
import yaml

from resim_cli.models import ValidationError
from resim_cli.sync import (
    ExperienceSpec,
    ManagedSuite,
    Membership,
    SyncConfig,
    match_experiences,
    plan_suite_updates,
    plan_tag_updates,
    sync_experiences,
)

from conftest import FakePlatform, make_context


def _entry(name: str, **extra) -> dict:
    return {"name": name, "description": f"{name} scenario", "locations": [f"s3://bucket/{name}/"], **extra}


def _record(name: str, *, archived: bool = False) -> dict:
    return {"experienceID": str(uuid.uuid4()), "name": name, "archived": archived}


def _config(*entries: dict, **extra) -> SyncConfig:
    return SyncConfig.from_mapping({"experiences": list(entries), **extra})


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"description": "d", "locations": ["s3://a"]}, "Empty experience name."),
        ({"name": "E1", "locations": ["s3://a"]}, "Empty experience description for experience: E1"),
        ({"name": "E1", "description": "d"}, "No locations provided for experience: E1"),
        (_entry("E1", experience_id="not-a-uuid"), "experience ID"),
        (_entry("E1", environment_variables=[{"name": "1BAD", "value": "x"}]), "1BAD"),
        (_entry("E1", container_timeout_seconds=0), "container_timeout_seconds"),
    ],
)
def test_config_entries_are_validated(entry: dict, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        _config(entry)


def test_config_rejects_duplicate_names() -> None:
    with pytest.raises(ValidationError, match="Duplicate experience name"):
        _config(_entry("E1"), _entry("E1"))


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="config file does not exist"):
        SyncConfig.load(tmp_path / "experiences.yaml")


def test_match_by_name_then_id_then_new() -> None:
    kept, renamed, dropped = _record("E1"), _record("old-name"), _record("E9")
    already_archived = _record("E8", archived=True)
    current = {r["name"]: r for r in (kept, renamed, dropped, already_archived)}
    config = _config(
        _entry("E1"),
        _entry("new-name", experience_id=renamed["experienceID"]),
        _entry("E5"),
    )

    matches, archives = match_experiences(config, current)

    assert [(m.desired.name, m.original) for m in matches] == [
        ("E1", kept),
        ("new-name", renamed),
        ("E5", None),
    ]
    assert matches[0].desired.experience_id == kept["experienceID"]
    assert archives == [dropped]


def test_match_refuses_renaming_onto_a_claimed_name() -> None:
    first, second = _record("A"), _record("B")
    current = {"A": first, "B": second}
    config = _config(_entry("C", experience_id=first["experienceID"]), _entry("A"))

    with pytest.raises(ValidationError, match="Experience name collision: A"):
        match_experiences(config, current)


def test_match_refuses_name_owned_by_another_id() -> None:
    first, second = _record("A"), _record("B")
    config = _config(_entry("A", experience_id=second["experienceID"]))

    with pytest.raises(ValidationError, match="Multiple experiences desire the same name"):
        match_experiences(config, {"A": first, "B": second})


def test_match_requires_known_pinned_id() -> None:
    config = _config(_entry("A", experience_id=str(uuid.uuid4())))

    with pytest.raises(ValidationError, match="No existing experience available with ID"):
        match_experiences(config, {})


def test_tag_plan_adds_and_removes_managed_tags_only() -> None:
    tagged = _record("E1")
    current = {"E1": tagged}
    config = _config(_entry("E1", tags=["smoke"]), _entry("E2", tags=["regression"]))
    matches, _ = match_experiences(config, current)
    tags = {
        "regression": Membership("regression", "t-reg", {tagged["experienceID"]}),
        "smoke": Membership("smoke", "t-smoke", set()),
        "legacy": Membership("legacy", "t-legacy", {tagged["experienceID"]}),
    }

    updates = {u.name: u for u in plan_tag_updates(matches, tags, ["regression"])}

    assert [s.name for s in updates["regression"].additions] == ["E2"]
    assert [s.name for s in updates["regression"].removals] == ["E1"]
    assert [s.name for s in updates["smoke"].additions] == ["E1"]
    assert "legacy" not in updates


def test_tag_plan_rejects_unknown_tags() -> None:
    matches, _ = match_experiences(_config(_entry("E1", tags=["nope"])), {})

    with pytest.raises(ValidationError, match="Non-existent tag: nope"):
        plan_tag_updates(matches, {}, [])
    with pytest.raises(ValidationError, match="Managed tag doesn't exist: gone"):
        plan_tag_updates([], {}, ["gone"])


def test_suite_plan_requires_known_suite_and_members() -> None:
    matches, _ = match_experiences(_config(_entry("E1")), {})
    suites = {"nightly": {"testSuiteID": "s-1", "experiences": []}}

    with pytest.raises(ValidationError, match="Test suite not found: weekly"):
        plan_suite_updates(matches, suites, [ManagedSuite("weekly", ["E1"])])
    with pytest.raises(ValidationError, match="Experience in test suite not found: E7"):
        plan_suite_updates(matches, suites, [ManagedSuite("nightly", ["E1", "E7"])])


def test_api_fields_only_carry_configured_optionals() -> None:
    spec = ExperienceSpec.from_config(_entry("E1", profile="dev"))

    assert spec.api_fields() == {
        "name": "E1",
        "description": "E1 scenario",
        "locations": ["s3://bucket/E1/"],
        "cacheExempt": False,
        "profile": "dev",
    }


def test_sync_reconciles_project(platform: FakePlatform, tmp_path: Path) -> None:
    project_id = platform.add_project("P1")["projectID"]
    base = f"projects/{project_id}"
    e1 = platform.add(f"{base}/experiences", _entry("E1"))
    e2 = platform.add(f"{base}/experiences", _entry("E2"))
    e3 = platform.add(f"{base}/experiences", {**_entry("E3"), "archived": True})
    tag = platform.add(f"{base}/experienceTags", {"name": "regression"})
    platform.add(
        f"{base}/experienceTags/{tag['experienceTagID']}/experiences",
        {"experienceID": e1["experienceID"], "name": "E1"},
    )
    system = platform.add(f"{base}/systems", {"name": "planner"})
    suite = platform.add(
        f"{base}/suites",
        {"name": "nightly", "experiences": [e1["experienceID"], e2["experienceID"]], "testSuiteRevision": 0},
    )
    config_path = tmp_path / "experiences.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "experiences": [
                    {**_entry("E1"), "description": "merged lanes"},
                    _entry("E3"),
                    _entry("E4", tags=["regression"], systems=["planner"]),
                ],
                "managed_test_suites": [{"name": "nightly", "experiences": ["E1", "E4"]}],
                "managed_experience_tags": ["regression"],
            }
        ),
        encoding="utf-8",
    )
    messages: list[str] = []

    counts = sync_experiences(
        make_context(platform, tmp_path), config_path, update_config=True, emit=messages.append
    )

    e4 = next(r for r in platform.records(f"{base}/experiences") if r["name"] == "E4")
    assert counts == {"created": 1, "restored": 1, "updated": 1, "unchanged": 0, "archived": 1}
    assert e1["description"] == "merged lanes"
    assert e2["archived"] is True
    assert e3["archived"] is False
    assert suite["experiences"] == [e1["experienceID"], e4["experienceID"]]
    assert platform.calls_to(
        "DELETE", f"experienceTags/{tag['experienceTagID']}/experiences/{e1['experienceID']}$"
    )
    assert f"{base}/experienceTags/{tag['experienceTagID']}/experiences/{e4['experienceID']}" in platform.memberships
    assert f"{base}/systems/{system['systemID']}/experiences/{e4['experienceID']}" in platform.memberships

    written = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert [entry["experience_id"] for entry in written["experiences"]] == [
        e1["experienceID"],
        e3["experienceID"],
        e4["experienceID"],
    ]
    assert written["managed_experience_tags"] == ["regression"]
    assert messages[-1] == f"Updated config written to {config_path}"


def test_sync_is_quiet_when_nothing_changed(platform: FakePlatform, tmp_path: Path) -> None:
    project_id = platform.add_project("P1")["projectID"]
    platform.add(f"projects/{project_id}/experiences", {**_entry("E1"), "cacheExempt": False})
    config_path = tmp_path / "experiences.yaml"
    config_path.write_text(yaml.safe_dump({"experiences": [_entry("E1")]}), encoding="utf-8")

    counts = sync_experiences(make_context(platform, tmp_path), config_path, emit=lambda _m: None)

    assert counts["unchanged"] == 1
    assert not platform.calls_to("PATCH", "experiences")
    assert not platform.calls_to("POST", "experiences")
