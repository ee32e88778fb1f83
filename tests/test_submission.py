from __future__ import annotations

import datetime as dt
import json
import uuid
from pathlib import Path

import pytest

from resim_cli.models import ValidationError
from resim_cli.submission import (
    BatchRequest,
    ExperienceSelection,
    ReportRequest,
    SweepRequest,
    WorkflowRunRequest,
    ci_account,
    parse_parameters,
    triggered_via,
    validate_pool_labels,
)

BUILD_ID = str(uuid.uuid4())
METRICS_BUILD_ID = str(uuid.uuid4())


def _experiences(**kwargs) -> ExperienceSelection:
    return ExperienceSelection.build(action="failed to create batch", **kwargs)


def test_experience_selection_splits_ids_from_names() -> None:
    experience_id = str(uuid.uuid4())
    selection = _experiences(experiences=f"E1, {experience_id},E2", tags="nightly")

    assert selection.to_json() == {
        "experienceIDs": [experience_id],
        "experienceNames": ["E1", "E2"],
        "experienceTagNames": ["nightly"],
    }


def test_experience_selection_requires_something() -> None:
    with pytest.raises(ValidationError, match="must choose at least one experience"):
        _experiences()


def test_tag_ids_and_names_are_mutually_exclusive() -> None:
    with pytest.raises(ValidationError, match="mutually exclusive parameters"):
        _experiences(tag_ids=str(uuid.uuid4()), tag_names="nightly")


def test_parameters_accept_both_separators_and_reject_duplicates() -> None:
    assert parse_parameters(["speed:10", "mode=fast", "url=http://x:1"]) == {
        "speed": "10",
        "mode": "fast",
        "url": "http://x:1",
    }
    with pytest.raises(ValidationError, match="duplicate parameter 'speed'"):
        parse_parameters(["speed:1", "speed=2"])
    with pytest.raises(ValidationError, match="failed to parse parameter: speed"):
        parse_parameters(["speed"])


def test_workflow_run_parameters_only_split_on_equals() -> None:
    with pytest.raises(ValidationError, match="<parameter-name>=<parameter-value>"):
        WorkflowRunRequest.build(workflow="ci", build_id=BUILD_ID, parameters=["speed:10"])


@pytest.mark.parametrize("percent", [-1, 101])
def test_allowable_failure_percent_is_bounded(percent: int) -> None:
    with pytest.raises(ValidationError, match="allowable failure percent must be between 0 and 100"):
        BatchRequest.build(
            build_id=BUILD_ID,
            experiences=_experiences(experiences="E1"),
            allowable_failure_percent=percent,
        )


def test_reserved_pool_label_is_rejected() -> None:
    with pytest.raises(ValidationError, match="reserved pool label"):
        validate_pool_labels(["gpu,resim"])


def test_batch_body_carries_metrics_set_pool_and_ci_fields() -> None:
    request = BatchRequest.build(
        build_id=BUILD_ID,
        experiences=_experiences(experiences="E1"),
        metrics_build_id=METRICS_BUILD_ID,
        parameters=["speed:10"],
        pool_labels=["gpu"],
        batch_name="nightly",
        allowable_failure_percent=10,
        metrics_set="core",
    )

    body = request.to_json({"GITHUB_ACTOR": "octocat"})

    assert body["buildID"] == BUILD_ID
    assert body["metricsBuildID"] == METRICS_BUILD_ID
    assert body["parameters"] == {"speed": "10"}
    assert body["poolLabels"] == ["gpu", "resim:metrics2"]
    assert body["metricsSetName"] == "core"
    assert body["associatedAccount"] == "octocat"
    assert body["triggeredVia"] == "GITHUB"
    assert body["batchName"] == "nightly"
    assert body["allowableFailurePercent"] == 10


def test_empty_metrics_set_is_sent_as_empty_string() -> None:
    request = BatchRequest.build(
        build_id=BUILD_ID, experiences=_experiences(experiences="E1"), metrics_set=""
    )

    assert request.to_json({})["metricsSetName"] == ""


def test_bad_build_id_is_rejected_locally() -> None:
    with pytest.raises(ValidationError, match="failed to parse build ID"):
        BatchRequest.build(build_id="not-a-uuid", experiences=_experiences(experiences="E1"))


def test_ci_environment_detection() -> None:
    assert ci_account({"GITLAB_USER_LOGIN": "dev"}) == "dev"
    assert ci_account({}) == ""
    assert triggered_via({"GITLAB_CI": "true"}) == "GITLAB"
    assert triggered_via({"CI": "1"}) is None
    assert triggered_via({}) == "LOCAL"


def test_sweep_grid_search_counts_expected_batches(tmp_path: Path) -> None:
    config = tmp_path / "grid.json"
    config.write_text(
        json.dumps([{"name": "speed", "values": ["1", "2", "3"]}, {"name": "mode", "values": ["a", "b"]}]),
        encoding="utf-8",
    )

    request = SweepRequest.build(
        build_id=BUILD_ID,
        experiences=_experiences(experiences="E1"),
        grid_search_config=str(config),
    )

    assert request.expected_batches == 6
    assert request.to_json({})["parameters"][1] == {"name": "mode", "values": ["a", "b"]}


def test_sweep_rejects_both_forms(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="if any flags in the group"):
        SweepRequest.build(
            build_id=BUILD_ID,
            experiences=_experiences(experiences="E1"),
            grid_search_config=str(tmp_path / "grid.json"),
            parameter_name="speed",
            parameter_values="1,2",
        )


def test_sweep_requires_one_form() -> None:
    with pytest.raises(ValidationError, match="parameter name \\*and\\* values"):
        SweepRequest.build(
            build_id=BUILD_ID, experiences=_experiences(experiences="E1"), parameter_name="speed"
        )


def test_grid_search_rejects_empty_values(tmp_path: Path) -> None:
    config = tmp_path / "grid.json"
    config.write_text(json.dumps([{"name": "speed", "values": []}]), encoding="utf-8")

    with pytest.raises(ValidationError, match="has no values"):
        SweepRequest.build(
            build_id=BUILD_ID,
            experiences=_experiences(experiences="E1"),
            grid_search_config=str(config),
        )


def test_report_window_defaults_to_four_weeks() -> None:
    now = dt.datetime(2024, 3, 1, tzinfo=dt.timezone.utc)

    request = ReportRequest.build(
        test_suite="nightly", branch="main", metrics_build_id=METRICS_BUILD_ID, now=now
    )

    assert request.end == now
    assert request.start == now - dt.timedelta(days=28)


def test_report_length_and_start_are_mutually_exclusive() -> None:
    with pytest.raises(ValidationError, match="mutually exclusive parameters"):
        ReportRequest.build(
            test_suite="nightly",
            branch="main",
            metrics_build_id=METRICS_BUILD_ID,
            length_days=7,
            start_timestamp="2024-01-01T00:00:00Z",
        )


def test_report_start_must_precede_end() -> None:
    with pytest.raises(ValidationError, match="start timestamp must be before end"):
        ReportRequest.build(
            test_suite="nightly",
            branch="main",
            metrics_build_id=METRICS_BUILD_ID,
            start_timestamp="2024-02-01T00:00:00Z",
            end_timestamp="2024-01-01T00:00:00Z",
        )
