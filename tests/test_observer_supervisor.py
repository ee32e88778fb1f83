from __future__ import annotations

import os
import signal
import subprocess
import sys
import textwrap
from typing import Any

import pytest

from resim_cli.ci_exit import exit_code_for_status, github_line, suite_revision_token
from resim_cli.models import (
    ObserverTimeout,
    SupervisePolicy,
    TERMINAL_STATUSES,
    ValidationError,
    WorkStatus,
)
from resim_cli.observer import Observer
from resim_cli.supervisor import Supervisor, validate_policy
from resim_cli.workitems import (
    WorkflowRunItem,
    filter_jobs_by_status,
    parse_rerun_states,
    rollup_status,
)

from conftest import FakePlatform, make_context


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class _ScriptedBatch:
    """Returns queued statuses in order, then repeats the last one."""

    kind = "batch"

    def __init__(self, statuses: list[str], jobs: list[list[dict[str, Any]]] | None = None):
        self.item_id = "batch-1"
        self.statuses = list(statuses)
        self.jobs = list(jobs or [])
        self.cancelled = 0
        self.reruns: list[list[str]] = []
        self.record: dict[str, Any] = {}

    def fetch_status(self) -> WorkStatus:
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return WorkStatus(self.item_id, status, {"status": status})

    def cancel(self) -> None:
        self.cancelled += 1

    def list_jobs(self) -> list[dict[str, Any]]:
        return self.jobs.pop(0) if len(self.jobs) > 1 else self.jobs[0]

    def rerun(self, job_ids: list[str]) -> dict[str, Any]:
        self.reruns.append(list(job_ids))
        return {}


def _observer(**kwargs: Any) -> tuple[Observer, _Clock]:
    clock = _Clock()
    kwargs.setdefault("poll_interval_sec", 10)
    return Observer(sleep=clock.sleep, clock=clock, **kwargs), clock


def _jobs(*statuses: str) -> list[dict[str, Any]]:
    return [{"jobID": f"job-{index}", "conflatedStatus": status} for index, status in enumerate(statuses)]


def test_observer_returns_first_terminal_status() -> None:
    observer, clock = _observer()
    item = _ScriptedBatch(["SUBMITTED", "EXPERIENCES_RUNNING", "BATCH_METRICS_RUNNING", "SUCCEEDED"])

    observation = observer.observe(item)

    assert observation.final.status == "SUCCEEDED"
    assert observation.polls == 4
    assert observation.history == ("SUBMITTED", "EXPERIENCES_RUNNING", "BATCH_METRICS_RUNNING", "SUCCEEDED")
    assert clock.now == 30


def test_observer_history_stays_terminal_once_reached() -> None:
    observer, _clock = _observer()
    item = _ScriptedBatch(["SUBMITTED", "FAILED", "RUNNING"])

    observation = observer.observe(item)

    terminal = [status for status in observation.history if status in TERMINAL_STATUSES]
    assert terminal == ["FAILED"]
    assert observation.history[-1] == "FAILED"


def test_observer_times_out_with_last_state() -> None:
    observer, _clock = _observer(timeout_sec=25)
    item = _ScriptedBatch(["EXPERIENCES_RUNNING"])

    with pytest.raises(ObserverTimeout, match="last state EXPERIENCES_RUNNING") as excinfo:
        observer.observe(item)
    assert excinfo.value.last_status == "EXPERIENCES_RUNNING"
    assert item.cancelled == 0


def test_observer_poll_interval_has_a_floor() -> None:
    observer, _clock = _observer(poll_interval_sec=0.01)

    assert observer.poll_interval_sec == 1.0


def test_observer_rejects_unknown_status() -> None:
    observer, _clock = _observer()

    with pytest.raises(ValidationError, match="unknown batch status: EXPLODED"):
        observer.observe(_ScriptedBatch(["EXPLODED"]))


def test_fresh_attempt_skips_stale_terminal_status() -> None:
    observer, _clock = _observer()
    item = _ScriptedBatch(["ERROR", "SUBMITTED", "SUCCEEDED"])

    observation = observer.observe(item, fresh_attempt=True)

    assert observation.final.status == "SUCCEEDED"
    assert observation.polls == 3


def test_fresh_attempt_accepts_terminal_after_settle_polls() -> None:
    observer, _clock = _observer(settle_polls=2)
    item = _ScriptedBatch(["ERROR"])

    observation = observer.observe(item, fresh_attempt=True)

    assert observation.final.status == "ERROR"
    assert observation.polls == 3


def test_interrupt_cancels_remote_item() -> None:
    def _interrupt(_seconds: float) -> None:
        raise KeyboardInterrupt

    item = _ScriptedBatch(["SUBMITTED"])
    observer = Observer(sleep=_interrupt)

    with pytest.raises(KeyboardInterrupt):
        observer.observe(item)
    assert item.cancelled == 1


def test_interrupt_without_cancel() -> None:
    def _interrupt(_seconds: float) -> None:
        raise KeyboardInterrupt

    item = _ScriptedBatch(["SUBMITTED"])

    with pytest.raises(KeyboardInterrupt):
        Observer(sleep=_interrupt, cancel_on_interrupt=False).observe(item)
    assert item.cancelled == 0


def _supervisor(policy: SupervisePolicy, lines: list[str]) -> Supervisor:
    observer, _clock = _observer()
    return Supervisor(policy, observer=observer, emit=lines.append)


def test_supervisor_reruns_until_clean() -> None:
    lines: list[str] = []
    item = _ScriptedBatch(
        ["ERROR", "SUBMITTED", "SUCCEEDED"],
        jobs=[_jobs("PASSED", "ERROR", "ERROR", "PASSED"), _jobs("PASSED", "PASSED")],
    )
    policy = SupervisePolicy(max_rerun_attempts=3, rerun_on_states=("ERROR",))

    result = _supervisor(policy, lines).supervise(item)

    assert item.reruns == [["job-1", "job-2"]]
    assert result.final_status == "SUCCEEDED"
    assert result.stop_reason == "no_matching_jobs"
    assert result.attempts == 1
    assert "Failed job percentage: 50.0% (2/4 jobs)" in lines
    assert "Submitted rerun batch: batch-1" in lines


def test_supervisor_never_exceeds_max_attempts() -> None:
    lines: list[str] = []
    item = _ScriptedBatch(
        ["ERROR", "SUBMITTED", "ERROR", "SUBMITTED", "ERROR", "SUBMITTED", "ERROR"],
        jobs=[_jobs("ERROR", "PASSED")],
    )
    policy = SupervisePolicy(max_rerun_attempts=2, rerun_on_states=("ERROR",))

    result = _supervisor(policy, lines).supervise(item)

    assert len(item.reruns) == 2
    assert result.stop_reason == "max_attempts_reached"
    assert result.final_status == "ERROR"
    assert all(set(rerun) <= {"job-0"} for rerun in item.reruns)


def test_supervisor_respects_failure_budget() -> None:
    lines: list[str] = []
    item = _ScriptedBatch(["FAILED"], jobs=[_jobs("FAILED", "FAILED", "FAILED", "PASSED")])
    policy = SupervisePolicy(rerun_on_states=("FAILED",), rerun_max_failure_percent=50)

    result = _supervisor(policy, lines).supervise(item)

    assert item.reruns == []
    assert result.stop_reason == "failure_budget_exceeded"


def test_supervisor_stops_on_cancelled_batch() -> None:
    lines: list[str] = []
    item = _ScriptedBatch(["CANCELLED"], jobs=[_jobs("ERROR")])

    result = _supervisor(SupervisePolicy(), lines).supervise(item)

    assert result.stop_reason == "cancelled"
    assert item.reruns == []


_WAIT_SCRIPT = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    import resim_cli.cli as cli
    from conftest import FakePlatform, make_context

    platform = FakePlatform()
    project = platform.add_project("P1")
    batch = platform.add(
        "projects/%s/batches" % project["projectID"],
        {"status": "EXPERIENCES_RUNNING", "friendlyName": "b"},
    )
    reads = []
    forward = platform.request

    def request(**kwargs):
        if kwargs["method"] == "GET" and kwargs["url"].endswith(batch["batchID"]):
            reads.append(kwargs["url"])
            if len(reads) == 2:
                print("polling", flush=True)
        return forward(**kwargs)

    platform.request = request
    cli._build_context = lambda args: make_context(
        platform, Path(sys.argv[1]), project=args.project
    )
    code = cli.main(
        ["batches", "wait", "--project", "P1", "--batch-id", batch["batchID"], "--poll-every", "1s"]
    )
    print(batch["status"].lower(), flush=True)
    sys.exit(code)
    """
)


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
def test_sigterm_cancels_the_waited_batch(tmp_path) -> None:
    env = dict(os.environ, PYTHONPATH=os.pathsep.join(path for path in sys.path if path))
    proc = subprocess.Popen(
        [sys.executable, "-c", _WAIT_SCRIPT, str(tmp_path)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
    )
    try:
        assert proc.stdout.readline().strip() == "polling"
        proc.send_signal(signal.SIGTERM)
        out, err = proc.communicate(timeout=30)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.communicate()

    assert proc.returncode == 130, err
    assert out.splitlines()[-1] == "cancelled"
    assert "[interrupted]" in err


@pytest.mark.parametrize(
    "policy, message",
    [
        (SupervisePolicy(rerun_max_failure_percent=0), "rerun-max-failure-percent"),
        (SupervisePolicy(max_rerun_attempts=0), "max-rerun-attempts"),
        (SupervisePolicy(rerun_on_states=()), "rerun-on-states"),
    ],
)
def test_policy_validation(policy: SupervisePolicy, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_policy(policy)


def test_rerun_states_parse_case_insensitively() -> None:
    assert parse_rerun_states("error, failed,ERROR") == ("ERROR", "FAILED")
    with pytest.raises(ValidationError, match="invalid rerun state 'RUNNING'"):
        parse_rerun_states("RUNNING")


def test_filter_jobs_by_status() -> None:
    assert filter_jobs_by_status(_jobs("ERROR", "PASSED", "ERROR"), ["ERROR"]) == [
        "job-0",
        "job-2",
    ]


def test_rollup_prefers_active_then_worst_terminal() -> None:
    assert rollup_status([]) == "SUBMITTED"
    assert rollup_status(["SUCCEEDED", "EXPERIENCES_RUNNING"]) == "RUNNING"
    assert rollup_status(["SUCCEEDED", "FAILED", "ERROR"]) == "ERROR"
    assert rollup_status(["SUCCEEDED", "SUCCEEDED"]) == "SUCCEEDED"


def test_workflow_run_rejects_batch_without_status(platform: FakePlatform, tmp_path) -> None:
    project_id = platform.add_project("P1")["projectID"]
    batch = platform.add(f"projects/{project_id}/batches", {"friendlyName": "nightly"})
    workflow = platform.add(f"projects/{project_id}/workflows", {"name": "ci"})
    run = platform.add(
        f"projects/{project_id}/workflows/{workflow['workflowID']}/runs",
        {"workflowRunTestSuites": [{"batchID": batch["batchID"]}]},
    )
    item = WorkflowRunItem(make_context(platform, tmp_path), workflow["workflowID"], run["workflowRunID"])

    with pytest.raises(ValidationError, match="batch has no status"):
        item.fetch_status()


@pytest.mark.parametrize(
    "status, code",
    [("SUCCEEDED", 0), ("FAILED", 2), ("ERROR", 3), ("SUBMITTED", 4), ("CANCELLED", 5)],
)
def test_exit_codes(status: str, code: int) -> None:
    assert exit_code_for_status(status) == code


def test_github_output_tokens() -> None:
    assert github_line("batch_id", "abc") == "batch_id=abc"
    assert suite_revision_token("suite", 3) == "suite/3"
