from __future__ import annotations

import base64
import io
import os
import uuid
import zipfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from resim_cli.batch_summary import StatusCounts, slack_payload
from resim_cli.debug import (
    attach_shell,
    close_debug_session,
    cluster_api,
    find_debug_pod,
    start_debug_session,
)
from resim_cli.logs import ARCHIVE_LOG, DownloadableLog, download_logs, extract_zip, filter_logs
from resim_cli.metrics_sync import collect_metrics_config, sync_metrics_config
from resim_cli.models import ObserverTimeout, ResimError, ValidationError
from resim_cli.workitems import BatchItem

from conftest import FakePlatform, FakeResponse, make_context


@pytest.fixture
def ctx(platform: FakePlatform, tmp_path: Path):
    platform.add_project("P1")
    return make_context(platform, tmp_path)


def _seed_batch(platform: FakePlatform, ctx, logs: list[tuple[str, bytes, str | None]]) -> BatchItem:
    batch = platform.add(f"projects/{ctx.project_id}/batches", {"status": "SUCCEEDED"})
    for name, payload, log_type in logs:
        url = f"https://blobs.test/{name}"
        platform.blobs[url] = payload
        platform.add(
            f"projects/{ctx.project_id}/batches/{batch['batchID']}/logs",
            {"fileName": name, "logOutputLocation": url, "fileSize": len(payload), "logType": log_type},
        )
    return BatchItem(ctx=ctx, item_id=batch["batchID"])


def _zip_bytes(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name, payload in members.items():
            bundle.writestr(name, payload)
    return buffer.getvalue()


def test_filter_logs_requires_every_requested_file() -> None:
    logs = [DownloadableLog("a.txt", "u", 1), DownloadableLog("b.txt", "u", 1)]

    assert filter_logs(logs, ["b.txt"]) == [logs[1]]
    assert filter_logs(logs, []) == logs
    with pytest.raises(ValidationError, match="missing \\['c.txt'\\]"):
        filter_logs(logs, ["a.txt", "c.txt"])


def test_download_writes_each_log(ctx, platform: FakePlatform, tmp_path: Path) -> None:
    item = _seed_batch(platform, ctx, [("stdout.txt", b"hello", None), ("metrics.json", b"{}", None)])
    progress: list[str] = []

    written = download_logs(item, tmp_path / "out", on_progress=progress.append)

    assert sorted(path.name for path in written) == ["metrics.json", "stdout.txt"]
    assert (tmp_path / "out" / "stdout.txt").read_bytes() == b"hello"
    assert "Downloading stdout.txt..." in progress


def test_download_rejects_size_mismatch(ctx, platform: FakePlatform, tmp_path: Path) -> None:
    item = _seed_batch(platform, ctx, [("stdout.txt", b"hello", None)])
    platform.blobs["https://blobs.test/stdout.txt"] = b"hi"

    with pytest.raises(ResimError, match="wrote 2 bytes"):
        download_logs(item, tmp_path / "out")


def test_archive_logs_are_expanded(ctx, platform: FakePlatform, tmp_path: Path) -> None:
    archive = _zip_bytes({"run/a.txt": b"a", "b.txt": b"b"})
    item = _seed_batch(platform, ctx, [("bundle.zip", archive, ARCHIVE_LOG)])

    written = download_logs(item, tmp_path / "out")

    out = tmp_path / "out"
    assert not (out / "bundle.zip").exists()
    assert (out / "run" / "a.txt").read_bytes() == b"a"
    assert sorted(path.name for path in written) == ["a.txt", "b.txt"]


def test_extract_refuses_paths_outside_destination(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    archive.write_bytes(_zip_bytes({"../escape.txt": b"x"}))
    destination = tmp_path / "dest"
    destination.mkdir()

    with pytest.raises(ResimError, match="illegal file path"):
        extract_zip(archive, destination)
    assert not (tmp_path / "escape.txt").exists()


def _metrics_tree(root: Path) -> None:
    templates = root / ".resim" / "metrics" / "templates"
    templates.mkdir(parents=True)
    (root / ".resim" / "metrics" / "config.yml").write_text("version: 1\n", encoding="utf-8")
    (templates / "summary.liquid").write_text("{{ total }}", encoding="utf-8")
    (templates / "notes.md").write_text("skip me", encoding="utf-8")
    (templates / "nested").mkdir()


def test_collect_metrics_config_encodes_only_templates(tmp_path: Path) -> None:
    _metrics_tree(tmp_path)
    messages: list[str] = []

    config, templates = collect_metrics_config(tmp_path, report=messages.append)

    assert base64.b64decode(config) == b"version: 1\n"
    assert [template.name for template in templates] == ["summary.liquid"]
    assert base64.b64decode(templates[0].contents) == b"{{ total }}"
    assert "Skipping non .liquid file notes.md" in messages
    assert "Skipping directory nested" in messages


def test_collect_metrics_config_requires_config(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="failed to find ReSim metrics config"):
        collect_metrics_config(tmp_path)


def test_sync_posts_graphql_mutation(ctx, platform: FakePlatform, tmp_path: Path) -> None:
    _metrics_tree(tmp_path)
    platform.on(
        "POST",
        r"^graphql$",
        lambda _p, _path, _params, _body: FakeResponse(200, {"data": {"updateMetricsConfig": True}}),
    )

    templates = sync_metrics_config(ctx.transport, tmp_path)

    (_method, _path, body) = platform.calls_to("POST", r"^graphql$")[0]
    assert "updateMetricsConfig" in body["query"]
    assert body["variables"]["templateFiles"] == [templates[0].to_json()]


def test_sync_surfaces_graphql_errors(ctx, platform: FakePlatform, tmp_path: Path) -> None:
    _metrics_tree(tmp_path)
    platform.on(
        "POST",
        r"^graphql$",
        lambda _p, _path, _params, _body: FakeResponse(200, {"errors": [{"message": "bad config"}]}),
    )

    with pytest.raises(ResimError, match="bad config"):
        sync_metrics_config(ctx.transport, tmp_path)


def test_slack_payload_lists_only_nonzero_optional_counts() -> None:
    batch = {
        "batchID": "b1",
        "systemID": "s1",
        "testSuiteID": "t1",
        "testSuiteRevision": 2,
        "status": "SUCCEEDED",
        "totalJobs": 5,
        "jobStatusCounts": {"succeeded": 4, "error": 1},
        "jobMetricsStatusCounts": {"failBlock": 1},
    }

    payload = slack_payload(
        batch, suite_name="nightly", system_name="planner", base_url="https://app.test/projects/p/"
    )

    intro = payload["blocks"][0]["text"]["text"]
    assert "<https://app.test/projects/p/test-suites/t1/revisions/2|nightly>" in intro
    assert "ran successfully" in intro
    items = payload["blocks"][1]["elements"][0]["elements"]
    labels = [item["elements"][-1].get("text") for item in items]
    assert labels == ["5 total tests", "Passed", "Blocking", "Erroring"]
    assert StatusCounts.from_batch(batch).passed == 3


def test_debug_requires_exactly_one_source(ctx) -> None:
    with pytest.raises(ValidationError, match="Either a build ID or batch"):
        start_debug_session(ctx, experience="E1")
    with pytest.raises(ValidationError, match="Only one of build ID"):
        start_debug_session(ctx, experience="E1", build_id=str(uuid.uuid4()), batch="b")


def _cluster_record(**overrides) -> dict:
    record = {
        "batchID": str(uuid.uuid4()),
        "namespace": "debug-ns",
        "clusterEndpoint": "https://cluster.test",
        "clusterToken": "cluster-token",
        "clusterCAData": base64.b64encode(b"-----BEGIN CERTIFICATE-----\n").decode(),
    }
    record.update(overrides)
    return record


def test_cluster_api_uses_returned_credentials(tmp_path: Path) -> None:
    api = cluster_api(_cluster_record(), tmp_path)

    configuration = api.api_client.configuration
    assert configuration.host == "https://cluster.test"
    assert configuration.api_key == {"authorization": "cluster-token"}
    assert configuration.api_key_prefix == {"authorization": "Bearer"}
    assert Path(configuration.ssl_ca_cert).read_bytes() == b"-----BEGIN CERTIFICATE-----\n"


def test_cluster_api_rejects_bad_ca_data(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="Failed to decode cluster CA data"):
        cluster_api(_cluster_record(clusterCAData="not base64!"), tmp_path)
    with pytest.raises(ValidationError, match="cluster connection details"):
        cluster_api(_cluster_record(clusterToken=None), tmp_path)


def _pod(name: str, phase: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name), status=SimpleNamespace(phase=phase))


class _PodLister:
    def __init__(self, *listings: list) -> None:
        self.listings = list(listings)
        self.calls: list[dict] = []

    def list_namespaced_pod(self, **kwargs) -> SimpleNamespace:
        self.calls.append(kwargs)
        items = self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        return SimpleNamespace(items=items)


def test_find_debug_pod_waits_for_running_customer_pod() -> None:
    api = _PodLister([], [_pod("debug-0", "Pending")], [_pod("debug-0", "Running")])

    assert find_debug_pod(api, "debug-ns", "b-1", sleep=lambda _s: None) == "debug-0"
    assert len(api.calls) == 3
    assert api.calls[0] == {
        "namespace": "debug-ns",
        "label_selector": "resim.io/parentID=b-1,resim.io/role=customer",
    }


@pytest.mark.parametrize(
    "listing, message",
    [([], "Could not find running batch"), ([_pod("debug-0", "Pending")], "took longer than")],
)
def test_find_debug_pod_times_out(listing: list, message: str) -> None:
    now = [0.0]

    def _sleep(seconds: float) -> None:
        now[0] += seconds

    with pytest.raises(ObserverTimeout, match=message):
        find_debug_pod(
            _PodLister(listing),
            "debug-ns",
            "b-1",
            timeout_sec=10,
            poll_interval_sec=5,
            sleep=_sleep,
            clock=lambda: now[0],
        )


class _ExecSession:
    def __init__(self) -> None:
        self.stdout = ["$ "]
        self.stderr = ["warning\n"]
        self.written: list[str] = []
        self.closed = False

    def is_open(self) -> bool:
        return "exit\n" not in self.written

    def update(self, timeout: float = 0) -> None:
        pass

    def peek_stdout(self) -> bool:
        return bool(self.stdout)

    def read_stdout(self) -> str:
        return self.stdout.pop(0)

    def peek_stderr(self) -> bool:
        return bool(self.stderr)

    def read_stderr(self) -> str:
        return self.stderr.pop(0)

    def write_stdin(self, data: str) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed = True


def test_attach_shell_relays_terminal_until_exit() -> None:
    read_fd, write_fd = os.pipe()
    os.write(write_fd, b"exit\n")
    os.close(write_fd)
    session = _ExecSession()
    calls: list[tuple] = []
    api = SimpleNamespace(connect_get_namespaced_pod_exec=object())

    def _stream(target, pod, namespace, **options):
        calls.append((target, pod, namespace, options))
        return session

    stdout, stderr = io.StringIO(), io.StringIO()
    with os.fdopen(read_fd, "r") as stdin:
        attach_shell(
            api,
            "debug-ns",
            "debug-0",
            command="bash -l",
            container="sim",
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            stream_fn=_stream,
        )

    target, pod, namespace, options = calls[0]
    assert target is api.connect_get_namespaced_pod_exec
    assert (pod, namespace) == ("debug-0", "debug-ns")
    assert options["command"] == ["bash", "-l"]
    assert options["container"] == "sim"
    assert options["tty"] and options["stdin"] and not options["_preload_content"]
    assert session.written == ["exit\n"]
    assert session.closed
    assert stdout.getvalue() == "$ "
    assert stderr.getvalue() == "warning\n"


def test_close_debug_session_survives_cancel_failure() -> None:
    class _Unreachable:
        item_id = "b-1"

        def cancel(self) -> None:
            raise ResimError("platform unavailable")

    messages: list[str] = []
    close_debug_session(_Unreachable(), emit=messages.append)  # type: ignore[arg-type]

    assert messages[0] == "Shutting down debug batch"
    assert "platform unavailable" in messages[1]
