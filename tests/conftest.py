from __future__ import annotations

import json
import re
import uuid
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlsplit

import pytest

import resim_cli.cli as cli
from resim_cli.config import ResimSettings
from resim_cli.context import ResimContext
from resim_cli.transport import Transport

API_URL = "https://api.test/v1/"
BFF_URL = "https://bff.test/graphql"

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

# collection segment -> (list key, id field)
_COLLECTIONS = {
    "projects": ("projects", "projectID"),
    "branches": ("branches", "branchID"),
    "systems": ("systems", "systemID"),
    "builds": ("builds", "buildID"),
    "metricsBuilds": ("metricsBuilds", "metricsBuildID"),
    "experiences": ("experiences", "experienceID"),
    "experienceTags": ("experienceTags", "experienceTagID"),
    "suites": ("testSuites", "testSuiteID"),
    "revisions": ("testSuites", "testSuiteID"),
    "batches": ("batches", "batchID"),
    "jobs": ("jobs", "jobID"),
    "logs": ("logs", "fileName"),
    "sweeps": ("sweeps", "parameterSweepID"),
    "reports": ("reports", "reportID"),
    "workflows": ("workflows", "workflowID"),
    "runs": ("workflowRuns", "workflowRunID"),
}

_ACTION_SEGMENTS = {"cancel", "archive", "restore", "rerun", "debug"}


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, *, raw: bytes | None = None):
        self.status_code = status_code
        if raw is not None:
            self.content = raw
        elif payload is None:
            self.content = b""
        else:
            self.content = json.dumps(payload).encode("utf-8")
        self.text = self.content.decode("utf-8", errors="replace")
        self.headers: dict[str, str] = {}

    def json(self) -> Any:
        return json.loads(self.content)

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]


Handler = Callable[["FakePlatform", str, dict[str, Any] | None, dict[str, Any] | None], FakeResponse]


class FakePlatform:
    """In-memory stand-in for the REST API, plugged in as the requests session."""

    def __init__(self) -> None:
        self.collections: dict[str, list[dict[str, Any]]] = {}
        self.memberships: set[str] = set()
        self.calls: list[tuple[str, str, Any]] = []
        self.overrides: list[tuple[str, re.Pattern[str], Handler]] = []
        self.blobs: dict[str, bytes] = {}

    # Seeding helpers

    def add(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        segment = collection.rsplit("/", 1)[-1]
        _key, id_field = _COLLECTIONS[segment]
        record.setdefault(id_field, str(uuid.uuid4()))
        self.collections.setdefault(collection, []).append(record)
        return record

    def add_project(self, name: str = "P1") -> dict[str, Any]:
        return self.add("projects", {"name": name, "description": "seeded"})

    def records(self, collection: str) -> list[dict[str, Any]]:
        return self.collections.get(collection, [])

    def find(self, collection: str, item_id: str) -> dict[str, Any] | None:
        segment = collection.rsplit("/", 1)[-1]
        _key, id_field = _COLLECTIONS[segment]
        for record in self.records(collection):
            if str(record.get(id_field)) == item_id:
                return record
        return None

    def on(self, method: str, pattern: str, handler: Handler) -> None:
        self.overrides.append((method, re.compile(pattern), handler))

    def calls_to(self, method: str, pattern: str) -> list[tuple[str, str, Any]]:
        rx = re.compile(pattern)
        return [call for call in self.calls if call[0] == method and rx.search(call[1])]

    # requests.Session protocol

    def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        stream: bool = False,
    ) -> FakeResponse:
        if url in self.blobs:
            self.calls.append((method, url, None))
            return FakeResponse(200, raw=self.blobs[url])
        if url.startswith(API_URL):
            path = url[len(API_URL) :]
        else:
            path = urlsplit(url).path.lstrip("/")
        self.calls.append((method, path, json))
        for override_method, rx, handler in self.overrides:
            if override_method == method and rx.search(path):
                return handler(self, path, params, json)
        return self._dispatch(method, path, json, params or {})

    # Generic REST behaviour

    def _dispatch(
        self, method: str, path: str, body: Any, params: dict[str, Any]
    ) -> FakeResponse:
        parts = path.strip("/").split("/")
        last = parts[-1]
        if method == "GET":
            if last in _COLLECTIONS:
                key, _id_field = _COLLECTIONS[last]
                archived = params.get("archived") in ("true", True)
                listed = [r for r in self.records(path) if bool(r.get("archived")) == archived]
                return FakeResponse(200, {key: listed, "nextPageToken": ""})
            if len(parts) < 2:
                return FakeResponse(404, {"message": "not found"})
            record = self.find("/".join(parts[:-1]), last) if parts[-2] in _COLLECTIONS else None
            if record is None and len(parts) >= 2 and parts[-2] == "revisions":
                record = self._revision(parts)
            return FakeResponse(200, record) if record is not None else FakeResponse(404, {"message": "not found"})
        if method == "POST":
            if last in _ACTION_SEGMENTS:
                return self._action("/".join(parts[:-1]), last, body)
            if _UUID_RE.match(last):
                key = path
                if key in self.memberships:
                    return FakeResponse(409, {"message": "already exists"})
                self.memberships.add(key)
                return FakeResponse(201, {})
            if last == "revisions":
                return self._revise("/".join(parts[:-1]), body or {})
            return self._create(path, body or {})
        if method == "PATCH":
            record = self.find("/".join(parts[:-1]), last)
            if record is None:
                return FakeResponse(404, {"message": "not found"})
            fields = next((value for value in (body or {}).values() if isinstance(value, dict)), body or {})
            record.update(fields)
            return FakeResponse(200, record)
        if method == "DELETE":
            owned = len(parts) >= 2 and parts[-2] in _COLLECTIONS
            record = self.find("/".join(parts[:-1]), last) if owned else None
            if _UUID_RE.match(last) and record is not None:
                # Deleting archives: the record leaves listings but stays readable by ID.
                record["archived"] = True
                return FakeResponse(204)
            if path in self.memberships:
                self.memberships.discard(path)
                return FakeResponse(204)
            return FakeResponse(404, {"message": "not found"})
        return FakeResponse(405, {"message": f"unsupported {method}"})

    def _create(self, path: str, body: dict[str, Any]) -> FakeResponse:
        record = dict(body)
        parts = path.split("/")
        if parts[-1] == "batches":
            record.setdefault("status", "SUBMITTED")
            record.setdefault("friendlyName", record.get("batchName") or "friendly-batch")
        if parts[-1] == "suites":
            record["testSuiteRevision"] = 0
        if parts[-1] == "sweeps":
            record.setdefault("status", "SUBMITTED")
            record.setdefault("name", "sweep-1")
        if parts[-1] == "reports":
            record.setdefault("status", "SUBMITTED")
            record.setdefault("name", "report-1")
        if parts[-1] == "builds" and len(parts) >= 2 and parts[-3] == "branches":
            record["branchID"] = parts[-2]
        self.add(path, record)
        if parts[-1] == "builds" and record.get("branchID"):
            self.collections.setdefault(f"{parts[0]}/{parts[1]}/builds", []).append(record)
        if parts[-1] == "suites":
            self.collections.setdefault(f"{path}/{record['testSuiteID']}/revisions", []).append(
                dict(record)
            )
        return FakeResponse(201, record)

    def _revise(self, suite_path: str, body: dict[str, Any]) -> FakeResponse:
        collection, suite_id = suite_path.rsplit("/", 1)
        suite = self.find(collection, suite_id)
        if suite is None:
            return FakeResponse(404, {"message": "not found"})
        suite.update({k: v for k, v in body.items() if k != "updateMetricsBuild"})
        suite["testSuiteRevision"] = int(suite["testSuiteRevision"]) + 1
        self.collections.setdefault(f"{suite_path}/revisions", []).append(dict(suite))
        return FakeResponse(201, dict(suite))

    def _revision(self, parts: list[str]) -> dict[str, Any] | None:
        wanted = int(parts[-1])
        for record in self.records("/".join(parts[:-1])):
            if int(record.get("testSuiteRevision", -1)) == wanted:
                return record
        return None

    def _action(self, item_path: str, action: str, body: Any) -> FakeResponse:
        collection, item_id = item_path.rsplit("/", 1)
        record = self.find(collection, item_id) if collection.rsplit("/", 1)[-1] in _COLLECTIONS else None
        if record is None:
            return FakeResponse(404, {"message": "not found"})
        if action == "cancel":
            record["status"] = "CANCELLED"
        elif action in ("archive", "restore"):
            record["archived"] = action == "archive"
        return FakeResponse(200, record)


class StaticTokens:
    def __init__(self) -> None:
        self.refreshes = 0

    def token(self) -> str:
        return "test-token"

    def refresh(self) -> str:
        self.refreshes += 1
        return "test-token"


def make_context(
    platform: FakePlatform, tmp_path: Path, *, project: str | None = "P1"
) -> ResimContext:
    settings = ResimSettings.resolve({"url": API_URL}, environ={}, config_dir=tmp_path / "config")
    transport = Transport(
        API_URL,
        StaticTokens(),
        bff_url=BFF_URL,
        session=platform,  # type: ignore[arg-type]
    )
    return ResimContext(settings=settings, transport=transport, project=project)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def cli_platform(platform: FakePlatform, tmp_path: Path, monkeypatch) -> FakePlatform:
    """Route every CLI command to the in-memory platform."""
    monkeypatch.setattr(
        cli, "_build_context", lambda args: make_context(platform, tmp_path, project=args.project)
    )
    monkeypatch.delenv("GITHUB_ACTOR", raising=False)
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    return platform
