"""Slack webhook summaries of a batch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlsplit

from resim_cli.context import ResimContext
from resim_cli.models import (
    BATCH_METRICS_QUEUED,
    BATCH_METRICS_RUNNING,
    CANCELLED,
    ERROR,
    EXPERIENCES_RUNNING,
    SUBMITTED,
    SUCCEEDED,
)
from resim_cli.resolver import SYSTEM, TEST_SUITE

_STATUS_TEXT = {
    SUCCEEDED: "ran successfully",
    ERROR: "completed with errors",
    CANCELLED: "was cancelled",
    SUBMITTED: "is running",
    EXPERIENCES_RUNNING: "is running",
    BATCH_METRICS_QUEUED: "is running",
    BATCH_METRICS_RUNNING: "is running",
}


@dataclass(frozen=True)
class StatusCounts:
    total: int
    passed: int
    fail_block: int
    fail_warn: int
    error: int
    running: int
    cancelled: int

    @classmethod
    def from_batch(cls, batch: Mapping[str, Any]) -> "StatusCounts":
        jobs = batch.get("jobStatusCounts") or {}
        metrics = batch.get("jobMetricsStatusCounts") or {}
        fail_block = int(metrics.get("failBlock") or 0)
        fail_warn = int(metrics.get("failWarn") or 0)
        return cls(
            total=int(batch.get("totalJobs") or 0),
            passed=int(jobs.get("succeeded") or 0) - (fail_block + fail_warn),
            fail_block=fail_block,
            fail_warn=fail_warn,
            error=int(jobs.get("error") or 0),
            running=sum(
                int(jobs.get(key) or 0)
                for key in ("submitted", "running", "metricsQueued", "metricsRunning")
            ),
            cancelled=int(jobs.get("cancelled") or 0),
        )


def status_text(status: str | None) -> str:
    return _STATUS_TEXT.get(str(status), "had an unknown status")


def _rich_text_item(count: int, label: str, url: str) -> dict[str, Any]:
    return {
        "type": "rich_text_section",
        "elements": [
            {"type": "text", "text": f"{count} "},
            {"type": "link", "url": url, "text": label, "style": {"bold": True}},
        ],
    }


def slack_payload(
    batch: Mapping[str, Any],
    *,
    suite_name: str,
    system_name: str,
    base_url: str,
) -> dict[str, Any]:
    """Build a Slack webhook message; *base_url* is the project's web URL."""
    project_url = base_url.rstrip("/")
    suite_url = (
        f"{project_url}/test-suites/{batch.get('testSuiteID')}"
        f"/revisions/{batch.get('testSuiteRevision', 0)}"
    )
    batch_url = f"{project_url}/batches/{batch.get('batchID')}"
    system_url = f"{project_url}/systems/{batch.get('systemID')}"
    counts = StatusCounts.from_batch(batch)

    intro = (
        f"The <{suite_url}|{suite_name}> *<{batch_url}|run>* for "
        f"<{system_url}|{system_name}> {status_text(batch.get('status'))} "
        "with the following breakdown:"
    )
    items: list[dict[str, Any]] = [
        {
            "type": "rich_text_section",
            "elements": [{"type": "text", "text": f"{counts.total} total tests"}],
        },
        _rich_text_item(counts.passed, "Passed", f"{batch_url}?TEST_STATUS_MULTI=Passed"),
        _rich_text_item(counts.fail_block, "Blocking", f"{batch_url}?TEST_STATUS_MULTI=Blocker"),
    ]
    optional = (
        (counts.fail_warn, "Warning", "?TEST_STATUS_MULTI=Warning"),
        (counts.error, "Erroring", "?TEST_STATUS_MULTI=Error"),
        (counts.running, "Running", "?TEST_STATUS_MULTI=Running&TEST_STATUS_MULTI=Queued"),
        (counts.cancelled, "Cancelled", "?TEST_STATUS_MULTI=Cancelled"),
    )
    for count, label, query in optional:
        if count > 0:
            items.append(_rich_text_item(count, label, batch_url + query))

    return {
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": intro}},
            {
                "type": "rich_text",
                "block_id": "list",
                "elements": [
                    {"type": "rich_text_list", "style": "bullet", "indent": 0, "elements": items}
                ],
            },
        ]
    }


def batch_slack_payload(ctx: ResimContext, batch: Mapping[str, Any]) -> dict[str, Any]:
    project_id = str(batch.get("projectID") or ctx.project_id)
    suite = ctx.resolver.resolve(TEST_SUITE, str(batch.get("testSuiteID") or ""), project_id=project_id)
    system = ctx.resolver.resolve(SYSTEM, str(batch.get("systemID") or ""), project_id=project_id)
    web = urlsplit(ctx.settings.api_url.replace("api", "app", 1))
    app_url = ctx.settings.app_url or f"{web.scheme}://{web.netloc}/"
    return slack_payload(
        batch,
        suite_name=str(suite.get("name", "")),
        system_name=str(system.get("name", "")),
        base_url=f"{app_url.rstrip('/')}/projects/{project_id}",
    )
