"""Remote work items the observer can poll: batches, sweeps, reports, workflow runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol, runtime_checkable

from resim_cli.context import ResimContext
from resim_cli.models import (
    ACTIVE_STATUSES,
    CANCELLED,
    ERROR,
    FAILED,
    RERUN_ELIGIBLE_JOB_STATUSES,
    RUNNING,
    SUBMITTED,
    SUCCEEDED,
    ValidationError,
    WorkStatus,
)
from resim_cli.resolver import BATCH, REPORT, SWEEP, WORKFLOW, EntityKind
from resim_cli.utils import parse_uuid, split_csv

_log = logging.getLogger("resim.workitems")

# Worst outcome wins when several batches roll up into one status.
_SEVERITY = (SUCCEEDED, FAILED, ERROR, CANCELLED)


class WorkItem(Protocol):
    kind: str
    item_id: str

    def fetch_status(self) -> WorkStatus: ...

    def cancel(self) -> None: ...


@runtime_checkable
class RerunnableWorkItem(WorkItem, Protocol):
    def list_jobs(self) -> list[dict[str, Any]]: ...

    def rerun(self, job_ids: list[str]) -> dict[str, Any]: ...


def parse_rerun_states(raw: Iterable[str] | str | None) -> tuple[str, ...]:
    """Parse conflated job states case-insensitively; rejects unknown names."""
    states: list[str] = []
    for token in split_csv(raw):
        state = token.upper()
        if state not in RERUN_ELIGIBLE_JOB_STATUSES:
            allowed = ", ".join(sorted(RERUN_ELIGIBLE_JOB_STATUSES))
            raise ValidationError(f"invalid rerun state '{token}': expected one of {allowed}")
        if state not in states:
            states.append(state)
    return tuple(states)


def filter_jobs_by_status(jobs: list[dict[str, Any]], states: Iterable[str]) -> list[str]:
    wanted = set(states)
    return [
        str(job["jobID"])
        for job in jobs
        if job.get("jobID") and job.get("conflatedStatus") in wanted
    ]


def _record_status(record: dict[str, Any], kind: str) -> str:
    status = record.get("status")
    if not status:
        raise ValidationError(f"{kind} has no status")
    return str(status)


@dataclass
class BatchItem:
    ctx: ResimContext
    item_id: str
    record: dict[str, Any] | None = None
    kind: str = "batch"

    @classmethod
    def locate(
        cls, ctx: ResimContext, *, batch_id: str | None = None, batch_name: str | None = None
    ) -> "BatchItem":
        if batch_id:
            key = parse_uuid(batch_id, label="batch ID")
        elif batch_name:
            key = batch_name
        else:
            raise ValidationError("must specify either the batch ID or the batch name")
        record = ctx.resolver.resolve(BATCH, key, project_id=ctx.project_id)
        return cls(ctx=ctx, item_id=str(record[BATCH.id_field]), record=record)

    @property
    def _path(self) -> str:
        return BATCH.item_path(self.ctx.project_id, self.item_id)

    def fetch_status(self) -> WorkStatus:
        self.record = self.ctx.transport.get(self._path, action="unable to retrieve batch")
        return WorkStatus(self.item_id, _record_status(self.record, self.kind), self.record)

    def cancel(self) -> None:
        self.ctx.transport.post(f"{self._path}/cancel", action="failed to cancel batch")
        _log.info("batch_cancelled batch_id=%s", self.item_id)

    def list_jobs(self) -> list[dict[str, Any]]:
        return list(
            self.ctx.transport.paginate(
                f"{self._path}/jobs", "jobs", action="unable to list jobs"
            )
        )

    def list_logs(self) -> list[dict[str, Any]]:
        return list(
            self.ctx.transport.paginate(
                f"{self._path}/logs", "logs", action="unable to list batch logs"
            )
        )

    def list_job_logs(self, job_id: str) -> list[dict[str, Any]]:
        return list(
            self.ctx.transport.paginate(
                f"{self._path}/jobs/{job_id}/logs", "logs", action="unable to list job logs"
            )
        )

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.ctx.transport.get_optional(
            f"{self._path}/jobs/{job_id}", action="unable to retrieve job"
        )

    def create_job_log(self, job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        record = self.ctx.transport.post(
            f"{self._path}/jobs/{job_id}/logs", body, action="Unable to create log"
        )
        _log.info("job_log_created batch_id=%s job_id=%s file=%s", self.item_id, job_id, body.get("fileName"))
        return record or {}

    def rerun(self, job_ids: list[str]) -> dict[str, Any]:
        record = self.ctx.transport.post(
            f"{self._path}/rerun",
            {"jobIDs": list(job_ids)},
            action="failed to rerun batch",
        )
        _log.info("batch_rerun batch_id=%s jobs=%d", self.item_id, len(job_ids))
        return record or {}


@dataclass
class _SimpleItem:
    """A work item whose record carries its own ``status`` field."""

    ctx: ResimContext
    item_id: str
    entity: EntityKind
    record: dict[str, Any] | None = None

    @property
    def kind(self) -> str:
        return self.entity.label

    @property
    def _path(self) -> str:
        return self.entity.item_path(self.ctx.project_id, self.item_id)

    def fetch_status(self) -> WorkStatus:
        self.record = self.ctx.transport.get(
            self._path, action=f"unable to retrieve {self.kind}"
        )
        return WorkStatus(self.item_id, _record_status(self.record, self.kind), self.record)

    def cancel(self) -> None:
        self.ctx.transport.post(f"{self._path}/cancel", action=f"failed to cancel {self.kind}")
        _log.info("work_item_cancelled kind=%s item_id=%s", self.kind, self.item_id)


def sweep_item(ctx: ResimContext, key: str) -> _SimpleItem:
    record = ctx.resolver.resolve(SWEEP, key, project_id=ctx.project_id)
    return _SimpleItem(ctx, str(record[SWEEP.id_field]), SWEEP, record)


class ReportItem(_SimpleItem):
    def cancel(self) -> None:
        # Reports have no cancel endpoint; the server finishes them on its own.
        _log.warning("report_cancel_unsupported report_id=%s", self.item_id)


def report_item(ctx: ResimContext, key: str) -> ReportItem:
    record = ctx.resolver.resolve(REPORT, key, project_id=ctx.project_id)
    return ReportItem(ctx, str(record[REPORT.id_field]), REPORT, record)


def rollup_status(statuses: Iterable[str]) -> str:
    """Collapse several batch statuses into one for a parent work item."""
    seen = list(statuses)
    if not seen:
        return SUBMITTED
    if any(status in ACTIVE_STATUSES for status in seen):
        return RUNNING
    worst = SUCCEEDED
    for status in seen:
        if status in _SEVERITY and _SEVERITY.index(status) > _SEVERITY.index(worst):
            worst = status
    return worst


@dataclass
class WorkflowRunItem:
    """Status of a workflow run is the rollup of its per-suite batches."""

    ctx: ResimContext
    workflow_id: str
    item_id: str
    record: dict[str, Any] | None = None
    kind: str = "workflow run"

    @classmethod
    def locate(cls, ctx: ResimContext, *, workflow: str, run_id: str) -> "WorkflowRunItem":
        workflow_id = ctx.resolver.resolve_id(WORKFLOW, workflow, project_id=ctx.project_id)
        return cls(ctx, workflow_id, parse_uuid(run_id, label="run ID"))

    @property
    def _path(self) -> str:
        return f"{WORKFLOW.item_path(self.ctx.project_id, self.workflow_id)}/runs/{self.item_id}"

    def batch_ids(self) -> list[str]:
        record = self.record or {}
        return [
            str(entry["batchID"])
            for entry in record.get("workflowRunTestSuites") or []
            if entry.get("batchID")
        ]

    def fetch_status(self) -> WorkStatus:
        self.record = self.ctx.transport.get(self._path, action="failed to get workflow run")
        statuses = [
            _record_status(
                self.ctx.transport.get(
                    BATCH.item_path(self.ctx.project_id, batch_id),
                    action="unable to retrieve batch",
                )
                or {},
                "batch",
            )
            for batch_id in self.batch_ids()
        ]
        return WorkStatus(self.item_id, rollup_status(statuses), self.record)

    def cancel(self) -> None:
        for batch_id in self.batch_ids():
            BatchItem(self.ctx, batch_id).cancel()
