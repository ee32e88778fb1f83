from __future__ import annotations

import logging
from typing import Callable

from resim_cli.models import (
    CANCELLED,
    SupervisePolicy,
    SuperviseResult,
    ValidationError,
)
from resim_cli.observer import Observer
from resim_cli.workitems import RerunnableWorkItem, filter_jobs_by_status

_log = logging.getLogger("resim.supervisor")


def validate_policy(policy: SupervisePolicy) -> SupervisePolicy:
    if not 0.0 < policy.rerun_max_failure_percent <= 100.0:
        raise ValidationError(
            "rerun-max-failure-percent must be greater than 0 and at most 100, "
            f"got: {policy.rerun_max_failure_percent:f}"
        )
    if policy.max_rerun_attempts < 1:
        raise ValidationError(
            f"max-rerun-attempts must be at least 1, got: {policy.max_rerun_attempts}"
        )
    if not policy.rerun_on_states:
        raise ValidationError("rerun-on-states must name at least one job state")
    return policy


class Supervisor:
    """Observe a batch and rerun its unhealthy jobs until it converges.

    Each pass waits for a terminal status, collects the jobs whose conflated
    status is in ``policy.rerun_on_states`` and reruns them in place. The loop
    stops when nothing needs a rerun, the failing share exceeds
    ``policy.rerun_max_failure_percent``, the batch was cancelled, or
    ``policy.max_rerun_attempts`` reruns have been issued. The batch ID is
    the same on every pass.
    """

    def __init__(
        self,
        policy: SupervisePolicy,
        *,
        observer: Observer | None = None,
        emit: Callable[[str], None] = print,
    ):
        self.policy = validate_policy(policy)
        self.observer = observer or Observer(
            poll_interval_sec=policy.poll_interval_sec,
            timeout_sec=policy.wait_timeout_sec,
        )
        self._emit = emit

    def _rerun_set(self, item: RerunnableWorkItem) -> tuple[list[str], str | None]:
        jobs = item.list_jobs()
        matching = filter_jobs_by_status(jobs, self.policy.rerun_on_states)
        self._emit(f"Found {len(matching)} job IDs matching rerun states: {matching}")
        if not matching:
            return [], "no_matching_jobs"
        total = len(jobs)
        failed_percent = len(matching) * 100.0 / total
        self._emit(
            f"Failed job percentage: {failed_percent:.1f}% ({len(matching)}/{total} jobs)"
        )
        if failed_percent > self.policy.rerun_max_failure_percent:
            return [], "failure_budget_exceeded"
        return matching, None

    def supervise(self, item: RerunnableWorkItem) -> SuperviseResult:
        reruns: list[tuple[str, ...]] = []
        attempt = 0
        while True:
            observation = self.observer.observe(item, fresh_attempt=attempt > 0)
            status = observation.final.status
            self._emit(f"Batch completed with status: {status}")
            _log.info(
                "supervisor_attempt batch_id=%s attempt=%d status=%s polls=%d",
                item.item_id,
                attempt,
                status,
                observation.polls,
            )

            stop_reason: str | None
            if attempt >= self.policy.max_rerun_attempts:
                stop_reason = "max_attempts_reached"
                job_ids: list[str] = []
            elif status == CANCELLED:
                stop_reason = "cancelled"
                job_ids = []
            else:
                job_ids, stop_reason = self._rerun_set(item)
            if stop_reason is not None:
                _log.info(
                    "supervisor_done batch_id=%s status=%s reason=%s reruns=%d",
                    item.item_id,
                    status,
                    stop_reason,
                    len(reruns),
                )
                return SuperviseResult(
                    batch_id=item.item_id,
                    final_status=status,
                    attempts=attempt,
                    reruns=tuple(reruns),
                    stop_reason=stop_reason,
                )

            item.rerun(job_ids)
            reruns.append(tuple(job_ids))
            attempt += 1
            self._emit(f"Submitted rerun batch: {item.item_id}")
