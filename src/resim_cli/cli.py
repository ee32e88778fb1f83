from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table

from resim_cli._logging import setup_logging
from resim_cli.batch_summary import batch_slack_payload
from resim_cli.ci_exit import (
    EXIT_INTERNAL,
    EXIT_INTERRUPTED,
    EXIT_TIMEOUT,
    exit_code_for_status,
    github_line,
    suite_revision_token,
)
from resim_cli.config import ResimSettings
from resim_cli.context import ResimContext, build_context
from resim_cli.debug import (
    DEFAULT_COMMAND,
    attach_shell,
    close_debug_session,
    cluster_api,
    find_debug_pod,
    start_debug_session,
)
from resim_cli.ingest import IngestRequest, collect_log_sources, results_url, run_ingest
from resim_cli.logs import download_logs, list_logs, register_log
from resim_cli.metrics_sync import sync_metrics_config
from resim_cli.models import (
    ObserverTimeout,
    ResimError,
    SupervisePolicy,
    ValidationError,
)
from resim_cli.observer import DEFAULT_POLL_INTERVAL_SEC, Observer, sigterm_as_interrupt
from resim_cli import resources
from resim_cli.submission import (
    BatchRequest,
    ExperienceSelection,
    ReportRequest,
    SuiteRunRequest,
    SweepRequest,
    WorkflowRunRequest,
    run_test_suite,
    submit_batch,
    submit_report,
    submit_sweep,
    submit_workflow_run,
)
from resim_cli.supervisor import Supervisor
from resim_cli.sync import sync_experiences
from resim_cli.utils import is_uuid, parse_duration, parse_uuid, split_csv
from resim_cli.workitems import (
    BatchItem,
    WorkflowRunItem,
    parse_rerun_states,
    report_item,
    sweep_item,
)

_cli_log = logging.getLogger("resim.cli")

_SETTINGS_FLAGS = (
    "url",
    "auth-url",
    "bff-url",
    "project",
    "client-id",
    "client-secret",
    "username",
    "password",
    "interactive-login",
)

_LIST_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "projects": [("ID", "projectID"), ("Name", "name"), ("Description", "description")],
    "branches": [("ID", "branchID"), ("Name", "name"), ("Type", "branchType")],
    "systems": [("ID", "systemID"), ("Name", "name"), ("Description", "description")],
    "builds": [("ID", "buildID"), ("Version", "version"), ("Description", "description")],
    "metrics builds": [("ID", "metricsBuildID"), ("Name", "name"), ("Version", "version")],
    "experiences": [("ID", "experienceID"), ("Name", "name"), ("Description", "description")],
    "experience tags": [("ID", "experienceTagID"), ("Name", "name")],
    "test suites": [("ID", "testSuiteID"), ("Name", "name"), ("Revision", "testSuiteRevision")],
    "batches": [("ID", "batchID"), ("Name", "friendlyName"), ("Status", "status")],
    "jobs": [("ID", "jobID"), ("Experience", "experienceID"), ("Status", "conflatedStatus")],
    "sweeps": [("ID", "parameterSweepID"), ("Name", "name"), ("Status", "status")],
    "logs": [("File", "fileName"), ("Type", "logType"), ("Size", "fileSize")],
    "workflows": [("ID", "workflowID"), ("Name", "name"), ("Description", "description")],
    "workflow runs": [("ID", "workflowRunID"), ("Build", "buildID"), ("Created", "creationTimestamp")],
}


def _console() -> Console:
    return Console(highlight=False)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _render_records(title: str, records: list[dict[str, Any]]) -> None:
    table = Table(title=title.title())
    columns = _LIST_COLUMNS[title]
    for header, _key in columns:
        table.add_column(header)
    for record in records:
        table.add_row(
            *("-" if record.get(key) is None else str(record[key]) for _header, key in columns)
        )
    if not records:
        table.add_row("<none>", *("-" for _ in columns[1:]))
    _console().print(table)


def _emit_records(args: argparse.Namespace, title: str, records: list[dict[str, Any]]) -> int:
    if getattr(args, "format", "json") == "table":
        _render_records(title, records)
    else:
        _print_json(records)
    return 0


def _report_created(
    args: argparse.Namespace,
    *,
    label: str,
    github_key: str,
    record_id: str,
    name: str | None = None,
    extra: Sequence[tuple[str, Any]] = (),
) -> int:
    if args.github:
        print(github_line(github_key, record_id))
        return 0
    print(f"Created {label.lower()} successfully!")
    if name:
        print(f"{label} name: {name}")
    print(f"{label} ID: {record_id}")
    for key, value in extra:
        print(f"{key}: {value}")
    return 0


def _progress(args: argparse.Namespace, message: str) -> None:
    if not args.github:
        print(message)


def _settings_from_args(args: argparse.Namespace) -> ResimSettings:
    values = {flag: getattr(args, flag.replace("-", "_"), None) for flag in _SETTINGS_FLAGS}
    return ResimSettings.resolve(values)


def _build_context(args: argparse.Namespace) -> ResimContext:
    settings = _settings_from_args(args)
    return build_context(settings, project=args.project)


def _optional_duration(raw: str | None, *, field_name: str) -> float | None:
    if raw is None or str(raw).strip() == "":
        return None
    return parse_duration(raw, field_name=field_name)


def _experience_selection(args: argparse.Namespace, *, action: str) -> ExperienceSelection:
    return ExperienceSelection.build(
        action=action,
        experience_ids=args.experience_ids,
        experiences=args.experiences,
        tag_ids=args.experience_tag_ids,
        tag_names=args.experience_tag_names,
        tags=args.experience_tags,
    )


# Projects


def _cmd_project_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_project(ctx, name=args.name, description=args.description)
    return _report_created(
        args,
        label="Project",
        github_key="project_id",
        record_id=record["projectID"],
        name=record.get("name"),
    )


def _project_key(args: argparse.Namespace, ctx: ResimContext) -> str:
    key = args.name or args.project or ctx.settings.project
    if not key:
        raise ValidationError("empty project name: pass --name or --project")
    return key


def _cmd_project_list(args: argparse.Namespace) -> int:
    return _emit_records(args, "projects", resources.list_projects(_build_context(args)))


def _cmd_project_get(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    _print_json(resources.get_project(ctx, _project_key(args, ctx)))
    return 0


def _cmd_project_archive(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    project = resources.archive_project(ctx, _project_key(args, ctx))
    print(f"Archived project successfully! {project['projectID']}")
    return 0


# Branches


def _cmd_branch_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_branch(ctx, name=args.name, branch_type=args.type)
    return _report_created(
        args,
        label="Branch",
        github_key="branch_id",
        record_id=record["branchID"],
        name=record.get("name"),
    )


def _cmd_branch_list(args: argparse.Namespace) -> int:
    return _emit_records(args, "branches", resources.list_branches(_build_context(args)))


# Systems


def _system_resource_fields(args: argparse.Namespace) -> dict[str, int | None]:
    return {
        key: getattr(args, key)
        for key in resources.SystemResources().to_json()
    }


def _cmd_system_create(args: argparse.Namespace) -> int:
    fields = {k: v for k, v in _system_resource_fields(args).items() if v is not None}
    system_resources = resources.SystemResources(**fields)
    system_resources.validate()
    ctx = _build_context(args)
    record = resources.create_system(
        ctx,
        name=args.name,
        description=args.description,
        resources=system_resources,
        architecture=args.architecture,
    )
    return _report_created(
        args,
        label="System",
        github_key="system_id",
        record_id=record["systemID"],
        name=record.get("name"),
    )


def _cmd_system_update(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    fields: dict[str, Any] = dict(_system_resource_fields(args))
    fields["name"] = args.name
    fields["description"] = args.description
    fields["architecture"] = args.architecture
    resources.update_system(ctx, args.system, fields)
    print("Updated system successfully!")
    return 0


def _cmd_system_list(args: argparse.Namespace) -> int:
    return _emit_records(args, "systems", resources.list_systems(_build_context(args)))


def _cmd_system_get(args: argparse.Namespace) -> int:
    _print_json(resources.get_system(_build_context(args), args.system))
    return 0


def _cmd_system_archive(args: argparse.Namespace) -> int:
    system = resources.archive_system(_build_context(args), args.system)
    print(f"Archived system successfully! {system['systemID']}")
    return 0


def _cmd_system_members(args: argparse.Namespace) -> int:
    records = resources.list_system_members(_build_context(args), args.system, args.member)
    title = {"builds": "builds", "experiences": "experiences", "metricsBuilds": "metrics builds"}
    return _emit_records(args, title[args.member], records)


# Builds


def _cmd_build_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_build(
        ctx,
        branch=args.branch,
        system=args.system,
        version=args.version,
        description=args.description,
        image=args.image,
        build_spec=args.build_spec,
        name=args.name,
        auto_create_branch=args.auto_create_branch,
    )
    return _report_created(
        args, label="Build", github_key="build_id", record_id=record["buildID"]
    )


def _cmd_build_update(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    resources.update_build(
        ctx,
        args.build_id,
        branch=args.branch,
        description=args.description,
        name=args.name,
    )
    print("Updated build successfully!")
    return 0


def _cmd_build_list(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    return _emit_records(
        args, "builds", resources.list_builds(ctx, branch=args.branch, system=args.system)
    )


def _cmd_build_get(args: argparse.Namespace) -> int:
    _print_json(resources.get_build(_build_context(args), args.build_id))
    return 0


# Experiences


def _timeout_seconds(raw: str | None) -> int | None:
    seconds = _optional_duration(raw, field_name="experience timeout")
    return None if seconds is None else int(seconds)


def _cmd_experience_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    timeout_sec = _timeout_seconds(args.timeout)
    record = resources.create_experience(
        ctx,
        name=args.name,
        description=args.description,
        locations=split_csv(args.location),
        timeout_sec=3600 if timeout_sec is None else timeout_sec,
        profile=args.profile,
        environment=args.env,
        systems=split_csv(args.systems),
    )
    for tag in split_csv(args.tags):
        resources.tag_experience(ctx, tag=tag, experience=record["experienceID"])
    return _report_created(
        args,
        label="Experience",
        github_key="experience_id",
        record_id=record["experienceID"],
        name=record.get("name"),
    )


def _cmd_experience_update(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    resources.update_experience(
        ctx,
        args.experience,
        name=args.name,
        description=args.description,
        locations=split_csv(args.location) or None,
        timeout_sec=_timeout_seconds(args.timeout),
        profile=args.profile,
        environment=args.env,
    )
    print("Updated experience successfully!")
    return 0


def _cmd_experience_get(args: argparse.Namespace) -> int:
    _print_json(resources.get_experience(_build_context(args), args.experience))
    return 0


def _cmd_experience_list(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    return _emit_records(
        args, "experiences", resources.list_experiences(ctx, archived=args.archived)
    )


def _cmd_experience_sync(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    sync_experiences(
        ctx,
        Path(args.experiences_config),
        update_config=args.update_config,
        emit=lambda message: _progress(args, message),
    )
    return 0


def _cmd_experience_archive(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    archived = args.verb == "archive"
    record = resources.set_experience_archived(ctx, args.experience, archived=archived)
    print(f"{'Archived' if archived else 'Restored'} experience successfully! {record['experienceID']}")
    return 0


def _cmd_experience_tag(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    if args.verb == "tag":
        resources.tag_experience(ctx, tag=args.tag, experience=args.experience)
        print(f"Added tag {args.tag} to experience {args.experience}")
    else:
        resources.untag_experience(ctx, tag=args.tag, experience=args.experience)
        print(f"Removed tag {args.tag} from experience {args.experience}")
    return 0


def _cmd_experience_system(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    if args.verb == "add-system":
        resources.attach_experience_to_system(ctx, args.experience, args.system)
        print(f"Registered experience {args.experience} with system {args.system}")
    else:
        resources.detach_experience_from_system(ctx, args.experience, args.system)
        print(f"Deregistered experience {args.experience} from system {args.system}")
    return 0


# Experience tags


def _cmd_experience_tag_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_experience_tag(ctx, name=args.name, description=args.description)
    return _report_created(
        args,
        label="Experience tag",
        github_key="experience_tag_id",
        record_id=record["experienceTagID"],
        name=record.get("name"),
    )


def _cmd_experience_tag_list(args: argparse.Namespace) -> int:
    return _emit_records(
        args, "experience tags", resources.list_experience_tags(_build_context(args))
    )


def _cmd_experience_tag_members(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    return _emit_records(
        args, "experiences", resources.list_tagged_experiences(ctx, args.name)
    )


# Metrics builds


def _cmd_metrics_build_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_metrics_build(
        ctx,
        name=args.name,
        image=args.image,
        version=args.version,
        systems=split_csv(args.systems),
    )
    return _report_created(
        args,
        label="Metrics build",
        github_key="metrics_build_id",
        record_id=record["metricsBuildID"],
        name=record.get("name"),
    )


def _cmd_metrics_build_list(args: argparse.Namespace) -> int:
    return _emit_records(
        args, "metrics builds", resources.list_metrics_builds(_build_context(args))
    )


def _cmd_metrics_build_system(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    if args.verb == "add-system":
        resources.attach_metrics_build(ctx, args.metrics_build_id, args.system)
        print(f"Registered metrics build {args.metrics_build_id} with system {args.system}")
    else:
        resources.detach_metrics_build(ctx, args.metrics_build_id, args.system)
        print(f"Deregistered metrics build {args.metrics_build_id} from system {args.system}")
    return 0


# Batches


def _cmd_batch_create(args: argparse.Namespace) -> int:
    request = BatchRequest.build(
        build_id=args.build_id,
        experiences=_experience_selection(args, action="failed to create batch"),
        metrics_build_id=args.metrics_build_id,
        parameters=args.parameter,
        pool_labels=args.pool_labels,
        account=args.account,
        batch_name=args.batch_name,
        allowable_failure_percent=args.allowable_failure_percent,
        metrics_set=args.metrics_set,
    )
    ctx = _build_context(args)
    if args.sync_metrics_config:
        sync_metrics_config(ctx.transport, Path.cwd())
    _progress(args, "Creating a batch...")
    record = submit_batch(ctx, request)
    return _report_created(
        args,
        label="Batch",
        github_key="batch_id",
        record_id=record["batchID"],
        extra=(
            ("Batch name", record.get("friendlyName", "")),
            ("Status", record.get("status", "")),
        ),
    )


def _batch_item(args: argparse.Namespace, ctx: ResimContext) -> BatchItem:
    return BatchItem.locate(ctx, batch_id=args.batch_id, batch_name=args.batch_name)


def _print_batch(args: argparse.Namespace, ctx: ResimContext, record: dict[str, Any]) -> None:
    if getattr(args, "slack", False):
        _print_json(batch_slack_payload(ctx, record))
    else:
        _print_json(record)


def _cmd_batch_get(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    item = _batch_item(args, ctx)
    status = item.fetch_status()
    if args.exit_status:
        return exit_code_for_status(status.status)
    _print_batch(args, ctx, status.record)
    return 0


def _cmd_batch_tests(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    return _emit_records(args, "jobs", _batch_item(args, ctx).list_jobs())


def _cmd_batch_logs(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    return _emit_records(args, "logs", _batch_item(args, ctx).list_logs())


def _cmd_batch_cancel(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    _batch_item(args, ctx).cancel()
    print("Batch cancelled successfully!")
    return 0


def _cmd_batch_rerun(args: argparse.Namespace) -> int:
    job_ids = [parse_uuid(item, label="test ID") for item in split_csv(args.test_ids)]
    ctx = _build_context(args)
    item = _batch_item(args, ctx)
    item.rerun(job_ids)
    print("Batch rerun successfully!")
    print(f"Batch ID: {item.item_id}")
    return 0


def _observer(args: argparse.Namespace) -> Observer:
    timeout_sec = _optional_duration(args.wait_timeout, field_name="wait timeout")
    return Observer(
        poll_interval_sec=parse_duration(args.poll_every, field_name="poll interval"),
        timeout_sec=timeout_sec,
    )


def _cmd_batch_wait(args: argparse.Namespace) -> int:
    observer = _observer(args)
    ctx = _build_context(args)
    item = _batch_item(args, ctx)
    observation = observer.observe(item)
    if not args.exit_status:
        _print_batch(args, ctx, observation.final.record)
    return exit_code_for_status(observation.final.status)


def _cmd_batch_supervise(args: argparse.Namespace) -> int:
    policy = SupervisePolicy(
        max_rerun_attempts=args.max_rerun_attempts,
        rerun_on_states=parse_rerun_states(args.rerun_on_states),
        rerun_max_failure_percent=args.rerun_max_failure_percent,
        wait_timeout_sec=_optional_duration(args.wait_timeout, field_name="wait timeout"),
        poll_interval_sec=parse_duration(args.poll_every, field_name="poll interval"),
    )
    supervisor = Supervisor(policy, emit=lambda message: _progress(args, message))
    ctx = _build_context(args)
    item = _batch_item(args, ctx)
    result = supervisor.supervise(item)
    _cli_log.info("batch_supervised %s", json.dumps(result.to_json(), sort_keys=True))
    _print_batch(args, ctx, item.record or {})
    return exit_code_for_status(result.final_status)


# Sweeps


def _cmd_sweep_create(args: argparse.Namespace) -> int:
    request = SweepRequest.build(
        build_id=args.build_id,
        experiences=_experience_selection(args, action="failed to create sweep"),
        grid_search_config=args.grid_search_config,
        parameter_name=args.parameter_name,
        parameter_values=args.parameter_values,
        metrics_build_id=args.metrics_build_id,
        pool_labels=args.pool_labels,
        account=args.account,
        metrics_set=args.metrics_set,
    )
    ctx = _build_context(args)
    record = submit_sweep(ctx, request)
    return _report_created(
        args,
        label="Sweep",
        github_key="sweep_id",
        record_id=record["parameterSweepID"],
        name=record.get("name"),
        extra=(("Expected batches", request.expected_batches), ("Status", record.get("status", ""))),
    )


def _sweep_key(args: argparse.Namespace) -> str:
    if args.sweep_id:
        return parse_uuid(args.sweep_id, label="sweep ID")
    if args.sweep_name:
        return args.sweep_name
    raise ValidationError("must specify either the sweep ID or the sweep name")


def _cmd_sweep_get(args: argparse.Namespace) -> int:
    key = _sweep_key(args)
    ctx = _build_context(args)
    item = sweep_item(ctx, key)
    status = item.fetch_status()
    if args.exit_status:
        return exit_code_for_status(status.status)
    _print_json(status.record)
    return 0


def _cmd_sweep_list(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    records = list(
        ctx.transport.paginate(
            f"projects/{ctx.project_id}/sweeps", "sweeps", action="unable to list sweeps"
        )
    )
    return _emit_records(args, "sweeps", records)


def _cmd_sweep_cancel(args: argparse.Namespace) -> int:
    key = _sweep_key(args)
    ctx = _build_context(args)
    sweep_item(ctx, key).cancel()
    print("Sweep cancelled successfully!")
    return 0


# Test suites


def _cmd_suite_create(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.create_test_suite(
        ctx,
        name=args.name,
        description=args.description,
        system=args.system,
        experiences=split_csv(args.experiences),
        metrics_build=args.metrics_build,
        show_on_summary=args.show_on_summary,
        metrics_set=args.metrics_set,
    )
    return _report_suite(args, record)


def _report_suite(args: argparse.Namespace, record: dict[str, Any]) -> int:
    suite_id = record["testSuiteID"]
    revision = int(record.get("testSuiteRevision", 0))
    if args.github:
        print(github_line("test_suite_id_revision", suite_revision_token(suite_id, revision)))
        return 0
    verb = "Created" if args.verb == "create" else "Revised"
    print(f"{verb} test suite successfully!")
    print(f"Test suite name: {record.get('name', '')}")
    print(f"Test suite ID: {suite_id}")
    print(f"Revision: {revision}")
    return 0


def _cmd_suite_revise(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = resources.revise_test_suite(
        ctx,
        args.test_suite,
        name=args.name,
        description=args.description,
        system=args.system,
        experiences=split_csv(args.experiences) if args.experiences is not None else None,
        metrics_build=args.metrics_build,
        show_on_summary=args.show_on_summary,
        metrics_set=args.metrics_set,
    )
    return _report_suite(args, record)


def _cmd_suite_run(args: argparse.Namespace) -> int:
    request = SuiteRunRequest.build(
        test_suite=args.test_suite,
        revision=args.revision,
        build_id=args.build_id,
        parameters=args.parameter,
        pool_labels=args.pool_labels,
        account=args.account,
        batch_name=args.batch_name,
        allowable_failure_percent=args.allowable_failure_percent,
        metrics_set=args.metrics_set,
    )
    ctx = _build_context(args)
    record = run_test_suite(ctx, request)
    return _report_created(
        args,
        label="Batch",
        github_key="batch_id",
        record_id=record["batchID"],
        extra=(
            ("Batch name", record.get("friendlyName", "")),
            ("Status", record.get("status", "")),
        ),
    )


def _cmd_suite_get(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    if args.all_revisions:
        suite = ctx.resolver.resolve_test_suite(ctx.project_id, args.test_suite)
        _print_json(ctx.resolver.list_test_suite_revisions(ctx.project_id, suite["testSuiteID"]))
        return 0
    _print_json(
        ctx.resolver.resolve_test_suite(ctx.project_id, args.test_suite, revision=args.revision)
    )
    return 0


def _cmd_suite_list(args: argparse.Namespace) -> int:
    return _emit_records(args, "test suites", resources.list_test_suites(_build_context(args)))


def _cmd_suite_batches(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    records = resources.list_test_suite_batches(ctx, args.test_suite, revision=args.revision)
    return _emit_records(args, "batches", records)


def _cmd_suite_archive(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    archived = args.verb == "archive"
    suite = resources.set_test_suite_archived(ctx, args.test_suite, archived=archived)
    print(f"{'Archived' if archived else 'Restored'} test suite successfully! {suite['testSuiteID']}")
    return 0


# Reports


def _cmd_report_create(args: argparse.Namespace) -> int:
    request = ReportRequest.build(
        test_suite=args.test_suite,
        revision=args.test_suite_revision,
        branch=args.branch,
        metrics_build_id=args.metrics_build_id,
        length_days=args.length,
        start_timestamp=args.start_timestamp,
        end_timestamp=args.end_timestamp,
        respect_revision_boundary=args.respect_revision_boundary,
        name=args.name,
        account=args.account,
        metrics_set=args.metrics_set,
    )
    ctx = _build_context(args)
    record = submit_report(ctx, request)
    return _report_created(
        args,
        label="Report",
        github_key="report_id",
        record_id=record["reportID"],
        name=record.get("name"),
    )


def _report_key(args: argparse.Namespace) -> str:
    if args.report_id:
        return parse_uuid(args.report_id, label="report ID")
    if args.report_name:
        return args.report_name
    raise ValidationError("must specify either the report ID or the report name")


def _cmd_report_get(args: argparse.Namespace) -> int:
    key = _report_key(args)
    ctx = _build_context(args)
    status = report_item(ctx, key).fetch_status()
    if args.exit_status:
        return exit_code_for_status(status.status)
    _print_json(status.record)
    return 0


def _cmd_report_wait(args: argparse.Namespace) -> int:
    key = _report_key(args)
    observer = _observer(args)
    ctx = _build_context(args)
    observation = observer.observe(report_item(ctx, key))
    return exit_code_for_status(observation.final.status)


def _cmd_report_logs(args: argparse.Namespace) -> int:
    key = _report_key(args)
    return _emit_records(args, "logs", resources.list_report_logs(_build_context(args), key))


# Workflows


def _cmd_workflow_create(args: argparse.Namespace) -> int:
    suites = resources.parse_suite_selections(args.suites, args.suites_file)
    ctx = _build_context(args)
    record = resources.create_workflow(
        ctx,
        name=args.name,
        description=args.description,
        suites=suites,
        ci_link=args.ci_link,
    )
    return _report_created(
        args,
        label="Workflow",
        github_key="workflow_id",
        record_id=record["workflowID"],
        name=record.get("name"),
    )


def _cmd_workflow_update(args: argparse.Namespace) -> int:
    suites = None
    if args.suites is not None or args.suites_file is not None:
        suites = resources.parse_suite_selections(args.suites, args.suites_file)
    ctx = _build_context(args)
    workflow, plan = resources.update_workflow(
        ctx,
        args.workflow,
        name=args.name,
        description=args.description,
        ci_link=args.ci_link,
        suites=suites,
    )
    if plan is not None:
        print("Reconciled workflow suites successfully!")
    print("Updated workflow successfully!")
    print(f"workflow ID: {workflow['workflowID']}")
    return 0


def _cmd_workflow_list(args: argparse.Namespace) -> int:
    return _emit_records(args, "workflows", resources.list_workflows(_build_context(args)))


def _cmd_workflow_get(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    workflow = resources.get_workflow(ctx, args.workflow)
    _print_json(resources.summarize_workflow(ctx, workflow))
    return 0


def _cmd_workflow_run_create(args: argparse.Namespace) -> int:
    request = WorkflowRunRequest.build(
        workflow=args.workflow,
        build_id=args.build_id,
        parameters=args.parameter,
        pool_labels=args.pool_labels,
        account=args.account,
        allowable_failure_percent=args.allowable_failure_percent,
    )
    ctx = _build_context(args)
    record = submit_workflow_run(ctx, request)
    if args.github:
        print(github_line("workflow_run_id", record["workflowRunID"]))
        return 0
    print("Created workflow run successfully!")
    print(f"workflow run ID: {record['workflowRunID']}")
    return 0


def _cmd_workflow_run_list(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    runs = resources.list_workflow_runs(ctx, args.workflow)
    if not runs and getattr(args, "format", "json") != "table":
        print("no workflow runs")
        return 0
    return _emit_records(args, "workflow runs", runs)


def _cmd_workflow_run_get(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    item = WorkflowRunItem.locate(ctx, workflow=args.workflow, run_id=args.run_id)
    status = item.fetch_status()
    if args.exit_status:
        return exit_code_for_status(status.status)
    suites = status.record.get("workflowRunTestSuites")
    if not suites:
        print("no suite runs")
        return 0
    _print_json(suites)
    return 0


# Ingest


def _cmd_ingest(args: argparse.Namespace) -> int:
    sources = collect_log_sources(
        log_name=args.log_name,
        log_location=args.log_location,
        log_pairs=args.log,
        log_config=args.log_config,
    )
    request = IngestRequest.build(
        metrics_build_id=args.metrics_build_id,
        logs=sources,
        build_id=args.build_id,
        system=args.system,
        branch=args.branch,
        version=args.version,
        tags=args.tags,
        reingest=args.reingest,
        batch_name=args.ingestion_name,
        account=args.account,
    )
    ctx = _build_context(args)
    _progress(args, "Ingesting a log...")
    result = run_ingest(ctx, request, emit=None if args.github else print)
    batch_id = result.batch["batchID"]
    if args.github:
        print(github_line("batch_id", batch_id))
        return 0
    print("Ingested logs successfully!")
    print(f"Batch ID: {batch_id}")
    url = results_url(ctx.settings.app_url, ctx.project_id, batch_id)
    if url:
        print(f"View the results at {url}")
    return 0


# Logs


def _cmd_logs_list(args: argparse.Namespace) -> int:
    batch_id = parse_uuid(args.batch_id, label="batch ID")
    job_id = parse_uuid(args.test_id, label="test ID") if args.test_id else None
    ctx = _build_context(args)
    item = BatchItem(ctx, batch_id)
    return _emit_records(args, "logs", list_logs(item, job_id=job_id))


def _cmd_logs_download(args: argparse.Namespace) -> int:
    batch_id = parse_uuid(args.batch_id, label="batch ID")
    job_id = parse_uuid(args.test_id, label="test ID") if args.test_id else None
    files = split_csv(args.files)
    ctx = _build_context(args)
    item = BatchItem(ctx, batch_id)
    output_dir = Path(args.output)
    console = _console()
    if console.is_terminal and not args.github:
        with console.status("Getting list of logs...") as status:
            written = download_logs(
                item, output_dir, job_id=job_id, files=files, on_progress=status.update
            )
    else:
        written = download_logs(item, output_dir, job_id=job_id, files=files)
    print(f"Downloaded {len(written)} log(s) to {output_dir.expanduser().resolve()}")
    return 0


def _log_target_id(raw: str | None, message: str) -> str:
    text = str(raw or "").strip()
    if not is_uuid(text) or text == resources.NIL_UUID:
        raise ValidationError(message)
    return text


def _cmd_logs_create(args: argparse.Namespace) -> int:
    if not args.github:
        print("Creating a log entry...")
    batch_id = _log_target_id(args.batch_id, "Empty batch id")
    job_id = _log_target_id(args.job_id, "Empty log id")
    if not args.checksum and not args.github:
        print("No checksum was provided, integrity checking will not be possible")
    ctx = _build_context(args)
    record = register_log(
        BatchItem(ctx, batch_id),
        job_id,
        file_name=args.name,
        file_size=args.file_size,
        checksum=args.checksum or "",
    )
    location = record.get("location", "")
    if args.github:
        print(f"log_location={location}")
        return 0
    print("Created log successfully!")
    print(f"Log ID: {record.get('logID', '')}")
    print(f"Output Location: {location}")
    print("Please upload the log file to this location")
    return 0


# Debug


def _cmd_debug(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    record = start_debug_session(
        ctx,
        experience=args.experience,
        build_id=args.build_id,
        batch=args.batch,
        container=args.container,
    )
    item = BatchItem(ctx, str(record["batchID"]))
    print(f"Batch ID: {item.item_id}")
    print("Waiting for debug environment to be ready...")
    namespace = str(record.get("namespace") or "")
    try:
        with tempfile.TemporaryDirectory(prefix="resim-debug-") as ca_dir:
            api = cluster_api(record, Path(ca_dir))
            pod = find_debug_pod(api, namespace, item.item_id)
            attach_shell(api, namespace, pod, command=args.command, container=args.container)
        print("Exiting debug session")
    except KeyboardInterrupt:
        print("")
    finally:
        close_debug_session(item)
    return 0


# Metrics


def _cmd_metrics_sync(args: argparse.Namespace) -> int:
    ctx = _build_context(args)
    report = print if args.verbose else None
    sync_metrics_config(ctx.transport, Path.cwd(), report=report)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resim", description="Command line client for the ReSim platform"
    )

    def _add_global_args(target: argparse.ArgumentParser, *, nested: bool) -> None:
        # On subcommands the defaults are suppressed so a flag given before the
        # noun is not reset by the subparser.
        default: Any = argparse.SUPPRESS if nested else None
        flag_default: Any = argparse.SUPPRESS if nested else False
        target.add_argument("--url", default=default, help="API URL (env RESIM_URL)")
        target.add_argument("--auth-url", default=default, help="Auth URL (env RESIM_AUTH_URL)")
        target.add_argument("--bff-url", default=default, help="GraphQL URL (env RESIM_BFF_URL)")
        target.add_argument("--project", default=default, help="Project name or ID")
        target.add_argument("--client-id", default=default)
        target.add_argument("--client-secret", default=default)
        target.add_argument("--username", default=default)
        target.add_argument("--password", default=default)
        target.add_argument("--interactive-login", action="store_true", default=flag_default)
        target.add_argument(
            "--github",
            action="store_true",
            default=flag_default,
            help="Print CI-friendly key=value output",
        )
        target.add_argument("--verbose", action="store_true", default=flag_default)

    _add_global_args(parser, nested=False)
    nouns = parser.add_subparsers(dest="command", required=True)

    def _noun(name: str, aliases: list[str], help_text: str) -> argparse._SubParsersAction:
        noun = nouns.add_parser(name, aliases=aliases, help=help_text)
        return noun.add_subparsers(dest="verb", required=True)

    def _verb(
        verbs: argparse._SubParsersAction,
        name: str,
        handler: Any,
        help_text: str,
        *,
        aliases: list[str] | None = None,
        list_format: bool = False,
    ) -> argparse.ArgumentParser:
        verb = verbs.add_parser(name, aliases=aliases or [], help=help_text)
        _add_global_args(verb, nested=True)
        if list_format:
            verb.add_argument("--format", choices=["json", "table"], default="json")
        verb.set_defaults(handler=handler, verb=name)
        return verb

    def _add_experience_args(target: argparse.ArgumentParser) -> None:
        target.add_argument("--experience-ids", default=None, help="Comma-separated experience IDs")
        target.add_argument(
            "--experiences", default=None, help="Comma-separated experience names or IDs"
        )
        target.add_argument(
            "--experience-tags", default=None, help="Comma-separated tag names or IDs"
        )
        target.add_argument("--experience-tag-ids", default=None)
        target.add_argument("--experience-tag-names", default=None)

    def _add_submission_args(target: argparse.ArgumentParser, *, batch_name: bool = True) -> None:
        target.add_argument(
            "--parameter",
            action="append",
            default=None,
            help="Build parameter name=value or name:value (repeatable)",
        )
        target.add_argument(
            "--pool-labels", action="append", default=None, help="Pool labels (repeatable, comma-separated)"
        )
        target.add_argument("--account", default=None, help="Associated CI account")
        target.add_argument("--allowable-failure-percent", type=int, default=None)
        target.add_argument("--metrics-set", default=None, help="Metrics 2.0 set name")
        if batch_name:
            target.add_argument("--batch-name", default=None)

    def _add_batch_key_args(target: argparse.ArgumentParser) -> None:
        target.add_argument("--batch-id", default=None)
        target.add_argument("--batch-name", default=None)

    def _add_wait_args(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "--wait-timeout", default=None, help="Give up after this long, e.g. 1h (default: never)"
        )
        target.add_argument(
            "--poll-every",
            default=f"{int(DEFAULT_POLL_INTERVAL_SEC)}s",
            help="Polling interval, at least 1s",
        )

    # projects
    project = _noun("projects", ["project"], "Manage projects")
    create = _verb(project, "create", _cmd_project_create, "Create a project")
    create.add_argument("--name", required=True)
    create.add_argument("--description", required=True)
    _verb(project, "list", _cmd_project_list, "List projects", list_format=True)
    get = _verb(project, "get", _cmd_project_get, "Get a project")
    get.add_argument("--name", default=None)
    archive = _verb(project, "archive", _cmd_project_archive, "Archive a project")
    archive.add_argument("--name", default=None)

    # branches
    branch = _noun("branches", ["branch"], "Manage branches")
    create = _verb(branch, "create", _cmd_branch_create, "Create a branch")
    create.add_argument("--name", required=True)
    create.add_argument("--type", required=True, help="RELEASE, MAIN or CHANGE_REQUEST")
    _verb(branch, "list", _cmd_branch_list, "List branches", list_format=True)

    # systems
    def _add_system_resource_args(target: argparse.ArgumentParser) -> None:
        for key in resources.SystemResources().to_json():
            target.add_argument(f"--{key.replace('_', '-')}", dest=key, type=int, default=None)
        target.add_argument("--architecture", default=None)

    system = _noun("systems", ["system"], "Manage systems")
    create = _verb(system, "create", _cmd_system_create, "Create a system")
    create.add_argument("--name", required=True)
    create.add_argument("--description", required=True)
    _add_system_resource_args(create)
    update = _verb(system, "update", _cmd_system_update, "Update a system")
    update.add_argument("--system", required=True)
    update.add_argument("--name", default=None)
    update.add_argument("--description", default=None)
    _add_system_resource_args(update)
    _verb(system, "list", _cmd_system_list, "List systems", list_format=True)
    get = _verb(system, "get", _cmd_system_get, "Get a system")
    get.add_argument("--system", required=True)
    archive = _verb(system, "archive", _cmd_system_archive, "Archive a system")
    archive.add_argument("--system", required=True)
    for verb_name, member in (
        ("builds", "builds"),
        ("experiences", "experiences"),
        ("metrics-builds", "metricsBuilds"),
    ):
        members = _verb(
            system, verb_name, _cmd_system_members, f"List {verb_name} for a system", list_format=True
        )
        members.add_argument("--system", required=True)
        members.set_defaults(member=member)

    # builds
    build = _noun("builds", ["build"], "Manage builds")
    create = _verb(build, "create", _cmd_build_create, "Create a build")
    create.add_argument("--branch", required=True)
    create.add_argument("--system", required=True)
    create.add_argument("--version", required=True)
    create.add_argument("--description", required=True)
    create.add_argument("--name", default=None)
    source = create.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", default=None, help="Tagged image URI")
    source.add_argument("--build-spec", default=None, help="Compose file describing the build")
    create.add_argument("--auto-create-branch", action="store_true")
    update = _verb(build, "update", _cmd_build_update, "Update a build")
    update.add_argument("--build-id", required=True)
    update.add_argument("--branch", default=None)
    update.add_argument("--description", default=None)
    update.add_argument("--name", default=None)
    listing = _verb(build, "list", _cmd_build_list, "List builds", list_format=True)
    listing.add_argument("--branch", default=None)
    listing.add_argument("--system", default=None)
    get = _verb(build, "get", _cmd_build_get, "Get a build")
    get.add_argument("--build-id", required=True)

    # experiences
    def _add_experience_fields(target: argparse.ArgumentParser, *, required: bool) -> None:
        target.add_argument("--name", required=required, default=None)
        target.add_argument("--description", required=required, default=None)
        target.add_argument(
            "--location", action="append", required=required, default=None, help="Repeatable"
        )
        target.add_argument("--timeout", default=None, help="Container timeout, e.g. 3600 or 1h")
        target.add_argument("--profile", default=None)
        target.add_argument("--env", action="append", default=None, help="NAME=VALUE (repeatable)")

    experience = _noun("experiences", ["experience"], "Manage experiences")
    create = _verb(experience, "create", _cmd_experience_create, "Create an experience")
    _add_experience_fields(create, required=True)
    create.add_argument("--systems", default=None, help="Comma-separated systems")
    create.add_argument("--tags", default=None, help="Comma-separated experience tags")
    update = _verb(experience, "update", _cmd_experience_update, "Update an experience")
    update.add_argument("--experience", required=True)
    _add_experience_fields(update, required=False)
    get = _verb(experience, "get", _cmd_experience_get, "Get an experience")
    get.add_argument("--experience", required=True)
    listing = _verb(experience, "list", _cmd_experience_list, "List experiences", list_format=True)
    listing.add_argument("--archived", action="store_true")
    for verb_name in ("archive", "restore"):
        target = _verb(experience, verb_name, _cmd_experience_archive, f"{verb_name.title()} an experience")
        target.add_argument("--experience", required=True)
    for verb_name in ("tag", "untag"):
        target = _verb(experience, verb_name, _cmd_experience_tag, f"{verb_name.title()} an experience")
        target.add_argument("--experience", required=True)
        target.add_argument("--tag", required=True)
    for verb_name in ("add-system", "remove-system"):
        target = _verb(
            experience, verb_name, _cmd_experience_system, f"{verb_name} for an experience"
        )
        target.add_argument("--experience", required=True)
        target.add_argument("--system", required=True)
    sync = _verb(experience, "sync", _cmd_experience_sync, "Sync experiences with a YAML config")
    sync.add_argument("--experiences-config", required=True, help="Path to the experiences YAML")
    sync.add_argument(
        "--update-config",
        action="store_true",
        help="Write the config back with the IDs of matched and created experiences",
    )

    # experience tags
    tag = _noun("experience-tags", ["experience-tag"], "Manage experience tags")
    create = _verb(tag, "create", _cmd_experience_tag_create, "Create an experience tag")
    create.add_argument("--name", required=True)
    create.add_argument("--description", required=True)
    _verb(tag, "list", _cmd_experience_tag_list, "List experience tags", list_format=True)
    members = _verb(
        tag, "list-experiences", _cmd_experience_tag_members, "List tagged experiences", list_format=True
    )
    members.add_argument("--name", required=True, help="Tag name or ID")

    # metrics builds
    metrics_build = _noun("metrics-builds", ["metrics-build"], "Manage metrics builds")
    create = _verb(metrics_build, "create", _cmd_metrics_build_create, "Create a metrics build")
    create.add_argument("--name", required=True)
    create.add_argument("--image", required=True)
    create.add_argument("--version", required=True)
    create.add_argument("--systems", default=None, help="Comma-separated systems")
    _verb(metrics_build, "list", _cmd_metrics_build_list, "List metrics builds", list_format=True)
    for verb_name in ("add-system", "remove-system"):
        target = _verb(
            metrics_build, verb_name, _cmd_metrics_build_system, f"{verb_name} for a metrics build"
        )
        target.add_argument("--metrics-build-id", required=True)
        target.add_argument("--system", required=True)

    # batches
    batch = _noun("batches", ["batch"], "Create and follow batches")
    create = _verb(batch, "create", _cmd_batch_create, "Create a batch")
    create.add_argument("--build-id", required=True)
    create.add_argument("--metrics-build-id", default=None)
    _add_experience_args(create)
    _add_submission_args(create)
    create.add_argument(
        "--sync-metrics-config", action="store_true", help="Run metrics sync before submitting"
    )
    get = _verb(batch, "get", _cmd_batch_get, "Get a batch")
    _add_batch_key_args(get)
    get.add_argument("--exit-status", action="store_true", help="Exit with the batch status code")
    get.add_argument("--slack", action="store_true", help="Print a Slack webhook payload")
    tests = _verb(batch, "tests", _cmd_batch_tests, "List the tests in a batch", aliases=["jobs"], list_format=True)
    _add_batch_key_args(tests)
    batch_logs = _verb(batch, "logs", _cmd_batch_logs, "List batch logs", list_format=True)
    _add_batch_key_args(batch_logs)
    cancel = _verb(batch, "cancel", _cmd_batch_cancel, "Cancel a batch")
    _add_batch_key_args(cancel)
    rerun = _verb(batch, "rerun", _cmd_batch_rerun, "Rerun tests in a batch")
    _add_batch_key_args(rerun)
    rerun.add_argument("--test-ids", action="append", default=None, help="Test IDs to rerun")
    wait = _verb(batch, "wait", _cmd_batch_wait, "Wait for a batch to finish")
    _add_batch_key_args(wait)
    _add_wait_args(wait)
    wait.add_argument("--exit-status", action="store_true", help="Print nothing; exit code only")
    wait.add_argument("--slack", action="store_true")
    supervise = _verb(batch, "supervise", _cmd_batch_supervise, "Wait and rerun failing tests")
    _add_batch_key_args(supervise)
    _add_wait_args(supervise)
    supervise.add_argument("--max-rerun-attempts", type=int, default=1)
    supervise.add_argument(
        "--rerun-on-states", default="ERROR", help="Comma-separated job states to rerun"
    )
    supervise.add_argument(
        "--rerun-max-failure-percent", type=float, default=100.0
    )
    supervise.add_argument("--slack", action="store_true")

    # sweeps
    sweep = _noun("sweeps", ["sweep"], "Manage parameter sweeps")
    create = _verb(sweep, "create", _cmd_sweep_create, "Create a parameter sweep")
    create.add_argument("--build-id", required=True)
    create.add_argument("--metrics-build-id", default=None)
    create.add_argument("--parameter-name", default=None)
    create.add_argument("--parameter-values", default=None, help="Comma-separated values")
    create.add_argument("--grid-search-config", default=None, help="JSON [{name, values}]")
    _add_experience_args(create)
    create.add_argument("--pool-labels", action="append", default=None)
    create.add_argument("--account", default=None)
    create.add_argument("--metrics-set", default=None)
    for verb_name, handler in (("get", _cmd_sweep_get), ("cancel", _cmd_sweep_cancel)):
        target = _verb(sweep, verb_name, handler, f"{verb_name.title()} a sweep")
        target.add_argument("--sweep-id", default=None)
        target.add_argument("--sweep-name", default=None)
        if verb_name == "get":
            target.add_argument("--exit-status", action="store_true")
    _verb(sweep, "list", _cmd_sweep_list, "List sweeps", list_format=True)

    # test suites
    def _add_suite_fields(target: argparse.ArgumentParser, *, required: bool) -> None:
        target.add_argument("--name", required=required, default=None)
        target.add_argument("--description", required=required, default=None)
        target.add_argument("--system", required=required, default=None)
        target.add_argument("--experiences", required=required, default=None)
        target.add_argument("--metrics-build", default=None, help="Metrics build ID")
        target.add_argument(
            "--show-on-summary", action=argparse.BooleanOptionalAction, default=None
        )
        target.add_argument("--metrics-set", default=None, help="Empty string clears it")

    suite = _noun("suites", ["suite", "test-suites", "test-suite"], "Manage test suites")
    create = _verb(suite, "create", _cmd_suite_create, "Create a test suite")
    _add_suite_fields(create, required=True)
    revise = _verb(suite, "revise", _cmd_suite_revise, "Create a new test suite revision")
    revise.add_argument("--test-suite", required=True)
    _add_suite_fields(revise, required=False)
    run = _verb(suite, "run", _cmd_suite_run, "Run a test suite")
    run.add_argument("--test-suite", required=True)
    run.add_argument("--revision", type=int, default=None)
    run.add_argument("--build-id", required=True)
    _add_submission_args(run)
    get = _verb(suite, "get", _cmd_suite_get, "Get a test suite")
    get.add_argument("--test-suite", required=True)
    which = get.add_mutually_exclusive_group()
    which.add_argument("--revision", type=int, default=None)
    which.add_argument("--all-revisions", action="store_true")
    _verb(suite, "list", _cmd_suite_list, "List test suites", list_format=True)
    batches = _verb(suite, "batches", _cmd_suite_batches, "List batches for a test suite", list_format=True)
    batches.add_argument("--test-suite", required=True)
    batches.add_argument("--revision", type=int, default=None)
    for verb_name in ("archive", "restore"):
        target = _verb(suite, verb_name, _cmd_suite_archive, f"{verb_name.title()} a test suite")
        target.add_argument("--test-suite", required=True)

    # reports
    report = _noun("reports", ["report"], "Manage reports")
    create = _verb(report, "create", _cmd_report_create, "Create a report")
    create.add_argument("--test-suite", required=True)
    create.add_argument("--test-suite-revision", type=int, default=None)
    create.add_argument("--branch", required=True)
    create.add_argument("--metrics-build-id", required=True)
    create.add_argument("--length", type=int, default=None, help="Window length in days (default 28)")
    create.add_argument("--start-timestamp", default=None, help="RFC3339")
    create.add_argument("--end-timestamp", default=None, help="RFC3339 (default now)")
    create.add_argument("--respect-revision-boundary", action="store_true")
    create.add_argument("--name", default=None)
    create.add_argument("--account", default=None)
    create.add_argument("--metrics-set", default=None)
    for verb_name, handler in (
        ("get", _cmd_report_get),
        ("wait", _cmd_report_wait),
        ("logs", _cmd_report_logs),
    ):
        target = _verb(
            report, verb_name, handler, f"{verb_name.title()} a report", list_format=verb_name == "logs"
        )
        target.add_argument("--report-id", default=None)
        target.add_argument("--report-name", default=None)
        if verb_name == "get":
            target.add_argument("--exit-status", action="store_true")
        if verb_name == "wait":
            _add_wait_args(target)

    # workflows
    workflow = _noun("workflows", ["workflow"], "Manage workflows")
    create = _verb(workflow, "create", _cmd_workflow_create, "Create a workflow")
    create.add_argument("--name", required=True)
    create.add_argument("--description", required=True)
    create.add_argument("--ci-link", default=None)
    suites_source = create.add_mutually_exclusive_group(required=True)
    suites_source.add_argument("--suites", default=None, help="JSON [{testSuite, enabled}]")
    suites_source.add_argument("--suites-file", default=None)
    update = _verb(workflow, "update", _cmd_workflow_update, "Update a workflow")
    update.add_argument("--workflow", required=True)
    update.add_argument("--name", default=None)
    update.add_argument("--description", default=None)
    update.add_argument("--ci-link", default=None)
    suites_source = update.add_mutually_exclusive_group()
    suites_source.add_argument("--suites", default=None)
    suites_source.add_argument("--suites-file", default=None)
    _verb(workflow, "list", _cmd_workflow_list, "List workflows", list_format=True)
    get = _verb(workflow, "get", _cmd_workflow_get, "Get a workflow and its suites")
    get.add_argument("--workflow", required=True)

    runs_parser = workflow.add_parser("runs", help="Manage workflow runs")
    runs = runs_parser.add_subparsers(dest="run_verb", required=True)
    create = _verb(runs, "create", _cmd_workflow_run_create, "Run a workflow")
    create.add_argument("--workflow", required=True)
    create.add_argument("--build-id", required=True)
    create.add_argument("--parameter", action="append", default=None, help="name=value (repeatable)")
    create.add_argument("--pool-labels", action="append", default=None)
    create.add_argument("--account", default=None)
    create.add_argument("--allowable-failure-percent", type=int, default=None)
    listing = _verb(runs, "list", _cmd_workflow_run_list, "List workflow runs", list_format=True)
    listing.add_argument("--workflow", required=True)
    get = _verb(runs, "get", _cmd_workflow_run_get, "Get a workflow run")
    get.add_argument("--workflow", required=True)
    get.add_argument("--run-id", required=True)
    get.add_argument("--exit-status", action="store_true")

    # ingest
    ingest = nouns.add_parser("ingest", help="Ingest logs as experiences and run a batch")
    _add_global_args(ingest, nested=True)
    ingest.add_argument("--build-id", default=None)
    ingest.add_argument("--system", default=None)
    ingest.add_argument("--branch", default=None, help="Default: log-ingest-branch")
    ingest.add_argument("--version", default=None, help="Default: latest")
    ingest.add_argument("--metrics-build-id", required=True)
    ingest.add_argument("--log-name", default=None)
    ingest.add_argument("--log-location", default=None)
    ingest.add_argument("--log", action="append", default=None, help="name=location (repeatable)")
    ingest.add_argument("--log-config", default=None, help="YAML file with a 'logs' list")
    ingest.add_argument("--tags", action="append", default=None)
    ingest.add_argument("--reingest", action="store_true")
    ingest.add_argument("--ingestion-name", default=None, help="Name for the ingestion batch")
    ingest.add_argument("--account", default=None)
    ingest.set_defaults(handler=_cmd_ingest, verb="ingest")

    # logs
    logs = _noun("logs", ["log"], "List, download and register logs")
    listing = _verb(logs, "list", _cmd_logs_list, "List logs for a batch or test", list_format=True)
    listing.add_argument("--batch-id", required=True)
    listing.add_argument("--test-id", default=None)
    download = _verb(logs, "download", _cmd_logs_download, "Download logs", aliases=["fetch"])
    download.add_argument("--batch-id", required=True)
    download.add_argument("--test-id", default=None)
    download.add_argument("--output", required=True)
    download.add_argument("--files", action="append", default=None, help="File names to download")
    create = _verb(logs, "create", _cmd_logs_create, "Register a log file produced by a test")
    create.add_argument("--name", default=None, help="File name of the log, not a directory")
    create.add_argument("--batch-id", default=None)
    create.add_argument("--job-id", "--test-id", dest="job_id", default=None)
    create.add_argument("--file-size", type=int, default=None, help="Size of the file in bytes")
    create.add_argument(
        "--checksum", default="", help="Checksum enabling integrity checks on download"
    )

    # debug
    debug = nouns.add_parser("debug", help="Start an interactive debug batch")
    _add_global_args(debug, nested=True)
    debug.add_argument("--experience", required=True)
    debug.add_argument("--build-id", default=None)
    debug.add_argument("--batch", default=None, help="Batch name or ID")
    debug.add_argument("--container", default=None, help="Container to attach to")
    debug.add_argument(
        "--command", default=DEFAULT_COMMAND, help="Command to run in the container, e.g. bash"
    )
    debug.set_defaults(handler=_cmd_debug, verb="debug")

    # metrics
    metrics = _noun("metrics", [], "Manage the metrics configuration")
    _verb(metrics, "sync", _cmd_metrics_sync, "Sync .resim/metrics with the platform")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    setup_logging()
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    if args.verbose:
        setup_logging(level=logging.INFO)
    command = " ".join(
        str(part) for part in (args.command, getattr(args, "verb", None)) if part
    )
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s", command)

    exit_code = EXIT_INTERNAL
    try:
        with sigterm_as_interrupt():
            exit_code = int(args.handler(args))
    except ObserverTimeout as exc:
        _cli_log.error("cli_command_error command=%s kind=timeout error=%s", command, exc)
        print(f"[timeout] {exc}", file=sys.stderr)
        exit_code = EXIT_TIMEOUT
    except ValidationError as exc:
        _cli_log.error("cli_command_error command=%s kind=validation error=%s", command, exc)
        print(f"[validation error] {exc}", file=sys.stderr)
        exit_code = EXIT_INTERNAL
    except ResimError as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {exc}", file=sys.stderr)
        exit_code = EXIT_INTERNAL
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = EXIT_INTERRUPTED
    except (OSError, json.JSONDecodeError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = EXIT_INTERNAL
    finally:
        duration_sec = time.perf_counter() - started
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            duration_sec,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
