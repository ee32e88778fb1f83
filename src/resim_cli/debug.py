"""Interactive debug sessions: a single-experience batch held open on a debug pool.

The platform answers a debug request with the endpoint, bearer token and CA
bundle of the cluster that runs the batch. Once the customer pod is Running
a shell is attached through a Kubernetes exec stream. The batch is cancelled
when the shell exits, on Ctrl-C or SIGTERM, and when the pod never starts.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import select
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Callable, Iterator

from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException as K8sApiException
from kubernetes.stream import stream as k8s_stream

from resim_cli.context import ResimContext
from resim_cli.models import (
    DEBUG_POOL_LABEL,
    ObserverTimeout,
    RemoteError,
    ResimError,
    ValidationError,
)
from resim_cli.resolver import BATCH, EXPERIENCE
from resim_cli.utils import format_duration, parse_uuid
from resim_cli.workitems import BatchItem

_log = logging.getLogger("resim.debug")

# A large image can take a long time to pull onto a fresh host.
DEFAULT_START_TIMEOUT_SEC = 30 * 60.0
START_POLL_INTERVAL_SEC = 5.0
DEFAULT_COMMAND = "sh"
PARENT_LABEL = "resim.io/parentID"
ROLE_SELECTOR = "resim.io/role=customer"


def start_debug_session(
    ctx: ResimContext,
    *,
    experience: str,
    build_id: str | None = None,
    batch: str | None = None,
    container: str | None = None,
) -> dict[str, Any]:
    if not build_id and not batch:
        raise ValidationError("Either a build ID or batch name or ID must be provided")
    if build_id and batch:
        raise ValidationError("Only one of build ID or batch name or ID must be provided")
    body: dict[str, Any] = {"poolLabels": [DEBUG_POOL_LABEL]}
    if build_id:
        body["buildID"] = parse_uuid(build_id, label="build ID")
    if container:
        body["containers"] = [container]
    if batch:
        body["batchID"] = ctx.resolver.resolve_id(BATCH, batch, project_id=ctx.project_id)
    experience_id = ctx.resolver.resolve_id(EXPERIENCE, experience, project_id=ctx.project_id)
    record = ctx.transport.post(
        f"projects/{ctx.project_id}/experiences/{experience_id}/debug",
        body,
        action="unable to debug experience",
    )
    _log.info("debug_session_started batch_id=%s experience_id=%s", record.get("batchID"), experience_id)
    return record




def cluster_api(record: dict[str, Any], ca_dir: Path) -> k8s_client.CoreV1Api:
    """Build a Kubernetes client for the cluster the debug batch runs on.

    The CA bundle is written under *ca_dir*, which must outlive the client.
    """
    endpoint = record.get("clusterEndpoint")
    token = record.get("clusterToken")
    if not endpoint or not token or not record.get("namespace"):
        raise ValidationError("debug session did not return cluster connection details")
    try:
        ca_data = base64.b64decode(str(record.get("clusterCAData") or ""), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Failed to decode cluster CA data: {exc}") from exc
    if not ca_data:
        raise ValidationError("Failed to decode cluster CA data: empty bundle")
    ca_path = ca_dir / "cluster-ca.crt"
    ca_path.write_bytes(ca_data)

    configuration = k8s_client.Configuration()
    configuration.host = str(endpoint)
    configuration.api_key = {"authorization": str(token)}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    configuration.ssl_ca_cert = str(ca_path)
    return k8s_client.CoreV1Api(k8s_client.ApiClient(configuration))


def find_debug_pod(
    api: Any,
    namespace: str,
    batch_id: str,
    *,
    timeout_sec: float = DEFAULT_START_TIMEOUT_SEC,
    poll_interval_sec: float = START_POLL_INTERVAL_SEC,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Wait for the batch's customer pod to be Running; returns the pod name."""
    selector = f"{PARENT_LABEL}={batch_id},{ROLE_SELECTOR}"
    started = clock()
    phase = None
    while True:
        try:
            pods = api.list_namespaced_pod(namespace=namespace, label_selector=selector).items
        except K8sApiException as exc:
            raise RemoteError(
                "unable to list debug pods", int(exc.status or 0), str(exc.body or exc.reason)
            ) from exc
        if pods:
            pod = pods[0]
            phase = getattr(pod.status, "phase", None) or "Unknown"
            if phase == "Running":
                _log.info("debug_pod_running batch_id=%s pod=%s", batch_id, pod.metadata.name)
                return str(pod.metadata.name)
        if clock() - started >= timeout_sec:
            if phase is None:
                raise ObserverTimeout("Could not find running batch")
            raise ObserverTimeout(
                f"Batch took longer than {format_duration(timeout_sec)} to start",
                last_status=phase,
            )
        sleep(poll_interval_sec)


@contextmanager
def _raw_terminal(stream: IO[str]) -> Iterator[None]:
    if not stream.isatty():
        yield
        return
    import termios
    import tty

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)
    tty.setraw(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def attach_shell(
    api: Any,
    namespace: str,
    pod: str,
    *,
    command: str = DEFAULT_COMMAND,
    container: str | None = None,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
    stderr: IO[str] | None = None,
    stream_fn: Callable[..., Any] = k8s_stream,
) -> None:
    """Run *command* in the pod with a TTY and relay the terminal until it exits."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    argv = command.split()
    if not argv:
        raise ValidationError("empty debug command")
    options: dict[str, Any] = {
        "command": argv,
        "stdin": True,
        "stdout": True,
        "stderr": True,
        "tty": True,
        "_preload_content": False,
    }
    if container:
        options["container"] = container
    try:
        session = stream_fn(api.connect_get_namespaced_pod_exec, pod, namespace, **options)
    except K8sApiException as exc:
        raise RemoteError(
            "unable to attach to debug pod", int(exc.status or 0), str(exc.body or exc.reason)
        ) from exc
    _log.info("debug_shell_attached pod=%s command=%s", pod, " ".join(argv))
    try:
        with _raw_terminal(stdin):
            _relay(session, stdin, stdout, stderr)
    finally:
        session.close()


def _relay(session: Any, stdin: IO[str], stdout: IO[str], stderr: IO[str]) -> None:
    stdin_fd = stdin.fileno()
    reading = True
    while session.is_open():
        session.update(timeout=0.1)
        if session.peek_stdout():
            stdout.write(session.read_stdout())
            stdout.flush()
        if session.peek_stderr():
            stderr.write(session.read_stderr())
            stderr.flush()
        if not reading:
            continue
        ready, _, _ = select.select([stdin_fd], [], [], 0)
        if not ready:
            continue
        chunk = os.read(stdin_fd, 1024)
        if chunk:
            session.write_stdin(chunk.decode("utf-8", errors="replace"))
        else:
            # Local EOF: end the remote shell the way Ctrl-D would.
            session.write_stdin("\x04")
            reading = False


def close_debug_session(item: BatchItem, *, emit: Callable[[str], None] = print) -> None:
    emit("Shutting down debug batch")
    try:
        item.cancel()
    except ResimError as exc:
        _log.warning("debug_cancel_failed batch_id=%s error=%s", item.item_id, exc)
        emit(f"Unable to cancel batch: {exc}")
