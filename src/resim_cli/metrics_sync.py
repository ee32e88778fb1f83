from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from resim_cli.models import ValidationError
from resim_cli.transport import Transport

_log = logging.getLogger("resim.metrics_sync")

METRICS_DIR = Path(".resim") / "metrics"
CONFIG_FILENAME = "config.yml"
TEMPLATE_SUFFIX = ".liquid"

UPDATE_METRICS_CONFIG = """
mutation UpdateMetricsConfig($config: String!, $templateFiles: [MetricsTemplate!]!) {
  updateMetricsConfig(config: $config, templateFiles: $templateFiles)
}
""".strip()


@dataclass(frozen=True)
class MetricsTemplate:
    name: str
    contents: str

    def to_json(self) -> dict[str, str]:
        return {"name": self.name, "contents": self.contents}


def _encode(path: Path) -> str:
    return base64.b64encode(path.read_bytes()).decode("ascii")


def collect_metrics_config(
    root: Path, *, report: Callable[[str], None] | None = None
) -> tuple[str, list[MetricsTemplate]]:
    """Read and base64-encode the metrics config and its templates under *root*."""
    say = report or (lambda _message: None)
    config_path = root / METRICS_DIR / CONFIG_FILENAME
    say(f"Looking for metrics config at {config_path}")
    if not config_path.is_file():
        raise ValidationError(f"failed to find ReSim metrics config at {config_path}")
    config = _encode(config_path)

    template_dir = root / METRICS_DIR / "templates"
    say(f"Looking for templates in {template_dir}")
    templates: list[MetricsTemplate] = []
    if not template_dir.is_dir():
        return config, templates
    for entry in sorted(template_dir.iterdir()):
        if entry.is_dir():
            say(f"Skipping directory {entry.name}")
            continue
        if not entry.name.lower().endswith(TEMPLATE_SUFFIX):
            say(f"Skipping non {TEMPLATE_SUFFIX} file {entry.name}")
            continue
        say(f"Found template {entry.name}")
        templates.append(MetricsTemplate(name=entry.name, contents=_encode(entry)))
    return config, templates


def sync_metrics_config(
    transport: Transport,
    root: Path,
    *,
    report: Callable[[str], None] | None = None,
) -> list[MetricsTemplate]:
    config, templates = collect_metrics_config(root, report=report)
    transport.graphql(
        UPDATE_METRICS_CONFIG,
        {"config": config, "templateFiles": [template.to_json() for template in templates]},
        action="failed to sync metrics config",
    )
    _log.info("metrics_config_synced templates=%d", len(templates))
    if report is not None:
        report("Successfully synced metrics config, and the following templates:")
        for template in templates:
            report(f"\t{template.name}")
    return templates
