from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from resim_cli.auth import build_token_provider
from resim_cli.config import ResimSettings
from resim_cli.models import ValidationError
from resim_cli.resolver import PROJECT, Resolver
from resim_cli.transport import Transport


@dataclass
class ResimContext:
    """Everything a command needs, passed explicitly instead of read ambient."""

    settings: ResimSettings
    transport: Transport
    project: str | None = None
    _project_record: dict[str, Any] | None = field(default=None, repr=False)

    @property
    def resolver(self) -> Resolver:
        return Resolver(self.transport)

    def with_project(self, project: str | None) -> "ResimContext":
        if project and project != self.project:
            return ResimContext(self.settings, self.transport, project)
        return self

    def project_record(self) -> dict[str, Any]:
        if self._project_record is None:
            key = self.project or self.settings.project
            if not key:
                raise ValidationError(
                    "empty project name: pass --project or set RESIM_PROJECT"
                )
            self._project_record = self.resolver.resolve(PROJECT, key)
        return self._project_record

    @property
    def project_id(self) -> str:
        return str(self.project_record()[PROJECT.id_field])


def build_context(settings: ResimSettings, *, project: str | None = None) -> ResimContext:
    transport = Transport(
        settings.api_url,
        build_token_provider(settings),
        bff_url=settings.bff_url,
    )
    return ResimContext(settings=settings, transport=transport, project=project)
