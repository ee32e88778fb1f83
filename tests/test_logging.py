from __future__ import annotations

import logging
from pathlib import Path

from resim_cli._logging import RedactingFormatter, level_from_env, setup_logging


def _format(message: str) -> str:
    record = logging.LogRecord("resim.test", logging.INFO, __file__, 1, message, None, None)
    return RedactingFormatter("%(message)s").format(record)


def test_secrets_are_masked() -> None:
    assert _format("Authorization: Bearer abc.def.ghi") == "Authorization: Bearer ***"
    assert _format("grant client_secret=s3cret user=me") == "grant client_secret=*** user=me"
    assert _format("password: hunter2") == "password: ***"


def test_level_from_env(monkeypatch) -> None:
    monkeypatch.setenv("RESIM_LOG_LEVEL", "debug")
    assert level_from_env() == logging.DEBUG
    monkeypatch.setenv("RESIM_LOG_LEVEL", "chatty")
    assert level_from_env() == logging.WARNING


def test_log_file_receives_info_records(monkeypatch, tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "resim.log"
    monkeypatch.setenv("RESIM_LOG_FILE", str(log_file))
    monkeypatch.delenv("RESIM_LOG_LEVEL", raising=False)

    setup_logging()
    logging.getLogger("resim.test").info("cli_command_start command=projects list")
    setup_logging()
    handlers = [h for h in logging.getLogger("resim").handlers if isinstance(h, logging.FileHandler)]

    assert len(handlers) == 1
    handlers[0].flush()
    assert "msg=cli_command_start command=projects list" in log_file.read_text(encoding="utf-8")

    monkeypatch.delenv("RESIM_LOG_FILE")
    setup_logging()
    assert not [h for h in logging.getLogger("resim").handlers if isinstance(h, logging.FileHandler)]
