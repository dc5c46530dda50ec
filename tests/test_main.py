import asyncio
import json
import logging

import pytest

from catchup import main as entry
from catchup.utils.logging_config import StructuredFormatter


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    for name in ("SERPER_API_KEY", "SMTP_USER", "SMTP_PASSWORD", "DRY_RUN", "MAX_EXECUTION_MINUTES", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "data" / "catchup.db"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(entry, "load_dotenv", lambda: None)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_load_config_defaults():
    config = entry.load_config()

    assert config.max_execution_minutes == 8
    assert config.article_fetch_batch_size == 5
    assert config.email_send_batch_size == 10
    assert config.email_send_delay_seconds == 1.0
    assert config.article_store_batch_size == 50
    assert config.articles_per_topic == 3
    assert config.sender_email == "noreply@usecatchup.xyz"
    assert config.dry_run is False


def test_init_db_creates_database(tmp_path, capsys):
    code = asyncio.run(entry.main(["--init-db"]))

    assert code == 0
    assert (tmp_path / "data" / "catchup.db").exists()
    assert json.loads(capsys.readouterr().out)["initialized"].endswith("catchup.db")


def test_missing_search_key_fails_cleanly(capsys):
    code = asyncio.run(entry.main(["--once", "--dry-run"]))

    assert code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is False
    assert "SERPER_API_KEY" in out["error"]


def test_secrets_are_redacted(monkeypatch):
    monkeypatch.setenv("SMTP_PASSWORD", "hunter2")
    redacted = entry._redacted(entry.load_config())

    assert redacted["smtp_password"] == "***"
    assert redacted["serper_api_key"] == ""


def test_build_orchestrator_maps_config(monkeypatch):
    monkeypatch.setenv("SERPER_API_KEY", "key")
    monkeypatch.setenv("MAX_EXECUTION_MINUTES", "5")
    monkeypatch.setenv("DRY_RUN", "true")
    app = entry.DigestApp(entry.load_config())

    orchestrator = app.build_orchestrator()

    assert orchestrator.config.max_execution_seconds == 300
    assert orchestrator.config.dry_run is True
    assert orchestrator.email is None


def test_log_format_json_switches_to_structured_output(monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "JSON")

    code = asyncio.run(entry.main(["--init-db"]))

    assert code == 0
    assert entry.load_config().log_format == "json"
    console = logging.getLogger().handlers[0]
    assert isinstance(console.formatter, StructuredFormatter)
