"""Tests for the command line entry point."""

import json
from contextlib import contextmanager
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from newapi_sync import cli
from newapi_sync.database.database import Base
from newapi_sync.models.sync_record import SyncRecord
from newapi_sync.services.config_loader import parse_config
from newapi_sync.services.exceptions import (
    ApiResponseError,
    ConfigError,
    SyncInProgressError,
    TargetUnavailableError,
)
from newapi_sync.services.types import (
    ApplyError,
    ApplyReport,
    DesiredState,
    ProviderReport,
    ResetResult,
    SyncDiff,
    SyncRunResult,
)


@pytest.fixture
def config():
    return parse_config({
        "target": {"baseUrl": "https://target.example.com", "systemAccessToken": "tok", "userId": 1},
        "providers": [
            {
                "type": "newapi",
                "name": "provA",
                "baseUrl": "https://a.example.com",
                "systemAccessToken": "tok-a",
                "userId": 2,
            },
            {"type": "direct", "name": "dsk", "vendor": "deepseek", "apiKey": "sk-d"},
        ],
    })


def run_result(success=True, errors=None):
    report = ApplyReport(errors=errors or [])
    report.channels.created = 2
    return SyncRunResult(
        success=success,
        provider_reports=[ProviderReport(name="provA", type="newapi", success=True, groups=2, models=5, test_cost=0.0123)],
        desired=DesiredState(managed_providers={"provA"}),
        diff=SyncDiff(),
        apply=report,
        elapsed_ms=1500,
    )


@pytest.fixture
def service():
    """SyncService class double; the instance's run methods are async."""
    with patch("newapi_sync.cli.SyncService") as service_class:
        instance = service_class.return_value
        instance.run_sync = AsyncMock(return_value=run_result())
        instance.reset = AsyncMock(return_value=ResetResult(success=True, diff=SyncDiff(), apply=ApplyReport(), tokens_deleted=3))
        yield service_class


@pytest.fixture
def loaded(config):
    with patch("newapi_sync.cli.load_config", return_value=config) as load:
        yield load


class TestRunCommand:
    """Tests for the run subcommand."""

    def test_run_summary(self, loaded, service, capsys):
        """Test the human-readable summary and exit code."""
        code = cli.main(["run", "--no-history"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Mode: apply" in out
        assert "provA (newapi): ok | groups 2 | models 5" in out
        assert "test cost $0.0123" in out
        assert "Channels: +2 ~0 -0" in out
        service.return_value.run_sync.assert_awaited_once_with(None, dry_run=False)

    def test_run_json(self, loaded, service, capsys):
        """Test JSON output."""
        code = cli.main(["run", "--no-history", "--dry-run", "--json"])

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["success"] is True
        assert data["providers"][0]["name"] == "provA"
        assert data["desired"]["managed_providers"] == ["provA"]
        assert data["apply"]["channels"]["created"] == 2
        service.return_value.run_sync.assert_awaited_once_with(None, dry_run=True)

    def test_run_only(self, loaded, service):
        """Test that --only narrows the config passed to the service."""
        cli.main(["--config", "sync.yaml", "run", "--no-history", "--only", "dsk"])

        loaded.assert_called_once_with("sync.yaml")
        config = service.call_args.args[0]
        assert config.provider_names() == ["dsk"]
        assert config.only_providers == ["dsk"]

    def test_run_failure_exit_code(self, loaded, service, capsys):
        """Test that a failed run exits with 1 and lists the errors."""
        errors = [ApplyError("channels", "vip-provA", "invalid channel")]
        service.return_value.run_sync.return_value = run_result(success=False, errors=errors)

        code = cli.main(["run", "--no-history"])

        out = capsys.readouterr().out
        assert code == 1
        assert "[channels/vip-provA] invalid channel" in out
        assert "Completed with errors" in out

    @pytest.mark.parametrize("error", [
        ConfigError("Invalid config file", ["providers: field required"]),
        TargetUnavailableError("Target health check failed: HTTP 401"),
        SyncInProgressError("A sync operation is already in progress"),
    ])
    def test_fatal_errors(self, loaded, service, error):
        """Test that fatal errors exit with 1 instead of raising."""
        service.return_value.run_sync.side_effect = error

        assert cli.main(["run", "--no-history"]) == 1

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout(""),
        ApiResponseError("GET /api/channel/: permission denied"),
    ])
    def test_transport_errors(self, loaded, service, caplog, error):
        """Test that request failures become one logged line and exit code 1."""
        service.return_value.run_sync.side_effect = error

        assert cli.main(["run", "--no-history"]) == 1
        assert any(r.getMessage().startswith("Request failed: ") for r in caplog.records)

    def test_unknown_provider(self, loaded, service):
        """Test that --only with an unknown name fails before running."""
        assert cli.main(["run", "--no-history", "--only", "nope"]) == 1
        service.return_value.run_sync.assert_not_awaited()

    def test_no_command(self, capsys):
        """Test that running without a subcommand prints help."""
        assert cli.main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestResetCommand:
    """Tests for the reset subcommand."""

    def test_reset_summary(self, loaded, service, capsys):
        """Test the reset summary line."""
        code = cli.main(["reset", "--no-history"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Reset complete" in out
        assert "Tokens: -3" in out

    def test_reset_json(self, loaded, service, capsys):
        """Test JSON output of a failed reset."""
        service.return_value.reset.return_value = ResetResult(
            success=False, diff=SyncDiff(), apply=ApplyReport(), token_errors=["provA: connection refused"]
        )

        code = cli.main(["reset", "--no-history", "--json"])

        data = json.loads(capsys.readouterr().out)
        assert code == 1
        assert data["token_errors"] == ["provA: connection refused"]


class TestHistoryCommand:
    """Tests for the history subcommand."""

    @pytest.fixture
    def db_session(self):
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(bind=engine)
        session = sessionmaker(bind=engine)()

        @contextmanager
        def fake_history_session(enabled):
            yield session

        with patch("newapi_sync.cli.history_session", fake_history_session):
            yield session
        session.close()

    def test_empty_history(self, db_session, capsys):
        """Test the message when nothing was recorded."""
        assert cli.main(["history"]) == 0
        assert "No runs recorded" in capsys.readouterr().out

    def test_history_lines(self, db_session, capsys):
        """Test one line per run with its summary and error."""
        db_session.add(SyncRecord(
            status="failed",
            mode="apply",
            providers="provA,dsk",
            started_at=datetime(2024, 5, 1, 12, 0, 0),
            completed_at=datetime(2024, 5, 1, 12, 0, 30),
            changes_summary="Providers: 1/2; Channels: +1 ~0 -0",
            error_message="[dsk] No working models",
        ))
        db_session.commit()

        assert cli.main(["history", "--limit", "5"]) == 0

        out = capsys.readouterr().out
        assert "2024-05-01T12:00:00 -> 2024-05-01T12:00:30 [apply] failed (provA,dsk)" in out
        assert "Providers: 1/2" in out
        assert "error: [dsk] No working models" in out


class TestServeCommand:
    """Tests for the serve subcommand."""

    def test_serve(self):
        """Test that uvicorn is started with the configured host and port."""
        with patch("uvicorn.run") as run:
            assert cli.main(["serve", "--host", "127.0.0.1", "--port", "9000"]) == 0

        run.assert_called_once()
        assert run.call_args.kwargs["host"] == "127.0.0.1"
        assert run.call_args.kwargs["port"] == 9000


class TestHistorySession:
    """Tests for the history session helper."""

    def test_disabled(self):
        """Test that no database is touched when history is off."""
        with cli.history_session(False) as db:
            assert db is None

    def test_enabled(self):
        """Test that the tables are created and the session closed."""
        session = MagicMock()
        with patch("newapi_sync.database.database.init_db") as init_db, \
                patch("newapi_sync.database.database.SessionLocal", return_value=session):
            with cli.history_session(True) as db:
                assert db is session

        init_db.assert_called_once()
        session.close.assert_called_once()
