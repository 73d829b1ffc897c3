"""
Tests for settings, workspace handling and the shared utilities.
"""
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError
from pythonjsonlogger.json import JsonFormatter

from pvesync.config import Settings, SyncContext
from pvesync.utils.logging import setup_logging
from pvesync.utils.retry import async_retry, backoff_delays
from pvesync.utils.timeparse import parse_time
from pvesync.workspace import Workspace


class TestParseTime:
    @pytest.mark.parametrize(
        "value, expected",
        [("15s", 15.0), ("10m", 600.0), ("1h", 3600.0), ("2d", 172800.0), ("30", 30.0), (2.5, 2.5), ("1.5m", 90.0)],
    )
    def test_valid(self, value, expected):
        assert parse_time(value) == expected

    @pytest.mark.parametrize("value", ["", "ten minutes", "5w", -1, True, None])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_time(value)


class TestSettings:
    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("PVESYNC_API_HOST", "pve1.lab")
        monkeypatch.setenv("PVESYNC_CONFLICT_POLICY", "preferLocal")
        monkeypatch.setenv("PVESYNC_SIGNIFICANT_EXTENSIONS", '["onboot", "tags"]')
        settings = Settings(_env_file=None)
        assert settings.API_HOST == "pve1.lab"
        assert settings.CONFLICT_POLICY == "preferLocal"
        assert settings.SIGNIFICANT_EXTENSIONS == ["onboot", "tags"]

    def test_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, CONFLICT_POLICY="coinFlip")
        with pytest.raises(ValidationError):
            Settings(_env_file=None, DISCOVERY_TIMEOUT="soon")

    def test_context_paths_are_rooted(self, tmp_path):
        settings = Settings(_env_file=None, DB_PATH="state/db.sqlite", DISCOVERY_TIMEOUT="2m",
                            SIGNIFICANT_EXTENSIONS=["onboot"])
        context = SyncContext.from_settings(settings, workspace_root=tmp_path)
        assert context.workspace_root == tmp_path.resolve()
        assert context.db_path == tmp_path.resolve() / "state" / "db.sqlite"
        assert context.artifact_dir == tmp_path.resolve() / "infrastructure"
        assert context.discovery_timeout == 120.0
        assert context.significant_extensions == ("onboot",)

    def test_context_is_immutable(self, context):
        with pytest.raises(ValidationError):
            context.allow_partial = True


class TestWorkspace:
    def test_create_and_detect(self, tmp_path):
        Workspace.create(tmp_path, api_host="pve.example", token_id=None)
        nested = tmp_path / "infrastructure" / "vms"
        nested.mkdir(parents=True)

        workspace = Workspace.detect(nested)

        assert workspace is not None
        assert workspace.root == tmp_path.resolve()
        assert workspace.config["api_host"] == "pve.example"
        assert "token_id" not in workspace.config

    def test_detect_outside_workspace(self, tmp_path):
        assert Workspace.detect(tmp_path) is None

    def test_load_settings_layers_file_over_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PVESYNC_API_TOKEN_SECRET", "from-env")
        workspace = Workspace.create(tmp_path, api_host="pve.example", artifact_dir="iac")

        settings = workspace.load_settings(CONFLICT_POLICY="preferRemote")
        context = workspace.context()

        assert settings.API_HOST == "pve.example"
        assert settings.API_TOKEN_SECRET == "from-env"
        assert settings.CONFLICT_POLICY == "preferRemote"
        assert context.artifact_dir == tmp_path.resolve() / "iac"
        assert context.db_path == tmp_path.resolve() / ".pvesync" / "state.db"

    def test_config_must_be_a_mapping(self, tmp_path):
        (tmp_path / ".pvesync").mkdir()
        (tmp_path / ".pvesync" / "config.yml").write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            Workspace.detect(tmp_path)


class TestLogging:
    def test_json_format(self, monkeypatch, capsys):
        monkeypatch.setenv("PVESYNC_LOG_FORMAT", "json")
        logger = logging.getLogger("pvesync.tests.json")
        logger.propagate = False
        setup_logging(force=True, logger=logger, level="debug")

        logger.info("discovered %d nodes", 3)

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["message"] == "discovered 3 nodes"
        assert record["level"] == "INFO"
        assert record["logger"] == "pvesync.tests.json"
        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)

    def test_existing_handlers_kept_without_force(self):
        logger = logging.getLogger("pvesync.tests.keep")
        handler = logging.NullHandler()
        logger.addHandler(handler)
        setup_logging(logger=logger)
        assert logger.handlers == [handler]


class _Flaky:
    def __init__(self, failures, retries=None):
        self.failures = failures
        self.calls = 0
        if retries is not None:
            self.retries = retries

    @async_retry(retries=2, delay=0.01, catch_exceptions=ConnectionError)
    async def fetch(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("reset")
        return "ok"


class TestRetry:
    def test_backoff_schedule_is_capped(self):
        delays = backoff_delays(1.0, 2.0, 5.0)
        assert [next(delays) for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        flaky = _Flaky(failures=2)
        with patch("pvesync.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await flaky.fetch() == "ok"
        assert flaky.calls == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_instance_retries_override(self):
        flaky = _Flaky(failures=5, retries=0)
        with pytest.raises(ConnectionError):
            await flaky.fetch()
        assert flaky.calls == 1

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        @async_retry(retries=3, delay=0.01, catch_exceptions=ConnectionError)
        async def _boom():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await _boom()
