"""Unit tests for the command line entry point."""

import logging
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from sophosguard_sync import (
    BOOL_ENV_VARS,
    LOGGER_NAME,
    Config,
    CycleOutcome,
    FeedUnreachable,
    MetricsCollector,
    SnapshotStore,
    SyncCycleResult,
    apply_args,
    build_engine,
    main,
    parse_args,
    setup_logging,
)


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path):
    """Minimal valid environment; .env files are ignored."""
    for name in sorted(BOOL_ENV_VARS) + ["THREAT_LEVEL", "SOPHOS_PASSWORD_FILE", "LOG_FILE"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SOPHOS_HOST", "fw.local")
    monkeypatch.setenv("SOPHOS_USERNAME", "api")
    monkeypatch.setenv("SOPHOS_PASSWORD", "secret")
    monkeypatch.setenv("IPLIST_PATH", str(tmp_path / "IPList"))
    with patch("sophosguard_sync.load_dotenv"):
        yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def engine_returning(outcome, error=None):
    engine = MagicMock()
    engine.run_cycle.return_value = SyncCycleResult(
        started_at=datetime(2024, 5, 1), outcome=outcome, error=error
    )
    return engine


class TestMain:
    """Tests for main()."""

    def test_validate_passes(self, caplog):
        with caplog.at_level("INFO"):
            assert main(["--validate"]) == 0

        assert "Configuration validation passed" in caplog.text

    def test_validate_reports_missing_host(self, monkeypatch, caplog):
        monkeypatch.delenv("SOPHOS_HOST")

        assert main(["--validate"]) == 1
        assert "SOPHOS_HOST is required" in caplog.text

    def test_host_flag_satisfies_validation(self, monkeypatch):
        monkeypatch.delenv("SOPHOS_HOST")

        assert main(["--validate", "--host", "10.0.0.1"]) == 0

    def test_invalid_bool_env_fails(self, monkeypatch, caplog):
        monkeypatch.setenv("DRY_RUN", "perhaps")

        assert main(["--validate"]) == 1
        assert "Invalid value for DRY_RUN" in caplog.text

    def test_out_of_range_level_fails(self):
        assert main(["--validate", "--threat-level", "101"]) == 1

    def test_unparseable_env_fails(self, monkeypatch, capsys):
        monkeypatch.setenv("THREAT_LEVEL", "high")

        assert main(["--validate"]) == 1
        assert "Invalid configuration" in capsys.readouterr().err

    def test_show_snapshot_empty(self, caplog):
        with caplog.at_level("INFO"):
            assert main(["--show-snapshot"]) == 0

        assert "No IP list saved yet" in caplog.text

    def test_show_snapshot_summary(self, tmp_path, caplog):
        SnapshotStore(tmp_path / "IPList").save({"1.1.1.1", "2.2.2.2"})

        with caplog.at_level("INFO"):
            assert main(["--show-snapshot"]) == 0

        assert "Current IP list: 2 addresses" in caplog.text
        assert "Backups: 1" in caplog.text

    def test_once_success(self):
        engine = engine_returning(CycleOutcome.SUCCESS)

        with patch("sophosguard_sync.build_engine", return_value=engine):
            assert main(["--once"]) == 0

        engine.run_cycle.assert_called_once_with()
        engine.start.assert_not_called()

    def test_once_no_change_is_success(self):
        with patch("sophosguard_sync.build_engine", return_value=engine_returning(CycleOutcome.NO_CHANGE)):
            assert main(["--once"]) == 0

    def test_once_failure(self):
        engine = engine_returning(CycleOutcome.FAILED, FeedUnreachable("down"))

        with patch("sophosguard_sync.build_engine", return_value=engine):
            assert main(["--once"]) == 1

    def test_daemon_mode_by_default(self):
        engine = MagicMock()

        with patch("sophosguard_sync.build_engine", return_value=engine), \
                patch("sophosguard_sync._run_daemon", return_value=0) as run_daemon:
            assert main([]) == 0

        run_daemon.assert_called_once()
        assert run_daemon.call_args.args[0] is engine


class TestArgs:
    """Tests for parse_args and apply_args."""

    def test_overrides_applied(self):
        args = parse_args([
            "--host", "10.1.1.1", "--threat-level", "50", "--interval", "15",
            "--data-dir", "/var/lib/sg", "-n", "-d",
        ])

        config = apply_args(Config(), args)

        assert config.device_host == "10.1.1.1"
        assert config.threat_level == 50
        assert config.update_interval_minutes == 15
        assert config.data_dir == "/var/lib/sg"
        assert config.dry_run is True
        assert config.log_level == "DEBUG"

    def test_no_flags_keeps_config(self):
        config = Config(device_host="fw.local", threat_level=75)

        assert apply_args(config, parse_args([])) == config

    def test_pushgateway_enables_metrics(self):
        config = apply_args(Config(), parse_args(["--pushgateway-url", "pg:9091"]))

        assert config.metrics_enabled is True
        assert config.pushgateway_url == "pg:9091"

    def test_no_metrics_wins(self):
        config = apply_args(Config(metrics_enabled=True), parse_args(["--pushgateway-url", "pg:9091", "--no-metrics"]))

        assert config.metrics_enabled is False


class TestWiring:
    """Tests for setup_logging and build_engine."""

    def test_build_engine_scopes_tls_to_firewall_session(self, tmp_path, caplog):
        config = Config(device_host="fw.local", verify_tls=False, data_dir=str(tmp_path))

        with caplog.at_level("WARNING"):
            engine = build_engine(config, logging.getLogger(LOGGER_NAME))

        assert engine.firewall.session.verify is False
        assert engine.feed.session.verify is True
        assert "TLS certificate verification disabled" in caplog.text
        assert engine.metrics is None

    def test_build_engine_with_metrics(self, tmp_path):
        config = Config(metrics_enabled=True, pushgateway_url="pg:9091", data_dir=str(tmp_path))

        engine = build_engine(config, logging.getLogger(LOGGER_NAME))

        assert isinstance(engine.metrics, MetricsCollector)
        assert engine.metrics.pushgateway_url == "pg:9091"
        assert engine.store.directory == tmp_path

    def test_setup_logging_file_handler(self, tmp_path):
        log_file = tmp_path / "sync.log"
        logger = setup_logging(Config(log_file=str(log_file), log_level="WARNING"))

        logger.warning("written to file")
        logger.info("filtered out")
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "[WARNING] written to file" in content
        assert "filtered out" not in content

    def test_setup_logging_replaces_handlers(self):
        setup_logging(Config())
        logger = setup_logging(Config())

        assert len(logger.handlers) == 1
