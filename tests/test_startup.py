"""Tests for application startup checks and validation."""

from unittest.mock import MagicMock, patch

import pytest

from opensync.startup import (
    StartupCheckError,
    check_database_connection,
    check_database_migrations,
    check_embedding_provider,
    check_log_directory,
    check_required_environment,
    run_all_startup_checks,
    startup_metrics,
)


def _session_returning(value):
    ctx = MagicMock()
    ctx.__enter__ = MagicMock(return_value=ctx)
    ctx.__exit__ = MagicMock(return_value=False)
    result = MagicMock()
    result.scalar = MagicMock(return_value=value)
    ctx.execute = MagicMock(return_value=result)
    return MagicMock(return_value=ctx)


class TestDatabaseConnectionCheck:
    """Tests for database connection validation."""

    def test_success(self):
        with patch("opensync.startup.SessionLocal", _session_returning(1)):
            check_database_connection()

    def test_unexpected_result(self):
        with patch("opensync.startup.SessionLocal", _session_returning(2)):
            with pytest.raises(StartupCheckError) as exc_info:
                check_database_connection()

        assert "unexpected result" in exc_info.value.message

    def test_connection_refused(self):
        with patch("opensync.startup.SessionLocal", side_effect=Exception("Connection refused")):
            with pytest.raises(StartupCheckError) as exc_info:
                check_database_connection()

        assert "Cannot connect" in str(exc_info.value)
        assert "docker compose" in exc_info.value.hint

    def test_missing_database(self):
        with patch(
            "opensync.startup.SessionLocal",
            side_effect=Exception('database "opensync" does not exist'),
        ):
            with pytest.raises(StartupCheckError) as exc_info:
                check_database_connection()

        assert "createdb" in exc_info.value.hint


class TestEnvironmentCheck:
    """Tests for environment configuration validation."""

    def test_override_skips_postgres_settings(self):
        with patch("opensync.startup.settings") as mock_settings:
            mock_settings.database_url_override = "sqlite:///x.db"
            mock_settings.postgres_host = ""

            check_required_environment()

    def test_detects_missing_vars(self):
        with patch("opensync.startup.settings") as mock_settings:
            mock_settings.database_url_override = ""
            mock_settings.postgres_host = ""
            mock_settings.postgres_db = "opensync"
            mock_settings.postgres_user = "opensync"
            mock_settings.postgres_password = "secret"

            with pytest.raises(StartupCheckError) as exc_info:
                check_required_environment()

        assert "OPENSYNC_POSTGRES_HOST" in exc_info.value.message


class TestMigrationCheck:
    def test_sqlite_is_skipped(self):
        with patch("opensync.startup._is_sqlite", return_value=True):
            with patch("opensync.startup.ScriptDirectory") as script:
                check_database_migrations()

        script.from_config.assert_not_called()

    def test_uninitialized_database(self):
        with patch("opensync.startup._is_sqlite", return_value=False), \
                patch("opensync.startup.ScriptDirectory") as script, \
                patch("opensync.startup.AlembicConfig"), \
                patch("opensync.startup.engine"), \
                patch("opensync.startup.MigrationContext") as context:
            script.from_config.return_value.get_current_head.return_value = "abc123"
            context.configure.return_value.get_current_revision.return_value = None

            with pytest.raises(StartupCheckError) as exc_info:
                check_database_migrations()

        assert "no migration version" in exc_info.value.message


class TestLogDirectoryCheck:
    def test_writable(self, tmp_path, monkeypatch):
        from opensync.config import settings

        monkeypatch.setattr(settings, "log_file_enabled", True)
        monkeypatch.setattr(settings, "log_dir", str(tmp_path / "logs"))

        check_log_directory()

        assert (tmp_path / "logs").is_dir()

    def test_disabled(self, monkeypatch):
        from opensync.config import settings

        monkeypatch.setattr(settings, "log_file_enabled", False)
        monkeypatch.setattr(settings, "log_dir", "/proc/definitely/not/writable")

        check_log_directory()


class TestEmbeddingProviderCheck:
    """The embedding provider never blocks startup."""

    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr("opensync.embeddings.openai.get_embedding_provider", lambda: None)
        monkeypatch.setattr(startup_metrics, "embeddings_available", False)

        check_embedding_provider()

        assert startup_metrics.embeddings_available is False

    def test_reachable(self, monkeypatch, fake_provider):
        monkeypatch.setattr("opensync.embeddings.openai.get_embedding_provider", lambda: fake_provider)
        monkeypatch.setattr(startup_metrics, "embeddings_available", False)

        check_embedding_provider()

        assert startup_metrics.embeddings_available is True

    def test_unreachable_does_not_raise(self, monkeypatch, failing_provider):
        monkeypatch.setattr(
            "opensync.embeddings.openai.get_embedding_provider", lambda: failing_provider
        )
        monkeypatch.setattr(startup_metrics, "embeddings_available", False)

        check_embedding_provider()

        assert startup_metrics.embeddings_available is False


class TestRunAllStartupChecks:
    """Tests for the check runner."""

    _CHECKS = (
        "check_required_environment",
        "check_database_connection",
        "check_database_migrations",
        "check_log_directory",
        "check_embedding_provider",
    )

    def test_all_pass(self, monkeypatch):
        for name in self._CHECKS:
            monkeypatch.setattr(f"opensync.startup.{name}", MagicMock())
        monkeypatch.setattr(startup_metrics, "checks_passed", False)

        run_all_startup_checks()

        assert startup_metrics.checks_passed is True
        assert "Database Connection" in startup_metrics.check_durations_ms

    def test_failure_exits(self, monkeypatch):
        for name in self._CHECKS:
            monkeypatch.setattr(f"opensync.startup.{name}", MagicMock())
        monkeypatch.setattr(
            "opensync.startup.check_database_connection",
            MagicMock(side_effect=StartupCheckError("db down", "start it")),
        )
        monkeypatch.setattr(startup_metrics, "checks_passed", False)

        with pytest.raises(SystemExit) as exc_info:
            run_all_startup_checks()

        assert exc_info.value.code == 1
        assert startup_metrics.checks_passed is False


class TestStartupCheckError:
    def test_str_includes_hint(self):
        error = StartupCheckError("Something broke", "Try turning it off and on")

        rendered = str(error)

        assert "STARTUP CHECK FAILED" in rendered
        assert "Hint: Try turning it off and on" in rendered
