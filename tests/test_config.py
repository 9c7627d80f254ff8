# ABOUTME: Tests for environment-driven settings
# ABOUTME: Defaults, overrides, and derived local paths

from pathlib import Path

from ledgersync.config import Settings

LEDGER_VARS = [
    "LEDGER_API_URL",
    "LEDGER_API_KEY",
    "LEDGER_EMAIL",
    "LEDGER_PASSWORD",
    "LEDGER_ACCESS_TOKEN",
    "LEDGER_BRANCH",
    "LEDGER_REQUIRE_BRANCH",
    "LEDGER_USER_NAME",
    "LEDGER_POLL_INTERVAL",
    "LEDGER_SIGNAL_POLL_INTERVAL",
    "LEDGER_HOME",
]


class TestSettings:
    """Test the Settings class."""

    def test_defaults(self, monkeypatch):
        for name in LEDGER_VARS:
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()

        assert settings.api_url == ""
        assert settings.email is None
        assert settings.branch is None
        assert settings.require_branch is True
        assert settings.poll_interval == 15.0
        assert settings.home == Path.home() / ".ledgersync"

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LEDGER_API_URL", "https://db.example.com/")
        monkeypatch.setenv("LEDGER_API_KEY", "anon")
        monkeypatch.setenv("LEDGER_BRANCH", "Main")
        monkeypatch.setenv("LEDGER_REQUIRE_BRANCH", "no")
        monkeypatch.setenv("LEDGER_POLL_INTERVAL", "5")
        monkeypatch.setenv("LEDGER_HOME", str(tmp_path))

        settings = Settings.from_env()
        assert settings.api_url == "https://db.example.com"
        assert settings.branch == "Main"
        assert settings.require_branch is False
        assert settings.poll_interval == 5.0
        assert settings.session_file == tmp_path / "session.json"
        assert settings.signal_dir == tmp_path / "signals"
        assert settings.snapshot_dir == tmp_path / "snapshots"

    def test_blank_branch_is_none(self, monkeypatch):
        monkeypatch.setenv("LEDGER_BRANCH", "")
        assert Settings.from_env().branch is None
