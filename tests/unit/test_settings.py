"""Tests for Settings."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from alertpipe.settings import Settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Run each test without ALERTPIPE_* variables or a stray .env file."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("ALERTPIPE_"):
            monkeypatch.delenv(key)


class TestSettings:
    """Defaults, environment variables and validation."""

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.host == "127.0.0.1"
        assert settings.port == 9464
        assert settings.scrape_interval == 15.0
        assert settings.rules_file == Path("alert_rules.yml")
        assert settings.instance_label == "127.0.0.1:9464"

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.tra("Settings.Env.Prefix")
    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ALERTPIPE_PORT", "9999")
        monkeypatch.setenv("ALERTPIPE_SCRAPE_INTERVAL", "30s")
        monkeypatch.setenv("ALERTPIPE_EVALUATION_INTERVAL", "10")
        monkeypatch.setenv("ALERTPIPE_LOG_LEVEL", "debug")
        monkeypatch.setenv("ALERTPIPE_SCRAPE_TARGETS", '["http://a:9100/metrics"]')

        settings = Settings()

        assert settings.port == 9999
        assert settings.scrape_interval == 30.0
        assert settings.evaluation_interval == 10.0
        assert settings.log_level == "DEBUG"
        assert settings.scrape_targets == ["http://a:9100/metrics"]

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_reads_dotenv_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text("ALERTPIPE_JOB=edge\n", encoding="utf-8")

        assert Settings().job == "edge"

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_explicit_instance_label(self) -> None:
        assert Settings(instance="node-1").instance_label == "node-1"

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.parametrize(
        "overrides",
        [
            {"port": 70000},
            {"scrape_interval": "0s"},
            {"scrape_interval": "soon"},
            {"log_level": "chatty"},
            {"delivery_max_attempts": 0},
        ],
    )
    def test_invalid_values(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            Settings(**overrides)
