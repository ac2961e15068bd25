"""Tests for app.config — environment variable loading and validation."""

import pytest

from app.config import load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Ensure provider env vars are cleared between tests."""
    for var in [
        "KIS_APP_KEY",
        "KIS_APP_SECRET",
        "KIS_ENVIRONMENT",
        "DB_PATH",
        "ARCHIVE_DIR",
        "LOG_LEVEL",
        "HEALTH_PORT",
        "MAX_CALLS_PER_SECOND",
        "MAX_CONCURRENCY",
        "SCREEN_MIN_SCORE",
        "MINING_TIME_BUDGET_SECONDS",
        "PATTERN_CACHE_TTL_HOURS",
    ]:
        # setenv first so teardown also removes values load_dotenv wrote
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def _set_required(monkeypatch):
    """Set the minimum required environment variables."""
    monkeypatch.setenv("KIS_APP_KEY", "test-key")
    monkeypatch.setenv("KIS_APP_SECRET", "test-secret")


def _load(tmp_path):
    # A non-existent env_path keeps load_dotenv from reading a real .env file
    return load_config(env_path=str(tmp_path / "nonexistent.env"))


class TestLoadConfig:
    def test_loads_required_vars(self, monkeypatch, tmp_path):
        _set_required(monkeypatch)
        cfg = _load(tmp_path)
        assert cfg.kis_app_key == "test-key"
        assert cfg.kis_app_secret == "test-secret"

    def test_defaults(self, monkeypatch, tmp_path):
        _set_required(monkeypatch)
        cfg = _load(tmp_path)
        assert cfg.kis_environment == "real"
        assert cfg.db_path == "data/surgescan.db"
        assert cfg.archive_dir == "data/bars"
        assert cfg.log_level == "INFO"
        assert cfg.health_port == 8080
        assert cfg.max_calls_per_second == 18.0
        assert cfg.max_concurrency == 4
        assert cfg.screen_min_score == 30.0
        assert cfg.mining_min_return == 15.0
        assert cfg.mining_lookback_days == 30
        assert cfg.mining_sample_limit == 200
        assert cfg.mining_time_budget_seconds == 0.0
        assert cfg.smart_pullback_threshold == 10.0
        assert cfg.smart_lookback_days == 10

    def test_missing_vars_all_named(self, monkeypatch, tmp_path):
        with pytest.raises(ValueError, match="KIS_APP_KEY, KIS_APP_SECRET"):
            _load(tmp_path)

    def test_missing_one_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KIS_APP_KEY", "test-key")
        with pytest.raises(ValueError, match="KIS_APP_SECRET"):
            _load(tmp_path)

    def test_environment_switching_real(self, monkeypatch, tmp_path):
        _set_required(monkeypatch)
        cfg = _load(tmp_path)
        assert cfg.kis_base_url == "https://openapi.koreainvestment.com:9443"

    def test_environment_switching_virtual(self, monkeypatch, tmp_path):
        _set_required(monkeypatch)
        monkeypatch.setenv("KIS_ENVIRONMENT", "virtual")
        cfg = _load(tmp_path)
        assert cfg.kis_base_url == "https://openapivts.koreainvestment.com:29443"

    def test_overrides_and_ttl(self, monkeypatch, tmp_path):
        _set_required(monkeypatch)
        monkeypatch.setenv("MAX_CONCURRENCY", "8")
        monkeypatch.setenv("PATTERN_CACHE_TTL_HOURS", "0.5")
        cfg = _load(tmp_path)
        assert cfg.max_concurrency == 8
        assert cfg.pattern_cache_ttl_seconds == 1800.0

    def test_reads_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("KIS_APP_KEY=file-key\nKIS_APP_SECRET=file-secret\n")
        cfg = load_config(env_path=str(env))
        assert cfg.kis_app_key == "file-key"
