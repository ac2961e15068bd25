"""surgescan — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "KIS_APP_KEY",
    "KIS_APP_SECRET",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    kis_app_key: str
    kis_app_secret: str
    kis_environment: str  # "real" or "virtual"
    db_path: str
    archive_dir: str
    log_level: str
    health_port: int
    max_calls_per_second: float
    max_concurrency: int
    request_interval_ms: int
    pattern_cache_ttl_hours: float
    screen_min_score: float
    mining_min_return: float
    mining_lookback_days: int
    mining_sample_limit: int
    mining_time_budget_seconds: float  # 0 = unlimited
    smart_pullback_threshold: float
    smart_lookback_days: int

    @property
    def kis_base_url(self) -> str:
        """Return the KIS Open API base URL based on environment."""
        if self.kis_environment == "virtual":
            return "https://openapivts.koreainvestment.com:29443"
        return "https://openapi.koreainvestment.com:9443"

    @property
    def pattern_cache_ttl_seconds(self) -> float:
        """Pattern/DNA cache lifetime in seconds."""
        return self.pattern_cache_ttl_hours * 3600.0


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        kis_app_key=os.environ["KIS_APP_KEY"],
        kis_app_secret=os.environ["KIS_APP_SECRET"],
        kis_environment=os.environ.get("KIS_ENVIRONMENT", "real"),
        db_path=os.environ.get("DB_PATH", "data/surgescan.db"),
        archive_dir=os.environ.get("ARCHIVE_DIR", "data/bars"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        max_calls_per_second=float(os.environ.get("MAX_CALLS_PER_SECOND", "18")),
        max_concurrency=int(os.environ.get("MAX_CONCURRENCY", "4")),
        request_interval_ms=int(os.environ.get("REQUEST_INTERVAL_MS", "200")),
        pattern_cache_ttl_hours=float(os.environ.get("PATTERN_CACHE_TTL_HOURS", "24")),
        screen_min_score=float(os.environ.get("SCREEN_MIN_SCORE", "30")),
        mining_min_return=float(os.environ.get("MINING_MIN_RETURN", "15")),
        mining_lookback_days=int(os.environ.get("MINING_LOOKBACK_DAYS", "30")),
        mining_sample_limit=int(os.environ.get("MINING_SAMPLE_LIMIT", "200")),
        mining_time_budget_seconds=float(
            os.environ.get("MINING_TIME_BUDGET_SECONDS", "0")
        ),
        smart_pullback_threshold=float(
            os.environ.get("SMART_PULLBACK_THRESHOLD", "10")
        ),
        smart_lookback_days=int(os.environ.get("SMART_LOOKBACK_DAYS", "10")),
    )
