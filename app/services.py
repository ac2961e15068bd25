"""ServiceManager — builds and owns the screener's collaborators.

One instance wires the bar source, the pattern/DNA stores, the repositories
and the per-operation worker pools from a ``Config``.  The API routers and
the CLI both go through it.
"""

import logging
from typing import Optional

from app.backtest.engine import BacktestEngine
from app.config import Config
from app.dna.extractor import DnaExtractor
from app.market.archive import ArchiveBarSource, BarArchive
from app.market.kis_client import KisClient
from app.market.rate_limiter import RateLimiter
from app.patterns.miner import PatternMiner, SmartPatternMiner
from app.repos.backtest_repo import BacktestRepo
from app.repos.db import init_db
from app.repos.dna_repo import DnaRepo
from app.repos.pattern_repo import PatternRepo
from app.repos.screen_repo import ScreenRepo
from app.repos.ttl_cache import DnaStore, PatternStore
from app.scan_manager import ScanManager
from app.screener import Screener

logger = logging.getLogger("surgescan")


class ServiceManager:
    """Lifecycle owner for sources, stores and workers.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        source: Bar source; a ``KisClient`` sharing one rate limiter is
            built when omitted.
        offline: Serve bars from the Parquet archive instead of the API.
        persist: Build SQLite repositories under ``config.db_path``.
            Without them the stores run cache-only.
    """

    def __init__(
        self,
        config: Config,
        source=None,
        offline: bool = False,
        persist: bool = True,
    ) -> None:
        self._config = config
        self._rate_limiter = RateLimiter(config.max_calls_per_second)
        if source is None:
            source = (
                ArchiveBarSource(BarArchive(config.archive_dir))
                if offline
                else KisClient(config, self._rate_limiter)
            )
        self._source = source

        self.pattern_repo: Optional[PatternRepo] = None
        self.dna_repo: Optional[DnaRepo] = None
        self.backtest_repo: Optional[BacktestRepo] = None
        self.screen_repo: Optional[ScreenRepo] = None
        if persist and config.db_path:
            init_db(config.db_path)
            self.pattern_repo = PatternRepo(config.db_path)
            self.dna_repo = DnaRepo(config.db_path)
            self.backtest_repo = BacktestRepo(config.db_path)
            self.screen_repo = ScreenRepo(config.db_path)
        else:
            logger.info("No database configured; pattern and DNA stores are cache-only")

        ttl = config.pattern_cache_ttl_seconds
        self.pattern_store = PatternStore(ttl, self.pattern_repo)
        self.dna_store = DnaStore(ttl, self.dna_repo)
        self.screener = Screener(
            source,
            pattern_store=self.pattern_store,
            dna_store=self.dna_store,
            scan_manager=self.scan_manager(),
            min_score=config.screen_min_score,
            repo=self.screen_repo,
        )

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def config(self) -> Config:
        return self._config

    @property
    def source(self):
        return self._source

    def scan_manager(self, **overrides) -> ScanManager:
        """Fresh worker pool; *overrides* replace the configured options."""
        options = {
            "max_concurrency": self._config.max_concurrency,
            "interval_seconds": self._config.request_interval_ms / 1000.0,
        }
        options.update(overrides)
        return ScanManager(**options)

    def pattern_miner(self, smart: bool = False):
        config = self._config
        budget = config.mining_time_budget_seconds or None
        if smart:
            return SmartPatternMiner(
                self._source,
                min_return=config.mining_min_return,
                pullback_threshold=config.smart_pullback_threshold,
                lookback_days=config.smart_lookback_days,
                scan_manager=self.scan_manager(time_budget_seconds=budget),
            )
        return PatternMiner(
            self._source,
            lookback_days=config.mining_lookback_days,
            min_return=config.mining_min_return,
            sample_limit=config.mining_sample_limit,
            scan_manager=self.scan_manager(time_budget_seconds=budget),
        )

    def dna_extractor(self) -> DnaExtractor:
        return DnaExtractor(self._source, scan_manager=self.scan_manager())

    def backtest_engine(self) -> BacktestEngine:
        """Engine scoring entries with the currently published patterns."""
        return BacktestEngine(
            self._source,
            scan_manager=self.scan_manager(),
            patterns=self.pattern_store.patterns(),
            repo=self.backtest_repo,
        )
