"""Tests for single-symbol analysis and universe screening."""

from unittest.mock import MagicMock

import pytest

from app.dna.models import DNAProfile
from app.market.models import Bar, InvestorFlow, RankedSymbol
from app.models.results import ExternalFetchError, Failure
from app.repos.ttl_cache import DnaStore
from app.screener import CATEGORY_FILTERS, ScreenReport, ScreenResult, Screener


# ── Fixtures ─────────────────────────────────────────────────────────────


def _make_bar(i: int, c: float, vol: int = 1000) -> Bar:
    return Bar(
        date=f"2024{1 + i // 28:02d}{1 + i % 28:02d}",
        open=c - 0.5, high=c + 1, low=c - 1, close=c, volume=vol,
    )


def _flat(n: int = 30) -> list[Bar]:
    return [_make_bar(i, 100.0) for i in range(n)]


def _volume_surge(n: int = 30) -> list[Bar]:
    return _flat(n - 1) + [_make_bar(n - 1, 101.0, vol=10000)]


class FakeSource:
    def __init__(self, bars: dict, names: dict = None, flows: dict = None):
        self._bars = bars
        self._names = names or {}
        self._flows = flows or {}
        self.universe_calls = 0

    async def get_daily_bars(self, symbol, count=30):
        return self._bars.get(symbol, [])[-count:]

    async def get_investor_flows(self, symbol, count=30):
        if symbol not in self._flows:
            raise ExternalFetchError("no flows")
        return self._flows[symbol][-count:]

    async def get_universe(self, markets=("KOSPI", "KOSDAQ"), per_ranking=30):
        self.universe_calls += 1
        return [RankedSymbol(code=c, name=self._names.get(c, c)) for c in self._bars]

    def cached_name(self, symbol):
        return self._names.get(symbol)


def _profile() -> DNAProfile:
    return DNAProfile(
        averages={"ema_avg": 5.0},
        thresholds={"ema_avg": 3.5},
        common_trend="accelerating",
        strength_score=70.0,
        based_on=3,
    )


# ── analyze ──────────────────────────────────────────────────────────────


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_returns_scored_result(self):
        source = FakeSource({"005930": _flat()}, names={"005930": "Samsung"})
        result = await Screener(source).analyze("005930")
        assert isinstance(result, ScreenResult)
        assert result.name == "Samsung"
        assert 0.0 <= result.score <= 100.0
        assert result.grade == result.breakdown.grade
        assert result.dna is None
        assert result.snapshot.institutional_flow is None

    @pytest.mark.asyncio
    async def test_short_history_is_failure(self):
        result = await Screener(FakeSource({"A": _flat(12)})).analyze("A")
        assert isinstance(result, Failure)
        assert result.kind == "insufficient_data"
        assert result.symbol == "A"

    @pytest.mark.asyncio
    async def test_name_falls_back_to_symbol(self):
        result = await Screener(FakeSource({"A": _flat()})).analyze("A")
        assert result.name == "A"

    @pytest.mark.asyncio
    async def test_flows_used_when_available(self):
        flows = [
            InvestorFlow(date=b.date, institution_net_buy=100, foreign_net_buy=50)
            for b in _flat()
        ]
        source = FakeSource({"A": _flat()}, flows={"A": flows})
        result = await Screener(source).analyze("A")
        assert result.snapshot.institutional_flow is not None
        assert result.snapshot.institutional_flow.detected

    @pytest.mark.asyncio
    async def test_dna_match_when_profile_active(self):
        store = DnaStore(3600)
        store.save(_profile())
        result = await Screener(FakeSource({"A": _flat()}), dna_store=store).analyze("A")
        assert result.dna is not None
        assert result.to_dict()["dna"]["symbol"] == "A"

    @pytest.mark.asyncio
    async def test_to_dict(self):
        result = await Screener(FakeSource({"A": _volume_surge()})).analyze("A")
        out = result.to_dict()
        assert out["symbol"] == "A"
        assert out["indicators"]["volume_ratio"] > 2.5
        assert out["patterns"]["matched"] is False
        assert out["dna"] is None


# ── screen ───────────────────────────────────────────────────────────────


class TestScreen:
    def _source(self):
        return FakeSource({
            "FLAT": _flat(),
            "SURGE": _volume_surge(),
            "SHORT": _flat(10),
        })

    @pytest.mark.asyncio
    async def test_sorted_and_counted(self):
        report = await Screener(self._source(), min_score=0).screen()
        assert isinstance(report, ScreenReport)
        assert {r.symbol for r in report.results} == {"FLAT", "SURGE"}
        scores = [r.score for r in report.results]
        assert scores == sorted(scores, reverse=True)
        assert report.report.analyzed == 3
        assert report.report.skipped == 1
        assert report.cached is False

    @pytest.mark.asyncio
    async def test_min_score_filters(self):
        report = await Screener(self._source(), min_score=101).screen()
        assert report.results == ()

    @pytest.mark.asyncio
    async def test_limit(self):
        report = await Screener(self._source(), min_score=0).screen(limit=1)
        assert len(report.results) == 1

    @pytest.mark.asyncio
    async def test_cached_per_market(self):
        source = self._source()
        screener = Screener(source, min_score=0)
        await screener.screen("KOSPI")
        again = await screener.screen("kospi")
        assert again.cached is True
        assert source.universe_calls == 1
        await screener.screen("KOSDAQ")
        assert source.universe_calls == 2
        await screener.screen("KOSPI", refresh=True)
        assert source.universe_calls == 3

    @pytest.mark.asyncio
    async def test_category_reuses_cached_screen(self):
        source = self._source()
        screener = Screener(source, min_score=0)
        await screener.screen()
        report = await screener.screen(category="volume-surge", limit=50)
        assert [r.symbol for r in report.results] == ["SURGE"]
        assert report.category == "volume-surge"
        assert source.universe_calls == 1

    @pytest.mark.parametrize(
        "kwargs",
        [{"market": "NYSE"}, {"category": "rocket"}, {"limit": 0}],
    )
    @pytest.mark.asyncio
    async def test_invalid_arguments(self, kwargs):
        result = await Screener(self._source()).screen(**kwargs)
        assert isinstance(result, Failure)
        assert result.kind == "input_validation"

    @pytest.mark.asyncio
    async def test_persisted(self):
        repo = MagicMock()
        await Screener(self._source(), min_score=0, repo=repo).screen()
        repo.insert_results.assert_called_once()
        rows = repo.insert_results.call_args.args[1]
        assert {r["symbol"] for r in rows} == {"FLAT", "SURGE"}

    @pytest.mark.asyncio
    async def test_universe_failure(self):
        source = self._source()

        async def broken(markets=("KOSPI", "KOSDAQ"), per_ranking=30):
            raise ExternalFetchError("ranking down")

        source.get_universe = broken
        result = await Screener(source).screen()
        assert isinstance(result, Failure)
        assert result.kind == "external_fetch"


def test_category_names():
    assert set(CATEGORY_FILTERS) == {
        "whale", "accumulation", "escape", "drain", "volume-surge",
    }
