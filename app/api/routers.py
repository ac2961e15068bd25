"""API routers — /screen, /stocks, /patterns, /dna and /backtest endpoints.

No business logic, no DB access. Delegates to the ``ServiceManager``
collaborators injected through ``configure_routers``.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from app.dna.models import Exemplar
from app.models.results import (
    CONFIGURATION,
    EXTERNAL_FETCH,
    INPUT_VALIDATION,
    INSUFFICIENT_DATA,
    Failure,
)

logger = logging.getLogger("surgescan")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_services = None  # Set via configure_routers()

_STATUS_BY_KIND = {
    INPUT_VALIDATION: 400,
    INSUFFICIENT_DATA: 422,
    EXTERNAL_FETCH: 502,
    CONFIGURATION: 503,
}


def configure_routers(services) -> None:
    """Inject dependencies from the application startup.

    Args:
        services: A ``ServiceManager`` (or duck-type for tests).
    """
    global _services  # noqa: PLW0603
    _services = services


def _failure_response(failure: Failure, status_code: Optional[int] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code or _STATUS_BY_KIND.get(failure.kind, 500),
        content={"success": False, "error": failure.to_dict()},
    )


def _not_configured() -> JSONResponse:
    return _failure_response(
        Failure(kind=CONFIGURATION, message="Services not configured"),
    )


def _bad_request(message: str) -> JSONResponse:
    return _failure_response(Failure(kind=INPUT_VALIDATION, message=message))


def _symbols_param(symbols: Optional[str]) -> Optional[list[str]]:
    if not symbols:
        return None
    return [s.strip() for s in symbols.split(",") if s.strip()]


# ── Screening ────────────────────────────────────────────────────────────


@router.get("/screen")
async def screen(
    market: str = Query(default="ALL"),
    limit: int = Query(default=10, ge=1, le=100),
    refresh: bool = Query(default=False),
):
    """Return the top-scoring symbols of the ranking universe."""
    if _services is None:
        return _not_configured()
    result = await _services.screener.screen(market, limit, refresh=refresh)
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, **result.to_dict()}


@router.get("/screen/{category}")
async def screen_category(
    category: str,
    market: str = Query(default="ALL"),
    limit: int = Query(default=10, ge=1, le=100),
):
    """Return screened symbols whose detector for *category* fired."""
    if _services is None:
        return _not_configured()
    result = await _services.screener.screen(market, limit, category=category)
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, **result.to_dict()}


@router.get("/stocks/{symbol}/analysis")
async def stock_analysis(symbol: str):
    """Return the full indicator snapshot and score of one symbol."""
    if _services is None:
        return _not_configured()
    if not (symbol.isalnum() and len(symbol) == 6):
        return _bad_request(f"Invalid symbol '{symbol}'")
    result = await _services.screener.analyze(symbol)
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, "analysis": result.to_dict()}


# ── Patterns ─────────────────────────────────────────────────────────────


@router.get("/patterns")
async def get_patterns():
    """Return the published pattern set, if any."""
    if _services is None:
        return _not_configured()
    result = _services.pattern_store.load()
    if result is None:
        return {"success": True, "patterns": [], "generated_at": None}
    return {"success": True, **result.to_dict()}


@router.post("/patterns/mine")
async def mine_patterns(body: Optional[dict] = None):
    """Run the basic or smart miner and publish its patterns.

    An undersized corpus answers 422 with the failure kind and corpus size.
    """
    if _services is None:
        return _not_configured()
    body = body or {}
    smart = bool(body.get("smart", False))
    miner = _services.pattern_miner(smart=smart)
    result = await miner.run()
    if isinstance(result, Failure):
        status = 422 if "corpus_size" in result.details else None
        return _failure_response(result, status_code=status)
    _services.pattern_store.save(result)
    return {"success": True, **result.to_dict()}


# ── DNA ──────────────────────────────────────────────────────────────────


def _parse_exemplars(raw) -> list[Exemplar]:
    if not isinstance(raw, list):
        raise ValueError("exemplars must be a list")
    exemplars = []
    for item in raw:
        try:
            exemplars.append(Exemplar(
                symbol=str(item["symbol"]),
                start_date=str(item["start_date"]),
                end_date=str(item["end_date"]),
            ))
        except (KeyError, TypeError) as exc:
            raise ValueError(
                "each exemplar needs symbol, start_date and end_date"
            ) from exc
    return exemplars


@router.post("/dna/extract")
async def dna_extract(body: dict):
    """Extract a DNA profile from exemplar surges and store it by name."""
    if _services is None:
        return _not_configured()
    try:
        exemplars = _parse_exemplars(body.get("exemplars"))
    except ValueError as exc:
        return _bad_request(str(exc))
    name = str(body.get("name", "default"))

    result = await _services.dna_extractor().extract(exemplars)
    if isinstance(result, Failure):
        return _failure_response(result)
    _services.dna_store.save(result.profile, name)
    return {"success": True, "name": name, **result.to_dict()}


@router.post("/dna/scan")
async def dna_scan(body: Optional[dict] = None):
    """Score the current market against a stored DNA profile."""
    if _services is None:
        return _not_configured()
    body = body or {}
    name = str(body.get("name", "default"))
    profile = _services.dna_store.load(name)
    if profile is None:
        return _failure_response(
            Failure(kind=INPUT_VALIDATION, message=f"No DNA profile named '{name}'"),
            status_code=404,
        )
    try:
        threshold = float(body.get("match_threshold", 70.0))
        limit = int(body.get("limit", 10))
        days = int(body.get("days", 25))
    except (TypeError, ValueError):
        return _bad_request("match_threshold, limit and days must be numbers")
    symbols = body.get("symbols")
    if symbols is not None and (
        not isinstance(symbols, list)
        or not all(isinstance(s, str) for s in symbols)
    ):
        return _bad_request("symbols must be a list of stock codes")

    result = await _services.dna_extractor().scan(
        profile,
        symbols=symbols,
        match_threshold=threshold,
        limit=limit,
        days=days,
    )
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, "name": name, **result.to_dict()}


# ── Backtest ─────────────────────────────────────────────────────────────


@router.get("/backtest")
async def backtest(
    symbols: Optional[str] = Query(default=None),
    holding_days: Optional[int] = Query(default=None),
):
    """Hold-N backtest at the default test points."""
    if _services is None:
        return _not_configured()
    result = await _services.backtest_engine().run(
        _symbols_param(symbols), holding_days=holding_days,
    )
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, **result.to_dict()}


@router.get("/backtest/stoploss")
async def backtest_stop_loss(
    stop_loss_rate: float = Query(default=-7.0),
    holding_days: Optional[int] = Query(default=5),
    symbols: Optional[str] = Query(default=None),
):
    """Stop-loss backtest with the no-stop comparison."""
    if _services is None:
        return _not_configured()
    result = await _services.backtest_engine().run(
        _symbols_param(symbols),
        holding_days=holding_days,
        stop_loss_rate=stop_loss_rate,
    )
    if isinstance(result, Failure):
        return _failure_response(result)
    return {"success": True, **result.to_dict()}


@router.get("/backtest/runs")
async def backtest_runs(limit: int = Query(default=10, ge=1, le=100)):
    """Return recent persisted backtest runs."""
    if _services is None or _services.backtest_repo is None:
        return {"success": True, "runs": []}
    return {"success": True, "runs": _services.backtest_repo.get_runs(limit)}


# ── Health ───────────────────────────────────────────────────────────────


def health_details() -> dict:
    """Pattern cache age for ``/health``."""
    if _services is None:
        return {"configured": False}
    return {
        "configured": True,
        "pattern_cache_age_seconds": _services.pattern_store.age(),
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
