"""KIS Open API async client.

Handles all communication with the market-data provider: OAuth token,
daily bars, current quotes, ranking queries and investor flows.  Every
request passes through the shared token-bucket rate limiter.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.config import Config
from app.market.models import Bar, InvestorFlow, Quote, RankedSymbol, normalize_bars
from app.market.rate_limiter import RateLimiter
from app.models.results import ExternalFetchError

logger = logging.getLogger("surgescan.market")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

_TOKEN_LIFETIME = 60 * 60  # seconds; provider tokens live longer, refresh early
_DAILY_PAGE_SIZE = 100
_KST = timezone(timedelta(hours=9))

_QUOTATIONS = "/uapi/domestic-stock/v1/quotations"

MARKET_CODES = {"KOSPI": "0", "KOSDAQ": "1"}

# Ranking kind → FID_BLNG_CLS_CODE of the volume-rank screen
RANKING_KINDS = {
    "volume": "0",
    "volume_surge": "1",
    "trading_value": "3",
}

# ETF/ETN issuer brands appear as the leading token of the product name
_FUND_BRANDS = (
    "KODEX", "TIGER", "KBSTAR", "KB STAR", "ARIRANG", "KOSEF", "HANARO",
    "TREX", "KINDEX", "TIMEFOLIO", "SOL ", "ACE ", "KIWOOM", "RISE",
    "PLUS ", "WON ", "BNK ", "1Q ",
)
_NON_EQUITY_KEYWORDS = (
    "ETF", "ETN", "국채", "선물", "통안증권", "미국채", "하이일드", "인컴",
    "액티브", "Active", "ACTIVE", "커버드콜", "리츠", "REIT", "스팩", "SPAC",
    "인버스", "Inverse", "레버리지", "Leverage", "WTI", "S&P", "MSCI",
    "Nasdaq", "NASDAQ", "전환사채",
)


def is_non_equity(name: str) -> bool:
    """Return ``True`` for funds, notes, SPACs and other non-equity products."""
    if not name:
        return True
    upper = name.upper()
    if any(upper.startswith(brand) for brand in _FUND_BRANDS):
        return True
    if any(keyword in name for keyword in _NON_EQUITY_KEYWORDS):
        return True
    # SPAC series, e.g. "하나15호스팩" or "NH 9호"
    return any(f"{n}호" in name for n in range(1, 100))


def _to_int(value) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


def _to_float(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class KisClient:
    """Async client wrapping the KIS domestic-stock quotation API.

    Args:
        config: Application configuration (credentials, environment).
        rate_limiter: Shared limiter; one is created from
            ``config.max_calls_per_second`` when omitted.
    """

    def __init__(
        self,
        config: Config,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._config = config
        self._base_url = config.kis_base_url
        self._rate_limiter = rate_limiter or RateLimiter(config.max_calls_per_second)
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()
        self._names: dict[str, str] = {}

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def cached_name(self, symbol: str) -> Optional[str]:
        """Name seen for *symbol* in an earlier ranking or quote response."""
        return self._names.get(symbol)

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        headers: dict,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately as
        ``ExternalFetchError``.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            await self._rate_limiter.acquire()
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "KIS %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as exc:
                raise ExternalFetchError(
                    f"KIS {method.upper()} {url} failed: {exc}"
                ) from exc
            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "KIS %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise ExternalFetchError(
            f"KIS {method.upper()} {url} failed after {_MAX_RETRIES} attempts: {last_exc}"
        ) from last_exc

    @staticmethod
    def _json_body(resp: httpx.Response) -> dict:
        """Decode a JSON object body; anything else is an ``ExternalFetchError``."""
        try:
            data = resp.json()
        except ValueError as exc:
            raise ExternalFetchError(
                f"KIS returned a non-JSON body from {resp.request.url}"
            ) from exc
        if not isinstance(data, dict):
            raise ExternalFetchError(
                f"KIS returned an unexpected body from {resp.request.url}"
            )
        return data

    # ── Auth ─────────────────────────────────────────────────────────────

    async def _get_access_token(self) -> str:
        """Return a cached OAuth token, requesting a new one when expired."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token

            url = f"{self._base_url}/oauth2/tokenP"
            body = {
                "grant_type": "client_credentials",
                "appkey": self._config.kis_app_key,
                "appsecret": self._config.kis_app_secret,
            }
            resp = await self._request_with_retry(
                "post", url, {"Content-Type": "application/json"}, json=body,
            )
            token = self._json_body(resp).get("access_token")
            if not token:
                raise ExternalFetchError("KIS token response has no access_token")

            self._access_token = token
            self._token_expiry = time.monotonic() + _TOKEN_LIFETIME
            logger.info("KIS access token issued")
            return token

    async def _get_quotation(self, path: str, tr_id: str, params: dict) -> dict:
        """GET a quotation endpoint and return the JSON body.

        Raises ``ExternalFetchError`` when ``rt_cd`` signals failure.
        """
        token = await self._get_access_token()
        headers = {
            "Content-Type": "application/json",
            "authorization": f"Bearer {token}",
            "appkey": self._config.kis_app_key,
            "appsecret": self._config.kis_app_secret,
            "tr_id": tr_id,
            "custtype": "P",
        }
        url = f"{self._base_url}{_QUOTATIONS}/{path}"
        resp = await self._request_with_retry("get", url, headers, params=params)
        data = self._json_body(resp)
        if data.get("rt_cd") != "0":
            raise ExternalFetchError(
                f"KIS {path} error {data.get('msg_cd', '')}: {data.get('msg1', '')}"
            )
        return data

    # ── Daily bars ───────────────────────────────────────────────────────

    async def get_daily_bars(
        self,
        symbol: str,
        count: int = 30,
        end_date: Optional[str] = None,
    ) -> list[Bar]:
        """Fetch daily bars, paging backwards until *count* bars are collected.

        Args:
            symbol: 6-digit stock code, e.g. ``"005930"``.
            count: Number of most recent bars wanted.
            end_date: Last date to include (``YYYYMMDD``); today (KST) if omitted.

        Returns:
            Up to *count* bars ordered oldest-first.
        """
        end = end_date or datetime.now(_KST).strftime("%Y%m%d")
        collected: list[Bar] = []

        while len(collected) < count:
            start = (
                datetime.strptime(end, "%Y%m%d") - timedelta(days=150)
            ).strftime("%Y%m%d")
            data = await self._get_quotation(
                "inquire-daily-itemchartprice",
                "FHKST03010100",
                {
                    "FID_COND_MRKT_DIV_CODE": "J",
                    "FID_INPUT_ISCD": symbol,
                    "FID_INPUT_DATE_1": start,
                    "FID_INPUT_DATE_2": end,
                    "FID_PERIOD_DIV_CODE": "D",
                    "FID_ORG_ADJ_PRC": "0",
                },
            )
            page = [
                Bar(
                    date=row["stck_bsop_date"],
                    open=_to_float(row.get("stck_oprc")),
                    high=_to_float(row.get("stck_hgpr")),
                    low=_to_float(row.get("stck_lwpr")),
                    close=_to_float(row.get("stck_clpr")),
                    volume=_to_int(row.get("acml_vol")),
                )
                for row in data.get("output2", [])
                if row and row.get("stck_bsop_date")
            ]
            page = [b for b in page if b.close > 0]
            if not page:
                break
            collected.extend(page)
            if len(page) < _DAILY_PAGE_SIZE:
                break
            oldest = min(b.date for b in page)
            end = (
                datetime.strptime(oldest, "%Y%m%d") - timedelta(days=1)
            ).strftime("%Y%m%d")

        return normalize_bars(collected)[-count:]

    # ── Quotes ───────────────────────────────────────────────────────────

    async def get_current_quote(self, symbol: str) -> Quote:
        """Query the current price, volume and change for *symbol*."""
        data = await self._get_quotation(
            "inquire-price",
            "FHKST01010100",
            {"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol},
        )
        out = data.get("output") or {}
        if not out.get("stck_prpr"):
            raise ExternalFetchError(f"KIS quote for {symbol} has no price")

        name = out.get("hts_kor_isnm") or self._names.get(symbol) or symbol
        self._names.setdefault(symbol, name)
        return Quote(
            symbol=symbol,
            name=name,
            price=_to_float(out["stck_prpr"]),
            volume=_to_int(out.get("acml_vol")),
            change_pct=_to_float(out.get("prdy_ctrt")),
            open=_to_float(out.get("stck_oprc")),
            high=_to_float(out.get("stck_hgpr")),
            low=_to_float(out.get("stck_lwpr")),
            prev_close=_to_float(out.get("stck_sdpr")),
            trading_value=_to_int(out.get("acml_tr_pbmn")),
            market_cap=_to_int(out.get("hts_avls")) * 100_000_000,
        )

    # ── Rankings ─────────────────────────────────────────────────────────

    async def get_ranked_symbols(
        self,
        market: str = "KOSPI",
        ranking_kind: str = "volume_surge",
        limit: int = 30,
    ) -> list[RankedSymbol]:
        """Return the top *limit* equities of a volume-rank screen.

        Non-equity products (ETF/ETN, funds, notes, SPACs) are excluded
        before the limit is applied.

        Raises ``ValueError`` for an unknown market or ranking kind.
        """
        if market not in MARKET_CODES:
            raise ValueError(
                f"Unknown market '{market}'. Available: {', '.join(MARKET_CODES)}"
            )
        if ranking_kind not in RANKING_KINDS:
            raise ValueError(
                f"Unknown ranking kind '{ranking_kind}'. "
                f"Available: {', '.join(RANKING_KINDS)}"
            )

        data = await self._get_quotation(
            "volume-rank",
            "FHPST01710000",
            {
                "FID_COND_MRKT_DIV_CODE": "J",
                "FID_COND_SCR_DIV_CODE": "20171",
                "FID_INPUT_ISCD": "0000",
                "FID_DIV_CLS_CODE": MARKET_CODES[market],
                "FID_BLNG_CLS_CODE": RANKING_KINDS[ranking_kind],
                "FID_TRGT_CLS_CODE": "111111111",
                "FID_TRGT_EXLS_CLS_CODE": "0000000000",
                "FID_INPUT_PRICE_1": "",
                "FID_INPUT_PRICE_2": "",
                "FID_VOL_CNT": "",
                "FID_INPUT_DATE_1": "",
            },
        )

        ranked: list[RankedSymbol] = []
        for item in data.get("output", []):
            name = item.get("hts_kor_isnm", "")
            if is_non_equity(name):
                continue
            code = item.get("mksc_shrn_iscd", "")
            if not code:
                continue
            self._names[code] = name
            rate = item.get("prdy_vrss_vol_rate")
            ranked.append(
                RankedSymbol(
                    code=code,
                    name=name,
                    price=_to_float(item.get("stck_prpr")),
                    volume=_to_int(item.get("acml_vol")),
                    volume_rate=_to_float(rate) if rate not in (None, "") else None,
                )
            )
            if len(ranked) >= limit:
                break
        return ranked

    async def get_universe(
        self,
        markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_ranking: int = 30,
    ) -> list[RankedSymbol]:
        """Union of the volume-surge, volume and trading-value rankings.

        A failing ranking query is logged and skipped; symbols keep their
        first-seen order.
        """
        seen: dict[str, RankedSymbol] = {}
        for market in markets:
            for kind in ("volume_surge", "volume", "trading_value"):
                try:
                    ranked = await self.get_ranked_symbols(market, kind, per_ranking)
                except ExternalFetchError as exc:
                    logger.warning("Ranking %s/%s failed: %s", market, kind, exc)
                    continue
                for item in ranked:
                    seen.setdefault(item.code, item)
        return list(seen.values())

    # ── Investor flows ───────────────────────────────────────────────────

    async def get_investor_flows(
        self,
        symbol: str,
        count: int = 30,
    ) -> list[InvestorFlow]:
        """Return institution/foreign/individual net-buy rows, oldest-first."""
        data = await self._get_quotation(
            "inquire-investor",
            "FHKST01010900",
            {"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol},
        )
        rows = [r for r in data.get("output", []) if r and r.get("stck_bsop_date")]
        flows = [
            InvestorFlow(
                date=r["stck_bsop_date"],
                institution_net_buy=_to_int(r.get("orgn_ntby_qty")),
                foreign_net_buy=_to_int(r.get("frgn_ntby_qty")),
                individual_net_buy=_to_int(r.get("prsn_ntby_qty")),
            )
            for r in rows[:count]
        ]
        return sorted(flows, key=lambda f: f.date)
