"""surgescan — application entry point.

Boots the FastAPI server and provides the CLI for screening, mining, DNA
extraction, backtests and archive backfills.
"""

import argparse
import asyncio
import json
import logging

from fastapi import FastAPI

from app.api.routers import configure_routers, health_details, router

app = FastAPI(title="surgescan API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("surgescan")


@app.get("/health")
async def health():
    """Liveness check with pattern cache age."""
    return {"status": "ok", **health_details()}


# ── CLI ──────────────────────────────────────────────────────────────────


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _parse_exemplar(value: str):
    from app.dna.models import Exemplar

    parts = value.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(
            f"Exemplar must look like CODE:START:END, got '{value}'"
        )
    return Exemplar(symbol=parts[0], start_date=parts[1], end_date=parts[2])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="surgescan", description="Pre-surge equity screener",
    )
    parser.add_argument("--env", help="Path to a .env file")
    parser.add_argument(
        "--offline", action="store_true",
        help="Read bars from the Parquet archive instead of the API",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None)

    screen = sub.add_parser("screen", help="Screen the ranking universe")
    screen.add_argument("--market", default="ALL", choices=["ALL", "KOSPI", "KOSDAQ"])
    screen.add_argument("--limit", type=int, default=10)
    screen.add_argument("--category", default=None)

    mine = sub.add_parser("mine", help="Mine pre-surge patterns")
    mine.add_argument("--smart", action="store_true", help="Use the 3-phase miner")

    dna = sub.add_parser("dna", help="Extract a DNA profile and scan the market")
    dna.add_argument(
        "--exemplar", type=_parse_exemplar, action="append", required=True,
        metavar="CODE:START:END",
    )
    dna.add_argument("--name", default="default")
    dna.add_argument("--threshold", type=float, default=70.0)
    dna.add_argument("--limit", type=int, default=10)
    dna.add_argument("--no-scan", action="store_true")

    backtest = sub.add_parser("backtest", help="Backtest the scorer")
    backtest.add_argument("--symbols", nargs="*", default=None)
    backtest.add_argument("--holding-days", type=int, default=None)
    backtest.add_argument("--stop-loss", type=float, default=None, metavar="RATE")

    backfill = sub.add_parser("backfill", help="Backfill the bar archive")
    backfill.add_argument("--markets", nargs="+", default=["KOSPI", "KOSDAQ"])
    backfill.add_argument("--count", type=int, default=120)

    return parser


async def _run_command(args, services) -> int:
    """Dispatch one CLI command; returns the process exit code."""
    from app.models.results import Failure

    if args.command == "screen":
        result = await services.screener.screen(
            args.market, args.limit, category=args.category,
        )
    elif args.command == "mine":
        result = await services.pattern_miner(smart=args.smart).run()
        if not isinstance(result, Failure):
            services.pattern_store.save(result)
    elif args.command == "dna":
        extractor = services.dna_extractor()
        result = await extractor.extract(args.exemplar)
        if not isinstance(result, Failure):
            services.dna_store.save(result.profile, args.name)
            _print(result.to_dict())
            if args.no_scan:
                return 0
            result = await extractor.scan(
                result.profile, match_threshold=args.threshold, limit=args.limit,
            )
    elif args.command == "backtest":
        result = await services.backtest_engine().run(
            args.symbols or None,
            holding_days=args.holding_days,
            stop_loss_rate=args.stop_loss,
        )
    elif args.command == "backfill":
        from app.market.archive import BarArchive, run_backfill

        result = await run_backfill(
            services.source,
            BarArchive(services.config.archive_dir),
            markets=tuple(args.markets),
            count=args.count,
            scan_manager=services.scan_manager(),
        )
    else:
        raise ValueError(f"Unknown command '{args.command}'")

    if isinstance(result, Failure):
        logger.error("%s failed (%s): %s", args.command, result.kind, result.message)
        _print({"success": False, "error": result.to_dict()})
        return 1
    _print(result.to_dict())
    return 0


async def _serve(host: str, port: int) -> None:
    import uvicorn

    uvi_config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(uvi_config)
    logger.info("API available at http://localhost:%d", port)
    await server.serve()


def _run_cli(argv=None) -> int:
    """Parse CLI arguments and dispatch to the appropriate command."""
    from app.config import load_config
    from app.services import ServiceManager

    args = build_parser().parse_args(argv)
    config = load_config(args.env)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    services = ServiceManager(
        config, offline=args.offline and args.command != "backfill",
    )

    if args.command == "serve":
        configure_routers(services)
        asyncio.run(_serve(args.host, args.port or config.health_port))
        return 0
    return asyncio.run(_run_command(args, services))


if __name__ == "__main__":
    raise SystemExit(_run_cli())
