from __future__ import annotations

import argparse
import signal
import sqlite3
import sys
import time
from datetime import datetime, timezone
from dataclasses import replace
from typing import Any, Callable

from . import db
from .blocks import BlockBook
from .chainlink import ChainlinkFeed
from .config import ConfigError, Settings, ensure_runtime_paths, load_settings, require_trading_credentials
from .idempotency import EntryLedger
from .kalshi import KalshiClient
from .mirror import OrderMirror
from .paper import PaperPolymarketClient
from .poly_threshold import PAUSE_GROUP, PolyThresholdAgent
from .polymarket import PolymarketClient
from .resolver import Resolver
from .spot import PriceTape, SpotPriceClient
from .threshold_engine import ThresholdAgent
from .thresholds import DEFAULT_TIER_AGENTS, load_tier_config
from .tiered_engine import TieredAgent

SPREAD_AGENTS = tuple(bot for bot, spec in DEFAULT_TIER_AGENTS.items() if spec["signal"] == "spread")


class StopFlag:
    """Set by SIGINT/SIGTERM; the loop finishes its tick and then stops."""

    def __init__(self) -> None:
        self.requested = False

    def request(self, signum: int, _frame: Any = None) -> None:
        if not self.requested:
            print(f"stop requested signal={signum}")
        self.requested = True

    def install(self) -> None:
        signal.signal(signal.SIGINT, self.request)
        signal.signal(signal.SIGTERM, self.request)


def run_forever(
    tick: Callable[[datetime], Any],
    interval_seconds: float,
    stop: StopFlag,
    once: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    ticks = 0
    while not stop.requested:
        loop_started = datetime.now(timezone.utc)
        try:
            tick(loop_started)
        except Exception as exc:
            print(f"runner error: {exc}", file=sys.stderr)
        ticks += 1
        if once:
            break

        elapsed = (datetime.now(timezone.utc) - loop_started).total_seconds()
        remaining = max(0.0, interval_seconds - elapsed)
        # Sleep in short slices so a stop signal is honoured promptly.
        while remaining > 0 and not stop.requested:
            step = min(1.0, remaining)
            sleep(step)
            remaining -= step
    return ticks


def _open_store(settings: Settings) -> sqlite3.Connection:
    ensure_runtime_paths(settings)
    conn = db.connect_db(settings.db_path)
    db.init_db(conn)
    return conn


def _poly_client(settings: Settings) -> PolymarketClient:
    return PaperPolymarketClient(settings) if settings.paper_mode else PolymarketClient(settings)


def _reference_feed(settings: Settings, source: str) -> SpotPriceClient | ChainlinkFeed:
    if source == "spot":
        return SpotPriceClient(settings, timeout=3)
    if source == "chainlink":
        feed = ChainlinkFeed(settings)
        feed.start()
        return feed
    raise ConfigError(f"unknown reference price source {source!r}; expected spot or chainlink")


def _stop_feed(feed: SpotPriceClient | ChainlinkFeed) -> None:
    if isinstance(feed, ChainlinkFeed):
        feed.stop()


def run_threshold(settings: Settings, stop: StopFlag, once: bool = False) -> int:
    if not settings.paper_mode:
        venues: tuple[str, ...] = ("kalshi", "polymarket") if settings.enable_polymarket else ("kalshi",)
        require_trading_credentials(settings, venues)
    stop.install()
    conn = _open_store(settings)
    kalshi = KalshiClient(settings)
    poly = _poly_client(settings) if settings.enable_polymarket else None
    mirror = OrderMirror(conn, settings, kalshi, poly, settings.enable_polymarket)
    agent = ThresholdAgent(conn, settings, kalshi, SpotPriceClient(settings, timeout=3), mirror)
    print(
        f"threshold start assets={','.join(settings.threshold_assets)} "
        f"polymarket={settings.enable_polymarket} paper={settings.paper_mode} poll={settings.threshold_poll_seconds}s"
    )
    run_forever(agent.tick, settings.threshold_poll_seconds, stop, once=once)
    print("threshold stopped")
    return 0


def run_tiered(settings: Settings, bot: str, stop: StopFlag, once: bool = False) -> int:
    if not settings.paper_mode:
        require_trading_credentials(settings, ("polymarket",))
    feed = _reference_feed(settings, settings.reference_price_source)
    stop.install()
    conn = _open_store(settings)
    cfg = load_tier_config(conn, settings, bot)
    agent = TieredAgent(
        conn,
        settings,
        bot,
        _poly_client(settings),
        feed,
        tape=PriceTape(settings.price_history_seconds),
        blocks=BlockBook(conn),
        ledger=EntryLedger(conn),
    )
    agent.start()
    interval = settings.momentum_poll_seconds if cfg.signal == "momentum" else settings.spread_poll_seconds
    try:
        run_forever(agent.tick, interval, stop, once=once)
    finally:
        agent.shutdown()
        _stop_feed(feed)
    print(f"{bot} stopped")
    return 0


def run_poly_threshold(settings: Settings, stop: StopFlag, once: bool = False) -> int:
    if not settings.paper_mode:
        require_trading_credentials(settings, ("polymarket",))
    feed = _reference_feed(settings, settings.poly_threshold_price_source)
    stop.install()
    conn = _open_store(settings)
    mirror = OrderMirror(conn, settings, None, _poly_client(settings), True)
    agent = PolyThresholdAgent(conn, settings, feed, mirror, price_source=settings.poly_threshold_price_source)
    print(
        f"{PAUSE_GROUP} start assets={','.join(settings.poly_threshold_assets)} "
        f"source={settings.poly_threshold_price_source} paper={settings.paper_mode} "
        f"size={settings.poly_threshold_position_usd:g}"
    )
    try:
        run_forever(agent.tick, settings.poly_threshold_poll_seconds, stop, once=once)
    finally:
        _stop_feed(feed)
    print(f"{PAUSE_GROUP} stopped")
    return 0


def run_resolve(settings: Settings, stop: StopFlag, loop: bool = False) -> int:
    conn = _open_store(settings)
    kalshi = KalshiClient(settings) if settings.kalshi_key_id else None
    # Paper positions resolve from public market data, which needs no key.
    poly = PolymarketClient(settings) if settings.poly_private_key or settings.paper_mode else None
    if kalshi is None and poly is None:
        raise ConfigError("resolver needs Kalshi or Polymarket credentials")
    stop.install()
    resolver = Resolver(conn, settings, kalshi, poly)
    run_forever(lambda now: resolver.run_once(now), settings.resolve_poll_seconds, stop, once=not loop)
    return 0


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Up/down window trading agents")
    p.add_argument("--paper", action="store_true", help="simulate Polymarket orders and skip Kalshi orders")
    sub = p.add_subparsers(dest="command", required=True)

    t = sub.add_parser("threshold", help="B1/B2/B3 spread agents on Kalshi with the Polymarket mirror")
    t.add_argument("--once", action="store_true", help="run a single tick")

    m = sub.add_parser("momentum", help="B4 momentum scalper on Polymarket 5m markets")
    m.add_argument("--once", action="store_true")

    s = sub.add_parser("spread", help="spread-tier agent held to resolution")
    s.add_argument("--agent", choices=SPREAD_AGENTS, required=True)
    s.add_argument("--once", action="store_true")

    c = sub.add_parser("poly-threshold", help="B1c/B2c/B3c spread agents on Polymarket only")
    c.add_argument("--once", action="store_true")

    r = sub.add_parser("resolve", help="resolve unresolved positions")
    r.add_argument("--loop", action="store_true", help="keep resolving every RESOLVE_POLL_SECONDS")

    e = sub.add_parser("emergency", help="pause or resume new entries for a group")
    e.add_argument("state", choices=("on", "off"), help="'on' pauses entries")
    e.add_argument("--group", default="default", help="default, B4, B5 or B123c")

    b = sub.add_parser("reset-bankroll", help="reset a tiered agent's bankroll")
    b.add_argument("--agent", choices=tuple(DEFAULT_TIER_AGENTS), required=True)
    b.add_argument("--amount", type=float, default=None, help="defaults to INITIAL_BANKROLL")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    if args.paper:
        settings = replace(settings, paper_mode=True)
    stop = StopFlag()
    try:
        if args.command == "threshold":
            return run_threshold(settings, stop, once=args.once)
        if args.command == "momentum":
            return run_tiered(settings, "B4", stop, once=args.once)
        if args.command == "spread":
            return run_tiered(settings, args.agent, stop, once=args.once)
        if args.command == "poly-threshold":
            return run_poly_threshold(settings, stop, once=args.once)
        if args.command == "resolve":
            return run_resolve(settings, stop, loop=args.loop)
        conn = _open_store(settings)
        if args.command == "emergency":
            db.set_emergency_off(conn, args.state == "on", args.group)
            print(f"emergency_off group={args.group} value={args.state == 'on'}")
            return 0
        amount = settings.initial_bankroll if args.amount is None else args.amount
        cfg = load_tier_config(conn, settings, args.agent)
        db.reset_bankroll(conn, args.agent, amount, cfg.snapshot())
        print(f"bankroll reset agent={args.agent} amount={amount:.2f}")
        return 0
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
