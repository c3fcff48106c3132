from __future__ import annotations

import re
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Callable

from . import db
from .alerts import report_error
from .blocks import BlockBook, private_book
from .chainlink import ChainlinkFeed
from .clock import TradingWindow, is_blackout, poly_slug, threshold_phase, to_ms, window_at
from .config import Settings
from .idempotency import EntryLedger
from .mirror import MirrorOrder, MirrorResult, OrderMirror
from .snapshot import build_snapshot
from .spot import PriceUnavailable, SpotPriceClient
from .status import write_status
from .threshold_engine import EVALUATION_ORDER, Decision, apply_fill_blocks, decide, observe_guards
from .thresholds import THRESHOLD_AGENTS, EngineConfig, load_engine_config

CLONE_IDS = {"B1": "B1c", "B2": "B2c", "B3": "B3c"}
PAUSE_GROUP = "B123c"
BALANCE_BACKOFF_MIN = 5.0
_BALANCE_ERROR_RE = re.compile(r"not enough balance|allowance", re.IGNORECASE)


def load_clone_config(conn: sqlite3.Connection, settings: Settings) -> EngineConfig:
    """Shared thresholds and delays, with this family's pause group, assets and sizes."""
    base = load_engine_config(conn, settings)
    sizes = {
        (agent, asset): db.position_size(
            conn, "polymarket", CLONE_IDS[agent], asset, settings.poly_threshold_position_usd
        )
        for agent in THRESHOLD_AGENTS
        for asset in settings.poly_threshold_assets
    }
    return replace(
        base,
        emergency_off=db.is_emergency_off(conn, PAUSE_GROUP),
        assets=settings.poly_threshold_assets,
        size_kalshi={},
        size_polymarket=sizes,
        enable_polymarket=True,
    )


def is_balance_error(message: str | None) -> bool:
    return message is not None and _BALANCE_ERROR_RE.search(message) is not None


class PolyThresholdAgent:
    """B1c, B2c and B3c: the threshold agents trading Polymarket alone.

    The spread is measured against the reference price captured as each window
    opens instead of a Kalshi strike, and B1c has no quote band. Blocks live in
    a private in-memory book, so they never reach the shared threshold agents.
    If the feed has been missing a price for ``chainlink_reset_seconds`` the
    window's open prices are dropped and nothing is placed until the next window.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        feed: SpotPriceClient | ChainlinkFeed,
        mirror: OrderMirror,
        blocks: BlockBook | None = None,
        ledger: EntryLedger | None = None,
        price_source: str = "chainlink",
        report: Callable[..., None] = report_error,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.feed = feed
        self.mirror = mirror
        self.blocks = blocks or private_book()
        self.ledger = ledger or EntryLedger(conn)
        self.price_source = price_source
        self.report = report
        self.tick_count = 0
        self.window_end_ms = 0
        self.window_open: dict[str, float] = {}
        self.no_price_since_ms = 0
        self.reset_this_window = False
        self.backoff_until_ms = 0

    def _roll_window(self, window: TradingWindow) -> None:
        if window.end_ms == self.window_end_ms:
            return
        self.window_end_ms = window.end_ms
        self.window_open.clear()
        self.no_price_since_ms = 0
        self.reset_this_window = False
        self.ledger.prune(window.start_ms)

    def _prices(self, assets: tuple[str, ...], window: TradingWindow, now_ms: int) -> dict[str, float]:
        prices: dict[str, float] = {}
        capture = (
            not self.reset_this_window
            and now_ms - window.start_ms <= self.settings.window_open_tolerance_seconds * 1000
        )
        for asset in assets:
            try:
                prices[asset] = self.feed.price(asset)
            except PriceUnavailable:
                continue
            if capture and asset not in self.window_open:
                self.window_open[asset] = prices[asset]
                print(f"window_open agent={PAUSE_GROUP} asset={asset} price={prices[asset]:.4f}")
        return prices

    def _check_feed(self, assets: tuple[str, ...], prices: dict[str, float], window: TradingWindow, now_ms: int) -> None:
        missing = [a for a in assets if a not in prices]
        if not missing:
            self.no_price_since_ms = 0
            return
        if self.no_price_since_ms == 0:
            self.no_price_since_ms = now_ms
        if self.tick_count % self.settings.heartbeat_ticks == 0:
            print(f"no_price agent={PAUSE_GROUP} source={self.price_source} assets={','.join(missing)}")
        silent_ms = now_ms - self.no_price_since_ms
        if self.reset_this_window or silent_ms < self.settings.chainlink_reset_seconds * 1000:
            return
        self.reset_this_window = True
        self.window_open.clear()
        self.no_price_since_ms = 0
        print(f"soft_reset agent={PAUSE_GROUP} silent_s={silent_ms // 1000} action=skip_window")
        self.report(
            self.conn,
            self.settings,
            PriceUnavailable(
                f"no {self.price_source} price for {silent_ms // 1000}s; no orders until the next window"
            ),
            agent=PAUSE_GROUP,
            stage="chainlink",
            window_end_ms=window.end_ms,
        )

    def tick(self, now: datetime) -> list[Decision]:
        self.tick_count += 1
        now_ms = to_ms(now)
        config = load_clone_config(self.conn, self.settings)
        paused_reason = None
        if config.emergency_off:
            paused_reason = "emergency_off"
        elif is_blackout(now, self.settings.blackout_enabled):
            paused_reason = "blackout"
        if paused_reason is not None:
            if self.tick_count % self.settings.heartbeat_ticks == 0:
                print(f"{PAUSE_GROUP} paused reason={paused_reason}")
            self._write_status(paused_reason, [], {})
            return []

        window = window_at(now_ms, "15m")
        self._roll_window(window)
        phase = threshold_phase(now_ms, self.settings.b1_market_order_minutes)
        prices = self._prices(config.assets, window, now_ms)
        self._check_feed(config.assets, prices, window, now_ms)

        decisions: list[Decision] = []
        spreads: dict[str, float] = {}
        for asset, price in prices.items():
            opened = self.window_open.get(asset)
            if not opened:
                continue
            slug = poly_slug(asset, window)
            snap = build_snapshot(asset, price, opened, now_ms, market_ref=slug)
            spreads[asset] = snap.signed_spread_pct
            observe_guards(snap, config, self.blocks, phase, now_ms)

            for agent in EVALUATION_ORDER:
                clone = CLONE_IDS[agent]
                entered = self.ledger.has_entered(clone, asset, window.start_ms, window.end_ms)
                decision = decide(
                    agent, snap, config, self.blocks, phase, entered=entered, now_ms=now_ms, quote_gate=False
                )
                if decision.enter and now_ms < self.backoff_until_ms:
                    decision = replace(decision, action="skip", reason="balance_backoff")
                decisions.append(replace(decision, agent=clone))
                if not decision.enter:
                    if decision.reason != "phase_inactive" and self.tick_count % self.settings.heartbeat_ticks == 0:
                        print(
                            f"decision agent={clone} asset={asset} spread={snap.signed_spread_pct:.3f} "
                            f"action=skip reason={decision.reason}"
                        )
                    continue
                print(
                    f"decision agent={clone} asset={asset} spread={snap.signed_spread_pct:.3f} "
                    f"side={decision.side} action=enter price={decision.poly_price}"
                )
                result = self.execute(decision, config, slug)
                if result.polymarket.placed:
                    self.ledger.mark(clone, asset, window.end_ms)
                    apply_fill_blocks(agent, asset, config, self.blocks, now_ms)
                elif is_balance_error(result.polymarket.error):
                    # Resting limit orders hold wallet balance until they fill or expire.
                    self.backoff_until_ms = now_ms + int(BALANCE_BACKOFF_MIN * 60_000)
                    print(f"backoff agent={PAUSE_GROUP} reason=balance_or_allowance minutes={BALANCE_BACKOFF_MIN:g}")

        if self.tick_count % self.settings.heartbeat_ticks == 0:
            parts = " ".join(f"{a}={s:.3f}" for a, s in sorted(spreads.items()))
            print(f"heartbeat agent={PAUSE_GROUP} mins_left={phase.minutes_left:.1f} {parts}".rstrip())
        self._write_status(None, decisions, spreads)
        return decisions

    def execute(self, decision: Decision, config: EngineConfig, slug: str) -> MirrorResult:
        order = MirrorOrder(
            agent=CLONE_IDS[decision.agent],
            asset=decision.asset,
            side=str(decision.side),
            spread_pct=float(decision.spread_pct or 0.0),
            kalshi_size=0,
            poly_size=config.poly_size(decision.agent, decision.asset),
            kalshi_price_cents=0,
            poly_price=float(decision.poly_price or 0.0),
            market_order=decision.market_order,
            poly_slug=slug,
            price_source=self.price_source,
        )
        return self.mirror.place(order, None)

    def _write_status(self, paused: str | None, decisions: list[Decision], spreads: dict[str, float]) -> None:
        write_status(
            self.settings.status_path(PAUSE_GROUP),
            PAUSE_GROUP,
            paused=paused,
            spreads=spreads,
            window_open=dict(self.window_open),
            entries=[f"{d.agent}:{d.asset}:{d.side}" for d in decisions if d.enter],
            backoff_until_ms=self.backoff_until_ms,
            tick=self.tick_count,
        )
