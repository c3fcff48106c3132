from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import requests

from .alerts import report_error
from .blocks import BlockBook, agent_scope, asset_scope
from .clock import Phase, is_blackout, poly_slug, threshold_phase, to_ms, window_at
from .config import Settings
from .idempotency import EntryLedger
from .kalshi import KalshiClient, KalshiContract, KalshiError
from .mirror import MirrorOrder, MirrorResult, OrderMirror
from .snapshot import MarketSnapshot, build_snapshot, passes_failsafe, side_from_spread
from .spot import PriceUnavailable, SpotPriceClient
from .status import write_status
from .thresholds import (
    KALSHI_LIMIT_CENTS,
    POLY_LIMIT_PRICE,
    POLY_MARKET_ORDER_PRICE,
    EngineConfig,
    load_engine_config,
)

# Widest phase first so its blocks apply to the narrower agents on the same tick.
EVALUATION_ORDER = ("B3", "B2", "B1")


@dataclass(frozen=True)
class Decision:
    agent: str
    asset: str
    action: str
    reason: str
    spread_pct: float | None = None
    side: str | None = None
    kalshi_price_cents: int | None = None
    poly_price: float | None = None
    market_order: bool = False

    @property
    def enter(self) -> bool:
        return self.action == "enter"


def _skip(agent: str, snapshot: MarketSnapshot, reason: str) -> Decision:
    return Decision(agent=agent, asset=snapshot.asset, action="skip", reason=reason, spread_pct=snapshot.signed_spread_pct)


def decide(
    agent: str,
    snapshot: MarketSnapshot,
    config: EngineConfig,
    blocks: BlockBook,
    phase: Phase,
    entered: bool = False,
    now_ms: int | None = None,
    quote_gate: bool = True,
) -> Decision:
    """Go/no-go for one threshold agent on one asset snapshot.

    With ``quote_gate`` off, B1 skips the Kalshi bid band and switches to a
    market order purely on the phase.
    """
    if not phase.is_active(agent):
        return _skip(agent, snapshot, "phase_inactive")
    if not passes_failsafe(snapshot.signed_spread_pct, config.sanity_ceiling_pct):
        return _skip(agent, snapshot, "failsafe")
    if entered:
        return _skip(agent, snapshot, "already_entered")
    if agent in ("B1", "B2") and blocks.asset_blocked(snapshot.asset, now_ms):
        return _skip(agent, snapshot, "asset_blocked")
    if blocks.agent_blocked(agent, snapshot.asset, now_ms):
        return _skip(agent, snapshot, "agent_blocked")

    threshold = config.threshold(agent, snapshot.asset)
    if threshold is None:
        return _skip(agent, snapshot, "no_threshold")
    if snapshot.abs_spread_pct <= threshold:
        return _skip(agent, snapshot, "inside_threshold")

    market_order = False
    if agent == "B1" and not quote_gate:
        market_order = phase.market_order
    elif agent == "B1":
        bid = snapshot.quoted_bid_pct
        if bid is None:
            return _skip(agent, snapshot, "no_quote")
        if bid < config.b1_bid_floor_pct:
            return _skip(agent, snapshot, "bid_below_floor")
        if phase.market_order:
            # Final sub-window: a bid above the ceiling has already priced in the outcome.
            if bid > config.b1_bid_ceiling_pct:
                return _skip(agent, snapshot, "bid_above_ceiling")
            market_order = True

    side = side_from_spread(snapshot.signed_spread_pct)
    return Decision(
        agent=agent,
        asset=snapshot.asset,
        action="enter",
        reason="ok",
        spread_pct=snapshot.signed_spread_pct,
        side=side,
        kalshi_price_cents=KALSHI_LIMIT_CENTS[agent],
        poly_price=POLY_MARKET_ORDER_PRICE if market_order else POLY_LIMIT_PRICE[agent],
        market_order=market_order,
    )


def observe_guards(
    snapshot: MarketSnapshot,
    config: EngineConfig,
    blocks: BlockBook,
    phase: Phase,
    now_ms: int | None = None,
) -> list[str]:
    """Blocks driven by the observed spread alone, whether or not anyone enters."""
    if not passes_failsafe(snapshot.signed_spread_pct, config.sanity_ceiling_pct):
        return []
    set_scopes: list[str] = []
    delays = config.delays
    spread = snapshot.abs_spread_pct
    asset = snapshot.asset
    if phase.is_active("B2") and spread > delays.b2_high_spread_threshold_pct:
        blocks.block_for(agent_scope("B1", asset), delays.b2_high_spread_block_min, now_ms)
        set_scopes.append(agent_scope("B1", asset))
    if phase.early and spread > delays.b3_early_high_spread_pct:
        blocks.block_for(agent_scope("B3", asset), delays.b3_early_high_spread_block_min, now_ms)
        blocks.block_for(asset_scope(asset), delays.b3_block_min, now_ms)
        set_scopes.extend([agent_scope("B3", asset), asset_scope(asset)])
    return set_scopes


def apply_fill_blocks(agent: str, asset: str, config: EngineConfig, blocks: BlockBook, now_ms: int | None = None) -> None:
    if agent == "B3":
        blocks.block_for(asset_scope(asset), config.delays.b3_block_min, now_ms)
    elif agent == "B2":
        blocks.block_for(agent_scope("B1", asset), config.delays.b2_high_spread_block_min, now_ms)


class ThresholdAgent:
    """One tick loop driving B1, B2 and B3 over every configured asset."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        kalshi: KalshiClient,
        spot: SpotPriceClient,
        mirror: OrderMirror,
        blocks: BlockBook | None = None,
        ledger: EntryLedger | None = None,
        report: Callable[..., None] = report_error,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.kalshi = kalshi
        self.spot = spot
        self.mirror = mirror
        self.blocks = blocks or BlockBook(conn)
        self.ledger = ledger or EntryLedger(conn)
        self.report = report
        self.tick_count = 0
        self.last_decisions: list[Decision] = []

    def market_data(self, asset: str, now: datetime, now_ms: int) -> tuple[MarketSnapshot, KalshiContract] | None:
        contract = self.kalshi.current_contract(asset, now)
        if contract is None:
            return None
        price = self.spot.price(asset)
        draft = build_snapshot(asset, price, contract.strike, now_ms, market_ref=contract.ticker)
        snap = build_snapshot(
            asset,
            price,
            contract.strike,
            now_ms,
            quoted_bid_pct=contract.bid_for(draft.side),
            market_ref=contract.ticker,
        )
        return snap, contract

    def tick(self, now: datetime) -> list[Decision]:
        self.tick_count += 1
        now_ms = to_ms(now)
        config = load_engine_config(self.conn, self.settings)
        self.mirror.enable_polymarket = config.enable_polymarket
        paused_reason = None
        if config.emergency_off:
            paused_reason = "emergency_off"
        elif is_blackout(now, self.settings.blackout_enabled):
            paused_reason = "blackout"
        if paused_reason is not None:
            if self.tick_count % self.settings.heartbeat_ticks == 0:
                print(f"threshold paused reason={paused_reason}")
            self._write_status(paused_reason, [], {})
            return []

        window = window_at(now_ms, "15m")
        phase = threshold_phase(now_ms, self.settings.b1_market_order_minutes)
        self.ledger.prune(window.start_ms)
        decisions: list[Decision] = []
        spreads: dict[str, float] = {}

        for asset in config.assets:
            try:
                data = self.market_data(asset, now, now_ms)
            except (KalshiError, PriceUnavailable, requests.RequestException, ValueError) as exc:
                self.report(self.conn, self.settings, exc, asset=asset, stage="market_data")
                continue
            if data is None:
                continue
            snap, contract = data
            spreads[asset] = snap.signed_spread_pct
            observe_guards(snap, config, self.blocks, phase, now_ms)

            for agent in EVALUATION_ORDER:
                entered = self.ledger.has_entered(agent, asset, window.start_ms, window.end_ms)
                decision = decide(agent, snap, config, self.blocks, phase, entered=entered, now_ms=now_ms)
                decisions.append(decision)
                if decision.reason == "phase_inactive":
                    continue
                if not decision.enter:
                    if self.tick_count % self.settings.heartbeat_ticks == 0:
                        print(
                            f"decision agent={agent} asset={asset} spread={snap.signed_spread_pct:.3f} "
                            f"action=skip reason={decision.reason}"
                        )
                    continue
                print(
                    f"decision agent={agent} asset={asset} spread={snap.signed_spread_pct:.3f} "
                    f"side={decision.side} action=enter reason=ok market_order={decision.market_order}"
                )
                result = self.execute(decision, contract, config, poly_slug(asset, window))
                if result.any_placed:
                    self.ledger.mark(agent, asset, window.end_ms)
                    apply_fill_blocks(agent, asset, config, self.blocks, now_ms)

        self.last_decisions = decisions
        self._write_status(None, decisions, spreads)
        return decisions

    def _write_status(self, paused: str | None, decisions: list[Decision], spreads: dict[str, float]) -> None:
        write_status(
            self.settings.status_path("threshold"),
            "threshold",
            paused=paused,
            spreads=spreads,
            entries=[f"{d.agent}:{d.asset}:{d.side}" for d in decisions if d.enter],
            skips={f"{d.agent}:{d.asset}": d.reason for d in decisions if not d.enter},
            tick=self.tick_count,
        )

    def execute(self, decision: Decision, contract: KalshiContract, config: EngineConfig, slug: str) -> MirrorResult:
        order = MirrorOrder(
            agent=decision.agent,
            asset=decision.asset,
            side=str(decision.side),
            spread_pct=float(decision.spread_pct or 0.0),
            kalshi_size=config.kalshi_size(decision.agent, decision.asset),
            poly_size=config.poly_size(decision.agent, decision.asset),
            kalshi_price_cents=int(decision.kalshi_price_cents or 0),
            poly_price=float(decision.poly_price or 0.0),
            market_order=decision.market_order,
            poly_slug=slug,
        )
        return self.mirror.place(order, contract)
