from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

from . import db
from .config import Settings

THRESHOLD_AGENTS = ("B1", "B2", "B3")

DEFAULT_SPREAD_THRESHOLDS: dict[str, dict[str, float]] = {
    "B1": {"BTC": 0.21, "ETH": 0.23, "SOL": 0.27},
    "B2": {"BTC": 0.57, "ETH": 0.57, "SOL": 0.62},
    "B3": {"BTC": 1.0, "ETH": 1.0, "SOL": 1.0},
}

# Kalshi limit cents / Polymarket limit price per agent.
KALSHI_LIMIT_CENTS = {"B1": 96, "B2": 97, "B3": 97}
POLY_LIMIT_PRICE = {"B1": 0.96, "B2": 0.97, "B3": 0.97}
POLY_MARKET_ORDER_PRICE = 0.99


@dataclass(frozen=True)
class AgentDelays:
    b3_block_min: float = 60.0
    b2_high_spread_threshold_pct: float = 0.55
    b2_high_spread_block_min: float = 15.0
    b3_early_high_spread_pct: float = 1.8
    b3_early_high_spread_block_min: float = 15.0


@dataclass(frozen=True)
class EngineConfig:
    """Everything the threshold agents read in one tick, defaults already applied."""

    emergency_off: bool
    assets: tuple[str, ...]
    thresholds: dict[tuple[str, str], float]
    delays: AgentDelays
    sanity_ceiling_pct: float
    b1_bid_floor_pct: float
    b1_bid_ceiling_pct: float
    size_kalshi: dict[tuple[str, str], float]
    size_polymarket: dict[tuple[str, str], float]
    enable_polymarket: bool

    def threshold(self, agent: str, asset: str) -> float | None:
        return self.thresholds.get((agent, asset))

    def kalshi_size(self, agent: str, asset: str) -> float:
        return self.size_kalshi.get((agent, asset), 0.0)

    def poly_size(self, agent: str, asset: str) -> float:
        return self.size_polymarket.get((agent, asset), 0.0)


def _opt_float(row: dict[str, Any], key: str, default: float) -> float:
    value = row.get(key)
    return default if value is None else float(value)


def load_engine_config(conn: sqlite3.Connection, settings: Settings) -> EngineConfig:
    row = db.get_bot_config(conn, "default")
    base = AgentDelays()
    delays = AgentDelays(
        b3_block_min=_opt_float(row, "b3_block_min", base.b3_block_min),
        b2_high_spread_threshold_pct=_opt_float(
            row, "b2_high_spread_threshold_pct", base.b2_high_spread_threshold_pct
        ),
        b2_high_spread_block_min=_opt_float(row, "b2_high_spread_block_min", base.b2_high_spread_block_min),
        b3_early_high_spread_pct=_opt_float(row, "b3_early_high_spread_pct", base.b3_early_high_spread_pct),
        b3_early_high_spread_block_min=_opt_float(
            row, "b3_early_high_spread_block_min", base.b3_early_high_spread_block_min
        ),
    )

    thresholds: dict[tuple[str, str], float] = {}
    for agent, per_asset in DEFAULT_SPREAD_THRESHOLDS.items():
        for asset, pct in per_asset.items():
            thresholds[(agent, asset)] = pct
    thresholds.update(db.spread_threshold_overrides(conn))

    default_kalshi = _opt_float(row, "position_size_kalshi", 1.0)
    default_poly = _opt_float(row, "position_size_polymarket", 5.0)
    size_kalshi: dict[tuple[str, str], float] = {}
    size_poly: dict[tuple[str, str], float] = {}
    for agent in THRESHOLD_AGENTS:
        for asset in settings.threshold_assets:
            size_kalshi[(agent, asset)] = db.position_size(conn, "kalshi", agent, asset, default_kalshi)
            size_poly[(agent, asset)] = db.position_size(conn, "polymarket", agent, asset, default_poly)

    return EngineConfig(
        emergency_off=bool(row.get("emergency_off") or 0),
        assets=settings.threshold_assets,
        thresholds=thresholds,
        delays=delays,
        sanity_ceiling_pct=settings.spread_sanity_ceiling_pct,
        b1_bid_floor_pct=settings.b1_bid_floor_pct,
        b1_bid_ceiling_pct=settings.b1_bid_ceiling_pct,
        size_kalshi=size_kalshi,
        size_polymarket=size_poly,
        enable_polymarket=settings.enable_polymarket,
    )


@dataclass(frozen=True)
class TierSpec:
    name: str
    entry_after_sec: float
    entry_until_sec: float | None
    limit_price: float
    # Narrower tier name -> minutes it stays blocked after this tier fills.
    blocks: dict[str, float] = field(default_factory=dict)
    # Block narrower tiers even when this tier's order did not fill.
    block_on_attempt: bool = False

    def timing_open(self, seconds_into: float) -> bool:
        if seconds_into < self.entry_after_sec:
            return False
        if self.entry_until_sec is not None and seconds_into >= self.entry_until_sec:
            return False
        return True


@dataclass(frozen=True)
class TierAgentConfig:
    """One generic tiered agent: signal source, exit style, assets and tier table."""

    bot: str
    pause_group: str
    signal: str
    exit_style: str
    duration_class: str
    assets: tuple[str, ...]
    # Ordered widest (highest priority) first.
    tiers: tuple[TierSpec, ...] = ()
    tier_spreads: dict[tuple[str, str], float] = field(default_factory=dict)
    position_size: float = 5.0
    early_guard_spread_pct: float | None = None
    early_guard_cooldown_min: float = 60.0
    emergency_off: bool = False

    momentum_threshold: float = 0.0003
    momentum_lookback_seconds: int = 60
    take_profit_pct: float = 0.03
    stop_loss_pct: float = 0.05
    max_trades_per_window: int = 3
    forced_exit_seconds: int = 25
    min_entry_seconds_left: int = 60
    settle_seconds: int = 15
    min_buy_mid: float = 0.05
    max_buy_mid: float = 0.95

    def tier_spread(self, asset: str, tier: str) -> float | None:
        return self.tier_spreads.get((asset, tier))

    def snapshot(self) -> dict[str, Any]:
        return {
            "bot": self.bot,
            "signal": self.signal,
            "exit": self.exit_style,
            "assets": list(self.assets),
            "position_size": self.position_size,
            "tiers": {
                t.name: {
                    "entry_after_sec": t.entry_after_sec,
                    "entry_until_sec": t.entry_until_sec,
                    "limit_price": t.limit_price,
                    "blocks": dict(t.blocks),
                }
                for t in self.tiers
            },
            "tier_spreads": {f"{a}:{t}": v for (a, t), v in sorted(self.tier_spreads.items())},
            "early_guard_spread_pct": self.early_guard_spread_pct,
            "early_guard_cooldown_min": self.early_guard_cooldown_min,
            "take_profit_pct": self.take_profit_pct,
            "stop_loss_pct": self.stop_loss_pct,
        }


def _tiers(blocks: dict[str, dict[str, float]], block_on_attempt: tuple[str, ...] = ()) -> tuple[TierSpec, ...]:
    return (
        TierSpec("T3", 100.0, 180.0, 0.97, blocks.get("T3", {}), "T3" in block_on_attempt),
        TierSpec("T2", 180.0, None, 0.97, blocks.get("T2", {}), "T2" in block_on_attempt),
        TierSpec("T1", 250.0, None, 0.96, blocks.get("T1", {}), "T1" in block_on_attempt),
    )


DEFAULT_TIER_AGENTS: dict[str, dict[str, Any]] = {
    "B4": {
        "signal": "momentum",
        "exit_style": "tp_sl",
        "duration_class": "5m",
        "assets": ("BTC",),
        "tiers": (),
        "tier_spreads": {},
        "early_guard_spread_pct": None,
        "early_guard_cooldown_min": 0.0,
    },
    "B4S": {
        "signal": "spread",
        "exit_style": "hold",
        "duration_class": "5m",
        "assets": ("BTC",),
        "tiers": _tiers({"T2": {"T1": 5.0}, "T3": {"T2": 15.0, "T1": 45.0}}),
        "tier_spreads": {("BTC", "T1"): 0.10, ("BTC", "T2"): 0.21, ("BTC", "T3"): 0.45},
        "early_guard_spread_pct": 0.6,
        "early_guard_cooldown_min": 60.0,
    },
    "B5": {
        "signal": "spread",
        "exit_style": "hold",
        "duration_class": "5m",
        "assets": ("ETH", "SOL", "XRP"),
        "tiers": _tiers({"T2": {"T1": 5.0}, "T3": {"T1": 15.0, "T2": 15.0}}, block_on_attempt=("T3",)),
        "tier_spreads": {
            ("ETH", "T1"): 0.110,
            ("SOL", "T1"): 0.121,
            ("XRP", "T1"): 0.121,
            ("ETH", "T2"): 0.181,
            ("SOL", "T2"): 0.206,
            ("XRP", "T2"): 0.206,
            ("ETH", "T3"): 0.32,
            ("SOL", "T3"): 0.32,
            ("XRP", "T3"): 0.32,
        },
        "early_guard_spread_pct": 0.45,
        "early_guard_cooldown_min": 60.0,
    },
}


def load_tier_config(conn: sqlite3.Connection, settings: Settings, bot: str) -> TierAgentConfig:
    if bot not in DEFAULT_TIER_AGENTS:
        raise ValueError(f"unknown tiered agent {bot}")
    base = DEFAULT_TIER_AGENTS[bot]
    spreads, overrides = db.tier_overrides(conn, bot)
    tier_spreads = dict(base["tier_spreads"])
    tier_spreads.update(spreads)

    tiers: tuple[TierSpec, ...] = base["tiers"]
    block_minutes = overrides.get("block_minutes")
    if isinstance(block_minutes, dict):
        tiers = tuple(
            TierSpec(
                name=t.name,
                entry_after_sec=t.entry_after_sec,
                entry_until_sec=t.entry_until_sec,
                limit_price=t.limit_price,
                blocks={str(k): float(v) for k, v in (block_minutes.get(t.name) or t.blocks).items()},
                block_on_attempt=t.block_on_attempt,
            )
            for t in tiers
        )

    assets = base["assets"]
    if bot == "B4":
        assets = (settings.momentum_asset,)

    return TierAgentConfig(
        bot=bot,
        pause_group="B5" if bot == "B5" else "B4",
        signal=base["signal"],
        exit_style=base["exit_style"],
        duration_class=base["duration_class"],
        assets=tuple(assets),
        tiers=tiers,
        tier_spreads=tier_spreads,
        position_size=float(overrides.get("position_size", settings.position_size_usd)),
        early_guard_spread_pct=overrides.get("early_guard_spread_pct", base["early_guard_spread_pct"]),
        early_guard_cooldown_min=float(
            overrides.get("early_guard_cooldown_min", base["early_guard_cooldown_min"])
        ),
        emergency_off=db.is_emergency_off(conn, "B5" if bot == "B5" else "B4"),
        momentum_threshold=settings.momentum_threshold,
        momentum_lookback_seconds=settings.momentum_lookback_seconds,
        take_profit_pct=settings.take_profit_pct,
        stop_loss_pct=settings.stop_loss_pct,
        max_trades_per_window=settings.max_trades_per_window,
        forced_exit_seconds=settings.forced_exit_seconds,
        min_entry_seconds_left=settings.min_entry_seconds_left,
        settle_seconds=settings.settle_seconds,
        min_buy_mid=settings.min_buy_mid,
        max_buy_mid=settings.max_buy_mid,
    )
