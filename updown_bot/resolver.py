from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from . import db
from .alerts import report_error
from .config import Settings
from .kalshi import KalshiClient, parse_ticker, settlement_side
from .polymarket import PolyMarket, PolymarketClient, window_end_from_slug, winning_outcome_index
from .tiered_engine import SCALP_EXIT_REASONS


@dataclass(frozen=True)
class Resolution:
    position_id: int
    outcome: str | None
    reason: str

    @property
    def deferred(self) -> bool:
        return self.outcome is None


def recorded_side(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    side = str(raw.get("side") or "").strip().lower()
    if side in ("yes", "no"):
        return side
    direction = str(raw.get("direction") or "").strip().lower()
    if direction == "up":
        return "yes"
    if direction == "down":
        return "no"
    return None


def scalp_outcome(raw: Any) -> str | None:
    """Round-trip positions closed by the agent resolve by realized P&L."""
    if not isinstance(raw, dict) or raw.get("exit_reason") not in SCALP_EXIT_REASONS:
        return None
    try:
        pnl = float(raw.get("pnl"))
    except (TypeError, ValueError):
        return None
    return "win" if pnl > 0 else "loss"


def winning_side(market: PolyMarket) -> str | None:
    idx = winning_outcome_index(list(market.outcome_prices))
    if idx is None:
        return None
    if idx < len(market.outcomes):
        name = market.outcomes[idx].strip().lower()
        if name in ("up", "yes"):
            return "yes"
        if name in ("down", "no"):
            return "no"
    return "yes" if idx == 0 else "no"


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class Resolver:
    """Turns placed positions into win / loss / no_fill once the venue is final.

    Only rows with a null outcome are read, and the outcome write is
    conditional on it still being null, so rerunning a pass is harmless.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        kalshi: KalshiClient | None,
        poly: PolymarketClient | None,
        report: Callable[..., None] = report_error,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.kalshi = kalshi
        self.poly = poly
        self.report = report
        self._settlements: dict[str, dict[str, Any]] | None = None
        self._markets: dict[str, PolyMarket | None] = {}

    def _settlement_for(self, ticker: str) -> dict[str, Any] | None:
        if self._settlements is None:
            if self.kalshi is None:
                raise RuntimeError("kalshi client not configured")
            self._settlements = self.kalshi.settlement_map(self.settings.settlement_lookback_days)
        return self._settlements.get(ticker)

    def _market_for(self, slug: str) -> PolyMarket | None:
        if slug not in self._markets:
            if self.poly is None:
                raise RuntimeError("polymarket client not configured")
            self._markets[slug] = self.poly.market_by_slug(slug)
        return self._markets[slug]

    def run_once(self, now: datetime | None = None) -> list[Resolution]:
        now = now or datetime.now(timezone.utc)
        now_ms = _ms(now)
        self._settlements = None
        self._markets = {}
        results: list[Resolution] = []
        counts = {"win": 0, "loss": 0, "no_fill": 0, "deferred": 0, "error": 0}

        for position in db.unresolved_positions(self.conn):
            try:
                res = self.resolve(position, now_ms)
            except Exception as exc:
                # KalshiError, PolymarketError, RequestException or a py-clob-client error;
                # the position stays unresolved for the next pass.
                counts["error"] += 1
                self.report(
                    self.conn,
                    self.settings,
                    exc,
                    agent=position["bot"],
                    asset=position["asset"],
                    venue=position["venue"],
                    stage="resolve",
                    position_id=position["id"],
                )
                continue
            results.append(res)
            if res.deferred:
                counts["deferred"] += 1
                continue
            if db.set_outcome(self.conn, res.position_id, str(res.outcome)):
                counts[str(res.outcome)] += 1
                print(
                    f"resolved id={res.position_id} bot={position['bot']} asset={position['asset']} "
                    f"venue={position['venue']} outcome={res.outcome} reason={res.reason}"
                )

        print(
            "resolve pass "
            + " ".join(f"{k}={v}" for k, v in counts.items())
        )
        return results

    def resolve(self, position: dict[str, Any], now_ms: int) -> Resolution:
        pid = int(position["id"])
        raw = position.get("raw") or {}
        if not position.get("order_id"):
            return Resolution(pid, "no_fill", "no_order_id")
        scalped = scalp_outcome(raw)
        if scalped is not None:
            return Resolution(pid, scalped, "realized_pnl")
        if position["venue"] == "kalshi":
            return self._resolve_kalshi(pid, position, raw, now_ms)
        if position["venue"] == "polymarket":
            return self._resolve_poly(pid, position, raw, now_ms)
        return Resolution(pid, "no_fill", "unknown_venue")

    def _resolve_kalshi(self, pid: int, position: dict[str, Any], raw: dict[str, Any], now_ms: int) -> Resolution:
        if self.kalshi is None:
            return Resolution(pid, None, "kalshi_unavailable")
        ticker = str(position.get("ticker_or_slug") or "")
        parsed = parse_ticker(ticker)
        if parsed is None:
            return Resolution(pid, "no_fill", "unparseable_ticker")
        end_ms = int(raw.get("window_end_ms") or _ms(parsed.expiration))
        if now_ms < end_ms:
            return Resolution(pid, None, "window_open")

        order = self.kalshi.get_order(str(position["order_id"]))
        if order is None:
            return Resolution(pid, "no_fill", "order_missing")
        order_ticker = order.get("ticker")
        if order_ticker and str(order_ticker) != ticker:
            return Resolution(pid, "no_fill", "instrument_mismatch")
        try:
            filled = float(order.get("fill_count") or 0)
        except (TypeError, ValueError):
            filled = 0.0
        if filled <= 0:
            return Resolution(pid, "no_fill", "zero_filled")

        if now_ms < end_ms + self.settings.resolve_grace_seconds * 1000:
            return Resolution(pid, None, "grace_period")
        side = recorded_side(raw)
        if side is None:
            return Resolution(pid, "no_fill", "side_unknown")
        settlement = self._settlement_for(ticker)
        if settlement is None:
            return Resolution(pid, None, "settlement_pending")
        result = settlement_side(settlement)
        if result is None:
            return Resolution(pid, None, "settlement_pending")
        if result == "void":
            return Resolution(pid, "no_fill", "settlement_void")
        return Resolution(pid, "win" if result == side else "loss", f"market_result={result}")

    def _resolve_poly(self, pid: int, position: dict[str, Any], raw: dict[str, Any], now_ms: int) -> Resolution:
        if self.poly is None:
            return Resolution(pid, None, "polymarket_unavailable")
        slug = str(position.get("ticker_or_slug") or "")
        end = window_end_from_slug(slug)
        if end is None:
            return Resolution(pid, "no_fill", "unparseable_slug")
        end_ms = _ms(end)
        if now_ms < end_ms:
            return Resolution(pid, None, "window_open")

        if raw.get("paper"):
            # Simulated orders never reached the CLOB; the fill was recorded at entry.
            size_matched, token = float(raw.get("filled_shares") or 0), raw.get("token_id")
        else:
            size_matched, token = self.poly.order_fill(str(position["order_id"]))
        if size_matched <= 0:
            return Resolution(pid, "no_fill", "zero_filled")

        if now_ms < end_ms + self.settings.resolve_grace_seconds * 1000:
            return Resolution(pid, None, "grace_period")
        side = recorded_side(raw)
        if side is None:
            return Resolution(pid, "no_fill", "side_unknown")
        market = self._market_for(slug)
        if market is None:
            return Resolution(pid, None, "market_missing")
        token = token or raw.get("token_id")
        if not token or str(token) not in market.token_ids:
            return Resolution(pid, "no_fill", "instrument_mismatch")
        if market.token_for(side) != str(token):
            return Resolution(pid, "no_fill", "side_token_mismatch")
        winner = winning_side(market)
        if winner is None:
            return Resolution(pid, None, "oracle_pending")
        return Resolution(pid, "win" if winner == side else "loss", f"winner={winner}")
