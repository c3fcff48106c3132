from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable

from . import db
from .alerts import report_error
from .config import Settings
from .kalshi import KalshiClient, KalshiContract
from .polymarket import PolymarketClient
from .snapshot import direction_from_side

SKIP_INSUFFICIENT_SIZE = "insufficient size"
SKIP_DISABLED = "polymarket disabled"
SKIP_NO_MARKET_REF = "no market ref"
SKIP_NO_CONTRACT = "no kalshi contract"
SKIP_NO_KALSHI = "kalshi not used"
SKIP_PAPER = "paper mode"

# Polymarket rejects orders below $1 notional.
POLY_MIN_NOTIONAL = 1.0


@dataclass
class LegResult:
    venue: str
    placed: bool = False
    order_id: str | None = None
    position_id: int | None = None
    skip_reason: str | None = None
    error: str | None = None


@dataclass
class MirrorResult:
    kalshi: LegResult = field(default_factory=lambda: LegResult("kalshi"))
    polymarket: LegResult = field(default_factory=lambda: LegResult("polymarket"))

    @property
    def any_placed(self) -> bool:
        return self.kalshi.placed or self.polymarket.placed


@dataclass(frozen=True)
class MirrorOrder:
    agent: str
    asset: str
    side: str
    spread_pct: float
    kalshi_size: float
    poly_size: float
    kalshi_price_cents: int
    poly_price: float
    market_order: bool
    poly_slug: str
    price_source: str | None = None


class OrderMirror:
    """Places the Kalshi leg, then the Polymarket leg, one after the other.

    The Polymarket leg only runs when the Kalshi contract lookup succeeded; it
    reuses Kalshi's side. A Polymarket failure is logged as a skip reason and
    never undoes the Kalshi entry. Without a Kalshi client the mirror places
    the Polymarket leg alone. In paper mode the Kalshi leg is never sent.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        kalshi: KalshiClient | None,
        poly: PolymarketClient | None,
        enable_polymarket: bool,
        report: Callable[..., None] = report_error,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.kalshi = kalshi
        self.poly = poly
        self.enable_polymarket = enable_polymarket
        self.report = report

    def _log_position(self, row: dict[str, Any], leg: LegResult) -> None:
        try:
            leg.position_id = db.insert_position(self.conn, row)
        except sqlite3.Error as exc:
            self.report(self.conn, self.settings, exc, agent=row["bot"], asset=row["asset"], venue=row["venue"], stage="log_position")

    def _place_kalshi(self, order: MirrorOrder, contract: KalshiContract | None) -> LegResult:
        leg = LegResult("kalshi")
        if self.kalshi is None:
            leg.skip_reason = SKIP_NO_KALSHI
            return leg
        if contract is None:
            leg.skip_reason = SKIP_NO_CONTRACT
            return leg
        if self.settings.paper_mode:
            leg.skip_reason = SKIP_PAPER
            return leg
        count = int(order.kalshi_size)
        if count < 1:
            leg.skip_reason = SKIP_INSUFFICIENT_SIZE
            return leg
        try:
            placed = self.kalshi.place_order(
                contract.ticker,
                order.side,
                count,
                price_cents=order.kalshi_price_cents,
                market=order.market_order,
            )
        except Exception as exc:
            # A bad key file or a transport error skips this leg only.
            leg.error = str(exc)
            self.report(self.conn, self.settings, exc, agent=order.agent, asset=order.asset, venue="kalshi", stage="place_order")
            return leg
        leg.placed = True
        leg.order_id = str(placed.get("order_id"))
        self._log_position(
            {
                "bot": order.agent,
                "asset": order.asset,
                "venue": "kalshi",
                "strike_spread_pct": order.spread_pct,
                "position_size": count,
                "ticker_or_slug": contract.ticker,
                "order_id": leg.order_id,
                "raw": {
                    "side": order.side,
                    "direction": direction_from_side(order.side),
                    "strike": contract.strike,
                    "window_end_ms": int(contract.expiration.timestamp() * 1000) if contract.expiration else None,
                    "limit_cents": None if order.market_order else order.kalshi_price_cents,
                    "market_order": order.market_order,
                    "status": placed.get("status"),
                },
            },
            leg,
        )
        print(
            f"placed venue=kalshi agent={order.agent} asset={order.asset} side={order.side} "
            f"ticker={contract.ticker} count={count} order_id={leg.order_id}"
        )
        return leg

    def _place_poly(self, order: MirrorOrder) -> LegResult:
        leg = LegResult("polymarket")
        if order.poly_size < POLY_MIN_NOTIONAL:
            leg.skip_reason = SKIP_INSUFFICIENT_SIZE
            return leg
        if self.poly is None:
            leg.skip_reason = SKIP_DISABLED
            return leg
        try:
            market = self.poly.market_by_slug(order.poly_slug)
            if market is None or not market.token_for(order.side):
                leg.skip_reason = SKIP_NO_MARKET_REF
                return leg
            placed = self.poly.place_limit(market, order.side, order.poly_price, order.poly_size)
        except Exception as exc:
            # py-clob-client raises its own exception types; any of them skips this leg only.
            leg.error = str(exc)
            leg.skip_reason = str(exc)
            self.report(self.conn, self.settings, exc, agent=order.agent, asset=order.asset, venue="polymarket", stage="place_order")
            return leg
        leg.placed = True
        leg.order_id = str(placed["order_id"])
        raw = {
            "side": order.side,
            "direction": direction_from_side(order.side),
            "token_id": placed["token_id"],
            "limit_price": placed["price"],
            "shares": placed["shares"],
            "market_order": order.market_order,
        }
        if order.price_source:
            raw["price_source"] = order.price_source
        if placed.get("paper"):
            raw["paper"] = True
            raw["filled_shares"] = placed.get("filled_shares", 0.0)
        self._log_position(
            {
                "bot": order.agent,
                "asset": order.asset,
                "venue": "polymarket",
                "strike_spread_pct": order.spread_pct,
                "position_size": order.poly_size,
                "ticker_or_slug": order.poly_slug,
                "order_id": leg.order_id,
                "raw": raw,
            },
            leg,
        )
        print(
            f"placed venue=polymarket agent={order.agent} asset={order.asset} side={order.side} "
            f"slug={order.poly_slug} usd={order.poly_size:g} order_id={leg.order_id}"
        )
        return leg

    def place(self, order: MirrorOrder, contract: KalshiContract | None) -> MirrorResult:
        result = MirrorResult()
        result.kalshi = self._place_kalshi(order, contract)

        if self.kalshi is None:
            result.polymarket = self._place_poly(order)
        elif contract is None:
            result.polymarket.skip_reason = SKIP_NO_CONTRACT
        elif not self.enable_polymarket:
            result.polymarket.skip_reason = SKIP_DISABLED
        else:
            result.polymarket = self._place_poly(order)

        if not result.polymarket.placed and result.polymarket.skip_reason:
            try:
                db.log_poly_skip(
                    self.conn, order.agent, order.asset, result.polymarket.skip_reason, result.kalshi.placed
                )
            except sqlite3.Error as exc:
                self.report(self.conn, self.settings, exc, agent=order.agent, asset=order.asset, stage="poly_skip_log")
        return result
