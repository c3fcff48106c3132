from __future__ import annotations

import uuid
from typing import Any

from .config import Settings
from .polymarket import PolyMarket, PolymarketClient, PolymarketError, round_to_tick, shares_for_notional


class PaperPolymarketClient(PolymarketClient):
    """Live Polymarket market data with every order simulated against the book.

    Buys fill at the best ask and sells at the best bid when the limit allows,
    so P&L reflects the spread actually paid. Nothing is signed or posted and
    no private key is needed. Simulated holdings live in memory only.
    """

    def __init__(self, settings: Settings, timeout: int = 10):
        super().__init__(settings, timeout)
        self.holdings: dict[str, float] = {}
        self.orders: dict[str, dict[str, Any]] = {}

    def _record(self, token_id: str, matched: float, price: float | None) -> str:
        order_id = f"paper-{uuid.uuid4().hex[:16]}"
        self.orders[order_id] = {"asset_id": token_id, "size_matched": matched, "price": price}
        return order_id

    def place_limit(self, market: PolyMarket, side: str, price: float, usd_size: float) -> dict[str, Any]:
        token_id = market.token_for(side)
        if not token_id:
            raise PolymarketError(f"no {side} token for {market.slug}")
        px = round_to_tick(price, market.tick_size)
        shares = shares_for_notional(usd_size, px)
        _bid, ask = self.book_top(token_id)
        # Fills only when the book already offers at or below the limit; otherwise it rests unfilled.
        matched = float(shares) if ask is not None and ask <= px else 0.0
        self.holdings[token_id] = self.holdings.get(token_id, 0.0) + matched
        order_id = self._record(token_id, matched, px)
        print(f"paper limit slug={market.slug} side={side} price={px} shares={shares} ask={ask} matched={matched:g}")
        return {
            "order_id": order_id,
            "token_id": token_id,
            "price": px,
            "shares": shares,
            "paper": True,
            "filled_shares": matched,
        }

    def place_fok(
        self,
        token_id: str,
        action: str,
        amount: float,
        price: float,
        *,
        tick_size: str = "0.01",
        neg_risk: bool = False,
    ) -> dict[str, Any]:
        bid, ask = self.book_top(token_id)
        held = self.holdings.get(token_id, 0.0)
        if action == "buy":
            if ask is None or ask > price:
                return {"order_id": None, "filled": False, "status": "killed", "paper": True}
            shares = round(float(amount) / ask, 2)
            fill_price = ask
            self.holdings[token_id] = held + shares
        else:
            if bid is None or bid < price or held + 1e-9 < float(amount):
                return {"order_id": None, "filled": False, "status": "killed", "paper": True}
            shares = float(amount)
            fill_price = bid
            self.holdings[token_id] = held - shares
        order_id = self._record(token_id, shares, fill_price)
        print(f"paper fok action={action} token={token_id} shares={shares:g} price={fill_price}")
        return {"order_id": order_id, "filled": True, "status": "matched", "paper": True, "fill_price": fill_price}

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        return self.orders.get(order_id)

    def token_balance(self, token_id: str) -> float:
        return self.holdings.get(token_id, 0.0)
