from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import requests
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.http_helpers import helpers as clob_http
from py_clob_client.order_builder.constants import BUY, SELL

from .config import Settings

_EPOCH_SUFFIX_RE = re.compile(r"(\d{9,})$")
_DURATION_RE = re.compile(r"-updown-(\d+)m-")

# Conditional token balances are reported in 6-decimal base units.
TOKEN_DECIMALS = 1_000_000


class PolymarketError(RuntimeError):
    pass


@dataclass(frozen=True)
class PolyMarket:
    slug: str
    token_ids: tuple[str, ...]
    outcome_prices: tuple[str, ...]
    outcomes: tuple[str, ...]
    neg_risk: bool
    tick_size: str
    min_size: float
    closed: bool

    def token_for(self, side: str) -> str | None:
        """Token for 'yes' (Up) or 'no' (Down)."""
        wanted = "up" if side == "yes" else "down"
        for i, name in enumerate(self.outcomes):
            if name.strip().lower() == wanted and i < len(self.token_ids):
                return self.token_ids[i]
        idx = 0 if side == "yes" else 1
        return self.token_ids[idx] if idx < len(self.token_ids) else None


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _decode_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(x) for x in value]
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
            if isinstance(decoded, list):
                return [str(x) for x in decoded]
        except json.JSONDecodeError:
            pass
    return []


def window_start_from_slug(value: str) -> datetime | None:
    """
    Up/down series encode the underlying window start as a Unix epoch suffix:
      btc-updown-5m-1771019100
    Gamma's startDate is listing time (often ~24h before), not the window start.
    """
    raw = (value or "").strip()
    if not raw:
        return None
    m = _EPOCH_SUFFIX_RE.search(raw)
    if not m:
        return None
    try:
        epoch = int(m.group(1))
    except ValueError:
        return None
    # Sanity: ignore obviously invalid timestamps.
    if epoch < 1_000_000_000:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def window_end_from_slug(value: str) -> datetime | None:
    start = window_start_from_slug(value)
    if start is None:
        return None
    m = _DURATION_RE.search(value or "")
    minutes = int(m.group(1)) if m else 15
    return start + timedelta(minutes=minutes)


def decode_outcome_prices(value: Any) -> list[str]:
    return _decode_list(value)


def winning_outcome_index(value: Any) -> int | None:
    """Index of the outcome priced at 1 once the market is final, else None."""
    prices = decode_outcome_prices(value)
    if len(prices) < 2:
        return None
    numeric = [_to_float(p, -1.0) for p in prices]
    winners = [i for i, p in enumerate(numeric) if p == 1.0]
    losers = [i for i, p in enumerate(numeric) if p == 0.0]
    if len(winners) == 1 and len(losers) == len(numeric) - 1:
        return winners[0]
    return None


def round_to_tick(price: float, tick_size: str) -> float:
    decimals = len(tick_size.split(".")[1]) if "." in tick_size else 0
    return round(price, decimals)


def shares_for_notional(usd_size: float, price: float) -> int:
    min_shares = math.ceil(1 / price)
    return max(min_shares, int(math.floor(usd_size / price)))


class PolymarketClient:
    def __init__(self, settings: Settings, timeout: int = 10):
        self.settings = settings
        self.timeout = timeout
        self.session = requests.Session()
        if settings.poly_proxy_url:
            self.session.proxies = {"http": settings.poly_proxy_url, "https": settings.poly_proxy_url}
        self._clob: ClobClient | None = None

    # --- public data ------------------------------------------------------------

    def market_by_slug(self, slug: str) -> PolyMarket | None:
        resp = self.session.get(
            f"{self.settings.gamma_base_url}/markets",
            params={"slug": slug},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, list) or not payload:
            return None
        m = payload[0]
        raw_tick = _to_float(m.get("orderPriceMinTickSize"), 0.01)
        # The CLOB rejects ticks finer than 0.01 on these markets even when Gamma reports 0.001.
        tick_size = str(raw_tick) if raw_tick >= 0.01 else "0.01"
        return PolyMarket(
            slug=slug,
            token_ids=tuple(_decode_list(m.get("clobTokenIds"))),
            outcome_prices=tuple(decode_outcome_prices(m.get("outcomePrices"))),
            outcomes=tuple(_decode_list(m.get("outcomes"))),
            neg_risk=bool(m.get("negRisk") or False),
            tick_size=tick_size,
            min_size=_to_float(m.get("orderMinSize"), 5.0),
            closed=bool(m.get("closed") or False),
        )

    def midpoint(self, token_id: str) -> float | None:
        try:
            resp = self.session.get(
                f"{self.settings.clob_base_url}/midpoint",
                params={"token_id": token_id},
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                return None
            mid = _to_float(resp.json().get("mid"), 0.0)
        except (requests.RequestException, ValueError, AttributeError):
            return None
        return mid if 0 < mid < 1 else None

    def book_top(self, token_id: str) -> tuple[float | None, float | None]:
        """(best bid, best ask) from the public CLOB book."""
        resp = self.session.get(
            f"{self.settings.clob_base_url}/book",
            params={"token_id": token_id},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            return None, None

        def levels(key: str) -> list[float]:
            prices = [_to_float(level.get("price")) for level in payload.get(key) or [] if isinstance(level, dict)]
            return [p for p in prices if 0 < p < 1]

        bids, asks = levels("bids"), levels("asks")
        return (max(bids) if bids else None, min(asks) if asks else None)

    # --- trading ------------------------------------------------------------------

    def _ensure_client(self) -> ClobClient:
        if self._clob is not None:
            return self._clob
        if not self.settings.poly_private_key:
            raise PolymarketError("POLYMARKET_PRIVATE_KEY is missing")
        if self.settings.poly_proxy_url:
            # py-clob-client >=0.20,<1 sends every request through the module-level httpx
            # client in http_helpers.helpers. Only Polymarket calls use it, so the proxy
            # never touches Kalshi or spot traffic. Recheck this attribute on a major bump.
            clob_http._http_client = httpx.Client(http2=True, proxy=self.settings.poly_proxy_url)
        client = ClobClient(
            self.settings.clob_base_url,
            key=self.settings.poly_private_key,
            chain_id=self.settings.poly_chain_id,
            signature_type=self.settings.poly_signature_type,
            funder=self.settings.poly_funder or None,
        )
        client.set_api_creds(client.create_or_derive_api_creds())
        self._clob = client
        return client

    @staticmethod
    def _order_id(resp: Any) -> str | None:
        if not isinstance(resp, dict):
            return None
        oid = resp.get("orderID") or resp.get("orderId") or resp.get("id")
        return str(oid) if oid else None

    def place_limit(self, market: PolyMarket, side: str, price: float, usd_size: float) -> dict[str, Any]:
        token_id = market.token_for(side)
        if not token_id:
            raise PolymarketError(f"no {side} token for {market.slug}")
        px = round_to_tick(price, market.tick_size)
        shares = shares_for_notional(usd_size, px)
        client = self._ensure_client()
        resp = client.create_and_post_order(
            OrderArgs(token_id=token_id, price=px, size=float(shares), side=BUY),
            PartialCreateOrderOptions(tick_size=market.tick_size, neg_risk=market.neg_risk),
        )
        order_id = self._order_id(resp)
        if not order_id:
            raise PolymarketError(f"no order id in response: {resp}")
        return {"order_id": order_id, "token_id": token_id, "price": px, "shares": shares}

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
        """All-or-nothing market order. ``amount`` is dollars for a buy, shares for a sell."""
        client = self._ensure_client()
        args = MarketOrderArgs(
            token_id=token_id,
            amount=float(amount),
            side=BUY if action == "buy" else SELL,
            price=round_to_tick(price, tick_size),
        )
        signed = client.create_market_order(args, PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk))
        try:
            resp = client.post_order(signed, OrderType.FOK)
        except Exception as exc:
            msg = str(exc).lower()
            # A killed FOK is an unfilled order, not a transport failure.
            if "fully filled or killed" in msg or "couldn't be fully filled" in msg:
                return {"order_id": None, "filled": False, "status": "killed"}
            raise
        order_id = self._order_id(resp)
        status = str(resp.get("status", "")).lower() if isinstance(resp, dict) else ""
        success = bool(resp.get("success", True)) if isinstance(resp, dict) else False
        return {
            "order_id": order_id,
            "filled": bool(order_id) and success and status in ("matched", "filled", ""),
            "status": status,
        }

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        order = self._ensure_client().get_order(order_id)
        return order if isinstance(order, dict) else None

    def order_fill(self, order_id: str) -> tuple[float, str | None]:
        """(size matched, token id) for a placed order."""
        order = self.get_order(order_id)
        if order is None:
            return 0.0, None
        token = order.get("asset_id") or order.get("token_id")
        return _to_float(order.get("size_matched"), 0.0), (str(token) if token else None)

    def token_balance(self, token_id: str) -> float:
        resp = self._ensure_client().get_balance_allowance(
            BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
        )
        raw = _to_float(resp.get("balance") if isinstance(resp, dict) else None, 0.0)
        return raw / TOKEN_DECIMALS
