from __future__ import annotations

import base64
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .clock import current_window
from .config import Settings, kalshi_private_key_pem

SERIES_BY_ASSET = {"BTC": "KXBTC15M", "ETH": "KXETH15M", "SOL": "KXSOL15M"}
ASSET_BY_SERIES = {v: k for k, v in SERIES_BY_ASSET.items()}

# Ticker strikes outside these bounds are treated as garbage (e.g. SOL "15").
STRIKE_RANGE = {
    "BTC": (1_000.0, 10_000_000.0),
    "ETH": (100.0, 1_000_000.0),
    "SOL": (1.0, 100_000.0),
}

_MONTHS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}
_DATE_RE = re.compile(r"^(\d{2})([A-Z]{3})(\d{2})(\d{2})(\d{2})$")
_EASTERN = ZoneInfo("America/New_York")


class KalshiError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ParsedTicker:
    ticker: str
    series: str
    asset: str
    expiration: datetime
    strike: float


@dataclass(frozen=True)
class KalshiContract:
    ticker: str
    asset: str
    strike: float
    yes_bid: float | None
    no_bid: float | None
    expiration: datetime | None

    def bid_for(self, side: str) -> float | None:
        return self.yes_bid if side == "yes" else self.no_bid


def _parse_iso(ts: str) -> datetime:
    return datetime.fromisoformat(ts.replace("Z", "+00:00")).astimezone(timezone.utc)


def _to_float(value: Any, default: float | None = 0.0) -> float | None:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_ticker(ticker: str) -> ParsedTicker | None:
    """KXBTC15M-26FEB091445-97000 -> series, asset, close time, strike.

    The date segment is US Eastern time; the result is converted to UTC.
    """
    parts = ticker.split("-")
    if len(parts) != 3:
        return None
    series, date_part, strike_part = parts
    asset = ASSET_BY_SERIES.get(series)
    if asset is None:
        return None
    m = _DATE_RE.match(date_part)
    if not m:
        return None
    month = _MONTHS.get(m.group(2))
    if month is None:
        return None
    try:
        expiration = datetime(
            2000 + int(m.group(1)), month, int(m.group(3)), int(m.group(4)), int(m.group(5)),
            tzinfo=_EASTERN,
        ).astimezone(timezone.utc)
        strike = float(strike_part.lstrip("T"))
    except ValueError:
        return None
    return ParsedTicker(ticker=ticker, series=series, asset=asset, expiration=expiration, strike=strike)


def is_reasonable_strike(asset: str, strike: float | None) -> bool:
    if strike is None or strike <= 0:
        return False
    lo, hi = STRIKE_RANGE.get(asset, (0.0, float("inf")))
    return lo <= strike <= hi


def choose_strike(asset: str, ticker: str, floor_strike: Any) -> float | None:
    """The ticker suffix is exact for the contract; floor_strike is only a fallback."""
    parsed = parse_ticker(ticker)
    if parsed is not None and is_reasonable_strike(asset, parsed.strike):
        return parsed.strike
    floor = _to_float(floor_strike, None)
    if is_reasonable_strike(asset, floor):
        return floor
    return None


def settlement_side(settlement: dict[str, Any]) -> str | None:
    """'yes' / 'no' for a final result, 'void' for void or scalar, None while pending."""
    result = str(settlement.get("market_result") or "").strip().lower()
    if result in ("yes", "no"):
        return result
    if result in ("void", "scalar"):
        return "void"
    return None


class KalshiClient:
    def __init__(self, settings: Settings, timeout: int = 10):
        self.settings = settings
        self.timeout = timeout
        self.session = requests.Session()
        self._private_key = None

    # --- public market data -------------------------------------------------

    def _list_markets(self, series: str, *, status: str = "open", limit: int = 200) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"series_ticker": series, "status": status, "limit": limit}
            if cursor:
                params["cursor"] = cursor
            resp = self.session.get(
                f"{self.settings.kalshi_base_url}/markets",
                params=params,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
            markets = payload.get("markets", []) if isinstance(payload, dict) else []
            if isinstance(markets, list):
                out.extend([m for m in markets if isinstance(m, dict)])
            cursor = payload.get("cursor") if isinstance(payload, dict) else None
            if not cursor:
                break
        return out

    def get_market(self, ticker: str) -> dict[str, Any] | None:
        resp = self.session.get(
            f"{self.settings.kalshi_base_url}/markets/{ticker}",
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            return None
        payload = resp.json()
        market = payload.get("market") if isinstance(payload, dict) else None
        return market if isinstance(market, dict) else None

    def current_ticker(self, asset: str, now: datetime) -> str | None:
        series = SERIES_BY_ASSET.get(asset)
        if series is None:
            return None
        target = current_window(now, "15m").end_ms / 1000.0
        best: str | None = None
        best_diff = float("inf")
        for m in self._list_markets(series):
            exp = m.get("close_time") or m.get("expiration_time")
            if not exp:
                continue
            try:
                diff = abs(_parse_iso(str(exp)).timestamp() - target)
            except ValueError:
                continue
            if diff < best_diff:
                best_diff = diff
                best = str(m.get("ticker") or "") or None
        return best

    def current_contract(self, asset: str, now: datetime) -> KalshiContract | None:
        ticker = self.current_ticker(asset, now)
        if not ticker:
            return None
        market = self.get_market(ticker)
        if market is None:
            return None
        strike = choose_strike(asset, ticker, market.get("floor_strike"))
        if strike is None:
            return None
        yes_bid = _to_float(market.get("yes_bid"), None)
        yes_ask = _to_float(market.get("yes_ask"), None)
        no_bid = _to_float(market.get("no_bid"), None)
        if no_bid is None and yes_ask is not None:
            no_bid = max(0.0, 100.0 - yes_ask)
        expiration = None
        close = market.get("close_time") or market.get("expiration_time")
        if close:
            try:
                expiration = _parse_iso(str(close))
            except ValueError:
                expiration = None
        return KalshiContract(
            ticker=ticker,
            asset=asset,
            strike=strike,
            yes_bid=yes_bid,
            no_bid=no_bid,
            expiration=expiration,
        )

    # --- signed portfolio endpoints -------------------------------------------

    def _key(self):
        if self._private_key is None:
            pem = kalshi_private_key_pem(self.settings)
            if not pem:
                raise KalshiError("kalshi private key is not configured")
            self._private_key = serialization.load_pem_private_key(pem.encode(), password=None)
        return self._private_key

    def sign(self, timestamp: str, method: str, path: str) -> str:
        message = f"{timestamp}{method}{path}".encode("utf-8")
        signature = self._key().sign(
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("utf-8")

    def _signed(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.settings.kalshi_base_url}{path}"
        # Signature covers the full API path (with /trade-api/v2) and no query string.
        signed_path = urlparse(url).path
        timestamp = str(int(time.time() * 1000))
        headers = {
            "KALSHI-ACCESS-KEY": self.settings.kalshi_key_id,
            "KALSHI-ACCESS-SIGNATURE": self.sign(timestamp, method, signed_path),
            "KALSHI-ACCESS-TIMESTAMP": timestamp,
            "Accept": "application/json",
        }
        resp = self.session.request(
            method,
            url,
            params=params,
            json=body,
            headers=headers,
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            raise KalshiError(
                f"kalshi {method} {path} -> {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code
            )
        payload = resp.json() if resp.content else {}
        return payload if isinstance(payload, dict) else {}

    def place_order(
        self,
        ticker: str,
        side: str,
        count: int,
        *,
        price_cents: int | None = None,
        market: bool = False,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ticker": ticker,
            "side": side,
            "action": "buy",
            "count": max(1, int(count)),
            "type": "market" if market else "limit",
        }
        if not market:
            # Exactly one of yes_price / no_price.
            body["yes_price" if side == "yes" else "no_price"] = int(round(price_cents if price_cents is not None else 50))
        payload = self._signed("POST", "/portfolio/orders", body=body)
        order = payload.get("order")
        if not isinstance(order, dict) or not order.get("order_id"):
            raise KalshiError(f"kalshi order response missing order_id: {payload}")
        return order

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        """The order, or None when Kalshi has no order with this id."""
        try:
            payload = self._signed("GET", f"/portfolio/orders/{order_id}")
        except KalshiError as exc:
            if exc.status_code == 404:
                return None
            raise
        order = payload.get("order")
        return order if isinstance(order, dict) else None

    def settlements(self, min_ts: int | None = None, limit: int = 200) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": limit}
            if min_ts is not None:
                params["min_ts"] = int(min_ts)
            if cursor:
                params["cursor"] = cursor
            payload = self._signed("GET", "/portfolio/settlements", params=params)
            rows = payload.get("settlements") or []
            out.extend([r for r in rows if isinstance(r, dict)])
            cursor = payload.get("cursor")
            if not cursor:
                break
        return out

    def settlement_map(self, lookback_days: int) -> dict[str, dict[str, Any]]:
        min_ts = int(time.time()) - lookback_days * 86_400
        return {str(s.get("ticker")): s for s in self.settlements(min_ts=min_ts) if s.get("ticker")}
