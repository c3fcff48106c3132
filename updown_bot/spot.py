from __future__ import annotations

import statistics
from collections import deque

import requests

from .config import Settings


class PriceUnavailable(RuntimeError):
    pass


class SpotPriceClient:
    def __init__(self, settings: Settings, timeout: int = 4):
        self.settings = settings
        self.timeout = timeout
        self.session = requests.Session()

    def _binance(self, asset: str) -> float | None:
        try:
            resp = self.session.get(
                self.settings.binance_ticker_url,
                params={"symbol": f"{asset.upper()}USDT"},
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                return None
            payload = resp.json()
            return float(payload["price"])
        except (requests.RequestException, ValueError, KeyError, TypeError):
            return None

    def _coinbase(self, asset: str) -> float | None:
        try:
            resp = self.session.get(
                self.settings.coinbase_ticker_url.format(asset=asset.upper()),
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                return None
            payload = resp.json()
            # Coinbase endpoint can return either {price} or nested under data.
            if isinstance(payload, dict) and "price" in payload:
                return float(payload["price"])
            data = payload.get("data", {}) if isinstance(payload, dict) else {}
            if isinstance(data, dict) and "amount" in data:
                return float(data["amount"])
            return None
        except (requests.RequestException, ValueError, TypeError):
            return None

    def price(self, asset: str) -> float:
        values = [x for x in (self._binance(asset), self._coinbase(asset)) if x is not None and x > 0]
        if not values:
            raise PriceUnavailable(f"no spot price for {asset}")
        if len(values) == 1:
            return values[0]
        return statistics.median(values)


class PriceTape:
    """Rolling per-asset (ms, price) history."""

    def __init__(self, keep_seconds: int = 360):
        self.keep_ms = keep_seconds * 1000
        self._points: dict[str, deque[tuple[int, float]]] = {}

    def record(self, asset: str, at_ms: int, price: float) -> None:
        points = self._points.setdefault(asset, deque())
        points.append((at_ms, float(price)))
        cutoff = at_ms - self.keep_ms
        while points and points[0][0] < cutoff:
            points.popleft()

    def latest(self, asset: str) -> float | None:
        points = self._points.get(asset)
        return points[-1][1] if points else None

    def span_ms(self, asset: str) -> int:
        points = self._points.get(asset)
        if not points or len(points) < 2:
            return 0
        return points[-1][0] - points[0][0]

    def price_near(self, asset: str, target_ms: int, tolerance_ms: int | None = None) -> float | None:
        points = self._points.get(asset)
        if not points:
            return None
        at, price = min(points, key=lambda p: abs(p[0] - target_ms))
        if tolerance_ms is not None and abs(at - target_ms) > tolerance_ms:
            return None
        return price

    def momentum(self, asset: str, now_ms: int, lookback_seconds: int = 60) -> float | None:
        """Fractional change versus the sample closest to ``lookback_seconds`` ago."""
        points = self._points.get(asset)
        if not points or len(points) < 2:
            return None
        lookback_ms = lookback_seconds * 1000
        if now_ms - points[0][0] < lookback_ms:
            return None
        past = self.price_near(asset, now_ms - lookback_ms)
        if not past:
            return None
        current = points[-1][1]
        return (current - past) / past
