from __future__ import annotations

import asyncio
import json
import sys
import threading
import time
from typing import Any, Callable

import websockets
from websockets.exceptions import WebSocketException

from .config import Settings
from .spot import PriceUnavailable

SUBSCRIBE = {
    "action": "subscribe",
    "subscriptions": [{"topic": "crypto_prices_chainlink", "type": "*"}],
}
SYMBOLS = {"btc/usd": "BTC", "eth/usd": "ETH", "sol/usd": "SOL", "xrp/usd": "XRP"}
RECONNECT_DELAY_SECONDS = 3.0


class ChainlinkFeed:
    """Chainlink reference prices streamed from Polymarket's RTDS socket.

    The socket runs on a daemon thread with its own event loop. ``price`` is
    called from the agent tick and only reads the latest value under a lock,
    so it is a drop-in for ``SpotPriceClient``. A value older than
    ``chainlink_max_age_seconds`` counts as missing; there is no fallback feed.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self.url = settings.chainlink_ws_url
        self.max_age_seconds = settings.chainlink_max_age_seconds
        self.silent_reconnect_seconds = settings.chainlink_silent_reconnect_seconds
        self.clock = clock
        self._prices: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._running = False
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name="chainlink-feed", daemon=True)
        self._thread.start()
        print(f"chainlink start url={self.url} max_age={self.max_age_seconds}s")

    def stop(self) -> None:
        self._running = False

    def handle_message(self, raw: Any) -> str | None:
        """Store a price update; returns the asset it was for, or None if ignored."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(msg, dict) or msg.get("topic") != "crypto_prices_chainlink":
            return None
        payload = msg.get("payload")
        if not isinstance(payload, dict):
            return None
        asset = SYMBOLS.get(str(payload.get("symbol") or "").lower())
        if asset is None:
            return None
        try:
            value = float(payload.get("value"))
        except (TypeError, ValueError):
            return None
        if value <= 0:
            return None
        with self._lock:
            self._prices[asset] = (value, self.clock())
        return asset

    def age_seconds(self, asset: str) -> float | None:
        with self._lock:
            entry = self._prices.get(asset.upper())
        if entry is None:
            return None
        return self.clock() - entry[1]

    def price(self, asset: str) -> float:
        with self._lock:
            entry = self._prices.get(asset.upper())
        if entry is None:
            raise PriceUnavailable(f"no chainlink price for {asset}")
        value, received_at = entry
        age = self.clock() - received_at
        if age > self.max_age_seconds:
            raise PriceUnavailable(f"chainlink price for {asset} is {age:.0f}s old")
        return value

    def _run(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        while self._running:
            try:
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    await ws.send(json.dumps(SUBSCRIBE))
                    print("chainlink connected")
                    last_price = self.clock()
                    while self._running:
                        raw = await asyncio.wait_for(ws.recv(), timeout=self.silent_reconnect_seconds)
                        if self.handle_message(raw) is not None:
                            last_price = self.clock()
                        elif self.clock() - last_price > self.silent_reconnect_seconds:
                            # Open but only acks and pings: treat as silent.
                            raise asyncio.TimeoutError
            except asyncio.TimeoutError:
                print(f"chainlink silent seconds={self.silent_reconnect_seconds} action=reconnect", file=sys.stderr)
            except (WebSocketException, OSError) as exc:
                print(f"chainlink error={exc!r} action=reconnect", file=sys.stderr)
            if self._running:
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)
