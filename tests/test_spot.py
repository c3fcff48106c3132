from dataclasses import replace

import pytest

from updown_bot.config import load_settings
from updown_bot.spot import PriceTape, PriceUnavailable, SpotPriceClient


def test_tape_momentum_needs_full_lookback() -> None:
    tape = PriceTape(keep_seconds=360)
    tape.record("BTC", 0, 100.0)
    tape.record("BTC", 30_000, 100.02)
    assert tape.momentum("BTC", 30_000, 60) is None

    tape.record("BTC", 60_000, 100.05)
    assert tape.momentum("BTC", 60_000, 60) == pytest.approx(0.0005)
    assert tape.momentum("ETH", 60_000, 60) is None


def test_tape_drops_old_points_and_finds_nearest() -> None:
    tape = PriceTape(keep_seconds=60)
    tape.record("ETH", 0, 2000.0)
    tape.record("ETH", 50_000, 2001.0)
    tape.record("ETH", 100_000, 2002.0)
    # The first point fell out of the 60 s history.
    assert tape.span_ms("ETH") == 50_000
    assert tape.latest("ETH") == 2002.0
    assert tape.price_near("ETH", 52_000) == 2001.0
    assert tape.price_near("ETH", 75_000, tolerance_ms=10_000) is None


def test_price_uses_median_of_sources(tmp_path) -> None:
    client = SpotPriceClient(replace(load_settings(), bot_root=tmp_path))
    client._binance = lambda asset: 100.0  # type: ignore[method-assign]
    client._coinbase = lambda asset: 102.0  # type: ignore[method-assign]
    assert client.price("BTC") == 101.0

    client._coinbase = lambda asset: None  # type: ignore[method-assign]
    assert client.price("BTC") == 100.0

    client._binance = lambda asset: None  # type: ignore[method-assign]
    with pytest.raises(PriceUnavailable, match="no spot price for BTC"):
        client.price("BTC")
