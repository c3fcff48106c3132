import json
from dataclasses import replace

import pytest

from updown_bot.chainlink import ChainlinkFeed
from updown_bot.config import load_settings
from updown_bot.spot import PriceUnavailable


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _message(symbol: str, value, topic: str = "crypto_prices_chainlink") -> str:
    return json.dumps({"topic": topic, "type": "update", "payload": {"symbol": symbol, "value": value}})


def _feed(clock: Clock) -> ChainlinkFeed:
    return ChainlinkFeed(replace(load_settings(), chainlink_max_age_seconds=60), clock=clock)


def test_price_updates_are_keyed_by_asset() -> None:
    clock = Clock()
    feed = _feed(clock)
    assert feed.handle_message(_message("btc/usd", 97123.5)) == "BTC"
    assert feed.handle_message(_message("ETH/USD", "2650.1")) == "ETH"
    assert feed.price("BTC") == 97123.5
    assert feed.price("eth") == 2650.1
    assert feed.age_seconds("BTC") == 0.0


def test_other_messages_are_ignored() -> None:
    feed = _feed(Clock())
    assert feed.handle_message(_message("btc/usd", 97000.0, topic="crypto_prices")) is None
    assert feed.handle_message(_message("doge/usd", 0.2)) is None
    assert feed.handle_message(_message("btc/usd", 0)) is None
    assert feed.handle_message(_message("btc/usd", "n/a")) is None
    assert feed.handle_message("not json") is None
    assert feed.handle_message(json.dumps({"topic": "crypto_prices_chainlink"})) is None
    assert feed.age_seconds("BTC") is None


def test_stale_price_counts_as_missing() -> None:
    clock = Clock()
    feed = _feed(clock)
    with pytest.raises(PriceUnavailable):
        feed.price("BTC")

    feed.handle_message(_message("btc/usd", 97000.0))
    clock.now += 60
    assert feed.price("BTC") == 97000.0
    clock.now += 1
    with pytest.raises(PriceUnavailable):
        feed.price("BTC")
