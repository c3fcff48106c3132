from datetime import datetime, timezone

import httpx
from py_clob_client.http_helpers import helpers as clob_http

from updown_bot.polymarket import (
    PolyMarket,
    decode_outcome_prices,
    round_to_tick,
    shares_for_notional,
    window_end_from_slug,
    window_start_from_slug,
    winning_outcome_index,
)


def test_window_start_from_slug_epoch_suffix() -> None:
    # 1771019100 == 2026-02-13T21:45:00Z
    dt = window_start_from_slug("btc-updown-5m-1771019100")
    assert dt == datetime(2026, 2, 13, 21, 45, 0, tzinfo=timezone.utc)


def test_window_start_returns_none_for_invalid() -> None:
    assert window_start_from_slug("") is None
    assert window_start_from_slug("btc-updown-5m-") is None
    assert window_start_from_slug("btc-updown-5m-abc") is None


def test_window_end_uses_slug_duration() -> None:
    assert window_end_from_slug("eth-updown-5m-1771019100") == datetime(2026, 2, 13, 21, 50, tzinfo=timezone.utc)
    assert window_end_from_slug("eth-updown-15m-1771019100") == datetime(2026, 2, 13, 22, 0, tzinfo=timezone.utc)
    assert window_end_from_slug("nope") is None


def test_outcome_decode() -> None:
    assert decode_outcome_prices('["1", "0"]') == ["1", "0"]
    assert decode_outcome_prices(["0", "1"]) == ["0", "1"]
    assert decode_outcome_prices("garbage") == []

    assert winning_outcome_index('["1", "0"]') == 0
    assert winning_outcome_index('["0", "1"]') == 1
    # Not final while prices are still trading.
    assert winning_outcome_index('["0.97", "0.03"]') is None
    assert winning_outcome_index('["1"]') is None


def test_token_for_uses_outcome_names() -> None:
    market = PolyMarket(
        slug="btc-updown-5m-1771019100",
        token_ids=("tok-down", "tok-up"),
        outcome_prices=("0.5", "0.5"),
        outcomes=("Down", "Up"),
        neg_risk=False,
        tick_size="0.01",
        min_size=5.0,
        closed=False,
    )
    assert market.token_for("yes") == "tok-up"
    assert market.token_for("no") == "tok-down"

    unnamed = PolyMarket(
        slug="x",
        token_ids=("a", "b"),
        outcome_prices=(),
        outcomes=(),
        neg_risk=False,
        tick_size="0.01",
        min_size=5.0,
        closed=False,
    )
    assert unnamed.token_for("yes") == "a"
    assert unnamed.token_for("no") == "b"


def test_order_sizing_helpers() -> None:
    assert round_to_tick(0.5649, "0.01") == 0.56
    assert round_to_tick(0.5649, "0.001") == 0.565
    assert shares_for_notional(5.0, 0.97) == 5
    # Never below the $1 minimum notional.
    assert shares_for_notional(0.5, 0.5) == 2


def test_clob_transport_hook_exists() -> None:
    # The proxy setup replaces this module-level client.
    assert isinstance(clob_http._http_client, httpx.Client)
