from dataclasses import replace
from datetime import datetime, timezone

import json

from updown_bot import db
from updown_bot.config import load_settings
from updown_bot.mirror import OrderMirror
from updown_bot.poly_threshold import PAUSE_GROUP, PolyThresholdAgent, is_balance_error, load_clone_config
from updown_bot.polymarket import PolyMarket
from updown_bot.spot import PriceUnavailable

START_MS = 1771019100 * 1000
OPEN = START_MS + 5_000
NOW = START_MS + 13 * 60_000
SLUG = "btc-updown-15m-1771019100"


def _at(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class FakeFeed:
    def __init__(self, **prices: float) -> None:
        self.prices = dict(prices)

    def price(self, asset):
        if asset not in self.prices:
            raise PriceUnavailable(f"no chainlink price for {asset}")
        return self.prices[asset]


class FakePoly:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple] = []

    def market_by_slug(self, slug):
        return PolyMarket(
            slug=slug,
            token_ids=("tok-up", "tok-down"),
            outcome_prices=("0.5", "0.5"),
            outcomes=("Up", "Down"),
            neg_risk=False,
            tick_size="0.01",
            min_size=5.0,
            closed=False,
        )

    def place_limit(self, market, side, price, usd_size):
        self.calls.append((market.slug, side, price, usd_size))
        if self.error is not None:
            raise self.error
        return {"order_id": f"0xpoly-{len(self.calls)}", "token_id": market.token_for(side), "price": price, "shares": 5}


def _setup(tmp_path, poly: FakePoly, feed: FakeFeed, **overrides):
    settings = replace(
        load_settings(), bot_root=tmp_path, poly_threshold_assets=("BTC",), blackout_enabled=False, **overrides
    )
    conn = db.connect_db(settings.db_path)
    db.init_db(conn)
    reports: list[dict] = []

    def report(conn, settings, exc, **context):
        reports.append({"error": str(exc), **context})

    mirror = OrderMirror(conn, settings, None, poly, True, report=report)  # type: ignore[arg-type]
    agent = PolyThresholdAgent(conn, settings, feed, mirror, report=report)  # type: ignore[arg-type]
    return settings, conn, agent, reports


def test_spread_is_measured_from_the_window_open(tmp_path) -> None:
    poly = FakePoly()
    feed = FakeFeed(BTC=100_000.0)
    settings, conn, agent, _ = _setup(tmp_path, poly, feed)

    assert not any(d.enter for d in agent.tick(_at(OPEN)))
    assert agent.window_open == {"BTC": 100_000.0}

    feed.prices["BTC"] = 100_600.0
    decisions = agent.tick(_at(NOW))

    assert [d.agent for d in decisions if d.enter] == ["B2c"]
    assert next(d for d in decisions if d.agent == "B1c").reason == "agent_blocked"
    assert poly.calls == [(SLUG, "yes", 0.97, 5.0)]
    row = conn.execute("select bot, venue, ticker_or_slug, raw from positions").fetchone()
    assert (row["bot"], row["venue"], row["ticker_or_slug"]) == ("B2c", "polymarket", SLUG)
    assert json.loads(row["raw"])["price_source"] == "chainlink"

    again = agent.tick(_at(NOW + 1_000))
    assert next(d for d in again if d.agent == "B2c").reason == "already_entered"
    assert len(poly.calls) == 1

    status = json.loads(settings.status_path(PAUSE_GROUP).read_text())
    assert status["agent"] == "B123c"
    assert status["window_open"] == {"BTC": 100_000.0}
    conn.close()


def test_a_late_start_waits_for_the_next_window(tmp_path) -> None:
    poly = FakePoly()
    _, conn, agent, _ = _setup(tmp_path, poly, FakeFeed(BTC=100_600.0))

    assert agent.tick(_at(NOW)) == []
    assert agent.window_open == {}
    assert poly.calls == []
    conn.close()


def test_blocks_stay_out_of_the_shared_store(tmp_path) -> None:
    poly = FakePoly()
    feed = FakeFeed(BTC=100_000.0)
    _, conn, agent, _ = _setup(tmp_path, poly, feed)
    agent.tick(_at(OPEN))
    feed.prices["BTC"] = 100_600.0
    agent.tick(_at(NOW))

    assert agent.blocks.agent_blocked("B1", "BTC", NOW)
    assert db.blocks_with_prefix(conn, "") == {}
    conn.close()


def test_own_pause_group(tmp_path) -> None:
    poly = FakePoly()
    feed = FakeFeed(BTC=100_000.0)
    settings, conn, agent, _ = _setup(tmp_path, poly, feed)
    db.set_emergency_off(conn, True)
    assert not load_clone_config(conn, settings).emergency_off

    db.set_emergency_off(conn, True, PAUSE_GROUP)
    assert agent.tick(_at(OPEN)) == []
    feed.prices["BTC"] = 100_600.0
    assert agent.tick(_at(NOW)) == []
    assert poly.calls == []
    status = json.loads(settings.status_path(PAUSE_GROUP).read_text())
    assert status["paused"] == "emergency_off"
    conn.close()


def test_balance_error_backs_off_entries(tmp_path) -> None:
    poly = FakePoly(error=RuntimeError("PolyApiException: not enough balance / allowance"))
    feed = FakeFeed(BTC=100_000.0)
    _, conn, agent, reports = _setup(tmp_path, poly, feed)
    agent.tick(_at(OPEN))
    feed.prices["BTC"] = 100_600.0

    agent.tick(_at(NOW))
    assert agent.backoff_until_ms == NOW + 5 * 60_000
    assert reports[0]["venue"] == "polymarket"

    later = agent.tick(_at(NOW + 30_000))
    assert next(d for d in later if d.agent == "B2c").reason == "balance_backoff"
    assert len(poly.calls) == 1
    conn.close()


def test_is_balance_error() -> None:
    assert is_balance_error("not enough balance / allowance")
    assert is_balance_error("Allowance too low")
    assert not is_balance_error("order crosses book")
    assert not is_balance_error(None)


def test_silent_feed_skips_the_rest_of_the_window(tmp_path) -> None:
    poly = FakePoly()
    feed = FakeFeed()
    _, conn, agent, reports = _setup(tmp_path, poly, feed, chainlink_reset_seconds=120)

    agent.tick(_at(OPEN))
    assert reports == []
    agent.tick(_at(OPEN + 121_000))
    assert reports == [
        {
            "error": "no chainlink price for 121s; no orders until the next window",
            "agent": "B123c",
            "stage": "chainlink",
            "window_end_ms": START_MS + 15 * 60_000,
        }
    ]

    feed.prices["BTC"] = 100_600.0
    assert agent.tick(_at(NOW)) == []
    assert poly.calls == []
    # One report per window.
    assert len(reports) == 1
    conn.close()
