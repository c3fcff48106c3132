from dataclasses import replace
from datetime import datetime, timezone

import pytest

from updown_bot import db
from updown_bot.blocks import BlockBook
from updown_bot.clock import window_at
from updown_bot.config import load_settings
from updown_bot.polymarket import PolyMarket
from updown_bot.spot import PriceTape
from updown_bot.thresholds import TierAgentConfig, load_tier_config
from updown_bot.tiered_engine import (
    EXIT_FORCED,
    EXIT_SL,
    EXIT_TP,
    OpenPosition,
    TieredAgent,
    exit_reason,
    select_tier,
)

START_MS = 1771019100 * 1000
END_MS = START_MS + 300_000

MARKET = PolyMarket(
    slug="btc-updown-5m-1771019100",
    token_ids=("tok-up", "tok-down"),
    outcome_prices=("0.5", "0.5"),
    outcomes=("Up", "Down"),
    neg_risk=False,
    tick_size="0.01",
    min_size=5.0,
    closed=False,
)


def _momentum_cfg(**overrides) -> TierAgentConfig:
    base = TierAgentConfig(
        bot="B4",
        pause_group="B4",
        signal="momentum",
        exit_style="tp_sl",
        duration_class="5m",
        assets=("BTC",),
        take_profit_pct=0.08,
        stop_loss_pct=0.05,
    )
    return replace(base, **overrides)


def _position(**overrides) -> OpenPosition:
    base = OpenPosition(
        bot="B4",
        asset="BTC",
        side="yes",
        token_id="tok-up",
        slug=MARKET.slug,
        order_id="0xbuy",
        entry_ref_price=0.50,
        contracts=10.0,
        size_usd=5.0,
        entry_asset_price=97_000.0,
        window_start_ms=START_MS,
        window_end_ms=END_MS,
        exit_style="tp_sl",
    )
    return replace(base, **overrides)


class FakePoly:
    def __init__(self, mid: float | None = 0.5, balance: float = 10.0, fill: bool = True) -> None:
        self.mid = mid
        self.balance = balance
        self.fill = fill
        self.fok_calls: list[tuple] = []
        self.limit_error: Exception | None = None

    def market_by_slug(self, slug):
        return replace(MARKET, slug=slug)

    def midpoint(self, token_id):
        return self.mid

    def place_fok(self, token_id, action, amount, price, *, tick_size="0.01", neg_risk=False):
        self.fok_calls.append((token_id, action, amount, price))
        if not self.fill:
            return {"order_id": None, "filled": False, "status": "killed"}
        return {"order_id": f"0x{action}", "filled": True, "status": "matched"}

    def token_balance(self, token_id):
        return self.balance

    def place_limit(self, market, side, price, usd_size):
        if self.limit_error is not None:
            raise self.limit_error
        return {"order_id": "0xlimit", "token_id": market.token_for(side), "price": price, "shares": 5}

    def order_fill(self, order_id):
        return 5.0, "tok-up"


class FakeSpot:
    def price(self, asset):
        return 100.0


def _agent(tmp_path, bot="B4", poly=None, **settings_overrides) -> TieredAgent:
    settings = replace(load_settings(), bot_root=tmp_path, initial_bankroll=10.0, **settings_overrides)
    conn = db.connect_db(settings.db_path)
    db.init_db(conn)
    reports: list[dict] = []

    def report(conn, settings, exc, **context):
        reports.append({"error": str(exc), **context})

    agent = TieredAgent(conn, settings, bot, poly or FakePoly(), FakeSpot(), report=report)  # type: ignore[arg-type]
    agent.reports = reports  # type: ignore[attr-defined]
    return agent


def test_exit_priority() -> None:
    cfg = _momentum_cfg()
    pos = _position()
    assert exit_reason(pos, 0.545, 120_000, cfg) == EXIT_TP
    assert exit_reason(pos, 0.475, 120_000, cfg) == EXIT_SL
    assert exit_reason(pos, 0.51, 10_000, cfg) == EXIT_FORCED
    assert exit_reason(pos, 0.51, 120_000, cfg) is None
    # Take-profit wins even when the window is nearly over.
    assert exit_reason(pos, 0.60, 1_000, cfg) == EXIT_TP


def test_open_position_validation() -> None:
    payload = _position().to_payload()
    restored = OpenPosition.from_payload(payload)
    assert restored == _position()
    assert restored.direction == "up"

    assert OpenPosition.from_payload({**payload, "entry_ref_price": 1.2}) is None
    assert OpenPosition.from_payload({**payload, "entry_ref_price": 0}) is None
    assert OpenPosition.from_payload({**payload, "token_id": ""}) is None
    assert OpenPosition.from_payload({**payload, "side": "up"}) is None
    assert OpenPosition.from_payload(None) is None


def test_select_tier_priority_and_blocks(tmp_path) -> None:
    conn = db.connect_db(tmp_path / "bot.db")
    db.init_db(conn)
    cfg = load_tier_config(conn, replace(load_settings(), bot_root=tmp_path), "B4S")
    blocks = BlockBook(conn, clock=lambda: START_MS)

    assert select_tier(cfg, "BTC", 0.5, 120, blocks, START_MS).name == "T3"
    assert select_tier(cfg, "BTC", -0.25, 200, blocks, START_MS).name == "T2"
    assert select_tier(cfg, "BTC", 0.15, 200, blocks, START_MS) is None
    assert select_tier(cfg, "BTC", 0.0, 260, blocks, START_MS) is None

    blocks.block_for("tier:B4S:BTC:T2", 15, START_MS)
    assert select_tier(cfg, "BTC", 0.25, 200, blocks, START_MS) is None
    assert select_tier(cfg, "BTC", 0.25, 260, blocks, START_MS).name == "T1"
    conn.close()


def test_restart_discards_invalid_open_position(tmp_path) -> None:
    agent = _agent(tmp_path)
    db.save_open_position(agent.conn, "B4", "BTC", {**_position().to_payload(), "entry_ref_price": 1.5})
    agent.start()
    assert agent.positions == {}
    assert db.load_open_position(agent.conn, "B4", "BTC") is None


def test_restart_restores_valid_open_position(tmp_path) -> None:
    agent = _agent(tmp_path)
    db.save_open_position(agent.conn, "B4", "BTC", _position().to_payload())
    agent.start()
    assert agent.positions["BTC"].entry_ref_price == 0.5
    assert agent.bankroll.bankroll == 10.0


def test_exit_conserves_bankroll(tmp_path) -> None:
    poly = FakePoly(balance=8.0)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    pos = _position()
    pos.position_id = db.insert_position(
        agent.conn,
        {
            "bot": "B4",
            "asset": "BTC",
            "venue": "polymarket",
            "strike_spread_pct": 0.04,
            "position_size": 5,
            "ticker_or_slug": pos.slug,
            "order_id": pos.order_id,
            "raw": {"side": "yes"},
        },
    )
    agent.positions["BTC"] = pos
    db.save_open_position(agent.conn, "B4", "BTC", pos.to_payload())

    assert agent.exit_position(pos, EXIT_TP, 0.56, START_MS + 60_000, _momentum_cfg())

    # Re-queried balance (8), not the recorded 10 contracts, is sold and booked.
    assert poly.fok_calls[-1][:3] == ("tok-up", "sell", 8.0)
    assert agent.bankroll.bankroll == pytest.approx(10.0 + (0.56 - 0.50) * 8.0)
    assert agent.bankroll.peak_bankroll == pytest.approx(agent.bankroll.bankroll)
    assert agent.positions == {}
    assert db.load_open_position(agent.conn, "B4", "BTC") is None
    raw = db.get_position(agent.conn, pos.position_id)["raw"]
    assert raw["exit_reason"] == "TP"
    assert raw["pnl"] == pytest.approx(0.48)
    assert db.load_bankroll(agent.conn, "B4")["wins"] == 1


def test_failed_exit_retries_unless_forced(tmp_path) -> None:
    poly = FakePoly(fill=False)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    cfg = _momentum_cfg()

    pos = _position()
    agent.positions["BTC"] = pos
    assert not agent.exit_position(pos, EXIT_SL, 0.47, START_MS + 60_000, cfg)
    assert "BTC" in agent.positions

    assert not agent.exit_position(pos, EXIT_FORCED, 0.47, END_MS - 10_000, cfg)
    assert agent.positions == {}
    assert agent.bankroll.bankroll == 10.0


def test_manage_exits_on_take_profit(tmp_path) -> None:
    poly = FakePoly(mid=0.545)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    pos = _position()
    agent.positions["BTC"] = pos
    agent.manage(pos, _momentum_cfg(), START_MS + 60_000)
    assert agent.positions == {}
    assert poly.fok_calls[-1][1] == "sell"


def test_momentum_entry_persists_open_position(tmp_path) -> None:
    poly = FakePoly(mid=0.52, balance=9.4)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    window = window_at(START_MS + 30_000, "5m")

    pos = agent.enter_scalp("BTC", "yes", 0.05, 5.0, _momentum_cfg(), window, START_MS + 30_000)

    assert pos is not None
    assert pos.entry_ref_price == 0.52
    assert pos.contracts == 9.4
    assert poly.fok_calls[-1] == ("tok-up", "buy", 5.0, 0.54)
    stored = db.load_open_position(agent.conn, "B4", "BTC")
    assert OpenPosition.from_payload(stored) == pos
    row = db.get_position(agent.conn, pos.position_id)
    assert row["venue"] == "polymarket"
    assert row["ticker_or_slug"] == "btc-updown-5m-1771019100"
    assert agent.trades_this_window["BTC"] == 1


def test_entry_skips_out_of_range_mid(tmp_path) -> None:
    poly = FakePoly(mid=0.97)
    agent = _agent(tmp_path, poly=poly)
    window = window_at(START_MS + 30_000, "5m")
    assert agent.enter_scalp("BTC", "yes", 0.05, 5.0, _momentum_cfg(), window, START_MS + 30_000) is None
    assert poly.fok_calls == []


def test_momentum_signal_enters_from_tape(tmp_path) -> None:
    poly = FakePoly(mid=0.5)
    agent = _agent(tmp_path, poly=poly, position_size_usd=5.0)
    agent.start()
    cfg = replace(_momentum_cfg(), position_size=5.0)
    now = START_MS + 90_000
    window = window_at(now, "5m")
    agent.tape = PriceTape(360)
    agent.tape.record("BTC", now - 60_000, 100.0)
    agent.tape.record("BTC", now, 99.9)

    pos = agent.try_enter("BTC", cfg, window, now)
    assert pos is not None
    assert pos.side == "no"
    assert poly.fok_calls[-1][0] == "tok-down"


def test_hold_attempt_failure_blocks_narrower_tiers(tmp_path) -> None:
    poly = FakePoly()
    poly.limit_error = RuntimeError("not enough balance")
    agent = _agent(tmp_path, bot="B5", poly=poly)
    agent.blocks = BlockBook(agent.conn, clock=lambda: START_MS)
    cfg = load_tier_config(agent.conn, agent.settings, "B5")
    t3 = cfg.tiers[0]
    window = window_at(START_MS + 120_000, "5m")

    assert agent.enter_hold("ETH", "yes", 0.4, t3, 5.0, cfg, window, START_MS + 120_000) is None
    assert agent.blocks.tier_blocked("B5", "ETH", "T1", START_MS + 120_000)
    assert agent.blocks.tier_blocked("B5", "ETH", "T2", START_MS + 120_000)
    assert agent.reports[0]["tier"] == "T3"


def test_hold_fill_is_one_per_window(tmp_path) -> None:
    agent = _agent(tmp_path, bot="B4S")
    agent.start()
    cfg = load_tier_config(agent.conn, agent.settings, "B4S")
    t2 = cfg.tiers[1]
    window = window_at(START_MS + 200_000, "5m")

    pos = agent.enter_hold("BTC", "no", -0.3, t2, 5.0, cfg, window, START_MS + 200_000)
    assert pos is not None
    assert pos.entry_ref_price == 0.97
    assert agent.ledger.has_entered("B4S", "BTC", window.start_ms, window.end_ms)
    assert agent.blocks.tier_blocked("B4S", "BTC", "T1", START_MS + 200_000)


def test_hold_settles_against_window_open(tmp_path) -> None:
    agent = _agent(tmp_path, bot="B4S")
    agent.start()
    pos = _position(bot="B4S", exit_style="hold", tier="T2", entry_ref_price=0.97, window_open_price=100.0)
    pos.position_id = db.insert_position(
        agent.conn,
        {
            "bot": "B4S",
            "asset": "BTC",
            "venue": "polymarket",
            "strike_spread_pct": 0.3,
            "position_size": 5,
            "ticker_or_slug": pos.slug,
            "order_id": pos.order_id,
            "raw": {"side": "yes"},
        },
    )
    agent.positions["BTC"] = pos
    agent.tape.record("BTC", END_MS, 100.2)

    assert agent.settle_hold(pos, END_MS + 3_000)
    # Five shares filled at 0.97 pay out $1 each.
    assert agent.bankroll.bankroll == pytest.approx(10.0 + 0.03 * 5)
    raw = db.get_position(agent.conn, pos.position_id)["raw"]
    assert raw["local_settlement"]["won"] is True
    assert "exit_reason" not in raw
    assert agent.positions == {}


def test_early_guard_pauses_agent(tmp_path) -> None:
    agent = _agent(tmp_path, bot="B5")
    cfg = load_tier_config(agent.conn, agent.settings, "B5")
    window = window_at(START_MS + 30_000, "5m")
    agent.last_spreads = {"SOL": -0.5}
    agent._check_early_guard(cfg, window, START_MS + 30_000)
    assert agent.blocks.early_guard_active("B5", START_MS + 30_000 + 59 * 60_000)

    late = _agent(tmp_path / "late", bot="B5")
    late.last_spreads = {"SOL": -0.5}
    late._check_early_guard(cfg, window, START_MS + 150_000)
    assert not late.blocks.early_guard_active("B5", START_MS + 150_000)


def test_failed_take_profit_after_close_is_abandoned(tmp_path) -> None:
    poly = FakePoly(mid=0.60, fill=False)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    pos = _position()
    agent.positions["BTC"] = pos
    db.save_open_position(agent.conn, "B4", "BTC", pos.to_payload())

    agent.manage(pos, _momentum_cfg(), END_MS + 60_000)

    assert len(poly.fok_calls) == 1
    assert agent.positions == {}
    assert db.load_open_position(agent.conn, "B4", "BTC") is None
    # Nothing tracked, so later ticks neither retry the sell nor block the asset.
    assert agent.bankroll.bankroll == 10.0


def test_failed_stop_loss_inside_deadline_is_abandoned(tmp_path) -> None:
    poly = FakePoly(mid=0.40, fill=False)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    pos = _position()
    agent.positions["BTC"] = pos

    assert not agent.exit_position(pos, EXIT_SL, 0.40, END_MS - 5_000, _momentum_cfg())
    assert agent.positions == {}


def test_emergency_pause_still_manages_open_position(tmp_path) -> None:
    poly = FakePoly(mid=0.545)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    db.set_emergency_off(agent.conn, True, "B4")
    pos = _position()
    agent.positions["BTC"] = pos

    agent.tick(datetime.fromtimestamp((START_MS + 60_000) / 1000, tz=timezone.utc))

    # The take-profit sell ran; no buy was attempted while paused.
    assert [call[1] for call in poly.fok_calls] == ["sell"]
    assert agent.positions == {}


def test_shutdown_keeps_open_position_when_close_fails(tmp_path) -> None:
    poly = FakePoly(mid=0.5, fill=False)
    agent = _agent(tmp_path, poly=poly)
    agent.start()
    pos = _position(window_end_ms=10**13)
    agent.positions["BTC"] = pos
    db.save_open_position(agent.conn, "B4", "BTC", pos.to_payload())

    agent.shutdown()

    assert len(poly.fok_calls) == 1
    assert poly.fok_calls[0][1] == "sell"
    assert OpenPosition.from_payload(db.load_open_position(agent.conn, "B4", "BTC")) is not None


def test_paper_entry_records_the_simulated_fill(tmp_path) -> None:
    poly = FakePoly(mid=0.52, balance=9.4)
    agent = _agent(tmp_path, poly=poly, paper_mode=True)
    agent.start()
    window = window_at(START_MS + 30_000, "5m")

    pos = agent.enter_scalp("BTC", "yes", 0.05, 5.0, _momentum_cfg(), window, START_MS + 30_000)

    assert pos is not None
    raw = db.get_position(agent.conn, pos.position_id)["raw"]
    assert raw["paper"] is True
    assert raw["filled_shares"] == 9.4
