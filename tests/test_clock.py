from datetime import datetime, timezone

from updown_bot.clock import (
    is_blackout,
    poly_slug,
    threshold_phase,
    to_ms,
    window_at,
    window_key,
)

# 1771019100 == 2026-02-13T21:45:00Z, aligned to both 5m and 15m.
START_MS = 1771019100 * 1000


def test_window_is_epoch_aligned() -> None:
    w5 = window_at(START_MS + 123_456, "5m")
    assert w5.start_ms == START_MS
    assert w5.end_ms == START_MS + 300_000

    w15 = window_at(START_MS + 899_999, "15m")
    assert w15.start_ms == START_MS
    assert w15.ms_left(START_MS + 899_999) == 1

    # The boundary itself belongs to the next window.
    assert window_at(START_MS + 300_000, "5m").start_ms == START_MS + 300_000


def test_window_seconds_and_minutes() -> None:
    w = window_at(START_MS, "15m")
    now = START_MS + 13 * 60_000
    assert w.seconds_into(now) == 780.0
    assert w.minutes_left(now) == 2.0


def test_threshold_phases_are_nested() -> None:
    def phase_at(minutes_left: float):
        return threshold_phase(START_MS + int((15 - minutes_left) * 60_000))

    early = phase_at(9)
    assert early.early
    assert early.active == frozenset()

    assert phase_at(7).active == frozenset({"B3"})
    assert phase_at(4).active == frozenset({"B2", "B3"})

    late = phase_at(2)
    assert late.active == frozenset({"B1", "B2", "B3"})
    assert not late.market_order

    final = phase_at(0.5)
    assert final.market_order
    assert final.is_active("B1")


def test_blackout_weekdays_only() -> None:
    monday = datetime(2026, 2, 16, 15, 5, tzinfo=timezone.utc)
    saturday = datetime(2026, 2, 14, 15, 5, tzinfo=timezone.utc)
    assert is_blackout(monday, True)
    assert not is_blackout(monday, False)
    assert not is_blackout(saturday, True)
    assert not is_blackout(monday.replace(minute=15), True)


def test_slug_and_window_key() -> None:
    w = window_at(START_MS + 10_000, "5m")
    assert poly_slug("BTC", w) == "btc-updown-5m-1771019100"
    assert window_key("B2", "ETH", w.end_ms) == f"{START_MS + 300_000}-B2-ETH"


def test_to_ms_handles_offsets() -> None:
    dt = datetime(2026, 2, 13, 21, 45, tzinfo=timezone.utc)
    assert to_ms(dt) == START_MS
