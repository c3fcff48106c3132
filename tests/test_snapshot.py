import pytest

from updown_bot.snapshot import (
    build_snapshot,
    direction_from_side,
    passes_failsafe,
    side_from_spread,
    signed_spread_pct,
)


def test_spread_sign_gives_side() -> None:
    up = build_snapshot("BTC", 100.6, 100.0, 0)
    assert up.signed_spread_pct == pytest.approx(0.6)
    assert up.side == "yes"

    down = build_snapshot("BTC", 99.4, 100.0, 0)
    assert down.signed_spread_pct == pytest.approx(-0.6)
    assert down.side == "no"
    assert down.abs_spread_pct == pytest.approx(0.6)


def test_zero_spread_is_yes_but_fails_safe() -> None:
    assert side_from_spread(0.0) == "yes"
    assert not passes_failsafe(0.0, 2.0)


def test_failsafe_ceiling() -> None:
    assert passes_failsafe(1.99, 2.0)
    assert passes_failsafe(-2.0, 2.0)
    assert not passes_failsafe(2.01, 2.0)
    assert not passes_failsafe(-5.0, 2.0)


def test_invalid_strike_rejected() -> None:
    with pytest.raises(ValueError, match="invalid strike"):
        signed_spread_pct(100.0, 0.0)


def test_direction_from_side() -> None:
    assert direction_from_side("yes") == "up"
    assert direction_from_side("no") == "down"
