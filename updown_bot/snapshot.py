from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MarketSnapshot:
    asset: str
    reference_price: float
    strike_price: float
    signed_spread_pct: float
    quoted_bid_pct: float | None
    captured_at_ms: int
    market_ref: str | None = None

    @property
    def side(self) -> str:
        return side_from_spread(self.signed_spread_pct)

    @property
    def abs_spread_pct(self) -> float:
        return abs(self.signed_spread_pct)


def signed_spread_pct(reference_price: float, strike_price: float) -> float:
    if strike_price <= 0:
        raise ValueError(f"invalid strike {strike_price}")
    return (reference_price - strike_price) / strike_price * 100.0


def side_from_spread(spread_pct: float) -> str:
    return "yes" if spread_pct >= 0 else "no"


def direction_from_side(side: str) -> str:
    return "up" if side == "yes" else "down"


def passes_failsafe(spread_pct: float, ceiling_pct: float) -> bool:
    """Zero or implausibly wide spreads come from bad or stale feeds."""
    magnitude = abs(spread_pct)
    if magnitude == 0:
        return False
    return magnitude <= ceiling_pct


def build_snapshot(
    asset: str,
    reference_price: float,
    strike_price: float,
    captured_at_ms: int,
    quoted_bid_pct: float | None = None,
    market_ref: str | None = None,
) -> MarketSnapshot:
    return MarketSnapshot(
        asset=asset,
        reference_price=float(reference_price),
        strike_price=float(strike_price),
        signed_spread_pct=signed_spread_pct(reference_price, strike_price),
        quoted_bid_pct=quoted_bid_pct,
        captured_at_ms=captured_at_ms,
        market_ref=market_ref,
    )
