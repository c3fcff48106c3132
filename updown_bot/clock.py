from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

FIVE_MIN_MS = 5 * 60 * 1000
FIFTEEN_MIN_MS = 15 * 60 * 1000

DURATION_MS = {"5m": FIVE_MIN_MS, "15m": FIFTEEN_MIN_MS}

# Minutes-left upper bounds for the nested threshold phases; each is active in (0, bound].
PHASE_BOUNDS_MIN = {"B1": 2.5, "B2": 5.0, "B3": 8.0}


@dataclass(frozen=True)
class TradingWindow:
    start_ms: int
    end_ms: int
    duration_class: str

    @property
    def start_unix(self) -> int:
        return self.start_ms // 1000

    def ms_left(self, now_ms: int) -> int:
        return max(0, self.end_ms - now_ms)

    def seconds_into(self, now_ms: int) -> float:
        return (now_ms - self.start_ms) / 1000.0

    def minutes_left(self, now_ms: int) -> float:
        return self.ms_left(now_ms) / 60_000.0


@dataclass(frozen=True)
class Phase:
    minutes_left: float
    active: frozenset[str]
    market_order: bool
    early: bool

    def is_active(self, agent: str) -> bool:
        return agent in self.active


def to_ms(now: datetime) -> int:
    return int(now.astimezone(timezone.utc).timestamp() * 1000)


def window_at(now_ms: int, duration_class: str = "15m") -> TradingWindow:
    length = DURATION_MS[duration_class]
    # Anchored to the epoch so lengths that do not divide a day never drift.
    start = now_ms - (now_ms % length)
    return TradingWindow(start_ms=start, end_ms=start + length, duration_class=duration_class)


def current_window(now: datetime, duration_class: str = "15m") -> TradingWindow:
    return window_at(to_ms(now), duration_class)


def threshold_phase(now_ms: int, market_order_minutes: float = 1.0) -> Phase:
    """Classify a 15-minute window position into the threshold agents' phases.

    B3 runs in the last 8 minutes, B2 in the last 5 and B1 in the last 2.5.
    ``early`` covers everything before B3 opens; ``market_order`` is the final
    B1 sub-window in which B1 crosses the book instead of resting a limit.
    """
    left = window_at(now_ms, "15m").minutes_left(now_ms)
    active = frozenset(agent for agent, bound in PHASE_BOUNDS_MIN.items() if 0 < left <= bound)
    return Phase(
        minutes_left=left,
        active=active,
        market_order=0 < left <= market_order_minutes,
        early=left > PHASE_BOUNDS_MIN["B3"],
    )


def is_blackout(now: datetime, enabled: bool) -> bool:
    """15:00-15:15 UTC, Monday to Friday."""
    if not enabled:
        return False
    now = now.astimezone(timezone.utc)
    if now.weekday() > 4:
        return False
    return now.hour == 15 and now.minute < 15


def poly_slug(asset: str, window: TradingWindow) -> str:
    # Polymarket keys up/down markets by window start.
    return f"{asset.lower()}-updown-{window.duration_class}-{window.start_unix}"


def window_key(agent: str, asset: str, window_end_ms: int) -> str:
    return f"{window_end_ms}-{agent}-{asset}"
