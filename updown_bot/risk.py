from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass
from typing import Any

from . import db

MIN_BET = 5.0
DRAWDOWN_FLOOR = 200.0


@dataclass
class BankrollState:
    bankroll: float
    peak_bankroll: float
    daily_start_bankroll: float
    daily_start_date: str
    consecutive_losses: int = 0
    cooldown_until_ms: int = 0
    wins: int = 0
    losses: int = 0
    tier_config: dict[str, Any] | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "bankroll": self.bankroll,
            "peak_bankroll": self.peak_bankroll,
            "daily_start_bankroll": self.daily_start_bankroll,
            "daily_start_date": self.daily_start_date,
            "consecutive_losses": self.consecutive_losses,
            "cooldown_until_ms": self.cooldown_until_ms,
            "wins": self.wins,
            "losses": self.losses,
            "tier_config": self.tier_config,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BankrollState":
        return cls(
            bankroll=float(row["bankroll"]),
            peak_bankroll=float(row["peak_bankroll"]),
            daily_start_bankroll=float(row["daily_start_bankroll"]),
            daily_start_date=str(row["daily_start_date"]),
            consecutive_losses=int(row.get("consecutive_losses") or 0),
            cooldown_until_ms=int(row.get("cooldown_until_ms") or 0),
            wins=int(row.get("wins") or 0),
            losses=int(row.get("losses") or 0),
            tier_config=row.get("tier_config"),
        )


def fresh_state(initial_bankroll: float, today: str) -> BankrollState:
    return BankrollState(
        bankroll=initial_bankroll,
        peak_bankroll=initial_bankroll,
        daily_start_bankroll=initial_bankroll,
        daily_start_date=today,
    )


def load_state(conn: sqlite3.Connection, bot: str, initial_bankroll: float, today: str) -> BankrollState:
    row = db.load_bankroll(conn, bot)
    if row is None:
        return fresh_state(initial_bankroll, today)
    return BankrollState.from_row(row)


def save_state(conn: sqlite3.Connection, bot: str, state: BankrollState) -> None:
    db.save_bankroll(conn, bot, state.to_row())


def roll_daily(state: BankrollState, today: str) -> bool:
    if state.daily_start_date == today:
        return False
    state.daily_start_date = today
    state.daily_start_bankroll = state.bankroll
    return True


def can_trade(state: BankrollState, size: float, now_ms: int, min_bet: float = MIN_BET) -> tuple[bool, str]:
    if state.bankroll < min_bet:
        return False, "bust"
    if state.bankroll < size:
        return False, "insufficient_bankroll"
    if now_ms < state.cooldown_until_ms:
        return False, "cooldown"
    if state.bankroll < state.peak_bankroll * 0.5 and state.bankroll < DRAWDOWN_FLOOR:
        return False, "drawdown_pause"
    return True, "ok"


def win_rate(state: BankrollState) -> float:
    total = state.wins + state.losses
    if total < 10:
        return 0.52
    return state.wins / total


def size_position(state: BankrollState, mode: str, base_size: float, min_bet: float = MIN_BET) -> float:
    """Dollar size for the next entry.

    ``fixed`` always uses the configured size. ``kelly`` bets a fraction of the
    bankroll, capped by bankroll phase: flat minimum below $200, 15% up to
    $5000 and 10% above.
    """
    if mode != "kelly":
        return float(base_size)
    wr = win_rate(state)
    if wr < 0.45 or state.bankroll < DRAWDOWN_FLOOR:
        return min_bet
    cap = 0.15 if state.bankroll < 5000 else 0.10
    fraction = min(max(0.0, 2 * wr - 1), cap)
    bet = max(min_bet, math.floor(state.bankroll * fraction))
    return float(min(bet, state.bankroll))


def record_close(
    state: BankrollState,
    pnl: float,
    now_ms: int,
    loss_streak_limit: int = 5,
    cooldown_min: float = 15,
) -> BankrollState:
    state.bankroll += pnl
    state.peak_bankroll = max(state.peak_bankroll, state.bankroll)
    if pnl > 0:
        state.wins += 1
        state.consecutive_losses = 0
    else:
        state.losses += 1
        state.consecutive_losses += 1
        if state.consecutive_losses >= loss_streak_limit:
            state.cooldown_until_ms = now_ms + int(cooldown_min * 60_000)
            state.consecutive_losses = 0
    return state
