from __future__ import annotations

import sqlite3
import time

from . import db


def now_ms() -> int:
    return int(time.time() * 1000)


def asset_scope(asset: str) -> str:
    return f"asset:{asset}"


def agent_scope(agent: str, asset: str) -> str:
    return f"agent:{agent}:{asset}"


def tier_scope(bot: str, asset: str, tier: str) -> str:
    return f"tier:{bot}:{asset}:{tier}"


def early_guard_scope(bot: str) -> str:
    return f"early_guard:{bot}"


class BlockBook:
    """Cooldowns shared between agent processes through the store.

    Every check reads the stored deadline and compares it with live time, so a
    block set by another process is honoured on the next tick. Writes only ever
    extend a deadline.
    """

    def __init__(self, conn: sqlite3.Connection, clock=now_ms) -> None:
        self.conn = conn
        self.clock = clock

    def until(self, scope: str) -> int:
        return db.block_until(self.conn, scope)

    def is_blocked(self, scope: str, at_ms: int | None = None) -> bool:
        at = self.clock() if at_ms is None else at_ms
        return at < self.until(scope)

    def remaining_seconds(self, scope: str) -> int:
        left = self.until(scope) - self.clock()
        return max(0, left // 1000)

    def block_for(self, scope: str, minutes: float, from_ms: int | None = None) -> int:
        start = self.clock() if from_ms is None else from_ms
        until = start + int(minutes * 60_000)
        stored = db.extend_block(self.conn, scope, until)
        print(f"block scope={scope} minutes={minutes:g} until_ms={stored}")
        return stored

    # Threshold family helpers.

    def asset_blocked(self, asset: str, at_ms: int | None = None) -> bool:
        return self.is_blocked(asset_scope(asset), at_ms)

    def agent_blocked(self, agent: str, asset: str, at_ms: int | None = None) -> bool:
        return self.is_blocked(agent_scope(agent, asset), at_ms)

    # Tiered family helpers.

    def tier_blocked(self, bot: str, asset: str, tier: str, at_ms: int | None = None) -> bool:
        return self.is_blocked(tier_scope(bot, asset, tier), at_ms)

    def early_guard_active(self, bot: str, at_ms: int | None = None) -> bool:
        return self.is_blocked(early_guard_scope(bot), at_ms)

    def active(self, prefix: str = "") -> dict[str, int]:
        current = self.clock()
        return {
            scope: until
            for scope, until in db.blocks_with_prefix(self.conn, prefix).items()
            if until > current
        }


def private_book(clock=now_ms) -> BlockBook:
    """A book only this process sees; other agents never read its blocks."""
    conn = db.connect_memory()
    db.init_db(conn)
    return BlockBook(conn, clock)
