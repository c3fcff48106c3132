from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from . import db
from .clock import window_key


class EntryLedger:
    """Answers "has this (agent, asset) already entered this window?".

    A per-process set answers the common case. On a miss the store is asked
    for any position placed since the window started, which covers a process
    that restarted mid-window. The store check is eventually consistent:
    two processes racing inside the store's write latency can both enter.
    """

    def __init__(self, conn: sqlite3.Connection | None, check_store: bool = True) -> None:
        self.conn = conn
        self.check_store = check_store and conn is not None
        self._keys: set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def mark(self, agent: str, asset: str, window_end_ms: int) -> str:
        key = window_key(agent, asset, window_end_ms)
        self._keys.add(key)
        return key

    def has_entered(self, agent: str, asset: str, window_start_ms: int, window_end_ms: int) -> bool:
        key = window_key(agent, asset, window_end_ms)
        if key in self._keys:
            return True
        if not self.check_store:
            return False
        start_iso = datetime.fromtimestamp(window_start_ms / 1000, tz=timezone.utc).isoformat()
        placed = db.positions_in_window(self.conn, (agent,), start_iso)
        if f"{agent}-{asset}" in placed:
            self._keys.add(key)
            return True
        return False

    def prune(self, now_ms: int) -> int:
        """Drop keys whose window has already ended."""
        stale = {k for k in self._keys if int(k.split("-", 1)[0]) <= now_ms}
        self._keys -= stale
        return len(stale)
