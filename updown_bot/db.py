from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def connect_memory() -> sqlite3.Connection:
    """A private store for state that must not be shared between processes."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        create table if not exists bot_config (
          id text primary key,
          emergency_off integer not null default 0,
          position_size_kalshi real not null default 1,
          position_size_polymarket real not null default 5,
          b3_block_min real,
          b2_high_spread_threshold_pct real,
          b2_high_spread_block_min real,
          b3_early_high_spread_pct real,
          b3_early_high_spread_block_min real,
          updated_at text not null default (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
        );

        create table if not exists bot_position_sizes (
          bot text not null,
          asset text not null,
          size_kalshi real,
          size_polymarket real,
          primary key (bot, asset)
        );

        create table if not exists spread_thresholds (
          bot text not null,
          asset text not null,
          threshold_pct real not null,
          primary key (bot, asset)
        );

        create table if not exists tier_spreads (
          bot text not null,
          asset text not null,
          tier text not null,
          spread_pct real not null,
          primary key (bot, asset, tier)
        );

        create table if not exists tier_settings (
          bot text primary key,
          position_size real,
          early_guard_spread_pct real,
          early_guard_cooldown_min real,
          block_minutes_json text,
          updated_at text not null default (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
        );

        create table if not exists positions (
          id integer primary key autoincrement,
          entered_at text not null,
          bot text not null,
          asset text not null,
          venue text not null check (venue in ('kalshi','polymarket')),
          strike_spread_pct real not null,
          position_size real not null,
          ticker_or_slug text,
          order_id text,
          raw text,
          outcome text check (outcome in ('win','loss','no_fill')),
          resolved_at text
        );
        create index if not exists idx_positions_bot_asset_entered on positions(bot, asset, entered_at);
        create index if not exists idx_positions_outcome on positions(outcome);

        create table if not exists blocks (
          scope text primary key,
          blocked_until_ms integer not null,
          updated_at text not null
        );

        create table if not exists bankroll_state (
          bot text primary key,
          bankroll real not null,
          peak_bankroll real not null,
          daily_start_bankroll real not null,
          daily_start_date text not null,
          consecutive_losses integer not null default 0,
          cooldown_until_ms integer not null default 0,
          wins integer not null default 0,
          losses integer not null default 0,
          tier_config_json text,
          updated_at text not null
        );

        create table if not exists open_positions (
          bot text not null,
          asset text not null,
          payload text not null,
          updated_at text not null,
          primary key (bot, asset)
        );

        create table if not exists error_log (
          id integer primary key autoincrement,
          created_at text not null,
          message text not null,
          context text,
          stack text
        );

        create table if not exists poly_skip_log (
          id integer primary key autoincrement,
          created_at text not null,
          bot text not null,
          asset text not null,
          reason text not null,
          kalshi_placed integer not null default 0
        );
        """
    )
    conn.commit()
    _ensure_bankroll_columns(conn)


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"pragma table_info({table})").fetchall()
    return {str(r[1]) for r in rows}


def _ensure_bankroll_columns(conn: sqlite3.Connection) -> None:
    cols = _table_columns(conn, "bankroll_state")
    wanted: list[tuple[str, str]] = [
        ("wins", "integer not null default 0"),
        ("losses", "integer not null default 0"),
        ("tier_config_json", "text"),
    ]
    for name, typ in wanted:
        if name in cols:
            continue
        # SQLite has no ADD COLUMN IF NOT EXISTS; do it manually.
        conn.execute(f"alter table bankroll_state add column {name} {typ}")
    conn.commit()


def _loads(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


# --- control rows ---------------------------------------------------------


def get_bot_config(conn: sqlite3.Connection, group: str = "default") -> dict[str, Any]:
    row = conn.execute("select * from bot_config where id = ?", (group,)).fetchone()
    return dict(row) if row else {}


def upsert_bot_config(conn: sqlite3.Connection, group: str, values: dict[str, Any]) -> None:
    allowed = {
        "emergency_off",
        "position_size_kalshi",
        "position_size_polymarket",
        "b3_block_min",
        "b2_high_spread_threshold_pct",
        "b2_high_spread_block_min",
        "b3_early_high_spread_pct",
        "b3_early_high_spread_block_min",
    }
    unknown = set(values) - allowed
    if unknown:
        raise ValueError(f"unknown bot_config columns: {sorted(unknown)}")
    conn.execute("insert or ignore into bot_config(id) values(?)", (group,))
    for name, value in values.items():
        conn.execute(
            f"update bot_config set {name} = ?, updated_at = ? where id = ?",
            (value, utcnow_iso(), group),
        )
    conn.commit()


def set_emergency_off(conn: sqlite3.Connection, off: bool, group: str = "default") -> None:
    upsert_bot_config(conn, group, {"emergency_off": 1 if off else 0})


def is_emergency_off(conn: sqlite3.Connection, group: str = "default") -> bool:
    row = conn.execute("select emergency_off from bot_config where id = ?", (group,)).fetchone()
    return bool(row and row["emergency_off"])


def position_size(conn: sqlite3.Connection, venue: str, bot: str, asset: str, default: float) -> float:
    column = "size_kalshi" if venue == "kalshi" else "size_polymarket"
    row = conn.execute(
        f"select {column} as size from bot_position_sizes where bot = ? and asset = ?",
        (bot, asset),
    ).fetchone()
    if row is not None and row["size"] is not None:
        return float(row["size"])
    return float(default)


def set_position_size(
    conn: sqlite3.Connection,
    bot: str,
    asset: str,
    size_kalshi: float | None = None,
    size_polymarket: float | None = None,
) -> None:
    conn.execute(
        """
        insert into bot_position_sizes(bot, asset, size_kalshi, size_polymarket)
        values(?, ?, ?, ?)
        on conflict(bot, asset) do update set
          size_kalshi=coalesce(excluded.size_kalshi, bot_position_sizes.size_kalshi),
          size_polymarket=coalesce(excluded.size_polymarket, bot_position_sizes.size_polymarket)
        """,
        (bot, asset, size_kalshi, size_polymarket),
    )
    conn.commit()


def spread_threshold_overrides(conn: sqlite3.Connection) -> dict[tuple[str, str], float]:
    rows = conn.execute("select bot, asset, threshold_pct from spread_thresholds").fetchall()
    return {(str(r["bot"]), str(r["asset"])): float(r["threshold_pct"]) for r in rows}


def set_spread_threshold(conn: sqlite3.Connection, bot: str, asset: str, threshold_pct: float) -> None:
    conn.execute(
        """
        insert into spread_thresholds(bot, asset, threshold_pct) values(?, ?, ?)
        on conflict(bot, asset) do update set threshold_pct=excluded.threshold_pct
        """,
        (bot, asset, float(threshold_pct)),
    )
    conn.commit()


def tier_overrides(conn: sqlite3.Connection, bot: str) -> tuple[dict[tuple[str, str], float], dict[str, Any]]:
    spreads = {
        (str(r["asset"]), str(r["tier"])): float(r["spread_pct"])
        for r in conn.execute(
            "select asset, tier, spread_pct from tier_spreads where bot = ?", (bot,)
        ).fetchall()
    }
    row = conn.execute("select * from tier_settings where bot = ?", (bot,)).fetchone()
    settings: dict[str, Any] = {}
    if row is not None:
        for key in ("position_size", "early_guard_spread_pct", "early_guard_cooldown_min"):
            if row[key] is not None:
                settings[key] = float(row[key])
        blocks = _loads(row["block_minutes_json"])
        if isinstance(blocks, dict):
            settings["block_minutes"] = blocks
    return spreads, settings


def set_tier_spread(conn: sqlite3.Connection, bot: str, asset: str, tier: str, spread_pct: float) -> None:
    conn.execute(
        """
        insert into tier_spreads(bot, asset, tier, spread_pct) values(?, ?, ?, ?)
        on conflict(bot, asset, tier) do update set spread_pct=excluded.spread_pct
        """,
        (bot, asset, tier, float(spread_pct)),
    )
    conn.commit()


def set_tier_settings(conn: sqlite3.Connection, bot: str, values: dict[str, Any]) -> None:
    block_minutes = values.get("block_minutes")
    conn.execute(
        """
        insert into tier_settings(
          bot, position_size, early_guard_spread_pct, early_guard_cooldown_min, block_minutes_json, updated_at
        ) values(?, ?, ?, ?, ?, ?)
        on conflict(bot) do update set
          position_size=coalesce(excluded.position_size, tier_settings.position_size),
          early_guard_spread_pct=coalesce(excluded.early_guard_spread_pct, tier_settings.early_guard_spread_pct),
          early_guard_cooldown_min=coalesce(excluded.early_guard_cooldown_min, tier_settings.early_guard_cooldown_min),
          block_minutes_json=coalesce(excluded.block_minutes_json, tier_settings.block_minutes_json),
          updated_at=excluded.updated_at
        """,
        (
            bot,
            values.get("position_size"),
            values.get("early_guard_spread_pct"),
            values.get("early_guard_cooldown_min"),
            json.dumps(block_minutes, sort_keys=True) if block_minutes is not None else None,
            utcnow_iso(),
        ),
    )
    conn.commit()


# --- positions --------------------------------------------------------------


def insert_position(conn: sqlite3.Connection, position: dict[str, Any]) -> int:
    """Append a placed position. Logged even for zero size or unknown fill so the resolver records the truth."""
    cur = conn.execute(
        """
        insert into positions(
          entered_at, bot, asset, venue, strike_spread_pct, position_size,
          ticker_or_slug, order_id, raw
        ) values(?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            position.get("entered_at") or utcnow_iso(),
            position["bot"],
            position["asset"],
            position["venue"],
            float(position["strike_spread_pct"]),
            float(position["position_size"]),
            position.get("ticker_or_slug"),
            position.get("order_id"),
            json.dumps(position["raw"], sort_keys=True) if position.get("raw") is not None else None,
        ),
    )
    conn.commit()
    return int(cur.lastrowid)


def _position_from_row(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    out["raw"] = _loads(row["raw"])
    return out


def get_position(conn: sqlite3.Connection, position_id: int) -> dict[str, Any] | None:
    row = conn.execute("select * from positions where id = ?", (position_id,)).fetchone()
    return _position_from_row(row) if row else None


def positions_in_window(
    conn: sqlite3.Connection,
    bots: tuple[str, ...],
    window_start_iso: str,
) -> set[str]:
    """Keys like ``B1-BTC`` for every (bot, asset) already placed since window start."""
    if not bots:
        return set()
    placeholders = ",".join(["?"] * len(bots))
    rows = conn.execute(
        f"""
        select distinct bot, asset
        from positions
        where bot in ({placeholders})
          and entered_at >= ?
        """,
        (*bots, window_start_iso),
    ).fetchall()
    return {f"{r['bot']}-{r['asset']}" for r in rows}


def count_positions_since(conn: sqlite3.Connection, bot: str, asset: str, since_iso: str) -> int:
    row = conn.execute(
        "select count(*) as c from positions where bot = ? and asset = ? and entered_at >= ?",
        (bot, asset, since_iso),
    ).fetchone()
    return int(row["c"] if row else 0)


def unresolved_positions(conn: sqlite3.Connection, venue: str | None = None) -> list[dict[str, Any]]:
    if venue is None:
        rows = conn.execute(
            "select * from positions where outcome is null order by entered_at asc"
        ).fetchall()
    else:
        rows = conn.execute(
            "select * from positions where outcome is null and venue = ? order by entered_at asc",
            (venue,),
        ).fetchall()
    return [_position_from_row(r) for r in rows]


def set_outcome(conn: sqlite3.Connection, position_id: int, outcome: str, resolved_at: str | None = None) -> bool:
    if outcome not in ("win", "loss", "no_fill"):
        raise ValueError(f"invalid outcome {outcome}")
    cur = conn.execute(
        """
        update positions
        set outcome = ?,
            resolved_at = ?
        where id = ?
          and outcome is null
        """,
        (outcome, resolved_at or utcnow_iso(), position_id),
    )
    conn.commit()
    return cur.rowcount > 0


def record_exit(conn: sqlite3.Connection, position_id: int, exit_detail: dict[str, Any]) -> None:
    row = conn.execute("select raw from positions where id = ?", (position_id,)).fetchone()
    if row is None:
        raise ValueError(f"unknown position {position_id}")
    raw = _loads(row["raw"]) or {}
    raw.update(exit_detail)
    conn.execute(
        "update positions set raw = ? where id = ?",
        (json.dumps(raw, sort_keys=True), position_id),
    )
    conn.commit()


# --- blocks -----------------------------------------------------------------


def extend_block(conn: sqlite3.Connection, scope: str, blocked_until_ms: int) -> int:
    """Extend-only write: the stored deadline never moves backwards."""
    conn.execute(
        """
        insert into blocks(scope, blocked_until_ms, updated_at) values(?, ?, ?)
        on conflict(scope) do update set
          blocked_until_ms=max(blocks.blocked_until_ms, excluded.blocked_until_ms),
          updated_at=excluded.updated_at
        """,
        (scope, int(blocked_until_ms), utcnow_iso()),
    )
    conn.commit()
    return block_until(conn, scope)


def block_until(conn: sqlite3.Connection, scope: str) -> int:
    row = conn.execute("select blocked_until_ms from blocks where scope = ?", (scope,)).fetchone()
    return int(row["blocked_until_ms"]) if row else 0


def blocks_with_prefix(conn: sqlite3.Connection, prefix: str) -> dict[str, int]:
    rows = conn.execute(
        "select scope, blocked_until_ms from blocks where scope like ?", (f"{prefix}%",)
    ).fetchall()
    return {str(r["scope"]): int(r["blocked_until_ms"]) for r in rows}


# --- bankroll and open position -----------------------------------------------


def load_bankroll(conn: sqlite3.Connection, bot: str) -> dict[str, Any] | None:
    row = conn.execute("select * from bankroll_state where bot = ?", (bot,)).fetchone()
    if row is None:
        return None
    out = dict(row)
    out["tier_config"] = _loads(row["tier_config_json"])
    return out


def save_bankroll(conn: sqlite3.Connection, bot: str, state: dict[str, Any]) -> None:
    conn.execute(
        """
        insert into bankroll_state(
          bot, bankroll, peak_bankroll, daily_start_bankroll, daily_start_date,
          consecutive_losses, cooldown_until_ms, wins, losses, tier_config_json, updated_at
        ) values(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        on conflict(bot) do update set
          bankroll=excluded.bankroll,
          peak_bankroll=excluded.peak_bankroll,
          daily_start_bankroll=excluded.daily_start_bankroll,
          daily_start_date=excluded.daily_start_date,
          consecutive_losses=excluded.consecutive_losses,
          cooldown_until_ms=excluded.cooldown_until_ms,
          wins=excluded.wins,
          losses=excluded.losses,
          tier_config_json=coalesce(excluded.tier_config_json, bankroll_state.tier_config_json),
          updated_at=excluded.updated_at
        """,
        (
            bot,
            float(state["bankroll"]),
            float(state["peak_bankroll"]),
            float(state["daily_start_bankroll"]),
            str(state["daily_start_date"]),
            int(state.get("consecutive_losses", 0)),
            int(state.get("cooldown_until_ms", 0)),
            int(state.get("wins", 0)),
            int(state.get("losses", 0)),
            json.dumps(state["tier_config"], sort_keys=True) if state.get("tier_config") is not None else None,
            utcnow_iso(),
        ),
    )
    conn.commit()


def reset_bankroll(conn: sqlite3.Connection, bot: str, starting_bankroll: float, tier_config: dict | None = None) -> None:
    conn.execute("delete from bankroll_state where bot = ?", (bot,))
    save_bankroll(
        conn,
        bot,
        {
            "bankroll": starting_bankroll,
            "peak_bankroll": starting_bankroll,
            "daily_start_bankroll": starting_bankroll,
            "daily_start_date": datetime.now(timezone.utc).date().isoformat(),
            "tier_config": tier_config,
        },
    )


def save_open_position(conn: sqlite3.Connection, bot: str, asset: str, payload: dict[str, Any]) -> None:
    conn.execute(
        """
        insert into open_positions(bot, asset, payload, updated_at) values(?, ?, ?, ?)
        on conflict(bot, asset) do update set
          payload=excluded.payload,
          updated_at=excluded.updated_at
        """,
        (bot, asset, json.dumps(payload, sort_keys=True), utcnow_iso()),
    )
    conn.commit()


def load_open_positions(conn: sqlite3.Connection, bot: str) -> dict[str, Any]:
    rows = conn.execute("select asset, payload from open_positions where bot = ?", (bot,)).fetchall()
    return {str(r["asset"]): _loads(r["payload"]) for r in rows}


def load_open_position(conn: sqlite3.Connection, bot: str, asset: str) -> dict[str, Any] | None:
    row = conn.execute(
        "select payload from open_positions where bot = ? and asset = ?", (bot, asset)
    ).fetchone()
    if row is None:
        return None
    payload = _loads(row["payload"])
    return payload if isinstance(payload, dict) else None


def clear_open_position(conn: sqlite3.Connection, bot: str, asset: str) -> None:
    conn.execute("delete from open_positions where bot = ? and asset = ?", (bot, asset))
    conn.commit()


# --- operator logs ------------------------------------------------------------


def log_error(conn: sqlite3.Connection, message: str, context: dict[str, Any] | None, stack: str | None) -> None:
    conn.execute(
        "insert into error_log(created_at, message, context, stack) values(?, ?, ?, ?)",
        (utcnow_iso(), message, json.dumps(context, sort_keys=True, default=str) if context else None, stack),
    )
    conn.commit()


def log_poly_skip(conn: sqlite3.Connection, bot: str, asset: str, reason: str, kalshi_placed: bool) -> None:
    conn.execute(
        "insert into poly_skip_log(created_at, bot, asset, reason, kalshi_placed) values(?, ?, ?, ?, ?)",
        (utcnow_iso(), bot, asset, reason, 1 if kalshi_placed else 0),
    )
    conn.commit()


def recent_errors(conn: sqlite3.Connection, limit: int = 20) -> list[dict[str, Any]]:
    rows = conn.execute(
        "select * from error_log order by id desc limit ?", (int(limit),)
    ).fetchall()
    out = []
    for r in rows:
        item = dict(r)
        item["context"] = _loads(r["context"])
        out.append(item)
    return out
