from __future__ import annotations

import sqlite3
from collections import deque
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Callable

import requests

from . import db, risk
from .alerts import report_error
from .blocks import BlockBook, early_guard_scope, tier_scope
from .chainlink import ChainlinkFeed
from .clock import TradingWindow, poly_slug, to_ms, window_at
from .config import Settings
from .idempotency import EntryLedger
from .polymarket import PolymarketClient, PolymarketError, round_to_tick
from .snapshot import direction_from_side, side_from_spread, signed_spread_pct
from .spot import PriceTape, PriceUnavailable, SpotPriceClient
from .status import write_status
from .thresholds import TierAgentConfig, TierSpec, load_tier_config

EXIT_TP = "TP"
EXIT_SL = "SL"
EXIT_FORCED = "FORCED"
EXIT_SHUTDOWN = "SHUTDOWN"
SCALP_EXIT_REASONS = (EXIT_TP, EXIT_SL, EXIT_FORCED, EXIT_SHUTDOWN)

STATE_OPEN = "open"
STATE_EXITING = "exiting"


@dataclass
class OpenPosition:
    bot: str
    asset: str
    side: str
    token_id: str
    slug: str
    order_id: str
    entry_ref_price: float
    contracts: float
    size_usd: float
    entry_asset_price: float
    window_start_ms: int
    window_end_ms: int
    exit_style: str
    tier: str | None = None
    window_open_price: float | None = None
    tick_size: str = "0.01"
    neg_risk: bool = False
    position_id: int | None = None
    state: str = STATE_OPEN

    @property
    def direction(self) -> str:
        return direction_from_side(self.side)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Any) -> "OpenPosition | None":
        """Rebuild a persisted position, or None when it cannot be trusted."""
        if not isinstance(payload, dict):
            return None
        required = (
            "bot", "asset", "side", "token_id", "slug", "order_id", "entry_ref_price",
            "contracts", "window_start_ms", "window_end_ms", "exit_style",
        )
        if any(payload.get(k) in (None, "") for k in required):
            return None
        try:
            ref = float(payload["entry_ref_price"])
        except (TypeError, ValueError):
            return None
        if not 0 < ref < 1:
            return None
        if payload["side"] not in ("yes", "no"):
            return None
        known = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in payload.items() if k in known})
        except TypeError:
            return None


def exit_reason(pos: OpenPosition, mid: float, ms_left: int, cfg: TierAgentConfig) -> str | None:
    """TP first, then SL, then the forced exit near window close."""
    change = (mid - pos.entry_ref_price) / pos.entry_ref_price
    if change >= cfg.take_profit_pct:
        return EXIT_TP
    if change <= -cfg.stop_loss_pct:
        return EXIT_SL
    if ms_left < cfg.forced_exit_seconds * 1000:
        return EXIT_FORCED
    return None


def select_tier(
    cfg: TierAgentConfig,
    asset: str,
    spread_pct: float,
    seconds_into: float,
    blocks: BlockBook,
    now_ms: int | None = None,
) -> TierSpec | None:
    """Highest-priority tier that is timed in, unblocked and exceeded by the spread."""
    magnitude = abs(spread_pct)
    if magnitude == 0:
        return None
    for tier in cfg.tiers:
        if not tier.timing_open(seconds_into):
            continue
        if blocks.tier_blocked(cfg.bot, asset, tier.name, now_ms):
            continue
        threshold = cfg.tier_spread(asset, tier.name)
        if threshold is None:
            continue
        if magnitude >= threshold:
            return tier
    return None


def apply_tier_blocks(cfg: TierAgentConfig, asset: str, tier: TierSpec, blocks: BlockBook, now_ms: int | None = None) -> None:
    for narrower, minutes in tier.blocks.items():
        if minutes > 0:
            blocks.block_for(tier_scope(cfg.bot, asset, narrower), minutes, now_ms)


class TieredAgent:
    """Generic single-venue agent: momentum or spread-tier entries, TP/SL or hold exits."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Settings,
        bot: str,
        poly: PolymarketClient,
        spot: SpotPriceClient | ChainlinkFeed,
        tape: PriceTape | None = None,
        blocks: BlockBook | None = None,
        ledger: EntryLedger | None = None,
        config_loader: Callable[[], TierAgentConfig] | None = None,
        report: Callable[..., None] = report_error,
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.bot = bot
        self.poly = poly
        self.spot = spot
        self.tape = tape or PriceTape(settings.price_history_seconds)
        self.blocks = blocks or BlockBook(conn)
        self.ledger = ledger or EntryLedger(conn)
        self.config_loader = config_loader or (lambda: load_tier_config(conn, settings, bot))
        self.report = report

        self.positions: dict[str, OpenPosition] = {}
        self.bankroll = risk.fresh_state(settings.initial_bankroll, _today())
        self.window_start_ms = 0
        self.trades_this_window: dict[str, int] = {}
        self.window_open: dict[str, float] = {}
        self.samples: dict[str, deque[float]] = {}
        self.stale: set[str] = set()
        self.tick_count = 0
        self.last_spreads: dict[str, float] = {}

    # --- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        cfg = self.config_loader()
        self.bankroll = risk.load_state(self.conn, self.bot, self.settings.initial_bankroll, _today())
        self.bankroll.tier_config = cfg.snapshot()
        risk.save_state(self.conn, self.bot, self.bankroll)
        for asset, payload in db.load_open_positions(self.conn, self.bot).items():
            pos = OpenPosition.from_payload(payload)
            if pos is None:
                print(f"restore bot={self.bot} asset={asset} action=discard reason=invalid_open_position")
                db.clear_open_position(self.conn, self.bot, asset)
                continue
            pos.state = STATE_OPEN
            self.positions[asset] = pos
            print(
                f"restore bot={self.bot} asset={asset} side={pos.side} entry={pos.entry_ref_price:.3f} "
                f"contracts={pos.contracts:g}"
            )
        print(
            f"start bot={self.bot} signal={cfg.signal} exit={cfg.exit_style} assets={','.join(cfg.assets)} "
            f"bankroll={self.bankroll.bankroll:.2f} open={len(self.positions)}"
        )

    def shutdown(self) -> None:
        """One best-effort close of every scalping position; failures stay persisted."""
        if not self.positions:
            return
        cfg = self.config_loader()
        now_ms = to_ms(datetime.now(timezone.utc))
        for asset, pos in list(self.positions.items()):
            if pos.exit_style != "tp_sl":
                print(f"shutdown bot={self.bot} asset={asset} action=leave reason=hold_to_resolution")
                continue
            mid = self.poly.midpoint(pos.token_id) or pos.entry_ref_price
            closed = self.exit_position(pos, EXIT_SHUTDOWN, mid, now_ms, cfg)
            if not closed:
                print(f"shutdown bot={self.bot} asset={asset} action=keep reason=close_failed")

    # --- per tick ---------------------------------------------------------------

    def _roll_window(self, window: TradingWindow, cfg: TierAgentConfig) -> None:
        if window.start_ms == self.window_start_ms:
            return
        self.window_start_ms = window.start_ms
        self.window_open.clear()
        self.samples.clear()
        self.stale.clear()
        self.ledger.prune(window.start_ms)
        start_iso = datetime.fromtimestamp(window.start_ms / 1000, tz=timezone.utc).isoformat()
        # Count trades already placed this window so a restart cannot exceed the cap.
        self.trades_this_window = {
            asset: db.count_positions_since(self.conn, self.bot, asset, start_iso) for asset in cfg.assets
        }
        if risk.roll_daily(self.bankroll, _today()):
            risk.save_state(self.conn, self.bot, self.bankroll)

    def _record_prices(self, cfg: TierAgentConfig, window: TradingWindow, now_ms: int) -> dict[str, float]:
        prices: dict[str, float] = {}
        tolerance_ms = self.settings.window_open_tolerance_seconds * 1000
        for asset in cfg.assets:
            try:
                price = self.spot.price(asset)
            except PriceUnavailable as exc:
                self.report(self.conn, self.settings, exc, agent=self.bot, asset=asset, stage="spot_price")
                continue
            self.tape.record(asset, now_ms, price)
            prices[asset] = price
            if asset not in self.window_open:
                opened = self.tape.price_near(asset, window.start_ms, tolerance_ms)
                if opened:
                    self.window_open[asset] = opened
        return prices

    def _is_stale(self, asset: str, spread: float) -> bool:
        buf = self.samples.setdefault(asset, deque(maxlen=self.settings.stale_spread_samples))
        buf.append(spread)
        if asset not in self.stale and len(buf) == buf.maxlen and len(set(buf)) == 1:
            self.stale.add(asset)
            print(f"stale bot={self.bot} asset={asset} samples={buf.maxlen} action=skip_window")
        return asset in self.stale

    def _check_early_guard(self, cfg: TierAgentConfig, window: TradingWindow, now_ms: int) -> None:
        if cfg.signal != "spread" or cfg.early_guard_spread_pct is None:
            return
        if window.seconds_into(now_ms) > self.settings.early_guard_window_seconds:
            return
        for asset, spread in self.last_spreads.items():
            if abs(spread) >= cfg.early_guard_spread_pct:
                self.blocks.block_for(early_guard_scope(cfg.bot), cfg.early_guard_cooldown_min, now_ms)
                print(
                    f"early_guard bot={cfg.bot} asset={asset} spread={spread:.3f} "
                    f"threshold={cfg.early_guard_spread_pct} cooldown_min={cfg.early_guard_cooldown_min:g}"
                )
                return

    def tick(self, now: datetime) -> None:
        self.tick_count += 1
        now_ms = to_ms(now)
        cfg = self.config_loader()
        window = window_at(now_ms, cfg.duration_class)
        self._roll_window(window, cfg)
        prices = self._record_prices(cfg, window, now_ms)

        self.last_spreads = {}
        for asset, price in prices.items():
            opened = self.window_open.get(asset)
            if opened:
                self.last_spreads[asset] = signed_spread_pct(price, opened)

        # Open positions are managed even while entries are paused.
        for asset, pos in list(self.positions.items()):
            self.manage(pos, cfg, now_ms)

        paused_reason = None
        if cfg.emergency_off:
            paused_reason = "emergency_off"
        else:
            self._check_early_guard(cfg, window, now_ms)
            if self.blocks.early_guard_active(cfg.bot, now_ms):
                paused_reason = "early_guard"

        if paused_reason is None:
            for asset in cfg.assets:
                if asset in prices:
                    self.try_enter(asset, cfg, window, now_ms)
        elif self.tick_count % self.settings.heartbeat_ticks == 0:
            print(f"paused bot={self.bot} reason={paused_reason}")

        if self.tick_count % self.settings.heartbeat_ticks == 0:
            spreads = " ".join(f"{a}={s:.4f}" for a, s in sorted(self.last_spreads.items()))
            print(
                f"heartbeat bot={self.bot} bankroll={self.bankroll.bankroll:.2f} open={len(self.positions)} "
                f"secs_left={window.ms_left(now_ms) // 1000} {spreads}".rstrip()
            )
        write_status(
            self.settings.status_path(self.bot),
            self.bot,
            bankroll=self.bankroll.bankroll,
            peak_bankroll=self.bankroll.peak_bankroll,
            wins=self.bankroll.wins,
            losses=self.bankroll.losses,
            paused=paused_reason,
            open_positions={a: p.to_payload() for a, p in self.positions.items()},
            spreads=self.last_spreads,
            window_start_ms=window.start_ms,
        )

    # --- entries --------------------------------------------------------------------

    def try_enter(self, asset: str, cfg: TierAgentConfig, window: TradingWindow, now_ms: int) -> OpenPosition | None:
        if asset in self.positions:
            return None
        if self.trades_this_window.get(asset, 0) >= cfg.max_trades_per_window:
            return None
        seconds_into = window.seconds_into(now_ms)
        ms_left = window.ms_left(now_ms)

        size = risk.size_position(self.bankroll, self.settings.sizing_mode, cfg.position_size, self.settings.min_bet_usd)
        ok, why = risk.can_trade(self.bankroll, size, now_ms, self.settings.min_bet_usd)
        if not ok:
            if self.tick_count % self.settings.heartbeat_ticks == 0:
                print(f"skip bot={self.bot} asset={asset} reason={why} bankroll={self.bankroll.bankroll:.2f}")
            return None

        if cfg.signal == "momentum":
            if ms_left < cfg.min_entry_seconds_left * 1000 or seconds_into < cfg.settle_seconds:
                return None
            momentum = self.tape.momentum(asset, now_ms, cfg.momentum_lookback_seconds)
            if momentum is None or abs(momentum) < cfg.momentum_threshold:
                return None
            side = "yes" if momentum > 0 else "no"
            print(f"signal bot={self.bot} asset={asset} momentum={momentum * 100:.4f}% side={side}")
            return self.enter_scalp(asset, side, momentum * 100, size, cfg, window, now_ms)

        spread = self.last_spreads.get(asset)
        if spread is None or self._is_stale(asset, spread):
            return None
        if self.ledger.has_entered(self.bot, asset, window.start_ms, window.end_ms):
            return None
        tier = select_tier(cfg, asset, spread, seconds_into, self.blocks, now_ms)
        if tier is None:
            return None
        side = side_from_spread(spread)
        print(
            f"signal bot={self.bot} asset={asset} tier={tier.name} spread={spread:.4f} "
            f"threshold={cfg.tier_spread(asset, tier.name)} side={side} secs_in={seconds_into:.0f}"
        )
        return self.enter_hold(asset, side, spread, tier, size, cfg, window, now_ms)

    def enter_scalp(
        self,
        asset: str,
        side: str,
        signal_pct: float,
        size: float,
        cfg: TierAgentConfig,
        window: TradingWindow,
        now_ms: int,
    ) -> OpenPosition | None:
        slug = poly_slug(asset, window)
        try:
            market = self.poly.market_by_slug(slug)
            token_id = market.token_for(side) if market else None
            if market is None or not token_id:
                print(f"skip bot={self.bot} asset={asset} reason=no_market slug={slug}")
                return None
            mid = self.poly.midpoint(token_id)
            if mid is None or not cfg.min_buy_mid < mid < cfg.max_buy_mid:
                print(f"skip bot={self.bot} asset={asset} reason=mid_out_of_range mid={mid}")
                return None
            tick = float(market.tick_size)
            buy_price = min(0.99, round_to_tick(mid + 2 * tick, market.tick_size))
            resp = self.poly.place_fok(
                token_id, "buy", size, buy_price, tick_size=market.tick_size, neg_risk=market.neg_risk
            )
        except (PolymarketError, requests.RequestException) as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=asset, venue="polymarket", stage="entry")
            return None
        except Exception as exc:
            # py-clob-client raises its own exception types.
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=asset, venue="polymarket", stage="entry")
            return None

        if not resp.get("filled"):
            print(f"entry bot={self.bot} asset={asset} side={side} result=no_fill status={resp.get('status')}")
            return None

        try:
            contracts = self.poly.token_balance(token_id)
        except Exception as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=asset, venue="polymarket", stage="balance")
            contracts = 0.0
        if contracts <= 0:
            # Balance lags the match; fall back to the notional at the buy price.
            contracts = round(size / buy_price, 2)

        pos = OpenPosition(
            bot=self.bot,
            asset=asset,
            side=side,
            token_id=token_id,
            slug=slug,
            order_id=str(resp.get("order_id")),
            entry_ref_price=mid,
            contracts=contracts,
            size_usd=size,
            entry_asset_price=self.tape.latest(asset) or 0.0,
            window_start_ms=window.start_ms,
            window_end_ms=window.end_ms,
            exit_style=cfg.exit_style,
            tick_size=market.tick_size,
            neg_risk=market.neg_risk,
        )
        self._persist_entry(pos, signal_pct, {"momentum_pct": signal_pct, "buy_price": buy_price})
        self.trades_this_window[asset] = self.trades_this_window.get(asset, 0) + 1
        print(
            f"opened bot={self.bot} asset={asset} side={side} contracts={contracts:g} mid={mid:.3f} "
            f"trades={self.trades_this_window[asset]}/{cfg.max_trades_per_window}"
        )
        return pos

    def enter_hold(
        self,
        asset: str,
        side: str,
        spread: float,
        tier: TierSpec,
        size: float,
        cfg: TierAgentConfig,
        window: TradingWindow,
        now_ms: int,
    ) -> OpenPosition | None:
        slug = poly_slug(asset, window)
        try:
            market = self.poly.market_by_slug(slug)
            if market is None or not market.token_for(side):
                print(f"skip bot={self.bot} asset={asset} reason=no_market slug={slug}")
                return None
            placed = self.poly.place_limit(market, side, tier.limit_price, size)
        except Exception as exc:
            self.report(
                self.conn, self.settings, exc, agent=self.bot, asset=asset, venue="polymarket", stage="entry", tier=tier.name
            )
            if tier.block_on_attempt:
                apply_tier_blocks(cfg, asset, tier, self.blocks, now_ms)
            return None

        pos = OpenPosition(
            bot=self.bot,
            asset=asset,
            side=side,
            token_id=str(placed["token_id"]),
            slug=slug,
            order_id=str(placed["order_id"]),
            entry_ref_price=float(placed["price"]),
            contracts=float(placed["shares"]),
            size_usd=size,
            entry_asset_price=self.tape.latest(asset) or 0.0,
            window_start_ms=window.start_ms,
            window_end_ms=window.end_ms,
            exit_style=cfg.exit_style,
            tier=tier.name,
            window_open_price=self.window_open.get(asset),
            tick_size=market.tick_size,
            neg_risk=market.neg_risk,
        )
        extra = {"tier": tier.name, "limit_price": placed["price"]}
        if "filled_shares" in placed:
            extra["filled_shares"] = placed["filled_shares"]
        self._persist_entry(pos, spread, extra)
        self.ledger.mark(self.bot, asset, window.end_ms)
        self.trades_this_window[asset] = self.trades_this_window.get(asset, 0) + 1
        apply_tier_blocks(cfg, asset, tier, self.blocks, now_ms)
        print(
            f"placed bot={self.bot} asset={asset} tier={tier.name} side={side} limit={placed['price']} "
            f"shares={placed['shares']} order_id={placed['order_id']}"
        )
        return pos

    def _persist_entry(self, pos: OpenPosition, spread_pct: float, extra: dict[str, Any]) -> None:
        raw = {
            "side": pos.side,
            "direction": pos.direction,
            "token_id": pos.token_id,
            "entry_ref_price": pos.entry_ref_price,
            "contracts": pos.contracts,
            "entry_asset_price": pos.entry_asset_price,
            "window_open_price": pos.window_open_price,
            "strategy": "momentum" if pos.exit_style == "tp_sl" else "spread",
        }
        raw.update(extra)
        if self.settings.paper_mode:
            raw["paper"] = True
            raw.setdefault("filled_shares", pos.contracts)
        try:
            pos.position_id = db.insert_position(
                self.conn,
                {
                    "bot": pos.bot,
                    "asset": pos.asset,
                    "venue": "polymarket",
                    "strike_spread_pct": spread_pct,
                    "position_size": pos.size_usd,
                    "ticker_or_slug": pos.slug,
                    "order_id": pos.order_id,
                    "raw": raw,
                },
            )
        except sqlite3.Error as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="log_position")
        self.positions[pos.asset] = pos
        self._save_open(pos)

    def _save_open(self, pos: OpenPosition) -> None:
        try:
            db.save_open_position(self.conn, self.bot, pos.asset, pos.to_payload())
        except sqlite3.Error as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="save_open_position")

    def _forget(self, pos: OpenPosition) -> None:
        self.positions.pop(pos.asset, None)
        try:
            db.clear_open_position(self.conn, self.bot, pos.asset)
        except sqlite3.Error as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="clear_open_position")

    # --- exits ------------------------------------------------------------------------

    def manage(self, pos: OpenPosition, cfg: TierAgentConfig, now_ms: int) -> None:
        if pos.exit_style == "hold":
            if now_ms >= pos.window_end_ms:
                self.settle_hold(pos, now_ms)
            return
        ms_left = max(0, pos.window_end_ms - now_ms)
        mid = self.poly.midpoint(pos.token_id)
        if mid is None:
            if ms_left == 0:
                self._abandon(pos, "no_mid_after_close")
            return
        reason = exit_reason(pos, mid, ms_left, cfg)
        if reason is None:
            if self.tick_count % self.settings.heartbeat_ticks == 0:
                change = (mid - pos.entry_ref_price) / pos.entry_ref_price
                print(
                    f"holding bot={self.bot} asset={pos.asset} side={pos.side} entry={pos.entry_ref_price:.3f} "
                    f"mid={mid:.3f} change={change * 100:.2f}%"
                )
            return
        self.exit_position(pos, reason, mid, now_ms, cfg)

    def exit_position(self, pos: OpenPosition, reason: str, mid: float, now_ms: int, cfg: TierAgentConfig) -> bool:
        pos.state = STATE_EXITING
        try:
            held = self.poly.token_balance(pos.token_id)
            if held <= 0:
                raise PolymarketError(f"no balance for token {pos.token_id}")
            tick = float(pos.tick_size)
            sell_price = max(tick, round_to_tick(mid - 2 * tick, pos.tick_size))
            resp = self.poly.place_fok(
                pos.token_id, "sell", held, sell_price, tick_size=pos.tick_size, neg_risk=pos.neg_risk
            )
            filled = bool(resp.get("filled"))
        except Exception as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, venue="polymarket", stage="exit")
            filled = False
            held = 0.0
            resp = {}

        if not filled:
            past_deadline = pos.window_end_ms - now_ms < cfg.forced_exit_seconds * 1000
            if reason == EXIT_FORCED or (reason != EXIT_SHUTDOWN and past_deadline):
                # No retries past the forced-exit deadline, whatever triggered the exit.
                self._abandon(pos, "forced_exit_failed" if reason == EXIT_FORCED else f"{reason.lower()}_exit_failed_at_close")
            else:
                pos.state = STATE_OPEN
                print(f"exit bot={self.bot} asset={pos.asset} reason={reason} result=retry")
            return False

        before = self.bankroll.bankroll
        pnl = (mid - pos.entry_ref_price) * held
        risk.record_close(
            self.bankroll,
            pnl,
            now_ms,
            self.settings.loss_streak_limit,
            self.settings.loss_streak_cooldown_min,
        )
        risk.save_state(self.conn, self.bot, self.bankroll)
        detail = {
            "exit_reason": reason,
            "exit_ref_price": mid,
            "exit_contracts": held,
            "exit_order_id": resp.get("order_id"),
            "exit_asset_price": self.tape.latest(pos.asset),
            "pnl": pnl,
            "bankroll_before": before,
            "bankroll_after": self.bankroll.bankroll,
            "exited_at": db.utcnow_iso(),
        }
        if pos.position_id is not None:
            try:
                db.record_exit(self.conn, pos.position_id, detail)
            except (sqlite3.Error, ValueError) as exc:
                self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="record_exit")
        self._forget(pos)
        print(
            f"exit bot={self.bot} asset={pos.asset} reason={reason} entry={pos.entry_ref_price:.3f} "
            f"exit={mid:.3f} contracts={held:g} pnl={pnl:.3f} bankroll={self.bankroll.bankroll:.2f} "
            f"wl={self.bankroll.wins}/{self.bankroll.losses}"
        )
        return True

    def _abandon(self, pos: OpenPosition, why: str) -> None:
        # The contract resolves on its own; the resolver records the real outcome.
        if pos.position_id is not None:
            try:
                db.record_exit(self.conn, pos.position_id, {"abandoned": why, "abandoned_at": db.utcnow_iso()})
            except (sqlite3.Error, ValueError) as exc:
                self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="record_exit")
        self._forget(pos)
        print(f"abandon bot={self.bot} asset={pos.asset} reason={why}")

    def settle_hold(self, pos: OpenPosition, now_ms: int) -> bool:
        """Book a held position against the reference close once its window ends."""
        close = self.tape.price_near(pos.asset, pos.window_end_ms)
        opened = pos.window_open_price
        try:
            filled, _token = self.poly.order_fill(pos.order_id)
        except Exception as exc:
            self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, venue="polymarket", stage="hold_fill")
            if now_ms - pos.window_end_ms > self.settings.resolve_grace_seconds * 1000:
                self._abandon(pos, "fill_unknown")
            return False
        if close is None or not opened:
            self._abandon(pos, "no_reference_close")
            return False

        if filled <= 0:
            pnl = 0.0
            won = None
        else:
            went_up = close >= opened
            won = went_up == (pos.side == "yes")
            pnl = ((1.0 if won else 0.0) - pos.entry_ref_price) * filled
            before = self.bankroll.bankroll
            risk.record_close(
                self.bankroll,
                pnl,
                now_ms,
                self.settings.loss_streak_limit,
                self.settings.loss_streak_cooldown_min,
            )
            risk.save_state(self.conn, self.bot, self.bankroll)
            print(
                f"settled bot={self.bot} asset={pos.asset} tier={pos.tier} side={pos.side} filled={filled:g} "
                f"won={won} pnl={pnl:.3f} bankroll {before:.2f}->{self.bankroll.bankroll:.2f}"
            )
        if pos.position_id is not None:
            try:
                db.record_exit(
                    self.conn,
                    pos.position_id,
                    {
                        "local_settlement": {
                            "filled": filled,
                            "window_open_price": opened,
                            "window_close_price": close,
                            "won": won,
                            "pnl": pnl,
                        }
                    },
                )
            except (sqlite3.Error, ValueError) as exc:
                self.report(self.conn, self.settings, exc, agent=self.bot, asset=pos.asset, stage="record_exit")
        self._forget(pos)
        return True


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()
