from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class ConfigError(RuntimeError):
    pass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw)


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = _env_str(name, default)
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    bot_root: Path
    bot_name: str

    threshold_assets: tuple[str, ...]
    threshold_poll_seconds: int
    spread_sanity_ceiling_pct: float
    b1_bid_floor_pct: float
    b1_bid_ceiling_pct: float
    b1_market_order_minutes: float
    enable_polymarket: bool
    blackout_enabled: bool

    momentum_asset: str
    momentum_poll_seconds: int
    momentum_threshold: float
    take_profit_pct: float
    stop_loss_pct: float
    max_trades_per_window: int
    forced_exit_seconds: int
    min_entry_seconds_left: int
    settle_seconds: int
    price_history_seconds: int
    momentum_lookback_seconds: int
    min_buy_mid: float
    max_buy_mid: float

    spread_poll_seconds: int
    early_guard_window_seconds: int
    stale_spread_samples: int
    window_open_tolerance_seconds: int

    position_size_usd: float
    initial_bankroll: float
    sizing_mode: str
    min_bet_usd: float
    loss_streak_limit: int
    loss_streak_cooldown_min: int

    resolve_grace_seconds: int
    settlement_lookback_days: int
    resolve_poll_seconds: int

    poly_threshold_assets: tuple[str, ...]
    poly_threshold_poll_seconds: int
    poly_threshold_position_usd: float
    poly_threshold_price_source: str
    reference_price_source: str
    paper_mode: bool

    kalshi_base_url: str
    kalshi_key_id: str
    kalshi_private_key: str
    kalshi_private_key_path: str
    gamma_base_url: str
    clob_base_url: str
    poly_private_key: str
    poly_funder: str
    poly_signature_type: int
    poly_chain_id: int
    poly_proxy_url: str
    binance_ticker_url: str
    coinbase_ticker_url: str
    chainlink_ws_url: str
    chainlink_max_age_seconds: int
    chainlink_silent_reconnect_seconds: int
    chainlink_reset_seconds: int

    alert_webhook_url: str
    heartbeat_ticks: int

    @property
    def data_dir(self) -> Path:
        return self.bot_root / "data"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "bot.db"

    def status_path(self, agent: str) -> Path:
        return self.data_dir / f"status-{agent.lower()}.json"


def load_settings() -> Settings:
    bot_root = Path(os.environ.get("BOT_ROOT", "/root/projects/updown-bot"))
    return Settings(
        bot_root=bot_root,
        bot_name=os.environ.get("BOT_NAME", "updown-bot-v1"),
        threshold_assets=_env_list("THRESHOLD_ASSETS", "BTC,ETH,SOL"),
        threshold_poll_seconds=_env_int("THRESHOLD_POLL_SECONDS", 5),
        spread_sanity_ceiling_pct=_env_float("SPREAD_SANITY_CEILING_PCT", 2.0),
        b1_bid_floor_pct=_env_float("B1_BID_FLOOR_PCT", 90.0),
        b1_bid_ceiling_pct=_env_float("B1_BID_CEILING_PCT", 96.0),
        b1_market_order_minutes=_env_float("B1_MARKET_ORDER_MINUTES", 1.0),
        enable_polymarket=_env_bool("ENABLE_POLYMARKET", False),
        blackout_enabled=_env_bool("BLACKOUT_ENABLED", False),
        momentum_asset=_env_str("MOMENTUM_ASSET", "BTC").strip().upper(),
        momentum_poll_seconds=_env_int("MOMENTUM_POLL_SECONDS", 3),
        momentum_threshold=_env_float("MOMENTUM_THRESHOLD", 0.0003),
        take_profit_pct=_env_float("TAKE_PROFIT_PCT", 0.03),
        stop_loss_pct=_env_float("STOP_LOSS_PCT", 0.05),
        max_trades_per_window=_env_int("MAX_TRADES_PER_WINDOW", 3),
        forced_exit_seconds=_env_int("FORCED_EXIT_SECONDS", 25),
        min_entry_seconds_left=_env_int("MIN_ENTRY_SECONDS_LEFT", 60),
        settle_seconds=_env_int("SETTLE_SECONDS", 15),
        price_history_seconds=_env_int("PRICE_HISTORY_SECONDS", 360),
        momentum_lookback_seconds=_env_int("MOMENTUM_LOOKBACK_SECONDS", 60),
        min_buy_mid=_env_float("MIN_BUY_MID", 0.05),
        max_buy_mid=_env_float("MAX_BUY_MID", 0.95),
        spread_poll_seconds=_env_int("SPREAD_POLL_SECONDS", 3),
        early_guard_window_seconds=_env_int("EARLY_GUARD_WINDOW_SECONDS", 100),
        stale_spread_samples=_env_int("STALE_SPREAD_SAMPLES", 10),
        window_open_tolerance_seconds=_env_int("WINDOW_OPEN_TOLERANCE_SECONDS", 15),
        position_size_usd=_env_float("POSITION_SIZE_USD", 5.0),
        initial_bankroll=_env_float("INITIAL_BANKROLL", 10.0),
        sizing_mode=_env_str("SIZING_MODE", "fixed").strip().lower(),
        min_bet_usd=_env_float("MIN_BET_USD", 5.0),
        loss_streak_limit=_env_int("LOSS_STREAK_LIMIT", 5),
        loss_streak_cooldown_min=_env_int("LOSS_STREAK_COOLDOWN_MIN", 15),
        resolve_grace_seconds=_env_int("RESOLVE_GRACE_SECONDS", 600),
        settlement_lookback_days=_env_int("SETTLEMENT_LOOKBACK_DAYS", 30),
        resolve_poll_seconds=_env_int("RESOLVE_POLL_SECONDS", 300),
        poly_threshold_assets=_env_list("POLY_THRESHOLD_ASSETS", "BTC,ETH,SOL,XRP"),
        poly_threshold_poll_seconds=_env_int("POLY_THRESHOLD_POLL_SECONDS", 1),
        poly_threshold_position_usd=_env_float("POLY_THRESHOLD_POSITION_USD", 5.0),
        poly_threshold_price_source=_env_str("POLY_THRESHOLD_PRICE_SOURCE", "chainlink").strip().lower(),
        # Reference feed for the tiered agents: spot or chainlink.
        reference_price_source=_env_str("REFERENCE_PRICE_SOURCE", "spot").strip().lower(),
        # Real market data, simulated Polymarket orders, no Kalshi orders.
        paper_mode=_env_bool("PAPER_MODE", False),
        kalshi_base_url=_env_str(
            "KALSHI_BASE_URL", "https://api.elections.kalshi.com/trade-api/v2"
        ).strip().rstrip("/"),
        kalshi_key_id=_env_str("KALSHI_KEY_ID", "").strip(),
        kalshi_private_key=_env_str("KALSHI_PRIVATE_KEY", "").replace("\\n", "\n"),
        kalshi_private_key_path=_env_str("KALSHI_PRIVATE_KEY_PATH", "").strip(),
        gamma_base_url=_env_str("GAMMA_BASE_URL", "https://gamma-api.polymarket.com").strip().rstrip("/"),
        clob_base_url=_env_str("CLOB_BASE_URL", "https://clob.polymarket.com").strip().rstrip("/"),
        poly_private_key=_env_str("POLYMARKET_PRIVATE_KEY", "").strip(),
        poly_funder=_env_str("POLYMARKET_FUNDER", "").strip(),
        poly_signature_type=_env_int("POLYMARKET_SIGNATURE_TYPE", 1),
        poly_chain_id=_env_int("POLYMARKET_CHAIN_ID", 137),
        # Applied to Polymarket traffic only.
        poly_proxy_url=_env_str("POLY_PROXY_URL", "").strip(),
        binance_ticker_url=_env_str("BINANCE_TICKER_URL", "https://api.binance.com/api/v3/ticker/price"),
        coinbase_ticker_url=_env_str(
            "COINBASE_TICKER_URL", "https://api.exchange.coinbase.com/products/{asset}-USD/ticker"
        ),
        chainlink_ws_url=_env_str("CHAINLINK_WS_URL", "wss://ws-live-data.polymarket.com").strip(),
        chainlink_max_age_seconds=_env_int("CHAINLINK_MAX_AGE_SECONDS", 60),
        chainlink_silent_reconnect_seconds=_env_int("CHAINLINK_SILENT_RECONNECT_SECONDS", 45),
        chainlink_reset_seconds=_env_int("CHAINLINK_RESET_SECONDS", 120),
        alert_webhook_url=_env_str("ALERT_WEBHOOK_URL", ""),
        heartbeat_ticks=_env_int("HEARTBEAT_TICKS", 12),
    )


def ensure_runtime_paths(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)


def kalshi_private_key_pem(settings: Settings) -> str:
    if settings.kalshi_private_key:
        return settings.kalshi_private_key
    if settings.kalshi_private_key_path:
        return Path(settings.kalshi_private_key_path).read_text()
    return ""


def require_trading_credentials(settings: Settings, venues: tuple[str, ...]) -> None:
    missing: list[str] = []
    if "kalshi" in venues:
        if not settings.kalshi_key_id:
            missing.append("KALSHI_KEY_ID")
        if not (settings.kalshi_private_key or settings.kalshi_private_key_path):
            missing.append("KALSHI_PRIVATE_KEY or KALSHI_PRIVATE_KEY_PATH")
    if "polymarket" in venues and not settings.poly_private_key:
        missing.append("POLYMARKET_PRIVATE_KEY")
    if missing:
        raise ConfigError(f"missing required credentials: {', '.join(missing)}")
