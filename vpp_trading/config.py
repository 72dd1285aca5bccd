from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # === Store ===
    paper_db_path: str = ""  # 空なら data/vpp_trading.db
    live_db_path: str = "data/vpp_trading_live.db"

    # === Execution ===
    execution_mode: str = "paper"  # "paper" | "live"
    market_connector_url: str = ""
    market_connector_api_key: str = ""
    market_connector_timeout_sec: float = 10.0

    # === Scheduler ===
    scheduler_tick_sec: float = 5.0
    scheduler_max_workers: int = 4
    scheduler_market_window: int = 10  # execute() 1 回あたりに評価する直近 tick 数
    global_trading_enabled: bool = True

    # === Risk gate ===
    risk_check_enabled: bool = True
    risk_available_capital: float = 1_000_000.0  # live の資金上限 (約定額ベース)
    risk_max_position_qty: float = 10_000.0  # MWh
    risk_max_order_notional: float = 500_000.0
    risk_max_orders_per_minute: int = 30
    risk_price_min: float = -500.0  # 負価格は電力市場で発生しうる
    risk_price_max: float = 10_000.0
    risk_max_price_deviation_pct: float = 20.0  # 参照価格からの乖離上限
    risk_max_daily_loss: float = 100_000.0  # 当日 (UTC) の約定キャッシュフローの損失上限
    risk_min_cash_reserve: float = 0.0  # 買い約定後に残すべき最低資金

    # === Backtest ===
    backtest_commission_rate: float = 0.001
    backtest_slippage_rate: float = 0.0005
    backtest_max_workers: int = 4
    backtest_annualize_factor: float = 252.0

    # === Arbitrage ===
    arbitrage_min_margin: float = 0.02
    arbitrage_max_risk: float = 0.1
    arbitrage_temporal_window: int = 24  # 直近 24 サンプル (1h 足なら 1 日)
    arbitrage_max_volume: float = 100.0
    arbitrage_cache_size: int = 1000

    # === Settlement ===
    settlement_default_policy: str = "capacity_weighted"
    settlement_max_workers: int = 2

    # === Carbon accounting (optional) ===
    carbon_api_url: str = ""
    carbon_api_key: str = ""

    # === Telegram (optional) ===
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


settings = Settings()
