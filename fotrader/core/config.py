"""
Core Configuration Management
fotrader - F&O Signal & Execution Engine

Environment-driven settings for the signal pipeline, order execution,
scheduler, broker and notification integrations.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, List, Literal
from functools import lru_cache
from pathlib import Path


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///./fotrader.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")


class ZerodhaSettings(BaseSettings):
    """Zerodha Kite Connect settings."""

    model_config = SettingsConfigDict(env_prefix="ZERODHA_")

    api_key: str = Field(default="", description="Kite Connect API key")
    api_secret: str = Field(default="", description="Kite Connect API secret")
    access_token: Optional[str] = Field(default=None, description="Pre-generated access token")

    @property
    def is_configured(self) -> bool:
        """Check if Kite Connect credentials are present."""
        return bool(self.api_key and self.api_secret)


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_")

    enabled: bool = Field(default=True, description="Send notifications to Telegram")
    bot_token: str = Field(default="", description="Telegram bot token")
    chat_id: str = Field(default="", description="Channel or chat ID for notifications")
    timeout_seconds: float = Field(default=10.0, description="HTTP timeout for Bot API calls")

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is usable."""
        return bool(self.enabled and self.bot_token and self.chat_id)


class TradingSettings(BaseSettings):
    """Signal pipeline and execution settings."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    # Mode
    mode: Literal["LIVE", "PAPER"] = Field(default="PAPER", description="Trading mode")

    # Market hours (IST)
    timezone: str = Field(default="Asia/Kolkata", description="Exchange timezone")
    market_open_time: str = Field(default="09:15", description="Market open time")
    market_close_time: str = Field(default="15:30", description="Market close time")
    signal_window_start: str = Field(default="09:30", description="First time signals may be generated")
    signal_window_end: str = Field(default="14:45", description="Last time signals may be generated")

    # Signal generation limits
    max_signals_per_day: int = Field(default=6, description="Daily signal cap")
    min_signal_gap_minutes: int = Field(default=15, description="Minimum minutes between signals")

    # Market trend benchmarks
    nifty_symbol: str = Field(default="NIFTY 50", description="Primary benchmark index")
    banknifty_symbol: str = Field(default="NIFTY BANK", description="Secondary benchmark index")
    nifty_token: int = Field(default=256265, description="NIFTY 50 instrument token")
    banknifty_token: int = Field(default=260105, description="NIFTY BANK instrument token")

    # Sector strength
    strong_sectors: List[str] = Field(
        default=["IT", "BANKING", "PHARMA", "AUTO", "FMCG"],
        description="Sectors considered strong by the static provider",
    )

    # Technical / risk thresholds
    min_15m_candles: int = Field(default=10, description="Minimum 15m candles to evaluate a stock")
    min_entry_price: float = Field(default=50.0, description="Lowest tradable entry price")
    max_entry_price: float = Field(default=5000.0, description="Highest tradable entry price")
    sl_atr_multiplier: float = Field(default=1.5, description="Stop loss distance in ATRs")
    target_atr_multiplier: float = Field(default=3.0, description="Target distance in ATRs")
    max_sl_pct: float = Field(default=0.5, description="Max stop loss distance as % of entry")
    min_risk_reward: float = Field(default=2.0, description="Minimum reward:risk")

    # Option construction
    option_exchange: str = Field(default="NFO", description="Derivatives exchange")
    strike_step: int = Field(default=100, description="Strike rounding step")
    expiry_code_format: str = Field(default="%y%b", description="strftime format of the monthly expiry code")

    # Auto-trading account policy
    auto_trading_enabled: bool = Field(default=False, description="Enable automated order execution")
    account_id: str = Field(default="", description="Account that places automated trades")
    max_trades_per_day: int = Field(default=3, description="Max automated entries per day")
    max_capital_per_trade: float = Field(default=10000.0, description="Capital allotted per trade")
    price_band_pct: float = Field(default=5.0, description="Allowed drift from signal entry in %")
    product: str = Field(default="MIS", description="Broker product type")

    # Fill polling
    order_poll_interval_seconds: float = Field(default=5.0, description="Seconds between fill checks")
    order_poll_max_attempts: int = Field(default=36, description="Fill checks before TIMEOUT")

    # Order tags
    entry_tag_prefix: str = Field(default="AUTO_", description="Entry order tag prefix")
    sl_tag_prefix: str = Field(default="SL_", description="Stop loss order tag prefix")
    target_tag_prefix: str = Field(default="TARGET_", description="Target order tag prefix")


class SchedulerSettings(BaseSettings):
    """Scheduler timing settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    market_check_minutes: int = Field(default=5, description="Market status check interval")
    signal_interval_minutes: int = Field(default=5, description="Signal pipeline interval")
    execution_interval_minutes: int = Field(default=2, description="Order execution interval")
    reconciliation_interval_minutes: int = Field(default=1, description="Completed order check interval")
    token_refresh_time: str = Field(default="08:45", description="Daily broker session refresh time")
    opening_tolerance_minutes: int = Field(default=5, description="Window after open for the open alert")
    closing_window_minutes: int = Field(default=15, description="Window before close for the closing alert")

    # Tick stream
    ticker_max_reconnects: int = Field(default=5, description="Reconnect attempts before giving up")
    ticker_reconnect_delay: float = Field(default=5.0, description="Base reconnect delay in seconds")
    ticker_restart_cooldown: float = Field(default=300.0, description="Wait before restarting a failed stream")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        description="Log format"
    )

    # File logging
    file_enabled: bool = Field(default=True, description="Enable file logging")
    file_path: str = Field(default="logs/fotrader.log", description="Log file path")
    json_path: str = Field(default="logs/fotrader.json", description="Structured log file path")
    error_path: str = Field(default="logs/error.log", description="Error log file path")
    file_rotation: str = Field(default="10 MB", description="Log rotation size")
    file_retention: str = Field(default="30 days", description="Log retention period")


class APISettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="0.0.0.0", description="API host")
    port: int = Field(default=8000, description="API port")

    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost"],
        description="Allowed CORS origins"
    )


class Settings(BaseSettings):
    """
    Main application settings.

    Aggregates all sub-settings and provides environment-based configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    PROJECT_NAME: str = Field(default="fotrader", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Environment"
    )
    API_V1_STR: str = "/api/v1"
    AUTO_START_SCHEDULER: bool = Field(default=True, description="Start the scheduler on boot")

    @property
    def db(self) -> DatabaseSettings:
        """Get database settings."""
        return DatabaseSettings()

    @property
    def zerodha(self) -> ZerodhaSettings:
        """Get Zerodha settings."""
        return ZerodhaSettings()

    @property
    def telegram(self) -> TelegramSettings:
        """Get Telegram settings."""
        return TelegramSettings()

    @property
    def trading(self) -> TradingSettings:
        """Get trading settings."""
        return TradingSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        """Get scheduler settings."""
        return SchedulerSettings()

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings()

    @property
    def api(self) -> APISettings:
        """Get API settings."""
        return APISettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """Reload settings from environment."""
    get_settings.cache_clear()
    return get_settings()


def get_logs_path() -> Path:
    """Get the logs directory path."""
    path = Path(settings.logging.file_path).parent
    path.mkdir(parents=True, exist_ok=True)
    return path
