"""
Broker Integrations
fotrader - F&O Signal & Execution Engine

Brokerage capability used by the pipeline and execution engine:
    - ZerodhaBroker: Kite Connect REST + KiteTicker streaming (LIVE mode)
    - PaperBroker: in-memory fills for PAPER mode and tests
"""

from typing import Optional

from fotrader.brokers.base import BaseBroker
from fotrader.brokers.paper import PaperBroker
from fotrader.core.config import TradingSettings, settings


def create_broker(trading: Optional[TradingSettings] = None) -> BaseBroker:
    """Create the broker for the configured trading mode."""
    trading = trading or settings.trading
    if trading.mode == "LIVE":
        from fotrader.brokers.zerodha import ZerodhaBroker
        return ZerodhaBroker()
    return PaperBroker()


__all__ = [
    "BaseBroker",
    "PaperBroker",
    "create_broker",
]
