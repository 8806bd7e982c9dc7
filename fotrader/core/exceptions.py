"""
Error Taxonomy
fotrader - F&O Signal & Execution Engine

Exceptions raised by the brokerage and execution layers. Component-level
failures are caught per instrument/signal and logged; store failures are
allowed to propagate to the scheduler job wrapper.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Error categories for logging and alert routing."""
    BROKER = "broker"           # Broker connection/API errors
    DATA_FEED = "data_feed"     # Tick stream errors
    EXECUTION = "execution"     # Order execution errors
    DATABASE = "database"       # Store errors
    VALIDATION = "validation"   # Malformed signals / orders
    SYSTEM = "system"           # Everything else


class FOTraderError(Exception):
    """Base class for all fotrader errors."""

    category: ErrorCategory = ErrorCategory.SYSTEM


class BrokerError(FOTraderError):
    """A brokerage capability call failed."""

    category = ErrorCategory.BROKER


class BrokerNotConnectedError(BrokerError):
    """Broker client is missing or not authenticated."""


class OrderPlacementError(BrokerError):
    """Order could not be placed."""

    category = ErrorCategory.EXECUTION


class TickStreamError(FOTraderError):
    """Tick stream gave up after exhausting reconnect attempts."""

    category = ErrorCategory.DATA_FEED


class InvalidOptionSymbolError(FOTraderError):
    """Derived option identifier cannot be parsed."""

    category = ErrorCategory.VALIDATION


__all__ = [
    "ErrorCategory",
    "FOTraderError",
    "BrokerError",
    "BrokerNotConnectedError",
    "OrderPlacementError",
    "TickStreamError",
    "InvalidOptionSymbolError",
]
