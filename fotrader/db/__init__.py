from fotrader.db.base import Base, MarketDateTime
from fotrader.db.session import Database, get_database, set_database, get_db

__all__ = [
    "Base",
    "MarketDateTime",
    "Database",
    "get_database",
    "set_database",
    "get_db",
]
