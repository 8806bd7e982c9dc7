"""
fotrader - F&O Signal & Execution Engine

Streaming ticks -> candles -> layered signal filters -> automated option
order execution with stop-loss / target management.
"""

__version__ = "1.0.0"
