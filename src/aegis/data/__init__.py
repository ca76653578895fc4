"""
Data layer for the AEGIS risk engine.

Provides:
- Typed market and portfolio records with construction-time invariants
- msgspec JSON serialization with camelCase field names
- Swappable portfolio data sources (static fixtures, seeded synthetic demo)
"""

from aegis.data.models import (
    TRADING_DAYS_PER_YEAR,
    MarketSnapshot,
    MarketSnapshotEntry,
    Position,
    decode,
    encode,
    gross_exposure,
    portfolio_value,
    position_weights,
    to_builtins,
)
from aegis.data.sources import (
    PortfolioDataSource,
    StaticDataSource,
    SyntheticDataSource,
)


__all__ = [
    "MarketSnapshot",
    "MarketSnapshotEntry",
    "PortfolioDataSource",
    "Position",
    "StaticDataSource",
    "SyntheticDataSource",
    "TRADING_DAYS_PER_YEAR",
    "decode",
    "encode",
    "gross_exposure",
    "portfolio_value",
    "position_weights",
    "to_builtins",
]
