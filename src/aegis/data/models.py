"""
Market and portfolio records consumed by the risk engine.

All records are msgspec.Struct types:
- frozen=True: a snapshot handed to one component cannot be changed by another
- rename="camel": JSON uses the camelCase field names collaborators expect

Invariants are enforced at construction time. Constructing a record with a
non-positive price, a liquidity score outside [0, 1] or a NaN raises
InvariantViolation (a ValueError), so bad ticks never reach the calculators.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import msgspec

from aegis.core.errors import DataError, InvariantViolation


logger = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252


def _require_finite(name: str, value: float) -> None:
    if not math.isfinite(value):
        raise InvariantViolation(f"{name} must be finite, got {value}")


# =============================================================================
# Positions
# =============================================================================


class Position(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """
    Current holding in one instrument.

    Quantity is signed (negative = short). Market value is signed with it.

    Examples:
        position = Position.create("AAPL", quantity=100, price=180.0, average_cost=150.0)
        position.market_value    # 18000.0
        position.unrealized_pnl  # 3000.0
    """

    symbol: str
    quantity: float
    current_price: float
    market_value: float
    weight: float = 0.0
    daily_pnl: float = msgspec.field(default=0.0, name="dailyPnL")
    unrealized_pnl: float = msgspec.field(default=0.0, name="unrealizedPnL")
    average_cost: float = 0.0
    risk_contribution: float = 0.0
    sector: str | None = None
    asset_class: str | None = None

    def __post_init__(self) -> None:
        if not self.symbol:
            raise InvariantViolation("Position symbol must be non-empty")
        for name in (
            "quantity",
            "current_price",
            "market_value",
            "weight",
            "daily_pnl",
            "unrealized_pnl",
            "average_cost",
            "risk_contribution",
        ):
            _require_finite(f"{self.symbol}.{name}", getattr(self, name))
        if self.current_price < 0:
            raise InvariantViolation(f"{self.symbol}: current_price must be >= 0")
        if self.average_cost < 0:
            raise InvariantViolation(f"{self.symbol}: average_cost must be >= 0")

    @classmethod
    def create(
        cls,
        symbol: str,
        quantity: float,
        price: float,
        average_cost: float | None = None,
        daily_pnl: float = 0.0,
        sector: str | None = None,
        asset_class: str | None = None,
    ) -> Position:
        """Build a position, deriving market value and unrealized P&L."""
        cost = price if average_cost is None else average_cost
        return cls(
            symbol=symbol,
            quantity=float(quantity),
            current_price=float(price),
            market_value=float(quantity) * float(price),
            daily_pnl=float(daily_pnl),
            unrealized_pnl=float(quantity) * (float(price) - float(cost)),
            average_cost=float(cost),
            sector=sector,
            asset_class=asset_class,
        )

    def with_price(self, price: float) -> Position:
        """Re-priced copy. Daily P&L absorbs the price move."""
        move = self.quantity * (price - self.current_price)
        return msgspec.structs.replace(
            self,
            current_price=price,
            market_value=self.quantity * price,
            daily_pnl=self.daily_pnl + move,
            unrealized_pnl=self.quantity * (price - self.average_cost),
        )

    @property
    def is_short(self) -> bool:
        return self.quantity < 0


def portfolio_value(positions: Iterable[Position]) -> float:
    """Net market value of a set of positions."""
    return math.fsum(p.market_value for p in positions)


def gross_exposure(positions: Iterable[Position]) -> float:
    """Sum of absolute market values."""
    return math.fsum(abs(p.market_value) for p in positions)


def position_weights(positions: Iterable[Position]) -> dict[str, float]:
    """
    Signed weights w_i = market_value_i / sum(|market_value|).

    Returns an empty dict for a flat book.
    """
    positions = list(positions)
    gross = gross_exposure(positions)
    if gross <= 0:
        return {}
    weights: dict[str, float] = {}
    for p in positions:
        weights[p.symbol] = weights.get(p.symbol, 0.0) + p.market_value / gross
    return weights


# =============================================================================
# Market Snapshot
# =============================================================================


class MarketSnapshotEntry(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """
    One symbol's market observation for an ingestion cycle.

    Attributes:
        price: Last price (> 0)
        volume: Traded volume for the period (>= 0)
        spread: Absolute bid/ask spread in price units (>= 0)
        volatility: Annualized volatility, None when unavailable
        liquidity_score: 0 (illiquid) to 1 (deep book)
        average_daily_volume: Defaults to `volume` when not supplied
    """

    symbol: str
    price: float
    volume: float = 0.0
    spread: float = 0.0
    volatility: float | None = None
    liquidity_score: float = 1.0
    average_daily_volume: float | None = None
    sector: str | None = None
    asset_class: str | None = None

    def __post_init__(self) -> None:
        if not self.symbol:
            raise InvariantViolation("Snapshot entry symbol must be non-empty")
        _require_finite(f"{self.symbol}.price", self.price)
        _require_finite(f"{self.symbol}.volume", self.volume)
        _require_finite(f"{self.symbol}.spread", self.spread)
        _require_finite(f"{self.symbol}.liquidity_score", self.liquidity_score)
        if self.price <= 0:
            raise InvariantViolation(f"{self.symbol}: price must be > 0, got {self.price}")
        if self.volume < 0:
            raise InvariantViolation(f"{self.symbol}: volume must be >= 0")
        if self.spread < 0:
            raise InvariantViolation(f"{self.symbol}: spread must be >= 0")
        if not 0.0 <= self.liquidity_score <= 1.0:
            raise InvariantViolation(
                f"{self.symbol}: liquidity_score must be in [0, 1], got {self.liquidity_score}"
            )
        if self.volatility is not None:
            _require_finite(f"{self.symbol}.volatility", self.volatility)
            if self.volatility < 0:
                raise InvariantViolation(f"{self.symbol}: volatility must be >= 0")
        if self.average_daily_volume is not None:
            _require_finite(f"{self.symbol}.average_daily_volume", self.average_daily_volume)
            if self.average_daily_volume < 0:
                raise InvariantViolation(f"{self.symbol}: average_daily_volume must be >= 0")

    @property
    def adv(self) -> float:
        """Average daily volume (falls back to period volume)."""
        if self.average_daily_volume is not None:
            return self.average_daily_volume
        return self.volume

    @property
    def daily_volatility(self) -> float | None:
        """Volatility scaled to one trading day."""
        if self.volatility is None:
            return None
        return self.volatility / math.sqrt(TRADING_DAYS_PER_YEAR)

    @property
    def spread_bps(self) -> float:
        return self.spread / self.price * 10_000


class MarketSnapshot(msgspec.Struct, frozen=True, rename="camel"):
    """
    Immutable per-tick view of the market, one entry per symbol.

    Examples:
        snapshot = MarketSnapshot.from_records(
            [{"symbol": "AAPL", "price": 180.0, "volatility": 0.25}],
            source="feed",
        )
        snapshot["AAPL"].price  # 180.0
    """

    entries: dict[str, MarketSnapshotEntry] = {}
    timestamp: datetime | None = None
    source: str = "unknown"
    synthetic: bool = False

    def __post_init__(self) -> None:
        for key, entry in self.entries.items():
            if key != entry.symbol:
                raise InvariantViolation(
                    f"Snapshot key {key!r} does not match entry symbol {entry.symbol!r}"
                )

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[MarketSnapshotEntry],
        timestamp: datetime | None = None,
        source: str = "unknown",
        synthetic: bool = False,
    ) -> MarketSnapshot:
        """Build a snapshot from entries. A later entry for a symbol replaces an earlier one."""
        return cls(
            entries={entry.symbol: entry for entry in entries},
            timestamp=timestamp,
            source=source,
            synthetic=synthetic,
        )

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any] | MarketSnapshotEntry],
        timestamp: datetime | None = None,
        source: str = "unknown",
        synthetic: bool = False,
    ) -> MarketSnapshot:
        """
        Build a snapshot from raw records, dropping invalid ones.

        Records may use camelCase or snake_case keys. A record that violates
        an entry invariant is logged as a DataError and skipped; the rest of
        the snapshot is still built.
        """
        entries: list[MarketSnapshotEntry] = []
        for record in records:
            if isinstance(record, MarketSnapshotEntry):
                entries.append(record)
                continue
            try:
                entries.append(_entry_from_mapping(record))
            except (InvariantViolation, msgspec.ValidationError, TypeError) as e:
                error = DataError(str(e), symbol=record.get("symbol"))
                logger.warning("Dropping market record for %s: %s", error.symbol, error)
        return cls.from_entries(entries, timestamp=timestamp, source=source, synthetic=synthetic)

    def __getitem__(self, symbol: str) -> MarketSnapshotEntry:
        return self.entries[symbol]

    def __contains__(self, symbol: object) -> bool:
        return symbol in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, symbol: str) -> MarketSnapshotEntry | None:
        return self.entries.get(symbol)

    @property
    def symbols(self) -> list[str]:
        return list(self.entries)

    def restrict(self, symbols: Iterable[str]) -> MarketSnapshot:
        """Copy holding only the given symbols (drops stale entries)."""
        keep = set(symbols)
        return msgspec.structs.replace(
            self,
            entries={s: e for s, e in self.entries.items() if s in keep},
        )

    def with_entry(self, entry: MarketSnapshotEntry) -> MarketSnapshot:
        """Copy with one entry added or replaced."""
        return msgspec.structs.replace(self, entries={**self.entries, entry.symbol: entry})


_SNAKE_KEYS = {
    "liquidity_score": "liquidityScore",
    "average_daily_volume": "averageDailyVolume",
    "asset_class": "assetClass",
}


def _entry_from_mapping(record: Mapping[str, Any]) -> MarketSnapshotEntry:
    data = {_SNAKE_KEYS.get(key, key): value for key, value in record.items()}
    return msgspec.convert(data, MarketSnapshotEntry, strict=False)


# =============================================================================
# Serialization
# =============================================================================


_encoder = msgspec.json.Encoder()


def encode(obj: Any) -> bytes:
    """Encode any engine record (or container of records) to JSON bytes."""
    return _encoder.encode(obj)


def decode(data: bytes | str, record_type: Any) -> Any:
    """Decode JSON into the given record type, re-checking invariants."""
    return msgspec.json.decode(data, type=record_type)


def to_builtins(obj: Any) -> Any:
    """Convert a record to plain dicts/lists with camelCase keys."""
    return msgspec.to_builtins(obj)
