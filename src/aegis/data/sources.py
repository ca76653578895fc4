"""
Portfolio data sources.

The engine pulls positions and a market snapshot from a PortfolioDataSource
on each recompute cycle. Sources are swappable:

- StaticDataSource: fixed positions and snapshot (fixtures, replays)
- SyntheticDataSource: seeded random walk for demos; its snapshots are
  flagged synthetic and rejected by RiskManager unless explicitly allowed
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import numpy as np

from aegis.data.models import (
    TRADING_DAYS_PER_YEAR,
    MarketSnapshot,
    MarketSnapshotEntry,
    Position,
)


logger = logging.getLogger(__name__)


@runtime_checkable
class PortfolioDataSource(Protocol):
    """Pull-based provider of positions and market observations."""

    @property
    def name(self) -> str: ...

    async def fetch_positions(self) -> list[Position]: ...

    async def fetch_snapshot(self) -> MarketSnapshot: ...


class StaticDataSource:
    """
    Deterministic source returning the same positions and snapshot.

    Examples:
        source = StaticDataSource(positions, snapshot)
        manager = RiskManager(config)
        await manager.start(source, interval=timedelta(seconds=5))
    """

    def __init__(
        self,
        positions: Sequence[Position],
        snapshot: MarketSnapshot,
        name: str = "static",
    ) -> None:
        self._positions = list(positions)
        self._snapshot = snapshot
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def fetch_positions(self) -> list[Position]:
        return list(self._positions)

    async def fetch_snapshot(self) -> MarketSnapshot:
        return self._snapshot

    def update(
        self,
        positions: Sequence[Position] | None = None,
        snapshot: MarketSnapshot | None = None,
    ) -> None:
        """Replace the data served on the next fetch."""
        if positions is not None:
            self._positions = list(positions)
        if snapshot is not None:
            self._snapshot = snapshot


class SyntheticDataSource:
    """
    Seeded geometric random walk over a fixed universe.

    Each fetch_snapshot() advances every price by one step. Quantities stay
    fixed; positions are re-priced at the new marks.
    """

    def __init__(
        self,
        seed_entries: Sequence[MarketSnapshotEntry],
        quantities: dict[str, float],
        seed: int | None = None,
        steps_per_day: int = 1,
        name: str = "synthetic",
    ) -> None:
        self._entries = {e.symbol: e for e in seed_entries}
        self._quantities = dict(quantities)
        self._cost = {e.symbol: e.price for e in seed_entries}
        self._rng = np.random.default_rng(seed)
        self._steps_per_day = max(1, steps_per_day)
        self._name = name
        self._ticks = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def ticks(self) -> int:
        return self._ticks

    async def fetch_snapshot(self) -> MarketSnapshot:
        step_scale = 1.0 / math.sqrt(TRADING_DAYS_PER_YEAR * self._steps_per_day)
        updated: dict[str, MarketSnapshotEntry] = {}
        for symbol, entry in self._entries.items():
            vol = entry.volatility if entry.volatility is not None else 0.2
            shock = float(self._rng.normal(0.0, vol * step_scale))
            price = entry.price * math.exp(shock)
            volume = entry.adv * float(self._rng.uniform(0.5, 1.5))
            updated[symbol] = MarketSnapshotEntry(
                symbol=symbol,
                price=price,
                volume=volume,
                spread=entry.spread / entry.price * price,
                volatility=entry.volatility,
                liquidity_score=entry.liquidity_score,
                average_daily_volume=entry.average_daily_volume,
                sector=entry.sector,
                asset_class=entry.asset_class,
            )
        self._entries = updated
        self._ticks += 1
        logger.debug("Synthetic tick %d for %d symbols", self._ticks, len(updated))
        return MarketSnapshot(
            entries=dict(updated),
            timestamp=datetime.now(timezone.utc),
            source=self._name,
            synthetic=True,
        )

    async def fetch_positions(self) -> list[Position]:
        positions = []
        for symbol, quantity in self._quantities.items():
            entry = self._entries.get(symbol)
            if entry is None:
                continue
            positions.append(
                Position.create(
                    symbol,
                    quantity=quantity,
                    price=entry.price,
                    average_cost=self._cost[symbol],
                    sector=entry.sector,
                    asset_class=entry.asset_class,
                )
            )
        return positions
