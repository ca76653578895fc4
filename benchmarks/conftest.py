"""
Benchmark fixtures and configuration.

- GC disabled during measurements
- Warmup before measurement
- Seeded universes so runs are comparable
"""

from __future__ import annotations

import gc
from typing import TYPE_CHECKING

import numpy as np
import pytest

from aegis.data.models import MarketSnapshot, MarketSnapshotEntry, Position


if TYPE_CHECKING:
    from collections.abc import Generator


SECTORS = ["technology", "financials", "energy", "healthcare", "utilities"]


# =============================================================================
# GC Control Fixtures
# =============================================================================


@pytest.fixture
def gc_disabled() -> Generator[None, None, None]:
    """Disable garbage collection during benchmark."""
    gc_was_enabled = gc.isenabled()
    gc.disable()
    gc.collect()
    try:
        yield
    finally:
        if gc_was_enabled:
            gc.enable()


# =============================================================================
# Universe Fixtures
# =============================================================================


def make_universe(size: int, seed: int = 42) -> tuple[list[Position], MarketSnapshot]:
    """Equal-quantity long book over `size` liquid symbols."""
    rng = np.random.default_rng(seed)
    entries = []
    positions = []
    for i in range(size):
        symbol = f"SYM{i:03d}"
        price = float(rng.uniform(20.0, 500.0))
        sector = SECTORS[i % len(SECTORS)]
        entries.append(
            MarketSnapshotEntry(
                symbol=symbol,
                price=price,
                volume=float(rng.uniform(1e6, 2e7)),
                spread=price * 0.0002,
                volatility=float(rng.uniform(0.15, 0.45)),
                liquidity_score=float(rng.uniform(0.5, 1.0)),
                sector=sector,
            )
        )
        positions.append(Position.create(symbol, 100, price, sector=sector))
    return positions, MarketSnapshot.from_entries(entries, source="bench")


@pytest.fixture
def universe_50() -> tuple[list[Position], MarketSnapshot]:
    return make_universe(50)


def pytest_configure(config: pytest.Config) -> None:
    """Register benchmark markers."""
    config.addinivalue_line("markers", "benchmark: micro benchmarks")
    config.addinivalue_line("markers", "bench_e2e: end-to-end benchmarks")
