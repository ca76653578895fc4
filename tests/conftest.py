"""
Pytest configuration and shared fixtures for AEGIS tests.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from aegis.core.clock import Clock
from aegis.data.models import MarketSnapshot, MarketSnapshotEntry, Position


START = datetime(2024, 1, 2, 14, 30, 0, tzinfo=timezone.utc)


# =============================================================================
# Time
# =============================================================================


@pytest.fixture
def clock() -> Clock:
    """Simulated clock starting at a fixed instant."""
    return Clock.simulated(START)


# =============================================================================
# Market data factories
# =============================================================================


@pytest.fixture
def make_entry() -> Callable[..., MarketSnapshotEntry]:
    """Factory for snapshot entries with liquid defaults."""

    def _make(
        symbol: str,
        price: float = 100.0,
        volatility: float | None = 0.25,
        liquidity_score: float = 0.9,
        volume: float = 5_000_000.0,
        spread: float | None = None,
        **kwargs: object,
    ) -> MarketSnapshotEntry:
        return MarketSnapshotEntry(
            symbol=symbol,
            price=price,
            volume=volume,
            spread=price * 0.0002 if spread is None else spread,
            volatility=volatility,
            liquidity_score=liquidity_score,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_positions() -> list[Position]:
    """Three long equity positions."""
    return [
        Position.create("AAPL", 100, 180.0, average_cost=150.0, sector="technology"),
        Position.create("MSFT", 50, 400.0, average_cost=380.0, sector="technology"),
        Position.create("XOM", 200, 110.0, average_cost=100.0, sector="energy"),
    ]


@pytest.fixture
def sample_snapshot(make_entry: Callable[..., MarketSnapshotEntry]) -> MarketSnapshot:
    """Snapshot covering sample_positions."""
    return MarketSnapshot.from_entries(
        [
            make_entry("AAPL", 180.0, volatility=0.28, sector="technology"),
            make_entry("MSFT", 400.0, volatility=0.24, sector="technology"),
            make_entry("XOM", 110.0, volatility=0.30, sector="energy"),
        ],
        timestamp=START,
        source="test",
    )


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
