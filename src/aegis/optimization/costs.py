"""
Transaction cost model.

Estimates the cost of a proposed trade from the symbol's snapshot entry:
- Spread: half the quoted spread on the traded notional
- Market impact: square-root law, sigma_daily * sqrt(|q| / ADV), scaled up
  for illiquid names
- Slippage: base rate plus a volatility-scaled participation term
- Commission: progressive marginal tiers with a per-trade minimum
- Financing: carry on the notional financed above 1x leverage

References:
- Almgren et al., "Direct Estimation of Equity Market Impact" (2005)
- Talos Market Impact Model: https://www.talos.com/insights/understanding-market-impact
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping

import msgspec

from aegis.core.errors import DataError
from aegis.data.models import MarketSnapshot, MarketSnapshotEntry
from aegis.optimization.config import CostModelConfig


logger = logging.getLogger(__name__)


class TransactionCost(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """Cost components. Currency, or a fraction of portfolio value when aggregated."""

    spread_cost: float = 0.0
    market_impact: float = 0.0
    commission_cost: float = 0.0
    slippage_cost: float = 0.0
    financing_cost: float = 0.0
    total_cost: float = 0.0

    @classmethod
    def of(
        cls,
        spread_cost: float = 0.0,
        market_impact: float = 0.0,
        commission_cost: float = 0.0,
        slippage_cost: float = 0.0,
        financing_cost: float = 0.0,
    ) -> TransactionCost:
        """Build from components; total is their sum."""
        return cls(
            spread_cost=spread_cost,
            market_impact=market_impact,
            commission_cost=commission_cost,
            slippage_cost=slippage_cost,
            financing_cost=financing_cost,
            total_cost=math.fsum(
                (spread_cost, market_impact, commission_cost, slippage_cost, financing_cost)
            ),
        )

    def __add__(self, other: TransactionCost) -> TransactionCost:
        return TransactionCost.of(
            self.spread_cost + other.spread_cost,
            self.market_impact + other.market_impact,
            self.commission_cost + other.commission_cost,
            self.slippage_cost + other.slippage_cost,
            self.financing_cost + other.financing_cost,
        )

    def scaled(self, factor: float) -> TransactionCost:
        return TransactionCost.of(
            self.spread_cost * factor,
            self.market_impact * factor,
            self.commission_cost * factor,
            self.slippage_cost * factor,
            self.financing_cost * factor,
        )


ZERO_COST = TransactionCost()


class TransactionCostModel:
    """
    Pre-trade cost estimates.

    Example:
        model = TransactionCostModel(CostModelConfig(impact_coefficient=0.1))
        cost = model.estimate("AAPL", 500, snapshot["AAPL"])
        print(f"Total: ${cost.total_cost:,.2f} (impact ${cost.market_impact:,.2f})")
    """

    def __init__(self, config: CostModelConfig | None = None) -> None:
        self.config = config or CostModelConfig()

    # =========================================================================
    # Single trade
    # =========================================================================

    def estimate(
        self,
        symbol: str,
        quantity_delta: float,
        entry: MarketSnapshotEntry | None,
        leverage: float = 1.0,
        impact_scale: float = 1.0,
    ) -> TransactionCost:
        """
        Cost of trading `quantity_delta` units (sign gives direction).

        Args:
            symbol: Traded symbol
            quantity_delta: Signed quantity change
            entry: Snapshot entry for the symbol
            leverage: Gross leverage of the resulting portfolio
            impact_scale: Multiplier on market impact (execution strategy)

        Raises:
            DataError: No snapshot entry for the symbol
        """
        if entry is None:
            raise DataError(f"{symbol}: no market data to price the trade", symbol=symbol)
        quantity = abs(quantity_delta)
        if quantity == 0:
            return ZERO_COST
        return self._cost(quantity * entry.price, entry, leverage, impact_scale)

    def commission(self, notional: float) -> float:
        """Progressive commission: each tier's rate applies to the notional inside it."""
        if notional <= 0:
            return 0.0
        remaining = notional
        lower = 0.0
        total = 0.0
        for tier in self.config.commission_tiers:
            width = tier.up_to - lower
            charged = min(remaining, width)
            total += charged * tier.rate
            remaining -= charged
            lower = tier.up_to
            if remaining <= 0:
                break
        if remaining > 0:
            # Notional beyond the last bracket pays the last rate
            total += remaining * self.config.commission_tiers[-1].rate
        return max(total, self.config.min_commission)

    def _cost(
        self,
        notional: float,
        entry: MarketSnapshotEntry | None,
        leverage: float = 1.0,
        impact_scale: float = 1.0,
    ) -> TransactionCost:
        cfg = self.config
        financing = self._financing(notional, leverage)

        if entry is None:
            spread = notional * cfg.default_spread_bps / 10_000 / 2
            return TransactionCost.of(
                spread_cost=spread,
                commission_cost=self.commission(notional),
                financing_cost=financing,
            )

        quantity = notional / entry.price
        sigma_daily = entry.daily_volatility or 0.0
        adv = entry.adv
        participation = quantity / entry.volume if entry.volume > 0 else 1.0

        spread = notional * (entry.spread / entry.price) / 2
        impact = (
            cfg.impact_coefficient
            * sigma_daily
            * math.sqrt(quantity / adv if adv > 0 else 1.0)
            * notional
            / max(entry.liquidity_score, cfg.min_liquidity_score)
        ) * impact_scale
        slippage = notional * (cfg.base_slippage + cfg.slippage_coefficient * sigma_daily * participation)

        return TransactionCost.of(
            spread_cost=spread,
            market_impact=impact,
            commission_cost=self.commission(notional),
            slippage_cost=slippage,
            financing_cost=financing,
        )

    def _financing(self, notional: float, leverage: float) -> float:
        if leverage <= 1.0:
            return 0.0
        financed = notional * (leverage - 1.0) / leverage
        return financed * self.config.financing_rate * self.config.holding_days / 365

    # =========================================================================
    # Portfolio rebalance
    # =========================================================================

    def weight_cost(
        self,
        delta_weight: float,
        entry: MarketSnapshotEntry | None,
        portfolio_value: float,
        leverage: float = 1.0,
    ) -> float:
        """Total cost of moving one symbol by `delta_weight`, as a fraction of portfolio value."""
        notional = abs(delta_weight) * portfolio_value
        if notional <= 0 or portfolio_value <= 0:
            return 0.0
        return self._cost(notional, entry, leverage).total_cost / portfolio_value

    def estimate_rebalance(
        self,
        current: Mapping[str, float],
        target: Mapping[str, float],
        snapshot: MarketSnapshot,
        portfolio_value: float,
    ) -> TransactionCost:
        """
        Aggregate cost of moving from `current` to `target` weights.

        Returns:
            TransactionCost as a fraction of portfolio value
        """
        if portfolio_value <= 0:
            raise ValueError("portfolio_value must be positive")

        leverage = max(1.0, math.fsum(abs(w) for w in target.values()))
        total = ZERO_COST
        for symbol in sorted(set(current) | set(target)):
            delta = target.get(symbol, 0.0) - current.get(symbol, 0.0)
            if delta == 0:
                continue
            entry = snapshot.get(symbol)
            if entry is None:
                logger.debug("%s: pricing rebalance with default spread", symbol)
            total = total + self._cost(abs(delta) * portfolio_value, entry, leverage)
        return total.scaled(1.0 / portfolio_value)

    @staticmethod
    def is_worth_trading(cost: TransactionCost | float, expected_return: float) -> bool:
        """True when the expected return (same units as the cost) exceeds the cost."""
        total = cost.total_cost if isinstance(cost, TransactionCost) else cost
        return expected_return > total
