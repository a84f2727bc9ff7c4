# vibecurve/scanner.py
import asyncio
import logging
import time
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .market_engine import PriceVenueClient
from .models import ArbitrageOpportunity, Confidence, Token, VenuePrice


class ScanOutcome(Enum):
    FOUND = "FOUND"
    TOO_FEW_VENUES = "TOO_FEW_VENUES"
    INSUFFICIENT_SPREAD = "INSUFFICIENT_SPREAD"
    INSUFFICIENT_LIQUIDITY = "INSUFFICIENT_LIQUIDITY"


def classify_confidence(spread_pct: float, liquidity: float) -> Confidence:
    if spread_pct > 1.0 and liquidity > 100:
        return Confidence.HIGH
    if spread_pct > 0.5 and liquidity > 50:
        return Confidence.MEDIUM
    return Confidence.LOW


class OpportunityScanner:
    """
    Compares the venue prices of a token and reports a cross-venue spread
    when it clears the profit and liquidity thresholds.
    """
    def __init__(self, prices: PriceVenueClient, logger: logging.Logger,
                 min_profit_percent: float = 0.3, min_liquidity: float = 10.0,
                 trading_cost_fraction: float = 0.001):
        self.prices = prices
        self.logger = logger
        self.min_profit_percent = min_profit_percent
        self.min_liquidity = min_liquidity
        self.trading_cost_fraction = trading_cost_fraction

    def update_params(self, min_profit_percent: Optional[float] = None,
                      min_liquidity: Optional[float] = None,
                      trading_cost_fraction: Optional[float] = None) -> None:
        if min_profit_percent is not None:
            self.min_profit_percent = min_profit_percent
        if min_liquidity is not None:
            self.min_liquidity = min_liquidity
        if trading_cost_fraction is not None:
            self.trading_cost_fraction = trading_cost_fraction

    def evaluate(self, token: Token, prices: Sequence[VenuePrice]
                 ) -> Tuple[Optional[ArbitrageOpportunity], ScanOutcome]:
        usable = [p for p in prices if p.price > 0]
        if len({p.venue for p in usable}) < 2:
            return None, ScanOutcome.TOO_FEW_VENUES

        cheapest = min(usable, key=lambda p: p.price)
        richest = max(usable, key=lambda p: p.price)
        spread_pct = (richest.price - cheapest.price) / cheapest.price * 100
        if spread_pct < self.min_profit_percent:
            return None, ScanOutcome.INSUFFICIENT_SPREAD

        avg_liquidity = sum(p.liquidity for p in usable) / len(usable)
        if avg_liquidity < self.min_liquidity:
            return None, ScanOutcome.INSUFFICIENT_LIQUIDITY

        estimated_profit = cheapest.price * spread_pct / 100 * (1 - self.trading_cost_fraction)
        opp = ArbitrageOpportunity(
            token=token,
            buy_venue=cheapest.venue,
            sell_venue=richest.venue,
            buy_price=cheapest.price,
            sell_price=richest.price,
            spread_pct=spread_pct,
            estimated_profit=estimated_profit,
            liquidity=avg_liquidity,
            confidence=classify_confidence(spread_pct, avg_liquidity),
            timestamp=time.time(),
        )
        return opp, ScanOutcome.FOUND

    async def scan(self, token: Token) -> Optional[ArbitrageOpportunity]:
        prices = await self.prices.get_prices(token)
        opp, outcome = self.evaluate(token, prices)
        if opp is None:
            self.logger.debug(f"{token.symbol}: no opportunity ({outcome.value})")
        else:
            self.logger.info(
                f"✨ FOUND: {token.symbol} Spread: {opp.spread_pct:.2f}% | "
                f"Buy {opp.buy_venue} -> Sell {opp.sell_venue} | {opp.confidence.value}"
            )
        return opp

    async def scan_batch(self, tokens: Sequence[Token]) -> List[ArbitrageOpportunity]:
        results = await asyncio.gather(*(self.scan(t) for t in tokens))
        found = [opp for opp in results if opp is not None]
        found.sort(key=lambda o: o.estimated_profit, reverse=True)
        return found
