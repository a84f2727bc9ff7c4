import logging
import time
from typing import Dict, List, Optional

import pytest

from vibecurve.config import EngineConfig, RiskConfig
from vibecurve.events import EventBus
from vibecurve.models import Direction, ErrorCode, OrderResult, Token, VenuePrice
from vibecurve.risk_engine import RiskAuthority
from vibecurve.scheduler import Scheduler

BONK = Token(mint="DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", symbol="BONK", decimals=5)
WIF = Token(mint="EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm", symbol="WIF", decimals=6)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVenue:
    def __init__(self, name: str, quotes: Optional[List[VenuePrice]] = None, error: Optional[Exception] = None):
        self.name = name
        self.quotes = quotes or []
        self.error = error
        self.calls = 0

    async def fetch(self, token):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.quotes)

    async def close(self):
        pass


class FakePrices:
    """Stands in for PriceVenueClient; returns a settable reference price."""
    def __init__(self, price: Optional[float] = 1.0, quotes: Optional[Dict[str, List[VenuePrice]]] = None):
        self.price = price
        self.quotes = quotes or {}

    async def reference_price(self, token):
        return self.price

    async def get_prices(self, token):
        return list(self.quotes.get(token.mint, []))

    def invalidate(self, token=None):
        pass

    async def shutdown(self):
        pass


class FakePipeline:
    """Fills every order at `price` SOL per token unless told to fail."""
    def __init__(self, price: float = 0.001):
        self.price = price
        self.dry_run = True
        self.wallet = None
        self.relay = None
        self.calls: List[tuple] = []
        self.fail_with: List[ErrorCode] = []

    async def execute(self, token, amount, direction):
        self.calls.append((token.symbol, amount, direction))
        if self.fail_with:
            code = self.fail_with.pop(0)
            return OrderResult(success=False, token=token.mint, direction=direction, amount=amount,
                               error_code=code, error=code.value)
        if direction == Direction.BUY:
            filled = amount / self.price
        else:
            filled = amount * self.price
        return OrderResult(success=True, token=token.mint, direction=direction, amount=amount,
                           filled_amount=filled, fill_price=self.price, simulated=True)

    def update_config(self, **updates):
        pass


@pytest.fixture
def logger():
    return logging.getLogger("VibeCurveTest")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def risk_config():
    return RiskConfig(cooldown_period=0.0, max_trades_per_hour=1000, max_position_size=1.0,
                      max_total_position=5.0, max_open_positions=10)


@pytest.fixture
def risk(risk_config, logger):
    return RiskAuthority(risk_config, logger)


@pytest.fixture
def engine_config():
    return EngineConfig(monitor_interval=0.01, watch_interval=0.01, order_retries=2,
                        retry_backoff=0.0, retry_backoff_max=0.0)


@pytest.fixture
def bus(logger):
    return EventBus(logger)


@pytest.fixture
def scheduler(logger):
    return Scheduler(logger)


def venue_price(venue: str, price: float, liquidity: float = 120.0) -> VenuePrice:
    return VenuePrice(venue=venue, price=price, liquidity=liquidity, timestamp=time.time())


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Polls `predicate` until it holds; the strategy engine runs on timers."""
    import asyncio
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
