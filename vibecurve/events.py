# vibecurve/events.py
"""
Typed events and the bus that fans them out.

Every event class belongs to one channel (`strategy-event`, `opportunity`,
`executed`, `stats-updated`). Handlers subscribe to a class and receive
instances of it and of its subclasses, so subscribing to StrategyEvent
yields every strategy lifecycle event.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, List, Optional, Type, TypeVar

from .models import (
    ArbitrageOpportunity, ArbitrageResult, ExecutionRecord, OrderResult,
    TradingStrategy,
)


@dataclass(slots=True)
class Event:
    channel: ClassVar[str] = "event"


# --- strategy lifecycle ---

@dataclass(slots=True)
class StrategyEvent(Event):
    channel: ClassVar[str] = "strategy-event"
    kind: ClassVar[str] = "STRATEGY"

    strategy_id: str
    timestamp: float = field(default_factory=time.time, kw_only=True)


@dataclass(slots=True)
class StrategyCreated(StrategyEvent):
    kind: ClassVar[str] = "CREATED"
    strategy: Optional[TradingStrategy] = None


@dataclass(slots=True)
class StrategyStarted(StrategyEvent):
    kind: ClassVar[str] = "STARTED"
    resumed: bool = False


@dataclass(slots=True)
class StrategyExecuted(StrategyEvent):
    kind: ClassVar[str] = "EXECUTED"
    result: Optional[OrderResult] = None


@dataclass(slots=True)
class StrategyStopped(StrategyEvent):
    kind: ClassVar[str] = "STOPPED"
    reason: str = "manual"
    exit_result: Optional[OrderResult] = None


@dataclass(slots=True)
class StrategyCompleted(StrategyEvent):
    kind: ClassVar[str] = "COMPLETED"
    executed_amount: float = 0.0


@dataclass(slots=True)
class StrategyError(StrategyEvent):
    kind: ClassVar[str] = "ERROR"
    error: str = ""
    result: Optional[OrderResult] = None


# --- orchestrator ---

@dataclass(slots=True)
class OpportunityFound(Event):
    channel: ClassVar[str] = "opportunity"
    opportunity: ArbitrageOpportunity


@dataclass(slots=True)
class Executed(Event):
    channel: ClassVar[str] = "executed"
    result: ExecutionRecord


@dataclass(slots=True)
class StatsUpdated(Event):
    channel: ClassVar[str] = "stats-updated"
    stats: Dict[str, float]


E = TypeVar("E", bound=Event)
Handler = Callable[[E], None]


class EventBus:
    """
    Synchronous fan-out. A failing handler is logged and never reaches the
    publisher, so trading logic cannot be broken by a subscriber.
    """
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.handlers: Dict[Type[Event], List[Callable]] = defaultdict(list)
        self.logger = logger or logging.getLogger("VibeCurve")

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self.handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        if handler in self.handlers.get(event_type, []):
            self.handlers[event_type].remove(handler)

    def publish(self, event: Event) -> None:
        for cls in type(event).__mro__:
            for handler in list(self.handlers.get(cls, [])):
                try:
                    handler(event)
                except Exception:
                    self.logger.exception(f"Event handler failed for {type(event).__name__}")
