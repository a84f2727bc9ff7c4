# vibecurve/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union
import time

SOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9


class StrategyKind(Enum):
    DCA = "DCA"
    GRID = "GRID"
    MOMENTUM = "MOMENTUM"
    MEAN_REVERSION = "MEAN_REVERSION"


class StrategyState(Enum):
    """
    Enum representing the lifecycle states of a strategy run.
    COMPLETED and ERROR are terminal for a run; PAUSED can be resumed.
    """
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class RiskLevel(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class Direction(Enum):
    BUY = "BUY"
    SELL = "SELL"


class Confidence(Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ErrorCode(Enum):
    QUOTE_FAILED = "QUOTE_FAILED"
    TRANSACTION_BUILD_FAILED = "TRANSACTION_BUILD_FAILED"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    BUNDLE_TIMEOUT = "BUNDLE_TIMEOUT"
    BUNDLE_REJECTED = "BUNDLE_REJECTED"
    RISK_REJECTED = "RISK_REJECTED"
    UNKNOWN = "UNKNOWN"


class PositionAction(Enum):
    CLOSE = "CLOSE"
    HOLD = "HOLD"
    UPDATE_STOP = "UPDATE_STOP"


@dataclass(slots=True, frozen=True)
class Token:
    """A tradable SPL token. Amounts of it are always in human units."""
    mint: str
    symbol: str
    decimals: int = 9
    cex_symbol: Optional[str] = None  # e.g. BONK/USDT on a centralized venue

    def to_atomic(self, amount: float) -> int:
        return int(round(amount * (10 ** self.decimals)))

    def from_atomic(self, amount: int) -> float:
        return amount / (10 ** self.decimals)


SOL = Token(mint=SOL_MINT, symbol="SOL", decimals=SOL_DECIMALS)


@dataclass(slots=True)
class VenuePrice:
    """
    One venue's view of a token: price in SOL per token, liquidity in SOL.
    """
    venue: str
    price: float
    liquidity: float
    timestamp: float = field(default_factory=time.time)

    @property
    def age(self) -> float:
        """Returns the age of the data in seconds."""
        return time.time() - self.timestamp


# --- Strategy parameter variants (one per StrategyKind) ---

@dataclass(slots=True, frozen=True)
class DcaParams:
    intervals: int
    interval_seconds: float


@dataclass(slots=True, frozen=True)
class GridParams:
    levels: int
    step_pct: float = 0.02


@dataclass(slots=True, frozen=True)
class MomentumParams:
    window: int = 10
    threshold: float = 0.05


@dataclass(slots=True, frozen=True)
class MeanReversionParams:
    window: int = 20
    drop_pct: float = 0.05


StrategyParams = Union[DcaParams, GridParams, MomentumParams, MeanReversionParams]


def kind_of(params: StrategyParams) -> StrategyKind:
    match params:
        case DcaParams():
            return StrategyKind.DCA
        case GridParams():
            return StrategyKind.GRID
        case MomentumParams():
            return StrategyKind.MOMENTUM
        case MeanReversionParams():
            return StrategyKind.MEAN_REVERSION
    raise TypeError(f"Unknown strategy params: {params!r}")


@dataclass(slots=True, frozen=True)
class TradingStrategy:
    """
    Immutable description of intent. total_amount is in SOL.
    stop_loss / take_profit are fractions (0.15 = 15%).
    """
    id: str
    token: Token
    total_amount: float
    params: StrategyParams
    risk_level: RiskLevel = RiskLevel.MODERATE
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    enabled: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> StrategyKind:
        return kind_of(self.params)


@dataclass(slots=True)
class StrategyStatus:
    strategy_id: str
    total_amount: float
    state: StrategyState = StrategyState.IDLE
    progress: float = 0.0
    executed_amount: float = 0.0
    remaining_amount: float = 0.0
    token_amount: float = 0.0
    entry_price: float = 0.0
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    executions: int = 0
    last_execution_time: float = 0.0
    next_execution_time: Optional[float] = None
    last_error: Optional[str] = None

    def record_fill(self, spent: float, tokens: float, price: float) -> None:
        """Moves `spent` SOL from remaining to executed in one step."""
        self.executed_amount += spent
        self.remaining_amount = max(0.0, self.total_amount - self.executed_amount)
        self.token_amount += tokens
        self.progress = min(100.0, self.executed_amount / self.total_amount * 100) if self.total_amount else 100.0
        self.executions += 1
        self.last_execution_time = time.time()
        if self.entry_price == 0.0 and price > 0:
            self.entry_price = price

    def mark_price(self, price: float) -> None:
        self.current_price = price
        if self.entry_price > 0:
            self.unrealized_pnl = self.token_amount * price - self.executed_amount
            self.unrealized_pnl_pct = (price - self.entry_price) / self.entry_price * 100


@dataclass(slots=True)
class Position:
    token: str
    symbol: str
    entry_price: float
    current_price: float
    amount: float
    value_in_sol: float
    stop_loss: float
    take_profit: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    opened_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class ClosedPosition:
    position: Position
    exit_price: float
    realized_pnl: float
    realized_pnl_pct: float


@dataclass(slots=True)
class PositionUpdate:
    token: str
    action: PositionAction
    reason: str
    stop_loss: Optional[float] = None


@dataclass(slots=True)
class RiskDecision:
    """
    Outcome of a risk check. A rejection is a normal value, not an error.
    """
    approved: bool
    adjusted_size: float = 0.0
    reason: Optional[str] = None
    retry_after: Optional[float] = None


@dataclass(slots=True)
class ArbitrageOpportunity:
    """
    Represents a qualified arbitrage signal passed from Scanner to Execution.
    """
    token: Token
    buy_venue: str
    sell_venue: str
    buy_price: float
    sell_price: float
    spread_pct: float
    estimated_profit: float
    liquidity: float
    confidence: Confidence
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class OrderResult:
    """
    Terminal outcome of one pipeline run. `amount` is the input spent
    (SOL for buys, tokens for sells); `filled_amount` is the output received.
    """
    success: bool
    token: str
    direction: Direction
    amount: float
    filled_amount: float = 0.0
    fill_price: float = 0.0
    relay_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    at_risk_amount: float = 0.0
    realized_pnl: float = 0.0
    simulated: bool = False
    elapsed_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def pnl(self) -> float:
        return self.realized_pnl


@dataclass(slots=True)
class ArbitrageResult:
    opportunity: ArbitrageOpportunity
    success: bool
    legs: List[OrderResult] = field(default_factory=list)
    net_profit: float = 0.0
    elapsed_ms: float = 0.0
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def pnl(self) -> float:
        return self.net_profit


ExecutionRecord = Union[OrderResult, ArbitrageResult]


@dataclass(slots=True)
class ExecutionStats:
    total_executions: int = 0
    successful: int = 0
    total_profit: float = 0.0
    total_loss: float = 0.0
    total_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successful / self.total_executions if self.total_executions else 0.0

    @property
    def net_profit(self) -> float:
        return self.total_profit - self.total_loss

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.total_executions if self.total_executions else 0.0

    def add(self, record: ExecutionRecord) -> None:
        self.total_executions += 1
        self.total_latency_ms += record.elapsed_ms
        if record.success:
            self.successful += 1
        # A failed submission can still lose money, so P&L folds regardless of success.
        if record.pnl > 0:
            self.total_profit += record.pnl
        elif record.pnl < 0:
            self.total_loss += abs(record.pnl)

    def to_dict(self) -> dict:
        return {
            'total_executions': self.total_executions,
            'success_rate': self.success_rate,
            'total_profit': self.total_profit,
            'total_loss': self.total_loss,
            'net_profit': self.net_profit,
            'avg_latency_ms': self.avg_latency_ms,
        }


@dataclass(slots=True)
class CommandResult:
    """Response shape of every control-surface call."""
    success: bool
    data: object = None
    error: Optional[str] = None
