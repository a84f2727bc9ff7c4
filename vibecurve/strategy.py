# vibecurve/strategy.py
import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Set

from .config import EngineConfig
from .errors import InvalidTransition, StrategyNotFound, VibeCurveError
from .events import (
    EventBus, StrategyCompleted, StrategyCreated, StrategyError, StrategyExecuted,
    StrategyStarted, StrategyStopped,
)
from .execution import OrderPipeline
from .logger import AsyncAuditLogger
from .market_engine import PriceVenueClient
from .models import (
    DcaParams, Direction, ErrorCode, GridParams, MeanReversionParams, MomentumParams,
    OrderResult, PositionAction, RiskLevel, StrategyParams, StrategyState, StrategyStatus,
    Token, TradingStrategy, kind_of,
)
from .risk_engine import RiskAuthority
from .scheduler import JobKind, Scheduler

# Nothing was submitted for these, so trying again cannot double-spend.
RETRYABLE = {ErrorCode.QUOTE_FAILED, ErrorCode.TRANSACTION_BUILD_FAILED}


@dataclass(slots=True)
class StrategyRun:
    """Mutable per-strategy runtime state owned by the engine."""
    strategy: TradingStrategy
    status: StrategyStatus
    dca_attempted: int = 0
    grid_levels: List[float] = field(default_factory=list)
    grid_filled: Set[int] = field(default_factory=set)
    window: Optional[Deque[float]] = None
    exiting: bool = False


class StrategyEngine:
    """
    Runs DCA, grid, momentum and mean-reversion strategies.
    Every trigger and price monitor is a Scheduler job owned by the strategy
    id, so stopping a strategy is a single cancel_owner call.
    Orders always pass RiskAuthority first and run in a shielded task:
    stopping a strategy never aborts an order that is already in flight.
    """
    def __init__(self, prices: PriceVenueClient, risk: RiskAuthority, pipeline: OrderPipeline,
                 scheduler: Scheduler, bus: EventBus, config: EngineConfig,
                 logger: logging.Logger, audit: Optional[AsyncAuditLogger] = None):
        self.prices = prices
        self.risk = risk
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.bus = bus
        self.cfg = config
        self.logger = logger
        self.audit = audit
        self._runs: Dict[str, StrategyRun] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._seq = itertools.count(1)

    # --- CRUD ---

    def create_strategy(self, token: Token, total_amount: float, params: StrategyParams,
                        risk_level: RiskLevel = RiskLevel.MODERATE,
                        stop_loss: Optional[float] = None,
                        take_profit: Optional[float] = None,
                        enabled: bool = True) -> TradingStrategy:
        if total_amount <= 0:
            raise VibeCurveError("total_amount must be positive")
        self._validate_params(params)

        strategy = TradingStrategy(
            id=self._new_id(params, token),
            token=token,
            total_amount=total_amount,
            params=params,
            risk_level=risk_level,
            stop_loss=stop_loss,
            take_profit=take_profit,
            enabled=enabled,
        )
        status = StrategyStatus(strategy_id=strategy.id, total_amount=total_amount,
                                remaining_amount=total_amount)
        self._runs[strategy.id] = StrategyRun(strategy=strategy, status=status)
        self.logger.info(f"🆕 CREATED: {strategy.id} | {total_amount} SOL | {params}")
        self.bus.publish(StrategyCreated(strategy.id, strategy=strategy))
        return strategy

    def _new_id(self, params: StrategyParams, token: Token) -> str:
        base = f"{kind_of(params).value.lower()}-{token.symbol.lower()}-{int(time.time() * 1000)}"
        strategy_id = base
        while strategy_id in self._runs:
            strategy_id = f"{base}-{next(self._seq)}"
        return strategy_id

    @staticmethod
    def _validate_params(params: StrategyParams) -> None:
        match params:
            case DcaParams(intervals=n, interval_seconds=s):
                if n < 1 or s < 0:
                    raise VibeCurveError("DCA needs intervals >= 1 and interval_seconds >= 0")
            case GridParams(levels=n, step_pct=step):
                if n < 1 or not 0 < step * n < 1:
                    raise VibeCurveError("Grid needs levels >= 1 and levels * step_pct in (0, 1)")
            case MomentumParams(window=w) | MeanReversionParams(window=w):
                if w < 2:
                    raise VibeCurveError("Rolling window must hold at least 2 prices")
            case _:
                raise VibeCurveError(f"Unsupported strategy params: {params!r}")

    def update_strategy(self, strategy_id: str, **changes) -> TradingStrategy:
        """Edits stop_loss / take_profit / enabled / risk_level of a strategy."""
        run = self._get_run(strategy_id)
        allowed = {'stop_loss', 'take_profit', 'enabled', 'risk_level'}
        unknown = set(changes) - allowed
        if unknown:
            raise VibeCurveError(f"Cannot update {sorted(unknown)}")
        run.strategy = replace(run.strategy, updated_at=time.time(), **changes)
        return run.strategy

    def delete_strategy(self, strategy_id: str) -> None:
        self.stop_strategy(strategy_id)
        del self._runs[strategy_id]
        self.logger.info(f"🗑️ DELETED: {strategy_id}")

    def get_strategy(self, strategy_id: str) -> TradingStrategy:
        return self._get_run(strategy_id).strategy

    def get_strategies(self) -> List[TradingStrategy]:
        return [r.strategy for r in self._runs.values()]

    def get_status(self, strategy_id: str) -> StrategyStatus:
        run = self._get_run(strategy_id)
        times = [j.next_fire for j in self.scheduler.jobs(strategy_id) if j.kind != JobKind.PRICE_MONITOR]
        run.status.next_execution_time = min(times) if times else None
        return run.status

    def get_all_statuses(self) -> List[StrategyStatus]:
        return [self.get_status(sid) for sid in self._runs]

    def _get_run(self, strategy_id: str) -> StrategyRun:
        run = self._runs.get(strategy_id)
        if run is None:
            raise StrategyNotFound(strategy_id)
        return run

    # --- lifecycle ---

    async def start_strategy(self, strategy_id: str) -> StrategyStatus:
        run = self._get_run(strategy_id)
        status = run.status
        if status.state == StrategyState.RUNNING:
            return status
        if status.state in (StrategyState.COMPLETED, StrategyState.ERROR):
            raise InvalidTransition(f"{strategy_id} is {status.state.value}; create a new strategy to run again")
        if not run.strategy.enabled:
            raise InvalidTransition(f"{strategy_id} is disabled")

        resumed = status.state == StrategyState.PAUSED
        token = run.strategy.token
        price = await self.prices.reference_price(token)
        if price is None:
            status.state = StrategyState.ERROR
            status.last_error = f"No price available for {token.symbol}"
            self.logger.error(f"❌ {strategy_id}: cannot start, {status.last_error}")
            self.bus.publish(StrategyError(strategy_id, error=status.last_error))
            return status

        status.state = StrategyState.RUNNING
        status.mark_price(price)
        self.logger.info(f"▶️ {'RESUMED' if resumed else 'STARTED'}: {strategy_id} @ {price:.10f}")
        self.bus.publish(StrategyStarted(strategy_id, resumed=resumed))

        match run.strategy.params:
            case DcaParams() as p:
                self._schedule_dca(run, p)
            case GridParams() as p:
                self._schedule_grid(run, p, price)
            case MomentumParams() as p:
                self._schedule_momentum(run, p, price)
            case MeanReversionParams() as p:
                self._schedule_mean_reversion(run, p, price)

        self.scheduler.schedule_every(strategy_id, JobKind.PRICE_MONITOR, self.cfg.monitor_interval,
                                      lambda: self._monitor_tick(run), label="monitor")
        return status

    def stop_strategy(self, strategy_id: str) -> StrategyStatus:
        """Cancels every job of the strategy. Calling it again changes nothing."""
        run = self._get_run(strategy_id)
        self.scheduler.cancel_owner(strategy_id)
        if run.status.state == StrategyState.RUNNING:
            run.status.state = StrategyState.PAUSED
            self.logger.info(f"⏸️ STOPPED: {strategy_id}")
            self.bus.publish(StrategyStopped(strategy_id, reason="manual"))
        return run.status

    async def shutdown(self) -> None:
        for strategy_id in list(self._runs):
            self.stop_strategy(strategy_id)
        if self._inflight:
            self.logger.info(f"Waiting for {len(self._inflight)} in-flight orders...")
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # --- triggers ---

    def _schedule_dca(self, run: StrategyRun, p: DcaParams) -> None:
        pending = p.intervals - run.dca_attempted
        per_interval = run.strategy.total_amount / p.intervals
        for i in range(pending):
            self.scheduler.schedule_once(run.strategy.id, JobKind.DCA_INTERVAL, i * p.interval_seconds,
                                         lambda: self._dca_tick(run, per_interval),
                                         label=f"dca {run.dca_attempted + i + 1}/{p.intervals}")

    async def _dca_tick(self, run: StrategyRun, amount: float) -> None:
        if run.status.state != StrategyState.RUNNING:
            return
        run.dca_attempted += 1
        await self._buy(run, amount, f"dca #{run.dca_attempted}")

    def _schedule_grid(self, run: StrategyRun, p: GridParams, price: float) -> None:
        if not run.grid_levels:
            run.grid_levels = [price * (1 - i * p.step_pct) for i in range(1, p.levels + 1)]
            self.logger.info(f"{run.strategy.id}: grid levels {[f'{lvl:.10f}' for lvl in run.grid_levels]}")
        per_level = run.strategy.total_amount / p.levels
        for idx, level in enumerate(run.grid_levels):
            if idx in run.grid_filled:
                continue
            self.scheduler.schedule_every(run.strategy.id, JobKind.GRID_LEVEL, self.cfg.watch_interval,
                                          lambda idx=idx, level=level: self._grid_tick(run, idx, level, per_level),
                                          label=f"grid {level:.10f}")

    async def _grid_tick(self, run: StrategyRun, idx: int, level: float, amount: float) -> bool:
        price = await self.prices.reference_price(run.strategy.token)
        if price is None or price > level:
            return False
        self.logger.info(f"📉 GRID: {run.strategy.id} price {price:.10f} <= level {level:.10f}")
        result = await self._buy(run, amount, f"grid {idx + 1}")
        if result is not None and result.success:
            run.grid_filled.add(idx)
            return True
        return run.status.state != StrategyState.RUNNING

    def _schedule_momentum(self, run: StrategyRun, p: MomentumParams, price: float) -> None:
        run.window = deque([price], maxlen=p.window)

        async def tick() -> bool:
            current = await self.prices.reference_price(run.strategy.token)
            if current is None:
                return False
            run.window.append(current)
            sma = sum(run.window) / len(run.window)
            if sma <= 0 or (current - sma) / sma <= p.threshold:
                return False
            self.logger.info(f"🚀 MOMENTUM: {run.strategy.id} {(current - sma) / sma:.2%} above SMA")
            return await self._one_shot_buy(run, "momentum")

        self.scheduler.schedule_every(run.strategy.id, JobKind.MOMENTUM, self.cfg.watch_interval,
                                      tick, label="momentum")

    def _schedule_mean_reversion(self, run: StrategyRun, p: MeanReversionParams, price: float) -> None:
        run.window = deque([price], maxlen=p.window)

        async def tick() -> bool:
            current = await self.prices.reference_price(run.strategy.token)
            if current is None:
                return False
            run.window.append(current)
            mean = sum(run.window) / len(run.window)
            if current >= mean * (1 - p.drop_pct):
                return False
            self.logger.info(f"🔁 MEAN REVERSION: {run.strategy.id} {current:.10f} below mean {mean:.10f}")
            return await self._one_shot_buy(run, "mean reversion")

        self.scheduler.schedule_every(run.strategy.id, JobKind.MEAN_REVERSION, self.cfg.watch_interval,
                                      tick, label="mean reversion")

    async def _one_shot_buy(self, run: StrategyRun, label: str) -> bool:
        result = await self._buy(run, run.status.remaining_amount, label)
        if result is not None and result.success:
            return True
        return run.status.state != StrategyState.RUNNING

    # --- monitor / exits ---

    async def _monitor_tick(self, run: StrategyRun) -> None:
        token = run.strategy.token
        price = await self.prices.reference_price(token)
        if price is None:
            return
        status = run.status
        status.mark_price(price)
        if run.exiting or status.token_amount <= 0:
            return

        reason = None
        sl, tp = run.strategy.stop_loss, run.strategy.take_profit
        if sl and status.unrealized_pnl_pct <= -sl * 100:
            reason = "stop_loss"
        elif tp and status.unrealized_pnl_pct >= tp * 100:
            reason = "take_profit"
        else:
            for update in self.risk.update_positions({token.mint: price}):
                if update.token == token.mint and update.action == PositionAction.CLOSE:
                    reason = "stop_loss" if update.reason.startswith("stop_loss") else "take_profit"

        if reason is not None:
            await self._exit(run, reason, price)

    async def _exit(self, run: StrategyRun, reason: str, price: float) -> None:
        strategy_id = run.strategy.id
        token = run.strategy.token
        status = run.status
        run.exiting = True
        try:
            self.logger.warning(f"🛑 EXIT: {strategy_id} {reason} @ {price:.10f} (PnL {status.unrealized_pnl_pct:+.2f}%)")
            decision = self.risk.check_trade(token.mint, status.token_amount * price, is_buy=False)
            if not decision.approved:
                status.last_error = f"Exit blocked: {decision.reason}"
                self.bus.publish(StrategyError(strategy_id, error=status.last_error))
                return

            amount = status.token_amount
            cost_basis = status.executed_amount
            result = await self._shielded_order(run, amount, Direction.SELL)
            if not result.success:
                status.last_error = result.error
                self.bus.publish(StrategyError(strategy_id, error=result.error or "exit failed", result=result))
                return

            closed = self.risk.close_position(token.mint, result.fill_price, amount)
            result.realized_pnl = closed.realized_pnl if closed is not None else result.filled_amount - cost_basis
            status.token_amount = max(0.0, status.token_amount - amount)
            status.mark_price(price)
            await self._audit(strategy_id, token, result)

            self.scheduler.cancel_owner(strategy_id)
            if status.state == StrategyState.RUNNING:
                status.state = StrategyState.PAUSED
            self.bus.publish(StrategyStopped(strategy_id, reason=reason, exit_result=result))
        finally:
            run.exiting = False

    # --- orders ---

    async def _buy(self, run: StrategyRun, amount: float, label: str) -> Optional[OrderResult]:
        """
        Risk check, then pipeline, retrying only failures that never reached
        the relay. Returns None when nothing was attempted.
        """
        strategy_id = run.strategy.id
        token = run.strategy.token
        result = None
        for attempt in range(self.cfg.order_retries + 1):
            status = run.status
            if status.state != StrategyState.RUNNING:
                return result
            size = min(amount, status.remaining_amount)
            if size <= 0:
                return result

            decision = self.risk.check_trade(token.mint, size, is_buy=True)
            if not decision.approved:
                status.last_error = f"Risk rejected: {decision.reason}"
                self.logger.warning(f"⛔ {strategy_id} {label}: {status.last_error}")
                self.bus.publish(StrategyError(strategy_id, error=status.last_error))
                return result

            result = await self._shielded_order(run, decision.adjusted_size, Direction.BUY)
            if result.success or result.error_code not in RETRYABLE or attempt == self.cfg.order_retries:
                return result

            delay = min(self.cfg.retry_backoff * 2 ** attempt, self.cfg.retry_backoff_max)
            self.logger.info(f"↻ {strategy_id} {label}: retrying in {delay:.1f}s ({result.error_code.value})")
            await asyncio.sleep(delay)
        return result

    async def _shielded_order(self, run: StrategyRun, amount: float, direction: Direction) -> OrderResult:
        task = asyncio.create_task(self._order_and_record(run, amount, direction))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _order_and_record(self, run: StrategyRun, amount: float, direction: Direction) -> OrderResult:
        strategy_id = run.strategy.id
        token = run.strategy.token
        result = await self.pipeline.execute(token, amount, direction)
        status = run.status

        if direction == Direction.SELL:
            # Exit bookkeeping happens in _exit, which owns the position close.
            return result

        if not result.success:
            status.last_error = result.error
            self.bus.publish(StrategyError(strategy_id, error=result.error or "order failed", result=result))
            await self._audit(strategy_id, token, result)
            return result

        status.record_fill(result.amount, result.filled_amount, result.fill_price)
        self.risk.open_position(token, result.fill_price, result.filled_amount, result.amount)
        status.mark_price(result.fill_price)
        self.logger.info(
            f"✅ FILL: {strategy_id} {result.amount:.6f} SOL -> {result.filled_amount:.6f} {token.symbol} "
            f"| progress {status.progress:.1f}%"
        )
        await self._audit(strategy_id, token, result)
        self.bus.publish(StrategyExecuted(strategy_id, result=result))

        if status.state == StrategyState.RUNNING and \
                status.executed_amount >= status.total_amount * self.cfg.completion_ratio:
            status.state = StrategyState.COMPLETED
            for kind in (JobKind.DCA_INTERVAL, JobKind.GRID_LEVEL, JobKind.MOMENTUM, JobKind.MEAN_REVERSION):
                self.scheduler.cancel_owner(strategy_id, kind)
            self.logger.info(f"🏁 COMPLETED: {strategy_id} executed {status.executed_amount:.6f} SOL")
            self.bus.publish(StrategyCompleted(strategy_id, executed_amount=status.executed_amount))
        return result

    async def _audit(self, source: str, token: Token, result: OrderResult) -> None:
        if self.audit is None:
            return
        await self.audit.log_trade([
            datetime.now(timezone.utc).isoformat(),
            source,
            token.symbol,
            result.direction.value,
            f"{result.amount:.9f}",
            f"{result.filled_amount:.9f}",
            f"{result.fill_price:.12f}",
            f"{result.realized_pnl:.9f}",
            result.relay_id or "",
            "SIMULATED" if result.simulated else ("SUCCESS" if result.success else "FAILED"),
            result.error or "",
        ])
