import asyncio

import pytest

from vibecurve.config import RiskConfig
from vibecurve.errors import InvalidTransition, StrategyNotFound, VibeCurveError
from vibecurve.events import (
    StrategyCompleted, StrategyError, StrategyEvent, StrategyExecuted, StrategyStopped,
)
from vibecurve.models import (
    DcaParams, Direction, ErrorCode, GridParams, MeanReversionParams, MomentumParams,
    StrategyState,
)
from vibecurve.risk_engine import RiskAuthority
from vibecurve.scheduler import JobKind
from vibecurve.strategy import StrategyEngine

from conftest import BONK, FakePipeline, FakePrices, eventually


@pytest.fixture
def prices():
    return FakePrices(price=0.001)


@pytest.fixture
def pipeline():
    return FakePipeline(price=0.001)


@pytest.fixture
def events(bus):
    captured = []
    bus.subscribe(StrategyEvent, captured.append)
    return captured


@pytest.fixture
def engine(prices, risk, pipeline, scheduler, bus, engine_config, logger):
    return StrategyEngine(prices, risk, pipeline, scheduler, bus, engine_config, logger)


def kinds(events, cls):
    return [e for e in events if isinstance(e, cls)]


async def teardown(engine, scheduler):
    await engine.shutdown()
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_dca_runs_to_completion(engine, scheduler, pipeline, events):
    strategy = engine.create_strategy(BONK, 1.0, DcaParams(intervals=10, interval_seconds=0.001))
    assert strategy.id.startswith("dca-bonk-")
    status = engine.get_status(strategy.id)
    assert status.remaining_amount == 1.0

    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.state == StrategyState.COMPLETED)

    assert status.executed_amount >= 0.99
    assert status.executed_amount + status.remaining_amount == pytest.approx(1.0)
    assert len(pipeline.calls) == 10
    assert len(kinds(events, StrategyExecuted)) == 10
    assert len(kinds(events, StrategyCompleted)) == 1
    assert not [j for j in scheduler.jobs(strategy.id) if j.kind == JobKind.DCA_INTERVAL]
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_executed_plus_remaining_is_total_after_each_fill(engine, scheduler, bus):
    strategy = engine.create_strategy(BONK, 0.3, DcaParams(intervals=3, interval_seconds=0.001))
    status = engine.get_status(strategy.id)
    seen = []
    bus.subscribe(StrategyExecuted, lambda e: seen.append(status.executed_amount + status.remaining_amount))

    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.state == StrategyState.COMPLETED)
    assert seen == [pytest.approx(0.3)] * 3
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_stop_is_idempotent(engine, scheduler, events):
    strategy = engine.create_strategy(BONK, 1.0, DcaParams(intervals=5, interval_seconds=30))
    await engine.start_strategy(strategy.id)

    first = engine.stop_strategy(strategy.id)
    second = engine.stop_strategy(strategy.id)
    assert first.state == second.state == StrategyState.PAUSED
    assert len(kinds(events, StrategyStopped)) == 1
    assert scheduler.jobs(strategy.id) == []
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_resume_schedules_only_pending_intervals(engine, scheduler):
    strategy = engine.create_strategy(BONK, 0.4, DcaParams(intervals=4, interval_seconds=30))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.executions == 1)
    engine.stop_strategy(strategy.id)

    await engine.start_strategy(strategy.id)
    pending = [j for j in scheduler.jobs(strategy.id) if j.kind == JobKind.DCA_INTERVAL]
    assert len(pending) == 3
    assert status.state == StrategyState.RUNNING
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_no_price_puts_strategy_in_error(engine, scheduler, prices, events):
    prices.price = None
    strategy = engine.create_strategy(BONK, 1.0, DcaParams(intervals=2, interval_seconds=1))
    status = await engine.start_strategy(strategy.id)

    assert status.state == StrategyState.ERROR
    assert kinds(events, StrategyError)
    with pytest.raises(InvalidTransition):
        await engine.start_strategy(strategy.id)
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_completed_strategy_cannot_restart(engine, scheduler):
    strategy = engine.create_strategy(BONK, 0.1, DcaParams(intervals=1, interval_seconds=0))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.state == StrategyState.COMPLETED)
    with pytest.raises(InvalidTransition):
        await engine.start_strategy(strategy.id)
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_grid_buys_each_level_once(engine, scheduler, prices, pipeline):
    prices.price = pipeline.price = 1.0
    strategy = engine.create_strategy(BONK, 1.0, GridParams(levels=2, step_pct=0.1))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    assert len([j for j in scheduler.jobs(strategy.id) if j.kind == JobKind.GRID_LEVEL]) == 2

    prices.price = pipeline.price = 0.85
    await eventually(lambda: status.executions == 1)
    assert status.executed_amount == pytest.approx(0.5)
    await asyncio.sleep(0.05)
    assert status.executions == 1

    prices.price = pipeline.price = 0.75
    await eventually(lambda: status.state == StrategyState.COMPLETED)
    assert status.executions == 2
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_momentum_buys_on_breakout(engine, scheduler, prices, pipeline):
    prices.price = pipeline.price = 1.0
    strategy = engine.create_strategy(BONK, 0.2, MomentumParams(window=3, threshold=0.05))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await asyncio.sleep(0.05)
    assert status.executions == 0

    prices.price = pipeline.price = 1.3
    await eventually(lambda: status.state == StrategyState.COMPLETED)
    assert status.executed_amount == pytest.approx(0.2)
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_mean_reversion_buys_the_dip(engine, scheduler, prices, pipeline):
    prices.price = pipeline.price = 1.0
    strategy = engine.create_strategy(BONK, 0.2, MeanReversionParams(window=5, drop_pct=0.05))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)

    prices.price = pipeline.price = 0.85
    await eventually(lambda: status.state == StrategyState.COMPLETED)
    assert pipeline.calls[0][2] == Direction.BUY
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_stop_loss_exits_and_pauses(engine, scheduler, risk, prices, pipeline, events):
    prices.price = pipeline.price = 1.0
    strategy = engine.create_strategy(BONK, 0.2, DcaParams(intervals=2, interval_seconds=30), stop_loss=0.1)
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.executions == 1)

    prices.price = pipeline.price = 0.85
    await eventually(lambda: status.state == StrategyState.PAUSED)

    [stopped] = kinds(events, StrategyStopped)
    assert stopped.reason == "stop_loss"
    assert stopped.exit_result.direction == Direction.SELL
    assert stopped.exit_result.realized_pnl == pytest.approx((0.85 - 1.0) * 0.1)
    assert status.token_amount == 0
    assert risk.get_position(BONK.mint) is None
    assert scheduler.jobs(strategy.id) == []
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_exit_of_one_strategy_keeps_shared_position(engine, scheduler, risk, prices, pipeline, events):
    prices.price = pipeline.price = 1.0
    guarded = engine.create_strategy(BONK, 0.5, DcaParams(intervals=1, interval_seconds=0), stop_loss=0.1)
    holder = engine.create_strategy(BONK, 0.5, DcaParams(intervals=1, interval_seconds=0))
    guarded_status = engine.get_status(guarded.id)
    holder_status = engine.get_status(holder.id)
    await engine.start_strategy(guarded.id)
    await engine.start_strategy(holder.id)
    await eventually(lambda: guarded_status.executions == 1 and holder_status.executions == 1)
    assert risk.total_position_value() == pytest.approx(1.0)

    # below the strategy stop, above the risk stop
    prices.price = pipeline.price = 0.88
    await eventually(lambda: kinds(events, StrategyStopped))

    assert guarded_status.token_amount == 0
    assert holder_status.token_amount == pytest.approx(0.5)
    position = risk.get_position(BONK.mint)
    assert position.amount == pytest.approx(0.5)
    assert risk.total_position_value() == pytest.approx(0.5)
    assert risk.daily_pnl == pytest.approx((0.88 - 1.0) * 0.5)
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_take_profit_on_completed_strategy_keeps_state(engine, scheduler, prices, pipeline, events):
    prices.price = pipeline.price = 1.0
    strategy = engine.create_strategy(BONK, 0.1, DcaParams(intervals=1, interval_seconds=0), take_profit=0.2)
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.state == StrategyState.COMPLETED)

    prices.price = pipeline.price = 1.25
    await eventually(lambda: kinds(events, StrategyStopped))
    assert kinds(events, StrategyStopped)[0].reason == "take_profit"
    assert status.state == StrategyState.COMPLETED
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_risk_rejection_emits_error(prices, pipeline, scheduler, bus, engine_config, logger, events):
    strict = RiskAuthority(RiskConfig(cooldown_period=60), logger)
    engine = StrategyEngine(prices, strict, pipeline, scheduler, bus, engine_config, logger)
    strategy = engine.create_strategy(BONK, 0.3, DcaParams(intervals=3, interval_seconds=0.001))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: len(kinds(events, StrategyError)) == 2)

    assert len(pipeline.calls) == 1
    assert "Cooldown" in status.last_error
    assert status.state == StrategyState.RUNNING
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_quote_failures_are_retried(engine, scheduler, pipeline, events):
    pipeline.fail_with = [ErrorCode.QUOTE_FAILED, ErrorCode.TRANSACTION_BUILD_FAILED]
    strategy = engine.create_strategy(BONK, 0.1, DcaParams(intervals=1, interval_seconds=0))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: status.state == StrategyState.COMPLETED)

    assert len(pipeline.calls) == 3
    assert len(kinds(events, StrategyError)) == 2
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_submitted_failures_are_not_retried(engine, scheduler, pipeline, events):
    pipeline.fail_with = [ErrorCode.BUNDLE_TIMEOUT]
    strategy = engine.create_strategy(BONK, 0.1, DcaParams(intervals=1, interval_seconds=0))
    await engine.start_strategy(strategy.id)
    await eventually(lambda: kinds(events, StrategyError))
    await asyncio.sleep(0.02)

    assert len(pipeline.calls) == 1
    assert kinds(events, StrategyError)[0].result.error_code == ErrorCode.BUNDLE_TIMEOUT
    await teardown(engine, scheduler)


@pytest.mark.asyncio
async def test_in_flight_order_survives_stop(engine, scheduler, pipeline):
    gate = asyncio.Event()
    inner = pipeline.execute

    async def gated(token, amount, direction):
        await gate.wait()
        return await inner(token, amount, direction)

    pipeline.execute = gated
    strategy = engine.create_strategy(BONK, 0.2, DcaParams(intervals=2, interval_seconds=30))
    status = engine.get_status(strategy.id)
    await engine.start_strategy(strategy.id)
    await eventually(lambda: len(engine._inflight) == 1)

    engine.stop_strategy(strategy.id)
    gate.set()
    await engine.shutdown()

    assert status.state == StrategyState.PAUSED
    assert status.executed_amount == pytest.approx(0.1)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_delete_and_lookup(engine, scheduler):
    strategy = engine.create_strategy(BONK, 0.1, DcaParams(intervals=1, interval_seconds=1))
    assert engine.get_strategy(strategy.id) is strategy
    engine.delete_strategy(strategy.id)
    with pytest.raises(StrategyNotFound):
        engine.get_status(strategy.id)
    await teardown(engine, scheduler)


def test_invalid_params_rejected(engine):
    with pytest.raises(VibeCurveError):
        engine.create_strategy(BONK, 1.0, DcaParams(intervals=0, interval_seconds=1))
    with pytest.raises(VibeCurveError):
        engine.create_strategy(BONK, 1.0, GridParams(levels=20, step_pct=0.1))
    with pytest.raises(VibeCurveError):
        engine.create_strategy(BONK, 0, MomentumParams())
