from datetime import datetime, timedelta, timezone

import pytest

from vibecurve.config import RiskConfig
from vibecurve.models import PositionAction, Token
from vibecurve.risk_engine import RiskAuthority

from conftest import BONK, WIF


@pytest.fixture
def strict(logger, clock):
    cfg = RiskConfig(max_position_size=0.5, max_total_position=2.0, min_position_size=0.01,
                     cooldown_period=30.0, max_trades_per_hour=10, max_open_positions=3)
    return RiskAuthority(cfg, logger, clock=clock)


def test_oversized_buy_is_clamped(strict):
    decision = strict.check_trade(BONK.mint, 0.6, is_buy=True)
    assert decision.approved
    assert decision.adjusted_size == pytest.approx(0.5)


def test_second_trade_inside_cooldown_is_rejected(strict, clock):
    assert strict.check_trade(BONK.mint, 0.1).approved
    clock.advance(5)
    second = strict.check_trade(BONK.mint, 0.1)
    assert not second.approved
    assert "Cooldown" in second.reason
    assert second.retry_after == pytest.approx(25)

    clock.advance(26)
    assert strict.check_trade(BONK.mint, 0.1).approved


def test_counters_move_at_approval(strict):
    strict.check_trade(BONK.mint, 0.1)
    assert strict.hourly_trades == 1
    assert strict.daily_trades == 1
    assert strict.last_trade_time is not None


def test_below_minimum_rejected(strict):
    decision = strict.check_trade(BONK.mint, 0.001)
    assert not decision.approved
    assert "minimum" in decision.reason


def test_hourly_limit_and_reset(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, max_trades_per_hour=2), logger, clock=clock)
    assert authority.check_trade(BONK.mint, 0.1).approved
    assert authority.check_trade(BONK.mint, 0.1).approved
    assert not authority.check_trade(BONK.mint, 0.1).approved
    clock.advance(3600)
    assert authority.check_trade(BONK.mint, 0.1).approved


def test_total_exposure_never_exceeds_ceiling(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, max_position_size=0.5, max_total_position=1.2,
                                         max_open_positions=10), logger, clock=clock)
    for i in range(5):
        decision = authority.check_trade(f"mint-{i}", 0.5)
        if decision.approved:
            authority.open_position(Token(mint=f"mint-{i}", symbol=f"T{i}"),
                                    1.0, decision.adjusted_size, decision.adjusted_size)
        assert authority.total_position_value() <= 1.2 + 1e-9

    assert authority.total_position_value() == pytest.approx(1.2)
    rejected = authority.check_trade("mint-x", 0.5)
    assert not rejected.approved
    assert "Total position" in rejected.reason


def test_max_open_positions_allows_held_token(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, max_open_positions=1), logger, clock=clock)
    authority.open_position(BONK, 0.001, 100, 0.1)
    assert not authority.check_trade(WIF.mint, 0.1).approved
    assert authority.check_trade(BONK.mint, 0.1).approved


def test_daily_loss_blocks_buys_but_not_sells(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, max_daily_loss=0.05), logger, clock=clock)
    authority.open_position(BONK, 0.001, 100, 0.1)
    authority.close_position(BONK.mint, 0.0004)  # -0.06 SOL
    assert authority.daily_pnl == pytest.approx(-0.06)

    assert not authority.check_trade(WIF.mint, 0.1, is_buy=True).approved
    assert authority.check_trade(WIF.mint, 0.1, is_buy=False).approved


def test_drawdown_blocks_buys(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, starting_equity=1.0, max_drawdown=0.2,
                                         max_daily_loss=100), logger, clock=clock)
    authority.open_position(BONK, 1.0, 1.0, 1.0)
    authority.update_positions({BONK.mint: 0.75})
    decision = authority.check_trade(WIF.mint, 0.1)
    assert not decision.approved
    assert "drawdown" in decision.reason


def test_drawdown_at_the_ceiling_still_allows_buys(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, starting_equity=1.0, max_drawdown=0.25,
                                         max_daily_loss=100), logger, clock=clock)
    authority.open_position(BONK, 1.0, 1.0, 1.0)
    authority.update_positions({BONK.mint: 0.75})
    assert authority.calculate_drawdown() == 0.25
    assert authority.check_trade(WIF.mint, 0.1).approved

    authority.update_positions({BONK.mint: 0.5})
    assert not authority.check_trade(WIF.mint, 0.1).approved


def test_peak_equity_only_rises(logger, clock):
    authority = RiskAuthority(RiskConfig(cooldown_period=0, starting_equity=1.0), logger, clock=clock)
    authority.open_position(BONK, 1.0, 1.0, 1.0)
    authority.update_positions({BONK.mint: 1.05})
    authority.calculate_drawdown()
    assert authority.peak_equity == pytest.approx(1.05)
    authority.update_positions({BONK.mint: 0.95})
    assert authority.calculate_drawdown() == pytest.approx((1.05 - 0.95) / 1.05)
    assert authority.peak_equity == pytest.approx(1.05)


def test_stop_loss_and_take_profit_close(risk):
    risk.open_position(BONK, 1.0, 10, 10)
    [update] = risk.update_positions({BONK.mint: 0.8})
    assert update.action == PositionAction.CLOSE
    assert update.reason.startswith("stop_loss")

    risk.positions.clear()
    risk.open_position(BONK, 1.0, 10, 10)
    [update] = risk.update_positions({BONK.mint: 1.35})
    assert update.action == PositionAction.CLOSE
    assert update.reason.startswith("take_profit")


def test_trailing_stop_is_monotonic(risk):
    risk.open_position(BONK, 1.0, 10, 10)
    stops = []
    for price in (1.05, 1.12, 1.2, 1.15, 1.25, 1.18):
        risk.update_positions({BONK.mint: price})
        stops.append(risk.get_position(BONK.mint).stop_loss)
    assert stops == sorted(stops)
    assert stops[-1] == pytest.approx(1.25 * 0.9)


def test_trailing_update_reports_new_stop(risk):
    risk.open_position(BONK, 1.0, 10, 10)
    [update] = risk.update_positions({BONK.mint: 1.2})
    assert update.action == PositionAction.UPDATE_STOP
    assert update.stop_loss == pytest.approx(1.08)
    [update] = risk.update_positions({BONK.mint: 1.19})
    assert update.action == PositionAction.HOLD


def test_open_position_merges_at_weighted_entry(risk):
    risk.open_position(BONK, 0.001, 100, 0.1)
    original_stop = risk.get_position(BONK.mint).stop_loss
    merged = risk.open_position(BONK, 0.002, 50, 0.1)
    assert merged.amount == pytest.approx(150)
    assert merged.value_in_sol == pytest.approx(0.2)
    assert merged.entry_price == pytest.approx(0.2 / 150)
    assert merged.stop_loss == original_stop


def test_close_position_realizes_pnl(risk):
    risk.open_position(BONK, 0.001, 100, 0.1)
    closed = risk.close_position(BONK.mint, 0.0012)
    assert closed.realized_pnl == pytest.approx(0.02)
    assert closed.realized_pnl_pct == pytest.approx(20.0)
    assert risk.get_stats()['win_rate'] == 1.0
    assert risk.close_position(BONK.mint, 0.0012) is None


def test_partial_close_keeps_other_holders_exposure(risk):
    # two buyers merged into one position: 100 + 100 tokens at 0.001
    risk.open_position(BONK, 0.001, 100, 0.1)
    risk.open_position(BONK, 0.001, 100, 0.1)

    closed = risk.close_position(BONK.mint, 0.0008, amount=100)
    assert closed.realized_pnl == pytest.approx(-0.02)
    assert closed.position.amount == pytest.approx(100)
    assert risk.daily_pnl == pytest.approx(-0.02)

    remaining = risk.get_position(BONK.mint)
    assert remaining.amount == pytest.approx(100)
    assert remaining.value_in_sol == pytest.approx(0.1)
    assert risk.total_position_value() == pytest.approx(0.1)

    risk.close_position(BONK.mint, 0.001, amount=100)
    assert risk.get_position(BONK.mint) is None


def test_close_never_sells_more_than_held(risk):
    risk.open_position(BONK, 0.001, 100, 0.1)
    closed = risk.close_position(BONK.mint, 0.002, amount=500)
    assert closed.realized_pnl == pytest.approx(0.1)
    assert risk.positions == {}


def test_daily_counters_roll_over_at_utc_midnight(logger):
    midnight = datetime(2026, 1, 2, tzinfo=timezone.utc)
    clock_value = [(midnight - timedelta(seconds=10)).timestamp()]
    authority = RiskAuthority(RiskConfig(cooldown_period=0), logger, clock=lambda: clock_value[0])
    authority.open_position(BONK, 0.001, 100, 0.1)
    authority.close_position(BONK.mint, 0.0005)
    assert authority.daily_pnl < 0

    clock_value[0] = (midnight + timedelta(seconds=10)).timestamp()
    authority.check_trade(WIF.mint, 0.1)
    assert authority.daily_pnl == 0.0
    assert authority.daily_trades == 1


def test_emergency_close_all(risk):
    risk.open_position(BONK, 0.001, 100, 0.1)
    risk.open_position(WIF, 0.01, 10, 0.1)
    closed = risk.emergency_close_all({BONK.mint: 0.002})
    assert len(closed) == 2
    assert risk.get_positions() == []


def test_update_config_rejects_unknown_keys(risk):
    from vibecurve.errors import ConfigError
    risk.update_config(max_position_size=0.25)
    assert risk.get_config()['max_position_size'] == 0.25
    with pytest.raises(ConfigError):
        risk.update_config(bogus=1)
