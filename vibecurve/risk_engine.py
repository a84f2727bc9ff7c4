# vibecurve/risk_engine.py
import logging
import time
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import RiskConfig, apply_updates
from .models import (
    ClosedPosition, Position, PositionAction, PositionUpdate, RiskDecision, Token,
)


class RiskAuthority:
    """
    The mandatory gate in front of every order.
    Enforces cooldown, trade-rate, loss and exposure limits, and tracks open
    positions with their stop-loss / take-profit levels.

    Decisions are values: a rejection is a RiskDecision(approved=False),
    never an exception. Counters move at approval time, synchronously,
    so two concurrent callers can never both slip through the cooldown.
    """
    def __init__(self, config: RiskConfig, logger: logging.Logger,
                 clock: Callable[[], float] = time.time):
        self.cfg = config
        self.logger = logger
        self.clock = clock

        self.positions: Dict[str, Position] = {}
        self.daily_pnl = 0.0
        self.realized_pnl = 0.0
        self.daily_trades = 0
        self.hourly_trades = 0
        self.last_trade_time: Optional[float] = None
        self.last_hour_reset = self.clock()
        self.peak_equity = self.cfg.starting_equity
        self.wins = 0
        self.losses = 0
        self._day = self._utc_day(self.clock())

    # --- gate ---

    def check_trade(self, token: str, size: float, is_buy: bool = True) -> RiskDecision:
        now = self.clock()
        self._roll_day_if_needed(now)

        # 1. Cooldown
        if self.last_trade_time is not None:
            elapsed = now - self.last_trade_time
            if elapsed < self.cfg.cooldown_period:
                remaining = self.cfg.cooldown_period - elapsed
                return RiskDecision(False, reason=f"Cooldown active, {remaining:.0f}s remaining",
                                    retry_after=remaining)

        # 2. Hourly ceiling
        if now - self.last_hour_reset >= 3600:
            self.hourly_trades = 0
            self.last_hour_reset = now
        if self.hourly_trades >= self.cfg.max_trades_per_hour:
            return RiskDecision(False, reason=f"Hourly trade limit reached ({self.cfg.max_trades_per_hour})",
                                retry_after=self.last_hour_reset + 3600 - now)

        if is_buy:
            # 3. Daily loss floor
            if self.daily_pnl <= -self.cfg.max_daily_loss:
                return RiskDecision(False, reason=f"Daily loss limit reached ({self.cfg.max_daily_loss} SOL)")

            # 4. Drawdown
            drawdown = self.calculate_drawdown()
            if drawdown > self.cfg.max_drawdown:
                return RiskDecision(False, reason=f"Max drawdown reached ({drawdown * 100:.1f}%)")

        # 5. Minimum size
        if size < self.cfg.min_position_size:
            return RiskDecision(False, reason=f"Trade size below minimum ({self.cfg.min_position_size} SOL)")

        adjusted = size
        if is_buy:
            # 6. Per-trade and total exposure clamps
            adjusted = min(adjusted, self.cfg.max_position_size)
            headroom = self.cfg.max_total_position - self.total_position_value()
            if adjusted > headroom:
                adjusted = max(0.0, headroom)
                if adjusted < self.cfg.min_position_size:
                    return RiskDecision(False, reason="Total position limit reached")

            # 7. Open position count
            if len(self.positions) >= self.cfg.max_open_positions and token not in self.positions:
                return RiskDecision(False, reason=f"Max open positions reached ({self.cfg.max_open_positions})")

        self.last_trade_time = now
        self.hourly_trades += 1
        self.daily_trades += 1
        return RiskDecision(True, adjusted_size=adjusted)

    # --- positions ---

    def open_position(self, token: Token, entry_price: float, amount: float,
                      value_in_sol: float) -> Position:
        """
        Records a filled buy. A second buy of a held token merges into the
        existing position at a value-weighted entry and keeps its stops.
        """
        existing = self.positions.get(token.mint)
        if existing is not None:
            existing.amount += amount
            existing.value_in_sol += value_in_sol
            if existing.amount > 0:
                existing.entry_price = existing.value_in_sol / existing.amount
            existing.current_price = entry_price
            return existing

        position = Position(
            token=token.mint,
            symbol=token.symbol,
            entry_price=entry_price,
            current_price=entry_price,
            amount=amount,
            value_in_sol=value_in_sol,
            stop_loss=entry_price * (1 - self.cfg.stop_loss_percentage),
            take_profit=entry_price * (1 + self.cfg.take_profit_percentage),
            opened_at=self.clock(),
        )
        self.positions[token.mint] = position
        self.logger.info(
            f"📈 OPEN: {token.symbol} {amount:.6f} @ {entry_price:.10f} | "
            f"SL {position.stop_loss:.10f} | TP {position.take_profit:.10f}"
        )
        return position

    def close_position(self, token: str, exit_price: float,
                       amount: Optional[float] = None) -> Optional[ClosedPosition]:
        """
        Realizes P&L on `amount` tokens of the position (all of it when None).
        Several holders can share one merged position, so a partial close
        shrinks amount and value in proportion and keeps the remainder open.
        """
        position = self.positions.get(token)
        if position is None:
            return None
        self._roll_day_if_needed(self.clock())

        sold = position.amount if amount is None else min(amount, position.amount)
        fraction = sold / position.amount if position.amount > 0 else 1.0
        closed_part = replace(position, amount=sold, value_in_sol=position.value_in_sol * fraction)
        if fraction >= 1.0 - 1e-9:
            del self.positions[token]
        else:
            position.amount -= sold
            position.value_in_sol -= closed_part.value_in_sol

        realized = (exit_price - position.entry_price) * sold
        realized_pct = (exit_price - position.entry_price) / position.entry_price * 100 \
            if position.entry_price else 0.0
        self.daily_pnl += realized
        self.realized_pnl += realized
        if realized >= 0:
            self.wins += 1
        else:
            self.losses += 1

        self.logger.info(f"📉 CLOSE: {position.symbol} @ {exit_price:.10f} | PnL {realized:+.6f} SOL ({realized_pct:+.2f}%)")
        # Peak tracking sees the realized result immediately.
        self.calculate_drawdown()
        return ClosedPosition(position=closed_part, exit_price=exit_price,
                              realized_pnl=realized, realized_pnl_pct=realized_pct)

    def update_positions(self, prices: Dict[str, float]) -> List[PositionUpdate]:
        updates: List[PositionUpdate] = []
        for mint, position in self.positions.items():
            price = prices.get(mint) or position.current_price
            position.current_price = price
            position.unrealized_pnl = (price - position.entry_price) * position.amount
            position.unrealized_pnl_pct = (price - position.entry_price) / position.entry_price * 100 \
                if position.entry_price else 0.0

            if price <= position.stop_loss:
                updates.append(PositionUpdate(mint, PositionAction.CLOSE, f"stop_loss hit at {position.stop_loss:.10f}"))
                continue
            if price >= position.take_profit:
                updates.append(PositionUpdate(mint, PositionAction.CLOSE, f"take_profit hit at {position.take_profit:.10f}"))
                continue

            if position.unrealized_pnl_pct > self.cfg.trailing_activation_pct:
                new_stop = price * (1 - self.cfg.trailing_stop_percentage)
                if new_stop > position.stop_loss:
                    position.stop_loss = new_stop
                    updates.append(PositionUpdate(mint, PositionAction.UPDATE_STOP,
                                                  f"trailing stop raised to {new_stop:.10f}", stop_loss=new_stop))
                    continue

            updates.append(PositionUpdate(mint, PositionAction.HOLD, "holding"))
        return updates

    def emergency_close_all(self, prices: Optional[Dict[str, float]] = None) -> List[ClosedPosition]:
        prices = prices or {}
        self.logger.critical(f"⛔ EMERGENCY CLOSE: {len(self.positions)} positions")
        closed = []
        for mint in list(self.positions):
            price = prices.get(mint) or self.positions[mint].current_price
            result = self.close_position(mint, price)
            if result is not None:
                closed.append(result)
        return closed

    def get_position(self, token: str) -> Optional[Position]:
        return self.positions.get(token)

    def get_positions(self) -> List[Position]:
        return list(self.positions.values())

    # --- accounting ---

    def total_position_value(self) -> float:
        return sum(p.value_in_sol for p in self.positions.values())

    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    def current_equity(self) -> float:
        return self.cfg.starting_equity + self.realized_pnl + self.total_unrealized_pnl()

    def calculate_drawdown(self) -> float:
        equity = self.current_equity()
        if equity > self.peak_equity:
            self.peak_equity = equity
            return 0.0
        if self.peak_equity <= 0:
            return 0.0
        return (self.peak_equity - equity) / self.peak_equity

    def get_stats(self) -> dict:
        closed = self.wins + self.losses
        return {
            'daily_trades': self.daily_trades,
            'hourly_trades': self.hourly_trades,
            'daily_pnl': self.daily_pnl,
            'realized_pnl': self.realized_pnl,
            'unrealized_pnl': self.total_unrealized_pnl(),
            'win_rate': self.wins / closed if closed else 0.0,
            'equity': self.current_equity(),
            'peak_equity': self.peak_equity,
            'current_drawdown': self.calculate_drawdown(),
            'open_positions': len(self.positions),
            'total_position_value': self.total_position_value(),
        }

    def reset_daily_counters(self) -> None:
        self.daily_pnl = 0.0
        self.daily_trades = 0
        self.logger.info("Daily risk counters reset")

    def _roll_day_if_needed(self, now: float) -> None:
        day = self._utc_day(now)
        if day != self._day:
            self._day = day
            self.reset_daily_counters()

    @staticmethod
    def _utc_day(ts: float):
        return datetime.fromtimestamp(ts, tz=timezone.utc).date()

    # --- config ---

    def update_config(self, **updates) -> None:
        self.cfg = apply_updates(self.cfg, updates)
        self.logger.info(f"Risk config updated: {sorted(updates)}")

    def get_config(self) -> dict:
        return asdict(self.cfg)
