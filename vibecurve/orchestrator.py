# vibecurve/orchestrator.py
import asyncio
import functools
import inspect
import logging
import time
from collections import deque
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Union

import aiohttp

from .config import AppConfig, apply_updates
from .errors import ConfigError, VibeCurveError
from .events import (
    EventBus, Executed, OpportunityFound, StatsUpdated, StrategyExecuted, StrategyStopped,
)
from .execution import JitoRelay, JupiterClient, OrderPipeline, RpcRelay, Wallet
from .logger import AsyncAuditLogger
from .market_engine import CcxtVenue, DexScreenerVenue, PriceVenueClient
from .models import (
    ArbitrageOpportunity, ArbitrageResult, CommandResult, DcaParams, Direction,
    ExecutionRecord, ExecutionStats, GridParams, MeanReversionParams, MomentumParams,
    OrderResult, RiskLevel, StrategyKind, StrategyParams, StrategyState, Token,
)
from .notifier import TelegramNotifier
from .risk_engine import RiskAuthority
from .scanner import OpportunityScanner
from .scheduler import JobKind, Scheduler
from .strategy import StrategyEngine

OWNER = "orchestrator"

PARAM_TYPES = {
    StrategyKind.DCA: DcaParams,
    StrategyKind.GRID: GridParams,
    StrategyKind.MOMENTUM: MomentumParams,
    StrategyKind.MEAN_REVERSION: MeanReversionParams,
}


def command(func):
    """Turns a control-surface method into one that returns CommandResult and never raises."""
    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(self, *args, **kwargs):
            try:
                return CommandResult(True, data=await func(self, *args, **kwargs))
            except VibeCurveError as e:
                return CommandResult(False, error=str(e))
            except Exception as e:
                self.logger.exception(f"Command {func.__name__} failed")
                return CommandResult(False, error=f"{type(e).__name__}: {e}")
        return async_wrapper

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return CommandResult(True, data=func(self, *args, **kwargs))
        except VibeCurveError as e:
            return CommandResult(False, error=str(e))
        except Exception as e:
            self.logger.exception(f"Command {func.__name__} failed")
            return CommandResult(False, error=f"{type(e).__name__}: {e}")
    return wrapper


def build_params(kind: Union[str, StrategyKind], params: Optional[Dict[str, Any]] = None) -> StrategyParams:
    try:
        kind = StrategyKind(kind.upper()) if isinstance(kind, str) else kind
    except ValueError as e:
        raise VibeCurveError(f"Unknown strategy kind: {kind}") from e
    try:
        return PARAM_TYPES[kind](**(params or {}))
    except TypeError as e:
        raise VibeCurveError(f"Invalid {kind.value} parameters: {e}") from e


class Orchestrator:
    """
    Top-level coordinator: owns the scan loop, routes opportunities to
    alerts or execution, folds every execution into statistics, and exposes
    the control surface used by the CLI.
    """
    def __init__(self, config: AppConfig, logger: logging.Logger, *,
                 prices: PriceVenueClient, scanner: OpportunityScanner, risk: RiskAuthority,
                 pipeline: OrderPipeline, strategies: StrategyEngine, scheduler: Scheduler,
                 bus: EventBus, notifier: Optional[TelegramNotifier] = None,
                 audit: Optional[AsyncAuditLogger] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.logger = logger
        self.prices = prices
        self.scanner = scanner
        self.risk = risk
        self.pipeline = pipeline
        self.strategies = strategies
        self.scheduler = scheduler
        self.bus = bus
        self.notifier = notifier
        self.audit = audit
        self._session = session

        self.tokens: List[Token] = list(config.tokens)
        self.stats = ExecutionStats()
        self.history: Deque[ExecutionRecord] = deque(maxlen=config.orchestrator.history_size)
        self.opportunities: Deque[ArbitrageOpportunity] = deque(maxlen=config.orchestrator.opportunity_buffer)
        self.scan_count = 0
        self.last_scan_time: Optional[float] = None
        self._running = False
        self._inflight: set = set()

        self.bus.subscribe(StrategyExecuted, self._on_strategy_executed)
        self.bus.subscribe(StrategyStopped, self._on_strategy_stopped)

    @classmethod
    def from_config(cls, config: AppConfig, logger: logging.Logger) -> 'Orchestrator':
        """
        Builds every collaborator from configuration. Call from inside the
        running event loop, since it opens the shared HTTP session.
        """
        if not config.system.dry_run and not config.secrets.private_key:
            raise ConfigError("Live trading requires PRIVATE_KEY")

        session = aiohttp.ClientSession()
        bus = EventBus(logger)
        scheduler = Scheduler(logger)
        audit = AsyncAuditLogger(config.audit.trade_log, logger)

        venues = []
        if config.venues.dexscreener:
            venues.append(DexScreenerVenue(session, config.endpoints.dexscreener_url,
                                           timeout=config.venues.request_timeout))
        for ex_id in config.venues.cex_exchanges:
            venues.append(CcxtVenue(ex_id, logger, timeout_ms=int(config.venues.request_timeout * 1000)))
        prices = PriceVenueClient(venues, logger, cache_ttl=config.venues.cache_ttl_seconds,
                                  timeout=config.venues.request_timeout)

        scanner = OpportunityScanner(prices, logger, **asdict(config.scanner))
        risk = RiskAuthority(config.risk, logger)

        wallet = Wallet.from_base58(config.secrets.private_key) if config.secrets.private_key else None
        relay = None
        if wallet is not None:
            if config.pipeline.use_bundle:
                relay = JitoRelay(session, config.endpoints.jito_url, wallet, logger,
                                  timeout=config.pipeline.submit_timeout)
            else:
                relay = RpcRelay(session, config.endpoints.rpc_url, timeout=config.pipeline.submit_timeout)
        quotes = JupiterClient(session, config.endpoints.jupiter_quote_url, config.endpoints.jupiter_swap_url,
                               timeout=config.pipeline.quote_timeout)
        pipeline = OrderPipeline(quotes, relay, wallet, config.pipeline, logger, dry_run=config.system.dry_run)

        strategies = StrategyEngine(prices, risk, pipeline, scheduler, bus, config.engine, logger, audit)
        notifier = TelegramNotifier(session, config.secrets.telegram_token, config.secrets.telegram_chat_id,
                                    logger, base_url=config.endpoints.telegram_url,
                                    timeout=config.notifications.timeout,
                                    enabled=config.notifications.enabled)

        return cls(config, logger, prices=prices, scanner=scanner, risk=risk, pipeline=pipeline,
                   strategies=strategies, scheduler=scheduler, bus=bus, notifier=notifier,
                   audit=audit, session=session)

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        if self.audit is not None:
            await self.audit.start()
        self._running = True
        self._schedule_scan_loop()
        mode = "DRY RUN" if self.pipeline.dry_run else "LIVE"
        self.logger.info(f"🟢 Orchestrator started ({mode}) | {len(self.tokens)} tokens | "
                         f"every {self.config.orchestrator.scan_interval}s")

    def _schedule_scan_loop(self) -> None:
        self.scheduler.cancel_owner(OWNER, JobKind.SCAN_LOOP)
        self.scheduler.schedule_every(OWNER, JobKind.SCAN_LOOP, self.config.orchestrator.scan_interval,
                                      self._scan_tick, label="scan", immediate=True)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.scheduler.cancel_owner(OWNER)
        self.logger.info("🔴 Orchestrator stopped")

    async def close(self) -> None:
        """Stops everything, waits for in-flight orders, and releases sessions."""
        await self.stop()
        await self.strategies.shutdown()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self.scheduler.shutdown()
        if self.notifier is not None:
            await self.notifier.drain()
        if self.audit is not None:
            await self.audit.stop()
        await self.prices.shutdown()
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # --- scan loop ---

    async def _scan_tick(self) -> None:
        found = await self.scanner.scan_batch(self.tokens)
        self.scan_count += 1
        self.last_scan_time = time.time()

        orch = self.config.orchestrator
        for opp in found:
            self.opportunities.append(opp)
            self.bus.publish(OpportunityFound(opp))
            if self.notifier is not None:
                self.notifier.notify_opportunity(opp)
            if orch.auto_execute and not orch.alert_only:
                task = asyncio.create_task(self.execute_opportunity(opp))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                await asyncio.shield(task)

    async def execute_opportunity(self, opp: ArbitrageOpportunity) -> Optional[ArbitrageResult]:
        """
        Buys the token with SOL, then sells exactly the filled amount back.
        Both legs route through the aggregator; one risk approval covers the
        round trip. Returns None when risk declines the trade.
        """
        token = opp.token
        start = time.time()
        decision = self.risk.check_trade(token.mint, self.config.orchestrator.trade_amount, is_buy=True)
        if not decision.approved:
            self.logger.info(f"⛔ SKIPPED {token.symbol}: {decision.reason}")
            return None

        self.logger.info(f"⚡ EXECUTION TRIGGERED: {token.symbol} | Buy {opp.buy_venue} -> Sell {opp.sell_venue} "
                         f"| {decision.adjusted_size:.4f} SOL")
        buy = await self.pipeline.execute(token, decision.adjusted_size, Direction.BUY)
        legs: List[OrderResult] = [buy]

        if not buy.success:
            result = ArbitrageResult(opp, success=False, legs=legs, error=f"buy leg failed: {buy.error}")
        else:
            self.risk.open_position(token, buy.fill_price, buy.filled_amount, buy.amount)
            sell = await self.pipeline.execute(token, buy.filled_amount, Direction.SELL)
            legs.append(sell)
            if sell.success:
                net = sell.filled_amount - buy.amount
                sell.realized_pnl = net
                self.risk.close_position(token.mint, sell.fill_price, buy.filled_amount)
                result = ArbitrageResult(opp, success=True, legs=legs, net_profit=net)
            else:
                self.logger.error(f"🚨 ORPHAN: {token.symbol} sell leg failed, holding {buy.filled_amount:.6f}")
                result = ArbitrageResult(opp, success=False, legs=legs,
                                         error=f"sell leg failed: {sell.error}; position left open")

        result.elapsed_ms = (time.time() - start) * 1000
        for leg in legs:
            await self._audit_leg(f"arb-{token.symbol.lower()}", token, leg)
        self._fold(result)
        self.bus.publish(Executed(result))
        if self.notifier is not None:
            self.notifier.notify_arbitrage(result)
        return result

    # --- statistics ---

    def _fold(self, record: ExecutionRecord) -> None:
        self.stats.add(record)
        self.history.append(record)
        self.bus.publish(StatsUpdated(self.stats.to_dict()))

    def _on_strategy_executed(self, event: StrategyExecuted) -> None:
        if event.result is not None:
            self._fold(event.result)

    def _on_strategy_stopped(self, event: StrategyStopped) -> None:
        if event.exit_result is not None:
            self._fold(event.exit_result)
            if self.notifier is not None:
                self.notifier.notify_order(f"{event.strategy_id} {event.reason}", event.exit_result)

    async def _audit_leg(self, source: str, token: Token, leg: OrderResult) -> None:
        if self.audit is None:
            return
        await self.audit.log_trade([
            datetime.now(timezone.utc).isoformat(), source, token.symbol, leg.direction.value,
            f"{leg.amount:.9f}", f"{leg.filled_amount:.9f}", f"{leg.fill_price:.12f}",
            f"{leg.realized_pnl:.9f}", leg.relay_id or "",
            "SIMULATED" if leg.simulated else ("SUCCESS" if leg.success else "FAILED"),
            leg.error or "",
        ])

    # --- tokens ---

    def resolve_token(self, ref: Union[str, Token]) -> Token:
        if isinstance(ref, Token):
            return ref
        for t in self.tokens:
            if t.mint == ref or t.symbol.upper() == ref.upper():
                return t
        raise VibeCurveError(f"Unknown token: {ref}")

    # --- control surface ---

    @command
    def create_strategy(self, token: Union[str, Token], total_amount: float,
                        kind: Union[str, StrategyKind], params: Optional[Dict[str, Any]] = None,
                        risk_level: Union[str, RiskLevel] = RiskLevel.MODERATE,
                        stop_loss: Optional[float] = None, take_profit: Optional[float] = None):
        level = RiskLevel(risk_level) if isinstance(risk_level, str) else risk_level
        return self.strategies.create_strategy(self.resolve_token(token), total_amount,
                                               build_params(kind, params), risk_level=level,
                                               stop_loss=stop_loss, take_profit=take_profit)

    @command
    async def start_strategy(self, strategy_id: str):
        status = await self.strategies.start_strategy(strategy_id)
        if status.state == StrategyState.ERROR:
            raise VibeCurveError(status.last_error or "strategy failed to start")
        return status

    @command
    def stop_strategy(self, strategy_id: str):
        return self.strategies.stop_strategy(strategy_id)

    @command
    def delete_strategy(self, strategy_id: str):
        self.strategies.delete_strategy(strategy_id)
        return strategy_id

    @command
    def get_strategy(self, strategy_id: str):
        return self.strategies.get_strategy(strategy_id)

    @command
    def get_strategy_status(self, strategy_id: str):
        return self.strategies.get_status(strategy_id)

    @command
    def list_strategies(self):
        return [
            {'strategy': s, 'status': self.strategies.get_status(s.id)}
            for s in self.strategies.get_strategies()
        ]

    @command
    async def manual_scan(self):
        found = await self.scanner.scan_batch(self.tokens)
        self.opportunities.extend(found)
        for opp in found:
            self.bus.publish(OpportunityFound(opp))
        return found

    @command
    def get_config(self):
        return self._config_dict()

    def _config_dict(self) -> Dict[str, Any]:
        data = asdict(self.config)
        data.pop('secrets', None)
        data['tokens'] = [asdict(t) for t in self.tokens]
        return data

    @command
    def update_config(self, updates: Dict[str, Dict[str, Any]]):
        """
        Hot-swaps sections: orchestrator, scanner, risk, pipeline, engine, system.
        Everything is validated before anything is applied.
        """
        supported = {'orchestrator', 'scanner', 'risk', 'pipeline', 'engine', 'system'}
        unknown = set(updates) - supported
        if unknown:
            raise ConfigError(f"Sections cannot be updated at runtime: {sorted(unknown)}")

        new_sections = {name: apply_updates(getattr(self.config, name), values)
                        for name, values in updates.items()}
        candidate = replace(self.config, **new_sections)
        candidate.validate()
        if not candidate.system.dry_run and (self.pipeline.wallet is None or self.pipeline.relay is None):
            raise ConfigError("Live trading requires PRIVATE_KEY")

        old_interval = self.config.orchestrator.scan_interval
        self.config = candidate
        if 'scanner' in updates:
            self.scanner.update_params(**asdict(candidate.scanner))
        if 'risk' in updates:
            self.risk.update_config(**updates['risk'])
        if 'pipeline' in updates:
            self.pipeline.update_config(**updates['pipeline'])
        if 'engine' in updates:
            self.strategies.cfg = candidate.engine
        if 'system' in updates:
            self.pipeline.dry_run = candidate.system.dry_run
            self.logger.setLevel(candidate.system.log_level)
        if 'orchestrator' in updates:
            orch = candidate.orchestrator
            if orch.history_size != self.history.maxlen:
                self.history = deque(self.history, maxlen=orch.history_size)
            if orch.opportunity_buffer != self.opportunities.maxlen:
                self.opportunities = deque(self.opportunities, maxlen=orch.opportunity_buffer)
            if self._running and orch.scan_interval != old_interval:
                self.logger.info(f"Scan interval {old_interval}s -> {orch.scan_interval}s, restarting loop")
                self._schedule_scan_loop()

        self.logger.info(f"Config updated: {sorted(updates)}")
        return self._config_dict()

    @command
    def get_history(self, limit: Optional[int] = None):
        records = list(reversed(self.history))
        return records[:limit] if limit else records

    @command
    def clear_history(self):
        self.history.clear()
        self.opportunities.clear()
        return True

    @command
    def get_opportunities(self, limit: Optional[int] = None):
        records = list(reversed(self.opportunities))
        return records[:limit] if limit else records

    @command
    def get_stats(self):
        return {
            **self.stats.to_dict(),
            'running': self._running,
            'scan_count': self.scan_count,
            'last_scan_time': self.last_scan_time,
            'opportunities_buffered': len(self.opportunities),
            'active_strategies': sum(1 for s in self.strategies.get_all_statuses()
                                     if s.state == StrategyState.RUNNING),
            'risk': self.risk.get_stats(),
        }

    @command
    def add_token(self, mint: str, symbol: str, decimals: int = 9, cex_symbol: Optional[str] = None):
        if any(t.mint == mint for t in self.tokens):
            raise VibeCurveError(f"Token already tracked: {symbol}")
        token = Token(mint=mint, symbol=symbol, decimals=decimals, cex_symbol=cex_symbol)
        self.tokens.append(token)
        return token

    @command
    def remove_token(self, ref: str):
        token = self.resolve_token(ref)
        self.tokens.remove(token)
        self.prices.invalidate(token)
        return token
