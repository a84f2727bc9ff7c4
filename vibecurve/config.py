# vibecurve/config.py
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import Token


def _section(cls, raw: Optional[Dict[str, Any]]):
    """Builds a config dataclass from a yaml mapping, rejecting unknown keys."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{cls.__name__}: expected a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"{cls.__name__}: unknown keys {sorted(unknown)}")
    return cls(**raw)


def apply_updates(obj, updates: Dict[str, Any]):
    known = {f.name for f in fields(obj)}
    unknown = set(updates) - known
    if unknown:
        raise ConfigError(f"{type(obj).__name__}: unknown keys {sorted(unknown)}")
    return replace(obj, **updates)


@dataclass(slots=True)
class SystemConfig:
    environment: str = "mainnet"
    dry_run: bool = True
    log_level: str = "INFO"


@dataclass(slots=True)
class EndpointConfig:
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    jupiter_quote_url: str = "https://quote-api.jup.ag/v6/quote"
    jupiter_swap_url: str = "https://quote-api.jup.ag/v6/swap"
    dexscreener_url: str = "https://api.dexscreener.com"
    jito_url: str = "https://mainnet.block-engine.jito.wtf/api/v1/bundles"
    telegram_url: str = "https://api.telegram.org"


@dataclass(slots=True)
class VenueConfig:
    dexscreener: bool = True
    cex_exchanges: List[str] = field(default_factory=list)
    cache_ttl_seconds: float = 5.0
    request_timeout: float = 8.0


@dataclass(slots=True)
class ScannerConfig:
    min_profit_percent: float = 0.3
    min_liquidity: float = 10.0
    trading_cost_fraction: float = 0.001


@dataclass(slots=True)
class RiskConfig:
    max_position_size: float = 0.5       # SOL per trade
    max_total_position: float = 2.0      # SOL across all positions
    min_position_size: float = 0.01      # SOL
    stop_loss_percentage: float = 0.15
    take_profit_percentage: float = 0.30
    trailing_stop_percentage: float = 0.10
    trailing_activation_pct: float = 10.0
    max_daily_loss: float = 1.0          # SOL
    max_drawdown: float = 0.20
    max_open_positions: int = 3
    max_trades_per_hour: int = 10
    cooldown_period: float = 30.0        # seconds
    starting_equity: float = 10.0        # SOL


@dataclass(slots=True)
class PipelineConfig:
    use_bundle: bool = True
    tip_lamports: int = 1_000_000
    slippage_bps: int = 50
    quote_timeout: float = 10.0
    submit_timeout: float = 10.0
    confirm_attempts: int = 30
    poll_interval: float = 1.0


@dataclass(slots=True)
class EngineConfig:
    monitor_interval: float = 5.0
    watch_interval: float = 5.0
    order_retries: int = 2
    retry_backoff: float = 1.0
    retry_backoff_max: float = 10.0
    completion_ratio: float = 0.99


@dataclass(slots=True)
class OrchestratorConfig:
    scan_interval: float = 10.0
    auto_execute: bool = False
    alert_only: bool = True
    trade_amount: float = 0.05
    history_size: int = 100
    opportunity_buffer: int = 50


@dataclass(slots=True)
class NotificationConfig:
    enabled: bool = True
    timeout: float = 10.0


@dataclass(slots=True)
class AuditConfig:
    trade_log: str = ""


@dataclass(slots=True)
class Secrets:
    private_key: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'Secrets':
        return cls(
            private_key=os.getenv('PRIVATE_KEY') or None,
            telegram_token=os.getenv('TG_BOT_TOKEN') or None,
            telegram_chat_id=os.getenv('TG_CHAT_ID') or None,
        )


DEFAULT_TOKENS = [
    Token(mint="JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN", symbol="JUP", decimals=6, cex_symbol="JUP/USDT"),
    Token(mint="DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", symbol="BONK", decimals=5, cex_symbol="BONK/USDT"),
    Token(mint="EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm", symbol="WIF", decimals=6, cex_symbol="WIF/USDT"),
]


@dataclass(slots=True)
class AppConfig:
    system: SystemConfig = field(default_factory=SystemConfig)
    endpoints: EndpointConfig = field(default_factory=EndpointConfig)
    venues: VenueConfig = field(default_factory=VenueConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    tokens: List[Token] = field(default_factory=lambda: list(DEFAULT_TOKENS))
    secrets: Secrets = field(default_factory=Secrets)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'AppConfig':
        raw = raw or {}
        tokens = raw.get('tokens')
        try:
            token_list = [Token(**t) for t in tokens] if tokens else list(DEFAULT_TOKENS)
        except TypeError as e:
            raise ConfigError(f"Invalid token entry: {e}") from e

        cfg = cls(
            system=_section(SystemConfig, raw.get('system')),
            endpoints=_section(EndpointConfig, raw.get('endpoints')),
            venues=_section(VenueConfig, raw.get('venues')),
            scanner=_section(ScannerConfig, raw.get('scanner')),
            risk=_section(RiskConfig, raw.get('risk')),
            pipeline=_section(PipelineConfig, raw.get('pipeline')),
            engine=_section(EngineConfig, raw.get('engine')),
            orchestrator=_section(OrchestratorConfig, raw.get('orchestrator')),
            notifications=_section(NotificationConfig, raw.get('notifications')),
            audit=_section(AuditConfig, raw.get('audit')),
            tokens=token_list,
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.risk.min_position_size > self.risk.max_position_size:
            raise ConfigError("risk.min_position_size must not exceed risk.max_position_size")
        if self.risk.max_position_size > self.risk.max_total_position:
            raise ConfigError("risk.max_position_size must not exceed risk.max_total_position")
        if self.orchestrator.scan_interval <= 0:
            raise ConfigError("orchestrator.scan_interval must be positive")
        if self.pipeline.confirm_attempts < 1:
            raise ConfigError("pipeline.confirm_attempts must be at least 1")
        if not 0 <= self.scanner.trading_cost_fraction < 1:
            raise ConfigError("scanner.trading_cost_fraction must be in [0, 1)")
        level = str(self.system.log_level).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"system.log_level is not a logging level: {self.system.log_level}")
        self.system.log_level = level


def load_config(path: str = "config.yaml", env_file: Optional[str] = ".env") -> AppConfig:
    """
    Reads config.yaml and overlays secrets/endpoints from the environment.
    A missing file yields the defaults.
    """
    if env_file:
        load_dotenv(env_file)

    raw: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

    cfg = AppConfig.from_dict(raw)
    cfg.secrets = Secrets.from_env()

    if os.getenv('RPC_URL'):
        cfg.endpoints.rpc_url = os.environ['RPC_URL']
    if os.getenv('JITO_BLOCK_ENGINE_URL'):
        cfg.endpoints.jito_url = os.environ['JITO_BLOCK_ENGINE_URL']
    return cfg


__all__ = [
    'AppConfig', 'SystemConfig', 'EndpointConfig', 'VenueConfig', 'ScannerConfig',
    'RiskConfig', 'PipelineConfig', 'EngineConfig', 'OrchestratorConfig',
    'NotificationConfig', 'AuditConfig', 'Secrets', 'load_config', 'apply_updates',
]
