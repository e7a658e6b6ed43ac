# arbloop/config.py
"""
Typed view over config.yaml.

The YAML layout mirrors the sections below; every key is optional and falls
back to the defaults declared on the dataclasses.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional
import yaml

from .exceptions import ConfigError


@dataclass
class SystemSettings:
    environment: str = "paper"
    dry_run: bool = True
    log_level: str = "INFO"
    cycle_interval: float = 2.0


@dataclass
class TradingSettings:
    numeraire: str = "USDC"
    assets: List[str] = field(default_factory=lambda: ["SOL/USDC", "USDT/USDC", "RAY/USDC", "ORCA/USDC"])
    min_profit_threshold: float = 0.01
    min_confidence: float = 0.6
    max_trade_size: float = 10_000.0
    liquidity_fraction: float = 0.005
    default_liquidity: float = 10_000.0
    max_cycle_length: int = 3
    max_sample_age: float = 30.0
    slippage_tolerance: float = 0.005


@dataclass
class PositionLimitSettings:
    max_position: float = 1_000.0
    max_daily_volume: float = 10_000.0


@dataclass
class RiskSettings:
    capital: float = 10_000.0
    max_daily_trades: int = 50
    max_daily_loss: float = 100.0
    emergency_stop_loss: float = 200.0
    max_drawdown: float = 0.10
    max_correlated_exposure: float = 0.05
    max_kelly_fraction: float = 0.25
    default_volatility: float = 0.5
    history_size: int = 1000
    position_limits: Dict[str, PositionLimitSettings] = field(default_factory=dict)


@dataclass
class ExecutionSettings:
    max_submit_retries: int = 3
    submit_retry_delay: float = 0.5
    max_confirm_attempts: int = 30
    confirm_delay: float = 0.5
    confirm_delay_cap: float = 4.0
    inter_leg_delay: float = 0.5


@dataclass
class LoopSettings:
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    max_consecutive_errors: int = 5


@dataclass
class VenueSettings:
    api_key: str = ""
    secret: str = ""
    password: str = ""
    fee_rate: float = 0.001
    sandbox: bool = False
    timeout_ms: int = 10_000


@dataclass
class AuditSettings:
    trade_log: str = "logs/trades.csv"
    opportunity_log: str = "logs/opportunities.csv"


@dataclass
class Settings:
    system: SystemSettings = field(default_factory=SystemSettings)
    trading: TradingSettings = field(default_factory=TradingSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    venues: Dict[str, VenueSettings] = field(default_factory=dict)
    audit: AuditSettings = field(default_factory=AuditSettings)

    def tradable_assets(self) -> List[str]:
        """Base assets of the configured markets, numeraire excluded."""
        seen: List[str] = []
        for symbol in self.trading.assets:
            for currency in symbol.split('/'):
                if currency != self.trading.numeraire and currency not in seen:
                    seen.append(currency)
        return seen


def _build(cls, raw: Optional[Dict[str, Any]], section: str, problems: List[str]):
    raw = raw or {}
    if not isinstance(raw, dict):
        problems.append(f"{section} must be a mapping")
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        problems.append(f"{section}: unknown keys {', '.join(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


def settings_from_dict(raw: Optional[Dict[str, Any]]) -> Settings:
    """Builds and validates Settings from an already-parsed mapping."""
    raw = raw or {}
    problems: List[str] = []

    risk_raw = dict(raw.get('risk') or {})
    limits_raw = risk_raw.pop('position_limits', {}) or {}
    risk = _build(RiskSettings, risk_raw, "risk", problems)
    risk.position_limits = {
        asset: _build(PositionLimitSettings, spec, f"risk.position_limits.{asset}", problems)
        for asset, spec in limits_raw.items()
    }

    settings = Settings(
        system=_build(SystemSettings, raw.get('system'), "system", problems),
        trading=_build(TradingSettings, raw.get('trading'), "trading", problems),
        risk=risk,
        execution=_build(ExecutionSettings, raw.get('execution'), "execution", problems),
        loop=_build(LoopSettings, raw.get('loop'), "loop", problems),
        venues={name: _build(VenueSettings, creds, f"venues.{name}", problems)
                for name, creds in (raw.get('venues') or {}).items()},
        audit=_build(AuditSettings, raw.get('audit'), "audit", problems),
    )
    problems.extend(validate(settings))
    if problems:
        raise ConfigError(problems)
    return settings


def validate(settings: Settings) -> List[str]:
    errors = []
    t, r, e, lp = settings.trading, settings.risk, settings.execution, settings.loop

    if not 0 < t.min_profit_threshold <= 1:
        errors.append("trading.min_profit_threshold must be between 0 and 1")
    if not 0 <= t.min_confidence <= 1:
        errors.append("trading.min_confidence must be between 0 and 1")
    if not 0 < t.slippage_tolerance <= 0.1:
        errors.append("trading.slippage_tolerance must be between 0 and 0.1")
    if t.max_trade_size <= 0:
        errors.append("trading.max_trade_size must be positive")
    if not 0 < t.liquidity_fraction <= 1:
        errors.append("trading.liquidity_fraction must be between 0 and 1")
    if t.max_cycle_length < 2:
        errors.append("trading.max_cycle_length must be at least 2")
    if t.max_sample_age <= 0:
        errors.append("trading.max_sample_age must be positive")
    for symbol in t.assets:
        if symbol.count('/') != 1:
            errors.append(f"trading.assets: '{symbol}' is not a BASE/QUOTE symbol")

    if r.capital <= 0:
        errors.append("risk.capital must be positive")
    if r.max_daily_loss <= 0:
        errors.append("risk.max_daily_loss must be positive")
    if r.emergency_stop_loss <= 0:
        errors.append("risk.emergency_stop_loss must be positive")
    if not 0 < r.max_drawdown <= 1:
        errors.append("risk.max_drawdown must be between 0 and 1")
    if not 0 <= r.max_kelly_fraction <= 1:
        errors.append("risk.max_kelly_fraction must be between 0 and 1")
    if r.history_size < 1:
        errors.append("risk.history_size must be at least 1")

    if e.max_submit_retries < 1 or e.max_confirm_attempts < 1:
        errors.append("execution retry budgets must be at least 1")
    if lp.max_consecutive_errors < 1:
        errors.append("loop.max_consecutive_errors must be at least 1")
    return errors


def load_config(path: str = "config.yaml") -> Settings:
    with open(path, "r") as f:
        return settings_from_dict(yaml.safe_load(f))
