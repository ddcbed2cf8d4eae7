"""Typed settings built once from the YAML/env configuration and passed into components."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from .utils import as_bool, get_config_section


logger = logging.getLogger(__name__)

T = TypeVar('T')


class ConfigurationError(Exception):
    """Raised when settings are missing or invalid for the subsystem being started."""


@dataclass(frozen=True)
class ExchangeSettings:
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    testnet: bool = False
    recv_window: int = 5000
    request_timeout_s: float = 15.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class StrategySettings:
    interval: str = '1h'
    quote_asset: str = 'USDT'
    contract_type: str = 'PERPETUAL'
    max_symbols: int = 500
    symbol_cache_ttl_s: float = 3600.0
    concurrency_limit: int = 20
    candle_limit: int = 200
    min_history: int = 200
    batch_size: int = 100
    batch_delay_min_s: float = 0.5
    batch_delay_max_s: float = 0.7


@dataclass(frozen=True)
class IndicatorSettings:
    rsi_period: int = 14
    bb_period: int = 20
    bb_std_dev: float = 2.0
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    adx_period: int = 14
    ema_short: int = 20
    ema_long: int = 50
    atr_period: int = 14
    volume_ma_period: int = 20


@dataclass(frozen=True)
class RegimeSettings:
    adx_threshold: float = 25.0
    ema_distance_pct: float = 3.0
    atr_pct: float = 2.0


@dataclass(frozen=True)
class SignalSettings:
    band_tolerance: float = 0.005
    rsi_oversold: float = 35.0
    rsi_overbought: float = 65.0
    volume_spike_ratio: float = 1.5
    trend_adx_min: float = 25.0


@dataclass(frozen=True)
class FilterSettings:
    min_trade_volume: float = 1_000_000.0
    min_confidence: float = 60.0
    min_tp_roi: float = 5.0
    volume_window: int = 24
    tp_atr_multiplier: float = 3.0
    sl_atr_multiplier: float = 1.5


@dataclass(frozen=True)
class ScanSettings:
    interval_s: float = 3600.0
    run_on_start: bool = True


@dataclass(frozen=True)
class OrderSettings:
    leverage: int = 20
    capital_per_order: float = 10.0
    max_orders_per_day: int = 10
    order_limit_per_scan: int = 3
    tp_roi_pct: float = 4.0
    sl_roi_pct: float = 2.0
    rank_by: str = 'strength'
    margin_type: str = 'ISOLATED'
    working_type: str = 'MARK_PRICE'


@dataclass(frozen=True)
class PositionSettings:
    epsilon: float = 1e-9
    poll_interval_s: float = 60.0
    create_from_stream: bool = True


@dataclass(frozen=True)
class NotificationSettings:
    discord_enabled: bool = False
    discord_webhook_url: Optional[str] = None
    discord_username: Optional[str] = None
    telegram_enabled: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    webhook_url: Optional[str] = None
    retry_attempts: int = 3
    retry_delay_s: float = 2.0
    timeout_s: float = 10.0


@dataclass(frozen=True)
class ApiSettings:
    host: str = '127.0.0.1'
    port: int = 8000
    cors_origins: Tuple[str, ...] = ('*',)
    auto_start: bool = False


@dataclass(frozen=True)
class MonitoringSettings:
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    log_buffer_size: int = 500
    signal_history_size: int = 1000
    prometheus_enabled: bool = False
    prometheus_port: int = 9090
    prometheus_port_scan: int = 0


@dataclass(frozen=True)
class Settings:
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    indicators: IndicatorSettings = field(default_factory=IndicatorSettings)
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    signals: SignalSettings = field(default_factory=SignalSettings)
    filters: FilterSettings = field(default_factory=FilterSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    orders: OrderSettings = field(default_factory=OrderSettings)
    positions: PositionSettings = field(default_factory=PositionSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @classmethod
    def from_config(cls, source: Any) -> 'Settings':
        sections = {}
        for f in fields(cls):
            section_cls = type(f.default_factory())
            sections[f.name] = _build_section(section_cls, get_config_section(source, f.name))
        settings = cls(**sections)
        settings.validate()
        return settings

    def validate(self) -> None:
        orders = self.orders
        if not 1 <= orders.leverage <= 125:
            raise ConfigurationError(f"orders.leverage must be within 1..125, got {orders.leverage}")
        if orders.capital_per_order <= 0:
            raise ConfigurationError("orders.capital_per_order must be positive")
        if orders.max_orders_per_day < 0 or orders.order_limit_per_scan < 0:
            raise ConfigurationError("order limits must not be negative")
        if orders.tp_roi_pct <= 0 or orders.sl_roi_pct <= 0:
            raise ConfigurationError("orders.tp_roi_pct and orders.sl_roi_pct must be positive")
        if orders.rank_by not in ('strength', 'tp_roi'):
            raise ConfigurationError(f"orders.rank_by must be 'strength' or 'tp_roi', got {orders.rank_by!r}")
        if self.strategy.concurrency_limit < 1:
            raise ConfigurationError("strategy.concurrency_limit must be at least 1")
        if self.strategy.batch_size < 1 or self.strategy.batch_size > 1500:
            raise ConfigurationError("strategy.batch_size must be within 1..1500")
        if self.strategy.batch_delay_min_s > self.strategy.batch_delay_max_s:
            raise ConfigurationError("strategy.batch_delay_min_s must not exceed batch_delay_max_s")
        if self.scan.interval_s <= 0:
            raise ConfigurationError("scan.interval_s must be positive")
        if self.indicators.ema_short >= self.indicators.ema_long:
            raise ConfigurationError("indicators.ema_short must be shorter than indicators.ema_long")

    def require_credentials(self) -> None:
        if not self.exchange.has_credentials:
            raise ConfigurationError("Binance API key/secret are required for trading")


def _build_section(section_cls: Type[T], raw: Dict[str, Any]) -> T:
    kwargs: Dict[str, Any] = {}
    known = {f.name: f for f in fields(section_cls)}
    for key, value in raw.items():
        spec = known.get(key)
        if spec is None:
            logger.warning("Ignoring unknown config key %s.%s", section_cls.__name__, key)
            continue
        kwargs[key] = _coerce(value, spec.default, key)
    return section_cls(**kwargs)


def _coerce(value: Any, default: Any, key: str) -> Any:
    if isinstance(value, str) and value.startswith('${'):
        # unresolved environment placeholder
        return default
    if default is None:
        if value is None or value == '':
            return None
        return str(value)
    try:
        if isinstance(default, bool):
            return as_bool(value, default)
        if isinstance(default, int):
            return int(float(value))
        if isinstance(default, float):
            return float(value)
        if isinstance(default, tuple):
            if isinstance(value, str):
                return tuple(item.strip() for item in value.split(',') if item.strip())
            return tuple(value or ())
        if isinstance(default, str):
            return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}") from exc
    return value
