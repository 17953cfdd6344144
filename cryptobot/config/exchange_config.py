"""Exchange and security specific settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from .config import Settings, resolve_environment

logger = logging.getLogger(__name__)

SUPPORTED_EXCHANGES = frozenset({'kraken', 'binance', 'coinbase', 'bitstamp'})
INSECURE_JWT_SECRET = 'INSECURE_DEFAULT_SECRET_KEY_CHANGE_IN_PRODUCTION'


@dataclass
class ExchangeConfig:
    """Normalized representation of the trading venue configuration."""

    exchange_id: str = 'kraken'
    request_timeout: float = 10.0
    order_timeout: float = 15.0
    sandbox: bool = False
    symbol_cache_ttl: float = 600.0

    def __post_init__(self) -> None:
        self.exchange_id = self.exchange_id.lower()
        if self.exchange_id not in SUPPORTED_EXCHANGES:
            raise ValueError(f'Unsupported exchange: {self.exchange_id}')
        if self.request_timeout <= 0 or self.order_timeout <= 0:
            raise ValueError('Exchange timeouts must be positive')
        if self.symbol_cache_ttl < 0:
            raise ValueError('Symbol cache TTL cannot be negative')

    @property
    def request_timeout_ms(self) -> int:
        return int(self.request_timeout * 1000)

    @classmethod
    def from_env(
        cls,
        settings: Settings,
        environ: Mapping[str, str] | None = None,
    ) -> 'ExchangeConfig':
        env = environ if environ is not None else resolve_environment()
        return cls(
            exchange_id=env.get('EXCHANGE_ID', cls.exchange_id),
            request_timeout=float(env.get('EXCHANGE_API_TIMEOUT', cls.request_timeout)),
            order_timeout=float(env.get('EXCHANGE_ORDER_TIMEOUT', cls.order_timeout)),
            sandbox=env.get('EXCHANGE_SANDBOX', str(settings.environment == 'test')).lower() in {'1', 'true', 'yes'},
            symbol_cache_ttl=float(env.get('SYMBOL_CACHE_TTL', cls.symbol_cache_ttl)),
        )


@dataclass
class SecurityConfig:
    """Token verification and credential encryption settings."""

    jwt_secret: str = INSECURE_JWT_SECRET
    jwt_algorithm: str = 'HS256'
    jwt_audience: str | None = None
    data_encryption_key: str | None = None

    def __post_init__(self) -> None:
        if self.jwt_secret == INSECURE_JWT_SECRET:
            logger.warning(
                'JWT_SECRET_KEY is using the insecure default value. '
                'Set JWT_SECRET_KEY in production!'
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> 'SecurityConfig':
        env = environ if environ is not None else resolve_environment()
        return cls(
            jwt_secret=env.get('JWT_SECRET_KEY', INSECURE_JWT_SECRET),
            jwt_algorithm=env.get('JWT_ALGORITHM', cls.jwt_algorithm),
            jwt_audience=env.get('JWT_AUDIENCE') or None,
            data_encryption_key=env.get('DATA_ENCRYPTION_KEY') or None,
        )


__all__ = ['ExchangeConfig', 'SecurityConfig', 'SUPPORTED_EXCHANGES']
