"""Shared ccxt client management."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import aiohttp
import ccxt
import ccxt.async_support as ccxt_async

from ..config import ExchangeConfig

logger = logging.getLogger(__name__)


class ExchangeService:
    """Lazily instantiates one async ccxt client for the configured venue."""

    def __init__(
        self,
        config: ExchangeConfig,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ) -> None:
        if not hasattr(ccxt_async, config.exchange_id):
            raise RuntimeError(f'ccxt does not provide an exchange named {config.exchange_id}')
        self._config = config
        self._api_key = api_key
        self._api_secret = api_secret
        self._client: Optional[Any] = None
        self._lock = asyncio.Lock()

    @property
    def config(self) -> ExchangeConfig:
        return self._config

    @property
    def is_authenticated(self) -> bool:
        return bool(self._api_key and self._api_secret)

    async def client(self) -> Any:
        async with self._lock:
            if self._client is None:
                exchange_class = getattr(ccxt_async, self._config.exchange_id)
                params: dict[str, Any] = {
                    'enableRateLimit': True,
                    'timeout': self._config.request_timeout_ms,
                }
                if self.is_authenticated:
                    params['apiKey'] = self._api_key
                    params['secret'] = self._api_secret
                client = exchange_class(params)
                if self._config.sandbox:
                    try:
                        client.set_sandbox_mode(True)
                    except ccxt.NotSupported:
                        logger.warning('%s has no sandbox; using production endpoints', self._config.exchange_id)
                self._client = client
            return self._client

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.close()
                self._client = None


async def close_quietly(service: Any) -> None:
    """Close a per-request service; failures are logged and never raised."""
    try:
        await service.close()
    except (ccxt.BaseError, aiohttp.ClientError, OSError) as error:
        logger.warning('Failed to close exchange client cleanly: %s', error)


ServiceFactory = Callable[[str, str], ExchangeService]


def authenticated_service_factory(config: ExchangeConfig) -> ServiceFactory:
    """Return a factory building per-account authenticated services."""

    def factory(api_key: str, api_secret: str) -> ExchangeService:
        return ExchangeService(config, api_key=api_key, api_secret=api_secret)

    return factory


__all__ = ['ExchangeService', 'ServiceFactory', 'authenticated_service_factory', 'close_quietly']
