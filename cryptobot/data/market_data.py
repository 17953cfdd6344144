"""Normalized market data fetched from the trading venue."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Tuple

import ccxt

from ..errors import InvalidRequest, SymbolNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Candle intervals in minutes, as accepted by the dashboard, mapped to ccxt timeframes.
INTERVAL_TIMEFRAMES: Dict[int, str] = {
    1: '1m',
    5: '5m',
    15: '15m',
    30: '30m',
    60: '1h',
    240: '4h',
    1440: '1d',
    10080: '1w',
    21600: '15d',
}
_TIMEFRAMES = frozenset(INTERVAL_TIMEFRAMES.values())
_CENT = Decimal('0.01')


def to_timeframe(interval: int | str) -> str:
    """Accept minutes (``60``/``'60'``) or a ccxt timeframe (``'1h'``)."""
    if isinstance(interval, str) and interval in _TIMEFRAMES:
        return interval
    try:
        minutes = int(interval)
    except (TypeError, ValueError):
        raise InvalidRequest(f'Unsupported candle interval: {interval}') from None
    if minutes not in INTERVAL_TIMEFRAMES:
        raise InvalidRequest(f'Unsupported candle interval: {interval}')
    return INTERVAL_TIMEFRAMES[minutes]


def _to_decimal(value: Any, name: str) -> Decimal:
    if value is None:
        raise UpstreamUnavailable(f'Market data is missing {name}')
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as error:
        raise UpstreamUnavailable(f'Market data has an invalid {name}: {value!r}') from error


@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    price: Decimal
    open: Decimal
    high_24h: Decimal
    low_24h: Decimal
    volume_24h: Decimal
    timestamp: int

    @property
    def change_24h(self) -> Decimal:
        return self.price - self.open

    @property
    def change_percent(self) -> Decimal:
        if self.open <= 0:
            return Decimal('0.00')
        return (self.change_24h / self.open * 100).quantize(_CENT)

    def to_ticker(self, display_symbol: str) -> Dict[str, Any]:
        return {
            'symbol': display_symbol,
            'price': str(self.price.quantize(_CENT)),
            'change24h': str(self.change_24h.quantize(_CENT)),
            'changePercent': str(self.change_percent),
            'volume': str(self.volume_24h.quantize(_CENT)),
            'timestamp': self.timestamp,
        }

    def to_broadcast(self) -> Dict[str, Any]:
        return {
            'price': float(self.price),
            'change24h': float(self.change_24h),
            'volume': float(self.volume_24h),
            'high24h': float(self.high_24h),
            'low24h': float(self.low_24h),
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class Candle:
    time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'time': self.time,
            'open': float(self.open),
            'high': float(self.high),
            'low': float(self.low),
            'close': float(self.close),
            'volume': float(self.volume),
        }


def _first(ticker: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if ticker.get(key) is not None:
            return ticker[key]
    return None


def snapshot_from_ticker(symbol: str, ticker: Dict[str, Any]) -> PriceSnapshot:
    price = _to_decimal(_first(ticker, 'last', 'close'), 'last price')
    return PriceSnapshot(
        symbol=symbol,
        price=price,
        open=_to_decimal(_first(ticker, 'open') or price, 'open'),
        high_24h=_to_decimal(_first(ticker, 'high') or price, 'high'),
        low_24h=_to_decimal(_first(ticker, 'low') or price, 'low'),
        volume_24h=_to_decimal(_first(ticker, 'baseVolume') or 0, 'volume'),
        timestamp=int(_first(ticker, 'timestamp') or time.time() * 1000),
    )


def candle_from_row(row: Iterable[Any]) -> Candle:
    timestamp, open_, high, low, close, volume = list(row)[:6]
    return Candle(
        time=int(timestamp),
        open=_to_decimal(open_, 'open'),
        high=_to_decimal(high, 'high'),
        low=_to_decimal(low, 'low'),
        close=_to_decimal(close, 'close'),
        volume=_to_decimal(volume or 0, 'volume'),
    )


class MarketDataGateway:
    """Fetches prices and candles through the shared exchange service.

    Stateless translation only: no caching and no retries, callers decide.
    """

    def __init__(self, service: Any) -> None:
        self._service = service

    async def get_current_price(self, symbol: str) -> PriceSnapshot:
        ticker = await self._call(symbol, 'fetch_ticker', symbol)
        if not ticker:
            raise SymbolNotFound(symbol)
        return snapshot_from_ticker(symbol, ticker)

    async def get_tickers(self, symbols: Iterable[str]) -> Dict[str, PriceSnapshot]:
        requested = list(symbols)
        if not requested:
            return {}
        tickers = await self._call(','.join(requested), 'fetch_tickers', requested)
        snapshots: Dict[str, PriceSnapshot] = {}
        for symbol, ticker in (tickers or {}).items():
            try:
                snapshots[symbol] = snapshot_from_ticker(symbol, ticker)
            except UpstreamUnavailable as error:
                logger.debug('Skipping ticker for %s: %s', symbol, error)
        return snapshots

    async def get_candles(
        self,
        symbol: str,
        interval: int | str = 60,
        limit: Optional[int] = None,
    ) -> Tuple[Candle, ...]:
        """Return candles ordered oldest to newest."""
        timeframe = to_timeframe(interval)
        rows = await self._call(symbol, 'fetch_ohlcv', symbol, timeframe, None, limit)
        candles = sorted((candle_from_row(row) for row in rows or []), key=lambda candle: candle.time)
        return tuple(candles)

    async def _call(self, symbol: str, method: str, *args: Any) -> Any:
        client = await self._service.client()
        try:
            return await getattr(client, method)(*args)
        except ccxt.BadSymbol as error:
            raise SymbolNotFound(symbol) from error
        except (ccxt.NetworkError, ccxt.ExchangeError) as error:
            raise UpstreamUnavailable(f'Market data request failed for {symbol}: {error}') from error


__all__ = [
    'Candle',
    'INTERVAL_TIMEFRAMES',
    'MarketDataGateway',
    'PriceSnapshot',
    'candle_from_row',
    'snapshot_from_ticker',
    'to_timeframe',
]
