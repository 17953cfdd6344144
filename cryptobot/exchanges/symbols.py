"""Translation between dashboard symbols (``BTCUSD``) and venue markets (``BTC/USD``)."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import ccxt

logger = logging.getLogger(__name__)

LEGACY_SYMBOL_MAP: Dict[str, str] = {
    'BTCUSD': 'BTC/USD',
    'ETHUSD': 'ETH/USD',
    'ADAUSD': 'ADA/USD',
    'SOLUSD': 'SOL/USD',
    'DOTUSD': 'DOT/USD',
    'LINKUSD': 'LINK/USD',
}

ASSET_ALIASES: Dict[str, str] = {
    'XBT': 'BTC',
    'XXBT': 'BTC',
    'ZUSD': 'USD',
    'ZEUR': 'EUR',
    'ZGBP': 'GBP',
    'ZJPY': 'JPY',
    'ZCAD': 'CAD',
    'ZAUD': 'AUD',
    'ZCHF': 'CHF',
    'XETH': 'ETH',
    'XXRP': 'XRP',
    'XLTC': 'LTC',
    'XDG': 'DOGE',
    'XXDG': 'DOGE',
    'XMR': 'XMR',
    'XTZ': 'XTZ',
}

QUOTE_CANDIDATES = ('USD', 'EUR', 'GBP', 'JPY', 'CAD', 'AUD', 'CHF', 'USDT', 'USDC', 'ETH', 'BTC')

_NON_ALNUM = re.compile(r'[^A-Za-z0-9]')


def normalize_symbol(symbol: Optional[str]) -> str:
    if not symbol:
        return ''
    return _NON_ALNUM.sub('', symbol).upper()


def normalize_asset(code: Optional[str]) -> str:
    """Map venue asset codes such as ``XXBT`` or ``ZUSD`` to common tickers."""
    if not code:
        return ''
    upper = code.upper()
    if upper in ASSET_ALIASES:
        return ASSET_ALIASES[upper]
    trimmed = re.sub(r'^[XZ]', '', upper) if len(upper) == 4 else upper
    return ASSET_ALIASES.get(trimmed, trimmed)


def display_from_assets(base: str, quote: str) -> str:
    return f'{normalize_asset(base)}{normalize_asset(quote)}'


def display_from_altname(altname: str) -> str:
    sanitized = normalize_symbol(altname)
    if len(sanitized) <= 3:
        return sanitized
    for quote in QUOTE_CANDIDATES:
        if sanitized.endswith(quote) and len(sanitized) > len(quote):
            return display_from_assets(sanitized[: -len(quote)], quote)
    return display_from_assets(sanitized[:-3], sanitized[-3:])


@dataclass
class MarketEntry:
    symbol: str
    display: str
    base: str
    quote: str


@dataclass
class _Catalog:
    fetched_at: float = 0.0
    to_venue: Dict[str, str] = field(default_factory=dict)
    to_display: Dict[str, str] = field(default_factory=dict)
    ordered: List[MarketEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_venue


def _legacy_catalog(now: float) -> _Catalog:
    catalog = _Catalog(fetched_at=now)
    for display, symbol in LEGACY_SYMBOL_MAP.items():
        base, quote = symbol.split('/')
        catalog.to_venue[display] = symbol
        catalog.to_display[symbol] = display
        catalog.ordered.append(MarketEntry(symbol=symbol, display=display, base=base, quote=quote))
    return catalog


def build_catalog(markets: Dict[str, Dict[str, Any]], now: float) -> _Catalog:
    """Index a ccxt market catalog by every spelling a client may send."""
    catalog = _Catalog(fetched_at=now)
    for symbol, market in markets.items():
        market_id = str(market.get('id') or symbol)
        if '.d' in market_id or market.get('spot') is False:
            continue
        base = market.get('base') or ''
        quote = market.get('quote') or ''
        display = display_from_assets(base, quote) if base and quote else normalize_symbol(symbol)
        catalog.to_venue[display] = symbol
        catalog.to_venue[normalize_symbol(symbol)] = symbol
        catalog.to_venue[market_id.upper()] = symbol
        altname = (market.get('info') or {}).get('altname')
        if altname:
            catalog.to_venue[altname.upper()] = symbol
            catalog.to_venue[display_from_altname(altname)] = symbol
        catalog.to_display[symbol] = display
        catalog.to_display[market_id] = display
        catalog.ordered.append(
            MarketEntry(symbol=symbol, display=display, base=normalize_asset(base), quote=normalize_asset(quote))
        )
    return catalog


class SymbolResolver:
    """Resolves dashboard symbols against the venue's asset-pair catalog.

    The catalog is cached for ``ttl`` seconds. Concurrent refreshes share one
    upstream request, and a failed refresh keeps serving the previous catalog.
    Without a service the resolver works offline from the legacy map.
    """

    def __init__(
        self,
        service: Optional[Any] = None,
        *,
        ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._service = service
        self._ttl = ttl
        self._clock = clock
        self._cache = _Catalog() if service is not None else _legacy_catalog(clock())
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if self._service is None:
            return True
        return not self._cache.is_empty and self._clock() - self._cache.fetched_at < self._ttl

    async def _catalog(self) -> _Catalog:
        if self._is_fresh():
            return self._cache
        async with self._lock:
            if self._is_fresh():
                return self._cache
            try:
                client = await self._service.client()
                markets = await client.load_markets(True)
            except (ccxt.BaseError, OSError) as error:
                logger.error('Failed to refresh asset pairs: %s', error)
                return self._cache
            self._cache = build_catalog(markets, self._clock())
            logger.debug('Loaded %d markets into the symbol catalog', len(self._cache.ordered))
            return self._cache

    async def resolve_trading_symbol(self, display_symbol: Optional[str]) -> Optional[str]:
        normalized = normalize_symbol(display_symbol)
        if not normalized:
            return None
        catalog = await self._catalog()
        return catalog.to_venue.get(normalized) or LEGACY_SYMBOL_MAP.get(normalized)

    async def display_symbol(self, venue_symbol: str) -> str:
        catalog = await self._catalog()
        direct = catalog.to_display.get(venue_symbol) or catalog.to_display.get(venue_symbol.upper())
        return direct or display_from_altname(venue_symbol)

    async def resolve_many(self, display_symbols: Iterable[str]) -> List[str]:
        resolved: List[str] = []
        for symbol in display_symbols:
            venue_symbol = await self.resolve_trading_symbol(symbol)
            if venue_symbol and venue_symbol not in resolved:
                resolved.append(venue_symbol)
        return resolved

    async def popular_symbols(self, limit: int = 6) -> List[str]:
        catalog = await self._catalog()
        usd = [entry.symbol for entry in catalog.ordered if entry.display.endswith('USD')]
        combined = list(dict.fromkeys(usd + [entry.symbol for entry in catalog.ordered]))
        return combined[:limit]

    async def preferred_symbols(self, display_symbols: Iterable[str], limit: int = 6) -> List[str]:
        """Configured symbols, else popular pairs, else the legacy map."""
        resolved = await self.resolve_many(display_symbols)
        if resolved:
            return resolved
        popular = await self.popular_symbols(limit)
        if popular:
            return popular
        return list(dict.fromkeys(LEGACY_SYMBOL_MAP.values()))[:limit]


__all__ = [
    'LEGACY_SYMBOL_MAP',
    'MarketEntry',
    'SymbolResolver',
    'build_catalog',
    'display_from_altname',
    'display_from_assets',
    'normalize_asset',
    'normalize_symbol',
]
