"""Exchange integrations exposed to the rest of the system."""

from .exchange_service import ExchangeService, ServiceFactory, authenticated_service_factory, close_quietly
from .symbols import LEGACY_SYMBOL_MAP, SymbolResolver, normalize_symbol
from .trade_history import fetch_venue_trades, order_to_trade

__all__ = [
    'ExchangeService',
    'ServiceFactory',
    'authenticated_service_factory',
    'close_quietly',
    'LEGACY_SYMBOL_MAP',
    'SymbolResolver',
    'fetch_venue_trades',
    'normalize_symbol',
    'order_to_trade',
]
