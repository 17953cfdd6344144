"""Market data layer."""

from .market_data import Candle, MarketDataGateway, PriceSnapshot, to_timeframe

__all__ = ['Candle', 'MarketDataGateway', 'PriceSnapshot', 'to_timeframe']
