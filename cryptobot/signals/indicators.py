"""Indicator helpers used by the signal analyzer."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

from ..data import Candle, PriceSnapshot

ANALYSIS_WINDOW = 50


def moving_average(values: Iterable[float], window: int) -> List[float]:
    values = list(values)
    if window <= 0:
        raise ValueError('window must be positive')
    if len(values) < window:
        return []
    result: List[float] = []
    running = sum(values[:window])
    result.append(running / window)
    for index in range(window, len(values)):
        running += values[index] - values[index - window]
        result.append(running / window)
    return result


def ema(prices: Sequence[float], period: int) -> float:
    """EMA seeded with the SMA of the first ``period`` prices.

    With fewer prices than the period the last price (or 0) is returned.
    """
    if period <= 0:
        raise ValueError('period must be positive')
    if len(prices) < period:
        return prices[-1] if prices else 0.0
    multiplier = 2 / (period + 1)
    value = sum(prices[:period]) / period
    for price in prices[period:]:
        value = (price - value) * multiplier + value
    return value


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Wilder-smoothed RSI; 50 when history is too short, 100 with no losses."""
    if len(prices) < period + 1:
        return 50.0
    gains = 0.0
    losses = 0.0
    for index in range(1, period + 1):
        change = prices[index] - prices[index - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    for index in range(period + 1, len(prices)):
        change = prices[index] - prices[index - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def macd(prices: Sequence[float]) -> float:
    return ema(prices, 12) - ema(prices, 26)


def simple_return(start: float, end: float) -> float:
    if start == 0:
        return 0.0
    return (end - start) / start


def volume_trend(current_volume: float, volumes: Sequence[float]) -> float:
    """Percent difference of the 24h volume against the candle average."""
    if not volumes:
        return 0.0
    average = sum(volumes) / len(volumes)
    if average <= 0:
        return 0.0
    return (current_volume - average) / average * 100


def support_resistance(closes: Sequence[float], window: int = 20) -> tuple[float, float]:
    recent = list(closes[-window:])
    if not recent:
        return 0.0, 0.0
    return min(recent), max(recent)


def indicator_snapshot(candles: Sequence[Candle], snapshot: PriceSnapshot) -> Dict[str, Any]:
    """Indicators over the most recent candles, keyed as stored with signals."""
    recent = list(candles)[-ANALYSIS_WINDOW:]
    closes = [float(candle.close) for candle in recent]
    volumes = [float(candle.volume) for candle in recent]
    current_price = float(snapshot.price)
    sma = moving_average(closes, 20)
    support, resistance = support_resistance(closes)
    return {
        'rsi': rsi(closes, 14),
        'sma20': sma[-1] if sma else current_price,
        'ema12': ema(closes, 12),
        'ema26': ema(closes, 26),
        'macd': macd(closes),
        'volumeTrend': volume_trend(float(snapshot.volume_24h), volumes),
        'priceChange24h': simple_return(closes[0], current_price) * 100 if closes else 0.0,
        'currentPrice': current_price,
        'high24h': float(snapshot.high_24h),
        'low24h': float(snapshot.low_24h),
        'volume24h': float(snapshot.volume_24h),
        'support': support,
        'resistance': resistance,
    }


__all__ = [
    'ANALYSIS_WINDOW',
    'ema',
    'indicator_snapshot',
    'macd',
    'moving_average',
    'rsi',
    'simple_return',
    'support_resistance',
    'volume_trend',
]
