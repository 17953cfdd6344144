"""Configuration utilities for the trading backend."""

from .config import DEFAULT_SYMBOLS, Settings, load_settings
from .exchange_config import ExchangeConfig, SecurityConfig

__all__ = ['DEFAULT_SYMBOLS', 'Settings', 'ExchangeConfig', 'SecurityConfig', 'load_settings']
