"""Runtime settings for the trading backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, Mapping, Tuple

_TRUTHY = {'1', 'true', 'yes', 'on'}

DEFAULT_SYMBOLS: Tuple[str, ...] = ('BTCUSD', 'ETHUSD', 'ADAUSD', 'SOLUSD', 'DOTUSD', 'LINKUSD')


def _env_pairs(path: Path) -> Iterator[Tuple[str, str]]:
    for line in path.read_text().splitlines():
        line = line.strip()
        if line.startswith('#') or '=' not in line:
            continue
        name, _, raw = line.partition('=')
        yield name.strip(), raw.strip().strip('"').strip("'")


def resolve_environment(env_file: str | Path = '.env', environ: Mapping[str, str] | None = None) -> Dict[str, str]:
    """Return ``KEY=VALUE`` pairs from the `.env` file overridden by the process environment."""
    path = Path(env_file)
    resolved = dict(_env_pairs(path)) if path.is_file() else {}
    resolved.update(os.environ if environ is None else environ)
    return resolved


def parse_symbols(raw: str) -> Tuple[str, ...]:
    symbols = [symbol.strip().upper() for symbol in raw.split(',')]
    return tuple(symbol for symbol in symbols if symbol)


@dataclass
class Settings:
    """Process-wide settings.

    ``from_env`` reads the process environment first, then `.env`, then falls
    back to the defaults below.
    """

    environment: str = 'development'
    database_url: str = 'sqlite:///data/cryptobot.db'
    data_directory: Path = field(default_factory=lambda: Path('data'))
    log_level: str = 'INFO'
    starting_demo_balance: Decimal = Decimal('10000.00')
    supported_symbols: Tuple[str, ...] = DEFAULT_SYMBOLS
    broadcast_interval: float = 5.0
    allow_uncovered_sells: bool = False
    enforce_available_balance: bool = False
    api_host: str = '127.0.0.1'
    api_port: int = 5000
    openai_api_key: str | None = None
    openai_model: str = 'gpt-4o-mini'

    @classmethod
    def from_env(
        cls,
        env_file: str | Path = '.env',
        environ: Mapping[str, str] | None = None,
    ) -> 'Settings':
        env = resolve_environment(env_file, environ)
        symbols = env.get('SUPPORTED_SYMBOLS')
        settings = cls(
            environment=env.get('APP_ENV', cls.environment),
            database_url=env.get('DATABASE_URL', cls.database_url),
            data_directory=Path(env.get('DATA_DIRECTORY', 'data')),
            log_level=env.get('LOG_LEVEL', cls.log_level).upper(),
            starting_demo_balance=Decimal(env.get('STARTING_DEMO_BALANCE', str(cls.starting_demo_balance))),
            supported_symbols=parse_symbols(symbols) if symbols else DEFAULT_SYMBOLS,
            broadcast_interval=float(env.get('PRICE_BROADCAST_INTERVAL', cls.broadcast_interval)),
            allow_uncovered_sells=env.get('ALLOW_UNCOVERED_SELLS', 'false').lower() in _TRUTHY,
            enforce_available_balance=env.get('ENFORCE_AVAILABLE_BALANCE', 'false').lower() in _TRUTHY,
            api_host=env.get('API_HOST', cls.api_host),
            api_port=int(env.get('PORT', cls.api_port)),
            openai_api_key=env.get('OPENAI_API_KEY') or None,
            openai_model=env.get('OPENAI_MODEL', cls.openai_model),
        )
        settings.data_directory.mkdir(parents=True, exist_ok=True)
        return settings


load_settings = Settings.from_env

__all__ = ['DEFAULT_SYMBOLS', 'Settings', 'load_settings', 'parse_symbols', 'resolve_environment']
