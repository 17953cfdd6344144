"""Shared fixtures: a file-backed ledger and an in-process exchange double."""

from __future__ import annotations

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import ccxt
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cryptobot.database import DatabaseManager  # noqa: E402


def make_ticker(symbol: str, last: float, open_: float | None = None) -> dict:
    return {
        'symbol': symbol,
        'last': last,
        'open': open_ if open_ is not None else last,
        'high': last * 1.01,
        'low': last * 0.99,
        'baseVolume': 1234.5,
        'timestamp': 1_700_000_000_000,
    }


class FakeExchangeClient:
    """Implements the slice of the ccxt async API the backend calls."""

    def __init__(self) -> None:
        self.tickers = {
            'BTC/USD': make_ticker('BTC/USD', 50_000.0, 48_000.0),
            'ETH/USD': make_ticker('ETH/USD', 3_000.0, 3_100.0),
            'SOL/USD': make_ticker('SOL/USD', 150.0),
        }
        self.ohlcv = [
            [1_700_000_000_000 + index * 3_600_000, 100 + index, 101 + index, 99 + index, 100.5 + index, 10 + index]
            for index in range(60)
        ]
        self.orders: list[tuple] = []
        self.order_response: dict = {'id': 'OID-1', 'status': 'open'}
        self.order_error: Exception | None = None
        self.order_delay = 0.0
        self.balance_error: Exception | None = None
        self.closed_orders: list[dict] = []
        self.closed_orders_error: Exception | None = None
        self.market_error: Exception | None = None

    async def fetch_ticker(self, symbol: str) -> dict:
        if self.market_error is not None:
            raise self.market_error
        if symbol not in self.tickers:
            raise ccxt.BadSymbol(f'kraken does not have market symbol {symbol}')
        return self.tickers[symbol]

    async def fetch_tickers(self, symbols: list[str]) -> dict:
        if self.market_error is not None:
            raise self.market_error
        return {symbol: self.tickers[symbol] for symbol in symbols if symbol in self.tickers}

    async def fetch_ohlcv(self, symbol, timeframe, since=None, limit=None) -> list:
        if symbol not in self.tickers:
            raise ccxt.BadSymbol(symbol)
        return list(self.ohlcv)

    async def create_order(self, symbol, order_type, side, amount, price=None, params=None) -> dict:
        self.orders.append((symbol, order_type, side, amount, price, dict(params or {})))
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        if self.order_error is not None:
            raise self.order_error
        return dict(self.order_response)

    async def fetch_balance(self) -> dict:
        if self.balance_error is not None:
            raise self.balance_error
        return {'total': {'USD': 100.0}}

    async def fetch_closed_orders(self) -> list:
        if self.closed_orders_error is not None:
            raise self.closed_orders_error
        return list(self.closed_orders)


class FakeExchangeService:
    def __init__(self, client: FakeExchangeClient, credentials: tuple[str, str] | None = None) -> None:
        self._client = client
        self.credentials = credentials
        self.closed = False
        self.close_error: Exception | None = None

    async def client(self) -> FakeExchangeClient:
        return self._client

    async def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture
def database(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield manager
    manager.close()


@pytest.fixture
def exchange_client() -> FakeExchangeClient:
    return FakeExchangeClient()


@pytest.fixture
def exchange_service(exchange_client) -> FakeExchangeService:
    return FakeExchangeService(exchange_client)


@pytest.fixture
def service_factory(exchange_client):
    """Factory for per-account services; created services are kept on ``.created``."""

    def factory(api_key: str, api_secret: str) -> FakeExchangeService:
        service = FakeExchangeService(exchange_client, (api_key, api_secret))
        factory.created.append(service)
        return service

    factory.created = []
    return factory


@pytest.fixture
def demo_account(database):
    account, portfolio = database.create_account_with_portfolio(
        'firebase-uid-1',
        'trader@example.com',
        starting_balance=Decimal('10000.00'),
        display_name='Trader',
    )
    return account, portfolio
