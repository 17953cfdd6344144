"""End-to-end tests for :mod:`cryptobot.api.server` over a real aiohttp test server."""

from __future__ import annotations

import asyncio
import json

import ccxt
from aiohttp.test_utils import TestClient, TestServer

from cryptobot.api import AppContext, create_app
from cryptobot.config import ExchangeConfig, SecurityConfig, Settings
from cryptobot.data import MarketDataGateway
from cryptobot.database import NewStrategy
from cryptobot.exchanges import SymbolResolver
from cryptobot.execution import DemoFillStrategy, ExecutionEngine, LiveFillStrategy
from cryptobot.monitoring import AlertManager
from cryptobot.risk import PortfolioManager, RiskEvaluator
from cryptobot.security import CredentialCipher, TokenVerifier, issue_token
from cryptobot.signals import SignalAnalyzer, SignalService

SECURITY = SecurityConfig(jwt_secret='api-test-secret')
CIPHER = CredentialCipher('api-test-encryption-key')


async def _model_reply(system: str, prompt: str) -> str:
    return json.dumps({'signal': 'buy', 'confidence': 70, 'reasoning': 'trend', 'entryPrice': 50000})


def _context(database, exchange_service, service_factory) -> AppContext:
    resolver = SymbolResolver()
    gateway = MarketDataGateway(exchange_service)
    portfolio_manager = PortfolioManager()
    alerts = AlertManager()
    exchange_config = ExchangeConfig()
    engine = ExecutionEngine(
        database,
        gateway,
        resolver,
        RiskEvaluator(),
        DemoFillStrategy(database, portfolio_manager),
        LiveFillStrategy(database, resolver, CIPHER, service_factory, exchange_config, alerts),
        portfolio_manager,
    )
    signals = SignalService(database)
    return AppContext(
        settings=Settings(),
        exchange_config=exchange_config,
        database=database,
        gateway=gateway,
        resolver=resolver,
        engine=engine,
        signals=signals,
        analyzer=SignalAnalyzer(gateway, resolver, signals, completion=_model_reply),
        verifier=TokenVerifier(SECURITY),
        cipher=CIPHER,
        service_factory=service_factory,
        alerts=alerts,
    )


def _auth(subject: str = 'uid-1', email: str | None = 'trader@example.com') -> dict:
    return {'Authorization': f"Bearer {issue_token(SECURITY, subject, email=email, name='Trader')}"}


def _serve(context: AppContext, scenario) -> None:
    async def runner() -> None:
        async with TestClient(TestServer(create_app(context))) as client:
            await scenario(client)

    asyncio.run(runner())


async def _login(client, **kwargs) -> dict:
    response = await client.post('/api/auth/login', headers=_auth(**kwargs))
    assert response.status == 200
    return (await response.json())['user']


def test_health(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        response = await client.get('/api/health')
        body = await response.json()
        assert response.status == 200
        assert body['status'] == 'ok'
        assert body['service'] == 'cryptobot-backend'

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_first_login_creates_a_funded_demo_portfolio(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        user = await _login(client)
        assert user['email'] == 'trader@example.com'
        assert user['isDemo'] is True
        assert (await _login(client))['id'] == user['id']

        response = await client.get('/api/portfolio', headers=_auth())
        body = await response.json()
        assert body['portfolio']['availableBalance'] == '10000'
        assert body['holdings'] == []

        profile = await (await client.get('/api/user/profile', headers=_auth())).json()
        assert profile['user']['id'] == user['id']

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_authentication_failures(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        response = await client.get('/api/portfolio')
        assert response.status == 401
        assert await response.json() == {'error': 'No valid authorization token provided', 'kind': 'unauthorized'}

        response = await client.post('/api/auth/login', headers=_auth(subject='uid-2', email=None))
        assert response.status == 401

        response = await client.get('/api/user/profile', headers=_auth(subject='never-logged-in'))
        assert response.status == 404
        assert (await response.json())['error'] == 'User not found'

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_trade_and_history(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        await _login(client)
        response = await client.post(
            '/api/trade',
            headers=_auth(),
            json={'symbol': 'BTCUSD', 'side': 'buy', 'amount': '0.1', 'price': '30000'},
        )
        trade = (await response.json())['trade']
        assert response.status == 200
        assert trade['status'] == 'filled'
        assert trade['price'] == '30000'
        assert trade['amount'] == '0.1'

        history = await (await client.get('/api/trades?limit=10', headers=_auth())).json()
        assert history['pagination'] == {'page': 1, 'limit': 10, 'total': 1, 'totalPages': 1}
        assert history['trades'][0]['id'] == trade['id']

        portfolio = await (await client.get('/api/portfolio', headers=_auth())).json()
        assert portfolio['portfolio']['availableBalance'] == '7000'
        assert portfolio['holdings'][0]['averagePrice'] == '30000'

        refreshed = await (await client.post('/api/portfolio/refresh', headers=_auth())).json()
        assert refreshed['holdings'][0]['currentPrice'] == '50000'

        metrics = await (await client.get('/api/portfolio/metrics', headers=_auth())).json()
        assert metrics['totalValue'] == '12000'

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_risk_settings_and_blocked_trade(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        await _login(client)
        response = await client.put(
            '/api/user/risk-settings', headers=_auth(), json={'enabled': True, 'maxPositionSize': 1000}
        )
        assert (await response.json())['user']['riskSettings'] == {'enabled': True, 'maxPositionSize': '1000'}

        response = await client.post(
            '/api/trade',
            headers=_auth(),
            json={'symbol': 'ETHUSD', 'side': 'buy', 'amount': '1', 'price': '1000.01'},
        )
        assert response.status == 403
        assert await response.json() == {
            'error': 'Trade blocked by risk management',
            'kind': 'risk_blocked',
            'reason': 'Trade value $1000.01 exceeds maximum position size limit of $1000.00',
        }

        response = await client.put('/api/user/risk-settings', headers=_auth(), json={'maxOpenPositions': 0})
        assert response.status == 400
        assert (await response.json())['error'] == 'Max open positions must be an integer of at least 1'

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_request_validation_errors(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        await _login(client)
        response = await client.post('/api/trade', headers=_auth(), data='not json')
        assert response.status == 400
        assert (await response.json())['error'] == 'Request body must be valid JSON'

        response = await client.post('/api/trade', headers=_auth(), json={'symbol': 'BTCUSD', 'side': 'buy'})
        assert response.status == 400
        assert (await response.json())['kind'] == 'invalid_request'

        response = await client.post(
            '/api/trade', headers=_auth(), json={'symbol': 'BTCUSD', 'side': 'buy', 'amount': '1e21', 'price': '1'}
        )
        assert response.status == 400
        assert await response.json() == {
            'error': 'Amount must not exceed 1000000000000000',
            'kind': 'invalid_request',
        }

        response = await client.get('/api/trades?page=abc', headers=_auth())
        assert response.status == 400

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_strategies_list_only_the_callers_own(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        response = await client.get('/api/strategies')
        assert response.status == 401

        user = await _login(client)
        response = await client.get('/api/strategies', headers=_auth())
        assert await response.json() == {'strategies': []}

        other = await _login(client, subject='uid-2', email='other@example.com')
        await asyncio.to_thread(
            database.create_strategy,
            NewStrategy(owner_id=user['id'], name='Mean reversion', symbol='ETHUSD', strategy='rsi',
                        parameters={'period': 14, 'oversold': 30}),
        )
        await asyncio.to_thread(
            database.create_strategy,
            NewStrategy(owner_id=other['id'], name='Grid', symbol='BTCUSD', strategy='grid'),
        )

        response = await client.get('/api/strategies', headers=_auth())
        (strategy,) = (await response.json())['strategies']
        assert response.status == 200
        assert strategy['userId'] == user['id']
        assert strategy['strategy'] == 'rsi'
        assert strategy['parameters'] == {'period': 14, 'oversold': 30}
        assert strategy['isActive'] is False

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_market_endpoints(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        ticker = await (await client.get('/api/market/ticker/btcusd')).json()
        assert ticker['symbol'] == 'BTCUSD'
        assert ticker['price'] == '50000.00'

        response = await client.get('/api/market/ticker/NOPEUSD')
        assert response.status == 400
        assert (await response.json())['kind'] == 'symbol_not_found'

        tickers = await (await client.get('/api/market/tickers')).json()
        assert [item['symbol'] for item in tickers] == ['BTCUSD', 'ETHUSD', 'SOLUSD']

        candles = await (await client.get('/api/market/ohlc/BTCUSD?interval=60')).json()
        assert candles['interval'] == 60
        assert len(candles['data']) == 60

        response = await client.get('/api/market/ohlc/BTCUSD?interval=7')
        assert response.status == 400

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_upstream_outage_maps_to_bad_gateway(database, exchange_service, exchange_client, service_factory) -> None:
    exchange_client.market_error = ccxt.ExchangeNotAvailable('maintenance')

    async def scenario(client) -> None:
        response = await client.get('/api/market/ticker/BTCUSD')
        assert response.status == 502
        assert (await response.json())['kind'] == 'upstream_unavailable'

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_signal_endpoints(database, exchange_service, service_factory) -> None:
    async def scenario(client) -> None:
        await _login(client)
        response = await client.post(
            '/api/ai/signals', headers=_auth(), json={'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 80}
        )
        assert response.status == 201
        signal = (await response.json())['signal']

        listed = await (await client.get('/api/ai/signals?symbol=BTCUSD')).json()
        assert [item['id'] for item in listed['signals']] == [signal['id']]

        response = await client.post(
            f"/api/ai/signals/{signal['id']}/execute", headers=_auth(), json={'amount': '0.01'}
        )
        trade = (await response.json())['trade']
        assert trade['isAiGenerated'] is True
        assert trade['price'] == '50000'
        assert trade['metadata']['signalId'] == signal['id']

        dismissed = await (await client.put(f"/api/ai/signals/{signal['id']}/dismiss", headers=_auth())).json()
        assert dismissed['signal']['isActive'] is False
        listed = await (await client.get('/api/ai/signals?includeInactive=true')).json()
        assert len(listed['signals']) == 1

        analysis = await (await client.post('/api/ai/analyze', headers=_auth(), json={'symbol': 'ETHUSD'})).json()
        assert analysis['signal']['symbol'] == 'ETHUSD'
        assert analysis['analysis']['confidence'] == 70
        assert 'rsi' in analysis['indicators']

        response = await client.post('/api/ai/analyze', headers=_auth(), json={})
        assert response.status == 400

    _serve(_context(database, exchange_service, service_factory), scenario)


def test_credentials_are_validated_and_encrypted(
    database, exchange_service, exchange_client, service_factory
) -> None:
    async def scenario(client) -> None:
        user = await _login(client)

        response = await client.post('/api/settings/credentials', headers=_auth(), json={'apiKey': 'k'})
        assert response.status == 400

        exchange_client.balance_error = ccxt.AuthenticationError('EAPI:Invalid key')
        response = await client.post(
            '/api/settings/credentials', headers=_auth(), json={'apiKey': 'bad', 'apiSecret': 'bad'}
        )
        assert response.status == 400
        assert (await response.json())['error'] == 'Invalid API keys'
        assert database.get_account(user['id']).api_key is None

        exchange_client.balance_error = None
        response = await client.post(
            '/api/settings/credentials', headers=_auth(), json={'apiKey': 'venue-key', 'apiSecret': 'venue-secret'}
        )
        assert await response.json() == {'success': True}

    _serve(_context(database, exchange_service, service_factory), scenario)

    (account,) = [database.get_account_by_external_id('uid-1')]
    assert account.api_key != 'venue-key'
    assert CIPHER.decrypt(account.api_key) == 'venue-key'
    assert CIPHER.decrypt(account.api_secret) == 'venue-secret'
    assert all(service.closed for service in service_factory.created)


def test_mode_switch_and_live_history(database, exchange_service, exchange_client, service_factory) -> None:
    exchange_client.closed_orders = [
        {
            'id': 'K-1',
            'status': 'closed',
            'symbol': 'BTC/USD',
            'side': 'buy',
            'type': 'limit',
            'amount': 0.5,
            'filled': 0.5,
            'price': 40000,
            'average': 40000,
            'timestamp': 1_700_000_000_000,
            'fee': {'cost': 1.2},
        }
    ]

    async def scenario(client) -> None:
        user = await _login(client)
        database.update_account(
            user['id'], api_key=CIPHER.encrypt('venue-key'), api_secret=CIPHER.encrypt('venue-secret')
        )

        response = await client.post('/api/settings/mode', headers=_auth(), json={'isDemo': 'no'})
        assert response.status == 400

        response = await client.post('/api/settings/mode', headers=_auth(), json={'isDemo': False})
        assert await response.json() == {'success': True}

        history = await (await client.get('/api/trades', headers=_auth())).json()
        assert history['pagination']['total'] == 1
        (trade,) = history['trades']
        assert trade['venueOrderId'] == 'K-1'
        assert trade['status'] == 'filled'
        assert trade['symbol'] == 'BTCUSD'
        assert trade['fee'] == '1.2'

    _serve(_context(database, exchange_service, service_factory), scenario)

    account = database.get_account_by_external_id('uid-1')
    assert account.is_demo is False
    assert database.get_portfolio(account.id).is_demo is False


def test_unexpected_errors_become_internal_server_error(
    database, exchange_service, service_factory, monkeypatch
) -> None:
    context = _context(database, exchange_service, service_factory)

    async def broken(account_id: str) -> dict:
        raise RuntimeError('boom')

    monkeypatch.setattr(context.engine, 'portfolio_metrics', broken)

    async def scenario(client) -> None:
        await _login(client)
        response = await client.get('/api/portfolio/metrics', headers=_auth())
        assert response.status == 500
        assert await response.json() == {'error': 'Internal server error', 'kind': 'internal'}

    _serve(context, scenario)


def test_websocket_receives_price_updates(database, exchange_service, service_factory) -> None:
    context = _context(database, exchange_service, service_factory)

    async def scenario(client) -> None:
        socket = await client.ws_connect('/ws')
        for _ in range(100):
            if len(context.hub):
                break
            await asyncio.sleep(0.01)
        await context.hub.publish({'type': 'price_update', 'data': {'BTCUSD': {'price': 50000.0}}})
        message = await socket.receive_json(timeout=2)
        assert message == {'type': 'price_update', 'data': {'BTCUSD': {'price': 50000.0}}}
        await socket.close()

    _serve(context, scenario)
