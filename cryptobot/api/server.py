"""HTTP and websocket endpoints for the dashboard."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import ccxt
from aiohttp import WSMsgType, web

from ..database import AccountRecord, HoldingRecord, PortfolioRecord, TradeQuery, TradeRecord
from ..errors import (
    CredentialsMissing,
    InvalidRequest,
    NotFound,
    SymbolNotFound,
    TradingError,
    Unauthorized,
    UpstreamUnavailable,
)
from ..exchanges import close_quietly, fetch_venue_trades
from ..risk import validate_risk_settings_update
from .context import AppContext

logger = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey('context', AppContext)
SERVICE_NAME = 'cryptobot-backend'

routes = web.RouteTableDef()


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except TradingError as error:
        if error.http_status >= 500:
            logger.error('%s %s failed: %s', request.method, request.path, error.message)
        else:
            logger.debug('%s %s rejected: %s', request.method, request.path, error.message)
        return web.json_response(error.to_dict(), status=error.http_status)
    except Exception:
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        return web.json_response({'error': 'Internal server error', 'kind': 'internal'}, status=500)


def _context(request: web.Request) -> AppContext:
    return request.app[CONTEXT_KEY]


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise InvalidRequest('Request body must be valid JSON') from None
    if not isinstance(payload, dict):
        raise InvalidRequest('Request body must be a JSON object')
    return payload


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequest(f'{name} must be an integer') from None


async def _current_account(request: web.Request) -> AccountRecord:
    context = _context(request)
    identity = context.verifier.verify_header(request.headers.get('Authorization'))
    account = await asyncio.to_thread(context.database.get_account_by_external_id, identity.subject)
    if account is None:
        raise NotFound('User not found')
    return account


def _portfolio_payload(portfolio: Optional[PortfolioRecord], holdings: List[HoldingRecord]) -> Dict[str, Any]:
    return {
        'portfolio': portfolio.to_dict() if portfolio is not None else None,
        'holdings': [holding.to_dict() for holding in holdings],
    }


# Health and accounts


@routes.get('/api/health')
async def health(request: web.Request) -> web.Response:
    return web.json_response(
        {
            'status': 'ok',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'service': SERVICE_NAME,
        }
    )


@routes.post('/api/auth/login')
async def login(request: web.Request) -> web.Response:
    """Verify the identity token and create the account on first login."""
    context = _context(request)
    identity = context.verifier.verify_header(request.headers.get('Authorization'))
    account = await asyncio.to_thread(context.database.get_account_by_external_id, identity.subject)
    if account is None:
        if not identity.email:
            raise Unauthorized('Token does not carry an email address')
        account, portfolio = await asyncio.to_thread(
            context.database.create_account_with_portfolio,
            identity.subject,
            identity.email,
            starting_balance=context.settings.starting_demo_balance,
            display_name=identity.name,
            photo_url=identity.picture,
            is_demo=True,
        )
        logger.info('Created account %s with demo portfolio %s', account.id, portfolio.id)
    return web.json_response({'user': account.public_dict()})


@routes.get('/api/user/profile')
async def profile(request: web.Request) -> web.Response:
    account = await _current_account(request)
    return web.json_response({'user': account.public_dict()})


@routes.put('/api/user/risk-settings')
async def update_risk_settings(request: web.Request) -> web.Response:
    account = await _current_account(request)
    settings = validate_risk_settings_update(await _json_body(request))
    updated = await asyncio.to_thread(_context(request).database.update_account, account.id, risk_settings=settings)
    logger.info('Updated risk settings for account %s: %s', account.id, settings)
    return web.json_response({'user': updated.public_dict()})


# Portfolio


@routes.get('/api/portfolio')
async def portfolio(request: web.Request) -> web.Response:
    context = _context(request)
    account = await _current_account(request)
    record = await asyncio.to_thread(context.database.get_portfolio, account.id)
    holdings = await asyncio.to_thread(context.database.get_holdings, record.id) if record else []
    return web.json_response(_portfolio_payload(record, holdings))


@routes.get('/api/portfolio/metrics')
async def portfolio_metrics(request: web.Request) -> web.Response:
    account = await _current_account(request)
    metrics = await _context(request).engine.portfolio_metrics(account.id)
    return web.json_response(metrics)


@routes.post('/api/portfolio/refresh')
async def refresh_portfolio(request: web.Request) -> web.Response:
    account = await _current_account(request)
    record, holdings = await _context(request).engine.refresh_valuation(account.id)
    return web.json_response(_portfolio_payload(record, holdings))


# Market data


@routes.get('/api/market/ticker/{symbol}')
async def ticker(request: web.Request) -> web.Response:
    context = _context(request)
    symbol = request.match_info['symbol'].upper()
    pair = await context.resolver.resolve_trading_symbol(symbol)
    if pair is None:
        raise SymbolNotFound(symbol)
    snapshot = await context.gateway.get_current_price(pair)
    return web.json_response(snapshot.to_ticker(await context.resolver.display_symbol(pair)))


@routes.get('/api/market/tickers')
async def tickers(request: web.Request) -> web.Response:
    context = _context(request)
    pairs = await context.resolver.preferred_symbols(context.settings.supported_symbols)
    if not pairs:
        raise UpstreamUnavailable('No supported trading pairs available')
    snapshots = await context.gateway.get_tickers(pairs)
    payload = []
    for pair in pairs:
        snapshot = snapshots.get(pair)
        if snapshot is not None:
            payload.append(snapshot.to_ticker(await context.resolver.display_symbol(pair)))
    return web.json_response(payload)


@routes.get('/api/market/ohlc/{symbol}')
async def ohlc(request: web.Request) -> web.Response:
    context = _context(request)
    symbol = request.match_info['symbol'].upper()
    interval = request.query.get('interval', '60')
    pair = await context.resolver.resolve_trading_symbol(symbol)
    if pair is None:
        raise SymbolNotFound(symbol)
    candles = await context.gateway.get_candles(pair, interval)
    return web.json_response(
        {
            'symbol': symbol,
            'interval': int(interval) if interval.isdigit() else interval,
            'data': [candle.to_dict() for candle in candles],
        }
    )


# Trading


@routes.post('/api/trade')
async def place_trade(request: web.Request) -> web.Response:
    account = await _current_account(request)
    trade = await _context(request).engine.execute(account.id, await _json_body(request))
    return web.json_response({'trade': trade.to_dict()})


async def _venue_history(context: AppContext, account: AccountRecord) -> List[TradeRecord]:
    if account.is_demo or not account.has_credentials:
        return []
    try:
        api_key = context.cipher.decrypt(account.api_key)
        api_secret = context.cipher.decrypt(account.api_secret)
    except TradingError as error:
        logger.warning('Skipping venue history for account %s: %s', account.id, error.message)
        return []
    service = context.service_factory(api_key, api_secret)
    try:
        return await fetch_venue_trades(service, account.id, context.resolver)
    finally:
        await close_quietly(service)


@routes.get('/api/trades')
async def trades(request: web.Request) -> web.Response:
    context = _context(request)
    account = await _current_account(request)
    query = TradeQuery(
        page=_int_param(request, 'page', 1),
        limit=_int_param(request, 'limit', 50),
        symbol=request.query.get('symbol') or None,
        side=request.query.get('side') or None,
        status=request.query.get('status') or None,
        sort_by=request.query.get('sortBy', 'createdAt'),
        sort_order=request.query.get('sortOrder', 'desc'),
    )
    venue_trades = await _venue_history(context, account)
    page, total = await asyncio.to_thread(
        context.database.query_trades,
        account.id,
        query,
        extra_trades=venue_trades,
    )
    return web.json_response(
        {
            'trades': [trade.to_dict() for trade in page],
            'pagination': {
                'page': query.page,
                'limit': query.limit,
                'total': total,
                'totalPages': (total + query.limit - 1) // query.limit,
            },
        }
    )


@routes.get('/api/strategies')
async def strategies(request: web.Request) -> web.Response:
    context = _context(request)
    account = await _current_account(request)
    records = await asyncio.to_thread(context.database.get_strategies, account.id)
    return web.json_response({'strategies': [record.to_dict() for record in records]})


# Signals


@routes.get('/api/ai/signals')
async def list_signals(request: web.Request) -> web.Response:
    signals = await _context(request).signals.list_signals(
        request.query.get('symbol') or None,
        include_inactive=request.query.get('includeInactive') == 'true',
        limit=_int_param(request, 'limit', 0) or None,
    )
    return web.json_response({'signals': [signal.to_dict() for signal in signals]})


@routes.post('/api/ai/signals')
async def ingest_signal(request: web.Request) -> web.Response:
    await _current_account(request)
    record = await _context(request).signals.ingest(await _json_body(request))
    return web.json_response({'signal': record.to_dict()}, status=201)


@routes.put('/api/ai/signals/{signal_id}/dismiss')
async def dismiss_signal(request: web.Request) -> web.Response:
    await _current_account(request)
    record = await _context(request).signals.dismiss(request.match_info['signal_id'])
    return web.json_response({'signal': record.to_dict()})


@routes.post('/api/ai/signals/{signal_id}/execute')
async def execute_signal(request: web.Request) -> web.Response:
    """Act on an advisory signal; the trade takes the normal risk-checked path."""
    context = _context(request)
    account = await _current_account(request)
    body = await _json_body(request)
    trade_request, metadata = await context.signals.to_trade_request(
        request.match_info['signal_id'],
        body.get('amount'),
        order_type=body.get('type') or 'market',
        price=body.get('price'),
    )
    trade = await context.engine.execute(account.id, trade_request, ai_generated=True, metadata=metadata)
    return web.json_response({'trade': trade.to_dict()})


@routes.post('/api/ai/analyze')
async def analyze(request: web.Request) -> web.Response:
    await _current_account(request)
    body = await _json_body(request)
    symbol = body.get('symbol')
    if not isinstance(symbol, str) or not symbol.strip():
        raise InvalidRequest('Symbol is required')
    result = await _context(request).analyzer.analyze(symbol, body.get('timeframe') or '60')
    return web.json_response(
        {
            'signal': result.signal.to_dict(),
            'analysis': result.analysis,
            'indicators': result.indicators,
        }
    )


# Settings


@routes.post('/api/settings/credentials')
async def store_credentials(request: web.Request) -> web.Response:
    """Validate exchange API keys against the venue, then store them encrypted."""
    context = _context(request)
    account = await _current_account(request)
    body = await _json_body(request)
    api_key = body.get('apiKey')
    api_secret = body.get('apiSecret')
    if not isinstance(api_key, str) or not api_key or not isinstance(api_secret, str) or not api_secret:
        raise InvalidRequest('API key and secret are required')
    if not context.cipher.configured:
        raise CredentialsMissing('DATA_ENCRYPTION_KEY is required to encrypt exchange credentials')

    service = context.service_factory(api_key, api_secret)
    try:
        client = await service.client()
        await client.fetch_balance()
    except ccxt.NetworkError as error:
        raise UpstreamUnavailable(f'Could not reach the exchange to validate API keys: {error}') from error
    except ccxt.BaseError as error:
        logger.info('API key validation failed for account %s: %s', account.id, error)
        raise InvalidRequest('Invalid API keys') from error
    finally:
        await close_quietly(service)

    await asyncio.to_thread(
        context.database.update_account,
        account.id,
        api_key=context.cipher.encrypt(api_key),
        api_secret=context.cipher.encrypt(api_secret),
    )
    logger.info('Stored exchange credentials for account %s', account.id)
    return web.json_response({'success': True})


@routes.post('/api/settings/mode')
async def trading_mode(request: web.Request) -> web.Response:
    context = _context(request)
    account = await _current_account(request)
    is_demo = (await _json_body(request)).get('isDemo')
    if not isinstance(is_demo, bool):
        raise InvalidRequest('isDemo must be a boolean')
    await asyncio.to_thread(context.database.update_account, account.id, is_demo=is_demo)
    record = await asyncio.to_thread(context.database.get_portfolio, account.id)
    if record is not None:
        await asyncio.to_thread(context.database.update_portfolio, record.id, is_demo=is_demo)
    logger.info('Account %s switched to %s trading', account.id, 'demo' if is_demo else 'live')
    return web.json_response({'success': True})


# Price stream


@routes.get('/ws')
async def price_stream(request: web.Request) -> web.WebSocketResponse:
    hub = _context(request).hub
    socket = web.WebSocketResponse(heartbeat=30.0)
    await socket.prepare(request)
    hub.add(socket)
    try:
        async for message in socket:
            if message.type == WSMsgType.ERROR:
                logger.warning('Websocket closed with exception %s', socket.exception())
    finally:
        hub.discard(socket)
    return socket


async def _lifecycle(app: web.Application) -> AsyncIterator[None]:
    context = app[CONTEXT_KEY]
    if context.broadcaster is not None:
        context.broadcaster.start()
    yield
    if context.broadcaster is not None:
        await context.broadcaster.stop()
    await context.close()


def create_app(context: AppContext) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[CONTEXT_KEY] = context
    app.add_routes(routes)
    app.cleanup_ctx.append(_lifecycle)
    return app


__all__ = ['CONTEXT_KEY', 'create_app', 'error_middleware']
