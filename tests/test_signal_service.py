"""Tests for :mod:`cryptobot.signals`."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cryptobot.data import MarketDataGateway
from cryptobot.database import OrderType, TradeSide
from cryptobot.errors import InvalidRequest, NotFound, SymbolNotFound, UpstreamUnavailable
from cryptobot.exchanges import SymbolResolver
from cryptobot.signals import SIGNAL_TTL, SignalAnalyzer, SignalService, new_signal_from_payload
from cryptobot.signals.analyzer import parse_analysis

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_payload_is_validated_and_normalized() -> None:
    signal = new_signal_from_payload(
        {
            'symbol': ' btcusd ',
            'signal': 'BUY',
            'confidence': 72.6,
            'entryPrice': '30000',
            'targetPrice': 33000,
            'stopLoss': 0,
            'indicators': {'rsi': 41.2},
        },
        now=NOW,
    )

    assert signal.symbol == 'BTCUSD'
    assert signal.signal == 'buy'
    assert signal.confidence == 73
    assert signal.entry_price == Decimal('30000')
    assert signal.target_price == Decimal('33000')
    assert signal.stop_loss is None
    assert signal.expires_at == NOW + SIGNAL_TTL


@pytest.mark.parametrize(
    'payload',
    [
        {'signal': 'buy', 'confidence': 50},
        {'symbol': 'BTCUSD', 'signal': 'moon', 'confidence': 50},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 101},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': True},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 50, 'entryPrice': '-1'},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 50, 'targetPrice': '1e40'},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 50, 'indicators': [1, 2]},
        {'symbol': 'BTCUSD', 'signal': 'buy', 'confidence': 50, 'expiresAt': 'tomorrow'},
    ],
)
def test_invalid_payloads_are_rejected(payload) -> None:
    with pytest.raises(InvalidRequest):
        new_signal_from_payload(payload, now=NOW)


def test_explicit_expiry_is_parsed_as_utc() -> None:
    signal = new_signal_from_payload(
        {'symbol': 'ETHUSD', 'signal': 'sell', 'confidence': 10, 'expiresAt': '2024-05-02T00:00:00Z'},
        now=NOW,
    )

    assert signal.expires_at == datetime(2024, 5, 2, tzinfo=timezone.utc)


def test_signal_lifecycle(database) -> None:
    service = SignalService(database)

    async def scenario():
        record = await service.ingest({'symbol': 'ETHUSD', 'signal': 'sell', 'confidence': 64})
        listed = await service.list_signals('ETHUSD')
        dismissed = await service.dismiss(record.id)
        after = await service.list_signals('ETHUSD')
        everything = await service.list_signals('ETHUSD', include_inactive=True)
        return record, listed, dismissed, after, everything

    record, listed, dismissed, after, everything = asyncio.run(scenario())

    assert [signal.id for signal in listed] == [record.id]
    assert dismissed.is_active is False
    assert after == []
    assert [signal.id for signal in everything] == [record.id]


def test_missing_signal_raises_not_found(database) -> None:
    with pytest.raises(NotFound):
        asyncio.run(SignalService(database).get('does-not-exist'))


def test_signal_converts_to_trade_request(database) -> None:
    service = SignalService(database)

    async def scenario():
        record = await service.ingest(
            {
                'symbol': 'BTCUSD',
                'signal': 'buy',
                'confidence': 80,
                'entryPrice': '30000',
                'targetPrice': '33000',
                'stopLoss': '28500',
            }
        )
        return record, await service.to_trade_request(record.id, '0.01', order_type='limit')

    record, (request, metadata) = asyncio.run(scenario())

    assert request.side is TradeSide.BUY
    assert request.order_type is OrderType.LIMIT
    assert request.price == Decimal('30000')
    assert request.stop_loss == Decimal('28500')
    assert request.take_profit == Decimal('33000')
    assert metadata == {'signalId': record.id, 'confidence': 80}


def test_hold_and_inactive_signals_cannot_be_executed(database) -> None:
    service = SignalService(database)

    async def scenario() -> None:
        hold = await service.ingest({'symbol': 'BTCUSD', 'signal': 'hold', 'confidence': 50})
        with pytest.raises(InvalidRequest, match='Hold signals cannot be executed'):
            await service.to_trade_request(hold.id, '1')

        expired = await service.ingest(
            {
                'symbol': 'BTCUSD',
                'signal': 'buy',
                'confidence': 50,
                'expiresAt': (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat(),
            }
        )
        with pytest.raises(InvalidRequest, match='no longer active'):
            await service.to_trade_request(expired.id, '1')

    asyncio.run(scenario())


def test_parse_analysis_clamps_confidence() -> None:
    analysis = parse_analysis(json.dumps({'signal': 'BUY', 'confidence': 140, 'reasoning': 'breakout'}))

    assert analysis['signal'] == 'buy'
    assert analysis['confidence'] == 100


@pytest.mark.parametrize('content', ['not json', '[1, 2]', '{"signal": "moon"}'])
def test_parse_analysis_rejects_bad_content(content) -> None:
    with pytest.raises(UpstreamUnavailable):
        parse_analysis(content)


def test_analyzer_stores_the_model_recommendation(database, exchange_service) -> None:
    prompts: list[str] = []

    async def completion(system: str, prompt: str) -> str:
        prompts.append(prompt)
        return json.dumps(
            {
                'signal': 'buy',
                'confidence': 77,
                'reasoning': 'RSI recovering from oversold',
                'entryPrice': 50000,
                'targetPrice': 56000,
                'stopLoss': 47000,
                'riskReward': 2,
            }
        )

    analyzer = SignalAnalyzer(
        MarketDataGateway(exchange_service),
        SymbolResolver(),
        SignalService(database),
        completion=completion,
    )

    result = asyncio.run(analyzer.analyze('btcusd', '60'))

    assert result.signal.symbol == 'BTCUSD'
    assert result.signal.signal == 'buy'
    assert result.signal.confidence == 77
    assert result.signal.target_price == Decimal('56000')
    assert result.signal.indicators['currentPrice'] == 50000.0
    assert 'Analyze BTCUSD cryptocurrency' in prompts[0]
    assert database.get_signal(result.signal.id) is not None


def test_analyzer_rejects_unknown_symbols(database, exchange_service) -> None:
    async def completion(system: str, prompt: str) -> str:
        raise AssertionError('model must not be called')

    analyzer = SignalAnalyzer(
        MarketDataGateway(exchange_service), SymbolResolver(), SignalService(database), completion=completion
    )

    with pytest.raises(SymbolNotFound):
        asyncio.run(analyzer.analyze('NOPEUSD'))


def test_analyzer_without_api_key_is_unavailable(database, exchange_service) -> None:
    analyzer = SignalAnalyzer(MarketDataGateway(exchange_service), SymbolResolver(), SignalService(database))

    with pytest.raises(UpstreamUnavailable, match='OPENAI_API_KEY'):
        asyncio.run(analyzer.analyze('BTCUSD'))
