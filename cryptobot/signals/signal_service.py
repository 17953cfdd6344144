"""Advisory signal ingestion and conversion into trade requests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..database import DatabaseManager, NewSignal, SignalAction, SignalRecord, utcnow
from ..database.models import MAX_ORDER_NUMBER
from ..errors import InvalidRequest, NotFound
from ..execution import TradeRequest

logger = logging.getLogger(__name__)

SIGNAL_TTL = timedelta(hours=24)


def _optional_price(payload: Mapping[str, Any], key: str) -> Optional[Decimal]:
    raw = payload.get(key)
    if raw is None or raw == '' or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f'{key} must be a number') from None
    if not value.is_finite() or value < 0:
        raise InvalidRequest(f'{key} must be a non-negative number')
    if value > MAX_ORDER_NUMBER:
        raise InvalidRequest(f'{key} must not exceed {MAX_ORDER_NUMBER:f}')
    # Zero means "not provided" for advisory prices.
    return value if value > 0 else None


def _confidence(raw: Any) -> int:
    if isinstance(raw, bool) or raw is None:
        raise InvalidRequest('confidence must be a number between 0 and 100')
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidRequest('confidence must be a number between 0 and 100') from None
    if not 0 <= value <= 100:
        raise InvalidRequest('confidence must be a number between 0 and 100')
    return int(round(value))


def _expiry(payload: Mapping[str, Any], now: datetime) -> datetime:
    raw = payload.get('expiresAt')
    if not raw:
        return now + SIGNAL_TTL
    try:
        expires_at = datetime.fromisoformat(str(raw).replace('Z', '+00:00'))
    except ValueError:
        raise InvalidRequest('expiresAt must be an ISO-8601 timestamp') from None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


def new_signal_from_payload(payload: Any, *, now: Optional[datetime] = None) -> NewSignal:
    if not isinstance(payload, Mapping):
        raise InvalidRequest('Signal must be a JSON object')
    symbol = payload.get('symbol')
    if not isinstance(symbol, str) or not symbol.strip():
        raise InvalidRequest('symbol is required')
    try:
        action = SignalAction(str(payload.get('signal', '')).lower())
    except ValueError:
        raise InvalidRequest('signal must be one of: buy, sell, hold') from None

    indicators = payload.get('indicators') or {}
    if not isinstance(indicators, Mapping):
        raise InvalidRequest('indicators must be an object')
    reasoning = payload.get('reasoning')
    return NewSignal(
        symbol=symbol.strip().upper(),
        signal=action.value,
        confidence=_confidence(payload.get('confidence')),
        entry_price=_optional_price(payload, 'entryPrice'),
        target_price=_optional_price(payload, 'targetPrice'),
        stop_loss=_optional_price(payload, 'stopLoss'),
        risk_reward=_optional_price(payload, 'riskReward'),
        reasoning=str(reasoning) if reasoning is not None else None,
        indicators=dict(indicators),
        expires_at=_expiry(payload, now or utcnow()),
    )


class SignalService:
    """Stores advisory buy/sell/hold records and hands them to the trade pipeline.

    Signals never touch the ledger; acting on one produces an ordinary
    :class:`TradeRequest` that goes through the execution engine.
    """

    def __init__(self, database: DatabaseManager) -> None:
        self._db = database

    async def ingest(self, payload: Any) -> SignalRecord:
        signal = new_signal_from_payload(payload)
        record = await asyncio.to_thread(self._db.create_signal, signal)
        logger.info('Stored %s signal for %s (confidence %d)', record.signal, record.symbol, record.confidence)
        return record

    async def list_signals(
        self,
        symbol: Optional[str] = None,
        *,
        include_inactive: bool = False,
        limit: Optional[int] = None,
    ) -> List[SignalRecord]:
        if include_inactive:
            return await asyncio.to_thread(self._db.get_signals, symbol=symbol, include_inactive=True, limit=limit)
        return await asyncio.to_thread(self._db.get_active_signals, symbol, limit=limit)

    async def get(self, signal_id: str) -> SignalRecord:
        record = await asyncio.to_thread(self._db.get_signal, signal_id)
        if record is None:
            raise NotFound(f'AI signal {signal_id} not found')
        return record

    async def dismiss(self, signal_id: str) -> SignalRecord:
        record = await asyncio.to_thread(self._db.update_signal, signal_id, is_active=False)
        logger.info('Dismissed signal %s', signal_id)
        return record

    async def to_trade_request(
        self,
        signal_id: str,
        amount: Any,
        *,
        order_type: str = 'market',
        price: Any = None,
    ) -> Tuple[TradeRequest, Dict[str, Any]]:
        """Build the trade request for acting on a signal, plus trade metadata."""
        record = await self.get(signal_id)
        if not record.is_active or record.is_expired(utcnow()):
            raise InvalidRequest('Signal is no longer active')
        if record.signal == SignalAction.HOLD.value:
            raise InvalidRequest('Hold signals cannot be executed')

        if price is None and order_type != 'market' and record.entry_price is not None:
            price = str(record.entry_price)
        payload: Dict[str, Any] = {
            'symbol': record.symbol,
            'side': record.signal,
            'type': order_type,
            'amount': amount,
            'price': price,
        }
        if record.stop_loss is not None:
            payload['stopLoss'] = str(record.stop_loss)
        if record.target_price is not None:
            payload['takeProfit'] = str(record.target_price)
        metadata = {'signalId': record.id, 'confidence': record.confidence}
        return TradeRequest.from_payload(payload), metadata


__all__ = ['SIGNAL_TTL', 'SignalService', 'new_signal_from_payload']
