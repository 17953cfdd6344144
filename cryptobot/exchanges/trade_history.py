"""Closed-order history fetched from the venue for live accounts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import ccxt

from ..database.models import ZERO, TradeRecord, TradeStatus
from .symbols import SymbolResolver

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    'closed': TradeStatus.FILLED,
    'canceled': TradeStatus.CANCELLED,
    'cancelled': TradeStatus.CANCELLED,
    'expired': TradeStatus.CANCELLED,
    'rejected': TradeStatus.FAILED,
    'open': TradeStatus.PENDING,
}


def _decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


async def order_to_trade(order: Dict[str, Any], owner_id: str, resolver: SymbolResolver) -> TradeRecord:
    """Map a ccxt order structure onto a (non-persisted) trade record."""
    status = _STATUS_MAP.get(str(order.get('status') or '').lower(), TradeStatus.PENDING)
    created_at = _timestamp(order.get('timestamp')) or datetime.now(timezone.utc)
    price = _decimal(order.get('average') or order.get('price'))
    fee = _decimal((order.get('fee') or {}).get('cost'))
    order_type = str(order.get('type') or 'market')
    if order_type not in {'market', 'limit'}:
        order_type = 'stop-loss' if 'stop' in order_type else 'market'
    pair = str(order.get('symbol') or '')
    return TradeRecord(
        id=f"venue_{order.get('id')}",
        owner_id=owner_id,
        portfolio_id='',
        symbol=await resolver.display_symbol(pair) if pair else '',
        side=str(order.get('side') or ''),
        order_type=order_type,
        amount=_decimal(order.get('filled') or order.get('amount')),
        price=price,
        fee=fee,
        status=status.value,
        is_demo=False,
        is_ai_generated=False,
        venue_order_id=str(order.get('id')),
        metadata={'source': 'venue', 'pair': pair},
        created_at=created_at,
        filled_at=_timestamp(order.get('lastTradeTimestamp')) if status is TradeStatus.FILLED else None,
    )


async def fetch_venue_trades(service: Any, owner_id: str, resolver: SymbolResolver) -> List[TradeRecord]:
    """Closed orders from the venue; failures are logged and yield no trades."""
    try:
        client = await service.client()
        orders = await client.fetch_closed_orders()
    except (ccxt.BaseError, OSError) as error:
        logger.error('Error fetching venue trade history: %s', error)
        return []
    trades = []
    for order in orders or []:
        if order.get('id') is None:
            continue
        trades.append(await order_to_trade(order, owner_id, resolver))
    return trades


__all__ = ['fetch_venue_trades', 'order_to_trade']
