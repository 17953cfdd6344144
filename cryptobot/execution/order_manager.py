"""Trade requests and the demo/live fill strategies."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple

import ccxt
from sqlalchemy.exc import SQLAlchemyError

from ..config import ExchangeConfig
from ..database import DatabaseManager
from ..database.models import (
    MAX_ORDER_NUMBER,
    ZERO,
    AccountRecord,
    HoldingRecord,
    NewTrade,
    OrderType,
    PortfolioRecord,
    TradeRecord,
    TradeSide,
    TradeStatus,
    quantize,
)
from ..errors import (
    CredentialsMissing,
    InvalidRequest,
    PriceUnavailable,
    ReconciliationRequired,
    SymbolNotFound,
    VenueRejected,
    VenueTimeout,
)
from ..exchanges import ServiceFactory, SymbolResolver, close_quietly
from ..monitoring import AlertManager
from ..risk import PortfolioManager
from ..security import CredentialCipher

logger = logging.getLogger(__name__)


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _check_bound(number: Decimal, label: str) -> Decimal:
    if number > MAX_ORDER_NUMBER:
        raise InvalidRequest(f'{label} must not exceed {MAX_ORDER_NUMBER:f}')
    return number


def _optional_positive(payload: Mapping[str, Any], key: str, label: str) -> Optional[Decimal]:
    raw = payload.get(key)
    if raw is None or raw == '':
        return None
    number = _parse_decimal(raw)
    if number is None or number <= 0:
        raise InvalidRequest(f'{label} must be a positive number')
    return quantize(_check_bound(number, label))


@dataclass(frozen=True)
class TradeRequest:
    """A validated trade request; decimals are parsed once, here."""

    symbol: str
    side: TradeSide
    order_type: OrderType
    amount: Decimal
    price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    fee: Decimal = ZERO

    @classmethod
    def from_payload(cls, payload: Any) -> 'TradeRequest':
        if not isinstance(payload, Mapping):
            raise InvalidRequest('Trade request must be a JSON object')

        symbol = payload.get('symbol')
        if not isinstance(symbol, str) or not symbol.strip():
            raise InvalidRequest('Symbol is required')
        try:
            side = TradeSide(payload.get('side'))
        except ValueError:
            raise InvalidRequest('Side must be one of: buy, sell') from None
        try:
            order_type = OrderType(payload.get('type', OrderType.MARKET.value))
        except ValueError:
            raise InvalidRequest('Order type must be one of: market, limit, stop-loss') from None

        amount = _parse_decimal(payload.get('amount'))
        if amount is None or amount <= 0 or quantize(_check_bound(amount, 'Amount')) <= 0:
            raise InvalidRequest('Amount must be a positive number')

        raw_price = payload.get('price')
        price: Optional[Decimal] = None
        if order_type is OrderType.MARKET:
            # A market order with no price (or a zero price) is priced from the venue.
            if raw_price not in (None, ''):
                price = _parse_decimal(raw_price)
                if price is None or price < 0:
                    raise PriceUnavailable('Invalid execution price. Cannot process trade without a valid price.')
                price = quantize(_check_bound(price, 'Price')) if price > 0 else None
        else:
            price = _parse_decimal(raw_price)
            if price is None or price <= 0:
                raise InvalidRequest(f'A positive price is required for {order_type.value} orders')
            price = quantize(_check_bound(price, 'Price'))

        fee = ZERO
        if payload.get('fee') not in (None, ''):
            parsed_fee = _parse_decimal(payload.get('fee'))
            if parsed_fee is None or parsed_fee < 0:
                raise InvalidRequest('Fee must be a non-negative number')
            fee = quantize(_check_bound(parsed_fee, 'Fee'))

        return cls(
            symbol=symbol.strip().upper(),
            side=side,
            order_type=order_type,
            amount=quantize(amount),
            price=price,
            stop_loss=_optional_positive(payload, 'stopLoss', 'Stop loss'),
            take_profit=_optional_positive(payload, 'takeProfit', 'Take profit'),
            fee=fee,
        )

    def order_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if self.stop_loss is not None:
            metadata['stopLoss'] = str(self.stop_loss)
        if self.take_profit is not None:
            metadata['takeProfit'] = str(self.take_profit)
        return metadata


@dataclass(frozen=True)
class FillContext:
    """Everything a fill strategy needs, read under the portfolio lock."""

    account: AccountRecord
    portfolio: PortfolioRecord
    holdings: Sequence[HoldingRecord]
    request: TradeRequest
    price: Decimal
    ai_generated: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def holding_for(self, symbol: str) -> Optional[HoldingRecord]:
        return next((holding for holding in self.holdings if holding.symbol == symbol), None)

    def new_trade(self, status: TradeStatus, venue_order_id: Optional[str], **metadata: Any) -> NewTrade:
        details = self.request.order_metadata()
        details.update(self.metadata)
        details.update(metadata)
        return NewTrade(
            owner_id=self.account.id,
            portfolio_id=self.portfolio.id,
            symbol=self.request.symbol,
            side=self.request.side.value,
            order_type=self.request.order_type.value,
            amount=self.request.amount,
            price=self.price,
            status=status.value,
            fee=self.request.fee,
            is_demo=self.account.is_demo,
            is_ai_generated=self.ai_generated,
            venue_order_id=venue_order_id,
            metadata=details,
        )


class FillStrategy(Protocol):
    async def fill(self, context: FillContext) -> TradeRecord:
        ...


class DemoFillStrategy:
    """Simulated fills applied to the local ledger in one transaction."""

    def __init__(
        self,
        database: DatabaseManager,
        portfolio_manager: PortfolioManager,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = database
        self._portfolio = portfolio_manager
        self._clock = clock
        self._sequence = itertools.count(1)

    def next_order_id(self) -> str:
        return f'demo_{int(self._clock() * 1000)}_{next(self._sequence)}'

    async def fill(self, context: FillContext) -> TradeRecord:
        request = context.request
        plan = self._portfolio.plan_demo_fill(
            context.portfolio,
            context.holding_for(request.symbol),
            request.side.value,
            request.symbol,
            request.amount,
            context.price,
        )
        trade = context.new_trade(TradeStatus.FILLED, self.next_order_id(), demo=True)
        record = await asyncio.to_thread(
            self._db.apply_demo_fill,
            context.portfolio.id,
            plan.balances,
            plan.holding_change,
            trade,
        )
        logger.debug(
            'Demo fill %s %s %s @ %s -> available=%s trading=%s',
            request.side.value,
            request.amount,
            request.symbol,
            context.price,
            plan.balances.available_balance,
            plan.balances.trading_balance,
        )
        return record


class LiveFillStrategy:
    """Forwards orders to the venue; accepted orders are recorded as pending.

    The local ledger is not touched. The venue is authoritative until the
    order is reconciled.
    """

    def __init__(
        self,
        database: DatabaseManager,
        resolver: SymbolResolver,
        cipher: CredentialCipher,
        service_factory: ServiceFactory,
        config: ExchangeConfig,
        alerts: Optional[AlertManager] = None,
    ) -> None:
        self._db = database
        self._resolver = resolver
        self._cipher = cipher
        self._service_factory = service_factory
        self._config = config
        self._alerts = alerts or AlertManager()

    def _credentials(self, account: AccountRecord) -> Tuple[str, str]:
        if not account.has_credentials:
            raise CredentialsMissing('Exchange API keys not configured')
        api_key = self._cipher.decrypt(account.api_key)
        api_secret = self._cipher.decrypt(account.api_secret)
        if not api_key or not api_secret:
            raise CredentialsMissing('Exchange API keys not configured')
        return api_key, api_secret

    @staticmethod
    def order_arguments(request: TradeRequest, price: Decimal) -> Tuple[str, Optional[float], Dict[str, Any]]:
        """Map an order type onto ccxt ``create_order`` type, price and params."""
        if request.order_type is OrderType.LIMIT:
            return 'limit', float(price), {}
        if request.order_type is OrderType.STOP_LOSS:
            return 'market', None, {'stopLossPrice': float(price)}
        return 'market', None, {}

    async def _submit(self, service: Any, pair: str, request: TradeRequest, price: Decimal) -> Dict[str, Any]:
        client = await service.client()
        order_type, order_price, params = self.order_arguments(request, price)
        try:
            return await asyncio.wait_for(
                client.create_order(pair, order_type, request.side.value, float(request.amount), order_price, params),
                timeout=self._config.order_timeout,
            )
        except (asyncio.TimeoutError, ccxt.NetworkError) as error:
            self._alerts.warning(
                'Venue did not confirm an order; it may still exist on the exchange',
                pair=pair,
                side=request.side.value,
                amount=str(request.amount),
            )
            raise VenueTimeout(
                f'Exchange did not confirm the order within {self._config.order_timeout:g}s',
                context={'symbol': request.symbol},
            ) from error
        except ccxt.ExchangeError as error:
            raise VenueRejected(str(error) or 'Order rejected by exchange') from error

    async def fill(self, context: FillContext) -> TradeRecord:
        request = context.request
        api_key, api_secret = self._credentials(context.account)
        pair = await self._resolver.resolve_trading_symbol(request.symbol)
        if pair is None:
            raise SymbolNotFound(request.symbol)

        service = self._service_factory(api_key, api_secret)
        try:
            order = await self._submit(service, pair, request, context.price)
        finally:
            await close_quietly(service)

        venue_order_id = str(order.get('id') or '')
        if not venue_order_id:
            raise VenueRejected('Exchange did not return an order id')
        logger.info('Venue accepted %s %s %s as order %s', request.side.value, request.amount, pair, venue_order_id)

        trade = context.new_trade(
            TradeStatus.PENDING,
            venue_order_id,
            venue=self._config.exchange_id,
            pair=pair,
            venueStatus=order.get('status'),
        )
        try:
            return await asyncio.to_thread(self._db.create_trade, trade)
        except SQLAlchemyError as error:
            self._alerts.critical(
                'Venue order accepted but the trade could not be recorded; reconciliation required',
                venueOrderId=venue_order_id,
                accountId=context.account.id,
                symbol=request.symbol,
                side=request.side.value,
                amount=str(request.amount),
            )
            raise ReconciliationRequired(venue_order_id) from error


__all__ = [
    'DemoFillStrategy',
    'FillContext',
    'FillStrategy',
    'LiveFillStrategy',
    'TradeRequest',
]
