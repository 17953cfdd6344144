"""Coordinates price resolution, risk checks, and ledger or venue fills."""

from __future__ import annotations

import asyncio
import logging
import weakref
from decimal import Decimal, localcontext
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from ..data import MarketDataGateway
from ..database import DatabaseManager
from ..database.models import (
    MONEY_CONTEXT,
    AccountRecord,
    HoldingRecord,
    OrderType,
    PortfolioRecord,
    TradeRecord,
    quantize,
)
from ..errors import NotFound, PriceUnavailable, RiskBlocked, SymbolNotFound, UpstreamUnavailable
from ..exchanges import SymbolResolver
from ..risk import PortfolioManager, RiskEvaluator, RiskSettings, start_of_utc_day
from .order_manager import FillContext, FillStrategy, TradeRequest

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """The only component that turns trade requests into ledger changes.

    Each request runs ``Received -> PriceResolved -> RiskChecked ->
    DemoFilled | VenueSubmitted -> Persisted``. Any failure aborts with a typed
    error and no partial ledger mutation. Risk evaluation and the fill for a
    portfolio are serialized by a per-portfolio lock, so concurrent requests
    always see each other's committed effects.
    """

    def __init__(
        self,
        database: DatabaseManager,
        gateway: MarketDataGateway,
        resolver: SymbolResolver,
        risk_evaluator: RiskEvaluator,
        demo_fill: FillStrategy,
        live_fill: FillStrategy,
        portfolio_manager: Optional[PortfolioManager] = None,
    ) -> None:
        self._db = database
        self._gateway = gateway
        self._resolver = resolver
        self._risk = risk_evaluator
        self._demo = demo_fill
        self._live = live_fill
        self._portfolio = portfolio_manager or PortfolioManager()
        # Entries vanish once no request holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, portfolio_id: str) -> asyncio.Lock:
        lock = self._locks.get(portfolio_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[portfolio_id] = lock
        return lock

    async def _load_account(self, account_id: str) -> Tuple[AccountRecord, PortfolioRecord]:
        account = await asyncio.to_thread(self._db.get_account, account_id)
        if account is None:
            raise NotFound('User not found')
        portfolio = await asyncio.to_thread(self._db.get_portfolio, account.id)
        if portfolio is None:
            raise NotFound('Portfolio not found')
        return account, portfolio

    async def resolve_price(self, request: TradeRequest) -> Decimal:
        if request.price is not None and request.price > 0:
            return request.price
        if request.order_type is not OrderType.MARKET:
            raise PriceUnavailable('Invalid execution price. Cannot process trade without a valid price.')
        pair = await self._resolver.resolve_trading_symbol(request.symbol)
        if pair is None:
            raise SymbolNotFound(request.symbol)
        snapshot = await self._gateway.get_current_price(pair)
        if snapshot.price <= 0:
            raise PriceUnavailable('Invalid execution price. Cannot process trade without a valid price.')
        return quantize(snapshot.price)

    async def execute(
        self,
        account_id: str,
        request: Union[TradeRequest, Mapping[str, Any]],
        *,
        ai_generated: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TradeRecord:
        if not isinstance(request, TradeRequest):
            request = TradeRequest.from_payload(request)
        account, portfolio = await self._load_account(account_id)
        price = await self.resolve_price(request)
        with localcontext(MONEY_CONTEXT):
            trade_value = request.amount * price

        async with self._lock_for(portfolio.id):
            # Re-read under the lock: another request may have filled meanwhile.
            portfolio = await asyncio.to_thread(self._db.get_portfolio_by_id, portfolio.id)
            if portfolio is None:
                raise NotFound('Portfolio not found')
            holdings = await asyncio.to_thread(self._db.get_holdings, portfolio.id)
            todays_trades = await asyncio.to_thread(self._db.get_trades, account.id, since=start_of_utc_day())
            decision = self._risk.evaluate(
                account.id,
                portfolio.id,
                trade_value,
                request.side.value,
                request.symbol,
                RiskSettings.from_dict(account.risk_settings),
                holdings,
                todays_trades,
            )
            if not decision.allowed:
                logger.info('Trade blocked for account %s: %s', account.id, decision.reason)
                raise RiskBlocked(decision.reason or 'Risk limits exceeded')

            strategy = self._demo if account.is_demo else self._live
            context = FillContext(
                account=account,
                portfolio=portfolio,
                holdings=holdings,
                request=request,
                price=price,
                ai_generated=ai_generated,
                metadata=dict(metadata or {}),
            )
            trade = await strategy.fill(context)

        logger.info(
            'Executed %s %s %s @ %s for account %s (%s, %s)',
            trade.side,
            trade.amount,
            trade.symbol,
            trade.price,
            account.id,
            'demo' if account.is_demo else 'live',
            trade.status,
        )
        return trade

    async def _marks(self, holdings: Sequence[HoldingRecord]) -> Dict[str, Decimal]:
        pairs: Dict[str, str] = {}
        for holding in holdings:
            pair = await self._resolver.resolve_trading_symbol(holding.symbol)
            if pair is not None:
                pairs[pair] = holding.symbol
        if not pairs:
            return {}
        try:
            snapshots = await self._gateway.get_tickers(list(pairs))
        except (UpstreamUnavailable, SymbolNotFound) as error:
            logger.warning('Valuation refresh is using last known prices: %s', error)
            return {}
        return {
            pairs[pair]: quantize(snapshot.price)
            for pair, snapshot in snapshots.items()
            if pair in pairs and snapshot.price > 0
        }

    async def refresh_valuation(self, account_id: str) -> Tuple[PortfolioRecord, list[HoldingRecord]]:
        """Mark holdings to market and recompute portfolio totals and P&L."""
        _, portfolio = await self._load_account(account_id)
        holdings = await asyncio.to_thread(self._db.get_holdings, portfolio.id)
        marks = await self._marks(holdings)

        async with self._lock_for(portfolio.id):
            portfolio = await asyncio.to_thread(self._db.get_portfolio_by_id, portfolio.id)
            if portfolio is None:
                raise NotFound('Portfolio not found')
            holdings = await asyncio.to_thread(self._db.get_holdings, portfolio.id)
            valuation = self._portfolio.revalue(portfolio, holdings, marks)
            updated = await asyncio.to_thread(
                self._db.apply_valuation,
                portfolio.id,
                {item.holding_id: item.changes() for item in valuation.holdings},
                valuation.portfolio_changes(),
            )
            refreshed = await asyncio.to_thread(self._db.get_holdings, portfolio.id)
        logger.debug('Revalued portfolio %s: total=%s pnl=%s', portfolio.id, updated.total_balance, updated.pnl_24h)
        return updated, refreshed

    async def portfolio_metrics(self, account_id: str) -> Dict[str, Any]:
        account = await asyncio.to_thread(self._db.get_account, account_id)
        if account is None:
            raise NotFound('User not found')
        portfolio = await asyncio.to_thread(self._db.get_portfolio, account.id)
        holdings = await asyncio.to_thread(self._db.get_holdings, portfolio.id) if portfolio else []
        return self._portfolio.metrics(portfolio, holdings)


__all__ = ['ExecutionEngine']
