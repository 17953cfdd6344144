"""SQLAlchemy-backed ledger store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import Numeric, Select, cast, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import InvalidStatusTransition, NotFound
from .models import (
    Account,
    AccountRecord,
    AiSignal,
    BalanceUpdate,
    Base,
    Holding,
    HoldingChange,
    HoldingRecord,
    NewSignal,
    NewStrategy,
    NewTrade,
    Portfolio,
    PortfolioRecord,
    SignalRecord,
    StrategyRecord,
    Trade,
    TradeRecord,
    TradeStatus,
    TradingStrategy,
    ZERO,
)

logger = logging.getLogger(__name__)

_ACCOUNT_FIELDS = frozenset({'email', 'display_name', 'photo_url', 'is_demo', 'api_key', 'api_secret', 'risk_settings'})
_PORTFOLIO_FIELDS = frozenset({
    'total_balance', 'available_balance', 'trading_balance', 'pnl_24h', 'pnl_percentage_24h', 'is_demo',
})
_HOLDING_FIELDS = frozenset({'amount', 'average_price', 'current_price', 'value', 'pnl', 'pnl_percentage'})
_SIGNAL_FIELDS = frozenset({'is_active', 'expires_at', 'reasoning', 'indicators'})
_STRATEGY_FIELDS = frozenset({'name', 'description', 'symbol', 'strategy', 'parameters', 'is_active', 'performance'})

TRADE_SORT_FIELDS: Dict[str, str] = {
    'createdAt': 'created_at',
    'filledAt': 'filled_at',
    'amount': 'amount',
    'price': 'price',
    'fee': 'fee',
    'symbol': 'symbol',
    'side': 'side',
    'status': 'status',
    'type': 'order_type',
}


def _as_utc(value: datetime) -> datetime:
    """Ensure datetimes are timezone-aware in UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _maybe_utc(value: Optional[datetime]) -> Optional[datetime]:
    return _as_utc(value) if value is not None else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TradeQuery:
    """Filtering, sorting and pagination options for trade history."""

    page: int = 1
    limit: int = 50
    symbol: Optional[str] = None
    side: Optional[str] = None
    status: Optional[str] = None
    sort_by: str = 'createdAt'
    sort_order: str = 'desc'

    def __post_init__(self) -> None:
        self.page = max(1, self.page)
        self.limit = max(1, self.limit)
        if self.sort_by not in TRADE_SORT_FIELDS:
            self.sort_by = 'createdAt'
        self.sort_order = 'asc' if self.sort_order == 'asc' else 'desc'


def _account_record(row: Account) -> AccountRecord:
    return AccountRecord(
        id=row.id,
        external_id=row.external_id,
        email=row.email,
        display_name=row.display_name,
        photo_url=row.photo_url,
        is_demo=bool(row.is_demo),
        api_key=row.api_key,
        api_secret=row.api_secret,
        risk_settings=dict(row.risk_settings or {}),
        created_at=_as_utc(row.created_at),
    )


def _portfolio_record(row: Portfolio) -> PortfolioRecord:
    return PortfolioRecord(
        id=row.id,
        owner_id=row.owner_id,
        total_balance=row.total_balance,
        available_balance=row.available_balance,
        trading_balance=row.trading_balance,
        pnl_24h=row.pnl_24h,
        pnl_percentage_24h=row.pnl_percentage_24h,
        is_demo=bool(row.is_demo),
        updated_at=_as_utc(row.updated_at),
    )


def _holding_record(row: Holding) -> HoldingRecord:
    return HoldingRecord(
        id=row.id,
        portfolio_id=row.portfolio_id,
        symbol=row.symbol,
        amount=row.amount,
        average_price=row.average_price,
        current_price=row.current_price,
        value=row.value,
        pnl=row.pnl,
        pnl_percentage=row.pnl_percentage,
        updated_at=_as_utc(row.updated_at),
    )


def _trade_record(row: Trade) -> TradeRecord:
    return TradeRecord(
        id=row.id,
        owner_id=row.owner_id,
        portfolio_id=row.portfolio_id,
        symbol=row.symbol,
        side=row.side,
        order_type=row.order_type,
        amount=row.amount,
        price=row.price,
        fee=row.fee,
        status=row.status,
        is_demo=bool(row.is_demo),
        is_ai_generated=bool(row.is_ai_generated),
        venue_order_id=row.venue_order_id,
        metadata=dict(row.details or {}),
        created_at=_as_utc(row.created_at),
        filled_at=_maybe_utc(row.filled_at),
    )


def _signal_record(row: AiSignal) -> SignalRecord:
    return SignalRecord(
        id=row.id,
        symbol=row.symbol,
        signal=row.signal,
        confidence=row.confidence,
        entry_price=row.entry_price,
        target_price=row.target_price,
        stop_loss=row.stop_loss,
        risk_reward=row.risk_reward,
        reasoning=row.reasoning,
        indicators=dict(row.indicators or {}),
        is_active=bool(row.is_active),
        created_at=_as_utc(row.created_at),
        expires_at=_maybe_utc(row.expires_at),
    )


def _strategy_record(row: TradingStrategy) -> StrategyRecord:
    return StrategyRecord(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description,
        symbol=row.symbol,
        strategy=row.strategy,
        parameters=dict(row.parameters or {}),
        is_active=bool(row.is_active),
        performance=dict(row.performance or {}),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _apply_changes(row: Any, changes: Dict[str, Any], allowed: frozenset[str], entity: str) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f'Cannot update {entity} fields: {", ".join(sorted(unknown))}')
    for name, value in changes.items():
        setattr(row, name, value)


def _matches(trade: TradeRecord, query: TradeQuery) -> bool:
    if query.symbol and trade.symbol != query.symbol.upper():
        return False
    if query.side and trade.side != query.side:
        return False
    return not query.status or trade.status == query.status


def _trade_sort_key(trade: TradeRecord, attribute: str) -> Tuple[int, Any]:
    value = getattr(trade, attribute)
    if value is None:
        return (0, 0)
    if isinstance(value, datetime):
        return (1, value.timestamp())
    return (1, value)


_MONEY_SORT_COLUMNS = frozenset({'amount', 'price', 'fee'})


def _trade_ordering(query: TradeQuery) -> Tuple[Any, ...]:
    attribute = TRADE_SORT_FIELDS[query.sort_by]
    column: Any = getattr(Trade, attribute)
    # Monetary columns are stored as text; order on their numeric value.
    if attribute in _MONEY_SORT_COLUMNS:
        column = cast(column, Numeric(38, 8))
    if query.sort_order == 'asc':
        return column.asc().nulls_first(), Trade.id.asc()
    return column.desc().nulls_last(), Trade.id.desc()


class DatabaseManager:
    """High level helper around a SQLAlchemy engine and session factory."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._database_url = database_url
        connect_args: dict[str, object] = {}
        engine_kwargs: dict[str, object] = {}
        if database_url in {'sqlite://', 'sqlite:///:memory:'}:
            connect_args['check_same_thread'] = False
            engine_kwargs['poolclass'] = StaticPool
        elif database_url.startswith('sqlite:///'):
            db_path = Path(database_url.replace('sqlite:///', '', 1))
            db_path.parent.mkdir(parents=True, exist_ok=True)
            connect_args['check_same_thread'] = False
        self._engine: Engine = create_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args=connect_args,
            **engine_kwargs,
        )
        self._session_factory = sessionmaker(
            self._engine,
            expire_on_commit=False,
            future=True,
        )
        self.create_schema()

    def create_schema(self) -> None:
        """Create database tables if they do not already exist."""

        Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager returning a database session with automatic commit."""

        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Accounts

    def create_account_with_portfolio(
        self,
        external_id: str,
        email: str,
        *,
        starting_balance: Decimal,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
        is_demo: bool = True,
    ) -> Tuple[AccountRecord, PortfolioRecord]:
        """Create an account and its single portfolio funded with the demo balance."""

        now = utcnow()
        with self.session() as session:
            account = Account(
                external_id=external_id,
                email=email,
                display_name=display_name,
                photo_url=photo_url,
                is_demo=is_demo,
                risk_settings={},
                created_at=now,
            )
            session.add(account)
            session.flush()
            portfolio = Portfolio(
                owner_id=account.id,
                total_balance=starting_balance,
                available_balance=starting_balance,
                trading_balance=ZERO,
                pnl_24h=ZERO,
                pnl_percentage_24h=ZERO,
                is_demo=is_demo,
                updated_at=now,
            )
            session.add(portfolio)
            session.flush()
            return _account_record(account), _portfolio_record(portfolio)

    def get_account(self, account_id: str) -> Optional[AccountRecord]:
        with self.session() as session:
            row = session.get(Account, account_id)
            return _account_record(row) if row else None

    def get_account_by_external_id(self, external_id: str) -> Optional[AccountRecord]:
        stmt = select(Account).where(Account.external_id == external_id)
        with self.session() as session:
            row = session.execute(stmt).scalars().first()
            return _account_record(row) if row else None

    def update_account(self, account_id: str, **changes: Any) -> AccountRecord:
        with self.session() as session:
            row = session.get(Account, account_id)
            if row is None:
                raise NotFound(f'Account {account_id} not found')
            _apply_changes(row, changes, _ACCOUNT_FIELDS, 'account')
            session.flush()
            return _account_record(row)

    # Portfolios

    def get_portfolio(self, owner_id: str) -> Optional[PortfolioRecord]:
        stmt = select(Portfolio).where(Portfolio.owner_id == owner_id)
        with self.session() as session:
            row = session.execute(stmt).scalars().first()
            return _portfolio_record(row) if row else None

    def get_portfolio_by_id(self, portfolio_id: str) -> Optional[PortfolioRecord]:
        with self.session() as session:
            row = session.get(Portfolio, portfolio_id)
            return _portfolio_record(row) if row else None

    def update_portfolio(self, portfolio_id: str, **changes: Any) -> PortfolioRecord:
        with self.session() as session:
            row = session.get(Portfolio, portfolio_id)
            if row is None:
                raise NotFound(f'Portfolio {portfolio_id} not found')
            _apply_changes(row, changes, _PORTFOLIO_FIELDS, 'portfolio')
            row.updated_at = utcnow()
            session.flush()
            return _portfolio_record(row)

    # Holdings

    def get_holdings(self, portfolio_id: str) -> List[HoldingRecord]:
        stmt: Select[tuple[Holding]] = (
            select(Holding)
            .where(Holding.portfolio_id == portfolio_id)
            .order_by(Holding.symbol)
        )
        with self.session() as session:
            rows = session.execute(stmt).scalars().all()
        return [_holding_record(row) for row in rows]

    def get_holding(self, portfolio_id: str, symbol: str) -> Optional[HoldingRecord]:
        stmt = select(Holding).where(Holding.portfolio_id == portfolio_id, Holding.symbol == symbol)
        with self.session() as session:
            row = session.execute(stmt).scalars().first()
            return _holding_record(row) if row else None

    def create_holding(
        self,
        portfolio_id: str,
        symbol: str,
        *,
        amount: Decimal,
        average_price: Decimal,
        current_price: Decimal,
        value: Decimal,
    ) -> HoldingRecord:
        with self.session() as session:
            row = Holding(
                portfolio_id=portfolio_id,
                symbol=symbol,
                amount=amount,
                average_price=average_price,
                current_price=current_price,
                value=value,
                pnl=ZERO,
                pnl_percentage=ZERO,
                updated_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return _holding_record(row)

    def update_holding(self, holding_id: str, **changes: Any) -> HoldingRecord:
        with self.session() as session:
            row = session.get(Holding, holding_id)
            if row is None:
                raise NotFound(f'Holding {holding_id} not found')
            _apply_changes(row, changes, _HOLDING_FIELDS, 'holding')
            row.updated_at = utcnow()
            session.flush()
            return _holding_record(row)

    def delete_holding(self, holding_id: str) -> None:
        with self.session() as session:
            row = session.get(Holding, holding_id)
            if row is None:
                raise NotFound(f'Holding {holding_id} not found')
            session.delete(row)

    # Trades

    def create_trade(self, trade: NewTrade) -> TradeRecord:
        """Persist a trade record; filled trades are stamped with filled_at."""

        with self.session() as session:
            row = self._add_trade(session, trade, utcnow())
            session.flush()
            return _trade_record(row)

    def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        with self.session() as session:
            row = session.get(Trade, trade_id)
            return _trade_record(row) if row else None

    def update_trade_status(
        self,
        trade_id: str,
        status: TradeStatus | str,
        *,
        venue_order_id: Optional[str] = None,
    ) -> TradeRecord:
        """Move a pending trade to a terminal status."""

        target = TradeStatus(status)
        with self.session() as session:
            row = session.get(Trade, trade_id)
            if row is None:
                raise NotFound(f'Trade {trade_id} not found')
            current = TradeStatus(row.status)
            if not current.can_transition_to(target):
                raise InvalidStatusTransition(
                    f'Trade {trade_id} cannot move from {current.value} to {target.value}',
                    context={'from': current.value, 'to': target.value},
                )
            row.status = target.value
            if target is TradeStatus.FILLED and row.filled_at is None:
                row.filled_at = utcnow()
            if venue_order_id is not None:
                row.venue_order_id = venue_order_id
            session.flush()
            return _trade_record(row)

    def get_trades(
        self,
        owner_id: str,
        *,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TradeRecord]:
        """Return the owner's trades, newest first."""

        stmt = select(Trade).where(Trade.owner_id == owner_id)
        if since is not None:
            stmt = stmt.where(Trade.created_at >= _as_utc(since))
        stmt = stmt.order_by(Trade.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session() as session:
            rows = session.execute(stmt).scalars().all()
        return [_trade_record(row) for row in rows]

    def query_trades(
        self,
        owner_id: str,
        query: TradeQuery,
        *,
        extra_trades: Sequence[TradeRecord] = (),
    ) -> Tuple[List[TradeRecord], int]:
        """Filter, sort and paginate trade history, returning the page and total count.

        ``extra_trades`` (venue history) are merged in unless a stored trade
        already carries the same venue order id.
        """

        stmt = select(Trade).where(Trade.owner_id == owner_id)
        if query.symbol:
            stmt = stmt.where(Trade.symbol == query.symbol.upper())
        if query.side:
            stmt = stmt.where(Trade.side == query.side)
        if query.status:
            stmt = stmt.where(Trade.status == query.status)
        count_stmt = select(func.count()).select_from(stmt.subquery())
        stmt = stmt.order_by(*_trade_ordering(query))
        start = (query.page - 1) * query.limit

        with self.session() as session:
            stored_total = session.execute(count_stmt).scalar_one()
            if not extra_trades:
                rows = session.execute(stmt.offset(start).limit(query.limit)).scalars().all()
                return [_trade_record(row) for row in rows], stored_total

            # Any stored trade on the merged page is within the first start + limit rows.
            rows = session.execute(stmt.limit(start + query.limit)).scalars().all()
            known = set(
                session.execute(
                    select(Trade.venue_order_id).where(Trade.owner_id == owner_id, Trade.venue_order_id.is_not(None))
                ).scalars()
            )

        merged = [_trade_record(row) for row in rows]
        extra_count = 0
        for trade in extra_trades:
            if trade.venue_order_id in known or not _matches(trade, query):
                continue
            known.add(trade.venue_order_id)
            merged.append(trade)
            extra_count += 1
        attribute = TRADE_SORT_FIELDS[query.sort_by]
        merged.sort(key=lambda trade: _trade_sort_key(trade, attribute), reverse=query.sort_order == 'desc')
        return merged[start:start + query.limit], stored_total + extra_count

    def apply_demo_fill(
        self,
        portfolio_id: str,
        balances: BalanceUpdate,
        holding_change: Optional[HoldingChange],
        trade: NewTrade,
    ) -> TradeRecord:
        """Commit balance update, holding change and the filled trade as one unit."""

        now = utcnow()
        with self.session() as session:
            portfolio = session.get(Portfolio, portfolio_id)
            if portfolio is None:
                raise NotFound(f'Portfolio {portfolio_id} not found')
            portfolio.available_balance = balances.available_balance
            portfolio.trading_balance = balances.trading_balance
            portfolio.total_balance = balances.total_balance
            portfolio.updated_at = now

            if holding_change is not None:
                self._apply_holding_change(session, portfolio_id, holding_change, now)

            row = self._add_trade(session, trade, now)
            session.flush()
            return _trade_record(row)

    def apply_valuation(
        self,
        portfolio_id: str,
        holding_changes: Dict[str, Dict[str, Any]],
        portfolio_changes: Dict[str, Any],
    ) -> PortfolioRecord:
        """Write refreshed marks for holdings and the portfolio totals together."""

        now = utcnow()
        with self.session() as session:
            portfolio = session.get(Portfolio, portfolio_id)
            if portfolio is None:
                raise NotFound(f'Portfolio {portfolio_id} not found')
            for holding_id, changes in holding_changes.items():
                row = session.get(Holding, holding_id)
                # Holdings sold since the marks were taken are skipped.
                if row is None or row.portfolio_id != portfolio_id:
                    continue
                _apply_changes(row, changes, _HOLDING_FIELDS, 'holding')
                row.updated_at = now
            _apply_changes(portfolio, portfolio_changes, _PORTFOLIO_FIELDS, 'portfolio')
            portfolio.updated_at = now
            session.flush()
            return _portfolio_record(portfolio)

    # Signals

    def create_signal(self, signal: NewSignal) -> SignalRecord:
        with self.session() as session:
            row = AiSignal(
                symbol=signal.symbol,
                signal=signal.signal,
                confidence=signal.confidence,
                entry_price=signal.entry_price,
                target_price=signal.target_price,
                stop_loss=signal.stop_loss,
                risk_reward=signal.risk_reward,
                reasoning=signal.reasoning,
                indicators=dict(signal.indicators),
                is_active=signal.is_active,
                created_at=utcnow(),
                expires_at=_maybe_utc(signal.expires_at),
            )
            session.add(row)
            session.flush()
            return _signal_record(row)

    def get_signal(self, signal_id: str) -> Optional[SignalRecord]:
        with self.session() as session:
            row = session.get(AiSignal, signal_id)
            return _signal_record(row) if row else None

    def get_signals(
        self,
        *,
        symbol: Optional[str] = None,
        include_inactive: bool = False,
        limit: Optional[int] = None,
    ) -> List[SignalRecord]:
        stmt = select(AiSignal)
        if symbol:
            stmt = stmt.where(AiSignal.symbol == symbol.upper())
        if not include_inactive:
            stmt = stmt.where(AiSignal.is_active.is_(True))
        stmt = stmt.order_by(AiSignal.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self.session() as session:
            rows = session.execute(stmt).scalars().all()
        return [_signal_record(row) for row in rows]

    def get_active_signals(self, symbol: Optional[str] = None, *, limit: Optional[int] = None) -> List[SignalRecord]:
        """Active signals that have not expired yet, newest first."""

        now = utcnow()
        signals = self.get_signals(symbol=symbol)
        active = [signal for signal in signals if not signal.is_expired(now)]
        return active[:limit] if limit else active

    def update_signal(self, signal_id: str, **changes: Any) -> SignalRecord:
        with self.session() as session:
            row = session.get(AiSignal, signal_id)
            if row is None:
                raise NotFound(f'AI signal {signal_id} not found')
            if 'expires_at' in changes:
                changes['expires_at'] = _maybe_utc(changes['expires_at'])
            _apply_changes(row, changes, _SIGNAL_FIELDS, 'signal')
            session.flush()
            return _signal_record(row)

    # Strategies

    def create_strategy(self, strategy: NewStrategy) -> StrategyRecord:
        now = utcnow()
        with self.session() as session:
            row = TradingStrategy(
                owner_id=strategy.owner_id,
                name=strategy.name,
                description=strategy.description,
                symbol=strategy.symbol.upper(),
                strategy=strategy.strategy,
                parameters=dict(strategy.parameters),
                is_active=strategy.is_active,
                performance=dict(strategy.performance),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return _strategy_record(row)

    def get_strategies(self, owner_id: str) -> List[StrategyRecord]:
        """Return the owner's saved strategies, oldest first."""

        stmt = (
            select(TradingStrategy)
            .where(TradingStrategy.owner_id == owner_id)
            .order_by(TradingStrategy.created_at.asc(), TradingStrategy.id.asc())
        )
        with self.session() as session:
            rows = session.execute(stmt).scalars().all()
        return [_strategy_record(row) for row in rows]

    def update_strategy(self, strategy_id: str, **changes: Any) -> StrategyRecord:
        with self.session() as session:
            row = session.get(TradingStrategy, strategy_id)
            if row is None:
                raise NotFound(f'Trading strategy {strategy_id} not found')
            _apply_changes(row, changes, _STRATEGY_FIELDS, 'strategy')
            row.updated_at = utcnow()
            session.flush()
            return _strategy_record(row)

    def close(self) -> None:
        """Dispose of the underlying engine and connection pool."""

        self._engine.dispose()

    @staticmethod
    def _add_trade(session: Session, trade: NewTrade, now: datetime) -> Trade:
        status = TradeStatus(trade.status)
        row = Trade(
            owner_id=trade.owner_id,
            portfolio_id=trade.portfolio_id,
            symbol=trade.symbol,
            side=trade.side,
            order_type=trade.order_type,
            amount=trade.amount,
            price=trade.price,
            fee=trade.fee,
            status=status.value,
            is_demo=trade.is_demo,
            is_ai_generated=trade.is_ai_generated,
            venue_order_id=trade.venue_order_id,
            details=dict(trade.metadata),
            created_at=now,
            filled_at=now if status is TradeStatus.FILLED else None,
        )
        session.add(row)
        return row

    @staticmethod
    def _apply_holding_change(
        session: Session,
        portfolio_id: str,
        change: HoldingChange,
        now: datetime,
    ) -> None:
        if change.action == HoldingChange.CREATE:
            session.add(
                Holding(
                    portfolio_id=portfolio_id,
                    symbol=change.symbol,
                    amount=change.amount,
                    average_price=change.average_price,
                    current_price=change.current_price,
                    value=change.value,
                    pnl=ZERO,
                    pnl_percentage=ZERO,
                    updated_at=now,
                )
            )
            return

        row = session.get(Holding, change.holding_id)
        if row is None or row.portfolio_id != portfolio_id:
            raise NotFound(f'Holding {change.holding_id} not found')
        if change.action == HoldingChange.DELETE:
            session.delete(row)
            return
        if change.action != HoldingChange.UPDATE:
            raise ValueError(f'Unknown holding change: {change.action}')
        row.amount = change.amount
        if change.average_price is not None:
            row.average_price = change.average_price
        row.current_price = change.current_price
        row.value = change.value
        row.updated_at = now


__all__ = ['DatabaseManager', 'TradeQuery', 'TRADE_SORT_FIELDS', 'utcnow']
