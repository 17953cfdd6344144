"""SQLAlchemy ORM models and typed records for persistence."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Context, Decimal, DivisionByZero, InvalidOperation, Overflow
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

MONEY_QUANTUM = Decimal('0.00000001')
PERCENT_QUANTUM = Decimal('0.0001')
ZERO = Decimal('0')

# Enough digits for any bounded amount times price at 8 places without rounding.
MONEY_CONTEXT = Context(prec=64, rounding=ROUND_HALF_EVEN, traps=[InvalidOperation, DivisionByZero, Overflow])
# Upper bound for a single amount or price accepted from clients.
MAX_ORDER_NUMBER = Decimal('1e15')


def quantize(value: Decimal, quantum: Decimal = MONEY_QUANTUM) -> Decimal:
    """Round to the stored precision (8 places unless told otherwise)."""
    return value.quantize(quantum, rounding=ROUND_HALF_EVEN, context=MONEY_CONTEXT)


def decimal_text(value: Optional[Decimal]) -> Optional[str]:
    """Fixed-point rendering used on the wire and in the store."""
    if value is None:
        return None
    return format(value.normalize(), 'f')


def _new_id() -> str:
    return str(uuid.uuid4())


class DecimalString(TypeDecorator):
    """Stores decimals as exact fixed-point strings instead of floats."""

    impl = String(48)
    cache_ok = True

    def __init__(self, quantum: Decimal = MONEY_QUANTUM) -> None:
        super().__init__()
        self.quantum = quantum

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[str]:
        if value is None:
            return None
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation as error:
            raise ValueError(f'Not a decimal value: {value!r}') from error
        return format(quantize(number, self.quantum), 'f')

    def process_result_value(self, value: Any, dialect: Any) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value)


class TradeSide(str, enum.Enum):
    BUY = 'buy'
    SELL = 'sell'


class OrderType(str, enum.Enum):
    MARKET = 'market'
    LIMIT = 'limit'
    STOP_LOSS = 'stop-loss'


class TradeStatus(str, enum.Enum):
    PENDING = 'pending'
    FILLED = 'filled'
    CANCELLED = 'cancelled'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.PENDING

    def can_transition_to(self, target: 'TradeStatus') -> bool:
        return self is TradeStatus.PENDING and target is not TradeStatus.PENDING


class SignalAction(str, enum.Enum):
    BUY = 'buy'
    SELL = 'sell'
    HOLD = 'hold'


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Account(Base):
    """A dashboard user with demo/live mode and risk configuration."""

    __tablename__ = 'accounts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    external_id: Mapped[str] = mapped_column(String(128), unique=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_demo: Mapped[bool] = mapped_column(Boolean, default=True)
    api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    api_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Portfolio(Base):
    """Cash and invested balances for one account."""

    __tablename__ = 'portfolios'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    total_balance: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    available_balance: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    trading_balance: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    pnl_24h: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    pnl_percentage_24h: Mapped[Decimal] = mapped_column(DecimalString(PERCENT_QUANTUM), default=ZERO)
    is_demo: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Holding(Base):
    """Open position for one symbol inside a portfolio."""

    __tablename__ = 'holdings'
    __table_args__ = (
        UniqueConstraint('portfolio_id', 'symbol', name='uq_holdings_portfolio_symbol'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey('portfolios.id'), index=True)
    symbol: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(DecimalString())
    average_price: Mapped[Decimal] = mapped_column(DecimalString())
    current_price: Mapped[Decimal] = mapped_column(DecimalString())
    value: Mapped[Decimal] = mapped_column(DecimalString())
    pnl: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    pnl_percentage: Mapped[Decimal] = mapped_column(DecimalString(PERCENT_QUANTUM), default=ZERO)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Trade(Base):
    """Represents an executed or submitted trade."""

    __tablename__ = 'trades'
    __table_args__ = (
        Index('ix_trades_owner_created', 'owner_id', 'created_at'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'))
    portfolio_id: Mapped[str] = mapped_column(ForeignKey('portfolios.id'), index=True)
    symbol: Mapped[str] = mapped_column(String(32), index=True)
    side: Mapped[str] = mapped_column(String(8))
    order_type: Mapped[str] = mapped_column(String(16))
    amount: Mapped[Decimal] = mapped_column(DecimalString())
    price: Mapped[Decimal] = mapped_column(DecimalString())
    fee: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    status: Mapped[str] = mapped_column(String(16))
    is_demo: Mapped[bool] = mapped_column(Boolean, default=True)
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    venue_order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column('metadata', JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    filled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AiSignal(Base):
    """Advisory trade idea produced by a human or the analysis pipeline."""

    __tablename__ = 'ai_signals'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    symbol: Mapped[str] = mapped_column(String(32), index=True)
    signal: Mapped[str] = mapped_column(String(8))
    confidence: Mapped[int] = mapped_column(Integer)
    entry_price: Mapped[Optional[Decimal]] = mapped_column(DecimalString(), nullable=True)
    target_price: Mapped[Optional[Decimal]] = mapped_column(DecimalString(), nullable=True)
    stop_loss: Mapped[Optional[Decimal]] = mapped_column(DecimalString(), nullable=True)
    risk_reward: Mapped[Optional[Decimal]] = mapped_column(DecimalString(Decimal('0.01')), nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    indicators: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TradingStrategy(Base):
    """A saved automated strategy configuration owned by one account."""

    __tablename__ = 'trading_strategies'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    symbol: Mapped[str] = mapped_column(String(32))
    strategy: Mapped[str] = mapped_column(String(64))
    parameters: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    performance: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class AccountRecord:
    """Typed container for account rows; credentials stay encrypted."""

    id: str
    external_id: str
    email: str
    display_name: Optional[str]
    photo_url: Optional[str]
    is_demo: bool
    api_key: Optional[str]
    api_secret: Optional[str]
    risk_settings: Dict[str, Any]
    created_at: datetime

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def public_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'externalId': self.external_id,
            'email': self.email,
            'displayName': self.display_name,
            'photoURL': self.photo_url,
            'isDemo': self.is_demo,
            'hasApiCredentials': self.has_credentials,
            'riskSettings': dict(self.risk_settings or {}),
            'createdAt': _iso(self.created_at),
        }


@dataclass(slots=True)
class PortfolioRecord:
    id: str
    owner_id: str
    total_balance: Decimal
    available_balance: Decimal
    trading_balance: Decimal
    pnl_24h: Decimal
    pnl_percentage_24h: Decimal
    is_demo: bool
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.owner_id,
            'totalBalance': decimal_text(self.total_balance),
            'availableBalance': decimal_text(self.available_balance),
            'tradingBalance': decimal_text(self.trading_balance),
            'pnl24h': decimal_text(self.pnl_24h),
            'pnlPercentage24h': decimal_text(self.pnl_percentage_24h),
            'isDemo': self.is_demo,
            'updatedAt': _iso(self.updated_at),
        }


@dataclass(slots=True)
class HoldingRecord:
    id: str
    portfolio_id: str
    symbol: str
    amount: Decimal
    average_price: Decimal
    current_price: Decimal
    value: Decimal
    pnl: Decimal
    pnl_percentage: Decimal
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'portfolioId': self.portfolio_id,
            'symbol': self.symbol,
            'amount': decimal_text(self.amount),
            'averagePrice': decimal_text(self.average_price),
            'currentPrice': decimal_text(self.current_price),
            'value': decimal_text(self.value),
            'pnl': decimal_text(self.pnl),
            'pnlPercentage': decimal_text(self.pnl_percentage),
            'updatedAt': _iso(self.updated_at),
        }


@dataclass(slots=True)
class TradeRecord:
    """Typed container for trade persistence."""

    id: str
    owner_id: str
    portfolio_id: str
    symbol: str
    side: str
    order_type: str
    amount: Decimal
    price: Decimal
    fee: Decimal
    status: str
    is_demo: bool
    is_ai_generated: bool
    venue_order_id: Optional[str]
    metadata: Dict[str, Any]
    created_at: datetime
    filled_at: Optional[datetime]

    @property
    def notional(self) -> Decimal:
        return self.amount * self.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.owner_id,
            'portfolioId': self.portfolio_id,
            'symbol': self.symbol,
            'side': self.side,
            'type': self.order_type,
            'amount': decimal_text(self.amount),
            'price': decimal_text(self.price),
            'fee': decimal_text(self.fee),
            'status': self.status,
            'isDemo': self.is_demo,
            'isAiGenerated': self.is_ai_generated,
            'venueOrderId': self.venue_order_id,
            'metadata': dict(self.metadata or {}),
            'createdAt': _iso(self.created_at),
            'filledAt': _iso(self.filled_at),
        }


@dataclass(slots=True)
class SignalRecord:
    id: str
    symbol: str
    signal: str
    confidence: int
    entry_price: Optional[Decimal]
    target_price: Optional[Decimal]
    stop_loss: Optional[Decimal]
    risk_reward: Optional[Decimal]
    reasoning: Optional[str]
    indicators: Dict[str, Any]
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'signal': self.signal,
            'confidence': self.confidence,
            'entryPrice': decimal_text(self.entry_price),
            'targetPrice': decimal_text(self.target_price),
            'stopLoss': decimal_text(self.stop_loss),
            'riskReward': decimal_text(self.risk_reward),
            'reasoning': self.reasoning,
            'indicators': dict(self.indicators or {}),
            'isActive': self.is_active,
            'createdAt': _iso(self.created_at),
            'expiresAt': _iso(self.expires_at),
        }


@dataclass(slots=True)
class StrategyRecord:
    id: str
    owner_id: str
    name: str
    description: Optional[str]
    symbol: str
    strategy: str
    parameters: Dict[str, Any]
    is_active: bool
    performance: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.owner_id,
            'name': self.name,
            'description': self.description,
            'symbol': self.symbol,
            'strategy': self.strategy,
            'parameters': dict(self.parameters or {}),
            'isActive': self.is_active,
            'performance': dict(self.performance or {}),
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


@dataclass(slots=True)
class NewTrade:
    """Insert payload for a trade row."""

    owner_id: str
    portfolio_id: str
    symbol: str
    side: str
    order_type: str
    amount: Decimal
    price: Decimal
    status: str
    fee: Decimal = ZERO
    is_demo: bool = True
    is_ai_generated: bool = False
    venue_order_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NewSignal:
    """Insert payload for an advisory signal row."""

    symbol: str
    signal: str
    confidence: int
    entry_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    risk_reward: Optional[Decimal] = None
    reasoning: Optional[str] = None
    indicators: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    expires_at: Optional[datetime] = None


@dataclass(slots=True)
class NewStrategy:
    """Insert payload for a saved strategy."""

    owner_id: str
    name: str
    symbol: str
    strategy: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    is_active: bool = False
    performance: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BalanceUpdate:
    available_balance: Decimal
    trading_balance: Decimal

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.trading_balance


@dataclass(slots=True)
class HoldingChange:
    """Create, update or delete one holding as part of a ledger update."""

    action: str
    symbol: str
    holding_id: Optional[str] = None
    amount: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    current_price: Optional[Decimal] = None
    value: Optional[Decimal] = None

    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'


__all__ = [
    'MAX_ORDER_NUMBER',
    'MONEY_CONTEXT',
    'MONEY_QUANTUM',
    'PERCENT_QUANTUM',
    'ZERO',
    'quantize',
    'decimal_text',
    'DecimalString',
    'TradeSide',
    'OrderType',
    'TradeStatus',
    'SignalAction',
    'Base',
    'Account',
    'Portfolio',
    'Holding',
    'Trade',
    'AiSignal',
    'TradingStrategy',
    'AccountRecord',
    'PortfolioRecord',
    'HoldingRecord',
    'TradeRecord',
    'SignalRecord',
    'StrategyRecord',
    'NewTrade',
    'NewSignal',
    'NewStrategy',
    'BalanceUpdate',
    'HoldingChange',
]
