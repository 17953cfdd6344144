"""Persistence layer exports."""

from .db_manager import DatabaseManager, TradeQuery, utcnow
from .models import (
    AccountRecord,
    BalanceUpdate,
    Base,
    HoldingChange,
    HoldingRecord,
    NewSignal,
    NewStrategy,
    NewTrade,
    OrderType,
    PortfolioRecord,
    SignalAction,
    SignalRecord,
    StrategyRecord,
    TradeRecord,
    TradeSide,
    TradeStatus,
)

__all__ = [
    'DatabaseManager',
    'TradeQuery',
    'utcnow',
    'AccountRecord',
    'BalanceUpdate',
    'Base',
    'HoldingChange',
    'HoldingRecord',
    'NewSignal',
    'NewStrategy',
    'NewTrade',
    'OrderType',
    'PortfolioRecord',
    'SignalAction',
    'SignalRecord',
    'StrategyRecord',
    'TradeRecord',
    'TradeSide',
    'TradeStatus',
]
