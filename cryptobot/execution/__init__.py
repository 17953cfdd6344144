"""Trade execution components."""

from .execution_engine import ExecutionEngine
from .order_manager import DemoFillStrategy, FillContext, FillStrategy, LiveFillStrategy, TradeRequest

__all__ = [
    'DemoFillStrategy',
    'ExecutionEngine',
    'FillContext',
    'FillStrategy',
    'LiveFillStrategy',
    'TradeRequest',
]
