"""Risk limits and portfolio accounting."""

from .portfolio_manager import DemoFillPlan, HoldingValuation, PortfolioManager, PortfolioValuation
from .risk_manager import (
    RiskDecision,
    RiskEvaluator,
    RiskSettings,
    start_of_utc_day,
    validate_risk_settings_update,
)

__all__ = [
    'DemoFillPlan',
    'HoldingValuation',
    'PortfolioManager',
    'PortfolioValuation',
    'RiskDecision',
    'RiskEvaluator',
    'RiskSettings',
    'start_of_utc_day',
    'validate_risk_settings_update',
]
