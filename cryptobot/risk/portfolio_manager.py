"""Portfolio accounting helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from ..database.models import (
    MONEY_CONTEXT,
    PERCENT_QUANTUM,
    ZERO,
    BalanceUpdate,
    HoldingChange,
    HoldingRecord,
    PortfolioRecord,
    decimal_text,
    quantize,
)
from ..errors import InsufficientFunds, InsufficientHolding

_HUNDRED = Decimal('100')


@dataclass(frozen=True)
class DemoFillPlan:
    """Balance and holding changes produced by one simulated fill."""

    value: Decimal
    balances: BalanceUpdate
    holding_change: Optional[HoldingChange]


@dataclass(frozen=True)
class HoldingValuation:
    holding_id: str
    symbol: str
    current_price: Decimal
    value: Decimal
    pnl: Decimal
    pnl_percentage: Decimal

    def changes(self) -> Dict[str, Decimal]:
        return {
            'current_price': self.current_price,
            'value': self.value,
            'pnl': self.pnl,
            'pnl_percentage': self.pnl_percentage,
        }


@dataclass(frozen=True)
class PortfolioValuation:
    trading_balance: Decimal
    total_balance: Decimal
    pnl: Decimal
    pnl_percentage: Decimal
    holdings: Tuple[HoldingValuation, ...] = field(default_factory=tuple)

    def portfolio_changes(self) -> Dict[str, Decimal]:
        return {
            'trading_balance': self.trading_balance,
            'total_balance': self.total_balance,
            'pnl_24h': self.pnl,
            'pnl_percentage_24h': self.pnl_percentage,
        }


def _percentage(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator <= 0:
        return ZERO
    return quantize(numerator / denominator * _HUNDRED, PERCENT_QUANTUM)


class PortfolioManager:
    """Computes ledger changes for demo fills and price revaluation.

    Nothing here touches storage; the execution engine applies the results.
    Demo buys debit the available balance even past zero unless
    ``enforce_available_balance`` is set.
    """

    def __init__(self, *, allow_uncovered_sells: bool = False, enforce_available_balance: bool = False) -> None:
        self.allow_uncovered_sells = allow_uncovered_sells
        self.enforce_available_balance = enforce_available_balance

    def plan_demo_fill(
        self,
        portfolio: PortfolioRecord,
        holding: Optional[HoldingRecord],
        side: str,
        symbol: str,
        amount: Decimal,
        price: Decimal,
    ) -> DemoFillPlan:
        with localcontext(MONEY_CONTEXT):
            gross = amount * price
            value = quantize(gross)
            if side == 'buy':
                return self._plan_buy(portfolio, holding, symbol, amount, price, gross, value)
            if side == 'sell':
                return self._plan_sell(portfolio, holding, symbol, amount, price, value)
        raise ValueError(f'Unknown trade side: {side}')

    def _plan_buy(
        self,
        portfolio: PortfolioRecord,
        holding: Optional[HoldingRecord],
        symbol: str,
        amount: Decimal,
        price: Decimal,
        gross: Decimal,
        value: Decimal,
    ) -> DemoFillPlan:
        if self.enforce_available_balance and value > portfolio.available_balance:
            raise InsufficientFunds(
                f'Trade value ${decimal_text(value)} exceeds available balance '
                f'${decimal_text(portfolio.available_balance)}',
                context={'symbol': symbol},
            )
        balances = BalanceUpdate(
            available_balance=portfolio.available_balance - value,
            trading_balance=portfolio.trading_balance + value,
        )
        if holding is None:
            change = HoldingChange(
                action=HoldingChange.CREATE,
                symbol=symbol,
                amount=amount,
                average_price=price,
                current_price=price,
                value=value,
            )
            return DemoFillPlan(value, balances, change)

        new_amount = holding.amount + amount
        # Weighted average over the exact notional, rounded once.
        average_price = quantize((holding.amount * holding.average_price + gross) / new_amount)
        change = HoldingChange(
            action=HoldingChange.UPDATE,
            symbol=symbol,
            holding_id=holding.id,
            amount=new_amount,
            average_price=average_price,
            current_price=price,
            value=quantize(new_amount * price),
        )
        return DemoFillPlan(value, balances, change)

    def _plan_sell(
        self,
        portfolio: PortfolioRecord,
        holding: Optional[HoldingRecord],
        symbol: str,
        amount: Decimal,
        price: Decimal,
        value: Decimal,
    ) -> DemoFillPlan:
        if holding is None and not self.allow_uncovered_sells:
            raise InsufficientHolding(f'No {symbol} holding to sell', context={'symbol': symbol})
        balances = BalanceUpdate(
            available_balance=portfolio.available_balance + value,
            trading_balance=max(ZERO, portfolio.trading_balance - value),
        )
        if holding is None:
            return DemoFillPlan(value, balances, None)

        new_amount = holding.amount - amount
        if new_amount <= 0:
            change = HoldingChange(action=HoldingChange.DELETE, symbol=symbol, holding_id=holding.id)
            return DemoFillPlan(value, balances, change)

        change = HoldingChange(
            action=HoldingChange.UPDATE,
            symbol=symbol,
            holding_id=holding.id,
            amount=new_amount,
            current_price=price,
            value=quantize(new_amount * price),
        )
        return DemoFillPlan(value, balances, change)

    def revalue(
        self,
        portfolio: PortfolioRecord,
        holdings: Sequence[HoldingRecord],
        marks: Mapping[str, Decimal],
    ) -> PortfolioValuation:
        """Mark holdings to market; missing marks keep the last observed price."""
        valuations = []
        total_pnl = ZERO
        total_investment = ZERO
        trading_balance = ZERO
        with localcontext(MONEY_CONTEXT):
            for holding in holdings:
                current_price = marks.get(holding.symbol) or holding.current_price
                investment = holding.average_price * holding.amount
                value = quantize(current_price * holding.amount)
                pnl = quantize((current_price - holding.average_price) * holding.amount)
                valuations.append(
                    HoldingValuation(
                        holding_id=holding.id,
                        symbol=holding.symbol,
                        current_price=current_price,
                        value=value,
                        pnl=pnl,
                        pnl_percentage=_percentage(pnl, investment),
                    )
                )
                total_pnl += pnl
                total_investment += investment
                trading_balance += value

            return PortfolioValuation(
                trading_balance=trading_balance,
                total_balance=portfolio.available_balance + trading_balance,
                pnl=total_pnl,
                pnl_percentage=_percentage(total_pnl, total_investment),
                holdings=tuple(valuations),
            )

    @staticmethod
    def metrics(portfolio: Optional[PortfolioRecord], holdings: Sequence[HoldingRecord]) -> Dict[str, Any]:
        if portfolio is None:
            return {
                'totalValue': '0',
                'totalPnL': '0',
                'totalPnLPercentage': '0',
                'bestPerformer': None,
                'worstPerformer': None,
            }

        total_value = portfolio.available_balance
        total_pnl = ZERO
        total_investment = ZERO
        best: Optional[HoldingRecord] = None
        worst: Optional[HoldingRecord] = None
        for holding in holdings:
            total_value += holding.value
            total_pnl += holding.pnl
            total_investment += holding.average_price * holding.amount
            if best is None or holding.pnl > best.pnl:
                best = holding
            if worst is None or holding.pnl < worst.pnl:
                worst = holding

        def performer(holding: Optional[HoldingRecord]) -> Optional[Dict[str, Any]]:
            if holding is None:
                return None
            return {'symbol': holding.symbol, 'pnl': decimal_text(holding.pnl)}

        return {
            'totalValue': decimal_text(total_value),
            'totalPnL': decimal_text(total_pnl),
            'totalPnLPercentage': decimal_text(_percentage(total_pnl, total_investment)),
            'bestPerformer': performer(best),
            'worstPerformer': performer(worst),
        }


__all__ = ['DemoFillPlan', 'HoldingValuation', 'PortfolioManager', 'PortfolioValuation']
