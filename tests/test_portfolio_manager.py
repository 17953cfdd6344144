"""Tests for :mod:`cryptobot.risk.portfolio_manager`."""

from __future__ import annotations

import random
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptobot.database import HoldingChange, HoldingRecord, PortfolioRecord
from cryptobot.errors import InsufficientFunds, InsufficientHolding
from cryptobot.risk import PortfolioManager

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _portfolio(available: str = '10000', trading: str = '0') -> PortfolioRecord:
    return PortfolioRecord(
        id='portfolio-1',
        owner_id='account-1',
        total_balance=Decimal(available) + Decimal(trading),
        available_balance=Decimal(available),
        trading_balance=Decimal(trading),
        pnl_24h=Decimal('0'),
        pnl_percentage_24h=Decimal('0'),
        is_demo=True,
        updated_at=NOW,
    )


def _holding(symbol: str, amount: str, average: str, current: str | None = None, pnl: str = '0') -> HoldingRecord:
    current = current or average
    return HoldingRecord(
        id=f'holding-{symbol}',
        portfolio_id='portfolio-1',
        symbol=symbol,
        amount=Decimal(amount),
        average_price=Decimal(average),
        current_price=Decimal(current),
        value=Decimal(amount) * Decimal(current),
        pnl=Decimal(pnl),
        pnl_percentage=Decimal('0'),
        updated_at=NOW,
    )


def test_first_buy_creates_holding_and_moves_cash() -> None:
    plan = PortfolioManager().plan_demo_fill(
        _portfolio(), None, 'buy', 'BTCUSD', Decimal('0.1'), Decimal('30000')
    )

    assert plan.value == Decimal('3000')
    assert plan.balances.available_balance == Decimal('7000')
    assert plan.balances.trading_balance == Decimal('3000')
    assert plan.balances.total_balance == Decimal('10000')
    assert plan.holding_change.action == HoldingChange.CREATE
    assert plan.holding_change.amount == Decimal('0.1')
    assert plan.holding_change.average_price == Decimal('30000')


def test_additional_buy_uses_weighted_average_price() -> None:
    holding = _holding('BTCUSD', '0.1', '30000')

    plan = PortfolioManager().plan_demo_fill(
        _portfolio('7000', '3000'), holding, 'buy', 'BTCUSD', Decimal('0.05'), Decimal('36000')
    )

    assert plan.holding_change.action == HoldingChange.UPDATE
    assert plan.holding_change.holding_id == holding.id
    assert plan.holding_change.amount == Decimal('0.15')
    assert plan.holding_change.average_price == Decimal('32000')
    assert plan.balances.available_balance == Decimal('5200')
    assert plan.balances.trading_balance == Decimal('4800')


def test_buy_beyond_available_balance_goes_negative_by_default() -> None:
    plan = PortfolioManager().plan_demo_fill(
        _portfolio('100'), None, 'buy', 'BTCUSD', Decimal('1'), Decimal('100.01')
    )

    assert plan.balances.available_balance == Decimal('-0.01')
    assert plan.balances.trading_balance == Decimal('100.01')
    assert plan.balances.total_balance == Decimal('100')


def test_buy_beyond_available_balance_is_rejected_when_enforced() -> None:
    with pytest.raises(InsufficientFunds):
        PortfolioManager(enforce_available_balance=True).plan_demo_fill(
            _portfolio('100'), None, 'buy', 'BTCUSD', Decimal('1'), Decimal('100.01')
        )


def test_full_sell_deletes_holding_and_clamps_trading_balance() -> None:
    holding = _holding('BTCUSD', '0.15', '32000')

    plan = PortfolioManager().plan_demo_fill(
        _portfolio('5200', '4800'), holding, 'sell', 'BTCUSD', Decimal('0.15'), Decimal('40000')
    )

    assert plan.holding_change.action == HoldingChange.DELETE
    assert plan.balances.available_balance == Decimal('11200')
    assert plan.balances.trading_balance == Decimal('0')


def test_oversell_never_leaves_a_negative_holding() -> None:
    holding = _holding('ETHUSD', '1', '2000')

    plan = PortfolioManager().plan_demo_fill(
        _portfolio('0', '2000'), holding, 'sell', 'ETHUSD', Decimal('3'), Decimal('2000')
    )

    assert plan.holding_change.action == HoldingChange.DELETE
    assert plan.balances.trading_balance == Decimal('0')


def test_partial_sell_keeps_average_price() -> None:
    holding = _holding('ETHUSD', '2', '2000')

    plan = PortfolioManager().plan_demo_fill(
        _portfolio('0', '4000'), holding, 'sell', 'ETHUSD', Decimal('0.5'), Decimal('2400')
    )

    assert plan.holding_change.action == HoldingChange.UPDATE
    assert plan.holding_change.amount == Decimal('1.5')
    assert plan.holding_change.average_price is None
    assert plan.holding_change.value == Decimal('3600')
    assert plan.balances.available_balance == Decimal('1200')
    assert plan.balances.trading_balance == Decimal('2800')


def test_sell_without_holding_is_rejected_by_default() -> None:
    with pytest.raises(InsufficientHolding):
        PortfolioManager().plan_demo_fill(_portfolio(), None, 'sell', 'SOLUSD', Decimal('1'), Decimal('100'))


def test_uncovered_sell_can_be_enabled() -> None:
    plan = PortfolioManager(allow_uncovered_sells=True).plan_demo_fill(
        _portfolio('1000'), None, 'sell', 'SOLUSD', Decimal('1'), Decimal('100')
    )

    assert plan.holding_change is None
    assert plan.balances.available_balance == Decimal('1100')


def test_revalue_marks_holdings_and_keeps_missing_marks() -> None:
    holdings = [_holding('BTCUSD', '0.1', '30000'), _holding('ETHUSD', '2', '2000', current='2100')]

    valuation = PortfolioManager().revalue(_portfolio('1000', '7000'), holdings, {'BTCUSD': Decimal('33000')})

    btc, eth = valuation.holdings
    assert btc.value == Decimal('3300')
    assert btc.pnl == Decimal('300')
    assert btc.pnl_percentage == Decimal('10')
    assert eth.current_price == Decimal('2100')
    assert eth.pnl == Decimal('200')
    assert valuation.trading_balance == Decimal('7500')
    assert valuation.total_balance == Decimal('8500')
    assert valuation.pnl == Decimal('500')
    assert valuation.pnl_percentage == Decimal('7.1429')


def test_metrics_reports_best_and_worst_performers() -> None:
    holdings = [
        _holding('BTCUSD', '0.1', '30000', current='33000', pnl='300'),
        _holding('ETHUSD', '1', '2000', current='1900', pnl='-100'),
    ]

    metrics = PortfolioManager.metrics(_portfolio('1000', '5200'), holdings)

    assert metrics['totalValue'] == '6200'
    assert metrics['totalPnL'] == '200'
    assert metrics['bestPerformer'] == {'symbol': 'BTCUSD', 'pnl': '300'}
    assert metrics['worstPerformer'] == {'symbol': 'ETHUSD', 'pnl': '-100'}


def test_metrics_without_portfolio() -> None:
    metrics = PortfolioManager.metrics(None, [])

    assert metrics['totalValue'] == '0'
    assert metrics['bestPerformer'] is None


def _apply(portfolio: PortfolioRecord, holdings: dict, plan) -> PortfolioRecord:
    change = plan.holding_change
    if change is not None:
        if change.action == HoldingChange.CREATE:
            holdings[change.symbol] = _holding(change.symbol, str(change.amount), str(change.average_price))
        elif change.action == HoldingChange.UPDATE:
            current = holdings[change.symbol]
            holdings[change.symbol] = replace(
                current,
                amount=change.amount,
                average_price=change.average_price or current.average_price,
            )
        else:
            del holdings[change.symbol]
    return replace(
        portfolio,
        available_balance=plan.balances.available_balance,
        trading_balance=plan.balances.trading_balance,
        total_balance=plan.balances.total_balance,
    )


@pytest.mark.parametrize('seed', range(8))
def test_random_fill_sequences_keep_balances_consistent(seed) -> None:
    rng = random.Random(seed)
    manager = PortfolioManager()
    portfolio = _portfolio()
    holdings: dict = {}

    for _ in range(60):
        side = rng.choice(['buy', 'sell'])
        symbol = rng.choice(['BTCUSD', 'ETHUSD', 'SOLUSD'])
        amount = Decimal(rng.randint(1, 500)) / 100
        price = Decimal(rng.randint(100, 100000)) / 100

        if side == 'sell' and symbol not in holdings:
            with pytest.raises(InsufficientHolding):
                manager.plan_demo_fill(portfolio, None, side, symbol, amount, price)
            continue

        plan = manager.plan_demo_fill(portfolio, holdings.get(symbol), side, symbol, amount, price)
        portfolio = _apply(portfolio, holdings, plan)

        assert portfolio.total_balance == portfolio.available_balance + portfolio.trading_balance
        assert portfolio.trading_balance >= 0
        assert all(holding.amount > 0 for holding in holdings.values())
