"""Risk guardrails for trade requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Dict, Mapping, Optional, Sequence

from ..database.models import MONEY_CONTEXT
from ..errors import InvalidRequest

logger = logging.getLogger(__name__)

_CENT = Decimal('0.01')


def _money(value: Decimal) -> str:
    context = Context(prec=max(MONEY_CONTEXT.prec, value.adjusted() + 4))
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP, context=context))


def _positive_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def _positive_int(value: Any) -> Optional[int]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        number = int(value)
    else:
        text = str(value).strip()
        if not text.isdigit():
            return None
        number = int(text)
    return number if number >= 1 else None


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class RiskSettings:
    """Per-account limits. ``None`` means the limit is not configured."""

    enabled: bool = False
    max_position_size: Optional[Decimal] = None
    max_daily_loss: Optional[Decimal] = None
    max_open_positions: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> 'RiskSettings':
        raw = raw or {}
        return cls(
            enabled=raw.get('enabled') is True,
            max_position_size=_positive_decimal(raw.get('maxPositionSize')),
            max_daily_loss=_positive_decimal(raw.get('maxDailyLoss')),
            max_open_positions=_positive_int(raw.get('maxOpenPositions')),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'enabled': self.enabled}
        if self.max_position_size is not None:
            payload['maxPositionSize'] = str(self.max_position_size)
        if self.max_daily_loss is not None:
            payload['maxDailyLoss'] = str(self.max_daily_loss)
        if self.max_open_positions is not None:
            payload['maxOpenPositions'] = self.max_open_positions
        return payload


def validate_risk_settings_update(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a risk settings update and return the settings to store.

    Only recognised fields are kept; the result replaces the stored settings.
    """
    settings: Dict[str, Any] = {}
    if isinstance(payload.get('enabled'), bool):
        settings['enabled'] = payload['enabled']

    raw = payload.get('maxPositionSize')
    if raw is not None and raw != '':
        value = _positive_decimal(raw)
        if value is None:
            raise InvalidRequest('Max position size must be a positive number greater than zero')
        settings['maxPositionSize'] = str(value)

    raw = payload.get('maxDailyLoss')
    if raw is not None and raw != '':
        value = _positive_decimal(raw)
        if value is None:
            raise InvalidRequest('Max daily loss must be a positive number greater than zero')
        settings['maxDailyLoss'] = str(value)

    raw = payload.get('maxOpenPositions')
    if raw is not None and raw != '':
        count = _positive_int(raw)
        if count is None:
            raise InvalidRequest('Max open positions must be an integer of at least 1')
        settings['maxOpenPositions'] = count

    return settings


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> 'RiskDecision':
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> 'RiskDecision':
        return cls(False, reason)


class RiskEvaluator:
    """Decides whether a proposed trade fits the account's limits.

    Evaluation is a pure function of its arguments. Limits are checked in
    order: position size, open positions, daily loss. The first failing
    limit produces the denial.
    """

    def evaluate(
        self,
        account_id: str,
        portfolio_id: str,
        trade_value: Decimal,
        side: str,
        symbol: str,
        risk_settings: RiskSettings,
        holdings: Sequence[Any],
        todays_trades: Sequence[Any],
    ) -> RiskDecision:
        if not risk_settings.enabled:
            return RiskDecision.allow()

        is_buy = side == 'buy'
        limit = risk_settings.max_position_size
        if limit is not None and is_buy and trade_value > limit:
            return RiskDecision.deny(
                f'Trade value ${_money(trade_value)} exceeds maximum position size limit of ${_money(limit)}'
            )

        max_open = risk_settings.max_open_positions
        if max_open is not None and is_buy:
            open_positions = len(holdings)
            already_held = any(holding.symbol == symbol for holding in holdings)
            if open_positions >= max_open and not already_held:
                return RiskDecision.deny(
                    f'Maximum open positions limit reached ({open_positions}/{max_open}). '
                    f'Cannot open new position in {symbol}.'
                )

        max_loss = risk_settings.max_daily_loss
        if max_loss is not None:
            # Net notional flow, not realised P&L: sells add, buys subtract.
            with localcontext(MONEY_CONTEXT):
                flow = Decimal('0')
                for trade in todays_trades:
                    notional = trade.amount * trade.price
                    flow += notional if trade.side == 'sell' else -notional
                flow += trade_value if not is_buy else -trade_value
            if flow < 0 and abs(flow) >= max_loss:
                logger.info(
                    'Daily loss check denied %s %s for account %s (portfolio %s)',
                    side, symbol, account_id, portfolio_id,
                )
                return RiskDecision.deny(
                    f'Daily loss limit would be exceeded (${_money(abs(flow))}/${_money(max_loss)} including this trade)'
                )

        return RiskDecision.allow()


__all__ = [
    'RiskDecision',
    'RiskEvaluator',
    'RiskSettings',
    'start_of_utc_day',
    'validate_risk_settings_update',
]
