"""Typed failures raised by the trading pipeline and its collaborators."""

from __future__ import annotations

from typing import Any, Dict, Optional


class TradingError(Exception):
    """Base class for every error surfaced to API callers."""

    kind = 'trading_error'
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'error': self.message, 'kind': self.kind}
        payload.update(self.context)
        return payload


class InvalidRequest(TradingError):
    kind = 'invalid_request'
    http_status = 400


class SymbolNotFound(TradingError):
    kind = 'symbol_not_found'
    http_status = 400

    def __init__(self, symbol: str, message: Optional[str] = None) -> None:
        super().__init__(message or f'Unsupported trading pair: {symbol}', context={'symbol': symbol})
        self.symbol = symbol


class UpstreamUnavailable(TradingError):
    kind = 'upstream_unavailable'
    http_status = 502
    retryable = True


class PriceUnavailable(TradingError):
    kind = 'price_unavailable'
    http_status = 400


class RiskBlocked(TradingError):
    """Trade denied by the account's risk settings."""

    kind = 'risk_blocked'
    http_status = 403

    def __init__(self, reason: str) -> None:
        super().__init__('Trade blocked by risk management', context={'reason': reason})
        self.reason = reason


class InsufficientHolding(TradingError):
    kind = 'insufficient_holding'
    http_status = 400


class InsufficientFunds(TradingError):
    kind = 'insufficient_funds'
    http_status = 400


class CredentialsMissing(TradingError):
    kind = 'credentials_missing'
    http_status = 400


class VenueRejected(TradingError):
    kind = 'venue_rejected'
    http_status = 400

    def __init__(self, reason: str) -> None:
        super().__init__(reason, context={'reason': reason})
        self.reason = reason


class VenueTimeout(TradingError):
    kind = 'venue_timeout'
    http_status = 504
    retryable = True


class NotFound(TradingError):
    kind = 'not_found'
    http_status = 404


class InvalidStatusTransition(TradingError):
    kind = 'invalid_status_transition'
    http_status = 409


class ReconciliationRequired(TradingError):
    """The venue accepted an order that could not be recorded locally."""

    kind = 'reconciliation_required'
    http_status = 500

    def __init__(self, venue_order_id: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or 'Order was placed on the exchange but could not be recorded',
            context={'venueOrderId': venue_order_id},
        )
        self.venue_order_id = venue_order_id


class Unauthorized(TradingError):
    kind = 'unauthorized'
    http_status = 401


__all__ = [
    'TradingError',
    'InvalidRequest',
    'SymbolNotFound',
    'UpstreamUnavailable',
    'PriceUnavailable',
    'RiskBlocked',
    'InsufficientHolding',
    'InsufficientFunds',
    'CredentialsMissing',
    'VenueRejected',
    'VenueTimeout',
    'NotFound',
    'InvalidStatusTransition',
    'ReconciliationRequired',
    'Unauthorized',
]
