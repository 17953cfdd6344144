"""Monitoring, alerting and price broadcast helpers."""

from .alerts import Alert, AlertLevel, AlertManager
from .broadcast import PriceBroadcaster, Publisher, SubscriberHub
from .logger import configure_logging

__all__ = [
    'Alert',
    'AlertLevel',
    'AlertManager',
    'PriceBroadcaster',
    'Publisher',
    'SubscriberHub',
    'configure_logging',
]
