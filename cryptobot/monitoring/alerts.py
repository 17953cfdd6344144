"""Alerting primitives."""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

logger = logging.getLogger(__name__)


class AlertLevel(str, enum.Enum):
    INFO = 'INFO'
    WARNING = 'WARNING'
    CRITICAL = 'CRITICAL'


_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.CRITICAL,
}


@dataclass
class Alert:
    message: str
    level: AlertLevel
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'level': self.level.value,
            'context': dict(self.context),
            'createdAt': self.created_at.isoformat(),
        }


class AlertManager:
    """Keeps the most recent operational alerts, e.g. venue orders that need reconciliation.

    Alerts are written to the log at the matching level as they are raised.
    """

    def __init__(self, history: int = 100) -> None:
        self._history: Deque[Alert] = deque(maxlen=history)

    def raise_alert(self, level: AlertLevel, message: str, **context: Any) -> Alert:
        alert = Alert(message, level, context)
        self._history.append(alert)
        logger.log(_LOG_LEVELS[level], '%s %s', message, context or '')
        return alert

    def warning(self, message: str, **context: Any) -> Alert:
        return self.raise_alert(AlertLevel.WARNING, message, **context)

    def critical(self, message: str, **context: Any) -> Alert:
        return self.raise_alert(AlertLevel.CRITICAL, message, **context)

    def latest(self, limit: int = 10) -> List[Alert]:
        return list(self._history)[-limit:]


__all__ = ['Alert', 'AlertLevel', 'AlertManager']
