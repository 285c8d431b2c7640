"""
Alert sinks and escalation routing.

Escalation is fire-and-forget from the pipeline's point of view: a sink that
fails to deliver is logged and otherwise ignored, so alerting problems never
change ingestion or refresh outcomes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import enum
import logging

import httpx

from core.timeutils import utcnow

logger = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    """Alert severity"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class Alert:
    severity: Severity
    subsystem: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "subsystem": self.subsystem,
            "message": self.message,
            "context": self.context,
            "raised_at": self.raised_at.isoformat(),
        }


class AlertSink(ABC):
    """Destination for escalated failures (notification channel, pager, ...)"""

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        pass


class LoggingAlertSink(AlertSink):
    """Writes alerts to the application log"""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
        Severity.CRITICAL: logging.CRITICAL,
    }

    async def send(self, alert: Alert) -> None:
        logger.log(
            self._LEVELS[alert.severity],
            f"[ALERT:{alert.subsystem}] {alert.message}",
            extra={"error_context": alert.context}
        )


class WebhookAlertSink(AlertSink):
    """
    Posts alerts as JSON to an HTTP endpoint (chat webhook, SNS HTTP
    subscription, incident tool).
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(self, alert: Alert) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=alert.to_dict())
            response.raise_for_status()


class Alerter:
    """
    Routes alerts to named sinks.

    Jobs and components name an escalation target; unknown or missing
    targets fall back to the default sink.
    """

    def __init__(
        self,
        sinks: Optional[Dict[str, AlertSink]] = None,
        default: str = "log"
    ):
        self.sinks: Dict[str, AlertSink] = dict(sinks or {})
        self.sinks.setdefault(default, LoggingAlertSink())
        self.default = default

    def add_sink(self, name: str, sink: AlertSink):
        self.sinks[name] = sink

    async def escalate(
        self,
        severity: Severity,
        subsystem: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        target: Optional[str] = None
    ) -> Alert:
        alert = Alert(
            severity=severity,
            subsystem=subsystem,
            message=message,
            context=dict(context or {})
        )
        sink = self.sinks.get(target or self.default)
        if sink is None:
            logger.warning(f"Unknown escalation target '{target}', using '{self.default}'")
            sink = self.sinks[self.default]

        try:
            await sink.send(alert)
        except Exception as e:
            # Delivery problems are the sink's concern, not the caller's
            logger.error(f"Alert delivery failed via {type(sink).__name__}: {e}")

        return alert
