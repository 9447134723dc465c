"""
Operational alerts.

Raised when a job exhausts its retries or fails permanently. Jobs are never
auto-disabled; the alert is the operator's signal to intervene.

- LoggingAlertSink: CRITICAL log line (always available)
- WebhookAlertSink: HTTP POST with bounded exponential backoff
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)

# Webhook configuration
ALERT_TIMEOUT_SECONDS = 10
ALERT_MAX_RETRIES = 3
ALERT_RETRY_BASE_DELAY = 1.0  # seconds
ALERT_RETRY_MAX_DELAY = 10.0  # seconds


@dataclass(frozen=True)
class Alert:
    """An operational alert about a job."""

    event: str
    job_id: str
    job_name: str
    job_type: str
    message: str
    retry_count: int = 0
    max_retries: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "job_type": self.job_type,
            "message": self.message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "details": self.details,
            "timestamp": self.raised_at.isoformat(),
        }


class AlertSink(Protocol):
    """Destination for operational alerts."""

    def send(self, alert: Alert) -> None:
        ...


class LoggingAlertSink:
    """Writes alerts as CRITICAL log lines."""

    def send(self, alert: Alert) -> None:
        logger.critical(
            f"ALERT [{alert.event}] job {alert.job_name} ({alert.job_id}, "
            f"type={alert.job_type}, retries={alert.retry_count}/{alert.max_retries}): "
            f"{alert.message}"
        )


class WebhookAlertSink:
    """
    POSTs alerts as JSON to a webhook URL.

    Delivery failures are logged and never propagate to the caller: an
    unreachable alert endpoint must not change a job's outcome.
    """

    def __init__(
        self,
        url: str,
        timeout: float = ALERT_TIMEOUT_SECONDS,
        max_retries: int = ALERT_MAX_RETRIES,
        background: bool = True,
    ):
        """
        Args:
            url: Webhook URL to POST to
            timeout: Request timeout in seconds
            max_retries: Maximum number of delivery attempts
            background: Deliver on a daemon thread instead of blocking
        """
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.background = background

    def send(self, alert: Alert) -> None:
        if self.background:
            thread = threading.Thread(
                target=self.deliver,
                args=(alert,),
                daemon=True,
            )
            thread.start()
        else:
            self.deliver(alert)

    def deliver(self, alert: Alert) -> tuple[bool, Optional[str]]:
        """
        Send the alert synchronously with retry logic.

        Returns:
            Tuple of (success: bool, error_message: Optional[str])
        """
        payload = alert.to_payload()
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(
                        self.url,
                        json=payload,
                        headers={
                            "Content-Type": "application/json",
                            "User-Agent": "BodaCoverScheduler/1.0",
                            "X-Job-ID": alert.job_id,
                            "X-Alert-Event": alert.event,
                        },
                    )

                    if 200 <= response.status_code < 300:
                        logger.info(
                            f"Alert sent for job {alert.job_id} "
                            f"(attempt {attempt + 1}/{self.max_retries}, status={response.status_code})"
                        )
                        return True, None

                    last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                    logger.warning(
                        f"Alert webhook failed for job {alert.job_id} "
                        f"(attempt {attempt + 1}/{self.max_retries}): {last_error}"
                    )

            except httpx.TimeoutException:
                last_error = f"Timeout after {self.timeout}s"
                logger.warning(
                    f"Alert webhook timeout for job {alert.job_id} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            except httpx.RequestError as e:
                last_error = f"Request error: {str(e)}"
                logger.warning(
                    f"Alert webhook request error for job {alert.job_id} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                )

            if attempt < self.max_retries - 1:
                delay = min(
                    ALERT_RETRY_BASE_DELAY * (2 ** attempt),
                    ALERT_RETRY_MAX_DELAY,
                )
                time.sleep(delay)

        logger.error(
            f"Alert webhook failed after {self.max_retries} attempts for job {alert.job_id}: {last_error}"
        )
        return False, last_error


class CompositeAlertSink:
    """Fans an alert out to several sinks."""

    def __init__(self, sinks: Sequence[AlertSink]):
        self.sinks = list(sinks)

    def send(self, alert: Alert) -> None:
        for sink in self.sinks:
            try:
                sink.send(alert)
            except Exception as e:
                logger.error(f"Alert sink {type(sink).__name__} failed: {e}")


def build_alert_sink(webhook_url: Optional[str] = None) -> AlertSink:
    """Logging sink, plus a webhook sink when a URL is configured."""
    if not webhook_url:
        return LoggingAlertSink()
    return CompositeAlertSink([LoggingAlertSink(), WebhookAlertSink(webhook_url)])
