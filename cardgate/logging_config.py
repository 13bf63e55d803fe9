"""
Logging configuration for Cardgate.

Provides structured JSON logging for operational diagnostics and a
security logger that stays available when the audit sink is not.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .security import generate_request_id, sanitize_for_logging

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for security-relevant events.

    Mirrors access decisions, attestation outcomes and card lifecycle
    changes into the process log. It is also the fallback channel that
    reports audit sink failures.
    """

    def __init__(self, name: str = "cardgate.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        message = kwargs.pop("message", "")
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **sanitize_for_logging(kwargs),
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {message}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def access_decision(
        self,
        card_id: Optional[str],
        reader_id: Optional[str],
        granted: bool,
        reason: Optional[str] = None,
        counter: Optional[int] = None,
        response_time_ms: Optional[int] = None
    ) -> None:
        """Log an access decision."""
        level = logging.INFO if granted else logging.WARNING
        self._log(
            level,
            "ACCESS_GRANTED" if granted else "ACCESS_DENIED",
            card_id=card_id,
            reader_id=reader_id,
            reason=reason,
            counter=counter,
            response_time_ms=response_time_ms,
            message=f"Access {'granted' if granted else 'denied'} for card {card_id}"
        )

    def attestation_event(
        self,
        reader_id: str,
        event: str,
        success: bool,
        reason: Optional[str] = None
    ) -> None:
        """Log a reader attestation step."""
        level = logging.INFO if success else logging.WARNING
        self._log(
            level,
            "ATTESTATION",
            reader_id=reader_id,
            attestation_event=event,
            success=success,
            reason=reason,
            message=f"Reader {reader_id}: {event}"
        )

    def card_lifecycle(self, card_id: str, action: str, **details) -> None:
        """Log issue / extend / revoke."""
        self._log(
            logging.INFO,
            "CARD_LIFECYCLE",
            card_id=card_id,
            action=action,
            **details,
            message=f"Card {card_id} {action}"
        )

    def audit_write_failed(self, event_type: str, card_id: Optional[str], error: str) -> None:
        """Log that an audit event could not be persisted."""
        self._log(
            logging.ERROR,
            "AUDIT_WRITE_FAILED",
            failed_event_type=event_type,
            card_id=card_id,
            error=error,
            message=f"Audit sink rejected {event_type}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = generate_request_id()
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
