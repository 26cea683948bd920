"""
Audit logging for the authorization gateway.

Security-relevant gateway decisions (auto-approval, consent, CSRF rejection,
callback outcome) are written to stdout as one JSON object per line, prefixed
with "AUDIT: ". Events carry identifiers and outcomes only; token values,
codes and cookie contents are never logged.

Configuration via environment variables:
- AUDIT_LOG_ENABLED: Enable/disable audit logging (default: true)
- AUDIT_LOG_LEVEL: Minimum severity to log - CRITICAL, HIGH, MEDIUM, LOW (default: MEDIUM)
- AUDIT_LOG_INCLUDE_LOW: Include LOW severity events (default: false)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class AuditSeverity(Enum):
    """Severity levels for audit events mapped to Python logging levels."""
    CRITICAL = logging.CRITICAL  # Forgery attempts, upstream compromise signals
    HIGH = logging.ERROR         # Rejected flows, upstream failures
    MEDIUM = logging.WARNING     # Consent granted, authorization completed
    LOW = logging.INFO           # Dialog shown, auto-approval


class AuditAction(Enum):
    """Gateway stages an audit event can come from."""
    AUTHORIZE = "authorize"
    CONSENT = "consent"
    CALLBACK = "callback"


SENSITIVE_PATTERNS = (
    "access_token",
    "refresh_token",
    "client_secret",
    "code=",
    "token=",
    "bearer ",
    "authorization:",
    "cookie",
)


def sanitize_error_message(error_message: str) -> str:
    """Truncate and redact error text before it reaches the audit stream."""
    if len(error_message) > 500:
        error_message = error_message[:497] + "..."

    lower_msg = error_message.lower()
    if any(pattern in lower_msg for pattern in SENSITIVE_PATTERNS):
        return "Error occurred (details redacted for security)"
    return error_message


class AuditLogFilter(logging.Filter):
    """Drops audit records below the configured severity."""

    def __init__(self, min_severity: AuditSeverity, include_low: bool = False):
        super().__init__()
        self.min_severity = min_severity
        self.include_low = include_low

    def filter(self, record: logging.LogRecord) -> bool:
        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True
        if severity == AuditSeverity.LOW:
            return self.include_low
        return severity.value >= self.min_severity.value


class AuditLogFormatter(logging.Formatter):
    """Formats audit records as `AUDIT: {json}`."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'audit_event'):
            return super().format(record)

        event = dict(record.audit_event)
        if event.get('error_message'):
            event['error_message'] = sanitize_error_message(event['error_message'])

        try:
            return f"AUDIT: {json.dumps(event, ensure_ascii=False)}"
        except (TypeError, ValueError) as e:
            return f"AUDIT: {{\"error\": \"Failed to serialize audit event: {type(e).__name__}\"}}"


class AuditLogger:
    """Structured audit trail on a dedicated, non-propagating logger."""

    def __init__(self, stream=None):
        self.enabled = os.getenv("AUDIT_LOG_ENABLED", "true").lower() in ("true", "1", "yes")

        level_str = os.getenv("AUDIT_LOG_LEVEL", "MEDIUM").upper()
        try:
            self.min_severity = AuditSeverity[level_str]
        except KeyError:
            logging.warning(f"Invalid AUDIT_LOG_LEVEL '{level_str}', defaulting to MEDIUM")
            self.min_severity = AuditSeverity.MEDIUM

        self.include_low = os.getenv("AUDIT_LOG_INCLUDE_LOW", "false").lower() in ("true", "1", "yes")

        self.logger = logging.getLogger("gateway.audit")
        self.logger.setLevel(logging.DEBUG)  # Filter does the real work
        self.logger.propagate = False

        for existing in list(self.logger.handlers):
            self.logger.removeHandler(existing)
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(AuditLogFormatter())
        handler.addFilter(AuditLogFilter(self.min_severity, self.include_low))
        self.logger.addHandler(handler)

    def should_log(self, severity: AuditSeverity) -> bool:
        if not self.enabled:
            return False
        if severity == AuditSeverity.LOW:
            return self.include_low
        return severity.value >= self.min_severity.value

    def log_event(
        self,
        event_type: str,
        severity: AuditSeverity,
        action: AuditAction,
        status: str,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        additional_safe_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an audit event with safe fields only.

        Args:
            event_type: What happened (e.g. "consent_granted")
            severity: Event severity level
            action: Gateway stage
            status: "success" or "failure"
            client_id: Requesting OAuth client
            user_id: Upstream user identifier, once known
            status_code: HTTP status returned to the browser
            error_message: Generic error message (no sensitive details)
            source_ip: Source IP address of the request
            user_agent: User agent string
            additional_safe_fields: Additional known-safe fields to include
        """
        if not self.should_log(severity):
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "severity": severity.name,
            "action": action.value,
            "status": status,
        }
        optional = {
            "client_id": client_id,
            "user_id": user_id,
            "status_code": status_code,
            "error_message": error_message,
            "source_ip": source_ip,
            "user_agent": user_agent,
        }
        event.update({k: v for k, v in optional.items() if v is not None})
        if additional_safe_fields:
            event.update(additional_safe_fields)

        self.logger.log(
            severity.value,
            "Audit event",
            extra={'audit_event': event, 'audit_severity': severity}
        )


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
