"""
logoforge/audit_log.py

Audit logging for money-relevant and security-relevant billing events.

Logs:
- Timestamp (ISO 8601 UTC)
- Event type
- User ID (if applicable, truncated)
- Event details (whitelisted keys only)

Alert-class events (failed refunds, unattributable webhooks, webhooks that
exhausted their retries or sat unprocessed, forged webhooks) are the
operational alerting path: they are written here and logged at ERROR so
log-based alerting can pick them up.

Usage:
    from logoforge.audit_log import AuditEvent, AuditLogger

    audit = AuditLogger(Path('/data/audit/audit.log'))
    audit.log_event(
        AuditEvent.CREDITS_GRANTED,
        user_id=user_id,
        details={'amount': 25, 'external_payment_id': 'cs_123'},
    )
"""

import fcntl
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditEvent(Enum):
    """
    Auditable billing events.

    Categories:
    - CREDITS_*: Balance changes
    - WEBHOOK_*: Payment provider callbacks
    - VERIFY_*: Client-side payment verification
    """

    CREDITS_GRANTED = "credits.granted"
    CREDITS_DEDUCTED = "credits.deducted"
    CREDITS_REFUNDED = "credits.refunded"
    CREDITS_REFUND_FAILED = "credits.refund_failed"

    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_DUPLICATE = "webhook.duplicate"
    WEBHOOK_SIGNATURE_FAILED = "webhook.signature_failed"
    WEBHOOK_ATTRIBUTION_FAILED = "webhook.attribution_failed"
    WEBHOOK_PROCESSING_FAILED = "webhook.processing_failed"
    WEBHOOK_STALE_PENDING = "webhook.stale_pending"

    VERIFY_FORBIDDEN = "verify.forbidden"


ALERT_EVENTS = {
    AuditEvent.CREDITS_REFUND_FAILED,
    AuditEvent.WEBHOOK_SIGNATURE_FAILED,
    AuditEvent.WEBHOOK_ATTRIBUTION_FAILED,
    AuditEvent.WEBHOOK_PROCESSING_FAILED,
    AuditEvent.WEBHOOK_STALE_PENDING,
}


class AuditLogger:
    """
    Thread-safe audit logger with append-only file output.

    Log file format: JSON Lines (one JSON object per line)

    Each log entry contains:
    {
        "timestamp": "2025-12-14T15:30:00.000000+00:00",
        "event": "credits.granted",
        "user_id": "3f1c2a9b...41d0",
        "alert": false,
        "details": {...},
        "request_id": "1a2b3c4d"
    }
    """

    # Allowed detail keys (whitelist approach)
    SAFE_KEYS = {
        'amount', 'balance', 'cost', 'credits', 'description', 'event_id',
        'event_type', 'external_payment_id', 'customer_id', 'session_id',
        'attempts', 'error', 'reason', 'status', 'action',
    }

    def __init__(self, log_path: Optional[Path] = None):
        self._lock = threading.Lock()

        if log_path:
            self._log_path = Path(log_path)
        else:
            log_dir = Path(os.environ.get('AUDIT_LOG_DIR', '/data/audit'))
            self._log_path = log_dir / 'audit.log'

        self._enabled = self._init_log_file()

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _init_log_file(self) -> bool:
        """Initialize log directory and file."""
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            if not self._log_path.exists():
                self._log_path.touch()
            logger.info("[AuditLog] Logging to %s", self._log_path)
            return True
        except OSError as e:
            logger.warning("[AuditLog] Could not initialize audit log (%s); events go to the app log only", e)
            return False

    def _truncate_user_id(self, user_id: Optional[str]) -> Optional[str]:
        """First 8 + last 4 characters is enough for correlation."""
        if not user_id:
            return None
        if len(user_id) <= 12:
            return user_id
        return f"{user_id[:8]}...{user_id[-4:]}"

    def _sanitize_details(self, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not details:
            return {}

        sanitized = {}
        for key, value in details.items():
            if key in self.SAFE_KEYS:
                if isinstance(value, str) and len(value) > 500:
                    value = value[:500] + '...'
                sanitized[key] = value
            else:
                sanitized[f'_skipped_{key}'] = type(value).__name__
        return sanitized

    def log_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: The type of event (from AuditEvent enum)
            user_id: Owning user (will be truncated)
            details: Event-specific metadata (will be sanitized)
            request_id: ID for correlating related events
        """
        alert = event_type in ALERT_EVENTS
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event': event_type.value,
            'user_id': self._truncate_user_id(user_id),
            'alert': alert,
            'request_id': request_id or uuid.uuid4().hex[:8],
            'details': self._sanitize_details(details),
        }

        if alert:
            logger.error("[AUDIT] ALERT %s user=%s details=%s", entry['event'], entry['user_id'], entry['details'])
        else:
            logger.info("[AUDIT] %s user=%s", entry['event'], entry['user_id'])

        self._write_entry(entry)

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        """Write log entry to file (thread-safe, append-only)."""
        if not self._enabled:
            return

        log_line = json.dumps(entry, default=str) + '\n'

        with self._lock:
            try:
                with open(self._log_path, 'a', encoding='utf-8') as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    f.write(log_line)
                    f.flush()
                    os.fsync(f.fileno())
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            except OSError as e:
                logger.error("[AuditLog] Error writing to log: %s", e)

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[AuditEvent] = None,
        alerts_only: bool = False,
    ) -> list:
        """
        Retrieve recent audit events, newest first.

        Args:
            count: Maximum events to return
            event_type: Filter by event type
            alerts_only: Only alert-class events
        """
        if not self._enabled or not self._log_path.exists():
            return []

        events = []
        try:
            with open(self._log_path, 'r', encoding='utf-8') as f:
                lines = f.readlines()
        except OSError as e:
            logger.error("[AuditLog] Error reading log: %s", e)
            return []

        for line in reversed(lines):
            if len(events) >= count:
                break
            try:
                entry = json.loads(line.strip())
            except json.JSONDecodeError:
                continue

            if event_type and entry.get('event') != event_type.value:
                continue
            if alerts_only and not entry.get('alert'):
                continue
            events.append(entry)

        return events
