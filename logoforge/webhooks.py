"""
logoforge/webhooks.py

Payment event ingestor: the only path by which purchases turn into credits.

Flow for every delivery:
    1. Verify the signature over the raw body (reject with 400 if it fails)
    2. Durably record the event in payment_events (unique on event id)
    3. Acknowledge with 200 - Stripe stops redelivering
    4. Process: classify, attribute customer -> user, compute credits, grant

Step 4 runs after the acknowledgement (thread pool, or inline when
WEBHOOK_PROCESSING=inline). Failures there are retried with exponential
backoff. Events left PENDING because their task was lost after the
acknowledgement (worker killed, deploy) are found by the stale sweep, which
runs at startup and then every WEBHOOK_SWEEP_INTERVAL_SECONDS; each one is
audited as an alert and re-driven. FAILED events are re-driven by
`flask billing retry-events`.

Idempotency:
    - Redelivered event IDs hit the payment_events unique constraint
    - Two different events for the same payment (completed + async
      succeeded) hit the credit_transactions unique constraint in grant()

Usage:
    ack = ingestor.handle_webhook(request.get_data(), request.headers.get('Stripe-Signature'))
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from logoforge.audit_log import AuditEvent, AuditLogger
from logoforge.config import BillingSettings, WebhookProcessing, credits_for, get_entry
from logoforge.db import Database
from logoforge.errors import AttributionFailure, NotFound, PersistenceConflict, SessionNotFound, SignatureVerificationFailed
from logoforge.ledger import CreditStore
from logoforge.models import EventStatus, PaymentEvent, utcnow
from logoforge.providers import EventKind, PaymentProvider, WebhookEvent
from logoforge.service import BillingService

logger = logging.getLogger(__name__)


@dataclass
class WebhookAck:
    """What the webhook endpoint tells the provider."""
    event_id: str
    event_type: str
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {'received': True}


class PaymentEventIngestor:
    """Records, acknowledges and processes payment provider webhooks."""

    def __init__(
        self,
        database: Database,
        store: CreditStore,
        billing: BillingService,
        provider: PaymentProvider,
        settings: BillingSettings,
        audit: Optional[AuditLogger] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._database = database
        self._store = store
        self._billing = billing
        self._provider = provider
        self._settings = settings
        self._audit = audit
        self._executor = executor
        self._sweeper = None
        self._stop_sweeping = threading.Event()

    # =========================================================================
    # RECEIVE
    # =========================================================================

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify, record and schedule a webhook delivery.

        Raises:
            SignatureVerificationFailed: nothing was recorded or processed
            PersistenceConflict: the event could not be recorded (provider
                should redeliver)
        """
        try:
            event_data = self._provider.verify_webhook(payload, signature or '')
        except SignatureVerificationFailed as e:
            logger.warning("[Webhook] Signature verification failed: %s", e.message)
            self._log(AuditEvent.WEBHOOK_SIGNATURE_FAILED, details={'reason': e.message})
            raise

        event_id = event_data['id']
        event_type = event_data['type']
        logger.info("[Webhook] Received %s (%s)", event_type, event_id)

        row_id, status, duplicate = self._record(event_id, event_type, event_data)

        if duplicate:
            logger.info("[Webhook] Duplicate delivery of %s (status=%s)", event_id, status)
            self._log(AuditEvent.WEBHOOK_DUPLICATE, details={'event_id': event_id, 'status': status})
        else:
            self._log(AuditEvent.WEBHOOK_RECEIVED, details={'event_id': event_id, 'event_type': event_type})

        if status in EventStatus.RETRYABLE:
            self._dispatch(row_id)

        return WebhookAck(event_id=event_id, event_type=event_type, duplicate=duplicate)

    def _record(self, event_id: str, event_type: str, event_data: dict):
        """Insert the event row; returns (row id, status, duplicate)."""
        with self._database.session() as db:
            row = PaymentEvent(
                provider=self._provider.name,
                provider_event_id=event_id,
                event_type=event_type,
                payload_json=event_data,
                status=EventStatus.PENDING,
                attempts=0,
            )
            db.add(row)
            try:
                db.commit()
                return row.id, row.status, False
            except IntegrityError:
                db.rollback()

            existing = db.scalar(
                select(PaymentEvent).where(
                    PaymentEvent.provider == self._provider.name,
                    PaymentEvent.provider_event_id == event_id,
                )
            )
            if existing is None:
                raise PersistenceConflict(f'Could not record webhook event {event_id}')
            return existing.id, existing.status, True

    def _dispatch(self, row_id: int):
        if self._settings.webhook_processing == WebhookProcessing.INLINE:
            self.process_event(row_id)
            return

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.webhook_workers,
                thread_name_prefix='webhook',
            )
        future = self._executor.submit(self.process_event, row_id)
        future.add_done_callback(_log_worker_crash)

    def shutdown(self, wait: bool = True):
        """Stop the sweeper and background workers (pending events stay PENDING in the DB)."""
        if self._sweeper is not None:
            self._stop_sweeping.set()
            if wait:
                self._sweeper.join()
            self._sweeper = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # =========================================================================
    # PROCESS
    # =========================================================================

    def process_event(self, event_row_id: int) -> str:
        """
        Process one recorded event with bounded retries.

        Returns:
            Final EventStatus of the row
        """
        with self._database.session() as db:
            row = db.get(PaymentEvent, event_row_id)
            if row is None:
                raise NotFound(f'Payment event {event_row_id} not found')
            if row.status not in EventStatus.RETRYABLE:
                return row.status
            payload = row.payload_json
            event_id = row.provider_event_id

        event = self._provider.parse_event(payload)

        if event.kind not in EventKind.GRANTING and event.kind != EventKind.SUBSCRIPTION_CHANGE:
            logger.info("[Webhook] Ignoring %s (%s, kind=%s)", event.event_type, event_id, event.kind)
            self._finish(event_row_id, EventStatus.IGNORED)
            return EventStatus.IGNORED

        max_attempts = max(1, self._settings.webhook_max_attempts)
        last_error = None

        for attempt in range(1, max_attempts + 1):
            try:
                self._apply(event)
            except AttributionFailure as e:
                logger.error("[Webhook] Cannot attribute %s (%s): %s", event.event_type, event_id, e.message)
                self._finish(event_row_id, EventStatus.UNATTRIBUTED, error=e.message, attempts=1)
                self._log(AuditEvent.WEBHOOK_ATTRIBUTION_FAILED, details={
                    'event_id': event_id,
                    'event_type': event.event_type,
                    'customer_id': event.customer_id,
                    'error': e.message,
                })
                return EventStatus.UNATTRIBUTED
            except Exception as e:
                last_error = e
                logger.warning(
                    "[Webhook] Attempt %s/%s for %s failed: %s",
                    attempt, max_attempts, event_id, e,
                )
                self._record_attempt(event_row_id, str(e))
                if attempt < max_attempts:
                    time.sleep(self._settings.webhook_backoff_seconds * 2 ** (attempt - 1))
            else:
                self._finish(event_row_id, EventStatus.PROCESSED, attempts=1)
                return EventStatus.PROCESSED

        logger.error("[Webhook] Giving up on %s after %s attempts: %s", event_id, max_attempts, last_error)
        self._finish(event_row_id, EventStatus.FAILED, error=str(last_error))
        self._log(AuditEvent.WEBHOOK_PROCESSING_FAILED, details={
            'event_id': event_id,
            'event_type': event.event_type,
            'attempts': max_attempts,
            'error': str(last_error),
        })
        return EventStatus.FAILED

    def _apply(self, event: WebhookEvent):
        """Apply one classified event. Safe to repeat."""
        if not event.customer_id:
            raise AttributionFailure(f'{event.event_type} {event.event_id} has no customer')

        user_id = self._billing.get_user_for_customer(event.customer_id)
        if user_id is None:
            raise AttributionFailure(f'No user linked to customer {event.customer_id}')

        if event.kind == EventKind.SUBSCRIPTION_CHANGE:
            self._billing.upsert_subscription(event.customer_id, event.subscription)
            return

        if not event.payment_id:
            raise AttributionFailure(f'{event.event_type} {event.event_id} has no payment id')

        price_id = event.price_id
        if price_id is None and event.session_id:
            price_id = self._lookup_session_price(event.session_id)

        credits = credits_for(price_id, event.amount_cents)
        if credits <= 0:
            logger.warning(
                "[Webhook] Payment %s for user %s maps to 0 credits (price=%s, amount=%s)",
                event.payment_id, user_id, price_id, event.amount_cents,
            )
            return

        entry = get_entry(price_id)
        if event.kind == EventKind.RENEWAL_PAYMENT:
            description = f'Subscription renewal: {credits} credits'
        elif entry is not None:
            description = f'Purchased {entry.name}'
        else:
            description = f'Purchased {credits} credits'

        transaction_id = self._store.grant(
            user_id, credits, description,
            external_payment_id=event.payment_id,
            payment_intent_id=event.payment_intent_id,
        )
        self._log(AuditEvent.CREDITS_GRANTED, user_id=user_id, details={
            'credits': credits,
            'external_payment_id': event.payment_id,
            'event_id': event.event_id,
        })
        logger.info(
            "[Webhook] %s -> %s credits for user %s (txn %s)",
            event.payment_id, credits, user_id, transaction_id,
        )

    def _lookup_session_price(self, session_id: str) -> Optional[str]:
        # Webhook payloads do not carry line items
        try:
            return self._provider.retrieve_checkout_session(session_id).price_id
        except SessionNotFound:
            logger.warning("[Webhook] Session %s not found; using amount fallback", session_id)
            return None

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def retry_pending(self, limit: int = 100) -> int:
        """
        Re-drive events left PENDING or FAILED.

        Returns:
            Number of events processed to PROCESSED or IGNORED
        """
        with self._database.session() as db:
            row_ids = list(db.scalars(
                select(PaymentEvent.id)
                .where(PaymentEvent.status.in_(EventStatus.RETRYABLE))
                .order_by(PaymentEvent.received_at)
                .limit(limit)
            ))

        logger.info("[Webhook] Re-driving %s event(s)", len(row_ids))
        resolved = 0
        for row_id in row_ids:
            if self.process_event(row_id) in (EventStatus.PROCESSED, EventStatus.IGNORED):
                resolved += 1
        return resolved

    def sweep_stale(self, older_than: Optional[float] = None, limit: int = 100) -> int:
        """
        Alert on and re-drive PENDING events that nothing is processing.

        Args:
            older_than: Seconds since receipt before a PENDING row counts as
                stranded (default WEBHOOK_STALE_AFTER_SECONDS)
            limit: Max events per sweep

        Returns:
            Number of stale events found
        """
        if older_than is None:
            older_than = self._settings.webhook_stale_after_seconds
        cutoff = utcnow() - timedelta(seconds=older_than)

        with self._database.session() as db:
            stale = list(db.execute(
                select(PaymentEvent.id, PaymentEvent.provider_event_id, PaymentEvent.event_type)
                .where(
                    PaymentEvent.status == EventStatus.PENDING,
                    PaymentEvent.received_at <= cutoff,
                )
                .order_by(PaymentEvent.received_at)
                .limit(limit)
            ))

        for row_id, event_id, event_type in stale:
            logger.error("[Webhook] %s (%s) was acknowledged but never processed; re-driving", event_type, event_id)
            self._log(AuditEvent.WEBHOOK_STALE_PENDING, details={
                'event_id': event_id,
                'event_type': event_type,
                'status': EventStatus.PENDING,
            })
            self.process_event(row_id)

        return len(stale)

    def start_sweeper(self):
        """
        Sweep once now; in background mode keep sweeping every
        WEBHOOK_SWEEP_INTERVAL_SECONDS on a daemon thread.
        """
        interval = self._settings.webhook_sweep_interval_seconds
        if self._settings.webhook_processing == WebhookProcessing.INLINE or interval <= 0:
            self._sweep_logged()
            return
        if self._sweeper is not None:
            return

        self._stop_sweeping.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name='webhook-sweeper',
            daemon=True,
        )
        self._sweeper.start()

    def _sweep_loop(self, interval: float):
        while True:
            self._sweep_logged()
            if self._stop_sweeping.wait(interval):
                return

    def _sweep_logged(self):
        # Sweep errors are logged, never raised
        try:
            self.sweep_stale()
        except Exception:
            logger.exception("[Webhook] Stale event sweep failed")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _record_attempt(self, row_id: int, error: str):
        with self._database.session() as db:
            row = db.get(PaymentEvent, row_id)
            row.attempts = (row.attempts or 0) + 1
            row.error_message = error
            db.commit()

    def _finish(self, row_id: int, status: str, error: Optional[str] = None, attempts: int = 0):
        with self._database.session() as db:
            row = db.get(PaymentEvent, row_id)
            row.status = status
            row.attempts = (row.attempts or 0) + attempts
            row.error_message = error
            row.processed_at = utcnow()
            db.commit()

    def _log(self, event: AuditEvent, user_id: Optional[str] = None, details: Optional[dict] = None):
        if self._audit is not None:
            self._audit.log_event(event, user_id=user_id, details=details)


def _log_worker_crash(future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("[Webhook] Background processing crashed: %s", error, exc_info=error)
