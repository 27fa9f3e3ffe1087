import time
from concurrent.futures import Future, ThreadPoolExecutor

import pytest
from sqlalchemy import select

from logoforge.audit_log import AuditEvent
from logoforge.config import WebhookProcessing
from logoforge.errors import SignatureVerificationFailed
from logoforge.models import EventStatus, PaymentEvent, Subscription
from logoforge.webhooks import PaymentEventIngestor

from conftest import (
    PRICE_25, PRICE_55, checkout_event, encode_event, invoice_event, sign_payload, subscription_event,
)


@pytest.fixture
def customer(billing):
    """user-1 linked to a Stripe customer."""
    return billing.ensure_customer('user-1', 'user1@example.com')


def _event_row(database, event_id):
    with database.session() as db:
        return db.scalar(select(PaymentEvent).where(PaymentEvent.provider_event_id == event_id))


# =============================================================================
# SIGNATURES
# =============================================================================

def test_bad_signature_is_rejected_and_not_recorded(ingestor, database, audit, customer):
    payload = encode_event(checkout_event('evt_1', 'cs_1', customer))

    with pytest.raises(SignatureVerificationFailed):
        ingestor.handle_webhook(payload, sign_payload(payload, secret='whsec_wrong'))

    assert _event_row(database, 'evt_1') is None
    alerts = audit.get_recent_events(alerts_only=True)
    assert alerts[0]['event'] == AuditEvent.WEBHOOK_SIGNATURE_FAILED.value


def test_tampered_body_is_rejected(ingestor, store, customer):
    payload = encode_event(checkout_event('evt_1', 'cs_1', customer, amount_total=500))
    signature = sign_payload(payload)
    tampered = payload.replace(b'"amount_total": 500', b'"amount_total": 5000')

    with pytest.raises(SignatureVerificationFailed):
        ingestor.handle_webhook(tampered, signature)
    assert store.get_balance('user-1') == 0


def test_stale_timestamp_is_rejected(ingestor):
    payload = encode_event(checkout_event('evt_1', 'cs_1', 'cus_x'))
    with pytest.raises(SignatureVerificationFailed):
        ingestor.handle_webhook(payload, sign_payload(payload, timestamp=int(time.time()) - 3600))


def test_missing_signature_is_rejected(ingestor):
    payload = encode_event(checkout_event('evt_1', 'cs_1', 'cus_x'))
    with pytest.raises(SignatureVerificationFailed):
        ingestor.handle_webhook(payload, None)


# =============================================================================
# ONE-TIME PAYMENTS
# =============================================================================

def test_paid_checkout_grants_catalog_credits(deliver, provider, store, database, customer):
    provider.add_session('cs_1', customer, price_id=PRICE_25, amount_total=1000)

    ack = deliver(checkout_event('evt_1', 'cs_1', customer))

    assert ack.to_dict() == {'received': True}
    assert ack.duplicate is False
    assert store.get_balance('user-1') == 25
    [purchase] = store.history('user-1')
    assert purchase.external_payment_id == 'cs_1'
    assert _event_row(database, 'evt_1').status == EventStatus.PROCESSED


def test_redelivered_event_is_acknowledged_once(deliver, provider, store, customer):
    provider.add_session('cs_1', customer, price_id=PRICE_25)

    deliver(checkout_event('evt_1', 'cs_1', customer))
    ack = deliver(checkout_event('evt_1', 'cs_1', customer))

    assert ack.duplicate is True
    assert store.get_balance('user-1') == 25


def test_two_events_for_one_session_grant_once(deliver, provider, store, customer):
    provider.add_session('cs_1', customer, price_id=PRICE_55, amount_total=2000)

    deliver(checkout_event('evt_1', 'cs_1', customer))
    deliver(checkout_event('evt_2', 'cs_1', customer, event_type='checkout.session.async_payment_succeeded'))

    assert store.get_balance('user-1') == 55
    assert len(store.history('user-1')) == 1


def test_purchase_keeps_payment_intent(deliver, provider, store, customer):
    provider.add_session('cs_1', customer, price_id=PRICE_25)

    deliver(checkout_event('evt_1', 'cs_1', customer, payment_intent='pi_1'))

    purchase = store.find_by_payment_intent('pi_1')
    assert purchase.user_id == 'user-1'
    assert purchase.external_payment_id == 'cs_1'


def test_unknown_price_falls_back_to_amount(deliver, provider, store, customer):
    provider.add_session('cs_1', customer, price_id='price_retired', amount_total=700)

    deliver(checkout_event('evt_1', 'cs_1', customer, amount_total=700))

    assert store.get_balance('user-1') == 10


def test_session_lookup_miss_falls_back_to_amount(deliver, store, customer):
    deliver(checkout_event('evt_1', 'cs_gone', customer, amount_total=2000))
    assert store.get_balance('user-1') == 55


def test_unpaid_checkout_is_ignored(deliver, store, database, customer):
    deliver(checkout_event('evt_1', 'cs_1', customer, payment_status='unpaid'))

    assert store.get_balance('user-1') == 0
    assert _event_row(database, 'evt_1').status == EventStatus.IGNORED


def test_irrelevant_event_is_ignored(deliver, database):
    deliver({'id': 'evt_1', 'type': 'customer.created', 'data': {'object': {'id': 'cus_1'}}})
    assert _event_row(database, 'evt_1').status == EventStatus.IGNORED


def test_unattributable_customer_is_flagged_without_blocking_others(deliver, provider, store, database, audit, customer):
    provider.add_session('cs_orphan', 'cus_unknown', price_id=PRICE_25)
    provider.add_session('cs_1', customer, price_id=PRICE_25)

    deliver(checkout_event('evt_orphan', 'cs_orphan', 'cus_unknown'))
    deliver(checkout_event('evt_1', 'cs_1', customer))

    assert _event_row(database, 'evt_orphan').status == EventStatus.UNATTRIBUTED
    assert store.get_balance('user-1') == 25
    alerts = audit.get_recent_events(event_type=AuditEvent.WEBHOOK_ATTRIBUTION_FAILED)
    assert alerts[0]['details']['customer_id'] == 'cus_unknown'


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

def test_subscription_checkout_grants_credits(deliver, provider, store, customer):
    provider.add_session('cs_sub', customer, price_id='price_monthly', amount_total=2900, mode='subscription')

    deliver(checkout_event('evt_1', 'cs_sub', customer, amount_total=2900, mode='subscription'))

    assert store.get_balance('user-1') == 55


def test_subscription_changes_only_update_status(deliver, store, database, customer):
    deliver(subscription_event('evt_1', customer, status='active', event_type='customer.subscription.created'))
    deliver(subscription_event('evt_2', customer, status='active', cancel_at_period_end=True))

    with database.session() as db:
        row = db.scalar(select(Subscription).where(Subscription.customer_id == customer))
    assert row.status == 'active'
    assert row.cancel_at_period_end is True
    assert row.current_period_end == 1702592000
    assert store.get_balance('user-1') == 0

    deliver(subscription_event('evt_3', customer, status='active', event_type='customer.subscription.deleted'))
    with database.session() as db:
        row = db.scalar(select(Subscription).where(Subscription.customer_id == customer))
    assert row.status == 'canceled'


def test_renewal_invoice_grants_with_invoice_id(deliver, store, customer):
    deliver(invoice_event('evt_1', 'in_1', customer, amount_paid=2900))
    deliver(invoice_event('evt_2', 'in_1', customer, amount_paid=2900))

    assert store.get_balance('user-1') == 55
    [purchase] = store.history('user-1')
    assert purchase.external_payment_id == 'in_1'


def test_subscription_change_for_unknown_customer_is_flagged(deliver, database, audit):
    deliver(subscription_event('evt_1', 'cus_unknown'))

    assert _event_row(database, 'evt_1').status == EventStatus.UNATTRIBUTED
    [alert] = audit.get_recent_events(event_type=AuditEvent.WEBHOOK_ATTRIBUTION_FAILED)
    assert alert['details']['customer_id'] == 'cus_unknown'
    with database.session() as db:
        assert db.scalar(select(Subscription)) is None


def test_first_invoice_is_left_to_checkout(deliver, store, database, customer):
    deliver(invoice_event('evt_1', 'in_1', customer, billing_reason='subscription_create'))

    assert store.get_balance('user-1') == 0
    assert _event_row(database, 'evt_1').status == EventStatus.IGNORED


# =============================================================================
# RETRIES AND RECOVERY
# =============================================================================

def test_transient_failure_is_retried(deliver, provider, store, database, customer, monkeypatch):
    provider.add_session('cs_1', customer, price_id=PRICE_25)
    real_grant = store.grant
    calls = []

    def flaky_grant(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError('database is locked')
        return real_grant(*args, **kwargs)

    monkeypatch.setattr(store, 'grant', flaky_grant)

    deliver(checkout_event('evt_1', 'cs_1', customer))

    row = _event_row(database, 'evt_1')
    assert row.status == EventStatus.PROCESSED
    assert row.attempts == 2
    assert store.get_balance('user-1') == 25


def test_exhausted_retries_are_recoverable(deliver, ingestor, provider, store, database, audit, customer, monkeypatch):
    provider.add_session('cs_1', customer, price_id=PRICE_25)
    real_grant = store.grant

    def broken_grant(*args, **kwargs):
        raise RuntimeError('database unavailable')

    monkeypatch.setattr(store, 'grant', broken_grant)
    ack = deliver(checkout_event('evt_1', 'cs_1', customer))

    # Still acknowledged: the event is recorded and will be re-driven
    assert ack.to_dict() == {'received': True}
    row = _event_row(database, 'evt_1')
    assert row.status == EventStatus.FAILED
    assert row.attempts == 3
    assert 'database unavailable' in row.error_message
    assert audit.get_recent_events(event_type=AuditEvent.WEBHOOK_PROCESSING_FAILED)

    monkeypatch.setattr(store, 'grant', real_grant)
    assert ingestor.retry_pending() == 1
    assert _event_row(database, 'evt_1').status == EventStatus.PROCESSED
    assert store.get_balance('user-1') == 25


def test_background_processing(database, store, billing, provider, settings, audit, customer, deliver):
    background = PaymentEventIngestor(
        database, store, billing, provider,
        settings.with_overrides(webhook_processing=WebhookProcessing.BACKGROUND),
        audit,
    )
    provider.add_session('cs_1', customer, price_id=PRICE_25)

    deliver(checkout_event('evt_1', 'cs_1', customer), target=background)
    background.shutdown(wait=True)

    assert store.get_balance('user-1') == 25


def test_concurrent_redeliveries_grant_once(deliver, provider, store, customer):
    provider.add_session('cs_1', customer, price_id=PRICE_55, amount_total=2000)
    event = checkout_event('evt_1', 'cs_1', customer)

    with ThreadPoolExecutor(max_workers=6) as pool:
        acks = list(pool.map(lambda _: deliver(event), range(6)))

    assert sum(1 for ack in acks if not ack.duplicate) == 1
    assert store.get_balance('user-1') == 55


class _LostTaskExecutor:
    """Accepts work and never runs it, like a worker killed after the ack."""

    def submit(self, fn, *args, **kwargs):
        return Future()

    def shutdown(self, wait=True):
        pass


def _strand_event(database, store, billing, provider, settings, audit, customer, deliver):
    lost = PaymentEventIngestor(
        database, store, billing, provider,
        settings.with_overrides(webhook_processing=WebhookProcessing.BACKGROUND),
        audit,
        executor=_LostTaskExecutor(),
    )
    provider.add_session('cs_1', customer, price_id=PRICE_25)
    ack = deliver(checkout_event('evt_1', 'cs_1', customer), target=lost)
    assert ack.to_dict() == {'received': True}
    assert _event_row(database, 'evt_1').status == EventStatus.PENDING


def test_stranded_event_is_alerted_and_redriven(database, store, billing, provider, settings, audit, customer, deliver):
    _strand_event(database, store, billing, provider, settings, audit, customer, deliver)

    restarted = PaymentEventIngestor(database, store, billing, provider, settings, audit)
    assert restarted.sweep_stale(older_than=3600) == 0
    assert restarted.sweep_stale(older_than=0) == 1

    assert _event_row(database, 'evt_1').status == EventStatus.PROCESSED
    assert store.get_balance('user-1') == 25
    [alert] = audit.get_recent_events(event_type=AuditEvent.WEBHOOK_STALE_PENDING)
    assert alert['alert'] is True
    assert alert['details']['event_id'] == 'evt_1'


def test_startup_sweep_recovers_stranded_event(database, store, billing, provider, settings, audit, customer, deliver):
    _strand_event(database, store, billing, provider, settings, audit, customer, deliver)

    restarted = PaymentEventIngestor(
        database, store, billing, provider,
        settings.with_overrides(webhook_stale_after_seconds=0),
        audit,
    )
    restarted.start_sweeper()

    assert _event_row(database, 'evt_1').status == EventStatus.PROCESSED
    assert store.get_balance('user-1') == 25


def test_periodic_sweep_runs_in_background(database, store, billing, provider, settings, audit, customer, deliver):
    _strand_event(database, store, billing, provider, settings, audit, customer, deliver)

    sweeping = PaymentEventIngestor(
        database, store, billing, provider,
        settings.with_overrides(
            webhook_processing=WebhookProcessing.BACKGROUND,
            webhook_stale_after_seconds=0,
            webhook_sweep_interval_seconds=0.05,
        ),
        audit,
    )
    sweeping.start_sweeper()
    try:
        deadline = time.time() + 5
        while store.get_balance('user-1') == 0 and time.time() < deadline:
            time.sleep(0.05)
    finally:
        sweeping.shutdown(wait=True)

    assert store.get_balance('user-1') == 25
    assert _event_row(database, 'evt_1').status == EventStatus.PROCESSED
