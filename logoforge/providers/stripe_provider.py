"""
logoforge/providers/stripe_provider.py

Stripe implementation of PaymentProvider.

This is the ONLY module that imports the stripe library.
All Stripe-specific logic is contained here.

Supports:
    - Checkout Sessions (hosted payment page), one-time and subscription
    - Webhook signature verification over the raw request body
    - Event classification:
        checkout.session.completed / async_payment_succeeded
        customer.subscription.created / updated / deleted
        invoice.paid (subscription renewals)

Stripe Dashboard Setup Required:
    1. Create Products with the prices listed in logoforge/config.py
    2. Enable webhooks pointing to /billing/webhook
    3. Subscribe to the events above
"""

import json
import logging
from typing import Any, Optional

import stripe

from logoforge.errors import SessionNotFound, SignatureVerificationFailed, UpstreamProviderError
from logoforge.providers.base import (
    CheckoutResult, CheckoutSessionInfo, EventKind, PaymentProvider, SubscriptionSnapshot, WebhookEvent,
)

logger = logging.getLogger(__name__)


def _dig(obj: Any, *path, default=None):
    """Walk nested dicts / StripeObjects / lists, returning default on any gap."""
    current = obj
    for key in path:
        if current is None:
            return default
        try:
            current = current[key]
        except (KeyError, IndexError, TypeError):
            return default
    return default if current is None else current


class StripeProvider(PaymentProvider):
    """Stripe payment provider implementation."""

    CHECKOUT_EVENTS = (
        'checkout.session.completed',
        'checkout.session.async_payment_succeeded',
    )
    SUBSCRIPTION_EVENTS = (
        'customer.subscription.created',
        'customer.subscription.updated',
        'customer.subscription.deleted',
    )
    RENEWAL_EVENTS = ('invoice.paid',)

    def __init__(self, secret_key: str = '', webhook_secret: str = '', tolerance: int = 300):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

        if not secret_key:
            logger.warning("[Stripe] STRIPE_SECRET_KEY not set")
        elif secret_key.startswith('sk_test_'):
            logger.info("[Stripe] Running in TEST mode")
        else:
            logger.info("[Stripe] Running in LIVE mode")

    @property
    def name(self) -> str:
        return 'stripe'

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """
        Verify the Stripe-Signature header and parse the event.

        Args:
            payload: Raw request body (bytes, unparsed)
            signature: Stripe-Signature header
        """
        if not self._webhook_secret:
            raise SignatureVerificationFailed('Webhook secret not configured')
        if not signature:
            raise SignatureVerificationFailed('No signature found')

        body = payload.decode('utf-8') if isinstance(payload, bytes) else payload

        try:
            stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationFailed(f'Webhook signature verification failed: {e}')

        try:
            event = json.loads(body)
        except ValueError as e:
            raise SignatureVerificationFailed(f'Invalid payload: {e}')

        if not isinstance(event, dict) or not event.get('id') or not event.get('type'):
            raise SignatureVerificationFailed('Invalid payload: not a Stripe event')
        return event

    def parse_event(self, event_data: dict) -> WebhookEvent:
        """Classify a verified Stripe event."""
        event_id = event_data.get('id')
        event_type = event_data.get('type')
        obj = _dig(event_data, 'data', 'object', default={})

        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.IGNORED,
            raw_payload=event_data,
            customer_id=self._object_id(obj.get('customer')),
        )

        if event_type in self.CHECKOUT_EVENTS:
            self._parse_checkout(obj, event)
        elif event_type in self.SUBSCRIPTION_EVENTS:
            self._parse_subscription(obj, event)
        elif event_type in self.RENEWAL_EVENTS:
            self._parse_invoice(obj, event)

        return event

    def _parse_checkout(self, session: dict, event: WebhookEvent):
        event.session_id = session.get('id')
        event.payment_id = session.get('id')
        event.payment_intent_id = self._object_id(session.get('payment_intent'))
        event.mode = session.get('mode')
        event.payment_status = session.get('payment_status')
        event.amount_cents = session.get('amount_total')
        event.currency = (session.get('currency') or 'usd').lower()

        if event.payment_status != 'paid':
            event.kind = EventKind.UNPAID_CHECKOUT
        elif event.mode == 'subscription':
            event.kind = EventKind.SUBSCRIPTION_CHECKOUT
        elif event.mode == 'payment':
            event.kind = EventKind.ONE_TIME_PAYMENT

    def _parse_subscription(self, subscription: dict, event: WebhookEvent):
        event.kind = EventKind.SUBSCRIPTION_CHANGE
        first_item = _dig(subscription, 'items', 'data', 0, default={})
        status = subscription.get('status') or 'unknown'
        if event.event_type == 'customer.subscription.deleted':
            status = 'canceled'

        event.price_id = _dig(first_item, 'price', 'id')
        event.subscription = SubscriptionSnapshot(
            subscription_id=subscription.get('id'),
            status=status,
            price_id=event.price_id,
            # Newer API versions moved the period onto the subscription item
            current_period_start=subscription.get('current_period_start') or first_item.get('current_period_start'),
            current_period_end=subscription.get('current_period_end') or first_item.get('current_period_end'),
            cancel_at_period_end=bool(subscription.get('cancel_at_period_end')),
        )

    def _parse_invoice(self, invoice: dict, event: WebhookEvent):
        if invoice.get('billing_reason') != 'subscription_cycle':
            # First invoice is covered by the subscription checkout
            return

        line = _dig(invoice, 'lines', 'data', 0, default={})
        event.kind = EventKind.RENEWAL_PAYMENT
        event.payment_id = invoice.get('id')
        event.payment_intent_id = self._object_id(invoice.get('payment_intent'))
        event.amount_cents = invoice.get('amount_paid')
        event.currency = (invoice.get('currency') or 'usd').lower()
        event.price_id = (
            _dig(line, 'price', 'id')
            or _dig(line, 'pricing', 'price_details', 'price')
        )

    @staticmethod
    def _object_id(value: Any) -> Optional[str]:
        # Expandable fields arrive as an ID or as the expanded object
        if value is None or isinstance(value, str):
            return value
        return _dig(value, 'id')

    # =========================================================================
    # CHECKOUT SESSIONS
    # =========================================================================

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        """Fetch a checkout session with its line items expanded."""
        if not self._secret_key:
            raise UpstreamProviderError('Stripe not configured')

        try:
            session = stripe.checkout.Session.retrieve(
                session_id,
                expand=['line_items'],
                api_key=self._secret_key,
            )
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                raise SessionNotFound(f'Checkout session not found: {session_id}')
            raise UpstreamProviderError(f'Stripe rejected session lookup: {e.user_message or e}', e.http_status)
        except stripe.StripeError as e:
            logger.error("[Stripe] Session retrieve error for %s: %s", session_id, e)
            raise UpstreamProviderError('Payment provider error', e.http_status)

        return CheckoutSessionInfo(
            session_id=_dig(session, 'id'),
            customer_id=self._object_id(_dig(session, 'customer')),
            payment_status=_dig(session, 'payment_status'),
            mode=_dig(session, 'mode'),
            amount_total=_dig(session, 'amount_total'),
            currency=_dig(session, 'currency'),
            price_id=_dig(session, 'line_items', 'data', 0, 'price', 'id'),
        )

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session.

        Args:
            customer_id: Linked Stripe customer
            price_id: Stripe price ID from the catalog
            mode: 'payment' or 'subscription'
            success_url: Redirect URL after success (include {CHECKOUT_SESSION_ID})
            cancel_url: Redirect URL if cancelled
            user_id: Our user, recorded on the session for support lookups
        """
        if not self._secret_key:
            return CheckoutResult(success=False, error='Stripe not configured')

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=['card'],
                line_items=[{'price': price_id, 'quantity': 1}],
                mode=mode,
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata={'user_id': user_id},
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            logger.error("[Stripe] Checkout session error: %s", e)
            return CheckoutResult(success=False, error=e.user_message or 'Payment system error')

        logger.info("[Stripe] Created checkout session %s for customer %s", session.id, customer_id)
        return CheckoutResult(
            success=True,
            checkout_url=session.url,
            provider_session_id=session.id,
        )

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        if not self._secret_key:
            raise UpstreamProviderError('Stripe not configured')

        params = {'metadata': {'user_id': user_id}, 'api_key': self._secret_key}
        if email:
            params['email'] = email

        try:
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as e:
            logger.error("[Stripe] Customer create error for user %s: %s", user_id, e)
            raise UpstreamProviderError('Failed to create payment customer', e.http_status)

        logger.info("[Stripe] Created customer %s for user %s", customer.id, user_id)
        return customer.id

    def delete_customer(self, customer_id: str) -> None:
        try:
            stripe.Customer.delete(customer_id, api_key=self._secret_key)
        except stripe.StripeError as e:
            logger.error("[Stripe] Failed to delete orphan customer %s: %s", customer_id, e)
            raise UpstreamProviderError('Failed to delete payment customer', e.http_status)
