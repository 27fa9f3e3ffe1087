import hashlib
import hmac
import itertools
import json
import time

import pytest
from jose import jwt

from logoforge import create_app
from logoforge.audit_log import AuditLogger
from logoforge.config import BillingSettings, WebhookProcessing
from logoforge.db import Database
from logoforge.errors import SessionNotFound
from logoforge.ledger import CreditStore
from logoforge.providers import CheckoutResult, CheckoutSessionInfo, StripeProvider
from logoforge.service import BillingService
from logoforge.webhooks import PaymentEventIngestor

WEBHOOK_SECRET = 'whsec_test_secret'
JWT_SECRET = 'test-jwt-secret'

PRICE_10 = 'price_1SXDQDLkzHXwN84vsj54I3Ly'
PRICE_25 = 'price_1SXDR5LkzHXwN84vNGKH0EJH'
PRICE_55 = 'price_1SXDSPLkzHXwN84vLo9kQlbE'
PRICE_150 = 'price_1SXDSoLkzHXwN84vSe77zkio'


# =============================================================================
# FAKES
# =============================================================================

class FakeStripeProvider(StripeProvider):
    """Real signature verification and event parsing; no network calls."""

    def __init__(self):
        super().__init__(secret_key='sk_test_fake', webhook_secret=WEBHOOK_SECRET, tolerance=300)
        self.sessions = {}
        self.customers = []
        self.deleted_customers = []
        self.checkouts = []
        self._ids = itertools.count(1)

    def add_session(self, session_id, customer_id, payment_status='paid', amount_total=1000,
                    price_id=PRICE_25, mode='payment'):
        self.sessions[session_id] = CheckoutSessionInfo(
            session_id=session_id,
            customer_id=customer_id,
            payment_status=payment_status,
            mode=mode,
            amount_total=amount_total,
            currency='usd',
            price_id=price_id,
        )

    def retrieve_checkout_session(self, session_id):
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionNotFound(f'Checkout session not found: {session_id}')

    def create_customer(self, user_id, email=None):
        customer_id = f'cus_test_{next(self._ids)}'
        self.customers.append(customer_id)
        return customer_id

    def delete_customer(self, customer_id):
        self.deleted_customers.append(customer_id)

    def create_checkout_session(self, customer_id, price_id, mode, success_url, cancel_url, user_id):
        session_id = f'cs_test_{next(self._ids)}'
        self.checkouts.append({
            'session_id': session_id,
            'customer_id': customer_id,
            'price_id': price_id,
            'mode': mode,
            'user_id': user_id,
        })
        return CheckoutResult(
            success=True,
            checkout_url=f'https://checkout.stripe.com/c/pay/{session_id}',
            provider_session_id=session_id,
        )


class FakeGenerator:
    def __init__(self):
        self.prompts = []
        self.error = None
        self.image_url = 'https://images.example.com/logo.png'

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.image_url


# =============================================================================
# STRIPE PAYLOADS
# =============================================================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f'{timestamp}.'.encode('utf-8') + payload
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode('utf-8')


def checkout_event(event_id, session_id, customer_id, amount_total=1000, mode='payment',
                   payment_status='paid', event_type='checkout.session.completed', payment_intent=None):
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'data': {'object': {
            'id': session_id,
            'object': 'checkout.session',
            'customer': customer_id,
            'mode': mode,
            'payment_status': payment_status,
            'payment_intent': payment_intent,
            'amount_total': amount_total,
            'currency': 'usd',
        }},
    }


def subscription_event(event_id, customer_id, status='active', event_type='customer.subscription.updated',
                       price_id='price_monthly', cancel_at_period_end=False):
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'data': {'object': {
            'id': 'sub_test_1',
            'object': 'subscription',
            'customer': customer_id,
            'status': status,
            'cancel_at_period_end': cancel_at_period_end,
            'current_period_start': 1700000000,
            'current_period_end': 1702592000,
            'items': {'data': [{'price': {'id': price_id}}]},
        }},
    }


def invoice_event(event_id, invoice_id, customer_id, amount_paid=2900, price_id='price_monthly',
                  billing_reason='subscription_cycle'):
    return {
        'id': event_id,
        'object': 'event',
        'type': 'invoice.paid',
        'data': {'object': {
            'id': invoice_id,
            'object': 'invoice',
            'customer': customer_id,
            'billing_reason': billing_reason,
            'amount_paid': amount_paid,
            'currency': 'usd',
            'lines': {'data': [{'price': {'id': price_id}}]},
        }},
    }


def make_token(user_id, email=None, secret=JWT_SECRET, expires_in=3600):
    now = int(time.time())
    claims = {'sub': user_id, 'iat': now, 'exp': now + expires_in}
    if email:
        claims['email'] = email
    return jwt.encode(claims, secret, algorithm='HS256')


def auth_headers(user_id, **kwargs):
    return {'Authorization': f'Bearer {make_token(user_id, **kwargs)}'}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    return BillingSettings(
        database_url=f'sqlite:///{tmp_path / "credits.db"}',
        stripe_secret_key='sk_test_fake',
        stripe_webhook_secret=WEBHOOK_SECRET,
        auth_jwt_secret=JWT_SECRET,
        openai_api_key='sk-test-openai',
        webhook_processing=WebhookProcessing.INLINE,
        webhook_max_attempts=3,
        webhook_backoff_seconds=0,
        audit_log_dir=str(tmp_path / 'audit'),
        log_level='DEBUG',
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def store(database):
    return CreditStore(database)


@pytest.fixture
def audit(settings, tmp_path):
    return AuditLogger(tmp_path / 'audit' / 'audit.log')


@pytest.fixture
def provider():
    return FakeStripeProvider()


@pytest.fixture
def billing(database, provider):
    return BillingService(database, provider)


@pytest.fixture
def ingestor(database, store, billing, provider, settings, audit):
    ingestor = PaymentEventIngestor(database, store, billing, provider, settings, audit)
    yield ingestor
    ingestor.shutdown(wait=True)


@pytest.fixture
def deliver(ingestor):
    """Sign and deliver an event dict to the ingestor."""
    def _deliver(event, target=None):
        payload = encode_event(event)
        return (target or ingestor).handle_webhook(payload, sign_payload(payload))
    return _deliver


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def app(settings, provider, generator):
    app = create_app(settings=settings, provider=provider, generator=generator)
    app.config['TESTING'] = True
    yield app
    services = app.extensions['logoforge']
    services.ingestor.shutdown(wait=True)
    services.database.dispose()


@pytest.fixture
def services(app):
    return app.extensions['logoforge']


@pytest.fixture
def client(app):
    return app.test_client()
