"""
logoforge/providers/base.py

Abstract base class for payment providers.

The billing code talks to PaymentProvider, never to the Stripe SDK. The
provider turns raw webhooks into WebhookEvent objects that are already
classified, so the ingestor only deals with our own event kinds.

Methods to implement:
    - verify_webhook(payload, signature) -> event dict
    - parse_event(event_data) -> WebhookEvent
    - retrieve_checkout_session(session_id) -> CheckoutSessionInfo
    - create_customer(user_id, email) -> customer id
    - delete_customer(customer_id)
    - create_checkout_session(...) -> CheckoutResult
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class EventKind:
    """What a webhook means for the credit system."""
    ONE_TIME_PAYMENT = 'one_time_payment'              # Paid checkout, mode=payment
    SUBSCRIPTION_CHECKOUT = 'subscription_checkout'    # Paid checkout, mode=subscription
    SUBSCRIPTION_CHANGE = 'subscription_change'        # created / updated / deleted
    RENEWAL_PAYMENT = 'renewal_payment'                # Recurring invoice paid
    UNPAID_CHECKOUT = 'unpaid_checkout'                # Completed but not (yet) paid
    IGNORED = 'ignored'

    GRANTING = (ONE_TIME_PAYMENT, SUBSCRIPTION_CHECKOUT, RENEWAL_PAYMENT)


@dataclass
class CheckoutResult:
    """Result of creating a checkout session."""
    success: bool
    checkout_url: Optional[str] = None
    provider_session_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CheckoutSessionInfo:
    """The parts of a provider checkout session the credit system needs."""
    session_id: str
    customer_id: Optional[str]
    payment_status: Optional[str]
    mode: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    price_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == 'paid'


@dataclass
class SubscriptionSnapshot:
    """Subscription fields carried by lifecycle events."""
    subscription_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False


@dataclass
class WebhookEvent:
    """Parsed, classified webhook event."""
    event_id: str
    event_type: str
    kind: str
    raw_payload: dict = field(repr=False, default_factory=dict)

    customer_id: Optional[str] = None
    payment_id: Optional[str] = None     # Dedup key: checkout session or invoice ID
    payment_intent_id: Optional[str] = None  # For refund and dispute lookups
    session_id: Optional[str] = None     # Checkout session (needs line items lookup)
    price_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    subscription: Optional[SubscriptionSnapshot] = None

    @property
    def grants_credits(self) -> bool:
        return self.kind in EventKind.GRANTING


class PaymentProvider(ABC):
    """
    Abstract base class for payment providers.

    Implement this for each payment provider:
        - StripeProvider
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'stripe')."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """
        Verify webhook signature over the raw body and parse it.

        Raises:
            SignatureVerificationFailed: signature missing, wrong, stale,
                or the body is not a valid event
        """

    @abstractmethod
    def parse_event(self, event_data: dict) -> WebhookEvent:
        """Classify a verified event and extract the fields we use."""

    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        """
        Fetch a checkout session including its price.

        Raises:
            SessionNotFound: provider has no such session
            UpstreamProviderError: any other provider failure
        """

    @abstractmethod
    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a provider customer and return its ID."""

    @abstractmethod
    def delete_customer(self, customer_id: str) -> None:
        """Delete a provider customer (cleanup after a lost link race)."""

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> CheckoutResult:
        """Create a hosted checkout session for one unit of price_id."""
