"""
logoforge/providers/__init__.py

Payment provider exports.
"""

from logoforge.providers.base import (
    CheckoutResult,
    CheckoutSessionInfo,
    EventKind,
    PaymentProvider,
    SubscriptionSnapshot,
    WebhookEvent,
)
from logoforge.providers.stripe_provider import StripeProvider

__all__ = [
    'PaymentProvider',
    'CheckoutResult',
    'CheckoutSessionInfo',
    'EventKind',
    'SubscriptionSnapshot',
    'WebhookEvent',
    'StripeProvider',
]
