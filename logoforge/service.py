"""
logoforge/service.py

BillingService - customer links, checkout sessions and subscription status.

Your app calls BillingService, never the payment provider directly.

Design:
    1. A user gets a Stripe customer the first time they check out
    2. The user <-> customer link is 1:1 and enforced by the database
    3. Webhooks are attributed through that link, so checkout sessions are
       always created for the linked customer
    4. Subscription status is metadata only; credits come from payments

Usage:
    result = billing.create_checkout(
        user_id=user.id,
        email=user.email,
        price_id='price_1SXDSPLkzHXwN84vLo9kQlbE',
        success_url='https://app.example.com/purchase/success?session_id={CHECKOUT_SESSION_ID}',
        cancel_url='https://app.example.com/purchase',
    )
    redirect(result.checkout_url)
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from logoforge.config import get_entry
from logoforge.db import Database
from logoforge.errors import InvalidRequest, UpstreamProviderError
from logoforge.models import PaymentCustomerLink, Subscription, utcnow
from logoforge.providers import CheckoutResult, PaymentProvider, SubscriptionSnapshot

logger = logging.getLogger(__name__)


class BillingService:
    """Coordinates the payment provider with our customer and subscription records."""

    def __init__(self, database: Database, provider: PaymentProvider):
        self._database = database
        self._provider = provider

    @property
    def provider(self) -> PaymentProvider:
        return self._provider

    # =========================================================================
    # CUSTOMER LINKS
    # =========================================================================

    def get_customer_id(self, user_id: str) -> Optional[str]:
        with self._database.session() as db:
            return db.scalar(
                select(PaymentCustomerLink.external_customer_id)
                .where(PaymentCustomerLink.user_id == user_id)
            )

    def get_user_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        with self._database.session() as db:
            return db.scalar(
                select(PaymentCustomerLink.user_id)
                .where(PaymentCustomerLink.external_customer_id == customer_id)
            )

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Get or create the Stripe customer for a user.

        Two concurrent first checkouts may both create a Stripe customer; the
        unique link constraint keeps exactly one and the loser's customer is
        deleted again.

        Returns:
            The linked external customer ID
        """
        existing = self.get_customer_id(user_id)
        if existing:
            return existing

        customer_id = self._provider.create_customer(user_id, email)

        with self._database.session() as db:
            db.add(PaymentCustomerLink(user_id=user_id, external_customer_id=customer_id))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                winner = None
            else:
                winner = customer_id

        if winner:
            logger.info("[Billing] Linked user %s to customer %s", user_id, customer_id)
            return winner

        winner = self.get_customer_id(user_id)
        if winner is None:
            # The conflict was on the customer side, not ours
            raise UpstreamProviderError(f'Customer {customer_id} is already linked to another user')

        logger.info(
            "[Billing] Lost customer link race for user %s; deleting orphan customer %s",
            user_id, customer_id,
        )
        try:
            self._provider.delete_customer(customer_id)
        except UpstreamProviderError:
            logger.error("[Billing] Orphan customer %s left in Stripe for user %s", customer_id, user_id)
        return winner

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    def create_checkout(
        self,
        user_id: str,
        email: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        """
        Create a checkout session for purchasing credits.

        Flow:
            1. Validate price against the catalog
            2. Ensure the user has a linked Stripe customer
            3. Create the provider checkout session for that customer

        Raises:
            InvalidRequest: price not in the catalog
            UpstreamProviderError: Stripe failed
        """
        entry = get_entry(price_id)
        if entry is None:
            raise InvalidRequest(f'Invalid price: {price_id}')

        customer_id = self.ensure_customer(user_id, email)

        result = self._provider.create_checkout_session(
            customer_id=customer_id,
            price_id=entry.price_id,
            mode=entry.mode,
            success_url=success_url,
            cancel_url=cancel_url,
            user_id=user_id,
        )
        if not result.success:
            raise UpstreamProviderError(result.error or 'Checkout creation failed')

        logger.info(
            "[Billing] Checkout created for user %s, price %s, session %s",
            user_id, price_id, result.provider_session_id,
        )
        return result

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def upsert_subscription(self, customer_id: str, snapshot: SubscriptionSnapshot) -> None:
        """Record the latest subscription status for a customer."""
        values = {
            'subscription_id': snapshot.subscription_id,
            'price_id': snapshot.price_id,
            'status': snapshot.status,
            'current_period_start': snapshot.current_period_start,
            'current_period_end': snapshot.current_period_end,
            'cancel_at_period_end': snapshot.cancel_at_period_end,
            'updated_at': utcnow(),
        }

        with self._database.session() as db:
            row = db.scalar(select(Subscription).where(Subscription.customer_id == customer_id))
            if row is None:
                db.add(Subscription(customer_id=customer_id, **values))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = db.scalar(select(Subscription).where(Subscription.customer_id == customer_id))

            if row is not None:
                for key, value in values.items():
                    setattr(row, key, value)
                db.commit()

        logger.info("[Billing] Subscription for customer %s is now %s", customer_id, snapshot.status)

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        customer_id = self.get_customer_id(user_id)
        if not customer_id:
            return None
        with self._database.session() as db:
            return db.scalar(select(Subscription).where(Subscription.customer_id == customer_id))
