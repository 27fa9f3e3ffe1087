"""
logoforge/models.py

SQLAlchemy models for the credit system.

Tables:
    - credit_accounts: Authoritative per-user balance
    - credit_transactions: Append-only log (+purchase, -deduction, +refund)
    - payment_customer_links: User <-> Stripe customer (1:1, never re-linked)
    - payment_events: Webhook event log (idempotency + processing state)
    - subscriptions: Subscription status metadata per Stripe customer

Design principles:
    1. Users live in the external auth provider - user_id is an opaque string
    2. Idempotency: unique constraints prevent double-processing
    3. Audit trail: every balance change has a transaction row
    4. Portable types so the same models run on PostgreSQL and SQLite
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Index, Integer, String,
    Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CREDIT ACCOUNT
# =============================================================================

class CreditAccount(Base):
    """
    Spendable credit balance for one user.

    Created implicitly by the first grant or refund; a user with no row has
    a balance of 0. Only the ledger mutates it.
    """
    __tablename__ = 'credit_accounts'

    user_id = Column(String(128), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
    )

    def __repr__(self):
        return f'<CreditAccount {self.user_id} balance={self.balance}>'


# =============================================================================
# CREDIT TRANSACTIONS
# =============================================================================

class TransactionKind:
    """Transaction kind constants. The kind carries the sign."""
    PURCHASE = 'purchase'      # +amount
    DEDUCTION = 'deduction'    # -amount
    REFUND = 'refund'          # +amount

    CREDITING = (PURCHASE, REFUND)


class CreditTransaction(Base):
    """
    Append-only credit log entry.

    amount is always the unsigned count; kind says which way it moved:
        +25 purchase  (external_payment_id=cs_...)
        -1  deduction
        +1  refund

    external_payment_id is only set on purchases and is globally unique:
    the database, not the application, guarantees one purchase per payment.
    """
    __tablename__ = 'credit_transactions'

    id = Column(String(36), primary_key=True, default=_uuid)

    user_id = Column(String(128), nullable=False, index=True)

    kind = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(Text)

    # Stripe checkout session / invoice ID (purchases only)
    external_payment_id = Column(String(255), unique=True, nullable=True)

    # Stripe payment intent behind the purchase, for refund and dispute lookups
    payment_intent_id = Column(String(255), nullable=True, index=True)

    # Balance right after this entry (denormalized for display)
    balance_after = Column(Integer)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_credit_transactions_amount_positive'),
    )

    @property
    def signed_amount(self) -> int:
        return -self.amount if self.kind == TransactionKind.DEDUCTION else self.amount

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': self.kind,
            'amount': self.amount,
            'delta': self.signed_amount,
            'description': self.description,
            'external_payment_id': self.external_payment_id,
            'payment_intent_id': self.payment_intent_id,
            'balance_after': self.balance_after,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        sign = '-' if self.kind == TransactionKind.DEDUCTION else '+'
        return f'<CreditTransaction user={self.user_id} {sign}{self.amount} ({self.kind})>'


# Index for history queries
Index('idx_credit_transactions_user_created', CreditTransaction.user_id, CreditTransaction.created_at)


# =============================================================================
# PAYMENT CUSTOMER LINK
# =============================================================================

class PaymentCustomerLink(Base):
    """
    Maps an internal user to a Stripe customer.

    Created lazily on first checkout. Both sides are unique, so a user can
    never end up with two customers and a customer never maps to two users.
    """
    __tablename__ = 'payment_customer_links'

    id = Column(Integer, primary_key=True)

    user_id = Column(String(128), nullable=False, unique=True)
    external_customer_id = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f'<PaymentCustomerLink {self.user_id} -> {self.external_customer_id}>'


# =============================================================================
# PAYMENT EVENTS (Webhook Idempotency + Work Queue)
# =============================================================================

class EventStatus:
    """Processing state of a recorded webhook event."""
    PENDING = 'pending'              # Recorded and acknowledged, not yet processed
    PROCESSED = 'processed'          # Handled (credits granted or metadata updated)
    IGNORED = 'ignored'              # Authentic but not relevant
    UNATTRIBUTED = 'unattributed'    # Customer does not map to a user
    FAILED = 'failed'                # Retries exhausted

    RETRYABLE = (PENDING, FAILED)


class PaymentEvent(Base):
    """
    Webhook event log.

    Before processing any webhook:
    1. Insert into this table (unique constraint on the provider event id)
    2. If duplicate, acknowledge and do nothing
    3. If new, acknowledge and process

    Rows left PENDING or FAILED are picked up again by retry_pending().
    """
    __tablename__ = 'payment_events'

    id = Column(Integer, primary_key=True)

    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=False)

    event_type = Column(String(100))
    payload_json = Column(JSON)

    status = Column(String(20), nullable=False, default=EventStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    received_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint('provider', 'provider_event_id', name='uq_payment_events_provider_event'),
    )

    def __repr__(self):
        return f'<PaymentEvent {self.provider}:{self.provider_event_id} {self.status}>'


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class Subscription(Base):
    """
    Subscription status metadata, one row per Stripe customer.

    Lifecycle events only update this table; credits for a subscription come
    from its checkout completion and from renewal invoices.
    """
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True)

    customer_id = Column(String(255), nullable=False, unique=True)
    subscription_id = Column(String(255))
    price_id = Column(String(255))
    status = Column(String(50), nullable=False, default='not_started')

    current_period_start = Column(Integer)
    current_period_end = Column(Integer)
    cancel_at_period_end = Column(Boolean, default=False)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            'subscription_id': self.subscription_id,
            'price_id': self.price_id,
            'status': self.status,
            'current_period_start': self.current_period_start,
            'current_period_end': self.current_period_end,
            'cancel_at_period_end': bool(self.cancel_at_period_end),
        }

    def __repr__(self):
        return f'<Subscription {self.customer_id} {self.status}>'
