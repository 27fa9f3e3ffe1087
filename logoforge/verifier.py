"""
logoforge/verifier.py

Session verifier: read-only confirmation of a checkout for the success page.

The client calls this after Stripe redirects back. It answers "did this
session get paid, and how many credits is it worth?" using the same credit
computation as the webhook ingestor. It NEVER grants credits - the webhook
is the only grant path. `credited` tells the client whether the webhook has
already landed, so the UI can poll /billing/purchase-status until it has.

Ownership:
    The session's customer must be the customer linked to the caller.
    Otherwise a user could read other users' payment details by guessing
    session IDs.

Known limitation:
    An unknown session answers 404 but another user's session answers 403,
    so a caller can tell whether a guessed session ID exists. No payment
    details leak; the 403 is kept because it makes the attempt visible in
    the audit log (verify.forbidden).
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from logoforge.audit_log import AuditEvent, AuditLogger
from logoforge.config import credits_for
from logoforge.errors import Forbidden, InvalidRequest, NotFound
from logoforge.ledger import CreditStore
from logoforge.providers import PaymentProvider
from logoforge.service import BillingService

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    success: bool
    payment_status: Optional[str]
    session_id: str
    credits: int = 0
    amount: Optional[int] = None
    credited: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        if not self.success:
            # Unpaid sessions only report their status
            return {'success': False, 'payment_status': self.payment_status, 'session_id': self.session_id}
        return data


class SessionVerifier:
    """Confirms checkout sessions against Stripe without touching balances."""

    def __init__(
        self,
        store: CreditStore,
        billing: BillingService,
        provider: PaymentProvider,
        audit: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._billing = billing
        self._provider = provider
        self._audit = audit

    def verify(self, user_id: str, session_id: str) -> VerificationResult:
        """
        Verify a checkout session belongs to user_id and report its status.

        Raises:
            InvalidRequest: session_id missing
            NotFound: user has no linked customer, or Stripe has no such session
            Forbidden: session belongs to another customer
            UpstreamProviderError: Stripe failed
        """
        if not session_id:
            raise InvalidRequest('session_id is required')

        session = self._provider.retrieve_checkout_session(session_id)

        customer_id = self._billing.get_customer_id(user_id)
        if customer_id is None:
            raise NotFound('No payment customer for this user')

        if session.customer_id != customer_id:
            logger.warning(
                "[Verify] User %s tried to verify session %s owned by customer %s",
                user_id, session_id, session.customer_id,
            )
            if self._audit is not None:
                self._audit.log_event(AuditEvent.VERIFY_FORBIDDEN, user_id=user_id, details={
                    'session_id': session_id,
                    'customer_id': session.customer_id,
                })
            raise Forbidden('Session does not belong to this user')

        if not session.is_paid:
            logger.info("[Verify] Session %s not paid yet (%s)", session_id, session.payment_status)
            return VerificationResult(success=False, payment_status=session.payment_status, session_id=session_id)

        return VerificationResult(
            success=True,
            payment_status=session.payment_status,
            session_id=session_id,
            credits=credits_for(session.price_id, session.amount_total),
            amount=session.amount_total,
            credited=self.is_credited(user_id, session_id),
        )

    def is_credited(self, user_id: str, session_id: str) -> bool:
        """Whether the webhook has granted this session to this user."""
        purchase = self._store.find_purchase(session_id)
        return purchase is not None and purchase.user_id == user_id
