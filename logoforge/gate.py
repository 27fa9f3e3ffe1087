"""
logoforge/gate.py

Deduction gate: charge credits before a costly action, refund if it fails.

Protocol:
    1. Deduct the cost (committed before the action starts, so a concurrent
       request from the same user already sees the lower balance)
    2. Run the action
    3. On any failure, refund the cost, then propagate the failure
    4. On success, the credits stay spent

Known limitation:
    A timeout from the image provider is refunded even though the image may
    have been generated remotely. We accept an occasional free generation
    over charging a user for an image they never received.

Usage:
    result = gate.run(
        user_id=user.id,
        cost=1,
        description='Logo generation for Acme',
        action=lambda: generator.generate(prompt),
    )
    result.value               # whatever the action returned
    result.credits_remaining   # balance after the charge
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from logoforge.audit_log import AuditEvent, AuditLogger
from logoforge.errors import BillingError, GenerationFailed, InsufficientCredits, UpstreamProviderError
from logoforge.ledger import CreditStore

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Outcome of a successful gated action."""
    value: Any
    credits_remaining: int


class DeductionGate:
    """Debit-execute-or-refund wrapper around costly external actions."""

    def __init__(self, store: CreditStore, audit: Optional[AuditLogger] = None):
        self._store = store
        self._audit = audit

    def run(
        self,
        user_id: str,
        cost: int,
        description: str,
        action: Callable[[], Any],
        action_name: str = 'logo generation',
    ) -> GateResult:
        """
        Charge cost credits and run action.

        Raises:
            InsufficientCredits: balance < cost; action was not attempted
            GenerationFailed: action raised; cost was refunded
        """
        if not self._store.deduct(user_id, cost, description):
            raise InsufficientCredits(required=cost, available=self._store.get_balance(user_id))

        self._log(AuditEvent.CREDITS_DEDUCTED, user_id, {'cost': cost, 'action': action_name})

        try:
            value = action()
        except Exception as e:
            refunded = self._refund(user_id, cost, action_name, e)
            status = e.status_code if isinstance(e, UpstreamProviderError) else None
            message = e.message if isinstance(e, BillingError) else f'{action_name.capitalize()} failed'
            raise GenerationFailed(message, status_code=status, refunded=refunded) from e
        except BaseException as e:
            # Worker shutdown or interrupt mid-action: still give the credits back
            self._refund(user_id, cost, action_name, e)
            raise

        return GateResult(value=value, credits_remaining=self._store.get_balance(user_id))

    def _refund(self, user_id: str, cost: int, action_name: str, error: BaseException) -> bool:
        logger.warning("[Gate] %s failed for user %s (%s); refunding %s credit(s)", action_name, user_id, error, cost)
        try:
            self._store.refund(user_id, cost, f'Refund for failed {action_name}')
        except Exception as refund_error:
            logger.critical(
                "[Gate] REFUND FAILED for user %s (%s credits after failed %s): %s",
                user_id, cost, action_name, refund_error,
            )
            self._log(AuditEvent.CREDITS_REFUND_FAILED, user_id, {
                'cost': cost,
                'action': action_name,
                'error': str(refund_error),
            })
            return False

        self._log(AuditEvent.CREDITS_REFUNDED, user_id, {
            'cost': cost,
            'action': action_name,
            'reason': type(error).__name__,
        })
        return True

    def _log(self, event: AuditEvent, user_id: str, details: dict):
        if self._audit is not None:
            self._audit.log_event(event, user_id=user_id, details=details)
