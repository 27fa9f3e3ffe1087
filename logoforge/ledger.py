"""
logoforge/ledger.py

Credit store: the authoritative balance and its transaction log.

The store is the only writer of credit_accounts and credit_transactions:
    - Balance lives in credit_accounts (one row per user, created lazily)
    - Every change appends a credit_transactions row in the same DB transaction
    - ledger_balance() recomputes the balance from the log for reconciliation

Operations:
    - get_balance(user_id) -> int
    - grant(user_id, amount, description, external_payment_id) -> transaction id
    - deduct(user_id, amount, description) -> bool
    - refund(user_id, amount, description) -> transaction id
    - history(user_id, limit, offset) -> [CreditTransaction]

Concurrency:
    1. deduct is a single conditional UPDATE (balance >= amount); zero rows
       affected means insufficient credits. No read-then-write, no
       in-process lock, safe across processes.
    2. grant with an external_payment_id inserts its transaction first; the
       UNIQUE index on external_payment_id rejects a second insert and the
       loser returns the winner's transaction id.
"""

import logging
from typing import List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from logoforge.db import Database
from logoforge.errors import InvalidAmount
from logoforge.models import CreditAccount, CreditTransaction, TransactionKind, utcnow

logger = logging.getLogger(__name__)

accounts = CreditAccount.__table__


class CreditStore:
    """Per-user credit balances backed by the database."""

    def __init__(self, database: Database):
        self._database = database

    # =========================================================================
    # BALANCE QUERIES
    # =========================================================================

    def get_balance(self, user_id: str) -> int:
        """
        Get current credit balance for a user.

        Returns 0 for users that have never had a transaction; nothing is
        written.
        """
        with self._database.session() as db:
            balance = db.scalar(
                select(accounts.c.balance).where(accounts.c.user_id == user_id)
            )
        return balance or 0

    def ledger_balance(self, user_id: str) -> int:
        """Recompute the balance from the transaction log."""
        signed = case(
            (CreditTransaction.kind == TransactionKind.DEDUCTION, -CreditTransaction.amount),
            else_=CreditTransaction.amount,
        )
        with self._database.session() as db:
            total = db.scalar(
                select(func.coalesce(func.sum(signed), 0)).where(CreditTransaction.user_id == user_id)
            )
        return int(total or 0)

    def reconcile(self, user_id: str) -> bool:
        """Check the stored balance against the log."""
        stored = self.get_balance(user_id)
        computed = self.ledger_balance(user_id)
        if stored != computed:
            logger.error(
                "[Ledger] Balance mismatch for user %s: account=%s log=%s",
                user_id, stored, computed,
            )
            return False
        return True

    # =========================================================================
    # CREDIT OPERATIONS
    # =========================================================================

    def grant(
        self,
        user_id: str,
        amount: int,
        description: str,
        external_payment_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> str:
        """
        Grant purchased credits to a user.

        If a purchase with the same external_payment_id already exists (for
        any user) nothing changes and the existing transaction id is returned.

        Args:
            user_id: User to grant credits to
            amount: Number of credits (positive)
            description: Human-readable reason
            external_payment_id: Stripe session/invoice ID (dedup key)
            payment_intent_id: Stripe payment intent, stored for lookups only

        Returns:
            Transaction id of the purchase
        """
        _validate_amount(amount, 'grant')

        with self._database.session() as db:
            entry = CreditTransaction(
                user_id=user_id,
                kind=TransactionKind.PURCHASE,
                amount=amount,
                description=description,
                external_payment_id=external_payment_id,
                payment_intent_id=payment_intent_id,
            )
            db.add(entry)

            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                if external_payment_id is None:
                    raise
                existing = self._find_purchase(db, external_payment_id)
                if existing is None:
                    raise
                if existing.user_id != user_id:
                    logger.warning(
                        "[Ledger] Payment %s already granted to a different user (%s, not %s)",
                        external_payment_id, existing.user_id, user_id,
                    )
                logger.info(
                    "[Ledger] Payment %s already granted (txn %s), skipping",
                    external_payment_id, existing.id,
                )
                return existing.id

            self._ensure_account(db, user_id)
            entry.balance_after = self._add_to_balance(db, user_id, amount)
            db.commit()

        logger.info(
            "[Ledger] Granted %s credits to user %s (%s). Balance: %s",
            amount, user_id, external_payment_id or 'no payment id', entry.balance_after,
        )
        return entry.id

    def deduct(self, user_id: str, amount: int, description: str) -> bool:
        """
        Spend credits.

        Returns:
            True if deducted, False if the balance was insufficient (no change)
        """
        _validate_amount(amount, 'deduct')

        with self._database.session() as db:
            result = db.execute(
                update(accounts)
                .where(accounts.c.user_id == user_id, accounts.c.balance >= amount)
                .values(balance=accounts.c.balance - amount, updated_at=utcnow())
            )
            if result.rowcount != 1:
                db.rollback()
                logger.info("[Ledger] Insufficient balance for user %s to deduct %s", user_id, amount)
                return False

            new_balance = self._read_balance(db, user_id)
            db.add(CreditTransaction(
                user_id=user_id,
                kind=TransactionKind.DEDUCTION,
                amount=amount,
                description=description,
                balance_after=new_balance,
            ))
            db.commit()

        logger.info("[Ledger] Deducted %s credits from user %s. Balance: %s", amount, user_id, new_balance)
        return True

    def refund(self, user_id: str, amount: int, description: str) -> str:
        """
        Return credits taken by a deduction whose action failed.

        Unconditional: the balance goes up by amount.

        Returns:
            Transaction id of the refund
        """
        _validate_amount(amount, 'refund')

        with self._database.session() as db:
            self._ensure_account(db, user_id)
            new_balance = self._add_to_balance(db, user_id, amount)
            entry = CreditTransaction(
                user_id=user_id,
                kind=TransactionKind.REFUND,
                amount=amount,
                description=description,
                balance_after=new_balance,
            )
            db.add(entry)
            db.commit()

        logger.info("[Ledger] Refunded %s credits to user %s. Balance: %s", amount, user_id, new_balance)
        return entry.id

    # =========================================================================
    # LEDGER QUERIES
    # =========================================================================

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        """
        Get credit history for a user, most recent first (ties broken by id).

        Args:
            user_id: User's ID
            limit: Max entries to return
            offset: Pagination offset
        """
        with self._database.session() as db:
            return list(db.scalars(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            ))

    def find_purchase(self, external_payment_id: str) -> Optional[CreditTransaction]:
        """Purchase transaction for a Stripe payment, if it has been granted."""
        with self._database.session() as db:
            return self._find_purchase(db, external_payment_id)

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[CreditTransaction]:
        """Purchase made with a Stripe payment intent (refunds and disputes reference it)."""
        with self._database.session() as db:
            return db.scalar(
                select(CreditTransaction).where(
                    CreditTransaction.payment_intent_id == payment_intent_id,
                    CreditTransaction.kind == TransactionKind.PURCHASE,
                )
            )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _find_purchase(self, db: Session, external_payment_id: str) -> Optional[CreditTransaction]:
        return db.scalar(
            select(CreditTransaction).where(
                CreditTransaction.external_payment_id == external_payment_id,
                CreditTransaction.kind == TransactionKind.PURCHASE,
            )
        )

    def _ensure_account(self, db: Session, user_id: str):
        """Insert a zero-balance account row unless one exists."""
        now = utcnow()
        values = {'user_id': user_id, 'balance': 0, 'created_at': now, 'updated_at': now}

        dialect = db.get_bind().dialect.name
        if dialect == 'postgresql':
            db.execute(postgresql.insert(accounts).values(**values).on_conflict_do_nothing(index_elements=['user_id']))
        elif dialect == 'sqlite':
            db.execute(sqlite.insert(accounts).values(**values).on_conflict_do_nothing(index_elements=['user_id']))
        else:
            try:
                with db.begin_nested():
                    db.execute(accounts.insert().values(**values))
            except IntegrityError:
                # Already exists
                pass

    def _add_to_balance(self, db: Session, user_id: str, amount: int) -> int:
        db.execute(
            update(accounts)
            .where(accounts.c.user_id == user_id)
            .values(balance=accounts.c.balance + amount, updated_at=utcnow())
        )
        return self._read_balance(db, user_id)

    def _read_balance(self, db: Session, user_id: str) -> int:
        return db.scalar(select(accounts.c.balance).where(accounts.c.user_id == user_id)) or 0


def _validate_amount(amount: int, operation: str):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f'Invalid amount for {operation}: must be a whole number')
    if amount <= 0:
        raise InvalidAmount(f'Invalid amount for {operation}: must be positive')
