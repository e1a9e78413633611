"""
Token balance ledger.

Every method runs inside the caller's transaction. Balances only move through
``add_tokens`` and ``deduct_tokens``; both append a ``TokenTransaction`` row
recording the resulting balance.
"""

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import dialect_name
from .errors import LedgerInvariantError
from .models import CreditReceipt, DeductResult, TokenKind, TokenSource
from .tables import TokenBalance, TokenTransaction, generate_uuid, utcnow

logger = logging.getLogger(__name__)

MONTHLY_USED_COLUMNS = (
    "generation_tokens_monthly_used",
    "exports_monthly_used",
    "streak_shields_monthly_used",
)


def _validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    return amount


class TokenLedger:
    def get_or_create(self, session: Session, user_id: str, *, lock: bool = False) -> TokenBalance:
        """
        Return the user's balance row, inserting a zero row if absent.

        Uses insert-if-absent so concurrent first access cannot fail. With
        ``lock=True`` the row is selected FOR UPDATE.
        """
        insert = postgresql.insert if dialect_name(session) == "postgresql" else sqlite.insert
        now = utcnow()
        session.execute(
            insert(TokenBalance)
            .values(id=generate_uuid(), user_id=user_id, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=[TokenBalance.user_id])
        )
        query = (
            select(TokenBalance)
            .where(TokenBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        return session.execute(query).scalar_one()

    def lock_balance(self, session: Session, user_id: str) -> TokenBalance:
        return self.get_or_create(session, user_id, lock=True)

    def balance_of(self, session: Session, user_id: str, kind: TokenKind) -> int:
        column = getattr(TokenBalance, TokenKind(kind).value)
        value = session.execute(select(column).where(TokenBalance.user_id == user_id)).scalar_one_or_none()
        return int(value or 0)

    def add_tokens(
        self,
        session: Session,
        user_id: str,
        kind: TokenKind,
        amount: int,
        source: TokenSource,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditReceipt:
        """Credit ``amount`` tokens. A repeated ``reference`` is a no-op."""
        kind = TokenKind(kind)
        source = TokenSource(source)
        _validate_amount(amount)
        if source is TokenSource.USAGE:
            raise ValueError("usage is a debit source and cannot credit tokens")

        self.lock_balance(session, user_id)
        current = self.balance_of(session, user_id, kind)

        if reference is not None and self._has_reference(session, user_id, kind, reference):
            logger.info(
                "Duplicate token credit ignored",
                extra={"user_id": user_id, "token_type": kind.value, "source_reference": reference},
            )
            return CreditReceipt(kind=kind, amount=amount, balance=current, duplicate=True)

        new_balance = current + amount
        try:
            with session.begin_nested():
                session.add(
                    TokenTransaction(
                        user_id=user_id,
                        token_type=kind.value,
                        amount=amount,
                        balance_after=new_balance,
                        source=source.value,
                        source_reference=reference,
                        description=description or f"Added {amount} {kind.value.replace('_', ' ')}",
                    )
                )
        except IntegrityError:
            logger.info(
                "Duplicate token credit rejected by constraint",
                extra={"user_id": user_id, "token_type": kind.value, "source_reference": reference},
            )
            return CreditReceipt(kind=kind, amount=amount, balance=current, duplicate=True)

        column = getattr(TokenBalance, kind.value)
        session.execute(
            update(TokenBalance)
            .where(TokenBalance.user_id == user_id)
            .values({kind.value: column + amount, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        stored = self.balance_of(session, user_id, kind)
        if stored != new_balance:
            raise LedgerInvariantError(
                "Balance changed while the row was locked",
                user_id=user_id,
                details={"token_type": kind.value, "expected": new_balance, "actual": stored},
            )

        logger.info(
            "Tokens credited",
            extra={
                "user_id": user_id,
                "token_type": kind.value,
                "amount": amount,
                "source": source.value,
                "balance_after": new_balance,
            },
        )
        return CreditReceipt(kind=kind, amount=amount, balance=new_balance)

    def deduct_tokens(
        self,
        session: Session,
        user_id: str,
        kind: TokenKind,
        amount: int,
        description: Optional[str] = None,
    ) -> DeductResult:
        """
        Conditionally debit ``amount`` tokens in a single UPDATE.

        On insufficient balance nothing is written and ``success`` is False.
        """
        kind = TokenKind(kind)
        _validate_amount(amount)
        column = getattr(TokenBalance, kind.value)

        values = {kind.value: column - amount, "updated_at": utcnow()}
        if kind is TokenKind.GENERATION:
            values["generation_tokens_monthly_used"] = TokenBalance.generation_tokens_monthly_used + amount

        result = session.execute(
            update(TokenBalance)
            .where(TokenBalance.user_id == user_id, column >= amount)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return DeductResult(success=False, balance=self.balance_of(session, user_id, kind))

        new_balance = self.balance_of(session, user_id, kind)
        if new_balance < 0:
            raise LedgerInvariantError(
                "Token balance went negative after conditional deduction",
                user_id=user_id,
                details={"token_type": kind.value, "balance": new_balance},
            )

        session.add(
            TokenTransaction(
                user_id=user_id,
                token_type=kind.value,
                amount=-amount,
                balance_after=new_balance,
                source=TokenSource.USAGE.value,
                description=description or f"Used {amount} {kind.value.replace('_', ' ')}",
            )
        )
        session.flush()
        return DeductResult(success=True, balance=new_balance)

    def increment_monthly_used(self, session: Session, user_id: str, column_name: str, cap: int, quantity: int = 1) -> bool:
        """Bump an included-allowance counter only while it stays within ``cap``."""
        if column_name not in MONTHLY_USED_COLUMNS:
            raise ValueError(f"not a monthly counter: {column_name}")
        _validate_amount(quantity)
        column = getattr(TokenBalance, column_name)
        result = session.execute(
            update(TokenBalance)
            .where(TokenBalance.user_id == user_id, column + quantity <= cap)
            .values({column_name: column + quantity, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reset_monthly_usage(self, session: Session, user_id: str, today: date) -> None:
        self.get_or_create(session, user_id, lock=True)
        values = {name: 0 for name in MONTHLY_USED_COLUMNS}
        values.update(monthly_reset_date=today, updated_at=utcnow())
        session.execute(
            update(TokenBalance)
            .where(TokenBalance.user_id == user_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        logger.info("Monthly usage reset", extra={"user_id": user_id, "reset_date": today.isoformat()})

    def list_transactions(self, session: Session, user_id: str, *, limit: int = 50) -> List[TokenTransaction]:
        return list(
            session.execute(
                select(TokenTransaction)
                .where(TokenTransaction.user_id == user_id)
                .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id)
                .limit(limit)
            ).scalars()
        )

    @staticmethod
    def _has_reference(session: Session, user_id: str, kind: TokenKind, reference: str) -> bool:
        found = session.execute(
            select(TokenTransaction.id).where(
                TokenTransaction.user_id == user_id,
                TokenTransaction.token_type == kind.value,
                TokenTransaction.source_reference == reference,
            )
        ).first()
        return found is not None
