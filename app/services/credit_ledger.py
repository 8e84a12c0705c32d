"""
Credit Ledger for per-user word credits.

Each user has a monthly word allowance (`monthly_word_limit`, -1 for
unlimited) tracked in `user_usage`, plus an `extra_words_balance` of
rollover or purchased words. Debits draw from the monthly allowance first
and the extra balance second. Counters only change through
`UPDATE ... SET col = col + n` under a row lock, so concurrent projects of
the same user cannot lose updates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import CreditLedgerError
from app.models.credit_debit import CreditDebit
from app.models.user import User
from app.models.word_usage import WordUsage

logger = logging.getLogger(__name__)


@dataclass
class CreditBalance:
    monthly_limit: int
    words_used: int
    monthly_remaining: int
    extra_balance: int
    unlimited: bool = False

    @property
    def available(self) -> Optional[int]:
        """Words that can still be generated, or None when unlimited."""
        if self.unlimited:
            return None
        return self.monthly_remaining + max(0, self.extra_balance)


@dataclass
class DebitResult:
    words: int
    from_monthly: int = 0
    from_extra: int = 0
    unlimited: bool = False
    duplicate: bool = False


def month_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


class CreditLedger:
    """Word credit balance checks and debits for one database session."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = None):
        self.db = db
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def current_month(self) -> str:
        return month_key(self.clock())

    def _get_user(self, user_id: UUID, lock: bool = False) -> User:
        query = self.db.query(User).filter(User.id == user_id)
        if lock:
            query = query.with_for_update()
        user = query.populate_existing().first()
        if user is None:
            raise CreditLedgerError(f"User {user_id} not found")
        return user

    def _words_used(self, user_id: UUID, month: str) -> int:
        used = (
            self.db.query(WordUsage.words_generated)
            .filter(WordUsage.user_id == user_id, WordUsage.month == month)
            .scalar()
        )
        return used or 0

    def get_balance(self, user_id: UUID) -> CreditBalance:
        user = self._get_user(user_id)
        used = self._words_used(user_id, self.current_month())
        extra = user.extra_words_balance or 0

        if user.has_unlimited_words:
            return CreditBalance(
                monthly_limit=user.monthly_word_limit,
                words_used=used,
                monthly_remaining=0,
                extra_balance=extra,
                unlimited=True,
            )

        return CreditBalance(
            monthly_limit=user.monthly_word_limit,
            words_used=used,
            monthly_remaining=max(0, user.monthly_word_limit - used),
            extra_balance=extra,
        )

    def can_consume(self, user_id: UUID, estimated_words: int) -> bool:
        """True if the user can afford `estimated_words` right now."""
        balance = self.get_balance(user_id)
        if balance.unlimited:
            return True
        return balance.available >= estimated_words

    def _ensure_usage_row(self, user_id: UUID, month: str) -> None:
        exists = (
            self.db.query(WordUsage.id)
            .filter(WordUsage.user_id == user_id, WordUsage.month == month)
            .first()
        )
        if exists is not None:
            return

        self.db.add(WordUsage(user_id=user_id, month=month, words_generated=0))
        try:
            self.db.commit()
        except IntegrityError:
            # Another debit created the row first
            self.db.rollback()

    def _lock_usage_row(self, user_id: UUID, month: str) -> WordUsage:
        """This month's usage row, locked for update."""
        return (
            self.db.query(WordUsage)
            .filter(WordUsage.user_id == user_id, WordUsage.month == month)
            .with_for_update()
            .populate_existing()
            .one()
        )

    def debit(
        self,
        user_id: UUID,
        words: int,
        *,
        idempotency_key: str,
        project_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> DebitResult:
        """
        Charge `words` to the user and commit.

        Monthly allowance first, then the extra balance. A second call with
        the same `idempotency_key` changes nothing and reports `duplicate`.

        Raises:
            CreditLedgerError: the debit could not be recorded.
        """
        if words <= 0:
            return DebitResult(words=0)

        existing = (
            self.db.query(CreditDebit)
            .filter(CreditDebit.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            return DebitResult(
                words=existing.words,
                from_monthly=existing.from_monthly,
                from_extra=existing.from_extra,
                duplicate=True,
            )

        month = self.current_month()
        self._ensure_usage_row(user_id, month)
        try:
            user = self._get_user(user_id, lock=True)
            usage = self._lock_usage_row(user_id, month)

            if user.has_unlimited_words:
                # Usage is still tracked for reporting
                from_monthly, from_extra = words, 0
            else:
                remaining = max(0, user.monthly_word_limit - (usage.words_generated or 0))
                from_monthly = min(words, remaining)
                from_extra = words - from_monthly

            if from_monthly:
                self.db.query(WordUsage).filter(WordUsage.id == usage.id).update(
                    {WordUsage.words_generated: WordUsage.words_generated + from_monthly},
                    synchronize_session=False,
                )
            if from_extra:
                if (user.extra_words_balance or 0) < from_extra:
                    logger.warning(
                        "User %s extra word balance overdrawn: %d available, %d debited",
                        user_id,
                        user.extra_words_balance or 0,
                        from_extra,
                    )
                self.db.query(User).filter(User.id == user_id).update(
                    {User.extra_words_balance: User.extra_words_balance - from_extra},
                    synchronize_session=False,
                )

            self.db.add(
                CreditDebit(
                    user_id=user_id,
                    project_id=project_id,
                    words=words,
                    from_monthly=from_monthly,
                    from_extra=from_extra,
                    month=month,
                    idempotency_key=idempotency_key,
                    description=description,
                )
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            already = (
                self.db.query(CreditDebit)
                .filter(CreditDebit.idempotency_key == idempotency_key)
                .first()
            )
            if already is not None:
                return DebitResult(
                    words=already.words,
                    from_monthly=already.from_monthly,
                    from_extra=already.from_extra,
                    duplicate=True,
                )
            raise CreditLedgerError(f"Could not record debit {idempotency_key}: {e}") from e
        except CreditLedgerError:
            self.db.rollback()
            raise

        logger.info(
            "Debited %d words from user %s (monthly=%d, extra=%d)",
            words,
            user_id,
            from_monthly,
            from_extra,
        )
        return DebitResult(
            words=words,
            from_monthly=from_monthly,
            from_extra=from_extra,
            unlimited=user.has_unlimited_words,
        )
