"""Tests for word credit balances and debits."""
from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import Session

from app.models.credit_debit import CreditDebit
from app.models.user import User
from app.models.word_usage import WordUsage
from app.services.credit_ledger import CreditLedger, month_key

from conftest import FIXED_NOW


@pytest.fixture
def ledger(db: Session):
    return CreditLedger(db, clock=lambda: FIXED_NOW)


def _seed_usage(db: Session, user: User, words: int, month: str = "2026-10"):
    db.add(WordUsage(user_id=user.id, month=month, words_generated=words))
    db.commit()


def _usage(db: Session, user: User, month: str = "2026-10") -> int:
    row = (
        db.query(WordUsage)
        .filter(WordUsage.user_id == user.id, WordUsage.month == month)
        .populate_existing()
        .first()
    )
    return row.words_generated if row else 0


class TestBalance:
    """Balance reporting."""

    def test_month_key_format(self):
        assert month_key(datetime(2026, 1, 5, tzinfo=timezone.utc)) == "2026-01"

    def test_new_user_has_full_allowance(self, ledger, make_user):
        user = make_user(monthly_word_limit=5000, extra_words_balance=250)

        balance = ledger.get_balance(user.id)

        assert balance.words_used == 0
        assert balance.monthly_remaining == 5000
        assert balance.extra_balance == 250
        assert balance.available == 5250
        assert not balance.unlimited

    def test_usage_from_previous_month_is_ignored(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=1000)
        _seed_usage(db, user, 1000, month="2026-09")

        assert ledger.get_balance(user.id).monthly_remaining == 1000

    def test_unlimited_user(self, ledger, make_user):
        user = make_user(monthly_word_limit=-1)

        balance = ledger.get_balance(user.id)

        assert balance.unlimited
        assert balance.available is None
        assert ledger.can_consume(user.id, 10_000_000)

    def test_can_consume_uses_extra_balance(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=1000, extra_words_balance=500)
        _seed_usage(db, user, 900)

        assert ledger.can_consume(user.id, 600)
        assert not ledger.can_consume(user.id, 601)


class TestDebit:
    """Debits draw from the monthly allowance first, then extra words."""

    def test_debit_within_monthly_allowance(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=5000, extra_words_balance=100)

        result = ledger.debit(user.id, 1000, idempotency_key="scene:a:0:t1")

        assert result.from_monthly == 1000
        assert result.from_extra == 0
        assert _usage(db, user) == 1000
        db.refresh(user)
        assert user.extra_words_balance == 100

    def test_debit_splits_between_monthly_and_extra(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=1000, extra_words_balance=500)
        _seed_usage(db, user, 800)

        result = ledger.debit(user.id, 400, idempotency_key="scene:a:1:t1")

        assert result.from_monthly == 200
        assert result.from_extra == 200
        assert _usage(db, user) == 1000
        db.refresh(user)
        assert user.extra_words_balance == 300

    def test_debit_beyond_all_credits_overdraws_extra(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=100, extra_words_balance=50)

        result = ledger.debit(user.id, 300, idempotency_key="scene:a:2:t1")

        assert result.from_monthly == 100
        assert result.from_extra == 200
        db.refresh(user)
        assert user.extra_words_balance == -150

    def test_unlimited_user_usage_is_still_tracked(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=-1, extra_words_balance=70)

        result = ledger.debit(user.id, 1200, idempotency_key="scene:a:3:t1")

        assert result.unlimited
        assert result.from_monthly == 1200
        assert _usage(db, user) == 1200
        db.refresh(user)
        assert user.extra_words_balance == 70

    def test_same_key_is_charged_once(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=5000)

        first = ledger.debit(user.id, 700, idempotency_key="scene:b:0:t1")
        second = ledger.debit(user.id, 700, idempotency_key="scene:b:0:t1")

        assert not first.duplicate
        assert second.duplicate
        assert second.from_monthly == 700
        assert _usage(db, user) == 700
        assert db.query(CreditDebit).count() == 1

    def test_debits_accumulate_in_one_usage_row(self, db, ledger, make_user):
        user = make_user(monthly_word_limit=5000)

        ledger.debit(user.id, 300, idempotency_key="k1")
        ledger.debit(user.id, 450, idempotency_key="k2")

        assert db.query(WordUsage).filter(WordUsage.user_id == user.id).count() == 1
        assert _usage(db, user) == 750

    def test_zero_words_is_a_no_op(self, db, ledger, make_user):
        user = make_user()

        result = ledger.debit(user.id, 0, idempotency_key="k-zero")

        assert result.words == 0
        assert db.query(CreditDebit).count() == 0

    def test_debit_records_ledger_row(self, db, ledger, make_user, make_project):
        user = make_user(monthly_word_limit=1000, extra_words_balance=100)
        project = make_project(user)
        _seed_usage(db, user, 950)

        ledger.debit(
            user.id,
            120,
            idempotency_key="scene:c:4:t9",
            project_id=project.id,
            description="Scene 5 of 'Chapter 1'",
        )

        row = db.query(CreditDebit).one()
        assert row.words == 120
        assert row.from_monthly == 50
        assert row.from_extra == 70
        assert row.month == "2026-10"
        assert row.project_id == project.id
