"""Storage ports consumed by the recurrence, installment and projection engine.

The engine only talks to these classes; each wraps a SQLAlchemy ``Session``
and never commits, so callers decide the transaction boundary.
"""

import logging
from datetime import date
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Account,
    AccountType,
    InstallmentPlan,
    RecurrenceRule,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


# The date an occurrence holds for its rule, wherever the entry itself was moved.
_slot_date = func.coalesce(Transaction.scheduled_date, Transaction.date)


def _rule_slot(rule_id: str):
    # Detached occurrences keep their slot reserved for the rule.
    return or_(
        Transaction.recurrence_rule_id == rule_id,
        Transaction.detached_rule_id == rule_id,
    )


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(
        self, transaction_id: int, *, include_deleted: bool = False
    ) -> Optional[Transaction]:
        txn = self.session.get(Transaction, transaction_id)
        if txn is None or (txn.deleted_at is not None and not include_deleted):
            return None
        return txn

    def find_latest_date(self, rule_id: str) -> Optional[date]:
        return self.session.scalar(
            select(func.max(_slot_date)).where(_rule_slot(rule_id))
        )

    def latest_dates(self, rule_ids: Sequence[str]) -> dict[str, date]:
        if not rule_ids:
            return {}
        owner = func.coalesce(Transaction.recurrence_rule_id, Transaction.detached_rule_id)
        rows = self.session.execute(
            select(owner.label("rule_id"), func.max(_slot_date).label("latest"))
            .where(
                or_(
                    Transaction.recurrence_rule_id.in_(rule_ids),
                    Transaction.detached_rule_id.in_(rule_ids),
                )
            )
            .group_by(owner)
        ).all()
        return {row.rule_id: row.latest for row in rows}

    def exists_on_date(self, rule_id: str, on: date) -> bool:
        found = self.session.scalar(
            select(Transaction.id)
            .where(_rule_slot(rule_id), _slot_date == on)
            .limit(1)
        )
        return found is not None

    def occupied_dates(
        self, rule_ids: Sequence[str], start: date, end: date
    ) -> dict[str, set[date]]:
        occupied: dict[str, set[date]] = {}
        if not rule_ids:
            return occupied
        rows = self.session.execute(
            select(
                Transaction.recurrence_rule_id,
                Transaction.detached_rule_id,
                _slot_date.label("slot"),
            ).where(
                or_(
                    Transaction.recurrence_rule_id.in_(rule_ids),
                    Transaction.detached_rule_id.in_(rule_ids),
                ),
                _slot_date.between(start, end),
            )
        ).all()
        for row in rows:
            owner = row.recurrence_rule_id or row.detached_rule_id
            occupied.setdefault(owner, set()).add(row.slot)
        return occupied

    def create(self, txn: Transaction) -> Transaction:
        self.session.add(txn)
        self.session.flush()
        return txn

    def create_if_absent(self, txn: Transaction) -> Optional[Transaction]:
        """Insert inside a savepoint; a (rule, date) collision yields ``None``."""
        try:
            with self.session.begin_nested():
                self.session.add(txn)
        except IntegrityError:
            logger.info(
                f"occurrence_exists: rule={txn.recurrence_rule_id} date={txn.date}"
            )
            return None
        return txn

    def bulk_update(self, transaction_ids: Iterable[int], patch: dict) -> int:
        ids = list(transaction_ids)
        if not ids or not patch:
            return 0
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id.in_(ids))
            .values(**patch)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def list_for_rule(
        self,
        rule_id: str,
        *,
        on_or_after: Optional[date] = None,
        after: Optional[date] = None,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.recurrence_rule_id == rule_id,
            Transaction.deleted_at.is_(None),
        )
        if on_or_after is not None:
            stmt = stmt.where(Transaction.date >= on_or_after)
        if after is not None:
            stmt = stmt.where(Transaction.date > after)
        return list(self.session.scalars(stmt.order_by(Transaction.date)).all())

    def list_slots_after(self, rule_id: str, after: date) -> list[Transaction]:
        """Every entry holding a slot of the rule after ``after``, deleted ones included."""
        stmt = select(Transaction).where(_rule_slot(rule_id), _slot_date > after)
        return list(self.session.scalars(stmt.order_by(_slot_date)).all())

    def list_for_plan(
        self, plan_id: str, *, from_index: Optional[int] = None
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.installment_plan_id == plan_id,
            Transaction.deleted_at.is_(None),
        )
        if from_index is not None:
            stmt = stmt.where(Transaction.installment_index >= from_index)
        return list(
            self.session.scalars(stmt.order_by(Transaction.installment_index)).all()
        )

    def plan_total(self, plan_id: str) -> int:
        return int(
            self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.installment_plan_id == plan_id,
                    Transaction.deleted_at.is_(None),
                )
            )
            or 0
        )

    def pending_between(
        self, account_ids: Sequence[int], start: date, end: date
    ) -> list[Transaction]:
        if not account_ids:
            return []
        stmt = (
            select(Transaction)
            .where(
                Transaction.account_id.in_(account_ids),
                Transaction.status == TransactionStatus.pending,
                Transaction.deleted_at.is_(None),
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())


class RecurrenceRuleRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(self, rule_id: Optional[str]) -> Optional[RecurrenceRule]:
        if not rule_id:
            return None
        return self.session.get(RecurrenceRule, rule_id)

    def save(self, rule: RecurrenceRule) -> RecurrenceRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def list_active(
        self,
        on: date,
        *,
        account_ids: Optional[Sequence[int]] = None,
        user_id: Optional[int] = None,
    ) -> list[RecurrenceRule]:
        stmt = select(RecurrenceRule).where(
            RecurrenceRule.active.is_(True),
            or_(RecurrenceRule.end_date.is_(None), RecurrenceRule.end_date >= on),
        )
        if account_ids is not None:
            stmt = stmt.where(RecurrenceRule.account_id.in_(account_ids))
        if user_id is not None:
            stmt = stmt.where(RecurrenceRule.user_id == user_id)
        return list(
            self.session.scalars(
                stmt.order_by(RecurrenceRule.start_date, RecurrenceRule.id)
            ).all()
        )


class InstallmentPlanRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(self, plan_id: Optional[str]) -> Optional[InstallmentPlan]:
        if not plan_id:
            return None
        return self.session.get(InstallmentPlan, plan_id)

    def save(self, plan: InstallmentPlan) -> InstallmentPlan:
        self.session.add(plan)
        self.session.flush()
        return plan


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int) -> Optional[Account]:
        return self.session.get(Account, account_id)

    def get_for_update(self, account_id: int) -> Optional[Account]:
        # Row lock serializes cached-balance writes per account.
        return self.session.scalar(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
        )

    def by_ids(self, account_ids: Sequence[int]) -> list[Account]:
        if not account_ids:
            return []
        return list(
            self.session.scalars(
                select(Account).where(Account.id.in_(account_ids)).order_by(Account.id)
            ).all()
        )

    def in_scope(self, user_id: int) -> list[Account]:
        """Cash-like accounts that count towards the user's available balance."""
        stmt = (
            select(Account)
            .where(
                Account.user_id == user_id,
                Account.type != AccountType.credit_card,
                Account.is_archived.is_(False),
                Account.include_in_total.is_(True),
            )
            .order_by(Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def user_ids(self) -> list[int]:
        return list(
            self.session.scalars(
                select(Account.user_id).distinct().order_by(Account.user_id)
            ).all()
        )

