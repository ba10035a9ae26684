from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from balances import adjust_balance
from config import get_settings
from installments import InstallmentSplitter
from models import (
    Account,
    Category,
    EditScope,
    InstallmentPlan,
    Periodicity,
    RecurrenceRule,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from periods import Period
from projection import BalanceAlert, BalanceProjector, Projection, negative_balance_alert
from recurrence import RecurrenceMaterializer, add_months, local_today
from repository import (
    AccountRepository,
    InstallmentPlanRepository,
    RecurrenceRuleRepository,
    TransactionRepository,
)
from schemas import RecurrenceIn, TransactionIn, TransactionUpdateIn


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class TransactionValidationError(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


def status_for(kind: TransactionKind, is_paid: bool) -> TransactionStatus:
    if not is_paid:
        return TransactionStatus.pending
    if kind == TransactionKind.income:
        return TransactionStatus.received
    return TransactionStatus.paid


def recurrence_fields(rec: RecurrenceIn, start: date, today: date) -> dict[str, object]:
    """Resolve the requested recurrence into rule columns, rejecting bad combinations.

    ``fixed_expense`` means every month with no end; ``repeat`` means every
    ``repeat_every_months`` months, ``repeat_times`` occurrences in total
    counting the one on ``start``.
    """
    if rec.fixed_expense and rec.repeat:
        raise TransactionValidationError(
            "A fixed expense cannot also repeat a set number of times"
        )
    if rec.end_date is not None and rec.end_date < today:
        raise TransactionValidationError("End date must be today or later")

    periodicity = rec.periodicity
    interval_days = rec.interval_days
    interval_months = rec.interval_months
    end_date = rec.end_date
    if rec.fixed_expense:
        periodicity = Periodicity.every_n_months
        interval_months = 1
        end_date = None
    elif rec.repeat:
        periodicity = Periodicity.every_n_months
        interval_months = rec.repeat_every_months
        end_date = add_months(start, interval_months * (rec.repeat_times - 1))

    if periodicity is None:
        raise TransactionValidationError("Recurrence requires a periodicity")
    if periodicity == Periodicity.every_n_days and not interval_days:
        raise TransactionValidationError("Recurrence every N days requires interval_days")
    if periodicity == Periodicity.every_n_months and not interval_months:
        raise TransactionValidationError(
            "Recurrence every N months requires interval_months"
        )
    if end_date is not None and end_date < start:
        raise TransactionValidationError("End date must not precede the first occurrence")

    return {
        "periodicity": periodicity,
        "interval_days": interval_days if periodicity == Periodicity.every_n_days else None,
        "interval_months": (
            interval_months if periodicity == Periodicity.every_n_months else None
        ),
        "end_date": end_date,
    }


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.transactions = TransactionRepository(session)
        self.rules = RecurrenceRuleRepository(session)
        self.plans = InstallmentPlanRepository(session)
        self.accounts = AccountRepository(session)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.transactions.find_by_id(transaction_id)
        if txn is None or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def _account(self, account_id: int) -> Account:
        account = self.accounts.get_for_update(account_id)
        if account is None or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def _check_category(self, category_id: int, kind: TransactionKind) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        if category.kind != kind:
            raise TransactionValidationError("Category kind mismatch")

    def create(self, data: TransactionIn, today: Optional[date] = None) -> Transaction:
        today = today or local_today()
        account = self._account(data.account_id)
        self._check_category(data.category_id, data.kind)

        is_installment = (data.installment_count or 1) > 1
        if is_installment and data.recurrence is not None:
            raise TransactionValidationError(
                "Recurrence and installments cannot be combined"
            )
        if is_installment and data.kind != TransactionKind.expense:
            raise TransactionValidationError("Installments are only available for expenses")

        rule: Optional[RecurrenceRule] = None
        if data.recurrence is not None:
            rule = RecurrenceRule(
                user_id=self.user_id,
                account_id=data.account_id,
                category_id=data.category_id,
                kind=data.kind,
                amount_cents=data.amount_cents,
                description=data.description,
                start_date=data.date,
                active=True,
                tags=list(data.tags),
                **recurrence_fields(data.recurrence, data.date, today),
            )
            if data.recurrence.id is not None:
                rule.id = str(data.recurrence.id)
            self.rules.save(rule)

        status = status_for(data.kind, data.is_paid)
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            kind=data.kind,
            status=status,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            paid_at=None if status == TransactionStatus.pending else datetime.utcnow(),
            tags=list(data.tags),
        )
        if rule is not None:
            txn.recurrence_rule_id = rule.id
            txn.scheduled_date = data.date
            txn.recurrence_periodicity = rule.periodicity
            txn.recurrence_end_date = rule.end_date
        self.transactions.create(txn)

        if rule is not None:
            RecurrenceMaterializer(self.session).extend(
                rule.id, get_settings().horizon_months, today
            )
        if is_installment:
            plan_id = (
                str(data.installment_plan_id) if data.installment_plan_id else None
            )
            InstallmentSplitter(self.session).create_plan(
                txn, data.installment_count, account, plan_id
            )

        adjust_balance(account, txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(
        self,
        transaction_id: int,
        data: TransactionUpdateIn,
        scope: Optional[EditScope] = None,
        today: Optional[date] = None,
    ) -> Transaction:
        today = today or local_today()
        txn = self.get(transaction_id)
        self._check_category(data.category_id, data.kind)

        rule = self.rules.find_by_id(txn.recurrence_rule_id)
        plan = self.plans.find_by_id(txn.installment_plan_id)
        slot_rule_id = txn.recurrence_rule_id or txn.detached_rule_id
        bulk = scope in (EditScope.future, EditScope.all)

        if data.recurrence is not None and (rule is None or not bulk):
            raise TransactionValidationError(
                "Recurrence settings can only change for future or all occurrences"
            )
        if (
            plan is not None
            and scope != EditScope.this_one
            and data.kind != TransactionKind.expense
        ):
            raise TransactionValidationError("Installments are only available for expenses")
        if (
            slot_rule_id is not None
            and data.date not in (txn.date, txn.scheduled_date)
            and self.transactions.exists_on_date(slot_rule_id, data.date)
        ):
            raise TransactionValidationError(
                "Another occurrence of this recurrence already falls on that date"
            )

        if scope == EditScope.this_one:
            self._detach(txn)
        adjust_balance(self._account(txn.account_id), txn, -1)
        original_date = txn.date
        self._apply(txn, data)
        self.session.flush()

        if rule is not None and bulk:
            self._update_recurrence(txn, rule, data, scope, original_date, today)
        elif plan is not None and bulk:
            self._update_installments(txn, plan, data, scope)

        adjust_balance(self._account(txn.account_id), txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        adjust_balance(self._account(txn.account_id), txn, -1)
        txn.deleted_at = datetime.utcnow()
        self.session.flush()
        if txn.installment_plan_id:
            self._refresh_plan_total(txn.installment_plan_id)
        self.session.commit()

    def toggle_paid(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        account = self._account(txn.account_id)
        if txn.is_effective:
            adjust_balance(account, txn, -1)
            txn.status = TransactionStatus.pending
            txn.paid_at = None
        else:
            txn.status = status_for(txn.kind, True)
            txn.paid_at = datetime.utcnow()
            adjust_balance(account, txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _apply(self, txn: Transaction, data: TransactionUpdateIn) -> None:
        status = status_for(data.kind, data.is_paid)
        txn.account_id = data.account_id
        txn.category_id = data.category_id
        txn.kind = data.kind
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.date = data.date
        txn.tags = list(data.tags)
        if status == TransactionStatus.pending:
            txn.paid_at = None
        elif txn.paid_at is None:
            txn.paid_at = datetime.utcnow()
        txn.status = status

    @staticmethod
    def _template_patch(data: TransactionUpdateIn) -> dict[str, object]:
        return {
            "account_id": data.account_id,
            "category_id": data.category_id,
            "kind": data.kind,
            "amount_cents": data.amount_cents,
            "description": data.description,
            "tags": list(data.tags),
        }

    def _patch_siblings(self, rows: list[Transaction], patch: dict[str, object]) -> None:
        effective = [row for row in rows if row.is_effective]
        for row in effective:
            adjust_balance(self._account(row.account_id), row, -1)
        self.transactions.bulk_update([row.id for row in rows], patch)
        for row in effective:
            adjust_balance(self._account(row.account_id), row, 1)

    def _detach(self, txn: Transaction) -> None:
        if txn.recurrence_rule_id:
            txn.detached_rule_id = txn.recurrence_rule_id
            txn.scheduled_date = txn.scheduled_date or txn.date
            txn.recurrence_rule_id = None
            txn.recurrence_periodicity = None
            txn.recurrence_end_date = None
        if txn.installment_plan_id:
            plan_id = txn.installment_plan_id
            txn.installment_plan_id = None
            txn.installment_index = None
            txn.installment_total = None
            self.session.flush()
            self._refresh_plan_total(plan_id)
        self.session.flush()

    def _update_recurrence(
        self,
        txn: Transaction,
        rule: RecurrenceRule,
        data: TransactionUpdateIn,
        scope: EditScope,
        original_date: date,
        today: date,
    ) -> None:
        on_or_after = original_date if scope == EditScope.future else None
        siblings = [
            row
            for row in self.transactions.list_for_rule(rule.id, on_or_after=on_or_after)
            if row.id != txn.id
        ]
        self._patch_siblings(siblings, self._template_patch(data))

        rule.account_id = data.account_id
        rule.category_id = data.category_id
        rule.kind = data.kind
        rule.amount_cents = data.amount_cents
        rule.description = data.description
        rule.tags = list(data.tags)

        if data.recurrence is None:
            return
        fields = recurrence_fields(data.recurrence, txn.date, today)
        if all(getattr(rule, name) == value for name, value in fields.items()):
            return
        self._reschedule(rule, txn, fields, today)

    def _reschedule(
        self,
        rule: RecurrenceRule,
        anchor: Transaction,
        fields: dict[str, object],
        today: date,
    ) -> None:
        # Slots after the edited occurrence belong to the old cadence. Pending and
        # deleted occurrences are dropped. Settled or detached entries become plain
        # entries, so the rule restarts from the anchor.
        for row in self.transactions.list_slots_after(rule.id, anchor.date):
            if row.id == anchor.id:
                continue
            if row.recurrence_rule_id and (
                row.deleted_at is not None or not row.is_effective
            ):
                self.session.delete(row)
            else:
                self._release(row)
        for name, value in fields.items():
            setattr(rule, name, value)
        rule.start_date = anchor.date
        anchor.scheduled_date = anchor.date
        self.session.flush()

        self.transactions.bulk_update(
            [row.id for row in self.transactions.list_for_rule(rule.id)],
            {
                "recurrence_periodicity": rule.periodicity,
                "recurrence_end_date": rule.end_date,
            },
        )
        created = RecurrenceMaterializer(self.session).extend(
            rule.id, get_settings().horizon_months, today
        )
        logger.info(f"rule_rescheduled: rule={rule.id} regenerated={created}")

    @staticmethod
    def _release(row: Transaction) -> None:
        row.recurrence_rule_id = None
        row.detached_rule_id = None
        row.scheduled_date = None
        row.recurrence_periodicity = None
        row.recurrence_end_date = None

    def _update_installments(
        self,
        txn: Transaction,
        plan: InstallmentPlan,
        data: TransactionUpdateIn,
        scope: EditScope,
    ) -> None:
        from_index = (txn.installment_index or 1) if scope == EditScope.future else None
        siblings = [
            row
            for row in self.transactions.list_for_plan(plan.id, from_index=from_index)
            if row.id != txn.id
        ]
        self._patch_siblings(siblings, self._template_patch(data))

        plan.account_id = data.account_id
        plan.category_id = data.category_id
        plan.description = data.description
        plan.tags = list(data.tags)
        self.session.flush()
        self._refresh_plan_total(plan.id)

    def _refresh_plan_total(self, plan_id: str) -> None:
        plan = self.plans.find_by_id(plan_id)
        if plan is not None:
            plan.total_amount_cents = self.transactions.plan_total(plan_id)


class RecurrenceRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rules = RecurrenceRuleRepository(session)
        self.transactions = TransactionRepository(session)

    def get(self, rule_id: str) -> RecurrenceRule:
        rule = self.rules.find_by_id(rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFoundError("Rule not found")
        return rule

    def list(self) -> list[RecurrenceRule]:
        stmt = (
            select(RecurrenceRule)
            .where(RecurrenceRule.user_id == self.user_id)
            .order_by(RecurrenceRule.start_date, RecurrenceRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def extend(
        self,
        rule_id: str,
        horizon_months: Optional[int] = None,
        today: Optional[date] = None,
    ) -> int:
        rule = self.get(rule_id)
        count = RecurrenceMaterializer(self.session).extend(
            rule.id, horizon_months or get_settings().horizon_months, today
        )
        self.session.commit()
        return count

    def extend_all(
        self, horizon_months: Optional[int] = None, today: Optional[date] = None
    ) -> int:
        count = RecurrenceMaterializer(self.session).extend_all(horizon_months, today)
        self.session.commit()
        return count

    def deactivate(
        self, rule_id: str, cancel_pending: bool = False, today: Optional[date] = None
    ) -> RecurrenceRule:
        today = today or local_today()
        rule = self.get(rule_id)
        rule.active = False
        if cancel_pending:
            now = datetime.utcnow()
            for row in self.transactions.list_for_rule(rule.id, after=today):
                if row.status == TransactionStatus.pending:
                    row.deleted_at = now
        self.session.commit()
        self.session.refresh(rule)
        return rule


class ProjectionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountRepository(session)
        self.projector = BalanceProjector(session)

    def scope(self, account_id: Optional[int] = None) -> list[int]:
        if account_id is not None:
            account = self.accounts.get(account_id)
            if not account or account.user_id != self.user_id:
                raise NotFoundError("Account not found")
            return [account.id]
        return [account.id for account in self.accounts.in_scope(self.user_id)]

    def project(
        self,
        window: Period,
        account_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Projection:
        today = today or local_today()
        projection = self.projector.project_daily_series(
            self.scope(account_id), today, window.end
        )
        if window.start <= today:
            return projection
        points = [point for point in projection.points if point.date >= window.start]
        return replace(
            projection,
            start=window.start,
            points=points,
            first_negative_date=next(
                (point.date for point in points if point.balance_cents < 0), None
            ),
        )

    def alert(
        self, today: Optional[date] = None, within_days: Optional[int] = None
    ) -> Optional[BalanceAlert]:
        settings = get_settings()
        today = today or local_today()
        window = Period("alert", today, today + timedelta(days=settings.projection_days))
        projection = self.project(window, today=today)
        if within_days is None:
            within_days = settings.alert_window_days
        return negative_balance_alert(projection, today, within_days)
