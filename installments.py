from datetime import date
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from models import Account, InstallmentPlan, Transaction, TransactionStatus
from recurrence import add_months, days_in_month
from repository import InstallmentPlanRepository, TransactionRepository


def split_amount(total_cents: int, count: int) -> list[int]:
    """Split ``total_cents`` into ``count`` parts that add up exactly.

    Every part is the rounded quotient; the first part absorbs the rounding
    remainder. When the remainder would push the first part below zero
    (sub-cent quotients) the quotient is truncated instead.
    """
    if count < 1:
        raise ValueError(f"Installment count must be at least 1, got {count}")
    quotient = Decimal(total_cents) / count
    per_part = int(quotient.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    remainder = total_cents - per_part * count
    if per_part + remainder < 0:
        per_part = int(quotient.quantize(Decimal("1"), rounding=ROUND_DOWN))
        remainder = total_cents - per_part * count
    return [per_part + remainder] + [per_part] * (count - 1)


def first_installment_date(account: Optional[Account], purchase_date: date) -> date:
    if account is None or not account.is_credit_card:
        return purchase_date

    closing_day = account.closing_day or 0
    due_day = account.due_day or 0
    if closing_day <= 0 or due_day <= 0:
        return add_months(purchase_date, 1)

    cycle = purchase_date.replace(day=1)
    if purchase_date.day > closing_day:
        cycle = add_months(cycle, 1)
    return cycle.replace(day=min(due_day, days_in_month(cycle.year, cycle.month)))


class InstallmentSplitter:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionRepository(session)
        self.plans = InstallmentPlanRepository(session)

    def create_plan(
        self,
        first: Transaction,
        count: int,
        account: Optional[Account],
        plan_id: Optional[str] = None,
    ) -> InstallmentPlan:
        first_date = first_installment_date(account, first.date)
        plan = InstallmentPlan(
            user_id=first.user_id,
            account_id=first.account_id,
            category_id=first.category_id,
            description=first.description,
            total_amount_cents=first.amount_cents,
            installment_count=count,
            first_installment_date=first_date,
            tags=list(first.tags or []),
        )
        if plan_id:
            plan.id = plan_id
        self.plans.save(plan)
        self.split(first, count, first_date, plan.id)
        return plan

    def split(
        self, first: Transaction, count: int, first_date: date, plan_id: str
    ) -> list[Transaction]:
        """Turn ``first`` into installment 1 and create installments 2..count.

        Installment 1 keeps the template's identity and payment status; the
        rest start pending.
        """
        if count < 2:
            raise ValueError(f"An installment plan needs at least 2 parts, got {count}")
        amounts = split_amount(first.amount_cents, count)
        rows = []
        for index, amount in enumerate(amounts, start=1):
            due = add_months(first_date, index - 1, desired_day=first_date.day)
            if index == 1:
                first.amount_cents = amount
                first.date = due
                first.installment_plan_id = plan_id
                first.installment_index = 1
                first.installment_total = count
                self.session.flush()
                rows.append(first)
                continue
            rows.append(
                self.transactions.create(
                    Transaction(
                        user_id=first.user_id,
                        account_id=first.account_id,
                        category_id=first.category_id,
                        kind=first.kind,
                        status=TransactionStatus.pending,
                        amount_cents=amount,
                        description=first.description,
                        date=due,
                        installment_plan_id=plan_id,
                        installment_index=index,
                        installment_total=count,
                        tags=list(first.tags or []),
                    )
                )
            )
        return rows
