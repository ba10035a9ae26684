import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from models import (
    EFFECTIVE_STATUSES,
    Account,
    Transaction,
    TransactionKind,
)


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def amount_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_effective(txn: Transaction) -> bool:
    return txn.status in EFFECTIVE_STATUSES


def signed_amount(kind: TransactionKind, amount_cents: int) -> int:
    return amount_cents if kind == TransactionKind.income else -amount_cents


def adjust_balance(
    account: Optional[Account], txn: Transaction, direction: int
) -> None:
    """Apply (``+1``) or reverse (``-1``) ``txn``'s effect on the cached balance.

    Pending transactions never touch the balance. Callers reverse the old
    state before mutating a transaction and apply the new state afterwards.
    """
    if direction not in (1, -1):
        raise ValueError(f"direction must be +1 or -1, got {direction}")
    if account is None or not is_effective(txn):
        return
    delta = signed_amount(txn.kind, txn.amount_cents)
    account.current_balance_cents = (account.current_balance_cents or 0) + (
        delta * direction
    )


def recalculate_balances(session: Session) -> int:
    """Rebuild every cached balance from its initial balance and effective entries.

    Returns the number of accounts whose cached balance had drifted.
    """
    signed = case(
        (Transaction.kind == TransactionKind.income, Transaction.amount_cents),
        else_=-Transaction.amount_cents,
    )
    totals = dict(
        session.execute(
            select(Transaction.account_id, func.coalesce(func.sum(signed), 0))
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.status.in_(list(EFFECTIVE_STATUSES)),
            )
            .group_by(Transaction.account_id)
        ).all()
    )
    drifted = 0
    for account in session.scalars(select(Account).order_by(Account.id)).all():
        expected = (account.initial_balance_cents or 0) + int(totals.get(account.id, 0))
        if account.current_balance_cents != expected:
            logger.warning(
                f"balance_drift: account={account.id} "
                f"cached={account.current_balance_cents} expected={expected}"
            )
            account.current_balance_cents = expected
            drifted += 1
    session.flush()
    return drifted
