import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.expenses import Expense
from app.models.profiles import Profile
from app.schemas.expense_schema import BalanceOut
from app.schemas.settlement_schema import DebtBreakdown, DebtSummary, MemberDebt, OptimizedSettlement
from app.services.expense_service import get_shared_expenses
from app.services.settlement_service import get_payment_status_map
from app.utils.min_cash_flow import (
    CENT,
    calculate_expense_balances,
    min_cash_flow,
    round_decimal,
    validate_balance_sum,
)

logger = logging.getLogger(__name__)


def _profile_names(db: Session, user_ids: Iterable[str]) -> Dict[str, str]:
    """Batched display name lookup"""
    ids = set(user_ids)
    if not ids:
        return {}
    profiles = db.query(Profile).filter(Profile.id.in_(ids)).all()
    return {profile.id: profile.display_name for profile in profiles}


def _split_user_name(split) -> Optional[str]:
    user = getattr(split, "user", None)
    return user.display_name if user else None


def calculate_balances(expenses: Iterable[Expense]) -> List[BalanceOut]:
    """
    Per-user total_owed, total_paid and balance over shared expenses.

    Personal expenses are skipped. Users come back in first-seen order.
    """
    shared = [expense for expense in expenses if not expense.is_personal]

    names: Dict[str, str] = {}
    for expense in shared:
        if expense.paid_by_user is not None:
            names.setdefault(expense.paid_by, expense.paid_by_user.display_name)
        for split in expense.splits:
            name = _split_user_name(split)
            if name:
                names.setdefault(split.user_id, name)

    totals = calculate_expense_balances(
        {
            "payer": expense.paid_by,
            "amount": expense.amount,
            "splits": [
                {"user_id": split.user_id, "amount_owed": split.amount_owed, "amount_paid": split.amount_paid}
                for split in expense.splits
            ],
        }
        for expense in shared
    )

    return [
        BalanceOut(
            user_id=user_id,
            user_name=names.get(user_id),
            total_owed=values["total_owed"],
            total_paid=values["total_paid"],
            balance=values["balance"]
        )
        for user_id, values in totals.items()
    ]


def optimize_settlements(balances: List[BalanceOut]) -> List[OptimizedSettlement]:
    """
    Optimize settlements using the Min-Cash-Flow algorithm.

    Balances smaller than a cent are treated as settled. Returns the greedy
    list of pairwise payments with display names attached.
    """
    names = {balance.user_id: balance.user_name for balance in balances}
    active_balances = {
        balance.user_id: balance.balance
        for balance in balances
        if abs(balance.balance) >= CENT
    }

    if not active_balances:
        return []

    settlements_dict = min_cash_flow(active_balances)

    return [
        OptimizedSettlement(
            from_user_id=settlement["from"],
            to_user_id=settlement["to"],
            amount=settlement["amount"],
            from_name=names.get(settlement["from"]),
            to_name=names.get(settlement["to"])
        )
        for settlement in settlements_dict
    ]


def get_debt_summary(db: Session, trip_id: str) -> DebtSummary:
    """Debtors, creditors and the suggested settlements for a trip"""
    balances = calculate_balances(get_shared_expenses(db, trip_id))

    try:
        validate_balance_sum({balance.user_id: balance.balance for balance in balances})
    except ValueError as e:
        logger.warning(f"Trip {trip_id} balances do not net to zero: {e}")

    debts = sorted((b for b in balances if b.balance <= -CENT), key=lambda b: b.balance)
    credits = sorted((b for b in balances if b.balance >= CENT), key=lambda b: b.balance, reverse=True)

    return DebtSummary(
        debts=debts,
        credits=credits,
        settlements=optimize_settlements(balances),
        total_debt=sum((-b.balance for b in debts), Decimal("0")),
        total_credit=sum((b.balance for b in credits), Decimal("0"))
    )


def calculate_counterparty_nets(expenses: Iterable[Expense], user_id: str) -> Dict[str, Dict[str, Decimal]]:
    """
    Gross "owes me" and "I owe" tallies between user_id and every counterparty.

    For an expense user_id paid, their own share is amount / participants and
    the rest is spread across the other participants in proportion to their
    amount_owed. For an expense someone else paid, the user's amount_owed is
    owed to that payer.
    """
    owes_me: Dict[str, Decimal] = defaultdict(Decimal)
    i_owe: Dict[str, Decimal] = defaultdict(Decimal)

    for expense in expenses:
        if expense.is_personal or not expense.splits:
            continue

        amount = Decimal(str(expense.amount))
        if expense.paid_by == user_id:
            own_share = amount / len(expense.splits)
            remainder = amount - own_share
            others = [split for split in expense.splits if split.user_id != user_id]
            others_total = sum((Decimal(str(split.amount_owed)) for split in others), Decimal("0"))
            if others_total <= 0:
                continue
            for split in others:
                owes_me[split.user_id] += remainder * Decimal(str(split.amount_owed)) / others_total
        else:
            for split in expense.splits:
                if split.user_id == user_id:
                    i_owe[expense.paid_by] += Decimal(str(split.amount_owed))

    counterparties = set(owes_me) | set(i_owe)
    return {
        counterparty: {
            "owes_me": round_decimal(owes_me.get(counterparty, Decimal("0"))),
            "i_owe": round_decimal(i_owe.get(counterparty, Decimal("0"))),
        }
        for counterparty in counterparties
    }


def get_detailed_debt_breakdown(db: Session, trip_id: str, user_id: str) -> DebtBreakdown:
    """
    Per-member net position for one user.

    Header totals are sums over the member rows so the header always agrees
    with the rows beneath it. Payment markers are joined for status only and
    never change the computed amounts.
    """
    nets = calculate_counterparty_nets(get_shared_expenses(db, trip_id), user_id)
    names = _profile_names(db, nets.keys())
    payments = get_payment_status_map(db, trip_id, user_id)

    members_who_owe_me: List[MemberDebt] = []
    members_i_owe: List[MemberDebt] = []

    for counterparty, tally in nets.items():
        net = tally["owes_me"] - tally["i_owe"]
        if net == 0:
            continue

        payment = payments.get(counterparty)
        member = MemberDebt(
            user_id=counterparty,
            user_name=names.get(counterparty),
            owes_me=tally["owes_me"],
            i_owe=tally["i_owe"],
            net_owes_me=net,
            payment_status=payment.status.value if payment else None,
            payment_id=payment.id if payment else None
        )
        if net > 0:
            members_who_owe_me.append(member)
        else:
            members_i_owe.append(member)

    members_who_owe_me.sort(key=lambda m: m.net_owes_me, reverse=True)
    members_i_owe.sort(key=lambda m: m.net_owes_me)

    total_owed_to_me = sum((m.net_owes_me for m in members_who_owe_me), Decimal("0"))
    total_i_owe = sum((-m.net_owes_me for m in members_i_owe), Decimal("0"))

    return DebtBreakdown(
        user_id=user_id,
        members_who_owe_me=members_who_owe_me,
        members_i_owe=members_i_owe,
        total_owed_to_me=total_owed_to_me,
        total_i_owe=total_i_owe,
        net_balance=total_owed_to_me - total_i_owe
    )
