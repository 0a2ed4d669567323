import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.expenses import Expense, ExpenseSplit, TripBudget
from app.schemas.expense_schema import (
    BudgetSummary, ExpenseCategory, ExpenseCreate, ExpenseUpdate, SplitCreate
)
from app.utils.min_cash_flow import round_decimal, split_equally, validate_split_total

logger = logging.getLogger(__name__)

EXPENSE_CATEGORIES = [
    ExpenseCategory(id="food", label="Food & Drinks", icon="restaurant", color="#FF6B6B"),
    ExpenseCategory(id="transport", label="Transportation", icon="car", color="#4ECDC4"),
    ExpenseCategory(id="accommodation", label="Accommodation", icon="hotel", color="#45B7D1"),
    ExpenseCategory(id="activities", label="Activities", icon="hiking", color="#96CEB4"),
    ExpenseCategory(id="shopping", label="Shopping", icon="shopping-bag", color="#FFEAA7"),
    ExpenseCategory(id="other", label="Other", icon="more-horiz", color="#DDA0DD"),
]

BUDGET_WARNING_PERCENT = Decimal("80")


def get_categories() -> List[ExpenseCategory]:
    return list(EXPENSE_CATEGORIES)


def calculate_equal_splits(amount: Decimal, member_ids: List[str]) -> List[SplitCreate]:
    """Equal cent-exact shares; the first members absorb any leftover cent"""
    try:
        shares = split_equally(amount, member_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [SplitCreate(user_id=user_id, amount=share) for user_id, share in shares.items()]


def calculate_custom_splits(amount: Decimal, splits: List[SplitCreate]) -> List[SplitCreate]:
    """Return the custom splits unchanged if they add up to the amount"""
    try:
        validate_split_total(amount, [split.amount for split in splits])
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return splits


def _build_splits(amount: Decimal, paid_by: str, splits_data: List[SplitCreate]) -> List[ExpenseSplit]:
    """Validate shared splits and build rows; the payer's own share starts settled"""
    if not splits_data:
        raise HTTPException(status_code=400, detail="A shared expense needs at least one split")

    user_ids = [split.user_id for split in splits_data]
    if len(set(user_ids)) != len(user_ids):
        raise HTTPException(status_code=400, detail="Each participant can only appear once in the splits")

    calculate_custom_splits(amount, splits_data)

    now = datetime.now(timezone.utc)
    rows = []
    for split in splits_data:
        is_payer = split.user_id == paid_by
        rows.append(ExpenseSplit(
            user_id=split.user_id,
            amount_owed=split.amount,
            amount_paid=split.amount if is_payer else Decimal("0"),
            is_settled=is_payer,
            settled_at=now if is_payer else None
        ))
    return rows


def create_expense(db: Session, trip_id: str, expense_data: ExpenseCreate, splits_data: List[SplitCreate]) -> Expense:
    """Create an expense; shared expenses get one split row per participant"""
    expense = Expense(
        trip_id=trip_id,
        title=expense_data.title,
        amount=expense_data.amount,
        category=expense_data.category,
        description=expense_data.description,
        paid_by=expense_data.paid_by,
        is_personal=expense_data.is_personal
    )
    if not expense_data.is_personal:
        expense.splits = _build_splits(expense_data.amount, expense_data.paid_by, splits_data)

    db.add(expense)
    db.commit()
    db.refresh(expense)
    logger.info(f"Expense {expense.id} ({expense.amount}) created for trip {trip_id} by {expense.paid_by}")
    return expense


def get_expense(db: Session, expense_id: str) -> Optional[Expense]:
    """Get an expense by ID"""
    return db.query(Expense).filter(Expense.id == expense_id).first()


def get_trip_expenses(db: Session, trip_id: str) -> List[Expense]:
    """Get all expenses for a trip, newest first"""
    return (
        db.query(Expense)
        .filter(Expense.trip_id == trip_id)
        .order_by(Expense.created_at.desc())
        .all()
    )


def get_shared_expenses(db: Session, trip_id: str) -> List[Expense]:
    return (
        db.query(Expense)
        .filter(Expense.trip_id == trip_id, Expense.is_personal == False)
        .order_by(Expense.created_at.asc())
        .all()
    )


def get_personal_expenses(db: Session, trip_id: str, user_id: str) -> List[Expense]:
    """Get a user's personal expenses for a trip, newest first"""
    return (
        db.query(Expense)
        .filter(
            Expense.trip_id == trip_id,
            Expense.paid_by == user_id,
            Expense.is_personal == True
        )
        .order_by(Expense.created_at.desc())
        .all()
    )


def _get_owned_expense(db: Session, expense_id: str, user_id: str, action: str) -> Expense:
    expense = get_expense(db, expense_id)
    if not expense:
        raise HTTPException(status_code=404, detail="Expense not found")
    if expense.paid_by != user_id:
        raise HTTPException(status_code=403, detail=f"Only the payer can {action} this expense")
    return expense


def update_expense(
    db: Session,
    expense_id: str,
    update_data: ExpenseUpdate,
    splits_data: Optional[List[SplitCreate]],
    user_id: str
) -> Expense:
    """
    Update an expense (payer only).

    When splits are given they replace the existing ones. When they are not,
    the existing splits must still add up to the new amount.
    """
    expense = _get_owned_expense(db, expense_id, user_id, "update")

    changes = update_data.model_dump(exclude_unset=True)
    amount = changes.get("amount") or expense.amount

    if not expense.is_personal:
        if splits_data is not None:
            expense.splits = _build_splits(amount, expense.paid_by, splits_data)
        elif "amount" in changes:
            calculate_custom_splits(amount, [
                SplitCreate(user_id=split.user_id, amount=split.amount_owed) for split in expense.splits
            ])

    for field, value in changes.items():
        setattr(expense, field, value)

    db.commit()
    db.refresh(expense)
    logger.info(f"Expense {expense_id} updated by {user_id}")
    return expense


def delete_expense(db: Session, expense_id: str, user_id: str) -> None:
    """Delete an expense and its splits (payer only)"""
    expense = _get_owned_expense(db, expense_id, user_id, "delete")
    db.delete(expense)
    db.commit()
    logger.info(f"Expense {expense_id} deleted by {user_id}")


def settle_expense_split(db: Session, expense_id: str, user_id: str) -> ExpenseSplit:
    """Mark the user's share of an expense as paid to the payer"""
    split = db.query(ExpenseSplit).filter(
        ExpenseSplit.expense_id == expense_id,
        ExpenseSplit.user_id == user_id
    ).first()
    if not split:
        raise HTTPException(status_code=404, detail="Expense split not found")
    if split.is_settled:
        return split

    split.is_settled = True
    split.amount_paid = split.amount_owed
    split.settled_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(split)
    return split


def set_user_budget(db: Session, trip_id: str, user_id: str, budget_limit: Decimal) -> TripBudget:
    """Create or replace the user's budget for a trip"""
    budget = db.query(TripBudget).filter(
        TripBudget.trip_id == trip_id,
        TripBudget.user_id == user_id
    ).first()

    if budget:
        budget.budget_limit = budget_limit
        budget.updated_at = datetime.now(timezone.utc)
    else:
        budget = TripBudget(trip_id=trip_id, user_id=user_id, budget_limit=budget_limit)
        db.add(budget)

    db.commit()
    db.refresh(budget)
    return budget


def get_user_budget(db: Session, trip_id: str, user_id: str) -> Optional[TripBudget]:
    return db.query(TripBudget).filter(
        TripBudget.trip_id == trip_id,
        TripBudget.user_id == user_id
    ).first()


def get_user_budget_summary(db: Session, trip_id: str, user_id: str) -> BudgetSummary:
    """
    Spending against budget for one user.

    Spending is the user's owed share of shared expenses plus their personal
    expenses. Without a budget the limit is 0 and percentage is 0.
    """
    budget = get_user_budget(db, trip_id, user_id)
    budget_limit = Decimal(str(budget.budget_limit)) if budget else Decimal("0")

    shared_total = db.query(func.sum(ExpenseSplit.amount_owed))\
        .join(Expense, ExpenseSplit.expense_id == Expense.id)\
        .filter(
            Expense.trip_id == trip_id,
            Expense.is_personal == False,
            ExpenseSplit.user_id == user_id
        ).scalar() or Decimal("0")

    personal_total = db.query(func.sum(Expense.amount))\
        .filter(
            Expense.trip_id == trip_id,
            Expense.paid_by == user_id,
            Expense.is_personal == True
        ).scalar() or Decimal("0")

    shared_total = round_decimal(Decimal(str(shared_total)))
    personal_total = round_decimal(Decimal(str(personal_total)))
    total_spent = shared_total + personal_total
    percentage = round_decimal(total_spent / budget_limit * 100) if budget_limit > 0 else Decimal("0")

    return BudgetSummary(
        budget_limit=budget_limit,
        total_spent=total_spent,
        remaining=budget_limit - total_spent,
        percentage=percentage,
        shared_total=shared_total,
        personal_total=personal_total,
        is_over_budget=total_spent > budget_limit,
        warning_threshold=percentage >= BUDGET_WARNING_PERCENT
    )
