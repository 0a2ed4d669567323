from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session
from typing import List
from app.db.database import get_db
from app.services.auth.jwt_handler import get_current_user
from app.services.expense_service import (
    create_expense, get_expense, get_trip_expenses, get_personal_expenses, get_categories,
    update_expense, delete_expense, settle_expense_split, set_user_budget, get_user_budget_summary
)
from app.schemas.expense_schema import (
    ExpenseWithSplitsCreate, ExpenseWithSplitsUpdate, ExpenseOut, ExpenseWithSplits,
    ExpenseSplitOut, ExpenseCategory, BudgetSet, BudgetOut, BudgetSummary
)

router = APIRouter(prefix="/expenses", tags=["expenses"])

def get_current_user_id(access_token: str = Header(..., description="Access token (without Bearer)")):
    """Extract current user ID from JWT token"""
    user_id = get_current_user(access_token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


@router.get("/categories", response_model=List[ExpenseCategory])
def list_categories():
    """Get the expense categories"""
    return get_categories()


@router.post("/trips/{trip_id}", response_model=ExpenseWithSplits)
def create_new_expense(
    trip_id: str,
    payload: ExpenseWithSplitsCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Create a new expense with splits"""
    return create_expense(db, trip_id, payload.expense, payload.splits)


@router.get("/trips/{trip_id}", response_model=List[ExpenseWithSplits])
def get_trip_expenses_list(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get all expenses for a trip, newest first"""
    return get_trip_expenses(db, trip_id)


@router.get("/trips/{trip_id}/personal", response_model=List[ExpenseOut])
def get_my_personal_expenses(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get the current user's personal expenses for a trip"""
    return get_personal_expenses(db, trip_id, user_id)


@router.put("/trips/{trip_id}/budget", response_model=BudgetOut)
def set_my_budget(
    trip_id: str,
    budget_data: BudgetSet,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Set the current user's budget for a trip"""
    return set_user_budget(db, trip_id, user_id, budget_data.budget_limit)


@router.get("/trips/{trip_id}/budget", response_model=BudgetSummary)
def get_my_budget_summary(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get the current user's spending against their budget"""
    return get_user_budget_summary(db, trip_id, user_id)


@router.get("/{expense_id}", response_model=ExpenseWithSplits)
def get_expense_details(
    expense_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get expense details with splits"""
    expense = get_expense(db, expense_id)
    if not expense:
        raise HTTPException(status_code=404, detail="Expense not found")
    return expense


@router.put("/{expense_id}", response_model=ExpenseWithSplits)
def update_existing_expense(
    expense_id: str,
    payload: ExpenseWithSplitsUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Update an expense and optionally replace its splits (payer only)"""
    return update_expense(db, expense_id, payload.expense, payload.splits, user_id)


@router.delete("/{expense_id}")
def delete_existing_expense(
    expense_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Delete an expense (payer only)"""
    delete_expense(db, expense_id, user_id)
    return {"message": "Expense deleted successfully"}


@router.post("/{expense_id}/settle", response_model=ExpenseSplitOut)
def settle_my_split(
    expense_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Mark the current user's share of an expense as paid"""
    return settle_expense_split(db, expense_id, user_id)
