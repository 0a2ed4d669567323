from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class SplitCreate(BaseModel):
    user_id: str
    amount: Decimal = Field(..., ge=0)


class ExpenseBase(BaseModel):
    title: str = Field(..., max_length=200)
    amount: Decimal = Field(..., gt=0)
    category: str = "other"
    description: Optional[str] = None
    is_personal: bool = False


class ExpenseCreate(ExpenseBase):
    paid_by: str


class ExpenseUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    amount: Optional[Decimal] = Field(None, gt=0)
    category: Optional[str] = None
    description: Optional[str] = None


class ExpenseWithSplitsCreate(BaseModel):
    expense: ExpenseCreate
    splits: List[SplitCreate] = []


class ExpenseWithSplitsUpdate(BaseModel):
    expense: ExpenseUpdate
    splits: Optional[List[SplitCreate]] = None


class UserSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None


class ExpenseSplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    expense_id: str
    user_id: str
    amount_owed: Decimal
    amount_paid: Decimal
    is_settled: bool
    settled_at: Optional[datetime] = None
    user: Optional[UserSnapshot] = None


class ExpenseOut(ExpenseBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    paid_by: str
    created_at: datetime
    paid_by_user: Optional[UserSnapshot] = None


class ExpenseWithSplits(ExpenseOut):
    splits: List[ExpenseSplitOut] = []


class ExpenseCategory(BaseModel):
    id: str
    label: str
    icon: str
    color: str


class BalanceOut(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    total_owed: Decimal
    total_paid: Decimal
    balance: Decimal


class BudgetSet(BaseModel):
    budget_limit: Decimal = Field(..., ge=0)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trip_id: str
    user_id: str
    budget_limit: Decimal
    updated_at: datetime


class BudgetSummary(BaseModel):
    budget_limit: Decimal
    total_spent: Decimal
    remaining: Decimal
    percentage: Decimal
    shared_total: Decimal
    personal_total: Decimal
    is_over_budget: bool
    warning_threshold: bool
