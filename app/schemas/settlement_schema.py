from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from app.models.settlements import PaymentStatus
from app.schemas.expense_schema import BalanceOut, UserSnapshot


class SettlementBase(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: Decimal = Field(..., gt=0)


class SettlementCreate(SettlementBase):
    pass


class SettlementOut(SettlementBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    settled_at: datetime
    from_user: Optional[UserSnapshot] = None
    to_user: Optional[UserSnapshot] = None


class OptimizedSettlement(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: Decimal
    from_name: Optional[str] = None
    to_name: Optional[str] = None


class DebtSummary(BaseModel):
    debts: List[BalanceOut] = []
    credits: List[BalanceOut] = []
    settlements: List[OptimizedSettlement] = []
    total_debt: Decimal = Decimal("0")
    total_credit: Decimal = Decimal("0")


class DebtPaymentCreate(BaseModel):
    counterparty_id: str
    amount: Decimal = Field(..., gt=0)


class DebtPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trip_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    recorded_by: str
    status: PaymentStatus
    paid_at: datetime


class MemberDebt(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    owes_me: Decimal
    i_owe: Decimal
    net_owes_me: Decimal
    payment_status: Optional[str] = None
    payment_id: Optional[str] = None


class DebtBreakdown(BaseModel):
    user_id: str
    members_who_owe_me: List[MemberDebt] = []
    members_i_owe: List[MemberDebt] = []
    total_owed_to_me: Decimal = Decimal("0")
    total_i_owe: Decimal = Decimal("0")
    net_balance: Decimal = Decimal("0")
