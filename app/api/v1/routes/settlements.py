from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session
from typing import List
from app.db.database import get_db
from app.services.auth.jwt_handler import get_current_user
from app.services.settlement_service import (
    settle_debt, get_settlement_history, mark_member_paid, mark_i_paid, undo_payment, get_debt_payments
)
from app.services.debt_service import get_debt_summary, get_detailed_debt_breakdown
from app.schemas.settlement_schema import (
    SettlementCreate, SettlementOut, OptimizedSettlement, DebtSummary,
    DebtBreakdown, DebtPaymentCreate, DebtPaymentOut
)

router = APIRouter(prefix="/settlements", tags=["settlements"])

def get_current_user_id(access_token: str = Header(..., description="Access token (without Bearer)")):
    """Extract current user ID from JWT token"""
    user_id = get_current_user(access_token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


@router.post("/trips/{trip_id}", response_model=SettlementOut)
def create_new_settlement(
    trip_id: str,
    settlement_data: SettlementCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Mark a suggested settlement as settled"""
    if user_id not in (settlement_data.from_user_id, settlement_data.to_user_id):
        raise HTTPException(status_code=403, detail="You can only settle debts you are part of")
    return settle_debt(db, trip_id, settlement_data)


@router.get("/trips/{trip_id}", response_model=List[SettlementOut])
def get_trip_settlements_list(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get all recorded settlements for a trip"""
    return get_settlement_history(db, trip_id)


@router.get("/trips/{trip_id}/debts", response_model=DebtSummary)
def get_trip_debt_summary(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get debtors, creditors and suggested settlements for a trip"""
    return get_debt_summary(db, trip_id)


@router.get("/trips/{trip_id}/optimize", response_model=List[OptimizedSettlement])
def get_optimized_settlements(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get optimized settlement suggestions"""
    return get_debt_summary(db, trip_id).settlements


@router.get("/trips/{trip_id}/breakdown", response_model=DebtBreakdown)
def get_my_debt_breakdown(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get the current user's net position against every other member"""
    return get_detailed_debt_breakdown(db, trip_id, user_id)


@router.post("/trips/{trip_id}/payments/received", response_model=DebtPaymentOut)
def mark_member_as_paid(
    trip_id: str,
    payment_data: DebtPaymentCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Creditor confirms that counterparty_id paid them"""
    return mark_member_paid(db, trip_id, payment_data.counterparty_id, user_id, payment_data.amount)


@router.post("/trips/{trip_id}/payments/sent", response_model=DebtPaymentOut)
def mark_as_i_paid(
    trip_id: str,
    payment_data: DebtPaymentCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Debtor reports that they paid counterparty_id"""
    return mark_i_paid(db, trip_id, user_id, payment_data.counterparty_id, payment_data.amount)


@router.get("/trips/{trip_id}/payments", response_model=List[DebtPaymentOut])
def get_my_payments(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get payment markers involving the current user"""
    return get_debt_payments(db, trip_id, user_id)


@router.post("/payments/{payment_id}/undo", response_model=DebtPaymentOut)
def undo_my_payment(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Undo a payment marker"""
    return undo_payment(db, payment_id, user_id)
