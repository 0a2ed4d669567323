import logging
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.models.settlements import DebtPayment, DebtSettlement, PaymentStatus
from app.schemas.settlement_schema import SettlementCreate

logger = logging.getLogger(__name__)


def settle_debt(db: Session, trip_id: str, settlement_data: SettlementCreate) -> DebtSettlement:
    """Record that a suggested settlement was paid. Splits are left untouched."""
    if settlement_data.from_user_id == settlement_data.to_user_id:
        raise HTTPException(status_code=400, detail="Cannot settle a debt with yourself")

    settlement = DebtSettlement(
        trip_id=trip_id,
        from_user_id=settlement_data.from_user_id,
        to_user_id=settlement_data.to_user_id,
        amount=settlement_data.amount
    )
    db.add(settlement)
    db.commit()
    db.refresh(settlement)
    logger.info(
        f"Settlement {settlement.id}: {settlement.from_user_id} -> {settlement.to_user_id} "
        f"{settlement.amount} on trip {trip_id}"
    )
    return settlement


def get_settlement_history(db: Session, trip_id: str) -> List[DebtSettlement]:
    """Get all recorded settlements for a trip, newest first"""
    return (
        db.query(DebtSettlement)
        .filter(DebtSettlement.trip_id == trip_id)
        .order_by(DebtSettlement.settled_at.desc())
        .all()
    )


def _record_payment(
    db: Session,
    trip_id: str,
    debtor_id: str,
    creditor_id: str,
    amount: Decimal,
    recorded_by: str
) -> DebtPayment:
    if debtor_id == creditor_id:
        raise HTTPException(status_code=400, detail="Debtor and creditor must be different members")

    payment = DebtPayment(
        trip_id=trip_id,
        from_user_id=debtor_id,
        to_user_id=creditor_id,
        amount=amount,
        recorded_by=recorded_by,
        status=PaymentStatus.paid
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info(f"Payment {payment.id}: {debtor_id} paid {creditor_id} {amount} (recorded by {recorded_by})")
    return payment


def mark_member_paid(db: Session, trip_id: str, debtor_id: str, creditor_id: str, amount: Decimal) -> DebtPayment:
    """Creditor confirms that a member paid them"""
    return _record_payment(db, trip_id, debtor_id, creditor_id, amount, recorded_by=creditor_id)


def mark_i_paid(db: Session, trip_id: str, debtor_id: str, creditor_id: str, amount: Decimal) -> DebtPayment:
    """Debtor reports that they paid a member"""
    return _record_payment(db, trip_id, debtor_id, creditor_id, amount, recorded_by=debtor_id)


def undo_payment(db: Session, payment_id: str, user_id: str) -> DebtPayment:
    """Reverse a payment marker. Only the two parties may undo it."""
    payment = db.query(DebtPayment).filter(DebtPayment.id == payment_id).first()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if user_id not in (payment.from_user_id, payment.to_user_id):
        raise HTTPException(status_code=403, detail="Only the payer or the recipient can undo a payment")
    if payment.status == PaymentStatus.reversed:
        raise HTTPException(status_code=400, detail="Payment has already been undone")

    payment.status = PaymentStatus.reversed
    db.commit()
    db.refresh(payment)
    logger.info(f"Payment {payment_id} reversed by {user_id}")
    return payment


def get_debt_payments(db: Session, trip_id: str, user_id: Optional[str] = None) -> List[DebtPayment]:
    """Get payment markers for a trip, newest first, optionally only those involving user_id"""
    query = db.query(DebtPayment).filter(DebtPayment.trip_id == trip_id)
    if user_id:
        query = query.filter(or_(DebtPayment.from_user_id == user_id, DebtPayment.to_user_id == user_id))
    return query.order_by(DebtPayment.paid_at.desc()).all()


def get_payment_status_map(db: Session, trip_id: str, user_id: str) -> Dict[str, DebtPayment]:
    """
    Latest payment marker between user_id and each counterparty.

    Markers are annotations only; callers join them onto freshly computed
    balances instead of subtracting them.
    """
    payments = db.query(DebtPayment).filter(
        and_(
            DebtPayment.trip_id == trip_id,
            or_(DebtPayment.from_user_id == user_id, DebtPayment.to_user_id == user_id)
        )
    ).order_by(DebtPayment.paid_at.desc()).all()

    status_map: Dict[str, DebtPayment] = {}
    for payment in payments:
        counterparty = payment.to_user_id if payment.from_user_id == user_id else payment.from_user_id
        status_map.setdefault(counterparty, payment)
    return status_map
