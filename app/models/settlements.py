import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy.sql import func
from sqlalchemy import Column, String, DateTime, DECIMAL, Enum, ForeignKey
from sqlalchemy.orm import relationship
from app.db.database import Base
from app.models.profiles import Profile


class PaymentStatus(str, enum.Enum):
    paid = "paid"
    reversed = "reversed"


class DebtSettlement(Base):
    """Audit row written when a suggested settlement is marked as settled"""
    __tablename__ = "debt_settlements"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    trip_id = Column(String, nullable=False, index=True)
    from_user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    to_user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(DECIMAL(10, 2), nullable=False)
    settled_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False)

    from_user = relationship(Profile, foreign_keys=[from_user_id], lazy="joined")
    to_user = relationship(Profile, foreign_keys=[to_user_id], lazy="joined")


class DebtPayment(Base):
    """Payment marker layered over a counterparty net balance"""
    __tablename__ = "debt_payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    trip_id = Column(String, nullable=False, index=True)
    from_user_id = Column(String, nullable=False, index=True)  # Debtor
    to_user_id = Column(String, nullable=False, index=True)  # Creditor
    amount = Column(DECIMAL(10, 2), nullable=False)
    recorded_by = Column(String, nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.paid)
    paid_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False, index=True)
