import uuid
from datetime import datetime, timezone
from sqlalchemy.sql import func
from sqlalchemy import Column, String, DateTime, DECIMAL, Text, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.db.database import Base
from app.models.profiles import Profile


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    trip_id = Column(String, nullable=False, index=True)  # Reference to trips (no FK constraint)
    title = Column(String(200), nullable=False)
    amount = Column(DECIMAL(10, 2), nullable=False)
    category = Column(String(50), nullable=False, default="other")
    description = Column(Text, nullable=True)
    paid_by = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    is_personal = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False, index=True)

    paid_by_user = relationship(Profile, lazy="joined")
    splits = relationship(
        "ExpenseSplit",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ExpenseSplit(Base):
    __tablename__ = "expense_splits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    expense_id = Column(String, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    amount_owed = Column(DECIMAL(10, 2), nullable=False)
    amount_paid = Column(DECIMAL(10, 2), nullable=False, default=0)
    is_settled = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship(Profile, lazy="joined")


class TripBudget(Base):
    __tablename__ = "trip_budgets"
    __table_args__ = (
        UniqueConstraint("trip_id", "user_id", name="uq_trip_budgets_trip_user"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), unique=True, nullable=False)
    trip_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    budget_limit = Column(DECIMAL(10, 2), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
