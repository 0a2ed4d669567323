"""
Tests for settlement audit rows and payment markers.
"""
import pytest
from datetime import datetime
from decimal import Decimal
from fastapi import HTTPException

from app.models.settlements import PaymentStatus
from app.schemas.settlement_schema import SettlementCreate
from app.services.settlement_service import (
    get_debt_payments,
    get_payment_status_map,
    get_settlement_history,
    mark_i_paid,
    mark_member_paid,
    settle_debt,
    undo_payment
)

TRIP = "trip-1"


@pytest.mark.integration
class TestSettleDebt:

    def test_settlement_recorded(self, db, profiles):
        settlement = settle_debt(db, TRIP, SettlementCreate(
            from_user_id=profiles["carol"], to_user_id=profiles["alice"], amount=Decimal("40")
        ))

        assert settlement.amount == Decimal("40")
        assert settlement.from_user.username == "carol"
        assert [s.id for s in get_settlement_history(db, TRIP)] == [settlement.id]
        assert get_settlement_history(db, "other-trip") == []

    def test_cannot_settle_with_yourself(self, db, profiles):
        with pytest.raises(HTTPException) as exc_info:
            settle_debt(db, TRIP, SettlementCreate(
                from_user_id=profiles["bob"], to_user_id=profiles["bob"], amount=Decimal("5")
            ))
        assert exc_info.value.status_code == 400


@pytest.mark.integration
class TestPaymentMarkers:
    """Test recording, listing and undoing payment markers."""

    def test_creditor_marks_member_paid(self, db, profiles):
        payment = mark_member_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("10"))

        assert payment.from_user_id == profiles["bob"]
        assert payment.to_user_id == profiles["alice"]
        assert payment.recorded_by == profiles["alice"]
        assert payment.status == PaymentStatus.paid

    def test_debtor_marks_i_paid(self, db, profiles):
        payment = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))

        assert payment.from_user_id == profiles["carol"]
        assert payment.recorded_by == profiles["carol"]

    def test_same_member_rejected(self, db, profiles):
        with pytest.raises(HTTPException) as exc_info:
            mark_i_paid(db, TRIP, profiles["carol"], profiles["carol"], Decimal("1"))
        assert exc_info.value.status_code == 400

    def test_undo_sets_reversed(self, db, profiles):
        payment = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))

        undone = undo_payment(db, payment.id, profiles["alice"])

        assert undone.status == PaymentStatus.reversed
        assert [p.id for p in get_debt_payments(db, TRIP)] == [payment.id]

    def test_undo_by_stranger_forbidden(self, db, profiles):
        payment = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))

        with pytest.raises(HTTPException) as exc_info:
            undo_payment(db, payment.id, profiles["bob"])
        assert exc_info.value.status_code == 403

    def test_double_undo_rejected(self, db, profiles):
        payment = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))
        undo_payment(db, payment.id, profiles["carol"])

        with pytest.raises(HTTPException) as exc_info:
            undo_payment(db, payment.id, profiles["carol"])
        assert exc_info.value.status_code == 400

    def test_undo_missing_payment(self, db, profiles):
        with pytest.raises(HTTPException) as exc_info:
            undo_payment(db, "missing", profiles["alice"])
        assert exc_info.value.status_code == 404

    def test_payments_filtered_by_member(self, db, profiles):
        carol_payment = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))
        bob_payment = mark_i_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("10"))

        assert [p.id for p in get_debt_payments(db, TRIP, profiles["bob"])] == [bob_payment.id]
        assert {p.id for p in get_debt_payments(db, TRIP, profiles["alice"])} == {carol_payment.id, bob_payment.id}

    def test_status_map_keeps_latest_marker(self, db, profiles):
        older = mark_i_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("10"))
        older.paid_at = datetime(2024, 1, 1, 12, 0, 0)
        db.commit()
        latest = mark_member_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("10"))
        other = mark_i_paid(db, TRIP, profiles["carol"], profiles["alice"], Decimal("40"))

        status_map = get_payment_status_map(db, TRIP, profiles["alice"])

        assert status_map[profiles["bob"]].id == latest.id
        assert status_map[profiles["carol"]].id == other.id
        assert set(get_payment_status_map(db, TRIP, profiles["bob"])) == {profiles["alice"]}
