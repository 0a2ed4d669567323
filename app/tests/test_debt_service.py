"""
Tests for trip balances, suggested settlements and the per-member breakdown.

The fixture trip: alice pays a 90 dinner and bob pays a 30 taxi, both split
equally between alice, bob and carol.
"""
import pytest
from decimal import Decimal

from app.schemas.expense_schema import BalanceOut, ExpenseCreate
from app.services.debt_service import (
    calculate_balances,
    get_debt_summary,
    get_detailed_debt_breakdown,
    optimize_settlements
)
from app.services.expense_service import (
    calculate_equal_splits,
    create_expense,
    get_shared_expenses,
    settle_expense_split
)
from app.services.settlement_service import mark_member_paid, undo_payment

TRIP = "trip-1"


@pytest.fixture
def dinner_and_taxi(db, profiles):
    members = [profiles["alice"], profiles["bob"], profiles["carol"]]
    dinner = create_expense(
        db, TRIP,
        ExpenseCreate(title="Dinner", amount=Decimal("90"), paid_by=profiles["alice"], category="food"),
        calculate_equal_splits(Decimal("90"), members)
    )
    taxi = create_expense(
        db, TRIP,
        ExpenseCreate(title="Taxi", amount=Decimal("30"), paid_by=profiles["bob"], category="transport"),
        calculate_equal_splits(Decimal("30"), members)
    )
    return dinner, taxi


def balance_map(balances):
    return {balance.user_id: balance.balance for balance in balances}


@pytest.mark.integration
class TestBalances:

    def test_dinner_and_taxi_balances(self, db, profiles, dinner_and_taxi):
        balances = calculate_balances(get_shared_expenses(db, TRIP))

        assert balance_map(balances) == {
            profiles["alice"]: Decimal("50.00"),
            profiles["bob"]: Decimal("-10.00"),
            profiles["carol"]: Decimal("-40.00"),
        }

    def test_balances_carry_display_names(self, db, profiles, dinner_and_taxi):
        names = {b.user_id: b.user_name for b in calculate_balances(get_shared_expenses(db, TRIP))}

        assert names[profiles["alice"]] == "Alice Archer"
        assert names[profiles["carol"]] == "carol"

    def test_personal_expenses_ignored(self, db, profiles, dinner_and_taxi):
        create_expense(
            db, TRIP,
            ExpenseCreate(title="Gift", amount=Decimal("500"), paid_by=profiles["carol"], is_personal=True),
            []
        )

        balances = calculate_balances(get_shared_expenses(db, TRIP))
        assert balance_map(balances)[profiles["carol"]] == Decimal("-40.00")

    def test_settled_split_clears_balance(self, db, profiles, dinner_and_taxi):
        dinner, _ = dinner_and_taxi
        settle_expense_split(db, dinner.id, profiles["carol"])

        balances = balance_map(calculate_balances(get_shared_expenses(db, TRIP)))

        assert balances[profiles["carol"]] == Decimal("-10.00")
        assert balances[profiles["alice"]] == Decimal("20.00")
        assert sum(balances.values()) == Decimal("0")


@pytest.mark.integration
class TestDebtSummary:

    def test_suggested_settlements(self, db, profiles, dinner_and_taxi, verify_settlements):
        summary = get_debt_summary(db, TRIP)

        pairs = [(s.from_user_id, s.to_user_id, s.amount) for s in summary.settlements]
        assert pairs == [
            (profiles["carol"], profiles["alice"], Decimal("40.00")),
            (profiles["bob"], profiles["alice"], Decimal("10.00")),
        ]
        assert summary.settlements[0].from_name == "carol"
        assert summary.settlements[0].to_name == "Alice Archer"

        verify_settlements(
            {profiles["alice"]: Decimal("50"), profiles["bob"]: Decimal("-10"), profiles["carol"]: Decimal("-40")},
            [{"from": s.from_user_id, "to": s.to_user_id, "amount": s.amount} for s in summary.settlements]
        )

    def test_debtors_and_creditors(self, db, profiles, dinner_and_taxi):
        summary = get_debt_summary(db, TRIP)

        assert [d.user_id for d in summary.debts] == [profiles["carol"], profiles["bob"]]
        assert [c.user_id for c in summary.credits] == [profiles["alice"]]
        assert summary.total_debt == Decimal("50.00")
        assert summary.total_credit == Decimal("50.00")

    def test_empty_trip(self, db):
        summary = get_debt_summary(db, "empty-trip")

        assert summary.debts == []
        assert summary.credits == []
        assert summary.settlements == []

    def test_optimize_ignores_sub_cent_balances(self):
        balances = [
            BalanceOut(user_id="a", total_owed=Decimal("0"), total_paid=Decimal("0.004"), balance=Decimal("0.004")),
            BalanceOut(user_id="b", total_owed=Decimal("0.004"), total_paid=Decimal("0"), balance=Decimal("-0.004")),
        ]
        assert optimize_settlements(balances) == []

    def test_optimize_settles_one_cent(self):
        balances = [
            BalanceOut(user_id="a", total_owed=Decimal("0"), total_paid=Decimal("0.01"), balance=Decimal("0.01")),
            BalanceOut(user_id="b", total_owed=Decimal("0.01"), total_paid=Decimal("0"), balance=Decimal("-0.01")),
        ]

        settlements = optimize_settlements(balances)

        assert [(s.from_user_id, s.to_user_id, s.amount) for s in settlements] == [("b", "a", Decimal("0.01"))]

    def test_one_cent_debtor_listed(self, db, profiles):
        members = [profiles["alice"], profiles["bob"]]
        create_expense(
            db, TRIP,
            ExpenseCreate(title="Gum", amount=Decimal("0.02"), paid_by=profiles["alice"]),
            calculate_equal_splits(Decimal("0.02"), members)
        )

        summary = get_debt_summary(db, TRIP)

        assert [(b.user_id, b.balance) for b in summary.debts] == [(profiles["bob"], Decimal("-0.01"))]
        assert [(b.user_id, b.balance) for b in summary.credits] == [(profiles["alice"], Decimal("0.01"))]
        assert summary.total_debt == Decimal("0.01")
        assert len(summary.settlements) == 1


@pytest.mark.integration
class TestDebtBreakdown:
    """Per-member nets for one user."""

    def test_creditor_view(self, db, profiles, dinner_and_taxi):
        breakdown = get_detailed_debt_breakdown(db, TRIP, profiles["alice"])

        owes_me = {m.user_id: m for m in breakdown.members_who_owe_me}
        assert [m.user_id for m in breakdown.members_who_owe_me] == [profiles["carol"], profiles["bob"]]
        assert owes_me[profiles["carol"]].net_owes_me == Decimal("30.00")
        assert owes_me[profiles["bob"]].owes_me == Decimal("30.00")
        assert owes_me[profiles["bob"]].i_owe == Decimal("10.00")
        assert owes_me[profiles["bob"]].net_owes_me == Decimal("20.00")
        assert owes_me[profiles["bob"]].user_name == "Bob Baker"

        assert breakdown.members_i_owe == []
        assert breakdown.total_owed_to_me == Decimal("50.00")
        assert breakdown.total_i_owe == Decimal("0")
        assert breakdown.net_balance == Decimal("50.00")

    def test_mixed_view(self, db, profiles, dinner_and_taxi):
        breakdown = get_detailed_debt_breakdown(db, TRIP, profiles["bob"])

        assert [(m.user_id, m.net_owes_me) for m in breakdown.members_i_owe] == [
            (profiles["alice"], Decimal("-20.00"))
        ]
        assert [(m.user_id, m.net_owes_me) for m in breakdown.members_who_owe_me] == [
            (profiles["carol"], Decimal("10.00"))
        ]
        assert breakdown.total_owed_to_me == Decimal("10.00")
        assert breakdown.total_i_owe == Decimal("20.00")
        assert breakdown.net_balance == Decimal("-10.00")

    def test_header_totals_match_rows(self, db, profiles, dinner_and_taxi):
        for user_id in profiles.values():
            breakdown = get_detailed_debt_breakdown(db, TRIP, user_id)

            assert breakdown.total_owed_to_me == sum(
                (m.net_owes_me for m in breakdown.members_who_owe_me), Decimal("0")
            )
            assert breakdown.total_i_owe == sum(
                (-m.net_owes_me for m in breakdown.members_i_owe), Decimal("0")
            )
            assert breakdown.net_balance == breakdown.total_owed_to_me - breakdown.total_i_owe

    def test_payment_marker_does_not_change_amounts(self, db, profiles, dinner_and_taxi):
        payment = mark_member_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("20"))

        breakdown = get_detailed_debt_breakdown(db, TRIP, profiles["alice"])
        bob = next(m for m in breakdown.members_who_owe_me if m.user_id == profiles["bob"])

        assert bob.net_owes_me == Decimal("20.00")
        assert bob.payment_status == "paid"
        assert bob.payment_id == payment.id
        assert breakdown.total_owed_to_me == Decimal("50.00")

        carol = next(m for m in breakdown.members_who_owe_me if m.user_id == profiles["carol"])
        assert carol.payment_status is None

    def test_undone_marker_reported_as_reversed(self, db, profiles, dinner_and_taxi):
        payment = mark_member_paid(db, TRIP, profiles["bob"], profiles["alice"], Decimal("20"))
        undo_payment(db, payment.id, profiles["alice"])

        breakdown = get_detailed_debt_breakdown(db, TRIP, profiles["bob"])
        alice = breakdown.members_i_owe[0]

        assert alice.payment_status == "reversed"
        assert alice.net_owes_me == Decimal("-20.00")
