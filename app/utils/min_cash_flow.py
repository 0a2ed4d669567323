"""
Min-Cash-Flow Algorithm Module

This module implements the greedy settlement minimisation used to turn a trip's
net balances into a short list of pairwise payments.

The algorithm works by:
1. Calculating net balances for each user (total_paid - total_owed over shared expenses)
2. Separating users into creditors (positive balance) and debtors (negative balance)
3. Using a greedy matching strategy to match the largest debtor with the largest creditor
4. Settling min(debt, credit) per step until either side is exhausted

Greedy matching is not guaranteed to reach the theoretical minimum number of
transactions for every distribution, but every produced settlement is backed by
a real debt and the total settled equals min(total_debt, total_credit).

Time Complexity: O(n log n) for sorting + O(n) for matching = O(n log n)
Space Complexity: O(n) for storing balances and settlement results

Example Usage:
    from app.utils.min_cash_flow import calculate_expense_balances, min_cash_flow

    expenses = [
        {"payer": "A", "amount": Decimal("90"), "splits": [
            {"user_id": "A", "amount_owed": Decimal("30"), "amount_paid": Decimal("30")},
            {"user_id": "B", "amount_owed": Decimal("30"), "amount_paid": Decimal("0")},
            {"user_id": "C", "amount_owed": Decimal("30"), "amount_paid": Decimal("0")},
        ]},
    ]

    totals = calculate_expense_balances(expenses)
    settlements = min_cash_flow({user: t["balance"] for user, t in totals.items()})

    # Result: [{"from": "B", "to": "A", "amount": Decimal("30.00")}, ...]
"""

import logging
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Iterable, List, Mapping

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')


def round_decimal(value: Decimal, precision: Decimal = CENT) -> Decimal:
    """
    Round a Decimal value to the specified precision.

    Args:
        value: The Decimal value to round
        precision: The precision to round to (default: 0.01 for cents)

    Returns:
        Rounded Decimal value

    Example:
        >>> round_decimal(Decimal("43.333333"), Decimal("0.01"))
        Decimal('43.33')
    """
    return Decimal(str(value)).quantize(precision)


def validate_balance_sum(balances: Mapping[str, Decimal], tolerance: Decimal = CENT) -> None:
    """
    Validate that the sum of all balances is approximately zero.

    Raises:
        ValueError: If the sum of balances exceeds the tolerance
    """
    total = sum(balances.values(), Decimal('0'))
    if abs(total) > tolerance:
        raise ValueError(
            f"Balances not zero-sum: total={total}, tolerance={tolerance}. "
            f"This indicates unbalanced expense data."
        )


def validate_split_total(
    amount: Decimal,
    split_amounts: Iterable[Decimal],
    tolerance: Decimal = CENT
) -> None:
    """
    Validate that custom split amounts add up to the expense amount.

    Raises:
        ValueError: If the split total differs from the amount by more than the tolerance
    """
    total = sum((Decimal(str(a)) for a in split_amounts), Decimal('0'))
    if abs(total - Decimal(str(amount))) > tolerance:
        raise ValueError(
            f"Custom split amounts must equal the total expense amount "
            f"(splits={total}, amount={amount})"
        )


def split_equally(amount: Decimal, participants: List[str]) -> Dict[str, Decimal]:
    """
    Split an amount into equal cent-exact shares.

    Leftover cents from rounding down are handed out one per participant in
    list order, so the shares always add up to the amount exactly.

    Example:
        >>> split_equally(Decimal("100"), ["A", "B", "C"])
        {'A': Decimal('33.34'), 'B': Decimal('33.33'), 'C': Decimal('33.33')}
    """
    if not participants:
        raise ValueError("At least one participant is required to split an expense")

    amount = round_decimal(Decimal(str(amount)))
    base_share = (amount / len(participants)).quantize(CENT, rounding=ROUND_DOWN)
    remainder_cents = int((amount - base_share * len(participants)) / CENT)

    shares = {}
    for index, participant in enumerate(participants):
        share = base_share + (CENT if index < remainder_cents else Decimal('0'))
        shares[participant] = shares.get(participant, Decimal('0')) + share
    return shares


def calculate_expense_balances(expenses: Iterable[Mapping]) -> Dict[str, Dict[str, Decimal]]:
    """
    Calculate paid, owed and net balance for each user from shared expenses.

    The payer is credited with the full expense amount and every split row
    adds its amount_owed to that participant. A non-payer's amount_paid is
    money handed to the payer for that split, so it moves credit from the
    payer to the participant. The payer's own split row only counts as owed.

    Net balance = total_paid - total_owed
    - Positive balance: User is owed money (creditor)
    - Negative balance: User owes money (debtor)

    Args:
        expenses: Iterable of mappings with "payer", "amount" and "splits",
                  where each split has "user_id", "amount_owed" and "amount_paid"

    Returns:
        Dictionary mapping user_id -> {"total_paid", "total_owed", "balance"}

    Example:
        >>> calculate_expense_balances([{
        ...     "payer": "A", "amount": Decimal("90"),
        ...     "splits": [{"user_id": u, "amount_owed": Decimal("30"), "amount_paid": Decimal("0")}
        ...                for u in ("A", "B", "C")]
        ... }])["A"]["balance"]
        Decimal('60.00')
    """
    totals: Dict[str, Dict[str, Decimal]] = {}

    def entry(user_id: str) -> Dict[str, Decimal]:
        if user_id not in totals:
            totals[user_id] = {"total_paid": Decimal('0'), "total_owed": Decimal('0')}
        return totals[user_id]

    for expense in expenses:
        payer = expense["payer"]
        entry(payer)["total_paid"] += Decimal(str(expense["amount"]))

        for split in expense.get("splits") or []:
            user_id = split["user_id"]
            entry(user_id)["total_owed"] += Decimal(str(split.get("amount_owed") or 0))

            paid = Decimal(str(split.get("amount_paid") or 0))
            if user_id != payer and paid:
                entry(user_id)["total_paid"] += paid
                entry(payer)["total_paid"] -= paid

    return {
        user_id: {
            "total_paid": round_decimal(values["total_paid"]),
            "total_owed": round_decimal(values["total_owed"]),
            "balance": round_decimal(values["total_paid"] - values["total_owed"]),
        }
        for user_id, values in totals.items()
    }


def min_cash_flow(
    balances: Mapping[str, Decimal],
    tolerance: Decimal = Decimal('0'),
    max_iterations: int = 1000
) -> List[Dict]:
    """
    Collapse net balances into a short list of pairwise settlements.

    Uses a greedy algorithm that:
    1. Separates users into debtors (balance < 0, stored as a positive amount)
       and creditors (balance > 0)
    2. Sorts both lists by amount (largest first)
    3. Repeatedly matches the largest remaining debtor with the largest
       remaining creditor and transfers the minimum of the two
    4. Advances past any party whose remaining amount reaches <= tolerance
    5. Stops as soon as either list is exhausted

    Unbalanced input is accepted: the total settled is
    min(total_debt, total_credit) and the surplus side keeps a remainder.

    Edge Cases Handled:
    - Empty input or a single user: returns []
    - All balances within tolerance of zero: returns []
    - Only creditors or only debtors: returns []
    - If max_iterations exceeded: raises RuntimeError (prevents infinite loops)

    Args:
        balances: Dictionary mapping user_id -> net_balance
        tolerance: Amounts at or below this are treated as settled (default: 0)
        max_iterations: Maximum number of matching steps (default: 1000)

    Returns:
        List of settlement transactions, each with format:
        [{"from": str, "to": str, "amount": Decimal}, ...]

    Example:
        >>> balances = {"A": Decimal("50"), "B": Decimal("-10"), "C": Decimal("-40")}
        >>> min_cash_flow(balances)
        [{"from": "C", "to": "A", "amount": Decimal("40.00")},
         {"from": "B", "to": "A", "amount": Decimal("10.00")}]
    """
    if not balances or len(balances) == 1:
        return []

    creditors = [
        [user_id, Decimal(str(balance))]
        for user_id, balance in balances.items()
        if Decimal(str(balance)) > tolerance
    ]
    debtors = [
        [user_id, -Decimal(str(balance))]  # Store as positive for easier matching
        for user_id, balance in balances.items()
        if Decimal(str(balance)) < -tolerance
    ]

    if not creditors or not debtors:
        return []

    # Stable sort keeps insertion order among equal amounts
    creditors.sort(key=lambda x: x[1], reverse=True)
    debtors.sort(key=lambda x: x[1], reverse=True)

    settlements = []
    iterations = 0

    i, j = 0, 0
    while i < len(debtors) and j < len(creditors):
        iterations += 1
        if iterations > max_iterations:
            raise RuntimeError(
                f"Settlement loop exceeded max_iterations ({max_iterations}). "
                f"This may indicate malformed input or rounding issues."
            )

        debtor = debtors[i]
        creditor = creditors[j]

        settlement_amount = min(debtor[1], creditor[1])
        if settlement_amount > 0:
            settlements.append({
                "from": debtor[0],
                "to": creditor[0],
                "amount": round_decimal(settlement_amount)
            })

        debtor[1] -= settlement_amount
        creditor[1] -= settlement_amount

        if debtor[1] <= tolerance:
            i += 1
        if creditor[1] <= tolerance:
            j += 1

    logger.debug(f"min_cash_flow produced {len(settlements)} settlements in {iterations} steps")
    return settlements
