import logging
from typing import Dict, Iterable, List, Optional

from models import Balance, Expense, GroupSummary, Invitee, Member, Payment, Settlement
from utils import format_phone

logger = logging.getLogger(__name__)

# Balances below one minor unit count as settled.
MATERIALITY_THRESHOLD = 1


def split_shares(amount_minor: int, count: int) -> List[int]:
    """Equal shares of ``amount_minor``; the first ``remainder`` shares get one extra unit."""
    if count <= 0:
        raise ValueError("Expense must have at least one participant")

    base = amount_minor // count
    remainder = amount_minor - base * count
    return [base + 1 if i < remainder else base for i in range(count)]


def share_of(expense: Expense, phone: str) -> int:
    if phone not in expense.participants:
        return 0
    shares = split_shares(expense.amount_minor, len(expense.participants))
    return shares[expense.participants.index(phone)]


def compute_balances(members: Iterable[str], expenses: Iterable[Expense]) -> Dict[str, int]:
    """Net balance per phone in minor units.

    Positive means the group owes that person, negative means they owe the
    group. Members are seeded at 0 in the order given; anyone else gets an
    entry when an expense first touches them. The values always sum to 0.
    """
    balances: Dict[str, int] = {phone: 0 for phone in members}

    for expense in expenses:
        shares = split_shares(expense.amount_minor, len(expense.participants))

        balances[expense.payer_phone] = balances.get(expense.payer_phone, 0) + expense.amount_minor

        for phone, share in zip(expense.participants, shares):
            balances[phone] = balances.get(phone, 0) - share

    return balances


def minimize_settlements(balances: Dict[str, int]) -> List[Settlement]:
    """Greedy largest-debtor to largest-creditor matching.

    Produces at most ``len(debtors) + len(creditors) - 1`` payments. Ties
    between equal amounts keep the balance map's iteration order.
    """
    debtors = []
    creditors = []

    for phone, amount in balances.items():
        if abs(amount) < MATERIALITY_THRESHOLD:
            continue
        if amount < 0:
            debtors.append([phone, -amount])
        else:
            creditors.append([phone, amount])

    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)

    settlements: List[Settlement] = []

    i, j = 0, 0
    while i < len(debtors) and j < len(creditors):
        debtor_phone, debt = debtors[i]
        creditor_phone, credit = creditors[j]

        payment = min(debt, credit)

        settlements.append(Settlement(
            from_phone=debtor_phone,
            to_phone=creditor_phone,
            amount_minor=payment
        ))

        debtors[i][1] -= payment
        creditors[j][1] -= payment

        if debtors[i][1] <= MATERIALITY_THRESHOLD:
            i += 1
        if creditors[j][1] <= MATERIALITY_THRESHOLD:
            j += 1

    logger.debug("Settled %d debtors and %d creditors with %d payments",
                 len(debtors), len(creditors), len(settlements))

    return settlements


def display_names(members: List[Member], invitees: List[Invitee]) -> Dict[str, str]:
    names = {i.phone: i.name for i in invitees if i.name}
    names.update({m.phone: m.name for m in members})
    return names


def calculate_summary(group_id: str,
                      members: List[Member],
                      expenses: List[Expense],
                      invitees: Optional[List[Invitee]] = None) -> GroupSummary:
    names = display_names(members, invitees or [])

    def name_for(phone: str) -> str:
        return names.get(phone) or format_phone(phone)

    balance_map = compute_balances([m.phone for m in members], expenses)
    settlements = minimize_settlements(balance_map)

    balances = [
        Balance(phone=phone, name=name_for(phone), balance_minor=amount)
        for phone, amount in balance_map.items()
    ]
    balances.sort(key=lambda b: b.balance_minor, reverse=True)

    payments = [
        Payment(
            from_phone=s.from_phone,
            from_name=name_for(s.from_phone),
            to_phone=s.to_phone,
            to_name=name_for(s.to_phone),
            amount_minor=s.amount_minor
        )
        for s in settlements
    ]

    return GroupSummary(
        group_id=group_id,
        total_minor=sum(e.amount_minor for e in expenses),
        balances=balances,
        payments=payments
    )
