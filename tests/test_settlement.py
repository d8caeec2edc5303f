import pytest

from models import Expense, Invitee, Member
from settlement import (calculate_summary, compute_balances, minimize_settlements,
                        share_of, split_shares)

ALICE = "+15551234567"
BOB = "+15551234568"
CHARLIE = "+15551234569"
DAVE = "+15551234570"


def _expense(description, amount, payer, participants):
    return Expense(description=description,
                   amount_minor=amount,
                   payer_phone=payer,
                   participants=participants)


def _trip():
    return [
        _expense("Hotel", 30000, ALICE, [ALICE, BOB, CHARLIE]),
        _expense("Dinner", 12000, BOB, [ALICE, BOB, CHARLIE]),
    ]


def _replay(balances, settlements):
    result = dict(balances)
    for s in settlements:
        result[s.from_phone] += s.amount_minor
        result[s.to_phone] -= s.amount_minor
    return result


def _as_tuples(settlements):
    return [(s.from_phone, s.to_phone, s.amount_minor) for s in settlements]


def test_split_shares_gives_remainder_to_first_participants():
    assert split_shares(100, 3) == [34, 33, 33]
    assert split_shares(101, 3) == [34, 34, 33]
    assert split_shares(99, 3) == [33, 33, 33]
    assert split_shares(2, 5) == [1, 1, 0, 0, 0]


def test_split_shares_rejects_empty_split():
    with pytest.raises(ValueError):
        split_shares(100, 0)


def test_trip_balances():
    balances = compute_balances([ALICE, BOB, CHARLIE], _trip())

    assert balances == {ALICE: 16000, BOB: -2000, CHARLIE: -14000}
    assert sum(balances.values()) == 0


def test_trip_settlements():
    balances = compute_balances([ALICE, BOB, CHARLIE], _trip())

    assert _as_tuples(minimize_settlements(balances)) == [
        (CHARLIE, ALICE, 14000),
        (BOB, ALICE, 2000),
    ]


def test_remainder_follows_stored_participant_order():
    expense = _expense("Snacks", 100, DAVE, [BOB, ALICE, CHARLIE])

    balances = compute_balances([], [expense])

    assert balances == {DAVE: 100, BOB: -34, ALICE: -33, CHARLIE: -33}
    assert share_of(expense, BOB) == 34
    assert share_of(expense, CHARLIE) == 33
    assert share_of(expense, DAVE) == 0


def test_members_without_expenses_stay_at_zero():
    balances = compute_balances([ALICE, BOB, CHARLIE, DAVE], _trip())

    assert balances[DAVE] == 0
    assert list(balances) == [ALICE, BOB, CHARLIE, DAVE]
    assert DAVE not in {s.from_phone for s in minimize_settlements(balances)}


def test_payer_outside_members_gets_a_balance():
    balances = compute_balances([ALICE], [_expense("Taxi", 900, BOB, [ALICE, BOB, CHARLIE])])

    assert balances == {ALICE: -300, BOB: 600, CHARLIE: -300}


def test_empty_input():
    assert compute_balances([], []) == {}
    assert minimize_settlements({}) == []


def test_lone_member_settles_to_zero():
    balances = compute_balances([ALICE], [_expense("Coffee", 450, ALICE, [ALICE])])

    assert balances == {ALICE: 0}
    assert minimize_settlements(balances) == []


def test_expense_order_does_not_change_balances():
    expenses = _trip() + [_expense("Taxi", 1001, CHARLIE, [BOB, CHARLIE])]

    forward = compute_balances([ALICE, BOB, CHARLIE], expenses)
    backward = compute_balances([ALICE, BOB, CHARLIE], list(reversed(expenses)))

    assert forward == backward


def test_four_person_group():
    expenses = [
        _expense("Cabin", 1000, ALICE, [ALICE, BOB, CHARLIE, DAVE]),
        _expense("Fuel", 500, BOB, [BOB, CHARLIE]),
        _expense("Snacks", 100, CHARLIE, [ALICE, BOB, CHARLIE]),
    ]

    balances = compute_balances([ALICE, BOB, CHARLIE, DAVE], expenses)
    settlements = minimize_settlements(balances)

    assert balances == {ALICE: 716, BOB: -33, CHARLIE: -433, DAVE: -250}
    assert sum(balances.values()) == 0
    assert _as_tuples(settlements) == [
        (CHARLIE, ALICE, 433),
        (DAVE, ALICE, 250),
        (BOB, ALICE, 33),
    ]
    assert all(v == 0 for v in _replay(balances, settlements).values())


def test_debtor_split_across_creditors():
    balances = {"a": 500, "b": 300, "c": -600, "d": -200}

    settlements = minimize_settlements(balances)

    assert _as_tuples(settlements) == [("c", "a", 500), ("c", "b", 100), ("d", "b", 200)]
    assert len(settlements) <= 2 + 2 - 1
    assert all(v == 0 for v in _replay(balances, settlements).values())


@pytest.mark.parametrize("balances", [
    {"a": 16000, "b": -2000, "c": -14000},
    {"a": 500, "b": 300, "c": -600, "d": -200},
    {"a": 1250, "b": -250, "c": -250, "d": -250, "e": -500},
    {"a": 70, "b": 30, "c": -40, "d": -40, "e": -20},
    {"a": 6, "b": 3, "c": -5, "d": -4},
])
def test_replayed_settlements_clear_balances(balances):
    settlements = minimize_settlements(balances)

    debtors = sum(1 for v in balances.values() if v < 0)
    creditors = sum(1 for v in balances.values() if v > 0)
    assert len(settlements) <= debtors + creditors - 1
    assert all(s.amount_minor > 0 for s in settlements)
    assert all(-1 <= v <= 1 for v in _replay(balances, settlements).values())


def test_one_unit_leftovers_count_as_settled():
    balances = {"a": -6, "b": -3, "c": 5, "d": 4}

    settlements = minimize_settlements(balances)

    assert _as_tuples(settlements) == [("a", "c", 5), ("b", "d", 3)]
    assert _replay(balances, settlements) == {"a": -1, "b": 0, "c": 0, "d": 1}


def test_equal_amounts_keep_balance_order():
    assert _as_tuples(minimize_settlements({"x": 10, "y": -5, "z": -5})) == [
        ("y", "x", 5),
        ("z", "x", 5),
    ]
    assert _as_tuples(minimize_settlements({"x": 10, "z": -5, "y": -5})) == [
        ("z", "x", 5),
        ("y", "x", 5),
    ]


def test_results_are_deterministic():
    expenses = _trip() + [_expense("Taxi", 1001, CHARLIE, [BOB, CHARLIE, ALICE])]

    first = compute_balances([ALICE, BOB, CHARLIE], expenses)
    second = compute_balances([ALICE, BOB, CHARLIE], expenses)

    assert first == second
    assert minimize_settlements(first) == minimize_settlements(second)


def test_expense_without_participants_is_rejected():
    broken = Expense.model_construct(id="x",
                                     description="Broken",
                                     amount_minor=100,
                                     payer_phone=ALICE,
                                     participants=())

    with pytest.raises(ValueError):
        compute_balances([ALICE], [broken])


def test_summary_uses_member_and_invitee_names():
    members = [Member(name="Alice", phone=ALICE), Member(name="Bob", phone=BOB)]
    invitees = [Invitee(phone=CHARLIE, name="Charlie"), Invitee(phone=DAVE)]
    expenses = _trip() + [_expense("Taxi", 600, DAVE, [DAVE, ALICE])]

    summary = calculate_summary("grp", members, expenses, invitees)

    assert summary.total_minor == 42600
    assert [(b.name, b.balance_minor) for b in summary.balances] == [
        ("Alice", 15700),
        ("(555) 123-4570", 300),
        ("Bob", -2000),
        ("Charlie", -14000),
    ]
    assert summary.payments[0].from_name == "Charlie"
    assert summary.payments[0].to_name == "Alice"
