import pytest

from app.errors import IllegalTransition
from app.services import booking_state as states

EXPECTED = {
    "pending": {"accepted", "declined", "canceled_customer"},
    "accepted": {"paid", "canceled_customer", "canceled_provider"},
    "declined": set(),
    "paid": {"completed", "completed_by_provider", "disputed", "refunded"},
    "completed": {"disputed", "refunded"},
    "completed_by_provider": {"disputed", "refunded"},
    "canceled_customer": set(),
    "canceled_provider": set(),
    "disputed": {"refunded", "completed"},
    "refunded": set(),
}


def test_every_status_has_an_outbound_set():
    assert set(states.BOOKING_TRANSITIONS) == set(states.BOOKING_STATUSES)
    assert len(states.BOOKING_STATUSES) == 10


@pytest.mark.parametrize("current", states.BOOKING_STATUSES)
@pytest.mark.parametrize("target", states.BOOKING_STATUSES)
def test_can_transition_matches_table(current, target):
    assert states.can_transition(current, target) is (target in EXPECTED[current])


def test_declined_booking_cannot_be_paid():
    with pytest.raises(IllegalTransition) as exc_info:
        states.assert_transition("declined", "paid")
    assert exc_info.value.current == "declined"
    assert exc_info.value.target == "paid"
    assert exc_info.value.status_code == 409


def test_unknown_status_has_no_transitions():
    assert states.can_transition("archived", "paid") is False
    assert states.allowed_transitions("archived") == []


def test_settled_or_later():
    settled = {s for s in states.BOOKING_STATUSES if states.is_settled_or_later(s)}
    assert settled == {"paid", "completed", "completed_by_provider", "disputed", "refunded"}


def test_terminal_statuses_have_no_exits():
    for status in states.TERMINAL_STATUSES - {"completed", "completed_by_provider"}:
        assert states.allowed_transitions(status) == []
