from app.errors import IllegalTransition

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
PAID = "paid"
COMPLETED = "completed"
COMPLETED_BY_PROVIDER = "completed_by_provider"
CANCELED_CUSTOMER = "canceled_customer"
CANCELED_PROVIDER = "canceled_provider"
DISPUTED = "disputed"
REFUNDED = "refunded"

BOOKING_STATUSES = (
    PENDING,
    ACCEPTED,
    DECLINED,
    PAID,
    COMPLETED,
    COMPLETED_BY_PROVIDER,
    CANCELED_CUSTOMER,
    CANCELED_PROVIDER,
    DISPUTED,
    REFUNDED,
)

BOOKING_TRANSITIONS = {
    PENDING: frozenset({ACCEPTED, DECLINED, CANCELED_CUSTOMER}),
    ACCEPTED: frozenset({PAID, CANCELED_CUSTOMER, CANCELED_PROVIDER}),
    DECLINED: frozenset(),
    PAID: frozenset({COMPLETED, COMPLETED_BY_PROVIDER, DISPUTED, REFUNDED}),
    COMPLETED: frozenset({DISPUTED, REFUNDED}),
    COMPLETED_BY_PROVIDER: frozenset({DISPUTED, REFUNDED}),
    CANCELED_CUSTOMER: frozenset(),
    CANCELED_PROVIDER: frozenset(),
    # Resolution edges; partial-amount resolutions are a product decision not modelled here.
    DISPUTED: frozenset({REFUNDED, COMPLETED}),
    REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {DECLINED, COMPLETED, COMPLETED_BY_PROVIDER, CANCELED_CUSTOMER, CANCELED_PROVIDER, REFUNDED}
)

SETTLED_OR_LATER = frozenset({PAID, COMPLETED, COMPLETED_BY_PROVIDER, DISPUTED, REFUNDED})

REFUNDABLE_STATUSES = frozenset({PAID, COMPLETED, COMPLETED_BY_PROVIDER})


def can_transition(current, target):
    return target in BOOKING_TRANSITIONS.get(current, frozenset())


def assert_transition(current, target):
    if not can_transition(current, target):
        raise IllegalTransition(current, target)


def allowed_transitions(current):
    return sorted(BOOKING_TRANSITIONS.get(current, frozenset()))


def is_settled_or_later(status):
    return status in SETTLED_OR_LATER
