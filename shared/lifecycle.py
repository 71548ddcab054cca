"""
Order status state machine.

    pending -> assigned -> picked_up -> on_the_way -> delivered
    cancelled is reachable from any non-terminal state.

Both services keep a copy of the status (the order service owns it, the
delivery service mirrors it) and both apply the same forward-only rule, so a
redelivered or reordered event can never move an order backwards.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transition(Enum):
    APPLY = "apply"
    NOOP = "noop"
    ILLEGAL = "illegal"


STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.ASSIGNED: 1,
    OrderStatus.PICKED_UP: 2,
    OrderStatus.ON_THE_WAY: 3,
    OrderStatus.DELIVERED: 4,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# assigned_partner_id is set exactly while the order is in one of these
PARTNER_STATUSES = frozenset(
    {OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED}
)

# The partner is busy with the order (not available for another one)
IN_FLIGHT_STATUSES = frozenset({OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY})


def classify_transition(current: OrderStatus, new: OrderStatus) -> Transition:
    current, new = OrderStatus(current), OrderStatus(new)
    if current == new:
        return Transition.NOOP
    if current in TERMINAL_STATUSES:
        return Transition.ILLEGAL
    if new == OrderStatus.CANCELLED:
        return Transition.APPLY
    if STATUS_RANK[new] > STATUS_RANK[current]:
        return Transition.APPLY
    return Transition.ILLEGAL


def requires_partner(status: OrderStatus) -> bool:
    return OrderStatus(status) in PARTNER_STATUSES


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES
