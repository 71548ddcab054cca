"""Status state machine shared by both services."""
import pytest

from shared.lifecycle import (
    OrderStatus,
    Transition,
    classify_transition,
    is_terminal,
    requires_partner,
)


class TestClassifyTransition:
    @pytest.mark.parametrize(
        "current,new",
        [
            (OrderStatus.PENDING, OrderStatus.ASSIGNED),
            (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP),
            (OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY),
            (OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED),
        ],
    )
    def test_canonical_steps_apply(self, current, new):
        assert classify_transition(current, new) is Transition.APPLY

    def test_forward_skip_applies(self):
        # picked_up can overtake assigned on the way to the order service
        assert classify_transition(OrderStatus.PENDING, OrderStatus.PICKED_UP) is Transition.APPLY

    def test_same_status_is_noop(self):
        assert classify_transition(OrderStatus.PICKED_UP, OrderStatus.PICKED_UP) is Transition.NOOP

    def test_regression_is_illegal(self):
        assert classify_transition(OrderStatus.PICKED_UP, OrderStatus.ASSIGNED) is Transition.ILLEGAL
        assert classify_transition(OrderStatus.ASSIGNED, OrderStatus.PENDING) is Transition.ILLEGAL

    @pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        assert classify_transition(terminal, OrderStatus.ON_THE_WAY) is Transition.ILLEGAL
        assert classify_transition(terminal, OrderStatus.PENDING) is Transition.ILLEGAL

    def test_delivered_cannot_be_cancelled(self):
        assert classify_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED) is Transition.ILLEGAL

    @pytest.mark.parametrize(
        "current", [OrderStatus.PENDING, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY]
    )
    def test_cancel_from_any_open_state(self, current):
        assert classify_transition(current, OrderStatus.CANCELLED) is Transition.APPLY

    def test_accepts_raw_strings(self):
        assert classify_transition("pending", "assigned") is Transition.APPLY


def test_partner_bearing_statuses():
    assert not requires_partner(OrderStatus.PENDING)
    assert not requires_partner(OrderStatus.CANCELLED)
    assert requires_partner(OrderStatus.ASSIGNED)
    assert requires_partner(OrderStatus.DELIVERED)


def test_terminal_statuses():
    assert is_terminal("delivered")
    assert is_terminal(OrderStatus.CANCELLED)
    assert not is_terminal(OrderStatus.ON_THE_WAY)
