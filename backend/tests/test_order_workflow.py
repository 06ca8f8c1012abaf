"""
Order workflow state machine: transition table, terminal states and the
context-aware transition authority.
"""
import pytest
import os
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
os.chdir(BACKEND_DIR)

from services.errors import InvalidTransitionError
from services.order_workflow import (
    OrderStatus, TransitionContext, STATUS_TRANSITIONS, TERMINAL_STATUSES,
    can_transition, get_allowed_transitions, is_terminal_state,
    is_valid_transition, validate_status_transition, get_status_display_name,
    get_carrier, list_carriers,
)

EXPECTED_EDGES = {
    ("pending", "received"), ("pending", "cancelled"),
    ("received", "packed"), ("received", "cancelled"),
    ("packed", "pickup_requested"), ("packed", "shipped"), ("packed", "cancelled"),
    ("pickup_requested", "shipped"), ("pickup_requested", "cancelled"),
    ("processing", "shipped"), ("processing", "cancelled"),
    ("shipped", "delivered"), ("shipped", "cancelled"),
}


class TestTransitionTable:
    """The table is the whitelist for the standard path."""

    def test_table_edges(self):
        edges = {(f.value, t.value) for f, targets in STATUS_TRANSITIONS.items() for t in targets}
        assert edges == EXPECTED_EDGES

    def test_transition_closure(self):
        for source in OrderStatus:
            for target in OrderStatus:
                expected = (source.value, target.value) in EXPECTED_EDGES
                assert is_valid_transition(source, target) is expected
                assert can_transition(source.value, target.value) is expected
                if not expected:
                    with pytest.raises(InvalidTransitionError):
                        validate_status_transition(source, target)

    def test_unknown_statuses_are_rejected(self):
        assert is_valid_transition("pending", "teleported") is False
        assert is_valid_transition("limbo", "received") is False
        assert can_transition("pending", "teleported", TransitionContext.ADMIN_OVERRIDE) is False

    def test_invalid_transition_carries_allowed_set(self):
        with pytest.raises(InvalidTransitionError) as exc:
            validate_status_transition("pending", "shipped")
        assert exc.value.allowed == ["received", "cancelled"]
        body = exc.value.to_dict()
        assert body["current_status"] == "pending"
        assert body["allowed_transitions"] == ["received", "cancelled"]
        assert body["error_code"] == "INVALID_TRANSITION"


class TestTerminalStates:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
        assert is_terminal_state("delivered")
        assert is_terminal_state(OrderStatus.CANCELLED)
        assert not is_terminal_state("shipped")

    def test_no_exit_from_terminal_on_non_admin_paths(self):
        non_admin = [c for c in TransitionContext if c != TransitionContext.ADMIN_OVERRIDE]
        for terminal in TERMINAL_STATUSES:
            for context in non_admin:
                assert get_allowed_transitions(terminal, context) == []

    def test_admin_override_can_leave_terminal(self):
        assert can_transition("delivered", "shipped", TransitionContext.ADMIN_OVERRIDE)
        assert set(get_allowed_transitions("cancelled", TransitionContext.ADMIN_OVERRIDE)) == {
            s.value for s in OrderStatus
        }


class TestShippingContexts:
    """Self-ship and agent paths are narrower than the table."""

    @pytest.mark.parametrize("context", [TransitionContext.SELF_SHIP, TransitionContext.AGENT_PICKUP])
    def test_ship_only_from_packed_or_pickup_requested(self, context):
        assert can_transition("packed", "shipped", context)
        assert can_transition("pickup_requested", "shipped", context)
        assert not can_transition("processing", "shipped", context)
        assert not can_transition("received", "shipped", context)
        assert not can_transition("packed", "cancelled", context)

    def test_agent_delivery_requires_parcel_in_transit(self):
        context = TransitionContext.AGENT_DELIVERY
        assert can_transition("shipped", "delivered", context)
        assert can_transition("in_transit", "delivered", context)
        assert can_transition("out_for_delivery", "delivered", context)
        assert not can_transition("pickup_requested", "delivered", context)
        assert not can_transition("shipped", "cancelled", context)

    def test_allowed_transitions_per_context(self):
        assert get_allowed_transitions("packed") == ["pickup_requested", "shipped", "cancelled"]
        assert get_allowed_transitions("packed", TransitionContext.SELF_SHIP) == ["shipped"]


class TestLookups:
    def test_display_names(self):
        assert get_status_display_name("pickup_requested") == "Pickup Requested"
        assert get_status_display_name("mystery") == "mystery"

    def test_carriers(self):
        ids = [c["id"] for c in list_carriers()]
        assert "bluedart" in ids and "other" in ids
        assert get_carrier("BlueDart")["name"] == "BlueDart"
        assert get_carrier("pigeon") is None
