"""
Service charge lifecycle state machine tests.
"""
import pytest

from settlement.errors import InvalidTransitionError
from settlement.state_machine import StateMachine, build_service_charge_machine


@pytest.fixture
def machine():
    return build_service_charge_machine()


class TestServiceChargeLifecycle:

    @pytest.mark.parametrize("from_state,to_state", [
        ("active", "paid"),
        ("active", "cancelled"),
        ("active", "unpaid"),
        ("unpaid", "active"),
        ("unpaid", "paid"),
        ("unpaid", "cancelled"),
        ("paid", "unpaid"),
    ])
    def test_registered_transitions_validate(self, machine, from_state, to_state):
        machine.validate_transition(from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        ("cancelled", "active"),
        ("cancelled", "paid"),
        ("cancelled", "unpaid"),
        ("paid", "cancelled"),
        ("paid", "active"),
    ])
    def test_unregistered_transitions_raise(self, machine, from_state, to_state):
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate_transition(from_state, to_state)
        assert exc.value.from_state == from_state
        assert exc.value.to_state == to_state

    def test_cancelled_is_terminal(self, machine):
        assert machine.get_allowed_transitions("cancelled") == []

    def test_error_lists_allowed_targets(self, machine):
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate_transition("paid", "cancelled")
        assert exc.value.allowed == ["unpaid"]
        assert "unpaid" in str(exc.value)

    def test_history_entry(self, machine):
        entry = machine.get_history_entry("active", "paid", user_id="u1", metadata={"admin_override": True})
        assert entry["from_state"] == "active"
        assert entry["to_state"] == "paid"
        assert entry["transitioned_by"] == "u1"
        assert entry["metadata"] == {"admin_override": True}
        assert entry["transitioned_at"] is not None


class TestRegistration:

    def test_register_is_chainable(self):
        machine = StateMachine("invoice").register("a", "b").register("b", "c")
        assert machine.can_transition("a", "b")
        assert not machine.can_transition("a", "c")
        assert machine.get_allowed_transitions("b") == ["c"]
