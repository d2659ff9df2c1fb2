"""
Unit tests for the order transition table and role permissions.
"""
import pytest

from laundry_ops.domain.enums import OrderStatus, StaffRole
from laundry_ops.domain.transitions import (
    ALLOWED_TRANSITIONS,
    allowed_next_statuses,
    can_transition,
    team_statuses,
    validate_transition,
)
from laundry_ops.exceptions import InvalidTransition, TransitionNotPermitted, ValidationError


class TestTransitionTable:
    """Test suite for the transition table."""

    @pytest.mark.unit
    def test_every_status_has_an_entry(self) -> None:
        """The table covers every order status."""
        assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)

    @pytest.mark.unit
    def test_refunded_is_terminal(self) -> None:
        """Nothing follows REFUNDED."""
        assert allowed_next_statuses(OrderStatus.REFUNDED) == frozenset()

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,requested",
        [
            (OrderStatus.ORDER_PLACED, OrderStatus.CONFIRMED),
            (OrderStatus.PROCESSING_COMPLETED, OrderStatus.READY_FOR_DELIVERY),
            (OrderStatus.QUALITY_CHECK, OrderStatus.PROCESSING_STARTED),
            (OrderStatus.DELIVERY_FAILED, OrderStatus.DELIVERY_ASSIGNED),
        ],
    )
    def test_allowed(self, current: OrderStatus, requested: OrderStatus) -> None:
        """Legal successors are accepted."""
        assert can_transition(current, requested)

    @pytest.mark.unit
    def test_cannot_skip_steps(self) -> None:
        """ORDER_PLACED cannot jump straight to DELIVERED."""
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(OrderStatus.ORDER_PLACED, OrderStatus.DELIVERED, StaffRole.SUPER_ADMIN)

        assert exc_info.value.context["current_status"] == "ORDER_PLACED"
        assert exc_info.value.context["requested_status"] == "DELIVERED"

    @pytest.mark.unit
    def test_same_status_is_rejected(self) -> None:
        """Re-setting the current status is not a transition."""
        with pytest.raises(InvalidTransition, match="already CONFIRMED"):
            validate_transition(OrderStatus.CONFIRMED, OrderStatus.CONFIRMED, StaffRole.SUPER_ADMIN)

    @pytest.mark.unit
    def test_invalid_transition_is_a_validation_error(self) -> None:
        """Callers can catch both failure kinds as ValidationError."""
        assert issubclass(InvalidTransition, ValidationError)
        assert issubclass(TransitionNotPermitted, ValidationError)


class TestRolePermissions:
    """Test suite for role permissions."""

    @pytest.mark.unit
    def test_driver_cannot_start_processing(self) -> None:
        """Processing statuses belong to the facility team."""
        with pytest.raises(TransitionNotPermitted):
            validate_transition(
                OrderStatus.RECEIVED_AT_FACILITY, OrderStatus.PROCESSING_STARTED, StaffRole.DRIVER
            )

    @pytest.mark.unit
    def test_facility_can_start_processing(self) -> None:
        """Facility staff move received orders into processing."""
        validate_transition(
            OrderStatus.RECEIVED_AT_FACILITY, OrderStatus.PROCESSING_STARTED, StaffRole.FACILITY_TEAM
        )

    @pytest.mark.unit
    def test_system_only_sets_ready_for_delivery(self) -> None:
        """The system actor can auto-advance but nothing else."""
        validate_transition(
            OrderStatus.PROCESSING_COMPLETED, OrderStatus.READY_FOR_DELIVERY, StaffRole.SYSTEM
        )
        with pytest.raises(TransitionNotPermitted):
            validate_transition(OrderStatus.ORDER_PLACED, OrderStatus.CONFIRMED, StaffRole.SYSTEM)

    @pytest.mark.unit
    def test_table_checked_before_role(self) -> None:
        """An illegal transition is reported as such even for an unprivileged role."""
        with pytest.raises(InvalidTransition):
            validate_transition(OrderStatus.ORDER_PLACED, OrderStatus.DELIVERED, StaffRole.DRIVER)


class TestTeamQueues:
    """Test suite for team work queues."""

    @pytest.mark.unit
    def test_super_admin_sees_everything(self) -> None:
        assert set(team_statuses(StaffRole.SUPER_ADMIN)) == set(OrderStatus)

    @pytest.mark.unit
    def test_facility_queue(self) -> None:
        """Facility staff see orders from pickup completion to ready for delivery."""
        statuses = set(team_statuses(StaffRole.FACILITY_TEAM))

        assert OrderStatus.PROCESSING_STARTED in statuses
        assert OrderStatus.DELIVERED not in statuses

    @pytest.mark.unit
    def test_system_has_no_queue(self) -> None:
        assert list(team_statuses(StaffRole.SYSTEM)) == []
