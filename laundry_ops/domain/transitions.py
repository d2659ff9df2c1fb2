"""
Order status transition table and role permissions.

The table is the single source of truth for which status may follow which;
order tracking, the API and the auto-advance path all validate through it.
"""
from typing import Dict, FrozenSet, Iterable

from laundry_ops.domain.enums import OrderStatus, StaffRole
from laundry_ops.exceptions import InvalidTransition, TransitionNotPermitted

S = OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.ORDER_PLACED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PICKUP_ASSIGNED, S.CANCELLED}),
    S.PICKUP_ASSIGNED: frozenset({S.PICKUP_IN_PROGRESS, S.PICKUP_FAILED, S.CANCELLED}),
    S.PICKUP_IN_PROGRESS: frozenset({S.PICKUP_COMPLETED, S.PICKUP_FAILED}),
    S.PICKUP_COMPLETED: frozenset({S.RECEIVED_AT_FACILITY}),
    S.PICKUP_FAILED: frozenset({S.PICKUP_ASSIGNED, S.CANCELLED}),
    S.RECEIVED_AT_FACILITY: frozenset({S.PROCESSING_STARTED}),
    S.PROCESSING_STARTED: frozenset({S.PROCESSING_COMPLETED, S.QUALITY_CHECK}),
    S.PROCESSING_COMPLETED: frozenset({S.QUALITY_CHECK, S.READY_FOR_DELIVERY}),
    S.QUALITY_CHECK: frozenset({S.READY_FOR_DELIVERY, S.PROCESSING_STARTED}),
    S.READY_FOR_DELIVERY: frozenset({S.DELIVERY_ASSIGNED}),
    S.DELIVERY_ASSIGNED: frozenset({S.DELIVERY_IN_PROGRESS, S.DELIVERY_FAILED}),
    S.DELIVERY_IN_PROGRESS: frozenset({S.DELIVERED, S.DELIVERY_FAILED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    S.DELIVERY_FAILED: frozenset({S.DELIVERY_ASSIGNED, S.CANCELLED}),
    S.CANCELLED: frozenset({S.REFUNDED}),
    S.REFUNDED: frozenset(),
}

ROLE_PERMISSIONS: Dict[StaffRole, FrozenSet[OrderStatus]] = {
    StaffRole.SUPER_ADMIN: frozenset(OrderStatus),
    StaffRole.OPERATION_MANAGER: frozenset(s for s in OrderStatus if s is not S.ORDER_PLACED),
    StaffRole.DRIVER: frozenset(
        {
            S.PICKUP_IN_PROGRESS,
            S.PICKUP_COMPLETED,
            S.PICKUP_FAILED,
            S.RECEIVED_AT_FACILITY,
            S.DELIVERY_IN_PROGRESS,
            S.DELIVERED,
            S.DELIVERY_FAILED,
        }
    ),
    StaffRole.FACILITY_TEAM: frozenset(
        {
            S.RECEIVED_AT_FACILITY,
            S.PROCESSING_STARTED,
            S.PROCESSING_COMPLETED,
            S.QUALITY_CHECK,
            S.READY_FOR_DELIVERY,
            S.DELIVERY_ASSIGNED,
        }
    ),
    # Only reachable through the payment auto-advance path.
    StaffRole.SYSTEM: frozenset({S.READY_FOR_DELIVERY}),
}

# Statuses that trigger a customer notification.
NOTIFIABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        S.ORDER_PLACED,
        S.CONFIRMED,
        S.PICKUP_IN_PROGRESS,
        S.PICKUP_COMPLETED,
        S.PICKUP_FAILED,
        S.PROCESSING_STARTED,
        S.PROCESSING_COMPLETED,
        S.READY_FOR_DELIVERY,
        S.DELIVERY_IN_PROGRESS,
        S.DELIVERED,
        S.DELIVERY_FAILED,
        S.CANCELLED,
        S.REFUNDED,
    }
)

# Work queues shown to each team.
TEAM_QUEUES: Dict[StaffRole, FrozenSet[OrderStatus]] = {
    StaffRole.DRIVER: frozenset(
        {
            S.PICKUP_ASSIGNED,
            S.PICKUP_IN_PROGRESS,
            S.PICKUP_COMPLETED,
            S.DELIVERY_ASSIGNED,
            S.DELIVERY_IN_PROGRESS,
        }
    ),
    StaffRole.FACILITY_TEAM: frozenset(
        {
            S.PICKUP_COMPLETED,
            S.RECEIVED_AT_FACILITY,
            S.PROCESSING_STARTED,
            S.PROCESSING_COMPLETED,
            S.QUALITY_CHECK,
            S.READY_FOR_DELIVERY,
        }
    ),
    StaffRole.OPERATION_MANAGER: frozenset(
        {
            S.ORDER_PLACED,
            S.CONFIRMED,
            S.PICKUP_FAILED,
            S.READY_FOR_DELIVERY,
            S.DELIVERY_FAILED,
        }
    ),
}


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """Return True if ``requested`` directly follows ``current`` in the lifecycle."""
    return requested in ALLOWED_TRANSITIONS[current]


def allowed_next_statuses(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return ALLOWED_TRANSITIONS[current]


def role_can_set(role: StaffRole, requested: OrderStatus) -> bool:
    return requested in ROLE_PERMISSIONS.get(role, frozenset())


def validate_transition(
    current: OrderStatus, requested: OrderStatus, role: StaffRole
) -> None:
    """
    Validate an order status change.

    Args:
        current: The order's stored status
        requested: The status the caller wants to move to
        role: Role of the acting staff member

    Raises:
        InvalidTransition: If ``requested`` is not a legal successor of ``current``
        TransitionNotPermitted: If ``role`` may not set ``requested``
    """
    if current == requested:
        raise InvalidTransition(current, requested, f"Order is already {current.value}")
    if not can_transition(current, requested):
        raise InvalidTransition(current, requested)
    if not role_can_set(role, requested):
        raise TransitionNotPermitted(
            f"Role {role.value} cannot set order status {requested.value}",
            role=role.value,
            requested_status=requested.value,
        )


def team_statuses(role: StaffRole) -> Iterable[OrderStatus]:
    """Statuses in the work queue of ``role`` (all statuses for super admins)."""
    if role is StaffRole.SUPER_ADMIN:
        return list(OrderStatus)
    return sorted(TEAM_QUEUES.get(role, frozenset()), key=lambda s: s.value)
