"""
Sub-Order State Machine

This module is the SINGLE SOURCE OF TRUTH for sub-order status transitions
and for the derived status of the parent order. All status changes must go
through ``validate_transition``; the parent order status is never set, only
computed with ``derive_order_status``.

    pending -> paid -> processing -> shipped -> delivered
    pending | paid | processing  -> cancelled
    shipped | delivered          -> refunded | returned
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from orderflow.core.exceptions import PreconditionError


# =============================================================================
# STATUS DEFINITIONS (Single Source of Truth)
# =============================================================================

class SubOrderStatus(str, Enum):
    """Fulfillment status of one seller's part of an order."""
    PENDING = "pending"          # Awaiting payment
    PAID = "paid"                # Payment completed, seller may start
    PROCESSING = "processing"    # Seller preparing the shipment
    SHIPPED = "shipped"          # Handed to courier
    DELIVERED = "delivered"      # Receipt confirmed by buyer or timeout

    CANCELLED = "cancelled"      # Cancelled before shipment
    REFUNDED = "refunded"        # Refunded after shipment
    RETURNED = "returned"        # Returned by the buyer


class OrderStatus(str, Enum):
    """Derived status of the whole order."""
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


# Position on the main fulfillment path
PROGRESS_RANK: Dict[SubOrderStatus, int] = {
    SubOrderStatus.PENDING: 0,
    SubOrderStatus.PAID: 1,
    SubOrderStatus.PROCESSING: 2,
    SubOrderStatus.SHIPPED: 3,
    SubOrderStatus.DELIVERED: 4,
}

OFF_PATH_STATUSES = frozenset({
    SubOrderStatus.CANCELLED,
    SubOrderStatus.REFUNDED,
    SubOrderStatus.RETURNED,
})

# Precedence when an order has no active sub-orders left and they ended differently
OFF_PATH_PRECEDENCE: Tuple[SubOrderStatus, ...] = (
    SubOrderStatus.REFUNDED,
    SubOrderStatus.RETURNED,
    SubOrderStatus.CANCELLED,
)


# =============================================================================
# TRANSITION RULES
# =============================================================================

SUB_ORDER_TRANSITIONS: Dict[SubOrderStatus, List[SubOrderStatus]] = {
    SubOrderStatus.PENDING: [
        SubOrderStatus.PAID,         # Payment confirmed
        SubOrderStatus.CANCELLED,    # Cancel before payment
    ],
    SubOrderStatus.PAID: [
        SubOrderStatus.PROCESSING,   # Seller starts fulfillment
        SubOrderStatus.SHIPPED,      # Seller ships straight away
        SubOrderStatus.CANCELLED,
    ],
    SubOrderStatus.PROCESSING: [
        SubOrderStatus.SHIPPED,
        SubOrderStatus.CANCELLED,
    ],
    SubOrderStatus.SHIPPED: [
        SubOrderStatus.DELIVERED,    # Buyer confirms receipt (or timeout)
        SubOrderStatus.REFUNDED,
        SubOrderStatus.RETURNED,
    ],
    SubOrderStatus.DELIVERED: [
        SubOrderStatus.REFUNDED,
        SubOrderStatus.RETURNED,
    ],
    SubOrderStatus.CANCELLED: [],    # Terminal state
    SubOrderStatus.REFUNDED: [],     # Terminal state
    SubOrderStatus.RETURNED: [],     # Terminal state
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (SubOrderStatus.PENDING, SubOrderStatus.PAID): "Payment Confirmed",
    (SubOrderStatus.PENDING, SubOrderStatus.CANCELLED): "Cancel",
    (SubOrderStatus.PAID, SubOrderStatus.PROCESSING): "Start Processing",
    (SubOrderStatus.PAID, SubOrderStatus.SHIPPED): "Ship",
    (SubOrderStatus.PAID, SubOrderStatus.CANCELLED): "Cancel",
    (SubOrderStatus.PROCESSING, SubOrderStatus.SHIPPED): "Ship",
    (SubOrderStatus.PROCESSING, SubOrderStatus.CANCELLED): "Cancel",
    (SubOrderStatus.SHIPPED, SubOrderStatus.DELIVERED): "Confirm Delivery",
    (SubOrderStatus.SHIPPED, SubOrderStatus.REFUNDED): "Refund",
    (SubOrderStatus.SHIPPED, SubOrderStatus.RETURNED): "Return",
    (SubOrderStatus.DELIVERED, SubOrderStatus.REFUNDED): "Refund",
    (SubOrderStatus.DELIVERED, SubOrderStatus.RETURNED): "Return",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _as_status(status) -> SubOrderStatus:
    return status if isinstance(status, SubOrderStatus) else SubOrderStatus(status)


def can_transition(current_status, new_status) -> bool:
    """Check if a transition is allowed."""
    allowed = SUB_ORDER_TRANSITIONS.get(_as_status(current_status), [])
    return _as_status(new_status) in allowed


def get_allowed_transitions(current_status) -> List[SubOrderStatus]:
    """Get list of statuses that can be transitioned to from current status."""
    return SUB_ORDER_TRANSITIONS.get(_as_status(current_status), [])


def get_transition_action(current_status, new_status) -> str:
    """Get human-readable action name for a transition."""
    current, new = _as_status(current_status), _as_status(new_status)
    return TRANSITION_ACTIONS.get((current, new), f"{current.value} -> {new.value}")


def validate_transition(current_status, new_status) -> None:
    """
    Validate a sub-order status transition.

    Raises:
        PreconditionError: If the transition is not in the table.
    """
    current, new = _as_status(current_status), _as_status(new_status)
    if can_transition(current, new):
        return

    allowed = get_allowed_transitions(current)
    if not allowed:
        raise PreconditionError(
            f"Sub-order in '{current.value}' status cannot be modified. This is a terminal state.",
            details={"current_status": current.value, "requested_status": new.value},
        )
    raise PreconditionError(
        f"Cannot change sub-order from '{current.value}' to '{new.value}'. "
        f"Allowed transitions: {', '.join(s.value for s in allowed)}",
        details={
            "current_status": current.value,
            "requested_status": new.value,
            "allowed": [s.value for s in allowed],
        },
    )


# =============================================================================
# STATUS CHECK HELPERS
# =============================================================================

def is_terminal(status) -> bool:
    """Is this a terminal (final) state? Delivered still allows refund/return."""
    return not get_allowed_transitions(status)


def is_off_path(status) -> bool:
    return _as_status(status) in OFF_PATH_STATUSES


def can_cancel(status) -> bool:
    return can_transition(status, SubOrderStatus.CANCELLED)


def can_ship(status) -> bool:
    return can_transition(status, SubOrderStatus.SHIPPED)


def has_reached(status, target: SubOrderStatus) -> bool:
    """True when a main-path status is at or beyond ``target``."""
    current = _as_status(status)
    if current in OFF_PATH_STATUSES:
        return False
    return PROGRESS_RANK[current] >= PROGRESS_RANK[target]


# =============================================================================
# DERIVED ORDER STATUS
# =============================================================================

def derive_order_status(statuses: Iterable) -> Tuple[OrderStatus, bool]:
    """
    Summarise sub-order statuses into the order status.

    Sub-orders that left the main path (cancelled, refunded, returned) are
    ignored while any sub-order is still active; among the active ones the
    least-advanced wins, so ``delivered`` is reported only when every active
    sub-order is delivered. Returns ``(status, is_partial)``, where
    ``is_partial`` marks a mix of active and off-path sub-orders (or a mix of
    different off-path endings).
    """
    all_statuses = [_as_status(s) for s in statuses]
    if not all_statuses:
        return OrderStatus.PENDING, False

    active = [s for s in all_statuses if s not in OFF_PATH_STATUSES]
    off_path = [s for s in all_statuses if s in OFF_PATH_STATUSES]

    if active:
        least = min(active, key=PROGRESS_RANK.__getitem__)
        return OrderStatus(least.value), bool(off_path)

    distinct = set(off_path)
    if len(distinct) == 1:
        return OrderStatus(off_path[0].value), False

    for status in OFF_PATH_PRECEDENCE:
        if status in distinct:
            return OrderStatus(status.value), True

    # Unreachable: every off-path status appears in the precedence list
    raise ValueError(f"Unknown off-path statuses: {distinct}")


def order_progress_rank(status: Optional[OrderStatus]) -> int:
    """Rank of a derived order status on the main path, -1 when off-path."""
    if status is None:
        return -1
    sub_status = SubOrderStatus(status.value if isinstance(status, Enum) else status)
    return PROGRESS_RANK.get(sub_status, -1)


def describe_state_machine() -> str:
    """Text representation of the state machine."""
    lines = []
    for status in SubOrderStatus:
        transitions = get_allowed_transitions(status)
        if transitions:
            lines.append(f"{status.value}:")
            for target in transitions:
                lines.append(f"  -> {target.value} ({get_transition_action(status, target)})")
        else:
            lines.append(f"{status.value}: [TERMINAL STATE]")
    return "\n".join(lines)


if __name__ == "__main__":
    # Run this file directly to see the state diagram
    print(describe_state_machine())
