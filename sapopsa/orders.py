"""Order lifecycle rules."""
from typing import Dict, FrozenSet, Optional

from .errors import ValidationError

STATUS_PLACED = "placed"
STATUS_PROCESSING = "processing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "Delivered"
STATUS_CANCELLED = "cancelled"

INITIAL_STATUS = STATUS_PLACED

ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATUS_PLACED: frozenset({STATUS_PROCESSING, STATUS_CANCELLED}),
    STATUS_PROCESSING: frozenset({STATUS_SHIPPED, STATUS_CANCELLED}),
    STATUS_SHIPPED: frozenset({STATUS_DELIVERED}),
    STATUS_DELIVERED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

CANONICAL_STATUSES = {status.lower(): status for status in ORDER_TRANSITIONS}


def canonical_status(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    try:
        return CANONICAL_STATUSES[normalized]
    except KeyError:
        allowed = ", ".join(ORDER_TRANSITIONS)
        raise ValidationError(f"Unknown order status. Use one of: {allowed}.")


def is_terminal(status: str) -> bool:
    return not ORDER_TRANSITIONS.get(status)


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def check_transition(current: Optional[str], requested: Optional[str]) -> str:
    """Return the canonical target status or raise for an illegal move.

    Orders stored before statuses were enforced may carry unknown labels;
    those are treated as freshly placed.
    """
    target = canonical_status(requested)
    current_status = CANONICAL_STATUSES.get(
        str(current or "").strip().lower(), INITIAL_STATUS
    )
    if current_status == target:
        return target
    if is_terminal(current_status):
        raise ValidationError(
            f"The order is already {current_status} and can no longer change."
        )
    if not can_transition(current_status, target):
        raise ValidationError(
            f"Cannot move an order from {current_status} to {target}."
        )
    return target
