"""
Order lifecycle state machine. Valid transitions enforce business rules.

Forward lifecycle: PENDING -> CONFIRMED -> PROCESSING -> SHIPPED -> OUT_FOR_DELIVERY -> DELIVERED.
Cancellation is allowed until shipment; a delivered order may be returned; cancelled and
returned orders may be refunded.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    REFUNDED = "REFUNDED"


class InvalidStatusError(ValueError):
    """Raised when a value is not one of the nine order statuses."""
    def __init__(self, value: object):
        self.value = value
        super().__init__(f"invalid order status: {value!r}")


INITIAL_STATUS = OrderStatus.PENDING

FORWARD_LIFECYCLE: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
    OrderStatus.REFUNDED,
})

_FORWARD_EDGES = frozenset(zip(FORWARD_LIFECYCLE, FORWARD_LIFECYCLE[1:]))

# Cancellable only before shipment
_CANCEL_EDGES = frozenset(
    (s, OrderStatus.CANCELLED)
    for s in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
)

# The only exits from a terminal status. REFUNDED has none.
POST_TERMINAL_EDGES: frozenset[tuple[OrderStatus, OrderStatus]] = frozenset({
    (OrderStatus.DELIVERED, OrderStatus.RETURNED),
    (OrderStatus.CANCELLED, OrderStatus.REFUNDED),
    (OrderStatus.RETURNED, OrderStatus.REFUNDED),
})

ALLOWED_TRANSITIONS: frozenset[tuple[OrderStatus, OrderStatus]] = (
    _FORWARD_EDGES | _CANCEL_EDGES | POST_TERMINAL_EDGES
)


def parse_status(value: "OrderStatus | str") -> OrderStatus:
    """Coerce an OrderStatus or its exact string value. Raises InvalidStatusError otherwise."""
    if isinstance(value, OrderStatus):
        return value
    if isinstance(value, str):
        try:
            return OrderStatus(value)
        except ValueError:
            pass
    raise InvalidStatusError(value)


def is_terminal(status: "OrderStatus | str") -> bool:
    """True if no transition is permitted from status in the general case."""
    return parse_status(status) in TERMINAL_STATUSES


def is_valid_transition(current: "OrderStatus | str", next_status: "OrderStatus | str") -> bool:
    """True if an order in current may move to next_status."""
    pair = (parse_status(current), parse_status(next_status))
    if pair in POST_TERMINAL_EDGES:
        return True
    if pair[0] in TERMINAL_STATUSES:
        return False
    return pair in ALLOWED_TRANSITIONS


def successor(status: "OrderStatus | str") -> OrderStatus | None:
    """Next status on the forward lifecycle, or None off the chain or at its end."""
    status = parse_status(status)
    if status not in FORWARD_LIFECYCLE:
        return None
    idx = FORWARD_LIFECYCLE.index(status)
    if idx + 1 == len(FORWARD_LIFECYCLE):
        return None
    return FORWARD_LIFECYCLE[idx + 1]


def allowed_next_statuses(status: "OrderStatus | str") -> list[OrderStatus]:
    status = parse_status(status)
    return [s for s in OrderStatus if is_valid_transition(status, s)]


def is_cancellable(status: "OrderStatus | str") -> bool:
    return is_valid_transition(status, OrderStatus.CANCELLED)
