"""
Pure transition functions for the three order state machines.

    status:             pending -> processing -> paid -> shipped -> delivered
                        terminal alternates: cancelled, refunded, failed
    payment_status:     pending -> paid | failed
                        paid -> partially_refunded -> refunded
    fulfillment_status: unfulfilled -> partially_fulfilled -> fulfilled
                        unfulfilled | partially_fulfilled -> cancelled

Every function takes an OrderState and returns the next one, including any
cascade onto `status`. Re-applying the current value returns the state
unchanged. Nothing here touches the database; callers persist the result
with a compare-and-set on the state they started from.
"""
from dataclasses import dataclass, replace

from shared.errors import InvalidStatusTransition

ORDER_FLOW = ("pending", "processing", "paid", "shipped", "delivered")
ORDER_TERMINAL = ("cancelled", "refunded", "failed")
ORDER_STATUSES = ORDER_FLOW + ORDER_TERMINAL

PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "partially_refunded")
FULFILLMENT_STATUSES = ("unfulfilled", "partially_fulfilled", "fulfilled", "cancelled")

_PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"partially_refunded", "refunded"},
    "partially_refunded": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

_FULFILLMENT_TRANSITIONS = {
    "unfulfilled": {"partially_fulfilled", "fulfilled", "cancelled"},
    "partially_fulfilled": {"fulfilled", "cancelled"},
    "fulfilled": set(),
    "cancelled": set(),
}

# Terminal alternates reachable from each forward status
_ORDER_ALTERNATES = {
    "pending": {"cancelled", "failed"},
    "processing": {"cancelled", "failed"},
    "paid": {"refunded"},
    "shipped": {"refunded"},
    "delivered": {"refunded"},
}


@dataclass(frozen=True)
class OrderState:
    status: str = "pending"
    payment_status: str = "pending"
    fulfillment_status: str = "unfulfilled"

    @classmethod
    def of(cls, order) -> "OrderState":
        return cls(order.status, order.payment_status, order.fulfillment_status)

    @property
    def is_terminal(self) -> bool:
        return self.status in ORDER_TERMINAL


def _reject(field: str, current: str, new: str):
    raise InvalidStatusTransition(
        f"Cannot change {field} from '{current}' to '{new}'",
        field=field,
        current=current,
        requested=new,
    )


def _advance_status(state: OrderState, target: str) -> OrderState:
    """Cascade helper: moves `status` forward to `target`, never backwards."""
    if state.is_terminal:
        return state
    if ORDER_FLOW.index(state.status) >= ORDER_FLOW.index(target):
        return state
    return replace(state, status=target)


def apply_status(state: OrderState, new_status: str) -> OrderState:
    if new_status not in ORDER_STATUSES:
        _reject("status", state.status, new_status)
    if new_status == state.status:
        return state
    if state.is_terminal:
        _reject("status", state.status, new_status)

    if new_status in ORDER_TERMINAL:
        if new_status not in _ORDER_ALTERNATES[state.status]:
            _reject("status", state.status, new_status)
        if new_status == "cancelled" and state.fulfillment_status in ("unfulfilled", "partially_fulfilled"):
            return replace(state, status=new_status, fulfillment_status="cancelled")
        return replace(state, status=new_status)

    if ORDER_FLOW.index(new_status) < ORDER_FLOW.index(state.status):
        _reject("status", state.status, new_status)
    return replace(state, status=new_status)


def apply_payment_status(state: OrderState, new_status: str) -> OrderState:
    if new_status not in PAYMENT_STATUSES:
        _reject("payment_status", state.payment_status, new_status)
    if new_status == state.payment_status:
        return state
    if new_status not in _PAYMENT_TRANSITIONS[state.payment_status]:
        _reject("payment_status", state.payment_status, new_status)
    if new_status == "paid" and state.is_terminal:
        # A cancelled or failed order is never revived by a late payment
        _reject("payment_status", state.payment_status, new_status)

    next_state = replace(state, payment_status=new_status)
    if new_status == "paid":
        return _advance_status(next_state, "paid")
    if new_status == "refunded" and not state.is_terminal:
        return replace(next_state, status="refunded")
    if new_status == "failed" and state.status in ("pending", "processing"):
        return replace(next_state, status="failed")
    return next_state


def apply_fulfillment_status(state: OrderState, new_status: str) -> OrderState:
    if new_status not in FULFILLMENT_STATUSES:
        _reject("fulfillment_status", state.fulfillment_status, new_status)
    if new_status == state.fulfillment_status:
        return state
    if new_status not in _FULFILLMENT_TRANSITIONS[state.fulfillment_status]:
        _reject("fulfillment_status", state.fulfillment_status, new_status)
    if state.is_terminal and new_status != "cancelled":
        _reject("fulfillment_status", state.fulfillment_status, new_status)

    next_state = replace(state, fulfillment_status=new_status)
    if new_status == "fulfilled":
        return _advance_status(next_state, "shipped")
    return next_state
