"""boekdichtbij_shared.state_machine — The booking state machine.

Single authoritative transition table: trigger -> (from status, to status,
guard expression, ordered side effects). Every handler that moves a booking
goes through `apply_transition`, which issues exactly one conditional update
carrying the new status, the dependent fields and the rewritten GSI1
(area, status, created) projection.

A lost guard is not an error. The booking is re-read and the caller gets a
`TransitionResult` describing what actually happened:

    applied          this call made the transition
    already_applied  the booking is already in the target status
    conflict         the booking moved elsewhere (terminal or another branch)
    missing          the booking does not exist

Side effects listed for a trigger are run after the write by
`run_side_effects`; each is caught and logged on its own and none of them can
undo or fail the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from boekdichtbij_shared.serialization import _emit_structured_observability, _now_z
from boekdichtbij_shared.store import (
    BOOKING_SK,
    ConditionFailed,
    booking_pk,
    get_item,
    status_index_keys,
    update_item,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ALLOWED_NEXT",
    "ASSIGNED",
    "CANCELLED",
    "InvalidTransition",
    "PENDING_ASSIGNMENT",
    "PENDING_PAYMENT",
    "REFUNDED",
    "REFUND_BLOCKED",
    "REFUND_DONE",
    "REFUND_PENDING",
    "STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "TransitionResult",
    "UNFILLED",
    "apply_transition",
    "load_booking",
    "run_best_effort",
    "run_side_effects",
    "validate_transition",
]

# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------

PENDING_PAYMENT = "PENDING_PAYMENT"
PENDING_ASSIGNMENT = "PENDING_ASSIGNMENT"
ASSIGNED = "ASSIGNED"
UNFILLED = "UNFILLED"
REFUNDED = "REFUNDED"
CANCELLED = "CANCELLED"

STATUSES = (PENDING_PAYMENT, PENDING_ASSIGNMENT, ASSIGNED, UNFILLED, REFUNDED, CANCELLED)
TERMINAL_STATUSES = frozenset({ASSIGNED, REFUNDED, CANCELLED})

# refundState recovery marker values
REFUND_PENDING = "REFUND_PENDING"
REFUND_DONE = "REFUNDED"
REFUND_BLOCKED = "REFUND_BLOCKED"

_UNASSIGNED_GUARD = "#status = :from AND attribute_not_exists(assignedProviderId)"

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TRANSITIONS: Dict[str, Dict[str, Any]] = {
    "payment_confirmed": {
        "from": PENDING_PAYMENT,
        "to": PENDING_ASSIGNMENT,
        "guard": "#status = :from",
        "side_effects": (
            "record_event",
            "schedule_deadline",
            "schedule_wave2",
            "schedule_wave3",
            "dispatch_wave1",
        ),
    },
    "provider_accepted": {
        "from": PENDING_ASSIGNMENT,
        "to": ASSIGNED,
        "guard": _UNASSIGNED_GUARD,
        "side_effects": ("cancel_schedules", "record_event", "notify_winner", "notify_losers"),
    },
    "deadline_expired": {
        "from": PENDING_ASSIGNMENT,
        "to": UNFILLED,
        "guard": _UNASSIGNED_GUARD,
        "side_effects": ("record_event",),
    },
    "refund_completed": {
        "from": UNFILLED,
        "to": REFUNDED,
        "guard": "(#status = :from OR refundState = :refund_pending) AND attribute_not_exists(refundId)",
        "values": {":refund_pending": REFUND_PENDING},
        "side_effects": ("record_event", "cancel_schedules"),
    },
    "payment_timeout": {
        "from": PENDING_PAYMENT,
        "to": CANCELLED,
        "guard": "#status = :from",
        "side_effects": ("record_event",),
    },
}


def _allowed_next() -> Dict[str, set]:
    allowed: Dict[str, set] = {status: set() for status in STATUSES}
    for rule in TRANSITIONS.values():
        allowed[rule["from"]].add(rule["to"])
    return allowed


ALLOWED_NEXT = _allowed_next()


class InvalidTransition(ValueError):
    """Raised when a status change is not in the transition table."""


def validate_transition(current: str, target: str) -> None:
    if current not in ALLOWED_NEXT:
        raise InvalidTransition(f"Unknown current status '{current}'")
    if target not in ALLOWED_NEXT[current]:
        raise InvalidTransition(f"Invalid status transition {current} -> {target}")


@dataclass
class TransitionResult:
    trigger: str
    outcome: str
    booking: Optional[Dict[str, Any]]

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"

    @property
    def status(self) -> Optional[str]:
        return (self.booking or {}).get("status")


# ---------------------------------------------------------------------------
# Reads and writes
# ---------------------------------------------------------------------------


def load_booking(booking_id: str) -> Optional[Dict[str, Any]]:
    """Strongly consistent read of the booking record."""
    return get_item(booking_pk(booking_id), BOOKING_SK, consistent=True)


def apply_transition(
    booking: Dict[str, Any],
    trigger: str,
    fields: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[str] = None,
) -> TransitionResult:
    """Move `booking` along `trigger` with one conditional update."""
    rule = TRANSITIONS[trigger]
    validate_transition(rule["from"], rule["to"])
    booking_id = booking["bookingId"]
    now = now or _now_z()

    patch: Dict[str, Any] = dict(fields or {})
    patch["status"] = rule["to"]
    patch["updatedAt"] = now
    patch.update(
        status_index_keys(booking["area"], rule["to"], booking["createdAt"], booking_id)
    )
    values = {":from": rule["from"]}
    values.update(rule.get("values") or {})

    try:
        updated = update_item(
            booking_pk(booking_id),
            BOOKING_SK,
            patch,
            condition=rule["guard"],
            names={"#status": "status"},
            values=values,
        )
    except ConditionFailed:
        current = load_booking(booking_id)
        if current is None:
            outcome = "missing"
        elif current.get("status") == rule["to"]:
            outcome = "already_applied"
        else:
            outcome = "conflict"
        logger.info(
            "[INFO] Transition %s lost for %s: outcome=%s current=%s",
            trigger,
            booking_id,
            outcome,
            (current or {}).get("status"),
        )
        _emit_structured_observability(
            component="state_machine",
            event="transition_lost",
            booking_id=booking_id,
            error_code=outcome,
            extra={"trigger": trigger, "current_status": (current or {}).get("status")},
        )
        return TransitionResult(trigger=trigger, outcome=outcome, booking=current)

    _emit_structured_observability(
        component="state_machine",
        event="state_transition",
        booking_id=booking_id,
        extra={"trigger": trigger, "from_status": rule["from"], "to_status": rule["to"]},
    )
    return TransitionResult(trigger=trigger, outcome="applied", booking=updated)


# ---------------------------------------------------------------------------
# Best-effort side effects
# ---------------------------------------------------------------------------


def run_best_effort(
    booking_id: str,
    tasks: Sequence[Tuple[str, Callable[[], Any]]],
) -> Dict[str, str]:
    """Run each task in order; a failure is logged and never stops the rest."""
    results: Dict[str, str] = {}
    for name, task in tasks:
        try:
            task()
            results[name] = "ok"
        except Exception as exc:
            logger.error("[ERROR] Side effect %s failed for %s: %s", name, booking_id, exc)
            results[name] = f"failed: {exc}"
    return results


def run_side_effects(
    booking_id: str,
    trigger: str,
    handlers: Dict[str, Callable[[], Any]],
) -> Dict[str, str]:
    """Run the side effects the table lists for `trigger`, in table order."""
    names = TRANSITIONS[trigger]["side_effects"]
    unknown = set(handlers) - set(names)
    if unknown:
        raise KeyError(f"Side effects {sorted(unknown)} are not declared for {trigger}")
    tasks = [(name, handlers[name]) for name in names if name in handlers]
    results = run_best_effort(booking_id, tasks)
    _emit_structured_observability(
        component="state_machine",
        event="side_effects",
        booking_id=booking_id,
        extra={"trigger": trigger, "results": results},
    )
    return results
