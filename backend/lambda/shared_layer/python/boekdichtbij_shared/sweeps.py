"""boekdichtbij_shared.sweeps — Periodic backstops for lost schedules and stuck bookings.

Each job walks the GSI1 (area, status) index per area, bounded per run, and
drives the same idempotent operations the event-driven paths use. Running a
job twice, or concurrently with a scheduler invocation, is safe.

Jobs:
    cancel_unpaid     PENDING_PAYMENT past the grace window -> CANCELLED
    expire_pending    PENDING_ASSIGNMENT past the deadline  -> enforce_deadline
    dispatch_waves    re-run waves whose schedule never fired
    resweep_unfilled  UNFILLED without a finished refund    -> enforce_deadline
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.areas import enabled_areas
from boekdichtbij_shared.config import (
    SWEEP_AREAS,
    SWEEP_LIMIT_PER_AREA,
    UNFILLED_RESWEEP_GRACE_MINUTES,
    UNPAID_GRACE_MINUTES,
)
from boekdichtbij_shared.dispatch import AcceptCodeError, dispatch_wave, wave_claimed, wave_due_at
from boekdichtbij_shared.events import record_event
from boekdichtbij_shared.recovery import RESOLVED_STATUSES, enforce_deadline
from boekdichtbij_shared.serialization import _emit_structured_observability, _iso, _parse_iso, _utcnow
from boekdichtbij_shared.state_machine import (
    PENDING_ASSIGNMENT,
    PENDING_PAYMENT,
    REFUND_PENDING,
    UNFILLED,
    apply_transition,
    run_side_effects,
)
from boekdichtbij_shared.store import query_status_index

logger = logging.getLogger(__name__)

_PER_ITEM_ERRORS = (BotoCoreError, ClientError, AcceptCodeError)


def _areas(areas: Optional[Iterable[str]]) -> list:
    """Explicit areas, else SWEEP_AREAS followed by every bookable area."""
    if areas:
        return list(areas)
    ordered = list(SWEEP_AREAS)
    ordered.extend(key for key in enabled_areas() if key not in ordered)
    return ordered


def _finish(job: str, stats: Dict[str, Any]) -> Dict[str, Any]:
    _emit_structured_observability(component="sweeps", event=job, extra={"stats": stats})
    logger.info("[INFO] Sweep %s finished: %s", job, stats)
    return stats


def cancel_unpaid(
    areas: Optional[Iterable[str]] = None,
    *,
    now: Optional[dt.datetime] = None,
    grace_minutes: Optional[int] = None,
    dry_run: bool = False,
    limit_per_area: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or _utcnow()
    grace = UNPAID_GRACE_MINUTES if grace_minutes is None else grace_minutes
    cutoff = _iso(now - dt.timedelta(minutes=grace))
    limit = limit_per_area or SWEEP_LIMIT_PER_AREA
    stats: Dict[str, Any] = {"scanned": 0, "cancelled": 0, "conflicts": 0, "errors": 0, "dryRun": dry_run}
    if dry_run:
        stats["wouldCancel"] = []

    for area in _areas(areas):
        for booking in query_status_index(area, PENDING_PAYMENT, max_items=limit, created_before=cutoff):
            stats["scanned"] += 1
            booking_id = booking["bookingId"]
            if dry_run:
                stats["wouldCancel"].append(booking_id)
                continue
            try:
                result = apply_transition(
                    booking,
                    "payment_timeout",
                    {"cancelledAt": _iso(now), "cancelReason": "payment_timeout"},
                    now=_iso(now),
                )
            except _PER_ITEM_ERRORS as exc:
                logger.error("[ERROR] cancel_unpaid failed for %s: %s", booking_id, exc)
                stats["errors"] += 1
                continue
            if not result.applied:
                stats["conflicts"] += 1
                continue
            stats["cancelled"] += 1
            run_side_effects(
                booking_id,
                "payment_timeout",
                {
                    "record_event": lambda booking_id=booking_id: record_event(
                        booking_id, "booking_cancelled_unpaid", {"graceMinutes": grace}
                    )
                },
            )
    return _finish("cancel_unpaid", stats)


def expire_pending(
    areas: Optional[Iterable[str]] = None,
    *,
    now: Optional[dt.datetime] = None,
    limit_per_area: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or _utcnow()
    limit = limit_per_area or SWEEP_LIMIT_PER_AREA
    stats: Dict[str, Any] = {
        "scanned": 0,
        "expired": 0,
        "skipped_not_due": 0,
        "skipped_missing_deadline": 0,
        "conflicts_already_resolved": 0,
        "failures": 0,
        "errors": 0,
    }
    for area in _areas(areas):
        for booking in query_status_index(area, PENDING_ASSIGNMENT, max_items=limit):
            stats["scanned"] += 1
            deadline = _parse_iso(booking.get("assignmentDeadline"))
            if deadline is None:
                stats["skipped_missing_deadline"] += 1
                continue
            if deadline > now:
                stats["skipped_not_due"] += 1
                continue
            try:
                result = enforce_deadline(booking["bookingId"], now=now, source="sweep")
            except _PER_ITEM_ERRORS as exc:
                logger.error("[ERROR] expire_pending failed for %s: %s", booking["bookingId"], exc)
                stats["errors"] += 1
                continue
            if result["status"] == "refunded":
                stats["expired"] += 1
            elif result["status"] in RESOLVED_STATUSES:
                stats["conflicts_already_resolved"] += 1
            elif result["status"] == "not_due":
                stats["skipped_not_due"] += 1
            else:
                stats["failures"] += 1
    return _finish("expire_pending", stats)


def dispatch_waves(
    areas: Optional[Iterable[str]] = None,
    *,
    now: Optional[dt.datetime] = None,
    limit_per_area: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or _utcnow()
    limit = limit_per_area or SWEEP_LIMIT_PER_AREA
    stats: Dict[str, Any] = {"scanned": 0, "wave1": 0, "wave2": 0, "wave3": 0, "errors": 0}
    for area in _areas(areas):
        for booking in query_status_index(area, PENDING_ASSIGNMENT, max_items=limit):
            stats["scanned"] += 1
            deadline = _parse_iso(booking.get("assignmentDeadline"))
            if deadline is not None and deadline <= now:
                continue
            for wave in (1, 2, 3):
                if wave_claimed(booking, wave):
                    continue
                due = wave_due_at(booking, wave)
                if due is None or due > now:
                    continue
                try:
                    result = dispatch_wave(booking["bookingId"], wave)
                except _PER_ITEM_ERRORS as exc:
                    logger.error("[ERROR] Wave %d backstop failed for %s: %s", wave, booking["bookingId"], exc)
                    stats["errors"] += 1
                    continue
                if result["status"] != "skipped":
                    stats[f"wave{wave}"] += 1
    return _finish("dispatch_waves", stats)


def resweep_unfilled(
    areas: Optional[Iterable[str]] = None,
    *,
    now: Optional[dt.datetime] = None,
    limit_per_area: Optional[int] = None,
    grace_minutes: int = UNFILLED_RESWEEP_GRACE_MINUTES,
) -> Dict[str, Any]:
    """Retry refunds for UNFILLED bookings whose refund never completed.

    Bookings marked REFUND_BLOCKED (no payment reference at all) are left
    for manual follow-up; they carry a refund_skipped audit event. They are
    filtered out in the query so they never use up `limit_per_area`.
    """
    now = now or _utcnow()
    limit = limit_per_area or SWEEP_LIMIT_PER_AREA
    settle_before = now - dt.timedelta(minutes=grace_minutes)
    stats: Dict[str, Any] = {"scanned": 0, "refunded": 0, "skipped": 0, "failures": 0, "errors": 0}
    for area in _areas(areas):
        retryable = query_status_index(
            area,
            UNFILLED,
            max_items=limit,
            filter_expression="attribute_not_exists(refundState) OR refundState = :refund_pending",
            filter_values={":refund_pending": REFUND_PENDING},
        )
        for booking in retryable:
            stats["scanned"] += 1
            touched = _parse_iso(booking.get("updatedAt"))
            if touched is not None and touched > settle_before:
                stats["skipped"] += 1
                continue
            try:
                result = enforce_deadline(booking["bookingId"], now=now, source="resweep")
            except _PER_ITEM_ERRORS as exc:
                logger.error("[ERROR] resweep failed for %s: %s", booking["bookingId"], exc)
                stats["errors"] += 1
                continue
            if result["status"] in ("refunded",) + RESOLVED_STATUSES:
                stats["refunded"] += 1
            else:
                stats["failures"] += 1
    return _finish("resweep_unfilled", stats)


JOBS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "cancel_unpaid": cancel_unpaid,
    "expire_pending": expire_pending,
    "dispatch_waves": dispatch_waves,
    "resweep_unfilled": resweep_unfilled,
}


def run_sweeps(
    job: str = "all",
    *,
    areas: Optional[Iterable[str]] = None,
    now: Optional[dt.datetime] = None,
    dry_run: bool = False,
    limit_per_area: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one job by name, or every job in a fixed order for 'all'."""
    if job != "all" and job not in JOBS:
        raise ValueError(f"Unknown sweep job '{job}'")
    names = list(JOBS) if job == "all" else [job]
    area_list = _areas(areas)
    results: Dict[str, Any] = {}
    for name in names:
        kwargs: Dict[str, Any] = {"now": now, "limit_per_area": limit_per_area}
        if name == "cancel_unpaid":
            kwargs["dry_run"] = dry_run
        elif dry_run:
            results[name] = {"skipped": "dry_run"}
            continue
        results[name] = JOBS[name](area_list, **kwargs)
    return results
