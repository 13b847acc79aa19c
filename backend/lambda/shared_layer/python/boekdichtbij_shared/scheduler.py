"""boekdichtbij_shared.scheduler — One-shot EventBridge Scheduler actions.

Registers "run this Lambda with {bookingId} at time T" schedules for the
assignment deadline and waves 2/3, and removes them once a booking resolves.

Both directions are idempotent: creating a schedule whose name already exists
counts as success, and deleting one that is already gone counts as success.
When the scheduler role or target ARN is not configured (local development)
calls log a warning and report success; the periodic sweeps cover the gap.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, Iterable, Optional

from botocore.exceptions import ClientError

from boekdichtbij_shared.aws_clients import _get_scheduler
from boekdichtbij_shared.config import (
    ASSIGNMENT_DEADLINE_LAMBDA_ARN,
    SCHEDULE_GROUP_NAME,
    SCHEDULE_NAME_PREFIX,
    SCHEDULER_ROLE_ARN,
    WAVE_DISPATCH_LAMBDA_ARN,
)
from boekdichtbij_shared.serialization import _parse_iso

logger = logging.getLogger(__name__)

_SCHEDULE_KINDS = ("deadline", "wave2", "wave3")


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def schedule_name(kind: str, booking_id: str) -> str:
    if kind not in _SCHEDULE_KINDS:
        raise ValueError(f"Unknown schedule kind '{kind}'")
    return f"{SCHEDULE_NAME_PREFIX}-{kind}-{booking_id}"


def _at_expression(run_at: dt.datetime) -> str:
    """EventBridge one-time expression; seconds precision, no zone suffix."""
    run_at = run_at.astimezone(dt.timezone.utc)
    return f"at({run_at.strftime('%Y-%m-%dT%H:%M:%S')})"


def register(
    name: str,
    run_at: dt.datetime,
    target_arn: str,
    payload: Dict[str, Any],
    *,
    role_arn: Optional[str] = None,
) -> bool:
    """Create a one-time schedule. Duplicate name is success."""
    role_arn = SCHEDULER_ROLE_ARN if role_arn is None else role_arn
    if not role_arn or not target_arn:
        logger.warning("[WARNING] Scheduler not configured; skipping schedule %s", name)
        return True
    try:
        _get_scheduler().create_schedule(
            Name=name,
            GroupName=SCHEDULE_GROUP_NAME,
            ScheduleExpression=_at_expression(run_at),
            ScheduleExpressionTimezone="UTC",
            FlexibleTimeWindow={"Mode": "OFF"},
            Target={
                "Arn": target_arn,
                "RoleArn": role_arn,
                "Input": json.dumps(payload),
            },
            ActionAfterCompletion="DELETE",
        )
    except ClientError as exc:
        if _error_code(exc) == "ConflictException":
            logger.info("[INFO] Schedule %s already exists", name)
            return True
        raise
    logger.info("[INFO] Created schedule %s for %s", name, _at_expression(run_at))
    return True


def cancel(name: str) -> bool:
    """Delete a schedule. Missing schedule is success."""
    if not SCHEDULER_ROLE_ARN:
        logger.warning("[WARNING] Scheduler not configured; skipping delete of %s", name)
        return True
    try:
        _get_scheduler().delete_schedule(Name=name, GroupName=SCHEDULE_GROUP_NAME)
    except ClientError as exc:
        if _error_code(exc) == "ResourceNotFoundException":
            return True
        raise
    logger.info("[INFO] Deleted schedule %s", name)
    return True


# ---------------------------------------------------------------------------
# Booking schedules
# ---------------------------------------------------------------------------


def schedule_assignment_deadline(booking_id: str, deadline_iso: str) -> bool:
    run_at = _parse_iso(deadline_iso)
    if run_at is None:
        raise ValueError(f"Invalid assignment deadline '{deadline_iso}' for {booking_id}")
    return register(
        schedule_name("deadline", booking_id),
        run_at,
        ASSIGNMENT_DEADLINE_LAMBDA_ARN,
        {"bookingId": booking_id},
    )


def schedule_wave(booking_id: str, wave: int, run_at: dt.datetime) -> bool:
    if wave not in (2, 3):
        raise ValueError(f"Only waves 2 and 3 are scheduled, got {wave}")
    return register(
        schedule_name(f"wave{wave}", booking_id),
        run_at,
        WAVE_DISPATCH_LAMBDA_ARN,
        {"bookingId": booking_id, "wave": wave},
    )


def cancel_booking_schedules(
    booking_id: str,
    kinds: Iterable[str] = _SCHEDULE_KINDS,
) -> Dict[str, str]:
    """Delete the listed schedules for a booking; each failure is independent."""
    results: Dict[str, str] = {}
    for kind in kinds:
        name = schedule_name(kind, booking_id)
        try:
            cancel(name)
            results[kind] = "ok"
        except ClientError as exc:
            logger.error("[ERROR] Failed to delete schedule %s: %s", name, exc)
            results[kind] = f"failed: {_error_code(exc)}"
    return results
