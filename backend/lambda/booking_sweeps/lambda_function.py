"""booking_sweeps/lambda_function.py

Scheduled backstop for lost schedules and stuck bookings (EventBridge rule,
every minute).

Event (all fields optional):
    {
        "job": "all" | "cancel_unpaid" | "expire_pending" | "dispatch_waves" | "resweep_unfilled",
        "dryRun": false,            # cancel_unpaid only; other jobs are skipped
        "areas": ["ridderkerk"],    # default: SWEEP_AREAS + every enabled area
        "limitPerArea": 50          # default: SWEEP_LIMIT_PER_AREA
    }

Environment variables:
    SWEEP_AREAS               default: "" (extra areas, e.g. since-disabled ones)
    UNPAID_GRACE_MINUTES      default: 10
    SWEEP_LIMIT_PER_AREA      default: 50
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from boekdichtbij_shared.sweeps import run_sweeps

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict, context: Any) -> Dict:
    event = event or {}
    job = event.get("job") or "all"
    dry_run = bool(event.get("dryRun"))
    areas = event.get("areas") or None
    try:
        limit = int(event["limitPerArea"]) if event.get("limitPerArea") else None
    except (TypeError, ValueError):
        return {"ok": False, "error": "limitPerArea must be an integer"}

    try:
        results = run_sweeps(job, areas=areas, dry_run=dry_run, limit_per_area=limit)
    except ValueError as exc:
        logger.error("[ERROR] %s", exc)
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "job": job, "dryRun": dry_run, "results": results}
