"""wave_dispatch/lambda_function.py

Target of the per-booking wave 2 and wave 3 schedules. Also accepts wave 1
for manual re-runs; the dispatch itself is idempotent.

Event:
    {"bookingId": "<id>", "wave": 2}

Store errors propagate so EventBridge Scheduler retries the invocation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from boekdichtbij_shared.config import WAVE_SIZES
from boekdichtbij_shared.dispatch import dispatch_wave

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict, context: Any) -> Dict:
    event = event or {}
    booking_id = event.get("bookingId")
    try:
        wave = int(event.get("wave") or 1)
    except (TypeError, ValueError):
        wave = 0

    if not booking_id or wave not in WAVE_SIZES:
        logger.error("[ERROR] Invalid wave dispatch event: %s", event)
        return {"ok": False, "status": "invalid_event", "bookingId": booking_id, "wave": event.get("wave")}

    result = dispatch_wave(booking_id, wave)
    logger.info(
        "[INFO] Wave %d for %s: %s (sent=%s failed=%s)",
        wave,
        booking_id,
        result["status"],
        result["sent"],
        result["failed"],
    )
    return result
