"""assignment_deadline/lambda_function.py

Target of the one-shot `<prefix>-deadline-<bookingId>` schedule registered at
payment confirmation. Runs the deadline/refund procedure, which is safe to
repeat and resumes a partially finished refund.

Event:
    {"bookingId": "<id>"}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from boekdichtbij_shared.recovery import enforce_deadline

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict, context: Any) -> Dict:
    booking_id = (event or {}).get("bookingId")
    if not booking_id:
        logger.error("[ERROR] Deadline event without bookingId: %s", event)
        return {"statusCode": 400, "body": {"ok": False, "status": "missing_booking_id"}}

    result = enforce_deadline(booking_id, source="scheduler")
    logger.info("[INFO] Deadline for %s finished: %s", booking_id, result["status"])
    return {"statusCode": 200, "body": result}
