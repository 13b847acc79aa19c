"""boekdichtbij_shared.events — Append-only booking audit trail.

Events are write-only telemetry: nothing in the lifecycle reads them to decide
what to do, so a failed event write is logged and dropped, never raised.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.serialization import _now_z
from boekdichtbij_shared.store import ConditionFailed, booking_pk, event_sk, put_item

logger = logging.getLogger(__name__)


def record_event(
    booking_id: str,
    event_name: str,
    meta: Optional[Dict[str, Any]] = None,
    *,
    at: Optional[str] = None,
) -> bool:
    """Write `EVENT#<at>#<name>` under the booking. Returns False on failure."""
    at = at or _now_z()
    item: Dict[str, Any] = {
        "PK": booking_pk(booking_id),
        "SK": event_sk(at, event_name),
        "type": "EVENT",
        "eventName": event_name,
        "at": at,
        "bookingId": booking_id,
    }
    if meta:
        item["meta"] = {k: v for k, v in meta.items() if v is not None}
    try:
        put_item(item, condition="attribute_not_exists(SK)")
    except ConditionFailed:
        logger.warning("[WARNING] Duplicate event %s for %s at %s", event_name, booking_id, at)
        return False
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Failed to write event %s for %s: %s", event_name, booking_id, exc)
        return False
    return True
