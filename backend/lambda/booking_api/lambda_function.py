"""booking_api/lambda_function.py

Customer-facing booking API plus one ops route.

Routes (via API Gateway proxy):
    POST    /api/v1/bookings                 create a PENDING_PAYMENT booking
    GET     /api/v1/bookings/{bookingId}     customer view of a booking
    POST    /api/v1/bookings/{bookingId}/expire
                                             run the deadline/refund procedure now
                                             (ops only, X-Ops-Internal-Key)
    OPTIONS /api/v1/bookings*

Environment variables:
    DYNAMODB_TABLE            default: boekdichtbij_main
    DYNAMODB_REGION           default: eu-west-1
    OPS_INTERNAL_API_KEY      default: ""
    CORS_ORIGIN               default: https://boekdichtbij.nl
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.auth import _authenticate
from boekdichtbij_shared.bookings import (
    BookingValidationError,
    create_booking,
    get_booking,
    public_booking_view,
)
from boekdichtbij_shared.http_utils import _error, _parse_body, _path_method, _preflight, _response
from boekdichtbij_shared.recovery import enforce_deadline

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_COLLECTION_PATH = "/api/v1/bookings"
_BOOKING_PATH = re.compile(r"^/api/v1/bookings/(?P<booking_id>[0-9A-Za-z]{10,40})(?P<action>/expire)?/?$")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_create(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object.")
    try:
        booking = create_booking(body)
    except BookingValidationError as exc:
        return _error(400, "Invalid booking.", details=exc.errors)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] create_booking failed: %s", exc)
        return _error(500, "Could not store booking.")
    return _response(201, {"success": True, "booking": public_booking_view(booking)})


def _handle_get(booking_id: str) -> Dict[str, Any]:
    try:
        booking = get_booking(booking_id)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] get_booking failed for %s: %s", booking_id, exc)
        return _error(500, "Could not read booking.")
    if booking is None:
        return _error(404, f"Booking '{booking_id}' not found.")
    return _response(200, {"success": True, "booking": public_booking_view(booking)})


def _handle_expire(event: Dict[str, Any], booking_id: str) -> Dict[str, Any]:
    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err
    logger.info("[INFO] Ops expire requested for %s (%s)", booking_id, claims.get("auth_mode"))
    try:
        result = enforce_deadline(booking_id, source="ops")
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] enforce_deadline failed for %s: %s", booking_id, exc)
        return _error(500, "Could not run deadline procedure.")
    if result.get("status") == "booking_not_found":
        return _error(404, f"Booking '{booking_id}' not found.")
    return _response(200, {"success": True, "result": result})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    if path.rstrip("/") == _COLLECTION_PATH:
        if method != "POST":
            return _error(405, f"Method {method} not allowed.")
        return _handle_create(event)

    match = _BOOKING_PATH.match(path)
    if not match:
        return _error(404, "Not found.")
    booking_id = match.group("booking_id")

    if match.group("action"):
        if method != "POST":
            return _error(405, f"Method {method} not allowed.")
        return _handle_expire(event, booking_id)

    if method != "GET":
        return _error(405, f"Method {method} not allowed.")
    return _handle_get(booking_id)
