"""whatsapp_inbound/lambda_function.py

Twilio WhatsApp webhooks for provider replies and delivery status.

Routes (via API Gateway proxy, form-encoded bodies):
    POST /webhooks/whatsapp          provider reply -> acceptance resolver
    POST /webhooks/whatsapp/status   delivery status callback

Replies go back to the sender as TwiML. Race losses, late replies and
unknown codes are plain-language replies with status 200 so Twilio does not
retry them.

Environment variables:
    TWILIO_AUTH_TOKEN         default: ""  (signature validation)
    TWILIO_WEBHOOK_URL        default: ""  (public URL Twilio signs; unset skips validation)
    DYNAMODB_TABLE            default: boekdichtbij_main
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from boekdichtbij_shared.acceptance import handle_inbound_message
from boekdichtbij_shared.config import TWILIO_WEBHOOK_URL
from boekdichtbij_shared.http_utils import _header, _parse_form, _path_method, _twiml
from boekdichtbij_shared.notifier import validate_twilio_signature
from boekdichtbij_shared.serialization import _now_z
from boekdichtbij_shared.store import put_item

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_FAILED_DELIVERY_STATUSES = {"failed", "undelivered"}


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


def _signed_url(path: str) -> str:
    base = TWILIO_WEBHOOK_URL.rstrip("/")
    if path.rstrip("/").endswith("/status"):
        return f"{base}/status"
    return base


def _signature_ok(event: Dict[str, Any], params: Dict[str, str], path: str) -> bool:
    if not TWILIO_WEBHOOK_URL:
        logger.warning("[WARNING] TWILIO_WEBHOOK_URL not set; skipping signature validation")
        return True
    signature = _header(event, "X-Twilio-Signature")
    return validate_twilio_signature(_signed_url(path), params, signature)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_status(params: Dict[str, str]) -> Dict[str, Any]:
    sid = params.get("MessageSid") or params.get("SmsSid") or ""
    status = (params.get("MessageStatus") or params.get("SmsStatus") or "").lower()
    if not sid or status not in _FAILED_DELIVERY_STATUSES:
        logger.info("[INFO] Message %s status %s", sid, status)
        return _twiml()

    logger.error(
        "[ERROR] Message %s to %s %s (error %s)",
        sid,
        params.get("To"),
        status,
        params.get("ErrorCode"),
    )
    try:
        put_item(
            {
                "PK": f"MESSAGE#{sid}",
                "SK": "STATUS",
                "type": "MESSAGE_STATUS",
                "messageSid": sid,
                "status": status,
                "to": params.get("To"),
                "errorCode": params.get("ErrorCode") or None,
                "errorMessage": params.get("ErrorMessage") or None,
                "updatedAt": _now_z(),
            }
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Failed to record status for %s: %s", sid, exc)
    return _twiml()


def _handle_reply(params: Dict[str, str]) -> Dict[str, Any]:
    from_phone = params.get("From") or ""
    if not from_phone:
        logger.warning("[WARNING] Inbound message without From")
        return _twiml(status_code=400)

    try:
        result = handle_inbound_message(
            from_phone,
            params.get("Body"),
            params.get("ButtonPayload") or None,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Inbound message from %s failed: %s", from_phone, exc)
        return _twiml(status_code=500)

    logger.info(
        "[INFO] Inbound from %s: outcome=%s booking=%s provider=%s",
        from_phone,
        result.outcome,
        result.booking_id,
        result.provider_id,
    )
    return _twiml(result.reply)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)
    if method != "POST":
        return _twiml(status_code=405)

    params = _parse_form(event)
    if not _signature_ok(event, params, path):
        logger.warning("[WARNING] Invalid Twilio signature on %s", path)
        return _twiml(status_code=403)

    if path.rstrip("/").endswith("/status"):
        return _handle_status(params)
    return _handle_reply(params)
