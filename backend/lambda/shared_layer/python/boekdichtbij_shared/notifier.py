"""boekdichtbij_shared.notifier — WhatsApp delivery through the Twilio REST API.

`send_whatsapp(phone, text)` returns `{"deliveryId", "mode"}` or raises
`NotifierError`; batch senders catch per recipient. Without Twilio
credentials the notifier runs in stub mode: the message is logged and a
`stub-` delivery id is returned so local runs still record broadcasts.

Also hosts the inbound-side helpers: E.164 normalisation of WhatsApp sender
addresses and Twilio request signature validation.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import http.client
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
import uuid
from typing import Any, Dict, Mapping, Optional

from boekdichtbij_shared.config import (
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_WHATSAPP_FROM,
)

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
_HTTP_TIMEOUT_SECONDS = 10

_stub_warned = False


class NotifierError(Exception):
    """Raised when a message could not be handed to the delivery channel."""


def _whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def is_configured() -> bool:
    values = (TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_WHATSAPP_FROM)
    return all(values) and not any("REPLACE" in value for value in values)


def send_whatsapp(to_e164: str, text: str) -> Dict[str, str]:
    """Send `text` to a WhatsApp number."""
    global _stub_warned
    if not to_e164:
        raise NotifierError("Missing recipient phone number")

    if not is_configured():
        if not _stub_warned:
            logger.warning("[WARNING] Twilio not configured; WhatsApp notifier in stub mode")
            _stub_warned = True
        logger.info("[INFO] [WhatsApp STUB] to=%s body=%s", to_e164, text)
        return {"deliveryId": f"stub-{uuid.uuid4().hex[:16]}", "mode": "stub"}

    url = f"{TWILIO_API_BASE}/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json"
    form = urllib.parse.urlencode(
        {
            "To": _whatsapp_address(to_e164),
            "From": _whatsapp_address(TWILIO_WHATSAPP_FROM),
            "Body": text,
        }
    ).encode("utf-8")
    credentials = base64.b64encode(
        f"{TWILIO_ACCOUNT_SID}:{TWILIO_AUTH_TOKEN}".encode("utf-8")
    ).decode("ascii")
    req = urllib.request.Request(
        url,
        method="POST",
        data=form,
        headers={
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=_HTTP_TIMEOUT_SECONDS) as resp:
            data = json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        body_text = exc.read().decode("utf-8", errors="replace")
        logger.error("[ERROR] Twilio send to %s failed: %s %s", to_e164, exc.code, body_text)
        raise NotifierError(f"Twilio send failed ({exc.code}): {body_text}") from exc
    except (OSError, http.client.HTTPException) as exc:
        logger.error("[ERROR] Twilio unreachable sending to %s: %s", to_e164, exc)
        raise NotifierError(f"Twilio unreachable: {exc}") from exc
    except ValueError as exc:
        logger.error("[ERROR] Twilio returned an unreadable response for %s: %s", to_e164, exc)
        raise NotifierError(f"Twilio response unreadable: {exc}") from exc

    sid = str(data.get("sid") or "") if isinstance(data, dict) else ""
    if not sid:
        raise NotifierError(f"Twilio response without sid: {data}")
    logger.info("[INFO] WhatsApp sent to %s sid=%s", to_e164, sid)
    return {"deliveryId": sid, "mode": "twilio"}


# ---------------------------------------------------------------------------
# Inbound helpers
# ---------------------------------------------------------------------------

_NON_DIGITS = re.compile(r"[^\d+]")


def normalize_phone(raw: Optional[str]) -> str:
    """Normalise a sender address to E.164 ('whatsapp:+31 6 ...' -> '+316...')."""
    if not raw:
        return ""
    phone = str(raw).strip()
    if phone.lower().startswith("whatsapp:"):
        phone = phone[len("whatsapp:"):]
    phone = _NON_DIGITS.sub("", phone)
    if phone.startswith("00"):
        phone = "+" + phone[2:]
    elif phone.startswith("06"):
        phone = "+31" + phone[1:]
    elif phone and not phone.startswith("+"):
        phone = "+" + phone
    return phone


def compute_twilio_signature(url: str, params: Mapping[str, Any], auth_token: str) -> str:
    """Twilio request signature: base64(HMAC-SHA1(url + sorted key/value pairs))."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(
    url: str,
    params: Mapping[str, Any],
    signature: str,
    *,
    auth_token: Optional[str] = None,
) -> bool:
    token = TWILIO_AUTH_TOKEN if auth_token is None else auth_token
    if not token or not signature:
        return False
    expected = compute_twilio_signature(url, params, token)
    return hmac.compare_digest(expected, signature)
