"""boekdichtbij_shared.http_utils — HTTP response helpers with CORS.

JSON envelope for the booking API and payment webhook, plus the TwiML and
form-body helpers the WhatsApp inbound webhook needs.
"""

from __future__ import annotations

import base64
import json
import logging
import urllib.parse
from decimal import Decimal
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape

from boekdichtbij_shared.config import CORS_ORIGIN

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": CORS_ORIGIN,
    "Access-Control-Allow-Headers": "Content-Type,Authorization,X-Ops-Internal-Key",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    return str(value)


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **CORS_HEADERS,
        },
        "body": json.dumps(body, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
    }
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _preflight() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _raw_body(event: Dict[str, Any]) -> str:
    """Return the request body as text, decoding base64 when API Gateway did."""
    raw = event.get("body") or ""
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse JSON body from API Gateway event (handles base64)."""
    raw = _raw_body(event) or "{}"
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def _parse_form(event: Dict[str, Any]) -> Dict[str, str]:
    """Parse an application/x-www-form-urlencoded body into a flat dict."""
    pairs = urllib.parse.parse_qsl(_raw_body(event), keep_blank_values=True)
    return {key: value for key, value in pairs}


def _header(event: Dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return str(value or "")
    return ""


def _path_method(event: Dict[str, Any]) -> tuple:
    """Extract HTTP method and path from API Gateway v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _twiml(message: Optional[str] = None, status_code: int = 200) -> Dict[str, Any]:
    """TwiML reply for the inbound WhatsApp webhook; no message means no reply."""
    if message:
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response><Message>{escape(message)}</Message></Response>"
        )
    else:
        body = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "text/xml"},
        "body": body,
    }
