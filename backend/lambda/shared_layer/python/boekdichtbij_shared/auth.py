"""boekdichtbij_shared.auth — Ops internal-key authentication.

Ops-only routes (manual deadline enforcement) accept an
`X-Ops-Internal-Key` header matched against the configured key allowlist.
Active and rollover keys are both accepted during rotation.

Environment variables:
    OPS_INTERNAL_API_KEY           active key
    OPS_INTERNAL_API_KEY_PREVIOUS  rollover key accepted during rotation
    OPS_INTERNAL_API_KEYS          comma-separated allowlist
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from boekdichtbij_shared.config import OPS_INTERNAL_API_KEYS
from boekdichtbij_shared.http_utils import _error

logger = logging.getLogger(__name__)

_HEADER = "x-ops-internal-key"


def _extract_internal_key(event: Dict[str, Any]) -> str:
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if str(key).lower() == _HEADER:
            return str(value or "").strip()
    return ""


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn=None,
    allowed_keys: Optional[Sequence[str]] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Authenticate an ops request via the internal key header.

    Returns (claims, None) on success or (None, error_response) on failure.

    Args:
        event: API Gateway event dict.
        error_fn: Optional callable(status_code, message) -> response dict.
        allowed_keys: Override of the configured allowlist (tests).
    """
    if error_fn is None:
        error_fn = _error
    keys = tuple(OPS_INTERNAL_API_KEYS if allowed_keys is None else allowed_keys)

    if not keys:
        logger.warning("[WARNING] Ops route called but no OPS_INTERNAL_API_KEY configured")
        return None, error_fn(503, "Ops access is not configured.")

    presented = _extract_internal_key(event)
    if not presented:
        return None, error_fn(401, "Authentication required.")

    for key in keys:
        if hmac.compare_digest(presented.encode("utf-8"), key.encode("utf-8")):
            return {"auth_mode": "internal-key"}, None
    return None, error_fn(403, "Invalid ops key.")
