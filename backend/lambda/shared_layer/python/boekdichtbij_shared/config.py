"""boekdichtbij_shared.config — Environment variables, domain constants, logging.

Everything tunable per deployment comes from the environment. Wave timing,
wave sizes and the assignment window are fixed marketplace policy and live
here as plain constants.
"""

from __future__ import annotations

import logging
import os


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


def _int_env(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


__all__ = [
    "ACCEPT_CODE_ALPHABET",
    "ACCEPT_CODE_LENGTH",
    "ASSIGNMENT_DEADLINE_LAMBDA_ARN",
    "ASSIGNMENT_WINDOW_MINUTES",
    "CORS_ORIGIN",
    "DYNAMODB_REGION",
    "DYNAMODB_TABLE",
    "GSI_PAYMENT_SESSION",
    "GSI_PROVIDER_INBOX",
    "GSI_PROVIDER_RANK",
    "GSI_STATUS",
    "OPS_INTERNAL_API_KEYS",
    "SCHEDULER_ROLE_ARN",
    "SCHEDULE_GROUP_NAME",
    "SCHEDULE_NAME_PREFIX",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "SWEEP_AREAS",
    "SWEEP_LIMIT_PER_AREA",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_WEBHOOK_URL",
    "TWILIO_WHATSAPP_FROM",
    "UNFILLED_RESWEEP_GRACE_MINUTES",
    "UNPAID_GRACE_MINUTES",
    "WAVE_DELAY_MINUTES",
    "WAVE_DISPATCH_LAMBDA_ARN",
    "WAVE_SIZES",
    "logger",
]

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

DYNAMODB_TABLE = os.environ.get("DYNAMODB_TABLE", "boekdichtbij_main")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "eu-west-1")

GSI_STATUS = "GSI1"            # AREA#<area>#STATUS#<status> / CREATED#<iso>#BOOKING#<id>
GSI_PROVIDER_RANK = "GSI2"     # AREA#<area> / RANK#<score>#PROVIDER#<id>
GSI_PAYMENT_SESSION = "GSI3"   # STRIPE_SESSION#<id> / BOOKING#<id>
GSI_PROVIDER_INBOX = "GSI4"    # PROVIDER#<id> / SENT#<iso>#BOOKING#<id>

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

SCHEDULER_ROLE_ARN = os.environ.get("SCHEDULER_ROLE_ARN", "")
ASSIGNMENT_DEADLINE_LAMBDA_ARN = os.environ.get("ASSIGNMENT_DEADLINE_LAMBDA_ARN", "")
WAVE_DISPATCH_LAMBDA_ARN = os.environ.get("WAVE_DISPATCH_LAMBDA_ARN", "")
SCHEDULE_NAME_PREFIX = os.environ.get("SCHEDULE_NAME_PREFIX", "boekdichtbij")
SCHEDULE_GROUP_NAME = os.environ.get("SCHEDULE_GROUP_NAME", "default")

# ---------------------------------------------------------------------------
# Third parties
# ---------------------------------------------------------------------------

TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN", "")
TWILIO_WHATSAPP_FROM = os.environ.get("TWILIO_WHATSAPP_FROM", "")
TWILIO_WEBHOOK_URL = os.environ.get("TWILIO_WEBHOOK_URL", "")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# ---------------------------------------------------------------------------
# HTTP / auth
# ---------------------------------------------------------------------------

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "https://boekdichtbij.nl")
OPS_INTERNAL_API_KEYS = _normalize_api_keys(
    os.environ.get("OPS_INTERNAL_API_KEYS", ""),
    os.environ.get("OPS_INTERNAL_API_KEY", ""),
    os.environ.get("OPS_INTERNAL_API_KEY_PREVIOUS", ""),
)

# ---------------------------------------------------------------------------
# Marketplace policy
# ---------------------------------------------------------------------------

ASSIGNMENT_WINDOW_MINUTES = 15
WAVE_DELAY_MINUTES = {1: 0, 2: 5, 3: 10}
WAVE_SIZES = {1: 3, 2: 5, 3: 3}
UNFILLED_RESWEEP_GRACE_MINUTES = 5

# No I/O/0/1 so codes survive being read aloud or retyped.
ACCEPT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ACCEPT_CODE_LENGTH = 5

# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

SWEEP_AREAS = tuple(
    part.strip()
    for part in os.environ.get("SWEEP_AREAS", "").split(",")
    if part.strip()
)
UNPAID_GRACE_MINUTES = _int_env("UNPAID_GRACE_MINUTES", 10)
SWEEP_LIMIT_PER_AREA = _int_env("SWEEP_LIMIT_PER_AREA", 50)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
