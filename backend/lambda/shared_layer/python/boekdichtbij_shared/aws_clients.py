"""boekdichtbij_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are built on first use and cached for the life of the Lambda
container, so cold starts that never touch the scheduler never pay for it.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from boekdichtbij_shared.config import DYNAMODB_REGION

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_scheduler = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_scheduler(region: Optional[str] = None):
    """Get (or create) the EventBridge Scheduler client singleton."""
    global _scheduler
    if _scheduler is None:
        _scheduler = boto3.client(
            "scheduler",
            region_name=region or DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _scheduler
