"""boekdichtbij_shared.providers — Provider lookup, eligibility and ranked selection.

Providers are read-only here: onboarding, claiming and reliability scoring
happen elsewhere. Ranking comes from GSI2 (`AREA#<area>` /
`RANK#<score>#PROVIDER#<id>`) read ascending, so the best-ranked provider
comes first and equal scores fall back to provider id order.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from boekdichtbij_shared.config import GSI_PROVIDER_RANK
from boekdichtbij_shared.store import PHONE_SK, PROVIDER_SK, get_item, phone_pk, provider_pk, query_all

logger = logging.getLogger(__name__)

_PAGE_SIZE = 25
_DEFAULT_GENDER_SERVICES = ("men",)


def rank_sort_key(score: Any, provider_id: str) -> str:
    """GSI2 sort key; zero-padded so lexical order equals numeric order."""
    return f"RANK#{int(score or 0):06d}#PROVIDER#{provider_id}"


def get_provider(provider_id: str) -> Optional[Dict[str, Any]]:
    return get_item(provider_pk(provider_id), PROVIDER_SK, consistent=False)


def provider_id_for_phone(phone_e164: str) -> Optional[str]:
    if not phone_e164:
        return None
    mapping = get_item(phone_pk(phone_e164), PHONE_SK, consistent=False)
    if not mapping:
        return None
    return mapping.get("providerId") or None


def is_eligible(provider: Dict[str, Any], required_gender: Optional[str] = None) -> bool:
    """Active, claimed and reachable; optionally serving the booking's gender."""
    if provider.get("isActive") is not True:
        return False
    if not provider.get("claimedAt"):
        return False
    if not provider.get("whatsappPhone"):
        return False
    if provider.get("whatsappStatus") == "INVALID":
        return False
    if required_gender:
        services = provider.get("genderServices") or list(_DEFAULT_GENDER_SERVICES)
        if required_gender not in services:
            return False
    return True


def ranked_providers(area: str) -> Iterator[Dict[str, Any]]:
    """Every provider in `area`, best rank first."""
    return query_all(
        "GSI2PK = :pk",
        values={":pk": f"AREA#{area}"},
        index=GSI_PROVIDER_RANK,
        scan_forward=True,
        page_size=_PAGE_SIZE,
    )


def select_providers(
    area: str,
    limit: int,
    *,
    exclude_ids: Iterable[str] = (),
    required_gender: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Up to `limit` eligible providers from `area`, skipping `exclude_ids`.

    Eligibility is evaluated on the current record every time, so a provider
    who lost it since an earlier wave is skipped here.
    """
    if limit <= 0:
        return []
    excluded = set(exclude_ids)
    already_excluded = len(excluded)
    selected: List[Dict[str, Any]] = []
    for provider in ranked_providers(area):
        provider_id = provider.get("providerId")
        if not provider_id or provider_id in excluded:
            continue
        if not is_eligible(provider, required_gender):
            continue
        selected.append(provider)
        excluded.add(provider_id)
        if len(selected) >= limit:
            break
    logger.info(
        "[INFO] Selected %d/%d providers in %s (excluded %d)",
        len(selected),
        limit,
        area,
        already_excluded,
    )
    return selected
