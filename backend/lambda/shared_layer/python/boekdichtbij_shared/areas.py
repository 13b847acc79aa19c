"""boekdichtbij_shared.areas — Area registry and wave-3 neighbour lookup.

Wave 3 widens the provider pool to neighbouring areas. Only neighbours that
are enabled and not hidden from rollout are used, in registry order.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

AREAS: Dict[str, Dict[str, Any]] = {
    "ridderkerk": {
        "label": "Ridderkerk",
        "enabled": True,
        "rolloutStatus": "live",
        "neighbors": ["barendrecht", "rotterdam-zuid"],
    },
    "barendrecht": {
        "label": "Barendrecht",
        "enabled": True,
        "rolloutStatus": "live",
        "neighbors": ["ridderkerk", "rotterdam-zuid"],
    },
    "rotterdam-zuid": {
        "label": "Rotterdam-Zuid",
        "enabled": True,
        "rolloutStatus": "live",
        "neighbors": ["ridderkerk", "barendrecht", "schiedam"],
    },
    "schiedam": {
        "label": "Schiedam",
        "enabled": True,
        "rolloutStatus": "hidden",
        "neighbors": ["vlaardingen", "rotterdam-zuid"],
    },
    "vlaardingen": {
        "label": "Vlaardingen",
        "enabled": True,
        "rolloutStatus": "hidden",
        "neighbors": ["schiedam"],
    },
}


def _is_dispatchable(area: Optional[Dict[str, Any]]) -> bool:
    return bool(area) and area.get("enabled") is True and area.get("rolloutStatus") != "hidden"


def neighbor_areas(area_key: str, registry: Optional[Dict[str, Dict[str, Any]]] = None) -> List[str]:
    """Dispatchable neighbours of `area_key`, in configured order."""
    registry = AREAS if registry is None else registry
    area = registry.get(area_key) or {}
    return [
        neighbor
        for neighbor in area.get("neighbors") or []
        if neighbor != area_key and _is_dispatchable(registry.get(neighbor))
    ]


def area_label(area_key: str) -> str:
    return (AREAS.get(area_key) or {}).get("label") or area_key


def enabled_areas(registry: Optional[Dict[str, Dict[str, Any]]] = None) -> List[str]:
    """Every area that accepts bookings, hidden rollouts included."""
    registry = AREAS if registry is None else registry
    return [key for key, area in registry.items() if area.get("enabled") is True]
