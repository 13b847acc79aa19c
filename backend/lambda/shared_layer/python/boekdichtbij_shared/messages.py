"""boekdichtbij_shared.messages — Dutch WhatsApp copy for providers."""

from __future__ import annotations

from typing import Any, Dict

from boekdichtbij_shared.areas import area_label

BROADCAST_HEADER = "Nieuwe betaalde boeking via BoekDichtbij"

ALREADY_TAKEN = "De boeking is inmiddels toegewezen."
ASSIGNED_CONFIRM = "Boeking toegewezen."
DETAILS_FOLLOW = "Klantgegevens volgen."
WINDOW_CLOSED = "De reactietijd voor deze boeking is verlopen."
INVALID_CODE = "Onbekende code. Stuur JA gevolgd door de code."
NO_OPEN_BOOKING = "Er is geen openstaande boeking om te accepteren."
AMBIGUOUS_BOOKING = "Je hebt meerdere openstaande boekingen. Stuur JA gevolgd door de code."
DECLINE_ACK = "Begrepen. Je ontvangt geen verdere berichten voor deze boeking."
UNKNOWN_REPLY = "Tik op Accepteren of Weigeren, of antwoord JA/NEE."


def format_payout(cents: Any) -> str:
    """4500 -> '45', 4550 -> '45,50'."""
    cents = int(cents or 0)
    euros, rest = divmod(cents, 100)
    if rest == 0:
        return str(euros)
    return f"{euros},{rest:02d}"


def build_broadcast_message(booking: Dict[str, Any], accept_code: str) -> str:
    location = booking.get("place") or area_label(booking.get("area") or "")
    return (
        f"{BROADCAST_HEADER}\n"
        "\n"
        f"Dienst: {booking.get('serviceName', '')}\n"
        f"Tijdvak: {booking.get('timeWindowLabel', '')}\n"
        f"Locatie: {location}\n"
        f"Uitbetaling: €{format_payout(booking.get('payoutCents'))}\n"
        "\n"
        f"Antwoord JA {accept_code} om te accepteren.\n"
        f"Code: {accept_code}"
    )


def build_assigned_confirmation() -> str:
    return f"{ASSIGNED_CONFIRM}\n\n{DETAILS_FOLLOW}"


def build_winner_details(booking: Dict[str, Any]) -> str:
    address = ", ".join(
        part
        for part in (
            booking.get("address") or "",
            f"{booking.get('postcode') or ''} {booking.get('place') or ''}".strip(),
        )
        if part
    )
    return (
        "Boekingsgegevens\n"
        "\n"
        f"Dienst: {booking.get('serviceName', '')}\n"
        f"Tijdvak: {booking.get('timeWindowLabel', '')}\n"
        f"Adres: {address}\n"
        f"Naam klant: {booking.get('customerName', '')}\n"
        f"Telefoon: {booking.get('phone', '')}\n"
        "\n"
        f"Uitbetaling: €{format_payout(booking.get('payoutCents'))}"
    )
