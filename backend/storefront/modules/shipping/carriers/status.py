"""
Carrier status text -> ShipmentStatus.

Matching is substring-based on lower-cased text. When several keyword groups
match, the first status in STATUS_PRECEDENCE wins; nothing matching means
IN_TRANSIT. No transition validation is done: a poll may move a shipment from
delivered back to in_transit.
"""
import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from storefront.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)

STATUS_PRECEDENCE: Tuple[ShipmentStatus, ...] = (
    ShipmentStatus.DELIVERED,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.EXCEPTION,
    ShipmentStatus.RETURNED,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.LABEL_CREATED,
    ShipmentStatus.IN_TRANSIT,
)

DEFAULT_KEYWORDS: Dict[ShipmentStatus, Tuple[str, ...]] = {
    ShipmentStatus.DELIVERED: ("delivered",),
    ShipmentStatus.OUT_FOR_DELIVERY: ("out for delivery", "out-for-delivery", "with delivery courier"),
    ShipmentStatus.EXCEPTION: ("exception", "failure", "failed", "undeliverable"),
    ShipmentStatus.RETURNED: ("returned", "return to sender", "returning to sender"),
    ShipmentStatus.CANCELLED: ("cancelled", "canceled"),
    ShipmentStatus.LABEL_CREATED: (
        "label created",
        "shipping label created",
        "shipment information received",
        "electronic information submitted",
        "pre-shipment",
    ),
    ShipmentStatus.IN_TRANSIT: (
        "in transit",
        "processed",
        "arrived",
        "departed",
        "accepted",
        "picked up",
    ),
}


def build_keyword_table(
    extra: Optional[Mapping[ShipmentStatus, Iterable[str]]] = None,
) -> Dict[ShipmentStatus, Tuple[str, ...]]:
    """Return DEFAULT_KEYWORDS extended with carrier-specific phrases."""
    table = dict(DEFAULT_KEYWORDS)
    for status, phrases in (extra or {}).items():
        table[status] = table.get(status, ()) + tuple(p.lower() for p in phrases)
    return table


def normalize_status(
    carrier_status: Optional[str],
    keywords: Optional[Mapping[ShipmentStatus, Tuple[str, ...]]] = None,
) -> ShipmentStatus:
    """
    Map carrier status text to a ShipmentStatus.

    Args:
        carrier_status: Raw status text from the carrier (may be None)
        keywords: Keyword table, DEFAULT_KEYWORDS when omitted

    Returns:
        The highest-precedence matching status, IN_TRANSIT when nothing matches
    """
    if not carrier_status:
        return ShipmentStatus.IN_TRANSIT

    text = carrier_status.lower()
    table = keywords or DEFAULT_KEYWORDS

    for status in STATUS_PRECEDENCE:
        if any(phrase in text for phrase in table.get(status, ())):
            return status

    logger.warning(f"Unrecognized carrier status: {carrier_status!r}, defaulting to in_transit")
    return ShipmentStatus.IN_TRANSIT
