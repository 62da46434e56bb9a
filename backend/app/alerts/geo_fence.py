"""
geo_fence.py — Spatial targeting for SOS alerts.

Determines which users fall inside an incident's alert circle and are
eligible to be notified.

═══════════════════════════════════════════════════════════════════════════
GEO-FENCE DESIGN
═══════════════════════════════════════════════════════════════════════════

An approved incident defines a circular geo-fence:

    centre:  (incident.latitude, incident.longitude)
    radius:  ALERT_RADIUS_METERS (default 1000 m)

A user is targeted if ALL of:

    haversine(incident, user) ≤ radius
    user.is_active
    user has a push token OR a phone number
    user is not the reporter

Large user tables go through a bounding-box pre-filter first:

    Step 1 — Compute bounding box (lat range + one or two lon ranges)
    Step 2 — Reject users outside the box (indexable float comparison)
    Step 3 — Run Haversine only on candidates inside the box

The SQL backend pushes step 2 into the WHERE clause; the in-memory
backend runs all three steps here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple

from backend.app.alerts.models import Recipient
from backend.app.spatial.radius_utils import (
    bounding_box,
    haversine_distance_km,
    validate_coordinates,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Lookup Boundary
# ═══════════════════════════════════════════════════════════════════════════

class RecipientLookup(ABC):
    """Source of alert candidates around a point."""

    @abstractmethod
    async def find_recipients_within(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        exclude_user_id: Optional[str] = None,
    ) -> List[Recipient]:
        """
        Eligible recipients within `radius_m` metres, nearest first,
        each with `distance_km` populated.
        """
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Eligibility
# ═══════════════════════════════════════════════════════════════════════════

def is_eligible(recipient: Recipient, exclude_user_id: Optional[str] = None) -> bool:
    """Active, reachable on at least one channel, and not the reporter."""
    if not recipient.is_active:
        return False
    if not recipient.channels:
        return False
    if exclude_user_id is not None and recipient.recipient_id == exclude_user_id:
        return False
    return True


# ═══════════════════════════════════════════════════════════════════════════
# Core Geo-fence Filtering
# ═══════════════════════════════════════════════════════════════════════════

def filter_recipients_by_radius(
    latitude: float,
    longitude: float,
    radius_km: float,
    recipients: Iterable[Recipient],
) -> Tuple[List[Recipient], List[Recipient]]:
    """
    Partition recipients into (inside, outside) the circle.

    Targeted recipients get `distance_km` set and come back nearest first.

    Examples
    --------
    >>> r1 = Recipient("U1", "User1", 28.70, 77.10, phone="+911")
    >>> r2 = Recipient("U2", "User2", 20.0, 70.0, phone="+912")
    >>> targeted, excluded = filter_recipients_by_radius(28.70, 77.10, 1.0, [r1, r2])
    >>> len(targeted), len(excluded)
    (1, 1)
    """
    validate_coordinates(latitude, longitude)
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    box = bounding_box(latitude, longitude, radius_km)

    targeted: List[Recipient] = []
    excluded: List[Recipient] = []

    for recipient in recipients:
        if not box.contains(recipient.latitude, recipient.longitude):
            excluded.append(recipient)
            continue

        dist = haversine_distance_km(
            latitude, longitude, recipient.latitude, recipient.longitude,
        )
        if dist <= radius_km:
            recipient.distance_km = dist
            targeted.append(recipient)
        else:
            excluded.append(recipient)

    targeted.sort(key=lambda r: r.distance_km or 0.0)

    logger.debug(
        "Geo-fence filter: %d targeted, %d excluded (radius=%.2f km)",
        len(targeted), len(excluded), radius_km,
    )
    return targeted, excluded
