"""
Guardian — Shared Utilities

Pure, stateless helper functions used across multiple services.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, TypeVar

from guardian.common.schemas import AlertCategory, AlertType

T = TypeVar("T")


def haversine_distance_m(
    lat1: float, lon1: float, lat2: float, lon2: float
) -> float:
    """
    Calculate the great-circle distance in **meters** between two
    GPS coordinates using the Haversine formula.

    Used to report how far a tracked user still is from their destination.
    """
    R = 6_371_000  # Earth radius in meters
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def utc_now() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_duration(delta: timedelta) -> str:
    """Format a non-negative duration as `{hours}h {minutes}m`, truncating."""
    total_minutes = max(int(delta.total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


# ─── Alert categorisation ─────────────────────────────────────────────────────

CATEGORY_ALERT_TYPES: Dict[AlertCategory, frozenset] = {
    AlertCategory.CRITICAL: frozenset(
        {AlertType.PANIC, AlertType.AMBER, AlertType.ASSAULT, AlertType.KIDNAPPING}
    ),
    AlertCategory.CRIME: frozenset(
        {AlertType.ROBBERY, AlertType.HOUSE_BREAKING, AlertType.SUSPICIOUS}
    ),
    AlertCategory.EMERGENCY: frozenset(
        {AlertType.FIRE, AlertType.ACCIDENT, AlertType.MEDICAL}
    ),
}


def categorize_alert(alert_type: str) -> AlertCategory:
    """Map an alert type to its feed category; unknown types are `other`."""
    value = getattr(alert_type, "value", alert_type)
    for category, types in CATEGORY_ALERT_TYPES.items():
        if value in {t.value for t in types}:
            return category
    return AlertCategory.OTHER


def group_alerts_by_category(
    alerts: Iterable[T], type_of=lambda a: a["alert_type"]
) -> Dict[AlertCategory, List[T]]:
    """Bucket alerts by category, keeping their incoming order within each bucket."""
    grouped: Dict[AlertCategory, List[T]] = {category: [] for category in AlertCategory}
    for alert in alerts:
        grouped[categorize_alert(type_of(alert))].append(alert)
    return grouped
