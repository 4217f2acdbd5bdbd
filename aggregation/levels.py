"""
Aggregation resolutions and bucket alignment.

Buckets are aligned to the Unix epoch in UTC, so the bucket a
sample falls in never depends on the window a run was asked to
cover. That is what makes regeneration idempotent.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from core.clock import ensure_utc
from core.exceptions import ValidationError


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

RAW = "raw"
"""Sentinel: no aggregation, read raw samples."""


class Resolution(str, Enum):
    """Candle widths."""

    FIFTEEN_MINUTES = "15min"
    THIRTY_MINUTES = "30min"
    ONE_HOUR = "1hour"
    FOUR_HOURS = "4hour"
    ONE_DAY = "1day"

    @property
    def minutes(self) -> int:
        return RESOLUTION_INFO[self.value].minutes

    @property
    def width(self) -> timedelta:
        return timedelta(minutes=self.minutes)


@dataclass(frozen=True)
class ResolutionInfo:
    minutes: int
    interval: str
    description: str


RESOLUTION_INFO: Dict[str, ResolutionInfo] = {
    "15min": ResolutionInfo(
        15, "15 minutes",
        "Very sensitive - fewer false alarms than raw, but still responsive",
    ),
    "30min": ResolutionInfo(
        30, "30 minutes",
        "Balanced - good compromise between responsiveness and reliability",
    ),
    "1hour": ResolutionInfo(
        60, "1 hour",
        "Conservative - fewer alerts, higher confidence",
    ),
    "4hour": ResolutionInfo(
        240, "4 hours",
        "Very conservative - minimal false alarms, delayed notifications",
    ),
    "1day": ResolutionInfo(
        1440, "1 day",
        "Daily trends - best for long-term monitoring",
    ),
}

RAW_INFO = ResolutionInfo(
    5, "5 minutes", "Raw data points - most sensitive, most false alarms"
)


def parse_resolution(name: Optional[str]) -> Resolution:
    """Resolve a candle resolution name, rejecting `raw` and unknown names."""
    try:
        return Resolution(name)
    except ValueError:
        raise ValidationError(
            f"Invalid aggregation level: {name}", field="resolution", value=name
        ) from None


def validate_setting(name: Optional[str], allow_none: bool) -> Optional[str]:
    """
    Validate a configured resolution (candle name or `raw`).

    `None` means "no override" and is accepted only where the
    caller allows it.
    """
    if name is None:
        if allow_none:
            return None
        raise ValidationError("Aggregation level is required", field="resolution")
    if name == RAW:
        return RAW
    return parse_resolution(name).value


def resolution_catalogue() -> Dict[str, Dict[str, object]]:
    """All selectable resolutions, `raw` first."""
    catalogue = {RAW: RAW_INFO}
    catalogue.update(RESOLUTION_INFO)
    return {
        name: {
            "minutes": info.minutes,
            "interval": info.interval,
            "description": info.description,
        }
        for name, info in catalogue.items()
    }


def bucket_start(ts: datetime, resolution: Resolution) -> datetime:
    """Start of the epoch-aligned bucket containing `ts`."""
    width = resolution.width
    offset = ensure_utc(ts) - EPOCH
    return EPOCH + (offset // width) * width


def aligned_window(
    start: datetime,
    end: datetime,
    resolution: Resolution,
) -> Tuple[datetime, datetime]:
    """
    Widen [start, end) to whole buckets.

    Reading whole buckets keeps a window that starts or ends
    mid-bucket from overwriting a complete candle with a partial one.
    """
    floor_start = bucket_start(start, resolution)
    floor_end = bucket_start(end, resolution)
    if floor_end < ensure_utc(end):
        floor_end += resolution.width
    return floor_start, floor_end


__all__ = [
    "RAW",
    "Resolution",
    "ResolutionInfo",
    "RESOLUTION_INFO",
    "parse_resolution",
    "validate_setting",
    "resolution_catalogue",
    "bucket_start",
    "aligned_window",
]
