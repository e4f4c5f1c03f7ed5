#!/usr/bin/env python3
"""
Calendar windows over daily chart data.

Groups daily volume into UTC weeks (starting Monday) or calendar months for
the coarser volume charts. Uses numpy datetime64 arithmetic to assign days
to windows and bincount to sum them.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from ..shared.models import ChartDayData, VolumeWindow

log = logging.getLogger(__name__)

WINDOWS = ("week", "month")


def window_starts(dates: np.ndarray, window: str) -> np.ndarray:
    """
    Start of the window containing each unix timestamp, as datetime64[s]

    Raises:
        ValueError: If window is not one of WINDOWS
    """
    moments = dates.astype("datetime64[s]")
    if window == "month":
        return moments.astype("datetime64[M]").astype("datetime64[s]")
    if window == "week":
        days = moments.astype("datetime64[D]")
        # 1970-01-01 was a Thursday; shift so Monday is weekday 0
        weekday = (days.astype(np.int64) + 3) % 7
        return (days - weekday.astype("timedelta64[D]")).astype("datetime64[s]")
    raise ValueError(f"window must be one of {list(WINDOWS)}, got '{window}'")


def transform_volume(days: Sequence[ChartDayData], window: str = "week") -> List[VolumeWindow]:
    """
    Sum daily volume per calendar window

    Args:
        days: Daily rows in any order
        window: "week" or "month"

    Returns:
        One VolumeWindow per window that has data, ascending by start
    """
    if not days:
        log.debug("No daily rows to resample")
        return []

    dates = np.array([d.date for d in days], dtype=np.int64)
    volumes = np.array([d.volume_usd for d in days], dtype=float)

    starts = window_starts(dates, window)
    unique_starts, inverse = np.unique(starts, return_inverse=True)
    sums = np.bincount(inverse, weights=volumes, minlength=len(unique_starts))
    counts = np.bincount(inverse, minlength=len(unique_starts))

    start_seconds = unique_starts.astype(np.int64)
    return [
        VolumeWindow(start=int(s), volume_usd=float(v), days=int(c))
        for s, v, c in zip(start_seconds, sums, counts)
    ]
