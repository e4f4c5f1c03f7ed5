#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Domain Models for the Subgraph Chart Pipeline
Defines the records produced by the fetchers and the merged chart series.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Upstream marks a not-yet-finalized numeric field with this value
SENTINEL = "0"

ONE_DAY_UNIX = 24 * 60 * 60
ONE_HOUR_SECONDS = 60 * 60


@dataclass
class PriceChartEntry:
    """
    One OHLC candle for a token, ready for charting

    `time` is the unix start of the candle interval.
    """
    time: int
    open: float
    close: float
    high: float
    low: float


@dataclass
class PoolChartEntry:
    """Daily snapshot of a single pool"""
    date: int
    volume_usd: float
    tvl_usd: float
    fees_usd: float = 0.0


@dataclass
class ChartDayData:
    """
    Combined daily figures across many pools

    Used as the bucket accumulator while merging, and as the output row.
    """
    date: int
    tvl_usd: float = 0.0
    volume_usd: float = 0.0

    def add(self, tvl_usd: float, volume_usd: float) -> None:
        self.tvl_usd += tvl_usd
        self.volume_usd += volume_usd


@dataclass(frozen=True)
class Block:
    """Block number resolved for a target timestamp"""
    timestamp: int
    number: int


@dataclass
class PoolSnapshot:
    """Current per-pool figures, fetched outside the pipeline"""
    address: str
    tvl_usd: float
    volume_usd: float = 0.0


@dataclass
class PricePoint:
    """Token USD price observed at a specific block"""
    timestamp: int
    price_usd: float
    block: Optional[int] = None


@dataclass
class VolumeWindow:
    """Volume summed over a calendar window (week or month)"""
    start: int
    volume_usd: float
    days: int


@dataclass
class PageResult:
    """
    One page returned by a paginated subgraph query

    `records` keep the raw upstream shape (numeric fields as text).
    `error` is set when the query reported a failure.
    """
    records: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class FetchResult:
    """Outcome of a fetch: the data plus whether an upstream failure occurred"""
    data: List[Any] = field(default_factory=list)
    error: bool = False
