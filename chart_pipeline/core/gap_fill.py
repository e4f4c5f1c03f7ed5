#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Gap repair for raw subgraph series.

Candles: an hourly candle whose period has not finished carries "0" in its
OHLC fields. Each such field is forward-filled from the previous candle, or
from the candle's own priceUSD when the previous value is also unset. The
first candle of a series is never repaired.

Pool days: a pool has no day record on days without trades. Missing days are
inserted with zero volume and the last known TVL.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, MutableMapping, Optional, Sequence

from ..shared.models import ONE_DAY_UNIX, SENTINEL, PoolChartEntry

CANDLE_FIELDS = ("close", "open", "low", "high")
PRICE_FIELD = "priceUSD"

RawCandle = MutableMapping[str, Any]


def is_unset(value: Any) -> bool:
    if isinstance(value, str):
        return value == SENTINEL
    return isinstance(value, (int, float)) and value == 0


def fill_candle_gaps(records: Sequence[RawCandle], previous: Optional[RawCandle] = None) -> Sequence[RawCandle]:
    """
    Forward-fill unset OHLC fields in place, left to right, in one pass

    Args:
        records: Raw candles ordered by period start
        previous: Last candle before `records` (already repaired), if any

    Returns:
        The same sequence, mutated
    """
    for i, record in enumerate(records):
        lookback = records[i - 1] if i > 0 else previous
        if lookback is None:
            continue
        for name in CANDLE_FIELDS:
            if not is_unset(record.get(name)):
                continue
            prior = lookback.get(name)
            record[name] = record.get(PRICE_FIELD) if is_unset(prior) else prior
    return records


class CandleGapFiller:
    """
    Stateful candle filler for paginated input

    Remembers the last candle of the previous page so the first candle of the
    next page is repaired against it.
    """

    def __init__(self) -> None:
        self._last: Optional[RawCandle] = None

    @property
    def last(self) -> Optional[RawCandle]:
        return self._last

    def fill(self, page: Sequence[RawCandle]) -> Sequence[RawCandle]:
        fill_candle_gaps(page, previous=self._last)
        if page:
            self._last = page[-1]
        return page


def day_index(timestamp: int) -> int:
    # Half-up rounding keeps day-aligned dates stable
    return int(math.floor(timestamp / ONE_DAY_UNIX + 0.5))


def fill_missing_days(entries: Iterable[PoolChartEntry], end_timestamp: int) -> List[PoolChartEntry]:
    """
    Insert an entry for every day without pool activity

    Walks day by day from the first entry up to `end_timestamp` minus one day.
    A missing day gets zero volume and fees and carries the TVL of the last
    day that had a record. Several entries on the same day keep the last.

    Returns:
        Entries ordered by date; empty when `entries` is empty
    """
    by_day: Dict[int, PoolChartEntry] = {}
    for entry in entries:
        by_day[day_index(entry.date)] = entry

    if not by_day:
        return []

    first = by_day[min(by_day)]
    timestamp = first.date
    latest_tvl = first.tvl_usd

    while timestamp < end_timestamp - ONE_DAY_UNIX:
        next_day = timestamp + ONE_DAY_UNIX
        idx = day_index(next_day)
        if idx not in by_day:
            by_day[idx] = PoolChartEntry(date=next_day, volume_usd=0.0, tvl_usd=latest_tvl, fees_usd=0.0)
        else:
            latest_tvl = by_day[idx].tvl_usd
        timestamp = next_day

    return [by_day[k] for k in sorted(by_day)]
