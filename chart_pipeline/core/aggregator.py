#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Protocol-level chart aggregation.

Merges the daily series of many pools into one series bucketed by date.
Results are cached per selector (usually the network name); each selector
moves through IDLE -> FETCHING -> MERGED independently of the others.

Two data paths exist:
- bulk: one request to an alternate service that already returns a merged
  series for all selected pools
- per-pool: each selected pool is fetched on its own and summed here
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence

from ..shared.models import ChartDayData, FetchResult, PoolChartEntry

# Number of pools included in the aggregate chart
POOL_COUNT_FOR_AGGREGATE = 20

CandidateSource = Callable[[Hashable], Awaitable[Optional[List[str]]]]
EntityFetcher = Callable[[Hashable, str], Awaitable[FetchResult]]
BulkFetcher = Callable[[List[str]], Awaitable[Optional[List[ChartDayData]]]]


class PassState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGED = "merged"


def select_entities(
    candidates: Sequence[str],
    excluded: Iterable[str],
    cap: int = POOL_COUNT_FOR_AGGREGATE,
    order: str = "cap_first",
) -> List[str]:
    """
    Apply the count cap and the exclusion set to a candidate list

    Args:
        candidates: Identifiers, most relevant first
        excluded: Identifiers that must never be selected (case-insensitive)
        cap: Maximum number of candidates considered
        order: "cap_first" slices before dropping excluded ids, so fewer than
            `cap` may remain; "filter_first" drops excluded ids and then slices

    Returns:
        Selected identifiers in candidate order
    """
    blocked = {str(e).lower() for e in excluded}
    if order == "cap_first":
        return [c for c in list(candidates)[:cap] if c.lower() not in blocked]
    if order == "filter_first":
        return [c for c in candidates if c.lower() not in blocked][:cap]
    raise ValueError(f"Unknown selection order '{order}'")


def fold_into(buckets: Dict[int, ChartDayData], entries: Iterable[Any]) -> Dict[int, ChartDayData]:
    """Add each entry's tvl_usd and volume_usd to the bucket for its date"""
    for entry in entries:
        bucket = buckets.get(entry.date)
        if bucket is None:
            bucket = ChartDayData(date=entry.date)
            buckets[entry.date] = bucket
        bucket.add(entry.tvl_usd, entry.volume_usd)
    return buckets


def merge_day_series(series: Iterable[Iterable[Any]]) -> List[ChartDayData]:
    """Merge several daily series into one, ascending by date"""
    buckets: Dict[int, ChartDayData] = {}
    for entries in series:
        fold_into(buckets, entries)
    return [buckets[d] for d in sorted(buckets)]


def _snapshot_tvl(snapshot: Any) -> float:
    if isinstance(snapshot, Mapping):
        return float(snapshot.get("tvlUSD", snapshot.get("tvl_usd", 0.0)) or 0.0)
    return float(snapshot.tvl_usd)


def tvl_offset(excluded_ids: Iterable[str], snapshots: Optional[Mapping[str, Any]]) -> Optional[float]:
    """
    TVL of the pools excluded from protocol totals

    Returns None while `snapshots` has not been loaded.
    """
    if snapshots is None:
        return None
    wanted = {str(a).lower() for a in excluded_ids}
    return sum(
        (_snapshot_tvl(snapshot) for address, snapshot in snapshots.items() if str(address).lower() in wanted),
        0.0,
    )


class ProtocolChartAggregator:
    """
    Builds and caches the merged daily chart for each selector

    Args:
        candidate_source: Coroutine returning candidate pool ids for a selector
            (None while not available)
        entity_fetcher: Coroutine returning one pool's FetchResult
        bulk_fetcher: Coroutine returning a merged series for many pools, or
            None on failure
        exclusions: Selector -> pool ids never included
        bulk_selectors: Selectors served by the bulk path
        cap: Maximum number of candidate pools considered
        bulk_order / per_entity_order: Cap vs exclusion order per path
        max_concurrency: Parallel per-pool fetches in the per-pool path
    """

    def __init__(
        self,
        candidate_source: CandidateSource,
        entity_fetcher: EntityFetcher,
        bulk_fetcher: Optional[BulkFetcher] = None,
        *,
        exclusions: Optional[Mapping[Hashable, Sequence[str]]] = None,
        bulk_selectors: Iterable[Hashable] = (),
        cap: int = POOL_COUNT_FOR_AGGREGATE,
        bulk_order: str = "cap_first",
        per_entity_order: str = "cap_first",
        max_concurrency: int = 1,
    ) -> None:
        if cap <= 0:
            raise ValueError("cap must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.candidate_source = candidate_source
        self.entity_fetcher = entity_fetcher
        self.bulk_fetcher = bulk_fetcher
        self.exclusions = dict(exclusions or {})
        self.bulk_selectors = set(bulk_selectors)
        self.cap = cap
        self.bulk_order = bulk_order
        self.per_entity_order = per_entity_order
        self.max_concurrency = max_concurrency
        self.logger = logging.getLogger(self.__class__.__name__)

        self._states: Dict[Hashable, PassState] = {}
        self._results: Dict[Hashable, List[ChartDayData]] = {}
        self._entity_series: Dict[Hashable, Dict[str, List[PoolChartEntry]]] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def state(self, selector: Hashable) -> PassState:
        return self._states.get(selector, PassState.IDLE)

    def cached(self, selector: Hashable) -> Optional[List[ChartDayData]]:
        return self._results.get(selector)

    def entity_series(self, selector: Hashable) -> Dict[str, List[PoolChartEntry]]:
        """Per-pool series from the last per-pool pass, for the caller to persist"""
        return dict(self._entity_series.get(selector, {}))

    def excluded_for(self, selector: Hashable) -> List[str]:
        return list(self.exclusions.get(selector, []))

    def invalidate(self, selector: Hashable) -> bool:
        """
        Drop the cached result for `selector`

        Returns False (and changes nothing) while a pass for it is in flight.
        """
        if selector in self._inflight:
            self.logger.warning(f"Not invalidating {selector!r}: pass in flight")
            return False
        self._results.pop(selector, None)
        self._entity_series.pop(selector, None)
        self._states[selector] = PassState.IDLE
        return True

    async def get(self, selector: Hashable) -> Optional[List[ChartDayData]]:
        """
        Merged chart for `selector`

        Returns the cached result when present, joins a pass already in
        flight, or starts a new one. None means no data could be produced
        (candidates not available or the pass failed).
        """
        if self.state(selector) is PassState.MERGED:
            return self._results[selector]

        task = self._inflight.get(selector)
        if task is None:
            task = asyncio.create_task(self._run_pass(selector))
            self._inflight[selector] = task
        # A caller-level timeout must not cancel the shared pass
        return await asyncio.shield(task)

    async def _run_pass(self, selector: Hashable) -> Optional[List[ChartDayData]]:
        try:
            candidates = await self.candidate_source(selector)
            if not candidates:
                self.logger.info(f"No candidate pools for {selector!r} yet")
                return None

            self._states[selector] = PassState.FETCHING
            if selector in self.bulk_selectors:
                merged = await self._bulk_pass(selector, candidates)
            else:
                merged = await self._per_entity_pass(selector, candidates)

            if merged is None:
                self._states[selector] = PassState.IDLE
                return None

            self._results[selector] = merged
            self._states[selector] = PassState.MERGED
            self.logger.info(f"Merged chart for {selector!r}: {len(merged)} days")
            return merged

        except asyncio.CancelledError:
            self._states[selector] = PassState.IDLE
            raise
        except Exception as e:
            self.logger.error(f"Aggregation pass for {selector!r} failed: {e}", exc_info=True)
            self._states[selector] = PassState.IDLE
            return None
        finally:
            self._inflight.pop(selector, None)

    async def _bulk_pass(self, selector: Hashable, candidates: Sequence[str]) -> Optional[List[ChartDayData]]:
        if self.bulk_fetcher is None:
            self.logger.error(f"Selector {selector!r} uses the bulk path but no bulk fetcher is configured")
            return None
        selected = select_entities(candidates, self.excluded_for(selector), self.cap, self.bulk_order)
        self.logger.info(f"Bulk request for {len(selected)} pools ({selector!r})")
        days = await self.bulk_fetcher(selected)
        if days is None:
            self.logger.warning(f"Bulk source returned nothing for {selector!r}")
            return None
        return list(days)

    async def _fetch_all(self, selector: Hashable, addresses: Sequence[str]) -> List[Any]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_one(address: str) -> FetchResult:
            async with semaphore:
                return await self.entity_fetcher(selector, address)

        return await asyncio.gather(*(fetch_one(a) for a in addresses), return_exceptions=True)

    async def _per_entity_pass(self, selector: Hashable, candidates: Sequence[str]) -> List[ChartDayData]:
        selected = select_entities(candidates, self.excluded_for(selector), self.cap, self.per_entity_order)
        self.logger.info(f"Fetching {len(selected)} pools for {selector!r}")
        results = await self._fetch_all(selector, selected)

        buckets: Dict[int, ChartDayData] = {}
        series: Dict[str, List[PoolChartEntry]] = {}
        for address, result in zip(selected, results):
            if isinstance(result, BaseException):
                self.logger.warning(f"Pool {address} raised {result!r}; skipping")
                continue
            if result.error or not result.data:
                self.logger.debug(f"Pool {address} returned no data; skipping")
                continue
            series[address] = result.data
            fold_into(buckets, result.data)

        skipped = len(selected) - len(series)
        if skipped:
            self.logger.warning(f"{skipped}/{len(selected)} pools contributed no data for {selector!r}")
        self._entity_series[selector] = series
        return [buckets[d] for d in sorted(buckets)]

    async def offset_history(self, selector: Hashable) -> List[ChartDayData]:
        """Merged daily history of the excluded pools themselves"""
        excluded = self.excluded_for(selector)
        results = await self._fetch_all(selector, excluded)
        usable = [
            r.data for r in results
            if not isinstance(r, BaseException) and not r.error and r.data
        ]
        return merge_day_series(usable)
