#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Paginated series fetchers for token candles and pool day data.

Both fetchers walk the upstream with an increasing `skip` offset until a
short page or a failed page, repair the raw records, and convert numeric text
to floats. Failures never escape: they come back as an empty FetchResult with
the error flag set.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..shared.models import Block, FetchResult, PageResult, PoolChartEntry, PriceChartEntry, PricePoint
from .block_resolver import chunked
from .gap_fill import CandleGapFiller, fill_missing_days

log = logging.getLogger(__name__)

# First day with v3 pool data
V3_START_TIMESTAMP = 1619170975

PageFetcher = Callable[[int], Awaitable[PageResult]]


def utc_now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def build_timestamps(start: int, end: int, interval: int) -> List[int]:
    """Interval boundaries from `start` up to and including `end`; empty if start >= end"""
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")
    if start >= end:
        return []
    return list(range(int(start), int(end) + 1, int(interval)))


async def paginate(
    fetch_page: PageFetcher,
    page_size: int,
    on_page: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Fetch pages sequentially until one is short or reports an error

    Args:
        fetch_page: Coroutine function taking the `skip` offset
        page_size: Records per full page
        on_page: Called with each accepted page before it is appended

    Returns:
        All accepted records in upstream order. A failed page ends the walk
        and contributes nothing. Exceptions from `fetch_page` propagate.
    """
    data: List[Dict[str, Any]] = []
    skip = 0
    pages = 0
    while True:
        page = await fetch_page(skip)
        skip += page_size
        if page.error:
            log.warning(f"Page at skip={skip - page_size} failed, stopping after {pages} pages: {page.error}")
            break
        records = list(page.records)
        pages += 1
        if on_page is not None:
            on_page(records)
        data.extend(records)
        if len(records) < page_size:
            break
    log.debug(f"Pagination finished: {pages} pages, {len(data)} records")
    return data


def _to_price_entry(raw: Dict[str, Any]) -> PriceChartEntry:
    return PriceChartEntry(
        time=int(raw['periodStartUnix']),
        open=float(raw['open']),
        close=float(raw['close']),
        high=float(raw['high']),
        low=float(raw['low']),
    )


def _to_pool_entry(raw: Dict[str, Any]) -> PoolChartEntry:
    return PoolChartEntry(
        date=int(raw['date']),
        volume_usd=float(raw['volumeUSD']),
        tvl_usd=float(raw['tvlUSD']),
        fees_usd=float(raw.get('feesUSD') or 0),
    )


async def fetch_token_price_data(
    address: str,
    interval: int,
    start_timestamp: Optional[int],
    data_client,
    block_resolver,
    *,
    now: Optional[int] = None,
    page_size: int = 100,
    block_batch_size: int = 500,
) -> FetchResult:
    """
    Fetch a token's candles from `start_timestamp` until now

    Args:
        address: Token address
        interval: Candle interval in seconds
        start_timestamp: Unix start; absent or zero means no range
        data_client: Object with async `token_hour_datas(address, start_time, skip, first)`
        block_resolver: Object with async `resolve(timestamps, batch_size)`
        now: End bound override (defaults to current UTC time)

    Returns:
        FetchResult with PriceChartEntry rows; error=True only on an exception
    """
    try:
        end_timestamp = utc_now() if now is None else int(now)

        if not start_timestamp:
            log.info(f"No price start timestamp for {address}")
            return FetchResult()

        timestamps = build_timestamps(start_timestamp, end_timestamp, interval)
        if not timestamps:
            log.info(f"Empty time range for {address}: start={start_timestamp} end={end_timestamp}")
            return FetchResult()

        blocks = await block_resolver.resolve(timestamps, block_batch_size)
        if not blocks:
            log.info(f"No blocks resolved for {len(timestamps)} timestamps of {address}")
            return FetchResult()

        filler = CandleGapFiller()

        async def fetch_page(skip: int) -> PageResult:
            return await data_client.token_hour_datas(address, start_timestamp, skip, page_size)

        raw = await paginate(fetch_page, page_size, on_page=filler.fill)
        entries = [_to_price_entry(r) for r in raw]
        log.info(f"Fetched {len(entries)} candles for {address}")
        return FetchResult(data=entries)

    except Exception as e:
        log.error(f"Price fetch failed for {address}: {e}", exc_info=True)
        return FetchResult(error=True)


async def fetch_pool_chart_data(
    address: str,
    data_client,
    *,
    start_timestamp: int = V3_START_TIMESTAMP,
    now: Optional[int] = None,
    page_size: int = 1000,
) -> FetchResult:
    """
    Fetch a pool's daily volume/TVL history with missing days filled in

    Args:
        address: Pool address
        data_client: Object with async `pool_day_datas(address, start_time, skip, first)`

    Returns:
        FetchResult with PoolChartEntry rows ordered by date
    """
    try:
        end_timestamp = utc_now() if now is None else int(now)

        async def fetch_page(skip: int) -> PageResult:
            return await data_client.pool_day_datas(address, start_timestamp, skip, page_size)

        raw = await paginate(fetch_page, page_size)
        entries = fill_missing_days((_to_pool_entry(r) for r in raw), end_timestamp)
        log.debug(f"Pool {address}: {len(raw)} day records, {len(entries)} after filling")
        return FetchResult(data=entries)

    except Exception as e:
        log.error(f"Pool chart fetch failed for {address}: {e}", exc_info=True)
        return FetchResult(error=True)


async def fetch_prices_by_block(
    address: str,
    blocks: Sequence[Block],
    data_client,
    *,
    chunk_size: int = 50,
) -> FetchResult:
    """
    USD price of a token at each block, as derivedETH x ethPriceUSD

    Blocks where either value is missing are skipped.
    """
    try:
        points: List[PricePoint] = []
        for chunk in chunked(list(blocks), chunk_size):
            response = await data_client.prices_by_block(address, chunk)
            if not response.success:
                log.warning(f"Block price query failed for {address}: {response.error}")
                return FetchResult(error=True)
            data = response.data or {}
            for block in chunk:
                token = data.get(f"t{block.timestamp}")
                bundle = data.get(f"b{block.timestamp}")
                if not token or not bundle:
                    continue
                derived_eth = token.get('derivedETH')
                eth_price = bundle.get('ethPriceUSD')
                if derived_eth is None or eth_price is None:
                    continue
                points.append(PricePoint(
                    timestamp=block.timestamp,
                    price_usd=float(derived_eth) * float(eth_price),
                    block=block.number,
                ))
        return FetchResult(data=points)

    except Exception as e:
        log.error(f"Block price fetch failed for {address}: {e}", exc_info=True)
        return FetchResult(error=True)


async def fetch_block_price_series(
    address: str,
    interval: int,
    start_timestamp: Optional[int],
    data_client,
    block_resolver,
    *,
    now: Optional[int] = None,
    block_batch_size: int = 500,
    chunk_size: int = 50,
) -> FetchResult:
    """
    Token USD price at the block closest after each interval boundary

    Empty ranges and unresolved blocks give an empty result without error.
    """
    end_timestamp = utc_now() if now is None else int(now)
    if not start_timestamp:
        return FetchResult()
    try:
        timestamps = build_timestamps(start_timestamp, end_timestamp, interval)
        if not timestamps:
            return FetchResult()
        blocks = await block_resolver.resolve(timestamps, block_batch_size)
    except Exception as e:
        log.error(f"Block lookup failed for {address}: {e}", exc_info=True)
        return FetchResult(error=True)
    if not blocks:
        log.info(f"No blocks resolved for {len(timestamps)} timestamps of {address}")
        return FetchResult()
    return await fetch_prices_by_block(address, blocks, data_client, chunk_size=chunk_size)
