#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Subgraph GraphQL client for fetching token candles, pool day data and blocks.
Implements retry logic, error handling, and response parsing.

HTTP calls are blocking (requests); the async methods hand them to a worker
thread so the pipeline coroutines suspend at each network call.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .models import Block, PageResult

logger = logging.getLogger(__name__)

TOKEN_HOUR_DATAS = """
query tokenHourDatas($startTime: Int!, $skip: Int!, $first: Int!, $address: Bytes!) {
  tokenHourDatas(
    first: $first
    skip: $skip
    where: { token: $address, periodStartUnix_gt: $startTime }
    orderBy: periodStartUnix
    orderDirection: asc
  ) {
    periodStartUnix
    priceUSD
    high
    low
    open
    close
  }
}
"""

POOL_DAY_DATAS = """
query poolDayDatas($startTime: Int!, $skip: Int!, $first: Int!, $address: Bytes!) {
  poolDayDatas(
    first: $first
    skip: $skip
    where: { pool: $address, date_gt: $startTime }
    orderBy: date
    orderDirection: asc
    subgraphError: allow
  ) {
    date
    volumeUSD
    tvlUSD
    feesUSD
  }
}
"""

TOP_POOLS = """
query topPools($first: Int!) {
  pools(first: $first, orderBy: totalValueLockedUSD, orderDirection: desc, subgraphError: allow) {
    id
  }
}
"""


@dataclass
class APIResponse:
    """
    Outcome of one GraphQL call after retries

    `status_code` is 200 whenever the server answered, GraphQL errors
    included. It stays None when every attempt failed at the HTTP or
    transport level.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    attempts: int = 1

    @property
    def unreachable(self) -> bool:
        return not self.success and self.status_code is None


class UpstreamError(Exception):
    """Subgraph could not be reached after all retry attempts"""
    pass


class SubgraphClient:
    """Client for one subgraph GraphQL endpoint"""

    def __init__(self, endpoint: str, timeout: int = 30, retry_attempts: int = 3, retry_backoff: float = 2.0):
        """
        Initialize subgraph client

        Args:
            endpoint: GraphQL endpoint URL
            timeout: Request timeout in seconds
            retry_attempts: Number of attempts per request
            retry_backoff: Base backoff time between retries
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': 'SubgraphChartPipeline/1.0'
        })

    @classmethod
    def from_config(cls, endpoint: str, http_config) -> "SubgraphClient":
        return cls(
            endpoint,
            timeout=http_config.timeout,
            retry_attempts=http_config.retry_attempts,
            retry_backoff=http_config.retry_backoff,
        )

    def close(self) -> None:
        self.session.close()

    def _make_request(self, query: str, variables: Optional[Dict] = None) -> APIResponse:
        """
        Make GraphQL request with retry logic

        HTTP and transport failures are retried with exponential backoff.
        GraphQL errors are returned immediately since repeating the same
        query will not change the answer.
        """
        payload = {
            'query': query,
            'variables': variables or {}
        }

        last_error = None

        for attempt in range(self.retry_attempts):
            try:
                logger.debug(f"GraphQL request to {self.endpoint} (attempt {attempt + 1}/{self.retry_attempts})")
                response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)

                if response.status_code == 200:
                    data = response.json()

                    if data.get('errors'):
                        error_msg = '; '.join(err.get('message', 'Unknown GraphQL error') for err in data['errors'])
                        logger.error(f"GraphQL errors: {error_msg}")
                        return APIResponse(success=False, data=data.get('data'), error=error_msg,
                                           status_code=200, attempts=attempt + 1)

                    return APIResponse(success=True, data=data.get('data') or {}, status_code=200, attempts=attempt + 1)

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(f"Request failed: {last_error}")

            except requests.exceptions.Timeout:
                last_error = f"Request timeout after {self.timeout}s"
                logger.warning(f"Attempt {attempt + 1} timed out")

            except requests.exceptions.ConnectionError as e:
                last_error = f"Connection error: {e}"
                logger.warning(f"Attempt {attempt + 1} connection failed")

            except ValueError as e:
                last_error = f"Malformed JSON response: {e}"
                logger.warning(f"Attempt {attempt + 1} returned invalid JSON")

            if attempt < self.retry_attempts - 1:
                backoff_time = self.retry_backoff * (2 ** attempt)
                logger.debug(f"Retrying in {backoff_time}s...")
                time.sleep(backoff_time)

        logger.error(f"All {self.retry_attempts} attempts failed. Last error: {last_error}")
        return APIResponse(success=False, error=last_error, attempts=self.retry_attempts)

    async def execute(self, query: str, variables: Optional[Dict] = None) -> APIResponse:
        return await asyncio.to_thread(self._make_request, query, variables)

    async def _page(self, query: str, field_name: str, address: str, start_time: int, skip: int, first: int) -> PageResult:
        """
        Fetch one page

        A GraphQL error comes back as a PageResult with `error` set.

        Raises:
            UpstreamError: If the endpoint could not be reached at all
        """
        variables = {
            'address': address.lower(),
            'startTime': int(start_time),
            'skip': int(skip),
            'first': int(first),
        }
        response = await self.execute(query, variables)
        if response.unreachable:
            raise UpstreamError(f"{field_name} at skip={skip}: {response.error}")
        records = (response.data or {}).get(field_name) or []
        if not response.success:
            return PageResult(records=list(records), error=response.error or "unknown error")
        return PageResult(records=list(records))

    async def token_hour_datas(self, address: str, start_time: int, skip: int, first: int = 100) -> PageResult:
        """One page of hourly candles for a token, oldest first"""
        return await self._page(TOKEN_HOUR_DATAS, 'tokenHourDatas', address, start_time, skip, first)

    async def pool_day_datas(self, address: str, start_time: int, skip: int, first: int = 1000) -> PageResult:
        """One page of daily snapshots for a pool, oldest first"""
        return await self._page(POOL_DAY_DATAS, 'poolDayDatas', address, start_time, skip, first)

    async def top_pool_addresses(self, first: int = 50) -> Optional[List[str]]:
        """
        Pool ids ordered by TVL, largest first

        Returns None when the query fails so callers can tell "not loaded"
        apart from "no pools".
        """
        response = await self.execute(TOP_POOLS, {'first': int(first)})
        if not response.success:
            logger.warning(f"Top pools query failed: {response.error}")
            return None
        pools = response.data.get('pools') or []
        return [str(p['id']).lower() for p in pools if p.get('id')]

    async def prices_by_block(self, address: str, blocks: List[Block]) -> APIResponse:
        """
        Token derivedETH and bundle ethPriceUSD at each block

        Aliases are `t<timestamp>` for the token and `b<timestamp>` for the
        bundle so the caller can join them back to timestamps.
        """
        token_fields = [
            f't{b.timestamp}:token(id:"{address.lower()}", block: {{ number: {b.number} }}, subgraphError: allow) {{ derivedETH }}'
            for b in blocks
        ]
        bundle_fields = [
            f'b{b.timestamp}:bundle(id:"1", block: {{ number: {b.number} }}, subgraphError: allow) {{ ethPriceUSD }}'
            for b in blocks
        ]
        query = 'query blocks {\n' + '\n'.join(token_fields + bundle_fields) + '\n}'
        logger.debug(f"prices_by_block query for {len(blocks)} blocks: {json.dumps(query)[:200]}")
        return await self.execute(query)
