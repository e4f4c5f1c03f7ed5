#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Block resolver: maps target timestamps to block numbers via a blocks subgraph.

Each timestamp resolves to the first block found in the window
(timestamp, timestamp + BLOCK_WINDOW_SECONDS). Timestamps without a block in
that window are left out of the result.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from ..shared.models import Block

BLOCK_WINDOW_SECONDS = 600


def build_blocks_query(timestamps: Sequence[int]) -> str:
    fields = [
        f't{ts}:blocks(first: 1, orderBy: timestamp, orderDirection: desc, '
        f'where: {{ timestamp_gt: {ts}, timestamp_lt: {ts + BLOCK_WINDOW_SECONDS} }}) {{ number }}'
        for ts in timestamps
    ]
    return 'query blocks {\n' + '\n'.join(fields) + '\n}'


def chunked(items: Sequence, size: int) -> List[Sequence]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


class SubgraphBlockResolver:
    def __init__(self, client) -> None:
        self.client = client
        self.logger = logging.getLogger(self.__class__.__name__)

    async def resolve(self, timestamps: Sequence[int], batch_size: int = 500) -> List[Block]:
        """
        Resolve block numbers for `timestamps`, querying `batch_size` at a time

        Returns an empty list if any batch query fails; a partial block list
        would silently shorten the series built on top of it.
        """
        if not timestamps:
            return []

        blocks: List[Block] = []
        for batch in chunked(list(timestamps), batch_size):
            response = await self.client.execute(build_blocks_query(batch))
            if not response.success:
                self.logger.warning(f"Block query failed for {len(batch)} timestamps: {response.error}")
                return []
            data = response.data or {}
            for ts in batch:
                found = data.get(f"t{ts}") or []
                if found:
                    blocks.append(Block(timestamp=int(ts), number=int(found[0]["number"])))

        blocks.sort(key=lambda b: b.timestamp)
        self.logger.debug(f"Resolved {len(blocks)}/{len(timestamps)} timestamps to blocks")
        return blocks
