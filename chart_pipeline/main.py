#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Chart pipeline runner.
- Loads configuration
- Builds one subgraph client per network and the bulk day-data client
- Prints the merged protocol chart (or a token price series) as JSON

Usage examples:
  python -m chart_pipeline.main --help
  python -m chart_pipeline.main --config config/pipeline_config.yaml --network arbitrum
  python -m chart_pipeline.main --network ethereum --window week
  python -m chart_pipeline.main --network ethereum --token 0xc02a... --start 1700000000
  python -m chart_pipeline.main --network ethereum --token 0xc02a... --start 1700000000 --by-block
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Optional

from .core.aggregator import ProtocolChartAggregator
from .core.block_resolver import SubgraphBlockResolver
from .core.resample import WINDOWS, transform_volume
from .core.series_fetcher import fetch_block_price_series, fetch_pool_chart_data, fetch_token_price_data
from .shared.bulk_client import BulkDayDataClient
from .shared.config import ConfigError, PipelineConfig, load_pipeline_config
from .shared.logging_setup import setup_logging
from .shared.models import ONE_HOUR_SECONDS
from .shared.subgraph_client import SubgraphClient

log = logging.getLogger(__name__)


def build_aggregator(
    config: PipelineConfig,
    data_clients: Dict[str, SubgraphClient],
    bulk_client: Optional[BulkDayDataClient] = None,
) -> ProtocolChartAggregator:
    """Wire config and clients into an aggregator keyed by network name"""
    agg = config.aggregate
    pages = config.pagination

    async def candidates(network: str):
        return await data_clients[network].top_pool_addresses(agg.top_pool_count)

    async def pool_series(network: str, address: str):
        return await fetch_pool_chart_data(address, data_clients[network], page_size=pages.day_page_size)

    bulk_fetcher = bulk_client.pool_day_datas if bulk_client is not None else None

    return ProtocolChartAggregator(
        candidates,
        pool_series,
        bulk_fetcher,
        exclusions=agg.pool_hide,
        bulk_selectors=agg.bulk_networks,
        cap=agg.pool_count,
        bulk_order=agg.bulk_order,
        per_entity_order=agg.per_entity_order,
        max_concurrency=agg.max_concurrency,
    )


async def run(config: PipelineConfig, network: str, token: Optional[str] = None, start: Optional[int] = None,
              interval: int = ONE_HOUR_SECONDS, window: Optional[str] = None, by_block: bool = False) -> dict:
    endpoints = config.network(network)
    data_client = SubgraphClient.from_config(endpoints.data_url, config.http)
    blocks_client = SubgraphClient.from_config(endpoints.blocks_url, config.http)
    bulk_client = BulkDayDataClient(
        base_url=config.bulk_source.base_url,
        service_path=config.bulk_source.service_path,
        timeout_s=config.http.timeout,
        retries=config.http.retry_attempts - 1,
    )
    try:
        if token and by_block:
            result = await fetch_block_price_series(
                token, interval, start, data_client, SubgraphBlockResolver(blocks_client),
                block_batch_size=config.pagination.block_batch_size,
                chunk_size=config.pagination.price_chunk_size,
            )
            return {"error": result.error, "prices": [asdict(p) for p in result.data]}

        if token:
            result = await fetch_token_price_data(
                token, interval, start, data_client, SubgraphBlockResolver(blocks_client),
                page_size=config.pagination.price_page_size,
                block_batch_size=config.pagination.block_batch_size,
            )
            return {"error": result.error, "prices": [asdict(p) for p in result.data]}

        aggregator = build_aggregator(config, {endpoints.name: data_client}, bulk_client)
        days = await aggregator.get(endpoints.name)
        if days is None:
            return {"error": True, "days": []}
        out: dict = {"error": False, "days": [asdict(d) for d in days]}
        if window:
            out["windows"] = [asdict(w) for w in transform_volume(days, window)]
        return out
    finally:
        data_client.close()
        blocks_client.close()
        bulk_client.close()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description='Subgraph chart pipeline')
    parser.add_argument('--config', type=str, default=None, help='Path to pipeline_config.yaml')
    parser.add_argument('--network', type=str, required=True, help='Configured network name')
    parser.add_argument('--token', type=str, default=None, help='Fetch hourly candles for this token instead of the protocol chart')
    parser.add_argument('--start', type=int, default=None, help='Unix start for --token')
    parser.add_argument('--interval', type=int, default=ONE_HOUR_SECONDS, help='Candle interval in seconds for --token')
    parser.add_argument('--by-block', action='store_true', help='With --token, price at resolved blocks instead of hourly candles')
    parser.add_argument('--window', type=str, default=None, choices=list(WINDOWS), help='Also print volume summed per week or month')
    parser.add_argument('--log-level', type=str, default=None, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], help='Override configured logging level')
    args = parser.parse_args(argv)

    base = Path(__file__).resolve().parents[1]
    config_path = args.config or str(base / 'config' / 'pipeline_config.yaml')
    try:
        config = load_pipeline_config(config_path)
    except ConfigError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or config.logging_level, config.log_file)

    try:
        result = asyncio.run(run(config, args.network, args.token, args.start, args.interval, args.window, args.by_block))
    except ConfigError as e:
        log.error(str(e))
        return 2

    print(json.dumps(result, indent=2))
    return 1 if result.get("error") else 0


if __name__ == '__main__':
    sys.exit(main())
