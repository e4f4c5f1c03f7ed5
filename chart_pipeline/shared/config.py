#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration System for the Subgraph Chart Pipeline
Handles YAML configuration loading, validation, and type conversion.
"""

import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any

SELECTION_ORDERS = ("cap_first", "filter_first")
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigError(Exception):
    """Configuration-related errors"""
    pass


@dataclass
class HttpConfig:
    """HTTP behaviour shared by every upstream client"""
    timeout: int = 30
    retry_attempts: int = 3
    retry_backoff: float = 2.0

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("Timeout must be positive")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff cannot be negative")


@dataclass
class NetworkEndpoints:
    """Subgraph endpoints for one network"""
    name: str
    data_url: str
    blocks_url: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("network name cannot be empty")
        if not self.data_url:
            raise ValueError(f"data_url missing for network '{self.name}'")
        if not self.blocks_url:
            raise ValueError(f"blocks_url missing for network '{self.name}'")
        self.name = self.name.strip().lower()


@dataclass
class BulkSourceConfig:
    """Alternate day-data service (Connect JSON endpoint)"""
    base_url: str = "http://localhost:7878"
    service_path: str = "proto.UniswapInfo/PoolDayDatas"

    def __post_init__(self):
        if not self.base_url:
            raise ValueError("bulk_source base_url cannot be empty")
        self.service_path = self.service_path.strip("/")


@dataclass
class PaginationConfig:
    """Page sizes and batch sizes for upstream queries"""
    price_page_size: int = 100
    day_page_size: int = 1000
    block_batch_size: int = 500
    price_chunk_size: int = 50

    def __post_init__(self):
        for name in ("price_page_size", "day_page_size", "block_batch_size", "price_chunk_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass
class AggregateConfig:
    """Protocol-level chart aggregation settings"""
    pool_count: int = 20
    top_pool_count: int = 50
    bulk_networks: List[str] = field(default_factory=list)
    bulk_order: str = "cap_first"
    per_entity_order: str = "cap_first"
    max_concurrency: int = 1
    pool_hide: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        if self.pool_count <= 0:
            raise ValueError("pool_count must be positive")
        if self.top_pool_count < self.pool_count:
            raise ValueError("top_pool_count must be >= pool_count")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        for name in ("bulk_order", "per_entity_order"):
            value = str(getattr(self, name)).strip().lower()
            if value not in SELECTION_ORDERS:
                raise ValueError(f"{name} must be one of {list(SELECTION_ORDERS)}")
            setattr(self, name, value)
        self.bulk_networks = [n.strip().lower() for n in self.bulk_networks if n and n.strip()]
        for network, addresses in self.pool_hide.items():
            if addresses is not None and not isinstance(addresses, list):
                raise ValueError(f"pool_hide for '{network}' must be a list of addresses")
        # Addresses are compared lowercase everywhere
        self.pool_hide = {
            str(network).strip().lower(): [str(a).strip().lower() for a in (addresses or [])]
            for network, addresses in self.pool_hide.items()
        }


@dataclass
class PipelineConfig:
    """Main pipeline configuration"""
    networks: Dict[str, NetworkEndpoints]
    http: HttpConfig = field(default_factory=HttpConfig)
    bulk_source: BulkSourceConfig = field(default_factory=BulkSourceConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    aggregate: AggregateConfig = field(default_factory=AggregateConfig)
    logging_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if not self.networks:
            raise ValueError("at least one network must be configured")
        if self.logging_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"logging_level must be one of: {VALID_LOG_LEVELS}")
        self.logging_level = self.logging_level.upper()
        unknown = [n for n in self.aggregate.bulk_networks if n not in self.networks]
        if unknown:
            raise ValueError(f"bulk_networks reference unknown networks: {unknown}")

    def network(self, name: str) -> NetworkEndpoints:
        key = (name or "").strip().lower()
        if key not in self.networks:
            raise ConfigError(f"Unknown network '{name}'. Configured: {sorted(self.networks)}")
        return self.networks[key]


def _load_raw_config(config_path: str) -> Dict[str, Any]:
    """
    Load raw configuration from YAML file

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read {config_path}: {e}")

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Configuration must be a YAML mapping, got {type(raw_config)}")

    return raw_config


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return value


def build_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """
    Build PipelineConfig from a dictionary

    Raises:
        ConfigError: If configuration is invalid
    """
    try:
        networks_raw = _section(config_dict, "networks")
        networks: Dict[str, NetworkEndpoints] = {}
        for name, endpoints in networks_raw.items():
            if not isinstance(endpoints, dict):
                raise ConfigError(f"network '{name}' must be a mapping")
            net = NetworkEndpoints(
                name=str(name),
                data_url=endpoints.get("data_url", ""),
                blocks_url=endpoints.get("blocks_url", ""),
            )
            networks[net.name] = net

        http_raw = _section(config_dict, "http")
        http = HttpConfig(
            timeout=http_raw.get("timeout", 30),
            retry_attempts=http_raw.get("retry_attempts", 3),
            retry_backoff=http_raw.get("retry_backoff", 2.0),
        )

        bulk_raw = _section(config_dict, "bulk_source")
        bulk = BulkSourceConfig(
            base_url=bulk_raw.get("base_url", "http://localhost:7878"),
            service_path=bulk_raw.get("service_path", "proto.UniswapInfo/PoolDayDatas"),
        )

        pages_raw = _section(config_dict, "pagination")
        pagination = PaginationConfig(
            price_page_size=pages_raw.get("price_page_size", 100),
            day_page_size=pages_raw.get("day_page_size", 1000),
            block_batch_size=pages_raw.get("block_batch_size", 500),
            price_chunk_size=pages_raw.get("price_chunk_size", 50),
        )

        agg_raw = _section(config_dict, "aggregate")
        pool_hide = agg_raw.get("pool_hide") or {}
        if not isinstance(pool_hide, dict):
            raise ConfigError("'aggregate.pool_hide' must map network -> list of addresses")
        bulk_networks = agg_raw.get("bulk_networks") or []
        if not isinstance(bulk_networks, list):
            raise ConfigError("'aggregate.bulk_networks' must be a list")
        aggregate = AggregateConfig(
            pool_count=agg_raw.get("pool_count", 20),
            top_pool_count=agg_raw.get("top_pool_count", 50),
            bulk_networks=bulk_networks,
            bulk_order=agg_raw.get("bulk_order", "cap_first"),
            per_entity_order=agg_raw.get("per_entity_order", "cap_first"),
            max_concurrency=agg_raw.get("max_concurrency", 1),
            pool_hide=pool_hide,
        )

        logging_raw = _section(config_dict, "logging")
        return PipelineConfig(
            networks=networks,
            http=http,
            bulk_source=bulk,
            pagination=pagination,
            aggregate=aggregate,
            logging_level=str(logging_raw.get("level", "INFO")),
            log_file=logging_raw.get("file"),
        )

    except (ValueError, TypeError) as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def load_pipeline_config(config_path: str) -> PipelineConfig:
    """
    Load and validate pipeline configuration from YAML file

    Raises:
        ConfigError: If configuration cannot be loaded or is invalid
    """
    return build_config(_load_raw_config(config_path))
