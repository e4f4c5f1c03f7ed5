#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Client for the alternate day-data service.

The service answers one request for many pools with a single pre-merged
daily series, so no per-pool summation is needed on our side. It speaks the
Connect protocol with JSON bodies: POST {base_url}/{service}/{method}.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

import requests

from .models import ChartDayData


class BulkDayDataClient:
    def __init__(self, *, base_url: str, service_path: str = "proto.UniswapInfo/PoolDayDatas", timeout_s: int = 30, retries: int = 1) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_path = service_path.strip("/")
        self.timeout_s = max(1, int(timeout_s))
        self.retries = max(0, int(retries))
        self.log = logging.getLogger(__name__)
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Connect-Protocol-Version": "1",
        })

    def close(self) -> None:
        self._session.close()

    def _post(self, json_body: Dict) -> Optional[Dict]:
        url = f"{self.base_url}/{self.service_path}"
        last_err: Optional[str] = None
        self.log.info(f"Bulk POST {self.service_path} addresses={len(json_body.get('addresses', []))}")
        for i in range(self.retries + 1):
            try:
                r = self._session.post(url, json=json_body, timeout=self.timeout_s)
                if r.status_code == 200:
                    return r.json()
                last_err = f"HTTP {r.status_code}: {r.text[:200]}"
            except (requests.exceptions.RequestException, ValueError) as e:
                last_err = str(e)
            if i < self.retries:
                time.sleep(0.5 * (2 ** i))
        self.log.warning(f"Bulk POST FAILED {self.service_path} error={last_err}")
        return None

    def _pool_day_datas(self, addresses: List[str]) -> Optional[List[ChartDayData]]:
        resp = self._post({"addresses": [a.lower() for a in addresses]})
        if resp is None:
            return None
        rows = resp.get("poolDaysData")
        if rows is None:
            self.log.warning("Bulk response missing poolDaysData")
            return None
        out: List[ChartDayData] = []
        for row in rows:
            try:
                # int64 fields arrive as JSON strings under Connect
                out.append(ChartDayData(
                    date=int(row["date"]),
                    tvl_usd=float(row.get("tvlUSD", 0) or 0),
                    volume_usd=float(row.get("volumeUSD", 0) or 0),
                ))
            except (KeyError, TypeError, ValueError) as e:
                self.log.warning(f"Skipping malformed bulk row {row}: {e}")
        return out

    async def pool_day_datas(self, addresses: List[str]) -> Optional[List[ChartDayData]]:
        """Merged daily series for all `addresses`, or None on failure"""
        return await asyncio.to_thread(self._pool_day_datas, addresses)
