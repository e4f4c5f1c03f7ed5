#!/usr/bin/env python3
"""
Unit tests for protocol chart aggregation

Tests cover:
- merge_day_series() bucketing by date
- select_entities() cap and exclusion order
- ProtocolChartAggregator state machine, both data paths, selector cache
- tvl_offset()
"""
import asyncio
import pytest
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chart_pipeline.core.aggregator import (
    PassState,
    ProtocolChartAggregator,
    merge_day_series,
    select_entities,
    tvl_offset,
)
from chart_pipeline.shared.models import ChartDayData, FetchResult, PoolChartEntry, PoolSnapshot


def series(dates, tvls, volumes=None):
    volumes = volumes or [0.0] * len(dates)
    return [PoolChartEntry(date=d, tvl_usd=t, volume_usd=v) for d, t, v in zip(dates, tvls, volumes)]


class Recorder:
    """Fake collaborators that record every call"""

    def __init__(self, candidates=None, data=None, bulk=None):
        self.candidates = candidates or {}
        self.data = data or {}
        self.bulk = bulk
        self.candidate_calls = []
        self.fetched = []
        self.bulk_calls = []

    async def candidate_source(self, selector):
        self.candidate_calls.append(selector)
        await asyncio.sleep(0)
        return self.candidates.get(selector)

    async def entity_fetcher(self, selector, address):
        self.fetched.append((selector, address))
        await asyncio.sleep(0)
        value = self.data.get(address)
        if isinstance(value, Exception):
            raise value
        if value is None:
            return FetchResult(error=True)
        return FetchResult(data=value)

    async def bulk_fetcher(self, addresses):
        self.bulk_calls.append(list(addresses))
        await asyncio.sleep(0)
        return self.bulk


def make_aggregator(rec, **kwargs):
    return ProtocolChartAggregator(rec.candidate_source, rec.entity_fetcher, rec.bulk_fetcher, **kwargs)


class TestMergeDaySeries:
    """Test merge_day_series function"""

    def test_sums_by_date(self):
        """A [1,2,3]/[10,20,30] + B [2,3]/[5,5] -> {1:10, 2:25, 3:35}"""
        merged = merge_day_series([series([1, 2, 3], [10, 20, 30]), series([2, 3], [5, 5])])
        assert [(d.date, d.tvl_usd) for d in merged] == [(1, 10), (2, 25), (3, 35)]

    def test_volume_summed(self):
        merged = merge_day_series([series([1], [0], [3.0]), series([1], [0], [4.5])])
        assert merged[0].volume_usd == 7.5

    def test_ascending_regardless_of_input_order(self):
        merged = merge_day_series([series([3, 1], [1, 1]), series([2], [1])])
        assert [d.date for d in merged] == [1, 2, 3]

    def test_empty(self):
        assert merge_day_series([]) == []


class TestSelectEntities:
    """Test select_entities function"""

    CANDIDATES = [f"0xp{i}" for i in range(25)]

    def test_cap_first(self):
        """Cap then exclude: excluded ids inside the cap shrink the selection"""
        selected = select_entities(self.CANDIDATES, ["0xp3", "0xp22"], cap=20, order="cap_first")
        assert len(selected) == 19
        assert "0xp3" not in selected
        assert "0xp20" not in selected

    def test_filter_first(self):
        """Exclude then cap: the selection is refilled up to the cap"""
        selected = select_entities(self.CANDIDATES, ["0xp3"], cap=20, order="filter_first")
        assert len(selected) == 20
        assert "0xp3" not in selected
        assert selected[-1] == "0xp20"

    def test_case_insensitive_exclusion(self):
        assert select_entities(["0xAbC", "0xdef"], ["0xabc"], cap=5) == ["0xdef"]

    def test_unknown_order(self):
        with pytest.raises(ValueError):
            select_entities(self.CANDIDATES, [], cap=5, order="sideways")


class TestPerEntityPath:
    """Test the per-pool aggregation path"""

    def test_merges_fetched_pools(self):
        rec = Recorder(
            candidates={"arbitrum": ["0xa", "0xb"]},
            data={"0xa": series([1, 2, 3], [10, 20, 30]), "0xb": series([2, 3], [5, 5])},
        )
        agg = make_aggregator(rec)
        merged = asyncio.run(agg.get("arbitrum"))
        assert [(d.date, d.tvl_usd) for d in merged] == [(1, 10), (2, 25), (3, 35)]
        assert agg.state("arbitrum") is PassState.MERGED
        assert set(agg.entity_series("arbitrum")) == {"0xa", "0xb"}

    def test_cap_and_exclusions_honored(self):
        """25 candidates, cap 20: at most 20 fetched and excluded ids never fetched"""
        candidates = [f"0xp{i}" for i in range(25)]
        rec = Recorder(
            candidates={"arbitrum": candidates},
            data={c: series([1], [1.0]) for c in candidates},
        )
        agg = make_aggregator(rec, exclusions={"arbitrum": ["0xp0", "0xp7"]}, cap=20)
        merged = asyncio.run(agg.get("arbitrum"))

        fetched = [addr for _, addr in rec.fetched]
        assert len(fetched) <= 20
        assert "0xp0" not in fetched
        assert "0xp7" not in fetched
        assert not set(fetched) & set(candidates[20:])
        assert merged[0].tvl_usd == 18.0

    def test_failed_and_empty_pools_skipped(self):
        """Pools with errors, no data or exceptions do not abort the pass"""
        rec = Recorder(
            candidates={"arbitrum": ["0xa", "0xb", "0xc", "0xd"]},
            data={"0xa": series([1], [10]), "0xb": [], "0xd": RuntimeError("kaput")},
        )
        agg = make_aggregator(rec)
        merged = asyncio.run(agg.get("arbitrum"))
        assert [(d.date, d.tvl_usd) for d in merged] == [(1, 10)]
        assert list(agg.entity_series("arbitrum")) == ["0xa"]

    def test_concurrent_fetches_same_result(self):
        candidates = [f"0xp{i}" for i in range(10)]
        data = {c: series([1, 2], [i, i * 2]) for i, c in enumerate(candidates)}
        sequential = asyncio.run(make_aggregator(Recorder({"x": candidates}, data)).get("x"))
        parallel = asyncio.run(make_aggregator(Recorder({"x": candidates}, data), max_concurrency=4).get("x"))
        assert [(d.date, d.tvl_usd) for d in sequential] == [(d.date, d.tvl_usd) for d in parallel]


class TestBulkPath:
    """Test the bulk-source aggregation path"""

    def test_bulk_response_used_directly(self):
        candidates = [f"0xp{i}" for i in range(25)]
        bulk_days = [ChartDayData(date=1, tvl_usd=100.0, volume_usd=5.0)]
        rec = Recorder(candidates={"ethereum": candidates}, bulk=bulk_days)
        agg = make_aggregator(rec, bulk_selectors=["ethereum"], exclusions={"ethereum": ["0xp1"]})

        merged = asyncio.run(agg.get("ethereum"))

        assert [(d.date, d.tvl_usd) for d in merged] == [(1, 100.0)]
        assert len(rec.bulk_calls) == 1
        assert len(rec.bulk_calls[0]) == 19
        assert "0xp1" not in rec.bulk_calls[0]
        assert rec.fetched == []

    def test_bulk_failure_returns_to_idle(self):
        rec = Recorder(candidates={"ethereum": ["0xa"]}, bulk=None)
        agg = make_aggregator(rec, bulk_selectors=["ethereum"])
        assert asyncio.run(agg.get("ethereum")) is None
        assert agg.state("ethereum") is PassState.IDLE

    def test_missing_bulk_fetcher(self):
        rec = Recorder(candidates={"ethereum": ["0xa"]})
        agg = ProtocolChartAggregator(rec.candidate_source, rec.entity_fetcher, None, bulk_selectors=["ethereum"])
        assert asyncio.run(agg.get("ethereum")) is None


class TestPassStateMachine:
    """Test selector caching and pass lifecycle"""

    def test_no_candidates_stays_idle(self):
        rec = Recorder(candidates={})
        agg = make_aggregator(rec)
        assert asyncio.run(agg.get("arbitrum")) is None
        assert agg.state("arbitrum") is PassState.IDLE
        assert rec.fetched == []

    def test_retry_after_candidates_arrive(self):
        rec = Recorder(candidates={}, data={"0xa": series([1], [1.0])})
        agg = make_aggregator(rec)

        async def scenario():
            first = await agg.get("arbitrum")
            rec.candidates["arbitrum"] = ["0xa"]
            second = await agg.get("arbitrum")
            return first, second

        first, second = asyncio.run(scenario())
        assert first is None
        assert [d.tvl_usd for d in second] == [1.0]

    def test_selector_switch_preserves_cache(self):
        """X stays cached while Y is fetched; X again does not refetch"""
        rec = Recorder(
            candidates={"x": ["0xa"], "y": ["0xb"]},
            data={"0xa": series([1], [10.0]), "0xb": series([1], [99.0])},
        )
        agg = make_aggregator(rec)

        async def scenario():
            x1 = await agg.get("x")
            y = await agg.get("y")
            x2 = await agg.get("x")
            return x1, y, x2

        x1, y, x2 = asyncio.run(scenario())
        assert x2 is x1
        assert x1[0].tvl_usd == 10.0
        assert y[0].tvl_usd == 99.0
        assert rec.fetched == [("x", "0xa"), ("y", "0xb")]
        assert rec.candidate_calls == ["x", "y"]

    def test_concurrent_gets_share_one_pass(self):
        """A pass in flight is joined, not restarted"""
        rec = Recorder(candidates={"x": ["0xa"]}, data={"0xa": series([1], [1.0])})
        agg = make_aggregator(rec)

        async def scenario():
            return await asyncio.gather(agg.get("x"), agg.get("x"), agg.get("x"))

        results = asyncio.run(scenario())
        assert results[0] is results[1] is results[2]
        assert rec.candidate_calls == ["x"]
        assert len(rec.fetched) == 1

    def test_invalidate_forces_refetch(self):
        rec = Recorder(candidates={"x": ["0xa"]}, data={"0xa": series([1], [1.0])})
        agg = make_aggregator(rec)

        async def scenario():
            await agg.get("x")
            assert agg.invalidate("x") is True
            await agg.get("x")

        asyncio.run(scenario())
        assert len(rec.fetched) == 2

    def test_candidate_source_exception(self):
        async def broken(selector):
            raise RuntimeError("subgraph down")

        rec = Recorder()
        agg = ProtocolChartAggregator(broken, rec.entity_fetcher)
        assert asyncio.run(agg.get("x")) is None
        assert agg.state("x") is PassState.IDLE


class TestOffsetHistory:
    """Test offset_history"""

    def test_merges_excluded_pools(self):
        rec = Recorder(data={"0xh1": series([1, 2], [3.0, 4.0]), "0xh2": series([2], [1.0])})
        agg = make_aggregator(rec, exclusions={"x": ["0xh1", "0xh2"]})
        merged = asyncio.run(agg.offset_history("x"))
        assert [(d.date, d.tvl_usd) for d in merged] == [(1, 3.0), (2, 5.0)]


class TestTvlOffset:
    """Test tvl_offset function"""

    def test_not_loaded(self):
        assert tvl_offset(["0xa"], None) is None

    def test_sum(self):
        snapshots = {"a": PoolSnapshot(address="a", tvl_usd=10.0), "b": PoolSnapshot(address="b", tvl_usd=5.0)}
        assert tvl_offset(["a", "b"], snapshots) == 15.0

    def test_mapping_snapshots(self):
        assert tvl_offset(["a", "b"], {"a": {"tvlUSD": 10}, "b": {"tvlUSD": 5}}) == 15.0

    def test_only_excluded_counted(self):
        snapshots = {"a": PoolSnapshot(address="a", tvl_usd=10.0), "c": PoolSnapshot(address="c", tvl_usd=50.0)}
        assert tvl_offset(["A"], snapshots) == 10.0

    def test_empty_mapping(self):
        assert tvl_offset(["a"], {}) == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
