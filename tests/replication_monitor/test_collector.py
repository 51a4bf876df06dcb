"""
Tests for the snapshot collector.

- One status per source, whatever happens to each
- Deadline bounds a stalled source
- Failed liveness short-circuits; failed queries are best-effort
- Role-conditional payloads
"""

import asyncio

import pytest

from replication_monitor.aggregator import Thresholds
from replication_monitor.collector import SnapshotCollector
from replication_monitor.config import SourceDescriptor
from replication_monitor.models import HealthState, Role

from conftest import FakeCatalogReader


THRESHOLDS = Thresholds(lag_bytes_threshold=1024)


def make_collector(reader, sources, poll_timeout: float = 1.0) -> SnapshotCollector:
    return SnapshotCollector(reader, sources, THRESHOLDS, poll_timeout=poll_timeout)


class TestCollect:
    """Fan-out / fan-in behaviour."""

    @pytest.mark.asyncio
    async def test_collects_every_source(self, fake_reader, source_descriptor, target_descriptor):
        collector = make_collector(fake_reader, [source_descriptor, target_descriptor])

        snapshot = await collector.collect()

        assert len(snapshot.databases) == 2
        assert {s.name for s in snapshot.databases} == {"src1", "tgt1"}
        assert snapshot.summary.health_status == HealthState.HEALTHY
        assert snapshot.summary.total_slots == 1
        assert snapshot.summary.total_subscriptions == 1

    @pytest.mark.asyncio
    async def test_source_role_gets_source_payloads_only(self, fake_reader, source_descriptor):
        snapshot = await make_collector(fake_reader, [source_descriptor]).collect()
        status = snapshot.status("src1")

        assert status.connected is True
        assert status.wal_level == "logical"
        assert status.logical_replication == "on"
        assert status.current_lsn == "0/3000148"
        assert len(status.publications) == 1
        assert len(status.replication_slots) == 1
        assert len(status.replication_stats) == 1
        assert status.subscriptions is None
        assert status.subscription_stats is None
        assert "subscriptions" not in fake_reader.queries_for("src1")

    @pytest.mark.asyncio
    async def test_target_role_gets_target_payloads_only(self, fake_reader, target_descriptor):
        snapshot = await make_collector(fake_reader, [target_descriptor]).collect()
        status = snapshot.status("tgt1")

        assert status.connected is True
        assert len(status.subscriptions) == 1
        assert len(status.subscription_stats) == 1
        assert status.publications is None
        assert status.replication_slots is None
        assert status.replication_stats is None

    @pytest.mark.asyncio
    async def test_source_with_no_publications_is_legal(self, source_descriptor):
        snapshot = await make_collector(FakeCatalogReader(), [source_descriptor]).collect()
        status = snapshot.status("src1")

        assert status.connected is True
        assert status.publications == []
        assert status.replication_slots == []
        assert snapshot.summary.health_status == HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_unreachable_target_makes_snapshot_critical(
        self, source_descriptor, target_descriptor, sample_slot, sample_stat
    ):
        reader = FakeCatalogReader(unreachable=("tgt1",))
        reader.slots_by_source["src1"] = [sample_slot]
        reader.stats_by_source["src1"] = [sample_stat]

        snapshot = await make_collector(reader, [source_descriptor, target_descriptor]).collect()

        tgt = snapshot.status("tgt1")
        assert tgt.connected is False
        assert "connection refused" in tgt.error
        assert tgt.subscriptions is None
        assert snapshot.status("src1").connected is True
        assert snapshot.summary.health_status == HealthState.CRITICAL
        assert len(snapshot.summary.issues) == 1
        assert "tgt1" in snapshot.summary.issues[0]

    @pytest.mark.asyncio
    async def test_failed_ping_short_circuits(self, source_descriptor):
        reader = FakeCatalogReader(ping_failures=("src1",))

        snapshot = await make_collector(reader, [source_descriptor]).collect()
        status = snapshot.status("src1")

        assert status.connected is False
        assert status.error.startswith("connection failed:")
        assert reader.queries_for("src1") == ["ping"]
        assert status.publications is None

    @pytest.mark.asyncio
    async def test_failed_query_leaves_payload_empty(self, fake_reader, source_descriptor):
        fake_reader.failing_queries = {"src1": ["publications"]}

        snapshot = await make_collector(fake_reader, [source_descriptor]).collect()
        status = snapshot.status("src1")

        assert status.connected is True
        assert status.error is None
        assert status.publications == []
        assert len(status.replication_slots) == 1
        assert snapshot.summary.health_status == HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_stalled_source_is_bounded_by_deadline(self, fake_reader, source_descriptor, target_descriptor):
        stalled = SourceDescriptor(name="slow", role=Role.SOURCE)
        fake_reader.stalled = {"slow"}
        collector = make_collector(fake_reader, [source_descriptor, stalled, target_descriptor], poll_timeout=0.2)

        loop = asyncio.get_running_loop()
        started = loop.time()
        snapshot = await collector.collect()
        elapsed = loop.time() - started

        assert elapsed < 0.2 + 0.5
        assert len(snapshot.databases) == 3
        slow = snapshot.status("slow")
        assert slow.connected is False
        assert "timed out" in slow.error
        assert snapshot.status("src1").connected is True
        assert snapshot.summary.health_status == HealthState.CRITICAL

    @pytest.mark.asyncio
    async def test_results_arrive_in_completion_order(self, source_descriptor):
        class SlowFirstReader(FakeCatalogReader):
            async def ping(self, conn):
                if conn == "a":
                    await asyncio.sleep(0.1)
                await super().ping(conn)

        sources = [
            SourceDescriptor(name="a", role=Role.SOURCE),
            SourceDescriptor(name="b", role=Role.SOURCE),
        ]

        snapshot = await make_collector(SlowFirstReader(), sources).collect()

        assert [s.name for s in snapshot.databases] == ["b", "a"]
        assert [s.name for s in snapshot.sorted_databases()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_no_concurrent_polls_of_one_source(self, fake_reader, source_descriptor, target_descriptor):
        await make_collector(fake_reader, [source_descriptor, target_descriptor]).collect()

        assert fake_reader.max_concurrent_polls == {"src1": 1, "tgt1": 1}

    @pytest.mark.asyncio
    async def test_sources_override(self, fake_reader, source_descriptor, target_descriptor):
        collector = make_collector(fake_reader, [source_descriptor, target_descriptor])

        snapshot = await collector.collect([target_descriptor])

        assert [s.name for s in snapshot.databases] == ["tgt1"]

    @pytest.mark.asyncio
    async def test_empty_source_list(self):
        snapshot = await make_collector(FakeCatalogReader(), []).collect()

        assert snapshot.databases == ()
        assert snapshot.summary.health_status == HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_snapshot_timestamp_is_cycle_start(self, fake_reader, source_descriptor):
        snapshot = await make_collector(fake_reader, [source_descriptor]).collect()

        assert snapshot.timestamp <= snapshot.status("src1").last_updated


class TestConnectivity:

    @pytest.mark.asyncio
    async def test_check_connectivity(self, source_descriptor, target_descriptor):
        reader = FakeCatalogReader(unreachable=("tgt1",))
        collector = make_collector(reader, [source_descriptor, target_descriptor])

        result = await collector.check_connectivity()

        assert result == {"src1": True, "tgt1": False}

    def test_poll_timeout_must_be_positive(self, source_descriptor):
        with pytest.raises(ValueError):
            make_collector(FakeCatalogReader(), [source_descriptor], poll_timeout=0)
