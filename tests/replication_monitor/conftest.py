"""
Shared fixtures for replication monitor tests.

A FakeCatalogReader stands in for PostgreSQL: connections are the
source names, and each catalog query answers from in-memory data.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from replication_monitor.catalog import CatalogReader
from replication_monitor.config import SourceDescriptor
from replication_monitor.exceptions import SourceUnreachableError
from replication_monitor.models import (
    Publication,
    ReplicationSlot,
    ReplicationStat,
    Role,
    Snapshot,
    SourceStatus,
    Subscription,
    SubscriptionStat,
    Summary,
    utcnow,
)


# ============================================================
# FAKES
# ============================================================

class FakeCatalogReader(CatalogReader):
    """In-memory catalog keyed by source name."""

    def __init__(
        self,
        unreachable: tuple = (),
        ping_failures: tuple = (),
        stalled: tuple = (),
        failing_queries: Optional[Dict[str, List[str]]] = None,
    ):
        self.unreachable = set(unreachable)
        self.ping_failures = set(ping_failures)
        self.stalled = set(stalled)
        self.failing_queries = failing_queries or {}

        self.publications_by_source: Dict[str, List[Publication]] = {}
        self.slots_by_source: Dict[str, List[ReplicationSlot]] = {}
        self.stats_by_source: Dict[str, List[ReplicationStat]] = {}
        self.subscriptions_by_source: Dict[str, List[Subscription]] = {}
        self.subscription_stats_by_source: Dict[str, List[SubscriptionStat]] = {}

        self.calls: List[tuple] = []
        self.active_polls: Dict[str, int] = {}
        self.max_concurrent_polls: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, source: SourceDescriptor):
        if source.name in self.unreachable:
            raise SourceUnreachableError(source.name, "connection refused")
        if source.name in self.stalled:
            await asyncio.sleep(3600)

        self.active_polls[source.name] = self.active_polls.get(source.name, 0) + 1
        self.max_concurrent_polls[source.name] = max(
            self.max_concurrent_polls.get(source.name, 0),
            self.active_polls[source.name],
        )
        try:
            yield source.name
        finally:
            self.active_polls[source.name] -= 1

    def _record(self, conn: str, query: str) -> None:
        self.calls.append((conn, query))
        if query in self.failing_queries.get(conn, []):
            raise RuntimeError(f"relation for {query} does not exist")

    async def ping(self, conn: str) -> None:
        self._record(conn, "ping")
        if conn in self.ping_failures:
            raise ConnectionError("server closed the connection unexpectedly")

    async def replication_settings(self, conn: str) -> Dict[str, str]:
        self._record(conn, "replication_settings")
        return {"wal_level": "logical", "rds.logical_replication": "on"}

    async def current_lsn(self, conn: str) -> str:
        self._record(conn, "current_lsn")
        return "0/3000148"

    async def publications(self, conn: str) -> List[Publication]:
        self._record(conn, "publications")
        return list(self.publications_by_source.get(conn, []))

    async def replication_slots(self, conn: str) -> List[ReplicationSlot]:
        self._record(conn, "replication_slots")
        return list(self.slots_by_source.get(conn, []))

    async def replication_stats(self, conn: str) -> List[ReplicationStat]:
        self._record(conn, "replication_stats")
        return list(self.stats_by_source.get(conn, []))

    async def subscriptions(self, conn: str) -> List[Subscription]:
        self._record(conn, "subscriptions")
        return list(self.subscriptions_by_source.get(conn, []))

    async def subscription_stats(self, conn: str) -> List[SubscriptionStat]:
        self._record(conn, "subscription_stats")
        return list(self.subscription_stats_by_source.get(conn, []))

    def queries_for(self, name: str) -> List[str]:
        return [query for conn, query in self.calls if conn == name]


def make_transport(fail_after: Optional[int] = None, delay: float = 0.0) -> AsyncMock:
    """
    Websocket-like transport.

    fail_after: number of successful sends before every send fails
    delay: seconds each send takes
    """
    transport = AsyncMock()
    sent: List[str] = []

    async def send_str(payload: str) -> None:
        if fail_after is not None and len(sent) >= fail_after:
            raise ConnectionResetError("Cannot write to closing transport")
        if delay:
            await asyncio.sleep(delay)
        sent.append(payload)

    transport.send_str = AsyncMock(side_effect=send_str)
    transport.close = AsyncMock()
    transport.sent = sent
    return transport


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def source_descriptor():
    return SourceDescriptor(name="src1", role=Role.SOURCE, host="db-src", password="s3cret")


@pytest.fixture
def target_descriptor():
    return SourceDescriptor(name="tgt1", role=Role.TARGET, host="db-tgt", password="s3cret")


@pytest.fixture
def sample_slot():
    return ReplicationSlot(
        slot_name="orders_slot",
        plugin="pgoutput",
        slot_type="logical",
        database="app",
        active=True,
        restart_lsn="0/3000000",
        confirmed_flush_lsn="0/3000100",
        wal_status="reserved",
    )


@pytest.fixture
def sample_stat():
    return ReplicationStat(
        slot_name="orders_slot",
        current_wal_lsn="0/3000148",
        confirmed_flush_lsn="0/3000100",
        lsn_distance_bytes=72,
        active=True,
    )


@pytest.fixture
def fake_reader(sample_slot, sample_stat):
    reader = FakeCatalogReader()
    reader.publications_by_source["src1"] = [
        Publication(pub_name="orders_pub", pub_owner="postgres", pub_insert=True, tables=["public.orders"]),
    ]
    reader.slots_by_source["src1"] = [sample_slot]
    reader.stats_by_source["src1"] = [sample_stat]
    reader.subscriptions_by_source["tgt1"] = [
        Subscription(
            sub_name="orders_sub",
            sub_owner="postgres",
            enabled=True,
            publication="orders_pub",
            conn_info="host=db-src dbname=app password=***",
            slot_name="orders_slot",
            sync_commit="off",
        ),
    ]
    reader.subscription_stats_by_source["tgt1"] = [SubscriptionStat(sub_name="orders_sub")]
    return reader


def make_snapshot(
    *statuses: SourceStatus,
    summary: Optional[Summary] = None,
    timestamp: Optional[datetime] = None,
) -> Snapshot:
    """Snapshot built directly from statuses."""
    return Snapshot(
        timestamp=timestamp or utcnow(),
        databases=tuple(statuses),
        summary=summary or Summary(),
    )


@pytest.fixture
def snapshot():
    return make_snapshot(SourceStatus.for_role("src1", Role.SOURCE))
