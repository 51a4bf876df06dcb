"""
Replication Monitor - Catalog Reader.

============================================================
PURPOSE
============================================================
Reads replication metadata from PostgreSQL system catalogs
and returns typed structures.

- CatalogReader: capability interface used by the collector
- PostgresCatalogReader: SQLAlchemy/asyncpg implementation

All reads are READ-ONLY. Each poll acquires one connection
and runs every query for that source on it.

============================================================
"""

import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from .config import SourceDescriptor
from .connections import SourceConnectionRegistry
from .exceptions import SourceUnreachableError
from .models import (
    Publication,
    ReplicationSlot,
    ReplicationStat,
    Subscription,
    SubscriptionStat,
)


logger = logging.getLogger(__name__)


# ============================================================
# CONNINFO MASKING
# ============================================================

_CONNINFO_PASSWORD = re.compile(r"(password\s*=\s*)('(?:[^'\\]|\\.)*'|\S+)", re.IGNORECASE)
_URI_PASSWORD = re.compile(r"(postgres(?:ql)?://[^:/@\s]+:)([^@\s]+)(@)", re.IGNORECASE)


def mask_conninfo(conninfo: Optional[str]) -> str:
    """
    Mask the password in a libpq connection string or URI.

    >>> mask_conninfo("host=db user=rep password=s3cret dbname=app")
    'host=db user=rep password=*** dbname=app'
    """
    if not conninfo:
        return ""
    masked = _CONNINFO_PASSWORD.sub(lambda m: f"{m.group(1)}***", conninfo)
    return _URI_PASSWORD.sub(lambda m: f"{m.group(1)}***{m.group(3)}", masked)


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    return int(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


# ============================================================
# CAPABILITY INTERFACE
# ============================================================

class CatalogReader(ABC):
    """
    Capability the snapshot collector polls.

    `acquire()` yields a connection owned by one poll; every other
    method runs one catalog query on that connection and raises
    on failure. Callers decide what a failure means.
    """

    @abstractmethod
    def acquire(self, source: SourceDescriptor) -> Any:
        """Async context manager yielding a connection for `source`."""

    @abstractmethod
    async def ping(self, conn: Any) -> None:
        """Liveness check."""

    @abstractmethod
    async def replication_settings(self, conn: Any) -> Dict[str, str]:
        """`wal_level` and `rds.logical_replication` settings."""

    @abstractmethod
    async def current_lsn(self, conn: Any) -> str:
        """Current WAL position."""

    @abstractmethod
    async def publications(self, conn: Any) -> List[Publication]:
        pass

    @abstractmethod
    async def replication_slots(self, conn: Any) -> List[ReplicationSlot]:
        pass

    @abstractmethod
    async def replication_stats(self, conn: Any) -> List[ReplicationStat]:
        pass

    @abstractmethod
    async def subscriptions(self, conn: Any) -> List[Subscription]:
        pass

    @abstractmethod
    async def subscription_stats(self, conn: Any) -> List[SubscriptionStat]:
        pass


# ============================================================
# QUERIES
# ============================================================

SETTINGS_SQL = text("""
    SELECT name, setting
    FROM pg_settings
    WHERE name IN ('wal_level', 'rds.logical_replication')
""")

CURRENT_LSN_SQL = text("SELECT pg_current_wal_lsn()::text AS lsn")

PUBLICATIONS_SQL = text("""
    SELECT
        p.pubname,
        r.rolname AS pubowner,
        p.puballtables,
        p.pubinsert,
        p.pubupdate,
        p.pubdelete,
        p.pubtruncate
    FROM pg_publication p
    JOIN pg_roles r ON p.pubowner = r.oid
    ORDER BY p.pubname
""")

PUBLICATION_TABLES_SQL = text("""
    SELECT pubname, schemaname || '.' || tablename AS table_name
    FROM pg_publication_tables
    ORDER BY pubname, schemaname, tablename
""")

REPLICATION_SLOTS_SQL = text("""
    SELECT
        slot_name,
        plugin,
        slot_type,
        database,
        active,
        COALESCE(restart_lsn::text, '') AS restart_lsn,
        COALESCE(confirmed_flush_lsn::text, '') AS confirmed_flush_lsn,
        COALESCE(wal_status, '') AS wal_status,
        safe_wal_size
    FROM pg_replication_slots
    WHERE slot_type = 'logical'
    ORDER BY slot_name
""")

REPLICATION_STATS_SQL = text("""
    SELECT
        slot_name,
        pg_current_wal_lsn()::text AS current_wal_lsn,
        COALESCE(confirmed_flush_lsn::text, '0/0') AS confirmed_flush_lsn,
        COALESCE(pg_wal_lsn_diff(pg_current_wal_lsn(), confirmed_flush_lsn), 0)::bigint AS lsn_distance,
        active,
        EXTRACT(EPOCH FROM (now() - pg_last_xact_replay_timestamp()))::float8 AS replication_lag_sec
    FROM pg_replication_slots
    WHERE slot_type = 'logical'
    ORDER BY slot_name
""")

SUBSCRIPTIONS_SQL = text("""
    SELECT
        s.subname,
        r.rolname AS subowner,
        s.subenabled,
        array_to_string(s.subpublications, ',') AS publication,
        s.subconninfo,
        COALESCE(s.subslotname::text, '') AS subslotname,
        s.subsynccommit
    FROM pg_subscription s
    JOIN pg_roles r ON s.subowner = r.oid
    ORDER BY s.subname
""")

SUBSCRIPTION_STATS_SQL = text("""
    SELECT
        s.subname,
        COALESCE(ss.received_lsn::text, '0/0') AS received_lsn,
        ss.last_msg_send_time,
        ss.last_msg_receipt_time,
        COALESCE(ss.latest_end_lsn::text, '0/0') AS latest_end_lsn,
        ss.latest_end_time,
        COALESCE(pg_wal_lsn_diff(ss.received_lsn, ss.latest_end_lsn), 0)::bigint AS lsn_distance,
        EXTRACT(EPOCH FROM (now() - ss.latest_end_time))::float8 AS replication_lag_sec
    FROM pg_subscription s
    LEFT JOIN pg_stat_subscription ss ON s.oid = ss.subid AND ss.relid IS NULL
    ORDER BY s.subname
""")


# ============================================================
# POSTGRES IMPLEMENTATION
# ============================================================

class PostgresCatalogReader(CatalogReader):
    """Catalog reader backed by a SourceConnectionRegistry."""

    def __init__(self, registry: SourceConnectionRegistry, mask_secrets: bool = True):
        """
        Initialize reader.

        Args:
            registry: Owner of the per-source engines
            mask_secrets: Mask passwords in subscription conninfo
        """
        self._registry = registry
        self._mask_secrets = mask_secrets

    @asynccontextmanager
    async def acquire(self, source: SourceDescriptor) -> AsyncIterator[AsyncConnection]:
        engine = self._registry.engine(source.name)
        try:
            conn = await engine.connect()
        except Exception as e:
            logger.debug(f"Connect to {source.name} failed: {e}")
            raise SourceUnreachableError(source.name, str(e)) from e

        try:
            yield conn
        finally:
            await conn.close()

    async def ping(self, conn: AsyncConnection) -> None:
        await conn.execute(text("SELECT 1"))

    async def replication_settings(self, conn: AsyncConnection) -> Dict[str, str]:
        result = await conn.execute(SETTINGS_SQL)
        return {row.name: row.setting for row in result}

    async def current_lsn(self, conn: AsyncConnection) -> str:
        result = await conn.execute(CURRENT_LSN_SQL)
        return result.scalar_one() or ""

    async def publications(self, conn: AsyncConnection) -> List[Publication]:
        result = await conn.execute(PUBLICATIONS_SQL)
        publications = [
            Publication(
                pub_name=row.pubname,
                pub_owner=row.pubowner,
                all_tables=row.puballtables,
                pub_insert=row.pubinsert,
                pub_update=row.pubupdate,
                pub_delete=row.pubdelete,
                pub_truncate=row.pubtruncate,
            )
            for row in result
        ]

        by_name = {pub.pub_name: pub for pub in publications}
        tables = await conn.execute(PUBLICATION_TABLES_SQL)
        for row in tables:
            pub = by_name.get(row.pubname)
            if pub is not None:
                pub.tables.append(row.table_name)

        return publications

    async def replication_slots(self, conn: AsyncConnection) -> List[ReplicationSlot]:
        result = await conn.execute(REPLICATION_SLOTS_SQL)
        return [
            ReplicationSlot(
                slot_name=row.slot_name,
                plugin=row.plugin or "",
                slot_type=row.slot_type,
                database=row.database or "",
                active=bool(row.active),
                restart_lsn=row.restart_lsn,
                confirmed_flush_lsn=row.confirmed_flush_lsn,
                wal_status=row.wal_status,
                safe_wal_size=int(row.safe_wal_size) if row.safe_wal_size is not None else None,
            )
            for row in result
        ]

    async def replication_stats(self, conn: AsyncConnection) -> List[ReplicationStat]:
        result = await conn.execute(REPLICATION_STATS_SQL)
        return [
            ReplicationStat(
                slot_name=row.slot_name,
                current_wal_lsn=row.current_wal_lsn,
                confirmed_flush_lsn=row.confirmed_flush_lsn,
                lsn_distance_bytes=_as_int(row.lsn_distance),
                active=bool(row.active),
                replication_lag_sec=_as_float(row.replication_lag_sec),
            )
            for row in result
        ]

    async def subscriptions(self, conn: AsyncConnection) -> List[Subscription]:
        result = await conn.execute(SUBSCRIPTIONS_SQL)
        subscriptions = []
        for row in result:
            conn_info = row.subconninfo or ""
            if self._mask_secrets:
                conn_info = mask_conninfo(conn_info)
            subscriptions.append(Subscription(
                sub_name=row.subname,
                sub_owner=row.subowner,
                enabled=bool(row.subenabled),
                publication=row.publication or "",
                conn_info=conn_info,
                slot_name=row.subslotname,
                sync_commit=row.subsynccommit or "",
            ))
        return subscriptions

    async def subscription_stats(self, conn: AsyncConnection) -> List[SubscriptionStat]:
        result = await conn.execute(SUBSCRIPTION_STATS_SQL)
        return [
            SubscriptionStat(
                sub_name=row.subname,
                received_lsn=row.received_lsn,
                last_msg_send_time=row.last_msg_send_time,
                last_msg_receipt_time=row.last_msg_receipt_time,
                latest_end_lsn=row.latest_end_lsn,
                latest_end_time=row.latest_end_time,
                lsn_distance_bytes=max(_as_int(row.lsn_distance), 0),
                replication_lag_sec=_as_float(row.replication_lag_sec),
            )
            for row in result
        ]
