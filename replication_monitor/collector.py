"""
Replication Monitor - Snapshot Collector.

============================================================
PURPOSE
============================================================
Polls every configured data source in parallel and builds
one Snapshot.

PRINCIPLES:
- collect() never fails as a whole
- One failing or stalled source degrades only its own status
- Every poll is bounded by a per-source deadline
- A failed liveness ping short-circuits that source

============================================================
ORDERING
============================================================
Statuses arrive in completion order (first to finish comes
first), NOT configuration order. Consumers that need a
stable order must sort by name (Snapshot.sorted_databases()).

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .aggregator import HealthAggregator, Thresholds
from .catalog import CatalogReader
from .config import SourceDescriptor
from .exceptions import QueryFailedError, SourceUnreachableError
from .models import Role, Snapshot, SourceStatus, utcnow


logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnapshotCollector:
    """
    Fan-out / fan-in snapshot builder.

    One task per source (no concurrency cap: the source list is small
    and operator-controlled). Results are drained from a queue sized
    to the source count until every task has reported.
    """

    def __init__(
        self,
        reader: CatalogReader,
        sources: Sequence[SourceDescriptor],
        thresholds: Thresholds,
        poll_timeout: float = 10.0,
    ):
        """
        Initialize collector.

        Args:
            reader: Catalog reader capability
            sources: Configured data sources
            thresholds: Health classification thresholds
            poll_timeout: Deadline in seconds for polling one source
        """
        if poll_timeout <= 0:
            raise ValueError("poll_timeout must be > 0")

        self._reader = reader
        self._sources = list(sources)
        self._aggregator = HealthAggregator(thresholds)
        self._poll_timeout = poll_timeout

    @property
    def sources(self) -> List[SourceDescriptor]:
        return list(self._sources)

    @property
    def poll_timeout(self) -> float:
        return self._poll_timeout

    # --------------------------------------------------------
    # COLLECTION
    # --------------------------------------------------------

    async def collect(self, sources: Optional[Sequence[SourceDescriptor]] = None) -> Snapshot:
        """
        Poll every source and return a summarized Snapshot.

        Args:
            sources: Override the configured sources for this call
        """
        targets = list(self._sources if sources is None else sources)
        started = utcnow()

        queue: asyncio.Queue = asyncio.Queue(maxsize=max(len(targets), 1))
        tasks = [
            asyncio.create_task(self._poll_into(queue, source), name=f"poll:{source.name}")
            for source in targets
        ]

        statuses: List[SourceStatus] = []
        try:
            for _ in range(len(tasks)):
                statuses.append(await queue.get())
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        summary = self._aggregator.summarize(statuses)
        return Snapshot(timestamp=started, databases=tuple(statuses), summary=summary)

    async def _poll_into(self, queue: asyncio.Queue, source: SourceDescriptor) -> None:
        """Poll one source and report exactly one status."""
        try:
            status = await asyncio.wait_for(self._poll_source(source), timeout=self._poll_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Polling {source.name} timed out after {self._poll_timeout}s")
            status = SourceStatus.disconnected(
                source.name, source.role, f"connection failed: timed out after {self._poll_timeout}s"
            )
        except SourceUnreachableError as e:
            logger.warning(f"Source {source.name} unreachable: {e.reason}")
            status = SourceStatus.disconnected(source.name, source.role, e.message)
        except Exception as e:
            logger.error(f"Unexpected error polling {source.name}: {e}")
            status = SourceStatus.disconnected(source.name, source.role, f"connection failed: {e}")

        await queue.put(status)

    async def _poll_source(self, source: SourceDescriptor) -> SourceStatus:
        """
        Collect one source's status.

        Raises:
            SourceUnreachableError: Connection or liveness ping failed
        """
        async with self._reader.acquire(source) as conn:
            try:
                await self._reader.ping(conn)
            except Exception as e:
                raise SourceUnreachableError(source.name, str(e)) from e

            status = SourceStatus.for_role(source.name, source.role)

            settings = await self._best_effort(
                source, "replication_settings", lambda: self._reader.replication_settings(conn), {}
            )
            status.wal_level = settings.get("wal_level", "")
            status.logical_replication = settings.get("rds.logical_replication", "")

            status.current_lsn = await self._best_effort(
                source, "current_lsn", lambda: self._reader.current_lsn(conn), ""
            )

            if source.role == Role.SOURCE:
                status.publications = await self._best_effort(
                    source, "publications", lambda: self._reader.publications(conn), []
                )
                status.replication_slots = await self._best_effort(
                    source, "replication_slots", lambda: self._reader.replication_slots(conn), []
                )
                status.replication_stats = await self._best_effort(
                    source, "replication_stats", lambda: self._reader.replication_stats(conn), []
                )
            else:
                status.subscriptions = await self._best_effort(
                    source, "subscriptions", lambda: self._reader.subscriptions(conn), []
                )
                status.subscription_stats = await self._best_effort(
                    source, "subscription_stats", lambda: self._reader.subscription_stats(conn), []
                )

            status.last_updated = utcnow()
            return status

    async def _best_effort(
        self,
        source: SourceDescriptor,
        query_name: str,
        query: Callable[[], Awaitable[T]],
        default: T,
    ) -> T:
        """Run one catalog query; on failure log it and return `default`."""
        try:
            return await query()
        except Exception as e:
            error = QueryFailedError(source.name, query_name, str(e))
            logger.warning(str(error))
            return default

    # --------------------------------------------------------
    # CONNECTIVITY
    # --------------------------------------------------------

    async def check_connectivity(self) -> Dict[str, bool]:
        """Ping every source in parallel; True where the ping succeeded."""
        results = await asyncio.gather(
            *(self._ping_source(source) for source in self._sources)
        )
        return {source.name: ok for source, ok in zip(self._sources, results)}

    async def _ping_source(self, source: SourceDescriptor) -> bool:
        async def ping() -> None:
            async with self._reader.acquire(source) as conn:
                await self._reader.ping(conn)

        try:
            await asyncio.wait_for(ping(), timeout=self._poll_timeout)
            return True
        except Exception as e:
            logger.debug(f"Connectivity check for {source.name} failed: {e}")
            return False
