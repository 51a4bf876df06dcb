"""
Replication Monitor - Source Connection Registry.

============================================================
RESPONSIBILITY
============================================================
Owns one SQLAlchemy AsyncEngine per configured data source.

LIFECYCLE:
    open()  -> engines created (lazy connect, no startup ping)
    serve   -> engine(name) handed to the catalog reader
    close() -> all pools disposed

An unreachable source does not fail startup; it is reported
as disconnected on every cycle until it comes back.

============================================================
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import SourceDescriptor
from .exceptions import SourceUnreachableError


logger = logging.getLogger(__name__)


class SourceConnectionRegistry:
    """
    Explicitly owned map of source name -> engine.

    Usage:
        async with SourceConnectionRegistry(config.databases) as registry:
            reader = PostgresCatalogReader(registry)
            ...
    """

    def __init__(
        self,
        sources: Iterable[SourceDescriptor],
        pool_size: int = 2,
        max_overflow: int = 2,
        pool_recycle: int = 300,
    ):
        """
        Initialize registry.

        Args:
            sources: Configured data sources
            pool_size: Connections kept per source
            max_overflow: Extra connections allowed per source
            pool_recycle: Recycle connections after N seconds
        """
        self._sources: Dict[str, SourceDescriptor] = {s.name: s for s in sources}
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_recycle = pool_recycle
        self._engines: Dict[str, AsyncEngine] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def names(self) -> List[str]:
        return list(self._sources)

    def open(self) -> None:
        """Create an engine per source. Idempotent."""
        if self._open:
            return

        for name, source in self._sources.items():
            self._engines[name] = create_async_engine(
                source.url(),
                connect_args=source.connect_args(),
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_recycle=self._pool_recycle,
                isolation_level="AUTOCOMMIT",
            )
            logger.info(f"Engine created for {name} ({source.role.value}) at {source.host}:{source.port}")

        self._open = True

    def engine(self, name: str) -> AsyncEngine:
        """
        Get the engine for a source.

        Raises:
            SourceUnreachableError: Unknown source or registry closed
        """
        engine: Optional[AsyncEngine] = self._engines.get(name) if self._open else None
        if engine is None:
            raise SourceUnreachableError(name, "database connection not found")
        return engine

    async def close(self) -> None:
        """Dispose every pool."""
        if not self._open:
            return

        self._open = False
        engines, self._engines = self._engines, {}
        for name, engine in engines.items():
            try:
                await engine.dispose()
            except Exception as e:
                logger.warning(f"Error disposing engine for {name}: {e}")

        logger.info(f"Closed {len(engines)} source connection pool(s)")

    async def __aenter__(self) -> "SourceConnectionRegistry":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
