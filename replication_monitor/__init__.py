"""
Replication Monitor Package.

============================================================
PURPOSE
============================================================
Strictly observational monitor for PostgreSQL logical
replication across independently reachable databases.

PRINCIPLES:
1. READ-ONLY - Never replicates, never repairs
2. POINT-IN-TIME - Every snapshot is rebuilt from scratch
3. ISOLATED FAILURES - One bad source or subscriber never
   degrades service to the others

============================================================
COMPONENTS
============================================================
- SnapshotCollector: parallel per-source polling
- summarize / HealthAggregator: summary and health state
- BroadcastHub: live fan-out to subscribers
- CatalogReader: catalog query capability

============================================================
"""

from .models import (
    # Enums
    Role,
    HealthState,
    SubscriberState,

    # Catalog entries
    ReplicationSlot,
    Publication,
    Subscription,
    ReplicationStat,
    SubscriptionStat,

    # Snapshot
    SourceStatus,
    Summary,
    Snapshot,
)

from .exceptions import (
    ReplicationMonitorError,
    SourceUnreachableError,
    QueryFailedError,
    SubscriberWriteError,
    RegistrationError,
    ConfigurationError,
)

from .aggregator import Thresholds, HealthAggregator, summarize
from .config import (
    SourceDescriptor,
    ServerConfig,
    MonitoringConfig,
    MonitorConfig,
    load_config,
)
from .catalog import CatalogReader, PostgresCatalogReader, mask_conninfo
from .connections import SourceConnectionRegistry
from .collector import SnapshotCollector
from .broadcast import AsyncRWLock, Subscriber, BroadcastHub
from .api import MonitorAPI, create_app


__all__ = [
    # Models
    "Role",
    "HealthState",
    "SubscriberState",
    "ReplicationSlot",
    "Publication",
    "Subscription",
    "ReplicationStat",
    "SubscriptionStat",
    "SourceStatus",
    "Summary",
    "Snapshot",

    # Exceptions
    "ReplicationMonitorError",
    "SourceUnreachableError",
    "QueryFailedError",
    "SubscriberWriteError",
    "RegistrationError",
    "ConfigurationError",

    # Aggregation
    "Thresholds",
    "HealthAggregator",
    "summarize",

    # Configuration
    "SourceDescriptor",
    "ServerConfig",
    "MonitoringConfig",
    "MonitorConfig",
    "load_config",

    # Collection
    "CatalogReader",
    "PostgresCatalogReader",
    "mask_conninfo",
    "SourceConnectionRegistry",
    "SnapshotCollector",

    # Distribution
    "AsyncRWLock",
    "Subscriber",
    "BroadcastHub",
    "MonitorAPI",
    "create_app",
]

__version__ = "1.0.0"
