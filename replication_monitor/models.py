"""
Replication Monitor - Data Models.

============================================================
PURPOSE
============================================================
Point-in-time view of logical replication across a set of
PostgreSQL endpoints.

PRINCIPLES:
1. REBUILT EVERY CYCLE - No identity or history across snapshots
2. IMMUTABLE SNAPSHOTS - A Snapshot is never mutated once built
3. ROLE-CONDITIONAL - A status carries source OR target payloads
4. OPTIONAL MEANS OPTIONAL - Unknown lag is None, never zero

============================================================
WIRE FORMAT
============================================================
`to_dict()` renders the JSON contract consumed by existing
dashboards: snake_case keys, LSNs as opaque strings,
ISO-8601 timestamps, empty payloads omitted.

============================================================
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================================
# ENUMS
# ============================================================

class Role(Enum):
    """Declared replication role of a data source."""

    SOURCE = "source"
    TARGET = "target"


class HealthState(Enum):
    """
    Global health classification.

    Ordered by severity; a pass never moves to a lower rank.
    """

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _HEALTH_RANK[self]

    def escalate(self, other: "HealthState") -> "HealthState":
        """Return the more severe of the two states."""
        return other if other.rank > self.rank else self


_HEALTH_RANK = {
    HealthState.HEALTHY: 0,
    HealthState.WARNING: 1,
    HealthState.CRITICAL: 2,
}


class SubscriberState(Enum):
    """Lifecycle of a live snapshot subscriber."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"        # Terminal


# ============================================================
# SOURCE-SIDE CATALOG ENTRIES
# ============================================================

@dataclass
class ReplicationSlot:
    """A logical replication slot on a source database."""

    slot_name: str
    plugin: str
    slot_type: str
    database: str
    active: bool
    restart_lsn: str = ""
    confirmed_flush_lsn: str = ""
    wal_status: str = ""
    safe_wal_size: Optional[int] = None
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_name": self.slot_name,
            "plugin": self.plugin,
            "slot_type": self.slot_type,
            "database": self.database,
            "active": self.active,
            "restart_lsn": self.restart_lsn,
            "confirmed_flush_lsn": self.confirmed_flush_lsn,
            "wal_status": self.wal_status,
            "safe_wal_size": self.safe_wal_size,
            "last_updated": _iso(self.last_updated),
        }


@dataclass
class Publication:
    """A publication declared on a source database."""

    pub_name: str
    pub_owner: str
    all_tables: bool = False
    pub_insert: bool = False
    pub_update: bool = False
    pub_delete: bool = False
    pub_truncate: bool = False
    tables: List[str] = field(default_factory=list)

    @property
    def table_count(self) -> int:
        return len(self.tables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pub_name": self.pub_name,
            "pub_owner": self.pub_owner,
            "all_tables": self.all_tables,
            "pub_insert": self.pub_insert,
            "pub_update": self.pub_update,
            "pub_delete": self.pub_delete,
            "pub_truncate": self.pub_truncate,
            "table_count": self.table_count,
            "tables": list(self.tables),
        }


@dataclass
class ReplicationStat:
    """
    Lag metrics for one slot.

    `replication_lag_sec` is None when the server cannot measure it
    (e.g. a primary with no replay timestamp).
    """

    slot_name: str
    current_wal_lsn: str
    confirmed_flush_lsn: str
    lsn_distance_bytes: int
    active: bool
    replication_lag_sec: Optional[float] = None
    last_updated: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.lsn_distance_bytes < 0:
            self.lsn_distance_bytes = 0

    @property
    def lsn_distance(self) -> int:
        return self.lsn_distance_bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_name": self.slot_name,
            "current_wal_lsn": self.current_wal_lsn,
            "confirmed_flush_lsn": self.confirmed_flush_lsn,
            "lsn_distance": self.lsn_distance,
            "lsn_distance_bytes": self.lsn_distance_bytes,
            "replication_lag_sec": self.replication_lag_sec,
            "active": self.active,
            "last_updated": _iso(self.last_updated),
        }


# ============================================================
# TARGET-SIDE CATALOG ENTRIES
# ============================================================

@dataclass
class Subscription:
    """A subscription declared on a target database."""

    sub_name: str
    sub_owner: str
    enabled: bool
    publication: str
    conn_info: str
    slot_name: str = ""
    sync_commit: str = ""
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_name": self.sub_name,
            "sub_owner": self.sub_owner,
            "enabled": self.enabled,
            "publication": self.publication,
            "conn_info": self.conn_info,
            "slot_name": self.slot_name,
            "sync_commit": self.sync_commit,
            "last_updated": _iso(self.last_updated),
        }


@dataclass
class SubscriptionStat:
    """Apply-worker progress for one subscription."""

    sub_name: str
    received_lsn: str = "0/0"
    latest_end_lsn: str = "0/0"
    last_msg_send_time: Optional[datetime] = None
    last_msg_receipt_time: Optional[datetime] = None
    latest_end_time: Optional[datetime] = None
    lsn_distance_bytes: int = 0
    replication_lag_sec: Optional[float] = None
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_name": self.sub_name,
            "received_lsn": self.received_lsn,
            "last_msg_send_time": _iso(self.last_msg_send_time),
            "last_msg_receipt_time": _iso(self.last_msg_receipt_time),
            "latest_end_lsn": self.latest_end_lsn,
            "latest_end_time": _iso(self.latest_end_time),
            "lsn_distance_bytes": self.lsn_distance_bytes,
            "replication_lag_sec": self.replication_lag_sec,
            "last_updated": _iso(self.last_updated),
        }


# ============================================================
# PER-SOURCE STATUS
# ============================================================

@dataclass
class SourceStatus:
    """
    Status of one configured data source for one cycle.

    Source-role payloads (publications, replication_slots,
    replication_stats) and target-role payloads (subscriptions,
    subscription_stats) are mutually exclusive. A connected status
    carries lists for its role only; a disconnected one carries none.
    """

    name: str
    role: Role
    connected: bool = False
    error: Optional[str] = None
    wal_level: str = ""
    logical_replication: str = ""
    current_lsn: str = ""
    last_updated: datetime = field(default_factory=utcnow)

    # Source role
    publications: Optional[List[Publication]] = None
    replication_slots: Optional[List[ReplicationSlot]] = None
    replication_stats: Optional[List[ReplicationStat]] = None

    # Target role
    subscriptions: Optional[List[Subscription]] = None
    subscription_stats: Optional[List[SubscriptionStat]] = None

    @classmethod
    def for_role(cls, name: str, role: Role) -> "SourceStatus":
        """Connected status with empty payload lists for the declared role."""
        status = cls(name=name, role=role, connected=True)
        if role == Role.SOURCE:
            status.publications = []
            status.replication_slots = []
            status.replication_stats = []
        else:
            status.subscriptions = []
            status.subscription_stats = []
        return status

    @classmethod
    def disconnected(cls, name: str, role: Role, error: str) -> "SourceStatus":
        """Failure status: not connected, error set, no role payloads."""
        return cls(name=name, role=role, connected=False, error=error)

    def slots(self) -> List[ReplicationSlot]:
        return self.replication_slots or []

    def stats(self) -> List[ReplicationStat]:
        return self.replication_stats or []

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "role": self.role.value,
            "connected": self.connected,
            "wal_level": self.wal_level,
            "logical_replication": self.logical_replication,
            "current_lsn": self.current_lsn,
        }

        payloads = (
            ("publications", self.publications),
            ("subscriptions", self.subscriptions),
            ("replication_slots", self.replication_slots),
            ("replication_stats", self.replication_stats),
            ("subscription_stats", self.subscription_stats),
        )
        for key, items in payloads:
            if items:
                data[key] = [item.to_dict() for item in items]

        data["last_updated"] = _iso(self.last_updated)
        if self.error:
            data["error"] = self.error
        return data


# ============================================================
# SUMMARY & SNAPSHOT
# ============================================================

@dataclass(frozen=True)
class Summary:
    """Derived overview of every status in a snapshot."""

    total_publications: int = 0
    total_subscriptions: int = 0
    total_slots: int = 0
    active_slots: int = 0
    max_lag_bytes: int = 0
    max_lag_seconds: float = 0.0
    health_status: HealthState = HealthState.HEALTHY
    issues: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total_publications": self.total_publications,
            "total_subscriptions": self.total_subscriptions,
            "total_slots": self.total_slots,
            "active_slots": self.active_slots,
            "max_lag_bytes": self.max_lag_bytes,
            "max_lag_seconds": self.max_lag_seconds,
            "health_status": self.health_status.value,
        }
        if self.issues:
            data["issues"] = list(self.issues)
        return data


@dataclass(frozen=True)
class Snapshot:
    """
    Complete observation of all sources for one cycle.

    `databases` is in completion order, not configuration order.
    Use `sorted_databases()` when a stable order is required.
    """

    timestamp: datetime
    databases: Tuple[SourceStatus, ...]
    summary: Summary

    def status(self, name: str) -> Optional[SourceStatus]:
        """Look up a source status by name."""
        for status in self.databases:
            if status.name == name:
                return status
        return None

    def sorted_databases(self) -> List[SourceStatus]:
        return sorted(self.databases, key=lambda s: s.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "databases": [status.to_dict() for status in self.databases],
            "summary": self.summary.to_dict(),
        }

    def to_json(self) -> str:
        """Serialize to the JSON wire format."""
        return json.dumps(self.to_dict())
