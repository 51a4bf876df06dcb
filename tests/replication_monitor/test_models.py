"""
Tests for wire-format models and helpers.
"""

import json
from datetime import datetime, timezone
from typing import Tuple, get_type_hints

import pytest

from replication_monitor.catalog import mask_conninfo
from replication_monitor.exceptions import (
    ConfigurationError,
    QueryFailedError,
    SourceUnreachableError,
)
from replication_monitor.models import (
    HealthState,
    Publication,
    ReplicationStat,
    Role,
    Snapshot,
    SourceStatus,
    Summary,
)

from conftest import make_snapshot


class TestHealthState:

    @pytest.mark.parametrize("current,other,expected", [
        (HealthState.HEALTHY, HealthState.WARNING, HealthState.WARNING),
        (HealthState.WARNING, HealthState.HEALTHY, HealthState.WARNING),
        (HealthState.WARNING, HealthState.CRITICAL, HealthState.CRITICAL),
        (HealthState.CRITICAL, HealthState.WARNING, HealthState.CRITICAL),
    ])
    def test_escalate_never_downgrades(self, current, other, expected):
        assert current.escalate(other) == expected


class TestSourceStatus:

    def test_for_role_initialises_own_payloads_only(self):
        source = SourceStatus.for_role("a", Role.SOURCE)
        target = SourceStatus.for_role("b", Role.TARGET)

        assert source.publications == [] and source.subscriptions is None
        assert target.subscriptions == [] and target.replication_slots is None

    def test_disconnected_wire_shape(self):
        data = SourceStatus.disconnected("tgt1", Role.TARGET, "connection failed: refused").to_dict()

        assert data["connected"] is False
        assert data["role"] == "target"
        assert data["error"] == "connection failed: refused"
        for key in ("publications", "subscriptions", "replication_slots",
                    "replication_stats", "subscription_stats"):
            assert key not in data

    def test_empty_payloads_and_error_are_omitted(self):
        data = SourceStatus.for_role("src1", Role.SOURCE).to_dict()

        assert "publications" not in data
        assert "error" not in data
        assert data["connected"] is True

    def test_payloads_serialized(self):
        status = SourceStatus.for_role("src1", Role.SOURCE)
        status.publications = [Publication(pub_name="p", pub_owner="postgres", tables=["public.t"])]

        data = status.to_dict()

        assert data["publications"][0]["table_count"] == 1
        assert data["publications"][0]["tables"] == ["public.t"]


class TestReplicationStat:

    def test_negative_distance_is_clamped(self):
        stat = ReplicationStat(
            slot_name="s", current_wal_lsn="0/1", confirmed_flush_lsn="0/2",
            lsn_distance_bytes=-16, active=True,
        )

        assert stat.lsn_distance_bytes == 0
        assert stat.to_dict()["lsn_distance"] == 0

    def test_lsns_stay_strings(self):
        data = ReplicationStat(
            slot_name="s", current_wal_lsn="16/B374D848", confirmed_flush_lsn="16/B3000000",
            lsn_distance_bytes=7657544, active=True,
        ).to_dict()

        assert data["current_wal_lsn"] == "16/B374D848"
        assert data["replication_lag_sec"] is None


class TestSnapshot:

    def test_json_wire_format(self):
        timestamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        snapshot = Snapshot(
            timestamp=timestamp,
            databases=(SourceStatus.disconnected("b", Role.TARGET, "x"),),
            summary=Summary(health_status=HealthState.CRITICAL, issues=("Database b is not connected",)),
        )

        data = json.loads(snapshot.to_json())

        assert data["timestamp"] == "2024-05-01T12:00:00+00:00"
        assert data["summary"]["health_status"] == "critical"
        assert data["summary"]["issues"] == ["Database b is not connected"]

    def test_lookup_and_sorted_order(self):
        snapshot = make_snapshot(
            SourceStatus.for_role("zeta", Role.SOURCE),
            SourceStatus.for_role("alpha", Role.TARGET),
        )

        assert snapshot.status("alpha").role == Role.TARGET
        assert snapshot.status("missing") is None
        assert [s.name for s in snapshot.sorted_databases()] == ["alpha", "zeta"]

    def test_snapshot_is_immutable(self):
        snapshot = make_snapshot()

        with pytest.raises(AttributeError):
            snapshot.summary = Summary()

    def test_sequence_fields_are_variadic_tuples(self):
        assert get_type_hints(Summary)["issues"] == Tuple[str, ...]
        assert get_type_hints(Snapshot)["databases"] == Tuple[SourceStatus, ...]
        assert Summary().issues == ()


class TestExceptions:

    def test_source_unreachable_message(self):
        error = SourceUnreachableError("tgt1", "timeout expired")

        assert error.message == "connection failed: timeout expired"
        assert error.reason == "timeout expired"
        assert "[tgt1]" in str(error)
        assert error.to_dict()["source_name"] == "tgt1"

    def test_query_failed_names_query(self):
        error = QueryFailedError("src1", "publications", "permission denied")

        assert "publications" in str(error)

    def test_configuration_error_joins_errors(self):
        error = ConfigurationError(["a", "b"])

        assert error.errors == ["a", "b"]
        assert "a; b" in str(error)


class TestMaskConninfo:

    @pytest.mark.parametrize("raw,expected", [
        ("host=db user=rep password=s3cret dbname=app", "host=db user=rep password=*** dbname=app"),
        ("host=db password='with space' port=5432", "host=db password=*** port=5432"),
        ("postgresql://rep:s3cret@db:5432/app", "postgresql://rep:***@db:5432/app"),
        ("host=db user=rep", "host=db user=rep"),
        ("", ""),
        (None, ""),
    ])
    def test_masking(self, raw, expected):
        assert mask_conninfo(raw) == expected
