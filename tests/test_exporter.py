# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for exporter.py module."""

import json
from datetime import timedelta

import pytest

from conftest import T0
from slurry.exporter import GROUPINGS, export, export_log, to_ocel, write_json
from slurry.registry import JobRegistry
from slurry.schemas import EventKind, JobSpec, JobStatus, Observation, ResourceRequest

T1 = T0 + timedelta(seconds=30)
T2 = T0 + timedelta(seconds=60)


def obs(status, at, remote_job_id="1234", **kwargs) -> Observation:
    return Observation(remote_job_id=remote_job_id, observed_at=at, status=status, **kwargs)


def finished_job(registry: JobRegistry, remote_job_id="1234", name="demo", partition=None) -> str:
    spec = JobSpec(name=name, command="echo hi", resources=ResourceRequest(partition=partition))
    handle = registry.create(spec, submitted_at=T0)
    registry.assign_remote_id(handle, remote_job_id)
    registry.append_observation(handle, obs(JobStatus.PENDING, T0, remote_job_id))
    registry.append_observation(handle, obs(JobStatus.RUNNING, T1, remote_job_id))
    registry.append_observation(handle, obs(JobStatus.COMPLETED, T2, remote_job_id))
    return handle


class TestExport:
    """Test per-job traces."""

    def test_pending_running_completed(self, registry):
        """Test the canonical three-observation trace."""
        handle = finished_job(registry)

        events = export(registry.get(handle))

        assert [(e.kind, e.old_status, e.new_status, e.timestamp) for e in events] == [
            (EventKind.SUBMITTED, None, JobStatus.PENDING, T0),
            (EventKind.STATUS_CHANGED, JobStatus.PENDING, JobStatus.RUNNING, T1),
            (EventKind.STATUS_CHANGED, JobStatus.RUNNING, JobStatus.COMPLETED, T2),
        ]
        assert all(e.identity == ("1234", T0) for e in events)

    def test_event_ids_are_stable(self, registry):
        """Test re-exporting yields the same event ids for dedupe."""
        handle = finished_job(registry)
        first = [e.event_id for e in export(registry.get(handle))]
        second = [e.event_id for e in export(registry.get(handle))]

        assert first == second
        assert len(set(first)) == len(first)

    def test_field_changes_and_anomaly(self, registry):
        """Test field changes and anomalies become their own events."""
        handle = registry.create(JobSpec(name="demo", command="x"), submitted_at=T0)
        registry.assign_remote_id(handle, "1")
        registry.append_observation(handle, obs(JobStatus.RUNNING, T0, "1", elapsed_s=0))
        registry.append_observation(handle, obs(JobStatus.RUNNING, T1, "1", elapsed_s=30))
        registry.append_observation(handle, obs(JobStatus.PENDING, T2, "1", elapsed_s=0))

        kinds = [(e.kind, e.field, e.anomaly) for e in export(registry.get(handle))]

        assert (EventKind.FIELD_CHANGED, "elapsed_s", None) in kinds
        assert kinds[-1][0] == EventKind.ANOMALY
        assert kinds[-1][2].value == "regression"
        # The rejected regression does not produce a status change
        assert sum(1 for k in kinds if k[0] == EventKind.STATUS_CHANGED) == 1

    def test_trace_sorted_by_time(self, registry):
        """Test a late-arriving earlier observation is placed by timestamp."""
        handle = registry.create(JobSpec(name="demo", command="x"), submitted_at=T0)
        registry.assign_remote_id(handle, "1")
        registry.append_observation(handle, obs(JobStatus.RUNNING, T2, "1"))
        registry.append_observation(handle, obs(JobStatus.RUNNING, T1, "1", elapsed_s=5))

        timestamps = [e.timestamp for e in export(registry.get(handle))]
        assert timestamps == sorted(timestamps)

    def test_record_without_observations(self, registry):
        """Test a fresh record exports its submission only."""
        handle = registry.create(JobSpec(name="demo", command="x"), submitted_at=T0)

        events = export(registry.get(handle))

        assert len(events) == 1
        assert events[0].kind == EventKind.SUBMITTED
        assert events[0].timestamp == T0

    def test_export_does_not_mutate(self, registry):
        """Test export is read-only."""
        handle = finished_job(registry)
        before = registry.get(handle)
        export(before)
        assert registry.get(handle) is before


class TestExportLog:
    """Test multi-trace documents."""

    def test_one_trace_per_job(self, registry):
        """Test the default grouping is per handle."""
        a = finished_job(registry, "1")
        b = finished_job(registry, "2")

        document = export_log(registry.records())

        assert document["format"] == "slurry-event-log"
        assert document["version"] == 1
        assert set(document["traces"]) == {a, b}
        assert [e["kind"] for e in document["traces"][a]] == ["submitted", "status_changed", "status_changed"]

    def test_group_by_name(self, registry):
        """Test traces can be grouped by spec name."""
        finished_job(registry, "1", name="sweep")
        finished_job(registry, "2", name="sweep")
        finished_job(registry, "3", name="other")

        document = export_log(registry.records(), group_by="name")

        assert set(document["traces"]) == {"sweep", "other"}
        assert len(document["traces"]["sweep"]) == 6

    def test_group_by_callable(self, registry):
        """Test a caller-supplied key function."""
        finished_job(registry, "1", partition="gpu")
        finished_job(registry, "2", partition="cpu")

        document = export_log(registry.records(), group_by=lambda r: r.spec.resources.partition.upper())

        assert set(document["traces"]) == {"GPU", "CPU"}

    def test_unknown_grouping(self, registry):
        """Test an unknown grouping name is rejected."""
        with pytest.raises(ValueError):
            export_log(registry.records(), group_by="colour")

    def test_groupings_listed(self):
        assert set(GROUPINGS) == {"job", "name", "host", "partition"}


class TestOcel:
    """Test object-centric export."""

    def test_ocel_shape(self, registry):
        """Test objects and events for a finished job."""
        handle = registry.create(
            JobSpec(name="demo", command="x", account="proj", resources=ResourceRequest(partition="gpu")),
            submitted_at=T0,
        )
        registry.assign_remote_id(handle, "77")
        registry.append_observation(handle, obs(JobStatus.PENDING, T0, "77"))
        registry.append_observation(handle, obs(JobStatus.RUNNING, T1, "77", assigned_nodes=("n1",)))
        registry.append_observation(handle, obs(JobStatus.FAILED, T2, "77", raw_state="TIMEOUT"))

        document = to_ocel(registry.records())

        object_ids = {o["id"] for o in document["objects"]}
        assert object_ids == {"job_77", "acc_proj", "part_gpu", "host_n1"}
        assert [e["type"] for e in document["events"]] == ["Submit Job", "Job Started", "Job Timeout"]
        assert document["events"][0]["relationships"][1] == {"objectId": "acc_proj", "qualifier": "submitter"}

    def test_write_json(self, registry, tmp_path):
        """Test documents are written as JSON."""
        finished_job(registry)
        path = write_json(export_log(registry.records()), tmp_path / "out" / "log.json")

        data = json.loads(path.read_text())
        assert data["format"] == "slurry-event-log"
