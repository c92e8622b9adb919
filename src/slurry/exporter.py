# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Event log exporter - read-side projection of job histories.

Never mutates the registry. Produces:
- per-job traces of TypedEvents (export)
- grouped multi-trace documents (export_log)
- object-centric event logs in OCEL 2.0 JSON shape (to_ocel)
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from slurry.schemas import EventKind, JobRecord, JobStatus, ObservationEntry, TypedEvent

logger = logging.getLogger(__name__)

LOG_FORMAT = "slurry-event-log"
LOG_VERSION = 1

GroupKey = Callable[[JobRecord], str]

GROUPINGS: Dict[str, GroupKey] = {
    "job": lambda r: r.handle,
    "name": lambda r: r.spec.name,
    "host": lambda r: r.host,
    "partition": lambda r: r.spec.resources.partition or "",
}


def entry_events(record: JobRecord, entry: ObservationEntry) -> List[TypedEvent]:
    """
    Typed events for one stored observation.

    - first entry → Submitted (plus a StatusChanged if the job was
      first seen past pending)
    - accepted status change → StatusChanged(old, new)
    - modeled field changes → FieldChanged(field), "other" for fingerprint drift
    - anomaly → Anomaly(kind)

    Field changes of flagged entries are not reported; their anomaly is.
    """
    obs = entry.observation
    events: List[TypedEvent] = []

    def add(kind: EventKind, **kwargs: Any) -> None:
        events.append(TypedEvent(
            event_id=f"{record.handle}:{entry.sequence}:{len(events)}",
            kind=kind,
            timestamp=obs.observed_at,
            handle=record.handle,
            identity=record.identity,
            **kwargs,
        ))

    if entry.sequence == 0:
        add(EventKind.SUBMITTED, new_status=JobStatus.PENDING)

    if entry.accepted and entry.status_after != entry.status_before:
        add(EventKind.STATUS_CHANGED, old_status=entry.status_before, new_status=entry.status_after)

    if not entry.flagged:
        for change in sorted(entry.diff.field_changes, key=lambda c: c.field):
            if change.field == "status":
                continue
            add(EventKind.FIELD_CHANGED, field=change.field, detail=f"{change.old!r} -> {change.new!r}")
        if entry.diff.other_changed:
            add(EventKind.FIELD_CHANGED, field="other")

    if entry.anomaly is not None:
        add(EventKind.ANOMALY, anomaly=entry.anomaly, new_status=obs.status)

    return events


def export(record: JobRecord) -> List[TypedEvent]:
    """Ordered trace of one job. Entries are stored in arrival order; the
    trace is ordered by observation time (stable for ties)."""
    if not record.entries:
        return [TypedEvent(
            event_id=f"{record.handle}:submitted",
            kind=EventKind.SUBMITTED,
            timestamp=record.submitted_at,
            handle=record.handle,
            identity=record.identity,
            new_status=JobStatus.PENDING,
        )]
    events: List[TypedEvent] = []
    for entry in record.entries:
        events.extend(entry_events(record, entry))
    return sorted(events, key=lambda e: e.timestamp)


def export_log(
    records: Iterable[JobRecord],
    group_by: Optional[Union[str, GroupKey]] = None,
) -> Dict[str, Any]:
    """
    Multi-trace event log document.

    Args:
        records: Job records to include
        group_by: None for one trace per job, a key from GROUPINGS, or a
            callable mapping a record to its trace key

    Returns:
        {"format", "version", "traces": {key: [event dicts]}}
    """
    if group_by is None:
        key_fn = GROUPINGS["job"]
    elif isinstance(group_by, str):
        if group_by not in GROUPINGS:
            raise ValueError(f"Unknown grouping: {group_by} (expected one of {', '.join(GROUPINGS)})")
        key_fn = GROUPINGS[group_by]
    else:
        key_fn = group_by

    grouped: Dict[str, List[TypedEvent]] = {}
    for record in records:
        grouped.setdefault(key_fn(record), []).extend(export(record))

    return {
        "format": LOG_FORMAT,
        "version": LOG_VERSION,
        "traces": {
            key: [e.to_dict() for e in sorted(events, key=lambda e: e.timestamp)]
            for key, events in grouped.items()
        },
    }


# =============================================================================
# OCEL export
# =============================================================================

OCEL_EVENT_TYPES = (
    "Submit Job",
    "Job Started",
    "Job Completed",
    "Job Failed",
    "Job Cancelled",
    "Job Timeout",
    "Job Out Of Memory",
    "Job Anomaly",
)

_RAW_STATE_EVENT = {
    "TIMEOUT": "Job Timeout",
    "OUT_OF_MEMORY": "Job Out Of Memory",
}

_STATUS_EVENT = {
    JobStatus.RUNNING: "Job Started",
    JobStatus.COMPLETED: "Job Completed",
    JobStatus.FAILED: "Job Failed",
    JobStatus.CANCELLED: "Job Cancelled",
}


def _ocel_event_type(entry: ObservationEntry) -> Optional[str]:
    raw = entry.observation.raw_state.strip().split(" ", 1)[0].upper().rstrip("+")
    if raw in _RAW_STATE_EVENT:
        return _RAW_STATE_EVENT[raw]
    return _STATUS_EVENT.get(entry.status_after)


def _job_object_id(record: JobRecord) -> str:
    return f"job_{record.remote_job_id or record.handle}"


def to_ocel(records: Iterable[JobRecord]) -> Dict[str, Any]:
    """Object-centric event log with Job, Account, Partition and Host objects."""
    events: List[Dict[str, Any]] = []
    objects: Dict[str, Dict[str, Any]] = {}

    def related(object_id: str, object_type: str) -> None:
        objects.setdefault(object_id, {
            "id": object_id, "type": object_type, "attributes": [], "relationships": [],
        })

    for record in records:
        job_id = _job_object_id(record)
        latest_extra = record.latest.extra_dict if record.latest else {}
        account = record.spec.account or latest_extra.get("account")
        partition = record.spec.resources.partition or latest_extra.get("partition")

        relationships = []
        if account:
            related(f"acc_{account}", "Account")
            relationships.append({"objectId": f"acc_{account}", "qualifier": "submitted by"})
        if partition:
            related(f"part_{partition}", "Partition")
            relationships.append({"objectId": f"part_{partition}", "qualifier": "submitted on"})

        hosts = []
        attributes = [
            {"name": "name", "time": record.submitted_at.isoformat(), "value": record.spec.name},
            {"name": "cpus", "time": record.submitted_at.isoformat(), "value": record.spec.resources.cpus},
            {"name": "work_dir", "time": record.submitted_at.isoformat(), "value": record.spec.work_dir or ""},
            {"name": "min_memory", "time": record.submitted_at.isoformat(), "value": record.spec.resources.memory or ""},
        ]

        submit_time = record.entries[0].observation.observed_at if record.entries else record.submitted_at
        events.append(_ocel_event(f"submit-{job_id}", "Submit Job", submit_time, job_id, account))

        for entry in record.entries:
            obs = entry.observation
            for node in obs.assigned_nodes:
                if node not in hosts:
                    hosts.append(node)
            if entry.anomaly is not None:
                events.append(_ocel_event(
                    f"anomaly-{job_id}-{entry.sequence}", "Job Anomaly", obs.observed_at, job_id, None,
                    attributes=[{"name": "kind", "value": entry.anomaly.value}],
                ))
            if not entry.accepted or entry.status_after == entry.status_before:
                continue
            attributes.append({"name": "state", "time": obs.observed_at.isoformat(), "value": entry.status_after.value})
            event_type = _ocel_event_type(entry)
            if event_type is not None:
                events.append(_ocel_event(
                    f"{event_type.lower().replace(' ', '-')}-{job_id}-{entry.sequence}",
                    event_type, obs.observed_at, job_id, None,
                ))

        for host in hosts:
            related(f"host_{host}", "Host")
            relationships.append({"objectId": f"host_{host}", "qualifier": "executed on"})

        objects[job_id] = {
            "id": job_id,
            "type": "Job",
            "attributes": attributes,
            "relationships": relationships,
        }

    events.sort(key=lambda e: e["time"])
    return {
        "objectTypes": [
            {"name": "Job", "attributes": [
                {"name": "name", "type": "string"},
                {"name": "cpus", "type": "integer"},
                {"name": "work_dir", "type": "string"},
                {"name": "min_memory", "type": "string"},
                {"name": "state", "type": "string"},
            ]},
            {"name": "Account", "attributes": []},
            {"name": "Partition", "attributes": []},
            {"name": "Host", "attributes": []},
        ],
        "eventTypes": [
            {"name": name, "attributes": [{"name": "kind", "type": "string"}] if name == "Job Anomaly" else []}
            for name in OCEL_EVENT_TYPES
        ],
        "objects": list(objects.values()),
        "events": events,
    }


def _ocel_event(
    event_id: str,
    event_type: str,
    time: datetime,
    job_id: str,
    account: Optional[str],
    attributes: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    relationships = [{"objectId": job_id, "qualifier": "job"}]
    if account:
        relationships.append({"objectId": f"acc_{account}", "qualifier": "submitter"})
    return {
        "id": event_id,
        "type": event_type,
        "time": time.isoformat(),
        "attributes": attributes or [],
        "relationships": relationships,
    }


def write_json(document: Dict[str, Any], path: Path) -> Path:
    """Write an export document to disk."""
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(document, f, indent=2)
    logger.info(f"Wrote export to {path}")
    return path
