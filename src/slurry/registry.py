# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job registry - the single owner of JobRecords.

Concurrency contract:
- Each record is published as an immutable snapshot; get() never locks.
- Appends to one record are serialized by that record's lock.
- Appends to different records never contend.
- The registry lock only guards structural changes (create, id assignment).
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from slurry.diff import diff, is_regression
from slurry.schemas import (
    AnomalyKind,
    AppendOutcome,
    JobRecord,
    JobSpec,
    JobStatus,
    Observation,
    ObservationEntry,
    SubmissionRequest,
)
from slurry.schemas.job import TAG_UNPARSABLE

logger = logging.getLogger(__name__)


class RegistryInvariantError(RuntimeError):
    """Programming error: the registry's identity invariants were violated."""
    pass


class UnknownJob(KeyError):
    """Raised for a handle the registry never issued."""
    pass


class RecordSink(Protocol):
    """Pluggable persistence for registry contents."""

    def flush(self, records: Iterable[JobRecord]) -> None:
        ...


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def record_to_dict(record: JobRecord) -> dict:
    """Plain-data view of a record, suitable for JSON."""
    return json.loads(json.dumps(asdict(record), default=_json_default))


class JsonDirectorySink:
    """Writes one JSON document per job into a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory).expanduser()

    def flush(self, records: Iterable[JobRecord]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        count = 0
        for record in records:
            path = self.directory / f"{record.handle}.json"
            with open(path, "w") as f:
                json.dump(record_to_dict(record), f, indent=2)
            count += 1
        logger.info(f"Flushed {count} job records to {self.directory}")


class JobRegistry:
    """Concurrent store of tracked jobs and their observation histories."""

    def __init__(self, sink: Optional[RecordSink] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self._records: Dict[str, JobRecord] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._by_remote_id: Dict[Tuple[str, str], str] = {}

    # ── Structure ─────────────────────────────────────────────────────

    def create(self, spec: JobSpec, submitted_at: Optional[datetime] = None) -> str:
        """Start tracking a job; returns its handle. Status is PENDING."""
        handle = uuid.uuid4().hex[:12]
        record = JobRecord(
            handle=handle,
            spec=spec,
            host=spec.host,
            submitted_at=submitted_at or datetime.now(timezone.utc),
        )
        with self._lock:
            self._records[handle] = record
            self._record_locks[handle] = threading.Lock()
        logger.debug(f"Created job record {handle} for {spec.name}")
        return handle

    def assign_remote_id(
        self,
        handle: str,
        remote_job_id: str,
        submission: Optional[SubmissionRequest] = None,
    ) -> JobRecord:
        """Bind the scheduler's job id to a tracked record.

        Raises:
            RegistryInvariantError: If the handle already has an id, or the
                id is already bound to another non-terminal record on the
                same host.
        """
        with self._lock:
            record_lock = self._lock_for(handle)
            with record_lock:
                record = self._records[handle]
                if record.remote_job_id is not None:
                    raise RegistryInvariantError(
                        f"Job {handle} already has remote id {record.remote_job_id}"
                    )
                key = (record.host, remote_job_id)
                existing = self._by_remote_id.get(key)
                if existing is not None and not self._records[existing].terminal:
                    raise RegistryInvariantError(
                        f"Remote id {remote_job_id} on {record.host} is already bound to live job {existing}"
                    )
                updated = replace(record, remote_job_id=remote_job_id, submission=submission)
                self._records[handle] = updated
                self._by_remote_id[key] = handle
        logger.info(f"Job {handle} is remote job {remote_job_id} on {record.host}")
        return updated

    def _lock_for(self, handle: str) -> threading.Lock:
        try:
            return self._record_locks[handle]
        except KeyError:
            raise UnknownJob(handle) from None

    # ── Appends ───────────────────────────────────────────────────────

    def append_observation(
        self,
        handle: str,
        observation: Observation,
        anomaly: Optional[AnomalyKind] = None,
    ) -> AppendOutcome:
        """
        Append an observation and recompute the current status.

        The observation is always stored. Whether it moves the status is
        decided by diffing against the latest stored observation (by
        position, not timestamp) and by the monotone lifecycle order:
        a regression, or any status change after the job went terminal,
        is recorded and flagged but leaves the status alone. A repeat of the
        terminal status is accepted but flagged, except when the remote
        side confirms a local cancel.

        Args:
            handle: Job handle
            observation: Incoming observation
            anomaly: Anomaly established by the caller (e.g. missing from queue)

        Returns:
            AppendOutcome with the status after the append
        """
        with self._lock_for(handle):
            record = self._records[handle]
            result = diff(record.latest, observation)

            status_before = record.status
            status = record.status
            settled = record.settled_status
            accepted, reason, flagged = True, None, False
            entry_anomaly = anomaly or result.anomaly

            if TAG_UNPARSABLE in observation.tags:
                accepted, reason, flagged = False, "unparsable", True
                entry_anomaly = AnomalyKind.PARSE_ANOMALY
            elif record.status.terminal:
                if observation.status != record.status:
                    accepted, flagged = False, True
                    if is_regression(record.status, observation.status):
                        reason, entry_anomaly = "regression", AnomalyKind.REGRESSION
                    else:
                        reason, entry_anomaly = "terminal", AnomalyKind.LATE_OBSERVATION
                else:
                    # Same end state again: only the remote confirming a local cancel is clean
                    confirms_cancel = record.unconfirmed_cancel and observation.source != "local"
                    flagged = not confirms_cancel
            elif result.anomaly == AnomalyKind.REGRESSION or is_regression(settled, observation.status):
                accepted, reason, flagged = False, "regression", True
                entry_anomaly = AnomalyKind.REGRESSION
            else:
                status = observation.status
                if status != JobStatus.UNKNOWN:
                    settled = status

            entry = ObservationEntry(
                sequence=len(record.entries),
                observation=observation,
                diff=result,
                accepted=accepted,
                status_before=status_before,
                status_after=status,
                anomaly=entry_anomaly,
                flagged=flagged,
            )
            self._records[handle] = replace(
                record,
                entries=record.entries + (entry,),
                status=status,
                settled_status=settled,
            )

        if entry_anomaly is not None and not accepted:
            logger.warning(
                f"Job {handle}: {entry_anomaly.value} "
                f"({status_before.value} -> {observation.status.value}), keeping {status.value}"
            )
        elif entry_anomaly is not None:
            logger.warning(f"Job {handle}: {entry_anomaly.value}, status now {status.value}")
        elif status != status_before:
            logger.info(f"Job {handle}: {status_before.value} -> {status.value}")

        return AppendOutcome(accepted=accepted, status=status, entry=entry, reason=reason)

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, handle: str) -> JobRecord:
        """Snapshot of a record; never blocks writers."""
        try:
            return self._records[handle]
        except KeyError:
            raise UnknownJob(handle) from None

    def find_by_remote_id(self, host: str, remote_job_id: str) -> Optional[str]:
        """Handle currently bound to a remote id on a host (latest epoch)."""
        return self._by_remote_id.get((host, remote_job_id))

    def list(self, filter: Optional[Callable[[JobRecord], bool]] = None) -> List[str]:
        """Handles in creation order, optionally filtered by a predicate."""
        records = list(self._records.values())
        return [r.handle for r in records if filter is None or filter(r)]

    def list_active(self) -> List[str]:
        """Handles whose status is not terminal."""
        return self.list(lambda r: not r.terminal)

    def records(self) -> List[JobRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def close(self) -> None:
        """Flush all records to the sink, if one is configured."""
        if self._sink is not None:
            self._sink.flush(self.records())
