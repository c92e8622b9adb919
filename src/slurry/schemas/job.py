# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job specification, observation and record schemas.

Lifecycle of the types:
- JobSpec (YAML / caller) → build → SubmissionRequest → sbatch → RemoteJobId
- squeue/sacct text → parse → Observation → diff → ObservationEntry
- JobRecord is the Registry-owned snapshot tying them together
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, NamedTuple, Optional, Tuple


class JobStatus(str, Enum):
    """Lifecycle status of a tracked job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> Optional[int]:
        """Position in the lifecycle order, None for UNKNOWN."""
        return _STATUS_RANK.get(self)


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELLED: 2,
}


class AnomalyKind(str, Enum):
    """Inconsistencies that are surfaced but never abort processing."""

    REGRESSION = "regression"
    MISSING_FROM_QUEUE = "missing_from_queue"
    LATE_OBSERVATION = "late_observation"
    PARSE_ANOMALY = "parse_anomaly"


# Observation tags
TAG_LOCAL = "locally-initiated"
TAG_MISSING = "missing-from-queue"
TAG_UNPARSABLE = "unparsable"
TAG_FALLBACK = "fallback"

# Fields the diff engine compares one by one; everything else is fingerprinted.
MODELED_FIELDS = ("status", "elapsed_s", "assigned_nodes", "exit_code")


@dataclass(frozen=True)
class ResourceRequest:
    """Resources requested from the scheduler."""
    cpus: int = 1
    memory: Optional[str] = None  # e.g. "4G"
    time_limit: str = "00:10:00"
    partition: Optional[str] = None
    nodes: int = 1
    array: Optional[str] = None  # e.g. "0-9%2"


@dataclass(frozen=True)
class JobSpec:
    """Immutable, user-authored description of a batch job."""
    name: str
    command: str
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    work_dir: Optional[str] = None
    env: Tuple[Tuple[str, str], ...] = ()
    output_path: Optional[str] = None
    error_path: Optional[str] = None
    host: str = "default"
    account: Optional[str] = None
    extra_directives: Tuple[str, ...] = ()

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobSpec":
        """Build a JobSpec from a plain mapping (e.g. parsed YAML).

        Resource keys may be given either nested under ``resources`` or at
        the top level.
        """
        res_data = dict(data.get("resources") or {})
        for key in ("cpus", "memory", "time_limit", "partition", "nodes", "array"):
            if key in data and key not in res_data:
                res_data[key] = data[key]
        env = data.get("env") or {}
        return cls(
            name=str(data.get("name", "")),
            command=str(data.get("command", "")),
            resources=ResourceRequest(**res_data),
            work_dir=data.get("work_dir"),
            env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
            output_path=data.get("output_path"),
            error_path=data.get("error_path"),
            host=str(data.get("host") or "default"),
            account=data.get("account"),
            extra_directives=tuple(data.get("extra_directives") or ()),
        )


@dataclass(frozen=True)
class SubmissionRequest:
    """Exact text sent to the remote side for one JobSpec."""
    command: str
    script: str
    script_path: str
    script_version: int
    rendered_at: datetime


class JobIdentity(NamedTuple):
    """Local identity of a remote job, tolerant of remote id reuse."""
    remote_job_id: str
    submission_epoch: datetime


def fingerprint_of(items: Tuple[Tuple[str, str], ...]) -> str:
    """Stable SHA-256 over unmodeled (name, value) pairs."""
    digest = hashlib.sha256()
    for key, value in sorted(items):
        digest.update(key.encode())
        digest.update(b"\x1f")
        digest.update(value.encode())
        digest.update(b"\x1e")
    return digest.hexdigest()


@dataclass(frozen=True)
class Observation:
    """One timestamped snapshot of a job's remote state."""
    remote_job_id: Optional[str]
    observed_at: datetime
    status: JobStatus
    raw_state: str = ""
    elapsed_s: Optional[int] = None
    assigned_nodes: Tuple[str, ...] = ()
    exit_code: Optional[int] = None
    extra: Tuple[Tuple[str, str], ...] = ()
    fingerprint: str = ""
    source: str = "remote"  # "remote", "accounting" or "local"
    tags: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if not self.fingerprint:
            object.__setattr__(self, "fingerprint", fingerprint_of(self.extra))

    @property
    def extra_dict(self) -> Dict[str, str]:
        return dict(self.extra)


class FieldChange(NamedTuple):
    field: str
    old: Any
    new: Any


class StatusTransition(NamedTuple):
    """A status change; ``old`` is None for the initial observation."""
    old: Optional[JobStatus]
    new: JobStatus


@dataclass(frozen=True)
class DiffResult:
    """Structural difference between two observations of one job."""
    field_changes: FrozenSet[FieldChange] = frozenset()
    other_changed: bool = False
    transition: Optional[StatusTransition] = None
    anomaly: Optional[AnomalyKind] = None

    @property
    def empty(self) -> bool:
        return not self.field_changes and not self.other_changed and self.transition is None

    def changed(self, field_name: str) -> Optional[FieldChange]:
        for change in self.field_changes:
            if change.field == field_name:
                return change
        return None


@dataclass(frozen=True)
class ObservationEntry:
    """One stored append: the observation plus how it was judged."""
    sequence: int
    observation: Observation
    diff: DiffResult
    accepted: bool
    status_before: JobStatus
    status_after: JobStatus
    anomaly: Optional[AnomalyKind] = None
    flagged: bool = False


@dataclass(frozen=True)
class JobRecord:
    """Registry-owned snapshot of everything known about one job."""
    handle: str
    spec: JobSpec
    host: str
    submitted_at: datetime
    status: JobStatus = JobStatus.PENDING
    remote_job_id: Optional[str] = None
    submission: Optional[SubmissionRequest] = None
    entries: Tuple[ObservationEntry, ...] = ()
    # Most advanced non-UNKNOWN status seen; used for monotonicity checks.
    settled_status: JobStatus = JobStatus.PENDING

    @property
    def identity(self) -> Optional[JobIdentity]:
        if self.remote_job_id is None:
            return None
        return JobIdentity(self.remote_job_id, self.submitted_at)

    @property
    def observations(self) -> Tuple[Observation, ...]:
        return tuple(e.observation for e in self.entries)

    @property
    def latest(self) -> Optional[Observation]:
        return self.entries[-1].observation if self.entries else None

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def lost(self) -> bool:
        """Gone from the queue and not yet explained by accounting history."""
        latest = self.latest
        return self.status == JobStatus.UNKNOWN and latest is not None and TAG_MISSING in latest.tags

    @property
    def unconfirmed_cancel(self) -> bool:
        """Cancelled locally and the remote side has not reported an end state since."""
        if self.status != JobStatus.CANCELLED:
            return False
        for entry in reversed(self.entries):
            obs = entry.observation
            if TAG_LOCAL in obs.tags:
                return True
            if obs.source != "local" and obs.status.terminal:
                return False
        return False


@dataclass(frozen=True)
class AppendOutcome:
    """Result of Registry.append_observation.

    reason is None when accepted, otherwise "regression", "terminal"
    or "unparsable".
    """
    accepted: bool
    status: JobStatus
    entry: ObservationEntry
    reason: Optional[str] = None
