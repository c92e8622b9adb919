# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Typed events emitted by the poller and produced by the exporter."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from slurry.schemas.job import AnomalyKind, JobIdentity, JobStatus


class EventKind(str, Enum):
    SUBMITTED = "submitted"
    STATUS_CHANGED = "status_changed"
    FIELD_CHANGED = "field_changed"
    ANOMALY = "anomaly"
    CHANNEL_HEALTH = "channel_health"


@dataclass(frozen=True)
class TypedEvent:
    """One entry of a job trace.

    event_id is derived from (handle, sequence, position) so redelivered
    events can be deduplicated by consumers.
    """
    event_id: str
    kind: EventKind
    timestamp: datetime
    handle: Optional[str] = None
    identity: Optional[JobIdentity] = None
    old_status: Optional[JobStatus] = None
    new_status: Optional[JobStatus] = None
    field: Optional[str] = None
    anomaly: Optional[AnomalyKind] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.handle is not None:
            data["handle"] = self.handle
        if self.identity is not None:
            data["remote_job_id"] = self.identity.remote_job_id
            data["submission_epoch"] = self.identity.submission_epoch.isoformat()
        if self.old_status is not None:
            data["old_status"] = self.old_status.value
        if self.new_status is not None:
            data["new_status"] = self.new_status.value
        if self.field is not None:
            data["field"] = self.field
        if self.anomaly is not None:
            data["anomaly"] = self.anomaly.value
        if self.detail is not None:
            data["detail"] = self.detail
        return data
