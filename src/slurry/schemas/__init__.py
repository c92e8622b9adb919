# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Slurry schemas."""

from slurry.schemas.event import EventKind, TypedEvent
from slurry.schemas.job import (
    AnomalyKind,
    AppendOutcome,
    DiffResult,
    FieldChange,
    JobIdentity,
    JobRecord,
    JobSpec,
    JobStatus,
    Observation,
    ObservationEntry,
    ResourceRequest,
    StatusTransition,
    SubmissionRequest,
)

__all__ = [
    "AnomalyKind",
    "AppendOutcome",
    "DiffResult",
    "EventKind",
    "FieldChange",
    "JobIdentity",
    "JobRecord",
    "JobSpec",
    "JobStatus",
    "Observation",
    "ObservationEntry",
    "ResourceRequest",
    "StatusTransition",
    "SubmissionRequest",
    "TypedEvent",
]
