# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Diff engine - compare two observations of the same job.

Modeled fields are compared one by one. Unmodeled columns are only
compared through their fingerprint and surface as a single
``other_changed`` flag. The status pair is classified against the
lifecycle order pending → running → {completed, failed, cancelled}.
"""

from typing import Optional

from slurry.schemas import AnomalyKind, DiffResult, FieldChange, JobStatus, Observation, StatusTransition
from slurry.schemas.job import MODELED_FIELDS


def is_regression(old: JobStatus, new: JobStatus) -> bool:
    """True if moving from old to new goes backwards in the lifecycle.

    UNKNOWN has no rank: entering or leaving it is not a regression,
    except that a terminal job can never become UNKNOWN again.
    """
    if old == new:
        return False
    if old.terminal and new == JobStatus.UNKNOWN:
        return True
    if old.rank is None or new.rank is None:
        return False
    return new.rank < old.rank


def diff(previous: Optional[Observation], next_obs: Observation) -> DiffResult:
    """
    Compute the structural diff between two observations.

    Args:
        previous: Latest stored observation, or None for the first one
        next_obs: Incoming observation

    Returns:
        DiffResult. The first observation yields only the initial
        transition (None → status); it is the baseline, so no field changes.
    """
    if previous is None:
        return DiffResult(transition=StatusTransition(None, next_obs.status))

    changes = frozenset(
        FieldChange(name, getattr(previous, name), getattr(next_obs, name))
        for name in MODELED_FIELDS
        if getattr(previous, name) != getattr(next_obs, name)
    )
    other_changed = previous.fingerprint != next_obs.fingerprint

    transition = None
    anomaly = None
    if previous.status != next_obs.status:
        transition = StatusTransition(previous.status, next_obs.status)
        if is_regression(previous.status, next_obs.status):
            anomaly = AnomalyKind.REGRESSION

    return DiffResult(
        field_changes=changes,
        other_changed=other_changed,
        transition=transition,
        anomaly=anomaly,
    )
