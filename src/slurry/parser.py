# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Queue snapshot parser.

Turns squeue/sacct text into Observation candidates. Columns are matched
by header name, not position, so the remote tool may reorder or pad them.
A line that cannot be parsed becomes a single UNKNOWN candidate carrying
the raw text; it never takes the rest of the batch down with it.
"""

import logging
import re
import shlex
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from slurry.schemas import JobStatus, Observation
from slurry.schemas.job import TAG_UNPARSABLE, fingerprint_of

logger = logging.getLogger(__name__)

# squeue -o format and the header titles squeue prints for it.
SQUEUE_FORMAT = "%i|%T|%M|%N|%j|%P|%a|%u|%V|%S|%e|%r|%C|%m|%Z"
SACCT_FORMAT = "JobID,State,Elapsed,NodeList,ExitCode,JobName,Partition,Account,Submit,Start,End"

DEFAULT_COLUMNS = (
    "JOBID", "STATE", "TIME", "NODELIST", "NAME", "PARTITION", "ACCOUNT", "USER",
    "SUBMIT_TIME", "START_TIME", "END_TIME", "REASON", "CPUS", "MIN_MEMORY", "WORK_DIR",
)

# Header title → modeled field. Titles are normalized (upper case, no spaces).
FIELD_ALIASES = {
    "JOBID": "job_id",
    "JOB_ID": "job_id",
    "STATE": "state",
    "ST": "state",
    "TIME": "elapsed",
    "TIME_USED": "elapsed",
    "TIMEUSED": "elapsed",
    "ELAPSED": "elapsed",
    "NODELIST": "nodes",
    "NODELIST(REASON)": "nodes",
    "EXITCODE": "exit_code",
    "EXIT_CODE": "exit_code",
}

STATE_MAP = {
    "PENDING": JobStatus.PENDING,
    "PD": JobStatus.PENDING,
    "CONFIGURING": JobStatus.PENDING,
    "CF": JobStatus.PENDING,
    "REQUEUED": JobStatus.PENDING,
    "RQ": JobStatus.PENDING,
    "REQUEUE_HOLD": JobStatus.PENDING,
    "REQUEUE_FED": JobStatus.PENDING,
    "RESV_DEL_HOLD": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    "R": JobStatus.RUNNING,
    "COMPLETING": JobStatus.RUNNING,
    "CG": JobStatus.RUNNING,
    "SUSPENDED": JobStatus.RUNNING,
    "S": JobStatus.RUNNING,
    "STAGE_OUT": JobStatus.RUNNING,
    "SO": JobStatus.RUNNING,
    "SIGNALING": JobStatus.RUNNING,
    "SI": JobStatus.RUNNING,
    "RESIZING": JobStatus.RUNNING,
    "STOPPED": JobStatus.RUNNING,
    "ST": JobStatus.RUNNING,
    "COMPLETED": JobStatus.COMPLETED,
    "CD": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "F": JobStatus.FAILED,
    "TIMEOUT": JobStatus.FAILED,
    "TO": JobStatus.FAILED,
    "OUT_OF_MEMORY": JobStatus.FAILED,
    "OOM": JobStatus.FAILED,
    "NODE_FAIL": JobStatus.FAILED,
    "NF": JobStatus.FAILED,
    "BOOT_FAIL": JobStatus.FAILED,
    "BF": JobStatus.FAILED,
    "DEADLINE": JobStatus.FAILED,
    "DL": JobStatus.FAILED,
    "PREEMPTED": JobStatus.FAILED,
    "PR": JobStatus.FAILED,
    "CANCELLED": JobStatus.CANCELLED,
    "CA": JobStatus.CANCELLED,
}

JOB_ID_PATTERN = re.compile(r"^\d+(?:_(?:\d+|\[[^\]]*\]))?(?:\.\S+)?$")
LEADING_ID_PATTERN = re.compile(r"^\s*(\d+(?:_\d+)?)(?=[\s|]|$)")
HOSTLIST_PATTERN = re.compile(r"^(?P<prefix>[^\[\]]*)\[(?P<ranges>[^\]]+)\](?P<suffix>.*)$")
HOST_RANGE_PATTERN = re.compile(r"^([0-9]+)(?:-([0-9]+))?$")
NUMBER_PATTERN = re.compile(r"^[0-9]+$")


class ParseError(ValueError):
    """Raised for a single line that cannot be turned into an observation."""
    pass


def squeue_command(job_ids: Iterable[str]) -> str:
    """Batched squeue query for the given remote job ids."""
    ids = ",".join(sorted(set(job_ids)))
    return f"squeue --jobs={shlex.quote(ids)} --states=all -o {shlex.quote(SQUEUE_FORMAT)}"


def queue_command() -> str:
    """Snapshot of the current user's whole queue."""
    return f"squeue --me --states=all -o {shlex.quote(SQUEUE_FORMAT)}"


def sacct_command(job_ids: Iterable[str]) -> str:
    """Accounting-history query for jobs that left the queue."""
    ids = ",".join(sorted(set(job_ids)))
    return f"sacct --jobs={shlex.quote(ids)} --parsable2 --format={SACCT_FORMAT}"


def map_state(raw: str) -> JobStatus:
    """Map a remote state string to a JobStatus.

    Handles sacct decorations like ``CANCELLED by 1234`` or ``CANCELLED+``.
    """
    token = raw.strip().split(" ", 1)[0].upper().rstrip("+")
    return STATE_MAP.get(token, JobStatus.UNKNOWN)


def parse_duration(value: str) -> Optional[int]:
    """Parse [D-]HH:MM:SS, MM:SS or SS into seconds; None if not a duration."""
    value = value.strip()
    if not value:
        return None
    days = 0
    if "-" in value:
        day_part, value = value.split("-", 1)
        if not NUMBER_PATTERN.match(day_part):
            return None
        days = int(day_part)
    parts = value.split(":")
    if not all(NUMBER_PATTERN.match(p) for p in parts) or len(parts) > 3:
        return None
    if days and len(parts) < 3:
        # D-HH and D-HH:MM count from hours
        parts = parts + ["0"] * (3 - len(parts))
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return days * 86400 + seconds


def _split_top_level(value: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in value:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if current:
        parts.append("".join(current))
    return [p for p in (s.strip() for s in parts) if p]


def expand_hostlist(value: str) -> Tuple[str, ...]:
    """Expand SLURM hostlist syntax: ``node[01-03,07]`` → node01..node03, node07.

    Pending reasons such as ``(Priority)`` and ``None assigned`` expand to
    an empty tuple.

    Raises:
        ParseError: If a bracketed range is malformed (``node[1-x]``).
    """
    value = value.strip()
    if not value or value.startswith("(") or value.lower() in ("none", "none assigned", "n/a"):
        return ()
    hosts: List[str] = []
    for item in _split_top_level(value):
        match = HOSTLIST_PATTERN.match(item)
        if not match:
            hosts.append(item)
            continue
        prefix, suffix = match.group("prefix"), match.group("suffix")
        for rng in match.group("ranges").split(","):
            bounds = HOST_RANGE_PATTERN.match(rng.strip())
            if not bounds:
                raise ParseError(f"malformed hostlist range: {item!r}")
            lo, hi = bounds.groups()
            if hi is None:
                hosts.append(f"{prefix}{lo}{suffix}")
                continue
            if int(hi) < int(lo):
                raise ParseError(f"descending hostlist range: {item!r}")
            width = len(lo)
            for n in range(int(lo), int(hi) + 1):
                hosts.append(f"{prefix}{str(n).zfill(width)}{suffix}")
    return tuple(hosts)


def parse_exit_code(value: str) -> Optional[int]:
    """Parse ``code:signal``; a signal-only termination maps to 128+signal."""
    value = value.strip()
    if not value:
        return None
    code, _, signal = value.partition(":")
    try:
        exit_code = int(code)
        if exit_code == 0 and signal and int(signal) > 0:
            return 128 + int(signal)
        return exit_code
    except ValueError:
        return None


def _normalize_title(title: str) -> str:
    return title.strip().upper().replace(" ", "")


def _is_header(line: str, delimiter: Optional[str]) -> bool:
    cells = line.split(delimiter) if delimiter else line.split()
    return any(FIELD_ALIASES.get(_normalize_title(c)) == "job_id" for c in cells)


def _unparsable(line: str, observed_at: datetime, source: str) -> Observation:
    match = LEADING_ID_PATTERN.match(line)
    return Observation(
        remote_job_id=match.group(1) if match else None,
        observed_at=observed_at,
        status=JobStatus.UNKNOWN,
        raw_state="",
        extra=(("raw", line),),
        source=source,
        tags=frozenset({TAG_UNPARSABLE}),
    )


def _parse_row(columns: List[str], cells: List[str], observed_at: datetime, source: str) -> Observation:
    if len(cells) != len(columns):
        raise ParseError(f"expected {len(columns)} columns, got {len(cells)}")

    modeled: Dict[str, str] = {}
    extra: List[Tuple[str, str]] = []
    for title, cell in zip(columns, cells):
        field = FIELD_ALIASES.get(title)
        if field:
            modeled[field] = cell.strip()
        else:
            extra.append((title.lower(), cell.strip()))

    job_id = modeled.get("job_id", "")
    if not JOB_ID_PATTERN.match(job_id):
        raise ParseError(f"invalid job id: {job_id!r}")
    raw_state = modeled.get("state", "")
    if not raw_state:
        raise ParseError("missing state")

    extra_items = tuple(extra)
    return Observation(
        remote_job_id=job_id,
        observed_at=observed_at,
        status=map_state(raw_state),
        raw_state=raw_state,
        elapsed_s=parse_duration(modeled.get("elapsed", "")),
        assigned_nodes=expand_hostlist(modeled.get("nodes", "")),
        exit_code=parse_exit_code(modeled.get("exit_code", "")),
        extra=extra_items,
        fingerprint=fingerprint_of(extra_items),
        source=source,
    )


def parse(raw_text: str, observed_at: datetime, source: str = "remote") -> List[Observation]:
    """
    Parse queue-query output into Observation candidates.

    Args:
        raw_text: squeue or sacct output, with or without a header row
        observed_at: Local time the query completed
        source: "remote" for squeue, "accounting" for sacct

    Returns:
        One candidate per data line, in input order. Job-step rows from
        sacct (``123.batch``) are skipped.
    """
    lines = [line for line in raw_text.splitlines() if line.strip()]
    if not lines:
        return []

    delimiter: Optional[str] = "|" if "|" in lines[0] else None
    if _is_header(lines[0], delimiter):
        header_cells = lines[0].split(delimiter) if delimiter else lines[0].split()
        columns = [_normalize_title(c) for c in header_cells]
        data_lines = lines[1:]
    else:
        columns = list(DEFAULT_COLUMNS)
        data_lines = lines
        delimiter = "|"

    candidates: List[Observation] = []
    for line in data_lines:
        cells = line.split(delimiter) if delimiter else line.split()
        try:
            obs = _parse_row(columns, cells, observed_at, source)
        except ValueError as e:
            # ParseError, or a cell helper choking on text it did not expect
            logger.warning(f"Unparsable queue line ({e}): {line[:100]}")
            candidates.append(_unparsable(line, observed_at, source))
            continue
        if "." in obs.remote_job_id:
            continue
        candidates.append(obs)
    return candidates
