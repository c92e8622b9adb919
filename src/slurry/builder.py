# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Builder - Transform a JobSpec into a SubmissionRequest.

Pure and deterministic: the render timestamp is an explicit argument, so
the same (spec, now) pair always yields byte-identical output. All
validation happens here, before anything touches the network.
"""

import re
import shlex
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

import jinja2
import yaml

from slurry.schemas import JobSpec, SubmissionRequest

# Bumped whenever the rendered script layout changes.
SCRIPT_VERSION = 1
SCRIPT_VERSION_MARKER = "# slurry-script-version:"

DEFAULT_SCRIPT_DIR = "~/.slurry/scripts"

TIME_LIMIT_PATTERN = re.compile(
    r"^(?:(?P<days>\d+)-(?P<dh>\d+)(?::(?P<dm>\d+)(?::(?P<ds>\d+))?)?"
    r"|(?P<a>\d+)(?::(?P<b>\d+)(?::(?P<c>\d+))?)?)$"
)
NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
MEMORY_PATTERN = re.compile(r"^\d+[KMGT]?$")
ARRAY_PATTERN = re.compile(r"^\d+(-\d+)?(:\d+)?(,\d+(-\d+)?(:\d+)?)*(%\d+)?$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SUBMITTED_PATTERN = re.compile(r"Submitted batch job (\d+)")
PARSABLE_PATTERN = re.compile(r"^(\d+)(?:;\S+)?$")

SCRIPT_TEMPLATE = """\
#!/bin/bash
{{ marker }} {{ version }}
# slurry-rendered-at: {{ rendered_at }}
#SBATCH --job-name={{ spec.name }}
#SBATCH --nodes={{ res.nodes }}
#SBATCH --cpus-per-task={{ res.cpus }}
#SBATCH --time={{ res.time_limit }}
{% if res.memory %}
#SBATCH --mem={{ res.memory }}
{% endif %}
{% if res.partition %}
#SBATCH --partition={{ res.partition }}
{% endif %}
{% if res.array %}
#SBATCH --array={{ res.array }}
{% endif %}
{% if spec.account %}
#SBATCH --account={{ spec.account }}
{% endif %}
{% if spec.work_dir %}
#SBATCH --chdir={{ spec.work_dir }}
{% endif %}
{% if spec.output_path %}
#SBATCH --output={{ spec.output_path }}
{% endif %}
{% if spec.error_path %}
#SBATCH --error={{ spec.error_path }}
{% endif %}
{% for directive in spec.extra_directives %}
#SBATCH {{ directive }}
{% endfor %}

{% for key, value in spec.env %}
export {{ key }}={{ value | shquote }}
{% endfor %}
{{ spec.command }}
"""


class InvalidSpec(Exception):
    """Raised when a JobSpec fails validation."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    env.filters["shquote"] = shlex.quote
    return env


_TEMPLATE = _environment().from_string(SCRIPT_TEMPLATE)


def parse_time_limit(value: str) -> int:
    """Convert a SLURM time limit string to seconds.

    Accepted forms: MM, MM:SS, HH:MM:SS, D-HH, D-HH:MM, D-HH:MM:SS.

    Raises:
        ValueError: If the string is not a SLURM time limit.
    """
    match = TIME_LIMIT_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"not a SLURM time limit: {value!r}")
    g = match.groupdict()
    if g["days"] is not None:
        return (
            int(g["days"]) * 86400
            + int(g["dh"]) * 3600
            + int(g["dm"] or 0) * 60
            + int(g["ds"] or 0)
        )
    if g["c"] is not None:
        return int(g["a"]) * 3600 + int(g["b"]) * 60 + int(g["c"])
    if g["b"] is not None:
        return int(g["a"]) * 60 + int(g["b"])
    return int(g["a"]) * 60


def _single_line(field: str, value: Optional[str]) -> None:
    if value is not None and ("\n" in value or "\r" in value):
        raise InvalidSpec(field, "must be a single line")


def validate(spec: JobSpec) -> None:
    """Check a JobSpec without any remote round-trip.

    Raises:
        InvalidSpec: On the first offending field.
    """
    if not spec.name or not spec.name.strip():
        raise InvalidSpec("name", "is required")
    if not NAME_PATTERN.match(spec.name):
        raise InvalidSpec("name", f"only letters, digits, dot, dash and underscore allowed, got: {spec.name!r}")
    if not spec.command or not spec.command.strip():
        raise InvalidSpec("command", "is required and cannot be empty")

    res = spec.resources
    if not isinstance(res.cpus, int) or res.cpus < 1:
        raise InvalidSpec("resources.cpus", f"must be a positive integer, got: {res.cpus!r}")
    if not isinstance(res.nodes, int) or res.nodes < 1:
        raise InvalidSpec("resources.nodes", f"must be a positive integer, got: {res.nodes!r}")
    if res.memory is not None and not MEMORY_PATTERN.match(str(res.memory)):
        raise InvalidSpec("resources.memory", f"expected e.g. 4G or 512M, got: {res.memory!r}")
    try:
        seconds = parse_time_limit(str(res.time_limit))
    except ValueError as e:
        raise InvalidSpec("resources.time_limit", str(e))
    if seconds <= 0:
        raise InvalidSpec("resources.time_limit", "must be greater than zero")
    if res.array is not None and not ARRAY_PATTERN.match(str(res.array)):
        raise InvalidSpec("resources.array", f"malformed task range: {res.array!r}")

    for key, _ in spec.env:
        if not ENV_KEY_PATTERN.match(key):
            raise InvalidSpec("env", f"invalid variable name: {key!r}")

    for field_name in ("work_dir", "output_path", "error_path", "account", "host"):
        _single_line(field_name, getattr(spec, field_name))
    _single_line("resources.partition", res.partition)
    for directive in spec.extra_directives:
        _single_line("extra_directives", directive)


def shell_path(path: str) -> str:
    """Quote a path for the remote shell, keeping a leading ~/ expandable."""
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def script_path_for(spec: JobSpec, now: datetime, script_dir: str = DEFAULT_SCRIPT_DIR) -> str:
    """Remote location the rendered script is uploaded to."""
    stamp = now.strftime("%Y%m%dT%H%M%S%f")
    return f"{script_dir.rstrip('/')}/{spec.name}-{stamp}.sbatch"


def render_script(spec: JobSpec, now: datetime) -> str:
    """Render the batch script text for a validated spec."""
    return _TEMPLATE.render(
        marker=SCRIPT_VERSION_MARKER,
        version=SCRIPT_VERSION,
        rendered_at=now.isoformat(),
        spec=spec,
        res=spec.resources,
    )


def build(spec: JobSpec, now: datetime, script_dir: str = DEFAULT_SCRIPT_DIR) -> SubmissionRequest:
    """
    Build the SubmissionRequest for a JobSpec.

    Args:
        spec: Job to submit
        now: Render timestamp (explicit so the transform stays deterministic)
        script_dir: Remote directory for uploaded scripts

    Returns:
        SubmissionRequest with the sbatch command and script text

    Raises:
        InvalidSpec: If the spec fails validation
    """
    validate(spec)
    script_path = script_path_for(spec, now, script_dir)
    return SubmissionRequest(
        command=f"sbatch --parsable {shell_path(script_path)}",
        script=render_script(spec, now),
        script_path=script_path,
        script_version=SCRIPT_VERSION,
        rendered_at=now,
    )


def script_version_of(script: str) -> Optional[int]:
    """Read the generator version back out of a rendered script."""
    for line in script.splitlines()[:5]:
        if line.startswith(SCRIPT_VERSION_MARKER):
            try:
                return int(line[len(SCRIPT_VERSION_MARKER):].strip())
            except ValueError:
                return None
    return None


def parse_submit_output(stdout: str) -> Optional[str]:
    """Extract the remote job id from sbatch output.

    Understands both ``--parsable`` output (``1234`` or ``1234;cluster``)
    and the classic ``Submitted batch job 1234`` line.
    """
    for line in stdout.splitlines():
        line = line.strip()
        match = PARSABLE_PATTERN.match(line)
        if match:
            return match.group(1)
        match = SUBMITTED_PATTERN.search(line)
        if match:
            return match.group(1)
    return None


def load_spec_yaml(path: Path) -> List[JobSpec]:
    """Load job specs from a YAML file.

    The file holds either a single job mapping or ``jobs:`` with a list.

    Raises:
        FileNotFoundError: If the file does not exist.
        InvalidSpec: If an entry cannot be turned into a JobSpec.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Job spec not found: {path}")
    data: Any = yaml.safe_load(path.read_text()) or {}

    entries = data.get("jobs") if isinstance(data, dict) and "jobs" in data else [data]
    if not isinstance(entries, list):
        raise InvalidSpec("jobs", "must be a list")

    specs = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise InvalidSpec("jobs", f"entry must be a mapping, got {type(entry).__name__}")
        for key in ("resources", "env"):
            value = entry.get(key)
            if value is not None and not isinstance(value, dict):
                raise InvalidSpec(key, f"must be a mapping, got {type(value).__name__}")
        extra = entry.get("extra_directives")
        if extra is not None and not isinstance(extra, list):
            raise InvalidSpec("extra_directives", f"must be a list, got {type(extra).__name__}")
        try:
            specs.append(JobSpec.from_dict(entry))
        except TypeError as e:
            raise InvalidSpec("resources", str(e))
    return specs
