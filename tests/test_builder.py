# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for builder.py module."""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from slurry.builder import (
    SCRIPT_VERSION,
    InvalidSpec,
    build,
    load_spec_yaml,
    parse_submit_output,
    parse_time_limit,
    script_version_of,
    shell_path,
    validate,
)
from slurry.schemas import JobSpec, ResourceRequest

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_spec(**overrides) -> JobSpec:
    spec = JobSpec(
        name="train",
        command="python train.py --epochs 3",
        resources=ResourceRequest(cpus=4, nodes=2, time_limit="00:10:00", memory="8G", partition="gpu"),
        work_dir="/scratch/me/run1",
        env=(("OMP_NUM_THREADS", "4"), ("RUN_LABEL", "first run")),
        output_path="slurm-%j.out",
    )
    return replace(spec, **overrides)


class TestBuild:
    """Test SubmissionRequest generation."""

    def test_build_is_deterministic(self):
        """Test same spec and timestamp yield identical output."""
        spec = make_spec()
        first = build(spec, NOW)
        second = build(spec, NOW)

        assert first == second
        assert first.script == second.script
        assert first.command == second.command

    def test_timestamp_changes_output(self):
        """Test the render time is an explicit input that shows up in the output."""
        later = datetime(2025, 3, 1, 12, 0, 1, tzinfo=timezone.utc)
        assert build(make_spec(), NOW).script_path != build(make_spec(), later).script_path

    def test_script_contains_directives(self):
        """Test resource directives are rendered."""
        script = build(make_spec(), NOW).script

        assert script.startswith("#!/bin/bash\n")
        assert "#SBATCH --job-name=train" in script
        assert "#SBATCH --nodes=2" in script
        assert "#SBATCH --cpus-per-task=4" in script
        assert "#SBATCH --time=00:10:00" in script
        assert "#SBATCH --mem=8G" in script
        assert "#SBATCH --partition=gpu" in script
        assert "#SBATCH --chdir=/scratch/me/run1" in script
        assert "#SBATCH --output=slurm-%j.out" in script
        assert script.rstrip().endswith("python train.py --epochs 3")

    def test_optional_directives_omitted(self):
        """Test directives for unset fields are not rendered."""
        spec = JobSpec(name="tiny", command="hostname")
        script = build(spec, NOW).script

        assert "--mem" not in script
        assert "--partition" not in script
        assert "--array" not in script
        assert "--chdir" not in script

    def test_env_values_are_quoted(self):
        """Test environment overrides are exported shell-safely."""
        script = build(make_spec(), NOW).script

        assert "export OMP_NUM_THREADS=4" in script
        assert "export RUN_LABEL='first run'" in script

    def test_versioned_header(self):
        """Test the generator version can be read back from the script."""
        request = build(make_spec(), NOW)

        assert request.script_version == SCRIPT_VERSION
        assert script_version_of(request.script) == SCRIPT_VERSION
        assert NOW.isoformat() in request.script

    def test_command_submits_uploaded_script(self):
        """Test the sbatch command points at the upload path."""
        request = build(make_spec(), NOW, script_dir="~/jobs")

        assert request.script_path.startswith("~/jobs/train-20250301T120000")
        assert request.command == f"sbatch --parsable {shell_path(request.script_path)}"
        assert request.command.startswith("sbatch --parsable ~/")

    def test_extra_directives_and_account(self):
        """Test account and raw directives are passed through."""
        spec = make_spec(account="proj42", extra_directives=("--qos=short",))
        script = build(spec, NOW).script

        assert "#SBATCH --account=proj42" in script
        assert "#SBATCH --qos=short" in script

    def test_array_directive(self):
        """Test task array ranges are rendered."""
        spec = make_spec(resources=ResourceRequest(array="0-9%2"))
        assert "#SBATCH --array=0-9%2" in build(spec, NOW).script


class TestValidate:
    """Test spec validation happens before any network use."""

    def test_valid_spec_passes(self):
        """Test a complete spec validates."""
        validate(make_spec())

    def test_empty_command_rejected(self):
        """Test an empty command raises InvalidSpec."""
        with pytest.raises(InvalidSpec) as exc_info:
            build(make_spec(command="   "), NOW)
        assert exc_info.value.field == "command"

    def test_zero_cpus_rejected(self):
        """Test non-positive CPU counts are rejected."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(resources=ResourceRequest(cpus=0)))
        assert exc_info.value.field == "resources.cpus"

    def test_zero_nodes_rejected(self):
        """Test non-positive node counts are rejected."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(resources=ResourceRequest(nodes=0)))
        assert exc_info.value.field == "resources.nodes"

    @pytest.mark.parametrize("limit", ["ten minutes", "1:2:3:4", "", "00:00:00"])
    def test_bad_time_limit_rejected(self, limit):
        """Test malformed or zero time limits are rejected."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(resources=ResourceRequest(time_limit=limit)))
        assert exc_info.value.field == "resources.time_limit"

    def test_bad_memory_rejected(self):
        """Test memory must look like 4G or 512M."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(resources=ResourceRequest(memory="lots")))
        assert exc_info.value.field == "resources.memory"

    def test_bad_array_rejected(self):
        """Test malformed task ranges are rejected."""
        with pytest.raises(InvalidSpec):
            validate(make_spec(resources=ResourceRequest(array="a-b")))

    def test_name_with_spaces_rejected(self):
        """Test job names must be path-safe."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(name="my job"))
        assert exc_info.value.field == "name"

    def test_bad_env_key_rejected(self):
        """Test environment names must be shell identifiers."""
        with pytest.raises(InvalidSpec) as exc_info:
            validate(make_spec(env=(("1BAD", "x"),)))
        assert exc_info.value.field == "env"

    def test_multiline_directive_rejected(self):
        """Test directives cannot inject extra lines."""
        with pytest.raises(InvalidSpec):
            validate(make_spec(extra_directives=("--qos=short\nrm -rf /",)))


class TestParseTimeLimit:
    """Test SLURM time limit parsing."""

    @pytest.mark.parametrize("value,seconds", [
        ("10", 600),
        ("10:30", 630),
        ("01:00:00", 3600),
        ("1-0", 86400),
        ("1-02:30", 95400),
        ("2-00:00:10", 172810),
    ])
    def test_forms(self, value, seconds):
        """Test each accepted form."""
        assert parse_time_limit(value) == seconds

    def test_invalid(self):
        """Test garbage raises ValueError."""
        with pytest.raises(ValueError):
            parse_time_limit("soon")


class TestParseSubmitOutput:
    """Test extraction of the remote job id."""

    def test_parsable_output(self):
        assert parse_submit_output("1234\n") == "1234"

    def test_parsable_with_cluster(self):
        assert parse_submit_output("1234;cluster-a\n") == "1234"

    def test_classic_output(self):
        assert parse_submit_output("Submitted batch job 98765\n") == "98765"

    def test_no_id(self):
        assert parse_submit_output("sbatch: error: invalid partition\n") is None


class TestLoadSpecYaml:
    """Test loading job specs from YAML files."""

    def test_single_job(self, tmp_path):
        """Test a file holding one job mapping."""
        path = tmp_path / "job.yaml"
        path.write_text(
            "name: demo\n"
            "command: echo hi\n"
            "cpus: 4\n"
            "nodes: 2\n"
            "time_limit: '00:10:00'\n"
            "env:\n"
            "  B: 2\n"
            "  A: one\n"
        )

        specs = load_spec_yaml(path)

        assert len(specs) == 1
        spec = specs[0]
        assert spec.name == "demo"
        assert spec.resources.cpus == 4
        assert spec.resources.nodes == 2
        assert spec.env == (("A", "one"), ("B", "2"))

    def test_jobs_list(self, tmp_path):
        """Test a file holding several jobs."""
        path = tmp_path / "jobs.yaml"
        path.write_text(
            "jobs:\n"
            "  - name: a\n"
            "    command: echo a\n"
            "  - name: b\n"
            "    command: echo b\n"
            "    resources:\n"
            "      partition: debug\n"
        )

        specs = load_spec_yaml(path)

        assert [s.name for s in specs] == ["a", "b"]
        assert specs[1].resources.partition == "debug"

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_spec_yaml(tmp_path / "nope.yaml")

    def test_unknown_resource_key(self, tmp_path):
        """Test unknown resource keys surface as InvalidSpec."""
        path = tmp_path / "job.yaml"
        path.write_text("name: a\ncommand: x\nresources:\n  gpus: 2\n")

        with pytest.raises(InvalidSpec):
            load_spec_yaml(path)

    @pytest.mark.parametrize("body,field", [
        ("env:\n  - A=1\n", "env"),
        ("resources: big\n", "resources"),
        ("extra_directives: --exclusive\n", "extra_directives"),
    ])
    def test_wrong_shapes(self, tmp_path, body, field):
        """Test mis-shaped sections surface as InvalidSpec naming the field."""
        path = tmp_path / "job.yaml"
        path.write_text("name: a\ncommand: x\n" + body)

        with pytest.raises(InvalidSpec, match=field):
            load_spec_yaml(path)
