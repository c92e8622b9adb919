# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the slurry CLI."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conftest import FakeChannel, squeue_output
from slurry.channel import ChannelError, ChannelErrorKind
from slurry.cli import app

runner = CliRunner()

SPEC_YAML = """\
name: hello
command: echo hello
resources:
  cpus: 2
  time_limit: "00:05:00"
"""


@pytest.fixture
def spec_file(tmp_path):
    path = tmp_path / "hello.yaml"
    path.write_text(SPEC_YAML)
    return path


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "hosts:\n"
        "  default:\n"
        "    local: true\n"
        "poller:\n"
        "  interval_s: 0.01\n"
        "  max_workers: 1\n"
        f"journal_path: {tmp_path / 'events.jsonl'}\n"
        f"state_dir: {tmp_path / 'state'}\n"
    )
    return path


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "slurry version 0.1.0" in result.output


class TestRender:
    """Tests for slurry render."""

    def test_render_is_deterministic(self, spec_file):
        """Test the same --now renders the same script twice."""
        args = ["render", str(spec_file), "--now", "2025-03-01T12:00:00+00:00"]
        first = runner.invoke(app, args)
        second = runner.invoke(app, args)

        assert first.exit_code == 0
        assert first.output == second.output
        assert first.output.startswith("# sbatch --parsable ~/")
        assert "#SBATCH --job-name=hello" in first.output
        assert "#SBATCH --cpus-per-task=2" in first.output

    def test_render_invalid_spec(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: bad\ncommand: ''\n")

        result = runner.invoke(app, ["render", str(path)])

        assert result.exit_code == 1
        assert "Invalid spec" in result.output

    def test_render_missing_file(self, tmp_path):
        result = runner.invoke(app, ["render", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1

    def test_render_bad_now(self, spec_file):
        result = runner.invoke(app, ["render", str(spec_file), "--now", "yesterday"])
        assert result.exit_code == 1


class TestConfigValidate:
    """Tests for slurry config validate."""

    def test_valid_config(self, config_file):
        result = runner.invoke(app, ["config", "validate", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration structure is valid" in result.output
        assert "Host default: local" in result.output
        assert "Configuration validation complete!" in result.output

    def test_global_config_option(self, config_file):
        """Test the top-level --config is picked up."""
        result = runner.invoke(app, ["--config", str(config_file), "config", "validate"])
        assert result.exit_code == 0

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("poller:\n  interval_s: -1\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["config", "validate", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Error" in result.output


class TestQueue:
    """Tests for slurry queue."""

    def test_json_snapshot(self, config_file, tmp_path):
        """Test the queue is parsed and printed one JSON object per job."""
        channel = FakeChannel()
        channel.squeue = [squeue_output([
            ("11", "RUNNING", "1:00", "node[1-2]", "train", "gpu"),
            ("12", "PENDING", "0:00", "(Priority)", "eval", "cpu"),
        ])]
        save_dir = tmp_path / "snapshots"

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, [
                "--config", str(config_file), "queue", "--format", "json", "--save", str(save_dir),
            ])

        assert result.exit_code == 0
        rows = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
        assert [r["job_id"] for r in rows] == ["11", "12"]
        assert rows[0]["status"] == "running"
        assert rows[0]["name"] == "train"
        assert channel.closed
        assert len(list(save_dir.glob("queue-default-*.json"))) == 1

    def test_table_snapshot(self, config_file):
        channel = FakeChannel()
        channel.squeue = [squeue_output([("11", "RUNNING", "1:00", "node1", "train", "gpu")])]

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, ["--config", str(config_file), "queue"])

        assert result.exit_code == 0
        assert "job_id" in result.output
        assert "train" in result.output

    def test_channel_down(self, config_file):
        channel = FakeChannel()
        channel.squeue = [ChannelError(ChannelErrorKind.CONNECTION_LOST, "no route")]

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, ["--config", str(config_file), "queue"])

        assert result.exit_code == 1
        assert "connection_lost" in result.output

    def test_unknown_host(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "queue", "--host", "hpc"])
        assert result.exit_code == 1
        assert "unknown host" in result.output


class TestRun:
    """Tests for slurry run against a fake cluster."""

    def test_run_to_completion(self, config_file, spec_file, tmp_path):
        """Test submit, poll to completion, print the trace and export."""
        channel = FakeChannel()
        channel.squeue = [squeue_output([("1234", "COMPLETED", "0:10", "node1", "hello", "p")])]
        export_path = tmp_path / "log.json"
        ocel_path = tmp_path / "ocel.json"

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, [
                "--config", str(config_file), "run", str(spec_file),
                "--export", str(export_path), "--ocel", str(ocel_path), "--group-by", "name",
            ])

        assert result.exit_code == 0, result.output
        assert "Submitted hello as job 1234" in result.output
        assert "Job hello (1234): completed" in result.output
        assert "pending -> completed" in result.output
        assert list(json.loads(export_path.read_text())["traces"]) == ["hello"]
        assert json.loads(ocel_path.read_text())["objects"]
        assert "submitted" in (tmp_path / "events.jsonl").read_text()

    def test_run_failed_job_exits_nonzero(self, config_file, spec_file):
        channel = FakeChannel()
        channel.squeue = [squeue_output([("1234", "FAILED", "0:10", "node1", "hello", "p")])]

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, ["--config", str(config_file), "run", str(spec_file)])

        assert result.exit_code == 1
        assert "Job hello (1234): failed" in result.output

    def test_run_submission_rejected(self, config_file, spec_file):
        channel = FakeChannel()
        channel.sbatch = ChannelError(ChannelErrorKind.AUTH_FAILURE, "denied")

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, ["--config", str(config_file), "run", str(spec_file)])

        assert result.exit_code == 1
        assert "Submission failed" in result.output

    def test_run_bad_grouping(self, config_file, spec_file):
        result = runner.invoke(app, ["--config", str(config_file), "run", str(spec_file), "--group-by", "color"])
        assert result.exit_code == 1
        assert "unknown grouping" in result.output

    def test_run_lost_job_finishes(self, config_file, spec_file):
        """Test run returns when a job leaves the queue without an accounting record."""
        channel = FakeChannel()

        with patch("slurry.cli.channel_for", return_value=channel):
            result = runner.invoke(app, ["--config", str(config_file), "run", str(spec_file)])

        assert result.exit_code == 1
        assert "Job hello (1234): unknown" in result.output
        assert "left the queue with no accounting record" in result.output


class TestRenderShapes:
    """Tests for badly shaped spec files."""

    def test_render_env_list(self, tmp_path):
        """Test an env list is reported as an invalid spec, not a crash."""
        path = tmp_path / "job.yaml"
        path.write_text("name: a\ncommand: x\nenv:\n  - A=1\n")

        result = runner.invoke(app, ["render", str(path)])

        assert result.exit_code == 1
        assert "Invalid spec" in result.output
        assert not isinstance(result.exception, AttributeError)
