# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures: a scriptable fake channel and a controllable clock."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Union

import pytest

from slurry.channel import CommandResult, RemoteChannel
from slurry.registry import JobRegistry

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

SQUEUE_HEADER = "JOBID|STATE|TIME|NODELIST|NAME|PARTITION"


def squeue_output(rows: Sequence[Sequence[str]], header: str = SQUEUE_HEADER) -> str:
    """squeue text with a header line and one pipe-separated line per row."""
    return "\n".join([header] + ["|".join(row) for row in rows]) + "\n"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 30) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeChannel(RemoteChannel):
    """Channel that answers scheduler commands from scripted responses.

    squeue/sacct responses are consumed one per call; each item is stdout
    text, a CommandResult, or an exception to raise.
    """

    def __init__(self, name: str = "default"):
        super().__init__()
        self.name = name
        self.commands: List[str] = []
        self.files: Dict[str, str] = {}
        self.squeue: List[Union[str, CommandResult, Exception]] = []
        self.sacct: List[Union[str, CommandResult, Exception]] = []
        self.sbatch: Union[str, CommandResult, Exception] = "1234\n"
        self.scancel: Optional[Exception] = None
        self.closed = False

    @staticmethod
    def _answer(item) -> CommandResult:
        if isinstance(item, Exception):
            raise item
        if isinstance(item, CommandResult):
            return item
        return CommandResult(0, item, "")

    async def _execute(self, command: str, timeout) -> CommandResult:
        self.commands.append(command)
        if command.startswith("squeue"):
            return self._answer(self.squeue.pop(0) if self.squeue else "")
        if command.startswith("sacct"):
            return self._answer(self.sacct.pop(0) if self.sacct else "")
        if command.startswith("sbatch"):
            return self._answer(self.sbatch)
        if command.startswith("scancel"):
            if self.scancel is not None:
                raise self.scancel
            return CommandResult(0, "", "")
        return CommandResult(0, "", "")

    async def put_file(self, content: str, remote_path: str) -> None:
        self.files[remote_path] = content

    async def get_file(self, remote_path: str) -> str:
        return self.files[remote_path]

    async def close(self) -> None:
        self.closed = True

    def count(self, prefix: str) -> int:
        return sum(1 for c in self.commands if c.startswith(prefix))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def registry():
    return JobRegistry()
