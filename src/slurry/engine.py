# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Engine - the facade automation tools and UIs talk to.

Wires the builder, channels, registry, poller, event bus and exporter
together behind submit / get_status / list / cancel / subscribe /
export_log. The registry and bus are injected (or built from config);
nothing here is a module-level singleton.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from slurry import builder, exporter
from slurry.channel import ChannelError, LocalChannel, RemoteChannel, SSHChannel
from slurry.config import HostConfig, SlurryConfig
from slurry.events import EventBus, EventJournal, Subscription
from slurry.poller import Poller, utcnow
from slurry.registry import JobRegistry, JsonDirectorySink, UnknownJob
from slurry.schemas import EventKind, JobRecord, JobSpec, JobStatus, Observation, TypedEvent
from slurry.schemas.job import TAG_LOCAL

logger = logging.getLogger(__name__)

__all__ = [
    "AlreadyTerminal",
    "ChannelUnavailable",
    "Engine",
    "SubmissionFailed",
    "UnknownJob",
    "channel_for",
]


class SubmissionFailed(Exception):
    """The remote side rejected a submission, or the channel failed during it."""
    pass


class AlreadyTerminal(Exception):
    """Cancel was requested for a job that already finished."""
    pass


class ChannelUnavailable(Exception):
    """The remote cancel could not be delivered; the local cancel still holds."""
    pass


def channel_for(host: HostConfig, connect_timeout: float = 30.0) -> RemoteChannel:
    """Build the channel described by a host entry."""
    if host.local:
        return LocalChannel(name=host.name)
    return SSHChannel(
        hostname=host.hostname,
        port=host.port,
        username=host.username,
        client_keys=[str(Path(k).expanduser()) for k in host.client_keys] or None,
        known_hosts=str(Path(host.known_hosts).expanduser()) if host.known_hosts else None,
        check_host_keys=host.check_host_keys,
        connect_timeout=connect_timeout,
        name=host.name,
    )


class Engine:
    """Job orchestration facade."""

    def __init__(
        self,
        config: Optional[SlurryConfig] = None,
        channels: Optional[Dict[str, RemoteChannel]] = None,
        registry: Optional[JobRegistry] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or SlurryConfig()
        self.clock = clock or utcnow
        if channels is None:
            channels = {
                name: channel_for(host, self.config.poller.command_timeout_s)
                for name, host in self.config.hosts.items()
            }
        self.channels = channels
        if registry is None:
            sink = JsonDirectorySink(Path(self.config.state_dir)) if self.config.state_dir else None
            registry = JobRegistry(sink=sink)
        self.registry = registry
        if bus is None:
            journal = EventJournal(Path(self.config.journal_path)) if self.config.journal_path else None
            bus = EventBus(journal=journal)
        self.bus = bus
        self.poller = Poller(
            self.registry, self.channels, self.config.poller, bus=self.bus, clock=self.clock
        )
        self._poll_task: Optional[asyncio.Task] = None

    def _channel(self, host: str) -> RemoteChannel:
        try:
            return self.channels[host]
        except KeyError:
            raise SubmissionFailed(f"No channel configured for host: {host}") from None

    # ── Submission ────────────────────────────────────────────────────

    async def submit(self, spec: JobSpec) -> str:
        """
        Validate, upload and submit a job.

        Returns:
            Job handle

        Raises:
            InvalidSpec: Spec failed validation (nothing was sent)
            SubmissionFailed: Remote rejected the job or the channel failed;
                the job is not tracked
        """
        now = self.clock()
        request = builder.build(spec, now, self.config.remote_script_dir)
        channel = self._channel(spec.host)
        timeout = self.config.poller.command_timeout_s

        try:
            script_dir = request.script_path.rsplit("/", 1)[0]
            await channel.execute(f"mkdir -p {builder.shell_path(script_dir)}", timeout=timeout)
            await channel.put_file(request.script, request.script_path)
            result = await channel.execute(request.command, timeout=timeout)
        except ChannelError as e:
            logger.error(f"Submission of {spec.name} to {spec.host} failed: {e}")
            raise SubmissionFailed(f"{spec.name}: {e}") from e

        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
            logger.error(f"sbatch rejected {spec.name}: {message}")
            raise SubmissionFailed(f"{spec.name}: {message}")
        remote_job_id = builder.parse_submit_output(result.stdout)
        if remote_job_id is None:
            raise SubmissionFailed(f"{spec.name}: could not read job id from sbatch output: {result.stdout.strip()!r}")

        handle = self.registry.create(spec, submitted_at=now)
        record = self.registry.assign_remote_id(handle, remote_job_id, submission=request)
        self.bus.publish(TypedEvent(
            event_id=f"{handle}:submitted",
            kind=EventKind.SUBMITTED,
            timestamp=now,
            handle=handle,
            identity=record.identity,
            new_status=JobStatus.PENDING,
        ))
        logger.info(f"Submitted {spec.name} as job {remote_job_id} on {spec.host} (handle {handle})")
        return handle

    # ── Queries ───────────────────────────────────────────────────────

    def get_status(self, handle: str) -> JobRecord:
        """Snapshot of a job record.

        Raises:
            UnknownJob: If the handle was never issued.
        """
        return self.registry.get(handle)

    def list(self, filter: Optional[Callable[[JobRecord], bool]] = None) -> List[str]:
        return self.registry.list(filter)

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel(self, handle: str) -> JobRecord:
        """
        Cancel a tracked job.

        A synthetic Cancelled observation is appended whatever the remote
        outcome; a later real observation either confirms it or is
        recorded as a regression.

        Raises:
            UnknownJob: Unknown handle
            AlreadyTerminal: The job already finished, or finished while
                scancel was in flight
            ChannelUnavailable: scancel could not be delivered (the job is
                still marked cancelled locally)
        """
        record = self.registry.get(handle)
        if record.terminal:
            raise AlreadyTerminal(f"Job {handle} is already {record.status.value}")

        channel_error: Optional[ChannelError] = None
        if record.remote_job_id is not None and record.host in self.channels:
            try:
                result = await self.channels[record.host].execute(
                    f"scancel {record.remote_job_id}",
                    timeout=self.config.poller.command_timeout_s,
                )
                if not result.ok:
                    logger.warning(f"scancel for job {record.remote_job_id} exited with {result.exit_code}")
            except ChannelError as e:
                logger.warning(f"scancel for job {record.remote_job_id} not delivered: {e}")
                channel_error = e

        outcome = self.registry.append_observation(handle, Observation(
            remote_job_id=record.remote_job_id,
            observed_at=self.clock(),
            status=JobStatus.CANCELLED,
            source="local",
            tags=frozenset({TAG_LOCAL}),
        ))
        updated = self.registry.get(handle)
        self.bus.publish_many(
            e for e in exporter.entry_events(updated, outcome.entry) if e.kind != EventKind.SUBMITTED
        )
        if outcome.reason == "terminal":
            # A poll finished the job while scancel was in flight
            raise AlreadyTerminal(f"Job {handle} is already {updated.status.value}")

        if channel_error is not None:
            raise ChannelUnavailable(f"Job {handle} marked cancelled locally, remote cancel failed: {channel_error}")
        return updated

    # ── Events and export ─────────────────────────────────────────────

    def subscribe(self) -> Subscription:
        """Live TypedEvent stream (at-least-once, dedupe on event_id)."""
        return self.bus.subscribe()

    def export(self, handle: str) -> List[TypedEvent]:
        return exporter.export(self.registry.get(handle))

    def export_log(
        self,
        filter: Optional[Callable[[JobRecord], bool]] = None,
        grouping: Optional[Union[str, Callable[[JobRecord], str]]] = None,
    ) -> Dict[str, Any]:
        records = [self.registry.get(h) for h in self.registry.list(filter)]
        return exporter.export_log(records, group_by=grouping)

    def export_ocel(self, filter: Optional[Callable[[JobRecord], bool]] = None) -> Dict[str, Any]:
        records = [self.registry.get(h) for h in self.registry.list(filter)]
        return exporter.to_ocel(records)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Start the poll loop on the running event loop."""
        if self._poll_task is not None and not self._poll_task.done():
            return self._poll_task
        self.poller.reset()
        self._poll_task = asyncio.get_running_loop().create_task(self.poller.run())
        return self._poll_task

    async def stop(self) -> None:
        """Signal the poller and wait for the current cycle to finish."""
        self.poller.stop()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

    def _settled(self, record: JobRecord) -> bool:
        if record.terminal:
            return True
        # Under the "unknown" fallback a job lost from queue and accounting never resolves
        return self.config.poller.missing_fallback == "unknown" and record.lost

    async def wait_until_settled(self, handles: List[str], timeout: Optional[float] = None) -> List[JobRecord]:
        """
        Poll in the foreground until every handle is settled.

        A job is settled once terminal, or once it has gone missing from the
        queue with no accounting record while the missing fallback is
        "unknown".

        Raises:
            asyncio.TimeoutError: If ``timeout`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            await self.poller.poll_once()
            records = [self.registry.get(h) for h in handles]
            if all(self._settled(r) for r in records):
                return records
            delay = self.config.poller.interval_s
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    pending = [r.handle for r in records if not self._settled(r)]
                    raise asyncio.TimeoutError(f"Jobs not settled after {timeout}s: {', '.join(pending)}")
                delay = min(delay, remaining)
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Stop polling, flush the registry and close every channel."""
        await self.stop()
        self.poller.close()
        self.registry.close()
        for channel in self.channels.values():
            await channel.close()
