# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Poller - the explicit scheduling loop behind job tracking.

One cycle:
1. Group the registry's active jobs by host
2. Run one batched squeue per host (hosts in parallel, one command at a
   time per channel)
3. Parse, match candidates to handles by remote id, and fan appends out
   over a thread pool
4. Count consecutive misses; flag MissingFromQueue and ask sacct only
   for flagged jobs
5. Publish the typed events of every stored entry

Channel failures only fail that host's attempt. The host then backs off
exponentially and a channel_health event is published once it has
failed health_threshold times in a row.
"""

import asyncio
import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from slurry.channel import ChannelError, CommandResult, RemoteChannel
from slurry.config import PollerConfig
from slurry.events import EventBus
from slurry.exporter import entry_events
from slurry.parser import parse, sacct_command, squeue_command
from slurry.registry import JobRegistry
from slurry.schemas import AnomalyKind, AppendOutcome, EventKind, JobRecord, JobStatus, Observation, TypedEvent
from slurry.schemas.job import TAG_FALLBACK, TAG_MISSING, TAG_UNPARSABLE

logger = logging.getLogger(__name__)

# squeue exits non-zero when none of the requested ids are still queued
INVALID_ID_MARKER = "Invalid job id"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HostHealth:
    """Backoff state for one host."""
    failures: int = 0
    next_attempt: float = 0.0
    healthy: bool = True
    last_error: Optional[str] = None


@dataclass
class CycleReport:
    """Summary of one poll cycle."""
    started_at: datetime
    polled: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    appended: int = 0
    rejected: int = 0
    unmatched: int = 0
    missing: List[str] = field(default_factory=list)
    resolved: List[str] = field(default_factory=list)
    events: int = 0


class Poller:
    """Periodically reconciles tracked jobs against the remote queues."""

    def __init__(
        self,
        registry: JobRegistry,
        channels: Dict[str, RemoteChannel],
        config: Optional[PollerConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.channels = channels
        self.config = config or PollerConfig()
        self.bus = bus
        self.clock = clock or utcnow
        self.monotonic = monotonic
        self.health: Dict[str, HostHealth] = defaultdict(HostHealth)
        self._missing: Dict[str, int] = defaultdict(int)
        self._flagged: Set[str] = set()
        self._released: Set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="slurry-append"
        )
        self._stop_event = asyncio.Event()
        self.cycles = 0

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def run(self) -> None:
        """Poll until stop() is called. The stop signal is seen between cycles."""
        logger.info(f"Poller started (interval {self.config.interval_s}s, hosts: {', '.join(self.channels)})")
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception(f"Poll cycle {self.cycles} failed, continuing")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Poller stopped after {self.cycles} cycles")

    def stop(self) -> None:
        self._stop_event.set()

    def reset(self) -> None:
        """Clear a previous stop signal so run() can be started again."""
        self._stop_event.clear()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    # ── One cycle ─────────────────────────────────────────────────────

    async def poll_once(self) -> CycleReport:
        """Run a single poll cycle across all hosts with active jobs."""
        report = CycleReport(started_at=self.clock())
        self.cycles += 1

        # Locally cancelled jobs stay polled until the remote side agrees
        by_host: Dict[str, List[JobRecord]] = defaultdict(list)
        for record in self.registry.records():
            if record.remote_job_id is None or record.handle in self._released:
                continue
            if not record.terminal or record.unconfirmed_cancel:
                by_host[record.host].append(record)

        now = self.monotonic()
        due = []
        for host, records in by_host.items():
            if self.health[host].next_attempt > now:
                logger.debug(f"[{host}] Backing off, {len(records)} jobs not polled this cycle")
                report.skipped.append(host)
                continue
            due.append((host, records))

        results = await asyncio.gather(
            *(self._poll_host(host, records, report) for host, records in due),
            return_exceptions=True,
        )
        for (host, _), result in zip(due, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                # A crash while handling one host's answer is that host's failed attempt
                logger.error(f"[{host}] Poll crashed: {result!r}", exc_info=result)
                if host in report.polled:
                    report.polled.remove(host)
                self._record_failure(host, f"{type(result).__name__}: {result}", report)

        logger.debug(
            f"Cycle {self.cycles}: {len(report.polled)} hosts polled, {report.appended} accepted, "
            f"{report.rejected} rejected, {len(report.failed)} failed"
        )
        return report

    async def _poll_host(self, host: str, records: List[JobRecord], report: CycleReport) -> None:
        channel = self.channels.get(host)
        if channel is None:
            logger.error(f"[{host}] No channel configured, {len(records)} jobs cannot be polled")
            report.failed[host] = "no channel configured"
            return

        by_remote_id = {r.remote_job_id: r.handle for r in records}
        try:
            result = await channel.execute(
                squeue_command(by_remote_id), timeout=self.config.command_timeout_s
            )
        except ChannelError as e:
            self._record_failure(host, str(e), report)
            return
        if not result.ok and INVALID_ID_MARKER not in result.stderr:
            self._record_failure(host, f"squeue exited with {result.exit_code}", report)
            return
        self._record_success(host, report)
        report.polled.append(host)

        observations = parse(result.stdout if result.ok else "", self.clock())
        candidates = self._match(observations, by_remote_id, report)
        await self._apply_all(candidates, report)

        seen = set(candidates)
        newly_missing = []
        for record in records:
            handle = record.handle
            if handle in seen:
                self._missing.pop(handle, None)
                self._flagged.discard(handle)
                continue
            self._missing[handle] += 1
            if self._missing[handle] != self.config.missing_cycles:
                continue
            if record.terminal:
                # Cancelled locally and gone from the queue: only accounting can confirm it
                self._flagged.add(handle)
            else:
                newly_missing.append(handle)

        if newly_missing:
            missing_obs = {
                handle: [self._missing_observation(handle)] for handle in newly_missing
            }
            await self._apply_all(missing_obs, report, anomaly=AnomalyKind.MISSING_FROM_QUEUE)
            self._flagged.update(newly_missing)
            report.missing.extend(newly_missing)

        flagged = [h for h in by_remote_id.values() if h in self._flagged and h not in seen]
        if flagged:
            await self._lookup_accounting(host, channel, flagged, report)

    def _match(
        self,
        observations: Iterable[Observation],
        by_remote_id: Dict[str, str],
        report: CycleReport,
    ) -> Dict[str, List[Observation]]:
        candidates: Dict[str, List[Observation]] = defaultdict(list)
        for obs in observations:
            handle = by_remote_id.get(obs.remote_job_id) if obs.remote_job_id else None
            if handle is None:
                report.unmatched += 1
                if TAG_UNPARSABLE in obs.tags:
                    logger.warning("Unparsable queue line could not be matched to a tracked job")
                continue
            candidates[handle].append(obs)
        return candidates

    def _missing_observation(self, handle: str) -> Observation:
        record = self.registry.get(handle)
        return Observation(
            remote_job_id=record.remote_job_id,
            observed_at=self.clock(),
            status=JobStatus.UNKNOWN,
            source="poller",
            tags=frozenset({TAG_MISSING}),
        )

    async def _lookup_accounting(
        self,
        host: str,
        channel: RemoteChannel,
        handles: List[str],
        report: CycleReport,
    ) -> None:
        """Ask sacct what became of jobs that left the queue."""
        ids = {self.registry.get(h).remote_job_id: h for h in handles}
        try:
            result = await channel.execute(sacct_command(ids), timeout=self.config.command_timeout_s)
        except ChannelError as e:
            logger.warning(f"[{host}] Accounting lookup failed: {e}")
            result = CommandResult(-1, "", str(e))

        resolved: Dict[str, List[Observation]] = {}
        if result.ok:
            for obs in parse(result.stdout, self.clock(), source="accounting"):
                handle = ids.get(obs.remote_job_id)
                if handle is not None and obs.status.terminal:
                    resolved[handle] = [obs]
        if resolved:
            await self._apply_all(resolved, report)
            for handle in resolved:
                record = self.registry.get(handle)
                if record.terminal and not record.unconfirmed_cancel:
                    self._flagged.discard(handle)
                    self._missing.pop(handle, None)
                    report.resolved.append(handle)
                    logger.info(f"Job {handle} resolved from accounting history")

        unresolved = []
        for handle in handles:
            if handle in resolved:
                continue
            if self.registry.get(handle).terminal:
                # Local cancel with no remote trace left; stop asking
                logger.debug(f"Job {handle} cancelled locally and gone from {host}, no longer polled")
                self._released.add(handle)
                self._flagged.discard(handle)
                self._missing.pop(handle, None)
            else:
                unresolved.append(handle)
        if self.config.missing_fallback != "failed":
            return
        limit = self.config.missing_cycles + self.config.missing_fallback_cycles
        expired = [h for h in unresolved if self._missing[h] >= limit]
        if not expired:
            return
        fallback = {
            handle: [Observation(
                remote_job_id=self.registry.get(handle).remote_job_id,
                observed_at=self.clock(),
                status=JobStatus.FAILED,
                source="local",
                tags=frozenset({TAG_FALLBACK}),
            )]
            for handle in expired
        }
        for handle in expired:
            logger.warning(
                f"Job {handle} missing for {self._missing[handle]} cycles with no accounting record, marking failed"
            )
        await self._apply_all(fallback, report)
        for handle in expired:
            self._flagged.discard(handle)
            self._missing.pop(handle, None)

    # ── Appends ───────────────────────────────────────────────────────

    async def _apply_all(
        self,
        candidates: Dict[str, List[Observation]],
        report: CycleReport,
        anomaly: Optional[AnomalyKind] = None,
    ) -> None:
        """Fan appends for distinct jobs out over the worker pool."""
        if not candidates:
            return
        loop = asyncio.get_running_loop()
        results = await asyncio.gather(*(
            loop.run_in_executor(self._executor, self._apply, handle, observations, anomaly)
            for handle, observations in candidates.items()
        ))
        for outcomes, published in results:
            report.events += published
            for outcome in outcomes:
                if outcome.accepted:
                    report.appended += 1
                else:
                    report.rejected += 1

    def _apply(
        self,
        handle: str,
        observations: List[Observation],
        anomaly: Optional[AnomalyKind],
    ) -> Tuple[List[AppendOutcome], int]:
        """Append one job's candidates in arrival order (runs on a worker thread)."""
        outcomes = []
        published = 0
        for obs in observations:
            outcome = self.registry.append_observation(handle, obs, anomaly=anomaly)
            outcomes.append(outcome)
            if self.bus is not None:
                record = self.registry.get(handle)
                # Submitted is announced by the submitter
                events = [e for e in entry_events(record, outcome.entry) if e.kind != EventKind.SUBMITTED]
                self.bus.publish_many(events)
                published += len(events)
        return outcomes, published

    # ── Health ────────────────────────────────────────────────────────

    def _record_failure(self, host: str, error: str, report: CycleReport) -> None:
        health = self.health[host]
        health.failures += 1
        health.last_error = error
        delay = min(
            self.config.backoff_base_s * (2 ** (health.failures - 1)),
            self.config.backoff_max_s,
        )
        health.next_attempt = self.monotonic() + delay
        report.failed[host] = error
        logger.warning(f"[{host}] Poll failed ({health.failures} in a row): {error}; retrying in {delay:.0f}s")

        if health.healthy and health.failures >= self.config.health_threshold:
            health.healthy = False
            logger.error(f"[{host}] Channel unhealthy after {health.failures} consecutive failures")
            self._publish_health(host, f"{host} unhealthy after {health.failures} failures: {error}")

    def _record_success(self, host: str, report: CycleReport) -> None:
        health = self.health[host]
        if not health.healthy:
            logger.info(f"[{host}] Channel recovered")
            self._publish_health(host, f"{host} recovered")
        self.health[host] = HostHealth()

    def _publish_health(self, host: str, detail: str) -> None:
        if self.bus is None:
            return
        now = self.clock()
        self.bus.publish(TypedEvent(
            event_id=f"channel:{host}:{now.isoformat()}",
            kind=EventKind.CHANNEL_HEALTH,
            timestamp=now,
            detail=detail,
        ))
