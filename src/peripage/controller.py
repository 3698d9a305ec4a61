"""
Print Job Controller.

Runs one print end to end: encode the raster, chunk it to the session MTU,
send the packets in order and drain the session. Jobs on the same session
run one at a time; failures and cancellation end the job without closing
the session, leaving that decision to the caller.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from .chunker import FrameChunker
from .encoder import EncoderOptions, RasterEncoder
from .errors import (
    ConfigError,
    EncodingError,
    SessionBusyError,
    TransportError,
)
from .models import MonochromeRaster
from .protocol import Packet
from .session import TransportSession


class JobStatus(Enum):
    """Job lifecycle; the last three are terminal."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class JobProgress:
    """Snapshot of a job's progress."""
    job_id: int
    bytes_acked: int
    total_bytes: int
    packets_acked: int = 0
    total_packets: int = 0

    @property
    def fraction(self) -> float:
        if self.total_bytes == 0:
            return 0.0
        return self.bytes_acked / self.total_bytes


ProgressCallback = Callable[[JobProgress], None]


@dataclass
class PrintJob:
    """
    One print request bound to a session.

    ``bytes_acked`` only grows and stays readable after a failure, so
    callers can see how far the job got.
    """
    job_id: int
    raster: MonochromeRaster = field(repr=False)
    session: TransportSession = field(repr=False)
    status: JobStatus = JobStatus.QUEUED
    total_bytes: int = 0
    total_packets: int = 0
    bytes_acked: int = 0
    packets_acked: int = 0
    reason: str = ""
    error_kind: Optional[str] = None
    error: Optional[Exception] = field(default=None, repr=False)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def result(self) -> Optional[JobStatus]:
        """Terminal status, or None while the job is queued or running."""
        return self.status if self.status in TERMINAL_STATUSES else None

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCESS

    def progress(self) -> JobProgress:
        return JobProgress(
            job_id=self.job_id,
            bytes_acked=self.bytes_acked,
            total_bytes=self.total_bytes,
            packets_acked=self.packets_acked,
            total_packets=self.total_packets,
        )

    def _finish(self, status: JobStatus, reason: str = "",
                error: Optional[Exception] = None):
        self.status = status
        self.reason = reason
        self.error = error
        if isinstance(error, TransportError):
            self.error_kind = error.kind.value
        elif error is not None:
            self.error_kind = type(error).__name__


@dataclass
class _JobHandle:
    job: PrintJob
    progress: Optional[ProgressCallback] = None
    timeout: Optional[float] = None
    task: Optional[asyncio.Task] = None
    subscribers: list = field(default_factory=list)


class PrintJobController:
    """Orchestrates print jobs over transport sessions."""

    def __init__(self, options: EncoderOptions = None):
        self.encoder = RasterEncoder(options)
        self._jobs: dict[int, _JobHandle] = {}
        self._ids = itertools.count(1)
        self._debug = False

    def set_debug(self, enabled: bool):
        """Enable/disable debug output."""
        self._debug = enabled

    def _log(self, message: str):
        """Print debug message if enabled."""
        if self._debug:
            print(f"[Peripage] {message}")

    # ---- Direct API ----

    async def print_image(
        self,
        raster: MonochromeRaster,
        session: TransportSession,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> PrintJob:
        """
        Print a raster and wait for the job to end.

        Args:
            raster: Image to print
            session: Connected session (queued behind any running job)
            progress: Called after every confirmed packet
            cancel: Event checked before every packet; set it to cancel
            timeout: Per-wait timeout overriding the session's packet timeout

        Returns:
            The finished PrintJob (SUCCESS, FAILED or CANCELLED)

        Raises:
            SessionBusyError: Session busy and its busy policy is "fail"
        """
        self._check_busy(session)
        handle = self._new_job(raster, session, progress, timeout)
        if cancel is not None:
            handle.job.cancel_event = cancel
        await self._run(handle)
        return handle.job

    # ---- Submission API ----

    def submit_job(
        self,
        raster: MonochromeRaster,
        session: TransportSession,
        progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Start a job in the background and return its id.

        Must be called from a running event loop.

        Raises:
            SessionBusyError: Session busy and its busy policy is "fail"
        """
        self._check_busy(session)
        handle = self._new_job(raster, session, progress, timeout)
        handle.task = asyncio.get_running_loop().create_task(self._run(handle))
        return handle.job.job_id

    def get_job(self, job_id: int) -> PrintJob:
        return self._handle(job_id).job

    async def get_result(self, job_id: int) -> PrintJob:
        """Wait for a job to end and return it."""
        handle = self._handle(job_id)
        if handle.task is not None:
            await handle.task
        return handle.job

    def cancel(self, job_id: int) -> bool:
        """
        Request cancellation; takes effect before the job's next packet.

        Returns:
            False if the job had already ended
        """
        job = self._handle(job_id).job
        if job.done:
            return False
        job.cancel_event.set()
        return True

    async def subscribe_progress(self, job_id: int) -> AsyncIterator[JobProgress]:
        """Yield progress snapshots until the job ends (final snapshot included)."""
        handle = self._handle(job_id)
        if handle.job.done:
            yield handle.job.progress()
            return

        queue: asyncio.Queue = asyncio.Queue()
        handle.subscribers.append(queue)
        try:
            yield handle.job.progress()
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            handle.subscribers.remove(queue)

    # ---- Internals ----

    def _handle(self, job_id: int) -> _JobHandle:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Unknown job id: {job_id}") from None

    def _new_job(self, raster, session, progress, timeout) -> _JobHandle:
        job = PrintJob(job_id=next(self._ids), raster=raster, session=session)
        handle = _JobHandle(job=job, progress=progress, timeout=timeout)
        self._jobs[job.job_id] = handle
        return handle

    def _check_busy(self, session: TransportSession):
        if session.config.busy_policy != "fail":
            return
        pending = any(
            h.job.session is session and not h.job.done
            for h in self._jobs.values()
        )
        if session.is_busy or pending:
            raise SessionBusyError(f"Session {session.address} is busy with another job")

    def _report(self, handle: _JobHandle):
        snapshot = handle.job.progress()
        if handle.progress:
            handle.progress(snapshot)
        for queue in handle.subscribers:
            queue.put_nowait(snapshot)

    async def _run(self, handle: _JobHandle):
        job = handle.job
        try:
            async with job.session.job_lock:
                await self._execute(handle)
        finally:
            if not job.done:
                job._finish(JobStatus.FAILED, "Job did not complete")
            self._log(f"Job {job.job_id} {job.status.value}"
                      f"{': ' + job.reason if job.reason else ''}")
            for queue in handle.subscribers:
                queue.put_nowait(None)

    async def _execute(self, handle: _JobHandle):
        job = handle.job
        session = job.session
        job.status = JobStatus.RUNNING

        try:
            frames = self.encoder.encode(job.raster)
            packets = FrameChunker(frames, session.mtu)
        except (EncodingError, ConfigError) as e:
            job._finish(JobStatus.FAILED, str(e), e)
            return

        job.total_bytes = packets.total_bytes
        job.total_packets = len(packets)
        self._log(f"Job {job.job_id}: {len(frames)} frames, "
                  f"{job.total_bytes} bytes in {job.total_packets} packets")
        self._report(handle)

        def on_ack(packet: Packet):
            job.bytes_acked += len(packet)
            job.packets_acked += 1
            self._report(handle)

        try:
            for packet in packets:
                if job.cancel_event.is_set():
                    # Packets already written still belong to this job
                    await session.settle(timeout=handle.timeout, on_ack=on_ack)
                    job._finish(
                        JobStatus.CANCELLED,
                        f"Cancelled after {job.packets_acked} of {job.total_packets} packets",
                    )
                    return
                await session.send(packet, timeout=handle.timeout, on_ack=on_ack)

            await session.drain(timeout=handle.timeout, on_ack=on_ack)
        except TransportError as e:
            job._finish(JobStatus.FAILED, str(e), e)
            return

        job._finish(JobStatus.SUCCESS)
