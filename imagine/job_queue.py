"""
Single-consumer generation queue.

Jobs wait in a bounded FIFO. A background poll loop promotes the head job to
Current when nothing else is running and hands it to the generation driver
on its own task. Two separate stop mechanisms exist:

- cancel(interaction_id): drops a queued job that has not started yet. The
  id goes into a registry that is checked (and cleared) when the job
  reaches the head of the queue.
- interrupt(interaction): asks the backend to abort the Current job. The
  signal travels through the job's interrupt channel to its progress poller.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set

from imagine.errors import CapacityExceeded, NoActiveJob, ProtocolViolation, ValidationError
from imagine.logging_utils import get_logger
from shared.schemas import (
    Attachment,
    BackendConfig,
    Interaction,
    JobKind,
    JobState,
    RawPayload,
    TextToImageRequest,
)

log = logging.getLogger("imagine.job_queue")

PRIMARY_CAPACITY = 100
SECONDARY_CAPACITY = 24
POLL_INTERVAL_S = 1.0


@dataclass
class Job:
    interaction: Optional[Interaction]
    kind: JobKind = JobKind.NEW_IMAGE
    request: TextToImageRequest = field(default_factory=TextToImageRequest)
    aspect_ratio: str = ""
    # record ordinal for reroll / variation / upscale; 0 is the request as first sent
    interaction_index: int = 0
    checkpoint: Optional[str] = None
    vae: Optional[str] = None
    hypernetwork: Optional[str] = None
    adetailer: str = ""  # "face_yolov8n.pt person_yolov8n-seg.pt"
    attachments: List[Attachment] = field(default_factory=list)
    raw: Optional[RawPayload] = None
    upscale_factor: int = 2
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    position: int = 0
    state: JobState = JobState.QUEUED
    _interrupt: Optional[asyncio.Queue] = field(default=None, init=False, repr=False, compare=False)

    @property
    def handle(self) -> Optional[str]:
        return self.interaction.id if self.interaction else None

    def interrupt_channel(self) -> asyncio.Queue:
        if self._interrupt is None:
            self._interrupt = asyncio.Queue()
        return self._interrupt

    def requested_models(self) -> BackendConfig:
        return BackendConfig(
            sd_model_checkpoint=self.checkpoint,
            sd_vae=self.vae,
            sd_hypernetwork=self.hypernetwork,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "interaction_id": self.handle,
            "kind": self.kind.value,
            "state": self.state.value,
            "position": self.position,
        }


class JobDriver(Protocol):
    async def run(self, job: Job) -> bool: ...


PositionCallback = Callable[[Job], Awaitable[None]]


class JobQueue:
    def __init__(
        self,
        driver: JobDriver,
        capacity: int = PRIMARY_CAPACITY,
        poll_interval: float = POLL_INTERVAL_S,
        name: str = "primary",
        on_position: Optional[PositionCallback] = None,
    ):
        if capacity < 1:
            raise ValueError("queue capacity must be at least 1")
        self.driver = driver
        self.capacity = capacity
        self.poll_interval = poll_interval
        self.name = name
        self.on_position = on_position
        self.logger = get_logger()

        self._lock = threading.Lock()
        self._pending: Deque[Job] = deque()
        self._current: Optional[Job] = None
        self._cancelled: Dict[str, bool] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self._waiting = False

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def current(self) -> Optional[Job]:
        with self._lock:
            return self._current

    @property
    def state(self) -> str:
        return "idle" if self.current is None else "draining"

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            current = self._current.summary() if self._current else None
            pending = [job.summary() for job in self._pending]
            cancelled = sorted(self._cancelled)
        return {
            "name": self.name,
            "state": "idle" if current is None else "draining",
            "capacity": self.capacity,
            "length": len(pending),
            "current": current,
            "pending": pending,
            "cancelled": cancelled,
        }

    # ------------------------------------------------------------------
    # producer side
    # ------------------------------------------------------------------
    def enqueue(self, job: Job) -> int:
        """Append ``job``; returns its 1-based place in line."""
        if job.interaction is None:
            raise ValidationError("job has no interaction to reply to")

        with self._lock:
            if len(self._pending) >= self.capacity:
                raise CapacityExceeded(self.capacity)
            job.state = JobState.QUEUED
            self._pending.append(job)
            job.position = len(self._pending)
            position = job.position

        self.logger.info(
            "job_enqueued",
            job_id=job.handle,
            queue=self.name,
            kind=job.kind.value,
            position=position,
        )
        return position

    def cancel(self, interaction_id: str) -> bool:
        """Mark a not-yet-started job as cancelled.

        Returns False, leaving the registry untouched, unless a queued job
        carries ``interaction_id``. The Current job can only be interrupted.
        """
        with self._lock:
            queued = any(job.handle == interaction_id for job in self._pending)
            if queued:
                self._cancelled[interaction_id] = True

        if not queued:
            log.info("No queued job for %s, nothing to cancel", interaction_id)
            return False

        self.logger.info("job_cancel_requested", job_id=interaction_id, queue=self.name)
        return True

    def interrupt(self, interaction: Interaction) -> Job:
        with self._lock:
            job = self._current
        if job is None:
            raise NoActiveJob()

        log.info("Interrupting generation #%s", job.handle)
        job.interrupt_channel().put_nowait(interaction)
        return job

    # ------------------------------------------------------------------
    # consumer side
    # ------------------------------------------------------------------
    async def run(self) -> None:
        """Poll loop; returns once stop() is called."""
        self._stop.clear()
        log.info("Polling %s queue every %.1fs", self.name, self.poll_interval)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.tick()
            except Exception as e:
                self.logger.error(
                    "queue_tick_failed",
                    queue=self.name,
                    error=str(e),
                    stack_trace=traceback.format_exc(),
                )
        log.info("Polling %s queue stopped", self.name)

    def stop(self) -> None:
        self._stop.set()

    def tick(self) -> Optional[Job]:
        """One poll period: promote the next job if nothing is running."""
        if self.current is None:
            self._waiting = False
            return self._pull_next()
        if not self._waiting:
            log.info("Waiting for current job to finish...")
            self._waiting = True
        return None

    def _pull_next(self) -> Optional[Job]:
        while True:
            with self._lock:
                if self._current is not None:
                    violation = ProtocolViolation(
                        f"tried to pull the next job while {self._current.handle} is still current"
                    )
                    log.warning("Protocol violation: %s", violation)
                    return None
                if not self._pending:
                    return None

                job = self._pending.popleft()
                if job.interaction is None:
                    job.state = JobState.FAILED
                elif self._cancelled.pop(job.interaction.id, False):
                    job.state = JobState.CANCELLED
                else:
                    job.state = JobState.CURRENT
                    job.position = 0
                    self._current = job
                moved = self._reposition_locked()

            self._notify_positions(moved)

            if job.state is JobState.FAILED:
                violation = ProtocolViolation("dequeued a job without an interaction; it can never be replied to")
                self.logger.error("protocol_violation", queue=self.name, job_uid=job.id, error=str(violation))
                continue
            if job.state is JobState.CANCELLED:
                self.logger.info("job_cancelled", job_id=job.handle, queue=self.name)
                continue

            self.logger.info("job_dequeued", job_id=job.handle, queue=self.name, kind=job.kind.value)
            self._spawn(self._process(job))
            return job

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, job: Job) -> None:
        ok = False
        try:
            ok = await self.driver.run(job)
        except Exception as e:
            self.logger.error(
                "job_crashed",
                job_id=job.handle,
                queue=self.name,
                error=str(e),
                stack_trace=traceback.format_exc(),
            )
        finally:
            self.done(ok)

    def done(self, ok: bool = True) -> None:
        """Release the Current slot; the only way back to idle."""
        with self._lock:
            finished, self._current = self._current, None
            moved = self._reposition_locked()

        if finished is not None:
            finished.state = JobState.COMPLETED if ok else JobState.FAILED
            self.logger.info(
                "job_done",
                job_id=finished.handle,
                queue=self.name,
                state=finished.state.value,
            )
        self._notify_positions(moved)

    def _reposition_locked(self) -> List[Job]:
        moved = []
        for index, job in enumerate(self._pending, start=1):
            if job.position != index:
                job.position = index
                moved.append(job)
        return moved

    def _notify_positions(self, jobs: List[Job]) -> None:
        if self.on_position is None:
            return
        for job in jobs:
            self._spawn(self._safe_notify(job))

    async def _safe_notify(self, job: Job) -> None:
        try:
            await self.on_position(job)
        except Exception as e:
            log.warning("Could not update place in line for %s: %s", job.handle, e)

    async def join(self) -> None:
        """Wait for every in-flight job task and notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
