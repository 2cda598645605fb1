"""
Live progress for the Current job.

The poller races four sources with a single asyncio.wait(FIRST_COMPLETED):

- the completion event, set by the driver when the backend call returns
- the job's interrupt channel
- a periodic tick that queries /sdapi/v1/progress and edits the reply
- an absolute timeout armed once when polling starts

When more than one is ready at the same time the winner is picked at random.
"""
from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Callable, Optional, Set

import psutil

from imagine import chat as chat_mod
from imagine.chat import ChatSession, Reply
from imagine.job_queue import Job
from imagine.messages import format_bytes, readable_memory
from shared.schemas import ProgressResponse

log = logging.getLogger("imagine.progress")

TICK_INTERVAL_S = 1.0
TIMEOUT_S = 300.0

# (progress, ram readout, vram readout) -> reply
RenderFn = Callable[[ProgressResponse, Optional[str], Optional[str]], Reply]


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


def local_ram() -> Optional[str]:
    try:
        mem = psutil.virtual_memory()
    except Exception as e:
        log.debug("psutil memory read failed: %s", e)
        return None
    return f"{format_bytes(mem.used)} / {format_bytes(mem.total)}"


class ProgressPoller:
    def __init__(
        self,
        backend,
        chat: ChatSession,
        job: Job,
        render: RenderFn,
        tick_interval: float = TICK_INTERVAL_S,
        timeout: float = TIMEOUT_S,
        token: Optional[str] = None,
    ):
        self.backend = backend
        self.chat = chat
        self.job = job
        self.render = render
        self.tick_interval = tick_interval
        self.timeout = timeout
        self.token = token
        self.ticks = 0
        self.edits = 0

    @property
    def interaction(self):
        return self.job.interaction

    async def run(self, done: asyncio.Event) -> PollOutcome:
        interrupts = self.job.interrupt_channel()
        loop = asyncio.get_running_loop()
        done_task = loop.create_task(done.wait())
        interrupt_task = loop.create_task(interrupts.get())
        timeout_task = loop.create_task(asyncio.sleep(self.timeout))
        pending: Set[asyncio.Task] = {done_task, interrupt_task, timeout_task}
        try:
            while True:
                tick_task = loop.create_task(asyncio.sleep(self.tick_interval))
                pending.add(tick_task)
                ready, _ = await asyncio.wait(
                    {done_task, interrupt_task, timeout_task, tick_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                fired = random.choice(list(ready))
                if fired is not tick_task:
                    tick_task.cancel()
                pending.discard(tick_task)

                if fired is done_task:
                    return PollOutcome.COMPLETED
                if fired is interrupt_task:
                    return await self._on_interrupt()
                if fired is timeout_task:
                    return await self._on_timeout()

                outcome = await self._on_tick()
                if outcome is not None:
                    return outcome
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()

    async def _on_tick(self) -> Optional[PollOutcome]:
        self.ticks += 1
        try:
            progress = await self.backend.get_progress()
        except Exception as e:
            log.warning("Error getting current progress: %s", e)
            await self._report(f"Error getting current progress: {e}")
            return PollOutcome.FAILED

        if progress.progress == 0:
            return None

        ram, vram = await self._memory()
        try:
            await self.chat.edit_reply(self.interaction, self.render(progress, ram, vram))
        except Exception as e:
            log.warning("Error editing progress for %s: %s", self.job.handle, e)
            await self._report(f"Error updating progress: {e}")
            return PollOutcome.FAILED
        self.edits += 1
        return None

    async def _memory(self):
        ram = vram = None
        try:
            mem = await self.backend.get_memory()
            ram = readable_memory(mem.ram)
            vram = readable_memory((mem.cuda or {}).get("system"))
        except Exception as e:
            log.debug("Error getting memory: %s", e)
        return ram or local_ram(), vram

    async def _on_interrupt(self) -> PollOutcome:
        try:
            await self.backend.interrupt()
        except Exception as e:
            log.warning("Error interrupting %s: %s", self.job.handle, e)
            await self._report(f"Error interrupting: {e}")
            return PollOutcome.FAILED

        try:
            await self.chat.edit_reply(
                self.interaction,
                Reply(
                    content="Generation Interrupted",
                    components=[chat_mod.BUTTONS[chat_mod.DELETE_GENERATION]],
                ),
            )
        except Exception as e:
            log.warning("Error replying to interrupt for %s: %s", self.job.handle, e)
        return PollOutcome.INTERRUPTED

    async def _on_timeout(self) -> PollOutcome:
        log.warning("Timeout reached for %s after %.0fs", self.job.handle, self.timeout)
        await self._report("Timeout reached")
        return PollOutcome.TIMED_OUT

    async def _report(self, message: str) -> None:
        try:
            await self.chat.error(self.interaction, message, token=self.token)
        except Exception as e:
            log.error("Could not deliver error reply to %s: %s", self.job.handle, e)
