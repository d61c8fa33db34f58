"""Cancellation token for one discussion run.

The run loop hands this token to every suspension point (cooldown sleep,
pause wait, provider call) so that pause, stop, interjection and kill are
observed as soon as they are signalled instead of by polling.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from boardroom.models import ModerationState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Killed(Exception):
    """Raised from a guarded await when the run is killed before it finishes."""


class RunControl:
    def __init__(self, state: ModerationState) -> None:
        self.state = state
        self.killed = False
        self.budget_halted = False
        self._changed = asyncio.Event()
        self._kill_event = asyncio.Event()

    # --- signals -----------------------------------------------------------

    def pause(self) -> None:
        self.state.is_paused = True
        self._wake()

    def resume(self) -> None:
        self.state.is_paused = False
        self._wake()

    def stop(self) -> None:
        self.state.stop_requested = True
        self._wake()

    def interject(self) -> None:
        self.state.interject_requested = True
        self._wake()

    def clear_interjection(self) -> None:
        self.state.interject_requested = False

    def halt_for_budget(self) -> None:
        self.budget_halted = True
        self._wake()

    def kill(self) -> None:
        self.killed = True
        self._kill_event.set()
        self._wake()

    def _wake(self) -> None:
        self._changed.set()

    # --- checks ------------------------------------------------------------

    @property
    def interrupted(self) -> bool:
        """True when the current round must not start another turn."""
        return (
            self.killed
            or self.budget_halted
            or self.state.stop_requested
            or self.state.interject_requested
        )

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds. Returns False if interrupted early."""
        if delay <= 0:
            return not self.interrupted
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            self._changed.clear()
            if self.interrupted:
                return False
            remaining = deadline - loop.time()
            if remaining <= 0:
                return True
            try:
                async with asyncio.timeout(remaining):
                    await self._changed.wait()
            except TimeoutError:
                return not self.interrupted

    async def wait_while_paused(self) -> None:
        """Block while paused; returns early on kill, stop or budget halt."""
        while self.state.is_paused:
            self._changed.clear()
            if self.killed or self.budget_halted or self.state.stop_requested:
                return
            if not self.state.is_paused:
                return
            logger.debug("Run paused, waiting")
            await self._changed.wait()

    async def guard(self, task: "asyncio.Task[T]") -> T:
        """Await ``task`` unless the run is killed first.

        On kill the task is left running (its own bookkeeping still
        completes) and ``Killed`` is raised.
        """
        if self.killed:
            raise Killed()
        kill_waiter = asyncio.ensure_future(self._kill_event.wait())
        try:
            done, _ = await asyncio.wait({task, kill_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            kill_waiter.cancel()
        if task in done:
            return task.result()
        raise Killed()
