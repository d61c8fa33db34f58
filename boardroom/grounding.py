"""Boundary to the external document/citation service.

The service itself (PDF chunking, claim matching) lives elsewhere. Here we
only hand it finished message text in the background and attach whatever
comes back to the transcript as annotations.
"""

import asyncio
import logging
from typing import Protocol

from boardroom.models import CitationCheck, Message
from boardroom.workspace import Workspace

logger = logging.getLogger(__name__)


class CitationService(Protocol):
    async def check(self, text: str) -> list[CitationCheck]:
        """Return one CitationCheck per claim found in ``text``."""
        ...


class CitationReporter:
    """Runs citation checks without blocking the discussion."""

    def __init__(self, service: CitationService, workspace: Workspace) -> None:
        self._service = service
        self._workspace = workspace
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, message: Message) -> None:
        task = asyncio.create_task(self._check(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _check(self, message: Message) -> None:
        try:
            checks = await self._service.check(message.text)
        except Exception:
            logger.warning("Citation check failed for message %s", message.id, exc_info=True)
            return
        if checks:
            self._workspace.annotate(message.id, checks)
            uncited = sum(1 for c in checks if not c.has_citation)
            logger.debug("Message %s: %d claims, %d uncited", message.id, len(checks), uncited)

    async def drain(self) -> None:
        """Wait for every scheduled check to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
