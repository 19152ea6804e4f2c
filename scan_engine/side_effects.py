"""
Fire-and-forget dispatch of disposition side effects

Each instruction runs as its own asyncio task after the disposition has been
committed. Failures are logged and counted per kind; they never reach the
caller and never roll back the decision.
"""

import asyncio
import logging
from typing import Iterable, Set

from prometheus_client import Counter

from .errors import SideEffectError
from .sinks import NotificationRequest, ReviewQueueAdmission, SearchIndexInstruction, Sinks

logger = logging.getLogger(__name__)

SIDE_EFFECTS_DISPATCHED = Counter('scan_engine_side_effects_total', 'Side effects dispatched', ['kind'])
SIDE_EFFECT_FAILURES = Counter('scan_engine_side_effect_failures_total', 'Side effect failures', ['kind'])


class SideEffectDispatcher:
    def __init__(self, sinks: Sinks):
        self.sinks = sinks
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, instructions: Iterable[object]) -> None:
        for instruction in instructions:
            kind, coro = self._route(instruction)
            SIDE_EFFECTS_DISPATCHED.labels(kind=kind).inc()
            task = asyncio.create_task(self._run(kind, coro))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _route(self, instruction: object):
        if isinstance(instruction, NotificationRequest):
            return "notification", self.sinks.notification.send(instruction)
        if isinstance(instruction, SearchIndexInstruction):
            return "search_index", self.sinks.search_index.queue(instruction)
        if isinstance(instruction, ReviewQueueAdmission):
            return "review_queue", self.sinks.review_queue.admit(instruction)
        raise TypeError(f"Unknown side effect instruction: {instruction!r}")

    async def _run(self, kind: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            error = SideEffectError(f"{kind} side effect failed: {e}", kind=kind)
            SIDE_EFFECT_FAILURES.labels(kind=kind).inc()
            logger.error(error.message, extra={"kind": kind}, exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight side effect to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
