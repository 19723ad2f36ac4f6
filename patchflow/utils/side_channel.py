"""
Best-effort side channel for operations that must never fail their caller.

Some writes are nice to have rather than required: recording an LLM run for
auditing, or diagnosing a failure after the transition has already been
persisted. Routing them through a ``BestEffortChannel`` makes that choice
visible at the call site. A failure is logged at warning level and counted,
and the caller continues with ``None``.

Example:
    >>> audit = BestEffortChannel("llm_run_recording")
    >>> await audit.run("record_run", lambda: store.append_event(wf_id, "LLM_RUN", payload))
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class BestEffortChannel:
    """Run awaitables whose failure is logged and otherwise ignored.

    Attributes:
        name: Channel name included in every log line
        failures: Number of operations that raised so far
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.failures = 0

    async def run(self, operation: str, coro_factory: Callable[[], Awaitable[T]]) -> T | None:
        """Await ``coro_factory()`` and return its result, or None if it raised.

        Args:
            operation: Short operation name for logging
            coro_factory: Zero-argument callable producing the awaitable

        Returns:
            The awaited result, or None on failure
        """
        try:
            return await coro_factory()
        except Exception as e:
            self.failures += 1
            log.warning(
                "best_effort_failed",
                channel=self.name,
                operation=operation,
                error=str(e),
                exc_info=True,
            )
            return None
