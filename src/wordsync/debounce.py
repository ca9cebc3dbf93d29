# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Debounced task: run work after a quiet period, superseding earlier requests.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class DebouncedTask:
    """
    Schedules async work after a delay, cancelling any earlier instance.

    Each schedule() bumps a monotonically increasing token. The work receives
    its token and can call is_current(token) after every await to find out
    whether it has been superseded.

    Usage:
        debounce = DebouncedTask(0.3)
        debounce.schedule(lambda token: load_chunk(token))
    """

    def __init__(self, delay: float) -> None:
        """
        Args:
            delay: Quiet period in seconds before the work starts
        """
        self.delay = delay
        self.token = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        """True while a scheduled or running instance exists."""
        return self._task is not None and not self._task.done()

    def is_current(self, token: int) -> bool:
        """True if token belongs to the most recent schedule()."""
        return token == self.token

    def schedule(self, work: Callable[[int], Awaitable[None]]) -> int:
        """
        Run work(token) after the delay unless superseded first.

        Returns:
            The token assigned to this instance
        """
        self.cancel()
        token = self.token
        self._task = asyncio.create_task(self._run(token, work))
        return token

    async def _run(self, token: int, work: Callable[[int], Awaitable[None]]) -> None:
        await asyncio.sleep(self.delay)
        if not self.is_current(token):
            return
        try:
            await work(token)
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-except
            logger.exception("Debounced work failed")

    def cancel(self) -> None:
        """Invalidate the current token and cancel any pending or running instance."""
        self.token += 1
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
