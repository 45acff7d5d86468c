"""
Cooperative cancellation for migration runs.

A single token is passed through every long-running operation. The engine
observes it between batches and between collections, never in the middle of
a commit, so a cancelled run leaves the target consistent with the last
committed batch.
"""

from __future__ import annotations

import asyncio

from docmigrate.exceptions import MigrationCancelledError


class CancellationToken:
    """
    Cancellation signal backed by an ``asyncio.Event``.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(engine.migrate(config, token))
        >>> token.cancel()
        >>> result = await task
        >>> result.state
        <MigrationState.CANCELLED: 'cancelled'>
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str | None = None) -> None:
        """
        Raise MigrationCancelledError if cancellation was requested.

        Args:
            operation: Label included in the error message.
        """
        if self._event.is_set():
            message = f"Cancelled during {operation}" if operation else "Migration was cancelled"
            raise MigrationCancelledError(message)

    async def wait(self) -> None:
        """Suspend until cancellation is requested."""
        await self._event.wait()


__all__ = ["CancellationToken"]
