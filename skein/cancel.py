"""Cooperative cancellation shared by a turn and its tool batch."""

import asyncio


class CancellationToken:
    """A one-way cancel flag that async code can poll or wait on.

    Cancelling never interrupts anything by itself; the stream reader,
    the scheduler and tools check the flag at their own suspension points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
