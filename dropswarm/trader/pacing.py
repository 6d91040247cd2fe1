from __future__ import annotations

import asyncio


class CancellableSleep:
    """
    A sleep that can be cut short from another task.

    `wait()` returns True if the full duration elapsed and False if `cancel()` released it early.
    Cancelling after the timer has already elapsed has no effect.
    """

    def __init__(self, seconds: float) -> None:
        self.seconds = max(0.0, float(seconds))
        self._released = asyncio.Event()
        self._elapsed = False

    async def wait(self) -> bool:
        try:
            await asyncio.wait_for(self._released.wait(), timeout=self.seconds)
        except asyncio.TimeoutError:
            self._elapsed = True
            return True
        return False

    def cancel(self) -> None:
        if not self._elapsed:
            self._released.set()

    @property
    def cancelled(self) -> bool:
        return self._released.is_set()
