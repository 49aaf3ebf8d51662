"""
Bounded slot pool for one pipeline stage.
"""

import asyncio

from karaokify.models.job import Stage


class StagePool:
    """
    An `asyncio.Semaphore` (FIFO waiters) that also counts the slots in use,
    so the scheduler can tell whether a new job would have to wait.
    """

    def __init__(self, stage: Stage, size: int):
        if size < 1:
            raise ValueError(f"Pool for {stage.value} needs at least one slot.")
        self.stage = stage
        self.size = size
        self.in_use = 0
        self._semaphore = asyncio.Semaphore(size)

    @property
    def free(self) -> int:
        return self.size - self.in_use

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self.in_use += 1

    def release(self) -> None:
        if self.in_use <= 0:
            raise RuntimeError(f"Pool for {self.stage.value} released too often.")
        self.in_use -= 1
        self._semaphore.release()

    def __repr__(self) -> str:
        return f"StagePool({self.stage.value}, {self.in_use}/{self.size})"
