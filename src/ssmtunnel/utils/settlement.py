import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class Settlement(Generic[T]):
    """A value assigned at most once by whichever source gets there first.

    Every later ``settle`` is discarded and counted, never applied.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self.discarded = 0

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, value: T) -> bool:
        if self._future.done():
            self.discarded += 1
            return False
        self._future.set_result(value)
        return True

    def result(self) -> T:
        return self._future.result()

    async def wait(self) -> T:
        # shield: cancelling a waiter must not cancel the settlement itself
        return await asyncio.shield(self._future)
