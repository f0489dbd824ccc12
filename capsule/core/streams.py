"""
Closeable lazy streams.

Log following and runtime event subscriptions are unbounded. A Stream wraps
the producing async iterator in a background task feeding a bounded queue, so
the consumer (or any other task) can close it at any time. The producer does
not start until the first item is requested; closing cancels the producer,
which runs its own cleanup (killing the `docker logs -f` process, closing
the HTTP response). A consumer blocked on the stream simply sees the end.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class Stream(Generic[T]):
    """Async iterator over a producer that can be closed from either side."""

    def __init__(self, source: AsyncIterator[T], maxsize: int = 256, name: str = "stream"):
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Stream[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=f"{self.name}-pump")

        item = await self._queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._closed = True
            raise item.error
        return item

    async def _pump(self) -> None:
        try:
            async for item in self._source:
                await self._queue.put(item)
            await self._queue.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._queue.put(_Failure(e))
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()

    async def aclose(self) -> None:
        """Stop the producer and end iteration. Safe to call more than once."""
        if self._closed and (self._task is None or self._task.done()):
            return
        self._closed = True

        if self._task is None:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        elif not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        # Wake a consumer waiting in another task
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)
        logger.debug(f"Closed {self.name}")

    async def __aenter__(self) -> "Stream[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
