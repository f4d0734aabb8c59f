from __future__ import annotations

import asyncio
from typing import Optional, Tuple

import httpx
import structlog

logger = structlog.get_logger(__name__)

_Item = Tuple[httpx.Request, "asyncio.Future[httpx.Response]"]


class RateLimitedFetchQueue:
    """
    Serializes upstream requests: one in flight at a time, FIFO, with at least
    `min_interval_s` between consecutive dispatches.

    A failed request only fails the caller that enqueued it; there are no retries.
    """

    def __init__(self, client: httpx.AsyncClient, min_interval_s: float = 0.1) -> None:
        self._client = client
        self._min_interval_s = max(0.0, float(min_interval_s))
        self._queue: Optional[asyncio.Queue[_Item]] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def min_interval_s(self) -> float:
        return self._min_interval_s

    async def enqueue(self, request: httpx.Request) -> httpx.Response:
        if self._closed:
            raise RuntimeError("fetch queue is closed")
        self._ensure_worker()
        assert self._queue is not None
        future: asyncio.Future[httpx.Response] = asyncio.get_running_loop().create_future()
        await self._queue.put((request, future))
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain(), name="fetch-queue")

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            request, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    response = await self._client.send(request)
                except Exception as exc:
                    logger.warning("fetch.request_failed", url=str(request.url), error=str(exc))
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(response)
                await asyncio.sleep(self._min_interval_s)
            finally:
                self._queue.task_done()

    async def aclose(self) -> None:
        self._closed = True
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                if not future.done():
                    future.set_exception(RuntimeError("fetch queue is closed"))
