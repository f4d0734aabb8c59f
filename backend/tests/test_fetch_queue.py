from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from wxconsensus.services.fetch_queue import RateLimitedFetchQueue


def _recording_client(log, fail_paths=()):
    def handler(request: httpx.Request) -> httpx.Response:
        log.append((request.url.path, time.monotonic()))
        if request.url.path in fail_paths:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"path": request.url.path})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_dispatches_in_order_with_minimum_spacing(anyio_backend):
    log = []
    client = _recording_client(log)
    queue = RateLimitedFetchQueue(client, min_interval_s=0.05)

    paths = [f"/r{i}" for i in range(4)]
    responses = await asyncio.gather(
        *(queue.enqueue(httpx.Request("GET", f"https://upstream.test{p}")) for p in paths)
    )
    await queue.aclose()
    await client.aclose()

    assert [r.json()["path"] for r in responses] == paths
    assert [p for p, _ in log] == paths
    gaps = [b - a for (_, a), (_, b) in zip(log, log[1:])]
    assert all(gap >= 0.045 for gap in gaps)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_failure_only_reaches_its_caller(anyio_backend):
    log = []
    client = _recording_client(log, fail_paths={"/bad"})
    queue = RateLimitedFetchQueue(client, min_interval_s=0)

    results = await asyncio.gather(
        queue.enqueue(httpx.Request("GET", "https://upstream.test/ok1")),
        queue.enqueue(httpx.Request("GET", "https://upstream.test/bad")),
        queue.enqueue(httpx.Request("GET", "https://upstream.test/ok2")),
        return_exceptions=True,
    )
    await queue.aclose()
    await client.aclose()

    assert isinstance(results[0], httpx.Response) and results[0].status_code == 200
    assert isinstance(results[1], httpx.ConnectError)
    assert isinstance(results[2], httpx.Response) and results[2].status_code == 200
    assert [p for p, _ in log] == ["/ok1", "/bad", "/ok2"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_http_error_status_is_a_response_not_an_exception(anyio_backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    queue = RateLimitedFetchQueue(client, min_interval_s=0)
    response = await queue.enqueue(httpx.Request("GET", "https://upstream.test/x"))
    await queue.aclose()
    await client.aclose()
    assert response.status_code == 503


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_closed_queue_rejects_new_requests(anyio_backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    queue = RateLimitedFetchQueue(client, min_interval_s=0)
    await queue.enqueue(httpx.Request("GET", "https://upstream.test/x"))
    await queue.aclose()
    with pytest.raises(RuntimeError):
        await queue.enqueue(httpx.Request("GET", "https://upstream.test/y"))
    await client.aclose()
