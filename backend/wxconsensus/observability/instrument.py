from __future__ import annotations

import functools
import inspect
import time
from typing import Any, Callable, TypeVar

import structlog

F = TypeVar("F", bound=Callable[..., Any])

logger = structlog.get_logger("job")


def _result_size(res: Any) -> int | None:
    """len() of plain collections, else a ``size`` attribute (cycle and reconciliation reports)."""
    if isinstance(res, (list, tuple, set, dict)):
        return len(res)
    size = getattr(res, "size", None)
    return size if isinstance(size, int) else None


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _done(name: str, start: float, result: Any) -> None:
    logger.info("job.completed", job=name, duration_ms=_elapsed_ms(start), result_size=_result_size(result))


def _failed(name: str, start: float) -> None:
    logger.exception("job.error", job=name, duration_ms=_elapsed_ms(start))


def log_job(name: str) -> Callable[[F], F]:
    """
    Wrap a job entry point with ``job.start`` / ``job.completed`` / ``job.error`` events.

    The job name stays bound in the logging context while the job runs, so events
    logged inside it (``reconcile.complete``, ``fetch.model_failed``) carry it too.
    Works for plain functions and coroutine functions.
    """

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                with structlog.contextvars.bound_contextvars(job=name):
                    start = time.perf_counter()
                    logger.info("job.start", job=name)
                    try:
                        result = await func(*args, **kwargs)
                    except Exception:
                        _failed(name, start)
                        raise
                    _done(name, start, result)
                    return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any):
            with structlog.contextvars.bound_contextvars(job=name):
                start = time.perf_counter()
                logger.info("job.start", job=name)
                try:
                    result = func(*args, **kwargs)
                except Exception:
                    _failed(name, start)
                    raise
                _done(name, start, result)
                return result

        return sync_wrapper  # type: ignore[return-value]

    return decorator
