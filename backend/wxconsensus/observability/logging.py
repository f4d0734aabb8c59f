from __future__ import annotations

import logging
from typing import Any, Callable, Dict

import structlog

from wxconsensus.config import get_settings

EventDict = Dict[str, Any]


def configure_logging(level: str | None = None) -> None:
    """
    JSON logs to stdout through the stdlib root logger.

    Every event carries the replica's ``instance_id`` so lease hand-offs can be
    followed across replicas sharing one log sink.
    """
    settings = get_settings()
    log_level = (level or settings.LOG_LEVEL or "INFO").upper()

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
    )
    # APScheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(max(logging.WARNING, logging.getLevelName(log_level)))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_instance_id(settings.INSTANCE_ID),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _event_from_msg,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _add_instance_id(instance_id: str) -> Callable[[Any, str, EventDict], EventDict]:
    def processor(_logger: Any, _name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("instance_id", instance_id)
        return event_dict

    return processor


def _event_from_msg(_logger: Any, _name: str, event_dict: EventDict) -> EventDict:
    # stdlib-style msg= callers
    if "event" not in event_dict and "msg" in event_dict:
        event_dict["event"] = event_dict.pop("msg")
    return event_dict
