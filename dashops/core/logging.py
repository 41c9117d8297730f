import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger


DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(entity_id)s %(kind)s %(generation)s %(event)s"


def configure_logging(level: str = "INFO") -> None:
    logger = logging.getLogger()
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(DEFAULT_LOG_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    # uvicorn installs its own handlers; route them through the JSON formatter.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def operation_extra(operation_id: Any, generation: int | None = None, event: str = "", **fields: Any) -> dict[str, Any]:
    extra: dict[str, Any] = {
        "entity_id": getattr(operation_id, "entity_id", None),
        "kind": getattr(operation_id, "kind", None),
        "generation": generation,
        "event": event,
    }
    extra.update(fields)
    return extra
