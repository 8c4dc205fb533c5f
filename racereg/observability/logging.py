from __future__ import annotations
import contextvars
import logging
import sys
import uuid
from pythonjsonlogger import jsonlogger
from fastapi import Request
from ..config import get_settings

S = get_settings()

# set by RequestContextMiddleware; read by the filter so every record carries it
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        return True


def setup_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(levelname)s %(name)s %(message)s %(asctime)s %(request_id)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)
    root.setLevel(S.LOG_LEVEL)

    # quiet noisy loggers
    logging.getLogger("uvicorn.access").setLevel("WARNING")


def get_request_id(req: Request) -> str:
    rid = req.headers.get(S.REQUEST_ID_HEADER)
    return rid if rid else uuid.uuid4().hex
