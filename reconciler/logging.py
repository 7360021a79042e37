"""
Logging configuration.
Every record carries the request id of the HTTP request it was emitted under ("-" outside
requests), so a webhook delivery can be followed across pipeline, store and audit log lines.
"""
import logging
import sys
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s rid=%(request_id)s: %(message)s"


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def setup_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # Uvicorn writes through its own handlers; only align the levels
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    logging.getLogger("reconciler").setLevel(level)
