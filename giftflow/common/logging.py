"""JSON logging for the gift and delivery processes.

Correlation ids live in context variables so concurrently handled requests and
queue messages each log their own ids. `log_context` binds them for a block.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from giftflow.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
voucher_id_ctx: ContextVar[str] = ContextVar("voucher_id", default="")
message_id_ctx: ContextVar[str] = ContextVar("message_id", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "voucher_id": voucher_id_ctx,
    "message_id": message_id_ctx,
}


@contextmanager
def log_context(**fields: str):
    """Bind correlation ids for the duration of the block, then restore them."""

    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in fields.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    """Copy the bound correlation ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    fields = " ".join(f"%({name})s" for name in CONTEXT_FIELDS)
    handler.setFormatter(
        JsonFormatter(
            f"%(asctime)s %(levelname)s %(name)s {fields} %(message)s",
            static_fields={"service_name": settings.service_name},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("giftflow")
