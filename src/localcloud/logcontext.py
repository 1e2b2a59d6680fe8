"""Per-request logging context.

The dispatcher binds the request id and namespace of the request it is
serving; ``RequestContextFilter`` stamps them onto every record logged while
the binding is active, including records from handlers that pass no extras.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

CONTEXT_FIELDS = ("request_id", "namespace")

_request_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "localcloud_request_context", default=None
)


@contextmanager
def bind_request(**fields: Any) -> Iterator[None]:
    """Bind context fields for the duration of the block."""
    current = _request_context.get() or {}
    token = _request_context.set({**current, **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _request_context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_request_context.get() or {})


class RequestContextFilter(logging.Filter):
    """Copy the bound request context onto log records.

    Explicit ``extra=`` values win over the bound context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in current_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
