from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from app.utils.request_id import request_id_var


@contextmanager
def log_duration(logger: Any, operation: str, *, level: int = logging.DEBUG, **fields: object) -> Iterator[None]:
    """Log how long the wrapped block took, as `op=<name> duration_ms=<n> k=v ...`.

    The current request id (if any) is appended so seeding/summary timings can
    be correlated with the control request that started the run.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        rid = request_id_var.get()
        if rid and "request_id" not in fields:
            fields = {"request_id": rid, **fields}
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        if extras:
            logger.log(level, "op=%s duration_ms=%.2f %s", operation, elapsed_ms, extras)
        else:
            logger.log(level, "op=%s duration_ms=%.2f", operation, elapsed_ms)
