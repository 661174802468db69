"""
magistral_engines.tracer -- ENGINE_TRACE records for pure engine calls.

``@traced_engine`` wraps an engine function and logs, at DEBUG level, its
name and version, how long the call took and a short fingerprint of the
keyword arguments named in ``fingerprint_fields``.  Two calls with the same
fingerprint received the same inputs, which is what makes a cycle estimate
or a pack count reproducible from the logs.

Usage:
    @traced_engine("cycles", "1.0", fingerprint_fields=("due_date",))
    def estimate_total_cycles(*, created_on, due_date, duration, policy):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from datetime import date
from typing import Any

_logger = logging.getLogger("magistral_kernel.engines.tracer")


def _stable_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return "{" + ",".join(f"{k}:{_stable_text(value[k])}" for k in sorted(value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_stable_text(v) for v in value) + "]"
    # str, int, Decimal, Measure and the engine dataclasses all have stable str/repr
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """First 16 hex chars of SHA-256 over the named kwargs; absent ones count as null."""
    canonical = "|".join(f"{name}={_stable_text(kwargs.get(name))}" for name in fingerprint_fields)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.monotonic()
            result = func(*args, **kwargs)
            if _logger.isEnabledFor(logging.DEBUG):
                _logger.debug(
                    "ENGINE_TRACE",
                    extra={
                        "trace_type": "ENGINE_TRACE",
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "function": func.__qualname__,
                        "input_fingerprint": (
                            compute_input_fingerprint(fingerprint_fields, kwargs)
                            if fingerprint_fields else ""
                        ),
                        "duration_ms": round((time.monotonic() - started) * 1000, 2),
                    },
                )
            return result

        return wrapper

    return decorator
