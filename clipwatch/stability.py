"""Detect when the encoder has finished writing a segment file.

The encoder appends to the newest segment until it rotates to the next one.
Copying a file mid-write produces truncated evidence, so callers wait until two
consecutive size samples taken ``poll_interval`` apart are identical.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 30.0

log = logging.getLogger("clipwatch.stability")


class Stability(str, enum.Enum):
    STABLE = "stable"
    TIMEOUT = "timeout"
    MISSING = "missing"


async def wait_for_stable(
    path: Path | str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Stability:
    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")

    deadline = clock() + max(0.0, float(timeout))
    last_size: int | None = None
    while True:
        try:
            size = os.stat(path).st_size
        except OSError as exc:
            log.debug("Unable to stat %s: %s", path, exc)
            return Stability.MISSING
        if size == last_size:
            return Stability.STABLE
        last_size = size

        remaining = deadline - clock()
        if remaining <= 0:
            return Stability.TIMEOUT
        await sleep(min(poll_interval, remaining))
