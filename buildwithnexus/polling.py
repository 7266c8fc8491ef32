from __future__ import annotations

import time
from typing import Callable

import paramiko

from buildwithnexus.errors import TransientUnavailable

# Probe failures that mean "not ready yet". Security violations are not in
# this list and always propagate.
NOT_READY_ERRORS: tuple[type[BaseException], ...] = (
    TransientUnavailable,
    paramiko.SSHException,
    OSError,
    EOFError,
)


def _probe_ready(probe: Callable[[], bool]) -> bool:
    try:
        return bool(probe())
    except NOT_READY_ERRORS:
        return False


def wait_until(
    probe: Callable[[], bool],
    *,
    timeout_seconds: float,
    interval_seconds: float,
    progress_every_seconds: float | None = None,
    on_progress: Callable[[float], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Probe until it reports ready or the deadline passes.

    The probe runs immediately and then once per interval. Sleeps are cut
    short at the deadline, so a probe that never succeeds returns False at
    the timeout rather than one interval after it. ``on_progress`` receives
    the elapsed seconds at most once per ``progress_every_seconds``.
    """
    start = clock()
    deadline = start + timeout_seconds
    last_progress = start
    while True:
        if _probe_ready(probe):
            return True
        now = clock()
        if (
            on_progress is not None
            and progress_every_seconds
            and now - last_progress >= progress_every_seconds
        ):
            on_progress(now - start)
            last_progress = now
        remaining = deadline - now
        if remaining <= 0:
            return False
        sleep(min(interval_seconds, remaining))
