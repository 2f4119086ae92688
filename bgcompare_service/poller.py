"""
Prediction polling.

`poll` re-reads a job until it reaches a terminal state. The wait between
reads happens on the cancellation event, so a cancelled comparison stops at
the next suspension point instead of sleeping through it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

from .errors import BgCompareError, PollCancelled, PollTimeout
from .models import Job

logger = logging.getLogger(__name__)

FetchJob = Callable[[Job], Job]
OnUpdate = Callable[[Job], None]


def poll(
    job: Job,
    fetch: FetchJob,
    on_update: Optional[OnUpdate] = None,
    *,
    interval: float = 2.0,
    max_attempts: int = 150,
    deadline: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Job:
    """
    Poll `fetch(job)` until the job is terminal and return the final job.

    `on_update` fires once per successful status read, in order, and never
    after the terminal read. A failed read is logged and retried without
    firing `on_update`; it still counts toward `max_attempts`.

    Raises:
        PollTimeout: after `max_attempts` reads or once the monotonic
            `deadline` has passed.
        PollCancelled: when `cancel_event` is set while the job is still live.
    """
    cancel_event = cancel_event or threading.Event()
    current = job
    attempts = 0

    while not current.is_terminal:
        if attempts >= max_attempts:
            raise PollTimeout(f"Gave up after {attempts} status checks")
        wait_for = interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PollTimeout("Timed out waiting for prediction")
            wait_for = min(interval, remaining)
        if cancel_event.wait(wait_for):
            raise PollCancelled(f"Polling cancelled for {current.provider_id}")

        attempts += 1
        try:
            current = fetch(current)
        except (BgCompareError, requests.RequestException) as exc:
            logger.warning(
                "Status check %d for %s (%s) failed, retrying: %s",
                attempts,
                current.id,
                current.provider_id,
                exc,
            )
            continue

        # a terminal read wins over a cancel that arrived during the fetch
        if cancel_event.is_set() and not current.is_terminal:
            raise PollCancelled(f"Polling cancelled for {current.provider_id}")
        if on_update is not None:
            on_update(current)

    return current
