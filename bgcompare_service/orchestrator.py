"""
Fan one source image out to several background-removal providers.

Each provider runs its own submit-then-poll pipeline on a worker thread. A
pipeline's failure is captured into that provider's Job and never reaches its
siblings or the caller. Progress is published per provider through an
optional callback and through `ComparisonRun.snapshot()`.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional
import uuid

from . import config
from .errors import BgCompareError, PollCancelled, PollTimeout
from .models import Job, JobStatus
from .poller import poll
from .replicate_client import ReplicateClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Job], None]


class ComparisonRun:
    """Live view of one comparison: per-provider jobs plus a join point."""

    def __init__(self, provider_ids: List[str], image: str):
        self.id = uuid.uuid4().hex
        self.image = image
        self.provider_ids = provider_ids
        self.processing_times: Dict[str, float] = {}
        self._results: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._futures: List[Future] = []

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def done(self) -> bool:
        return all(f.done() for f in self._futures)

    def cancel(self) -> None:
        """Stop every pipeline at its next suspension point."""
        self._cancel.set()

    def track(self, future: Future) -> None:
        self._futures.append(future)

    def record(self, provider_id: str, job: Job) -> None:
        with self._lock:
            self._results[provider_id] = job

    def record_time(self, provider_id: str, seconds: float) -> None:
        with self._lock:
            self.processing_times[provider_id] = seconds

    def snapshot(self) -> Dict[str, Job]:
        with self._lock:
            return dict(self._results)

    def times(self) -> Dict[str, float]:
        with self._lock:
            return dict(self.processing_times)

    def wait(self, timeout: Optional[float] = None) -> Dict[str, Job]:
        wait(self._futures, timeout=timeout)
        return self.snapshot()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "done": self.done,
            "providers": list(self.provider_ids),
            "results": {pid: job.to_dict() for pid, job in self.snapshot().items()},
            "processingTimes": self.times(),
        }


class ComparisonOrchestrator:
    def __init__(self, client: ReplicateClient, settings: Optional[config.Settings] = None):
        self.client = client
        self.settings = settings or config.get_settings()

    def start(
        self,
        image: str,
        provider_ids: Iterable[str],
        on_update: Optional[ProgressCallback] = None,
    ) -> ComparisonRun:
        """Launch every pipeline concurrently and return without waiting."""
        providers = list(dict.fromkeys(provider_ids))
        run = ComparisonRun(providers, image)
        if not providers:
            return run

        logger.info("Starting comparison %s across %d providers", run.id, len(providers))
        executor = ThreadPoolExecutor(max_workers=len(providers), thread_name_prefix="compare")
        for provider_id in providers:
            run.track(executor.submit(self._run_pipeline, run, provider_id, on_update))
        executor.shutdown(wait=False)
        return run

    def compare(
        self,
        image: str,
        provider_ids: Iterable[str],
        on_update: Optional[ProgressCallback] = None,
    ) -> Dict[str, Job]:
        """Run every pipeline to a terminal state and return the final jobs."""
        return self.start(image, provider_ids, on_update).wait()

    def _publish(self, run: ComparisonRun, job: Job, on_update: Optional[ProgressCallback]) -> None:
        run.record(job.provider_id, job)
        if on_update is None:
            return
        try:
            on_update(job.provider_id, job)
        except Exception:  # noqa: BLE001
            logger.exception("Progress callback failed for %s", job.provider_id)

    def _run_pipeline(self, run: ComparisonRun, provider_id: str, on_update: Optional[ProgressCallback]) -> Job:
        started = time.monotonic()
        deadline = started + self.settings.pipeline_timeout_seconds
        job: Optional[Job] = None
        try:
            if run.cancel_event.is_set():
                raise PollCancelled(f"Comparison cancelled before {provider_id} was submitted")
            job = self.client.submit(provider_id, run.image)
            self._publish(run, job, on_update)
            job = poll(
                job,
                self.client.get_prediction,
                lambda current: self._publish(run, current, on_update),
                interval=self.settings.poll_interval_seconds,
                max_attempts=self.settings.max_poll_attempts,
                deadline=deadline,
                cancel_event=run.cancel_event,
            )
        except PollCancelled:
            if job is not None and job.id:
                self.client.cancel(job.id)
            job = Job(id=job.id if job else None, provider_id=provider_id, status=JobStatus.CANCELED)
            self._publish(run, job, on_update)
        except PollTimeout as exc:
            logger.warning("Provider %s timed out: %s", provider_id, exc)
            if job is not None and job.id:
                self.client.cancel(job.id)
            job = Job.failed(provider_id, str(exc), job_id=job.id if job else None)
            self._publish(run, job, on_update)
        except BgCompareError as exc:
            logger.error("Provider %s failed: %s", provider_id, exc)
            job = Job.failed(provider_id, str(exc), job_id=job.id if job else None)
            self._publish(run, job, on_update)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error in %s pipeline: %s", provider_id, exc)
            job = Job.failed(provider_id, str(exc) or exc.__class__.__name__, job_id=job.id if job else None)
            self._publish(run, job, on_update)

        run.record_time(provider_id, round(time.monotonic() - started, 2))
        logger.info("Provider %s finished with status %s", provider_id, job.status.value)
        return job
