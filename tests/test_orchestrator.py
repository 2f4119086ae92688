"""Tests for the multi-provider comparison orchestrator."""

import threading
from typing import List, Tuple

from bgcompare_service.errors import ProviderNotFound, UpstreamUnavailable
from bgcompare_service.models import Job, JobStatus
from bgcompare_service.orchestrator import ComparisonOrchestrator, ComparisonRun
from tests.conftest import FakeReplicateClient

IMAGE = "https://example.com/cat.jpg"


class TestCompare:
    def test_failed_submission_does_not_affect_siblings(self, settings) -> None:
        client = FakeReplicateClient(
            {
                "p1/one": [{"status": "processing"}, {"status": "succeeded", "output": "https://p1.png"}],
                "p2/two": ProviderNotFound("p2/two", "404"),
                "p3/three": [{"status": "processing"}, {"status": "failed", "error": "bad input"}],
            }
        )

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p1/one", "p2/two", "p3/three"])

        assert results["p1/one"].status is JobStatus.SUCCEEDED
        assert results["p1/one"].output == "https://p1.png"
        assert results["p2/two"].status is JobStatus.FAILED
        assert results["p2/two"].error == "Provider not found"
        assert results["p3/three"].status is JobStatus.FAILED
        assert results["p3/three"].error == "bad input"
        assert sorted(client.submitted) == ["p1/one", "p3/three"]

    def test_unreachable_resolution_reports_cause(self, settings) -> None:
        error = ProviderNotFound("p/x", "Replicate request failed: timed out", unreachable=True)
        client = FakeReplicateClient({"p/x": error})

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/x"])

        assert results["p/x"].status is JobStatus.FAILED
        assert results["p/x"].error == "Provider not found (Replicate unreachable: Replicate request failed: timed out)"

    def test_upstream_error_on_submit_is_captured(self, settings) -> None:
        client = FakeReplicateClient({"p/x": UpstreamUnavailable("API Error (502): Bad Gateway", 502)})

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/x"])

        assert results["p/x"] == Job.failed("p/x", "API Error (502): Bad Gateway")

    def test_unexpected_exception_is_captured(self, settings) -> None:
        client = FakeReplicateClient({"p/x": RuntimeError("kaboom")})

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/x"])

        assert results["p/x"].status is JobStatus.FAILED
        assert results["p/x"].error == "kaboom"

    def test_updates_are_ordered_per_provider(self, settings) -> None:
        client = FakeReplicateClient(
            {
                "p/a": [{"status": "processing"}, {"status": "processing"}, {"status": "succeeded", "output": "u"}],
                "p/b": [{"status": "succeeded", "output": "v"}],
            }
        )
        seen: List[Tuple[str, str]] = []
        lock = threading.Lock()

        def _record(provider_id: str, job: Job) -> None:
            with lock:
                seen.append((provider_id, job.status.value))

        ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/a", "p/b"], on_update=_record)

        a_states = [s for pid, s in seen if pid == "p/a"]
        b_states = [s for pid, s in seen if pid == "p/b"]
        assert a_states == ["starting", "processing", "processing", "succeeded"]
        assert b_states == ["starting", "succeeded"]

    def test_callback_errors_do_not_break_pipeline(self, settings) -> None:
        client = FakeReplicateClient({"p/a": [{"status": "succeeded", "output": "u"}]})

        def _explode(provider_id: str, job: Job) -> None:
            raise ValueError("render failed")

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/a"], on_update=_explode)

        assert results["p/a"].status is JobStatus.SUCCEEDED

    def test_poll_timeout_marks_failed_and_cancels_remote(self, settings_factory) -> None:
        settings = settings_factory(replicate_api_key="k", max_poll_attempts=3)
        client = FakeReplicateClient({"p/slow": [{"status": "processing"}]})

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/slow"])

        assert results["p/slow"].status is JobStatus.FAILED
        assert "Gave up after 3 status checks" in results["p/slow"].error
        assert client.cancelled == ["pred-p/slow"]

    def test_duplicate_providers_run_once(self, settings) -> None:
        client = FakeReplicateClient({"p/a": [{"status": "succeeded", "output": "u"}]})

        results = ComparisonOrchestrator(client, settings).compare(IMAGE, ["p/a", "p/a"])

        assert list(results) == ["p/a"]
        assert client.submitted == ["p/a"]

    def test_empty_provider_list(self, settings) -> None:
        run = ComparisonOrchestrator(FakeReplicateClient({}), settings).start(IMAGE, [])

        assert run.done
        assert run.wait() == {}


class TestComparisonRun:
    def test_cancel_ends_running_pipelines(self, settings_factory) -> None:
        settings = settings_factory(replicate_api_key="k", poll_interval_seconds=0.05, max_poll_attempts=1000)
        client = FakeReplicateClient({"p/slow": [{"status": "processing"}]})
        first_update = threading.Event()

        def _on_update(provider_id: str, job: Job) -> None:
            if job.status is JobStatus.PROCESSING:
                first_update.set()

        run = ComparisonOrchestrator(client, settings).start(IMAGE, ["p/slow"], on_update=_on_update)
        assert first_update.wait(5)
        run.cancel()
        results = run.wait(5)

        assert run.done
        assert results["p/slow"].status is JobStatus.CANCELED
        assert client.cancelled == ["pred-p/slow"]

    def test_to_dict_reports_progress(self, settings) -> None:
        client = FakeReplicateClient({"p/a": [{"status": "succeeded", "output": "https://a.png"}]})

        run = ComparisonOrchestrator(client, settings).start(IMAGE, ["p/a"])
        run.wait(5)
        body = run.to_dict()

        assert body["done"] is True
        assert body["providers"] == ["p/a"]
        assert body["results"]["p/a"]["status"] == "succeeded"
        assert body["results"]["p/a"]["output"] == "https://a.png"
        assert "p/a" in body["processingTimes"]

    def test_pipeline_skipped_when_cancelled_before_submit(self, settings) -> None:
        client = FakeReplicateClient({"p/a": [{"status": "succeeded", "output": "u"}]})
        run = ComparisonRun(["p/a"], IMAGE)
        run.cancel()

        job = ComparisonOrchestrator(client, settings)._run_pipeline(run, "p/a", None)

        assert job.status is JobStatus.CANCELED
        assert run.snapshot()["p/a"] is job
        assert client.submitted == []

    def test_cancel_after_success_keeps_output(self, settings) -> None:
        client = FakeReplicateClient({"p/a": [{"status": "succeeded", "output": "https://a.png"}]})
        run = ComparisonRun(["p/a"], IMAGE)
        original_fetch = client.get_prediction

        def _fetch_then_cancel(job: Job, provider_id=None) -> Job:
            current = original_fetch(job)
            run.cancel()
            return current

        client.get_prediction = _fetch_then_cancel
        job = ComparisonOrchestrator(client, settings)._run_pipeline(run, "p/a", None)

        assert job.status is JobStatus.SUCCEEDED
        assert job.output == "https://a.png"
        assert client.cancelled == []
