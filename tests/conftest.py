"""Shared test fixtures for bgcompare_service tests."""

from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import MagicMock

import pytest

from bgcompare_service.config import Settings
from bgcompare_service.models import Job


def make_response(
    status_code: int = 200,
    json_body: Any = None,
    text: str = "",
) -> MagicMock:
    """Build a stand-in for requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.reason = "OK" if resp.ok else "Error"
    resp.text = text
    if json_body is None:
        resp.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        resp.json.return_value = json_body
    return resp


class FakeReplicateClient:
    """Scripted provider client: one status sequence (or a submit error) per provider."""

    def __init__(self, scripts: Dict[str, Union[Exception, List[Dict[str, Any]]]]):
        self.scripts = {k: (list(v) if isinstance(v, list) else v) for k, v in scripts.items()}
        self.submitted: List[str] = []
        self.cancelled: List[str] = []

    def submit(self, provider_id: str, image: str) -> Job:
        script = self.scripts[provider_id]
        if isinstance(script, Exception):
            raise script
        self.submitted.append(provider_id)
        return Job(id=f"pred-{provider_id}", provider_id=provider_id)

    def get_prediction(self, job: Job, provider_id: Optional[str] = None) -> Job:
        script = self.scripts[job.provider_id]
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return Job.from_prediction(job.provider_id, {"id": job.id, **step})

    def cancel(self, prediction_id: str) -> bool:
        self.cancelled.append(prediction_id)
        return True


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Settings with fast polling and no ambient keys unless given."""

    def _make(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "replicate_api_key": None,
            "gemini_api_key": None,
            "anthropic_api_key": None,
            "poll_interval_seconds": 0,
            "max_poll_attempts": 20,
            "pipeline_timeout_seconds": 30,
            "vision_provider": "replicate",
            "storage_backend": "local",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    return settings_factory(replicate_api_key="r8-test")
