"""Tests for the vision backends and scorer (no real API calls)."""

from typing import List, Sequence
from unittest.mock import MagicMock, patch

import pytest
import requests

from bgcompare_service.config import Credentials
from bgcompare_service.errors import MissingCredential, VisionAPIUnavailable
from bgcompare_service.media import InlineImage
from bgcompare_service.models import Job, ScoreSet
from bgcompare_service.vision import (
    ClaudeVisionBackend,
    GeminiVisionBackend,
    ReplicateVisionBackend,
    VisionBackend,
    VisionScorer,
    build_vision_backend,
)
from tests.conftest import make_response

PIXEL = InlineImage(mime_type="image/png", data="iVBORw0KGgo=", size=(1, 1))


class StubBackend(VisionBackend):
    name = "stub"

    def __init__(self, reply: str, multiple: bool = True):
        self.reply = reply
        self.supports_multiple_images = multiple
        self.calls: List[tuple] = []

    def generate(self, prompt: str, images: Sequence[str], max_tokens: int) -> str:
        self.calls.append((prompt, list(images), max_tokens))
        return self.reply


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def inline_images():
    with patch("bgcompare_service.vision.load_inline_image", return_value=PIXEL) as mocked:
        yield mocked


class TestGeminiBackend:
    def test_request_shape(self, session: MagicMock, inline_images: MagicMock) -> None:
        session.post.return_value = make_response(
            200, {"candidates": [{"content": {"parts": [{"text": "Edge: 8"}]}}]}
        )
        backend = GeminiVisionBackend("g-key", "gemini-1.5-flash", "https://gemini.test/v1beta/", session=session)

        reply = backend.generate("Rate it", ["https://img/a.png", "https://img/b.png"], 300)

        assert reply == "Edge: 8"
        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://gemini.test/v1beta/models/gemini-1.5-flash:generateContent"
        assert kwargs["headers"] == {"x-goog-api-key": "g-key"}
        parts = kwargs["json"]["contents"][0]["parts"]
        assert parts[0] == {"text": "Rate it"}
        assert len(parts) == 3
        assert parts[1]["inline_data"]["mime_type"] == "image/png"
        assert kwargs["json"]["generationConfig"] == {"maxOutputTokens": 300}

    def test_error_status(self, session: MagicMock, inline_images: MagicMock) -> None:
        session.post.return_value = make_response(429, text="quota")
        backend = GeminiVisionBackend("g-key", "m", "https://gemini.test", session=session)

        with pytest.raises(VisionAPIUnavailable, match=r"Gemini API error \(429\)"):
            backend.generate("Rate it", ["https://img/a.png"], 100)

    def test_unreachable_image_is_a_client_error(self, session: MagicMock) -> None:
        backend = GeminiVisionBackend("g-key", "m", "https://gemini.test", session=session)
        with patch(
            "bgcompare_service.vision.load_inline_image",
            side_effect=requests.ConnectionError("no route"),
        ):
            with pytest.raises(ValueError, match="Could not download image"):
                backend.generate("Rate it", ["https://img/a.png"], 100)
        session.post.assert_not_called()


class TestClaudeBackend:
    def test_request_shape(self, session: MagicMock, inline_images: MagicMock) -> None:
        session.post.return_value = make_response(
            200, {"content": [{"type": "text", "text": "Detail: 6"}]}
        )
        backend = ClaudeVisionBackend("a-key", "claude-test", "https://anthropic.test/v1", session=session)

        reply = backend.generate("Rate it", ["https://img/a.png"], 100)

        assert reply == "Detail: 6"
        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://anthropic.test/v1/messages"
        assert kwargs["headers"]["x-api-key"] == "a-key"
        assert kwargs["headers"]["anthropic-version"] == "2023-06-01"
        content = kwargs["json"]["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[-1] == {"type": "text", "text": "Rate it"}
        assert kwargs["json"]["model"] == "claude-test"

    def test_network_failure(self, session: MagicMock, inline_images: MagicMock) -> None:
        session.post.side_effect = requests.Timeout("slow")
        backend = ClaudeVisionBackend("a-key", "m", "https://anthropic.test/v1", session=session)

        with pytest.raises(VisionAPIUnavailable):
            backend.generate("Rate it", ["https://img/a.png"], 100)


class TestReplicateBackend:
    def test_polls_prediction_to_text(self) -> None:
        client = MagicMock()
        client.create_prediction.return_value = {"id": "v-1", "status": "starting"}
        client.get_prediction.side_effect = [
            Job(id="v-1", provider_id="vision", status="processing"),
            Job.from_prediction(
                "vision",
                {"id": "v-1", "status": "succeeded", "output": ["Edge: 8\n", "Detail: 7\n", "Transparency: 9"]},
            ),
        ]
        backend = ReplicateVisionBackend(client, "llava-version", poll_interval=0)

        reply = backend.generate("Rate it", ["https://img/a.png"], 100)

        assert reply == "Edge: 8\nDetail: 7\nTransparency: 9"
        client.create_prediction.assert_called_once_with(
            "llava-version", {"image": "https://img/a.png", "prompt": "Rate it", "max_tokens": 100}
        )

    def test_failed_prediction(self) -> None:
        client = MagicMock()
        client.create_prediction.return_value = {"id": "v-1", "status": "starting"}
        client.get_prediction.return_value = Job(id="v-1", provider_id="vision", status="failed", error="OOM")
        backend = ReplicateVisionBackend(client, "llava-version", poll_interval=0)

        with pytest.raises(VisionAPIUnavailable, match="OOM"):
            backend.generate("Rate it", ["https://img/a.png"], 100)

    def test_rank_sends_only_first_image(self) -> None:
        backend = StubBackend("", multiple=False)

        backend.rank([("a", "https://img/a.png"), ("b", "https://img/b.png")])

        prompt, images, _ = backend.calls[0]
        assert images == ["https://img/a.png"]
        assert "Result 2" in prompt


class TestBuildVisionBackend:
    def test_missing_key_fails_before_network(self, settings_factory) -> None:
        settings = settings_factory(vision_provider="gemini")
        credentials = Credentials(vision_provider="gemini")

        with pytest.raises(MissingCredential, match="Gemini API key not provided"):
            build_vision_backend(settings, credentials)

    @pytest.mark.parametrize(
        ("provider", "backend_cls"),
        [
            pytest.param("gemini", GeminiVisionBackend, id="gemini"),
            pytest.param("claude", ClaudeVisionBackend, id="claude"),
            pytest.param("replicate", ReplicateVisionBackend, id="replicate"),
        ],
    )
    def test_selects_backend(self, settings_factory, provider: str, backend_cls: type) -> None:
        settings = settings_factory(vision_provider=provider)
        credentials = Credentials(replicate_api_key="k", vision_api_key="k", vision_provider=provider)

        assert isinstance(build_vision_backend(settings, credentials), backend_cls)


class TestVisionScorer:
    def test_score_result(self) -> None:
        scorer = VisionScorer(StubBackend("Edge: 9\nDetail: 8\nTransparency: 10"))

        scores = scorer.score_result("https://img/a.png", "Rembg")

        assert scores == ScoreSet(9, 8, 10)
        assert scores.overall == 9

    def test_score_all_fills_missing_with_fallback(self) -> None:
        backend = StubBackend("Result 2 - Edge: 4, Detail: 4, Transparency: 4")
        scorer = VisionScorer(backend)

        scores = scorer.score_all({"a/one": "https://img/a.png", "b/two": "https://img/b.png"})

        assert scores["a/one"] == ScoreSet.uniform(8, defaulted=True)
        assert scores["b/two"] == ScoreSet(4, 4, 4)
        _, images, _ = backend.calls[0]
        assert images == ["https://img/a.png", "https://img/b.png"]

    def test_score_all_empty(self) -> None:
        backend = StubBackend("unused")

        assert VisionScorer(backend).score_all({}) == {}
        assert backend.calls == []

    def test_analyze_strips_reply(self) -> None:
        assert VisionScorer(StubBackend("  A cat on grass.\n")).analyze_image("https://img/a.png") == "A cat on grass."
