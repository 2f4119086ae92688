"""
Vision-model backends and the scorer built on top of them.

Each backend only has to implement `generate(prompt, images, max_tokens)`;
image analysis, single-result scoring and comparative ranking are expressed
on top of it, so switching between Replicate (LLaVA), Gemini and Claude is a
configuration change rather than a separate code path.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from . import config
from .errors import BgCompareError, VisionAPIUnavailable
from .media import InlineImage, load_inline_image
from .models import Job, JobStatus, ScoreSet
from .poller import poll
from .replicate_client import ReplicateClient
from .rubrics import (
    ANALYSIS_MAX_TOKENS,
    ANALYSIS_PROMPT,
    COMPARATIVE_MAX_TOKENS,
    SINGLE_MAX_TOKENS,
    comparative_prompt,
    single_result_prompt,
)
from .scoring import normalize_response_text, parse_comparative_scores, parse_single_scores

logger = logging.getLogger(__name__)


class VisionBackend:
    name = "base"
    supports_multiple_images = True

    def generate(self, prompt: str, images: Sequence[str], max_tokens: int) -> str:
        raise NotImplementedError

    def analyze(self, image: str) -> str:
        return self.generate(ANALYSIS_PROMPT, [image], ANALYSIS_MAX_TOKENS)

    def score(self, image: str, provider_name: str) -> str:
        return self.generate(single_result_prompt(provider_name), [image], SINGLE_MAX_TOKENS)

    def rank(self, candidates: Sequence[Tuple[str, str]]) -> str:
        images = [url for _, url in candidates]
        if not self.supports_multiple_images:
            # the first cutout stands in as the visual reference
            images = images[:1]
        return self.generate(comparative_prompt(candidates), images, COMPARATIVE_MAX_TOKENS)


class ReplicateVisionBackend(VisionBackend):
    """LLaVA on Replicate: one image per prediction, polled like any other job."""

    name = "replicate"
    supports_multiple_images = False

    def __init__(
        self,
        client: ReplicateClient,
        version: str,
        poll_interval: float = 1.0,
        max_poll_attempts: int = 150,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.version = version
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.timeout = timeout

    def generate(self, prompt: str, images: Sequence[str], max_tokens: int) -> str:
        model_input = {"image": images[0], "prompt": prompt, "max_tokens": max_tokens}
        deadline = time.monotonic() + self.timeout if self.timeout else None
        try:
            payload = self.client.create_prediction(self.version, model_input)
            job = poll(
                Job.from_prediction("vision", payload),
                self.client.get_prediction,
                interval=self.poll_interval,
                max_attempts=self.max_poll_attempts,
                deadline=deadline,
            )
        except BgCompareError as exc:
            raise VisionAPIUnavailable(f"Replicate vision request failed: {exc}") from exc

        if job.status is not JobStatus.SUCCEEDED:
            raise VisionAPIUnavailable(f"Vision prediction {job.status.value}: {job.error or 'no output'}")
        return normalize_response_text(job.output)


class _InlineImageBackend(VisionBackend):
    """Shared plumbing for APIs that want base64 images in the request body."""

    service = "vision"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float = 60,
        max_long_edge: int = 1024,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_long_edge = max_long_edge
        self.session = session or requests.Session()

    def _inline(self, images: Sequence[str]) -> List[InlineImage]:
        inline = []
        for image in images:
            try:
                inline.append(
                    load_inline_image(image, self.max_long_edge, session=self.session, timeout=self.timeout)
                )
            except requests.RequestException as exc:
                raise ValueError(f"Could not download image: {exc}") from exc
        return inline

    def _post(self, url: str, body: dict, headers: dict) -> dict:
        try:
            resp = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise VisionAPIUnavailable(f"{self.service} request failed: {exc}") from exc
        if not resp.ok:
            logger.error("%s API error %s: %s", self.service, resp.status_code, resp.text[:300])
            raise VisionAPIUnavailable(f"{self.service} API error ({resp.status_code})")
        try:
            return resp.json()
        except ValueError as exc:
            raise VisionAPIUnavailable(f"{self.service} returned a non-JSON body") from exc


class GeminiVisionBackend(_InlineImageBackend):
    name = "gemini"
    service = "Gemini"

    def generate(self, prompt: str, images: Sequence[str], max_tokens: int) -> str:
        parts: List[dict] = [{"text": prompt}]
        for image in self._inline(images):
            parts.append({"inline_data": {"mime_type": image.mime_type, "data": image.data}})
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self._post(url, body, {"x-goog-api-key": self.api_key})
        return normalize_response_text(payload)


class ClaudeVisionBackend(_InlineImageBackend):
    name = "claude"
    service = "Anthropic"
    api_version = "2023-06-01"

    def generate(self, prompt: str, images: Sequence[str], max_tokens: int) -> str:
        content: List[dict] = []
        for image in self._inline(images):
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": image.mime_type, "data": image.data},
                }
            )
        content.append({"type": "text", "text": prompt})
        body = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        headers = {"x-api-key": self.api_key, "anthropic-version": self.api_version}
        payload = self._post(f"{self.base_url}/messages", body, headers)
        return normalize_response_text(payload)


def build_vision_backend(
    settings: config.Settings,
    credentials: config.Credentials,
    session: Optional[requests.Session] = None,
) -> VisionBackend:
    """
    Construct the backend selected by VISION_PROVIDER.

    Raises:
        MissingCredential: before any network call when no key is available.
    """
    api_key = credentials.require_vision()
    provider = credentials.vision_provider
    if provider == "gemini":
        return GeminiVisionBackend(
            api_key,
            settings.gemini_model,
            settings.gemini_base_url,
            timeout=settings.request_timeout_seconds,
            max_long_edge=settings.vision_max_long_edge,
            session=session,
        )
    if provider == "claude":
        return ClaudeVisionBackend(
            api_key,
            settings.claude_model,
            settings.anthropic_base_url,
            timeout=settings.request_timeout_seconds,
            max_long_edge=settings.vision_max_long_edge,
            session=session,
        )
    client = ReplicateClient(
        api_key,
        base_url=settings.replicate_base_url,
        timeout=settings.request_timeout_seconds,
        session=session,
    )
    return ReplicateVisionBackend(
        client,
        settings.vision_replicate_version,
        poll_interval=min(settings.poll_interval_seconds, 1.0),
        max_poll_attempts=settings.max_poll_attempts,
        timeout=settings.pipeline_timeout_seconds,
    )


class VisionScorer:
    def __init__(self, backend: VisionBackend):
        self.backend = backend

    def analyze_image(self, image: str) -> str:
        return self.backend.analyze(image).strip()

    def score_result(self, image: str, provider_label: str) -> ScoreSet:
        text = self.backend.score(image, provider_label)
        logger.info("[%s] scoring %s raw response: %r", self.backend.name, provider_label, text)
        scores = parse_single_scores(text)
        if scores.defaulted:
            logger.warning("[%s] could not read every metric for %s; defaults applied", self.backend.name, provider_label)
        return scores

    def score_all(self, results: Mapping[str, str]) -> Dict[str, ScoreSet]:
        """Rank every `{label: image_url}` together; every label gets a ScoreSet."""
        if not results:
            return {}
        candidates = list(results.items())
        text = self.backend.rank(candidates)
        logger.info("[%s] comparative scoring raw response: %r", self.backend.name, text)
        scores = parse_comparative_scores(text, [label for label, _ in candidates])
        fallbacks = [label for label, s in scores.items() if s.defaulted]
        if fallbacks:
            logger.warning("[%s] no score block for %s; fallback ranking applied", self.backend.name, fallbacks)
        return scores
