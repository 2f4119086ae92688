"""
Thin client for the Replicate predictions API.

Background-removal providers are referenced by their logical model name
(`owner/name`). Every submission first resolves that name to the model's
current immutable version id, then creates a prediction against it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

import requests

from .errors import MissingCredential, ProviderNotFound, UpstreamUnavailable
from .models import Job

logger = logging.getLogger(__name__)


def _error_message(resp: requests.Response, default: str) -> str:
    """Pull a readable message out of a failed Replicate response."""
    try:
        body = resp.json()
    except ValueError:
        text = resp.text or ""
        if "<html" in text.lower():
            return (
                f"API Error ({resp.status_code}): Bad Gateway or Timeout. "
                "Possible proxy issue, or the image might be too large."
            )
        return f"API Error ({resp.status_code}): {text[:100]}" if text else default
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return default


class ReplicateClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise MissingCredential("Replicate")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Token {api_key}"})

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Replicate request failed: {exc}") from exc

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Replicate returned a non-JSON body ({resp.status_code})", resp.status_code
            ) from exc
        if not isinstance(body, dict):
            raise UpstreamUnavailable("Replicate returned an unexpected body", resp.status_code)
        return body

    def resolve_version(self, provider_id: str) -> str:
        """
        Return the latest version id for an `owner/name` model reference.

        Any failure to resolve, whether the model is unknown or Replicate is
        unreachable, surfaces as ProviderNotFound with the cause in `detail`.
        Transport errors and 5xx responses also carry the cause in the message.
        """
        owner, _, name = provider_id.partition("/")
        if not owner or not name:
            raise ProviderNotFound(provider_id, "model id must look like owner/name")

        try:
            resp = self._request("GET", f"/models/{owner}/{name}")
            if not resp.ok:
                raise UpstreamUnavailable(
                    _error_message(
                        resp, f"Model {provider_id} not found or API error ({resp.status_code})"
                    ),
                    resp.status_code,
                )
            body = self._json(resp)
        except UpstreamUnavailable as exc:
            logger.error("Failed to resolve %s: %s", provider_id, exc)
            # no status means a transport error
            unreachable = exc.status_code is None or exc.status_code >= 500
            raise ProviderNotFound(provider_id, str(exc), unreachable=unreachable) from exc

        version = (body.get("latest_version") or {}).get("id")
        if not version:
            raise ProviderNotFound(provider_id, "model has no published version")
        logger.debug("Resolved %s to version %s", provider_id, version)
        return version

    def create_prediction(self, version: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request("POST", "/predictions", json={"version": version, "input": model_input})
        if not resp.ok:
            raise UpstreamUnavailable(
                _error_message(resp, "Failed to create prediction"), resp.status_code
            )
        return self._json(resp)

    def submit(self, provider_id: str, image: str) -> Job:
        """Start a background-removal prediction; the returned job is `starting`."""
        version = self.resolve_version(provider_id)
        logger.info("Submitting image to %s (version %s)", provider_id, version)
        payload = self.create_prediction(version, {"image": image})
        if not payload.get("id"):
            raise UpstreamUnavailable("Replicate response did not include a prediction id")
        return Job(id=payload["id"], provider_id=provider_id)

    def get_prediction_payload(self, prediction_id: str) -> Dict[str, Any]:
        resp = self._request("GET", f"/predictions/{prediction_id}")
        if not resp.ok:
            raise UpstreamUnavailable(
                f"Failed to fetch prediction status ({resp.status_code})", resp.status_code
            )
        return self._json(resp)

    def get_prediction(self, job: Union[Job, str], provider_id: Optional[str] = None) -> Job:
        if isinstance(job, Job):
            prediction_id, provider_id = job.id, job.provider_id
        else:
            prediction_id = job
        return Job.from_prediction(provider_id or "", self.get_prediction_payload(prediction_id))

    def cancel(self, prediction_id: str) -> bool:
        """Ask Replicate to stop a running prediction. Failures are only logged."""
        try:
            resp = self._request("POST", f"/predictions/{prediction_id}/cancel")
        except UpstreamUnavailable as exc:
            logger.warning("Cancel request for %s failed: %s", prediction_id, exc)
            return False
        if not resp.ok:
            logger.warning("Cancel request for %s returned %s", prediction_id, resp.status_code)
        return resp.ok
