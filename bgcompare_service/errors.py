"""Exception types shared by the provider, vision and storage layers."""

from __future__ import annotations

from typing import Optional


class BgCompareError(Exception):
    """Base class for every error raised by this package."""


class MissingCredential(BgCompareError):
    """No API key configured on the server nor supplied with the request."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} API key not provided")


class ProviderNotFound(BgCompareError):
    """A provider's logical name could not be resolved to a model version."""

    def __init__(self, provider_id: str, detail: Optional[str] = None, unreachable: bool = False):
        self.provider_id = provider_id
        self.detail = detail
        self.unreachable = unreachable
        message = "Provider not found"
        if unreachable and detail:
            message = f"{message} (Replicate unreachable: {detail})"
        super().__init__(message)


class UpstreamUnavailable(BgCompareError):
    """Non-2xx status, non-JSON body or transport failure from an upstream API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StorageUnavailable(UpstreamUnavailable):
    """The remote test datastore rejected or failed a request."""


class VisionAPIUnavailable(BgCompareError):
    """The vision model endpoint failed to produce a response."""


class PollTimeout(BgCompareError):
    """Polling gave up before the job reached a terminal state."""


class PollCancelled(BgCompareError):
    """Polling was interrupted by the cancellation token."""
