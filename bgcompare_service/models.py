"""
Core value types: provider jobs, quality scores and saved test records.

Also holds the static catalogs of background-removal providers and test
categories that the browser renders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

Output = Union[str, List[str]]

SCORE_MIN = 1
SCORE_MAX = 10
SCORE_METRICS = ("edge_accuracy", "detail_preservation", "transparency")
_CAMEL_METRICS = {
    "edge_accuracy": "edgeAccuracy",
    "detail_preservation": "detailPreservation",
    "transparency": "transparency",
}


class JobStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @classmethod
    def parse(cls, value: Any) -> "JobStatus":
        """Map an upstream status string onto the enum; unknown values count as processing."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PROCESSING


_TERMINAL = {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED}


@dataclass
class Job:
    id: Optional[str]
    provider_id: str
    status: JobStatus = JobStatus.STARTING
    output: Optional[Output] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        self.status = JobStatus.parse(self.status)
        if self.status is not JobStatus.SUCCEEDED:
            self.output = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def first_output(self) -> Optional[str]:
        if isinstance(self.output, list):
            return self.output[0] if self.output else None
        return self.output

    @classmethod
    def from_prediction(cls, provider_id: str, payload: Dict[str, Any]) -> "Job":
        error = payload.get("error")
        return cls(
            id=payload.get("id"),
            provider_id=provider_id,
            status=payload.get("status", JobStatus.STARTING),
            output=payload.get("output"),
            error=str(error) if error else None,
        )

    @classmethod
    def failed(cls, provider_id: str, error: str, job_id: Optional[str] = None) -> "Job":
        return cls(id=job_id, provider_id=provider_id, status=JobStatus.FAILED, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "providerId": self.provider_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
        }


def clamp_score(value: Any) -> int:
    """Round a numeric metric (int, float or numeric string) into 1-10."""
    try:
        number = round(float(value))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"Score must be a number, got {value!r}") from exc
    return max(SCORE_MIN, min(SCORE_MAX, number))


@dataclass(frozen=True)
class ScoreSet:
    """
    Three 1-10 quality metrics for one provider's cutout.

    Metrics are clamped on construction and `overall` is always derived, so a
    ScoreSet can never carry an overall its metrics could not produce.
    `defaulted` marks scores that came from a parse fallback instead of a
    measured judgment.
    """

    edge_accuracy: int
    detail_preservation: int
    transparency: int
    defaulted: bool = False

    def __post_init__(self) -> None:
        for name in SCORE_METRICS:
            object.__setattr__(self, name, clamp_score(getattr(self, name)))

    @property
    def overall(self) -> int:
        total = self.edge_accuracy + self.detail_preservation + self.transparency
        # a sum of three integers divided by three never lands on .5
        return round(total / 3)

    @classmethod
    def uniform(cls, value: int, defaulted: bool = False) -> "ScoreSet":
        return cls(value, value, value, defaulted=defaulted)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreSet":
        """
        Build from camelCase or snake_case keys; any supplied `overall` is ignored.

        Raises:
            ValueError: when a metric is missing or not numeric.
        """
        if not isinstance(data, dict):
            raise ValueError("Scores must be an object of metrics")
        values = []
        for name in SCORE_METRICS:
            raw = data.get(_CAMEL_METRICS[name], data.get(name))
            if raw is None:
                raise ValueError(f"Missing score metric {_CAMEL_METRICS[name]}")
            values.append(raw)
        return cls(*values, defaulted=bool(data.get("defaulted", False)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edgeAccuracy": self.edge_accuracy,
            "detailPreservation": self.detail_preservation,
            "transparency": self.transparency,
            "overall": self.overall,
            "defaulted": self.defaulted,
        }


@dataclass
class TestRecord:
    __test__ = False  # not a pytest test class

    category: str
    name: str
    image_url: Optional[str] = None
    notes: str = ""
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    scores: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    processing_times: Dict[str, float] = field(default_factory=dict)
    image_analysis: Optional[str] = None
    id: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "category": self.category,
            "name": self.name,
            "notes": self.notes,
            "imageUrl": self.image_url,
            "results": self.results,
            "scores": self.scores,
            "processingTimes": self.processing_times,
            "imageAnalysis": self.image_analysis,
        }


@dataclass(frozen=True)
class ProviderInfo:
    id: str
    name: str
    description: str
    best_for: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "bestFor": self.best_for,
        }


PROVIDERS: List[ProviderInfo] = [
    ProviderInfo(
        "851-labs/background-remover",
        "851 Labs",
        "Community model for general use",
        "General purpose",
    ),
    ProviderInfo(
        "lucataco/remove-bg",
        "Lucataco Tracer",
        "Fast processing model",
        "Quick results",
    ),
    ProviderInfo(
        "bria/remove-background",
        "BRIA AI (Official)",
        "State-of-the-art commercial model with 256 transparency levels",
        "E-commerce, products, advertising, multi-object scenes",
    ),
    ProviderInfo(
        "men1scus/birefnet",
        "BiRefNet (High-Res)",
        "High-resolution specialist with bilateral processing",
        "Fine details, portraits, hair/fur, complex scenes",
    ),
    ProviderInfo(
        "cjwbw/rembg",
        "CJWBW RemBG",
        "Reliable u2net-based model",
        "Product shots, clear subjects, high-contrast images",
    ),
]

PROVIDER_IDS = [p.id for p in PROVIDERS]

TEST_CATEGORIES: List[Dict[str, str]] = [
    {"id": "portrait", "name": "Portrait Photography"},
    {"id": "ecommerce", "name": "E-commerce Products"},
    {"id": "cartoon", "name": "Cartoon/Illustrated"},
    {"id": "animals", "name": "Animals/Pets"},
    {"id": "complex", "name": "Complex Backgrounds"},
    {"id": "fine-details", "name": "Fine Details (Hair/Fur)"},
    {"id": "vfx", "name": "VFX/Particles"},
    {"id": "transparent", "name": "Transparent Objects"},
    {"id": "challenging", "name": "Challenging Scenarios"},
]

CATEGORY_IDS = [c["id"] for c in TEST_CATEGORIES]


def provider_display_name(provider_id: str) -> str:
    for provider in PROVIDERS:
        if provider.id == provider_id:
            return provider.name
    return provider_id.split("/")[-1]
