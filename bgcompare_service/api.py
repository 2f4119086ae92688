"""
FastAPI layer for comparing background-removal providers.

Endpoints:
 - GET  /health
 - GET  /api/config, /api/providers, /api/categories
 - POST /api/comparisons, GET /api/comparisons/{id}, POST /api/comparisons/{id}/cancel
 - POST /api/analyze-image, /api/score-result, /api/score-all-results
 - GET/POST /api/tests, GET /api/tests/stats, GET/PUT/DELETE /api/tests/{id}
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import config
from .errors import MissingCredential, StorageUnavailable, UpstreamUnavailable, VisionAPIUnavailable
from .media import stage_image
from .models import PROVIDER_IDS, PROVIDERS, TEST_CATEGORIES, provider_display_name
from .orchestrator import ComparisonOrchestrator, ComparisonRun
from .replicate_client import ReplicateClient
from .storage import TestStore, build_test_record, get_test_store, normalize_scores
from .vision import VisionScorer, build_vision_backend

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Background Removal Comparison Service", version="0.1.0")


class CompareRequest(BaseModel):
    imageUrl: str
    providers: Optional[List[str]] = None
    replicateApiKey: Optional[str] = None


class AnalyzeRequest(BaseModel):
    imageUrl: str
    apiKey: Optional[str] = None
    replicateApiKey: Optional[str] = None


class ScoreResultRequest(BaseModel):
    resultUrl: str
    modelName: Optional[str] = None
    apiKey: Optional[str] = None
    replicateApiKey: Optional[str] = None


class ScoreAllRequest(BaseModel):
    results: Dict[str, str]
    apiKey: Optional[str] = None
    replicateApiKey: Optional[str] = None


class SaveTestRequest(BaseModel):
    category: str
    name: str
    notes: str = ""
    imageUrl: Optional[str] = None
    results: Dict[str, Any] = Field(default_factory=dict)
    scores: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    processingTimes: Dict[str, float] = Field(default_factory=dict)
    imageAnalysis: Optional[str] = None


class ComparisonRegistry:
    """In-memory index of comparison runs started by this process."""

    def __init__(self, max_runs: int = 100):
        self.max_runs = max_runs
        self._runs: Dict[str, ComparisonRun] = {}
        self._lock = threading.Lock()

    def add(self, run: ComparisonRun) -> None:
        with self._lock:
            self._runs[run.id] = run
            while len(self._runs) > self.max_runs:
                oldest = next(iter(self._runs))
                self._runs.pop(oldest).cancel()

    def get(self, run_id: str) -> Optional[ComparisonRun]:
        with self._lock:
            return self._runs.get(run_id)


_registry = ComparisonRegistry()
_store: Optional[TestStore] = None
_store_lock = threading.Lock()


def get_registry() -> ComparisonRegistry:
    return _registry


def get_store() -> TestStore:
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = get_test_store(settings)
    return _store


def get_app_settings() -> config.Settings:
    return settings


def _missing_credential(exc: MissingCredential) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _vision_scorer(app_settings: config.Settings, api_key: Optional[str], replicate_key: Optional[str]) -> VisionScorer:
    credentials = config.resolve_credentials(
        app_settings, replicate_api_key=replicate_key, vision_api_key=api_key
    )
    try:
        backend = build_vision_backend(app_settings, credentials)
    except MissingCredential as exc:
        raise _missing_credential(exc) from exc
    return VisionScorer(backend)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/config")
def client_config(app_settings: config.Settings = Depends(get_app_settings)):
    return {
        "hasServerKey": bool(app_settings.replicate_api_key),
        "visionProvider": app_settings.vision_provider,
    }


@app.get("/api/providers")
def list_providers():
    return [p.to_dict() for p in PROVIDERS]


@app.get("/api/categories")
def list_categories():
    return TEST_CATEGORIES


@app.post("/api/comparisons")
def start_comparison(
    body: CompareRequest,
    app_settings: config.Settings = Depends(get_app_settings),
    registry: ComparisonRegistry = Depends(get_registry),
):
    credentials = config.resolve_credentials(app_settings, replicate_api_key=body.replicateApiKey)
    try:
        client = ReplicateClient(
            credentials.require_replicate(),
            base_url=app_settings.replicate_base_url,
            timeout=app_settings.request_timeout_seconds,
        )
    except MissingCredential as exc:
        raise _missing_credential(exc) from exc

    providers = body.providers or PROVIDER_IDS
    try:
        image = stage_image(body.imageUrl, app_settings)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to stage source image: %s", exc)
        raise HTTPException(status_code=500, detail="Upload to storage failed") from exc

    run = ComparisonOrchestrator(client, app_settings).start(image, providers)
    registry.add(run)
    return run.to_dict()


def _get_run(run_id: str, registry: ComparisonRegistry) -> ComparisonRun:
    run = registry.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Comparison not found")
    return run


@app.get("/api/comparisons/{run_id}")
def get_comparison(run_id: str, registry: ComparisonRegistry = Depends(get_registry)):
    return _get_run(run_id, registry).to_dict()


@app.post("/api/comparisons/{run_id}/cancel")
def cancel_comparison(run_id: str, registry: ComparisonRegistry = Depends(get_registry)):
    run = _get_run(run_id, registry)
    run.cancel()
    return run.to_dict()


@app.post("/api/analyze-image")
def analyze_image(body: AnalyzeRequest, app_settings: config.Settings = Depends(get_app_settings)):
    scorer = _vision_scorer(app_settings, body.apiKey, body.replicateApiKey)
    try:
        analysis = scorer.analyze_image(body.imageUrl)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except VisionAPIUnavailable as exc:
        logger.error("Image analysis failed: %s", exc)
        raise HTTPException(status_code=502, detail="Failed to create analysis") from exc
    return {"analysis": analysis}


@app.post("/api/score-result")
def score_result(body: ScoreResultRequest, app_settings: config.Settings = Depends(get_app_settings)):
    scorer = _vision_scorer(app_settings, body.apiKey, body.replicateApiKey)
    label = body.modelName or "this model"
    try:
        scores = scorer.score_result(body.resultUrl, provider_display_name(label))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except VisionAPIUnavailable as exc:
        logger.error("Scoring failed for %s: %s", label, exc)
        raise HTTPException(status_code=502, detail="Scoring failed") from exc
    return {"scores": scores.to_dict()}


@app.post("/api/score-all-results")
def score_all_results(body: ScoreAllRequest, app_settings: config.Settings = Depends(get_app_settings)):
    if not body.results:
        raise HTTPException(status_code=400, detail="No results to score")
    scorer = _vision_scorer(app_settings, body.apiKey, body.replicateApiKey)
    try:
        scores = scorer.score_all(body.results)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except VisionAPIUnavailable as exc:
        logger.error("Comparative scoring failed: %s", exc)
        raise HTTPException(status_code=502, detail="Scoring failed") from exc
    return {"scores": {label: s.to_dict() for label, s in scores.items()}}


def _storage_error(action: str, exc: UpstreamUnavailable) -> HTTPException:
    logger.error("Failed to %s: %s", action, exc)
    return HTTPException(status_code=502, detail=f"Failed to {action}")


@app.get("/api/tests")
def list_tests(
    category: Optional[str] = Query(None),
    startDate: Optional[str] = Query(None),
    store: TestStore = Depends(get_store),
):
    try:
        return store.list_tests(category=category, start_date=startDate)
    except StorageUnavailable as exc:
        raise _storage_error("read tests", exc) from exc


@app.post("/api/tests")
def create_test(body: SaveTestRequest, store: TestStore = Depends(get_store)):
    try:
        record = build_test_record(
            category=body.category,
            name=body.name,
            image_url=body.imageUrl,
            notes=body.notes,
            results=body.results,
            scores=body.scores,
            processing_times=body.processingTimes,
            image_analysis=body.imageAnalysis,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        return store.persist_test(record)
    except StorageUnavailable as exc:
        raise _storage_error("save test", exc) from exc


@app.get("/api/tests/stats")
def test_stats(store: TestStore = Depends(get_store)):
    try:
        return store.get_stats()
    except StorageUnavailable as exc:
        raise _storage_error("get stats", exc) from exc


@app.get("/api/tests/{test_id}")
def get_test(test_id: str, store: TestStore = Depends(get_store)):
    try:
        test = store.get_test(test_id)
    except StorageUnavailable as exc:
        raise _storage_error("read test", exc) from exc
    if test is None:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


@app.put("/api/tests/{test_id}")
def update_test(test_id: str, updates: Dict[str, Any], store: TestStore = Depends(get_store)):
    if "scores" in updates:
        try:
            updates = {**updates, "scores": normalize_scores(updates["scores"] or {})}
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        updated = store.update_test(test_id, updates)
    except StorageUnavailable as exc:
        raise _storage_error("update test", exc) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail="Test not found")
    return updated


@app.delete("/api/tests/{test_id}")
def delete_test(test_id: str, store: TestStore = Depends(get_store)):
    try:
        deleted = store.delete_test(test_id)
    except StorageUnavailable as exc:
        raise _storage_error("delete test", exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Test not found")
    return {"success": True}
