"""
Saved comparison tests.

Two interchangeable stores sit behind the same interface: a JSON file on
local disk and a Google Apps Script web app that keeps rows in a spreadsheet.
The service only populates records at save time; it does not care which store
holds them.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Any, Dict, List, Mapping, Optional
import uuid

import requests

from . import config
from .errors import StorageUnavailable
from .models import CATEGORY_IDS, Job, ScoreSet, TestRecord

logger = logging.getLogger(__name__)


class TestStore:
    __test__ = False  # not a pytest test class

    def persist_test(self, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def list_tests(self, category: Optional[str] = None, start_date: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def update_test(self, test_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def delete_test(self, test_id: str) -> bool:
        raise NotImplementedError

    def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filter_tests(
    tests: List[Dict[str, Any]], category: Optional[str] = None, start_date: Optional[str] = None
) -> List[Dict[str, Any]]:
    filtered = list(tests)
    if category:
        filtered = [t for t in filtered if t.get("category") == category]
    since = _parse_ts(start_date)
    if since is not None:
        filtered = [t for t in filtered if (_parse_ts(t.get("timestamp")) or since) >= since]
    return filtered


def compute_stats(tests: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals per category and the mean overall score per provider."""
    by_category = {cat: 0 for cat in CATEGORY_IDS}
    provider_scores: Dict[str, List[int]] = {}
    for test in tests:
        category = test.get("category")
        if category:
            by_category[category] = by_category.get(category, 0) + 1
        for provider_id, score in (test.get("scores") or {}).items():
            if not score:
                continue
            overall = score.get("overall")
            if overall:
                provider_scores.setdefault(provider_id, []).append(overall)

    avg_scores = {pid: sum(values) / len(values) for pid, values in provider_scores.items()}
    return {"totalTests": len(tests), "byCategory": by_category, "avgScores": avg_scores}


def normalize_scores(scores: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Clamp every provider's metrics and recompute its overall score."""
    if not isinstance(scores, Mapping):
        raise ValueError("Scores must map provider ids to metrics")
    normalized = {}
    for provider_id, score in scores.items():
        if not score:
            continue
        score_set = score if isinstance(score, ScoreSet) else ScoreSet.from_dict(score)
        normalized[provider_id] = score_set.to_dict()
    return normalized


def build_test_record(
    category: str,
    name: str,
    image_url: Optional[str] = None,
    notes: str = "",
    results: Optional[Mapping[str, Any]] = None,
    scores: Optional[Mapping[str, Any]] = None,
    processing_times: Optional[Mapping[str, float]] = None,
    image_analysis: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Assemble a record ready for `persist_test`.

    Scores pass through ScoreSet so metrics are clamped and `overall` is
    recomputed regardless of what the caller sent. Jobs are stored as dicts.
    """
    if not category or not name:
        raise ValueError("Test category and name are required")

    normalized_scores = normalize_scores(scores or {})
    normalized_results = {}
    for provider_id, job in (results or {}).items():
        normalized_results[provider_id] = job.to_dict() if isinstance(job, Job) else dict(job)

    record = TestRecord(
        category=category,
        name=name,
        image_url=image_url,
        notes=notes or "",
        results=normalized_results,
        scores=normalized_scores,
        processing_times=dict(processing_times or {}),
        image_analysis=image_analysis,
    )
    return record.to_dict()


class LocalTestStore(TestStore):
    """Newest-first list of records in a single JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as exc:
            logger.error("Failed to load tests from %s: %s", self.path, exc)
            return []
        return data if isinstance(data, list) else []

    def _save(self, tests: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(tests, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def persist_test(self, record: Dict[str, Any]) -> Dict[str, Any]:
        test = dict(record)
        test["id"] = test.get("id") or uuid.uuid4().hex
        test["timestamp"] = test.get("timestamp") or datetime.now(timezone.utc).isoformat()
        test.setdefault("results", {})
        test.setdefault("scores", {})
        test.setdefault("notes", "")
        test.setdefault("processingTimes", {})
        with self._lock:
            tests = self._load()
            tests.insert(0, test)
            self._save(tests)
        logger.info("Saved test %s (%s)", test["id"], test.get("name"))
        return test

    def list_tests(self, category: Optional[str] = None, start_date: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            tests = self._load()
        return filter_tests(tests, category=category, start_date=start_date)

    def get_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            tests = self._load()
        return next((t for t in tests if t.get("id") == test_id), None)

    def update_test(self, test_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        updates = {k: v for k, v in updates.items() if k not in ("id", "timestamp")}
        with self._lock:
            tests = self._load()
            for index, test in enumerate(tests):
                if test.get("id") == test_id:
                    tests[index] = {**test, **updates}
                    self._save(tests)
                    return tests[index]
        return None

    def delete_test(self, test_id: str) -> bool:
        with self._lock:
            tests = self._load()
            remaining = [t for t in tests if t.get("id") != test_id]
            if len(remaining) == len(tests):
                return False
            self._save(remaining)
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            tests = self._load()
        return compute_stats(tests)


class AppsScriptTestStore(TestStore):
    """
    Records kept by a Google Apps Script web app.

    Apps Script only routes GET and POST, so updates and deletes are POSTed
    with an `X-HTTP-Method-Override` header.
    """

    def __init__(self, script_url: str, timeout: float = 30, session: Optional[requests.Session] = None):
        self.script_url = script_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(self, path: str, method: str = "GET", body: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if method in ("PUT", "DELETE"):
            headers["X-HTTP-Method-Override"] = method
        try:
            resp = self.session.request(
                "GET" if method == "GET" else "POST",
                self.script_url,
                params={"path": path},
                data=json.dumps(body if body is not None else {}) if method != "GET" else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageUnavailable(f"Google Script request failed: {exc}") from exc
        if not resp.ok:
            raise StorageUnavailable(
                f"Google Script request failed: {resp.status_code} {resp.reason}", resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise StorageUnavailable("Google Script returned a non-JSON body", resp.status_code) from exc

    def persist_test(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("tests", "POST", record)

    def list_tests(self, category: Optional[str] = None, start_date: Optional[str] = None) -> List[Dict[str, Any]]:
        tests = self._call("tests")
        if not isinstance(tests, list):
            raise StorageUnavailable("Google Script returned an unexpected tests payload")
        return filter_tests(tests, category=category, start_date=start_date)

    def get_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        return next((t for t in self.list_tests() if t.get("id") == test_id), None)

    def update_test(self, test_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._call(f"tests/{test_id}", "PUT", updates)

    def delete_test(self, test_id: str) -> bool:
        result = self._call(f"tests/{test_id}", "DELETE")
        if isinstance(result, dict) and "success" in result:
            return bool(result["success"])
        return True

    def get_stats(self) -> Dict[str, Any]:
        return self._call("tests/stats")


def get_test_store(settings: Optional[config.Settings] = None) -> TestStore:
    settings = settings or config.get_settings()
    if settings.storage_backend == "apps_script":
        if not settings.google_script_url:
            raise ValueError("GOOGLE_SCRIPT_URL is required when STORAGE_BACKEND=apps_script")
        return AppsScriptTestStore(settings.google_script_url, timeout=settings.request_timeout_seconds)
    return LocalTestStore(settings.local_tests_path)
