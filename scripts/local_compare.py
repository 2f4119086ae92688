"""
Quick local comparison helper: sends one image to every background-removal
provider, prints progress as predictions move, and optionally scores the
cutouts with the configured vision model. Bypasses the HTTP API.
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import mimetypes
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bgcompare_service import config
from bgcompare_service.media import stage_image
from bgcompare_service.models import PROVIDER_IDS, JobStatus
from bgcompare_service.orchestrator import ComparisonOrchestrator
from bgcompare_service.replicate_client import ReplicateClient
from bgcompare_service.vision import VisionScorer, build_vision_backend


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare background-removal providers on one image")
    parser.add_argument("--input", required=True, help="Local image path or http(s) URL")
    parser.add_argument(
        "--provider",
        action="append",
        dest="providers",
        help="Provider id (owner/name); repeat to pick several. Defaults to all.",
    )
    parser.add_argument("--score", action="store_true", help="Rank the cutouts with the vision model")
    parser.add_argument("--api-key", help="Replicate API key (overrides REPLICATE_API_KEY)")
    return parser.parse_args()


def _image_reference(value: str) -> str:
    if value.startswith(("http://", "https://", "data:")):
        return value
    path = Path(value)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    return f"data:{mime};base64,{base64.b64encode(path.read_bytes()).decode('ascii')}"


def _print_update(provider_id: str, job) -> None:
    line = f"[{provider_id}] {job.status.value}"
    if job.error:
        line += f" - {job.error}"
    elif job.first_output:
        line += f" -> {job.first_output}"
    print(line, flush=True)


def main() -> None:
    args = parse_args()
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    credentials = config.resolve_credentials(settings, replicate_api_key=args.api_key)
    client = ReplicateClient(
        credentials.require_replicate(),
        base_url=settings.replicate_base_url,
        timeout=settings.request_timeout_seconds,
    )
    image = stage_image(_image_reference(args.input), settings)

    results = ComparisonOrchestrator(client, settings).compare(
        image, args.providers or PROVIDER_IDS, on_update=_print_update
    )

    if args.score:
        outputs = {
            pid: job.first_output
            for pid, job in results.items()
            if job.status is JobStatus.SUCCEEDED and job.first_output
        }
        scorer = VisionScorer(build_vision_backend(settings, credentials))
        scores = scorer.score_all(outputs)
        print(json.dumps({pid: s.to_dict() for pid, s in scores.items()}, indent=2))


if __name__ == "__main__":
    main()
