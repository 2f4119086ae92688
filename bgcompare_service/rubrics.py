"""Prompt templates sent to the vision model."""

from __future__ import annotations

from typing import Sequence, Tuple

ANALYSIS_PROMPT = """Analyze this image for background removal purposes. Provide:

**Subject**: What's the main subject?
**Style**: Photo/cartoon/illustration/3D?
**Background**: Simple/complex/gradient/textured?
**Details**: Hair, fur, transparency, glow effects?
**Challenges**: What makes BG removal difficult?
**Recommended Category**: Portrait/E-commerce/Cartoon/Animals/Complex/Fine-Details/VFX/Transparent/Challenging

Keep under 150 words, be concise and specific."""

SINGLE_RESULT_RUBRIC = """You are an EXTREMELY CRITICAL professional image quality inspector. Your reputation depends on finding even microscopic flaws. Examine this background removal result from {provider_name} with a magnifying glass.

CRITICAL ANALYSIS REQUIRED - Look for TINY imperfections:

**Edge Accuracy (1-10)**:
- Inspect EVERY pixel along edges
- Look for: jagged pixels, halos (even faint ones), color bleeding, rough transitions, stair-stepping, fringing
- Even slight imperfections should lower the score significantly
- Only give 9-10 if edges are ABSOLUTELY PERFECT at pixel level
- Give 5-7 for "acceptable but not perfect" results
- Give 1-4 if there are obvious flaws

**Detail Preservation (1-10)**:
- Check if ANY fine details are lost or softened
- Look for: blurriness, missing hair strands, lost texture, smoothing artifacts
- Compare to what details SHOULD be there
- Give 9-10 ONLY if ALL details are razor-sharp and preserved
- Give 5-7 if some details are slightly soft
- Give 1-4 if significant detail loss

**Transparency Quality (1-10)**:
- Examine the alpha channel for ANY artifacts
- Look for: semi-transparent halos, uneven edges, residual background, fringing effects
- Check corners and complex areas carefully
- Give 9-10 ONLY if transparency is completely clean
- Give 5-7 if minor artifacts exist
- Give 1-4 if obvious transparency issues

BE HARSH. BE JUDGMENTAL. USE THE FULL 1-10 RANGE. Different models WILL have different quality - find those differences. Average results deserve 5-6, not 8.

Respond with ONLY three numbers, one per line:
Edge: [number 1-10]
Detail: [number 1-10]
Transparency: [number 1-10]"""

COMPARATIVE_RUBRIC = """You are comparing {count} background removal results side-by-side. RANK them from best to worst.

{results_list}

Examine ALL results carefully and COMPARE them:
- Which has the cleanest edges?
- Which preserves the most detail?
- Which has the best transparency?

IMPORTANT: Give DIFFERENT scores based on quality ranking:
- Best result: 9-10 for each metric
- Second best: 7-8
- Third: 6-7
- Fourth: 5-6
- Worst: 3-5

For EACH result (1-{count}), provide scores:
Result 1 - Edge: X, Detail: Y, Transparency: Z
Result 2 - Edge: X, Detail: Y, Transparency: Z
(continue for all results)"""

# Output token budgets per call type.
ANALYSIS_MAX_TOKENS = 500
SINGLE_MAX_TOKENS = 100
COMPARATIVE_MAX_TOKENS = 300


def single_result_prompt(provider_name: str) -> str:
    return SINGLE_RESULT_RUBRIC.format(provider_name=provider_name)


def comparative_prompt(candidates: Sequence[Tuple[str, str]]) -> str:
    """Build the ranking prompt for ordered `(label, image_url)` pairs."""
    lines = []
    for index, (label, url) in enumerate(candidates):
        # inline data URLs are attached as images, not pasted into the prompt
        where = f"attached image {index + 1}" if url.startswith("data:") else url
        lines.append(f"Result {index + 1} ({label}): {where}")
    results_list = "\n".join(lines)
    return COMPARATIVE_RUBRIC.format(count=len(candidates), results_list=results_list)
