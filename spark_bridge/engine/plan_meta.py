"""Recover plan variants embedded in free-form agent output.

Plan-mode prompts ask the agent to end its answer with a JSON array
wrapped in ``__SPARK_PLAN_META__`` markers. Models get the JSON wrong
often enough that parsing degrades through three tiers: strict JSON,
repaired JSON, and a field-level regex scrape.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import PlanVariant

logger = logging.getLogger(__name__)

PLAN_META_SENTINEL = "__SPARK_PLAN_META__"

_BLOCK_RE = re.compile(
    re.escape(PLAN_META_SENTINEL) + r"\s*([\s\S]*?)\s*" + re.escape(PLAN_META_SENTINEL)
)
_DOUBLED_QUOTES_RE = re.compile(r'""+')
_MISSING_SEPARATOR_RE = re.compile(r"\}\s*\{")
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")
_FIELDS_RE = re.compile(
    r'"index"\s*:\s*(\d+)\s*,\s*"title"\s*:\s*"([^"]*?)"\s*,\s*"description"\s*:\s*"([^"]*?)"'
)


def extract_block(output: str) -> str | None:
    """Return the text between the first pair of sentinels, or None."""
    match = _BLOCK_RE.search(output or "")
    if not match:
        return None
    return match.group(1).strip()


def _to_variants(items: list[Any]) -> list[PlanVariant]:
    variants: list[PlanVariant] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        try:
            index = int(item.get("index", position))
        except (TypeError, ValueError):
            index = position
        variants.append(PlanVariant(
            index=index,
            title=str(item.get("title") or ""),
            description=str(item.get("description") or ""),
        ))
    return variants


def _parse_list(raw: str) -> list[Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def repair_json(raw: str) -> str:
    """Fix the malformations models commonly produce in the meta block."""
    raw = _DOUBLED_QUOTES_RE.sub('"', raw)
    raw = _MISSING_SEPARATOR_RE.sub("}, {", raw)
    raw = _TRAILING_COMMA_RE.sub(r"\1", raw)
    return raw


def parse_plan_meta(output: str) -> list[PlanVariant]:
    """Extract plan variants from *output*. Never raises."""
    raw = extract_block(output)
    if raw is None:
        return []

    parsed = _parse_list(raw)
    if parsed is not None:
        return _to_variants(parsed)

    repaired = repair_json(raw)
    parsed = _parse_list(repaired)
    if parsed is not None:
        logger.warning("%s required JSON repair", PLAN_META_SENTINEL)
        return _to_variants(parsed)
    logger.warning(
        "Failed to parse %s even after repair. Raw: %s",
        PLAN_META_SENTINEL, repaired[:300],
    )

    variants = [
        PlanVariant(index=int(m.group(1)), title=m.group(2), description=m.group(3))
        for m in _FIELDS_RE.finditer(repaired)
    ]
    if variants:
        logger.warning(
            "%s extracted %d variant(s) via regex fallback",
            PLAN_META_SENTINEL, len(variants),
        )
    else:
        logger.warning("Failed to extract any variants from %s", PLAN_META_SENTINEL)
    return variants
