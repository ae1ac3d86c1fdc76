"""Prompt text for the Codex agent.

Pure functions: job in, markdown out. The plan prompt asks the agent
to append a ``__SPARK_PLAN_META__`` block that plan_meta.py parses.
"""
from __future__ import annotations

from typing import Any

from .models import Annotation, Region, Suggestion
from .plan_meta import PLAN_META_SENTINEL

MAX_TEXT_CONTENT = 500
MAX_NEARBY_TEXT = 500
MAX_ATTR_VALUE = 200

_RULES = [
    "Locate the source file that renders this element before editing. "
    "Search with `rg` for the text content, class names or component names.",
    "The **Generic Selector** matches every element of this kind; "
    "the **Unique Selector** pins the one the user clicked. "
    "Decide from the request whether the change applies to one or all.",
    "Make the smallest change that satisfies the request. "
    "Do not refactor unrelated code.",
    "Prefer the project's existing styling approach "
    "(CSS modules, Tailwind, styled-components, ...).",
    "Do not run the dev server or install packages.",
    "When done, reply with a one-line summary of the change.",
]


def _cell(value: Any) -> str:
    return str(value if value is not None else "").replace("|", "\\|").replace("`", "'")


def _element_rows(element: dict[str, Any]) -> list[str]:
    rows = [
        "| Property | Value |",
        "|---|---|",
        f"| **Tag** | `<{_cell(element.get('tagName'))}>` |",
        f"| **Generic Selector** | `{_cell(element.get('genericSelector'))}` |",
        f"| **Unique Selector** | `{_cell(element.get('selector'))}` |",
        f"| **Full DOM Path** | `{_cell(element.get('fullPath'))}` |",
        f"| **Parent** | `{_cell(element.get('parentSelector'))}` |",
    ]
    classes = element.get("cssClasses") or []
    if classes:
        rows.append(
            "| **CSS Classes** | "
            + " ".join(f"`.{_cell(c)}`" for c in classes)
            + " |"
        )
    attributes = element.get("attributes") or {}
    for name, value in attributes.items():
        rows.append(
            f"| **attr: {_cell(name)}** | `{_cell(value)[:MAX_ATTR_VALUE]}` |"
        )
    for key, label in (
        ("reactComponents", "React Components"),
        ("computedStyles", "Computed Styles"),
        ("accessibility", "Accessibility"),
    ):
        if element.get(key):
            rows.append(f"| **{label}** | `{_cell(element[key])}` |")
    box = element.get("boundingBox") or {}
    rows.append(
        "| **Bounding Box** | "
        f"x={box.get('x', 0)}, y={box.get('y', 0)}, "
        f"w={box.get('width', 0)}, h={box.get('height', 0)} |"
    )
    return rows


def build_prompt(annotation: Annotation) -> str:
    """Build the fix prompt for a single annotation."""
    element = annotation.element or {}
    lines = [
        "# UI Fix Request",
        "",
        "> URGENT: The user is waiting in the browser. Apply the fix directly "
        "in the source code without asking for confirmation.",
        "",
        "## User Request",
        "",
        f'"{annotation.comment}"',
    ]
    if annotation.selected_text:
        lines += ["", f'**Selected text**: "{annotation.selected_text}"']

    lines += ["", "## Target Element", ""]
    lines += _element_rows(element)

    text_content = str(element.get("textContent") or "").strip()
    if text_content:
        lines += [
            "",
            "### Element Text Content",
            "",
            "```",
            text_content[:MAX_TEXT_CONTENT],
            "```",
        ]
    nearby = str(element.get("nearbyText") or "").strip()
    if nearby:
        lines += [
            "",
            "### Nearby Text (context)",
            "",
            "```",
            nearby[:MAX_NEARBY_TEXT],
            "```",
        ]

    lines += ["", "## Rules", ""]
    lines += [f"{i}. {rule}" for i, rule in enumerate(_RULES, start=1)]
    return "\n".join(lines) + "\n"


def build_plan_prompt(annotation: Annotation) -> str:
    """Ask for alternative approaches instead of an immediate edit."""
    base = build_prompt(annotation)
    return (
        base
        + "\n## Plan Mode\n\n"
        "Do NOT modify any files yet. Investigate the code and propose "
        "2-3 distinct approaches to satisfy the request. Describe each "
        "approach briefly (what changes, where, trade-offs).\n\n"
        "At the very end of your answer, output the approaches as a JSON "
        "array wrapped in marker lines exactly like this:\n\n"
        f"{PLAN_META_SENTINEL}\n"
        '[{"index": 0, "title": "Short title", "description": "One sentence"}]\n'
        f"{PLAN_META_SENTINEL}\n\n"
        "Use valid JSON with double quotes and no trailing commas.\n"
    )


def build_plan_apply_prompt(index: int) -> str:
    return (
        f"Apply approach {index} from your plan above. Make the code changes "
        "now, keeping them minimal, then reply with a one-line summary."
    )


def build_plan_cancel_prompt() -> str:
    return (
        "The user cancelled the plan. Do not modify any files. "
        "If you already changed anything, revert it. Reply with 'Cancelled.'"
    )


def build_image_apply_prompt(
    suggestion: Suggestion,
    instruction: str,
    region: Region,
    original_path: str,
    target_path: str,
    region_elements: str | None = None,
) -> str:
    """Ask the agent to make the UI match a generated target image."""
    lines = [
        "# UI Redesign Request",
        "",
        "> URGENT: The user is waiting in the browser. Apply the change "
        "directly in the source code.",
        "",
        "## User Instruction",
        "",
        f'"{instruction}"',
        "",
        "## Chosen Design",
        "",
        f"**{suggestion.title}**: {suggestion.description}",
        "",
        "## Images",
        "",
        f"- Current UI (screenshot of the selected region): `{original_path}`",
        f"- Target UI (generated design to match): `{target_path}`",
        "",
        "Open both images and compare them. Change the code so the region "
        "looks like the target image.",
        "",
        "## Region",
        "",
        f"x={region.x}, y={region.y}, w={region.width}, h={region.height}",
    ]
    if region_elements:
        lines += [
            "",
            "## Elements In Region",
            "",
            "```",
            region_elements,
            "```",
        ]
    lines += ["", "## Rules", ""]
    lines += [f"{i}. {rule}" for i, rule in enumerate(_RULES, start=1)]
    return "\n".join(lines) + "\n"
