"""Gemini image generation client for banana-mode image jobs.

Sends a screenshot plus an instruction to Gemini's ``generateContent``
endpoint and returns candidate redesigned UI images. Variations are
requested concurrently; one failed variation is reported as progress
and only an all-fail result raises.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any

import aiohttp

from spark_bridge.engine.config import ProgressCallback
from spark_bridge.engine.errors import ImageGenerationError, ImageServiceConfigError
from spark_bridge.engine.models import Suggestion

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
REQUEST_TIMEOUT_SECONDS = 90.0
API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

_DATA_URI_PREFIX_RE = re.compile(r"^data:image/\w+;base64,")

BASE_PROMPT = """You are a senior UI/UX designer. Given the screenshot of a UI and the user's instruction, generate an improved version of the UI as an image.

Rules:
1. Generate a NEW image showing the improved UI based on the instruction.
2. Keep the same general layout and dimensions unless the instruction asks for a redesign.
3. Make the improvement visually clear and polished.
4. Also provide a brief text description of what you changed (1-2 sentences)."""

DIFF_PROMPT = """You are a front-end engineer. Compare the ORIGINAL UI screenshot (first image) with the TARGET UI screenshot (second image).

The user requested: "{instruction}"

Produce a detailed, actionable description of EVERY visual difference. Be specific enough that a developer can implement the changes in code WITHOUT seeing the images. Include:
- Exact color changes (e.g. "background changed from #fff to #1a1a2e")
- Layout/spacing changes (e.g. "padding increased from ~8px to ~16px")
- Typography changes (font size, weight, color)
- New/removed/moved elements
- Border, shadow, border-radius changes
- Any other visual differences

Format as a numbered list. Be precise and exhaustive."""

# (label, emphasis) per variation, in request order.
VARIATIONS: list[tuple[str, str]] = [
    ("A", ""),
    ("B", "Take a bolder, more creative approach. "),
    ("C", "Focus on minimal, subtle refinements. "),
]


def strip_data_uri(data: str) -> str:
    return _DATA_URI_PREFIX_RE.sub("", data or "")


def _emit(on_progress: ProgressCallback | None, message: str) -> None:
    if on_progress is None:
        return
    try:
        on_progress(message)
    except Exception:
        logger.warning("Image progress callback raised", exc_info=True)


class ImageGenerator:
    """Thin async wrapper over the Gemini generateContent API."""

    def __init__(
        self,
        api_key: str | None,
        model: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if not api_key:
            raise ImageServiceConfigError()
        self._api_key = api_key
        self.model = model or DEFAULT_IMAGE_MODEL
        self._timeout = timeout
        logger.info(
            "[nanobanana] Initialized (model: %s, key: %s...)",
            self.model, api_key[:6],
        )

    @property
    def url(self) -> str:
        return f"{API_BASE}/{self.model}:generateContent"

    async def analyze(
        self,
        screenshot: str,
        instruction: str,
        on_progress: ProgressCallback | None = None,
        count: int = 3,
    ) -> list[Suggestion]:
        """Generate up to ``count`` redesigned variations of *screenshot*."""
        data = strip_data_uri(screenshot)
        variations = VARIATIONS[:max(1, min(count, len(VARIATIONS)))]
        logger.info(
            "[nanobanana] analyze: screenshot=%dKB instruction=%r count=%d",
            round(len(data) * 0.75 / 1024), instruction[:60], len(variations),
        )
        plural = "s" if len(variations) > 1 else ""
        _emit(on_progress, f"Generating UI variation{plural} (model: {self.model})...")

        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout)
        ) as session:
            results = await asyncio.gather(
                *(
                    self._generate_image(
                        session, data, instruction, emphasis, label, on_progress,
                    )
                    for label, emphasis in variations
                ),
                return_exceptions=True,
            )

        suggestions: list[Suggestion] = []
        errors: list[str] = []
        stamp = int(time.time() * 1000)
        for i, ((label, _), result) in enumerate(zip(variations, results)):
            if isinstance(result, BaseException):
                reason = str(result)
                logger.warning("[nanobanana] %s failed: %s", label, reason)
                errors.append(f"{label}: {reason}")
                _emit(on_progress, f"[{label}] Failed: {reason[:100]}")
                continue
            image, description = result
            suggestions.append(Suggestion(
                id=f"suggestion-{stamp}-{i}",
                title=f"Option {label}",
                description=description,
                image=image,
            ))

        if not suggestions:
            detail = "; ".join(errors)
            raise ImageGenerationError(f"All image generations failed. {detail}")

        logger.info(
            "[nanobanana] %d/%d variations succeeded",
            len(suggestions), len(variations),
        )
        _emit(on_progress, f"Generated {len(suggestions)} UI variations.")
        return suggestions

    async def describe_diff(
        self,
        original: str,
        target: str,
        instruction: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Describe the visual differences between two screenshots as text."""
        _emit(on_progress, "Analyzing visual differences...")
        body = {
            "contents": [{
                "parts": [
                    {"text": DIFF_PROMPT.format(instruction=instruction)},
                    {"inlineData": {"mimeType": "image/png", "data": strip_data_uri(original)}},
                    {"inlineData": {"mimeType": "image/png", "data": strip_data_uri(target)}},
                ],
            }],
            "generationConfig": {"responseMimeType": "text/plain"},
        }
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout)
        ) as session:
            payload = await self._post(session, body, "describeDiff")

        candidates = payload.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict)).strip()
        if not text:
            raise ImageGenerationError("Gemini describeDiff returned empty text")
        logger.info("[nanobanana] describeDiff: %d chars", len(text))
        _emit(on_progress, "Visual diff analysis complete.")
        return text

    # ── HTTP ──

    async def _post(
        self,
        session: aiohttp.ClientSession,
        body: dict[str, Any],
        label: str,
    ) -> dict[str, Any]:
        started = time.monotonic()
        headers = {"Content-Type": "application/json", "x-goog-api-key": self._api_key}
        try:
            async with session.post(self.url, data=json.dumps(body), headers=headers) as resp:
                elapsed = time.monotonic() - started
                logger.info("[nanobanana] [%s] Response: %d (%.1fs)", label, resp.status, elapsed)
                text = await resp.text()
                if resp.status >= 400:
                    try:
                        error = json.loads(text).get("error") or {}
                        detail = error.get("message") or text
                    except (ValueError, AttributeError):
                        detail = text
                    raise ImageGenerationError(f"Gemini {resp.status}: {detail[:200]}")
        except asyncio.TimeoutError as exc:
            raise ImageGenerationError(
                f"Gemini API timed out after {time.monotonic() - started:.1f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise ImageGenerationError(
                f"Gemini API request failed after "
                f"{time.monotonic() - started:.1f}s: {exc}"
            ) from exc
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise ImageGenerationError("Gemini returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    async def _generate_image(
        self,
        session: aiohttp.ClientSession,
        data: str,
        instruction: str,
        emphasis: str,
        label: str,
        on_progress: ProgressCallback | None,
    ) -> tuple[str, str]:
        prompt = (
            f"{BASE_PROMPT}\n\n{emphasis}User instruction: \"{instruction}\"\n\n"
            "Generate the improved UI image now."
        )
        body = {
            "contents": [{
                "parts": [
                    {"text": prompt},
                    {"inlineData": {"mimeType": "image/png", "data": data}},
                ],
            }],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        _emit(on_progress, f"[{label}] Sending to Gemini...")
        payload = await self._post(session, body, label)
        _emit(on_progress, f"[{label}] Response received, parsing...")

        candidates = payload.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get("content") or {}).get("parts") or []
        if not parts:
            reason = candidate.get("finishReason") or "no candidates"
            raise ImageGenerationError(f"Gemini returned empty response ({reason})")

        image = ""
        description = ""
        kinds: list[str] = []
        for part in parts:
            inline = part.get("inlineData") or {}
            if inline.get("data"):
                image = f"data:{inline.get('mimeType', 'image/png')};base64,{inline['data']}"
                kinds.append("image")
            if part.get("text"):
                description += part["text"]
                kinds.append("text")
        if not image:
            raise ImageGenerationError(
                f"Gemini did not return an image. Parts: {', '.join(kinds) or 'none'}"
            )
        _emit(on_progress, f"[{label}] Image generated!")
        return image, description.strip() or "UI improvement"
