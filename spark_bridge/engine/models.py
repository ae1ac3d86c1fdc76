"""Core data models for the bridge.

Jobs arrive from the overlay as camelCase JSON objects; these
dataclasses hold the parts the bridge acts on and pass the rest
(element descriptors, screenshots) through untouched.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AnnotationStatus(str, Enum):
    """Fix-annotation lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"


class ImageJobStatus(str, Enum):
    """Image job lifecycle states."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    SUGGESTIONS_READY = "suggestions_ready"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Region:
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Region:
        data = data or {}
        return cls(
            x=data.get("x", 0),
            y=data.get("y", 0),
            width=data.get("width", 0),
            height=data.get("height", 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class Annotation:
    """One UI-fix request submitted from the overlay."""
    id: str
    comment: str = ""
    element: dict[str, Any] = field(default_factory=dict)
    type: str = "click"
    timestamp: int = field(default_factory=_now_ms)
    selected_text: str | None = None
    status: AnnotationStatus = AnnotationStatus.PENDING
    error: str | None = None
    response: str | None = None
    thread_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Annotation:
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("annotation payload requires an id")
        try:
            status = AnnotationStatus(data.get("status", "pending"))
        except ValueError:
            status = AnnotationStatus.PENDING
        element = data.get("element")
        return cls(
            id=str(data["id"]),
            comment=str(data.get("comment") or ""),
            element=element if isinstance(element, dict) else {},
            type=data.get("type") or "click",
            timestamp=data.get("timestamp") or _now_ms(),
            selected_text=data.get("selectedText"),
            status=status,
            error=data.get("error"),
            response=data.get("response"),
        )

    @property
    def selector(self) -> str:
        return str(self.element.get("selector") or "")


@dataclass
class Suggestion:
    """A candidate image produced for an image job."""
    id: str
    title: str
    description: str
    image: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Suggestion:
        if not isinstance(data, dict):
            raise ValueError("suggestion must be an object")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            image=str(data.get("image") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "image": self.image,
        }


@dataclass
class ImageJob:
    """Screenshot region + instruction routed through image generation."""
    id: str
    instruction: str = ""
    screenshot: str = ""
    region: Region = field(default_factory=Region)
    region_elements: str | None = None
    timestamp: int = field(default_factory=_now_ms)
    status: ImageJobStatus = ImageJobStatus.PENDING
    error: str | None = None
    response: str | None = None
    suggestions: list[Suggestion] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageJob:
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("image request payload requires an id")
        return cls(
            id=str(data["id"]),
            instruction=str(data.get("instruction") or ""),
            screenshot=str(data.get("screenshot") or ""),
            region=Region.from_dict(data.get("region")),
            region_elements=data.get("regionElements"),
            timestamp=data.get("timestamp") or _now_ms(),
        )


@dataclass
class PlanVariant:
    """One approach recovered from a plan-mode response."""
    index: int
    title: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "title": self.title, "description": self.description}


@dataclass
class QueueItem:
    """A job waiting for a worker slot."""
    annotation: Annotation
    project_root: str
    sender: Any
    plan: bool = False


@dataclass
class AgentResult:
    """Outcome of one execute/reply call against the agent session."""
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    thread_id: str | None = None
