"""Bridge engine: job models, queueing, approvals and agent event handling."""
from .models import (
    AgentResult,
    Annotation,
    AnnotationStatus,
    ImageJob,
    ImageJobStatus,
    PlanVariant,
    QueueItem,
    Region,
    Suggestion,
)
from .config import BridgeConfig
from .errors import (
    AgentCallTimeoutError,
    AgentTransportError,
    BridgeError,
    ConfigError,
    ImageGenerationError,
    ImageServiceConfigError,
    JobNotFoundError,
    SessionNotReadyError,
)

__all__ = [
    # Models
    "AgentResult",
    "Annotation",
    "AnnotationStatus",
    "ImageJob",
    "ImageJobStatus",
    "PlanVariant",
    "QueueItem",
    "Region",
    "Suggestion",
    # Config
    "BridgeConfig",
    # Errors
    "AgentCallTimeoutError",
    "AgentTransportError",
    "BridgeError",
    "ConfigError",
    "ImageGenerationError",
    "ImageServiceConfigError",
    "JobNotFoundError",
    "SessionNotReadyError",
]
