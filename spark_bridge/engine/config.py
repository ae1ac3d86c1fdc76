"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SPARK_* env vars,
a YAML file (see yaml_config.py), or CLI flags.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# Progress sink for one job. Called with short "[tag] text" lines.
ProgressCallback = Callable[[str], None]

# Approval sink for one job. Receives the normalized command line and
# returns True to approve, False to deny.
ApprovalCallback = Callable[[str], Awaitable[bool]]

DEFAULT_PORT = 3700
DEFAULT_MODEL = "gpt-5.3-codex-spark"
DEFAULT_APPLY_MODEL = "gpt-5.3-codex"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    """Bridge server configuration."""

    port: int = DEFAULT_PORT
    host: str = "127.0.0.1"
    project_root: str = field(default_factory=os.getcwd)
    model: str = DEFAULT_MODEL
    # Upper bound on jobs inside the agent at once. One session instance
    # is shared by all workers; values above 1 rely on call-scoped state.
    concurrency: int = 1
    dry_run: bool = False
    # Refuse jobs from sockets that never sent `register`.
    require_project_root: bool = False

    # Image generation (banana mode)
    image_model: str | None = None
    image_api_key: str | None = None
    # Model used when an image suggestion is applied through the agent.
    apply_model: str = DEFAULT_APPLY_MODEL

    # Agent session
    codex_command: str = "codex"
    # Hard ceiling for one tools/call round trip.
    call_timeout_seconds: float = 600.0
    # Idle watchdog thresholds: first call of a job vs. follow-up.
    first_call_idle_seconds: float = 180.0
    follow_up_idle_seconds: float = 90.0
    watchdog_interval_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            logger.warning(
                "BridgeConfig: concurrency=%s is invalid, using 1",
                self.concurrency,
            )
            self.concurrency = 1
        if self.image_api_key is None:
            self.image_api_key = os.getenv("GEMINI_API_KEY") or None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from SPARK_* environment variables."""
        spark_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SPARK_")
        }
        if spark_vars:
            logger.info(
                "BridgeConfig.from_env: SPARK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(spark_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no SPARK_* env vars set, using defaults")

        config = cls(
            port=int(os.getenv("SPARK_PORT", str(cls.port))),
            host=os.getenv("SPARK_HOST", cls.host),
            project_root=os.getenv("SPARK_PROJECT_ROOT") or os.getcwd(),
            model=os.getenv("SPARK_MODEL", cls.model),
            concurrency=int(os.getenv(
                "SPARK_CONCURRENCY", str(cls.concurrency)
            )),
            dry_run=os.getenv("SPARK_DRY_RUN", "").lower() in _TRUTHY,
            require_project_root=(
                os.getenv("SPARK_REQUIRE_PROJECT_ROOT", "").lower() in _TRUTHY
            ),
            image_model=os.getenv("SPARK_IMAGE_MODEL") or None,
            call_timeout_seconds=float(os.getenv(
                "SPARK_CALL_TIMEOUT", str(cls.call_timeout_seconds)
            )),
            codex_command=os.getenv("SPARK_CODEX_COMMAND", cls.codex_command),
            log_level=os.getenv("SPARK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: port=%d model=%s concurrency=%d dry_run=%s",
            config.port, config.model, config.concurrency, config.dry_run,
        )
        return config
