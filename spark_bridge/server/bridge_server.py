"""WebSocket server connecting the browser overlay to the Codex agent.

Clients connect to ``ws://host:port/`` and exchange JSON frames, one
object per frame, tagged by ``type``. Fix annotations flow through a
bounded-concurrency queue into the agent session; image jobs call the
image generator first and replay the chosen suggestion through the
same agent. Job-scoped frames go only to the job's sender of record.
"""
from __future__ import annotations

import asyncio
import base64
import errno
import json
import logging
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web

from spark_bridge.engine.approval_coordinator import ApprovalCoordinator
from spark_bridge.engine.config import BridgeConfig
from spark_bridge.engine.errors import ImageServiceConfigError, JobNotFoundError
from spark_bridge.engine.models import (
    AgentResult,
    Annotation,
    AnnotationStatus,
    ImageJob,
    ImageJobStatus,
    QueueItem,
    Suggestion,
)
from spark_bridge.engine.plan_meta import parse_plan_meta
from spark_bridge.engine.prompt_builder import (
    build_image_apply_prompt,
    build_plan_apply_prompt,
    build_plan_cancel_prompt,
    build_plan_prompt,
)
from spark_bridge.engine.providers.codex_session import CodexSession
from spark_bridge.engine.providers.image_generator import ImageGenerator, strip_data_uri
from spark_bridge.engine.task_queue import TaskQueue
from spark_bridge.shared.services.connection_registry import (
    ClientConnection,
    ConnectionRegistry,
)
from spark_bridge.shared.services.message_router import MessageRouter
from spark_bridge.shared.services.project_root_detector import (
    detect_project_root_from_origin,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT_REQUIRED = (
    "Client projectRoot is required. Send a register message before submitting jobs."
)
NO_SESSION_FOR_PLAN = "No Codex session found for this annotation."
IMAGE_DIR_NAME = "spark-banana"


class BridgeServer:
    """BridgeOrchestrator: socket protocol handler over aiohttp."""

    # Pauses between simulated progress lines in dry-run mode.
    dry_run_delays: tuple[float, float, float] = (0.5, 0.8, 0.7)

    def __init__(
        self,
        config: BridgeConfig,
        session: CodexSession | None = None,
        image_generator_factory: Callable[..., ImageGenerator] | None = None,
    ) -> None:
        self._config = config
        self._session = session if session is not None else CodexSession(config)
        self._image_generator_factory = image_generator_factory or ImageGenerator
        self._connections = ConnectionRegistry(config.project_root)
        self._router = MessageRouter()
        self._approvals = ApprovalCoordinator()
        self._queue: TaskQueue[QueueItem] = TaskQueue(
            config.concurrency, self._process_queue_item,
        )
        # Job id -> Codex thread id, for follow-ups and plan continuation.
        self._thread_map: dict[str, str] = {}
        # In-flight job id -> project root, for reconnect rebinding.
        self._job_roots: dict[str, str] = {}
        self._image_jobs: dict[str, ImageJob] = {}
        self._image_api_key = config.image_api_key
        self._image_generator: ImageGenerator | None = None
        if self._image_api_key:
            self._image_generator = self._image_generator_factory(
                self._image_api_key, config.image_model,
            )
        self._tasks: set[asyncio.Task] = set()
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.router.add_get("/", self._handle_ws)
        self._app.router.add_get("/health", self._handle_health)

        self._handlers: dict[str, Callable[[ClientConnection, dict[str, Any]], None]] = {
            "register": self._on_register,
            "annotation": self._on_annotation,
            "approval_response": self._on_approval_response,
            "ping": self._on_ping,
            "restart_codex": self._on_restart_codex,
            "set_model": self._on_set_model,
            "plan_apply": self._on_plan_apply,
            "banana_request": self._on_banana_request,
            "banana_apply": self._on_banana_apply,
        }

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def connections(self) -> ConnectionRegistry:
        return self._connections

    @property
    def thread_map(self) -> dict[str, str]:
        return self._thread_map

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            logger.debug(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
            )
            return response
        except Exception:
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, (time.monotonic() - start) * 1000,
            )
            raise

    # ── Lifecycle ──

    async def start(self) -> bool:
        """Start the agent session and listen. Returns False if the port is taken."""
        if not self._config.dry_run:
            logger.info("Starting Codex MCP server...")
            await self._session.start()

        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            if exc.errno != errno.EADDRINUSE:
                await self._session.stop()
                raise
            logger.warning(
                "spark-bridge already running on port %d, skipping.", self._config.port,
            )
            await self._session.stop()
            return False

        self._runner = runner
        logger.info("spark-bridge listening on ws://%s:%d", self._config.host, self._config.port)
        logger.info("  Project: %s (default)", self._config.project_root)
        if self._config.dry_run:
            logger.info("  Mode:    dry-run (mock responses)")
        else:
            logger.info("  Mode:    MCP (codex mcp-server)")
            logger.info("  Model:   %s", self._session.model)
        return True

    async def stop(self) -> None:
        """Stop the session, deny pending approvals, and close every client."""
        await self._session.stop()
        self._approvals.clear_all(False)
        for client in list(self._connections.all_clients()):
            await client.close()
        self._connections.clear()
        self._router.clear()
        self._queue.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("spark-bridge stopped")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── HTTP / WebSocket handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "dry_run": self._config.dry_run,
            "session_ready": self._session.ready,
            "clients": len(self._connections),
            "queue": {
                "active": self._queue.active_count,
                "pending": self._queue.pending_count,
            },
        })

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        client = ClientConnection(ws)
        client.start()
        self._connections.add(client)
        logger.info("Client %s connected req=%s", client.id, request.get("req_id"))

        origin = request.headers.get("Origin")
        if origin:
            detected = await asyncio.get_running_loop().run_in_executor(
                None, detect_project_root_from_origin, origin,
            )
            if detected and not self._connections.has_registered(client):
                self._connections.set_project_root(client, detected, registered=False)
                logger.info("Auto-detected project: %s (from %s)", detected, origin)

        self._router.send(client, {"type": "connected"})

        try:
            async for frame in ws:
                if frame.type == WSMsgType.TEXT:
                    self._on_frame(client, frame.data)
                elif frame.type == WSMsgType.ERROR:
                    logger.warning("Client %s socket error: %s", client.id, ws.exception())
        finally:
            self._connections.remove(client)
            self._router.remove_socket(client)
            await client.close()
            logger.info("Client %s disconnected", client.id)
        return ws

    def _on_frame(self, client: ClientConnection, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Malformed message: %s", data[:100])
            return
        if not isinstance(message, dict):
            logger.warning("Malformed message: %s", data[:100])
            return

        msg_type = message.get("type")
        if msg_type != "ping":
            logger.info("Received %s from %s", msg_type, client.id)
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning("Unknown message type: %s", msg_type)
            return
        try:
            handler(client, message)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Bad %s message: %s", msg_type, exc)

    # ── Message handlers ──

    def _on_register(self, client: ClientConnection, message: dict[str, Any]) -> None:
        project_root = message.get("projectRoot")
        if not isinstance(project_root, str) or not project_root:
            raise ValueError("register requires projectRoot")
        self._connections.set_project_root(client, project_root)
        logger.info("Client registered: %s", project_root)
        self._rebind_in_flight(client, project_root)

    def _on_annotation(self, client: ClientConnection, message: dict[str, Any]) -> None:
        annotation = Annotation.from_dict(message["payload"])
        if self._config.require_project_root and not self._connections.has_registered(client):
            logger.warning("Rejected %s: client never registered", annotation.id)
            self._router.send(client, _status_frame(
                annotation.id, AnnotationStatus.FAILED, error=PROJECT_ROOT_REQUIRED,
            ))
            return
        plan = bool(message.get("plan"))
        project_root = self._connections.project_root_of(client)
        logger.info(
            "New annotation: %s%s comment=%r project=%s",
            annotation.selector, " [PLAN]" if plan else "", annotation.comment, project_root,
        )
        self._router.set_sender(annotation.id, client)
        self._job_roots[annotation.id] = project_root
        self._queue.enqueue(QueueItem(
            annotation=annotation, project_root=project_root, sender=client, plan=plan,
        ))

    def _on_approval_response(self, client: ClientConnection, message: dict[str, Any]) -> None:
        job_id = message["annotationId"]
        approved = bool(message.get("approved"))
        logger.info("[approval] user %s: %s", "approved" if approved else "denied", job_id)
        if not self._approvals.resolve(job_id, approved):
            logger.info("[approval] no pending resolver for: %s", job_id)

    def _on_ping(self, client: ClientConnection, message: dict[str, Any]) -> None:
        self._router.send(client, {"type": "pong"})

    def _on_restart_codex(self, client: ClientConnection, message: dict[str, Any]) -> None:
        self._spawn(self._restart_session(client))

    def _on_set_model(self, client: ClientConnection, message: dict[str, Any]) -> None:
        model = message.get("model")
        if not isinstance(model, str) or not model:
            raise ValueError("set_model requires model")
        self._session.set_model(model)

    def _on_plan_apply(self, client: ClientConnection, message: dict[str, Any]) -> None:
        job_id = message["annotationId"]
        approach = message.get("approach")
        self._spawn(self._apply_plan(
            job_id, approach, self._connections.project_root_of(client), client,
        ))

    def _on_banana_request(self, client: ClientConnection, message: dict[str, Any]) -> None:
        job = ImageJob.from_dict(message["payload"])
        if self._config.require_project_root and not self._connections.has_registered(client):
            logger.warning("Rejected image request %s: client never registered", job.id)
            self._router.send(client, _image_status_frame(
                job.id, ImageJobStatus.FAILED, error=PROJECT_ROOT_REQUIRED,
            ))
            return
        api_key = message.get("apiKey") or None
        model = message.get("model") or None
        fast = bool(message.get("fast"))
        logger.info(
            "Image request %s (apiKey: %s, model: %s, fast: %s)",
            job.id, "yes" if api_key else "no", model or "default", fast,
        )
        if api_key:
            self._image_api_key = api_key
        self._ensure_image_generator(api_key, model)
        self._spawn(self._handle_image_request(
            job, self._connections.project_root_of(client), client, fast,
        ))

    def _on_banana_apply(self, client: ClientConnection, message: dict[str, Any]) -> None:
        request_id = message["requestId"]
        suggestion = Suggestion.from_dict(message["suggestion"])
        self._spawn(self._apply_image_suggestion(
            request_id, suggestion, self._connections.project_root_of(client), client,
        ))

    # ── Routing helpers ──

    def _rebind_in_flight(self, client: ClientConnection, project_root: str) -> None:
        """Point orphaned in-flight jobs of *project_root* at *client*."""
        for job_id, root in self._job_roots.items():
            if root != project_root:
                continue
            sender = self._router.sender_of(job_id)
            if sender is None or sender.closed:
                self._router.set_sender(job_id, client)
                logger.info("Rebound in-flight job %s to client %s", job_id, client.id)

    def _progress_sink(self, job_id: str, frame_type: str = "progress") -> Callable[[str], None]:
        id_key = "requestId" if frame_type == "banana_progress" else "annotationId"

        def on_progress(message: str) -> None:
            self._router.send_to_sender(
                job_id, {"type": frame_type, id_key: job_id, "message": message},
            )
        return on_progress

    def _approval_sink(self, job_id: str) -> Callable[[str], Awaitable[bool]]:
        async def on_approval(command: str) -> bool:
            return await self._approvals.request(
                job_id,
                lambda: self._router.send_to_sender(job_id, {
                    "type": "approval_request",
                    "annotationId": job_id,
                    "command": command,
                }),
            )
        return on_approval

    # ── Annotation jobs ──

    async def _process_queue_item(self, item: QueueItem) -> None:
        annotation = item.annotation
        job_id = annotation.id
        # An earlier run of the same job id may have released these.
        if self._router.sender_of(job_id) is None:
            self._router.set_sender(job_id, item.sender)
        self._job_roots[job_id] = item.project_root
        try:
            annotation.status = AnnotationStatus.PROCESSING
            self._router.send_to_sender(
                job_id, _status_frame(job_id, AnnotationStatus.PROCESSING),
            )
            logger.info("Processing: %s%s", job_id, " [PLAN]" if item.plan else "")
            if self._config.dry_run:
                await self._process_dry_run(annotation)
            else:
                await self._process_with_agent(item)
        except Exception as exc:
            logger.exception("Error processing %s", job_id)
            self._finish(annotation, AgentResult(success=False, error=str(exc)))
        finally:
            self._approvals.clear(job_id)
            self._job_roots.pop(job_id, None)
            self._router.forget(job_id)

    async def _process_with_agent(self, item: QueueItem) -> None:
        annotation = item.annotation
        job_id = annotation.id
        on_progress = self._progress_sink(job_id)
        on_approval = self._approval_sink(job_id)

        thread_id = self._thread_map.get(job_id)
        if thread_id:
            logger.info("Continuing thread %s for %s", thread_id, job_id)
            result = await self._session.reply(
                thread_id, annotation.comment, on_progress, on_approval,
            )
        else:
            prompt_override = build_plan_prompt(annotation) if item.plan else None
            result = await self._session.execute(
                annotation, item.project_root, on_progress, on_approval,
                prompt_override=prompt_override,
            )

        if result.thread_id:
            self._thread_map[job_id] = result.thread_id
            annotation.thread_id = result.thread_id

        if result.success and item.plan:
            variants = parse_plan_meta(result.output)
            if variants:
                logger.info("Plan variants: %s", ", ".join(v.title for v in variants))
                self._router.send_to_sender(job_id, {
                    "type": "plan_variants_ready",
                    "annotationId": job_id,
                    "variants": [v.to_dict() for v in variants],
                })
        self._finish(annotation, result)

    def _finish(self, annotation: Annotation, result: AgentResult) -> None:
        job_id = annotation.id
        if result.success:
            annotation.status = AnnotationStatus.APPLIED
            annotation.response = result.output
            logger.info("Applied: %s (%.1fs)", job_id, result.duration_ms / 1000)
            frame = _status_frame(job_id, AnnotationStatus.APPLIED, response=result.output)
        else:
            annotation.status = AnnotationStatus.FAILED
            annotation.error = result.error
            logger.warning("Failed: %s: %s", job_id, (result.error or "")[:80])
            frame = _status_frame(job_id, AnnotationStatus.FAILED, error=result.error)
        self._router.send_to_sender(job_id, frame)

    async def _process_dry_run(self, annotation: Annotation) -> None:
        job_id = annotation.id
        on_progress = self._progress_sink(job_id)
        steps = [
            "[dry-run] Sending to Codex...",
            f'[dry-run] Analyzing selector "{annotation.selector}"...',
            "[dry-run] Applying code changes...",
        ]
        for message, delay in zip(steps, self.dry_run_delays):
            on_progress(message)
            await asyncio.sleep(delay)
        self._finish(annotation, AgentResult(
            success=True, duration_ms=int(sum(self.dry_run_delays) * 1000),
        ))

    async def _apply_plan(
        self,
        job_id: str,
        approach: Any,
        project_root: str,
        client: ClientConnection,
    ) -> None:
        logger.info("Plan apply: %s -> %s", job_id, approach)
        self._router.set_sender(job_id, client)

        thread_id = self._thread_map.get(job_id)
        if not thread_id:
            logger.warning("Plan apply failed: no thread for %s", job_id)
            self._router.send_to_sender(job_id, _status_frame(
                job_id, AnnotationStatus.FAILED, error=NO_SESSION_FOR_PLAN,
            ))
            self._router.forget(job_id)
            return

        self._job_roots[job_id] = project_root
        self._router.send_to_sender(job_id, _status_frame(job_id, AnnotationStatus.PROCESSING))
        try:
            if approach == "cancel":
                prompt = build_plan_cancel_prompt()
            else:
                prompt = build_plan_apply_prompt(int(approach))
            result = await self._session.reply(
                thread_id, prompt,
                self._progress_sink(job_id), self._approval_sink(job_id),
            )
        except Exception as exc:
            logger.warning("Plan apply error: %s: %s", job_id, exc, exc_info=True)
            result = AgentResult(success=False, error=str(exc))
        finally:
            self._approvals.clear(job_id)
            self._job_roots.pop(job_id, None)

        if result.success:
            frame = _status_frame(job_id, AnnotationStatus.APPLIED, response=result.output)
        else:
            frame = _status_frame(job_id, AnnotationStatus.FAILED, error=result.error)
        self._router.send_to_sender(job_id, frame)
        self._router.forget(job_id)

    async def _restart_session(self, client: ClientConnection) -> None:
        if self._config.dry_run:
            logger.info("restart_codex ignored in dry-run mode")
            self._router.send(client, {
                "type": "restart_complete", "success": False, "error": "dry-run mode",
            })
            return
        try:
            await self._session.restart()
        except Exception as exc:
            logger.error("Codex restart failed: %s", exc, exc_info=True)
            self._router.send(client, {
                "type": "restart_complete", "success": False, "error": str(exc),
            })
            return
        self._router.send(client, {"type": "restart_complete", "success": True})

    # ── Image jobs ──

    def _ensure_image_generator(self, api_key: str | None, model: str | None) -> None:
        key = api_key or self._image_api_key
        if not key:
            return
        if self._image_generator is None or api_key or model:
            self._image_generator = self._image_generator_factory(
                key, model or self._config.image_model,
            )
            logger.info("Image generator ready (model: %s)", model or "default")

    async def _handle_image_request(
        self,
        job: ImageJob,
        project_root: str,
        client: ClientConnection,
        fast: bool,
    ) -> None:
        request_id = job.id
        generator = self._image_generator
        if generator is None:
            logger.warning("Image request %s: no API key", request_id)
            self._router.send(client, _image_status_frame(
                request_id, ImageJobStatus.FAILED, error=str(ImageServiceConfigError()),
            ))
            return

        self._router.set_sender(request_id, client)
        job.status = ImageJobStatus.ANALYZING
        self._router.send(client, _image_status_frame(request_id, ImageJobStatus.ANALYZING))
        self._job_roots[request_id] = project_root
        started = time.monotonic()
        try:
            suggestions = await generator.analyze(
                job.screenshot, job.instruction,
                self._progress_sink(request_id, "banana_progress"),
                1 if fast else 3,
            )
        except Exception as exc:
            logger.warning(
                "Image request failed: %s (%.1fs): %s",
                request_id, time.monotonic() - started, exc,
            )
            job.status = ImageJobStatus.FAILED
            self._job_roots.pop(request_id, None)
            self._router.send_to_sender(request_id, _image_status_frame(
                request_id, ImageJobStatus.FAILED, error=str(exc),
            ))
            self._router.forget(request_id)
            return

        job.suggestions = suggestions
        job.status = ImageJobStatus.SUGGESTIONS_READY
        self._image_jobs[request_id] = job
        self._router.send_to_sender(request_id, {
            "type": "banana_suggestions",
            "requestId": request_id,
            "suggestions": [s.to_dict() for s in suggestions],
        })
        logger.info(
            "Image request complete: %s, %d images in %.1fs",
            request_id, len(suggestions), time.monotonic() - started,
        )
        if fast and suggestions:
            logger.info("Fast mode: auto-applying suggestion for %s", request_id)
            await self._apply_image_suggestion(request_id, suggestions[0], project_root, client)
        else:
            self._job_roots.pop(request_id, None)
            self._router.send_to_sender(request_id, _image_status_frame(
                request_id, ImageJobStatus.SUGGESTIONS_READY,
            ))
            self._router.forget(request_id)

    async def _apply_image_suggestion(
        self,
        request_id: str,
        suggestion: Suggestion,
        project_root: str,
        client: ClientConnection,
    ) -> None:
        logger.info("Image apply: %s -> %s", request_id, suggestion.title)
        job = self._image_jobs.get(request_id)
        if job is None:
            error = str(JobNotFoundError(request_id))
            logger.warning("Image apply failed: %s", error)
            self._router.send(client, _image_status_frame(
                request_id, ImageJobStatus.FAILED, error=error,
            ))
            return

        self._router.set_sender(request_id, client)
        job.status = ImageJobStatus.APPLYING
        self._job_roots[request_id] = project_root
        self._router.send(client, _image_status_frame(request_id, ImageJobStatus.APPLYING))
        try:
            original_path, target_path = _write_job_images(job.screenshot, suggestion.image)
            logger.info("Images saved: %s, %s", original_path, target_path)
            prompt = build_image_apply_prompt(
                suggestion, job.instruction, job.region,
                str(original_path), str(target_path), job.region_elements,
            )
            annotation = Annotation(
                id=f"banana-{request_id}",
                comment=job.instruction,
                element={
                    "selector": "body",
                    "genericSelector": "body",
                    "fullPath": "html > body",
                    "tagName": "body",
                    "boundingBox": job.region.to_dict(),
                    "parentSelector": "html",
                },
                status=AnnotationStatus.PROCESSING,
            )
            result = await self._session.execute(
                annotation, project_root,
                self._progress_sink(request_id, "banana_progress"),
                self._approval_sink(request_id),
                model_override=self._config.apply_model,
                prompt_override=prompt,
            )
        except Exception as exc:
            logger.warning("Image apply error: %s: %s", request_id, exc, exc_info=True)
            result = AgentResult(success=False, error=str(exc))
        finally:
            self._approvals.clear(request_id)
            self._job_roots.pop(request_id, None)

        if result.success:
            job.status = ImageJobStatus.APPLIED
            job.response = result.output
            logger.info("Image applied: %s (%.1fs)", request_id, result.duration_ms / 1000)
            frame = _image_status_frame(
                request_id, ImageJobStatus.APPLIED, response=result.output,
            )
        else:
            job.status = ImageJobStatus.FAILED
            job.error = result.error
            logger.warning("Image apply failed: %s: %s", request_id, (result.error or "")[:80])
            frame = _image_status_frame(request_id, ImageJobStatus.FAILED, error=result.error)
        self._router.send_to_sender(request_id, frame)
        self._router.forget(request_id)


def _status_frame(
    job_id: str,
    status: AnnotationStatus,
    *,
    error: str | None = None,
    response: str | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "status", "annotationId": job_id, "status": status.value}
    if error is not None:
        frame["error"] = error
    if response is not None:
        frame["response"] = response
    return frame


def _image_status_frame(
    request_id: str,
    status: ImageJobStatus,
    *,
    error: str | None = None,
    response: str | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "banana_status", "requestId": request_id, "status": status.value}
    if error is not None:
        frame["error"] = error
    if response is not None:
        frame["response"] = response
    return frame


def _write_job_images(original: str, target: str) -> tuple[Path, Path]:
    """Decode both data URIs into PNG files under the temp dir."""
    image_dir = Path(tempfile.gettempdir()) / IMAGE_DIR_NAME
    image_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    original_path = image_dir / f"{stamp}-original.png"
    target_path = image_dir / f"{stamp}-target.png"
    original_path.write_bytes(base64.b64decode(strip_data_uri(original)))
    target_path.write_bytes(base64.b64decode(strip_data_uri(target)))
    return original_path, target_path
