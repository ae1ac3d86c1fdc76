"""Codex agent session over the ``codex mcp-server`` JSON-RPC interface.

One ``CodexSession`` owns one long-lived ``codex mcp-server`` process.
``execute`` opens a new Codex thread with the ``codex`` tool and
``reply`` continues one with ``codex-reply``. While a call runs, the
server streams ``codex/event`` notifications; event_interpreter.py
turns them into progress lines and approval requests on the call's
``CallContext``.

Approvals are a two-step exchange. The agent first announces an
``exec_approval_request`` event, which queues a pending decision on
the call context. It then sends a JSON-RPC request and blocks until
we answer; the answer is the oldest queued decision.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from spark_bridge import __version__
from spark_bridge.engine.config import ApprovalCallback, BridgeConfig, ProgressCallback
from spark_bridge.engine.errors import (
    AgentCallTimeoutError,
    AgentTransportError,
    SessionNotReadyError,
)
from spark_bridge.engine.event_interpreter import interpret
from spark_bridge.engine.models import AgentResult, Annotation
from spark_bridge.engine.prompt_builder import build_prompt
from spark_bridge.engine.providers.jsonrpc import JsonRpcStdioSession

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"
HANDSHAKE_TIMEOUT_SECONDS = 30.0

# Answer given to an agent approval query when no decision was queued
# for it. True keeps the agent from blocking forever on an unexpected
# query, at the cost of approving commands nobody was asked about.
DEFAULT_APPROVAL_WHEN_UNQUEUED = True

SENDING_MESSAGE = "Sending to Codex..."


class CallContext:
    """State scoped to one execute/reply call."""

    def __init__(
        self,
        on_progress: ProgressCallback | None = None,
        on_approval: ApprovalCallback | None = None,
        thread_id: str | None = None,
        manual_queue: deque[asyncio.Future[bool]] | None = None,
    ) -> None:
        self._on_progress = on_progress
        self._on_approval = on_approval
        self._manual_queue = manual_queue
        self.thread_id = thread_id
        self.decisions: deque[asyncio.Future[bool]] = deque()
        self._loop = asyncio.get_running_loop()
        self.last_activity = self._loop.time()
        self._tasks: set[asyncio.Task] = set()

    # EventContext

    def set_thread_id(self, thread_id: str) -> None:
        self.thread_id = thread_id

    def touch_activity(self) -> None:
        self.last_activity = self._loop.time()

    def on_progress(self, message: str) -> None:
        self.touch_activity()
        if not message or self._on_progress is None:
            return
        try:
            result = self._on_progress(message)
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))
        except Exception:
            logger.warning("Progress callback raised", exc_info=True)

    def on_approval_request(self, command: str) -> None:
        if self._on_approval is not None:
            decision = asyncio.ensure_future(self._ask(command))
        else:
            decision = self._loop.create_future()
            if self._manual_queue is not None:
                self._manual_queue.append(decision)
        self.decisions.append(decision)

    # Internals

    async def _ask(self, command: str) -> bool:
        assert self._on_approval is not None
        try:
            return bool(await self._on_approval(command))
        except Exception:
            logger.warning("Approval callback raised, treating as denial", exc_info=True)
            return False

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        """Drop queued decisions. Unanswered ones resolve as denied."""
        for decision in self.decisions:
            if not decision.done():
                if isinstance(decision, asyncio.Task):
                    decision.cancel()
                else:
                    decision.set_result(False)
            if self._manual_queue is not None and decision in self._manual_queue:
                self._manual_queue.remove(decision)
        self.decisions.clear()


def _result_text(result: dict[str, Any]) -> str:
    content = result.get("content")
    if not isinstance(content, list):
        return ""
    return "\n".join(
        item.get("text") or ""
        for item in content
        if isinstance(item, dict) and item.get("type") == "text"
    )


class CodexSession:
    """AgentSessionClient backed by ``codex mcp-server``.

    Calls may overlap when the queue runs with concurrency > 1. Each
    call carries its own ``CallContext`` keyed by JSON-RPC request id,
    so progress and approvals never cross between calls.
    """

    def __init__(
        self,
        config: BridgeConfig,
        rpc_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._config = config
        self._model = config.model
        self._rpc_factory = rpc_factory or self._default_rpc
        self._rpc: Any = None
        self._ready = False
        # Set when the server exits on its own; the next call reconnects.
        self._transport_lost = False
        self._reconnect_lock = asyncio.Lock()
        self._contexts: dict[int, CallContext] = {}
        self._manual_approvals: deque[asyncio.Future[bool]] = deque()
        self.tool_names: list[str] = []

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        logger.info("Codex model changed: %s -> %s", self._model, model)
        self._model = model

    def resolve_approval(self, approved: bool) -> None:
        """Answer the oldest approval waiting for a manual decision."""
        while self._manual_approvals:
            decision = self._manual_approvals.popleft()
            if not decision.done():
                decision.set_result(bool(approved))
                return

    # ── Lifecycle ──

    def _default_rpc(self) -> JsonRpcStdioSession:
        return JsonRpcStdioSession(self._config.codex_command, ["mcp-server"])

    async def start(self) -> None:
        """Spawn the server, run the MCP handshake, and list tools."""
        rpc = self._rpc_factory()
        rpc.on_notification = self._on_notification
        rpc.on_request = self._on_request
        rpc.on_close = lambda: self._on_transport_closed(rpc)
        await rpc.start()
        try:
            await rpc.request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {"elicitation": {}},
                    "clientInfo": {"name": "spark-bridge", "version": __version__},
                },
                timeout=HANDSHAKE_TIMEOUT_SECONDS,
            )
            await rpc.notify("notifications/initialized")
            tools = await rpc.request("tools/list", {}, timeout=HANDSHAKE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            await rpc.close()
            raise AgentTransportError("Codex MCP handshake timed out") from exc
        except Exception:
            await rpc.close()
            raise

        tool_list = tools.get("tools", []) if isinstance(tools, dict) else []
        self.tool_names = [t.get("name", "?") for t in tool_list if isinstance(t, dict)]
        self._rpc = rpc
        self._ready = True
        logger.info("Codex MCP server connected (tools: %s)", ", ".join(self.tool_names))

    async def stop(self) -> None:
        """Close the session. Close errors are logged, never raised."""
        self._ready = False
        self._transport_lost = False
        rpc = self._rpc
        self._rpc = None
        for ctx in list(self._contexts.values()):
            ctx.close()
        self._contexts.clear()
        if rpc is None:
            return
        try:
            await rpc.close()
        except Exception:
            logger.warning("Error closing Codex MCP session", exc_info=True)

    def _on_transport_closed(self, rpc: Any) -> None:
        if rpc is not self._rpc:
            return
        self._ready = False
        self._transport_lost = True
        logger.warning("Codex MCP server exited, reconnecting on the next call")

    async def _ensure_ready(self) -> bool:
        async with self._reconnect_lock:
            if self._ready:
                return True
            if not self._transport_lost:
                return False
            logger.info("Reconnecting to Codex MCP server...")
            try:
                await self.restart()
            except Exception as exc:
                logger.warning("Codex MCP reconnect failed: %s", exc)
                self._transport_lost = True
                return False
            return self._ready

    async def restart(self) -> None:
        logger.info("Restarting Codex MCP server...")
        await self.stop()
        await self.start()
        logger.info("Codex MCP server restarted")

    # ── Calls ──

    async def execute(
        self,
        annotation: Annotation,
        project_root: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_approval: ApprovalCallback | None = None,
        *,
        model_override: str | None = None,
        prompt_override: str | None = None,
    ) -> AgentResult:
        """Open a new Codex thread for *annotation*."""
        if not await self._ensure_ready():
            return AgentResult(success=False, error=SessionNotReadyError().reason)

        cwd = project_root or self._config.project_root
        prompt = prompt_override if prompt_override is not None else build_prompt(annotation)
        model = model_override or self._model
        logger.info("codex call: cwd=%s model=%s prompt=%s...", cwd, model, prompt[:200])
        return await self._call(
            "codex",
            {
                "prompt": prompt,
                "cwd": cwd,
                "model": model,
                "sandbox": "workspace-write",
                "approval-policy": "on-request",
            },
            CallContext(on_progress, on_approval, manual_queue=self._manual_approvals),
            self._config.first_call_idle_seconds,
        )

    async def reply(
        self,
        thread_id: str,
        prompt: str,
        on_progress: ProgressCallback | None = None,
        on_approval: ApprovalCallback | None = None,
    ) -> AgentResult:
        """Continue an existing Codex thread."""
        if not await self._ensure_ready():
            return AgentResult(success=False, error=SessionNotReadyError().reason)

        logger.info("codex-reply: thread=%s prompt=%s...", thread_id, prompt[:200])
        return await self._call(
            "codex-reply",
            {"threadId": thread_id, "prompt": prompt},
            CallContext(
                on_progress, on_approval,
                thread_id=thread_id, manual_queue=self._manual_approvals,
            ),
            self._config.follow_up_idle_seconds,
        )

    async def _call(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        ctx: CallContext,
        idle_limit: float,
    ) -> AgentResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        rpc = self._rpc
        request_id = rpc.next_id()
        self._contexts[request_id] = ctx
        ctx.on_progress(SENDING_MESSAGE)

        call = asyncio.ensure_future(rpc.request(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=self._config.call_timeout_seconds,
            request_id=request_id,
        ))
        watchdog = asyncio.ensure_future(self._watch(ctx, idle_limit, started))

        def elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        try:
            done, _ = await asyncio.wait(
                {call, watchdog}, return_when=asyncio.FIRST_COMPLETED
            )
            if call not in done:
                call.cancel()
                raise AgentCallTimeoutError(tool_name, watchdog.result())
            result = call.result()
            if not isinstance(result, dict):
                result = {}

            output = _result_text(result)
            structured = result.get("structuredContent")
            if ctx.thread_id is None and isinstance(structured, dict):
                ctx.thread_id = structured.get("threadId") or None

            if result.get("isError"):
                logger.warning("%s error: %s", tool_name, output[:200])
                return AgentResult(
                    success=False, output=output, error=output or "Codex error",
                    duration_ms=elapsed_ms(), thread_id=ctx.thread_id,
                )
            if output.strip():
                logger.info("%s output:\n%s", tool_name, output.strip())
            return AgentResult(
                success=True, output=output,
                duration_ms=elapsed_ms(), thread_id=ctx.thread_id,
            )
        except asyncio.TimeoutError:
            error = (
                f"Codex call '{tool_name}' timed out after "
                f"{self._config.call_timeout_seconds:.0f}s"
            )
            logger.warning("%s exception (%.1fs): %s", tool_name, elapsed_ms() / 1000, error)
            return AgentResult(
                success=False, error=error,
                duration_ms=elapsed_ms(), thread_id=ctx.thread_id,
            )
        except Exception as exc:
            logger.warning("%s exception (%.1fs): %s", tool_name, elapsed_ms() / 1000, exc)
            return AgentResult(
                success=False, error=str(exc),
                duration_ms=elapsed_ms(), thread_id=ctx.thread_id,
            )
        finally:
            watchdog.cancel()
            if not call.done():
                call.cancel()
            self._contexts.pop(request_id, None)
            ctx.close()

    async def _watch(self, ctx: CallContext, idle_limit: float, started: float) -> float:
        """Return the idle time once it exceeds *idle_limit*."""
        loop = asyncio.get_running_loop()
        last_report = 0
        while True:
            await asyncio.sleep(self._config.watchdog_interval_seconds)
            idle = loop.time() - ctx.last_activity
            if idle > idle_limit:
                logger.warning("[timeout] %.0fs idle, aborting", idle)
                return idle
            elapsed = int(loop.time() - started)
            if elapsed >= last_report + 30:
                last_report = elapsed - elapsed % 30
                logger.info("[%ds elapsed]", elapsed)

    # ── Inbound traffic ──

    def _context_for(self, message: dict[str, Any]) -> CallContext | None:
        params = message.get("params")
        meta = params.get("_meta") if isinstance(params, dict) else None
        if isinstance(meta, dict):
            ctx = self._contexts.get(meta.get("requestId"))
            if ctx is not None:
                return ctx
        if len(self._contexts) == 1:
            return next(iter(self._contexts.values()))
        return None

    def _on_notification(self, message: dict[str, Any]) -> None:
        ctx = self._context_for(message)
        if ctx is None:
            logger.debug("Notification %s with no active call", message.get("method"))
            return
        interpret(message, ctx)

    async def _on_request(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer an agent approval query from the queued decisions."""
        decision: asyncio.Future[bool] | None = None
        for ctx in self._contexts.values():
            if ctx.decisions:
                decision = ctx.decisions.popleft()
                break

        if decision is None:
            approved = DEFAULT_APPROVAL_WHEN_UNQUEUED
            logger.info(
                "No queued decision for %s, answering approved=%s",
                message.get("method"), approved,
            )
        else:
            try:
                approved = bool(await decision)
            except asyncio.CancelledError:
                approved = False
        return {"approved": approved, "decision": "approved" if approved else "denied"}
