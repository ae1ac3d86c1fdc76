"""Newline-delimited JSON-RPC 2.0 over a subprocess's stdio.

``codex mcp-server`` speaks MCP, which is JSON-RPC framed one message
per line. Three kinds of inbound lines are handled by one reader task:

- responses (``id`` + ``result``/``error``) resolve pending requests
- notifications (``method``, no ``id``) go to ``on_notification``
- server requests (``method`` + ``id``) go to ``on_request``; its
  return value is written back as the result

Lines that are not JSON objects are skipped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable

from spark_bridge.engine.errors import AgentTransportError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[dict[str, Any]], None]
RequestHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
CloseHandler = Callable[[], None]

MAX_STDERR_LINE = 150
# Per-line buffer for the agent's stdout. Diffs and tool results can
# exceed asyncio's 64 KiB default by a wide margin.
STREAM_LIMIT = 32 * 1024 * 1024
_INTERNAL_ERROR = -32603


class JsonRpcStdioSession:
    """One JSON-RPC peer reachable through a child process's pipes."""

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        on_notification: NotificationHandler | None = None,
        on_request: RequestHandler | None = None,
        on_close: CloseHandler | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._command = command
        self._args = list(args or [])
        self._env = env
        self.on_notification = on_notification
        self.on_request = on_request
        self.on_close = on_close

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: Any = None
        self._request_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = True

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def start(self) -> None:
        """Spawn the child process and begin reading its output."""
        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                self._command, *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                env=self._env if self._env is not None else dict(os.environ),
            )
        except FileNotFoundError as exc:
            raise AgentTransportError(
                f"'{self._command}' CLI not found. Install Codex CLI first."
            ) from exc
        except OSError as exc:
            raise AgentTransportError(
                f"Failed to start '{self._command}': {exc}"
            ) from exc

        self._process = proc
        logger.info("%s %s started (pid=%d)", self._command, " ".join(self._args), proc.pid)
        self.attach(proc.stdout, proc.stdin, proc.stderr)

    def attach(self, reader: Any, writer: Any, stderr: Any = None) -> None:
        """Bind to already-open streams and start the reader tasks."""
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._spawn(self._read_loop())
        if stderr is not None:
            self._spawn(self._relay_stderr(stderr))

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        *,
        request_id: int | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Pass ``request_id`` (from ``next_id()``) to know the id before
        the request goes out. Raises AgentTransportError on a JSON-RPC
        error object or when the stream closes first.
        ``asyncio.TimeoutError`` propagates. Cancelling the caller sends
        ``notifications/cancelled`` for the request.
        """
        if self._closed:
            raise AgentTransportError("JSON-RPC session is not open")
        if request_id is None:
            request_id = self.next_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(message)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if not self._closed:
                self._spawn(self._send_cancelled(request_id))
            raise
        finally:
            self._pending.pop(request_id, None)

    def next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def close(self) -> None:
        """Stop the reader, fail pending requests, and end the child."""
        self._closed = True
        self._fail_pending(AgentTransportError("JSON-RPC session closed"))

        if self._writer is not None:
            try:
                self._writer.close()
            except (OSError, RuntimeError):
                logger.debug("Error closing JSON-RPC writer", exc_info=True)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        proc = self._process
        self._process = None
        self._reader = None
        self._writer = None
        if proc is None:
            return
        pid = proc.pid
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            logger.info("%s stopped (pid=%d)", self._command, pid)
        except ProcessLookupError:
            pass

    # ── Internals ──

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, message: dict[str, Any]) -> None:
        if self._writer is None:
            raise AgentTransportError("JSON-RPC session is not open")
        data = json.dumps(message).encode("utf-8") + b"\n"
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            raise AgentTransportError(f"Write to agent failed: {exc}") from exc

    async def _send_cancelled(self, request_id: int) -> None:
        try:
            await self.notify(
                "notifications/cancelled",
                {"requestId": request_id, "reason": "cancelled by client"},
            )
        except AgentTransportError:
            logger.debug("Could not send cancel for request %d", request_id)

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # StreamReader drops the overrun chunk; any tail that
                    # arrives later fails JSON parsing and is skipped.
                    logger.warning("Skipping agent output line over the stream limit")
                    continue
                if not line:
                    break
                try:
                    message = json.loads(line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON line from agent")
                    continue
                if isinstance(message, dict):
                    self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("JSON-RPC reader failed", exc_info=True)
        closed_by_peer = not self._closed
        if closed_by_peer:
            logger.warning("Agent closed its output stream")
        self._closed = True
        self._fail_pending(AgentTransportError("Agent connection closed"))
        if closed_by_peer and self.on_close is not None:
            try:
                self.on_close()
            except Exception:
                logger.warning("Close handler raised", exc_info=True)

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        msg_id = message.get("id")

        if method is None:
            future = self._pending.get(msg_id) if msg_id is not None else None
            if future is None or future.done():
                logger.debug("Dropping response for unknown id %r", msg_id)
                return
            if "error" in message:
                error = message["error"]
                text = error.get("message") if isinstance(error, dict) else str(error)
                future.set_exception(AgentTransportError(text or "JSON-RPC error"))
            else:
                future.set_result(message.get("result"))
            return

        if msg_id is None:
            if self.on_notification is not None:
                try:
                    self.on_notification(message)
                except Exception:
                    logger.warning("Notification handler raised for %s", method, exc_info=True)
            return

        self._spawn(self._answer(message))

    async def _answer(self, message: dict[str, Any]) -> None:
        msg_id = message.get("id")
        logger.info("[codex -> client] method: %s", message.get("method"))
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id}
        if self.on_request is None:
            reply["result"] = {}
        else:
            try:
                reply["result"] = await self.on_request(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Request handler raised for %s", message.get("method"), exc_info=True)
                reply["error"] = {"code": _INTERNAL_ERROR, "message": str(exc)}
        try:
            await self._write(reply)
        except AgentTransportError:
            logger.warning("Could not answer agent request %r", msg_id)

    async def _relay_stderr(self, stream: Any) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("[codex stderr] %s", text[:MAX_STDERR_LINE])
