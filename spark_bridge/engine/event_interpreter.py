"""Translate Codex event notifications into UI-facing signals.

The Codex MCP server streams ``codex/event`` notifications while a
tool call is running. Each one is reduced to at most four effects on
the caller-supplied context: an activity tick (feeds the idle
watchdog), a thread-id update, a short progress line, or an approval
request forwarded to the session. Nothing here blocks or awaits.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

CODEX_EVENT_METHOD = "codex/event"

# Display limits for progress lines.
MAX_AGENT_TEXT = 200
MAX_REASONING_TEXT = 150
MAX_COMMAND_TEXT = 120

_SHELL_PREFIX_RE = re.compile(r"^/bin/(?:ba)?sh\s+-lc\s+")


class EventContext(Protocol):
    def set_thread_id(self, thread_id: str) -> None: ...
    def touch_activity(self) -> None: ...
    def on_progress(self, message: str) -> None: ...
    def on_approval_request(self, command: str) -> None: ...


class CodexEventType(str, Enum):
    """Known ``msg.type`` tags. UNKNOWN is the explicit default arm."""
    SESSION_CONFIGURED = "session_configured"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    AGENT_MESSAGE = "agent_message"
    AGENT_REASONING = "agent_reasoning"
    RAW_RESPONSE_ITEM = "raw_response_item"
    EXEC_COMMAND_BEGIN = "exec_command_begin"
    EXEC_COMMAND_END = "exec_command_end"
    EXEC_APPROVAL_REQUEST = "exec_approval_request"
    USER_MESSAGE = "user_message"
    PATCH_APPLY_BEGIN = "patch_apply_begin"
    PATCH_APPLY_END = "patch_apply_end"
    TOKEN_COUNT = "token_count"
    TURN_DIFF = "turn_diff"
    ERROR = "error"
    STREAM_ERROR = "stream_error"
    # Streaming deltas and bookkeeping: touch activity, no progress.
    AGENT_MESSAGE_CONTENT_DELTA = "agent_message_content_delta"
    AGENT_MESSAGE_DELTA = "agent_message_delta"
    REASONING_CONTENT_DELTA = "reasoning_content_delta"
    AGENT_REASONING_DELTA = "agent_reasoning_delta"
    AGENT_REASONING_SECTION_BREAK = "agent_reasoning_section_break"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    MCP_STARTUP_UPDATE = "mcp_startup_update"
    MCP_STARTUP_COMPLETE = "mcp_startup_complete"
    UNKNOWN = "__unknown__"

    @classmethod
    def parse(cls, raw: Any) -> CodexEventType:
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


SILENT_EVENTS: frozenset[CodexEventType] = frozenset({
    CodexEventType.AGENT_MESSAGE_CONTENT_DELTA,
    CodexEventType.AGENT_MESSAGE_DELTA,
    CodexEventType.REASONING_CONTENT_DELTA,
    CodexEventType.AGENT_REASONING_DELTA,
    CodexEventType.AGENT_REASONING_SECTION_BREAK,
    CodexEventType.ITEM_STARTED,
    CodexEventType.ITEM_COMPLETED,
    CodexEventType.MCP_STARTUP_UPDATE,
    CodexEventType.MCP_STARTUP_COMPLETE,
})


def normalize_command(raw: Any) -> str:
    """Join a command array and strip the ``/bin/bash -lc`` wrapper."""
    if isinstance(raw, list):
        text = " ".join(part for part in raw if isinstance(part, str))
    elif isinstance(raw, str):
        text = raw
    else:
        text = ""
    return _SHELL_PREFIX_RE.sub("", text)


def _text(msg: dict[str, Any], key: str = "message") -> str:
    value = msg.get(key)
    return value if isinstance(value, str) else ""


# ── Handlers: one per surfaced tag ──

def _on_session_configured(msg: dict, ctx: EventContext) -> None:
    logger.info(
        "[codex] session: model=%s sandbox=%s",
        msg.get("model"), msg.get("sandbox_policy"),
    )


def _on_task_started(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] Task started")


def _on_task_complete(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] Task complete")


def _on_agent_message(msg: dict, ctx: EventContext) -> None:
    text = _text(msg)
    if text.strip():
        logger.info("[codex] %s", text[:MAX_AGENT_TEXT])
        ctx.on_progress(f"[agent] {text[:MAX_AGENT_TEXT]}")


def _on_agent_reasoning(msg: dict, ctx: EventContext) -> None:
    text = _text(msg) or _text(msg, "text")
    if text.strip():
        ctx.on_progress(f"[agent] {text[:MAX_REASONING_TEXT]}")


def _on_raw_response_item(msg: dict, ctx: EventContext) -> None:
    item = msg.get("item")
    if not isinstance(item, dict) or item.get("type") != "reasoning":
        return
    summary = item.get("summary")
    if isinstance(summary, list) and summary and isinstance(summary[0], dict):
        text = summary[0].get("text")
        if isinstance(text, str) and text:
            ctx.on_progress(f"[agent] {text[:MAX_REASONING_TEXT]}")


def _on_exec_command_begin(msg: dict, ctx: EventContext) -> None:
    cmd = normalize_command(msg.get("command"))
    logger.info("[codex] $ %s", cmd[:150])
    ctx.on_progress(f"[cmd] {cmd[:MAX_COMMAND_TEXT]}")


def _on_exec_command_end(msg: dict, ctx: EventContext) -> None:
    code = msg.get("exit_code")
    logger.debug("[codex]   -> exit %s", code)
    if code != 0:
        ctx.on_progress(f"[cmd-err] exit {code}")


def _on_exec_approval_request(msg: dict, ctx: EventContext) -> None:
    cmd = normalize_command(msg.get("command"))
    logger.info("[codex] approval requested: %s", cmd)
    ctx.on_approval_request(cmd)


def _on_user_message(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] Prompt sent")


def _on_patch_apply_begin(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] Applying patch...")


def _on_patch_apply_end(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] Patch applied")


def _on_token_count(msg: dict, ctx: EventContext) -> None:
    info = msg.get("info")
    usage = info.get("total_token_usage") if isinstance(info, dict) else None
    if isinstance(usage, dict):
        ctx.on_progress(
            f"[status] tokens: in={usage.get('input_tokens')} "
            f"out={usage.get('output_tokens')}"
        )


def _on_turn_diff(msg: dict, ctx: EventContext) -> None:
    ctx.on_progress("[status] diff applied")


def _on_error(msg: dict, ctx: EventContext) -> None:
    text = _text(msg) or "unknown error"
    logger.warning("[codex] error event: %s", text[:MAX_AGENT_TEXT])
    ctx.on_progress(f"[error] {text[:MAX_AGENT_TEXT]}")


_HANDLERS: dict[CodexEventType, Callable[[dict, EventContext], None]] = {
    CodexEventType.SESSION_CONFIGURED: _on_session_configured,
    CodexEventType.TASK_STARTED: _on_task_started,
    CodexEventType.TASK_COMPLETE: _on_task_complete,
    CodexEventType.AGENT_MESSAGE: _on_agent_message,
    CodexEventType.AGENT_REASONING: _on_agent_reasoning,
    CodexEventType.RAW_RESPONSE_ITEM: _on_raw_response_item,
    CodexEventType.EXEC_COMMAND_BEGIN: _on_exec_command_begin,
    CodexEventType.EXEC_COMMAND_END: _on_exec_command_end,
    CodexEventType.EXEC_APPROVAL_REQUEST: _on_exec_approval_request,
    CodexEventType.USER_MESSAGE: _on_user_message,
    CodexEventType.PATCH_APPLY_BEGIN: _on_patch_apply_begin,
    CodexEventType.PATCH_APPLY_END: _on_patch_apply_end,
    CodexEventType.TOKEN_COUNT: _on_token_count,
    CodexEventType.TURN_DIFF: _on_turn_diff,
    CodexEventType.ERROR: _on_error,
    CodexEventType.STREAM_ERROR: _on_error,
}


def interpret(notification: dict[str, Any], context: EventContext) -> None:
    """Apply one raw notification to *context*.

    No-op unless the method is ``codex/event`` and params carry a
    ``msg`` object with a type.
    """
    if not isinstance(notification, dict):
        return
    if notification.get("method") != CODEX_EVENT_METHOD:
        return
    params = notification.get("params")
    if not isinstance(params, dict):
        return
    msg = params.get("msg")
    if not isinstance(msg, dict) or "type" not in msg:
        return

    meta = params.get("_meta")
    if isinstance(meta, dict):
        thread_id = meta.get("threadId")
        if isinstance(thread_id, str) and thread_id:
            context.set_thread_id(thread_id)

    context.touch_activity()

    event_type = CodexEventType.parse(msg.get("type"))
    if event_type in SILENT_EVENTS:
        return
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("[other] %s", msg.get("type"))
        return
    handler(msg, context)
