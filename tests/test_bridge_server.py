from __future__ import annotations

import asyncio
import errno
import tempfile
import unittest
from typing import Any
from unittest.mock import patch

from aiohttp.test_utils import AioHTTPTestCase

from spark_bridge.engine.config import BridgeConfig
from spark_bridge.engine.models import AgentResult, Suggestion
from spark_bridge.engine.plan_meta import PLAN_META_SENTINEL
from spark_bridge.server.bridge_server import (
    NO_SESSION_FOR_PLAN,
    PROJECT_ROOT_REQUIRED,
    BridgeServer,
)

PNG_URI = "data:image/png;base64,iVBORw0KGgo="


class _FakeSession:
    """Records calls; results come from ``execute_handler``/``reply_handler``."""

    def __init__(self) -> None:
        self.ready = True
        self.model = "gpt-test"
        self.execute_calls: list[dict[str, Any]] = []
        self.reply_calls: list[tuple[str, str]] = []
        self.execute_handler = None
        self.reply_handler = None
        self.restarts = 0
        self.stopped = False

    async def start(self) -> None:
        self.ready = True

    async def stop(self) -> None:
        self.stopped = True
        self.ready = False

    async def restart(self) -> None:
        self.restarts += 1

    def set_model(self, model: str) -> None:
        self.model = model

    async def execute(self, annotation, project_root=None, on_progress=None,
                      on_approval=None, **kwargs) -> AgentResult:
        self.execute_calls.append({
            "annotation": annotation, "project_root": project_root, **kwargs,
        })
        if self.execute_handler is None:
            return AgentResult(success=True, output="done", thread_id=f"th-{annotation.id}")
        return await self.execute_handler(annotation, on_progress, on_approval)

    async def reply(self, thread_id, prompt, on_progress=None, on_approval=None) -> AgentResult:
        self.reply_calls.append((thread_id, prompt))
        if self.reply_handler is None:
            return AgentResult(success=True, output="replied", thread_id=thread_id)
        return await self.reply_handler(thread_id, prompt, on_progress)


class _FakeGenerator:
    def __init__(self, api_key: str, model: str | None = None) -> None:
        self.api_key = api_key
        self.model = model
        self.calls: list[int] = []

    async def analyze(self, screenshot, instruction, on_progress=None, count=3):
        self.calls.append(count)
        if on_progress:
            on_progress("[A] Image generated!")
        return [
            Suggestion(id=f"s-{i}", title=f"Option {label}", description="Bolder", image=PNG_URI)
            for i, label in enumerate("ABC"[:count])
        ]


def _annotation(job_id: str = "a1", comment: str = "Make the button blue") -> dict[str, Any]:
    return {
        "id": job_id,
        "comment": comment,
        "element": {"selector": "#buy", "tagName": "button"},
        "timestamp": 1700000000000,
    }


def _image_request(job_id: str = "r1") -> dict[str, Any]:
    return {
        "id": job_id,
        "instruction": "Modernize the header",
        "screenshot": PNG_URI,
        "region": {"x": 0, "y": 0, "width": 300, "height": 80},
    }


async def _recv_until(ws, predicate, limit: int = 30) -> list[dict[str, Any]]:
    frames = []
    for _ in range(limit):
        frame = await asyncio.wait_for(ws.receive_json(), timeout=5)
        frames.append(frame)
        if predicate(frame):
            return frames
    raise AssertionError(f"predicate never matched: {frames}")


def _status(job_id: str, status: str):
    return lambda f: f.get("type") == "status" and f.get("annotationId") == job_id \
        and f.get("status") == status


def _image_status(job_id: str, status: str):
    return lambda f: f.get("type") == "banana_status" and f.get("requestId") == job_id \
        and f.get("status") == status


class _BridgeTestCase(AioHTTPTestCase):
    dry_run = False
    require_project_root = False

    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        config = BridgeConfig(
            project_root=self.tmpdir,
            dry_run=self.dry_run,
            require_project_root=self.require_project_root,
        )
        config.image_api_key = None
        self.config = config
        self.session = _FakeSession()
        self.generators: list[_FakeGenerator] = []

        def factory(api_key, model=None):
            generator = _FakeGenerator(api_key, model)
            self.generators.append(generator)
            return generator

        self.bridge = BridgeServer(config, session=self.session, image_generator_factory=factory)
        self.bridge.dry_run_delays = (0.0, 0.0, 0.0)
        return self.bridge.app

    async def asyncTearDown(self):
        await self.bridge.stop()
        await super().asyncTearDown()

    async def _connect(self, project_root: str | None = "/srv/shop"):
        ws = await self.client.ws_connect("/")
        first = await asyncio.wait_for(ws.receive_json(), timeout=5)
        assert first == {"type": "connected"}
        if project_root:
            await ws.send_json({"type": "register", "projectRoot": project_root})
        return ws


class TestBridgeServerAgent(_BridgeTestCase):

    async def test_ping_pong(self):
        ws = await self._connect(None)
        await ws.send_json({"type": "ping"})
        assert await asyncio.wait_for(ws.receive_json(), timeout=5) == {"type": "pong"}
        await ws.close()

    async def test_health(self):
        ws = await self._connect(None)
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["session_ready"] is True
        assert data["clients"] == 1
        assert data["queue"] == {"active": 0, "pending": 0}
        await ws.close()

    async def test_annotation_applied_in_registered_root(self):
        async def handler(annotation, on_progress, on_approval):
            on_progress("[agent] Editing Button.tsx")
            return AgentResult(success=True, output="Changed color", thread_id="th-1")

        self.session.execute_handler = handler
        ws = await self._connect("/srv/shop")
        await ws.send_json({"type": "annotation", "payload": _annotation()})

        frames = await _recv_until(ws, _status("a1", "applied"))

        assert frames[0] == {"type": "status", "annotationId": "a1", "status": "processing"}
        assert {"type": "progress", "annotationId": "a1",
                "message": "[agent] Editing Button.tsx"} in frames
        assert frames[-1]["response"] == "Changed color"
        call = self.session.execute_calls[0]
        assert call["project_root"] == "/srv/shop"
        assert call["annotation"].comment == "Make the button blue"
        assert call["prompt_override"] is None
        assert self.bridge.thread_map["a1"] == "th-1"
        await ws.close()

    async def test_finished_jobs_release_router_entries(self):
        ws = await self._connect()
        for i in range(3):
            await ws.send_json({"type": "annotation", "payload": _annotation(f"a{i}")})
        await _recv_until(ws, _status("a2", "applied"))
        assert len(self.bridge._router) == 0

        await ws.send_json({"type": "annotation", "payload": _annotation("a0", "Darker")})
        frames = await _recv_until(ws, _status("a0", "applied"))
        assert frames[-1]["response"] == "replied"
        assert len(self.bridge._router) == 0

        await ws.send_json({"type": "plan_apply", "annotationId": "a1", "approach": 0})
        await _recv_until(ws, _status("a1", "applied"))
        await ws.send_json({"type": "plan_apply", "annotationId": "zz", "approach": 0})
        await _recv_until(ws, _status("zz", "failed"))
        assert len(self.bridge._router) == 0
        await ws.close()

    async def test_image_jobs_release_router_entries(self):
        ws = await self._connect()
        await ws.send_json({"type": "banana_request", "payload": _image_request("r0")})
        await _recv_until(ws, _image_status("r0", "failed"))
        assert len(self.bridge._router) == 0

        await ws.send_json({
            "type": "banana_request", "payload": _image_request(), "apiKey": "g-key",
        })
        frames = await _recv_until(ws, _image_status("r1", "suggestions_ready"))
        assert len(self.bridge._router) == 0

        suggestion = [f for f in frames if f["type"] == "banana_suggestions"][0]["suggestions"][0]
        with patch("spark_bridge.server.bridge_server.tempfile.gettempdir",
                   return_value=self.tmpdir):
            await ws.send_json({"type": "banana_apply", "requestId": "r1", "suggestion": suggestion})
            await _recv_until(ws, _image_status("r1", "applied"))
        await ws.send_json({"type": "banana_apply", "requestId": "nope", "suggestion": suggestion})
        await _recv_until(ws, _image_status("nope", "failed"))
        assert len(self.bridge._router) == 0
        await ws.close()

    async def test_unregistered_client_uses_default_root(self):
        ws = await self._connect(None)
        await ws.send_json({"type": "annotation", "payload": _annotation()})
        await _recv_until(ws, _status("a1", "applied"))
        assert self.session.execute_calls[0]["project_root"] == self.tmpdir
        await ws.close()

    async def test_follow_up_continues_thread(self):
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation()})
        await _recv_until(ws, _status("a1", "applied"))

        await ws.send_json({"type": "annotation", "payload": _annotation(comment="Darker")})
        frames = await _recv_until(ws, _status("a1", "applied"))

        assert frames[-1]["response"] == "replied"
        assert self.session.reply_calls == [("th-a1", "Darker")]
        assert len(self.session.execute_calls) == 1
        await ws.close()

    async def test_plan_variants_precede_final_status(self):
        output = (
            "Two ways to do it.\n"
            f"{PLAN_META_SENTINEL}\n"
            '[{"index": 0, "title": "Tailwind", "description": "Swap classes"},'
            ' {"index": 1, "title": "CSS var", "description": "Theme token"}]\n'
            f"{PLAN_META_SENTINEL}\n"
        )

        async def handler(annotation, on_progress, on_approval):
            return AgentResult(success=True, output=output, thread_id="th-p")

        self.session.execute_handler = handler
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation(), "plan": True})

        frames = await _recv_until(ws, _status("a1", "applied"))
        types = [f["type"] for f in frames]

        assert types.index("plan_variants_ready") < len(types) - 1
        variants = frames[types.index("plan_variants_ready")]["variants"]
        assert [v["title"] for v in variants] == ["Tailwind", "CSS var"]
        assert "## Plan Mode" in self.session.execute_calls[0]["prompt_override"]
        await ws.close()

    async def test_failed_result_reported(self):
        async def handler(annotation, on_progress, on_approval):
            return AgentResult(success=False, error="Codex call 'codex' timed out after 181s")

        self.session.execute_handler = handler
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation()})

        frames = await _recv_until(ws, _status("a1", "failed"))
        assert "timed out" in frames[-1]["error"]
        await ws.close()

    async def test_crashing_job_does_not_stall_queue(self):
        async def handler(annotation, on_progress, on_approval):
            if annotation.id == "a1":
                raise RuntimeError("agent crashed")
            return AgentResult(success=True, output="ok")

        self.session.execute_handler = handler
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation("a1")})
        await ws.send_json({"type": "annotation", "payload": _annotation("a2")})

        frames = await _recv_until(ws, _status("a2", "applied"))
        failed = [f for f in frames if _status("a1", "failed")(f)]
        assert failed and failed[0]["error"] == "agent crashed"
        await ws.close()

    async def test_approval_round_trip(self):
        async def handler(annotation, on_progress, on_approval):
            approved = await on_approval("npm test")
            return AgentResult(success=True, output=f"approved={approved}")

        self.session.execute_handler = handler
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation()})

        frames = await _recv_until(ws, lambda f: f["type"] == "approval_request")
        assert frames[-1] == {
            "type": "approval_request", "annotationId": "a1", "command": "npm test",
        }
        await ws.send_json({"type": "approval_response", "annotationId": "a1", "approved": True})

        frames = await _recv_until(ws, _status("a1", "applied"))
        assert frames[-1]["response"] == "approved=True"
        await ws.close()

    async def test_plan_apply_without_thread(self):
        ws = await self._connect()
        await ws.send_json({"type": "plan_apply", "annotationId": "zz", "approach": 0})

        frames = await _recv_until(ws, _status("zz", "failed"))
        assert frames[-1]["error"] == NO_SESSION_FOR_PLAN
        assert self.session.reply_calls == []
        await ws.close()

    async def test_plan_apply_and_cancel(self):
        self.bridge.thread_map["a1"] = "th-1"
        ws = await self._connect()

        await ws.send_json({"type": "plan_apply", "annotationId": "a1", "approach": 1})
        frames = await _recv_until(ws, _status("a1", "applied"))
        assert frames[0]["status"] == "processing"

        await ws.send_json({"type": "plan_apply", "annotationId": "a1", "approach": "cancel"})
        await _recv_until(ws, _status("a1", "applied"))

        (t1, apply_prompt), (t2, cancel_prompt) = self.session.reply_calls
        assert t1 == t2 == "th-1"
        assert "Apply approach 1" in apply_prompt
        assert "cancelled" in cancel_prompt
        await ws.close()

    async def test_set_model_and_restart(self):
        ws = await self._connect(None)
        await ws.send_json({"type": "set_model", "model": "gpt-big"})
        await ws.send_json({"type": "restart_codex"})

        frames = await _recv_until(ws, lambda f: f["type"] == "restart_complete")
        assert frames[-1] == {"type": "restart_complete", "success": True}
        assert self.session.model == "gpt-big"
        assert self.session.restarts == 1
        await ws.close()

    async def test_malformed_and_unknown_frames_ignored(self):
        ws = await self._connect(None)
        await ws.send_str("{not json")
        await ws.send_json(["not", "an", "object"])
        await ws.send_json({"type": "teleport"})
        await ws.send_json({"type": "annotation", "payload": {"comment": "no id"}})
        await ws.send_json({"type": "ping"})
        assert await asyncio.wait_for(ws.receive_json(), timeout=5) == {"type": "pong"}
        await ws.close()

    async def test_image_request_without_key(self):
        ws = await self._connect()
        await ws.send_json({"type": "banana_request", "payload": _image_request()})

        frames = await _recv_until(ws, _image_status("r1", "failed"))
        assert "No Gemini API key" in frames[-1]["error"]
        await ws.close()

    async def test_image_request_then_apply(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "banana_request", "payload": _image_request(),
            "apiKey": "g-key", "model": "gemini-test",
        })

        frames = await _recv_until(ws, _image_status("r1", "suggestions_ready"))
        assert frames[0]["status"] == "analyzing"
        assert {"type": "banana_progress", "requestId": "r1",
                "message": "[A] Image generated!"} in frames
        suggestions = [f for f in frames if f["type"] == "banana_suggestions"][0]["suggestions"]
        assert len(suggestions) == 3
        assert self.generators[-1].api_key == "g-key"
        assert self.generators[-1].model == "gemini-test"

        with patch("spark_bridge.server.bridge_server.tempfile.gettempdir",
                   return_value=self.tmpdir):
            await ws.send_json({
                "type": "banana_apply", "requestId": "r1", "suggestion": suggestions[1],
            })
            frames = await _recv_until(ws, _image_status("r1", "applied"))

        assert frames[0]["status"] == "applying"
        call = self.session.execute_calls[-1]
        assert call["annotation"].id == "banana-r1"
        assert call["project_root"] == "/srv/shop"
        assert call["model_override"] == self.config.apply_model
        assert "# UI Redesign Request" in call["prompt_override"]
        assert "spark-banana" in call["prompt_override"]
        await ws.close()

    async def test_fast_image_request_auto_applies(self):
        ws = await self._connect()
        with patch("spark_bridge.server.bridge_server.tempfile.gettempdir",
                   return_value=self.tmpdir):
            await ws.send_json({
                "type": "banana_request", "payload": _image_request(),
                "apiKey": "g-key", "fast": True,
            })
            frames = await _recv_until(ws, _image_status("r1", "applied"))

        statuses = [f["status"] for f in frames if f["type"] == "banana_status"]
        assert statuses == ["analyzing", "applying", "applied"]
        assert self.generators[-1].calls == [1]
        await ws.close()

    async def test_image_apply_unknown_request(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "banana_apply", "requestId": "nope",
            "suggestion": {"id": "s", "title": "t", "description": "d", "image": PNG_URI},
        })
        frames = await _recv_until(ws, _image_status("nope", "failed"))
        assert "Request nope not found" in frames[-1]["error"]
        await ws.close()


class TestBridgeServerDryRun(_BridgeTestCase):
    dry_run = True

    async def test_simulated_progress(self):
        ws = await self._connect()
        await ws.send_json({"type": "annotation", "payload": _annotation()})

        frames = await _recv_until(ws, _status("a1", "applied"))
        progress = [f["message"] for f in frames if f["type"] == "progress"]
        assert progress == [
            "[dry-run] Sending to Codex...",
            '[dry-run] Analyzing selector "#buy"...',
            "[dry-run] Applying code changes...",
        ]
        assert self.session.execute_calls == []
        await ws.close()

    async def test_restart_reports_dry_run(self):
        ws = await self._connect(None)
        await ws.send_json({"type": "restart_codex"})
        frames = await _recv_until(ws, lambda f: f["type"] == "restart_complete")
        assert frames[-1] == {
            "type": "restart_complete", "success": False, "error": "dry-run mode",
        }
        assert self.session.restarts == 0
        await ws.close()

    async def test_reconnect_rebinds_in_flight_job(self):
        self.bridge.dry_run_delays = (0.3, 0.3, 0.3)
        ws1 = await self._connect("/srv/shop")
        await ws1.send_json({"type": "annotation", "payload": _annotation()})
        await _recv_until(ws1, _status("a1", "processing"))
        await ws1.close()

        ws2 = await self._connect("/srv/shop")
        frames = await _recv_until(ws2, _status("a1", "applied"))
        assert frames[-1]["annotationId"] == "a1"
        await ws2.close()

    async def test_other_project_does_not_receive_job(self):
        self.bridge.dry_run_delays = (0.2, 0.2, 0.2)
        ws1 = await self._connect("/srv/shop")
        await ws1.send_json({"type": "annotation", "payload": _annotation()})
        await _recv_until(ws1, _status("a1", "processing"))
        await ws1.close()

        ws2 = await self._connect("/srv/blog")
        await asyncio.sleep(0.8)
        await ws2.send_json({"type": "ping"})
        assert await asyncio.wait_for(ws2.receive_json(), timeout=5) == {"type": "pong"}
        await ws2.close()


class TestBridgeServerStrictRoots(_BridgeTestCase):
    require_project_root = True

    async def test_unregistered_jobs_rejected(self):
        ws = await self._connect(None)
        await ws.send_json({"type": "annotation", "payload": _annotation()})
        frames = await _recv_until(ws, _status("a1", "failed"))
        assert frames[-1]["error"] == PROJECT_ROOT_REQUIRED

        await ws.send_json({"type": "banana_request", "payload": _image_request()})
        frames = await _recv_until(ws, _image_status("r1", "failed"))
        assert frames[-1]["error"] == PROJECT_ROOT_REQUIRED
        assert self.session.execute_calls == []
        await ws.close()

    async def test_registered_client_accepted(self):
        ws = await self._connect("/srv/shop")
        await ws.send_json({"type": "annotation", "payload": _annotation()})
        await _recv_until(ws, _status("a1", "applied"))
        assert self.session.execute_calls[0]["project_root"] == "/srv/shop"
        await ws.close()


class TestBridgeServerStartup(unittest.IsolatedAsyncioTestCase):

    async def test_port_in_use_skips_startup(self):
        session = _FakeSession()
        bridge = BridgeServer(BridgeConfig(project_root="/srv/shop", port=3799), session=session)

        with patch("spark_bridge.server.bridge_server.web.TCPSite.start",
                   side_effect=OSError(errno.EADDRINUSE, "Address already in use")):
            started = await bridge.start()

        assert started is False
        assert session.stopped is True

    async def test_other_bind_errors_propagate(self):
        session = _FakeSession()
        bridge = BridgeServer(BridgeConfig(project_root="/srv/shop", port=3799), session=session)

        with patch("spark_bridge.server.bridge_server.web.TCPSite.start",
                   side_effect=OSError(errno.EACCES, "Permission denied")):
            with self.assertRaises(OSError):
                await bridge.start()
        assert session.stopped is True
