from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

from aiohttp.test_utils import AioHTTPTestCase

from ddkernel.api.server import ExecutionServer
from ddkernel.engine.config import KernelConfig
from ddkernel.engine.service import ExecutionService
from ddkernel.engine.session_process import ProcessExited
from ddkernel.engine.wire import ExecuteFrame, ReadyFrame, ResultFrame, parse_line


class _ScriptedProcess:
    """Answers EXECUTE frames according to the submitted code."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.pid = 777
        self.closed = False

    async def start(self) -> None:
        if self.key != "broken":
            self.inbound.put_nowait(ReadyFrame())

    def write(self, line: str) -> None:
        if self.closed:
            raise RuntimeError("input is closed")
        frame = parse_line(line)
        if not isinstance(frame, ExecuteFrame) or frame.code == "hang":
            return
        if frame.code == "plot":
            result = {
                "stdout": "",
                "stderr": "",
                "artifacts": [{
                    "kind": "image",
                    "payload": "plot_c1.png",
                    "metadata": {"width": 640, "height": 480, "mimeType": "image/png"},
                }],
            }
        elif frame.code == "raise":
            result = {"stdout": "", "stderr": "Traceback\nValueError: bad", "artifacts": []}
        else:
            result = {"stdout": f"ran {frame.code}", "stderr": "", "artifacts": []}
        self.inbound.put_nowait(ResultFrame(frame.execution_id, result))

    async def stop(self, grace: float = 2.0, kill_timeout: float = 5.0) -> int:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(ProcessExited(0, "process exited cleanly"))
        return 0

    def stderr_tail(self, lines: int = 20) -> str:
        return ""


class TestExecutionServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config = KernelConfig(
            output_dir=str(Path(self.tmpdir) / "outputs"),
            ready_timeout_seconds=0.1,
            execution_timeout_seconds=5.0,
        )
        self.service = ExecutionService(
            self.config, process_factory=lambda key, cfg: _ScriptedProcess(key),
        )
        self.kernel_server = ExecutionServer(self.service, port=0)
        return self.kernel_server.app

    async def _execute(self, **body):
        resp = await self.client.post("/api/execute", json=body)
        return resp.status, await resp.json()

    async def test_execute_returns_response_and_acknowledges(self):
        status, data = await self._execute(code="x = 1", cellId="c1", documentId="doc")

        assert status == 200
        assert data["success"] is True
        assert data["sourceId"] == "c1"
        assert data["sessionKey"] == "doc"
        assert data["executionId"].startswith("c1_")
        assert data["stdout"] == "ran x = 1"
        assert data["artifacts"][0]["kind"] == "text"
        assert isinstance(data["executionTimeMs"], int)
        assert self.service.cache.is_consumed(data["executionId"]) is True

    async def test_default_session_key(self):
        status, data = await self._execute(code="1")
        assert status == 200
        assert data["sessionKey"] == "default"

    async def test_image_artifacts_carry_output_url(self):
        status, data = await self._execute(code="plot", sourceId="c1", sessionKey="doc")

        assert status == 200
        (artifact,) = data["artifacts"]
        assert artifact["kind"] == "image"
        assert artifact["url"] == "/api/outputs/plot_c1.png"
        assert artifact["metadata"]["width"] == 640

    async def test_interpreter_error_is_a_normal_response(self):
        status, data = await self._execute(code="raise", sourceId="c1")

        assert status == 200
        assert data["success"] is False
        assert [a["kind"] for a in data["artifacts"]] == ["error"]

    async def test_missing_code_is_bad_request(self):
        status, data = await self._execute(sourceId="c1")

        assert status == 400
        assert data["errorType"] == "BadRequest"
        assert data["success"] is False
        assert data["artifacts"][0]["kind"] == "error"

    async def test_invalid_json_is_bad_request(self):
        resp = await self.client.post(
            "/api/execute", data="{nope", headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        data = await resp.json()
        assert data["errorType"] == "BadRequest"

    async def test_startup_failure_maps_to_503(self):
        status, data = await self._execute(code="1", sessionKey="broken")

        assert status == 503
        assert data["errorType"] == "StartupFailure"
        assert data["artifacts"][0]["kind"] == "error"
        assert "broken" in data["error"]

    async def test_timeout_maps_to_504(self):
        status, data = await self._execute(code="hang", sessionKey="doc", timeout=0.05)

        assert status == 504
        assert data["errorType"] == "ExecutionTimeout"

        # The session survives a single timeout.
        status, data = await self._execute(code="after", sessionKey="doc")
        assert status == 200
        assert data["stdout"] == "ran after"

    async def test_late_retrieval(self):
        _, data = await self._execute(code="x", sourceId="c9")

        resp = await self.client.get(f"/api/execution/{data['executionId']}")
        assert resp.status == 200
        fetched = await resp.json()
        assert fetched["stdout"] == "ran x"

        resp = await self.client.get("/api/execution/unknown")
        assert resp.status == 404

    async def test_reconcile_endpoint(self):
        body = {
            "priorSlots": [
                {
                    "slotId": "S1",
                    "position": {"x": 420, "y": 100},
                    "size": {"width": 400, "height": 100},
                    "artifactKind": "text",
                },
                {
                    "slotId": "S2",
                    "position": {"x": 420, "y": 220},
                    "size": {"width": 500, "height": 400},
                    "artifactKind": "image",
                },
            ],
            "artifacts": [{"kind": "text", "payload": "World"}],
            "anchor": {"position": {"x": 100, "y": 100}, "size": {"width": 300, "height": 200}},
        }
        resp = await self.client.post("/api/reconcile", json=body)
        assert resp.status == 200
        data = await resp.json()
        assert data["assignments"][0]["slot"]["slotId"] == "S1"
        assert data["assignments"][0]["isNew"] is False
        assert [s["slotId"] for s in data["removed"]] == ["S2"]

    async def test_reconcile_rejects_unknown_kind(self):
        resp = await self.client.post(
            "/api/reconcile", json={"artifacts": [{"kind": "video"}]},
        )
        assert resp.status == 400

    async def test_sessions_list_and_delete(self):
        await self._execute(code="1", sessionKey="doc")

        resp = await self.client.get("/api/sessions")
        sessions = (await resp.json())["sessions"]
        assert [s["sessionKey"] for s in sessions] == ["doc"]
        assert sessions[0]["state"] == "ready"

        resp = await self.client.delete("/api/sessions/doc")
        assert resp.status == 200
        assert self.service.registry.keys() == []

        resp = await self.client.delete("/api/sessions/doc")
        assert resp.status == 404

    async def test_health(self):
        resp = await self.client.get("/api/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert "pid" in data

    async def test_python_info(self):
        self.service.python_info = AsyncMock(return_value={
            "success": True, "version": "3.12.1", "executable": "/usr/bin/python3",
            "matplotlib": False,
        })
        resp = await self.client.get("/api/python-info")
        assert resp.status == 200
        assert (await resp.json())["version"] == "3.12.1"

    async def test_shutdown_stops_sessions_and_purges_outputs(self):
        await self._execute(code="1", sessionKey="a")
        await self._execute(code="1", sessionKey="b")
        leftover = Path(self.config.output_dir) / "plot_old.png"
        leftover.write_bytes(b"\x89PNG")

        resp = await self.client.post("/api/shutdown")
        assert resp.status == 200
        data = await resp.json()
        assert data["sessionsStopped"] == 2
        assert not leftover.exists()

        # The server keeps serving and starts fresh sessions on demand.
        status, _ = await self._execute(code="1", sessionKey="a")
        assert status == 200

    async def test_outputs_are_served_statically(self):
        (Path(self.config.output_dir) / "plot_c1.png").write_bytes(b"\x89PNG")
        resp = await self.client.get("/api/outputs/plot_c1.png")
        assert resp.status == 200
        assert await resp.read() == b"\x89PNG"
