"""Integration tests for the FastAPI application (browser replaced by fakes).

Run with: pytest tests/integration/test_api.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pagerun.api.app import create_app
from pagerun.service import AutomationService

pytestmark = pytest.mark.integration


@pytest.fixture()
def service(settings, fake_sessions_cls, fake_page_cls, fake_element_cls, blob_store) -> AutomationService:
    page = fake_page_cls(
        {
            "body": fake_element_cls(),
            ".followers": fake_element_cls("1,024"),
            ".header": fake_element_cls(shot=b"header"),
        }
    )
    svc = AutomationService(settings, sessions=fake_sessions_cls(page), blob_store=blob_store)
    svc.load_workflows()
    return svc


@pytest.fixture()
def client(service: AutomationService):
    with TestClient(create_app(service=service)) as c:
        yield c


# ===================================================================
# Health / status
# ===================================================================


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status(self, client: TestClient) -> None:
        data = client.get("/status").json()
        assert data["status"] == "running"
        assert data["workflows"] == 2
        assert data["running_tasks"] == []
        assert data["paused_tasks"] == []

    def test_no_service_is_503(self) -> None:
        app = create_app()
        app.state.service = None
        resp = TestClient(app).get("/status")
        assert resp.status_code == 503

    def test_owned_service_lifecycle(self) -> None:
        built = MagicMock()
        built.shutdown = AsyncMock()

        with (
            patch("pagerun.api.app.configure_logging") as configure,
            patch("pagerun.api.app.build_service", return_value=built) as build,
        ):
            app = create_app()
            with TestClient(app):
                assert app.state.service is built

        configure.assert_called_once_with()
        build.assert_called_once()
        built.load_workflows.assert_called_once_with()
        built.shutdown.assert_awaited_once()
        assert app.state.service is None


# ===================================================================
# Workflows
# ===================================================================


class TestWorkflowRoutes:
    def test_list(self, client: TestClient) -> None:
        data = client.get("/workflows").json()
        by_id = {wf["workflow_id"]: wf for wf in data}
        assert by_id["profile_metrics"]["step_count"] == 3
        assert by_id["retired_flow"]["enabled"] is False

    def test_get_uses_document_field_names(self, client: TestClient) -> None:
        data = client.get("/workflows/profile_metrics").json()
        assert data["workflowId"] == "profile_metrics"
        assert data["steps"][1]["dataName"] == "followers"

    def test_get_unknown(self, client: TestClient) -> None:
        assert client.get("/workflows/ghost").status_code == 404


# ===================================================================
# Tasks
# ===================================================================


class TestTaskRoutes:
    def test_execute(self, client: TestClient) -> None:
        resp = client.post("/tasks/execute", json={"workflow_id": "profile_metrics", "input_value": "42"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "completed"
        assert data["data"] == {"followers": "1,024"}
        assert data["screenshots"][0]["name"] == "42_header.png"

    def test_execute_unknown_workflow(self, client: TestClient) -> None:
        resp = client.post("/tasks/execute", json={"workflow_id": "ghost"})
        assert resp.status_code == 404

    def test_execute_disabled_workflow(self, client: TestClient) -> None:
        resp = client.post("/tasks/execute", json={"workflow_id": "retired_flow"})
        assert resp.status_code == 400

    def test_submit_runs_in_background(self, client: TestClient) -> None:
        resp = client.post("/tasks", json={"workflow_id": "profile_metrics", "input_value": "7"})
        assert resp.status_code == 202
        task_id = resp.json()["task_id"]

        status = client.get(f"/tasks/{task_id}").json()
        assert status["status"] == "completed"
        assert status["progress"]["status"] == "completed"
        assert status["result"]["data"]["followers"] == "1,024"

    def test_unknown_task(self, client: TestClient) -> None:
        assert client.get("/tasks/ghost").status_code == 404

    def test_batch(self, client: TestClient) -> None:
        resp = client.post("/tasks/batch", json={"workflow_id": "profile_metrics", "input_values": ["1", "2"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_count"] == 2
        assert data["success_count"] == 2
        assert [r["input_value"] for r in data["results"]] == ["1", "2"]

    def test_batch_over_limit(self, client: TestClient, service: AutomationService) -> None:
        service.settings.runner.max_batch_size = 1
        resp = client.post("/tasks/batch", json={"workflow_id": "profile_metrics", "input_values": ["1", "2"]})
        assert resp.status_code == 400
        assert "exceeds" in resp.json()["detail"]

    def test_batch_requires_inputs(self, client: TestClient) -> None:
        resp = client.post("/tasks/batch", json={"workflow_id": "profile_metrics", "input_values": []})
        assert resp.status_code == 422

    def test_resume_not_paused(self, client: TestClient) -> None:
        resp = client.post("/tasks/abc/resume")
        assert resp.status_code == 200
        assert resp.json() == {"task_id": "abc", "accepted": False, "reason": "not_paused"}


# ===================================================================
# WebSocket progress
# ===================================================================


class TestProgressSocket:
    def test_unknown_task_closes_with_4004(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/progress/ghost") as ws:
            assert ws.receive_json()["error"] == "task_not_found"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
        assert exc_info.value.code == 4004

    def test_snapshot_ping_and_resume(self, client: TestClient) -> None:
        task_id = client.post("/tasks/execute", json={"workflow_id": "profile_metrics", "input_value": "1"}).json()[
            "task_id"
        ]

        with client.websocket_connect(f"/ws/progress/{task_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["data"]["status"] == "completed"

            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            ws.send_json({"action": "resume"})
            ack = ws.receive_json()
            assert ack == {"type": "resume_ack", "task_id": task_id, "accepted": False, "reason": "not_paused"}

            ws.send_text("{not json")
            assert ws.receive_json()["error"] == "invalid_message"

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["error"] == "unknown_action"
