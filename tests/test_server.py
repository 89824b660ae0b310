"""
API tests using FastAPI's TestClient with an in-memory orchestrator.
"""

import base64

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from config import PipelineConfig
from pipeline import PipelineOrchestrator
from server import app, get_orchestrator

TENANT = "tenant-a"
HEADERS = {"X-Tenant-Id": TENANT}

LEASE_TEXT = """SOLAR LAND LEASE AGREEMENT
Lessor: John Smith, Austin, TX 78701
The Premises contain 500 acres.
Rent: $500 per acre per year. Signing bonus: $15,000.
"""


@pytest.fixture
def orchestrator():
    return PipelineOrchestrator(PipelineConfig(capability_retry_delays=[0]), sleep_func=MagicMock())


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, **body):
    payload = {"filename": "lease.txt", "text": LEASE_TEXT, "projectId": "p1"}
    payload.update(body)
    return client.post("/api/documents", json=payload, headers=HEADERS)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestDocuments:

    def test_upload_processes_document(self, client):
        response = _upload(client)
        assert response.status_code == 200
        document = response.json()
        assert document["status"] == "review_required"
        assert document["category"] == "lease"

        fetched = client.get(f"/api/documents/{document['id']}", headers=HEADERS)
        assert fetched.json()["workflow_id"] == document["workflow_id"]

    def test_upload_base64(self, client):
        content = base64.b64encode(LEASE_TEXT.encode()).decode()
        response = _upload(client, text=None, contentBase64=content, process=False)
        assert response.status_code == 200
        assert response.json()["text"] == LEASE_TEXT
        assert response.json()["status"] == "uploading"

    def test_upload_requires_content(self, client):
        assert _upload(client, text=None).status_code == 422

    def test_upload_rejects_bad_base64(self, client):
        assert _upload(client, text=None, contentBase64="not base64!").status_code == 422

    def test_tenant_header_required(self, client):
        assert client.get("/api/documents").status_code == 422

    def test_other_tenant_cannot_read(self, client):
        document = _upload(client).json()
        response = client.get(f"/api/documents/{document['id']}", headers={"X-Tenant-Id": "tenant-b"})
        assert response.status_code == 404
        assert client.get("/api/documents", headers={"X-Tenant-Id": "tenant-b"}).json() == []

    def test_list_by_project(self, client):
        _upload(client)
        _upload(client, projectId="p2")
        documents = client.get("/api/documents", params={"projectId": "p1"}, headers=HEADERS).json()
        assert [d["project_id"] for d in documents] == ["p1"]


class TestWorkflows:

    def test_start_and_poll(self, client):
        response = client.post(
            "/api/workflows",
            json={"workflowType": "project_lifecycle", "input": {"projectId": "p9"}},
            headers=HEADERS,
        )
        assert response.status_code == 200
        workflow_id = response.json()["workflowId"]

        status = client.get(f"/api/workflows/{workflow_id}", headers=HEADERS).json()
        assert status["workflowType"] == "project_lifecycle"
        assert status["status"] == "pending"

        listed = client.get("/api/projects/p9/workflows", headers=HEADERS).json()
        assert [w["workflowId"] for w in listed] == [workflow_id]

    def test_approval_request(self, client, orchestrator):
        workflow_id = client.post(
            "/api/workflows", json={"workflowType": "land_acquisition", "input": {}}, headers=HEADERS
        ).json()["workflowId"]
        url = f"/api/workflows/{workflow_id}/approval-requests"

        assert client.post(url, json={"reasons": ["too early"]}, headers=HEADERS).status_code == 409

        orchestrator.engine.transition_to(workflow_id, "due_diligence", tenant_id=TENANT)
        response = client.post(url, json={"reasons": ["Title exceptions found"], "urgency": "high"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["request_type"] == "workflow_approval"
        assert response.json()["urgency"] == "high"

        assert client.post(url, json={"reasons": ["again"]}, headers=HEADERS).status_code == 409
        assert client.post("/api/workflows/missing/approval-requests", json={"reasons": []}, headers=HEADERS).status_code == 404

    def test_unknown_type(self, client):
        response = client.post("/api/workflows", json={"workflowType": "nope"}, headers=HEADERS)
        assert response.status_code == 422

    def test_missing_document(self, client):
        response = client.post(
            "/api/workflows",
            json={"workflowType": "document_processing", "input": {"documentId": "missing"}},
            headers=HEADERS,
        )
        assert response.status_code == 404

    def test_unknown_workflow(self, client):
        assert client.get("/api/workflows/missing", headers=HEADERS).status_code == 404


class TestReviews:

    def test_queue_and_resolve(self, client):
        document = _upload(client).json()
        queue = client.get("/api/reviews", headers=HEADERS).json()
        assert len(queue) == 1
        request_id = queue[0]["id"]

        response = client.post(
            f"/api/reviews/{request_id}/resolve",
            json={"approved": True, "notes": "ok", "resolvedBy": "alice"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        status = client.get(f"/api/workflows/{document['workflow_id']}", headers=HEADERS).json()
        assert status["status"] == "completed"
        assert client.get("/api/reviews", headers=HEADERS).json() == []

    def test_second_resolution_conflicts(self, client):
        _upload(client)
        request_id = client.get("/api/reviews", headers=HEADERS).json()[0]["id"]
        client.post(f"/api/reviews/{request_id}/resolve", json={"approved": True}, headers=HEADERS)

        response = client.post(f"/api/reviews/{request_id}/resolve", json={"approved": False}, headers=HEADERS)
        assert response.status_code == 409

    def test_rejection_without_notes_refused(self, client):
        document = _upload(client).json()
        request_id = client.get("/api/reviews", headers=HEADERS).json()[0]["id"]

        response = client.post(f"/api/reviews/{request_id}/resolve", json={"approved": False}, headers=HEADERS)
        assert response.status_code == 422
        status = client.get(f"/api/workflows/{document['workflow_id']}", headers=HEADERS).json()
        assert status["status"] == "paused"

        response = client.post(
            f"/api/reviews/{request_id}/resolve",
            json={"approved": False, "notes": "acreage does not match the survey"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_defer(self, client):
        _upload(client)
        request_id = client.get("/api/reviews", headers=HEADERS).json()[0]["id"]
        response = client.post(f"/api/reviews/{request_id}/defer", json={"notes": "later"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "deferred"

    def test_resolve_missing(self, client):
        response = client.post("/api/reviews/missing/resolve", json={"approved": True}, headers=HEADERS)
        assert response.status_code == 404
