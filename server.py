"""
FastAPI Server for the Land Document Pipeline

Provides endpoints for:
- Uploading documents (which starts processing)
- Fetching document and workflow status (UI polling)
- Starting workflows
- The human review queue and review resolution

Every request is scoped to the tenant named in the X-Tenant-Id header. The
header is carried, not verified.
"""

import base64
import binascii
from functools import lru_cache
from typing import Dict, Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import PipelineConfig
from pipeline import DocumentNotFoundError, PipelineOrchestrator
from workflow_engine import (
    ConcurrentModificationError,
    InvalidTransitionError,
    UnknownWorkflowTypeError,
    WorkflowNotFoundError,
)
from hitl_gateway import (
    DuplicateReviewRequestError,
    RejectionNotesRequiredError,
    ReviewAlreadyResolvedError,
    ReviewRequestNotFoundError,
)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Land Document Intelligence API",
    description="Document processing and human review API for land acquisition",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_orchestrator() -> PipelineOrchestrator:
    """The process-wide orchestrator, configured from the environment."""
    return PipelineOrchestrator(PipelineConfig.from_env())


# ============================================================================
# Pydantic Models for API
# ============================================================================

class DocumentUpload(BaseModel):
    """A document to store; either text or base64 file content."""
    filename: str
    text: Optional[str] = None
    contentBase64: Optional[str] = None
    projectId: Optional[str] = None
    process: bool = True


class WorkflowStartRequest(BaseModel):
    workflowType: str
    input: Dict[str, Any] = {}


class WorkflowStartResponse(BaseModel):
    workflowId: str


class ApprovalRequest(BaseModel):
    """Reasons a running workflow must wait for sign-off."""
    reasons: List[str]
    urgency: str = "medium"


class ReviewResolution(BaseModel):
    """Decision submitted by a reviewer."""
    approved: bool
    notes: Optional[str] = None
    resolvedBy: Optional[str] = None


class ReviewDeferral(BaseModel):
    notes: Optional[str] = None


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "land-doc-pipeline"}


@app.post("/api/documents")
def upload_document(
    upload: DocumentUpload,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Store a document; processing runs immediately unless `process` is false."""
    if upload.text is None and upload.contentBase64 is None:
        raise HTTPException(status_code=422, detail="Either text or contentBase64 is required")

    data = None
    if upload.text is None:
        try:
            data = base64.b64decode(upload.contentBase64 or "", validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail="contentBase64 is not valid base64")

    return dict(orchestrator.create_document(
        x_tenant_id,
        upload.filename,
        text=upload.text,
        data=data,
        project_id=upload.projectId,
        process=upload.process,
    ))


@app.get("/api/documents")
def list_documents(
    projectId: Optional[str] = None,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return orchestrator.store.list_documents(x_tenant_id, project_id=projectId)


@app.get("/api/documents/{document_id}")
def get_document(
    document_id: str,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    document = orchestrator.store.get_document(document_id, x_tenant_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


@app.post("/api/workflows", response_model=WorkflowStartResponse)
def start_workflow(
    request: WorkflowStartRequest,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.start_workflow(request.workflowType, request.input, x_tenant_id)
    except UnknownWorkflowTypeError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found")


@app.get("/api/workflows/{workflow_id}")
def get_workflow_status(
    workflow_id: str,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Workflow status for UI polling."""
    try:
        return dict(orchestrator.get_workflow_status(workflow_id, x_tenant_id))
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")


@app.post("/api/workflows/{workflow_id}/approval-requests")
def request_workflow_approval(
    workflow_id: str,
    approval: ApprovalRequest,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Pause a running workflow and queue it for human sign-off."""
    try:
        request = orchestrator.request_workflow_approval(
            workflow_id, approval.reasons, x_tenant_id, urgency=approval.urgency
        )
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except (InvalidTransitionError, DuplicateReviewRequestError, ConcurrentModificationError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return dict(request)


@app.get("/api/projects/{project_id}/workflows")
def list_project_workflows(
    project_id: str,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return [dict(view) for view in orchestrator.get_workflows_for_project(project_id, x_tenant_id)]


@app.get("/api/reviews")
def get_review_queue(
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    """Pending review requests, newest first."""
    return [dict(request) for request in orchestrator.get_review_queue(x_tenant_id)]


@app.post("/api/reviews/{request_id}/resolve")
def resolve_review(
    request_id: str,
    resolution: ReviewResolution,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        request = orchestrator.resolve_review(
            request_id,
            resolution.approved,
            notes=resolution.notes,
            resolved_by=resolution.resolvedBy,
            tenant_id=x_tenant_id,
        )
    except ReviewRequestNotFoundError:
        raise HTTPException(status_code=404, detail="Review request not found")
    except RejectionNotesRequiredError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (ReviewAlreadyResolvedError, InvalidTransitionError, ConcurrentModificationError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return dict(request)


@app.post("/api/reviews/{request_id}/defer")
def defer_review(
    request_id: str,
    deferral: ReviewDeferral,
    x_tenant_id: str = Header(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        request = orchestrator.gateway.defer(request_id, notes=deferral.notes, tenant_id=x_tenant_id)
    except ReviewRequestNotFoundError:
        raise HTTPException(status_code=404, detail="Review request not found")
    except ReviewAlreadyResolvedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return dict(request)


# ============================================================================
# Run with: uvicorn server:app --reload
# ============================================================================
