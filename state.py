from typing import TypedDict, List, Dict, Optional, Any


# ============================================================================
# Document Records
# ============================================================================

class DocumentRecord(TypedDict, total=False):
    """
    A land/business document as it moves through the processing pipeline.

    Status lifecycle:
        uploading -> processing -> review_required -> approved | rejected
                               \\-> approved (no review needed)
                               \\-> failed
    """
    id: str
    tenant_id: str  # Owner scope, carried through every write
    project_id: Optional[str]
    filename: Optional[str]
    text: Optional[str]

    # Classification
    category: Optional[str]  # DocumentCategory value, None until classified
    classification_confidence: Optional[float]

    # Extraction
    extracted_data: Dict[str, Any]
    confidence: Optional[float]  # Extraction completeness, not category certainty

    # Review routing
    requires_review: bool
    review_reasons: List[str]

    status: str  # 'uploading', 'processing', 'review_required', 'approved', 'rejected', 'failed'
    error: Optional[str]
    workflow_id: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]
    created_at: str
    updated_at: str


# ============================================================================
# Workflow Records
# ============================================================================

class HistoryEntry(TypedDict):
    """
    One node transition in a workflow's audit trail.

    `node` is the node the workflow was on when the transition was taken,
    `to_node` is where it went.
    """
    node: str
    to_node: str
    timestamp: str
    data: Dict[str, Any]


class HitlResponse(TypedDict, total=False):
    """Human decision recorded into workflow data at resume time."""
    approved: bool
    notes: Optional[str]
    resolvedBy: Optional[str]
    timestamp: str


class WorkflowStatusView(TypedDict):
    """Shape returned by the status read path (UI polling)."""
    workflowId: str
    workflowType: str
    status: str  # 'pending', 'running', 'paused', 'failed', 'completed'
    currentNode: str
    data: Dict[str, Any]
    history: List[HistoryEntry]
    error: Optional[str]


# ============================================================================
# HITL Records
# ============================================================================

class HitlRequestRecord(TypedDict, total=False):
    """
    A pending or resolved human review request.
    """
    id: str
    tenant_id: str
    workflow_id: Optional[str]
    document_id: Optional[str]
    project_id: Optional[str]
    request_type: str  # 'review', 'workflow_approval'
    urgency: str  # 'low', 'medium', 'high', 'critical'
    status: str  # 'pending', 'approved', 'rejected', 'deferred'
    description: str
    context: Dict[str, Any]
    resolved_by: Optional[str]
    resolved_at: Optional[str]
    notes: Optional[str]
    created_at: str


# ============================================================================
# Pipeline Graph State
# ============================================================================

class PipelineState(TypedDict, total=False):
    """
    The state passed between nodes of the document_processing graph.
    Each node returns a partial update that LangGraph merges in.
    """
    # Meta Information
    workflow_id: str
    tenant_id: str
    document_id: Optional[str]
    project_id: Optional[str]

    # Source
    text: str

    # Results
    category: str
    classification_confidence: float
    extracted_data: Dict[str, Any]
    confidence: float
    requires_review: bool
    review_reasons: List[str]
    urgency: str
    hitl_request_id: Optional[str]

    # Outcome: 'completed', 'paused', 'failed'
    outcome: str
    error: Optional[str]
