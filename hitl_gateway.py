"""
HITL Gateway - Human Review Requests

Owns the lifecycle of human review requests that gate paused workflows:

    pending -> approved | rejected      (terminal)
    pending -> deferred -> approved | rejected

A workflow has at most one outstanding (pending or deferred) request.
Resolving a request resumes its workflow through the engine and then
notifies resolution listeners (the pipeline uses one to finish or close out
the document). Resolving twice is rejected and changes nothing.
"""

import uuid
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from record_store import RecordStore
from state import HitlRequestRecord
from workflow_engine import WorkflowEngine, WorkflowInstance, utc_now

logger = logging.getLogger(__name__)


class ReviewRequestError(Exception):
    """Base class for review request errors."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        self.request_id = request_id
        super().__init__(message)


class DuplicateReviewRequestError(ReviewRequestError):
    """The workflow already has an outstanding review request."""


class ReviewAlreadyResolvedError(ReviewRequestError):
    """The review request was already approved or rejected."""


class ReviewRequestNotFoundError(ReviewRequestError):
    """No review request with this id exists for the tenant."""


class RejectionNotesRequiredError(ReviewRequestError):
    """A rejection was submitted without the reviewer's reasons."""


class HitlStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class RequestType(str, Enum):
    REVIEW = "review"
    WORKFLOW_APPROVAL = "workflow_approval"


OUTSTANDING_STATUSES = [HitlStatus.PENDING.value, HitlStatus.DEFERRED.value]
RESOLVED_STATUSES = [HitlStatus.APPROVED.value, HitlStatus.REJECTED.value]

# Called after a request is resolved and its workflow resumed
ResolutionListener = Callable[[HitlRequestRecord, Optional[WorkflowInstance]], None]


class HITLGateway:

    def __init__(
        self,
        engine: WorkflowEngine,
        store: Optional[RecordStore] = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.engine = engine
        self.store = store or engine.store
        self.clock = clock
        self._lock = threading.Lock()
        self._listeners: List[ResolutionListener] = []

    def add_resolution_listener(self, listener: ResolutionListener) -> None:
        self._listeners.append(listener)

    def _load(self, request_id: str, tenant_id: str) -> HitlRequestRecord:
        request = self.store.get_hitl_request(request_id, tenant_id)
        if request is None:
            raise ReviewRequestNotFoundError(f"Review request {request_id} not found", request_id)
        return request  # type: ignore[return-value]

    def create_request(
        self,
        workflow_id: Optional[str],
        document_id: Optional[str],
        urgency: str,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        tenant_id: str = "",
        project_id: Optional[str] = None,
        request_type: str = RequestType.REVIEW.value,
    ) -> HitlRequestRecord:
        """
        Open a pending review request.

        Raises:
            DuplicateReviewRequestError: If the workflow already has an outstanding request
        """
        with self._lock:
            if workflow_id:
                outstanding = self.store.list_hitl_requests(
                    workflow_id=workflow_id, statuses=OUTSTANDING_STATUSES
                )
                if outstanding:
                    raise DuplicateReviewRequestError(
                        f"Workflow {workflow_id} already has outstanding review request {outstanding[0]['id']}",
                        outstanding[0]["id"],
                    )

            request: HitlRequestRecord = {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "workflow_id": workflow_id,
                "document_id": document_id,
                "project_id": project_id,
                "request_type": request_type,
                "urgency": urgency,
                "status": HitlStatus.PENDING.value,
                "description": description,
                "context": dict(context or {}),
                "resolved_by": None,
                "resolved_at": None,
                "notes": None,
                "created_at": self.clock(),
            }
            self.store.save_hitl_request(dict(request))

        logger.info(f"Created {urgency} review request {request['id']} for workflow {workflow_id}")
        return request

    def resolve(
        self,
        request_id: str,
        approved: bool,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
        tenant_id: str = "",
    ) -> HitlRequestRecord:
        """
        Approve or reject a request and resume its workflow.

        Raises:
            ReviewRequestNotFoundError: If the request does not exist for the tenant
            ReviewAlreadyResolvedError: If the request was already resolved
            RejectionNotesRequiredError: If a rejection carries no notes
        """
        with self._lock:
            request = self._load(request_id, tenant_id)
            if request["status"] in RESOLVED_STATUSES:
                raise ReviewAlreadyResolvedError(
                    f"Review request {request_id} was already {request['status']}", request_id
                )
            if not approved and not (notes or "").strip():
                raise RejectionNotesRequiredError(
                    f"Rejecting review request {request_id} requires notes", request_id
                )

            instance = None
            if request.get("workflow_id"):
                # Resume first: if the workflow refuses, the request stays outstanding
                instance = self.engine.resume_from_hitl(
                    request["workflow_id"],
                    approved,
                    notes=notes,
                    resolved_by=resolved_by,
                    tenant_id=tenant_id,
                )

            request.update({
                "status": HitlStatus.APPROVED.value if approved else HitlStatus.REJECTED.value,
                "resolved_by": resolved_by,
                "resolved_at": self.clock(),
                "notes": notes,
            })
            self.store.save_hitl_request(dict(request))

        logger.info(f"Review request {request_id} {request['status']} by {resolved_by or 'reviewer'}")

        for listener in self._listeners:
            listener(request, instance)
        return request

    def defer(self, request_id: str, notes: Optional[str] = None, tenant_id: str = "") -> HitlRequestRecord:
        """Park a request without deciding it; it stays outstanding."""
        with self._lock:
            request = self._load(request_id, tenant_id)
            if request["status"] in RESOLVED_STATUSES:
                raise ReviewAlreadyResolvedError(
                    f"Review request {request_id} was already {request['status']}", request_id
                )
            request["status"] = HitlStatus.DEFERRED.value
            if notes is not None:
                request["notes"] = notes
            self.store.save_hitl_request(dict(request))
        return request

    def get_request(self, request_id: str, tenant_id: str = "") -> HitlRequestRecord:
        return self._load(request_id, tenant_id)

    def list_pending(self, tenant_id: str, limit: int = 50, include_deferred: bool = False) -> List[HitlRequestRecord]:
        """The review queue: pending requests for the tenant, newest first."""
        statuses = OUTSTANDING_STATUSES if include_deferred else [HitlStatus.PENDING.value]
        requests = self.store.list_hitl_requests(tenant_id=tenant_id, statuses=statuses)
        requests.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return requests[:limit]  # type: ignore[return-value]
