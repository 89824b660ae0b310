"""
Pipeline Orchestrator - Document Processing Workflow

Runs the document_processing workflow as a LangGraph state machine:

    classify -> extract -> validate -> hitl_gate -> complete
                                            \\-> (paused for human review)

Each node calls one capability, records a transition in the WorkflowEngine
and writes its result back to the document record. When the review policy
requires a human, the workflow pauses at hitl_gate and a review request is
opened; the graph run ends there. Resolving the request (possibly much
later, from another process) resumes the workflow through the gateway, and
the resolution listener below finishes it.

Capability calls run with a timeout and bounded retries. A capability that
still fails fails the workflow with the reason recorded in its history.
Any other step error fails the workflow and its document the same way;
a conflicting workflow write is retried against the fresh snapshot first.
"""

import time
import uuid
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from langgraph.graph import StateGraph, START, END

from config import PipelineConfig
from state import DocumentRecord, HitlRequestRecord, PipelineState, WorkflowStatusView
from record_store import RecordStore
from workflow_engine import (
    ConcurrentModificationError,
    WorkflowEngine,
    WorkflowInstance,
    WorkflowStatus,
    utc_now,
)
from hitl_gateway import HITLGateway, RequestType
from nodes.classifier import ClassifierConfig, build_classifier
from nodes.extractor import build_extractor
from nodes.validator import score_document
from nodes.review_policy import ReviewPolicyConfig, evaluate_review, determine_urgency
from nodes.retry import CapabilityError, RetryPolicy, run_capability
from nodes.text_loader import TextExtractionError, load_text

logger = logging.getLogger(__name__)

DOCUMENT_PROCESSING = "document_processing"

# Attempts at committing one engine operation when another writer got there first
COMMIT_ATTEMPTS = 3


class DocumentNotFoundError(Exception):
    """No document with this id exists for the tenant."""


class DocumentStatus:
    UPLOADING = "uploading"
    PROCESSING = "processing"
    REVIEW_REQUIRED = "review_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class PipelineOrchestrator:
    """
    Composes classifier, extractor, scorer, review policy, workflow engine
    and HITL gateway into the document_processing workflow.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store: Optional[RecordStore] = None,
        classifier=None,
        extractor=None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        self.config = config or PipelineConfig()
        self.store = store or RecordStore(self.config.storage_dir)
        self.engine = WorkflowEngine(self.store)
        self.gateway = HITLGateway(self.engine, self.store)
        self.gateway.add_resolution_listener(self._on_review_resolved)

        self.classifier = classifier or build_classifier(
            self.config.classifier_backend,
            ClassifierConfig(llm_provider=self.config.llm_provider, llm_model=self.config.llm_model),
        )
        self.extractor = extractor or build_extractor(
            self.config.extractor_backend, self.config.llm_provider, self.config.llm_model
        )
        self.review_config = ReviewPolicyConfig.from_pipeline_config(self.config)
        self.retry_policy = RetryPolicy.from_pipeline_config(self.config)
        self.sleep_func = sleep_func
        self.graph = self.build_graph()

    # =========================================================================
    # Graph
    # =========================================================================

    def build_graph(self):
        """
        Constructs the LangGraph state machine.
        """
        builder = StateGraph(PipelineState)

        # 1. Add Nodes
        builder.add_node("classify", self.classify_node)
        builder.add_node("extract", self.extract_node)
        builder.add_node("validate", self.validate_node)
        builder.add_node("hitl_gate", self.hitl_gate_node)
        builder.add_node("complete", self.complete_node)

        # 2. Add Edges (The Flow)
        builder.add_edge(START, "classify")

        def continue_to(next_node: str):
            def route(state: PipelineState):
                if state.get("outcome") == "failed":
                    return END
                return next_node
            return route

        builder.add_conditional_edges("classify", continue_to("extract"))
        builder.add_conditional_edges("extract", continue_to("validate"))
        builder.add_edge("validate", "hitl_gate")

        # Conditional logic: does a human need to look at this first?
        def check_review(state: PipelineState):
            if state.get("requires_review"):
                return END
            return "complete"

        builder.add_conditional_edges("hitl_gate", check_review)
        builder.add_edge("complete", END)

        # 3. Compile
        return builder.compile()

    def _update_document(self, state: PipelineState, updates: Dict[str, Any]) -> None:
        document_id = state.get("document_id")
        if not document_id:
            return
        updates = dict(updates, updated_at=utc_now())
        self.store.update_document(document_id, state["tenant_id"], updates)

    def _commit(self, operation: Callable[[], WorkflowInstance]) -> WorkflowInstance:
        """
        Run one engine operation. A conflicting write is retried; the engine
        re-reads the snapshot on every call, so nothing is applied twice.
        """
        attempt = 1
        while True:
            try:
                return operation()
            except ConcurrentModificationError as e:
                if attempt >= COMMIT_ATTEMPTS:
                    raise
                logger.warning(f"Retrying workflow write after conflict (attempt {attempt}): {e}")
                attempt += 1

    def _fail_step(self, state: PipelineState, step: str, error: CapabilityError) -> Dict[str, Any]:
        reason = f"{step} failed: {error}"
        self._commit(lambda: self.engine.fail(
            state["workflow_id"],
            reason,
            details={"step": step, "attempts": error.attempts},
            tenant_id=state["tenant_id"],
        ))
        self._update_document(state, {"status": DocumentStatus.FAILED, "error": reason})
        return {"outcome": "failed", "error": reason}

    def _abort(self, state: PipelineState, error: Exception) -> PipelineState:
        """Fail the workflow and its document after an unexpected step error."""
        reason = f"Processing error: {error}"
        workflow_id = state["workflow_id"]
        tenant_id = state["tenant_id"]
        instance = self.engine.get_instance(workflow_id, tenant_id=tenant_id)
        if not instance.is_terminal:
            self._commit(lambda: self.engine.fail(
                workflow_id,
                reason,
                details={"exception": type(error).__name__},
                tenant_id=tenant_id,
            ))
        self._update_document(state, {"status": DocumentStatus.FAILED, "error": reason})
        return dict(state, outcome="failed", error=reason)  # type: ignore[return-value]

    def _pause_for_review(
        self,
        workflow_id: str,
        reasons: List[str],
        tenant_id: str,
        **request_fields: Any,
    ) -> HitlRequestRecord:
        """
        Pause a workflow and open the review request that will resume it.

        If the request cannot be opened the workflow is failed.
        """
        self._commit(lambda: self.engine.pause_at_hitl(workflow_id, reasons, tenant_id=tenant_id))
        try:
            return self.gateway.create_request(workflow_id=workflow_id, tenant_id=tenant_id, **request_fields)
        except Exception as e:
            logger.error(f"Could not open review request for workflow {workflow_id}: {e}")
            self._commit(lambda: self.engine.fail(
                workflow_id,
                f"Review request could not be opened: {e}",
                details={"exception": type(e).__name__},
                tenant_id=tenant_id,
            ))
            raise

    def classify_node(self, state: PipelineState) -> Dict[str, Any]:
        print("--- NODE: Classify ---")
        text = state.get("text", "")

        try:
            result = run_capability(
                lambda: self.classifier.classify(text),
                self.retry_policy,
                operation_name="classification",
                sleep_func=self.sleep_func,
            )
        except CapabilityError as e:
            return self._fail_step(state, "classify", e)

        category = result.category.value
        self._commit(lambda: self.engine.transition_to(
            state["workflow_id"],
            "classify",
            {"category": category, "classificationConfidence": result.confidence},
            tenant_id=state["tenant_id"],
        ))
        self._update_document(state, {
            "category": category,
            "classification_confidence": result.confidence,
        })
        print(f"   Category: {category} ({result.confidence:.0%})")
        return {"category": category, "classification_confidence": result.confidence}

    def extract_node(self, state: PipelineState) -> Dict[str, Any]:
        print("--- NODE: Extract ---")
        text = state.get("text", "")
        category = state["category"]

        try:
            extracted = run_capability(
                lambda: self.extractor.extract(text, category),
                self.retry_policy,
                operation_name="extraction",
                sleep_func=self.sleep_func,
            )
        except CapabilityError as e:
            return self._fail_step(state, "extract", e)

        self._commit(lambda: self.engine.transition_to(
            state["workflow_id"], "extract", {"extractedData": extracted}, tenant_id=state["tenant_id"]
        ))
        self._update_document(state, {"extracted_data": extracted})
        return {"extracted_data": extracted}

    def validate_node(self, state: PipelineState) -> Dict[str, Any]:
        print("--- NODE: Validate ---")
        confidence = score_document(state.get("extracted_data") or {}, state["category"])

        self._commit(lambda: self.engine.transition_to(
            state["workflow_id"],
            "validate",
            {"confidence": confidence, "validationPassed": True},
            tenant_id=state["tenant_id"],
        ))
        self._update_document(state, {"confidence": confidence})
        print(f"   Extraction confidence: {confidence:.0%}")
        return {"confidence": confidence}

    def hitl_gate_node(self, state: PipelineState) -> Dict[str, Any]:
        print("--- NODE: HITL Gate ---")
        workflow_id = state["workflow_id"]
        tenant_id = state["tenant_id"]
        confidence = state.get("confidence", 0.0)
        decision = evaluate_review(
            state["category"], confidence, state.get("extracted_data"), self.review_config
        )

        self._commit(lambda: self.engine.transition_to(
            workflow_id,
            "hitl_gate",
            {"requiresReview": decision.requires_review, "reviewReasons": decision.reasons},
            tenant_id=tenant_id,
        ))
        self._update_document(state, {
            "requires_review": decision.requires_review,
            "review_reasons": decision.reasons,
        })

        if not decision.requires_review:
            return {"requires_review": False, "review_reasons": []}

        urgency = determine_urgency(confidence)
        request = self._pause_for_review(
            workflow_id,
            decision.reasons,
            tenant_id,
            document_id=state.get("document_id"),
            urgency=urgency,
            description=f"Review {state['category']} document: {'; '.join(decision.reasons)}",
            context={
                "category": state["category"],
                "confidence": confidence,
                "extractedData": state.get("extracted_data"),
                "reasons": decision.reasons,
                "workflowType": DOCUMENT_PROCESSING,
                "currentNode": "hitl_gate",
            },
            project_id=state.get("project_id"),
        )
        self._update_document(state, {"status": DocumentStatus.REVIEW_REQUIRED})
        print(f"   Paused for review ({urgency}): {'; '.join(decision.reasons)}")

        return {
            "requires_review": True,
            "review_reasons": decision.reasons,
            "urgency": urgency,
            "hitl_request_id": request["id"],
            "outcome": "paused",
        }

    def complete_node(self, state: PipelineState) -> Dict[str, Any]:
        print("--- NODE: Complete ---")
        self._commit(lambda: self.engine.complete(state["workflow_id"], tenant_id=state["tenant_id"]))
        self._update_document(state, {"status": DocumentStatus.APPROVED})
        return {"outcome": "completed"}

    def _on_review_resolved(self, request: HitlRequestRecord, instance: Optional[WorkflowInstance]) -> None:
        """Finish the workflow and close out the document after a human decision."""
        tenant_id = request["tenant_id"]
        approved = request["status"] == "approved"

        if (
            approved
            and instance is not None
            and instance.workflow_type == DOCUMENT_PROCESSING
            and instance.status == WorkflowStatus.RUNNING
        ):
            self._commit(lambda: self.engine.complete(instance.workflow_id, tenant_id=tenant_id))

        document_id = request.get("document_id")
        if document_id:
            self.store.update_document(document_id, tenant_id, {
                "status": DocumentStatus.APPROVED if approved else DocumentStatus.REJECTED,
                "reviewed_by": request.get("resolved_by"),
                "reviewed_at": request.get("resolved_at"),
                "updated_at": utc_now(),
            })

    # =========================================================================
    # Running documents
    # =========================================================================

    def run(
        self,
        text: str,
        tenant_id: str,
        document_id: Optional[str] = None,
        project_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> PipelineState:
        """Run text through a new (or given, still pending) document_processing workflow."""
        if workflow_id is None:
            instance = self.engine.initialize(
                DOCUMENT_PROCESSING,
                {"documentId": document_id, "projectId": project_id},
                tenant_id=tenant_id,
            )
            workflow_id = instance.workflow_id

        initial_state: PipelineState = {
            "workflow_id": workflow_id,
            "tenant_id": tenant_id,
            "document_id": document_id,
            "project_id": project_id,
            "text": text or "",
        }
        try:
            final_state = self.graph.invoke(initial_state)
        except Exception as e:
            logger.exception(f"Workflow {workflow_id} aborted: {e}")
            return self._abort(initial_state, e)
        logger.info(f"Workflow {workflow_id} finished run with outcome {final_state.get('outcome')}")
        return final_state

    def process_document(self, document_id: str, tenant_id: str) -> PipelineState:
        """Process a stored document by id."""
        document = self.store.get_document(document_id, tenant_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        instance = self.engine.initialize(
            DOCUMENT_PROCESSING,
            {"documentId": document_id, "projectId": document.get("project_id")},
            tenant_id=tenant_id,
        )
        self.store.update_document(document_id, tenant_id, {
            "workflow_id": instance.workflow_id,
            "status": DocumentStatus.PROCESSING,
            "updated_at": utc_now(),
        })
        return self.run(
            document.get("text") or "",
            tenant_id,
            document_id=document_id,
            project_id=document.get("project_id"),
            workflow_id=instance.workflow_id,
        )

    def process_batch(self, document_ids: List[str], tenant_id: str) -> List[Dict[str, Any]]:
        """
        Process several documents concurrently on a worker pool.

        A failure in one document is reported in its result and does not
        affect the others.
        """
        results: List[Dict[str, Any]] = []
        if not document_ids:
            return results

        workers = min(self.config.max_workers, len(document_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.process_document, document_id, tenant_id): document_id
                for document_id in document_ids
            }
            for future in as_completed(futures):
                document_id = futures[future]
                try:
                    state = future.result()
                    results.append({
                        "document_id": document_id,
                        "workflow_id": state.get("workflow_id"),
                        "outcome": state.get("outcome"),
                        "error": state.get("error"),
                    })
                except Exception as e:
                    logger.error(f"Batch processing failed for document {document_id}: {e}")
                    results.append({"document_id": document_id, "workflow_id": None, "outcome": "failed", "error": str(e)})

        order = {document_id: i for i, document_id in enumerate(document_ids)}
        results.sort(key=lambda r: order[r["document_id"]])
        return results

    # =========================================================================
    # External interfaces
    # =========================================================================

    def create_document(
        self,
        tenant_id: str,
        filename: str,
        text: Optional[str] = None,
        data: Optional[bytes] = None,
        project_id: Optional[str] = None,
        process: bool = True,
    ) -> DocumentRecord:
        """
        Store an uploaded document and, by default, mark it for processing.

        Raw bytes are converted to text first; a conversion failure leaves
        the document `failed` with the error recorded.
        """
        now = utc_now()
        document: DocumentRecord = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "project_id": project_id,
            "filename": filename,
            "text": text,
            "category": None,
            "classification_confidence": None,
            "extracted_data": {},
            "confidence": None,
            "requires_review": False,
            "review_reasons": [],
            "status": DocumentStatus.UPLOADING,
            "error": None,
            "workflow_id": None,
            "reviewed_by": None,
            "reviewed_at": None,
            "created_at": now,
            "updated_at": now,
        }

        if text is None and data is not None:
            try:
                document["text"] = load_text(data, filename)
            except TextExtractionError as e:
                logger.error(f"Text extraction failed for {filename}: {e}")
                document["status"] = DocumentStatus.FAILED
                document["error"] = str(e)

        if process and document["status"] == DocumentStatus.UPLOADING and not (document["text"] or "").strip():
            logger.error(f"No text available for {filename}")
            document["status"] = DocumentStatus.FAILED
            document["error"] = "No text available for processing"

        self.store.save_document(dict(document))
        if process and document["status"] == DocumentStatus.UPLOADING:
            before = dict(document)
            self.store.update_document(document["id"], tenant_id, {"status": DocumentStatus.PROCESSING})
            document["status"] = DocumentStatus.PROCESSING
            self.on_document_updated(before, dict(document))

        return self.store.get_document(document["id"], tenant_id)  # type: ignore[return-value]

    def on_document_updated(self, before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> Optional[PipelineState]:
        """
        Ingestion trigger: process a document when its status changes into
        `processing` and it has text to work on.
        """
        if (before or {}).get("status") == DocumentStatus.PROCESSING:
            return None
        if after.get("status") != DocumentStatus.PROCESSING or not after.get("text"):
            return None
        return self.process_document(after["id"], after["tenant_id"])

    def start_workflow(self, workflow_type: str, workflow_input: Dict[str, Any], tenant_id: str) -> Dict[str, str]:
        """
        Start a workflow. document_processing runs immediately against the
        given documentId (or raw text); other types are only initialized.
        """
        if workflow_type == DOCUMENT_PROCESSING:
            document_id = workflow_input.get("documentId")
            if document_id:
                state = self.process_document(document_id, tenant_id)
            else:
                state = self.run(workflow_input.get("text") or "", tenant_id, project_id=workflow_input.get("projectId"))
            return {"workflowId": state["workflow_id"]}

        instance = self.engine.initialize(workflow_type, workflow_input, tenant_id=tenant_id)
        return {"workflowId": instance.workflow_id}

    def get_workflow_status(self, workflow_id: str, tenant_id: str) -> WorkflowStatusView:
        return self.engine.get_status(workflow_id, tenant_id=tenant_id)

    def get_workflows_for_project(self, project_id: str, tenant_id: str, limit: int = 20) -> List[WorkflowStatusView]:
        return self.engine.list_for_project(project_id, tenant_id=tenant_id, limit=limit)

    def request_workflow_approval(
        self,
        workflow_id: str,
        reasons: List[str],
        tenant_id: str,
        urgency: str = "medium",
    ) -> HitlRequestRecord:
        """
        Hold a running workflow at its current node until a human signs off.

        Approval leaves the workflow running for its owner to advance;
        rejection fails it.
        """
        instance = self.engine.get_instance(workflow_id, tenant_id=tenant_id)
        return self._pause_for_review(
            workflow_id,
            reasons,
            tenant_id,
            document_id=instance.data.get("documentId"),
            urgency=urgency,
            description=f"Approve {instance.workflow_type} at {instance.current_node}: {'; '.join(reasons)}",
            context={
                "workflowType": instance.workflow_type,
                "currentNode": instance.current_node,
                "reasons": list(reasons),
            },
            project_id=instance.project_id,
            request_type=RequestType.WORKFLOW_APPROVAL.value,
        )

    def resolve_review(
        self,
        request_id: str,
        approved: bool,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
        tenant_id: str = "",
    ) -> HitlRequestRecord:
        return self.gateway.resolve(request_id, approved, notes=notes, resolved_by=resolved_by, tenant_id=tenant_id)

    def get_review_queue(self, tenant_id: str, limit: int = 50) -> List[HitlRequestRecord]:
        return self.gateway.list_pending(tenant_id, limit=limit)
