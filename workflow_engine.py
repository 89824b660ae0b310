"""
Workflow Engine - HITL-Gated Workflow State Machine

Tracks multi-step workflows (document processing, land acquisition, project
lifecycle) through a deterministic state machine:

    pending -> running -> (paused <-> running)* -> completed | failed

Every operation is recorded as a WorkflowEvent in an append-only log. The
current WorkflowInstance is an immutable snapshot produced by folding the
log through `apply_event`, which is a pure function: it never mutates its
input and raises InvalidTransitionError for events that are not valid from
the current state. `replay(events)` rebuilds any instance from its log.

Operations on one workflow are serialized with a per-workflow lock; the
store additionally rejects saves made against a stale version. Different
workflows proceed in parallel.
"""

import copy
import uuid
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from record_store import RecordStore
from state import HistoryEntry, HitlResponse, WorkflowStatusView

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class InvalidTransitionError(WorkflowError):
    """The requested operation is not valid from the workflow's current state."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, status: Optional[str] = None):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(message)


class WorkflowNotFoundError(WorkflowError):
    """No workflow with this id exists for the tenant."""


class UnknownWorkflowTypeError(WorkflowError):
    """The workflow type has no registered definition."""


class ConcurrentModificationError(WorkflowError):
    """The workflow was advanced by another writer since it was loaded."""


# =============================================================================
# WORKFLOW DEFINITIONS
# =============================================================================

START_NODE = "start"
COMPLETE_NODE = "complete"

WORKFLOW_DEFINITIONS: Dict[str, List[str]] = {
    "document_processing": ["classify", "extract", "validate", "hitl_gate", "complete"],
    "land_acquisition": ["site_analysis", "due_diligence", "lease_negotiation", "legal_review", "execute_lease"],
    "project_lifecycle": ["prospecting", "site_control", "development", "construction_ready"],
}


def register_workflow(workflow_type: str, nodes: List[str]) -> None:
    """Add a workflow definition. Existing definitions cannot be replaced."""
    if workflow_type in WORKFLOW_DEFINITIONS:
        raise ValueError(f"Workflow type '{workflow_type}' already registered")
    if not nodes:
        raise ValueError("A workflow needs at least one node")
    if START_NODE in nodes:
        raise ValueError(f"'{START_NODE}' is reserved")
    WORKFLOW_DEFINITIONS[workflow_type] = list(nodes)


# =============================================================================
# STATUS & EVENTS
# =============================================================================

class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


class EventKind(str, Enum):
    INITIALIZED = "initialized"
    TRANSITIONED = "transitioned"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class WorkflowEvent:
    kind: EventKind
    payload: Mapping[str, Any]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "payload": copy.deepcopy(dict(self.payload)), "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkflowEvent":
        return cls(kind=EventKind(raw["kind"]), payload=raw.get("payload", {}), timestamp=raw["timestamp"])


@dataclass(frozen=True)
class WorkflowInstance:
    """Immutable snapshot of one workflow. `version` is the number of events applied."""
    workflow_id: str
    tenant_id: str
    workflow_type: str
    nodes: Tuple[str, ...]
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_node: str = START_NODE
    data: Mapping[str, Any] = field(default_factory=dict)
    history: Tuple[HistoryEntry, ...] = ()
    error: Optional[str] = None
    project_id: Optional[str] = None
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_status_view(self) -> WorkflowStatusView:
        return {
            "workflowId": self.workflow_id,
            "workflowType": self.workflow_type,
            "status": self.status.value,
            "currentNode": self.current_node,
            "data": copy.deepcopy(dict(self.data)),
            "history": [copy.deepcopy(entry) for entry in self.history],
            "error": self.error,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "tenant_id": self.tenant_id,
            "workflow_type": self.workflow_type,
            "nodes": list(self.nodes),
            "status": self.status.value,
            "current_node": self.current_node,
            "data": copy.deepcopy(dict(self.data)),
            "history": [copy.deepcopy(entry) for entry in self.history],
            "error": self.error,
            "project_id": self.project_id,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# =============================================================================
# PURE TRANSITION FUNCTION
# =============================================================================

def _require(state: Optional[WorkflowInstance], event: WorkflowEvent, allowed: Iterable[WorkflowStatus]) -> WorkflowInstance:
    if state is None:
        raise InvalidTransitionError(f"Cannot apply '{event.kind.value}' before initialization")
    allowed = tuple(allowed)
    if state.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot apply '{event.kind.value}' to workflow {state.workflow_id} "
            f"in status '{state.status.value}'",
            workflow_id=state.workflow_id,
            status=state.status.value,
        )
    return state


def _merge(data: Mapping[str, Any], updates: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    merged = copy.deepcopy(dict(data))
    merged.update(copy.deepcopy(dict(updates or {})))
    return merged


def apply_event(state: Optional[WorkflowInstance], event: WorkflowEvent) -> WorkflowInstance:
    """
    Return the snapshot that results from applying `event` to `state`.

    Raises:
        InvalidTransitionError: If the event is not valid from `state`
    """
    payload = event.payload
    ts = event.timestamp

    if event.kind == EventKind.INITIALIZED:
        if state is not None:
            raise InvalidTransitionError(
                f"Workflow {state.workflow_id} is already initialized", workflow_id=state.workflow_id
            )
        return WorkflowInstance(
            workflow_id=payload["workflow_id"],
            tenant_id=payload["tenant_id"],
            workflow_type=payload["workflow_type"],
            nodes=tuple(payload["nodes"]),
            data=_merge({}, payload.get("data")),
            project_id=payload.get("project_id"),
            version=1,
            created_at=ts,
            updated_at=ts,
        )

    if event.kind == EventKind.TRANSITIONED:
        current = _require(state, event, (WorkflowStatus.PENDING, WorkflowStatus.RUNNING))
        node = payload["node"]
        if node not in current.nodes:
            raise InvalidTransitionError(
                f"Node '{node}' is not part of workflow type '{current.workflow_type}'",
                workflow_id=current.workflow_id,
                status=current.status.value,
            )
        entry: HistoryEntry = {
            "node": current.current_node,
            "to_node": node,
            "timestamp": ts,
            "data": copy.deepcopy(dict(payload.get("data") or {})),
        }
        return replace(
            current,
            status=WorkflowStatus.RUNNING,
            current_node=node,
            data=_merge(current.data, payload.get("data")),
            history=current.history + (entry,),
            version=current.version + 1,
            updated_at=ts,
        )

    if event.kind == EventKind.PAUSED:
        current = _require(state, event, (WorkflowStatus.RUNNING,))
        return replace(
            current,
            status=WorkflowStatus.PAUSED,
            data=_merge(current.data, {"requiresHITL": True, "hitlReasons": list(payload.get("reasons") or [])}),
            version=current.version + 1,
            updated_at=ts,
        )

    if event.kind == EventKind.RESUMED:
        current = _require(state, event, (WorkflowStatus.PAUSED,))
        approved = bool(payload.get("approved"))
        response: HitlResponse = {
            "approved": approved,
            "notes": payload.get("notes"),
            "resolvedBy": payload.get("resolved_by"),
            "timestamp": ts,
        }
        if approved:
            return replace(
                current,
                status=WorkflowStatus.RUNNING,
                data=_merge(current.data, {"hitlResponse": response}),
                version=current.version + 1,
                updated_at=ts,
            )
        return replace(
            current,
            status=WorkflowStatus.FAILED,
            data=_merge(current.data, {"hitlResponse": response}),
            error=payload.get("notes") or "Rejected by reviewer",
            version=current.version + 1,
            updated_at=ts,
        )

    if event.kind == EventKind.COMPLETED:
        current = _require(state, event, (WorkflowStatus.RUNNING,))
        return replace(
            current,
            status=WorkflowStatus.COMPLETED,
            current_node=COMPLETE_NODE,
            version=current.version + 1,
            updated_at=ts,
        )

    if event.kind == EventKind.FAILED:
        current = _require(
            state, event, (WorkflowStatus.PENDING, WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)
        )
        reason = payload.get("reason") or "Workflow failed"
        entry = {
            "node": current.current_node,
            "to_node": current.current_node,
            "timestamp": ts,
            "data": _merge({"error": reason}, payload.get("details")),
        }
        return replace(
            current,
            status=WorkflowStatus.FAILED,
            history=current.history + (entry,),
            error=reason,
            version=current.version + 1,
            updated_at=ts,
        )

    raise InvalidTransitionError(f"Unknown event kind: {event.kind}")


def replay(events: Iterable[WorkflowEvent]) -> Optional[WorkflowInstance]:
    """Rebuild a snapshot from its event log (None for an empty log)."""
    state: Optional[WorkflowInstance] = None
    for event in events:
        state = apply_event(state, event)
    return state


# =============================================================================
# ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Persistent workflow state machine over a RecordStore.

    Each stored workflow record holds the event log, the derived snapshot
    and its version.
    """

    def __init__(self, store: Optional[RecordStore] = None, clock: Callable[[], str] = utc_now):
        self.store = store or RecordStore()
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[workflow_id] = lock
            return lock

    def _load_events(self, workflow_id: str, tenant_id: str) -> List[WorkflowEvent]:
        record = self.store.load_workflow(workflow_id, tenant_id)
        if record is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return [WorkflowEvent.from_dict(raw) for raw in record.get("events", [])]

    def _save(self, instance: WorkflowInstance, events: List[WorkflowEvent], expected_version: int) -> None:
        record = instance.to_dict()
        record["events"] = [e.to_dict() for e in events]
        if not self.store.save_workflow(record, expected_version=expected_version):
            raise ConcurrentModificationError(
                f"Workflow {instance.workflow_id} was modified concurrently (expected version {expected_version})"
            )

    def _apply(self, workflow_id: str, tenant_id: str, kind: EventKind, payload: Dict[str, Any]) -> WorkflowInstance:
        with self._lock_for(workflow_id):
            events = self._load_events(workflow_id, tenant_id)
            current = replay(events)
            event = WorkflowEvent(kind=kind, payload=payload, timestamp=self.clock())
            updated = apply_event(current, event)
            self._save(updated, events + [event], expected_version=len(events))
        if updated.is_terminal:
            self._release_lock(workflow_id)
        return updated

    def _release_lock(self, workflow_id: str) -> None:
        # Terminal workflows accept no further events, so their lock is not needed
        with self._locks_guard:
            self._locks.pop(workflow_id, None)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def initialize(
        self,
        workflow_type: str,
        initial_data: Optional[Dict[str, Any]] = None,
        tenant_id: str = "",
        workflow_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create a workflow in `pending` at the start node."""
        nodes = WORKFLOW_DEFINITIONS.get(workflow_type)
        if nodes is None:
            raise UnknownWorkflowTypeError(f"Unknown workflow type: {workflow_type}")

        initial_data = dict(initial_data or {})
        workflow_id = workflow_id or str(uuid.uuid4())
        event = WorkflowEvent(
            kind=EventKind.INITIALIZED,
            payload={
                "workflow_id": workflow_id,
                "tenant_id": tenant_id,
                "workflow_type": workflow_type,
                "nodes": list(nodes),
                "data": initial_data,
                "project_id": initial_data.get("projectId"),
            },
            timestamp=self.clock(),
        )
        with self._lock_for(workflow_id):
            instance = apply_event(None, event)
            self._save(instance, [event], expected_version=0)

        logger.info(f"Initialized {workflow_type} workflow {workflow_id}")
        return instance

    def transition_to(self, workflow_id: str, node: str, data: Optional[Dict[str, Any]] = None, tenant_id: str = "") -> WorkflowInstance:
        instance = self._apply(workflow_id, tenant_id, EventKind.TRANSITIONED, {"node": node, "data": dict(data or {})})
        logger.debug(f"Workflow {workflow_id} -> {node}")
        return instance

    def pause_at_hitl(self, workflow_id: str, reasons: List[str], tenant_id: str = "") -> WorkflowInstance:
        instance = self._apply(workflow_id, tenant_id, EventKind.PAUSED, {"reasons": list(reasons)})
        logger.info(f"Workflow {workflow_id} paused for review: {'; '.join(reasons)}")
        return instance

    def resume_from_hitl(
        self,
        workflow_id: str,
        approved: bool,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
        tenant_id: str = "",
    ) -> WorkflowInstance:
        """Resume a paused workflow; a rejection fails it."""
        instance = self._apply(
            workflow_id,
            tenant_id,
            EventKind.RESUMED,
            {"approved": approved, "notes": notes, "resolved_by": resolved_by},
        )
        logger.info(f"Workflow {workflow_id} {'resumed' if approved else 'rejected'} by {resolved_by or 'reviewer'}")
        return instance

    def complete(self, workflow_id: str, tenant_id: str = "") -> WorkflowInstance:
        instance = self._apply(workflow_id, tenant_id, EventKind.COMPLETED, {})
        logger.info(f"Workflow {workflow_id} completed")
        return instance

    def fail(self, workflow_id: str, reason: str, details: Optional[Dict[str, Any]] = None, tenant_id: str = "") -> WorkflowInstance:
        instance = self._apply(workflow_id, tenant_id, EventKind.FAILED, {"reason": reason, "details": dict(details or {})})
        logger.error(f"Workflow {workflow_id} failed at {instance.current_node}: {reason}")
        return instance

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_instance(self, workflow_id: str, tenant_id: str = "") -> WorkflowInstance:
        instance = replay(self._load_events(workflow_id, tenant_id))
        if instance is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return instance

    def get_events(self, workflow_id: str, tenant_id: str = "") -> List[WorkflowEvent]:
        return self._load_events(workflow_id, tenant_id)

    def get_status(self, workflow_id: str, tenant_id: str = "") -> WorkflowStatusView:
        return self.get_instance(workflow_id, tenant_id).to_status_view()

    def list_for_project(self, project_id: str, tenant_id: str = "", limit: int = 20) -> List[WorkflowStatusView]:
        """Workflows for a project, newest first."""
        records = self.store.list_workflows(tenant_id, project_id=project_id)
        records.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        views = []
        for record in records[:limit]:
            instance = replay(WorkflowEvent.from_dict(raw) for raw in record.get("events", []))
            if instance is not None:
                views.append(instance.to_status_view())
        return views
