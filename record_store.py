"""
Shared record storage for documents, workflows and HITL requests.

Records live in memory, or as one JSON file per record when a storage
directory is given, so main.py and server.py (or several workers) can share
state. Every record carries a tenant id; reading a record with the wrong
tenant behaves exactly like reading a missing one.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DOCUMENTS = "documents"
WORKFLOWS = "workflows"
HITL_REQUESTS = "hitl_requests"
COLLECTIONS = (DOCUMENTS, WORKFLOWS, HITL_REQUESTS)


class RecordStore:
    """
    Tenant-scoped key/value collections with optional JSON-file persistence.

    Workflow records are saved with a compare-and-set on their version so
    two writers can never both advance the same workflow from one state.
    """

    def __init__(self, storage_dir: Optional[Union[str, Path]] = None):
        self._lock = threading.RLock()
        self._memory: Dict[str, Dict[str, Dict[str, Any]]] = {c: {} for c in COLLECTIONS}
        self.storage_dir = Path(storage_dir) if storage_dir else None
        if self.storage_dir:
            for collection in COLLECTIONS:
                (self.storage_dir / collection).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _path(self, collection: str, record_id: str) -> Path:
        assert self.storage_dir is not None
        return self.storage_dir / collection / f"{record_id}.json"

    def _read(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        if not self.storage_dir:
            record = self._memory[collection].get(record_id)
            return json.loads(json.dumps(record)) if record is not None else None

        file_path = self._path(collection, record_id)
        if not file_path.exists():
            return None
        with open(file_path, "r") as f:
            return json.load(f)

    def _write(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        # Round-trip through JSON so stored records never alias caller objects
        serialized = json.dumps(record, default=str)
        if not self.storage_dir:
            self._memory[collection][record_id] = json.loads(serialized)
            return

        file_path = self._path(collection, record_id)
        tmp_path = file_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            f.write(serialized)
        tmp_path.replace(file_path)
        logger.debug(f"Saved {collection}/{record_id} to disk")

    def _all(self, collection: str) -> List[Dict[str, Any]]:
        if not self.storage_dir:
            return [json.loads(json.dumps(r)) for r in self._memory[collection].values()]

        records = []
        for file_path in (self.storage_dir / collection).glob("*.json"):
            try:
                with open(file_path, "r") as f:
                    records.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Error loading {file_path}: {e}")
        return records

    def _get_scoped(self, collection: str, record_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        record = self._read(collection, record_id)
        if record is None or record.get("tenant_id") != tenant_id:
            return None
        return record

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Dict[str, Any]) -> None:
        with self._lock:
            self._write(DOCUMENTS, document["id"], document)

    def get_document(self, document_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self._get_scoped(DOCUMENTS, document_id, tenant_id)

    def update_document(self, document_id: str, tenant_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update specific fields of a document. Returns None if not found."""
        with self._lock:
            document = self._get_scoped(DOCUMENTS, document_id, tenant_id)
            if document is None:
                return None
            document.update(updates)
            self._write(DOCUMENTS, document_id, document)
            return document

    def list_documents(self, tenant_id: str, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        documents = [
            d for d in self._all(DOCUMENTS)
            if d.get("tenant_id") == tenant_id
            and (project_id is None or d.get("project_id") == project_id)
        ]
        return sorted(documents, key=lambda d: d.get("created_at", ""), reverse=True)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def load_workflow(self, workflow_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self._get_scoped(WORKFLOWS, workflow_id, tenant_id)

    def save_workflow(self, record: Dict[str, Any], expected_version: int) -> bool:
        """
        Save a workflow record if the stored version still equals
        `expected_version` (0 for a new workflow).

        Returns:
            False when another writer got there first; nothing is written.
        """
        workflow_id = record["workflow_id"]
        with self._lock:
            current = self._read(WORKFLOWS, workflow_id)
            current_version = current.get("version", 0) if current else 0
            if current_version != expected_version:
                return False
            self._write(WORKFLOWS, workflow_id, record)
            return True

    def list_workflows(self, tenant_id: str, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            w for w in self._all(WORKFLOWS)
            if w.get("tenant_id") == tenant_id
            and (project_id is None or w.get("project_id") == project_id)
        ]

    # ------------------------------------------------------------------
    # HITL requests
    # ------------------------------------------------------------------

    def save_hitl_request(self, request: Dict[str, Any]) -> None:
        with self._lock:
            self._write(HITL_REQUESTS, request["id"], request)

    def get_hitl_request(self, request_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self._get_scoped(HITL_REQUESTS, request_id, tenant_id)

    def list_hitl_requests(
        self,
        tenant_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        statuses: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        return [
            r for r in self._all(HITL_REQUESTS)
            if (tenant_id is None or r.get("tenant_id") == tenant_id)
            and (workflow_id is None or r.get("workflow_id") == workflow_id)
            and (statuses is None or r.get("status") in statuses)
        ]
