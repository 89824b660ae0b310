"""
Tests for tenant-scoped record storage, in memory and on disk.
"""

import pytest

from record_store import RecordStore


@pytest.fixture(params=["memory", "disk"])
def store(request, tmp_path):
    if request.param == "memory":
        return RecordStore()
    return RecordStore(tmp_path / "storage")


class TestDocuments:

    def test_save_and_get(self, store):
        store.save_document({"id": "d1", "tenant_id": "t1", "status": "uploading"})
        assert store.get_document("d1", "t1")["status"] == "uploading"

    def test_wrong_tenant_is_not_found(self, store):
        store.save_document({"id": "d1", "tenant_id": "t1"})
        assert store.get_document("d1", "t2") is None
        assert store.update_document("d1", "t2", {"status": "approved"}) is None
        assert "status" not in store.get_document("d1", "t1")

    def test_update(self, store):
        store.save_document({"id": "d1", "tenant_id": "t1", "status": "uploading"})
        updated = store.update_document("d1", "t1", {"status": "processing"})
        assert updated["status"] == "processing"
        assert store.get_document("d1", "t1")["status"] == "processing"

    def test_returned_records_are_copies(self, store):
        store.save_document({"id": "d1", "tenant_id": "t1", "extracted_data": {"a": 1}})
        store.get_document("d1", "t1")["extracted_data"]["a"] = 2
        assert store.get_document("d1", "t1")["extracted_data"] == {"a": 1}

    def test_list_by_project(self, store):
        store.save_document({"id": "d1", "tenant_id": "t1", "project_id": "p1", "created_at": "2024-01-01"})
        store.save_document({"id": "d2", "tenant_id": "t1", "project_id": "p1", "created_at": "2024-01-02"})
        store.save_document({"id": "d3", "tenant_id": "t1", "project_id": "p2", "created_at": "2024-01-03"})
        store.save_document({"id": "d4", "tenant_id": "t2", "project_id": "p1", "created_at": "2024-01-04"})
        assert [d["id"] for d in store.list_documents("t1", project_id="p1")] == ["d2", "d1"]
        assert len(store.list_documents("t1")) == 3


class TestWorkflows:

    def test_compare_and_set(self, store):
        record = {"workflow_id": "w1", "tenant_id": "t1", "version": 1}
        assert store.save_workflow(record, expected_version=0)
        assert not store.save_workflow(dict(record, version=1), expected_version=0)
        assert store.save_workflow(dict(record, version=2), expected_version=1)
        assert store.load_workflow("w1", "t1")["version"] == 2

    def test_wrong_tenant(self, store):
        store.save_workflow({"workflow_id": "w1", "tenant_id": "t1", "version": 1}, expected_version=0)
        assert store.load_workflow("w1", "t2") is None


class TestHitlRequests:

    def test_filter_by_status_and_workflow(self, store):
        store.save_hitl_request({"id": "r1", "tenant_id": "t1", "workflow_id": "w1", "status": "pending"})
        store.save_hitl_request({"id": "r2", "tenant_id": "t1", "workflow_id": "w1", "status": "approved"})
        store.save_hitl_request({"id": "r3", "tenant_id": "t2", "workflow_id": "w2", "status": "pending"})
        assert [r["id"] for r in store.list_hitl_requests(workflow_id="w1", statuses=["pending"])] == ["r1"]
        assert {r["id"] for r in store.list_hitl_requests(statuses=["pending"])} == {"r1", "r3"}
        assert len(store.list_hitl_requests(tenant_id="t1")) == 2


class TestDiskPersistence:

    def test_shared_between_instances(self, tmp_path):
        """Two stores on one directory see each other's writes, like server and worker."""
        writer = RecordStore(tmp_path)
        reader = RecordStore(tmp_path)
        writer.save_hitl_request({"id": "r1", "tenant_id": "t1", "status": "pending"})
        assert reader.get_hitl_request("r1", "t1")["status"] == "pending"
        assert (tmp_path / "hitl_requests" / "r1.json").exists()

    def test_corrupt_file_skipped_in_listing(self, tmp_path):
        store = RecordStore(tmp_path)
        store.save_document({"id": "d1", "tenant_id": "t1"})
        (tmp_path / "documents" / "broken.json").write_text("{not json")
        assert [d["id"] for d in store.list_documents("t1")] == ["d1"]
