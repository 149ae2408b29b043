from menu_sync.database import SessionLocal
from menu_sync.models.audit_log import AuditLog

from conftest import make_catalog

SYNC_BODY = {"account_id": "acct-1", "branch_id": "branch-1", "vendor_code": "vendor-1"}


def audit_actions():
    db = SessionLocal()
    try:
        return [entry.action for entry in db.query(AuditLog).order_by(AuditLog.id).all()]
    finally:
        db.close()


def run_sync(client, auth_headers, **overrides):
    response = client.post("/api/v1/sync/run", json={**SYNC_BODY, **overrides}, headers=auth_headers)
    assert response.status_code == 200, response.text
    return response.json()


def failed_sync(client, auth_headers, delivery):
    delivery.reject = "menu locked by vendor"
    result = run_sync(client, auth_headers)
    delivery.reject = None
    return result


class TestSyncApi:
    def test_run_sync(self, client, auth_headers, delivery):
        result = run_sync(client, auth_headers)

        assert result["status"] == "Completed"
        assert result["result"] == "Success"
        assert result["products_processed"] == 3
        assert result["import_id"] == "imp-1"
        assert len(delivery.submissions) == 1
        assert audit_actions() == ["sync_triggered"]

    def test_run_requires_vendor(self, client, auth_headers):
        response = client.post("/api/v1/sync/run", json={"account_id": "acct-1"}, headers=auth_headers)
        assert response.status_code == 422

    def test_run_requires_authentication(self, client):
        response = client.post("/api/v1/sync/run", json=SYNC_BODY)
        assert response.status_code == 401

    def test_list_and_read_runs(self, client, auth_headers):
        result = run_sync(client, auth_headers)

        response = client.get("/api/v1/sync/runs", params={"account_id": "acct-1", "branch_id": "branch-1"},
                              headers=auth_headers)
        assert response.status_code == 200
        page = response.json()
        assert page["total"] == 1
        assert page["data"][0]["initiated_by"] == "admin"
        assert page["data"][0]["trigger_source"] == "api"

        response = client.get("/api/v1/sync/runs", params={"status": "Failed"}, headers=auth_headers)
        assert response.json()["total"] == 0

        response = client.get(f"/api/v1/sync/runs/{result['run_id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["metrics"]["delta_type"] == "FirstSync"

    def test_missing_run(self, client, auth_headers):
        response = client.get("/api/v1/sync/runs/999", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"] == "Sync run not found"

    def test_retry_failed_run(self, client, auth_headers, delivery):
        failed = failed_sync(client, auth_headers, delivery)
        assert failed["status"] == "Failed"

        response = client.post(f"/api/v1/sync/runs/{failed['run_id']}/retry", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["result"] == "Success"
        assert "sync_retry_triggered" in audit_actions()

    def test_retry_completed_run_is_rejected(self, client, auth_headers):
        result = run_sync(client, auth_headers)
        response = client.post(f"/api/v1/sync/runs/{result['run_id']}/retry", headers=auth_headers)
        assert response.status_code == 400

    def test_retry_unknown_run(self, client, auth_headers):
        response = client.post("/api/v1/sync/runs/999/retry", headers=auth_headers)
        assert response.status_code == 404

    def test_status_and_statistics(self, client, auth_headers):
        result = run_sync(client, auth_headers)

        response = client.get("/api/v1/sync/status", params={"account_id": "acct-1", "branch_id": "branch-1"},
                              headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["latest_run_id"] == result["run_id"]
        assert response.json()["is_running"] is False

        response = client.get("/api/v1/sync/statistics", headers=auth_headers)
        assert response.json()["total_runs"] == 1
        assert response.json()["success_rate"] == 100.0


class TestSnapshotApi:
    def test_snapshots_and_changes(self, client, auth_headers, catalog_source):
        run_sync(client, auth_headers)
        catalog_source.catalog = make_catalog(p2={"name": "Renamed"})
        run_sync(client, auth_headers)

        response = client.get("/api/v1/snapshots/", params={"account_id": "acct-1", "branch_id": "branch-1"},
                              headers=auth_headers)
        snapshots = response.json()
        assert [s["version"] for s in snapshots] == [2, 1]
        assert all(s["is_synced"] for s in snapshots)

        response = client.get(f"/api/v1/snapshots/{snapshots[0]['id']}/changes", headers=auth_headers)
        changes = response.json()
        assert len(changes) == 1
        assert changes[0]["entity_id"] == "p2"
        assert changes[0]["changed_fields"] == "name"

    def test_missing_snapshot(self, client, auth_headers):
        assert client.get("/api/v1/snapshots/999", headers=auth_headers).status_code == 404
        assert client.get("/api/v1/snapshots/999/changes", headers=auth_headers).status_code == 404

    def test_deltas(self, client, auth_headers, delivery):
        failed = failed_sync(client, auth_headers, delivery)

        response = client.get("/api/v1/snapshots/deltas/pending", headers=auth_headers)
        pending = response.json()
        assert [d["id"] for d in pending] == [failed["delta_id"]]
        assert pending[0]["submission_status"] == "Failed"

        response = client.get(f"/api/v1/snapshots/deltas/{failed['delta_id']}", headers=auth_headers)
        assert response.json()["retry_count"] == 1

        response = client.get("/api/v1/snapshots/deltas/statistics", headers=auth_headers)
        assert response.json()["failed"] == 1

    def test_resubmit_inside_backoff_window(self, client, auth_headers, delivery):
        failed = failed_sync(client, auth_headers, delivery)
        response = client.post(f"/api/v1/snapshots/deltas/{failed['delta_id']}/resubmit", headers=auth_headers)
        assert response.status_code == 400
        assert "retry not allowed" in response.json()["detail"]
        assert "delta_resubmitted" in audit_actions()

    def test_missing_delta(self, client, auth_headers):
        assert client.get("/api/v1/snapshots/deltas/999", headers=auth_headers).status_code == 404
        assert client.post("/api/v1/snapshots/deltas/999/resubmit", headers=auth_headers).status_code == 404


class TestDlqApi:
    def pending(self, client, auth_headers):
        response = client.get("/api/v1/dlq/pending", headers=auth_headers)
        assert response.status_code == 200
        return response.json()

    def test_failed_sync_lands_in_pending(self, client, auth_headers, delivery):
        failed = failed_sync(client, auth_headers, delivery)

        messages = self.pending(client, auth_headers)
        assert len(messages) == 1
        assert messages[0]["event_type"] == "DeltaSync"
        assert messages[0]["error_code"] == "SubmissionRejectedError"

        response = client.get(f"/api/v1/dlq/{messages[0]['id']}", headers=auth_headers)
        detail = response.json()
        assert detail["context"]["delta_id"] == failed["delta_id"]
        assert "SubmissionRejectedError" in detail["stack_trace"]

    def test_replay_once(self, client, auth_headers, delivery):
        failed_sync(client, auth_headers, delivery)
        message_id = self.pending(client, auth_headers)[0]["id"]

        response = client.post(f"/api/v1/dlq/{message_id}/replay", headers=auth_headers)
        assert response.json()["success"] is True

        response = client.post(f"/api/v1/dlq/{message_id}/replay", headers=auth_headers)
        assert response.json()["success"] is False
        assert response.json()["error_message"] == "Message has already been replayed"
        assert self.pending(client, auth_headers) == []
        assert audit_actions().count("dlq_replayed") == 2

    def test_replay_unknown_message(self, client, auth_headers):
        assert client.post("/api/v1/dlq/999/replay", headers=auth_headers).status_code == 404
        assert client.get("/api/v1/dlq/999", headers=auth_headers).status_code == 404

    def test_bulk_replay(self, client, auth_headers, delivery):
        failed_sync(client, auth_headers, delivery)
        message_id = self.pending(client, auth_headers)[0]["id"]

        response = client.post("/api/v1/dlq/replay", json={"message_ids": [message_id, 999]}, headers=auth_headers)
        body = response.json()
        assert body["successful_replays"] == 1
        assert body["failed_replays"] == 1
        assert body["success_rate"] == 50.0

    def test_acknowledge_and_priority(self, client, auth_headers, delivery):
        failed_sync(client, auth_headers, delivery)
        message_id = self.pending(client, auth_headers)[0]["id"]

        response = client.put(f"/api/v1/dlq/{message_id}/priority", json={"priority": "Critical"}, headers=auth_headers)
        assert response.json()["priority"] == "Critical"

        response = client.post(f"/api/v1/dlq/{message_id}/acknowledge", json={"notes": "vendor fixed"},
                               headers=auth_headers)
        assert response.json()["is_acknowledged"] is True
        assert response.json()["acknowledged_by"] == "admin"
        assert self.pending(client, auth_headers) == []

        response = client.get(f"/api/v1/dlq/{message_id}", headers=auth_headers)
        assert response.json()["context"]["acknowledgement_notes"] == "vendor fixed"

    def test_invalid_priority(self, client, auth_headers):
        response = client.put("/api/v1/dlq/1/priority", json={"priority": "Urgent"}, headers=auth_headers)
        assert response.status_code == 422

    def test_workflow_and_recommendations(self, client, auth_headers, delivery):
        failed_sync(client, auth_headers, delivery)

        response = client.get("/api/v1/dlq/recommendations", headers=auth_headers)
        assert response.json()["pending_messages"] == 1

        response = client.post("/api/v1/dlq/workflow", json={"batch_delay_seconds": 0}, headers=auth_headers)
        body = response.json()
        assert body["status"] == "Completed"
        assert body["successful"] == 1
        assert "dlq_workflow_started" in audit_actions()

    def test_statistics_and_cleanup(self, client, auth_headers, delivery):
        failed_sync(client, auth_headers, delivery)

        response = client.get("/api/v1/dlq/statistics", headers=auth_headers)
        assert response.json()["total_messages"] == 1
        assert response.json()["pending_messages"] == 1

        response = client.post("/api/v1/dlq/cleanup", json={"retention_days": 30}, headers=auth_headers)
        assert response.json()["deleted_count"] == 0
        assert "dlq_cleanup" in audit_actions()
