"""
API tests through FastAPI's TestClient.

The application lifespan is not run: the engine context is placed on
app.state directly and get_db is pointed at the per-test database.
"""
import pytest

from conftest import PAYER, PAYEE


INTERNAL_KEY = "scheduler-internal-key-change-in-production"


@pytest.fixture
def client(context, session_factory):
    from fastapi.testclient import TestClient
    from remit_engine.database import get_db
    from remit_engine.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine_context = context
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.engine_context = None


def _event(claim_id, paid="100.00", **overrides):
    event = {
        "claimId": claim_id,
        "payerId": PAYER,
        "payeeId": PAYEE,
        "totalChargeAmount": "150.00",
        "paidAmount": paid,
        "status": "PAID",
    }
    event.update(overrides)
    return event


def _configure(client, max_claims=3, commit_mode="MANUAL"):
    responses = [
        client.post("/config/rules", json={"rule_name": "Payer / Payee", "rule_type": "PAYER_PAYEE"}),
        client.post("/config/thresholds", json={
            "threshold_name": "batch", "threshold_type": "CLAIM_COUNT", "max_claims": max_claims,
        }),
        client.post("/config/commit-criteria", json={"criteria_name": "gate", "commit_mode": commit_mode}),
        client.post("/config/payers", json={
            "payer_id": "acme-health", "payer_name": "Acme Health", "sender_id": "ACME", "delivery_path": "acme",
        }),
        client.post("/config/payees", json={"payee_id": PAYEE, "payee_name": "Clinic One"}),
    ]
    for response in responses:
        assert response.status_code == 200, response.text
        assert response.json()["saved"] is True
    return responses[0].json()["id"]


# =============================================================================
# TEST: HAPPY PATH
# =============================================================================

class TestLifecycleThroughApi:

    def test_claims_to_delivered_file(self, client):
        _configure(client)

        submitted = client.post("/claims/events", json={"events": [
            _event("CLM-1"), _event("CLM-2"), _event("CLM-BAD", payeeId=None), _event("CLM-3"),
        ]})

        assert submitted.status_code == 200
        body = submitted.json()
        assert body["received"] == 4
        assert body["processed"] == 3
        assert body["rejected"] == 1
        assert body["results"][-1]["bucket_status"] == "PENDING_APPROVAL"
        bucket_id = body["results"][-1]["bucket_id"]

        pending = client.get("/approvals/pending").json()
        assert pending["pending_count"] == 1
        assert pending["buckets"][0]["bucket_id"] == bucket_id

        approved = client.post(f"/approvals/{bucket_id}/approve", json={"actor": "alice", "comments": "ok"})
        assert approved.status_code == 200
        assert approved.json()["status"] == "COMPLETED"
        file_id = approved.json()["file_id"]

        bucket = client.get(f"/buckets/{bucket_id}").json()
        assert bucket["status"] == "COMPLETED"
        assert bucket["claim_count"] == 3
        assert bucket["total_amount"] == "300.00"
        assert len(bucket["status_log"]) == 3
        assert {entry["to_status"] for entry in bucket["status_log"]} == {
            "PENDING_APPROVAL", "GENERATING", "COMPLETED",
        }
        assert [entry["action"] for entry in bucket["approval_log"]] == ["APPROVE"]

        delivered = client.post(f"/deliveries/{file_id}/deliver")
        assert delivered.status_code == 200
        assert delivered.json()["delivery_status"] == "DELIVERED"

        history = client.get(f"/deliveries/{file_id}").json()
        assert history["delivery_status"] == "DELIVERED"
        assert history["delivery_attempt_count"] == 1
        assert history["claim_count"] == 3

        stats = client.get("/deliveries/statistics").json()
        assert stats["by_status"]["DELIVERED"] == 1

    def test_claim_log(self, client):
        _configure(client)
        client.post("/claims/events", json={"events": [_event("CLM-7"), _event("CLM-7")]})

        log = client.get("/claims/CLM-7/log")

        assert log.status_code == 200
        assert sorted(e["status"] for e in log.json()["entries"]) == ["ACCEPTED", "PROCESSED"]
        assert client.get("/claims/CLM-404/log").status_code == 404

    def test_list_and_statistics(self, client):
        _configure(client, max_claims=100)
        client.post("/claims/events", json={"events": [_event("CLM-1")]})

        listed = client.get("/buckets", params={"status": "ACCUMULATING"}).json()
        assert listed["count"] == 1
        assert listed["buckets"][0]["payer_name"] == "Acme Health"

        stats = client.get("/buckets/statistics").json()
        assert stats["total"] == 1
        assert stats["by_status"]["ACCUMULATING"] == 1

    def test_reject_returns_bucket_to_accumulating(self, client):
        _configure(client)
        body = client.post("/claims/events", json={"events": [_event(f"CLM-{i}") for i in range(3)]}).json()
        bucket_id = body["results"][-1]["bucket_id"]

        rejected = client.post(f"/approvals/{bucket_id}/reject", json={"actor": "alice", "reason": "hold"})

        assert rejected.status_code == 200
        assert rejected.json()["status"] == "ACCUMULATING"

    def test_bulk_approve(self, client):
        _configure(client)
        body = client.post("/claims/events", json={"events": [_event(f"CLM-{i}") for i in range(3)]}).json()
        bucket_id = body["results"][-1]["bucket_id"]

        summary = client.post("/approvals/bulk-approve", json={
            "bucket_ids": [bucket_id, "missing"], "actor": "alice",
        }).json()

        assert summary["succeeded"] == 1
        assert summary["failed"] == 1


# =============================================================================
# TEST: ERROR MAPPING
# =============================================================================

class TestErrorMapping:

    def test_unknown_bucket(self, client):
        assert client.get("/buckets/missing").status_code == 404

        response = client.post("/approvals/missing/approve", json={"actor": "alice"})
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    def test_approve_wrong_state(self, client):
        _configure(client)
        body = client.post("/claims/events", json={"events": [_event("CLM-1")]}).json()

        response = client.post(f"/approvals/{body['results'][0]['bucket_id']}/approve", json={"actor": "alice"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "INVALID_STATE"

    def test_empty_rejection_reason(self, client):
        response = client.post("/approvals/any/reject", json={"actor": "alice", "reason": ""})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION"

    def test_reset_requires_failed(self, client):
        _configure(client)
        body = client.post("/claims/events", json={"events": [_event("CLM-1")]}).json()

        response = client.post(f"/buckets/{body['results'][0]['bucket_id']}/reset", json={"actor": "ops"})

        assert response.status_code == 409

    def test_invalid_configuration(self, client):
        response = client.post("/config/thresholds", json={"threshold_name": "t", "threshold_type": "CLAIM_COUNT"})

        assert response.status_code == 400
        assert "CLAIM_COUNT threshold requires max_claims" in response.json()["detail"]["errors"]

    def test_deactivate(self, client):
        rule_id = _configure(client)

        assert client.delete(f"/config/rules/{rule_id}").json() == {"id": rule_id, "deactivated": True}
        assert client.delete("/config/rules/missing").status_code == 404
        assert client.delete(f"/config/widgets/{rule_id}").status_code == 404

    def test_engine_not_initialized(self, client):
        from remit_engine.main import app
        app.state.engine_context = None

        assert client.get("/approvals/pending").status_code == 503


# =============================================================================
# TEST: INTERNAL ENDPOINTS
# =============================================================================

class TestInternalEndpoints:

    def test_key_required(self, client):
        assert client.post("/internal/threshold-sweep").status_code == 422
        assert client.post("/internal/threshold-sweep", headers={"X-Internal-Key": "wrong"}).status_code == 403

    def test_threshold_sweep(self, client):
        response = client.post("/internal/threshold-sweep", headers={"X-Internal-Key": INTERNAL_KEY})

        assert response.status_code == 200
        assert response.json()["buckets_evaluated"] == 0

    def test_cycle(self, client):
        response = client.post("/internal/cycle", headers={"X-Internal-Key": INTERNAL_KEY})

        assert response.status_code == 200
        assert response.json()["delivery_sweep"]["success"] is True

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["monitor_running"] is False
