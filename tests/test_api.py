"""HTTP surface: verification, cache management, scheduler control and health."""
import asyncio

from bl_reconciliation.models.db import Delivery
from bl_reconciliation.models.verification import VerificationKey, VerificationResult
from bl_reconciliation.services.verification_cache import CacheUnavailableError, InMemoryVerificationCache


def test_bulk_verification_returns_camel_case_in_order(client, store_factory, record_client):
    store_factory(7)
    record_client.tables[7] = [{"RefFacture": "FAC123456", "Fournisseurs": "CMP"}]
    payload = {
        "deliveries": [
            {"id": 42, "groupId": 7, "invoiceReference": "FAC123456", "supplierName": "CMP"},
            {"id": 43, "groupId": 7, "invoiceReference": "FAC000", "supplierName": "CMP"},
            {"id": 44, "groupId": 99, "invoiceReference": "FAC1"},
        ]
    }
    r = client.post("/api/v1/verification/bulk", json=payload)
    assert r.status_code == 200, r.text
    body = r.json()
    assert [i["deliveryId"] for i in body] == [42, 43, 44]
    assert body[0]["exists"] is True and body[0]["matchType"] == "INVOICE_REF" and body[0]["cacheHit"] is False
    assert body[1]["matchType"] == "NONE"
    assert body[2]["matchType"] == "CONFIG_ERROR" and body[2]["error"]

    again = client.post("/api/v1/verification/bulk", json={"deliveries": payload["deliveries"][:1]})
    assert again.json()[0]["cacheHit"] is True


def test_bulk_validation_error_shape(client):
    r = client.post("/api/v1/verification/bulk", json={"deliveries": [{"groupId": 7}]})
    assert r.status_code == 422
    body = r.json()
    assert body["success"] is False
    assert body["message"] == "Request validation failed"


def test_single_delivery_verification_uses_stored_delivery(client, store_factory, delivery_factory, record_client):
    store_factory(7)
    d = delivery_factory(bl_number="BL-9")
    record_client.tables[7] = [{"RefFacture": "FAC9", "NumBL": "BL-9", "Fournisseurs": "CMP"}]
    r = client.get(f"/api/v1/verification/deliveries/{d.id}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["deliveryId"] == d.id and body["storeId"] == 7
    assert body["result"]["matchType"] == "BL_NUMBER"
    assert body["result"]["matchedRecord"]["RefFacture"] == "FAC9"


def test_single_delivery_verification_unknown_delivery_is_404(client):
    r = client.get("/api/v1/verification/deliveries/999")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_single_lookup_does_not_block_later_reconciliation(client, store_factory, delivery_factory, record_client, runner, db_session):
    store_factory(7)
    d = delivery_factory(bl_number="BL-9")
    record_client.tables[7] = [{"RefFacture": "FAC9", "NumBL": "BL-9", "Fournisseurs": "CMP"}]

    assert client.get(f"/api/v1/verification/deliveries/{d.id}").status_code == 200
    run = asyncio.run(runner.run())

    assert run.reconciled_count == 1
    assert run.details[0]["match_type"] == "BL_NUMBER"
    db_session.expire_all()
    assert db_session.get(Delivery, d.id).reconciled is True


def test_cache_stats_cleanup_and_invalidate(client, cache):
    cache.put(VerificationKey(1, 7), VerificationResult.not_found())
    cache.get(VerificationKey(1, 7))
    cache.get(VerificationKey(2, 7))

    stats = client.get("/api/v1/verification/cache/stats", params={"storeId": 7}).json()
    assert stats == {
        "storeId": 7,
        "totalEntries": 1,
        "validEntries": 1,
        "expiredEntries": 0,
        "hits": 1,
        "misses": 1,
        "hitRate": 0.5,
    }

    cleaned = client.delete("/api/v1/verification/cache", params={"storeId": 7})
    assert cleaned.status_code == 200
    assert cleaned.json() == {"storeId": 7, "cleanedCount": 0}
    assert client.get("/api/v1/verification/cache/stats").json()["hitRate"] == 0.0

    assert client.delete("/api/v1/verification/cache/7/1").status_code == 204
    missing = client.delete("/api/v1/verification/cache/7/1")
    assert missing.status_code == 404
    assert missing.json()["success"] is False


def test_store_connection_check(client, store_factory, record_client):
    store_factory(7)
    store_factory(8, table_id=None)
    record_client.tables[7] = [{"RefFacture": "FAC1"}]

    ok = client.post("/api/v1/verification/stores/7/test-connection")
    assert ok.status_code == 200
    assert ok.json()["success"] is True and ok.json()["recordCount"] == 1

    incomplete = client.post("/api/v1/verification/stores/8/test-connection")
    assert incomplete.status_code == 422
    assert "table_id" in incomplete.json()["message"]

    assert client.post("/api/v1/verification/stores/99/test-connection").status_code == 404


def test_cache_outage_maps_to_503(client, orchestrator):
    class DownCache(InMemoryVerificationCache):
        def get(self, key):
            raise CacheUnavailableError("redis down")

    original = orchestrator.cache
    orchestrator.cache = DownCache()
    try:
        r = client.post("/api/v1/verification/bulk", json={"deliveries": [{"id": 1, "groupId": 7}]})
    finally:
        orchestrator.cache = original
    assert r.status_code == 503
    assert r.json()["message"] == "Verification cache unavailable"


def test_manual_trigger_and_run_history(client, store_factory, delivery_factory, record_client):
    store_factory(7)
    delivery_factory(invoice_reference="FAC123456")
    record_client.tables[7] = [{"RefFacture": "FAC123456", "Fournisseurs": "CMP", "Montant": "99.90"}]

    r = client.post("/api/v1/reconciliation/trigger")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "COMPLETED"
    assert body["processedDeliveries"] == 1
    assert body["reconciledDeliveries"] == 1
    assert body["errors"] == []

    runs = client.get("/api/v1/reconciliation/runs", params={"limit": 5}).json()
    assert len(runs) == 1
    assert runs[0]["id"] == body["runId"]
    assert runs[0]["trigger"] == "manual"
    assert runs[0]["reconciledCount"] == 1


def test_trigger_conflicts_with_running_run(client, runner):
    assert runner._lock.acquire(blocking=False)
    try:
        r = client.post("/api/v1/reconciliation/trigger")
    finally:
        runner._lock.release()
    assert r.status_code == 409
    assert r.json()["success"] is False


def test_scheduler_start_status_stop(client):
    assert client.get("/api/v1/reconciliation/status").json() == {"active": False, "nextRun": None, "intervalMinutes": 20.0}

    started = client.post("/api/v1/reconciliation/start").json()
    assert started["success"] is True
    assert started["data"]["active"] is True
    assert started["data"]["nextRun"] is not None
    assert client.post("/api/v1/reconciliation/start").json()["message"] == "Reconciliation service already running"

    stopped = client.post("/api/v1/reconciliation/stop").json()
    assert stopped["data"]["active"] is False
    assert client.post("/api/v1/reconciliation/stop").json()["message"] == "Reconciliation service already stopped"


def test_audit_endpoint_filters_by_level(client, audit):
    audit.info("bulk_verification", data={"requested": 1})
    audit.error("verify_delivery", "api_error: boom", group_id=7)
    body = client.get("/api/v1/reconciliation/audit", params={"level": "ERROR"}).json()
    assert body["count"] == 1
    assert body["entries"][0]["operation"] == "verify_delivery"
    assert body["entries"][0]["group_id"] == 7


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert "X-Request-ID" in r.headers

    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"] == "healthy"
    assert detailed["checks"]["cache"]["total_entries"] == 0


def test_trigger_reports_item_errors_as_messages(client, store_factory, delivery_factory):
    store_factory(8, api_token=None)
    d = delivery_factory(store_id=8, invoice_reference="FAC8")
    r = client.post("/api/v1/reconciliation/trigger")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "COMPLETED"
    assert body["reconciledDeliveries"] == 0
    assert len(body["errors"]) == 1
    assert body["errors"][0].startswith(f"Delivery {d.id} (store 8): ")
    assert "api_token" in body["errors"][0]
