"""
ChainTrace Compliance Engine - API Tests
HTTP status mapping, DTO aliases and read endpoints.
"""

import pytest
from datetime import date, timedelta
from typing import Dict

from fastapi.testclient import TestClient

from ct_main_api import app, app_state
from ct_engine_integration import EngineConfig, InMemoryLedgerClient

client = TestClient(app)

class UnreachableLedgerClient(InMemoryLedgerClient):
    def submit_compliance_check(self, product_id: str, event: Dict, correlation_id: str):
        raise ConnectionError("ledger node unreachable")

@pytest.fixture(autouse=True)
def fresh_state():
    app_state.reset(EngineConfig(ledger_retry_backoff=0, ledger_max_attempts=1))
    yield
    app_state.engine.audit_logger.shutdown()

def producer_payload(product_id: str = "CT-2024-001-ABC123", **data_overrides) -> Dict:
    data = {
        "productType": "organic_cocoa",
        "quantity": 500,
        "origin": {"country": "Ghana", "region": "Ashanti", "farm_id": "FARM-001"},
        "processingDetails": {
            "harvest_date": (date.today() - timedelta(days=14)).isoformat(),
            "processing_method": "fermentation",
            "quality_grade": "A"
        }
    }
    data.update(data_overrides)
    return {
        "action": "product_creation",
        "productId": product_id,
        "actor": {"walletAddress": "0.0.12345", "role": "Producer"},
        "data": data
    }

class TestValidateActionEndpoint:

    def test_approved(self):
        res = client.post("/api/compliance/validate-action", json=producer_payload())

        assert res.status_code == 200
        body = res.json()
        assert body["is_valid"] is True
        assert body["sequence_step"] == 1
        assert body["audit"]["result"] == "APPROVED"
        assert body["next_action"] == "Processor action required"

    def test_rejection_is_not_an_http_error(self):
        """Compliance rejections are regular 200 responses."""
        res = client.post("/api/compliance/validate-action", json=producer_payload(quantity=1500))

        assert res.status_code == 200
        body = res.json()
        assert body["is_valid"] is False
        assert any("Daily production limit exceeded" in v for v in body["violations"])

    def test_snake_case_fields_accepted(self):
        payload = producer_payload()
        payload["product_id"] = payload.pop("productId")
        payload["actor"] = {"wallet_address": "0.0.12345", "role": "Producer"}

        res = client.post("/api/compliance/validate-action", json=payload)
        assert res.status_code == 200

    def test_malformed_body(self):
        res = client.post("/api/compliance/validate-action", json={"action": "product_creation"})

        assert res.status_code == 400
        assert res.json()["detail"] == "Malformed request"

    def test_ledger_outage_returns_503(self):
        """Infrastructure faults map to 503 and leave no stage recorded."""
        app_state.engine.audit_logger.ledger = UnreachableLedgerClient()

        res = client.post("/api/compliance/validate-action", json=producer_payload())

        assert res.status_code == 503
        assert res.json()["error"] == "LedgerUnavailable"
        assert client.get("/api/compliance/sequence/CT-2024-001-ABC123").status_code == 404

class TestReadEndpoints:

    def test_rules_lookup(self):
        res = client.get("/api/compliance/rules/Producer/product_creation")

        assert res.status_code == 200
        assert [r["id"] for r in res.json()["rules"]] == ["producer_initial_creation"]

    def test_rules_lookup_unknown_role(self):
        res = client.get("/api/compliance/rules/Auditor/product_creation")

        assert res.status_code == 200
        assert res.json()["rules"] == []

    def test_sequence_state(self):
        client.post("/api/compliance/validate-action", json=producer_payload())

        res = client.get("/api/compliance/sequence/CT-2024-001-ABC123")

        assert res.status_code == 200
        body = res.json()
        assert body["current_step"] == 1
        assert body["status"] == "in_progress"
        assert body["completed_stages"][0]["stage_id"] == "producer_initial_creation"

    def test_sequence_state_unknown_product(self):
        assert client.get("/api/compliance/sequence/CT-UNKNOWN").status_code == 404

    def test_audit_trail(self):
        client.post("/api/compliance/validate-action", json=producer_payload())
        client.post("/api/compliance/validate-action", json=producer_payload())

        res = client.get("/api/compliance/audit/CT-2024-001-ABC123")

        body = res.json()
        assert body["count"] == 2
        assert [e["result"] for e in body["entries"]] == ["APPROVED", "REJECTED"]
        assert body["entries"][1]["violations"][0].startswith("SEQUENCE_VIOLATION")

    def test_health(self):
        client.post("/api/compliance/validate-action", json=producer_payload())

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["ledger_integrity"] is True
        assert body["ledger_entries"] == 1

    def test_metrics(self):
        client.post("/api/compliance/validate-action", json=producer_payload())

        res = client.get("/metrics")

        assert res.status_code == 200
        assert "ct_validations_total" in res.text
