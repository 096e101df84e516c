"""
Integration tests for transaction, evidence and message endpoints.

WHAT: Walk a sale through the HTTP surface and check error mapping
WHY: Clients only render what these endpoints return
HOW: FastAPI TestClient; identities passed as gateway headers
"""

import base64

import pytest
from fastapi.testclient import TestClient

from marketplace.main import app
from marketplace.utils.exceptions import UnavailableError

BUYER = {"X-User-Id": "20"}
SELLER = {"X-User-Id": "10"}
STRANGER = {"X-User-Id": "30"}
ADMIN = {"X-User-Id": "99", "X-User-Role": "admin"}


@pytest.fixture
def client(services):
    """Create FastAPI test client bound to the test services."""
    return TestClient(app)


@pytest.fixture
def txn_id(client):
    """Pickup transaction created by an accepted offer of 50.00."""
    offer = client.post("/api/v1/items/1/offers", json={"amount": "50"}, headers=BUYER).json()
    resolution = client.post(f"/api/v1/offers/{offer['id']}/respond", json={"action": "accept"}, headers=SELLER)
    return resolution.json()["transaction"]["id"]


def _post(client, txn_id, action, headers, body=None):
    return client.post(f"/api/v1/transactions/{txn_id}/{action}", json=body or {}, headers=headers)


@pytest.mark.integration
class TestTransactionFlow:

    def test_pickup_happy_path(self, client, txn_id):
        receipt = base64.b64encode(b"bank transfer screenshot").decode()
        evidence = client.post(
            f"/api/v1/transactions/{txn_id}/evidence",
            json={"kind": "receipt", "content_base64": receipt},
            headers=BUYER,
        )
        assert evidence.status_code == 201
        assert evidence.json()["payment_status"] == "processing"

        paid = _post(client, txn_id, "pay", BUYER, {"expected_version": evidence.json()["version"]})
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"

        shipped = _post(client, txn_id, "delivery-status", SELLER, {"delivery_status": "ready_for_pickup"})
        assert shipped.json()["status"] == "shipped"

        delivered = _post(client, txn_id, "delivery-status", SELLER, {"delivery_status": "delivered"})
        assert delivered.json()["status"] == "delivered"

        completed = _post(client, txn_id, "complete", BUYER)
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"
        assert completed.json()["completed_at"] is not None

        again = _post(client, txn_id, "complete", BUYER)
        assert again.status_code == 409
        assert again.json()["error"] == "INVALID_STATE"

    def test_dispute_and_resolution(self, client, txn_id):
        _post(client, txn_id, "pay", BUYER)
        _post(client, txn_id, "delivery-status", SELLER, {"delivery_status": "ready_for_pickup"})

        problem = _post(client, txn_id, "problem", BUYER, {"description": "item damaged"})
        assert problem.json()["status"] == "disputed"

        blocked = _post(client, txn_id, "cancel", BUYER, {"reason": "want out"})
        assert blocked.status_code == 409

        not_admin = _post(client, txn_id, "resolve", SELLER, {"outcome": "release"})
        assert not_admin.status_code == 403

        resolved = _post(client, txn_id, "resolve", ADMIN, {"outcome": "refund", "note": "photos confirm damage"})
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "refunded"
        assert resolved.json()["payment_status"] == "refunded"

    def test_delivery_purchase_with_tracking(self, client):
        created = client.post(
            "/api/v1/items/2/purchase", json={"delivery_address": "1 Quad"}, headers=BUYER
        ).json()
        txn_id = created["id"]

        moved = _post(client, txn_id, "address", BUYER, {"address": "2 Quad"})
        assert moved.json()["delivery_address"] == "2 Quad"

        _post(client, txn_id, "pay", BUYER)
        tracked = _post(client, txn_id, "tracking", SELLER, {"tracking_number": "RM42"})
        assert tracked.json()["status"] == "shipped"
        assert tracked.json()["delivery_tracking_number"] == "RM42"
        assert tracked.json()["delivery_status"] == "in_transit"

    def test_listing_and_reading(self, client, txn_id):
        assert [t["id"] for t in client.get("/api/v1/transactions", headers=BUYER).json()] == [txn_id]
        assert client.get("/api/v1/transactions", headers=STRANGER).json() == []
        assert client.get(f"/api/v1/transactions/{txn_id}", headers=ADMIN).status_code == 200
        assert client.get(f"/api/v1/transactions/{txn_id}", headers=STRANGER).status_code == 403
        filtered = client.get("/api/v1/transactions", params={"status": "paid"}, headers=BUYER)
        assert filtered.json() == []


@pytest.mark.integration
class TestEvidenceAndMessages:

    def test_evidence_endpoints(self, client, txn_id):
        added = client.post(
            f"/api/v1/transactions/{txn_id}/evidence",
            json={"kind": "receipt", "ref": "/uploads/receipt.png"},
            headers=BUYER,
        )
        assert added.json()["payment_receipt"] == "/uploads/receipt.png"

        listed = client.get(f"/api/v1/transactions/{txn_id}/evidence", headers=SELLER).json()
        assert [e["ref"] for e in listed] == ["/uploads/receipt.png"]

        removed = client.delete(
            f"/api/v1/transactions/{txn_id}/evidence", params={"ref": "/uploads/receipt.png"}, headers=BUYER
        )
        assert removed.status_code == 200
        assert removed.json()["payment_receipt"] is None

        missing = client.delete(
            f"/api/v1/transactions/{txn_id}/evidence", params={"ref": "/uploads/receipt.png"}, headers=BUYER
        )
        assert missing.status_code == 404

    def test_evidence_body_needs_one_source(self, client, txn_id):
        response = client.post(
            f"/api/v1/transactions/{txn_id}/evidence", json={"kind": "receipt"}, headers=BUYER
        )
        assert response.status_code == 400

    def test_messages(self, client, txn_id):
        posted = client.post(
            f"/api/v1/transactions/{txn_id}/messages", json={"message": "Library at 3pm?"}, headers=BUYER
        )
        assert posted.status_code == 201
        assert posted.json()["sender_type"] == "buyer"

        listing = client.get(f"/api/v1/transactions/{txn_id}/messages", headers=SELLER).json()
        assert listing["total"] == 2
        assert [m["sender_type"] for m in listing["messages"]] == ["system", "buyer"]

        newer = client.get(
            f"/api/v1/transactions/{txn_id}/messages", params={"after_id": posted.json()["id"]}, headers=SELLER
        ).json()
        assert newer["messages"] == []

        read = client.post(f"/api/v1/transactions/{txn_id}/messages/read", headers=SELLER)
        assert read.json() == {"transaction_id": txn_id, "marked_read": 1}

        empty = client.post(f"/api/v1/transactions/{txn_id}/messages", json={"message": "   "}, headers=BUYER)
        assert empty.status_code == 400


@pytest.mark.integration
class TestErrorMapping:

    def test_unknown_transaction_is_404(self, client):
        response = client.get("/api/v1/transactions/12345", headers=BUYER)
        assert response.status_code == 404
        assert response.json()["details"] == {"entity": "Transaction", "id": 12345}

    def test_cancel_without_reason_is_400(self, client, txn_id):
        response = _post(client, txn_id, "cancel", BUYER, {"reason": ""})
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_version_conflict_is_409(self, client, txn_id):
        _post(client, txn_id, "pay", BUYER, {"expected_version": 1})
        response = _post(client, txn_id, "cancel", SELLER, {"reason": "late", "expected_version": 1})
        assert response.status_code == 409
        assert response.json()["error"] == "VERSION_CONFLICT"

    def test_unavailable_store_is_503_with_retry_after(self, client, services, txn_id, monkeypatch):
        def unavailable(*args, **kwargs):
            raise UnavailableError()

        monkeypatch.setattr(services.transactions, "get_transaction", unavailable)
        response = client.get(f"/api/v1/transactions/{txn_id}", headers=BUYER)

        assert response.status_code == 503
        assert response.json()["error"] == "UNAVAILABLE"
        assert response.json()["retryable"] is True
        assert "retry-after" in response.headers
