"""
Tests for the order and progress API endpoints.

The progress service dependency is overridden with a service backed by the
in-memory repositories, so requests run through routing, schemas and the
error handlers without a database.
"""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from orderflow.api.deps import get_progress_service
from orderflow.main import app
from orderflow.services.progress.enums import OrderStatus
from orderflow.services.progress.repository import ProgressRepositoryError

API = "/api/v1"
SHIPPED_AT = "2024-03-01T08:00:00Z"
RECEIVED_AT = "2024-03-04T15:30:00Z"


@pytest.fixture
def client(progress_service):
    """Test client whose requests use the in-memory progress service."""
    app.dependency_overrides[get_progress_service] = lambda: progress_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _record(client, order_id, stage, data):
    response = client.post(f"{API}/orders/{order_id}/progress/{stage}", json={"data": data})
    assert response.status_code == 201, response.json()
    return response.json()


# ============================================================================
# Orders
# ============================================================================


class TestOrderEndpoints:
    def test_create_order(self, client):
        response = client.post(f"{API}/orders", json={"order_number": "ORD-0500"})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["order_number"] == "ORD-0500"

    def test_get_order(self, client, order):
        response = client.get(f"{API}/orders/{order.id}")

        assert response.status_code == 200
        assert response.json()["id"] == str(order.id)

    def test_get_unknown_order(self, client):
        response = client.get(f"{API}/orders/{uuid.uuid4()}")

        assert response.status_code == 404
        body = response.json()
        assert body["kind"] == "not_found"
        assert body["message"] == "Order not found"

    def test_cancel_with_reason(self, client, order):
        response = client.post(
            f"{API}/orders/{order.id}/cancel", json={"reason": "Customer request"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "Customer request"

    def test_cancel_without_body(self, client, order):
        response = client.post(f"{API}/orders/{order.id}/cancel")
        assert response.status_code == 200

    def test_complete_without_result(self, client, order):
        response = client.post(f"{API}/orders/{order.id}/complete")

        assert response.status_code == 409
        assert response.json()["kind"] == "prerequisite"

    def test_complete_order(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})
        _record(
            client,
            order.id,
            "shipping",
            {"status": True, "date_shipping": SHIPPED_AT, "date_received": RECEIVED_AT},
        )
        _record(client, order.id, "applied", {"est_applied_area": 10})
        _record(client, order.id, "result", {"status": True, "yield_amount": 42})

        response = client.post(f"{API}/orders/{order.id}/complete")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["completed_at"] is not None


# ============================================================================
# Stage progress
# ============================================================================


class TestStageProgressEndpoints:
    def test_create_warehouse(self, client, order):
        body = _record(client, order.id, "warehouse", {"status": True})

        assert body["stage"] == "warehouse"
        assert body["data"] == {"status": True}
        assert body["updated_at"] is None
        assert order.status == OrderStatus.WAREHOUSE

    def test_prerequisite_not_met(self, client, order):
        response = client.post(
            f"{API}/orders/{order.id}/progress/shipping",
            json={"data": {"status": True, "date_shipping": SHIPPED_AT}},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "prerequisite"
        assert body["error"] == "Prerequisite Not Met"

    def test_duplicate_stage(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})

        response = client.post(
            f"{API}/orders/{order.id}/progress/warehouse", json={"data": {"status": True}}
        )

        assert response.status_code == 409
        assert response.json()["kind"] == "conflict"

    def test_invalid_payload(self, client, order):
        response = client.post(
            f"{API}/orders/{order.id}/progress/warehouse", json={"data": {"status": "yes"}}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["kind"] == "validation"
        assert body["field"] == "status"

    def test_invalid_stage(self, client, order):
        response = client.post(
            f"{API}/orders/{order.id}/progress/packing", json={"data": {"status": True}}
        )

        assert response.status_code == 422
        assert response.json()["field"] == "stage"

    def test_missing_data_envelope(self, client, order):
        response = client.post(
            f"{API}/orders/{order.id}/progress/warehouse", json={"status": True}
        )

        assert response.status_code == 422
        assert response.json()["field"] == "data"

    def test_invalid_order_id(self, client):
        response = client.get(f"{API}/orders/not-a-uuid/progress")

        assert response.status_code == 422
        assert response.json()["kind"] == "validation"

    def test_unknown_order(self, client):
        response = client.post(
            f"{API}/orders/{uuid.uuid4()}/progress/warehouse", json={"data": {"status": True}}
        )
        assert response.status_code == 404

    def test_get_and_list(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})

        single = client.get(f"{API}/orders/{order.id}/progress/warehouse")
        listing = client.get(f"{API}/orders/{order.id}/progress")

        assert single.status_code == 200
        assert listing.json()["total"] == 1
        assert listing.json()["items"][0]["id"] == single.json()["id"]

    def test_update(self, client, order):
        created = _record(client, order.id, "warehouse", {"status": True})

        response = client.put(
            f"{API}/progress/{created['id']}", json={"data": {"status": False}}
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"status": False}
        assert response.json()["updated_at"] is not None

    def test_delete_blocked_by_later_stage(self, client, order):
        warehouse = _record(client, order.id, "warehouse", {"status": True})
        _record(client, order.id, "shipping", {"status": False})

        response = client.delete(f"{API}/progress/{warehouse['id']}")

        assert response.status_code == 409
        assert response.json()["context"]["dependent_stages"] == ["shipping"]

    def test_delete_returns_derived_status(self, client, order):
        warehouse = _record(client, order.id, "warehouse", {"status": True})

        response = client.delete(f"{API}/progress/{warehouse['id']}")

        assert response.status_code == 200
        assert response.json()["order_status"] == "pending"

    def test_create_after_cancel(self, client, order):
        client.post(f"{API}/orders/{order.id}/cancel")

        response = client.post(
            f"{API}/orders/{order.id}/progress/warehouse", json={"data": {"status": True}}
        )

        assert response.status_code == 409
        assert response.json()["kind"] == "terminal_state"

    def test_storage_failure(self, client, order, progress_repository):
        progress_repository.create = AsyncMock(
            side_effect=ProgressRepositoryError("Progress creation failed due to database error")
        )

        response = client.post(
            f"{API}/orders/{order.id}/progress/warehouse", json={"data": {"status": True}}
        )

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["kind"] == "storage"


# ============================================================================
# Status and summaries
# ============================================================================


class TestSummaryEndpoints:
    def test_stage_status(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})

        response = client.get(f"{API}/orders/{order.id}/progress/status")

        assert response.status_code == 200
        body = response.json()
        assert body["stages"] == {
            "warehouse": True,
            "shipping": False,
            "applied": False,
            "result": False,
        }
        assert body["next_stage"] == "shipping"

    def test_summary(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})

        response = client.get(f"{API}/orders/{order.id}/progress/summary")

        assert response.status_code == 200
        body = response.json()
        assert body["order_status"] == "warehouse"
        assert body["percent_complete"] == 25
        assert body["current_stage"] == "shipping"

    def test_bulk_summary(self, client, order, order_repository):
        other = order_repository.add(order_number="ORD-0002")

        response = client.post(
            f"{API}/progress/summaries",
            json={"order_ids": [str(order.id), str(other.id)]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert set(body["summaries"]) == {str(order.id), str(other.id)}

    def test_bulk_summary_requires_ids(self, client):
        response = client.post(f"{API}/progress/summaries", json={"order_ids": []})
        assert response.status_code == 422

    def test_bulk_summary_unknown_order(self, client, order):
        response = client.post(
            f"{API}/progress/summaries",
            json={"order_ids": [str(order.id), str(uuid.uuid4())]},
        )
        assert response.status_code == 404

    def test_analysis_before_application(self, client, order):
        response = client.get(f"{API}/orders/{order.id}/progress/analysis")

        assert response.status_code == 200
        assert response.json() == {
            "order_id": str(order.id),
            "application_efficiency": None,
            "area_variance": None,
            "has_yield_gain": False,
            "yield_per_area": None,
            "result": None,
        }

    def test_analysis_after_result(self, client, order):
        _record(client, order.id, "warehouse", {"status": True})
        _record(
            client,
            order.id,
            "shipping",
            {"status": True, "date_shipping": SHIPPED_AT, "date_received": RECEIVED_AT},
        )
        _record(
            client,
            order.id,
            "applied",
            {"est_applied_area": 100, "actual_applied_area": 120},
        )
        _record(client, order.id, "result", {"status": True, "yield_amount": 1500})

        response = client.get(f"{API}/orders/{order.id}/progress/analysis")

        assert response.status_code == 200
        body = response.json()
        assert body["application_efficiency"] == 120.0
        assert body["area_variance"] == 20.0
        assert body["yield_per_area"] == 12.5
        assert body["result"]["applied_area"] == 120.0
        assert body["result"]["efficiency"] == "high"

    def test_analysis_unknown_order(self, client):
        response = client.get(f"{API}/orders/{uuid.uuid4()}/progress/analysis")
        assert response.status_code == 404


# ============================================================================
# Application
# ============================================================================


class TestApplication:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_propagated(self, client):
        response = client.get(
            f"{API}/orders/{uuid.uuid4()}", headers={"X-Request-ID": "req-7f3a"}
        )

        assert response.headers["X-Request-ID"] == "req-7f3a"
        assert response.json()["request_id"] == "req-7f3a"

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]
