from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from tenantplane.apps.api.main import create_app
from tenantplane.tests.utils.fakes import RecordingKubernetesClient, failing_executor
from tenantplane.tests.utils.plane import build_test_plane


def _client(plane) -> httpx.AsyncClient:
    app = create_app(plane=plane)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


_ONBOARD = {
    "tenant_id": "t-100",
    "tenant_name": "Acme Corp",
    "email": "admin@acme.test",
    "tier": "basic",
}


@pytest.mark.asyncio
async def test_onboarding_round_trip_over_http(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    async with _client(plane) as client:
        response = await client.post("/v1/tenants", json=_ONBOARD, headers={"X-Request-Id": "req-1"})
        assert response.status_code == 202
        body = response.json()
        assert body["meta"]["request_id"] == "req-1"
        assert body["data"]["tenant_id"] == "t-100"
        assert body["data"]["noop"] is False
        await plane.drain()

        response = await client.get("/v1/tenants/t-100")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "Active"
        assert data["deployments"]["services"] == {
            "ProductService": "succeeded",
            "OrderService": "succeeded",
        }

        response = await client.get("/v1/tenants", params={"status": "Active"})
        assert [item["tenant_id"] for item in response.json()["data"]] == ["t-100"]

        response = await client.get("/v1/tenants/t-100/executions")
        jobs = sorted(item["job_name"] for item in response.json()["data"])
        assert jobs == ["OrderServiceTenantDeploy", "ProductServiceTenantDeploy", "provisioning"]

        response = await client.post("/v1/tenants", json=_ONBOARD)
        assert response.status_code == 202
        assert response.json()["data"]["noop"] is True

        response = await client.delete("/v1/tenants/t-100")
        assert response.status_code == 202
        await plane.drain()
        response = await client.get("/v1/tenants/t-100")
        assert response.json()["data"]["status"] == "Deleted"
    await plane.close()


@pytest.mark.asyncio
async def test_request_validation_and_not_found(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    async with _client(plane) as client:
        response = await client.post("/v1/tenants", json={**_ONBOARD, "tenant_id": "Bad_Tenant"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

        response = await client.get("/v1/tenants/ghost")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TENANT_NOT_FOUND"

        response = await client.delete("/v1/tenants/ghost")
        assert response.status_code == 404

        response = await client.post("/v1/services/BillingService/deployments", json={"tenant_id": "t-1"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SERVICE_NOT_FOUND"
    await plane.close()


@pytest.mark.asyncio
async def test_degraded_deployments_surface_partial_failure(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient(fail_images={"order-svc"})
    plane = build_test_plane(tmp_path, kube=kube)
    async with _client(plane) as client:
        await client.post("/v1/tenants", json=_ONBOARD)
        await plane.drain()

        response = await client.get("/v1/tenants/t-100/deployments")
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "PARTIAL_FANOUT_FAILURE"
        assert error["details"]["degraded_services"] == ["OrderService"]

        response = await client.get("/v1/tenants/t-100")
        assert response.json()["data"]["status"] == "Active"
    await plane.close()


@pytest.mark.asyncio
async def test_retry_endpoint_reruns_failed_phase(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path, provisioning=failing_executor())
    async with _client(plane) as client:
        await client.post("/v1/tenants", json=_ONBOARD)
        await plane.drain()
        response = await client.get("/v1/tenants/t-100")
        assert response.json()["data"]["status"] == "Failed"
        assert response.json()["data"]["failed_phase"] == "provisioning"

        response = await client.post("/v1/tenants/t-100/retry")
        assert response.status_code == 202
        await plane.drain()
        response = await client.get("/v1/tenants/t-100")
        assert response.json()["data"]["status"] == "Failed"
        assert response.json()["data"]["lifecycle_attempt"] == 2

        # Deprovisioning is not reachable from a provisioning failure.
        response = await client.delete("/v1/tenants/t-100")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"
    await plane.close()


@pytest.mark.asyncio
async def test_service_deployments(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient(namespaces=["t-100", "t-200"], fail_namespaces={"t-200"})
    plane = build_test_plane(tmp_path, kube=kube)
    async with _client(plane) as client:
        response = await client.get("/v1/services")
        assert [item["service_name"] for item in response.json()["data"]] == [
            "ProductService",
            "OrderService",
        ]

        await client.post("/v1/tenants", json=_ONBOARD)
        await plane.drain()
        response = await client.post(
            "/v1/services/ProductService/deployments", json={"tenant_id": "t-100"}
        )
        assert response.status_code == 202
        await plane.drain()
        assert [patch.image_name for patch in kube.applied_to("t-100")].count("product-svc") == 2

        response = await client.post("/v1/services/ProductService/deployments", json={"image_tag": "v2"})
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "NAMESPACE_APPLY_FAILED"
        assert error["details"]["report"]["applied"] == ["t-100"]
        assert list(error["details"]["report"]["failed"]) == ["t-200"]
    await plane.close()


@pytest.mark.asyncio
async def test_health_probe_is_unwrapped(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    async with _client(plane) as client:
        response = await client.get("/health")
        assert response.json() == {"status": "ok", "router_sealed": True}
        response = await client.get("/v1/health")
        assert response.json()["data"]["router_sealed"] is True
    await plane.close()


@pytest.mark.asyncio
async def test_ops_metrics_reports_job_outcomes(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    async with _client(plane) as client:
        await client.post("/v1/tenants", json=_ONBOARD)
        await plane.drain()

        response = await client.get("/v1/ops/metrics")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["counters"]["job_succeeded_total.provisioning"] == 1
        assert data["jobs"]["provisioning"]["max"] is not None
        assert data["jobs"]["deprovisioning"] == {"p95": None, "max": None}
        assert "ProductServiceTenantDeploy" in data["jobs"]
        bound = [name for names in data["subscriptions"].values() for name in names]
        assert "provisioning" in bound
    await plane.close()
