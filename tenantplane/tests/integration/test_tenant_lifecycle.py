from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import select

from tenantplane.core.errors import (
    DuplicateRequestError,
    InvalidStateError,
    PartialFanoutFailure,
    UnknownTenantError,
)
from tenantplane.domain.events import DetailType, build_event, deploy_request_type
from tenantplane.domain.models import AuditEvent
from tenantplane.domain.state import LifecyclePhase, TenantStatus
from tenantplane.persistence.repos import jobs as jobs_repo
from tenantplane.persistence.repos import resources as resources_repo
from tenantplane.services.fanout import fanout_summary, require_healthy_fanout
from tenantplane.services.patcher import PATH_PATCH_FILE, SVC_ACC_PATCH_FILE
from tenantplane.tests.utils.fakes import FlakyTransport, RecordingKubernetesClient
from tenantplane.tests.utils.plane import DEFAULT_SERVICES, build_test_plane


async def _onboard(plane, tenant_id: str = "t-100", tier: str = "basic") -> str | None:
    event_id = await plane.request_onboarding(
        tenant_id, tenant_name="Acme Corp", email="admin@acme.test", tier=tier
    )
    await plane.drain()
    return event_id


@pytest.mark.asyncio
async def test_onboarding_provisions_tenant_and_deploys_every_service(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    plane = build_test_plane(tmp_path, kube=kube)
    assert await _onboard(plane)

    tenant = await plane.registry.get("t-100")
    assert tenant.status == TenantStatus.ACTIVE.value
    assert tenant.tenant_config == '{"plan": "basic"}'

    applied = {patch.image_name: patch for patch in kube.applied_to("t-100")}
    assert set(applied) == {"product-svc", "order-svc"}
    assert applied["product-svc"].document(PATH_PATCH_FILE)[-1]["value"] == "/t-100/products"
    assert applied["order-svc"].document(PATH_PATCH_FILE)[-1]["value"] == "/t-100/orders"
    for patch in applied.values():
        assert patch.document(SVC_ACC_PATCH_FILE)[-1]["value"] == "t-100-service-account"

    summary = await fanout_summary("t-100", session_factory=plane.session_factory)
    assert summary.services == {"ProductService": "succeeded", "OrderService": "succeeded"}
    assert summary.complete
    require_healthy_fanout(summary)
    await plane.close()


@pytest.mark.asyncio
async def test_one_failing_service_degrades_without_blocking_others(tmp_path: Path) -> None:
    services = (*DEFAULT_SERVICES, ("BillingService", "billing-svc", "billing"))
    kube = RecordingKubernetesClient(fail_images={"order-svc"})
    plane = build_test_plane(tmp_path, kube=kube, services=services)
    await _onboard(plane)

    tenant = await plane.registry.get("t-100")
    assert tenant.status == TenantStatus.ACTIVE.value
    assert {patch.image_name for patch in kube.applied_to("t-100")} == {"product-svc", "billing-svc"}

    summary = await fanout_summary("t-100", session_factory=plane.session_factory)
    assert summary.services == {
        "ProductService": "succeeded",
        "OrderService": "failed",
        "BillingService": "succeeded",
    }
    assert "admission webhook denied" in summary.errors["OrderService"]
    with pytest.raises(PartialFanoutFailure) as exc_info:
        require_healthy_fanout(summary)
    assert exc_info.value.degraded_services == ["OrderService"]
    await plane.close()


@pytest.mark.asyncio
async def test_redelivered_provision_success_does_not_redeploy(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    plane = build_test_plane(tmp_path, kube=kube)
    await _onboard(plane)
    assert len(kube.applied) == 2

    duplicate = build_event(
        DetailType.PROVISION_SUCCESS, "t-100", tenantConfig='{"plan": "basic"}', tenantStatus="Complete"
    )
    triggered = await plane.fanout.on_provision_success(duplicate)
    await plane.drain()
    assert triggered == []
    assert len(kube.applied) == 2
    await plane.close()


@pytest.mark.asyncio
async def test_lost_deploy_publish_is_degraded_then_resent_on_redelivery(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    transport = FlakyTransport(fail_once={deploy_request_type("OrderService")})
    plane = build_test_plane(tmp_path, kube=kube, transport=transport)
    await _onboard(plane)

    assert {patch.image_name for patch in kube.applied_to("t-100")} == {"product-svc"}
    summary = await fanout_summary("t-100", session_factory=plane.session_factory)
    assert summary.services == {"ProductService": "succeeded", "OrderService": "failed"}
    assert "Connection refused" in summary.errors["OrderService"]
    assert summary.degraded_services == ["OrderService"]

    redelivered = build_event(
        DetailType.PROVISION_SUCCESS, "t-100", tenantConfig='{"plan": "basic"}', tenantStatus="Complete"
    )
    triggered = await plane.fanout.on_provision_success(redelivered)
    await plane.drain()
    assert triggered == ["OrderService"]
    assert {patch.image_name for patch in kube.applied_to("t-100")} == {"product-svc", "order-svc"}
    summary = await fanout_summary("t-100", session_factory=plane.session_factory)
    assert summary.services == {"ProductService": "succeeded", "OrderService": "succeeded"}
    assert summary.errors == {}
    await plane.close()


@pytest.mark.asyncio
async def test_fanout_surfaces_publish_failure_after_triggering_the_rest(tmp_path: Path) -> None:
    services = (*DEFAULT_SERVICES, ("BillingService", "billing-svc", "billing"))
    kube = RecordingKubernetesClient()
    transport = FlakyTransport(fail_once={deploy_request_type("ProductService")})
    plane = build_test_plane(tmp_path, kube=kube, services=services, transport=transport)
    # Drive the registry directly so the fan-out handler runs outside the router.
    await plane.registry.request_provisioning(
        "t-100", company_name="Acme Corp", admin_email="admin@acme.test", tier="basic"
    )
    await plane.registry.begin_phase("t-100", LifecyclePhase.PROVISIONING)
    await plane.registry.mark_provisioned("t-100", '{"plan": "basic"}')
    event = build_event(
        DetailType.PROVISION_SUCCESS, "t-100", tenantConfig='{"plan": "basic"}', tenantStatus="Complete"
    )
    with pytest.raises(PartialFanoutFailure) as exc_info:
        await plane.fanout.on_provision_success(event)
    await plane.drain()
    assert exc_info.value.degraded_services == ["ProductService"]
    summary = await fanout_summary("t-100", session_factory=plane.session_factory)
    assert summary.services == {
        "ProductService": "failed",
        "OrderService": "succeeded",
        "BillingService": "succeeded",
    }
    await plane.close()


@pytest.mark.asyncio
async def test_duplicate_onboarding_is_a_noop(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    plane = build_test_plane(tmp_path, kube=kube)
    # Two onboarding requests for the same tenant in flight at once.
    for _ in range(2):
        await plane.router.publish(
            build_event(
                DetailType.ONBOARDING_REQUEST,
                "t-100",
                tier="basic",
                tenantName="Acme Corp",
                email="admin@acme.test",
                tenantStatus="In progress",
            )
        )
    await plane.drain()
    assert (await plane.registry.get("t-100")).status == TenantStatus.ACTIVE.value

    async with plane.session_factory() as session:
        executions = await jobs_repo.list_executions(session, "t-100")
    assert [item.job_name for item in executions].count("provisioning") == 1
    assert len(kube.applied) == 2

    # Once Active, onboarding again publishes nothing.
    assert await _onboard(plane) is None
    assert len(kube.applied) == 2
    await plane.close()


@pytest.mark.asyncio
async def test_offboarding_deletes_tenant_and_purges_data(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    await _onboard(plane, "t-100")
    await _onboard(plane, "t-200")
    async with plane.session_factory() as session:
        await resources_repo.put_resource(
            session, "t-100", resource_id="order-1", resource_type="order", data_json={"total": 10}
        )
        await resources_repo.put_resource(
            session, "t-200", resource_id="order-1", resource_type="order", data_json={"total": 20}
        )
        await session.commit()

    assert await plane.request_offboarding("t-100")
    await plane.drain()

    tenant = await plane.registry.get("t-100")
    assert tenant.status == TenantStatus.DELETED.value
    assert tenant.deleted_at is not None
    async with plane.session_factory() as session:
        assert await resources_repo.list_resources(session, "t-100") == []
        assert len(await resources_repo.list_resources(session, "t-200")) == 1
        result = await session.execute(
            select(AuditEvent)
            .where(AuditEvent.tenant_id == "t-100", AuditEvent.event_type == "tenant.status.changed")
            .order_by(AuditEvent.id)
        )
        targets = [row.metadata_json["to"] for row in result.scalars().all()]
    assert targets[-2:] == ["Deprovisioning", "Deleted"]
    assert (await plane.registry.get("t-200")).status == TenantStatus.ACTIVE.value

    # Deleted is terminal.
    assert await plane.request_offboarding("t-100") is None
    await plane.close()


@pytest.mark.asyncio
async def test_offboarding_guards(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    with pytest.raises(UnknownTenantError):
        await plane.request_offboarding("ghost")

    await plane.registry.request_provisioning(
        "t-100", company_name="Acme Corp", admin_email="admin@acme.test", tier="basic"
    )
    with pytest.raises(InvalidStateError):
        await plane.request_offboarding("t-100")
    await plane.close()


@pytest.mark.asyncio
async def test_offboarding_while_deprovisioning_is_duplicate(tmp_path: Path) -> None:
    plane = build_test_plane(tmp_path)
    await _onboard(plane)
    await plane.registry.request_deprovisioning("t-100")
    with pytest.raises(DuplicateRequestError):
        await plane.request_offboarding("t-100")
    await plane.close()


@pytest.mark.asyncio
async def test_manual_deploy_redeploys_one_service(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    plane = build_test_plane(tmp_path, kube=kube)
    await _onboard(plane)
    await plane.request_deploy("ProductService", "t-100")
    await plane.drain()

    assert [patch.image_name for patch in kube.applied_to("t-100")].count("product-svc") == 2
    async with plane.session_factory() as session:
        latest = await jobs_repo.latest_execution(session, "t-100", "deployRequest:ProductService")
    assert latest.attempt == 2
    assert latest.status == "succeeded"
    await plane.close()
