from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tenantplane.core.config import get_settings
from tenantplane.core.errors import JobConfigurationError, KubernetesCommandError, NamespaceApplyError
from tenantplane.services.catalog import ServiceRegistration
from tenantplane.services.kube import KubectlClient
from tenantplane.services.patcher import (
    HOST_PATCH_FILE,
    KUSTOMIZATION_FILE,
    PATH_PATCH_FILE,
    SVC_ACC_PATCH_FILE,
    NamespacePatch,
    NamespacePatcher,
    PatchTemplates,
    render_namespace_patch,
)
from tenantplane.tests.utils.fakes import RecordingKubernetesClient, write_service_manifests


def _registration(**overrides) -> ServiceRegistration:
    values = {
        "service_name": "ProductService",
        "image_name": "product-svc",
        "url_prefix": "products",
        "manifest_dir": "product-svc/kubernetes",
        "image_repository": "123456789012.dkr.ecr.us-east-1.amazonaws.com/product-svc",
    }
    values.update(overrides)
    return ServiceRegistration(**values)


def _patcher(tmp_path: Path, kube: RecordingKubernetesClient, **overrides) -> NamespacePatcher:
    write_service_manifests(tmp_path, "product-svc/kubernetes", image_name="product-svc", url_prefix="products")
    settings = get_settings().model_copy(
        update={"internal_api_domain": "internal-api.example.test", **overrides}
    )
    return NamespacePatcher(kube, settings=settings, manifest_root=tmp_path)


def test_render_fills_route_account_and_image(tmp_path: Path) -> None:
    manifests = write_service_manifests(
        tmp_path, "product-svc/kubernetes", image_name="product-svc", url_prefix="products"
    )
    templates = PatchTemplates.load(manifests)
    patch = render_namespace_patch(
        templates,
        _registration(),
        "t-100",
        image_repository="registry.test/product-svc",
        image_tag="v42",
        api_host="internal-api.example.test",
    )
    assert patch.route_path == "/t-100/products"
    assert patch.service_account == "t-100-service-account"
    assert patch.documents[PATH_PATCH_FILE][-1]["value"] == "/t-100/products"
    assert patch.documents[SVC_ACC_PATCH_FILE][-1]["value"] == "t-100-service-account"
    assert patch.documents[HOST_PATCH_FILE][-1]["value"] == "internal-api.example.test"
    kustomization = patch.documents[KUSTOMIZATION_FILE]
    assert kustomization["namespace"] == "t-100"
    assert kustomization["images"] == [
        {"name": "product-svc", "newName": "registry.test/product-svc", "newTag": "v42"}
    ]


def test_renders_never_leak_between_namespaces(tmp_path: Path) -> None:
    manifests = write_service_manifests(
        tmp_path, "product-svc/kubernetes", image_name="product-svc", url_prefix="products"
    )
    templates = PatchTemplates.load(manifests)
    before = {path.name: path.read_text(encoding="utf-8") for path in manifests.iterdir()}

    patches = [
        render_namespace_patch(
            templates, _registration(), f"t-{index}", image_repository="repo", image_tag="v1"
        )
        for index in range(25)
    ]
    for index, patch in enumerate(patches):
        assert patch.documents[PATH_PATCH_FILE][-1]["value"] == f"/t-{index}/products"
        assert patch.documents[KUSTOMIZATION_FILE]["namespace"] == f"t-{index}"
    assert "value" not in templates.path_patch[-1]
    assert "newTag" not in templates.kustomization["images"][0]
    after = {path.name: path.read_text(encoding="utf-8") for path in manifests.iterdir()}
    assert after == before


def test_host_patch_value_is_lowercased(tmp_path: Path) -> None:
    patcher = _patcher(tmp_path, RecordingKubernetesClient(), internal_api_domain="Internal-API.Example.TEST")
    patch = patcher.render(_registration(), "t-100")
    assert patch.documents[HOST_PATCH_FILE][-1]["value"] == "internal-api.example.test"


def test_shared_service_account_mode(tmp_path: Path) -> None:
    manifests = write_service_manifests(
        tmp_path, "product-svc/kubernetes", image_name="product-svc", url_prefix="products"
    )
    patch = render_namespace_patch(
        PatchTemplates.load(manifests),
        _registration(service_account_mode="shared"),
        "t-7",
        image_repository="repo",
        image_tag="v1",
        shared_service_account="shared-service-account",
    )
    assert patch.service_account == "shared-service-account"


def test_missing_template_is_a_configuration_error(tmp_path: Path) -> None:
    manifests = write_service_manifests(
        tmp_path, "product-svc/kubernetes", image_name="product-svc", url_prefix="products"
    )
    (manifests / "svc-acc-patch-template.yaml").unlink()
    with pytest.raises(JobConfigurationError):
        PatchTemplates.load(manifests)


@pytest.mark.asyncio
async def test_deploy_tenant_applies_to_tenant_namespace(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    patcher = _patcher(tmp_path, kube, default_image_tag="release-3")
    patch = await patcher.deploy_tenant(_registration(), "t-100")
    assert patch.route_path == "/t-100/products"
    [applied] = kube.applied
    assert applied.namespace == "t-100"
    assert applied.image_name == "product-svc"
    assert applied.document(PATH_PATCH_FILE)[-1]["value"] == "/t-100/products"
    assert applied.document(KUSTOMIZATION_FILE)["images"][0]["newTag"] == "release-3"
    # Static manifests travel with the rendered patches.
    assert "deployment.yaml" in applied.files


@pytest.mark.asyncio
async def test_global_deploy_patches_every_namespace_concurrently(tmp_path: Path) -> None:
    namespaces = [f"t-{index}" for index in range(12)]
    kube = RecordingKubernetesClient(namespaces=namespaces, apply_delay_s=0.01)
    patcher = _patcher(tmp_path, kube, patch_max_concurrency=6)
    report = await patcher.deploy_all(_registration(), "v9")

    assert report.ok
    assert report.applied == sorted(namespaces)
    assert kube.label_selectors == ["saas/tenant=true"]
    for namespace in namespaces:
        [applied] = kube.applied_to(namespace)
        assert applied.document(PATH_PATCH_FILE)[-1]["value"] == f"/{namespace}/products"
        assert applied.document(SVC_ACC_PATCH_FILE)[-1]["value"] == f"{namespace}-service-account"
        assert applied.document(KUSTOMIZATION_FILE)["images"][0]["newTag"] == "v9"


@pytest.mark.asyncio
async def test_global_deploy_without_namespaces_is_skipped(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient()
    report = await _patcher(tmp_path, kube).deploy_all(_registration(), "v1")
    assert report.ok
    assert report.skipped_empty
    assert kube.applied == []


@pytest.mark.asyncio
async def test_global_deploy_reports_failed_namespaces_after_trying_all(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient(namespaces=["t-1", "t-2", "t-3"], fail_namespaces={"t-2"})
    patcher = _patcher(tmp_path, kube)
    with pytest.raises(NamespaceApplyError) as exc_info:
        await patcher.deploy_all(_registration(), "v1")
    report = exc_info.value.report
    assert report.applied == ["t-1", "t-3"]
    assert list(report.failed) == ["t-2"]
    assert "t-2" in str(exc_info.value)


class _LabelledNamespaces(KubectlClient):
    # Namespace listing is faked; applies go through the real subprocess path.
    def __init__(self, namespaces: list[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self._namespaces = namespaces

    async def list_tenant_namespaces(self, label_selector: str) -> list[str]:
        return list(self._namespaces)


@pytest.mark.asyncio
async def test_missing_kubectl_binary_is_a_command_error() -> None:
    client = KubectlClient(binary="/nonexistent/kubectl", context="", kubeconfig="", timeout_s=5)
    with pytest.raises(KubernetesCommandError) as exc_info:
        await client.list_tenant_namespaces("saas/tenant=true")
    assert "could not start" in str(exc_info.value)


@pytest.mark.asyncio
async def test_global_deploy_reports_every_namespace_when_kubectl_cannot_start(tmp_path: Path) -> None:
    kube = _LabelledNamespaces(
        ["t-1", "t-2"], binary="/nonexistent/kubectl", context="", kubeconfig="", timeout_s=5
    )
    patcher = _patcher(tmp_path, kube)
    with pytest.raises(NamespaceApplyError) as exc_info:
        await patcher.deploy_all(_registration(), "v1")
    report = exc_info.value.report
    assert report.applied == []
    assert sorted(report.failed) == ["t-1", "t-2"]
    assert all("could not start" in error for error in report.failed.values())


@pytest.mark.asyncio
async def test_global_deploy_records_patch_write_errors_per_namespace(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    original_write_to = NamespacePatch.write_to

    def _write_to(self, directory: Path) -> None:
        if self.namespace == "t-2":
            raise OSError(28, "No space left on device")
        original_write_to(self, directory)

    monkeypatch.setattr(NamespacePatch, "write_to", _write_to)
    kube = RecordingKubernetesClient(namespaces=["t-1", "t-2", "t-3"])
    with pytest.raises(NamespaceApplyError) as exc_info:
        await _patcher(tmp_path, kube).deploy_all(_registration(), "v1")
    report = exc_info.value.report
    assert report.applied == ["t-1", "t-3"]
    assert "No space left on device" in report.failed["t-2"]


@pytest.mark.asyncio
async def test_concurrent_tenant_deploys_use_private_directories(tmp_path: Path) -> None:
    kube = RecordingKubernetesClient(apply_delay_s=0.01)
    patcher = _patcher(tmp_path, kube)
    await asyncio.gather(*(patcher.deploy_tenant(_registration(), f"t-{i}") for i in range(8)))
    for i in range(8):
        [applied] = kube.applied_to(f"t-{i}")
        assert applied.document(KUSTOMIZATION_FILE)["namespace"] == f"t-{i}"
