from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
import tempfile
from types import MappingProxyType
from typing import Any

import yaml

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import JobConfigurationError, KubernetesCommandError, NamespaceApplyError
from tenantplane.services.catalog import ServiceRegistration
from tenantplane.services.kube import KubernetesClient
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

KUSTOMIZATION_FILE = "kustomization.yaml"
PATH_PATCH_TEMPLATE = "path-patch-template.yaml"
SVC_ACC_PATCH_TEMPLATE = "svc-acc-patch-template.yaml"
HOST_PATCH_FILE = "host-patch.yaml"
PATH_PATCH_FILE = "path-patch.yaml"
SVC_ACC_PATCH_FILE = "svc-acc-patch.yaml"

_TEMPLATE_FILES = {KUSTOMIZATION_FILE, PATH_PATCH_TEMPLATE, SVC_ACC_PATCH_TEMPLATE, HOST_PATCH_FILE}
# Rendered per namespace; never read from the shared template directory.
_RENDERED_FILES = {PATH_PATCH_FILE, SVC_ACC_PATCH_FILE}


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    # Always builds fresh containers, so rendered output never aliases the template.
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


def _read_yaml(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise JobConfigurationError(f"Missing manifest template {path}") from exc
    except yaml.YAMLError as exc:
        raise JobConfigurationError(f"Invalid YAML in {path}: {exc}") from exc


@dataclass(frozen=True)
class PatchTemplates:
    """Read-only manifest templates shared by every namespace render."""

    source_dir: Path
    kustomization: Mapping[str, Any]
    path_patch: Any
    service_account_patch: Any
    host_patch: Any | None
    static_files: Mapping[str, str]

    @classmethod
    def load(cls, manifest_dir: str | Path) -> "PatchTemplates":
        source = Path(manifest_dir)
        if not source.is_dir():
            raise JobConfigurationError(f"Manifest directory not found: {source}")
        kustomization = _read_yaml(source / KUSTOMIZATION_FILE)
        if not isinstance(kustomization, Mapping):
            raise JobConfigurationError(f"{source / KUSTOMIZATION_FILE} must be a mapping")
        host_path = source / HOST_PATCH_FILE
        static_files = {
            path.name: path.read_text(encoding="utf-8")
            for path in sorted(source.iterdir())
            if path.is_file() and path.name not in _TEMPLATE_FILES | _RENDERED_FILES
        }
        return cls(
            source_dir=source,
            kustomization=_freeze(kustomization),
            path_patch=_freeze(_read_yaml(source / PATH_PATCH_TEMPLATE)),
            service_account_patch=_freeze(_read_yaml(source / SVC_ACC_PATCH_TEMPLATE)),
            host_patch=_freeze(_read_yaml(host_path)) if host_path.exists() else None,
            static_files=MappingProxyType(static_files),
        )


@dataclass
class NamespacePatch:
    namespace: str
    route_path: str
    service_account: str
    documents: dict[str, Any]
    static_files: Mapping[str, str] = field(default_factory=dict)

    def write_to(self, directory: Path) -> None:
        for name, content in self.static_files.items():
            (directory / name).write_text(content, encoding="utf-8")
        for name, document in self.documents.items():
            with (directory / name).open("w", encoding="utf-8") as handle:
                yaml.safe_dump(document, handle, sort_keys=False)


def _set_patch_value(patch: Any, value: str, *, template: str) -> Any:
    # JSON6902 patch templates leave the value of their last operation open.
    if isinstance(patch, list) and patch and isinstance(patch[-1], dict):
        patch[-1]["value"] = value
        return patch
    if isinstance(patch, dict):
        patch["value"] = value
        return patch
    raise JobConfigurationError(f"{template} has no patch operation to fill")


def render_namespace_patch(
    templates: PatchTemplates,
    registration: ServiceRegistration,
    namespace: str,
    *,
    image_repository: str,
    image_tag: str,
    api_host: str = "",
    shared_service_account: str | None = None,
) -> NamespacePatch:
    route_path = f"/{namespace}/{registration.url_prefix}"
    if registration.service_account_mode == "shared":
        if not shared_service_account:
            raise JobConfigurationError(
                f"Service {registration.service_name} uses a shared service account but none is configured"
            )
        service_account = shared_service_account
    else:
        service_account = f"{namespace}-service-account"

    kustomization = _thaw(templates.kustomization)
    kustomization["namespace"] = namespace
    images = kustomization.get("images") or []
    kustomization["images"] = images
    image_entry = next(
        (item for item in images if item.get("name") == registration.image_name),
        None,
    )
    if image_entry is None:
        image_entry = {"name": registration.image_name}
        images.append(image_entry)
    image_entry["newName"] = image_repository
    image_entry["newTag"] = image_tag

    documents: dict[str, Any] = {
        KUSTOMIZATION_FILE: kustomization,
        PATH_PATCH_FILE: _set_patch_value(
            _thaw(templates.path_patch), route_path, template=PATH_PATCH_TEMPLATE
        ),
        SVC_ACC_PATCH_FILE: _set_patch_value(
            _thaw(templates.service_account_patch), service_account, template=SVC_ACC_PATCH_TEMPLATE
        ),
    }
    if templates.host_patch is not None:
        documents[HOST_PATCH_FILE] = _set_patch_value(
            _thaw(templates.host_patch), api_host.lower(), template=HOST_PATCH_FILE
        )
    return NamespacePatch(
        namespace=namespace,
        route_path=route_path,
        service_account=service_account,
        documents=documents,
        static_files=dict(templates.static_files),
    )


@dataclass
class GlobalDeployReport:
    service_name: str
    image_tag: str
    applied: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped_empty: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "image_tag": self.image_tag,
            "applied": list(self.applied),
            "failed": dict(self.failed),
            "skipped_empty": self.skipped_empty,
        }


class NamespacePatcher:
    """Applies one service's manifests into tenant namespaces.

    Each namespace gets its own rendered copy in a private temporary directory,
    so concurrent applies never see each other's files and the shared templates
    are never written.
    """

    def __init__(
        self,
        kube: KubernetesClient,
        *,
        settings: Settings | None = None,
        manifest_root: str | Path | None = None,
    ) -> None:
        self._kube = kube
        self._settings = settings or get_settings()
        self._manifest_root = Path(manifest_root or self._settings.service_manifest_root)
        self._templates: dict[str, PatchTemplates] = {}

    def templates_for(self, registration: ServiceRegistration) -> PatchTemplates:
        templates = self._templates.get(registration.service_name)
        if templates is None:
            templates = PatchTemplates.load(self._manifest_root / registration.manifest_dir)
            self._templates[registration.service_name] = templates
        return templates

    def render(
        self, registration: ServiceRegistration, namespace: str, *, image_tag: str | None = None
    ) -> NamespacePatch:
        settings = self._settings
        return render_namespace_patch(
            self.templates_for(registration),
            registration,
            namespace,
            image_repository=registration.resolved_image_repository(settings.image_registry),
            image_tag=image_tag or settings.default_image_tag,
            api_host=settings.internal_api_domain,
            shared_service_account=settings.shared_service_account_name,
        )

    async def _apply(self, registration: ServiceRegistration, patch: NamespacePatch) -> None:
        try:
            with tempfile.TemporaryDirectory(
                prefix=f"tenantplane-{registration.service_name}-{patch.namespace}-"
            ) as workdir:
                work_path = Path(workdir)
                patch.write_to(work_path)
                await self._kube.apply_kustomization(work_path, patch.namespace)
        except (KubernetesCommandError, OSError) as exc:
            raise NamespaceApplyError(
                f"Applying {registration.service_name} to {patch.namespace} failed: {exc}"
            ) from exc

    async def deploy_tenant(
        self, registration: ServiceRegistration, tenant_id: str, *, image_tag: str | None = None
    ) -> NamespacePatch:
        # Single-tenant mode: the tenant id is the namespace.
        patch = self.render(registration, tenant_id, image_tag=image_tag)
        await self._apply(registration, patch)
        increment_counter(f"namespace_applied_total.{registration.service_name}")
        logger.info(
            "namespace_patched service=%s namespace=%s path=%s",
            registration.service_name,
            tenant_id,
            patch.route_path,
        )
        return patch

    async def deploy_all(
        self, registration: ServiceRegistration, image_tag: str | None = None
    ) -> GlobalDeployReport:
        tag = image_tag or self._settings.default_image_tag
        report = GlobalDeployReport(service_name=registration.service_name, image_tag=tag)
        try:
            namespaces = await self._kube.list_tenant_namespaces(self._settings.tenant_namespace_label)
        except KubernetesCommandError as exc:
            raise NamespaceApplyError(
                f"Listing tenant namespaces failed: {exc}", report=report
            ) from exc
        if not namespaces:
            report.skipped_empty = True
            logger.info("global_deploy_no_namespaces service=%s", registration.service_name)
            return report

        semaphore = asyncio.Semaphore(max(1, self._settings.patch_max_concurrency))

        async def _apply_one(namespace: str) -> None:
            async with semaphore:
                try:
                    patch = self.render(registration, namespace, image_tag=tag)
                    await self._apply(registration, patch)
                except (NamespaceApplyError, JobConfigurationError) as exc:
                    # One namespace failing never stops the rest.
                    report.failed[namespace] = str(exc)
                    increment_counter(f"namespace_failed_total.{registration.service_name}")
                    logger.error(
                        "namespace_patch_failed service=%s namespace=%s error=%s",
                        registration.service_name,
                        namespace,
                        exc,
                    )
                    return
                report.applied.append(namespace)
                increment_counter(f"namespace_applied_total.{registration.service_name}")

        await asyncio.gather(*(_apply_one(namespace) for namespace in namespaces))
        report.applied.sort()
        logger.info(
            "global_deploy_finished service=%s applied=%s failed=%s",
            registration.service_name,
            len(report.applied),
            len(report.failed),
        )
        if report.failed:
            raise NamespaceApplyError(
                f"{registration.service_name} failed in {len(report.failed)} namespace(s): "
                f"{', '.join(sorted(report.failed))}",
                report=report,
            )
        return report
