from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tenantplane.core.errors import JobFailedError, KubernetesCommandError
from tenantplane.domain.events import LifecycleEvent
from tenantplane.services.events.transport import InlineTransport
from tenantplane.services.jobs.executors import CallableJobExecutor, JobContext


@dataclass
class AppliedPatch:
    namespace: str
    image_name: str | None
    files: dict[str, str]

    def document(self, name: str) -> Any:
        return yaml.safe_load(self.files[name])


@dataclass
class RecordingKubernetesClient:
    """In-memory stand-in for kubectl that keeps a copy of every applied directory."""

    namespaces: list[str] = field(default_factory=list)
    fail_namespaces: set[str] = field(default_factory=set)
    fail_images: set[str] = field(default_factory=set)
    applied: list[AppliedPatch] = field(default_factory=list)
    label_selectors: list[str] = field(default_factory=list)
    apply_delay_s: float = 0.0

    async def list_tenant_namespaces(self, label_selector: str) -> list[str]:
        self.label_selectors.append(label_selector)
        return list(self.namespaces)

    async def apply_kustomization(self, directory: Path, namespace: str) -> None:
        # Snapshot before yielding; the patcher deletes the directory afterwards.
        files = {path.name: path.read_text(encoding="utf-8") for path in directory.iterdir()}
        kustomization = yaml.safe_load(files["kustomization.yaml"])
        images = kustomization.get("images") or []
        image_name = images[-1]["name"] if images else None
        if self.apply_delay_s:
            await asyncio.sleep(self.apply_delay_s)
        if namespace in self.fail_namespaces or image_name in self.fail_images:
            raise KubernetesCommandError(
                f"kubectl apply -k {directory} -n {namespace} exited with 1: "
                "admission webhook denied the request",
                returncode=1,
                stderr="admission webhook denied the request",
            )
        self.applied.append(AppliedPatch(namespace=namespace, image_name=image_name, files=files))

    def applied_to(self, namespace: str) -> list[AppliedPatch]:
        return [patch for patch in self.applied if patch.namespace == namespace]


def write_service_manifests(root: Path, manifest_dir: str, *, image_name: str, url_prefix: str) -> Path:
    # Same layout as services/application-services/<service>/kubernetes.
    target = root / manifest_dir
    target.mkdir(parents=True, exist_ok=True)
    (target / "kustomization.yaml").write_text(
        yaml.safe_dump(
            {
                "apiVersion": "kustomize.config.k8s.io/v1beta1",
                "kind": "Kustomization",
                "resources": ["deployment.yaml"],
                "patches": [
                    {"path": "path-patch.yaml"},
                    {"path": "svc-acc-patch.yaml"},
                    {"path": "host-patch.yaml"},
                ],
                "images": [{"name": image_name}],
            },
            sort_keys=False,
        ),
        encoding="utf-8",
    )
    (target / "path-patch-template.yaml").write_text(
        "- op: replace\n  path: /spec/rules/0/http/paths/0/path\n", encoding="utf-8"
    )
    (target / "svc-acc-patch-template.yaml").write_text(
        "- op: replace\n  path: /spec/template/spec/serviceAccountName\n", encoding="utf-8"
    )
    (target / "host-patch.yaml").write_text(
        "- op: replace\n  path: /spec/template/spec/containers/0/env/0/value\n", encoding="utf-8"
    )
    (target / "deployment.yaml").write_text(
        f"apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: {url_prefix}\n", encoding="utf-8"
    )
    return target


def provisioning_executor(
    *, tenant_config: str = '{"plan": "basic"}', calls: list[JobContext] | None = None
) -> CallableJobExecutor:
    async def _run(context: JobContext) -> dict[str, str]:
        if calls is not None:
            calls.append(context)
        return {"tenantConfig": tenant_config, "tenantStatus": "Complete"}

    return CallableJobExecutor(_run)


def deprovisioning_executor(*, calls: list[JobContext] | None = None) -> CallableJobExecutor:
    async def _run(context: JobContext) -> dict[str, str]:
        if calls is not None:
            calls.append(context)
        return {"tenantStatus": "Deleted"}

    return CallableJobExecutor(_run)


def failing_executor(message: str = "provisioning script exited with 1") -> CallableJobExecutor:
    async def _run(context: JobContext) -> dict[str, str]:
        raise JobFailedError(message)

    return CallableJobExecutor(_run)


def hanging_executor(*, seconds: float = 30.0) -> CallableJobExecutor:
    async def _run(context: JobContext) -> dict[str, str]:
        await asyncio.sleep(seconds)
        return {}

    return CallableJobExecutor(_run)


class SwitchableExecutor:
    """Delegates to whichever executor is current; lets a test fix a job between attempts."""

    def __init__(self, current: CallableJobExecutor) -> None:
        self.current = current

    def validate(self, descriptor) -> None:
        self.current.validate(descriptor)

    async def execute(self, context: JobContext):
        return await self.current.execute(context)


class FlakyTransport(InlineTransport):
    """Inline transport whose first send of each listed detail type fails like a dropped Redis link."""

    def __init__(self, fail_once: set[str]) -> None:
        super().__init__()
        self._fail_once = set(fail_once)

    async def send(self, event: LifecycleEvent) -> None:
        if event.detail_type in self._fail_once:
            self._fail_once.discard(event.detail_type)
            raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
        await super().send(event)
