from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import KubernetesCommandError


logger = logging.getLogger(__name__)


class KubernetesClient(Protocol):
    async def list_tenant_namespaces(self, label_selector: str) -> list[str]: ...

    async def apply_kustomization(self, directory: Path, namespace: str) -> None: ...


class KubectlClient:
    """Shells out to kubectl; every invocation is bounded by a hard timeout."""

    def __init__(
        self,
        *,
        binary: str | None = None,
        context: str | None = None,
        kubeconfig: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._binary = binary or settings.kubectl_binary
        self._context = context if context is not None else settings.kube_context
        self._kubeconfig = kubeconfig if kubeconfig is not None else settings.kubeconfig_path
        self._timeout_s = timeout_s or settings.kubectl_timeout_s

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "KubectlClient":
        settings = settings or get_settings()
        return cls(
            binary=settings.kubectl_binary,
            context=settings.kube_context,
            kubeconfig=settings.kubeconfig_path,
            timeout_s=settings.kubectl_timeout_s,
        )

    def _base_args(self) -> list[str]:
        args = [self._binary]
        if self._context:
            args.extend(["--context", self._context])
        return args

    async def _run(self, *args: str) -> str:
        env = dict(os.environ)
        if self._kubeconfig:
            env["KUBECONFIG"] = self._kubeconfig
        command = [*self._base_args(), *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # Missing or non-executable binary.
            raise KubernetesCommandError(f"kubectl {' '.join(args)} could not start: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise KubernetesCommandError(
                f"kubectl {' '.join(args)} timed out after {self._timeout_s}s"
            ) from exc
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise KubernetesCommandError(
                f"kubectl {' '.join(args)} exited with {proc.returncode}: {stderr_text}",
                returncode=proc.returncode,
                stderr=stderr_text,
            )
        return stdout.decode("utf-8", errors="replace")

    async def list_tenant_namespaces(self, label_selector: str) -> list[str]:
        output = await self._run(
            "get",
            "ns",
            "-l",
            label_selector,
            "-o",
            "jsonpath={.items[*].metadata.name}",
        )
        return output.split()

    async def apply_kustomization(self, directory: Path, namespace: str) -> None:
        output = await self._run("apply", "-k", str(directory), "-n", namespace)
        logger.debug("kubectl_applied namespace=%s output=%s", namespace, output.strip())
