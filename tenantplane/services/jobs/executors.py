from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
import inspect
import logging
import os
from pathlib import Path
import tempfile
from typing import TYPE_CHECKING, Any, Protocol

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import JobConfigurationError, JobFailedError
from tenantplane.domain.events import deploy_request_type
from tenantplane.services.jobs.descriptor import JobDescriptor

if TYPE_CHECKING:
    from tenantplane.services.catalog import ServiceRegistration
    from tenantplane.services.patcher import NamespacePatcher


logger = logging.getLogger(__name__)

OUTPUT_FILE_ENV = "TENANTPLANE_OUTPUT_FILE"
_STDERR_TAIL_CHARS = 2000
# Variables inherited from the worker environment; everything else comes from the event.
_INHERITED_ENV = ("PATH", "HOME", "LANG", "AWS_REGION", "AWS_DEFAULT_REGION", "AWS_PROFILE")


@dataclass(frozen=True)
class ClusterCredential:
    cluster_name: str
    kube_context: str | None = None
    kubeconfig_path: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ClusterCredential":
        settings = settings or get_settings()
        return cls(
            cluster_name=settings.eks_cluster_name,
            kube_context=settings.kube_context,
            kubeconfig_path=settings.kubeconfig_path,
        )

    def as_env(self) -> dict[str, str]:
        env = {"CLUSTER_NAME": self.cluster_name}
        if self.kube_context:
            env["KUBE_CONTEXT"] = self.kube_context
        if self.kubeconfig_path:
            env["KUBECONFIG"] = self.kubeconfig_path
        return env


@dataclass(frozen=True)
class JobContext:
    # Everything a job sees: event-derived variables, a cluster credential and an image.
    job_name: str
    tenant_id: str
    attempt: int
    variables: Mapping[str, str]
    output_fields: tuple[str, ...]
    credential: ClusterCredential
    image: str
    extra: Mapping[str, str] = field(default_factory=dict)


class JobExecutor(Protocol):
    def validate(self, descriptor: JobDescriptor) -> None: ...

    async def execute(self, context: JobContext) -> Mapping[str, Any]: ...


class CallableJobExecutor:
    """Runs an in-process callable as the job body."""

    def __init__(self, func: Callable[[JobContext], Mapping[str, Any] | Awaitable[Mapping[str, Any]]]) -> None:
        self._func = func

    def validate(self, descriptor: JobDescriptor) -> None:
        if not callable(self._func):
            raise JobConfigurationError(f"Job {descriptor.name}: executor is not callable")

    async def execute(self, context: JobContext) -> Mapping[str, Any]:
        result = self._func(context)
        if inspect.isawaitable(result):
            result = await result
        return result or {}


def _compose_script(body: str, post_script: str, output_fields: tuple[str, ...]) -> str:
    # The EXIT trap exports declared outputs even when the body calls exit itself.
    names = " ".join(output_fields)
    header = (
        "_tenantplane_emit_outputs() {\n"
        f'  : > "${OUTPUT_FILE_ENV}"\n'
        f"  for _tp_name in {names}; do\n"
        '    if [[ -v "$_tp_name" ]]; then\n'
        f"      printf '%s=%s\\0' \"$_tp_name\" \"${{!_tp_name}}\" >> \"${OUTPUT_FILE_ENV}\"\n"
        "    fi\n"
        "  done\n"
        "}\n"
        "trap _tenantplane_emit_outputs EXIT\n"
    )
    return f"{header}\n{body}\n{post_script}\n"


def parse_output_file(raw: bytes) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for entry in raw.split(b"\0"):
        if not entry:
            continue
        name, _, value = entry.decode("utf-8", errors="replace").partition("=")
        outputs[name] = value
    return outputs


class ScriptJobExecutor:
    """Runs a bash script with event fields exported as environment variables."""

    def __init__(
        self,
        script_path: str | Path,
        *,
        post_script: str = "",
        shell: str | None = None,
    ) -> None:
        self._script_path = Path(script_path)
        self._post_script = post_script
        self._shell = shell or get_settings().job_shell

    def validate(self, descriptor: JobDescriptor) -> None:
        if not self._script_path.is_file():
            raise JobConfigurationError(
                f"Job {descriptor.name}: script not found at {self._script_path}"
            )

    def _environment(self, context: JobContext, output_path: Path) -> dict[str, str]:
        env = {key: os.environ[key] for key in _INHERITED_ENV if key in os.environ}
        env.update(context.credential.as_env())
        env["JOB_IMAGE"] = context.image
        env.update(context.extra)
        env.update(context.variables)
        env[OUTPUT_FILE_ENV] = str(output_path)
        return env

    async def execute(self, context: JobContext) -> Mapping[str, Any]:
        body = self._script_path.read_text(encoding="utf-8")
        with tempfile.TemporaryDirectory(prefix=f"tenantplane-{context.job_name}-") as workdir:
            work_path = Path(workdir)
            script_file = work_path / "job.sh"
            output_path = work_path / "outputs"
            script_file.write_text(
                _compose_script(body, self._post_script, context.output_fields), encoding="utf-8"
            )
            proc = await asyncio.create_subprocess_exec(
                self._shell,
                str(script_file),
                cwd=str(work_path),
                env=self._environment(context, output_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await proc.communicate()
            except asyncio.CancelledError:
                # Hard timeout reached upstream; do not leave the script running.
                proc.kill()
                await proc.wait()
                raise
            stderr_text = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:]
            logger.debug(
                "job_script_output job=%s tenant_id=%s stdout=%s",
                context.job_name,
                context.tenant_id,
                stdout.decode("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:],
            )
            if proc.returncode != 0:
                raise JobFailedError(
                    f"Job {context.job_name} exited with {proc.returncode}: {stderr_text.strip()}"
                )
            raw = output_path.read_bytes() if output_path.exists() else b""
        return parse_output_file(raw)


class ServiceDeployExecutor:
    """Patches one service into the namespace of the event's tenant."""

    def __init__(
        self,
        patcher: "NamespacePatcher",
        registration: "ServiceRegistration",
        *,
        image_tag: str | None = None,
    ) -> None:
        self._patcher = patcher
        self._registration = registration
        self._image_tag = image_tag

    def validate(self, descriptor: JobDescriptor) -> None:
        expected = deploy_request_type(self._registration.service_name)
        if descriptor.incoming != expected:
            raise JobConfigurationError(
                f"Job {descriptor.name}: deploy executor for {self._registration.service_name} "
                f"must consume {expected}"
            )
        # Surface missing or malformed manifests at startup.
        self._patcher.templates_for(self._registration)

    async def execute(self, context: JobContext) -> Mapping[str, Any]:
        patch = await self._patcher.deploy_tenant(
            self._registration, context.tenant_id, image_tag=self._image_tag
        )
        return {"routePath": patch.route_path, "serviceAccount": patch.service_account}
