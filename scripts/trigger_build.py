from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.domain.events import build_event, deploy_request_type
from tenantplane.services.events.transport import InlineTransport
from tenantplane.services.orchestrator import ApplicationPlane, build_application_plane


async def _run_deploy(service_name: str, tenant_id: str, plane: ApplicationPlane | None = None) -> int:
    # Run one service deploy for one tenant in this process and report its outcome.
    owned = plane is None
    plane = plane or build_application_plane(get_settings(), transport=InlineTransport())
    try:
        runner = plane.deploy_runners.get(service_name)
        if runner is None:
            print(f"unknown_service={service_name}", file=sys.stderr)
            return 2
        outcome = await runner.handle(build_event(deploy_request_type(service_name), tenant_id))
    finally:
        if owned:
            await plane.close()
    print(f"job={outcome.job_name}")
    print(f"tenant_id={outcome.tenant_id}")
    print(f"status={outcome.status}")
    if outcome.error:
        print(f"error={outcome.error}")
    return 0 if outcome.status in {"succeeded", "noop"} else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Deploy one application service into one tenant namespace")
    parser.add_argument("--service", required=True, help="Registered service name, e.g. ProductService")
    parser.add_argument("--tenant-id", required=True, help="Tenant id; also the target namespace")
    args = parser.parse_args()
    configure_logging()
    try:
        code = asyncio.run(_run_deploy(args.service, args.tenant_id))
    except TenantPlaneError as exc:
        print(f"error={exc}", file=sys.stderr)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
