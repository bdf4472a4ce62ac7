from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.services.orchestrator import ApplicationPlane, build_application_plane


async def _retry(tenant_id: str, wait: bool, plane: ApplicationPlane | None = None) -> int:
    # Re-publish the request event for the phase the tenant is stuck in.
    owned = plane is None
    plane = plane or build_application_plane(get_settings())
    try:
        event_id = await plane.retry_lifecycle(tenant_id)
        if wait:
            await plane.drain()
        tenant = await plane.registry.get(tenant_id)
    finally:
        if owned:
            await plane.close()
    print(f"tenant_id={tenant_id}")
    print(f"event_id={event_id or ''}")
    print(f"status={tenant.status if tenant else 'unknown'}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry a failed or timed-out tenant lifecycle phase")
    parser.add_argument("--tenant-id", required=True)
    # Inline transport only: block until the retried phase and its follow-ups finish.
    parser.add_argument("--wait", action="store_true")
    args = parser.parse_args()
    configure_logging()
    try:
        code = asyncio.run(_retry(args.tenant_id, args.wait))
    except TenantPlaneError as exc:
        print(f"error={exc}", file=sys.stderr)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
