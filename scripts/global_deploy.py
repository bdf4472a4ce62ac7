from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.errors import NamespaceApplyError, TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.services.catalog import ServiceCatalog
from tenantplane.services.kube import KubectlClient
from tenantplane.services.patcher import GlobalDeployReport, NamespacePatcher


def _print_report(report: GlobalDeployReport) -> None:
    print(f"service={report.service_name}")
    print(f"image_tag={report.image_tag}")
    print(f"applied={','.join(report.applied)}")
    for namespace, error in sorted(report.failed.items()):
        print(f"failed={namespace} error={error}")
    if report.skipped_empty:
        print("skipped_empty=true")


async def _run_global_deploy(service_name: str, image_tag: str | None) -> int:
    # Patch every tenant namespace; a failed namespace never stops the rest.
    settings = get_settings()
    registration = ServiceCatalog.from_settings(settings).get(service_name)
    patcher = NamespacePatcher(KubectlClient.from_settings(settings), settings=settings)
    try:
        report = await patcher.deploy_all(registration, image_tag)
    except NamespaceApplyError as exc:
        if exc.report is not None:
            _print_report(exc.report)
        print(f"error={exc}", file=sys.stderr)
        return 1
    _print_report(report)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Roll one application service out to every tenant namespace")
    parser.add_argument("--service", required=True)
    parser.add_argument("--image-tag", default=None)
    args = parser.parse_args()
    configure_logging()
    try:
        code = asyncio.run(_run_global_deploy(args.service, args.image_tag))
    except TenantPlaneError as exc:
        print(f"error={exc}", file=sys.stderr)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
