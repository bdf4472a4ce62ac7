from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.persistence.db import get_session
from tenantplane.services.orchestrator import ApplicationPlane


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_plane(request: Request) -> ApplicationPlane:
    # Built once in the app lifespan; every route shares the sealed router.
    return request.app.state.plane
