"""FastAPI dependency injection for the relay service.

Usage in route handlers::

    @router.get("/things")
    async def list_things(service: Service) -> list[ThingResponse]:
        ...

Raises HTTP 503 while the service is not (or no longer) running.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from threadrelay.bridge.service import RelayService


def get_service(request: Request) -> RelayService:
    """Return the process-wide ``RelayService`` built during lifespan."""
    service: RelayService | None = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay service not running.",
        )
    return service


# -- Annotated type aliases for concise route signatures ---------------------

Service = Annotated[RelayService, Depends(get_service)]
"""Annotated dependency: the shared relay service."""
