"""FastAPI dependencies for request context and shared services.

This module provides reusable FastAPI dependencies for:
- Caller identity (already authenticated upstream, passed as X-User-Id)
- Admin authorization (bearer admin secret)
- Access to the UnitOfWork factory and workers held in app.state
"""

import hmac
from typing import Annotated, Callable
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from aistudio.core.config import Settings
from aistudio.uow import UnitOfWork
from aistudio.workers.dispatch_queue import DispatchQueue
from aistudio.workers.dispatcher import Dispatcher
from aistudio.workers.reaper import Reaper


def get_settings(request: Request) -> Settings:
    """Get the settings instance the application was started with.

    Returns:
        Settings stored in app.state, or a fresh instance loaded from env vars.
    """
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars
    return settings


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> UUID:
    """Resolve the authenticated caller.

    Authentication happens in front of this service; the gateway forwards the
    user id in the X-User-Id header.

    Raises:
        HTTPException: 401 if the header is missing or not a UUID
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_admin(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Allow the request only with "Authorization: Bearer <ADMIN_SECRET>".

    Raises:
        HTTPException: 401 if the secret is unset, missing or wrong
    """
    expected = settings.admin_secret
    scheme, _, token = (authorization or "").partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_dispatch_queue(request: Request) -> DispatchQueue:
    return request.app.state.dispatch_queue


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_reaper(request: Request) -> Reaper:
    return request.app.state.reaper
