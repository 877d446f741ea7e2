from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings


@dataclass(frozen=True)
class Identity:
    user_id: str
    org_id: str


class IdentityMiddleware(BaseHTTPMiddleware):
    """Read the upstream-authenticated user and organization from request headers."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request.state.identity = self._extract_identity(request)
        return await call_next(request)

    def _extract_identity(self, request: Request) -> Optional[Identity]:
        user_id = (request.headers.get(settings.user_header) or "").strip()
        org_id = (request.headers.get(settings.org_header) or "").strip()
        if not user_id or not org_id:
            return None
        return Identity(user_id=user_id, org_id=org_id)


def current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {settings.user_header} or {settings.org_header} header",
        )
    return identity
