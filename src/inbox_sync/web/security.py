"""Bearer token protection for operational trigger endpoints."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

BEARER_PREFIX = "Bearer "


@dataclass(slots=True)
class BearerTokenGuard:
    """Validate the ``Authorization: Bearer`` header against a shared token.

    With no token configured every request is rejected, so trigger endpoints
    are never left open by accident.
    """

    token: str | None

    def validate(self, request: Request) -> None:
        """Raise 401/403 unless the request carries the configured token."""
        if not self.token:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Trigger endpoints are disabled; no token configured.",
            )
        header = request.headers.get("Authorization", "")
        if not header.startswith(BEARER_PREFIX):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        supplied = header[len(BEARER_PREFIX) :].strip()
        if not secrets.compare_digest(supplied.encode(), self.token.encode()):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid bearer token.",
                headers={"WWW-Authenticate": "Bearer"},
            )


__all__ = ["BearerTokenGuard"]
