"""Bearer-token authentication that yields an explicit workspace scope."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from calcast.config import get_settings
from calcast.models.workspace import WorkspaceScope

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


def create_access_token(
    workspace_id: str,
    actor_id: str,
    authorized: bool = True,
    expires_delta: timedelta | None = None,
) -> str:
    settings = get_settings()
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    payload: dict[str, Any] = {
        "sub": str(actor_id),
        "ws": str(workspace_id),
        "authorized": authorized,
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_scope(token: str) -> WorkspaceScope:
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise credentials_exc from exc
    actor_id = payload.get("sub")
    workspace_id = payload.get("ws")
    if not actor_id or not workspace_id:
        raise credentials_exc
    return WorkspaceScope(
        workspace_id=workspace_id,
        actor_id=actor_id,
        authorized=bool(payload.get("authorized", False)),
    )


async def get_workspace_scope(token: str | None = Depends(oauth2_scheme)) -> WorkspaceScope:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_scope(token)
