"""
FastAPI Dependencies - Gateway authentication and workspace context.

NO DICTIONARIES - All dependencies return typed objects.

Membership and session checks happen upstream. This service trusts the
(workspace, user) pair forwarded by the gateway once the shared API key
matches.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from structlog import get_logger

from metering.config import settings
from metering.models.domain import WorkspaceContext

logger = get_logger(__name__)


async def verify_gateway_key(
    x_api_key: str | None = Header(None, description="Gateway shared secret"),
) -> None:
    """
    FastAPI dependency validating the X-API-Key header.

    Open when no API_KEY is configured (local development).

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.api_key:
        return

    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("gateway_auth_failed", has_api_key=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_workspace_context(
    x_workspace_id: str = Header(..., min_length=1, max_length=64),
    x_user_id: str = Header(..., min_length=1, max_length=255),
    _: None = Depends(verify_gateway_key),
) -> WorkspaceContext:
    """FastAPI dependency returning the authenticated (workspace, user) pair."""
    return WorkspaceContext(workspace_id=x_workspace_id, user_id=x_user_id)


async def require_workspace_access(
    workspace_id: str,
    context: WorkspaceContext = Depends(get_workspace_context),
) -> WorkspaceContext:
    """
    FastAPI dependency for /v1/workspaces/{workspace_id}/... routes.

    Raises:
        HTTPException 403 if the path workspace is not the caller's workspace
    """
    if workspace_id != context.workspace_id:
        logger.warning(
            "workspace_access_denied",
            path_workspace_id=workspace_id,
            header_workspace_id=context.workspace_id,
            user_id=context.user_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Workspace mismatch",
        )
    return context
