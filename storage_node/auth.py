"""Request authentication for the storage node."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from storage_node.exceptions import InvalidNodeKeyError


async def require_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_node_key: Optional[str] = Header(None)
) -> str:
    """
    FastAPI dependency validating the caller's credentials.

    Args:
        authorization: Authorization header value (format: "Bearer <token>")
        x_node_key: Node API key, checked when the node has one configured

    Returns:
        The bearer token

    Raises:
        HTTPException: 401 if the bearer token is missing or malformed
        InvalidNodeKeyError: If the node key does not match
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header"
        )

    token = authorization[len("Bearer "):].strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Empty bearer token"
        )

    api_key = request.app.state.settings.api_key
    if api_key and not hmac.compare_digest(x_node_key or '', api_key):
        raise InvalidNodeKeyError("Invalid node key")

    return token
