"""Resolves the bearer token of a request into a `RequestContext` by asking
the user service who it belongs to."""
import logging
from uuid import UUID

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from checkout.config import settings
from checkout.errors import AuthenticationRequired, UserServiceUnavailable
from checkout.orchestrator import RequestContext

logger = logging.getLogger("checkout.auth")

security = HTTPBearer(auto_error=False)


async def resolve_user(token: str, base_url: str, transport: httpx.AsyncBaseTransport | None = None) -> RequestContext:
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=5, transport=transport) as client:
            resp = await client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    except httpx.HTTPError as e:
        logger.error("User service request failed: %s", e)
        raise UserServiceUnavailable(f"User service is unavailable: {e}")

    if resp.status_code == 200:
        return RequestContext(requestor_id=UUID(str(resp.json()["id"])), is_authenticated=True)
    if resp.status_code in (401, 403):
        raise AuthenticationRequired("Invalid or expired token")

    logger.error("User service answered %s: %s", resp.status_code, resp.text)
    raise UserServiceUnavailable(f"Failed to validate user token ({resp.status_code})")


async def get_request_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> RequestContext:
    if credentials is None:
        raise AuthenticationRequired("Missing bearer token")
    return await resolve_user(credentials.credentials, settings.AUTH_SERVICE_URL)
