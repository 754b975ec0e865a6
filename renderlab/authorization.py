"""
Bearer-token authorization for the operational queue endpoints.

``GET /admin/queue-status`` and ``POST /admin/queue-status`` expose queue
occupancy and can reset its metrics, so both require the static
administrator key configured as ``RENDERLAB_ADMIN_API_KEY``.

The presented token is compared with ``secrets.compare_digest`` so the
comparison time does not depend on how many leading characters match.
When no key is configured, every request is rejected: an unset secret
must never mean "open".
"""

import secrets
import typing

import fastapi
import fastapi.security
import structlog

import renderlab.exceptions

logger = structlog.get_logger()

administrator_bearer_scheme = fastapi.security.HTTPBearer(
    auto_error=False,
    description="Static administrator key configured as RENDERLAB_ADMIN_API_KEY.",
)


def is_administrator_token_valid(presented_token: str | None, configured_key: str) -> bool:
    """Return ``True`` only when a key is configured and the token matches it."""
    if not configured_key or not presented_token:
        return False
    return secrets.compare_digest(
        presented_token.encode("utf-8"),
        configured_key.encode("utf-8"),
    )


def require_administrator_token(
    request: fastapi.Request,
    credentials: typing.Annotated[
        fastapi.security.HTTPAuthorizationCredentials | None,
        fastapi.Depends(administrator_bearer_scheme),
    ],
) -> None:
    """
    Reject the request with ``UnauthorizedError`` unless it carries the
    configured administrator key as a bearer token.
    """
    configured_key: str = getattr(request.app.state, "admin_api_key", "")
    presented_token = credentials.credentials if credentials is not None else None

    if not is_administrator_token_valid(presented_token, configured_key):
        logger.warning(
            "admin_authorization_failed",
            path=request.url.path,
            token_present=presented_token is not None,
            key_configured=bool(configured_key),
        )
        raise renderlab.exceptions.UnauthorizedError()
