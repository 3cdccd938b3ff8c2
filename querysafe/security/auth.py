"""Request identity resolution."""

from uuid import UUID

from fastapi import HTTPException, Request, status

from querysafe.config import Environment, settings

# Default user for development
DEFAULT_USER_ID = UUID("00000000-0000-0000-0000-000000000002")


async def get_current_user_id(request: Request) -> str:
    """Get the caller's user ID from the ``X-User-ID`` header.

    Authentication itself happens upstream; this service trusts the gateway
    to set the header.

    Raises:
        HTTPException: If the header is malformed, or missing outside development

    """
    user_id_header = request.headers.get("x-user-id")

    if user_id_header:
        try:
            return str(UUID(user_id_header))
        except (ValueError, TypeError) as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid user ID format",
            ) from e

    if settings.ENVIRONMENT in (Environment.DEVELOPMENT, Environment.TESTING):
        return str(DEFAULT_USER_ID)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="User ID is required. Please provide X-User-ID header",
    )
