from fastapi import Header, HTTPException, status

from bookstore.services.container import Services, get_services


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    """
    Dependency to get the calling user's id.

    Authentication happens upstream; the gateway forwards the user id in the
    ``X-User-Id`` header.

    Raises:
        HTTPException: If the header is missing
    """
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    return user_id


async def get_app_services() -> Services:
    """Dependency to get the wired service instances."""
    services = get_services()
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not initialized"
        )
    return services
