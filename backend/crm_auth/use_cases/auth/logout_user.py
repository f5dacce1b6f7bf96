import logging

from ...security.token_inspection import (
    ExpiredTokenError,
    InvalidTokenError,
    validate_refresh_token,
)
from ...services.token_service import RefreshTokenService

logger = logging.getLogger("crm.auth")


async def logout_user(
    token_service: RefreshTokenService,
    refresh_token: str | None,
    *,
    user_id: str,
) -> bool:
    """Revoke the presented refresh token if it belongs to ``user_id``.

    An unreadable or foreign token is already useless to the caller, so it is
    ignored rather than reported.
    """
    if not refresh_token:
        return False
    try:
        claims = validate_refresh_token(refresh_token)
    except (ExpiredTokenError, InvalidTokenError):
        logger.info("Logout with unusable refresh token user_id=%s", user_id)
        return False
    if claims.user_id != user_id:
        logger.warning(
            "Logout with refresh token of another user user_id=%s token_user_id=%s",
            user_id,
            claims.user_id,
        )
        return False
    return await token_service.revoke_secret(claims.secret, user_id)


async def logout_everywhere(token_service: RefreshTokenService, *, user_id: str) -> int:
    return await token_service.revoke_all_for_user(user_id)
