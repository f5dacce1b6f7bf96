import logging

from ...application.auth_rate_limit import (
    ensure_not_limited,
    rate_limit_key,
    record_failure,
    reset_limit,
)
from ...domain.ports.user import UserPort
from ...domain.tokens import SessionTokens
from ...errors import AuthError
from ...services.token_service import RefreshTokenService
from ...utils.security import create_access_token, create_refresh_token, verify_password

logger = logging.getLogger("crm.auth")


async def login_user(
    user_port: UserPort,
    token_service: RefreshTokenService,
    email: str,
    password: str,
    *,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> SessionTokens:
    """Check credentials and open a new refresh token family."""
    normalized_email = email.strip().lower()
    key = ensure_not_limited(rate_limit_key("login", client_ip, normalized_email))

    user = await user_port.get_by_email(normalized_email)
    if (
        user is None
        or not user.is_active
        or not verify_password(password, user.password_hash)
    ):
        record_failure(key)
        logger.info("Login rejected client_ip=%s", client_ip or "unknown-ip")
        raise AuthError("Invalid credentials")

    reset_limit(key)
    issued = await token_service.issue(user.id, ip=client_ip, user_agent=user_agent)
    return SessionTokens(
        user=user,
        access_token=create_access_token(user.id),
        refresh_token=create_refresh_token(user.id, issued.secret, issued.record.expires_at),
        refresh_expires_at=issued.record.expires_at,
    )
