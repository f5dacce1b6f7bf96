import logging

from ...application.auth_rate_limit import (
    ensure_not_limited,
    rate_limit_key,
    record_failure,
    reset_limit,
)
from ...domain.ports.user import UserPort
from ...domain.tokens import InvalidToken, ReuseDetected, SessionTokens
from ...errors import (
    AuthenticationRequiredError,
    InvalidRefreshTokenError,
    TokenReuseDetectedError,
)
from ...security.token_inspection import (
    ExpiredTokenError,
    InvalidTokenError,
    validate_refresh_token,
)
from ...services.token_service import RefreshTokenService
from ...utils.security import create_access_token, create_refresh_token

logger = logging.getLogger("crm.auth")


def _record_envelope_failure(client_ip: str | None) -> None:
    key = ensure_not_limited(rate_limit_key("refresh", client_ip))
    record_failure(key)


async def refresh_session(
    user_port: UserPort,
    token_service: RefreshTokenService,
    refresh_token: str | None,
    *,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> SessionTokens:
    """Exchange a refresh envelope for a new access/refresh pair.

    The envelope signature is checked before the store is touched. A replayed
    token raises ``TokenReuseDetectedError`` after its family was revoked.
    """
    if not refresh_token:
        raise AuthenticationRequiredError()

    try:
        claims = validate_refresh_token(refresh_token)
    except ExpiredTokenError:
        _record_envelope_failure(client_ip)
        raise InvalidRefreshTokenError() from None
    except InvalidTokenError:
        _record_envelope_failure(client_ip)
        logger.info("Refresh envelope rejected client_ip=%s", client_ip or "unknown-ip")
        raise InvalidRefreshTokenError() from None

    # signed envelopes count against their user, unsigned ones against the address
    key = ensure_not_limited(rate_limit_key("refresh", client_ip, claims.user_id))
    result = await token_service.rotate(
        claims.secret, claims.user_id, ip=client_ip, user_agent=user_agent
    )
    if isinstance(result, ReuseDetected):
        record_failure(key)
        raise TokenReuseDetectedError()
    if isinstance(result, InvalidToken):
        record_failure(key)
        logger.info(
            "Refresh token rejected user_id=%s reason=%s", claims.user_id, result.reason.value
        )
        raise InvalidRefreshTokenError()

    user = await user_port.get_by_id(claims.user_id)
    if user is None or not user.is_active:
        await token_service.revoke_family(result.record.family_id)
        logger.warning("Refresh token for missing or inactive user user_id=%s", claims.user_id)
        raise InvalidRefreshTokenError()

    reset_limit(key)
    return SessionTokens(
        user=user,
        access_token=create_access_token(user.id),
        refresh_token=create_refresh_token(user.id, result.secret, result.record.expires_at),
        refresh_expires_at=result.record.expires_at,
    )
