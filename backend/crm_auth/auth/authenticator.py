"""Per-request identity resolution.

A valid bearer access token is enough on its own and never touches the
refresh token store. Without one, the refresh cookie is rotated in place and
the caller receives the new pair alongside the identity.
"""
import logging
from dataclasses import dataclass

from ..domain.ports.user import UserData, UserPort
from ..errors import AuthError
from ..security.token_inspection import (
    ExpiredTokenError,
    InvalidTokenError,
    validate_access_token,
)
from ..services.token_service import RefreshTokenService
from ..use_cases.auth.refresh_session import refresh_session

logger = logging.getLogger("crm.auth")


@dataclass(frozen=True)
class AuthResult:
    user: UserData
    access_token: str
    refresh_token: str | None = None

    @property
    def rotated(self) -> bool:
        return self.refresh_token is not None


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class RequestAuthenticator:
    def __init__(self, user_port: UserPort, token_service: RefreshTokenService) -> None:
        self._users = user_port
        self._tokens = token_service

    async def authenticate(
        self,
        *,
        authorization: str | None,
        refresh_token: str | None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        access_token = extract_bearer_token(authorization)
        if access_token is not None:
            result = await self._from_access_token(access_token)
            if result is not None:
                return result

        session = await refresh_session(
            self._users,
            self._tokens,
            refresh_token,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        logger.debug("Transparent token refresh user_id=%s", session.user.id)
        return AuthResult(
            user=session.user,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
        )

    async def _from_access_token(self, token: str) -> AuthResult | None:
        try:
            user_id = validate_access_token(token)
        except ExpiredTokenError:
            return None
        except InvalidTokenError:
            logger.debug("Bearer token rejected, falling back to refresh cookie")
            return None

        user = await self._users.get_by_id(user_id)
        if user is None or not user.is_active:
            logger.info("Access token for missing or inactive user user_id=%s", user_id)
            raise AuthError()
        return AuthResult(user=user, access_token=token)
