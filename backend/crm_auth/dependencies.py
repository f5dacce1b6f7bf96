from collections.abc import AsyncGenerator

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from .auth.authenticator import RequestAuthenticator
from .auth.cookies import apply_rotated_credentials, remember_rotated_credentials
from .config import settings
from .crud.refresh_token import RefreshTokenRepository
from .crud.user import UserRepository
from .database import get_session
from .domain.ports.token import RefreshTokenStore
from .domain.ports.user import UserData, UserPort
from .services.token_service import RefreshTokenService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


def get_user_port(db: AsyncSession = Depends(get_db)) -> UserPort:
    return UserRepository(db)


def get_refresh_token_store(db: AsyncSession = Depends(get_db)) -> RefreshTokenStore:
    return RefreshTokenRepository(db)


def get_token_service(
    store: RefreshTokenStore = Depends(get_refresh_token_store),
) -> RefreshTokenService:
    return RefreshTokenService(store, refresh_ttl=settings.refresh_token_ttl)


def get_authenticator(
    user_port: UserPort = Depends(get_user_port),
    token_service: RefreshTokenService = Depends(get_token_service),
) -> RequestAuthenticator:
    return RequestAuthenticator(user_port, token_service)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def get_current_user(
    request: Request,
    response: Response,
    authenticator: RequestAuthenticator = Depends(get_authenticator),
) -> UserData:
    result = await authenticator.authenticate(
        authorization=request.headers.get("authorization"),
        refresh_token=request.cookies.get(settings.refresh_cookie_name),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.rotated:
        remember_rotated_credentials(request, result.access_token, result.refresh_token)
        apply_rotated_credentials(request, response)

    request.state.user = result.user
    request.state.access_token = result.access_token
    return result.user
