from fastapi import APIRouter, Body, Depends, Request, Response

from ..auth.cookies import clear_refresh_token_cookie, set_refresh_token_cookie
from ..config import settings
from ..dependencies import client_ip, get_current_user, get_token_service, get_user_port
from ..domain.ports.user import UserData
from ..errors import NotFoundError
from ..schemas.auth import (
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    RefreshTokenRequest,
    TokenFamilyResponse,
    TokenResponse,
    UserResponse,
)
from ..use_cases.auth.login_user import login_user
from ..use_cases.auth.logout_user import logout_everywhere, logout_user
from ..use_cases.auth.refresh_session import refresh_session

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _presented_refresh_token(
    request: Request, payload: RefreshTokenRequest | None
) -> str | None:
    if payload is not None and payload.refresh_token:
        return payload.refresh_token
    return request.cookies.get(settings.refresh_cookie_name)


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    user_port=Depends(get_user_port),
    token_service=Depends(get_token_service),
) -> TokenResponse:
    session = await login_user(
        user_port,
        token_service,
        payload.email,
        payload.password,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    set_refresh_token_cookie(response, session.refresh_token)
    return TokenResponse(
        access_token=session.access_token, refresh_token=session.refresh_token
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    payload: RefreshTokenRequest | None = Body(default=None),
    user_port=Depends(get_user_port),
    token_service=Depends(get_token_service),
) -> TokenResponse:
    session = await refresh_session(
        user_port,
        token_service,
        _presented_refresh_token(request, payload),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    set_refresh_token_cookie(response, session.refresh_token)
    return TokenResponse(
        access_token=session.access_token, refresh_token=session.refresh_token
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    payload: LogoutRequest | None = Body(default=None),
    user: UserData = Depends(get_current_user),
    token_service=Depends(get_token_service),
) -> MessageResponse:
    await logout_user(
        token_service, _presented_refresh_token(request, payload), user_id=user.id
    )
    clear_refresh_token_cookie(response)
    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    response: Response,
    user: UserData = Depends(get_current_user),
    token_service=Depends(get_token_service),
) -> LogoutAllResponse:
    revoked = await logout_everywhere(token_service, user_id=user.id)
    clear_refresh_token_cookie(response)
    return LogoutAllResponse(message="All sessions revoked", revoked=revoked)


@router.get("/me", response_model=UserResponse)
async def me(user: UserData = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


@router.get("/sessions/{family_id}", response_model=TokenFamilyResponse)
async def session_family(
    family_id: str,
    user: UserData = Depends(get_current_user),
    token_service=Depends(get_token_service),
) -> TokenFamilyResponse:
    family = await token_service.get_family(family_id)
    if family is None or family.user_id != user.id:
        raise NotFoundError("Session not found")
    return TokenFamilyResponse.model_validate(family)
