from fastapi import Request, Response

from ..config import settings

NEW_ACCESS_TOKEN_HEADER = "X-New-Access-Token"


def set_refresh_token_cookie(response: Response, refresh_token: str) -> None:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=int(settings.refresh_token_ttl.total_seconds()),
        path=settings.refresh_cookie_path,
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


def clear_refresh_token_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


def remember_rotated_credentials(request: Request, access_token: str, refresh_token: str) -> None:
    """Keep a transparently rotated pair for whichever response ends up being sent."""
    request.state.rotated_access_token = access_token
    request.state.rotated_refresh_token = refresh_token


def apply_rotated_credentials(request: Request, response: Response) -> None:
    refresh_token = getattr(request.state, "rotated_refresh_token", None)
    if refresh_token is None:
        return
    set_refresh_token_cookie(response, refresh_token)
    response.headers[NEW_ACCESS_TOKEN_HEADER] = request.state.rotated_access_token
