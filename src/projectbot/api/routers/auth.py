from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ...domain.errors import InvalidCredentials
from ...domain.models import AuthSession, LoginRequest, LoginResponse, RegisterRequest, UserOut
from ...security.auth import (
    CookieConfig,
    SessionStore,
    get_current_session,
    get_session_store,
    session_credential,
)
from ...security.rate_limit import LoginThrottle, RateLimitExceeded, get_login_throttle

router = APIRouter(tags=["auth"])


def _set_session_cookie(response: Response, token: str, max_age: int) -> None:
    cfg = CookieConfig.from_env()
    response.set_cookie(
        cfg.name,
        token,
        max_age=max_age,
        httponly=True,
        secure=cfg.secure,
        samesite=cfg.samesite,
        path="/",
    )


def _login_response(session: AuthSession, token: str, expires_in: int) -> LoginResponse:
    return LoginResponse(**session.to_user().model_dump(), token=token, expires_in=expires_in)


@router.post("/login", response_model=LoginResponse)
def login(
    req: LoginRequest,
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    throttle: LoginThrottle = Depends(get_login_throttle),
) -> LoginResponse:
    identifier = _rate_limit_identifier(request, req.username)
    try:
        throttle.check(identifier)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc

    try:
        session, token = store.login(req.username, req.password)
    except InvalidCredentials:
        throttle.record_failure(identifier)
        raise
    throttle.clear(identifier)
    _set_session_cookie(response, token, store.expires_in)
    return _login_response(session, token, store.expires_in)


@router.post("/register", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
def register(
    req: RegisterRequest,
    response: Response,
    store: SessionStore = Depends(get_session_store),
) -> LoginResponse:
    session, token = store.register(req.username, req.password, req.display_name, initial=req.initial)
    _set_session_cookie(response, token, store.expires_in)
    return _login_response(session, token, store.expires_in)


@router.post("/logout")
def logout(
    response: Response,
    credential: Optional[str] = Depends(session_credential),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    store.logout(credential)
    response.delete_cookie(CookieConfig.from_env().name, path="/")
    return {"success": True}


@router.get("/user", response_model=UserOut)
def current_user(session: AuthSession = Depends(get_current_session)) -> UserOut:
    return session.to_user()


def _rate_limit_identifier(request: Request, username: str) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{host}:{username.lower()}"
