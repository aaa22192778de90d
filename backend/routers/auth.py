# routers/auth.py — Authentication endpoints with cookie-borne rotating tokens
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    ACCESS_COOKIE, REFRESH_COOKIE, REFRESH_COOKIE_PATH,
    LoginRequest, MessageResponse, PublicAccount, RegisterRequest, SessionManager, TokenPair,
    get_current_account, get_refresh_account, get_session_manager,
)
from config import Settings, get_settings
from database import get_db_session
from models import User

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _set_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    """Both tokens travel as HttpOnly cookies; the refresh cookie is path-scoped"""
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=tokens.access_token,
        max_age=int(settings.access_token_ttl.total_seconds()),
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=tokens.refresh_token,
        max_age=int(settings.refresh_token_ttl.total_seconds()),
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        ACCESS_COOKIE, path="/", httponly=True, secure=settings.is_production, samesite="lax",
    )
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, httponly=True,
        secure=settings.is_production, samesite="lax",
    )


@router.post("/register", response_model=PublicAccount, status_code=201)
async def register(
    data: RegisterRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Create an account and start a session"""
    result = await sessions.register(db, data)
    _set_auth_cookies(response, result.tokens, settings)
    return result.account


@router.post("/login", response_model=PublicAccount)
async def login(
    data: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Authenticate with email and password"""
    result = await sessions.login(db, data)
    _set_auth_cookies(response, result.tokens, settings)
    return result.account


@router.post("/refresh", response_model=MessageResponse)
async def refresh(
    response: Response,
    user: User = Depends(get_refresh_account),
    db: AsyncSession = Depends(get_db_session),
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Exchange the refresh cookie for a new token pair; the old refresh token dies"""
    tokens = await sessions.refresh(db, user)
    _set_auth_cookies(response, tokens, settings)
    return MessageResponse(message="Token refreshed successfully")


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    account: PublicAccount = Depends(get_current_account),
    db: AsyncSession = Depends(get_db_session),
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Revoke the stored refresh token and expire both cookies"""
    await sessions.logout(db, account.id)
    _clear_auth_cookies(response, settings)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=PublicAccount)
async def me(account: PublicAccount = Depends(get_current_account)):
    """Current authenticated account"""
    return account
