# auth.py — Dual-token authentication for Kanban Tracker
# Features:
# - bcrypt password hashing off the event loop
# - Access and refresh JWTs signed with distinct secrets and lifetimes
# - Refresh rotation: only bcrypt(sha256(refresh token)) is stored
# - Constant-work login (unknown emails compare against a dummy hash)
# - Cookie-first access guard, cookie-only refresh guard

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional, Tuple

import bcrypt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db_session
from errors import ConflictError, UnauthorizedError
from models import User

logger = logging.getLogger("kanban-tracker.auth")

# ============================================================
# CONFIGURATION
# ============================================================

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
# Refresh cookie is only ever sent to the refresh endpoint
REFRESH_COOKIE_PATH = "/api/v1/auth/refresh"

ACCESS = "access"
REFRESH = "refresh"

PASSWORD_SPECIALS = "@$!%*?&"
BCRYPT_MAX_BYTES = 72

bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_-]+$")
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    password: str = Field(..., min_length=8)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"Password must not exceed {BCRYPT_MAX_BYTES} bytes")
        if not (
            any(c.islower() for c in v)
            and any(c.isupper() for c in v)
            and any(c.isdigit() for c in v)
            and any(c in PASSWORD_SPECIALS for c in v)
        ):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, "
                "one number, and one special character"
            )
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()


class PublicAccount(BaseModel):
    """Account view without password or refresh-token hashes"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    message: str


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    email: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class SessionResult:
    account: PublicAccount
    tokens: TokenPair


# ============================================================
# PASSWORD HASHER
# ============================================================

class PasswordHasher:
    """bcrypt with a fixed cost; hashing runs in a worker thread"""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash_blocking(self, secret: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")

    def verify_blocking(self, secret: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Over-long input or a malformed stored hash never matches
            return False

    async def hash(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash_blocking, secret)

    async def verify(self, secret: str, hashed: str) -> bool:
        return await asyncio.to_thread(self.verify_blocking, secret, hashed)


def digest_refresh_token(token: str) -> str:
    """SHA-256 hex digest; keeps the whole token inside bcrypt's 72-byte window"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ============================================================
# TOKEN ISSUER
# ============================================================

class TokenIssuer:
    """Signs and verifies access/refresh JWTs with separate secrets"""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        algorithm: str = "HS256",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.algorithm = algorithm
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            algorithm=settings.jwt_algorithm,
        )

    def sign(self, payload: TokenPayload, kind: str) -> str:
        now = self._clock()
        claims = {
            "sub": payload.sub,
            "email": payload.email,
            "iat": now,
            "exp": now + self._ttls[kind],
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(claims, self._secrets[kind], algorithm=self.algorithm)

    async def issue_pair(self, payload: TokenPayload) -> TokenPair:
        access_token, refresh_token = await asyncio.gather(
            asyncio.to_thread(self.sign, payload, ACCESS),
            asyncio.to_thread(self.sign, payload, REFRESH),
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def verify(self, token: str, kind: str) -> TokenPayload:
        """Decode and check signature and expiry; raises JWTError on any failure"""
        claims = jwt.decode(token, self._secrets[kind], algorithms=[self.algorithm])
        sub = claims.get("sub")
        email = claims.get("email")
        if not sub or not email:
            raise JWTError("Token payload incomplete")
        return TokenPayload(sub=sub, email=email)


# ============================================================
# SESSION MANAGER
# ============================================================

class SessionManager:
    """Register, login, rotate and revoke sessions"""

    def __init__(self, hasher: PasswordHasher, refresh_hasher: PasswordHasher, issuer: TokenIssuer):
        self.hasher = hasher
        self.refresh_hasher = refresh_hasher
        self.issuer = issuer
        # Same cost as real password hashes so unknown emails take as long
        self._dummy_hash = hasher.hash_blocking(secrets.token_urlsafe(24))

    async def _mint(self, user: User) -> Tuple[TokenPair, str]:
        tokens = await self.issuer.issue_pair(TokenPayload(sub=user.id, email=user.email))
        refresh_hash = await self.refresh_hasher.hash(digest_refresh_token(tokens.refresh_token))
        return tokens, refresh_hash

    async def _issue_and_store(self, user: User) -> TokenPair:
        tokens, user.refresh_token_hash = await self._mint(user)
        return tokens

    async def register(self, db: AsyncSession, data: RegisterRequest) -> SessionResult:
        taken = await db.execute(select(User.id).where(User.email == data.email))
        if taken.scalar_one_or_none():
            raise ConflictError("Email is already registered")
        taken = await db.execute(select(User.id).where(User.username == data.username))
        if taken.scalar_one_or_none():
            raise ConflictError("Username is already taken")

        user = User(
            email=data.email,
            username=data.username,
            first_name=data.first_name,
            last_name=data.last_name,
            password_hash=await self.hasher.hash(data.password),
            is_active=True,
        )
        db.add(user)
        try:
            await db.flush()
            tokens = await self._issue_and_store(user)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Email or username is already in use")

        await db.refresh(user)
        logger.info(f"Account registered: {user.id}")
        return SessionResult(account=PublicAccount.model_validate(user), tokens=tokens)

    async def login(self, db: AsyncSession, data: LoginRequest) -> SessionResult:
        result = await db.execute(select(User).where(User.email == data.email))
        user = result.scalar_one_or_none()

        # Always pay for one bcrypt comparison
        candidate = user.password_hash if user else self._dummy_hash
        valid = await self.hasher.verify(data.password, candidate)

        if user is None or not valid:
            logger.warning("Login failed: invalid credentials")
            raise UnauthorizedError("Invalid credentials")
        if not user.is_active:
            logger.warning(f"Login refused for deactivated account {user.id}")
            raise UnauthorizedError("Account deactivated")

        tokens = await self._issue_and_store(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Login succeeded: {user.id}")
        return SessionResult(account=PublicAccount.model_validate(user), tokens=tokens)

    async def refresh(self, db: AsyncSession, user: User) -> TokenPair:
        """Rotate: swap the hash the guard matched for a new one, or fail.

        Only one of several requests presenting the same refresh token can
        win the compare-and-set; the others get "Access denied".
        """
        matched_hash = user.refresh_token_hash
        tokens, new_hash = await self._mint(user)
        result = await db.execute(
            update(User)
            .where(User.id == user.id, User.refresh_token_hash == matched_hash)
            .values(refresh_token_hash=new_hash)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"Concurrent refresh lost the rotation race for {user.id}")
            raise UnauthorizedError("Access denied")
        await db.commit()
        logger.info(f"Session refreshed: {user.id}")
        return tokens

    async def logout(self, db: AsyncSession, account_id: str) -> None:
        await db.execute(
            update(User)
            .where(User.id == account_id, User.refresh_token_hash.is_not(None))
            .values(refresh_token_hash=None)
        )
        await db.commit()
        logger.info(f"Logged out: {account_id}")


# ============================================================
# GUARDS
# ============================================================

class AccessGuard:
    """Validates an access token and re-reads the account it names"""

    def __init__(self, issuer: TokenIssuer):
        self.issuer = issuer

    async def authenticate(self, db: AsyncSession, token: Optional[str]) -> PublicAccount:
        if not token:
            raise UnauthorizedError("Authentication required")
        try:
            payload = self.issuer.verify(token, ACCESS)
        except JWTError:
            raise UnauthorizedError("Invalid or expired token")

        result = await db.execute(select(User).where(User.id == payload.sub))
        user = result.scalar_one_or_none()
        if not user or not user.is_active:
            raise UnauthorizedError("Invalid or expired token")
        return PublicAccount.model_validate(user)


class RefreshGuard:
    """Accepts only the refresh token whose digest matches the stored hash"""

    def __init__(self, issuer: TokenIssuer, refresh_hasher: PasswordHasher):
        self.issuer = issuer
        self.refresh_hasher = refresh_hasher

    async def authenticate(self, db: AsyncSession, token: Optional[str]) -> User:
        if not token:
            raise UnauthorizedError("Access denied")
        try:
            payload = self.issuer.verify(token, REFRESH)
        except JWTError:
            raise UnauthorizedError("Access denied")

        result = await db.execute(select(User).where(User.id == payload.sub))
        user = result.scalar_one_or_none()
        if not user or not user.is_active or not user.refresh_token_hash:
            raise UnauthorizedError("Access denied")

        matches = await self.refresh_hasher.verify(
            digest_refresh_token(token), user.refresh_token_hash
        )
        if not matches:
            logger.warning(f"Stale refresh token presented for {user.id}")
            raise UnauthorizedError("Access denied")
        return user


# ============================================================
# SERVICE PROVIDERS (overridable via app.dependency_overrides)
# ============================================================

@lru_cache
def get_password_hasher() -> PasswordHasher:
    return PasswordHasher(rounds=get_settings().bcrypt_rounds)


@lru_cache
def get_refresh_hasher() -> PasswordHasher:
    return PasswordHasher(rounds=get_settings().refresh_token_bcrypt_rounds)


@lru_cache
def get_token_issuer() -> TokenIssuer:
    return TokenIssuer.from_settings(get_settings())


@lru_cache
def get_session_manager() -> SessionManager:
    return SessionManager(get_password_hasher(), get_refresh_hasher(), get_token_issuer())


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_account(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> PublicAccount:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token and credentials:
        token = credentials.credentials
    return await AccessGuard(issuer).authenticate(db, token)


async def get_refresh_account(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    issuer: TokenIssuer = Depends(get_token_issuer),
    refresh_hasher: PasswordHasher = Depends(get_refresh_hasher),
) -> User:
    token = request.cookies.get(REFRESH_COOKIE)
    return await RefreshGuard(issuer, refresh_hasher).authenticate(db, token)
