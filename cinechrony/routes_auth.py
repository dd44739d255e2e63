import re
import time
from fastapi import APIRouter, Depends, HTTPException, Query, Response, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .models import User
from .auth import (
    hash_password, verify_password, set_auth_cookies, clear_auth_cookies,
    get_current_user, decode_token,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])

USERNAME_RE = re.compile(r"^[a-z0-9_]{3,30}$")
USERNAME_CACHE_TTL = 60
USERNAME_CACHE_MAX_ENTRIES = 5000
USERNAME_CACHE: dict[str, tuple[float, bool]] = {}


def _normalize_username(value: str) -> str:
    return str(value or "").strip().lstrip("@").lower()


def _serialize_user(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "username": user.username,
        "display_name": user.display_name,
        "push_enabled": bool(user.push_enabled),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


async def _username_taken(db: AsyncSession, username: str) -> bool:
    count = await db.scalar(
        select(func.count()).select_from(User).where(User.username == username)
    )
    return (count or 0) > 0


def _prune_username_cache(now: float) -> None:
    stale = [key for key, (stamp, _) in USERNAME_CACHE.items() if (now - stamp) >= USERNAME_CACHE_TTL]
    for key in stale:
        USERNAME_CACHE.pop(key, None)
    while len(USERNAME_CACHE) >= USERNAME_CACHE_MAX_ENTRIES:
        USERNAME_CACHE.pop(next(iter(USERNAME_CACHE)), None)


async def _username_available_cached(db: AsyncSession, username: str) -> bool:
    now = time.time()
    cached = USERNAME_CACHE.get(username)
    if cached and (now - cached[0]) < USERNAME_CACHE_TTL:
        return cached[1]
    _prune_username_cache(now)
    available = not await _username_taken(db, username)
    USERNAME_CACHE[username] = (now, available)
    return available


class SignupRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=31)
    password: str = Field(min_length=8, max_length=128)
    display_name: str | None = Field(default=None, max_length=80)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


@router.get("/username-available")
async def username_available(
    username: str = Query(..., min_length=1, max_length=40),
    db: AsyncSession = Depends(get_db),
):
    normalized = _normalize_username(username)
    if not USERNAME_RE.fullmatch(normalized):
        return {"username": normalized, "available": False, "valid": False}
    available = await _username_available_cached(db, normalized)
    return {"username": normalized, "available": available, "valid": True}


@router.post("/signup")
async def signup(body: SignupRequest, response: Response, db: AsyncSession = Depends(get_db)):
    email = body.email.lower()
    username = _normalize_username(body.username)
    if not USERNAME_RE.fullmatch(username):
        raise HTTPException(
            status_code=400,
            detail="Usernames are 3-30 characters: lowercase letters, numbers and underscores.",
        )
    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Email already registered")
    if await _username_taken(db, username):
        raise HTTPException(status_code=409, detail="Username is already taken")

    user = User(
        email=email,
        username=username,
        display_name=(body.display_name or "").strip() or None,
        password_hash=hash_password(body.password),
    )
    db.add(user)
    await db.commit()
    USERNAME_CACHE[username] = (time.time(), False)

    set_auth_cookies(response, user.id)
    return {"ok": True, **_serialize_user(user)}


@router.post("/login")
async def login(body: LoginRequest, response: Response, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == body.email.lower()))
    user = result.scalar_one_or_none()
    if not user or not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    set_auth_cookies(response, user.id)
    return {"ok": True, **_serialize_user(user)}


@router.post("/logout")
async def logout(response: Response):
    clear_auth_cookies(response)
    return {"ok": True}


@router.post("/refresh")
async def refresh(request: Request, response: Response, db: AsyncSession = Depends(get_db)):
    token = request.cookies.get("refresh_token")
    if not token:
        raise HTTPException(status_code=401, detail="No refresh token")
    user_id = decode_token(token, token_type="refresh")
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    set_auth_cookies(response, user.id)
    return {"ok": True}


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return _serialize_user(user)
