"""Auth API: login and current user."""

import hmac

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from app.config import get_settings
from app.services.auth import create_tenant_token, get_current_user, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str
    password: str
    tenant: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    tenant: str


class UserInfo(BaseModel):
    email: str
    role: str = "admin"
    tenant: str | None = None


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest):
    """Authenticate the configured admin and return a tenant-scoped JWT."""
    settings = get_settings()
    email_ok = hmac.compare_digest(data.email.lower().encode(), settings.admin_email.lower().encode())
    if settings.admin_password.startswith("$2"):
        # bcrypt hash configured
        password_ok = verify_password(data.password, settings.admin_password)
    else:
        password_ok = hmac.compare_digest(data.password.encode(), settings.admin_password.encode())
    if not (email_ok and password_ok):
        raise HTTPException(401, "Invalid credentials")

    tenant = data.tenant or settings.default_tenant_slug
    return TokenResponse(
        access_token=create_tenant_token(data.email, tenant),
        expires_in=settings.jwt_expire_minutes * 60,
        tenant=tenant,
    )


@router.get("/me", response_model=UserInfo)
async def get_me(user: dict = Depends(get_current_user)):
    """Get current authenticated user info."""
    return UserInfo(
        email=user.get("sub", ""),
        role=user.get("role", "user"),
        tenant=user.get("tenant"),
    )
