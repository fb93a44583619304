"""
Authentication Routes
Handles registration, login, token refresh and the auth dependencies shared by every router
"""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database.simple_connection import get_db
from database.models import User
from api.services.auth_service import auth_service
from api.services.organization_service import (
    OrganizationContext, get_user_organization, get_organization, has_permission
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
security = HTTPBearer()


# Pydantic models for request/response
class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    full_name: str
    organization_name: str

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: dict


# Dependency to get current user
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user"""
    try:
        payload = auth_service.verify_token(credentials.credentials)

        if not payload or payload.get("type") != "access":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token"
            )

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token payload"
            )

        user = db.query(User).filter(User.id == user_id).first()
        if not user or not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found or inactive"
            )

        return user

    except Exception as e:
        logger.error(f"Authentication error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed"
        )

async def get_current_organization(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> OrganizationContext:
    """Resolve the caller's organization membership"""
    ctx = get_user_organization(current_user.id, db)
    if not ctx:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User does not belong to an organization"
        )
    return ctx

def require_permission(permission: str):
    """Dependency factory: 403 unless the caller's role grants `permission`"""
    async def checker(ctx: OrganizationContext = Depends(get_current_organization)) -> OrganizationContext:
        if not has_permission(ctx, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}"
            )
        return ctx
    return checker

def get_client_ip(request: Request) -> str:
    """Get client IP address"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"

def _user_payload(user: User, ctx: Optional[OrganizationContext]) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "full_name": user.full_name,
        "organization_id": ctx.organization_id if ctx else None,
        "role": ctx.role if ctx else None
    }

def _issue_tokens(user: User, ctx: Optional[OrganizationContext]) -> AuthResponse:
    organization_id = ctx.organization_id if ctx else None
    return AuthResponse(
        access_token=auth_service.create_access_token(
            user_id=str(user.id),
            organization_id=organization_id,
            additional_claims={"email": user.email, "role": ctx.role if ctx else None}
        ),
        refresh_token=auth_service.create_refresh_token(str(user.id), organization_id),
        token_type="bearer",
        expires_in=auth_service.access_token_expire_minutes * 60,
        user=_user_payload(user, ctx)
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    register_data: RegisterRequest,
    db: Session = Depends(get_db)
):
    """Create a user with their own organization on a trial"""
    try:
        try:
            user, organization = auth_service.register_user(
                email=register_data.email,
                password=register_data.password,
                full_name=register_data.full_name,
                organization_name=register_data.organization_name,
                db=db
            )
        except ValueError as e:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        auth_service.log_security_event(
            organization_id=organization.id,
            user_id=user.id,
            action="register",
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            details={"email": user.email, "organization": organization.name},
            db=db
        )

        return _issue_tokens(user, get_user_organization(user.id, db))

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Registration error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

@router.post("/login", response_model=AuthResponse)
async def login(
    request: Request,
    login_data: LoginRequest,
    db: Session = Depends(get_db)
):
    """Email/password authentication"""
    try:
        client_ip = get_client_ip(request)
        user_agent = request.headers.get("user-agent", "")

        user, auth_message = auth_service.authenticate_user(login_data.email, login_data.password, db)

        if not user:
            auth_service.log_security_event(
                organization_id=None,
                user_id=None,
                action="login_failed",
                ip_address=client_ip,
                user_agent=user_agent,
                details={"email": login_data.email, "reason": auth_message},
                db=db
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=auth_message
            )

        auth_service.reset_login_attempts(user, db)
        ctx = get_user_organization(user.id, db)

        auth_service.log_security_event(
            organization_id=ctx.organization_id if ctx else None,
            user_id=user.id,
            action="login_success",
            ip_address=client_ip,
            user_agent=user_agent,
            details={"email": user.email},
            db=db
        )

        return _issue_tokens(user, ctx)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Login error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

@router.post("/refresh")
async def refresh_token(refresh_data: RefreshTokenRequest, db: Session = Depends(get_db)):
    """Exchange a refresh token for a new access token"""
    payload = auth_service.verify_token(refresh_data.refresh_token)
    if not payload or payload.get("type") != "refresh":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token"
        )

    user = db.query(User).filter(User.id == payload.get("sub")).first()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    ctx = get_user_organization(user.id, db)
    access_token = auth_service.create_access_token(
        user_id=str(user.id),
        organization_id=ctx.organization_id if ctx else None,
        additional_claims={"email": user.email, "role": ctx.role if ctx else None}
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": auth_service.access_token_expire_minutes * 60
    }

@router.get("/me")
async def get_current_user_info(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get current user information"""
    ctx = get_user_organization(current_user.id, db)
    organization = get_organization(ctx.organization_id, db) if ctx else None
    return {
        "user": _user_payload(current_user, ctx),
        "organization": {
            "id": organization.id,
            "name": organization.name,
            "slug": organization.slug,
            "subscription_status": organization.subscription_status,
            "permissions": ctx.permissions
        } if organization else None
    }
