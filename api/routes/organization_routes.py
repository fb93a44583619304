"""
Organization Routes
Organization profile and team membership management
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr
from sqlalchemy import and_
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
import logging

from database.simple_connection import get_db
from database.models import OrganizationMember
from api.routes.auth_routes import get_current_organization, require_permission
from api.services.organization_service import (
    OrganizationContext, get_organization, list_members, add_member, VALID_ROLES
)
from api.services.subscription_service import organization_is_active
from api.services.email_service import email_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/organization", tags=["Organization"])


class OrganizationUpdate(BaseModel):
    name: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

class MemberInvite(BaseModel):
    email: EmailStr
    role: str = "member"
    permissions: List[str] = []
    full_name: Optional[str] = None

class MemberUpdate(BaseModel):
    role: Optional[str] = None
    permissions: Optional[List[str]] = None


@router.get("/")
async def get_organization_details(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    organization = get_organization(ctx.organization_id, db)
    if not organization:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    return {
        "id": organization.id,
        "name": organization.name,
        "slug": organization.slug,
        "settings": organization.settings or {},
        "role": ctx.role,
        "permissions": ctx.permissions,
        "subscription": {
            "status": organization.subscription_status,
            "trial_ends_at": organization.trial_ends_at.isoformat() if organization.trial_ends_at else None,
            "is_active": organization_is_active(organization)
        }
    }

@router.put("/")
async def update_organization(
    update: OrganizationUpdate,
    ctx: OrganizationContext = Depends(require_permission("manage_organization")),
    db: Session = Depends(get_db)
):
    organization = get_organization(ctx.organization_id, db)
    if not organization:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    if update.name:
        organization.name = update.name
    if update.settings is not None:
        organization.settings = {**(organization.settings or {}), **update.settings}
    db.commit()
    db.refresh(organization)

    logger.info(f"🏢 Organization {organization.id} updated")
    return {"id": organization.id, "name": organization.name, "settings": organization.settings}

@router.get("/members")
async def get_members(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return {
        "members": [
            {
                "id": member.id,
                "user_id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "role": member.role,
                "permissions": member.permissions or [],
                "status": member.status,
                "last_login": user.last_login.isoformat() if user.last_login else None
            }
            for member, user in list_members(ctx.organization_id, db)
        ]
    }

@router.post("/members", status_code=status.HTTP_201_CREATED)
async def invite_member(
    invite: MemberInvite,
    ctx: OrganizationContext = Depends(require_permission("manage_team")),
    db: Session = Depends(get_db)
):
    try:
        try:
            member, temporary_password = add_member(
                ctx.organization_id, invite.email, invite.role, invite.permissions, db,
                full_name=invite.full_name
            )
        except ValueError as e:
            db.rollback()
            code = status.HTTP_409_CONFLICT if "already" in str(e) else status.HTTP_400_BAD_REQUEST
            raise HTTPException(status_code=code, detail=str(e))

        organization = get_organization(ctx.organization_id, db)
        email_sent = await email_service.send_team_invitation(
            to_email=invite.email,
            organization_name=organization.name,
            role=invite.role,
            temporary_password=temporary_password
        )

        return {
            "id": member.id,
            "user_id": member.user_id,
            "email": invite.email,
            "role": member.role,
            "permissions": member.permissions,
            "invitation_sent": email_sent
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error inviting member: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

@router.put("/members/{member_id}")
async def update_member(
    member_id: str,
    update: MemberUpdate,
    ctx: OrganizationContext = Depends(require_permission("manage_team")),
    db: Session = Depends(get_db)
):
    member = db.query(OrganizationMember).filter(
        and_(OrganizationMember.id == member_id, OrganizationMember.organization_id == ctx.organization_id)
    ).first()
    if not member:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")

    if update.role is not None:
        if member.role == "owner":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The owner's role cannot be changed")
        if update.role not in VALID_ROLES or update.role == "owner":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid role: {update.role}")
        member.role = update.role
    if update.permissions is not None:
        member.permissions = update.permissions

    db.commit()
    db.refresh(member)
    return {"id": member.id, "role": member.role, "permissions": member.permissions}
