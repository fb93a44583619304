"""
Organization Service
Resolves users to their organization and evaluates role-based permissions
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import and_

from database.models import User, Organization, OrganizationMember
from api.services.auth_service import auth_service

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "administrator")
VALID_ROLES = ("owner", "administrator", "manager", "sales", "member")


@dataclass
class OrganizationContext:
    organization_id: str
    role: str
    permissions: List[str] = field(default_factory=list)
    user_id: Optional[str] = None


def get_user_organization(user_id: str, db: Session) -> Optional[OrganizationContext]:
    """First active membership wins"""
    member = db.query(OrganizationMember).filter(
        and_(
            OrganizationMember.user_id == user_id,
            OrganizationMember.status == "active"
        )
    ).order_by(OrganizationMember.created_at.asc()).first()

    if not member:
        return None

    return OrganizationContext(
        organization_id=member.organization_id,
        role=member.role,
        permissions=list(member.permissions or []),
        user_id=user_id
    )


def has_permission(ctx: OrganizationContext, permission: str) -> bool:
    if ctx.role in ADMIN_ROLES:
        return True
    return permission in (ctx.permissions or [])


def get_organization(organization_id: str, db: Session) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == organization_id).first()


def list_members(organization_id: str, db: Session) -> List[Tuple[OrganizationMember, User]]:
    return db.query(OrganizationMember, User).join(
        User, User.id == OrganizationMember.user_id
    ).filter(
        OrganizationMember.organization_id == organization_id
    ).order_by(OrganizationMember.created_at.asc()).all()


def add_member(organization_id: str, email: str, role: str, permissions: List[str],
               db: Session, full_name: str = None) -> Tuple[OrganizationMember, Optional[str]]:
    """
    Add a user to an organization, creating the user when the email is unknown.

    Returns the membership and, for newly created users, the temporary password
    that should be sent with the invitation.
    """
    if role not in VALID_ROLES or role == "owner":
        raise ValueError(f"Invalid role: {role}")

    temporary_password = None
    user = auth_service.get_user_by_email(email, db)
    if not user:
        temporary_password = auth_service.generate_temporary_password()
        user = auth_service.create_user(email, temporary_password, full_name or email, db)

    existing = db.query(OrganizationMember).filter(
        and_(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user.id
        )
    ).first()
    if existing:
        raise ValueError("User is already a member of this organization")

    member = OrganizationMember(
        organization_id=organization_id,
        user_id=user.id,
        role=role,
        permissions=permissions or []
    )
    db.add(member)
    db.commit()
    db.refresh(member)

    logger.info(f"✅ Added {email} to organization {organization_id} as {role}")
    return member, temporary_password
