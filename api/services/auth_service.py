"""
Authentication Service
Handles user registration, password hashing, JWT tokens, lockout and audit logging
"""

import re
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple
from passlib.context import CryptContext
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from sqlalchemy import and_

from config import AppConfig
from database.models import User, Organization, OrganizationMember, AuditLog

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "organization"


class AuthService:
    def __init__(self):
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
        self.jwt_secret = AppConfig.JWT_SECRET_KEY
        self.jwt_algorithm = AppConfig.JWT_ALGORITHM
        self.access_token_expire_minutes = AppConfig.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        self.refresh_token_expire_days = AppConfig.JWT_REFRESH_TOKEN_EXPIRE_DAYS
        self.max_login_attempts = AppConfig.ACCOUNT_LOCKOUT_THRESHOLD
        self.lockout_duration_minutes = AppConfig.ACCOUNT_LOCKOUT_DURATION_MINUTES

    def hash_password(self, password: str) -> str:
        """Hash a password"""
        return self.pwd_context.hash(password[:72])

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash"""
        # Truncate password to 72 characters for bcrypt compatibility
        if len(plain_password) > 72:
            plain_password = plain_password[:72]
        return self.pwd_context.verify(plain_password, hashed_password)

    def generate_temporary_password(self) -> str:
        return secrets.token_urlsafe(12)

    def create_access_token(self, user_id: str, organization_id: Optional[str],
                            additional_claims: Dict[str, Any] = None) -> str:
        """Create a JWT access token"""
        expire = datetime.utcnow() + timedelta(minutes=self.access_token_expire_minutes)

        to_encode = {
            "sub": str(user_id),
            "organization_id": str(organization_id) if organization_id else None,
            "exp": expire,
            "iat": datetime.utcnow(),
            "type": "access"
        }

        if additional_claims:
            to_encode.update(additional_claims)

        return jwt.encode(to_encode, self.jwt_secret, algorithm=self.jwt_algorithm)

    def create_refresh_token(self, user_id: str, organization_id: Optional[str]) -> str:
        """Create a JWT refresh token"""
        expire = datetime.utcnow() + timedelta(days=self.refresh_token_expire_days)

        to_encode = {
            "sub": str(user_id),
            "organization_id": str(organization_id) if organization_id else None,
            "exp": expire,
            "iat": datetime.utcnow(),
            "type": "refresh"
        }

        return jwt.encode(to_encode, self.jwt_secret, algorithm=self.jwt_algorithm)

    def create_state_token(self, organization_id: str, user_id: str) -> str:
        """Short-lived signed state for the GHL OAuth round trip"""
        to_encode = {
            "sub": str(user_id),
            "organization_id": str(organization_id),
            "exp": datetime.utcnow() + timedelta(minutes=15),
            "type": "oauth_state",
            "nonce": secrets.token_hex(8)
        }
        return jwt.encode(to_encode, self.jwt_secret, algorithm=self.jwt_algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode a JWT token"""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
            return payload
        except JWTError:
            return None

    def get_user_by_email(self, email: str, db: Session) -> Optional[User]:
        return db.query(User).filter(
            and_(
                User.email == email.lower().strip(),
                User.is_active == True
            )
        ).first()

    def is_user_locked(self, user: User) -> bool:
        """Check if user account is locked"""
        if user.locked_until and user.locked_until > datetime.utcnow():
            return True
        return False

    def increment_login_attempts(self, user: User, db: Session) -> None:
        """Increment login attempts and lock account if threshold reached"""
        user.login_attempts = (user.login_attempts or 0) + 1

        if user.login_attempts >= self.max_login_attempts:
            user.locked_until = datetime.utcnow() + timedelta(minutes=self.lockout_duration_minutes)
            logger.warning(f"🔒 Account locked after {user.login_attempts} failed attempts: {user.email}")

        db.commit()

    def reset_login_attempts(self, user: User, db: Session) -> None:
        """Reset login attempts on successful login"""
        user.login_attempts = 0
        user.locked_until = None
        user.last_login = datetime.utcnow()
        db.commit()

    def authenticate_user(self, email: str, password: str, db: Session) -> Tuple[Optional[User], str]:
        """Authenticate user with email and password"""
        user = self.get_user_by_email(email, db)

        if not user:
            return None, "Invalid email or password"

        if self.is_user_locked(user):
            return None, f"Account is locked. Try again after {user.locked_until.strftime('%Y-%m-%d %H:%M:%S')} UTC"

        if not self.verify_password(password, user.password_hash):
            self.increment_login_attempts(user, db)
            return None, "Invalid email or password"

        return user, "success"

    def create_user(self, email: str, password: str, full_name: str, db: Session) -> User:
        """Create a new user"""
        if self.get_user_by_email(email, db):
            raise ValueError("User with this email already exists")

        user = User(
            email=email.lower().strip(),
            password_hash=self.hash_password(password),
            full_name=full_name
        )
        db.add(user)
        db.flush()
        return user

    def register_user(self, email: str, password: str, full_name: str,
                      organization_name: str, db: Session) -> Tuple[User, Organization]:
        """Create a user together with their own organization on a trial"""
        user = self.create_user(email, password, full_name, db)

        slug = slugify(organization_name)
        if db.query(Organization).filter(Organization.slug == slug).first():
            slug = f"{slug}-{secrets.token_hex(3)}"

        organization = Organization(
            name=organization_name,
            slug=slug,
            owner_id=user.id,
            subscription_status="trial",
            trial_ends_at=datetime.utcnow() + timedelta(days=AppConfig.TRIAL_PERIOD_DAYS)
        )
        db.add(organization)
        db.flush()

        db.add(OrganizationMember(
            organization_id=organization.id,
            user_id=user.id,
            role="owner",
            permissions=[]
        ))
        db.commit()
        db.refresh(user)
        db.refresh(organization)

        logger.info(f"✅ Registered {user.email} with organization '{organization.name}'")
        return user, organization

    def log_security_event(self, organization_id: Optional[str], user_id: Optional[str], action: str,
                           ip_address: str, user_agent: str, details: Dict[str, Any],
                           db: Session, resource: str = None) -> None:
        """Log security events for audit"""
        audit_log = AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            resource=resource,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details
        )

        db.add(audit_log)
        db.commit()


# Global instance
auth_service = AuthService()
