#!/usr/bin/env python3
"""
Create Admin User Script
Creates an organization owner, or resets the password of an existing one
"""

import argparse
import sys

from database.simple_connection import get_db_session, db as simple_db_instance
from database.models import Organization, OrganizationMember
from api.services.auth_service import auth_service


def create_or_reset_owner(email: str, password: str, organization_name: str, full_name: str) -> bool:
    db = get_db_session()
    try:
        user = auth_service.get_user_by_email(email, db)
        if user:
            print(f"User {email} already exists. Resetting password and unlocking...")
            user.password_hash = auth_service.hash_password(password)
            user.is_active = True
            user.login_attempts = 0
            user.locked_until = None

            membership = db.query(OrganizationMember).filter(OrganizationMember.user_id == user.id).first()
            if membership and membership.role != "owner":
                membership.role = "owner"
                print("   Promoted membership to owner")
            db.commit()
            organization = db.query(Organization).filter(
                Organization.id == membership.organization_id
            ).first() if membership else None
        else:
            user, organization = auth_service.register_user(email, password, full_name, organization_name, db)
            print(f"Created user {email}")

        print(f"✅ Owner ready: {user.email}")
        print(f"   User ID: {user.id}")
        if organization:
            print(f"   Organization: {organization.name} ({organization.id})")
        return True

    except Exception as e:
        db.rollback()
        print(f"❌ Error creating admin user: {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Create or reset an organization owner")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--organization", required=True, help="Organization name for a new owner")
    parser.add_argument("--full-name", default="Administrator")
    args = parser.parse_args()

    if len(args.password) < 8:
        print("❌ Password must be at least 8 characters")
        sys.exit(1)

    simple_db_instance.init_database()
    ok = create_or_reset_owner(args.email, args.password, args.organization, args.full_name)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
