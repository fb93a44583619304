#!/usr/bin/env python3
"""
Check Duplicate Commissions
Lists opportunities that carry more than one assignment for the same user and
optionally deactivates the extras, keeping the most recent active one.
"""

import argparse
import sys

from database.simple_connection import get_db_session
from api.services.commission_assignments import find_duplicate_assignments, deactivate_duplicates


def main():
    parser = argparse.ArgumentParser(description="Find duplicate commission assignments")
    parser.add_argument("--organization-id", default=None, help="Limit to one organization")
    parser.add_argument("--fix", action="store_true", help="Deactivate duplicates instead of only listing them")
    args = parser.parse_args()

    db = get_db_session()
    try:
        groups = find_duplicate_assignments(db, args.organization_id)
        if not groups:
            print("✅ No duplicate commission assignments found")
            sys.exit(0)

        print(f"⚠️ Found {len(groups)} duplicate group(s):")
        for group in groups:
            print(f"   Opportunity {group['opportunity_id']} / user {group['ghl_user_id']}")
            print(f"      keep   {group['keep'].id}")
            for row in group["remove"]:
                print(f"      remove {row.id} (active={row.is_active})")

        if args.fix:
            deactivated = deactivate_duplicates(db, args.organization_id)
            print(f"🧹 Deactivated {deactivated} duplicate assignment(s)")
        else:
            print("Run again with --fix to deactivate the duplicates")
    finally:
        db.close()


if __name__ == "__main__":
    main()
