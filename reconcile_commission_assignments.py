#!/usr/bin/env python3
"""
Reconcile Commission Assignments
Creates the missing commission assignments for cached opportunities that have an assignee
"""

import argparse
import sys

from database.simple_connection import get_db_session
from api.services.commission_assignments import reconcile_assignments


def main():
    parser = argparse.ArgumentParser(description="Create missing commission assignments for an organization")
    parser.add_argument("--organization-id", required=True)
    parser.add_argument("--dry-run", action="store_true", help="Report what would be created without writing")
    args = parser.parse_args()

    db = get_db_session()
    try:
        result = reconcile_assignments(args.organization_id, db, dry_run=args.dry_run)
    finally:
        db.close()

    mode = "DRY RUN" if args.dry_run else "APPLIED"
    print(f"🔄 Commission assignment reconciliation ({mode})")
    print(f"   Created: {result['created']}")
    print(f"   Already assigned: {result['skipped']}")
    print(f"   Assignee without payment structure: {result['no_payment_structure']}")
    for detail in result["details"]:
        print(f"   - {detail['opportunity_id']} -> {detail['ghl_user_id']} "
              f"({detail['commission_type']} {detail['rate']}%)")
    sys.exit(0)


if __name__ == "__main__":
    main()
