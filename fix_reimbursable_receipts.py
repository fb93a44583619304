#!/usr/bin/env python3
"""
Fix Reimbursable Receipts
Recomputes is_reimbursable for matched receipts against the organization's
active company cards. Receipts paid with a company card are not reimbursable.
"""

import argparse
import sys

from sqlalchemy import and_

from database.simple_connection import get_db_session
from database.models import Receipt
from api.services.receipt_processor import is_company_card


def main():
    parser = argparse.ArgumentParser(description="Recompute reimbursable flags on matched receipts")
    parser.add_argument("--organization-id", required=True)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    db = get_db_session()
    try:
        receipts = db.query(Receipt).filter(
            and_(Receipt.organization_id == args.organization_id, Receipt.status == "matched")
        ).all()

        changed = 0
        for receipt in receipts:
            reimbursable = not is_company_card(args.organization_id, receipt.last_four_digits, db)
            if bool(receipt.is_reimbursable) == reimbursable:
                continue
            changed += 1
            print(f"   {receipt.id}: {receipt.vendor_name} ****{receipt.last_four_digits or '----'} "
                  f"reimbursable {bool(receipt.is_reimbursable)} -> {reimbursable}")
            if not args.dry_run:
                receipt.is_reimbursable = reimbursable
                receipt.reimbursement_status = "pending" if reimbursable else "not_applicable"

        if args.dry_run:
            print(f"DRY RUN: {changed} of {len(receipts)} matched receipt(s) would change")
        else:
            db.commit()
            print(f"✅ Updated {changed} of {len(receipts)} matched receipt(s)")
    finally:
        db.close()
    sys.exit(0)


if __name__ == "__main__":
    main()
