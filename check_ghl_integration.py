#!/usr/bin/env python3
"""
Check GHL Integration
Prints token expiry for an organization's GoHighLevel integration, refreshes the
token when it is close to expiring, then tests REST and MCP access.
"""

import argparse
import sys
from datetime import datetime

from sqlalchemy import and_

from database.simple_connection import get_db_session
from database.models import Integration
from api.services.ghl_api import create_ghl_client, GHLAuthError
from api.services.ghl_mcp_client import create_mcp_client


def main():
    parser = argparse.ArgumentParser(description="Diagnose an organization's GoHighLevel integration")
    parser.add_argument("--organization-id", required=True)
    args = parser.parse_args()

    db = get_db_session()
    try:
        integration = db.query(Integration).filter(
            and_(Integration.organization_id == args.organization_id, Integration.is_active == True)
        ).first()
        if not integration:
            print(f"❌ No active integration for organization {args.organization_id}")
            sys.exit(1)

        print(f"🔗 Location: {integration.location_id} (company {integration.company_id})")
        if integration.token_expires_at:
            remaining = integration.token_expires_at - datetime.utcnow()
            print(f"   Token expires at {integration.token_expires_at.isoformat()} "
                  f"({remaining.total_seconds() / 3600:.1f}h remaining)")
        else:
            print("   Token expiry unknown")

        client = create_ghl_client(integration, db)
        if not client:
            print("❌ Integration has no access token, reconnect through OAuth")
            sys.exit(1)

        try:
            if client.token_needs_refresh():
                print("🔄 Token close to expiry, refreshing...")
                client.refresh_access_token()
                print(f"   New expiry: {integration.token_expires_at.isoformat()}")
        except GHLAuthError as e:
            print(f"❌ Token refresh failed: {e}")
            sys.exit(1)

        rest = client.test_location_access()
        print(f"{'✅' if rest['can_access'] else '❌'} REST access: status {rest.get('status_code')}"
              f"{' - ' + rest['error'] if rest.get('error') else ''}")

        mcp_client = create_mcp_client(integration)
        if mcp_client:
            mcp = mcp_client.test_connection()
            print(f"{'✅' if mcp['success'] else '❌'} MCP access"
                  f"{': ' + str(mcp['error']) if mcp.get('error') else ''}")
        else:
            print("ℹ️ MCP not enabled for this integration")

        sys.exit(0 if rest["can_access"] else 1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
