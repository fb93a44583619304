"""
GHL Integration Routes
OAuth connect/callback, MCP credentials and pipeline completion stages
"""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from pydantic import BaseModel
from sqlalchemy import and_
from sqlalchemy.orm import Session
from typing import Dict, List
from datetime import datetime, timedelta
import logging

from database.simple_connection import get_db
from database.models import Integration
from api.routes.auth_routes import get_current_organization, require_permission, get_client_ip
from api.services.auth_service import auth_service
from api.services.organization_service import OrganizationContext
from api.services.ghl_api import build_authorization_url, exchange_code_for_tokens, GHLAuthError
from api.services.ghl_mcp_client import GHLMCPClient, MCPError, create_mcp_client
from api.services.chatbot_engine import invalidate_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/integrations/ghl", tags=["GHL Integration"])


class MCPTokenRequest(BaseModel):
    mcp_token: str

class CompletionStagesRequest(BaseModel):
    pipeline_completion_stages: Dict[str, List[str]]


def get_active_integration(organization_id: str, db: Session) -> Integration:
    integration = db.query(Integration).filter(
        and_(Integration.organization_id == organization_id, Integration.is_active == True)
    ).first()
    if not integration:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active GoHighLevel integration")
    return integration


@router.get("/connect")
async def connect(ctx: OrganizationContext = Depends(require_permission("manage_integrations"))):
    state = auth_service.create_state_token(ctx.organization_id, ctx.user_id)
    return {"authorization_url": build_authorization_url(state)}

@router.get("/callback")
async def oauth_callback(request: Request, code: str, state: str, db: Session = Depends(get_db)):
    payload = auth_service.verify_token(state)
    if not payload or payload.get("type") != "oauth_state" or not payload.get("organization_id"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    organization_id = payload["organization_id"]

    try:
        tokens = exchange_code_for_tokens(code)
    except GHLAuthError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        location_id = tokens.get("locationId")
        integration = db.query(Integration).filter(
            and_(Integration.organization_id == organization_id, Integration.location_id == location_id)
        ).first()
        if not integration:
            integration = Integration(organization_id=organization_id, location_id=location_id)
            db.add(integration)

        integration.company_id = tokens.get("companyId")
        integration.access_token = tokens.get("access_token")
        integration.refresh_token = tokens.get("refresh_token")
        integration.token_expires_at = datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in", 86399)))
        integration.scope = tokens.get("scope")
        integration.is_active = True
        db.commit()
        db.refresh(integration)

        invalidate_engine(organization_id)
        auth_service.log_security_event(
            organization_id=organization_id,
            user_id=payload.get("sub"),
            action="ghl_connected",
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            details={"location_id": location_id},
            db=db,
            resource="integration"
        )

        logger.info(f"🔗 GHL location {location_id} connected to organization {organization_id}")
        return {"success": True, "integration_id": integration.id, "location_id": location_id}

    except Exception as e:
        logger.error(f"Error saving GHL integration: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

@router.get("/status")
async def integration_status(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    integration = db.query(Integration).filter(
        and_(Integration.organization_id == ctx.organization_id, Integration.is_active == True)
    ).first()
    if not integration:
        return {"connected": False}

    return {
        "connected": bool(integration.access_token),
        "integration_id": integration.id,
        "location_id": integration.location_id,
        "company_id": integration.company_id,
        "token_expires_at": integration.token_expires_at.isoformat() if integration.token_expires_at else None,
        "mcp_enabled": bool(integration.mcp_enabled),
        "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "pipeline_completion_stages": integration.pipeline_completion_stages or {}
    }

@router.post("/mcp")
async def save_mcp_token(
    request_data: MCPTokenRequest,
    ctx: OrganizationContext = Depends(require_permission("manage_integrations")),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)

    result = GHLMCPClient(request_data.mcp_token, integration.location_id).test_connection()
    if not result["success"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"MCP connection test failed: {result['error']}"
        )

    integration.mcp_token = request_data.mcp_token
    integration.mcp_enabled = True
    db.commit()
    invalidate_engine(ctx.organization_id)

    logger.info(f"🔌 MCP enabled for organization {ctx.organization_id}")
    return {"success": True, "mcp_enabled": True}

@router.get("/mcp/tools")
async def list_mcp_tools(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    client = create_mcp_client(get_active_integration(ctx.organization_id, db))
    if not client:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MCP is not enabled")
    try:
        return {"tools": client.list_tools()}
    except MCPError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

@router.put("/completion-stages")
async def save_completion_stages(
    request_data: CompletionStagesRequest,
    ctx: OrganizationContext = Depends(require_permission("manage_integrations")),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)
    integration.pipeline_completion_stages = request_data.pipeline_completion_stages
    db.commit()
    return {"success": True, "pipeline_completion_stages": integration.pipeline_completion_stages}

@router.delete("/")
async def disconnect(
    request: Request,
    ctx: OrganizationContext = Depends(require_permission("manage_integrations")),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)
    integration.is_active = False
    integration.access_token = None
    integration.refresh_token = None
    integration.mcp_token = None
    integration.mcp_enabled = False
    db.commit()
    invalidate_engine(ctx.organization_id)

    auth_service.log_security_event(
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        action="ghl_disconnected",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        details={"location_id": integration.location_id},
        db=db,
        resource="integration"
    )
    return {"success": True}
