"""
Chatbot Routes
Bots, workflow graphs, bot/workflow links, chat and conversation sessions
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import and_
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
from datetime import datetime
import logging

from database.simple_connection import get_db
from database.models import (
    Bot, BotWorkflow, ChatbotWorkflow, WorkflowNode, WorkflowConnection, ConversationSession, ConversationMessage, User
)
from api.routes.auth_routes import get_current_organization
from api.services.organization_service import OrganizationContext
from api.services.subscription_service import require_active_subscription
from api.services.chatbot_engine import get_engine, invalidate_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chatbot", tags=["Chatbot"])

NODE_TYPES = {"start", "milestone", "book_appointment", "message", "condition", "action", "end"}
CONNECTION_TYPES = {"standard", "goal_achieved", "goal_not_achieved", "conditional"}


# Pydantic models
class BotCreate(BaseModel):
    name: str
    global_context: Optional[str] = None
    specific_context: Optional[str] = None
    is_active: bool = True

class NodeInput(BaseModel):
    node_id: str
    node_type: str
    title: Optional[str] = None
    description: Optional[str] = None
    goal_description: Optional[str] = None
    possible_outcomes: List[str] = []
    calendar_ids: List[str] = []
    config: Dict[str, Any] = {}
    actions: List[Dict[str, Any]] = []

class ConnectionInput(BaseModel):
    source_node_id: str
    target_node_id: str
    connection_type: str = "standard"
    condition: Optional[Dict[str, Any]] = None
    label: Optional[str] = None

class WorkflowCreate(BaseModel):
    name: str
    description: Optional[str] = None
    nodes: List[NodeInput]
    connections: List[ConnectionInput] = []

class BotWorkflowLink(BaseModel):
    workflow_id: str
    is_primary: bool = False
    priority: int = 0

class ChatRequest(BaseModel):
    message: str
    contact_id: str
    session_id: Optional[str] = None


def validate_workflow_graph(nodes: List[NodeInput], connections: List[ConnectionInput]) -> None:
    """Raise ValueError when the node/connection graph is not runnable"""
    if not nodes:
        raise ValueError("A workflow needs at least one node")

    node_ids = set()
    for node in nodes:
        if node.node_type not in NODE_TYPES:
            raise ValueError(f"Invalid node type '{node.node_type}' on node {node.node_id}")
        if node.node_id in node_ids:
            raise ValueError(f"Duplicate node_id {node.node_id}")
        node_ids.add(node.node_id)

    for connection in connections:
        if connection.connection_type not in CONNECTION_TYPES:
            raise ValueError(f"Invalid connection type '{connection.connection_type}'")
        for endpoint in (connection.source_node_id, connection.target_node_id):
            if endpoint not in node_ids:
                raise ValueError(f"Connection references unknown node {endpoint}")


def bot_to_dict(bot: Bot, db: Session) -> Dict[str, Any]:
    links = db.query(BotWorkflow).filter(BotWorkflow.bot_id == bot.id).order_by(BotWorkflow.priority.desc()).all()
    return {
        "id": bot.id,
        "name": bot.name,
        "global_context": bot.global_context,
        "specific_context": bot.specific_context,
        "is_active": bool(bot.is_active),
        "workflows": [
            {"workflow_id": link.workflow_id, "is_primary": bool(link.is_primary), "priority": link.priority}
            for link in links
        ]
    }

def workflow_to_dict(workflow: ChatbotWorkflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "is_active": bool(workflow.is_active),
        "nodes": [
            {
                "node_id": n.node_id,
                "node_type": n.node_type,
                "title": n.title,
                "description": n.description,
                "goal_description": n.goal_description,
                "possible_outcomes": n.possible_outcomes or [],
                "calendar_ids": n.calendar_ids or [],
                "config": n.config or {},
                "actions": n.actions or []
            }
            for n in workflow.nodes
        ],
        "connections": [
            {
                "source_node_id": c.source_node_id,
                "target_node_id": c.target_node_id,
                "connection_type": c.connection_type,
                "condition": c.condition,
                "label": c.label
            }
            for c in workflow.connections
        ]
    }

def _get_bot(bot_id: str, organization_id: str, db: Session) -> Bot:
    bot = db.query(Bot).filter(and_(Bot.id == bot_id, Bot.organization_id == organization_id)).first()
    if not bot:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")
    return bot

def _get_workflow(workflow_id: str, organization_id: str, db: Session) -> ChatbotWorkflow:
    workflow = db.query(ChatbotWorkflow).filter(
        and_(ChatbotWorkflow.id == workflow_id, ChatbotWorkflow.organization_id == organization_id)
    ).first()
    if not workflow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found")
    return workflow

def _get_session(session_id: str, organization_id: str, db: Session) -> ConversationSession:
    session = db.query(ConversationSession).filter(
        and_(ConversationSession.id == session_id, ConversationSession.organization_id == organization_id)
    ).first()
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


# =======================
# BOTS
# =======================

@router.post("/bots", status_code=status.HTTP_201_CREATED)
async def create_bot(
    bot_data: BotCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    bot = Bot(organization_id=ctx.organization_id, **bot_data.model_dump())
    db.add(bot)
    db.commit()
    db.refresh(bot)
    invalidate_engine(ctx.organization_id)
    logger.info(f"🤖 Created bot {bot.name} for organization {ctx.organization_id}")
    return bot_to_dict(bot, db)

@router.get("/bots")
async def list_bots(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    bots = db.query(Bot).filter(Bot.organization_id == ctx.organization_id).order_by(Bot.created_at.desc()).all()
    return {"bots": [bot_to_dict(b, db) for b in bots]}

@router.get("/bots/{bot_id}")
async def get_bot(
    bot_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return bot_to_dict(_get_bot(bot_id, ctx.organization_id, db), db)

@router.post("/bots/{bot_id}/workflows", status_code=status.HTTP_201_CREATED)
async def link_workflow(
    bot_id: str,
    link_data: BotWorkflowLink,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    bot = _get_bot(bot_id, ctx.organization_id, db)
    workflow = _get_workflow(link_data.workflow_id, ctx.organization_id, db)

    if link_data.is_primary:
        db.query(BotWorkflow).filter(BotWorkflow.bot_id == bot.id).update(
            {BotWorkflow.is_primary: False}, synchronize_session=False
        )

    link = db.query(BotWorkflow).filter(
        and_(BotWorkflow.bot_id == bot.id, BotWorkflow.workflow_id == workflow.id)
    ).first()
    if not link:
        link = BotWorkflow(bot_id=bot.id, workflow_id=workflow.id)
        db.add(link)
    link.is_primary = link_data.is_primary
    link.priority = link_data.priority
    db.commit()
    invalidate_engine(ctx.organization_id)
    return bot_to_dict(bot, db)


# =======================
# WORKFLOWS
# =======================

@router.post("/workflows", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow_data: WorkflowCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    try:
        validate_workflow_graph(workflow_data.nodes, workflow_data.connections)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    workflow = ChatbotWorkflow(
        organization_id=ctx.organization_id,
        name=workflow_data.name,
        description=workflow_data.description
    )
    db.add(workflow)
    db.flush()

    for node in workflow_data.nodes:
        db.add(WorkflowNode(workflow_id=workflow.id, **node.model_dump()))
    for connection in workflow_data.connections:
        db.add(WorkflowConnection(workflow_id=workflow.id, **connection.model_dump()))

    db.commit()
    db.refresh(workflow)
    invalidate_engine(ctx.organization_id)
    logger.info(f"🧭 Created workflow {workflow.name} with {len(workflow_data.nodes)} nodes")
    return workflow_to_dict(workflow)

@router.get("/workflows")
async def list_workflows(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    workflows = db.query(ChatbotWorkflow).filter(
        ChatbotWorkflow.organization_id == ctx.organization_id
    ).order_by(ChatbotWorkflow.created_at.desc()).all()
    return {"workflows": [workflow_to_dict(w) for w in workflows]}

@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return workflow_to_dict(_get_workflow(workflow_id, ctx.organization_id, db))


# =======================
# CHAT & SESSIONS
# =======================

@router.post("/chat/{bot_id}")
async def chat(
    bot_id: str,
    chat_request: ChatRequest,
    ctx: OrganizationContext = Depends(get_current_organization),
    subscriber: User = Depends(require_active_subscription),
    db: Session = Depends(get_db)
):
    _get_bot(bot_id, ctx.organization_id, db)
    engine = get_engine(ctx.organization_id, db)
    return engine.process_bot_message(
        db, bot_id, chat_request.contact_id, chat_request.message, session_id=chat_request.session_id
    )

@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    session = _get_session(session_id, ctx.organization_id, db)
    messages = db.query(ConversationMessage).filter(
        ConversationMessage.session_id == session.id
    ).order_by(ConversationMessage.created_at.asc()).all()
    return {
        "id": session.id,
        "bot_id": session.bot_id,
        "workflow_id": session.workflow_id,
        "contact_id": session.ghl_contact_id,
        "current_checkpoint_key": session.current_checkpoint_key,
        "session_data": session.session_data or {},
        "is_active": bool(session.is_active),
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
        "messages": [
            {
                "message_type": m.message_type,
                "content": m.content,
                "checkpoint_key": m.checkpoint_key,
                "created_at": m.created_at.isoformat() if m.created_at else None
            }
            for m in messages
        ]
    }

@router.post("/sessions/{session_id}/end")
async def end_session(
    session_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    session = _get_session(session_id, ctx.organization_id, db)
    session.is_active = False
    session.ended_at = datetime.utcnow()
    db.commit()
    return {"success": True, "session_id": session.id}
