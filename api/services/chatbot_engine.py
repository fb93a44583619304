"""
Advanced Workflow Engine
Drives a chatbot conversation through a stored workflow graph.

Each inbound message is handled against the session's current node. The node
decides the reply, an optional next node and any side-effect actions, and the
session row is updated afterwards.
"""

import re
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests
from cachetools import TTLCache
from sqlalchemy import and_
from sqlalchemy.orm import Session

from config import AppConfig
from database.models import (
    Bot, BotWorkflow, ChatbotWorkflow, WorkflowNode, WorkflowConnection, ConversationSession,
    ConversationMessage, WorkflowGoalEvaluation, WorkflowActionLog, AppointmentBooking, Integration
)
from api.services.ai_service import AIService, ai_service as default_ai_service
from api.services.ghl_mcp_client import GHLMCPClient, MCPError, create_mcp_client

logger = logging.getLogger(__name__)

NODE_TYPES = ("start", "milestone", "book_appointment", "message", "condition", "action", "end")
CONNECTION_TYPES = ("standard", "goal_achieved", "goal_not_achieved", "conditional")
GOAL_CONFIDENCE_THRESHOLD = 70

UNAVAILABLE_MESSAGE = "I apologize, but I am currently unavailable. Please try again later."
PROCESSING_ERROR_MESSAGE = "I encountered an error processing your message. Please try again."
NODE_ERROR_MESSAGE = "I encountered an error. Please try again."
LOST_TRACK_MESSAGE = "I seem to have lost track of our conversation. Let me start over."
UNKNOWN_NODE_MESSAGE = "I encountered an unexpected situation. Please contact support."
NO_AI_MILESTONE_MESSAGE = "I need to be configured with AI capabilities to continue."
NO_AI_CONDITION_MESSAGE = "I need AI capabilities to evaluate conditions."
NO_AI_GENERAL_MESSAGE = "I apologize, but I need AI capabilities to respond properly."
BOOKING_UNAVAILABLE_MESSAGE = "I apologize, but appointment booking is not currently available."
ACTION_DEFAULT_MESSAGE = "Processing your request..."
END_DEFAULT_MESSAGE = "Thank you for your time. This conversation has ended."

SLOT_SELECTION_PATTERN = re.compile(r"\b([1-9])\b")
SLOT_FORMAT = "%A, %B %d at %I:%M %p"


@dataclass
class NodeResult:
    response: str
    next_node_id: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)
    session_updates: Dict[str, Any] = field(default_factory=dict)
    end_session: bool = False


def format_slot(slot: datetime) -> str:
    return slot.strftime(SLOT_FORMAT).replace(" 0", " ")


def propose_time_slots(now: datetime, preferences: Optional[Dict[str, Any]] = None, count: int = 3) -> List[datetime]:
    """
    Candidate slots are 09:00 and 14:00 on each of the next seven days. Slots that
    match a stated morning/afternoon preference sort first; ties keep date order.
    """
    time_prefs = (preferences or {}).get("timePreferences") or {}
    slots = []
    for day in range(1, 8):
        date = (now + timedelta(days=day)).replace(minute=0, second=0, microsecond=0)
        if time_prefs.get("morning") is not False:
            slots.append(date.replace(hour=9))
        if time_prefs.get("afternoon") is not False:
            slots.append(date.replace(hour=14))

    def score(slot: datetime) -> int:
        points = 0
        if slot.hour < 12 and time_prefs.get("morning"):
            points += 5
        if 12 <= slot.hour < 17 and time_prefs.get("afternoon"):
            points += 5
        return points

    return sorted(slots, key=score, reverse=True)[:count]


def proposed_times_message(slots: List[datetime]) -> str:
    options = "\n".join(f"{i + 1}. {format_slot(slot)}" for i, slot in enumerate(slots))
    return (
        f"I have the following times available for your appointment:\n\n{options}\n\n"
        "Which time works best for you? You can reply with the number or suggest a different time."
    )


class AdvancedWorkflowEngine:
    def __init__(self, organization_id: str, ai: Optional[AIService] = None,
                 mcp_client: Optional[GHLMCPClient] = None):
        self.organization_id = organization_id
        self.ai = ai if ai is not None else default_ai_service
        self.mcp_client = mcp_client

    @property
    def ai_enabled(self) -> bool:
        return bool(self.ai and self.ai.enabled)

    # =======================
    # ENTRY POINT
    # =======================

    def process_bot_message(self, db: Session, bot_id: str, contact_id: str, user_message: str,
                            session_id: Optional[str] = None) -> Dict[str, str]:
        try:
            bot = db.query(Bot).filter(
                and_(Bot.id == bot_id, Bot.organization_id == self.organization_id)
            ).first()
            if not bot or not bot.is_active:
                return {"response": UNAVAILABLE_MESSAGE, "session_id": ""}

            session = None
            if session_id:
                session = db.query(ConversationSession).filter(
                    and_(
                        ConversationSession.id == session_id,
                        ConversationSession.bot_id == bot.id,
                        ConversationSession.is_active == True
                    )
                ).first()

            if not session:
                link = db.query(BotWorkflow).join(
                    ChatbotWorkflow, ChatbotWorkflow.id == BotWorkflow.workflow_id
                ).filter(
                    and_(
                        BotWorkflow.bot_id == bot.id,
                        BotWorkflow.is_primary == True,
                        ChatbotWorkflow.is_active == True
                    )
                ).first()

                if not link:
                    return {"response": self.generate_general_response(bot, user_message), "session_id": ""}

                session = ConversationSession(
                    organization_id=self.organization_id,
                    bot_id=bot.id,
                    workflow_id=link.workflow_id,
                    ghl_contact_id=contact_id,
                    current_checkpoint_key="start",
                    session_data={},
                    is_active=True
                )
                db.add(session)
                db.commit()
                db.refresh(session)
                logger.info(f"💬 Started conversation session {session.id} for contact {contact_id}")

            response = self.process_workflow_message(db, bot, session, user_message)
            return {"response": response, "session_id": session.id}

        except Exception as e:
            logger.error(f"❌ Error processing bot message for bot {bot_id}: {e}")
            db.rollback()
            return {"response": PROCESSING_ERROR_MESSAGE, "session_id": session_id or ""}

    def generate_general_response(self, bot: Bot, user_message: str) -> str:
        if not self.ai_enabled:
            return NO_AI_GENERAL_MESSAGE
        context = "\n".join(filter(None, [bot.global_context, bot.specific_context]))
        return self.ai.generate_response("general", {}, [{"role": "user", "content": user_message}], context)

    # =======================
    # WORKFLOW PROCESSING
    # =======================

    def _history(self, db: Session, session_id: str) -> List[Dict[str, str]]:
        rows = db.query(ConversationMessage).filter(
            ConversationMessage.session_id == session_id
        ).order_by(ConversationMessage.created_at.asc()).all()
        return [{"role": row.message_type, "content": row.content} for row in rows]

    def _log_message(self, db: Session, session_id: str, message_type: str, content: str,
                     checkpoint_key: Optional[str] = None) -> None:
        db.add(ConversationMessage(
            session_id=session_id,
            message_type=message_type,
            content=content,
            checkpoint_key=checkpoint_key
        ))
        db.commit()

    def process_workflow_message(self, db: Session, bot: Bot, session: ConversationSession,
                                 user_message: str) -> str:
        self._log_message(db, session.id, "user", user_message, session.current_checkpoint_key)

        nodes = {
            node.node_id: node
            for node in db.query(WorkflowNode).filter(WorkflowNode.workflow_id == session.workflow_id).all()
        }
        connections = db.query(WorkflowConnection).filter(
            WorkflowConnection.workflow_id == session.workflow_id
        ).all()

        node = nodes.get(session.current_checkpoint_key)
        if not node:
            logger.warning(f"⚠️ Session {session.id} points at missing node '{session.current_checkpoint_key}'")
            return LOST_TRACK_MESSAGE

        session_data = dict(session.session_data or {})
        history = self._history(db, session.id)
        bot_context = "\n".join(filter(None, [bot.global_context, bot.specific_context]))

        try:
            result = self.process_node(db, node, connections, session, session_data, user_message,
                                       history, bot_context)
        except Exception as e:
            logger.error(f"❌ Error processing node {node.node_id} ({node.node_type}): {e}")
            db.rollback()
            return NODE_ERROR_MESSAGE

        if result.actions:
            self.execute_actions(db, session, result.actions, session_data)

        self._log_message(db, session.id, "assistant", result.response,
                          result.next_node_id or session.current_checkpoint_key)

        session_data.update(result.session_updates)
        session.session_data = session_data
        session.last_activity_at = datetime.utcnow()
        if result.next_node_id:
            session.current_checkpoint_key = result.next_node_id
        if result.end_session:
            session.is_active = False
            session.ended_at = datetime.utcnow()
        db.commit()

        return result.response

    def process_node(self, db: Session, node: WorkflowNode, connections: List[WorkflowConnection],
                     session: ConversationSession, session_data: Dict[str, Any], user_message: str,
                     history: List[Dict[str, str]], bot_context: str) -> NodeResult:
        handlers = {
            "start": self._process_message_node,
            "milestone": self._process_milestone_node,
            "book_appointment": self._process_appointment_node,
            "message": self._process_message_node,
            "condition": self._process_condition_node,
            "action": self._process_action_node,
            "end": self._process_end_node,
        }
        handler = handlers.get(node.node_type)
        if not handler:
            return NodeResult(response=UNKNOWN_NODE_MESSAGE)
        return handler(db, node, connections, session, session_data, user_message, history, bot_context)

    def _next_node(self, connections: List[WorkflowConnection], node_id: str, connection_type: str) -> Optional[str]:
        for connection in connections:
            if connection.source_node_id == node_id and connection.connection_type == connection_type:
                return connection.target_node_id
        return None

    def _node_config(self, node: WorkflowNode) -> Dict[str, Any]:
        config = dict(node.config or {})
        config.setdefault("goal_description", node.goal_description)
        config.setdefault("calendar_ids", node.calendar_ids or [])
        config.setdefault("description", node.description)
        return config

    def _scripted_or_generated(self, node: WorkflowNode, history, bot_context, session_data) -> str:
        config = node.config or {}
        if config.get("message"):
            return config["message"]
        if node.description:
            return node.description
        return self.ai.generate_response(node.node_type, self._node_config(node), history, bot_context, session_data)

    # =======================
    # NODE HANDLERS
    # =======================

    def _process_milestone_node(self, db, node, connections, session, session_data, user_message,
                                history, bot_context) -> NodeResult:
        if not self.ai_enabled:
            return NodeResult(response=NO_AI_MILESTONE_MESSAGE)

        evaluation = self.ai.evaluate_goal(
            goal=node.goal_description or node.description or "",
            possible_outcomes=node.possible_outcomes or [],
            user_message=user_message,
            history=history,
            bot_context=bot_context,
            session_data=session_data
        )

        db.add(WorkflowGoalEvaluation(
            session_id=session.id,
            node_id=node.node_id,
            user_message=user_message,
            ai_evaluation=evaluation,
            goal_achieved=evaluation["achieved"],
            confidence_score=evaluation["confidence"],
            reasoning=evaluation.get("reasoning"),
            selected_outcome=evaluation.get("selected_outcome")
        ))
        db.commit()

        actions = list(node.actions or [])
        next_node_id = None
        confident = evaluation["confidence"] >= GOAL_CONFIDENCE_THRESHOLD

        if evaluation["achieved"] and confident:
            next_node_id = self._next_node(connections, node.node_id, "goal_achieved")
            actions.extend((node.config or {}).get("successActions", []))
        elif confident:
            next_node_id = self._next_node(connections, node.node_id, "goal_not_achieved")

        response = evaluation.get("suggested_response") or self.ai.generate_response(
            "milestone", self._node_config(node), history, bot_context, session_data
        )

        return NodeResult(
            response=response,
            next_node_id=next_node_id,
            actions=actions,
            session_updates=dict(evaluation.get("extracted_data") or {})
        )

    def _process_appointment_node(self, db, node, connections, session, session_data, user_message,
                                  history, bot_context) -> NodeResult:
        if not self.ai_enabled or not self.mcp_client:
            return NodeResult(response=BOOKING_UNAVAILABLE_MESSAGE)

        booking = db.query(AppointmentBooking).filter(
            and_(
                AppointmentBooking.session_id == session.id,
                AppointmentBooking.node_id == node.node_id,
                AppointmentBooking.status == "proposed"
            )
        ).order_by(AppointmentBooking.created_at.desc()).first()

        if booking:
            proposed = [datetime.fromisoformat(value) for value in booking.proposed_times or []]
            index = None
            match = SLOT_SELECTION_PATTERN.search(user_message)
            if match and int(match.group(1)) <= len(proposed):
                index = int(match.group(1)) - 1
            else:
                index = self.ai.select_time_slot(user_message, [format_slot(slot) for slot in proposed])

            if index is None:
                return NodeResult(response=proposed_times_message(proposed))

            selected = proposed[index]
            booking.selected_time = selected
            booking.status = "confirmed"
            booking.appointment_id = f"apt_{int(datetime.utcnow().timestamp() * 1000)}"
            db.commit()
            logger.info(f"📅 Appointment confirmed for session {session.id} at {selected.isoformat()}")

            return NodeResult(
                response=(f"Perfect! I've booked your appointment for {format_slot(selected)}. "
                          "You'll receive a confirmation email shortly with all the details."),
                next_node_id=self._next_node(connections, node.node_id, "goal_achieved"),
                actions=list(node.actions or []),
                session_updates={"appointment_time": selected.isoformat(),
                                 "appointment_id": booking.appointment_id}
            )

        preferences = {**(node.config or {}), **session_data}
        slots = propose_time_slots(datetime.utcnow(), preferences)
        calendar_ids = node.calendar_ids or []
        db.add(AppointmentBooking(
            session_id=session.id,
            node_id=node.node_id,
            contact_id=session.ghl_contact_id,
            calendar_id=calendar_ids[0] if calendar_ids else None,
            proposed_times=[slot.isoformat() for slot in slots],
            status="proposed"
        ))
        db.commit()
        return NodeResult(response=proposed_times_message(slots))

    def _process_message_node(self, db, node, connections, session, session_data, user_message,
                              history, bot_context) -> NodeResult:
        return NodeResult(
            response=self._scripted_or_generated(node, history, bot_context, session_data),
            next_node_id=self._next_node(connections, node.node_id, "standard"),
            actions=list(node.actions or []),
            session_updates={f"response_{node.node_id}": user_message} if node.node_type == "message" else {}
        )

    def _process_condition_node(self, db, node, connections, session, session_data, user_message,
                                history, bot_context) -> NodeResult:
        if not self.ai_enabled:
            return NodeResult(response=NO_AI_CONDITION_MESSAGE)

        next_node_id = None
        for connection in connections:
            if connection.source_node_id != node.node_id or not connection.condition:
                continue
            if self.ai.evaluate_condition(connection.condition, user_message, history, session_data):
                next_node_id = connection.target_node_id
                break

        if not next_node_id:
            next_node_id = self._next_node(connections, node.node_id, "standard")

        return NodeResult(
            response=self._scripted_or_generated(node, history, bot_context, session_data),
            next_node_id=next_node_id,
            actions=list(node.actions or [])
        )

    def _process_action_node(self, db, node, connections, session, session_data, user_message,
                             history, bot_context) -> NodeResult:
        return NodeResult(
            response=(node.config or {}).get("message") or ACTION_DEFAULT_MESSAGE,
            next_node_id=self._next_node(connections, node.node_id, "standard"),
            actions=list(node.actions or [])
        )

    def _process_end_node(self, db, node, connections, session, session_data, user_message,
                          history, bot_context) -> NodeResult:
        config = node.config or {}
        return NodeResult(
            response=config.get("message") or node.description or END_DEFAULT_MESSAGE,
            actions=list(node.actions or []),
            end_session=True
        )

    # =======================
    # ACTIONS
    # =======================

    def execute_actions(self, db: Session, session: ConversationSession, actions: List[Dict[str, Any]],
                        session_data: Dict[str, Any]) -> None:
        for action in actions:
            action_type = action.get("type")
            log = WorkflowActionLog(session_id=session.id, action_type=action_type, action_data=action,
                                    status="pending")
            db.add(log)
            db.commit()

            try:
                if action_type == "add_tag":
                    if not self.mcp_client:
                        raise MCPError("MCP client not configured")
                    tags = action.get("tags") or [action.get("tag")]
                    self.mcp_client.add_tags(session.ghl_contact_id, [t for t in tags if t])
                elif action_type == "send_webhook":
                    payload = {
                        **(action.get("payload") or {}),
                        "sessionId": session.id,
                        "contactId": session.ghl_contact_id,
                        "sessionData": session_data
                    }
                    response = requests.post(action["url"], json=payload, timeout=15)
                    response.raise_for_status()
                else:
                    logger.warning(f"⚠️ Skipping unknown workflow action type: {action_type}")
                    log.status = "skipped"
                    db.commit()
                    continue

                log.status = "completed"
                db.commit()
                logger.info(f"✅ Workflow action {action_type} completed for session {session.id}")
            except Exception as e:
                log.status = "failed"
                log.error_message = str(e)
                db.commit()
                logger.error(f"❌ Workflow action {action_type} failed for session {session.id}: {e}")


# =======================
# ENGINE CACHE
# =======================

_engine_cache: TTLCache = TTLCache(maxsize=AppConfig.ENGINE_CACHE_MAX_SIZE, ttl=AppConfig.ENGINE_CACHE_TTL_SECONDS)
_engine_cache_lock = threading.Lock()


def get_engine(organization_id: str, db: Session) -> AdvancedWorkflowEngine:
    with _engine_cache_lock:
        engine = _engine_cache.get(organization_id)
        if engine is not None:
            return engine

    integration = db.query(Integration).filter(
        and_(Integration.organization_id == organization_id, Integration.is_active == True)
    ).first()
    engine = AdvancedWorkflowEngine(organization_id, mcp_client=create_mcp_client(integration))

    with _engine_cache_lock:
        _engine_cache[organization_id] = engine
    return engine


def invalidate_engine(organization_id: str) -> None:
    with _engine_cache_lock:
        _engine_cache.pop(organization_id, None)


def engine_cache_stats() -> Dict[str, int]:
    with _engine_cache_lock:
        return {"size": len(_engine_cache), "max_size": int(_engine_cache.maxsize)}
