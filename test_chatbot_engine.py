#!/usr/bin/env python3
"""
Tests for the chatbot workflow engine: node traversal, goal evaluation, actions,
appointment slot proposals and the fallback replies.
"""

from datetime import datetime

from database.models import (
    Organization, Bot, ChatbotWorkflow, BotWorkflow, WorkflowNode, WorkflowConnection,
    ConversationSession, ConversationMessage, WorkflowGoalEvaluation, WorkflowActionLog, AppointmentBooking
)
from api.services.chatbot_engine import (
    AdvancedWorkflowEngine, format_slot, propose_time_slots,
    NO_AI_GENERAL_MESSAGE, UNAVAILABLE_MESSAGE, BOOKING_UNAVAILABLE_MESSAGE, LOST_TRACK_MESSAGE
)


class FakeAI:
    enabled = True

    def __init__(self, achieved=True, confidence=90):
        self.achieved = achieved
        self.confidence = confidence

    def evaluate_goal(self, goal, possible_outcomes, user_message, history, bot_context, session_data):
        return {
            "achieved": self.achieved,
            "confidence": self.confidence,
            "reasoning": "Customer named their boat",
            "selected_outcome": None,
            "extracted_data": {"boat_type": "pontoon"},
            "suggested_response": "Great, a pontoon it is."
        }

    def generate_response(self, node_type, node_config, history, bot_context, session_data=None):
        return f"generated {node_type}"

    def select_time_slot(self, user_message, slots):
        return None


class FakeMCP:
    def __init__(self):
        self.tagged = []

    def add_tags(self, contact_id, tags):
        self.tagged.append((contact_id, tags))
        return {"tags": tags}


def _bot_with_workflow(db, nodes, connections):
    org = Organization(name="Marina Bots", slug="marina-bots", subscription_status="active")
    db.add(org)
    db.flush()
    bot = Bot(organization_id=org.id, name="Dock Helper", global_context="We service boats.")
    workflow = ChatbotWorkflow(organization_id=org.id, name="Qualify")
    db.add_all([bot, workflow])
    db.flush()
    db.add(BotWorkflow(bot_id=bot.id, workflow_id=workflow.id, is_primary=True))
    for node in nodes:
        db.add(WorkflowNode(workflow_id=workflow.id, **node))
    for source, target, kind in connections:
        db.add(WorkflowConnection(workflow_id=workflow.id, source_node_id=source, target_node_id=target,
                                  connection_type=kind))
    db.commit()
    return org, bot


QUALIFY_NODES = [
    {"node_id": "start", "node_type": "start", "config": {"message": "Hi! What kind of boat do you have?"}},
    {"node_id": "boat", "node_type": "milestone", "goal_description": "Learn the boat type",
     "actions": [], "config": {"successActions": [{"type": "add_tag", "tag": "qualified"}]}},
    {"node_id": "done", "node_type": "end", "config": {"message": "Thanks, we'll be in touch."}},
]
QUALIFY_CONNECTIONS = [("start", "boat", "standard"), ("boat", "done", "goal_achieved")]


def test_format_slot_drops_leading_zeros():
    assert format_slot(datetime(2026, 3, 3, 9, 0)) == "Tuesday, March 3 at 9:00 AM"


def test_propose_time_slots_honours_preferences():
    now = datetime(2026, 3, 2, 10, 30)
    default = propose_time_slots(now)
    assert [s.hour for s in default] == [9, 14, 9]
    assert default[0].date() == datetime(2026, 3, 3).date()

    afternoons = propose_time_slots(now, {"timePreferences": {"afternoon": True}})
    assert [s.hour for s in afternoons] == [14, 14, 14]

    no_mornings = propose_time_slots(now, {"timePreferences": {"morning": False}}, count=5)
    assert all(s.hour == 14 for s in no_mornings)


def test_workflow_walks_from_start_to_end(db):
    org, bot = _bot_with_workflow(db, QUALIFY_NODES, QUALIFY_CONNECTIONS)
    mcp = FakeMCP()
    engine = AdvancedWorkflowEngine(org.id, ai=FakeAI(), mcp_client=mcp)

    first = engine.process_bot_message(db, bot.id, "contact-1", "Hello")
    session_id = first["session_id"]
    assert first["response"] == "Hi! What kind of boat do you have?"

    second = engine.process_bot_message(db, bot.id, "contact-1", "A pontoon", session_id=session_id)
    print(f"Milestone reply: {second}")
    assert second["response"] == "Great, a pontoon it is."
    assert mcp.tagged == [("contact-1", ["qualified"])]

    session = db.query(ConversationSession).filter(ConversationSession.id == session_id).one()
    assert session.current_checkpoint_key == "done"
    assert session.session_data["boat_type"] == "pontoon"
    assert db.query(WorkflowGoalEvaluation).count() == 1
    assert db.query(WorkflowActionLog).one().status == "completed"

    third = engine.process_bot_message(db, bot.id, "contact-1", "Bye", session_id=session_id)
    assert third["response"] == "Thanks, we'll be in touch."

    db.expire_all()
    session = db.query(ConversationSession).filter(ConversationSession.id == session_id).one()
    assert session.is_active is False
    assert session.ended_at is not None
    assert db.query(ConversationMessage).filter(ConversationMessage.session_id == session_id).count() == 6

    # An ended session is not resumed
    fourth = engine.process_bot_message(db, bot.id, "contact-1", "Hi again", session_id=session_id)
    assert fourth["session_id"] != session_id


def test_low_confidence_goal_stays_on_node(db):
    org, bot = _bot_with_workflow(db, QUALIFY_NODES, QUALIFY_CONNECTIONS)
    engine = AdvancedWorkflowEngine(org.id, ai=FakeAI(achieved=True, confidence=40), mcp_client=FakeMCP())

    session_id = engine.process_bot_message(db, bot.id, "c1", "Hello")["session_id"]
    engine.process_bot_message(db, bot.id, "c1", "not sure", session_id=session_id)

    session = db.query(ConversationSession).filter(ConversationSession.id == session_id).one()
    assert session.current_checkpoint_key == "boat"


def test_failed_action_is_logged_without_breaking_reply(db):
    org, bot = _bot_with_workflow(db, QUALIFY_NODES, QUALIFY_CONNECTIONS)
    engine = AdvancedWorkflowEngine(org.id, ai=FakeAI(), mcp_client=None)

    session_id = engine.process_bot_message(db, bot.id, "c1", "Hello")["session_id"]
    reply = engine.process_bot_message(db, bot.id, "c1", "Pontoon", session_id=session_id)

    assert reply["response"] == "Great, a pontoon it is."
    log = db.query(WorkflowActionLog).one()
    assert log.status == "failed"
    assert "MCP" in log.error_message


def test_appointment_node_proposes_then_books(db):
    nodes = [
        {"node_id": "start", "node_type": "book_appointment", "calendar_ids": ["cal-1"], "config": {}},
        {"node_id": "booked", "node_type": "end", "config": {}},
    ]
    org, bot = _bot_with_workflow(db, nodes, [("start", "booked", "goal_achieved")])
    engine = AdvancedWorkflowEngine(org.id, ai=FakeAI(), mcp_client=FakeMCP())

    proposal = engine.process_bot_message(db, bot.id, "c1", "I'd like an appointment")
    assert "1. " in proposal["response"]
    booking = db.query(AppointmentBooking).one()
    assert booking.status == "proposed"
    assert booking.calendar_id == "cal-1"
    assert len(booking.proposed_times) == 3

    confirmation = engine.process_bot_message(db, bot.id, "c1", "2 works", session_id=proposal["session_id"])
    assert confirmation["response"].startswith("Perfect! I've booked your appointment")

    db.expire_all()
    booking = db.query(AppointmentBooking).one()
    assert booking.status == "confirmed"
    assert booking.selected_time.isoformat() == booking.proposed_times[1]
    session = db.query(ConversationSession).one()
    assert session.current_checkpoint_key == "booked"
    assert session.session_data["appointment_id"] == booking.appointment_id


def test_appointment_without_mcp_is_unavailable(db):
    nodes = [{"node_id": "start", "node_type": "book_appointment", "config": {}}]
    org, bot = _bot_with_workflow(db, nodes, [])
    engine = AdvancedWorkflowEngine(org.id, ai=FakeAI(), mcp_client=None)
    assert engine.process_bot_message(db, bot.id, "c1", "book me")["response"] == BOOKING_UNAVAILABLE_MESSAGE


def test_fallback_replies(db):
    org, bot = _bot_with_workflow(db, [{"node_id": "other", "node_type": "message", "config": {}}], [])
    disabled = type("DisabledAI", (), {"enabled": False})()
    engine = AdvancedWorkflowEngine(org.id, ai=disabled)

    # Workflow has no start node
    assert engine.process_bot_message(db, bot.id, "c1", "hi")["response"] == LOST_TRACK_MESSAGE

    db.query(BotWorkflow).delete()
    db.commit()
    reply = engine.process_bot_message(db, bot.id, "c1", "hi")
    assert reply == {"response": NO_AI_GENERAL_MESSAGE, "session_id": ""}

    bot.is_active = False
    db.commit()
    assert engine.process_bot_message(db, bot.id, "c1", "hi")["response"] == UNAVAILABLE_MESSAGE
