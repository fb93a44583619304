"""
AI Service
Anthropic-backed reasoning used by the chatbot engine and receipt processor.
Every method degrades to a documented fallback when AI is unavailable or errors.
"""

import re
import json
import base64
import logging
from typing import Any, Dict, List, Optional

import anthropic

from config import AppConfig

logger = logging.getLogger(__name__)

GOAL_EVALUATION_FALLBACK = (
    "I apologize, but I encountered an error evaluating your response. Could you please try again?"
)
RESPONSE_FALLBACK = "I apologize for the confusion. Could you please clarify what you need?"

RECEIPT_CATEGORIES = ["Materials", "Labor", "Equipment", "Subcontractor", "Travel", "Permits", "Insurance", "Other"]

DATA_EXTRACTION_PATTERNS = {
    "email": re.compile(r"[\w.-]+@[\w.-]+\.\w+"),
    "phone": re.compile(r"[\d\s\-\(\)]+\d{4,}"),
    "date": re.compile(r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{4}[/-]\d{1,2}[/-]\d{1,2}"),
    "time": re.compile(r"\d{1,2}:\d{2}\s*(am|pm|AM|PM)?"),
    "number": re.compile(r"\d+"),
}

RECEIPT_EXTRACTION_PROMPT = """Analyze this receipt image and extract the following information. Return ONLY a JSON object with no additional text or formatting:
{
  "vendor_name": "Business name from the receipt",
  "amount": "Total amount as a number (no currency symbols)",
  "receipt_date": "Date in YYYY-MM-DD format",
  "description": "Brief description of items/services",
  "receipt_number": "Receipt/invoice number if visible",
  "category": "Best category: Materials, Labor, Equipment, Subcontractor, Travel, Permits, Insurance, or Other",
  "payment_method": "credit_card, cash, check, debit_card, or other",
  "last_four_digits": "Last 4 digits of card if visible (null if not)",
  "confidence": "Confidence score 0-100 for data accuracy"
}

Rules:
- Use null for fields you cannot read clearly
- For amount, use only numbers (e.g., 123.45 not "$123.45")
- confidence should be a number between 0 and 100"""


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first {...} block out of a model reply, tolerating markdown fences"""
    if not text:
        return None
    match = re.search(r"\{[\s\S]*\}", text)
    candidate = match.group(0) if match else text
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(100.0, number))


def _history_messages(history: List[Dict[str, str]], limit: Optional[int] = None) -> List[Dict[str, str]]:
    """Convert stored conversation rows to Anthropic messages (alternating roles)"""
    items = history[-limit:] if limit else history
    messages: List[Dict[str, str]] = []
    for item in items:
        role = "assistant" if item.get("role") == "assistant" else "user"
        content = item.get("content") or ""
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += f"\n{content}"
        else:
            messages.append({"role": role, "content": content})
    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": "(conversation started)"})
    return messages


class AIService:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key if api_key is not None else AppConfig.ANTHROPIC_API_KEY
        self.model = model or AppConfig.ANTHROPIC_MODEL
        self.client = None
        self.enabled = bool(self.api_key)

        if self.enabled:
            try:
                self.client = anthropic.Anthropic(api_key=self.api_key)
                logger.info("✅ AI service initialized with Anthropic")
            except Exception as e:
                logger.error(f"❌ Failed to initialize Anthropic client: {e}")
                self.enabled = False
        else:
            logger.warning("⚠️ AI service disabled - no ANTHROPIC_API_KEY")

    def _complete(self, system: str, messages: List[Dict[str, Any]], max_tokens: int = 500,
                  temperature: float = 0.0) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    def complete_json(self, system: str, messages: List[Dict[str, Any]], max_tokens: int = 1000) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        return extract_json_object(self._complete(system, messages, max_tokens=max_tokens))

    # =======================
    # GOAL EVALUATION
    # =======================

    def _goal_prompt(self, goal: str, possible_outcomes: List[str], bot_context: str) -> str:
        outcomes = "\n".join(f"{i + 1}. {outcome}" for i, outcome in enumerate(possible_outcomes or []))
        context = f"CONTEXT: {bot_context}" if bot_context else ""
        return f"""You are an AI assistant evaluating whether a conversation goal has been achieved.

GOAL: {goal}

POSSIBLE OUTCOMES:
{outcomes}

{context}

Analyze the conversation and the latest user message. Look for explicit confirmations,
implicit acceptance through providing requested information, clear refusals, requests
for more information and off-topic replies.

Return your evaluation as a JSON object with the following structure:
{{
  "achieved": boolean,
  "confidence": number (0-100),
  "reasoning": "string explaining your evaluation",
  "selectedOutcome": "string (one of the possible outcomes, if achieved)",
  "suggestedResponse": "string (what the bot should say next)",
  "extractedData": {{ "key": "value" }}
}}"""

    def evaluate_goal(self, goal: str, possible_outcomes: List[str], user_message: str,
                      history: List[Dict[str, str]], bot_context: str = "",
                      session_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        fallback = {
            "achieved": False,
            "confidence": 0,
            "reasoning": "Goal evaluation unavailable",
            "selected_outcome": None,
            "suggested_response": GOAL_EVALUATION_FALLBACK,
            "extracted_data": {}
        }
        if not self.enabled:
            return fallback

        try:
            messages = _history_messages(history)
            prompt = f"Latest user message: {user_message}"
            if session_data:
                prompt += f"\nSession data: {json.dumps(session_data, default=str)}"
            messages.append({"role": "user", "content": prompt})
            messages = _history_messages(messages)

            parsed = self.complete_json(self._goal_prompt(goal, possible_outcomes, bot_context), messages)
            if parsed is None:
                fallback["reasoning"] = "Could not parse evaluation"
                return fallback

            return {
                "achieved": bool(parsed.get("achieved", False)),
                "confidence": clamp_confidence(parsed.get("confidence", 0)),
                "reasoning": parsed.get("reasoning", ""),
                "selected_outcome": parsed.get("selectedOutcome"),
                "suggested_response": parsed.get("suggestedResponse"),
                "extracted_data": parsed.get("extractedData") or {}
            }
        except Exception as e:
            logger.error(f"❌ Goal evaluation failed: {e}")
            fallback["reasoning"] = str(e)
            return fallback

    # =======================
    # CONDITIONS
    # =======================

    def evaluate_condition(self, condition: Dict[str, Any], user_message: str,
                           history: List[Dict[str, str]], session_data: Dict[str, Any]) -> bool:
        condition_type = (condition or {}).get("type")
        try:
            if condition_type == "contains_keyword":
                lower_message = user_message.lower()
                return any(keyword.lower() in lower_message for keyword in condition.get("keywords", []))

            if condition_type == "data_extraction":
                data_type = condition.get("dataType")
                pattern = DATA_EXTRACTION_PATTERNS.get(data_type)
                if pattern:
                    return bool(pattern.search(user_message))
                return session_data.get(data_type) is not None

            if not self.enabled:
                return False

            if condition_type == "sentiment_analysis":
                reply = self._complete(
                    "Classify the sentiment of the message as positive, negative, or neutral. Return only the sentiment word.",
                    [{"role": "user", "content": user_message}],
                    max_tokens=10
                )
                return reply.lower().strip() == str(condition.get("sentiment", "")).lower()

            if condition_type == "intent_matching":
                intents = condition.get("intents", [])
                system = (
                    f"Classify the user's intent from their message. Possible intents: {', '.join(intents)}\n"
                    "Return only the matching intent, or \"none\" if no match."
                )
                messages = _history_messages(history, limit=3)
                messages.append({"role": "user", "content": user_message})
                detected = self._complete(system, _history_messages(messages), max_tokens=50).lower().strip()
                return any(intent.lower() in detected for intent in intents)

            if condition_type == "custom_logic":
                system = (
                    f"Evaluate if the following custom condition is met:\n{condition.get('logic', '')}\n\n"
                    "Consider the user's message, conversation history, and session data.\n"
                    "Return \"true\" or \"false\" only."
                )
                content = f"Message: {user_message}\nSession Data: {json.dumps(session_data, default=str)}"
                reply = self._complete(system, [{"role": "user", "content": content}], max_tokens=10)
                return reply.lower().strip() == "true"

            return False
        except Exception as e:
            logger.error(f"❌ Error evaluating {condition_type} condition: {e}")
            return False

    # =======================
    # RESPONSES
    # =======================

    def _response_prompt(self, node_type: str, node_config: Dict[str, Any], bot_context: str,
                         session_data: Dict[str, Any]) -> str:
        prompt = f"You are an AI assistant in a conversation workflow. {bot_context or ''}\n\n"
        if node_type == "milestone":
            prompt += (f"You are at a milestone node trying to achieve: {node_config.get('goal_description', '')}\n"
                       "Guide the conversation naturally toward this goal while being helpful and conversational.")
        elif node_type == "book_appointment":
            calendars = ", ".join(node_config.get("calendar_ids") or []) or "General calendar"
            prompt += (f"You are helping to book an appointment. Available calendars: {calendars}\n"
                       "Help the user schedule a convenient time while gathering necessary information.")
        elif node_type == "message":
            prompt += (f"Deliver this message naturally: {node_config.get('content') or node_config.get('description', '')}\n"
                       "Make it conversational and appropriate to the context.")
        else:
            prompt += "Continue the conversation naturally while being helpful and staying on topic."

        if session_data:
            prompt += f"\n\nSession context: {json.dumps(session_data, default=str)}"
        prompt += "\n\nGenerate a natural, conversational response that moves the conversation forward."
        return prompt

    def generate_response(self, node_type: str, node_config: Dict[str, Any], history: List[Dict[str, str]],
                          bot_context: str = "", session_data: Optional[Dict[str, Any]] = None) -> str:
        if not self.enabled:
            return RESPONSE_FALLBACK
        try:
            messages = _history_messages(history) or [{"role": "user", "content": "Hello"}]
            if messages[-1]["role"] != "user":
                messages.append({"role": "user", "content": "(continue)"})
            reply = self._complete(
                self._response_prompt(node_type, node_config or {}, bot_context, session_data or {}),
                messages, max_tokens=500, temperature=0.7
            )
            return reply.strip() or "I understand. How can I help you further?"
        except Exception as e:
            logger.error(f"❌ Error generating response: {e}")
            return RESPONSE_FALLBACK

    def select_time_slot(self, user_message: str, slots: List[str]) -> Optional[int]:
        """Ask the model which proposed slot the user picked; None when unclear"""
        if not self.enabled or not slots:
            return None
        try:
            listing = "\n".join(f"{i + 1}. {slot}" for i, slot in enumerate(slots))
            reply = self._complete(
                "The user is choosing one of the listed appointment times. Return only the number of the "
                "chosen option, or 0 if the message does not pick one.",
                [{"role": "user", "content": f"Options:\n{listing}\n\nUser message: {user_message}"}],
                max_tokens=5
            )
            match = re.search(r"\d+", reply)
            if not match:
                return None
            index = int(match.group(0)) - 1
            return index if 0 <= index < len(slots) else None
        except Exception as e:
            logger.error(f"❌ Error selecting time slot: {e}")
            return None

    # =======================
    # RECEIPTS
    # =======================

    def extract_receipt_data(self, image_url: Optional[str] = None, image_bytes: Optional[bytes] = None,
                             media_type: str = "image/jpeg") -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            if image_bytes is not None:
                source = {
                    "type": "base64",
                    "media_type": media_type,
                    "data": base64.b64encode(image_bytes).decode("ascii")
                }
            elif image_url:
                source = {"type": "url", "url": image_url}
            else:
                return None

            block_type = "document" if media_type == "application/pdf" else "image"
            messages = [{
                "role": "user",
                "content": [
                    {"type": block_type, "source": source},
                    {"type": "text", "text": RECEIPT_EXTRACTION_PROMPT}
                ]
            }]
            return self.complete_json("You extract structured data from receipts.", messages, max_tokens=500)
        except Exception as e:
            logger.error(f"❌ Receipt extraction failed: {e}")
            return None

    def rank_job_matches(self, receipt: Dict[str, Any], opportunities: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        if not self.enabled or not opportunities:
            return None
        try:
            listing = "\n".join(
                f"- id={opp['opportunity_id']} | {opp.get('title') or ''} | contact: {opp.get('contact_name') or ''}"
                for opp in opportunities
            )
            system = (
                "You match expense receipts to the job (opportunity) they most likely belong to. "
                "Return a JSON object {\"matches\": [{\"opportunity_id\": str, \"confidence\": 0-100, "
                "\"reason\": str}]} ordered by confidence, at most 5 entries."
            )
            content = (
                f"Receipt: {json.dumps(receipt, default=str)}\n\nOpen jobs:\n{listing}"
            )
            parsed = self.complete_json(system, [{"role": "user", "content": content}])
            if parsed is None:
                return None
            return [
                {
                    "opportunity_id": m.get("opportunity_id"),
                    "confidence": clamp_confidence(m.get("confidence")),
                    "reason": m.get("reason", "")
                }
                for m in parsed.get("matches", []) if m.get("opportunity_id")
            ]
        except Exception as e:
            logger.error(f"❌ AI job matching failed: {e}")
            return None


# Global instance
ai_service = AIService()
