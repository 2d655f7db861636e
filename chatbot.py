import logging
import random
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import google.generativeai as genai
import httpx
from fastapi import APIRouter, Depends, HTTPException
from pymongo.database import Database

from config import ChatbotConfig, settings
from database import as_utc, create_document, get_db, now_utc, serialize
from schemas import AnalyzeRequest, ChatMessageRequest
from security import get_optional_user
from triage import detect_emergency, is_health_related, normalize_text, score_symptoms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chatbot", tags=["chatbot"])

PRIMARY_MIN_CONFIDENCE = 0.7

EMERGENCY_MESSAGES = {
    "critical": (
        "🚨 **CRITICAL EMERGENCY** 🚨\n\n"
        "The symptoms you describe may be life-threatening.\n\n"
        "**ACT NOW:**\n"
        "• Call 115 or go to the nearest emergency room\n"
        "• Do not wait or treat yourself\n"
        "• Have ready: age, symptoms, current medication"
    ),
    "high": (
        "⚠️ **URGENT** ⚠️\n\n"
        "Your symptoms should be examined within the next few hours.\n\n"
        "**RECOMMENDED:**\n"
        "• Come to the hospital within 2-4 hours\n"
        "• Call ahead to describe your condition\n"
        "• Do not self-medicate"
    ),
}

EMERGENCY_FOOTER = "\n\n⚠️ *This is an automatic alert. Please seek medical help immediately.*"
AI_DISCLAIMER = "\n\n⚠️ *Note: this is preliminary advice and does not replace a doctor's opinion.*"

OUT_OF_SCOPE_RESPONSES = [
    "Sorry, I can only help with health and medical questions. Is there anything health-related I can do for you?",
    "I'm the hospital's medical assistant. You can ask me about:\n• Symptoms\n• Booking an appointment\n• Hospital information",
    "I can't answer that. I only support medical and health topics. Do you need any health advice?",
]

ERROR_RESPONSE = "Sorry, I'm having technical difficulties. Please try again later or contact our medical staff."

# (message, sender) -> (text, confidence) or None
PrimaryBackend = Callable[[str, str], Optional[Tuple[str, float]]]
# prompt -> text
Generator = Callable[[str], str]


# --------------------------
# Backends
# --------------------------

class RasaBackend:
    """Rasa REST channel."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def __call__(self, message: str, sender: str) -> Optional[Tuple[str, float]]:
        response = httpx.post(
            f"{self.url}/webhooks/rest/webhook",
            json={"sender": sender, "message": message},
            timeout=self.timeout,
        )
        response.raise_for_status()
        replies = response.json()
        if not replies:
            return None
        first = replies[0]
        text = first.get("text") or (first.get("custom") or {}).get("text") or ""
        return text, float(first.get("confidence", 0.8))


class GeminiGenerator:
    def __init__(self, api_key: str, models: List[str]):
        self.api_key = api_key
        self.models = models

    def __call__(self, prompt: str) -> str:
        genai.configure(api_key=self.api_key)
        last_error: Optional[Exception] = None
        for model_name in self.models:
            try:
                model = genai.GenerativeModel(model_name)
                response = model.generate_content(prompt)
                if response.text:
                    return response.text
            except Exception as e:
                logger.warning("Gemini model %s failed: %s", model_name, e)
                last_error = e
        raise RuntimeError(f"No Gemini model produced a response: {last_error}")


def build_prompt(message: str) -> str:
    return (
        "You are a hospital's medical assistant. Answer briefly and carefully, "
        "in the language of the question. Never give a definitive diagnosis; "
        "suggest seeing a doctor when in doubt.\n\n"
        f"Patient question: {message}"
    )


# --------------------------
# Service
# --------------------------

class ChatService:
    """Runs a message through emergency detection, cache, primary and secondary AI."""

    def __init__(
        self,
        primary: Optional[PrimaryBackend] = None,
        generator: Optional[Generator] = None,
        cache_ttl: timedelta = timedelta(hours=24),
    ):
        self.primary = primary
        self.generator = generator
        self.cache_ttl = cache_ttl

    @classmethod
    def from_config(cls, cfg: ChatbotConfig) -> "ChatService":
        primary = RasaBackend(cfg.rasa_url) if cfg.rasa_url else None
        generator = GeminiGenerator(cfg.gemini_api_key, cfg.gemini_models) if cfg.gemini_api_key else None
        return cls(primary, generator, timedelta(hours=cfg.cache_ttl_hours))

    # cache

    def _cached(self, database: Database, key: str) -> Optional[Dict[str, Any]]:
        entry = database["chatbot_cache"].find_one({"key": key})
        if not entry:
            return None
        if as_utc(entry["created_at"]) + self.cache_ttl < now_utc():
            database["chatbot_cache"].delete_one({"key": key})
            return None
        return entry

    def _store(self, database: Database, key: str, result: Dict[str, Any]) -> None:
        database["chatbot_cache"].delete_many({"key": key})
        create_document(database, "chatbot_cache", {
            "key": key,
            "response": result["response"],
            "ai_source": result["ai_source"],
            "confidence": result["confidence"],
            "intent": result["intent"],
        })

    # pipeline

    def emergency_reply(self, message: str) -> Optional[Dict[str, Any]]:
        scored = score_symptoms(message)
        tier = detect_emergency(message)
        if scored["is_emergency"]:
            level = scored["severity"]
        elif tier["level"] == "critical":
            level = "critical"
        else:
            return None
        return {
            "response": EMERGENCY_MESSAGES.get(level, EMERGENCY_MESSAGES["high"]) + EMERGENCY_FOOTER,
            "ai_source": "emergency_detection",
            "intent": "emergency",
            "confidence": 0.95,
            "emergency": True,
            "emergency_level": level,
        }

    def process_message(
        self, database: Database, message: str, session_id: str, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        started = time.monotonic()
        result = self._process(database, message, session_id)
        logger.info("Chat reply for session %s (user %s) from %s", session_id, user_id, result["ai_source"])
        result["processing_time_ms"] = int((time.monotonic() - started) * 1000)
        return result

    def _process(self, database: Database, message: str, session_id: str) -> Dict[str, Any]:
        emergency = self.emergency_reply(message)
        if emergency:
            logger.warning("Emergency detected in session %s: level=%s", session_id, emergency["emergency_level"])
            return emergency

        key = normalize_text(message)
        cached = self._cached(database, key)
        if cached:
            return {
                "response": cached["response"],
                "ai_source": cached["ai_source"],
                "intent": "cached",
                "confidence": cached["confidence"],
                "cached": True,
            }

        if self.primary:
            try:
                reply = self.primary(message, session_id)
                if reply and reply[0] and reply[1] > PRIMARY_MIN_CONFIDENCE:
                    result = {"response": reply[0], "ai_source": "rasa", "intent": "rasa_response", "confidence": reply[1]}
                    self._store(database, key, result)
                    return result
            except Exception as e:
                logger.warning("Primary chatbot backend failed, falling back: %s", e)

        if self.generator and is_health_related(message):
            try:
                text = self.generator(build_prompt(message))
                result = {
                    "response": text + AI_DISCLAIMER,
                    "ai_source": "gemini_fallback",
                    "intent": "health_consultation",
                    "confidence": 0.6,
                }
                self._store(database, key, result)
                return result
            except Exception as e:
                logger.error("Gemini fallback failed: %s", e)

        return {
            "response": random.choice(OUT_OF_SCOPE_RESPONSES),
            "ai_source": "out_of_scope",
            "intent": "out_of_scope",
            "confidence": 0.9,
        }


_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    global _service
    if _service is None:
        _service = ChatService.from_config(settings.chatbot)
    return _service


# --------------------------
# Endpoints
# --------------------------

def _new_session(database: Database, user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return create_document(database, "chat_sessions", {
        "session_id": str(uuid.uuid4()),
        "user_id": user["id"] if user else None,
        "patient_id": user.get("patient_id") if user else None,
        "messages": [],
    })


def _get_session(database: Database, session_id: str, user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    session = database["chat_sessions"].find_one({"session_id": session_id})
    if not session:
        raise HTTPException(status_code=404, detail="Chat session not found")
    owner = session.get("user_id")
    if owner and (not user or (user["id"] != owner and user["role"] != "admin")):
        raise HTTPException(status_code=403, detail="Not your chat session")
    return session


@router.post("/sessions", status_code=201)
def create_session(user=Depends(get_optional_user), database: Database = Depends(get_db)):
    session = _new_session(database, user)
    return {"session_id": session["session_id"]}


@router.get("/sessions/{session_id}")
def get_session(session_id: str, user=Depends(get_optional_user), database: Database = Depends(get_db)):
    return serialize(_get_session(database, session_id, user))


@router.post("/message")
def send_message(
    payload: ChatMessageRequest,
    user=Depends(get_optional_user),
    database: Database = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    if payload.session_id:
        session = _get_session(database, payload.session_id, user)
    else:
        session = _new_session(database, user)
    session_id = session["session_id"]

    try:
        result = service.process_message(database, payload.message, session_id, user["id"] if user else None)
    except Exception:
        logger.exception("Chat pipeline failed for session %s", session_id)
        result = {"response": ERROR_RESPONSE, "ai_source": "error", "intent": "system_error", "confidence": 0, "error": True}

    stamp = now_utc()
    database["chat_sessions"].update_one(
        {"session_id": session_id},
        {
            "$push": {"messages": {"$each": [
                {"role": "user", "content": payload.message, "created_at": stamp},
                {"role": "bot", "content": result["response"], "ai_source": result["ai_source"], "created_at": stamp},
            ]}},
            "$set": {"updated_at": stamp},
        },
    )
    return {"session_id": session_id, **result}


@router.post("/analyze")
def analyze(payload: AnalyzeRequest):
    return {
        "normalized": normalize_text(payload.message),
        "emergency": detect_emergency(payload.message),
        "score": score_symptoms(payload.message),
        "health_related": is_health_related(payload.message),
    }
