import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from tistis_messaging.config import settings
from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import AIUsageLog, Conversation, Lead, LeadScoreHistory, Message, Tenant
from tistis_messaging.services.llm import LLMError, LLMProvider, OpenAIProvider
from tistis_messaging.services.message_service import get_recent_history

logger = get_logger("ai_service")

MAX_TOKENS = 500
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_RESPONSE_LENGTH = 300

FALLBACK_RESPONSE = (
    "Disculpa, estoy experimentando dificultades técnicas. Un asesor humano te atenderá en breve."
)
EMPTY_RESPONSE = "Lo siento, no pude procesar tu mensaje. Un asesor te contactará pronto."
AI_UNAVAILABLE_REASON = "ai_unavailable"

HIGH_VALUE_SIGNAL_POINTS = 15
HIGH_VALUE_SIGNALS_TO_ESCALATE = 2

HOT_SCORE = 80
WARM_SCORE = 40


class AIIntent(str, Enum):
    GREETING = "GREETING"
    PRICE_INQUIRY = "PRICE_INQUIRY"
    BOOK_APPOINTMENT = "BOOK_APPOINTMENT"
    PAIN_URGENT = "PAIN_URGENT"
    HUMAN_REQUEST = "HUMAN_REQUEST"
    LOCATION = "LOCATION"
    HOURS = "HOURS"
    UNKNOWN = "UNKNOWN"


# Signal-name fragments checked before the keyword patterns, in priority order.
SIGNAL_INTENTS = (
    (AIIntent.PAIN_URGENT, ("dolor", "urgente", "emergencia")),
    (AIIntent.BOOK_APPOINTMENT, ("cita", "agendar", "reservar")),
    (AIIntent.PRICE_INQUIRY, ("precio", "costo", "cuanto")),
)

KEYWORD_INTENTS = (
    (AIIntent.GREETING, re.compile(r"hola|buenos|buenas|hi|hello", re.IGNORECASE)),
    (AIIntent.PRICE_INQUIRY, re.compile(r"precio|costo|cuanto|valor|cotiz", re.IGNORECASE)),
    (AIIntent.BOOK_APPOINTMENT, re.compile(r"cita|agendar|reservar|disponib|horario", re.IGNORECASE)),
    (AIIntent.PAIN_URGENT, re.compile(r"dolor|duele|molest|urgen|emergen", re.IGNORECASE)),
    (AIIntent.HUMAN_REQUEST, re.compile(r"humano|persona|asesor|gerente|encargado", re.IGNORECASE)),
    (AIIntent.LOCATION, re.compile(r"donde|ubicacion|direccion|llegar|mapa", re.IGNORECASE)),
    (AIIntent.HOURS, re.compile(r"horario|abren|cierran|atienden", re.IGNORECASE)),
)

STYLE_DESCRIPTIONS = {
    "professional": "profesional y directo",
    "professional_friendly": "profesional pero cálido y amigable",
    "casual": "informal y cercano",
    "formal": "muy formal y respetuoso",
}


class AIGenerationError(Exception):
    """The model could not produce a reply; the job should be retried."""


@dataclass
class AISignal:
    signal: str
    points: int


@dataclass
class AIResult:
    response: str
    intent: AIIntent
    signals: List[AISignal] = field(default_factory=list)
    score_change: int = 0
    escalate: bool = False
    escalate_reason: Optional[str] = None
    tokens_input: int = 0
    tokens_output: int = 0
    model_used: str = ""
    processing_time_ms: int = 0

    @property
    def tokens_used(self) -> int:
        return self.tokens_input + self.tokens_output

    def to_cache_metadata(self) -> dict:
        data = asdict(self)
        data.pop("response")
        data["intent"] = self.intent.value
        return data

    @classmethod
    def from_cache(cls, cached: dict) -> "AIResult":
        metadata = cached.get("metadata") or {}
        try:
            intent = AIIntent(metadata.get("intent") or AIIntent.UNKNOWN.value)
        except ValueError:
            intent = AIIntent.UNKNOWN
        return cls(
            response=cached["ai_response"],
            intent=intent,
            signals=[AISignal(**s) for s in metadata.get("signals") or []],
            score_change=int(metadata.get("score_change") or 0),
            escalate=bool(metadata.get("escalate")),
            escalate_reason=metadata.get("escalate_reason"),
            tokens_input=int(metadata.get("tokens_input") or 0),
            tokens_output=int(metadata.get("tokens_output") or 0),
            model_used=metadata.get("model_used") or "cached",
        )


_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> LLMProvider:
    """Get or create the LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key or "", default_model=settings.openai_model)
    return _llm_provider


def detect_signals(message: str, scoring_rules: list[dict]) -> Tuple[List[AISignal], int]:
    """Each scoring rule contributes at most once, on its first matching keyword."""
    signals: List[AISignal] = []
    message_lower = message.lower()
    for rule in scoring_rules or []:
        for keyword in rule.get("keywords") or []:
            if keyword and keyword.lower() in message_lower:
                signals.append(AISignal(signal=rule.get("signal_name") or "", points=int(rule.get("points") or 0)))
                break
    return signals, sum(s.points for s in signals)


def detect_intent(message: str, signals: List[AISignal]) -> AIIntent:
    signal_names = [s.signal.lower() for s in signals]
    for intent, fragments in SIGNAL_INTENTS:
        if any(fragment in name for name in signal_names for fragment in fragments):
            return intent

    for intent, pattern in KEYWORD_INTENTS:
        if pattern.search(message):
            return intent
    return AIIntent.UNKNOWN


def should_escalate(
    intent: AIIntent,
    signals: List[AISignal],
    auto_escalate_keywords: list[str],
    message: str,
) -> Tuple[bool, Optional[str]]:
    if intent == AIIntent.HUMAN_REQUEST:
        return True, "Cliente solicitó hablar con un humano"
    if intent == AIIntent.PAIN_URGENT:
        return True, "Situación de dolor/urgencia detectada"

    message_lower = message.lower()
    for keyword in auto_escalate_keywords or []:
        if keyword and keyword.lower() in message_lower:
            return True, f"Keyword de escalación detectado: {keyword}"

    high_value = [s for s in signals if s.points >= HIGH_VALUE_SIGNAL_POINTS]
    if len(high_value) >= HIGH_VALUE_SIGNALS_TO_ESCALATE:
        return True, "Lead de alto valor detectado"
    return False, None


def build_system_prompt(tenant: Tenant) -> str:
    config = tenant.ai_config or {}
    business_name = config.get("business_name") or tenant.name
    style = STYLE_DESCRIPTIONS.get(config.get("response_style"), "profesional y amable")
    max_length = config.get("max_response_length") or DEFAULT_MAX_RESPONSE_LENGTH

    parts = [f"Eres el asistente virtual de {business_name}."]
    if config.get("system_prompt"):
        parts.append(config["system_prompt"])
    if config.get("custom_instructions"):
        parts.append(f"# INSTRUCCIONES DEL NEGOCIO\n{config['custom_instructions']}")
    parts.append(
        "# INSTRUCCIONES DE RESPUESTA\n"
        f"- Responde de manera {style}\n"
        f"- Máximo {max_length} caracteres por respuesta\n"
        "- NO uses emojis a menos que el cliente los use primero\n"
        "- Si no sabes algo con certeza, ofrece conectar con un asesor humano"
    )
    return "\n\n".join(parts)


def build_message_history(history: List[Message], current_message: str) -> List[dict]:
    messages = [
        {"role": "user" if m.sender_type == "lead" else "assistant", "content": m.content} for m in history
    ]
    messages.append({"role": "user", "content": current_message})
    return messages


def generate_ai_response(
    db: Session,
    tenant: Tenant,
    conversation: Conversation,
    current_message: str,
    *,
    current_message_ids: Optional[list] = None,
    provider: Optional[LLMProvider] = None,
) -> AIResult:
    """Classify the message and ask the model for a reply.

    Raises AIGenerationError when the provider fails.
    """
    started = time.monotonic()
    config = tenant.ai_config or {}

    signals, total_points = detect_signals(current_message, config.get("scoring_rules") or [])
    intent = detect_intent(current_message, signals)
    escalate, reason = should_escalate(intent, signals, config.get("auto_escalate_keywords") or [], current_message)

    history = get_recent_history(db, conversation.id, exclude_ids=current_message_ids)
    messages = [{"role": "system", "content": build_system_prompt(tenant)}]
    messages.extend(build_message_history(history, current_message))

    provider = provider or get_llm_provider()
    try:
        response = provider.generate(
            messages,
            temperature=float(config.get("temperature") or DEFAULT_TEMPERATURE),
            max_tokens=MAX_TOKENS,
            timeout_seconds=settings.ai_timeout_seconds,
        )
    except LLMError as exc:
        logger.error(
            "AI generation failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": str(exc)}},
        )
        raise AIGenerationError(str(exc)) from exc

    return AIResult(
        response=response.content.strip() or EMPTY_RESPONSE,
        intent=intent,
        signals=signals,
        score_change=total_points,
        escalate=escalate,
        escalate_reason=reason,
        tokens_input=response.prompt_tokens,
        tokens_output=response.completion_tokens,
        model_used=response.model,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )


def fallback_result(current_message: str) -> AIResult:
    """Reply used once retries are exhausted: apologise and hand over to a human."""
    signals: List[AISignal] = []
    return AIResult(
        response=FALLBACK_RESPONSE,
        intent=detect_intent(current_message, signals),
        escalate=True,
        escalate_reason=AI_UNAVAILABLE_REASON,
        model_used="fallback",
    )


def log_ai_usage(db: Session, tenant_id: UUID, conversation_id: UUID, result: AIResult) -> None:
    db.add(
        AIUsageLog(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            model_used=result.model_used,
            tokens_input=result.tokens_input,
            tokens_output=result.tokens_output,
            processing_time_ms=result.processing_time_ms,
            intent_detected=result.intent.value,
            escalated=result.escalate,
            usage_metadata={
                "signals": [asdict(s) for s in result.signals],
                "score_change": result.score_change,
            },
        )
    )
    db.flush()


def classify_score(score: int) -> str:
    if score >= HOT_SCORE:
        return "hot"
    if score >= WARM_SCORE:
        return "warm"
    return "cold"


def update_lead_score(db: Session, lead_id: UUID, signals: List[AISignal], conversation_id: UUID) -> Optional[int]:
    """Apply signal points to the lead score, clamped to 0..100, and record each change."""
    if not signals:
        return None

    lead = db.query(Lead).filter(Lead.id == lead_id).with_for_update().first()
    if not lead:
        logger.warning("Lead not found for score update", extra={"context": {"lead_id": str(lead_id)}})
        return None

    score = lead.score if lead.score is not None else 50
    for signal in signals:
        new_score = max(0, min(100, score + signal.points))
        db.add(
            LeadScoreHistory(
                lead_id=lead.id,
                conversation_id=conversation_id,
                previous_score=score,
                new_score=new_score,
                score_change=signal.points,
                signal_name=signal.signal,
                change_source="ai_detection",
            )
        )
        score = new_score

    lead.score = score
    lead.classification = classify_score(score)
    db.flush()
    return score
