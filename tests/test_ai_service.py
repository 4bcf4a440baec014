from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from tistis_messaging.models import AIUsageLog, Conversation, Lead, LeadScoreHistory, Message, Tenant
from tistis_messaging.services.ai_service import (
    AI_UNAVAILABLE_REASON,
    EMPTY_RESPONSE,
    AIGenerationError,
    AIIntent,
    AIResult,
    AISignal,
    build_message_history,
    build_system_prompt,
    classify_score,
    detect_intent,
    detect_signals,
    fallback_result,
    generate_ai_response,
    log_ai_usage,
    should_escalate,
    update_lead_score,
)
from tistis_messaging.services.llm import LLMError, LLMResponse

SCORING_RULES = [
    {"signal_name": "precio_consulta", "keywords": ["precio", "cuanto cuesta"], "points": 10},
    {"signal_name": "cita_solicitud", "keywords": ["cita", "agendar"], "points": 20},
    {"signal_name": "implantes_interes", "keywords": ["implante"], "points": 15},
]


def _tenant(**ai_config):
    return Tenant(id=uuid4(), name="Clinica Sol", slug="clinica-sol", status="active", ai_config=ai_config)


class TestDetectSignals:
    def test_each_rule_counts_once(self):
        signals, total = detect_signals("Precio? cuanto cuesta el implante?", SCORING_RULES)

        assert [s.signal for s in signals] == ["precio_consulta", "implantes_interes"]
        assert total == 25

    def test_no_rules(self):
        assert detect_signals("hola", []) == ([], 0)


class TestDetectIntent:
    def test_signal_names_take_priority(self):
        signals = [AISignal(signal="cita_solicitud", points=20)]
        assert detect_intent("hola", signals) == AIIntent.BOOK_APPOINTMENT

    @pytest.mark.parametrize(
        "message,intent",
        [
            ("Buenos dias", AIIntent.GREETING),
            ("Me puede dar una cotizacion", AIIntent.PRICE_INQUIRY),
            ("Me duele la muela", AIIntent.PAIN_URGENT),
            ("Quiero hablar con una persona", AIIntent.HUMAN_REQUEST),
            ("Donde estan ubicados", AIIntent.LOCATION),
            ("ok gracias", AIIntent.UNKNOWN),
        ],
    )
    def test_keywords(self, message, intent):
        assert detect_intent(message, []) == intent


class TestShouldEscalate:
    def test_human_request(self):
        escalate, reason = should_escalate(AIIntent.HUMAN_REQUEST, [], [], "asesor")
        assert escalate is True
        assert "humano" in reason

    def test_pain(self):
        assert should_escalate(AIIntent.PAIN_URGENT, [], [], "dolor")[0] is True

    def test_tenant_keyword(self):
        escalate, reason = should_escalate(AIIntent.UNKNOWN, [], ["queja"], "Tengo una QUEJA")
        assert escalate is True
        assert "queja" in reason

    def test_two_high_value_signals(self):
        signals = [AISignal("cita_solicitud", 20), AISignal("implantes_interes", 15)]
        assert should_escalate(AIIntent.BOOK_APPOINTMENT, signals, [], "")[0] is True

    def test_single_signal_does_not_escalate(self):
        assert should_escalate(AIIntent.PRICE_INQUIRY, [AISignal("precio_consulta", 10)], [], "precio") == (False, None)


class TestPrompt:
    def test_system_prompt_uses_config(self):
        tenant = _tenant(business_name="Dental Sol", response_style="casual", custom_instructions="Ofrece la promo")

        prompt = build_system_prompt(tenant)

        assert "Dental Sol" in prompt
        assert "informal y cercano" in prompt
        assert "Ofrece la promo" in prompt
        assert "300 caracteres" in prompt

    def test_system_prompt_defaults_to_tenant_name(self):
        assert "Clinica Sol" in build_system_prompt(_tenant())

    def test_history_roles(self):
        history = [Message(sender_type="lead", content="Hola"), Message(sender_type="ai", content="Hola!")]

        messages = build_message_history(history, "precio?")

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "precio?"


class TestGenerateAIResponse:
    @patch("tistis_messaging.services.ai_service.get_recent_history", return_value=[])
    def test_returns_result(self, mock_history, db_session):
        provider = MagicMock()
        provider.generate.return_value = LLMResponse(
            content=" Claro, la limpieza cuesta $500 ",
            model="gpt-5-mini",
            usage={"prompt_tokens": 200, "completion_tokens": 40},
        )
        conversation = Conversation(id=uuid4())
        message_ids = [uuid4()]

        result = generate_ai_response(
            db_session,
            _tenant(scoring_rules=SCORING_RULES),
            conversation,
            "cuanto cuesta la limpieza",
            current_message_ids=message_ids,
            provider=provider,
        )

        assert result.response == "Claro, la limpieza cuesta $500"
        assert result.intent == AIIntent.PRICE_INQUIRY
        assert result.score_change == 10
        assert result.tokens_used == 240
        assert result.escalate is False
        mock_history.assert_called_once_with(db_session, conversation.id, exclude_ids=message_ids)
        messages = provider.generate.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "cuanto cuesta la limpieza"}
        assert provider.generate.call_args[1]["max_tokens"] == 500

    @patch("tistis_messaging.services.ai_service.get_recent_history", return_value=[])
    def test_empty_completion_uses_default_text(self, mock_history, db_session):
        provider = MagicMock()
        provider.generate.return_value = LLMResponse(content="", model="gpt-5-mini")

        result = generate_ai_response(db_session, _tenant(), Conversation(id=uuid4()), "hola", provider=provider)

        assert result.response == EMPTY_RESPONSE

    @patch("tistis_messaging.services.ai_service.get_recent_history", return_value=[])
    def test_provider_error_raises(self, mock_history, db_session):
        provider = MagicMock()
        provider.generate.side_effect = LLMError("OpenAI API error: 503")

        with pytest.raises(AIGenerationError):
            generate_ai_response(db_session, _tenant(), Conversation(id=uuid4()), "hola", provider=provider)


class TestAIResultCache:
    def test_cache_metadata_restores_result(self):
        result = AIResult(
            response="Hola",
            intent=AIIntent.PRICE_INQUIRY,
            signals=[AISignal("precio_consulta", 10)],
            score_change=10,
            tokens_input=100,
            tokens_output=20,
            model_used="gpt-5-mini",
        )

        restored = AIResult.from_cache({"ai_response": "Hola", "metadata": result.to_cache_metadata()})

        assert restored.intent == AIIntent.PRICE_INQUIRY
        assert restored.signals == [AISignal("precio_consulta", 10)]
        assert restored.tokens_used == 120

    def test_unknown_cached_intent(self):
        restored = AIResult.from_cache({"ai_response": "Hola", "metadata": {"intent": "NOPE"}})
        assert restored.intent == AIIntent.UNKNOWN
        assert restored.model_used == "cached"


class TestFallback:
    def test_fallback_escalates(self):
        result = fallback_result("quiero una cita")

        assert result.escalate is True
        assert result.escalate_reason == AI_UNAVAILABLE_REASON
        assert result.model_used == "fallback"
        assert result.intent == AIIntent.BOOK_APPOINTMENT


class TestUsageAndScore:
    def test_log_ai_usage(self, db_session):
        result = AIResult(response="x", intent=AIIntent.GREETING, tokens_input=5, tokens_output=3, model_used="m")

        log_ai_usage(db_session, uuid4(), uuid4(), result)

        entry = db_session.add.call_args[0][0]
        assert isinstance(entry, AIUsageLog)
        assert entry.intent_detected == "GREETING"
        assert entry.tokens_input == 5

    @pytest.mark.parametrize("score,classification", [(85, "hot"), (80, "hot"), (50, "warm"), (39, "cold")])
    def test_classify_score(self, score, classification):
        assert classify_score(score) == classification

    def test_update_lead_score_clamps_and_records(self, db_session):
        lead = Lead(id=uuid4(), score=90, classification="hot")
        db_session.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = lead

        score = update_lead_score(
            db_session, lead.id, [AISignal("cita_solicitud", 20), AISignal("implantes_interes", 15)], uuid4()
        )

        assert score == 100
        assert lead.score == 100
        assert lead.classification == "hot"
        history = [c[0][0] for c in db_session.add.call_args_list]
        assert all(isinstance(h, LeadScoreHistory) for h in history)
        assert [(h.previous_score, h.new_score) for h in history] == [(90, 100), (100, 100)]

    def test_update_lead_score_negative(self, db_session):
        lead = Lead(id=uuid4(), score=None)
        db_session.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = lead

        assert update_lead_score(db_session, lead.id, [AISignal("spam", -20)], uuid4()) == 30
        assert lead.classification == "cold"

    def test_no_signals(self, db_session):
        assert update_lead_score(db_session, uuid4(), [], uuid4()) is None
        db_session.query.assert_not_called()
