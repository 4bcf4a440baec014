from datetime import datetime, timezone
from uuid import uuid4

from tistis_messaging.models import ChannelConnection, Conversation, Lead, Tenant
from tistis_messaging.services.conversation_service import (
    find_or_create_conversation,
    find_or_create_lead,
    get_tenant_context,
    is_generic_name,
)


def _connection(ai_enabled=True):
    return ChannelConnection(id=uuid4(), channel="whatsapp", status="connected", ai_enabled=ai_enabled)


class TestGetTenantContext:
    def test_returns_context(self, db_session):
        tenant = Tenant(id=uuid4(), slug="clinica-sol", status="active")
        connection = _connection()
        db_session.query.return_value.filter.return_value.first.side_effect = [tenant, connection]

        context = get_tenant_context(db_session, "clinica-sol", "whatsapp", "PNID-1")

        assert context.tenant is tenant
        assert context.connection is connection
        assert context.tenant_id == tenant.id
        assert context.ai_enabled is True

    def test_unknown_tenant(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert get_tenant_context(db_session, "nope", "whatsapp", "PNID-1") is None

    def test_unknown_connection(self, db_session):
        tenant = Tenant(id=uuid4(), slug="clinica-sol", status="active")
        db_session.query.return_value.filter.return_value.first.side_effect = [tenant, None]
        assert get_tenant_context(db_session, "clinica-sol", "tiktok", "CK") is None


class TestGenericNames:
    def test_generic(self):
        assert is_generic_name(None)
        assert is_generic_name("Desconocido")
        assert is_generic_name("  usuario tiktok ")
        assert not is_generic_name("Ana")


class TestFindOrCreateLead:
    def test_creates_lead_with_channel_identifier(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        tenant_id = uuid4()

        lead, is_new = find_or_create_lead(
            db_session,
            tenant_id=tenant_id,
            branch_id=None,
            channel="instagram",
            identifier="PSID-1",
            contact_name=None,
        )

        assert is_new is True
        assert lead.instagram_psid == "PSID-1"
        assert lead.phone_normalized is None
        assert lead.name == "Desconocido"
        assert lead.source == "instagram"
        assert lead.score == 50
        db_session.add.assert_called_once_with(lead)
        lock_params = db_session.execute.call_args[0][1]
        assert lock_params == {"key": f"lead:{tenant_id}:instagram:PSID-1"}

    def test_existing_lead_gets_real_name(self, db_session):
        existing = Lead(id=uuid4(), name="Desconocido", phone_normalized="+521")
        db_session.query.return_value.filter.return_value.first.return_value = existing

        lead, is_new = find_or_create_lead(
            db_session, tenant_id=uuid4(), branch_id=None, channel="whatsapp", identifier="+521", contact_name="Ana"
        )

        assert is_new is False
        assert lead is existing
        assert lead.name == "Ana"
        assert lead.last_interaction_at is not None
        db_session.add.assert_not_called()

    def test_existing_name_is_kept(self, db_session):
        existing = Lead(id=uuid4(), name="Ana Lopez")
        db_session.query.return_value.filter.return_value.first.return_value = existing

        lead, _ = find_or_create_lead(
            db_session, tenant_id=uuid4(), branch_id=None, channel="whatsapp", identifier="+521", contact_name="Ana"
        )

        assert lead.name == "Ana Lopez"


class TestFindOrCreateConversation:
    def _latest(self, db_session, conversation):
        db_session.query.return_value.filter.return_value.order_by.return_value.first.return_value = conversation

    def _resolve(self, db_session, connection=None):
        return find_or_create_conversation(
            db_session,
            tenant_id=uuid4(),
            branch_id=None,
            lead_id=uuid4(),
            channel="whatsapp",
            connection=connection or _connection(),
        )

    def test_reuses_active_conversation(self, db_session):
        active = Conversation(id=uuid4(), status="active", ai_handling=True)
        self._latest(db_session, active)

        resolution = self._resolve(db_session)

        assert resolution.conversation is active
        assert resolution.is_new is False
        assert resolution.was_reopened is False
        assert active.last_message_at is not None

    def test_reopens_resolved_conversation(self, db_session):
        resolved = Conversation(id=uuid4(), status="resolved", ai_handling=False, escalation_reason="old")
        self._latest(db_session, resolved)

        resolution = self._resolve(db_session)

        assert resolution.was_reopened is True
        assert resolved.status == "active"
        assert resolved.ai_handling is True
        assert resolved.escalation_reason is None

    def test_escalated_conversation_starts_new_thread(self, db_session):
        escalated = Conversation(id=uuid4(), status="escalated", ai_handling=False)
        self._latest(db_session, escalated)

        resolution = self._resolve(db_session)

        assert resolution.is_new is True
        assert resolution.conversation is not escalated
        db_session.add.assert_called_once_with(resolution.conversation)

    def test_new_conversation_follows_connection_ai_setting(self, db_session):
        self._latest(db_session, None)
        connection = _connection(ai_enabled=False)

        resolution = self._resolve(db_session, connection)

        conversation = resolution.conversation
        assert conversation.status == "active"
        assert conversation.ai_handling is False
        assert conversation.channel_connection_id == connection.id
        assert conversation.message_count == 0
        assert conversation.started_at <= datetime.now(timezone.utc)
