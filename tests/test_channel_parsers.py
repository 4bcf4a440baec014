import pytest

from tistis_messaging.services.channels import extract_batches
from tistis_messaging.services.channels.meta import parse_event
from tistis_messaging.services.channels.tiktok import parse_payload
from tistis_messaging.services.channels.whatsapp import normalize_phone


def whatsapp_payload(messages=None, statuses=None, contacts=None, field="messages"):
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": "PNID-1"},
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    if contacts is not None:
        value["contacts"] = contacts
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": field, "value": value}]}],
    }


class TestNormalizePhone:
    def test_adds_plus(self):
        assert normalize_phone("5215512345678") == "+5215512345678"

    def test_strips_formatting(self):
        assert normalize_phone("+52 (155) 1234-5678") == "+5215512345678"


class TestWhatsAppParsing:
    def test_text_message(self):
        payload = whatsapp_payload(
            messages=[{"from": "5215512345678", "id": "wamid.A", "timestamp": "1700000000", "type": "text", "text": {"body": "Hola"}}],
            contacts=[{"wa_id": "5215512345678", "profile": {"name": "Ana"}}],
        )

        batches = extract_batches("whatsapp", payload)

        assert len(batches) == 1
        batch = batches[0]
        assert batch.account_id == "PNID-1"
        message = batch.messages[0]
        assert message.sender_id == "+5215512345678"
        assert message.external_id == "wamid.A"
        assert message.content == "Hola"
        assert message.contact_name == "Ana"
        assert message.timestamp.year == 2023
        assert message.metadata["phone_number_id"] == "PNID-1"

    def test_image_uses_caption_and_media(self):
        payload = whatsapp_payload(
            messages=[{"from": "521", "id": "wamid.B", "type": "image", "image": {"id": "MEDIA-1", "caption": "Mi foto"}}]
        )

        message = extract_batches("whatsapp", payload)[0].messages[0]

        assert message.content == "Mi foto"
        assert message.media_id == "MEDIA-1"
        assert message.media_type == "image/jpeg"

    def test_audio_placeholder(self):
        payload = whatsapp_payload(messages=[{"from": "521", "id": "wamid.C", "type": "audio", "audio": {"id": "M"}}])
        assert extract_batches("whatsapp", payload)[0].messages[0].content == "[Audio recibido]"

    def test_location_with_name(self):
        payload = whatsapp_payload(
            messages=[
                {
                    "from": "521",
                    "id": "wamid.D",
                    "type": "location",
                    "location": {"name": "Clinica", "address": "Av. Reforma 1", "latitude": 1, "longitude": 2},
                }
            ]
        )
        assert extract_batches("whatsapp", payload)[0].messages[0].content == "[Ubicacion: Clinica - Av. Reforma 1]"

    def test_interactive_reply(self):
        payload = whatsapp_payload(
            messages=[
                {"from": "521", "id": "wamid.E", "type": "interactive", "interactive": {"button_reply": {"id": "b1", "title": "Agendar"}}}
            ]
        )
        assert extract_batches("whatsapp", payload)[0].messages[0].content == "Agendar"

    def test_unknown_type_placeholder(self):
        payload = whatsapp_payload(messages=[{"from": "521", "id": "wamid.F", "type": "order", "order": {}}])
        assert extract_batches("whatsapp", payload)[0].messages[0].content == "[Mensaje tipo order]"

    def test_reply_context(self):
        payload = whatsapp_payload(
            messages=[{"from": "521", "id": "wamid.G", "type": "text", "text": {"body": "si"}, "context": {"id": "wamid.prev"}}]
        )
        message = extract_batches("whatsapp", payload)[0].messages[0]
        assert message.metadata["is_reply"] is True
        assert message.metadata["reply_to_message_id"] == "wamid.prev"

    def test_status_updates(self):
        payload = whatsapp_payload(
            statuses=[
                {"id": "wamid.out", "status": "delivered", "timestamp": "1700000000"},
                {"id": "wamid.out2", "status": "failed", "errors": [{"title": "Re-engagement message"}]},
                {"id": "wamid.out3", "status": "deleted"},
            ]
        )

        statuses = extract_batches("whatsapp", payload)[0].statuses

        assert [s.status for s in statuses] == ["delivered", "failed", "unknown"]
        assert statuses[1].error_message == "Re-engagement message"
        assert statuses[2].timestamp is None

    def test_ignores_non_message_fields(self):
        payload = whatsapp_payload(messages=[], field="account_update")
        assert extract_batches("whatsapp", payload) == []


class TestMetaParsing:
    def _event(self, **overrides):
        event = {
            "sender": {"id": "PSID-1"},
            "recipient": {"id": "PAGE-1"},
            "timestamp": 1700000000000,
            "message": {"mid": "m_1", "text": "Hola"},
        }
        event.update(overrides)
        return event

    def test_text_message(self):
        payload = {"object": "instagram", "entry": [{"id": "PAGE-1", "messaging": [self._event()]}]}

        batches = extract_batches("instagram", payload)

        assert batches[0].account_id == "PAGE-1"
        message = batches[0].messages[0]
        assert message.channel == "instagram"
        assert message.sender_id == "PSID-1"
        assert message.external_id == "m_1"
        assert message.content == "Hola"

    def test_echo_is_skipped(self):
        event = self._event(message={"mid": "m_2", "text": "eco", "is_echo": True})
        assert parse_event("facebook", event, "PAGE-1") is None

    def test_postback_uses_title_and_synthetic_id(self):
        event = {"sender": {"id": "PSID-1"}, "timestamp": 1700000000000, "postback": {"title": "Ver precios", "payload": "PRICES"}}

        message = parse_event("facebook", event, "PAGE-1")

        assert message.message_type == "postback"
        assert message.content == "Ver precios"
        assert message.external_id == "postback_PAGE-1_PSID-1_1700000000000"

    def test_synthetic_ids_differ_per_sender(self):
        first = {"sender": {"id": "PSID-1"}, "timestamp": 1700000000000, "postback": {"payload": "PRICES"}}
        second = {"sender": {"id": "PSID-2"}, "timestamp": 1700000000000, "reaction": {"emoji": "\u2764"}}

        ids = {
            parse_event("facebook", first, "PAGE-1").external_id,
            parse_event("facebook", second, "PAGE-1").external_id,
            parse_event("facebook", first, "PAGE-2").external_id,
        }

        assert len(ids) == 3

    def test_quick_reply(self):
        event = self._event(message={"mid": "m_3", "text": "Si", "quick_reply": {"payload": "YES"}})
        message = parse_event("instagram", event, "PAGE-1")
        assert message.message_type == "quick_reply"
        assert message.content == "Si"

    def test_story_mention(self):
        event = self._event(
            message={"mid": "m_4", "attachments": [{"type": "story_mention", "payload": {"story_url": "https://cdn/story"}}]}
        )

        message = parse_event("instagram", event, "PAGE-1")

        assert message.content == "[Te mencionaron en una historia]"
        assert message.metadata["is_story_mention"] is True
        assert message.metadata["story_url"] == "https://cdn/story"

    def test_image_attachment(self):
        event = self._event(message={"mid": "m_5", "attachments": [{"type": "image", "payload": {"url": "https://cdn/img"}}]})

        message = parse_event("instagram", event, "PAGE-1")

        assert message.content == "[Imagen recibida]"
        assert message.media_url == "https://cdn/img"

    def test_empty_event_is_skipped(self):
        assert parse_event("facebook", {"sender": {"id": "1"}, "delivery": {}}, "PAGE-1") is None


class TestTikTokParsing:
    def _payload(self, **content):
        body = {"open_id": "OPEN-1", "message_id": "tt_1", "message_type": "text", "message_content": {"text": "hola"}}
        body.update(content)
        return {"event": "direct_message.receive", "client_key": "CK-1", "create_time": 1700000000, "content": body}

    def test_text_message(self):
        batches = extract_batches("tiktok", self._payload())

        assert batches[0].account_id == "CK-1"
        message = batches[0].messages[0]
        assert message.sender_id == "OPEN-1"
        assert message.external_id == "tt_1"
        assert message.content == "hola"

    def test_other_events_are_ignored(self):
        payload = self._payload()
        payload["event"] = "authorization.removed"
        assert parse_payload(payload) is None
        assert extract_batches("tiktok", payload)[0].messages == []

    def test_shared_video(self):
        message = parse_payload(
            self._payload(message_type="share", message_content={"shared_video_id": "v1", "shared_video_url": "https://tt/v1"})
        )

        assert message.content == "[Video de TikTok compartido]"
        assert message.metadata["is_shared_video"] is True
        assert message.metadata["shared_video_id"] == "v1"

    def test_missing_ids(self):
        assert parse_payload(self._payload(open_id=None)) is None


class TestDispatcher:
    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            extract_batches("telegram", {})
