"""
Tests for chat data models and the model catalog
"""

from services.ai_service.model_catalog import get_model_info, list_models, supports_reasoning
from services.ai_service.models import ErrorEvent, StartEvent, encode_envelope
from services.chat_service.models import (
    USER,
    Attachment,
    AttachmentKind,
    Lease,
    Message,
    SessionState,
    SessionStatus,
    StreamSession,
    build_user_content,
)


class TestMessages:

    def test_plain_text_without_attachments(self):
        assert build_user_content("hello", []) == "hello"

    def test_attachments_only(self):
        content = build_user_content("   ", [
            Attachment(url="https://img/cat.png", name="cat.png", size=3, kind=AttachmentKind.IMAGE),
        ])

        assert len(content) == 1
        assert Message(role=USER, content=content).to_wire()["content"] == [
            {"type": "image_url", "image_url": {"url": "https://img/cat.png"}, "name": "cat.png"},
        ]

    def test_wire_format_omits_local_fields(self):
        message = Message(role="assistant", content="hi", reasoning="why", is_streaming=True)

        assert message.to_wire() == {"role": "assistant", "content": "hi"}
        assert message.to_wire(include_reasoning=True)["reasoning"] == "why"
        assert Message.from_wire({"role": "assistant", "content": "hi", "reasoning": "why"}).reasoning == "why"

    def test_session_status_derived_from_state(self):
        session = StreamSession(conversation_id="c1", message_index=1, lease=Lease("c1", 1, 1), model_id="m")

        assert session.status == SessionStatus.ACTIVE
        session.state = SessionState.RETRYING
        assert session.status == SessionStatus.ACTIVE
        session.state = SessionState.FINALIZED
        assert session.status == SessionStatus.FINALIZING
        assert session.is_terminal
        session.state = SessionState.STOPPED
        assert session.status == SessionStatus.STOPPED


class TestEnvelopes:

    def test_encode_uses_wire_names(self):
        assert encode_envelope(StartEvent(supports_reasoning=True)) == b'{"type":"start","supportsReasoning":true}\n'
        assert encode_envelope(ErrorEvent(message="boom")) == b'{"type":"error","error":"boom"}\n'


class TestModelCatalog:

    def test_known_model(self):
        info = get_model_info("google/gemini-2.5-pro-preview")

        assert info.name == "Gemini 2.5 Pro Preview"
        assert info.supports_reasoning is True
        assert info.supports_images is True

    def test_unknown_model_gets_derived_name(self):
        info = get_model_info("anthropic/claude-3.5-sonnet:beta")

        assert info.name == "Claude 3.5 Sonnet"
        assert info.provider == "User"
        assert supports_reasoning("anthropic/claude-3.5-sonnet:beta") is False

    def test_catalog_lists_every_model(self):
        assert len(list_models()) == 12
