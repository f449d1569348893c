"""
Tests for the stream decoder
"""

import asyncio

from fakes import COMPLETE, START, START_REASONING, delta, envelope, error
from services.ai_service.models import CompleteEvent, DeltaEvent, ErrorEvent, ReasoningEvent, StartEvent
from services.ai_service.stream_decoder import StreamDecoder, parse_envelope


async def _chunks(items):
    for item in items:
        yield item


def decode(items):
    async def collect():
        return [event async for event in StreamDecoder().decode(_chunks(items))]
    return asyncio.run(collect())


class TestParseEnvelope:
    """Test single-line parsing"""

    def test_known_types(self):
        assert parse_envelope('{"type": "start", "supportsReasoning": true}') == StartEvent(supports_reasoning=True)
        assert parse_envelope('{"type": "delta", "content": "Hi"}') == DeltaEvent(content="Hi")
        assert parse_envelope('{"type": "reasoning", "content": "hmm"}') == ReasoningEvent(content="hmm")
        assert isinstance(parse_envelope('{"type": "complete"}'), CompleteEvent)

    def test_error_accepts_error_or_message_key(self):
        assert parse_envelope('{"type": "error", "error": "boom"}').error_message == "boom"
        assert parse_envelope('{"type": "error", "message": "bang"}').error_message == "bang"
        assert parse_envelope('{"type": "error"}').error_message == "Unknown error"

    def test_malformed_lines_return_none(self):
        assert parse_envelope("") is None
        assert parse_envelope("   ") is None
        assert parse_envelope("{broken") is None
        assert parse_envelope('{"type": "unknown"}') is None
        assert parse_envelope('["delta"]') is None

    def test_extra_fields_are_ignored(self):
        event = parse_envelope('{"type": "delta", "content": "x", "id": 42}')
        assert event == DeltaEvent(content="x")


class TestStreamDecoder:
    """Test chunked decoding"""

    def test_envelopes_combined_in_one_chunk(self):
        events = decode([START + delta("a") + delta("b") + COMPLETE])

        assert [e.type for e in events] == ["start", "delta", "delta", "complete"]

    def test_envelope_split_across_chunks(self):
        payload = delta("Hello") + COMPLETE
        events = decode([payload[:5], payload[5:13], payload[13:]])

        assert events[0] == DeltaEvent(content="Hello")
        assert isinstance(events[1], CompleteEvent)

    def test_multibyte_character_split_across_chunks(self):
        payload = delta("été ☀")
        split = payload.index("☀".encode("utf-8")) + 1
        events = decode([payload[:split], payload[split:]])

        assert events == [DeltaEvent(content="été ☀")]

    def test_text_chunks_are_accepted(self):
        events = decode(['{"type": "delta", "content": "a"}\n{"type":', ' "complete"}\n'])

        assert [e.type for e in events] == ["delta", "complete"]

    def test_malformed_line_between_valid_deltas(self):
        events = decode([delta("foo"), b"garbage\n", delta("bar"), COMPLETE])

        assert [e.content for e in events if isinstance(e, DeltaEvent)] == ["foo", "bar"]

    def test_stops_after_terminal_event(self):
        events = decode([START + error("boom") + delta("after")])

        assert [e.type for e in events] == ["start", "error"]
        assert isinstance(events[-1], ErrorEvent)

    def test_trailing_envelope_without_newline(self):
        events = decode([delta("x"), b'{"type": "complete"}'])

        assert [e.type for e in events] == ["delta", "complete"]

    def test_end_of_data_without_terminal_event(self):
        events = decode([START_REASONING, envelope("reasoning", content="r")])

        assert [e.type for e in events] == ["start", "reasoning"]

    def test_decoder_is_reusable(self):
        decoder = StreamDecoder()

        async def collect(items):
            return [event async for event in decoder.decode(_chunks(items))]

        first = asyncio.run(collect([delta("one")[:4]]))
        second = asyncio.run(collect([delta("two")]))

        assert first == []
        assert second == [DeltaEvent(content="two")]
