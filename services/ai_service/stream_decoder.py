"""
Stream decoder - turns a chunked byte stream of newline-delimited envelopes into typed events.
"""

import codecs
import json
from typing import AsyncIterable, AsyncIterator, Optional, Union

from pydantic import ValidationError

from services.ai_service.models import STREAM_EVENT_ADAPTER, StreamEvent, TERMINAL_EVENTS
from infrastructure.monitoring.logging_service import get_logger

logger = get_logger(__name__)


def parse_envelope(line: str) -> Optional[StreamEvent]:
    """
    Parse one complete envelope line

    Returns:
        The typed event, or None when the line is blank, not JSON, or not a known envelope
    """
    line = line.strip()
    if not line:
        return None

    try:
        return STREAM_EVENT_ADAPTER.validate_python(json.loads(line))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Skipping malformed envelope: {line[:200]!r} ({e.__class__.__name__})")
        return None


class StreamDecoder:
    """
    Decoder for the streaming gateway protocol.

    Each call to decode() owns its own line buffer, so a single decoder can serve
    any number of streams one after another.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    async def decode(self, chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[StreamEvent]:
        """
        Yield events from a chunked transport until it ends or a terminal event is seen

        Args:
            chunks: Network chunks; envelopes may be split across or combined within them
        """
        text_decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        buffer = ""

        async for chunk in chunks:
            if isinstance(chunk, bytes):
                buffer += text_decoder.decode(chunk)
            else:
                buffer += chunk

            *lines, buffer = buffer.split("\n")
            for line in lines:
                event = parse_envelope(line)
                if event is None:
                    continue
                yield event
                if isinstance(event, TERMINAL_EVENTS):
                    return

        # Last envelope may arrive without a trailing newline
        buffer += text_decoder.decode(b"", final=True)
        event = parse_envelope(buffer)
        if event is not None:
            yield event
