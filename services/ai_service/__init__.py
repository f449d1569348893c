"""
AI service - generation requests, the streaming envelope protocol and the model catalog.
"""

from .models import (
    GenerationRequest,
    StartEvent,
    DeltaEvent,
    ReasoningEvent,
    CompleteEvent,
    ErrorEvent,
    StreamEvent,
    encode_envelope
)
from .stream_decoder import StreamDecoder, parse_envelope
from .model_catalog import DEFAULT_MODEL, ModelInfo, get_model_info, list_models, supports_reasoning

__all__ = [
    'GenerationRequest',
    'StartEvent',
    'DeltaEvent',
    'ReasoningEvent',
    'CompleteEvent',
    'ErrorEvent',
    'StreamEvent',
    'encode_envelope',
    'StreamDecoder',
    'parse_envelope',
    'DEFAULT_MODEL',
    'ModelInfo',
    'get_model_info',
    'list_models',
    'supports_reasoning'
]
