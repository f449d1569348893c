"""
Catalog of models offered by the chat gateway.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List


DEFAULT_MODEL = "google/gemini-2.0-flash-001"


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    name: str
    provider: str
    features: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def supports_reasoning(self) -> bool:
        return "reasoning" in self.features

    @property
    def supports_images(self) -> bool:
        return "image_input" in self.features


def _model(model_id: str, name: str, provider: str, *features: str) -> ModelInfo:
    return ModelInfo(model_id=model_id, name=name, provider=provider, features=frozenset(features))


MODELS: Dict[str, ModelInfo] = {
    info.model_id: info for info in [
        _model("google/gemini-2.0-flash-001", "Gemini 2.0 Flash", "Google", "image_input", "featured"),
        _model("openai/gpt-4o-mini", "GPT-4o Mini", "OpenAI", "image_input"),
        _model("google/gemini-2.5-flash-preview-05-20", "Gemini 2.5 Flash Preview", "Google",
               "popular", "image_input", "reasoning"),
        _model("google/gemini-2.5-pro-preview", "Gemini 2.5 Pro Preview", "Google",
               "popular", "image_input", "coding", "reasoning"),
        _model("qwen/qwen2.5-vl-72b-instruct:free", "Qwen 2.5 VL 72B Instruct", "Qwen", "free"),
        _model("qwen/qwen-2.5-coder-32b-instruct:free", "Qwen 2.5 Coder 32B Instruct", "Qwen", "coding", "free"),
        _model("deepseek/deepseek-r1-0528-qwen3-8b:free", "DeepSeek R1 0528 Qwen3 8B", "DeepSeek",
               "coding", "free", "reasoning"),
        _model("deepseek/deepseek-r1-0528:free", "DeepSeek R1 0528", "DeepSeek", "coding", "free", "reasoning"),
        _model("deepseek/deepseek-chat-v3-0324:free", "DeepSeek V3 0324", "DeepSeek", "coding", "free"),
        _model("meta-llama/llama-3.3-8b-instruct:free", "Llama 3.3 8B Instruct", "Meta", "free"),
        _model("anthropic/claude-3-haiku", "Claude 3 Haiku", "Anthropic", "image_input"),
        _model("openai/gpt-4.1-nano", "GPT-4.1 Nano", "OpenAI", "image_input"),
    ]
}


def get_model_info(model_id: str) -> ModelInfo:
    """Look up a model, deriving a readable entry for ids outside the catalog"""
    if model_id in MODELS:
        return MODELS[model_id]

    slug = model_id.split("/")[-1].split(":")[0]
    # "claude-3.5-sonnet" -> "Claude 3.5 Sonnet"
    name = " ".join(word[:1].upper() + word[1:] for word in slug.split("-") if word)
    return ModelInfo(model_id=model_id, name=name or model_id, provider="User")


def supports_reasoning(model_id: str) -> bool:
    return get_model_info(model_id).supports_reasoning


def list_models() -> List[ModelInfo]:
    return list(MODELS.values())
