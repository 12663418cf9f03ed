"""Maps retired completion and embedding models onto current ones."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class UseCase(str, Enum):
    CHAT = "chat"
    REASONING = "reasoning"
    EMBEDDING = "embedding"
    COST_OPTIMIZED = "cost-optimized"


@dataclass(frozen=True)
class ModelMapping:
    legacy_model: str
    modern_model: str
    use_case: UseCase
    reasoning: str = ""


DEFAULT_CHAT_MODEL = "gpt-4.1"
DEFAULT_REASONING_MODEL = "o1"
COST_OPTIMIZED_REASONING_MODEL = "o1-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

_CHAT = "High-quality chat completion"
_SIMPLE = "Cost-optimized for simple tasks"

MODEL_MAPPINGS: List[ModelMapping] = [
    ModelMapping("text-davinci-003", "gpt-4.1", UseCase.CHAT, _CHAT),
    ModelMapping("text-davinci-002", "gpt-4.1", UseCase.CHAT, _CHAT),
    ModelMapping("text-davinci-001", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, "Cost-optimized chat"),
    ModelMapping("davinci", "gpt-4.1", UseCase.CHAT, _CHAT),
    ModelMapping("text-curie-001", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("text-babbage-001", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("text-ada-001", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("curie", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("babbage", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("ada", "gpt-4.1-mini", UseCase.COST_OPTIMIZED, _SIMPLE),
    ModelMapping("text-embedding-ada-002", "text-embedding-3-large", UseCase.EMBEDDING, "High-quality embeddings"),
    ModelMapping("text-search-ada-doc-001", "text-embedding-3-small", UseCase.EMBEDDING, "Cost-optimized embeddings"),
    ModelMapping("text-search-ada-query-001", "text-embedding-3-small", UseCase.EMBEDDING, "Cost-optimized embeddings"),
]

_MAPPINGS_BY_MODEL: Dict[str, ModelMapping] = {m.legacy_model: m for m in MODEL_MAPPINGS}

REASONING_KEYWORDS = (
    "reasoning",
    "logic",
    "math",
    "problem solving",
    "analysis",
    "complex",
    "step by step",
    "chain of thought",
    "reasoning through",
    "solve",
    "calculate",
)

EMBEDDING_KEYWORDS = ("embedding", "vector", "similarity", "search", "retrieval", "semantic")


def is_reasoning_context(context: str) -> bool:
    lowered = context.lower()
    return any(keyword in lowered for keyword in REASONING_KEYWORDS)


def is_embedding_context(context: str) -> bool:
    lowered = context.lower()
    return any(keyword in lowered for keyword in EMBEDDING_KEYWORDS)


def get_model_mapping(legacy_model: str) -> Optional[ModelMapping]:
    return _MAPPINGS_BY_MODEL.get(legacy_model)


def is_legacy_model(model: str) -> bool:
    return model in _MAPPINGS_BY_MODEL


def get_all_legacy_models() -> List[str]:
    return [m.legacy_model for m in MODEL_MAPPINGS]


def default_modern_model(context: str) -> str:
    """Model for an unknown legacy name, chosen from the surrounding text alone."""
    if is_reasoning_context(context):
        return DEFAULT_REASONING_MODEL
    if is_embedding_context(context):
        return DEFAULT_EMBEDDING_MODEL
    return DEFAULT_CHAT_MODEL


def select_model_by_context(legacy_model: str, context: str = "") -> str:
    """Pick the replacement for ``legacy_model`` given the text it appears in.

    Reasoning vocabulary wins over embedding vocabulary, which wins over the static table.
    """
    mapping = get_model_mapping(legacy_model)
    if mapping is None:
        return default_modern_model(context)

    if is_reasoning_context(context):
        if mapping.use_case == UseCase.COST_OPTIMIZED:
            return COST_OPTIMIZED_REASONING_MODEL
        return DEFAULT_REASONING_MODEL

    if is_embedding_context(context):
        return mapping.modern_model if mapping.use_case == UseCase.EMBEDDING else DEFAULT_EMBEDDING_MODEL

    return mapping.modern_model


def get_suggested_model(legacy_model: str, context: str = "") -> str:
    return select_model_by_context(legacy_model, context)
