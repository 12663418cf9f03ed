from knowledge_pipeline.processors.model_mapper import (
    get_all_legacy_models,
    get_model_mapping,
    get_suggested_model,
    is_legacy_model,
    select_model_by_context,
)


def test_static_mapping_without_context() -> None:
    assert select_model_by_context("text-davinci-003") == "gpt-4.1"
    assert select_model_by_context("text-curie-001") == "gpt-4.1-mini"
    assert select_model_by_context("text-embedding-ada-002") == "text-embedding-3-large"


def test_reasoning_context_wins() -> None:
    assert select_model_by_context("text-davinci-003", "Solve this math problem step by step") == "o1"
    assert select_model_by_context("text-ada-001", "calculate the total") == "o1-mini"


def test_embedding_context_maps_chat_models_to_embeddings() -> None:
    assert select_model_by_context("davinci", "semantic search over documents") == "text-embedding-3-small"
    assert select_model_by_context("text-embedding-ada-002", "vector similarity") == "text-embedding-3-large"


def test_unknown_models_fall_back_by_context() -> None:
    assert select_model_by_context("gpt-unknown") == "gpt-4.1"
    assert select_model_by_context("gpt-unknown", "vector retrieval") == "text-embedding-3-small"
    assert get_suggested_model("gpt-unknown", "complex analysis") == "o1"


def test_legacy_lookup() -> None:
    assert is_legacy_model("ada")
    assert not is_legacy_model("gpt-4.1")
    assert "text-davinci-003" in get_all_legacy_models()
    mapping = get_model_mapping("text-davinci-001")
    assert mapping is not None and mapping.modern_model == "gpt-4.1-mini"
