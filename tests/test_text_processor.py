import json

from knowledge_pipeline.processors.text import (
    CHUNK_SIZE,
    TextProcessor,
    clean_and_normalize,
    extract_metadata,
    filter_os_runtime_metadata,
    transform_outdated_patterns,
)
from knowledge_pipeline.schemas.documents import ContentMetadata, Document


def make_document(content: str, source: str = "github") -> Document:
    return Document(id="doc", content=content, metadata=ContentMetadata(title="Doc"), source=source)


def test_short_document_is_a_single_chunk() -> None:
    chunks = TextProcessor().chunk_documents([make_document("Use the client to create a response.")])
    assert len(chunks) == 1
    assert chunks[0].id == "doc_chunk_0"
    assert chunks[0].parent_document_id == "doc"
    assert chunks[0].metadata.title == "Doc"
    assert chunks[0].metadata.chunk_index == 0


def test_long_document_is_split_with_overlap() -> None:
    words = [f"word{i}" for i in range(400)]
    text = " ".join(words)
    chunks = TextProcessor().chunk_documents([make_document(text)])

    assert len(chunks) > 1
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert all(len(chunk.content) <= CHUNK_SIZE + 100 for chunk in chunks)
    # Consecutive chunks share text and the last chunk reaches the end.
    assert chunks[0].content[-50:] in chunks[1].content
    assert chunks[-1].content.endswith("word399")


def test_chunks_end_on_word_boundaries() -> None:
    text = " ".join(["token"] * 300)
    chunks = TextProcessor().chunk_documents([make_document(text)])
    for chunk in chunks[:-1]:
        assert chunk.content.endswith("token")


def test_notebooks_are_flattened() -> None:
    notebook = {
        "cells": [
            {"cell_type": "markdown", "source": ["# Embeddings\n", "Create vectors."]},
            {"cell_type": "code", "source": "client.embeddings.create(input='hi')"},
        ],
        "metadata": {"kernelspec": {"display_name": "Python 3", "language": "python"}},
    }
    chunks = TextProcessor().chunk_documents([make_document(json.dumps(notebook))])

    assert "--- CODE CELL ---" in chunks[0].content
    assert chunks[0].metadata.total_cells == 2
    assert chunks[0].metadata.code_cells == 1
    assert chunks[0].metadata.notebook_kernel == "Python 3"
    assert chunks[0].metadata.language == "python"


def test_os_runtime_noise_is_removed() -> None:
    cleaned = filter_os_runtime_metadata("Fails on Python 3.11.4\nOS: Ubuntu 22.04\nThe client hangs")
    assert "3.11.4" not in cleaned
    assert "Ubuntu" not in cleaned
    assert "The client hangs" in cleaned


def test_legacy_completion_calls_are_modernized() -> None:
    code = 'response = openai.Completion.create(engine="text-davinci-003", prompt="Say hi")'
    modern = transform_outdated_patterns(code)
    assert "openai.chat.completions.create(" in modern
    assert 'model="gpt-4.1"' in modern
    assert '"content": "Say hi"' in modern
    assert "engine" not in modern


def test_legacy_response_access_and_parameters() -> None:
    code = "openai.Completion.create(model='ada', max_tokens=5)\nprint(response.choices[0].text)"
    modern = transform_outdated_patterns(code)
    assert "max_completion_tokens=5" in modern
    assert '"gpt-4.1-mini"' in modern
    assert "response.choices[0].message.content" in modern


def test_clean_and_normalize_collapses_whitespace() -> None:
    assert clean_and_normalize("line one\r\n\r\n   line   two") == "line one line two"


def test_extract_metadata() -> None:
    metadata = extract_metadata("```python\nPOST /v1/chat/completions\nclient.create(model='x')\n```")
    assert metadata.language == "python"
    assert metadata.api_endpoints == ["POST /v1/chat/completions"]
    assert "create" in (metadata.parameters or [])
