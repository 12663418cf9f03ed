"""Normalizes document text and splits it into overlapping chunks."""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from knowledge_pipeline.processors.ids import ensure_safe_id
from knowledge_pipeline.processors.model_mapper import get_all_legacy_models, select_model_by_context
from knowledge_pipeline.schemas.documents import ContentMetadata, Document, DocumentChunk
from knowledge_pipeline.tokens.counter import TokenCounter, token_counter

logger = logging.getLogger(__name__)

CHUNK_SIZE = 600
CHUNK_OVERLAP = 100
MAX_TOKENS_PER_CHUNK = 500
# How far past the window edge we look for a space to end a chunk on.
WORD_SNAP_DISTANCE = 100

_OS_RUNTIME_PATTERNS = [
    re.compile(r"\b(node|nodejs)\s+v?\d+\.\d+\.\d+", re.IGNORECASE),
    re.compile(r"\b(python)\s+\d+\.\d+\.\d+", re.IGNORECASE),
    re.compile(r"\b(windows|macos|linux|ubuntu)\s+\d+", re.IGNORECASE),
    re.compile(r"\bos:\s*[^\n]+", re.IGNORECASE),
    re.compile(r"\bplatform:\s*[^\n]+", re.IGNORECASE),
    re.compile(r"\bversion:\s*\d+\.\d+\.\d+", re.IGNORECASE),
    re.compile(r"\bruntime:\s*[^\n]+", re.IGNORECASE),
]

_LEGACY_MODEL_LITERAL = re.compile(
    r"[\"'](" + "|".join(re.escape(m) for m in get_all_legacy_models()) + r")[\"']",
)
_ASSIGNED_ENGINE_COMPLETION = re.compile(
    r"(\w+)\s*=\s*openai\.Completion\.create\s*\(\s*engine\s*=\s*[\"']([^\"']+)[\"']",
)
_LEGACY_COMPLETION_CALL = re.compile(r"openai\.(?:Completion|completions)\.create\s*\(")
_PROMPT_ARGUMENT = re.compile(r"prompt\s*=\s*[\"']([^\"']+)[\"']")
_RESPONSE_TEXT_ACCESS = re.compile(r"response\[[\"']choices[\"']\]\[0\]\[[\"']text[\"']\]|response\.choices\[0\]\.text")

_API_ENDPOINT_PATTERNS = [
    re.compile(r"https://api\.openai\.com/v\d+/[^\s)]+"),
    re.compile(r"POST /v\d+/[^\s)]+"),
    re.compile(r"GET /v\d+/[^\s)]+"),
    re.compile(r"PUT /v\d+/[^\s)]+"),
    re.compile(r"DELETE /v\d+/[^\s)]+"),
]

_PARAMETER_PATTERNS = [
    re.compile(r"\"([a-z_]+)\":\s*{"),
    re.compile(r"\b([a-z_]+)\s*\(.*?\)"),
    re.compile(r"--([a-z-]+)"),
]

_LANGUAGE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"```python", re.IGNORECASE), "python"),
    (re.compile(r"```javascript", re.IGNORECASE), "javascript"),
    (re.compile(r"```typescript", re.IGNORECASE), "typescript"),
    (re.compile(r"```json", re.IGNORECASE), "json"),
    (re.compile(r"```bash", re.IGNORECASE), "bash"),
    (re.compile(r"```curl", re.IGNORECASE), "curl"),
    (re.compile(r"import\s+\w+"), "python"),
    (re.compile(r"const\s+\w+\s*="), "javascript"),
    (re.compile(r"curl\s+-"), "curl"),
    (re.compile(r"\"cell_type\":\s*\"code\""), "jupyter"),
    (re.compile(r"\"kernelspec\".*\"python\""), "python"),
    (re.compile(r"\"language_info\".*\"python\""), "python"),
    (re.compile(r"\"language_info\".*\"javascript\""), "javascript"),
]


def is_notebook(document: Document) -> bool:
    content = document.content.strip()
    return document.source.lower().endswith(".ipynb") or (content.startswith("{") and '"cells"' in content)


def filter_os_runtime_metadata(content: str) -> str:
    """Drop OS, runtime and version noise that does not help with API usage."""
    for pattern in _OS_RUNTIME_PATTERNS:
        content = pattern.sub("", content)
    return re.sub(r"\n\s*\n", "\n", content).strip()


def parse_notebook(content: str) -> Tuple[str, Dict[str, Any]]:
    """Flatten a Jupyter notebook into text with cell markers.

    Returns the text and the metadata fields derived from the notebook. Content that
    does not parse as a notebook comes back unchanged with language ``text``.
    """
    try:
        notebook = json.loads(content)
        cells = notebook["cells"]
        parts: List[str] = []
        cell_types: List[str] = []
        code_cells = 0
        markdown_cells = 0
        for cell in cells:
            cell_type = cell.get("cell_type")
            cell_types.append(cell_type)
            source = cell.get("source", "")
            if isinstance(source, list):
                source = "".join(source)
            if cell_type == "code":
                code_cells += 1
                parts.append(f"\n\n--- CODE CELL ---\n{source}\n--- END CODE CELL ---\n")
            elif cell_type == "markdown":
                markdown_cells += 1
                parts.append(f"\n\n{source}\n")
            elif cell_type == "raw":
                parts.append(f"\n\n{source}\n")

        nb_metadata = notebook.get("metadata") or {}
        kernelspec = nb_metadata.get("kernelspec") or {}
        language_info = nb_metadata.get("language_info") or {}
        metadata = {
            "language": language_info.get("name") or kernelspec.get("language") or "python",
            "notebook_kernel": kernelspec.get("display_name"),
            "cell_types": list(dict.fromkeys(cell_types)),
            "total_cells": len(cells),
            "code_cells": code_cells,
            "markdown_cells": markdown_cells,
        }
        return "".join(parts).strip(), metadata
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        logger.debug(f"Content is not a parseable notebook: {e}")
        return content, {"language": "text"}


def transform_outdated_patterns(text: str) -> str:
    """Rewrite retired OpenAI SDK idioms into their current equivalents."""
    original = text

    def _assigned(match: re.Match) -> str:
        modern = select_model_by_context(match.group(2), original)
        return f'{match.group(1)} = openai.chat.completions.create(model="{modern}"'

    text = _ASSIGNED_ENGINE_COMPLETION.sub(_assigned, text)
    text = _LEGACY_COMPLETION_CALL.sub("openai.chat.completions.create(", text)
    text = _LEGACY_MODEL_LITERAL.sub(lambda m: f'"{select_model_by_context(m.group(1), original)}"', text)
    text = _PROMPT_ARGUMENT.sub(lambda m: f'messages=[{{"role": "user", "content": "{m.group(1)}"}}]', text)
    text = re.sub(r"\bmax_tokens\s*:", "max_completion_tokens:", text)
    text = re.sub(r"\bmax_tokens\s*=", "max_completion_tokens=", text)
    text = re.sub(r"\bengine\s*:", "model:", text)
    text = re.sub(r"\bengine\s*=", "model=", text)
    return _RESPONSE_TEXT_ACCESS.sub("response.choices[0].message.content", text)


def clean_and_normalize(text: str) -> str:
    cleaned = re.sub(r"\s+", " ", text.replace("\r\n", "\n")).strip()
    return transform_outdated_patterns(cleaned)


def detect_language(content: str) -> str:
    for pattern, language in _LANGUAGE_PATTERNS:
        if pattern.search(content):
            return language
    return "text"


def extract_metadata(content: str) -> ContentMetadata:
    endpoints: Dict[str, None] = {}
    for pattern in _API_ENDPOINT_PATTERNS:
        for match in pattern.findall(content):
            endpoints[match.strip()] = None

    parameters: Dict[str, None] = {}
    for pattern in _PARAMETER_PATTERNS:
        for match in pattern.finditer(content):
            parameters[match.group(1)] = None

    return ContentMetadata(
        api_endpoints=list(endpoints),
        parameters=list(parameters),
        language=detect_language(content),
    )


class TextProcessor:
    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        max_tokens_per_chunk: int = MAX_TOKENS_PER_CHUNK,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.counter = counter or token_counter

    def chunk_documents(self, documents: List[Document]) -> List[DocumentChunk]:
        chunks: List[DocumentChunk] = []
        for document in documents:
            metadata = document.metadata
            if is_notebook(document):
                content, notebook_metadata = parse_notebook(document.content)
                metadata = metadata.model_copy(update=notebook_metadata)
            else:
                content = filter_os_runtime_metadata(document.content)

            text = clean_and_normalize(content)
            chunks.extend(self._create_chunks(text, document.id, metadata))
        return chunks

    def _create_chunks(self, text: str, document_id: str, metadata: ContentMetadata) -> List[DocumentChunk]:
        chunks: List[DocumentChunk] = []
        position = 0
        index = 0
        while position < len(text):
            window_end = min(position + self.chunk_size, len(text))
            end = window_end
            if window_end < len(text):
                next_space = text.find(" ", window_end)
                if next_space != -1 and next_space - window_end < WORD_SNAP_DISTANCE:
                    end = next_space

            content = self.counter.truncate_text(text[position:end], self.max_tokens_per_chunk)
            chunks.append(
                DocumentChunk(
                    id=ensure_safe_id(f"{document_id}_chunk_{index}"),
                    content=content,
                    metadata=metadata.model_copy(update={"chunk_index": index}),
                    chunk_index=index,
                    parent_document_id=document_id,
                )
            )
            if end >= len(text):
                break
            position = max(end - self.chunk_overlap, position + 1)
            index += 1
        return chunks
