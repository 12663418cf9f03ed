import logging
from typing import List, Protocol

import openai
from openai import AsyncOpenAI

from knowledge_pipeline.errors import EmbeddingTokenLimitError

logger = logging.getLogger(__name__)

_TOKEN_LIMIT_MARKERS = ("maximum context length", "token")


class EmbeddingProvider(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]: ...


def is_token_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _TOKEN_LIMIT_MARKERS)


class OpenAIEmbeddingProvider:
    def __init__(self, client: AsyncOpenAI, model: str = "text-embedding-3-small") -> None:
        self.client = client
        self.model = model

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.BadRequestError as e:
            if is_token_limit_message(str(e)):
                raise EmbeddingTokenLimitError(str(e)) from e
            raise
        logger.debug(f"Generated {len(response.data)} embeddings with {self.model}")
        return [item.embedding for item in response.data]
