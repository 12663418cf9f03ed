from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher, cosine_similarity
from knowledge_pipeline.embeddings.provider import EmbeddingProvider, OpenAIEmbeddingProvider

__all__ = ["EmbeddingBatcher", "EmbeddingProvider", "OpenAIEmbeddingProvider", "cosine_similarity"]
