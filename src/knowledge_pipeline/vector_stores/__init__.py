from knowledge_pipeline.vector_stores.base import VectorStore
from knowledge_pipeline.vector_stores.chroma import ChromaVectorStore

__all__ = ["ChromaVectorStore", "VectorStore"]
