"""
Embedding pipeline: providers, job queue, vector index and worker.
"""

from opensync.embeddings.base import EmbeddingProvider
from opensync.embeddings.openai import OpenAIEmbeddingProvider, get_embedding_provider
from opensync.embeddings.queue import EmbeddingJobQueue, QueueStats
from opensync.embeddings.resilience import CircuitBreaker, CircuitOpenError
from opensync.embeddings.vector_index import VectorHit, VectorIndex

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "EmbeddingJobQueue",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "QueueStats",
    "VectorHit",
    "VectorIndex",
    "get_embedding_provider",
]
