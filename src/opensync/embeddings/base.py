"""
Abstract base class for embedding providers.

The service never hosts a model itself; providers wrap a remote embedding
API (OpenAI by default) or, in tests, a deterministic fake.
"""

from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base for embedding generation."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Number of dimensions in the embedding vector."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Name/identifier of the embedding model."""
        pass

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            UpstreamProviderError: If the provider call fails
        """
        pass

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, same order as input.

        Raises:
            UpstreamProviderError: If the provider call fails
        """
        pass

    def close(self) -> None:
        """Release client resources."""
        pass

    def __enter__(self) -> "EmbeddingProvider":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
