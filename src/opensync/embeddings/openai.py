"""
OpenAI embedding provider.

Uses the official OpenAI Python SDK (sync client). Inputs are truncated to
``settings.embedding_max_input_chars`` before they are sent.
"""

import logging
from typing import Optional

from openai import APIError, OpenAI

from opensync.config import settings
from opensync.embeddings.base import EmbeddingProvider
from opensync.exceptions import UpstreamProviderError

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI embedding provider.

    Supports models:
    - text-embedding-3-small (1536 dimensions)
    - text-embedding-3-large (3072 dimensions)
    - text-embedding-ada-002 (1536 dimensions)
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        max_input_chars: int = 8000,
        timeout: float = 30.0,
    ):
        """
        Initialize the OpenAI embedding provider.

        Args:
            api_key: OpenAI API key
            model: Embedding model name
            dimensions: Vector dimensions (from the model table if None)
            base_url: Optional base URL for compatible endpoints
            max_input_chars: Inputs are truncated to this many characters
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")

        self.model = model
        self.max_input_chars = max_input_chars
        self._dimensions = dimensions or self.MODEL_DIMENSIONS.get(model, 1536)
        self.client = OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout,
        )
        logger.info(
            f"Initialized OpenAI embeddings: model={model}, dimensions={self._dimensions}"
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    def _prepare(self, text: str) -> str:
        return (text or " ")[: self.max_input_chars]

    def _create(self, inputs: list[str]) -> list[list[float]]:
        kwargs = {"input": inputs, "model": self.model}
        # Only the v3 models accept an explicit dimensions argument
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions
        try:
            response = self.client.embeddings.create(**kwargs)
        except APIError as e:
            status = getattr(e, "status_code", None)
            raise UpstreamProviderError(f"OpenAI embeddings failed: {e}", status=status) from e
        except Exception as e:
            raise UpstreamProviderError(f"OpenAI embeddings failed: {e}") from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(inputs):
            raise UpstreamProviderError(
                f"OpenAI returned {len(data)} embeddings for {len(inputs)} inputs"
            )
        return [item.embedding for item in data]

    def embed_text(self, text: str) -> list[float]:
        return self._create([self._prepare(text)])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._create([self._prepare(text) for text in texts])

    def close(self) -> None:
        self.client.close()


def get_embedding_provider() -> Optional[EmbeddingProvider]:
    """
    Build the configured embedding provider.

    Returns:
        Provider instance, or None when no API key is configured
    """
    if not settings.embeddings_configured:
        return None
    return OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        base_url=settings.openai_base_url or None,
        max_input_chars=settings.embedding_max_input_chars,
    )
