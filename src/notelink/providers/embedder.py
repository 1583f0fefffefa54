"""Document embedding using sentence-transformers."""

import logging
from typing import Any

from ..errors import ConfigurationError, TransientError
from .base import EmbeddingProvider

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder(EmbeddingProvider):
    """Embeds documents with a local sentence-transformers model."""

    def __init__(self, config: dict[str, Any]):
        self.model_name = config.get("embedding_model", "intfloat/e5-large-v2")
        self.max_chars = int(config.get("embedding", {}).get("max_chars", 8000))
        self._model = None

    @property
    def model(self):
        """Lazy-load the embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            try:
                self._model = SentenceTransformer(self.model_name)
            except OSError as e:
                raise ConfigurationError(
                    f"Could not load embedding model '{self.model_name}': {e}",
                    guidance="Check embedding_model in your config.",
                ) from e
            logger.info("Loaded embedding model %s", self.model_name)
        return self._model

    def embed(self, text: str) -> list[float]:
        model = self.model
        # e5 models need "passage: " prefix for documents
        passage = f"passage: {text[: self.max_chars]}"
        try:
            vector = model.encode(passage, normalize_embeddings=True)
        except (RuntimeError, ValueError) as e:
            raise TransientError(f"Embedding failed: {e}") from e
        return vector.tolist()
