"""Embedding and relevance providers."""

from .base import EmbeddingProvider, RelevanceProvider, ScoringPair, TaggingNote
from .embedder import SentenceTransformerEmbedder
from .llm import AnthropicRelevanceProvider

__all__ = [
    "EmbeddingProvider",
    "RelevanceProvider",
    "ScoringPair",
    "TaggingNote",
    "SentenceTransformerEmbedder",
    "AnthropicRelevanceProvider",
]
