"""Interfaces for the embedding and relevance providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class ScoringPair:
    """One candidate pair sent for relevance scoring. pair_id is its position in the batch."""
    pair_id: int
    id_1: str
    id_2: str
    title_1: str
    content_1: str
    title_2: str
    content_2: str


@dataclass
class TaggingNote:
    note_id: str
    title: str
    content: str
    existing_tags: list[str] = field(default_factory=list)


class EmbeddingProvider(ABC):
    """Turns document text into a fixed-length vector."""

    model_name: str = ""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed one document's main content.

        Raises TransientError for failures worth retrying on a later run and
        ConfigurationError when the provider cannot work at all.
        """


class RelevanceProvider(ABC):
    """Scores candidate pairs and proposes tags using a language model."""

    @abstractmethod
    def score_pairs(self, pairs: list[ScoringPair]) -> dict[int, float]:
        """Return a 0-10 relevance score keyed by pair_id.

        Pairs the provider did not score are simply absent from the result.
        """

    @abstractmethod
    def generate_tags(self, notes: list[TaggingNote], min_tags: int = 3, max_tags: int = 5) -> dict[str, list[str]]:
        """Return tags keyed by note_id."""
