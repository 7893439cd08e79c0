"""Intent catalog and similarity matcher."""

import asyncio
import threading
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

import numpy as np

from ..models.core import IntentDefinition, IntentMatch, TokenUsage
from .ai_provider import AIProvider
from .exceptions import ConfigurationError, ConflictError, EmbeddingUnavailableError, NotFoundError, ProviderError
from .logging import get_logger

logger = get_logger(__name__)


class CatalogSnapshot(NamedTuple):
    generation: int
    intents: Tuple[IntentDefinition, ...]
    by_id: Dict[str, IntentDefinition]


class IntentCatalog:
    """Holds known intents. Reloads swap the whole snapshot at once."""

    def __init__(self, intents: Optional[Iterable[IntentDefinition]] = None):
        self._lock = threading.Lock()
        self._snapshot = CatalogSnapshot(0, (), {})
        if intents is not None:
            self.reload(intents)

    def reload(self, intents: Iterable[IntentDefinition]) -> int:
        """Replace the catalog contents. Readers see either the old or the new snapshot."""
        ordered = tuple(intents)
        by_id: Dict[str, IntentDefinition] = {}
        for intent in ordered:
            if intent.id in by_id:
                raise ConflictError(f"Duplicate intent id '{intent.id}' in catalog", instance_id=intent.id)
            by_id[intent.id] = intent

        with self._lock:
            self._snapshot = CatalogSnapshot(self._snapshot.generation + 1, ordered, by_id)
            generation = self._snapshot.generation

        logger.info(f"Intent catalog reloaded with {len(ordered)} intents (generation {generation})")
        return generation

    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def get(self, intent_id: str) -> IntentDefinition:
        intent = self._snapshot.by_id.get(intent_id)
        if intent is None:
            raise NotFoundError(f"Intent '{intent_id}' is not in the catalog", instance_id=intent_id)
        return intent

    def __iter__(self) -> Iterator[IntentDefinition]:
        return iter(self._snapshot.intents)

    def __len__(self) -> int:
        return len(self._snapshot.intents)


class _PreparedIndex(NamedTuple):
    generation: int
    intents: Tuple[IntentDefinition, ...]
    matrix: np.ndarray        # one L2-normalized reference embedding per row
    owners: np.ndarray        # row -> position of the owning intent


class IntentMatcher:
    """Ranks catalog intents by semantic similarity to an input text.

    An intent's score is the maximum cosine similarity between the input
    embedding and any of its reference embeddings, clamped to [0, 1]. Equal
    scores keep catalog insertion order.
    """

    def __init__(self, catalog: IntentCatalog, provider: AIProvider, embedding_timeout: Optional[float] = None):
        self.catalog = catalog
        self.provider = provider
        self.embedding_timeout = embedding_timeout
        self._index: Optional[_PreparedIndex] = None
        self._prepare_lock = asyncio.Lock()

    async def prepare(self) -> TokenUsage:
        """Embed reference utterances of the current catalog snapshot.

        Intents carrying precomputed embeddings use them as-is. The index is
        rebuilt only when the catalog generation changes.

        Returns:
            Token usage spent on reference embeddings (zero when cached)
        """
        async with self._prepare_lock:
            snapshot = self.catalog.snapshot()
            if self._index is not None and self._index.generation == snapshot.generation:
                return TokenUsage.zero()

            usage = TokenUsage.zero()
            rows: List[np.ndarray] = []
            owners: List[int] = []
            for position, intent in enumerate(snapshot.intents):
                if intent.embeddings:
                    vectors = [np.asarray(vector, dtype=np.float64) for vector in intent.embeddings]
                else:
                    vectors = []
                    for utterance in intent.utterances:
                        vector, spent = await self._embed(utterance, stage="catalog_prepare")
                        vectors.append(vector)
                        usage = usage + spent
                rows.extend(vectors)
                owners.extend([position] * len(vectors))

            if rows:
                dims = {row.shape[0] for row in rows}
                if len(dims) != 1:
                    raise ConfigurationError(
                        f"Intent reference embeddings have inconsistent dimensions: {sorted(dims)}",
                        config_key="intents",
                    )
                matrix = _normalize_rows(np.vstack(rows))
            else:
                matrix = np.zeros((0, 0))

            self._index = _PreparedIndex(
                snapshot.generation, snapshot.intents, matrix, np.asarray(owners, dtype=np.int64)
            )
            logger.debug(
                f"Prepared intent index generation {snapshot.generation}: "
                f"{len(snapshot.intents)} intents, {len(rows)} reference vectors"
            )
            return usage

    async def match(self, text: str, top_k: int) -> List[IntentMatch]:
        """Return up to ``top_k`` (intent, score) pairs, best first."""
        matches, _ = await self.match_with_usage(text, top_k)
        return matches

    async def match_with_usage(self, text: str, top_k: int) -> Tuple[List[IntentMatch], TokenUsage]:
        """Like ``match`` but also returns the token usage spent.

        The usage covers the input embedding plus any reference embeddings
        this call had to compute while preparing the index.

        Raises:
            EmbeddingUnavailableError: If the embedding capability cannot be reached
        """
        if top_k < 1:
            raise ValueError("top_k must be at least 1")

        prepare_usage = await self.prepare()
        index = self._index
        if not index.intents or index.matrix.size == 0:
            return [], prepare_usage

        query, usage = await self._embed(text, stage="intent_match")
        usage = prepare_usage + usage
        if query.shape[0] != index.matrix.shape[1]:
            raise ConfigurationError(
                f"Input embedding has dimension {query.shape[0]}, catalog uses {index.matrix.shape[1]}",
                config_key="embedding_model",
            )

        norm = np.linalg.norm(query)
        if norm == 0:
            return [], usage
        similarities = index.matrix @ (query / norm)

        scores = np.zeros(len(index.intents))
        np.maximum.at(scores, index.owners, np.clip(similarities, 0.0, 1.0))

        ranked = sorted(range(len(index.intents)), key=lambda position: (-scores[position], position))
        matches = [
            IntentMatch(intent=index.intents[position], score=float(scores[position]))
            for position in ranked[:top_k]
        ]
        return matches, usage

    async def _embed(self, text: str, stage: str) -> Tuple[np.ndarray, TokenUsage]:
        try:
            if self.embedding_timeout:
                response = await asyncio.wait_for(self.provider.embed(text), timeout=self.embedding_timeout)
            else:
                response = await self.provider.embed(text)
        except ProviderError as e:
            raise EmbeddingUnavailableError(f"Embedding capability failed: {e.message}", stage=stage) from e
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise EmbeddingUnavailableError(f"Embedding capability unreachable: {e!r}", stage=stage) from e
        return np.asarray(response.vector, dtype=np.float64), response.token_usage


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms
