"""Embedding functions for the vector index.

Any callable ``text -> fixed-length vector`` can back a VectorIndex. This module
provides the default one, backed by a lazily loaded SentenceTransformer model.

Author: Hay Hoffman
"""

import logging
from typing import Callable, Sequence

import numpy as np

from settings import EMBEDDING_BATCH_SIZE, EMBEDDING_MODEL

logger = logging.getLogger(__name__)

__all__ = ["EmbeddingFunction", "SentenceTransformerEmbedder"]

EmbeddingFunction = Callable[[str], Sequence[float]]


class SentenceTransformerEmbedder:
    """Deterministic text embedder using sentence-transformers.

    Models are cached at class level (shared across instances, keyed by name),
    and loaded on first use so constructing an embedder is cheap.
    """

    # Class-level cached embedding models (shared across instances)
    _models: dict[str, object] = {}

    def __init__(self, model_name: str = EMBEDDING_MODEL, batch_size: int = EMBEDDING_BATCH_SIZE):
        self.model_name = model_name
        self.batch_size = batch_size

    def _get_model(self):
        """Get cached embedding model (lazy-loaded, singleton per model name)."""
        model = self._models.get(self.model_name)
        if model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            model = SentenceTransformer(self.model_name)
            self._models[self.model_name] = model
            logger.info("Embedding model loaded successfully")
        return model

    def preload(self) -> None:
        """Load the model now so the first query does not trigger a download."""
        self._get_model()

    def __call__(self, text: str) -> np.ndarray:
        """Embed one text."""
        embedding = self._get_model().encode(
            text,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return np.asarray(embedding, dtype=np.float64)

    def embed_batch(self, texts: list[str]) -> np.ndarray:
        """Embed many texts in model batches.

        Returns:
            Array of shape (len(texts), dimension)
        """
        embeddings = self._get_model().encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype=np.float64)
