"""Embedding backend for the semantic index, served by Ollama."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
import ollama

from .config import Config, get_config
from .errors import BackendError

logger = logging.getLogger("codewright.embeddings")


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class OllamaEmbedder:
    """Batch text embeddings through ``ollama.AsyncClient.embed``."""

    def __init__(self, config: Config | None = None, client: ollama.AsyncClient | None = None) -> None:
        self.cfg = config or get_config()
        self.model = self.cfg.embedding_model
        self._client = client or ollama.AsyncClient(
            host=self.cfg.ollama_url.rstrip("/"), timeout=self.cfg.ollama_timeout
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        batch_size = max(1, self.cfg.embedding_batch_size)
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            try:
                response = await self._client.embed(model=self.model, input=batch)
            except ollama.ResponseError as e:
                raise BackendError(str(e.error), status=e.status_code, provider="ollama-embed") from e
            except (httpx.HTTPError, ConnectionError) as e:
                raise BackendError(f"Cannot reach Ollama: {e}", provider="ollama-embed") from e

            embeddings = _embeddings_of(response)
            if embeddings is None or len(embeddings) != len(batch):
                raise BackendError(
                    f"Malformed embedding response: expected {len(batch)} vectors",
                    provider="ollama-embed",
                )
            vectors.extend([float(x) for x in vec] for vec in embeddings)

        logger.debug(f"Embedded {len(texts)} texts with {self.model}")
        return vectors


def _embeddings_of(response: Any) -> list[list[float]] | None:
    if hasattr(response, "embeddings"):
        return list(response.embeddings)
    if isinstance(response, dict) and isinstance(response.get("embeddings"), list):
        return response["embeddings"]
    return None
