from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import os

import httpx

from examsync.domain.errors import DomainDependencyError


@dataclass
class HttpEmbeddingClient:
    """Client for a text-embeddings-inference style ``POST /embed`` endpoint."""

    base_url: str
    timeout_seconds: float = 30.0
    batch_size: int = 32
    _client: httpx.Client | None = field(default=None, repr=False)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout_seconds)
        return self._client

    def embed(self, text: str) -> list[float]:
        return self.batch_embed([text])[0]

    def batch_embed(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            chunk = list(texts[start : start + self.batch_size])
            vectors.extend(self._post_embed(chunk))
        return vectors

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post_embed(self, inputs: list[str]) -> list[list[float]]:
        try:
            response = self._http().post("/embed", json={"inputs": inputs})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DomainDependencyError(f"embedding provider request failed: {exc}") from exc

        payload = response.json()
        if not isinstance(payload, list) or len(payload) != len(inputs):
            raise DomainDependencyError("embedding provider returned an unexpected payload")
        return [[float(value) for value in vector] for vector in payload]


def embedding_client_from_env() -> HttpEmbeddingClient | None:
    base_url = os.getenv("EMBEDDING_API_URL")
    if not base_url:
        return None
    return HttpEmbeddingClient(base_url=base_url)
