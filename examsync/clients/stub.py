from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
import hashlib


@dataclass
class StubEmbeddingClient:
    """Deterministic embeddings derived from a text digest."""

    dimensions: int = 8
    calls: list[str] = field(default_factory=list)

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[index % len(digest)] / 255 for index in range(self.dimensions)]

    def batch_embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


@dataclass
class InMemoryTriggerBus:
    """Process-local bus; the oldest undelivered trigger is dropped once ``capacity`` is reached."""

    capacity: int = 256
    published: deque[str] = field(init=False)
    _queue: asyncio.Queue[str] = field(init=False)

    def __post_init__(self) -> None:
        self.published = deque(maxlen=self.capacity)
        self._queue = asyncio.Queue(maxsize=self.capacity)

    async def publish(self, *, payload: str) -> None:
        self.published.append(payload)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(payload)

    def pending(self) -> int:
        return self._queue.qsize()

    async def next_message(self, *, timeout_seconds: float) -> str | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None
