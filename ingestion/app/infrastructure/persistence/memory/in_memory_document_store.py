"""In-memory document store for tests and local mode."""
from __future__ import annotations


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def put(self, job_id: str, content: bytes) -> None:
        self._blobs[job_id] = bytes(content)

    async def get(self, job_id: str) -> bytes | None:
        return self._blobs.get(job_id)

    async def delete(self, job_id: str) -> None:
        self._blobs.pop(job_id, None)

    async def close(self) -> None:
        return

    def __len__(self) -> int:
        return len(self._blobs)
