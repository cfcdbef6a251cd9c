"""Port: storage for uploaded file bytes, keyed by job id."""
from __future__ import annotations

from typing import Protocol


class DocumentStore(Protocol):
    async def put(self, job_id: str, content: bytes) -> None: ...
    async def get(self, job_id: str) -> bytes | None: ...
    async def delete(self, job_id: str) -> None: ...
    async def close(self) -> None: ...
