"""MongoDB implementation of DocumentStore: one binary document per job."""
from __future__ import annotations

from datetime import datetime, timezone

from bson import Binary
from motor.motor_asyncio import AsyncIOMotorCollection


class MongoDocumentStore:
    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self._collection = collection

    async def put(self, job_id: str, content: bytes) -> None:
        await self._collection.replace_one(
            {"_id": job_id},
            {
                "_id": job_id,
                "content": Binary(bytes(content)),
                "size": len(content),
                "stored_at": datetime.now(timezone.utc),
            },
            upsert=True,
        )

    async def get(self, job_id: str) -> bytes | None:
        doc = await self._collection.find_one({"_id": job_id})
        return bytes(doc["content"]) if doc else None

    async def delete(self, job_id: str) -> None:
        await self._collection.delete_one({"_id": job_id})

    async def close(self) -> None:
        # The job repository owns the shared client.
        return
