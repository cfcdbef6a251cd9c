"""MongoDB implementation of JobRepository.

State changes are single find_one_and_update calls whose filter encodes the
expected current state, so two workers racing for the same job cannot both win.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from ingestion.app.constants import FileFormat, JobStatus
from ingestion.app.domain.models import ProcessingError, ProcessingJob
from ingestion.app.infrastructure.persistence.mongo.connection import close_client

GROUPABLE_FIELDS = ("status", "format", "priority")


class MongoJobRepository:
    """Concrete implementation of JobRepository using MongoDB."""

    def __init__(self, collection: AsyncIOMotorCollection, *, client: Any | None = None) -> None:
        self._collection = collection
        self._client = client

    async def ensure_indexes(self) -> None:
        """Infrastructure bootstrap: create indexes. Not part of the port."""
        await self._collection.create_index(
            [("status", ASCENDING), ("priority_rank", DESCENDING), ("created_at", ASCENDING)],
            name="idx_jobs_claim_order",
        )
        await self._collection.create_index(
            [("status", ASCENDING), ("started_at", ASCENDING)], name="idx_jobs_started_at"
        )
        await self._collection.create_index(
            [("status", ASCENDING), ("completed_at", ASCENDING)], name="idx_jobs_completed_at"
        )

    async def insert(self, job: ProcessingJob) -> None:
        await self._collection.insert_one(job.to_document())

    async def get(self, job_id: str) -> ProcessingJob | None:
        doc = await self._collection.find_one({"_id": job_id})
        return ProcessingJob.from_document(doc) if doc else None

    async def _find_and_set(
        self,
        filter_: dict[str, Any],
        update: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
    ) -> ProcessingJob | None:
        doc = await self._collection.find_one_and_update(
            filter_,
            update,
            sort=sort,
            return_document=ReturnDocument.AFTER,
        )
        return ProcessingJob.from_document(doc) if doc else None

    def _claim_update(self, now: datetime) -> dict[str, Any]:
        return {
            "$set": {
                "status": JobStatus.PROCESSING.value,
                "started_at": now,
                "updated_at": now,
                "claim_token": uuid.uuid4().hex,
            }
        }

    async def claim_next(self, now: datetime) -> ProcessingJob | None:
        return await self._find_and_set(
            {
                "status": JobStatus.PENDING.value,
                "$or": [{"next_retry_at": None}, {"next_retry_at": {"$lte": now}}],
            },
            self._claim_update(now),
            sort=[("priority_rank", DESCENDING), ("created_at", ASCENDING)],
        )

    async def claim(self, job_id: str, now: datetime) -> ProcessingJob | None:
        return await self._find_and_set(
            {"_id": job_id, "status": JobStatus.PENDING.value},
            self._claim_update(now),
        )

    def _owned(self, job_id: str, claim_token: str) -> dict[str, Any]:
        return {"_id": job_id, "status": JobStatus.PROCESSING.value, "claim_token": claim_token}

    async def update_progress(
        self, job_id: str, claim_token: str, progress: int, now: datetime
    ) -> bool:
        res = await self._collection.update_one(
            self._owned(job_id, claim_token),
            {"$set": {"progress": max(0, min(100, int(progress))), "updated_at": now}},
        )
        return res.matched_count == 1

    async def complete(
        self,
        job_id: str,
        claim_token: str,
        *,
        text: str,
        metadata: dict[str, Any] | None,
        fallback_source: str | None,
        warnings: list[str],
        actual_duration: float,
        now: datetime,
    ) -> ProcessingJob | None:
        return await self._find_and_set(
            self._owned(job_id, claim_token),
            {
                "$set": {
                    "status": JobStatus.COMPLETED.value,
                    "progress": 100,
                    "extracted_text": text,
                    "metadata": metadata,
                    "fallback_source": fallback_source,
                    "warnings": list(warnings),
                    "error": None,
                    "claim_token": None,
                    "completed_at": now,
                    "updated_at": now,
                    "actual_duration": actual_duration,
                }
            },
        )

    async def fail(
        self,
        job_id: str,
        claim_token: str,
        *,
        error: ProcessingError,
        warnings: list[str],
        actual_duration: float | None,
        now: datetime,
    ) -> ProcessingJob | None:
        return await self._find_and_set(
            self._owned(job_id, claim_token),
            {
                "$set": {
                    "status": JobStatus.FAILED.value,
                    "error": error.to_dict(),
                    "warnings": list(warnings),
                    "claim_token": None,
                    "completed_at": now,
                    "updated_at": now,
                    "actual_duration": actual_duration,
                }
            },
        )

    async def requeue_for_retry(
        self,
        job_id: str,
        *,
        expected_retry_count: int,
        next_retry_at: datetime,
        now: datetime,
    ) -> ProcessingJob | None:
        return await self._find_and_set(
            {
                "_id": job_id,
                "status": JobStatus.FAILED.value,
                "error.recoverable": True,
                "retry_count": expected_retry_count,
                "$expr": {"$lt": ["$retry_count", "$max_retries"]},
            },
            {
                "$set": {
                    "status": JobStatus.PENDING.value,
                    "last_retry_at": now,
                    "next_retry_at": next_retry_at,
                    "progress": 0,
                    "completed_at": None,
                    "updated_at": now,
                },
                "$inc": {"retry_count": 1},
            },
        )

    async def cancel(self, job_id: str, now: datetime) -> ProcessingJob | None:
        return await self._find_and_set(
            {
                "_id": job_id,
                "status": {"$in": [JobStatus.PENDING.value, JobStatus.PROCESSING.value]},
            },
            {
                "$set": {
                    "status": JobStatus.CANCELLED.value,
                    "claim_token": None,
                    "completed_at": now,
                    "updated_at": now,
                }
            },
        )

    async def find_stalled(self, started_before: datetime) -> list[ProcessingJob]:
        cursor = self._collection.find(
            {"status": JobStatus.PROCESSING.value, "started_at": {"$lt": started_before}}
        )
        return [ProcessingJob.from_document(doc) async for doc in cursor]

    async def reset_stalled(
        self, job_id: str, started_before: datetime, now: datetime
    ) -> ProcessingJob | None:
        return await self._find_and_set(
            {
                "_id": job_id,
                "status": JobStatus.PROCESSING.value,
                "started_at": {"$lt": started_before},
            },
            {
                "$set": {
                    "status": JobStatus.PENDING.value,
                    "progress": 0,
                    "started_at": None,
                    "claim_token": None,
                    "next_retry_at": None,
                    "updated_at": now,
                },
                "$inc": {"recovery_count": 1},
            },
        )

    async def list_jobs(
        self, status: JobStatus | None = None, limit: int = 100
    ) -> list[ProcessingJob]:
        filter_ = {"status": status.value} if status else {}
        cursor = self._collection.find(filter_).sort("created_at", DESCENDING).limit(limit)
        return [ProcessingJob.from_document(doc) async for doc in cursor]

    async def count_by(self, field: str) -> dict[str, int]:
        if field not in GROUPABLE_FIELDS:
            raise ValueError(f"cannot group jobs by {field!r}")
        rows = await self._collection.aggregate(
            [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
        ).to_list(length=None)
        return {str(row["_id"]) if row["_id"] is not None else "unknown": int(row["count"]) for row in rows}

    async def count_completed_since(self, since: datetime) -> int:
        return await self._collection.count_documents(
            {"status": JobStatus.COMPLETED.value, "completed_at": {"$gte": since}}
        )

    async def oldest_pending_created_at(self) -> datetime | None:
        doc = await self._collection.find_one(
            {"status": JobStatus.PENDING.value},
            projection={"created_at": 1},
            sort=[("created_at", ASCENDING)],
        )
        return doc["created_at"] if doc else None

    async def average_duration_seconds(self, fmt: FileFormat | None = None) -> float | None:
        match: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "actual_duration": {"$ne": None},
        }
        if fmt is not None:
            match["format"] = fmt.value
        rows = await self._collection.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": None, "avg": {"$avg": "$actual_duration"}}},
            ]
        ).to_list(length=1)
        return float(rows[0]["avg"]) if rows and rows[0]["avg"] is not None else None

    async def average_queue_seconds(self, sample: int = 1000) -> float | None:
        rows = await self._collection.aggregate(
            [
                {"$match": {"started_at": {"$ne": None}}},
                {"$sort": {"started_at": -1}},
                {"$limit": sample},
                {
                    "$group": {
                        "_id": None,
                        "avg": {
                            "$avg": {
                                "$divide": [{"$subtract": ["$started_at", "$created_at"]}, 1000]
                            }
                        },
                    }
                },
            ]
        ).to_list(length=1)
        return float(rows[0]["avg"]) if rows and rows[0]["avg"] is not None else None

    async def error_summary(self) -> dict[str, Any]:
        rows = await self._collection.aggregate(
            [
                {"$match": {"status": JobStatus.FAILED.value, "error": {"$ne": None}}},
                {
                    "$group": {
                        "_id": {"code": "$error.code", "recoverable": "$error.recoverable"},
                        "count": {"$sum": 1},
                    }
                },
            ]
        ).to_list(length=None)
        by_code: dict[str, int] = {}
        recoverable = non_recoverable = 0
        for row in rows:
            code = str(row["_id"].get("code"))
            count = int(row["count"])
            by_code[code] = by_code.get(code, 0) + count
            if row["_id"].get("recoverable"):
                recoverable += count
            else:
                non_recoverable += count
        return {"by_code": by_code, "recoverable": recoverable, "non_recoverable": non_recoverable}

    async def delete_terminal_before(
        self, *, completed_before: datetime, failed_before: datetime
    ) -> list[str]:
        filter_ = {
            "$or": [
                {
                    "status": {"$in": [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]},
                    "completed_at": {"$lt": completed_before},
                },
                {
                    "status": JobStatus.FAILED.value,
                    "completed_at": {"$lt": failed_before},
                    "$or": [
                        {"error.recoverable": {"$ne": True}},
                        {"$expr": {"$gte": ["$retry_count", "$max_retries"]}},
                    ],
                },
            ]
        }
        ids = [doc["_id"] async for doc in self._collection.find(filter_, projection={"_id": 1})]
        if ids:
            await self._collection.delete_many({"_id": {"$in": ids}})
        return [str(i) for i in ids]

    async def close(self) -> None:
        """Close underlying Mongo client when owned by this adapter."""
        if self._client is not None:
            await close_client(self._client)
