from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from ingestion.app.config.settings import Settings
from ingestion.app.constants import JobStatus
from ingestion.app.domain.models import ProcessingError
from ingestion.app.infrastructure.persistence.mongo.connection import close_client, create_mongo_client
from ingestion.app.infrastructure.persistence.mongo.mongo_document_store import MongoDocumentStore
from ingestion.app.infrastructure.persistence.mongo.mongo_job_repository import MongoJobRepository
from tests.conftest import make_job


def _build_settings() -> Settings:
    return Settings(
        database_host=os.getenv("DATABASE_HOST", "localhost"),
        database_port=int(os.getenv("DATABASE_PORT", "27017")),
        database_user=os.getenv("DATABASE_USER", ""),
        database_password=os.getenv("DATABASE_PASSWORD", ""),
        database_name=os.getenv("DATABASE_NAME", "document_ingestion_test"),
        max_connection_attempts=int(os.getenv("MAX_CONNECTION_ATTEMPTS", "3")),
        initial_backoff_seconds=float(os.getenv("INITIAL_BACKOFF_SECONDS", "0.5")),
        database_connection_timeout_ms=int(os.getenv("DATABASE_CONNECTION_TIMEOUT_MS", "2000")),
    )


async def _with_repository(body) -> None:
    settings = _build_settings()
    client = await create_mongo_client(settings)
    collection_name = f"jobs_{uuid.uuid4().hex[:8]}"
    database = client[settings.database_name]
    repo = MongoJobRepository(database[collection_name], client=client)
    try:
        await repo.ensure_indexes()
        await body(repo, database)
    finally:
        await database.drop_collection(collection_name)
        await close_client(client)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.mark.integration
def test_mongo_indexes_exist() -> None:
    async def _body(repo, database) -> None:
        names = set((await repo._collection.index_information()).keys())
        assert {"idx_jobs_claim_order", "idx_jobs_started_at", "idx_jobs_completed_at"} <= names

    asyncio.run(_with_repository(_body))


@pytest.mark.integration
def test_mongo_concurrent_claims_have_one_winner() -> None:
    async def _body(repo, database) -> None:
        now = _now()
        await repo.insert(make_job("solo", created_at=now))
        results = await asyncio.gather(*(repo.claim_next(now) for _ in range(8)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].status == JobStatus.PROCESSING

    asyncio.run(_with_repository(_body))


@pytest.mark.integration
def test_mongo_lifecycle_complete_fail_requeue() -> None:
    async def _body(repo, database) -> None:
        now = _now()
        await repo.insert(make_job("a", created_at=now))
        claimed = await repo.claim("a", now)
        assert await repo.update_progress("a", "wrong", 50, now) is False
        assert await repo.update_progress("a", claimed.claim_token, 50, now) is True

        error = ProcessingError(code="PDF_PROCESSING_ERROR", message="bad xref", recoverable=True)
        failed = await repo.fail("a", claimed.claim_token, error=error, warnings=[], actual_duration=0.2, now=now)
        assert failed.status == JobStatus.FAILED

        later = now + timedelta(seconds=2)
        requeued = await repo.requeue_for_retry("a", expected_retry_count=0, next_retry_at=later, now=now)
        assert requeued.status == JobStatus.PENDING
        assert requeued.retry_count == 1
        assert await repo.claim_next(now) is None

        claimed = await repo.claim_next(later)
        done = await repo.complete(
            "a",
            claimed.claim_token,
            text="hello",
            metadata={"word_count": 1},
            fallback_source=None,
            warnings=[],
            actual_duration=0.1,
            now=later,
        )
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert await repo.count_by("status") == {"COMPLETED": 1}

    asyncio.run(_with_repository(_body))


@pytest.mark.integration
def test_mongo_stalled_recovery_and_cleanup() -> None:
    async def _body(repo, database) -> None:
        now = _now()
        await repo.insert(
            make_job(
                "stuck",
                created_at=now - timedelta(minutes=11),
                status=JobStatus.PROCESSING,
                started_at=now - timedelta(minutes=10),
                claim_token="tok",
            )
        )
        cutoff = now - timedelta(minutes=5)
        assert [j.job_id for j in await repo.find_stalled(cutoff)] == ["stuck"]
        reset = await repo.reset_stalled("stuck", cutoff, now)
        assert reset.status == JobStatus.PENDING
        assert reset.started_at is None
        assert reset.recovery_count == 1

        await repo.insert(make_job("old", created_at=now, status=JobStatus.COMPLETED, completed_at=now - timedelta(days=3)))
        removed = await repo.delete_terminal_before(
            completed_before=now - timedelta(days=1), failed_before=now - timedelta(days=7)
        )
        assert removed == ["old"]

    asyncio.run(_with_repository(_body))


@pytest.mark.integration
def test_mongo_document_store_round_trip() -> None:
    async def _body(repo, database) -> None:
        name = f"docs_{uuid.uuid4().hex[:8]}"
        store = MongoDocumentStore(database[name])
        try:
            await store.put("j1", b"%PDF-1.4 bytes")
            assert await store.get("j1") == b"%PDF-1.4 bytes"
            await store.delete("j1")
            assert await store.get("j1") is None
        finally:
            await database.drop_collection(name)

    asyncio.run(_with_repository(_body))
