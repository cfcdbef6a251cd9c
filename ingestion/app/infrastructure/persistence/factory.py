"""Repository factory: selects and assembles persistence adapters."""
from __future__ import annotations

from ingestion.app.config.settings import Settings
from ingestion.app.infrastructure.persistence.memory.in_memory_document_store import InMemoryDocumentStore
from ingestion.app.infrastructure.persistence.memory.in_memory_repository import InMemoryJobRepository
from ingestion.app.infrastructure.persistence.mongo.connection import create_mongo_client
from ingestion.app.infrastructure.persistence.mongo.mongo_document_store import MongoDocumentStore
from ingestion.app.infrastructure.persistence.mongo.mongo_job_repository import MongoJobRepository
from ingestion.app.ports.document_store import DocumentStore
from ingestion.app.ports.job_repository import JobRepository


async def create_persistence(settings: Settings) -> tuple[JobRepository, DocumentStore]:
    """Select repository adapters from configuration and return port types."""
    backend = settings.repository_backend.strip().lower()

    if backend in ("mongo", "mongodb"):
        mongo_client = await create_mongo_client(settings)
        database = mongo_client[settings.database_name]
        repo = MongoJobRepository(database[settings.jobs_collection], client=mongo_client)
        await repo.ensure_indexes()
        return repo, MongoDocumentStore(database[settings.documents_collection])

    if backend in ("memory", "inmemory"):
        return InMemoryJobRepository(), InMemoryDocumentStore()

    raise ValueError(f"Unsupported repository backend: {backend}")
