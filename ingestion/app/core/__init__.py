"""Service-wide identifiers shared by log helpers."""

SERVICE_NAME = "ingestion"
