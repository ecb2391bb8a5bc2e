"""Service layer: API clients, ingestion, storage and recommendations."""
