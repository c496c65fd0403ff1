"""Ingestion, per-patient indexing and sample generation for multi-table clinical event data."""
