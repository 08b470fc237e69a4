"""Idempotent lead enrichment, resumable backfills and webhook delivery."""

__version__ = "0.3.0"
