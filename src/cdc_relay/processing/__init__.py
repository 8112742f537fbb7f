"""Batch event processing, statistics and dead-letter capture."""
