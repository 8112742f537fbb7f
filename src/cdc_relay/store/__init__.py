"""Data store contract and the PostgreSQL implementation."""
