"""Transactional outbox table access and the drain worker."""
