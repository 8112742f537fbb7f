"""Relay composition root."""
